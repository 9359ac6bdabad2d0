import base64
import binascii
import json
import logging
import os
import struct
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import DecryptionError, EncryptionError, KeyFormatError, TamperedDataError

logger = logging.getLogger(__name__)

KEY_SIZE = 32
IV_SIZE = 12
TAG_SIZE = 16
BACKUP_KDF_ITERS = 100_000
BACKUP_SALT_SIZE = 16

_LENGTH_PREFIX = struct.Struct("<I")

# Envelope metadata keys as written by the browser client.
_METADATA_FIELDS = {
    "file_name": "fileName",
    "file_type": "fileType",
    "file_size": "fileSize",
    "record_type": "recordType",
    "patient_id": "patientId",
    "upload_date": "uploadDate",
    "timestamp": "timestamp",
}


@dataclass
class FileMetadata:
    """Descriptive record embedded in (and authenticated by) every envelope."""

    file_name: str
    file_type: str = ""
    file_size: int = 0
    record_type: str = ""
    patient_id: str = ""
    upload_date: str = ""
    timestamp: Optional[int] = None
    extra: Dict = field(default_factory=dict)

    @classmethod
    def for_file(
        cls,
        file_bytes: bytes,
        file_name: str,
        file_type: str = "",
        record_type: str = "",
        patient_id: str = "",
        upload_date: Optional[str] = None,
    ) -> "FileMetadata":
        now = datetime.now(timezone.utc)
        return cls(
            file_name=file_name,
            file_type=file_type,
            file_size=len(file_bytes),
            record_type=record_type,
            patient_id=patient_id,
            upload_date=upload_date or now.date().isoformat(),
            timestamp=int(now.timestamp() * 1000),
        )

    def to_dict(self) -> Dict:
        data = {_METADATA_FIELDS[name]: getattr(self, name) for name in _METADATA_FIELDS}
        data.update(self.extra)
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "FileMetadata":
        if not isinstance(data, dict) or not isinstance(data.get("fileName"), str):
            raise ValueError("metadata record must be an object with a string fileName")
        known = {name: data[key] for name, key in _METADATA_FIELDS.items() if key in data}
        extra = {k: v for k, v in data.items() if k not in _METADATA_FIELDS.values()}
        return cls(**known, extra=extra)


@dataclass
class EncryptedFile:
    ciphertext: bytes
    key: bytes
    iv: bytes
    metadata: FileMetadata


def generate_key() -> bytes:
    return AESGCM.generate_key(bit_length=256)


def generate_iv() -> bytes:
    return os.urandom(IV_SIZE)


def encrypt_aes_gcm(key: bytes, plaintext: bytes, nonce: bytes, associated_data: bytes | None = None) -> bytes:
    """Encrypt using AES-GCM. Returns ciphertext with the 16-byte tag appended."""
    try:
        return AESGCM(key).encrypt(nonce, plaintext, associated_data)
    except (ValueError, TypeError, OverflowError) as exc:
        raise EncryptionError(f"AES-GCM encryption failed: {exc}") from exc


def decrypt_aes_gcm(key: bytes, ct_with_tag: bytes, nonce: bytes, associated_data: bytes | None = None) -> bytes:
    """Decrypt using AES-GCM and verify tag."""
    if len(key) != KEY_SIZE:
        raise KeyFormatError(f"AES-256 key must be {KEY_SIZE} bytes, got {len(key)}")
    if len(nonce) != IV_SIZE:
        raise DecryptionError(f"IV must be {IV_SIZE} bytes, got {len(nonce)}")
    try:
        return AESGCM(key).decrypt(nonce, ct_with_tag, associated_data)
    except InvalidTag as exc:
        raise TamperedDataError("Authentication failed: wrong key or tampered ciphertext") from exc


def _encode_metadata(metadata: FileMetadata) -> bytes:
    return json.dumps(metadata.to_dict(), separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def build_frame(file_bytes: bytes, metadata: FileMetadata) -> bytes:
    """Lay out `[u32 LE metadata length][metadata JSON][file bytes]`."""
    meta_bytes = _encode_metadata(metadata)
    return _LENGTH_PREFIX.pack(len(meta_bytes)) + meta_bytes + file_bytes


def parse_frame(frame: bytes) -> Tuple[bytes, FileMetadata]:
    if len(frame) < _LENGTH_PREFIX.size:
        raise DecryptionError("Decrypted payload is shorter than the length prefix")
    (meta_len,) = _LENGTH_PREFIX.unpack_from(frame, 0)
    body = frame[_LENGTH_PREFIX.size:]
    if meta_len > len(body):
        raise DecryptionError(f"Metadata length {meta_len} exceeds payload size {len(body)}")
    try:
        metadata = FileMetadata.from_dict(json.loads(body[:meta_len].decode("utf-8")))
    except (UnicodeDecodeError, ValueError, TypeError) as exc:
        raise DecryptionError(f"Malformed metadata record: {exc}") from exc
    return body[meta_len:], metadata


def encrypt_file(file_bytes: bytes, metadata: FileMetadata) -> EncryptedFile:
    """
    Encrypt a file together with its metadata record under a fresh key and IV.
    The returned ciphertext carries the GCM tag.
    """
    key = generate_key()
    iv = generate_iv()
    ciphertext = encrypt_aes_gcm(key, build_frame(file_bytes, metadata), iv)
    return EncryptedFile(ciphertext=ciphertext, key=key, iv=iv, metadata=metadata)


def decrypt_file(ciphertext: bytes, key: bytes, iv: bytes) -> Tuple[bytes, FileMetadata]:
    """Decrypt an envelope. Fails closed: no bytes are returned unless the tag and frame check out."""
    try:
        frame = decrypt_aes_gcm(key, ciphertext, iv)
        return parse_frame(frame)
    except DecryptionError as exc:
        logger.warning("Envelope decryption failed: %s", exc)
        raise


def export_key(key: bytes) -> str:
    """Raw key bytes as standard base64 (the browser's btoa form)."""
    if len(key) != KEY_SIZE:
        raise KeyFormatError(f"AES-256 key must be {KEY_SIZE} bytes, got {len(key)}")
    return base64.b64encode(key).decode("ascii")


def import_key(encoded: str) -> bytes:
    try:
        key = base64.b64decode(encoded.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError, AttributeError) as exc:
        raise KeyFormatError("Key is not valid base64") from exc
    if len(key) != KEY_SIZE:
        raise KeyFormatError(f"Key must decode to {KEY_SIZE} bytes, got {len(key)}")
    return key


def iv_to_list(iv: bytes) -> List[int]:
    """IV as a JSON-friendly list of byte values, the form share links carry."""
    return list(iv)


def iv_from_list(values: List[int]) -> bytes:
    try:
        iv = bytes(values)
    except (TypeError, ValueError) as exc:
        raise KeyFormatError("IV must be a list of byte values") from exc
    if len(iv) != IV_SIZE:
        raise KeyFormatError(f"IV must be {IV_SIZE} bytes, got {len(iv)}")
    return iv


def hash_content(data: bytes) -> str:
    """SHA-256 fingerprint as lowercase hex."""
    digest = hashes.Hash(hashes.SHA256())
    digest.update(data)
    return digest.finalize().hex()


def _derive_backup_key(password: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=BACKUP_KDF_ITERS,
    )
    return kdf.derive(password.encode("utf-8"))


def encrypt_key_backup(keys_data: str, password: str) -> Tuple[bytes, bytes, bytes]:
    """Encrypt a key bundle under a password. Returns (ciphertext, salt, iv)."""
    salt = os.urandom(BACKUP_SALT_SIZE)
    iv = generate_iv()
    ciphertext = encrypt_aes_gcm(_derive_backup_key(password, salt), keys_data.encode("utf-8"), iv)
    return ciphertext, salt, iv


def decrypt_key_backup(ciphertext: bytes, password: str, salt: bytes, iv: bytes) -> str:
    try:
        plaintext = decrypt_aes_gcm(_derive_backup_key(password, salt), ciphertext, iv)
    except DecryptionError as exc:
        raise DecryptionError("Incorrect password or corrupted backup") from exc
    return plaintext.decode("utf-8")


def create_backup_package(wallet_address: str, keys_data: str, password: str) -> str:
    """
    Build the JSON backup package stored alongside a wallet's files.
    The keys are only ever present inside the password-encrypted blob.
    """
    ciphertext, salt, iv = encrypt_key_backup(keys_data, password)
    package = {
        "version": "1.0",
        "walletAddress": wallet_address,
        "encryptedKeys": base64.b64encode(ciphertext).decode("ascii"),
        "salt": list(salt),
        "iv": list(iv),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return json.dumps(package)


def restore_backup_package(backup_data: str, password: str, wallet_address: str) -> str:
    package = json.loads(backup_data)
    if package.get("walletAddress") != wallet_address:
        raise ValueError("Backup does not match current wallet address")
    keys_data = decrypt_key_backup(
        base64.b64decode(package["encryptedKeys"]),
        password,
        bytes(package["salt"]),
        bytes(package["iv"]),
    )
    # Must still be the JSON the backup was made from.
    json.loads(keys_data)
    return keys_data
