import sys
from pathlib import Path
import base64
import json
import struct

import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

# Ensure project root is on sys.path for direct `python tests/test_crypto.py` runs.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from medvault import crypto  # noqa: E402
from medvault.errors import DecryptionError, KeyFormatError, TamperedDataError  # noqa: E402

GREEN = "\033[92m"
CYAN = "\033[96m"
YELLOW = "\033[93m"
RESET = "\033[0m"


def heading(name: str, color: str = CYAN):
    print(f"\n{color}--- {name} ---{RESET}")


def _metadata(file_bytes: bytes = b"0123456789", name: str = "a.txt") -> crypto.FileMetadata:
    return crypto.FileMetadata.for_file(
        file_bytes,
        file_name=name,
        file_type="text/plain",
        record_type="lab-result",
        patient_id="patient-42",
        upload_date="2024-05-01",
    )


def test_encrypt_decrypt_roundtrip():
    heading("test_encrypt_decrypt_roundtrip", color=GREEN)
    file_bytes = b"0123456789"
    metadata = _metadata(file_bytes)
    encrypted = crypto.encrypt_file(file_bytes, metadata)
    assert len(encrypted.key) == 32
    assert len(encrypted.iv) == 12
    assert encrypted.metadata == metadata

    recovered, recovered_meta = crypto.decrypt_file(encrypted.ciphertext, encrypted.key, encrypted.iv)
    assert recovered == file_bytes
    assert recovered_meta == metadata
    assert recovered_meta.file_size == 10


def test_frame_layout_and_ciphertext_length():
    heading("test_frame_layout_and_ciphertext_length", color=CYAN)
    file_bytes = b"x" * 100
    metadata = _metadata(file_bytes)
    encrypted = crypto.encrypt_file(file_bytes, metadata)

    frame = AESGCM(encrypted.key).decrypt(encrypted.iv, encrypted.ciphertext, None)
    (meta_len,) = struct.unpack("<I", frame[:4])
    meta = json.loads(frame[4:4 + meta_len].decode("utf-8"))
    assert meta["fileName"] == "a.txt"
    assert meta["patientId"] == "patient-42"
    assert frame[4 + meta_len:] == file_bytes
    assert len(encrypted.ciphertext) == len(frame) + crypto.TAG_SIZE


def test_zero_length_file():
    heading("test_zero_length_file", color=YELLOW)
    metadata = _metadata(b"", name="empty.bin")
    encrypted = crypto.encrypt_file(b"", metadata)
    recovered, recovered_meta = crypto.decrypt_file(encrypted.ciphertext, encrypted.key, encrypted.iv)
    assert recovered == b""
    assert recovered_meta.file_name == "empty.bin"


def test_metadata_needing_escapes_roundtrips():
    heading("test_metadata_needing_escapes_roundtrips", color=YELLOW)
    metadata = crypto.FileMetadata(
        file_name='scan "final"\\v2\n\u00e9\u6f22\U0001f600.pdf',
        file_type="application/pdf",
        extra={"note": "tab\there", "tags": ["x", "y"]},
    )
    encrypted = crypto.encrypt_file(b"%PDF", metadata)
    _, recovered_meta = crypto.decrypt_file(encrypted.ciphertext, encrypted.key, encrypted.iv)
    assert recovered_meta == metadata


def test_single_bit_flips_are_detected():
    heading("test_single_bit_flips_are_detected", color=GREEN)
    encrypted = crypto.encrypt_file(b"0123456789", crypto.FileMetadata(file_name="a.txt"))
    for index in range(len(encrypted.ciphertext)):
        for bit in range(8):
            tampered = bytearray(encrypted.ciphertext)
            tampered[index] ^= 1 << bit
            with pytest.raises(TamperedDataError):
                crypto.decrypt_file(bytes(tampered), encrypted.key, encrypted.iv)


def test_truncated_ciphertext_fails():
    heading("test_truncated_ciphertext_fails", color=GREEN)
    encrypted = crypto.encrypt_file(b"data", crypto.FileMetadata(file_name="a.txt"))
    with pytest.raises(DecryptionError):
        crypto.decrypt_file(encrypted.ciphertext[:-1], encrypted.key, encrypted.iv)


def test_wrong_key_fails():
    heading("test_wrong_key_fails", color=GREEN)
    encrypted = crypto.encrypt_file(b"secret", crypto.FileMetadata(file_name="a.txt"))
    with pytest.raises(TamperedDataError):
        crypto.decrypt_file(encrypted.ciphertext, crypto.generate_key(), encrypted.iv)
    with pytest.raises(KeyFormatError):
        crypto.decrypt_file(encrypted.ciphertext, b"short", encrypted.iv)


def test_wrong_iv_fails():
    heading("test_wrong_iv_fails", color=GREEN)
    encrypted = crypto.encrypt_file(b"secret", crypto.FileMetadata(file_name="a.txt"))
    with pytest.raises(TamperedDataError):
        crypto.decrypt_file(encrypted.ciphertext, encrypted.key, crypto.generate_iv())
    with pytest.raises(DecryptionError):
        crypto.decrypt_file(encrypted.ciphertext, encrypted.key, encrypted.iv[:8])


def _seal(frame: bytes):
    key, iv = crypto.generate_key(), crypto.generate_iv()
    return crypto.encrypt_aes_gcm(key, frame, iv), key, iv


def test_oversized_length_prefix_fails_closed():
    heading("test_oversized_length_prefix_fails_closed", color=CYAN)
    ciphertext, key, iv = _seal(struct.pack("<I", 1000) + b'{"fileName":"a"}' + b"file")
    with pytest.raises(DecryptionError) as excinfo:
        crypto.decrypt_file(ciphertext, key, iv)
    assert not isinstance(excinfo.value, TamperedDataError)


def test_short_or_unparseable_frame_fails():
    heading("test_short_or_unparseable_frame_fails", color=CYAN)
    for frame in (
        b"\x01\x00",
        struct.pack("<I", 5) + b"nope!" + b"file",
        struct.pack("<I", 2) + b"[]",
        struct.pack("<I", 14) + b'{"fileSize":1}',
    ):
        ciphertext, key, iv = _seal(frame)
        with pytest.raises(DecryptionError):
            crypto.decrypt_file(ciphertext, key, iv)


def test_iv_never_repeats():
    heading("test_iv_never_repeats", color=YELLOW)
    metadata = crypto.FileMetadata(file_name="a.txt")
    ivs = {crypto.encrypt_file(b"x", metadata).iv for _ in range(10_000)}
    assert len(ivs) == 10_000


def test_export_import_key_roundtrip():
    heading("test_export_import_key_roundtrip", color=YELLOW)
    key = crypto.generate_key()
    exported = crypto.export_key(key)
    assert base64.b64decode(exported) == key
    assert crypto.import_key(exported) == key


@pytest.mark.parametrize(
    "encoded",
    [
        base64.b64encode(b"k" * 16).decode(),
        base64.b64encode(b"k" * 33).decode(),
        "not base64 at all!",
        "",
    ],
)
def test_import_key_rejects_bad_material(encoded):
    with pytest.raises(KeyFormatError):
        crypto.import_key(encoded)


def test_iv_list_roundtrip_and_validation():
    iv = crypto.generate_iv()
    assert crypto.iv_from_list(crypto.iv_to_list(iv)) == iv
    with pytest.raises(KeyFormatError):
        crypto.iv_from_list([1, 2, 3])
    with pytest.raises(KeyFormatError):
        crypto.iv_from_list([256] * 12)


def test_hash_content_is_sha256_hex():
    heading("test_hash_content_is_sha256_hex", color=YELLOW)
    assert crypto.hash_content(b"abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    assert crypto.hash_content(b"abc") == crypto.hash_content(b"abc")


def test_key_backup_roundtrip():
    heading("test_key_backup_roundtrip", color=GREEN)
    keys_data = json.dumps([{"cid": "Qm1", "key": crypto.export_key(crypto.generate_key())}])
    package = crypto.create_backup_package("0xA", keys_data, "correct horse")
    parsed = json.loads(package)
    assert parsed["walletAddress"] == "0xA"
    assert keys_data not in package
    assert crypto.restore_backup_package(package, "correct horse", "0xA") == keys_data


def test_key_backup_rejects_wrong_password_and_wallet():
    heading("test_key_backup_rejects_wrong_password_and_wallet", color=GREEN)
    package = crypto.create_backup_package("0xA", "{}", "pw")
    with pytest.raises(DecryptionError, match="Incorrect password"):
        crypto.restore_backup_package(package, "other", "0xA")
    with pytest.raises(ValueError, match="wallet"):
        crypto.restore_backup_package(package, "pw", "0xB")


if __name__ == "__main__":
    # Running as a script shows verbose pytest output in the terminal.
    raise SystemExit(pytest.main([__file__, "-vv", "-s", "--capture=no"]))
