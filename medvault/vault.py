"""
Upload and view flows tying the envelope codec to the blob store, the token
manager and the ACL registry.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

from . import crypto, links
from .crypto import FileMetadata
from .errors import AccessDeniedError, TokenExhaustedError, TokenNotFoundError
from .tokens import AccessToken, ShareType, TokenManager, check_token, exhausted_reason

logger = logging.getLogger(__name__)


@dataclass
class UploadResult:
    cid: str
    key: bytes
    iv: bytes
    metadata: FileMetadata
    content_hash: str

    @property
    def exported_key(self) -> str:
        return crypto.export_key(self.key)


class Vault:
    def __init__(self, blobs, tokens: TokenManager, acls=None):
        self.blobs = blobs
        self.tokens = tokens
        self.acls = acls

    def upload(self, file_bytes: bytes, metadata: FileMetadata, owner: Optional[str] = None) -> UploadResult:
        """Encrypt, push the ciphertext to the blob store and register the owner's ACL."""
        encrypted = crypto.encrypt_file(file_bytes, metadata)
        cid = self.blobs.put(encrypted.ciphertext)
        if self.acls is not None and owner:
            self.acls.create(cid, owner)
        logger.info("Uploaded %s as %s", metadata.file_name, cid)
        return UploadResult(
            cid=cid,
            key=encrypted.key,
            iv=encrypted.iv,
            metadata=metadata,
            content_hash=crypto.hash_content(encrypted.ciphertext),
        )

    def share(self, upload: UploadResult, share_type: ShareType | str, created_by: str, **options) -> AccessToken:
        token = self.tokens.create_token(
            upload.cid,
            upload.key,
            upload.iv,
            upload.metadata.file_name,
            upload.metadata.file_type,
            share_type,
            created_by,
            **options,
        )
        self.tokens.store(token)
        return token

    def open_shared(self, token_id: str, now: Optional[datetime] = None) -> Tuple[bytes, FileMetadata]:
        """
        Validate a stored token, fetch and decrypt its file, then count the view.
        The view is counted only after decryption succeeded, atomically with a
        re-check so a link used up meanwhile yields nothing.
        """
        token = self.tokens.validate(token_id, now).raise_for_status()
        file_bytes, metadata = crypto.decrypt_file(self.blobs.get(token.cid), token.key, token.iv)
        self.tokens.consume(token_id, now).raise_for_status()
        return file_bytes, metadata

    def _open_embedded(self, token: AccessToken, now: Optional[datetime]) -> Tuple[bytes, FileMetadata]:
        check_token(token, now or self.tokens.clock()).raise_for_status()
        registry = self.tokens.burn_registry
        if registry is not None and registry.is_burned(token.token_id):
            raise TokenExhaustedError(exhausted_reason(token), token_id=token.token_id)
        result = crypto.decrypt_file(self.blobs.get(token.cid), token.key, token.iv)
        if registry is not None and token.max_views is not None:
            registry.burn(token.token_id, metadata={"cid": token.cid})
        return result

    def open_link(self, url: str, now: Optional[datetime] = None) -> Tuple[bytes, FileMetadata]:
        """
        Open any share link. A token known to the local store wins; otherwise an
        embedded token payload is used, and finally bare cid/key/iv parameters.
        """
        params = links.parse_share_url(url)
        token_id = params["token"]
        if token_id and self.tokens.get(token_id) is not None:
            return self.open_shared(token_id, now)
        if token_id and params["data"]:
            token = links.decode_token_payload(token_id, params["data"])
            if token is None:
                raise TokenNotFoundError("Invalid share link", token_id=token_id)
            return self._open_embedded(token, now)
        if params["cid"] and params["key"] and params["iv"]:
            key = crypto.import_key(params["key"])
            iv = crypto.iv_from_list(json.loads(params["iv"]))
            return crypto.decrypt_file(self.blobs.get(params["cid"]), key, iv)
        if token_id:
            raise TokenNotFoundError("Token not found", token_id=token_id)
        raise ValueError("Share link carries neither a token nor key material")

    def open_owned(self, cid: str, key: bytes, iv: bytes, wallet_address: str, now: Optional[datetime] = None) -> Tuple[bytes, FileMetadata]:
        """Decrypt a file for a wallet listed in its ACL. Legacy files without an ACL are claimed by the requester."""
        if self.acls is None:
            raise AccessDeniedError("No access control registry configured")
        self.acls.ensure_acl(cid, wallet_address)
        decision = self.acls.verify_access(cid, wallet_address, now)
        if not decision.has_access:
            raise AccessDeniedError(decision.reason)
        return crypto.decrypt_file(self.blobs.get(cid), key, iv)
