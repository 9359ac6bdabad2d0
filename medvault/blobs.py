"""Ciphertext blob stores. The store, not the caller, assigns the content id."""

import base64
import logging
import threading
from typing import Dict

import requests

from .crypto import hash_content
from .errors import BlobNotFoundError, MedVaultError

logger = logging.getLogger(__name__)


def content_id(data: bytes) -> str:
    return "Qm" + hash_content(data)


class MemoryBlobStore:
    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, data: bytes) -> str:
        cid = content_id(data)
        with self._lock:
            self._blobs[cid] = bytes(data)
        return cid

    def get(self, cid: str) -> bytes:
        with self._lock:
            if cid not in self._blobs:
                raise BlobNotFoundError(cid)
            return self._blobs[cid]


class HttpBlobStore:
    """Client for the vault API's /files endpoints."""

    def __init__(self, base_url: str, session=None, timeout: float = 10):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def put(self, data: bytes) -> str:
        payload = {"data": base64.b64encode(data).decode("ascii")}
        res = self.session.post(f"{self.base_url}/files", json=payload, timeout=self.timeout)
        if res.status_code != 200:
            raise MedVaultError(f"Upload failed ({res.status_code}): {res.text}")
        cid = res.json()["cid"]
        logger.info("Uploaded %d encrypted bytes as %s", len(data), cid)
        return cid

    def get(self, cid: str) -> bytes:
        res = self.session.get(f"{self.base_url}/files/{cid}", timeout=self.timeout)
        if res.status_code == 404:
            raise BlobNotFoundError(cid)
        if res.status_code != 200:
            raise MedVaultError(f"Download failed ({res.status_code}): {res.text}")
        return base64.b64decode(res.json()["data"])
