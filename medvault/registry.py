"""HTTP client for the burn registry service (global record of used one-time links)."""

import logging
from typing import Dict, Optional

import requests

from .errors import RegistryError

logger = logging.getLogger(__name__)


class BurnRegistryClient:
    def __init__(self, base_url: str, session=None, timeout: float = 5):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def is_burned(self, token_id: str) -> bool:
        """Raises RegistryError when the registry cannot answer; callers fail closed."""
        try:
            res = self.session.get(f"{self.base_url}/tokens/check", params={"token_id": token_id}, timeout=self.timeout)
        except requests.RequestException as exc:
            raise RegistryError(f"Burn registry unreachable: {exc}") from exc
        if res.status_code != 200:
            raise RegistryError(f"Burn check failed ({res.status_code}): {res.text}")
        return bool(res.json()["is_burned"])

    def burn(self, token_id: str, burned_by: Optional[str] = None, metadata: Optional[Dict] = None) -> None:
        payload = {"token_id": token_id, "burned_by": burned_by, "metadata": metadata}
        try:
            res = self.session.post(f"{self.base_url}/tokens/burn", json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise RegistryError(f"Burn registry unreachable: {exc}") from exc
        if res.status_code != 200:
            raise RegistryError(f"Burn failed ({res.status_code}): {res.text}")
        logger.info("Token %s burned in registry", token_id)
