"""
Share-link helpers.

Two link shapes exist: a short `/view?token=<id>` link that only works where
the token store is reachable, and a self-contained link whose `data`
parameter carries the token (key and IV included) as base64 JSON so it can
be opened on another device.
"""

import base64
import binascii
import json
import logging
from typing import Dict, Optional
from urllib.parse import parse_qs, quote, urlencode, urlparse

from . import crypto
from .tokens import AccessToken, policy_from_dict
from .timeutil import from_iso

logger = logging.getLogger(__name__)

VIEW_PATH = "/view"

_SHAREABLE_FIELDS = ("token_id", "cid", "encryption_key", "iv", "file_name", "file_type", "share_type", "max_views", "created_at")


def token_url(base_url: str, token_id: str) -> str:
    return f"{base_url.rstrip('/')}{VIEW_PATH}?{urlencode({'token': token_id})}"


def shareable_token_url(base_url: str, token: AccessToken) -> str:
    data = token.to_dict()
    payload = {name: data[name] for name in _SHAREABLE_FIELDS}
    payload.update(token.policy.to_dict())
    encoded = base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")
    return f"{base_url.rstrip('/')}{VIEW_PATH}?token={quote(token.token_id)}&data={quote(encoded, safe='')}"


def decode_token_payload(token_id: str, data: str) -> Optional[AccessToken]:
    """
    Rebuild a token from a link's `data` parameter. The result starts a fresh
    life on the viewer's side: active, zero views, unknown creator.
    Returns None when the payload is malformed or was issued for another id.
    """
    try:
        payload = json.loads(base64.b64decode(data, validate=True).decode("utf-8"))
        if payload.get("token_id") != token_id:
            logger.warning("Link payload does not belong to token %s", token_id)
            return None
        return AccessToken(
            token_id=token_id,
            cid=payload["cid"],
            encryption_key=payload["encryption_key"],
            iv=crypto.iv_from_list(payload["iv"]),
            file_name=payload["file_name"],
            file_type=payload.get("file_type", ""),
            policy=policy_from_dict(payload["share_type"], payload),
            created_at=from_iso(payload["created_at"]),
            created_by="unknown",
            max_views=payload.get("max_views"),
        )
    except (binascii.Error, UnicodeDecodeError, ValueError, KeyError, TypeError, AttributeError) as exc:
        logger.error("Error decoding token from link: %s", exc)
        return None


def direct_share_url(base_url: str, cid: str, key: bytes, iv: bytes, file_name: str, file_type: str) -> str:
    """Link carrying cid, key and IV directly, with no token at all."""
    params = {
        "cid": cid,
        "key": crypto.export_key(key),
        "iv": json.dumps(crypto.iv_to_list(iv)),
        "fileName": file_name,
        "fileType": file_type,
    }
    return f"{base_url.rstrip('/')}{VIEW_PATH}?{urlencode(params)}"


def parse_share_url(url: str) -> Dict[str, Optional[str]]:
    """Pull the viewer-relevant query parameters out of any share link."""
    query = parse_qs(urlparse(url).query)
    names = ("token", "data", "cid", "key", "iv", "fileName", "fileType")
    return {name: query[name][0] if name in query else None for name in names}
