import sys
from pathlib import Path
import base64
import json
from datetime import datetime, timezone

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from medvault import crypto, links, tokens  # noqa: E402
from medvault.store import MemoryStore  # noqa: E402

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
BASE = "https://vault.example.org/"


def _token(share_type="one-time", **options) -> tokens.AccessToken:
    manager = tokens.TokenManager(MemoryStore(), clock=lambda: T0)
    return manager.create_token(
        "QmAbc", crypto.generate_key(), crypto.generate_iv(), "scan & notes.pdf", "application/pdf",
        share_type, "0xOwner", **options
    )


def test_token_url():
    assert links.token_url(BASE, "QmAbc-1-ff") == "https://vault.example.org/view?token=QmAbc-1-ff"


def test_shareable_url_roundtrip_starts_fresh():
    token = _token("custom", custom_days=3, shared_with="0xB")
    token.view_count = 4
    url = links.shareable_token_url(BASE, token)
    params = links.parse_share_url(url)
    assert params["token"] == token.token_id

    decoded = links.decode_token_payload(params["token"], params["data"])
    assert decoded.cid == token.cid
    assert decoded.key == token.key
    assert decoded.iv == token.iv
    assert decoded.file_name == "scan & notes.pdf"
    assert decoded.policy == token.policy
    assert decoded.max_views is None
    assert decoded.view_count == 0
    assert decoded.is_active is True
    assert decoded.created_by == "unknown"
    assert decoded.shared_with == tokens.PUBLIC


def test_shareable_url_keeps_one_time_budget():
    token = _token("one-time")
    params = links.parse_share_url(links.shareable_token_url(BASE, token))
    decoded = links.decode_token_payload(token.token_id, params["data"])
    assert decoded.share_type is tokens.ShareType.ONE_TIME
    assert decoded.max_views == 1
    assert decoded.expires_at == token.expires_at


@pytest.mark.parametrize(
    "data",
    [
        "%%%not-base64",
        base64.b64encode(b"not json").decode(),
        base64.b64encode(json.dumps({"token_id": "t1"}).encode()).decode(),
        base64.b64encode(json.dumps(["list"]).encode()).decode(),
    ],
)
def test_decode_rejects_malformed_payloads(data):
    assert links.decode_token_payload("t1", data) is None


def test_decode_rejects_payload_for_other_token():
    token = _token()
    params = links.parse_share_url(links.shareable_token_url(BASE, token))
    assert links.decode_token_payload("someone-else", params["data"]) is None


def test_direct_share_url():
    key, iv = crypto.generate_key(), crypto.generate_iv()
    url = links.direct_share_url(BASE, "QmAbc", key, iv, "a b.txt", "text/plain")
    params = links.parse_share_url(url)
    assert params["token"] is None
    assert params["cid"] == "QmAbc"
    assert crypto.import_key(params["key"]) == key
    assert crypto.iv_from_list(json.loads(params["iv"])) == iv
    assert params["fileName"] == "a b.txt"
    assert params["fileType"] == "text/plain"


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-vv", "-s", "--capture=no"]))
