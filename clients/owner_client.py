import argparse
from pathlib import Path

import requests

from medvault import crypto, links
from medvault.blobs import HttpBlobStore


def register_acl(base_url: str, cid: str, owner: str):
    try:
        res = requests.post(f"{base_url}/acl", json={"cid": cid, "owner": owner}, timeout=5)
        if res.status_code not in (200, 400):  # already registered -> 400
            print(f"ACL registration failed: {res.text}")
    except requests.RequestException as exc:  # pragma: no cover - network errors
        print(f"Warning: could not register ACL for {cid}: {exc}")


def run(args):
    file_bytes = Path(args.input).read_bytes()
    metadata = crypto.FileMetadata.for_file(
        file_bytes,
        file_name=Path(args.input).name,
        file_type=args.file_type,
        record_type=args.record_type,
        patient_id=args.patient_id,
    )
    encrypted = crypto.encrypt_file(file_bytes, metadata)
    cid = HttpBlobStore(args.server).put(encrypted.ciphertext)
    print(f"Encrypted file stored as {cid}")

    register_acl(args.server, cid, args.owner)

    payload = {
        "cid": cid,
        "encryption_key": crypto.export_key(encrypted.key),
        "iv": crypto.iv_to_list(encrypted.iv),
        "file_name": metadata.file_name,
        "file_type": metadata.file_type,
        "share_type": args.share_type,
        "created_by": args.owner,
        "custom_days": args.days,
        "shared_with": args.shared_with,
    }
    res = requests.post(f"{args.server}/tokens", json=payload, timeout=5)
    if res.status_code != 200:
        raise SystemExit(f"Could not create token: {res.text}")
    token_id = res.json()["token_id"]
    print(f"Share link: {links.token_url(args.link_base, token_id)}")


def main():
    parser = argparse.ArgumentParser(description="Owner workflow: encrypt, upload and share a record")
    parser.add_argument("input", help="File to encrypt and share")
    parser.add_argument("--owner", required=True, help="Owner wallet address")
    parser.add_argument("--share-type", default="one-time", choices=["one-time", "24-hours", "custom", "permanent"])
    parser.add_argument("--days", type=float, help="Window length for custom shares")
    parser.add_argument("--shared-with", default="public", help="Recipient wallet address")
    parser.add_argument("--file-type", default="application/octet-stream")
    parser.add_argument("--record-type", default="")
    parser.add_argument("--patient-id", default="")
    parser.add_argument("--server", default="http://localhost:8000", help="API base URL")
    parser.add_argument("--link-base", default="http://localhost:3000", help="Base URL for share links")
    run(parser.parse_args())


if __name__ == "__main__":
    main()
