import argparse
from pathlib import Path

import requests

from medvault import crypto, links
from medvault.blobs import HttpBlobStore


def run(args):
    token_id = args.token
    if token_id.startswith("http"):
        token_id = links.parse_share_url(token_id)["token"]
        if not token_id:
            raise SystemExit("Link does not carry a token")

    res = requests.get(f"{args.server}/tokens/{token_id}/validate", timeout=5)
    if res.status_code != 200:
        raise SystemExit(f"Could not validate token: {res.text}")
    result = res.json()
    if not result["valid"]:
        raise SystemExit(f"Access denied: {result['reason']}")
    token = result["token"]

    ciphertext = HttpBlobStore(args.server).get(token["cid"])
    file_bytes, metadata = crypto.decrypt_file(
        ciphertext,
        crypto.import_key(token["encryption_key"]),
        crypto.iv_from_list(token["iv"]),
    )

    # Count the view before releasing the plaintext; a link used up meanwhile yields nothing.
    res = requests.post(f"{args.server}/tokens/{token_id}/view", timeout=5)
    if res.status_code != 200:
        raise SystemExit(f"Access denied: {res.json().get('detail')}")

    output = Path(args.output or Path(metadata.file_name).name)
    output.write_bytes(file_bytes)
    print(f"{metadata.file_name} ({metadata.file_type or 'unknown type'}) written to {output}")


def main():
    parser = argparse.ArgumentParser(description="Viewer workflow: open a shared record")
    parser.add_argument("token", help="Token id or share link")
    parser.add_argument("--server", default="http://localhost:8000", help="API base URL")
    parser.add_argument("--output", help="Where to write the file (defaults to its original name)")
    run(parser.parse_args())


if __name__ == "__main__":
    main()
