import argparse
import getpass
import json
import sys
from datetime import date
from pathlib import Path

from . import acl, crypto, links, tokens
from .blobs import content_id
from .config import Settings, configure_logging
from .registry import BurnRegistryClient
from .store import JsonFileStore


def _load_json(path: Path):
    return json.loads(path.read_text())


def _write_json(path: Path, data):
    path.write_text(json.dumps(data, indent=2))


def _token_manager(args) -> tokens.TokenManager:
    registry = BurnRegistryClient(args.burn_registry) if args.burn_registry else None
    return tokens.TokenManager(JsonFileStore(args.store_dir), burn_registry=registry)


def _acl_registry(args) -> acl.AclRegistry:
    return acl.AclRegistry(JsonFileStore(args.store_dir))


def _load_key_file(path: Path):
    data = _load_json(path)
    return data, crypto.import_key(data["key"]), crypto.iv_from_list(data["iv"])


def _password(args) -> str:
    return args.password or getpass.getpass("Backup password: ")


def cmd_encrypt(args):
    file_bytes = Path(args.input).read_bytes()
    metadata = crypto.FileMetadata.for_file(
        file_bytes,
        file_name=args.file_name or Path(args.input).name,
        file_type=args.file_type,
        record_type=args.record_type,
        patient_id=args.patient_id,
    )
    encrypted = crypto.encrypt_file(file_bytes, metadata)
    Path(args.output).write_bytes(encrypted.ciphertext)
    _write_json(
        Path(args.key_out),
        {
            "cid": content_id(encrypted.ciphertext),
            "key": crypto.export_key(encrypted.key),
            "iv": crypto.iv_to_list(encrypted.iv),
            "metadata": metadata.to_dict(),
            "content_hash": crypto.hash_content(encrypted.ciphertext),
        },
    )
    print(f"Encrypted {metadata.file_name} to {args.output}; key material in {args.key_out}")


def cmd_decrypt(args):
    _, key, iv = _load_key_file(Path(args.key_file))
    file_bytes, metadata = crypto.decrypt_file(Path(args.input).read_bytes(), key, iv)
    Path(args.output).write_bytes(file_bytes)
    print(json.dumps(metadata.to_dict(), indent=2))


def cmd_share(args):
    data, key, iv = _load_key_file(Path(args.key_file))
    metadata = data.get("metadata", {})
    manager = _token_manager(args)
    token = manager.create_token(
        data["cid"],
        key,
        iv,
        metadata.get("fileName", ""),
        metadata.get("fileType", ""),
        args.share_type,
        args.created_by,
        valid_from=date.fromisoformat(args.valid_from) if args.valid_from else None,
        valid_until=date.fromisoformat(args.valid_until) if args.valid_until else None,
        custom_days=args.days,
        max_views=args.max_views,
        shared_with=args.shared_with,
    )
    manager.store(token)
    print(f"Token {token.token_id} created")
    if args.embed:
        print(links.shareable_token_url(args.base_url, token))
    else:
        print(links.token_url(args.base_url, token.token_id))


def cmd_validate(args):
    result = _token_manager(args).validate(args.token_id)
    print(json.dumps({"valid": result.valid, "reason": result.reason, "code": result.code}, indent=2))
    if not result.valid:
        sys.exit(2)


def cmd_view(args):
    manager = _token_manager(args)
    token = manager.validate(args.token_id).raise_for_status()
    file_bytes, metadata = crypto.decrypt_file(Path(args.ciphertext).read_bytes(), token.key, token.iv)
    manager.consume(args.token_id).raise_for_status()
    Path(args.output).write_bytes(file_bytes)
    print(f"Decrypted {metadata.file_name} to {args.output}")


def cmd_revoke(args):
    if _token_manager(args).revoke(args.token_id):
        print(f"Token {args.token_id} revoked")
    else:
        print(f"Token {args.token_id} not found")


def cmd_cleanup(args):
    removed = _token_manager(args).cleanup()
    print(f"Removed {len(removed)} token(s)")


def cmd_list(args):
    manager = _token_manager(args)
    if args.recipient:
        found = manager.list_by_recipient(args.recipient)
    elif args.cid:
        found = manager.list_for_file(args.cid)
    else:
        found = manager.list_by_creator(args.created_by)
    for token in found:
        print(f"{token.token_id} [{token.file_name}]")
        print(tokens.describe(token))
        print()


def cmd_acl_create(args):
    _acl_registry(args).create(args.cid, args.owner)
    print(f"ACL created for {args.cid}")


def cmd_acl_grant(args):
    updated = _acl_registry(args).grant(args.cid, args.wallet, args.access_type, args.granted_by, args.hours)
    print("\n".join(acl.describe_access(updated)))


def cmd_acl_revoke(args):
    updated = _acl_registry(args).revoke(args.cid, args.wallet)
    print("\n".join(acl.describe_access(updated)))


def cmd_acl_verify(args):
    decision = _acl_registry(args).verify_access(args.cid, args.wallet)
    print(json.dumps({"has_access": decision.has_access, "reason": decision.reason, "access_type": decision.access_type}, indent=2))


def cmd_backup(args):
    keys_data = Path(args.keys).read_text()
    Path(args.output).write_text(crypto.create_backup_package(args.wallet, keys_data, _password(args)))
    print(f"Backup written to {args.output}")


def cmd_restore(args):
    keys_data = crypto.restore_backup_package(Path(args.input).read_text(), _password(args), args.wallet)
    Path(args.output).write_text(keys_data)
    print(f"Keys restored to {args.output}")


def build_parser(settings: Settings | None = None):
    settings = settings or Settings.from_env()
    parser = argparse.ArgumentParser(prog="medvault", description="Medical vault encryption and sharing tools")
    parser.add_argument("--store-dir", default=settings.store_dir, help="Directory for the local token/ACL store")
    parser.add_argument("--burn-registry", default=settings.burn_registry_url, help="Burn registry base URL")
    parser.add_argument("--log-level", default=settings.log_level)
    sub = parser.add_subparsers(dest="command", required=True)

    p_enc = sub.add_parser("encrypt", help="Encrypt a file into an envelope")
    p_enc.add_argument("input", help="Plain file to encrypt")
    p_enc.add_argument("output", help="Where to write the ciphertext")
    p_enc.add_argument("key_out", help="Where to write key, IV and metadata JSON")
    p_enc.add_argument("--file-name", help="Name recorded in the metadata (defaults to input name)")
    p_enc.add_argument("--file-type", default="application/octet-stream")
    p_enc.add_argument("--record-type", default="")
    p_enc.add_argument("--patient-id", default="")
    p_enc.set_defaults(func=cmd_encrypt)

    p_dec = sub.add_parser("decrypt", help="Decrypt an envelope with its key file")
    p_dec.add_argument("input", help="Ciphertext file")
    p_dec.add_argument("key_file", help="Key JSON written by encrypt")
    p_dec.add_argument("output", help="Where to write the plain file")
    p_dec.set_defaults(func=cmd_decrypt)

    p_share = sub.add_parser("share", help="Create and store an access token")
    p_share.add_argument("key_file", help="Key JSON written by encrypt")
    p_share.add_argument("share_type", choices=[t.value for t in tokens.ShareType])
    p_share.add_argument("created_by", help="Creator identity (wallet address)")
    p_share.add_argument("--days", type=float, help="Custom window length in days")
    p_share.add_argument("--valid-from", help="Custom window start date (YYYY-MM-DD)")
    p_share.add_argument("--valid-until", help="Custom window end date (YYYY-MM-DD)")
    p_share.add_argument("--max-views", type=int)
    p_share.add_argument("--shared-with", default=tokens.PUBLIC)
    p_share.add_argument("--base-url", default="http://localhost:3000")
    p_share.add_argument("--embed", action="store_true", help="Embed the token (key included) in the link")
    p_share.set_defaults(func=cmd_share)

    p_val = sub.add_parser("validate", help="Check a token without using it")
    p_val.add_argument("token_id")
    p_val.set_defaults(func=cmd_validate)

    p_view = sub.add_parser("view", help="Decrypt a file through a token and count the view")
    p_view.add_argument("token_id")
    p_view.add_argument("ciphertext", help="Ciphertext file the token points to")
    p_view.add_argument("output")
    p_view.set_defaults(func=cmd_view)

    p_rev = sub.add_parser("revoke", help="Revoke a token")
    p_rev.add_argument("token_id")
    p_rev.set_defaults(func=cmd_revoke)

    p_clean = sub.add_parser("cleanup", help="Delete tokens that can never be used again")
    p_clean.set_defaults(func=cmd_cleanup)

    p_list = sub.add_parser("list", help="List tokens")
    group = p_list.add_mutually_exclusive_group(required=True)
    group.add_argument("--created-by")
    group.add_argument("--recipient")
    group.add_argument("--cid")
    p_list.set_defaults(func=cmd_list)

    p_acl = sub.add_parser("acl-create", help="Create an ACL for a file")
    p_acl.add_argument("cid")
    p_acl.add_argument("owner")
    p_acl.set_defaults(func=cmd_acl_create)

    p_grant = sub.add_parser("acl-grant", help="Grant a wallet access to a file")
    p_grant.add_argument("cid")
    p_grant.add_argument("wallet")
    p_grant.add_argument("access_type", choices=list(acl.GRANT_TYPES))
    p_grant.add_argument("granted_by")
    p_grant.add_argument("--hours", type=float, help="Duration for temporary grants")
    p_grant.set_defaults(func=cmd_acl_grant)

    p_arev = sub.add_parser("acl-revoke", help="Remove a wallet from a file's ACL")
    p_arev.add_argument("cid")
    p_arev.add_argument("wallet")
    p_arev.set_defaults(func=cmd_acl_revoke)

    p_ver = sub.add_parser("acl-verify", help="Check whether a wallet may open a file")
    p_ver.add_argument("cid")
    p_ver.add_argument("wallet")
    p_ver.set_defaults(func=cmd_acl_verify)

    p_bak = sub.add_parser("backup", help="Password-encrypt a key bundle")
    p_bak.add_argument("wallet")
    p_bak.add_argument("keys", help="JSON file with the keys to back up")
    p_bak.add_argument("output")
    p_bak.add_argument("--password")
    p_bak.set_defaults(func=cmd_backup)

    p_res = sub.add_parser("restore", help="Restore a key bundle from a backup")
    p_res.add_argument("wallet")
    p_res.add_argument("input")
    p_res.add_argument("output")
    p_res.add_argument("--password")
    p_res.set_defaults(func=cmd_restore)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    try:
        args.func(args)
    except Exception as exc:  # pylint: disable=broad-except
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
