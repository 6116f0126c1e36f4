from __future__ import annotations

import argparse
import getpass
import json
import mimetypes
import os
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

from evault.config import VaultConfig, load_config
from evault.crypto.secrets import SecretBuffer
from evault.crypto.signing import public_key_pem, verify_hash_signature
from evault.crypto.vault import create_vault, unlock_vault
from evault.custody.chain import chain_for
from evault.demo import DEMO_PASSPHRASE, ensure_demo_vault, seed_demo_data
from evault.errors import EvidenceVaultError
from evault.export.bundle import build_export_zip, write_export_zip
from evault.export.content import OutputMode
from evault.export.verifier import verify_bundle
from evault.items import capture_item, save_redacted_copy, save_testimony
from evault.logging_utils import configure_logging
from evault.storage.context import StorageMode, store_for_mode
from evault.storage.models import ItemLocation, ItemMetadata, ItemType, RedactionRect
from evault.storage.sqlite_store import VaultStore


def _config(args: argparse.Namespace) -> VaultConfig:
    return load_config(getattr(args, "home", None))


def _store(args: argparse.Namespace) -> VaultStore:
    mode = StorageMode.DEMO if getattr(args, "demo", False) else StorageMode.PRIMARY
    return store_for_mode(mode, _config(args).home)


def _read_passphrase(args: argparse.Namespace, *, confirm: bool = False) -> str:
    """Passphrase from `--passphrase-env` or an interactive prompt.

    Security notes:
    - Never accepted as a plain argument (it would land in shell history
      and the process table).

    """

    if getattr(args, "demo", False):
        return DEMO_PASSPHRASE
    env_name = getattr(args, "passphrase_env", None)
    if env_name:
        value = os.environ.get(env_name)
        if not value:
            raise EvidenceVaultError(f"environment variable {env_name} is empty or unset")
        return value
    first = getpass.getpass("Vault passphrase: ")
    if confirm and getpass.getpass("Repeat passphrase: ") != first:
        raise EvidenceVaultError("passphrases do not match")
    return first


@contextmanager
def _unlocked(args: argparse.Namespace) -> Iterator[tuple[VaultStore, SecretBuffer]]:
    """Unlock for the duration of one command; the key is wiped afterwards."""

    store = _store(args)
    unlocked = unlock_vault(store, _read_passphrase(args))
    with unlocked.vault_key as key:
        yield store, key


def _print_json(obj) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True))


def _item_type_for(mime: str) -> ItemType:
    if mime.startswith("image/"):
        return ItemType.PHOTO
    if mime.startswith("video/"):
        return ItemType.VIDEO
    if mime.startswith("audio/"):
        return ItemType.AUDIO
    raise EvidenceVaultError(f"cannot infer item type from mime {mime}; pass --type")


def _parse_rect(text: str) -> RedactionRect:
    try:
        x, y, w, h = (float(part) for part in text.split(","))
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected x,y,width,height, got {text!r}") from None
    return RedactionRect(x=x, y=y, width=w, height=h)


def _image_size(args: argparse.Namespace) -> Optional[tuple[float, float]]:
    if args.image_width is None or args.image_height is None:
        return None
    return (args.image_width, args.image_height)


def cmd_init(args: argparse.Namespace) -> int:
    """Create a new vault.

    Security notes:
    - KDF cost comes from EVAULT_KDF_* and is persisted with the salt.

    """

    config = _config(args)
    store = _store(args)
    passphrase = _read_passphrase(args, confirm=True)
    created = create_vault(store, args.name, passphrase, kdf_params=config.kdf_params)
    created.vault_key.wipe()
    _print_json(
        {
            "db": str(store.db_path),
            "vault_name": created.vault_meta.vault_name,
            "signing_public_key": created.vault_meta.signing_public_key,
            "signing_public_key_pem": public_key_pem(created.vault_meta.signing_public_key),
        }
    )
    return 0


def cmd_unlock(args: argparse.Namespace) -> int:
    """Check a passphrase without changing anything but the status flag."""

    with _unlocked(args) as (store, _key):
        _print_json(store.summary())
    return 0


def cmd_capture(args: argparse.Namespace) -> int:
    path = Path(args.path)
    mime = args.mime or mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    item_type = ItemType(args.type) if args.type else _item_type_for(mime)
    location = None
    if args.lat is not None and args.lon is not None:
        location = ItemLocation(lat=args.lat, lon=args.lon, accuracy=args.accuracy)

    config = _config(args)
    with _unlocked(args) as (store, key):
        item = capture_item(
            store,
            key,
            path.read_bytes(),
            mime=mime,
            item_type=item_type,
            metadata=ItemMetadata(what=args.what, where=args.where, notes=args.notes),
            location=location,
            large_video_bytes=config.large_video_bytes,
        )
    _print_json({"id": item.id, "type": item.type.value, "mime": item.blob_mime, "size": item.blob_size})
    return 0


def cmd_testimony(args: argparse.Namespace) -> int:
    testimony = {"what": args.what, "when": args.when, "where": args.where, "notes": args.notes}
    testimony = {k: v for k, v in testimony.items() if v is not None}
    with _unlocked(args) as (store, key):
        item = save_testimony(store, key, testimony)
    _print_json({"id": item.id, "type": item.type.value, "size": item.blob_size})
    return 0


def cmd_redact(args: argparse.Namespace) -> int:
    """Attach an already-redacted rendition of an item.

    The pixel work happens elsewhere; this records the result and its
    rectangles in the vault and the custody chain.
    """

    path = Path(args.path)
    mime = args.mime or mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    with _unlocked(args) as (store, key):
        item = save_redacted_copy(
            store,
            key,
            args.item_id,
            path.read_bytes(),
            mime=mime,
            rects=list(args.rect or []),
            method=args.method,
            image_size=_image_size(args),
        )
    _print_json(
        {
            "id": item.id,
            "redacted_mime": item.redacted_mime,
            "redacted_size": item.redacted_size,
            "rects": [r.to_payload() for r in item.redaction.rects],
        }
    )
    return 0


def cmd_items(args: argparse.Namespace) -> int:
    store = _store(args)
    out = [
        {
            "id": item.id,
            "type": item.type.value,
            "captured_at": item.captured_at,
            "mime": item.blob_mime,
            "size": item.blob_size,
            "has_redacted": item.redacted_blob is not None,
            "metadata": item.metadata.to_payload(),
        }
        for item in store.list_items(limit=args.limit, offset=args.offset)
    ]
    _print_json(out)
    return 0


def cmd_custody_show(args: argparse.Namespace) -> int:
    store = _store(args)
    _print_json([e.to_payload() for e in chain_for(store).events(args.item_id)])
    return 0


def cmd_custody_verify(args: argparse.Namespace) -> int:
    """Verify an item's stored chain.

    With `--record`, the outcome is itself appended as a `verify` event,
    which needs the passphrase.
    """

    if args.record:
        with _unlocked(args) as (store, key):
            report, _event = chain_for(store).record_verification(args.item_id, key)
    else:
        report = chain_for(_store(args)).verify(args.item_id)
    _print_json(report.to_dict())
    return 0 if report.ok else 1


def cmd_export(args: argparse.Namespace) -> int:
    """Build an export archive for some or all items.

    Security notes:
    - Review mode writes decrypted evidence into the archive.
    - Exported items get an `export` custody event.

    """

    with _unlocked(args) as (store, key):
        if args.item_id:
            items = [store.get_item(i) for i in args.item_id]
        else:
            items = store.list_items(limit=10_000)
        bundle = build_export_zip(
            store,
            items=items,
            include_originals=not args.no_originals,
            include_redacted=not args.no_redacted,
            include_metadata=not args.no_metadata,
            output_mode=OutputMode(args.mode),
            vault_key=key,
            record_custody=True,
        )
    path = write_export_zip(bundle, args.out_dir)
    _print_json(
        {
            "export_id": bundle.manifest.export_id,
            "path": str(path),
            "files": len(bundle.manifest.files),
            "custody_lines": sum(1 for line in bundle.custody_log.split("\n") if line),
        }
    )
    return 0


def cmd_verify_export(args: argparse.Namespace) -> int:
    """Verify an export archive or extracted folder, signatures included."""

    path = Path(args.bundle)
    if not path.exists():
        print(f"error: no such file or directory: {path}", file=sys.stderr)
        return 2
    report = verify_bundle(
        path, signature_checker=verify_hash_signature, trusted_public_key=args.public_key
    )
    if args.json:
        _print_json(report.to_dict())
    else:
        print(report.render_text())
    return 0 if report.ok else 1


def cmd_demo(args: argparse.Namespace) -> int:
    """Create (or reopen) the demo vault and seed it with synthetic items."""

    store = store_for_mode(StorageMode.DEMO, _config(args).home)
    with ensure_demo_vault(store, kdf_params=_config(args).kdf_params) as key:
        seeded = seed_demo_data(store, key)
    _print_json({"db": str(store.db_path), "seeded": [i.id for i in seeded]})
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the local API server.

    Security notes:
    - If EVAULT_API_KEYS is set, requests must provide X-Evault-Api-Key.
    - Bind to 127.0.0.1 by default (safer than 0.0.0.0).

    """

    try:
        import uvicorn
    except Exception as e:
        print(f"error: uvicorn is required to serve the API: {e}", file=sys.stderr)
        return 2

    from evault.api.server import create_app

    mode = StorageMode.DEMO if args.demo else StorageMode.PRIMARY
    app = create_app(config=_config(args), mode=mode)
    uvicorn.run(app, host=args.host, port=int(args.port), log_level=args.uvicorn_log_level)
    return 0


def _add_vault_args(p: argparse.ArgumentParser, *, passphrase: bool = True) -> None:
    p.add_argument("--home", default=None, help="Vault home directory (default: EVAULT_HOME or ~/.evault)")
    p.add_argument("--demo", action="store_true", help="Operate on the demo vault")
    if passphrase:
        p.add_argument(
            "--passphrase-env",
            default=None,
            metavar="VAR",
            help="Read the passphrase from this environment variable instead of prompting",
        )


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI parser."""
    p = argparse.ArgumentParser(prog="evault", description="Evidence Vault CLI")
    p.add_argument("--log-level", default=None, help="Log level (default: EVAULT_LOG_LEVEL or INFO)")
    sub = p.add_subparsers(dest="cmd", required=True)

    ip = sub.add_parser("init", help="Create a new vault")
    _add_vault_args(ip)
    ip.add_argument("--name", default="Evidence Vault", help="Vault display name")
    ip.set_defaults(func=cmd_init)

    up = sub.add_parser("unlock", help="Check the passphrase and show a vault summary")
    _add_vault_args(up)
    up.set_defaults(func=cmd_unlock)

    cp = sub.add_parser("capture", help="Encrypt a photo, video or audio file into the vault")
    _add_vault_args(cp)
    cp.add_argument("path", help="File to capture")
    cp.add_argument("--type", choices=[t.value for t in ItemType], default=None)
    cp.add_argument("--mime", default=None, help="Override the guessed MIME type")
    cp.add_argument("--what", default=None)
    cp.add_argument("--where", default=None)
    cp.add_argument("--notes", default=None)
    cp.add_argument("--lat", type=float, default=None)
    cp.add_argument("--lon", type=float, default=None)
    cp.add_argument("--accuracy", type=float, default=None)
    cp.set_defaults(func=cmd_capture)

    tp = sub.add_parser("testimony", help="Store a written statement")
    _add_vault_args(tp)
    tp.add_argument("--what", required=True)
    tp.add_argument("--when", default=None)
    tp.add_argument("--where", default=None)
    tp.add_argument("--notes", default=None)
    tp.set_defaults(func=cmd_testimony)

    rp = sub.add_parser("redact", help="Attach a redacted rendition to an item")
    _add_vault_args(rp)
    rp.add_argument("item_id")
    rp.add_argument("path", help="Redacted image file")
    rp.add_argument("--mime", default=None)
    rp.add_argument("--rect", type=_parse_rect, action="append", help="x,y,width,height (repeatable)")
    rp.add_argument("--method", default="pixelate")
    rp.add_argument("--image-width", type=float, default=None, help="Clamp rects to this image width")
    rp.add_argument("--image-height", type=float, default=None, help="Clamp rects to this image height")
    rp.set_defaults(func=cmd_redact)

    lp = sub.add_parser("items", help="List items (metadata only, nothing is decrypted)")
    _add_vault_args(lp, passphrase=False)
    lp.add_argument("--limit", type=int, default=100)
    lp.add_argument("--offset", type=int, default=0)
    lp.set_defaults(func=cmd_items)

    cu = sub.add_parser("custody", help="Inspect an item's custody chain")
    cu_sub = cu.add_subparsers(dest="custody_cmd", required=True)
    cs = cu_sub.add_parser("show", help="Print the stored events")
    _add_vault_args(cs, passphrase=False)
    cs.add_argument("item_id")
    cs.set_defaults(func=cmd_custody_show)
    cv = cu_sub.add_parser("verify", help="Verify hashes, linkage and signatures")
    _add_vault_args(cv)
    cv.add_argument("item_id")
    cv.add_argument("--record", action="store_true", help="Append the result as a verify event")
    cv.set_defaults(func=cmd_custody_verify)

    ep = sub.add_parser("export", help="Build an export archive")
    _add_vault_args(ep)
    ep.add_argument("--out-dir", required=True, help="Directory to write the .zip into")
    ep.add_argument("--item-id", action="append", default=None, help="Item to export (repeatable; default: all)")
    ep.add_argument("--mode", choices=[m.value for m in OutputMode], default=OutputMode.REVIEW.value)
    ep.add_argument("--no-originals", action="store_true")
    ep.add_argument("--no-redacted", action="store_true")
    ep.add_argument("--no-metadata", action="store_true")
    ep.set_defaults(func=cmd_export)

    vp = sub.add_parser("verify-export", help="Verify an export archive or folder")
    vp.add_argument("bundle", help="Export .zip or extracted folder")
    vp.add_argument("--public-key", default=None, help="Trusted signing public key (base64)")
    vp.add_argument("--json", action="store_true")
    vp.set_defaults(func=cmd_verify_export)

    dp = sub.add_parser("demo", help="Create and seed the demo vault")
    dp.add_argument("--home", default=None)
    dp.set_defaults(func=cmd_demo)

    sv = sub.add_parser("serve", help="Run the local HTTP API")
    _add_vault_args(sv, passphrase=False)
    sv.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    sv.add_argument("--port", type=int, default=8080, help="Bind port (default: 8080)")
    sv.add_argument("--log-level", dest="uvicorn_log_level", default="info", help="Uvicorn log level")
    sv.set_defaults(func=cmd_serve)

    return p


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level or load_config(getattr(args, "home", None)).log_level)
    try:
        return int(args.func(args))
    except (EvidenceVaultError, LookupError, OSError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
