from __future__ import annotations

import io
import logging
import zipfile
from dataclasses import dataclass, field
from datetime import datetime, UTC
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union
from uuid import uuid4

from evault.crypto.blob import KeyLike
from evault.custody.chain import chain_for
from evault.errors import MissingVaultKey
from evault.storage.models import CustodyAction, CustodyEvent, EvidenceItem, now_ms
from evault.storage.sqlite_store import VaultStore

from .content import OutputMode
from .custody_log import build_custody_log
from .manifest import ExportManifest, build_export_manifest
from .templates import VERIFY_HTML, VERIFY_JS
from .verifier import CUSTODY_LOG_NAME, MANIFEST_NAME

log = logging.getLogger("evault.export")

BUNDLE_PREFIX = "EvidenceVault_Export_"


def bundle_root_name(created_at_ms: int) -> str:
    """`EvidenceVault_Export_YYYYMMDD` from the export's UTC date."""

    day = datetime.fromtimestamp(created_at_ms // 1000, tz=UTC)
    return f"{BUNDLE_PREFIX}{day:%Y%m%d}"


def build_readme(manifest: ExportManifest) -> str:
    return (
        "Evidence Vault export bundle\n"
        "\n"
        f"Export ID: {manifest.export_id}\n"
        f"Generated: {manifest.created_at}\n"
        f"Output mode: {OutputMode(manifest.output_mode).value}\n"
        "\n"
        "Contents\n"
        "- manifest.json / manifest.csv: file listing with SHA-256 hashes and metadata.\n"
        "- custody_log.jsonl: chain-of-custody events (one JSON object per line).\n"
        "- media/: original and/or redacted evidence files"
        + (" (sealed payloads, .enc.json)" if manifest.output_mode == OutputMode.ENCRYPTED else "")
        + ".\n"
        "- verify/: offline verifier (open verify.html in a browser).\n"
        "\n"
        "Verification\n"
        "- Browser: open verify/verify.html, select manifest.json, the media files\n"
        "  and custody_log.jsonl.\n"
        "- Command line: python -m evault.export.verifier <this folder or .zip>\n"
        "\n"
        "Notes\n"
        "- Keep originals secure. Redacted copies are irreversible in exports unless "
        "originals are included.\n"
        "- Follow local laws for consent and handling sensitive data.\n"
        "- The browser verifier rebuilds each event's canonical text with JavaScript\n"
        "  number formatting and UTF-16 key order. Details holding fractional or very\n"
        "  large numbers, or keys outside the Basic Multilingual Plane, can show a false\n"
        "  \"canonical mismatch\" there. The command-line verifier is authoritative; hash\n"
        "  links are checked on the stored canonical text in both.\n"
    )


@dataclass(frozen=True)
class ExportBundle:
    """An assembled export archive and the parts it was built from."""

    zip_data: bytes = field(repr=False)
    zip_filename: str
    root: str
    manifest: ExportManifest
    manifest_json: str
    manifest_csv: str
    custody_log: str
    paths: List[str]
    custody_events: List[CustodyEvent] = field(default_factory=list)


def _zip_bytes(files: Dict[str, bytes], created_at_ms: int) -> bytes:
    """Write entries in insertion order with a fixed timestamp."""

    stamp = datetime.fromtimestamp(created_at_ms // 1000, tz=UTC)
    date_time = (stamp.year, stamp.month, stamp.day, stamp.hour, stamp.minute, stamp.second)
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for path, data in files.items():
            info = zipfile.ZipInfo(path, date_time=date_time)
            info.compress_type = zipfile.ZIP_DEFLATED
            info.external_attr = 0o644 << 16
            zf.writestr(info, data)
    return buf.getvalue()


def build_export_zip(
    store: VaultStore,
    *,
    items: Sequence[EvidenceItem],
    export_id: Optional[str] = None,
    include_originals: bool = True,
    include_redacted: bool = True,
    include_metadata: bool = True,
    output_mode: Union[OutputMode, str] = OutputMode.REVIEW,
    vault_key: Optional[KeyLike] = None,
    record_custody: bool = False,
    created_at_ms: Optional[int] = None,
) -> ExportBundle:
    """Assemble a self-contained export archive.

    Layout (under `EvidenceVault_Export_YYYYMMDD/`):
    README.txt, manifest.json, manifest.csv, custody_log.jsonl,
    verify/verify.html, verify/verify.js, media/<files>.

    With `record_custody`, an `export` event is appended to each exported
    item's chain after the archive is assembled; those events are therefore
    not part of this bundle's custody log.

    Security notes:
    - Review mode writes plaintext into the archive; treat the output as
      sensitive as the evidence itself.
    - Encrypted mode never decrypts and needs no key unless custody is
      recorded (signing requires the vault key).

    """

    mode = OutputMode(output_mode)
    if record_custody and vault_key is None:
        raise MissingVaultKey("recording export custody events requires an unlocked vault key")

    export_id = export_id or f"export-{uuid4()}"
    created = created_at_ms if created_at_ms is not None else now_ms()

    built = build_export_manifest(
        export_id=export_id,
        items=items,
        include_originals=include_originals,
        include_redacted=include_redacted,
        include_metadata=include_metadata,
        output_mode=mode,
        vault_key=vault_key,
        created_at_ms=created,
    )
    custody = build_custody_log(store, [item.id for item in items])
    custody_text = custody.text

    root = bundle_root_name(created)
    files: Dict[str, bytes] = {
        f"{root}/README.txt": build_readme(built.manifest).encode("utf-8"),
        f"{root}/{MANIFEST_NAME}": built.json.encode("utf-8"),
        f"{root}/manifest.csv": built.csv.encode("utf-8"),
        f"{root}/{CUSTODY_LOG_NAME}": custody_text.encode("utf-8"),
        f"{root}/verify/verify.html": VERIFY_HTML.encode("utf-8"),
        f"{root}/verify/verify.js": VERIFY_JS.encode("utf-8"),
    }
    for content in built.contents:
        files[f"{root}/{content.filename}"] = content.data

    zip_data = _zip_bytes(files, created)

    events: List[CustodyEvent] = []
    if record_custody:
        exported: Dict[str, List[str]] = {}
        for content in built.contents:
            exported.setdefault(content.item_id, []).append(content.filename)
        chain = chain_for(store)
        for item_id, filenames in exported.items():
            events.append(
                chain.append(
                    item_id=item_id,
                    action=CustodyAction.EXPORT,
                    vault_key=vault_key,
                    details={"exportId": export_id, "outputMode": mode.value, "files": filenames},
                )
            )

    log.info(
        "export_built",
        extra={
            "export_id": export_id,
            "output_mode": mode.value,
            "item_count": len(items),
            "file_count": len(built.manifest.files),
            "custody_lines": len(custody),
            "zip_bytes": len(zip_data),
        },
    )

    return ExportBundle(
        zip_data=zip_data,
        zip_filename=f"{root}.zip",
        root=root,
        manifest=built.manifest,
        manifest_json=built.json,
        manifest_csv=built.csv,
        custody_log=custody_text,
        paths=list(files),
        custody_events=events,
    )


def write_export_zip(bundle: ExportBundle, out_dir: Union[str, Path]) -> Path:
    """Write the archive as `<out_dir>/<root>.zip` and return its path."""

    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)
    path = out / bundle.zip_filename
    path.write_bytes(bundle.zip_data)
    return path
