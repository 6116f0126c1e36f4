"""Offline verifier for exported evidence bundles.

Needs nothing but the bundle: no vault, no key, no network. Two checks:

1. Files: SHA-256 of each supplied file against its manifest entry.
2. Custody log: per item, the canonical content is recomputed from each line
   and both hash chains are replayed (the export transcript chain and the
   stored BLAKE2b chain). Malformed lines are reported, never fatal.

Usage:

    python -m evault.export.verifier EvidenceVault_Export_20260101.zip
    python -m evault.export.verifier path/to/EvidenceVault_Export_20260101/

Signatures are Ed25519 and need a crypto library; pass `signature_checker`
to verify_custody_log (the `evault verify-export` command does).
"""

from __future__ import annotations

import argparse
import base64
import hashlib
import io
import json
import math
import posixpath
import sys
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from evault.errors import MalformedLogEntry

MANIFEST_NAME = "manifest.json"
CUSTODY_LOG_NAME = "custody_log.jsonl"
MEDIA_DIR = "media"

REQUIRED_LINE_FIELDS = ("id", "itemId", "ts", "action", "canonical", "exportHashSha256")

SignatureChecker = Callable[[str, str, str], bool]


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _canonical_value(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _canonical_value(value[k]) for k in sorted(value, key=str)}
    if isinstance(value, list):
        return [_canonical_value(v) for v in value]
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        if value.is_integer() and abs(value) < 2**53:
            return int(value)
    return value


def canonical_json(value: Any) -> str:
    """Canonical JSON of an already-parsed JSON value (sorted keys, compact)."""

    return json.dumps(
        _canonical_value(value),
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
        sort_keys=True,
    )


def _export_hash(prev: Optional[str], canonical: str) -> str:
    return _sha256_hex(f"{prev or ''}{canonical}".encode("utf-8"))


def _stored_hash(prev: Optional[str], canonical: str) -> str:
    digest = hashlib.blake2b(f"{prev or ''}{canonical}".encode("utf-8"), digest_size=32)
    return base64.b64encode(digest.digest()).decode("ascii")


# --- result types ---


@dataclass(frozen=True, slots=True)
class FileResult:
    filename: str
    status: str  # OK | MISMATCH | MISSING | UNKNOWN
    expected: Optional[str] = None
    actual: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "OK"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "status": self.status,
            "expected": self.expected,
            "actual": self.actual,
        }


@dataclass(frozen=True, slots=True)
class LogIssue:
    reason: str
    item_id: Optional[str] = None
    event_id: Optional[str] = None
    line: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "itemId": self.item_id,
            "eventId": self.event_id,
            "line": self.line,
        }

    def __str__(self) -> str:
        where = []
        if self.line is not None:
            where.append(f"line {self.line}")
        if self.event_id:
            where.append(f"event {self.event_id}")
        prefix = f"{', '.join(where)}: " if where else ""
        return f"{prefix}{self.reason}"


@dataclass(frozen=True)
class ItemResult:
    item_id: str
    event_count: int
    issues: List[LogIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues

    def to_dict(self) -> Dict[str, Any]:
        return {
            "itemId": self.item_id,
            "status": "OK" if self.ok else "FAIL",
            "eventCount": self.event_count,
            "issues": [i.to_dict() for i in self.issues],
        }


@dataclass(frozen=True)
class CustodyLogResult:
    items: List[ItemResult]
    malformed: List[LogIssue]

    @property
    def ok(self) -> bool:
        return not self.malformed and all(i.ok for i in self.items)


@dataclass(frozen=True)
class VerificationReport:
    """Aggregate outcome for one bundle."""

    files: List[FileResult] = field(default_factory=list)
    items: List[ItemResult] = field(default_factory=list)
    malformed: List[LogIssue] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return (
            not self.errors
            and not self.malformed
            and all(f.ok for f in self.files)
            and all(i.ok for i in self.items)
        )

    def counts(self) -> Dict[str, int]:
        return {
            "filesOk": sum(1 for f in self.files if f.ok),
            "filesFailed": sum(1 for f in self.files if not f.ok),
            "itemsOk": sum(1 for i in self.items if i.ok),
            "itemsFailed": sum(1 for i in self.items if not i.ok),
            "malformedLines": len(self.malformed),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "counts": self.counts(),
            "files": [f.to_dict() for f in self.files],
            "items": [i.to_dict() for i in self.items],
            "malformed": [m.to_dict() for m in self.malformed],
            "errors": list(self.errors),
        }

    def render_text(self) -> str:
        lines: List[str] = []
        for e in self.errors:
            lines.append(f"ERROR {e}")
        for f in self.files:
            lines.append(f"{f.filename}: {f.status}")
        for item in self.items:
            lines.append(f"item {item.item_id}: {'OK' if item.ok else 'FAIL'} ({item.event_count} events)")
            for issue in item.issues:
                lines.append(f"  - {issue}")
        for m in self.malformed:
            lines.append(f"malformed {m}")
        c = self.counts()
        lines.append(
            f"files ok={c['filesOk']} failed={c['filesFailed']}; "
            f"items ok={c['itemsOk']} failed={c['itemsFailed']}; "
            f"malformed lines={c['malformedLines']}"
        )
        lines.append("RESULT: " + ("OK" if self.ok else "FAIL"))
        return "\n".join(lines)


# --- files ---


def _manifest_index(manifest: Mapping[str, Any]) -> Dict[str, str]:
    entries = manifest.get("files") if isinstance(manifest, Mapping) else None
    index: Dict[str, str] = {}
    for entry in entries if isinstance(entries, list) else []:
        if isinstance(entry, Mapping):
            name, digest = entry.get("filename"), entry.get("sha256")
            if isinstance(name, str) and isinstance(digest, str):
                index[name] = digest.lower()
    return index


def _match_entry(index: Mapping[str, str], name: str) -> Optional[str]:
    """Find the manifest filename for a supplied file, trying path fallbacks."""

    normalized = name.replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    normalized = normalized.lstrip("/")
    base = posixpath.basename(normalized)
    for candidate in (normalized, f"{MEDIA_DIR}/{base}", base):
        if candidate in index:
            return candidate
    # A path that carries the bundle root (Root/media/x) or a deeper prefix.
    for key in index:
        if normalized.endswith("/" + key):
            return key
    return None


def verify_files(
    manifest: Mapping[str, Any],
    files: Mapping[str, bytes],
    *,
    report_missing: bool = True,
) -> List[FileResult]:
    """Hash each supplied file and compare with its manifest entry.

    Unmatched supplied files are UNKNOWN; manifest entries with no supplied
    file are MISSING when `report_missing` is set.
    """

    index = _manifest_index(manifest)
    results: List[FileResult] = []
    seen = set()
    for name in sorted(files):
        key = _match_entry(index, name)
        if key is None:
            results.append(FileResult(filename=name, status="UNKNOWN"))
            continue
        seen.add(key)
        actual = _sha256_hex(files[name])
        expected = index[key]
        status = "OK" if actual == expected else "MISMATCH"
        results.append(FileResult(filename=key, status=status, expected=expected, actual=actual))

    if report_missing:
        for key in sorted(set(index) - seen):
            results.append(FileResult(filename=key, status="MISSING", expected=index[key]))
    return results


# --- custody log ---


def parse_log_line(line_no: int, text: str) -> Dict[str, Any]:
    """Parse one custody-log line strictly. Raises MalformedLogEntry."""

    try:
        entry = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedLogEntry(line_no, f"invalid JSON: {exc.msg}") from None
    except (ValueError, RecursionError):
        raise MalformedLogEntry(line_no, "invalid JSON: too deeply nested or unparseable") from None
    if not isinstance(entry, dict):
        raise MalformedLogEntry(line_no, "line is not a JSON object")
    missing = [k for k in REQUIRED_LINE_FIELDS if entry.get(k) in (None, "")]
    if missing:
        raise MalformedLogEntry(line_no, f"missing fields: {', '.join(missing)}")
    if not isinstance(entry["ts"], (int, float)) or isinstance(entry["ts"], bool):
        raise MalformedLogEntry(line_no, "ts is not a number")
    if not isinstance(entry["canonical"], str):
        raise MalformedLogEntry(line_no, "canonical is not a string")
    return entry


def _content_of(entry: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "id": entry.get("id"),
        "itemId": entry.get("itemId"),
        "ts": entry.get("ts"),
        "action": entry.get("action"),
        "details": entry.get("details"),
    }


def _verify_item(
    item_id: str,
    rows: Sequence[Tuple[int, Dict[str, Any]]],
    signature_checker: Optional[SignatureChecker],
    trusted_public_key: Optional[str],
) -> ItemResult:
    issues: List[LogIssue] = []
    export_prev: Optional[str] = None
    stored_prev: Optional[str] = None

    # Stable by ts; equal timestamps keep file order.
    for line_no, entry in sorted(rows, key=lambda r: r[1]["ts"]):
        event_id = str(entry.get("id"))

        def issue(reason: str) -> None:
            issues.append(LogIssue(reason=reason, item_id=item_id, event_id=event_id, line=line_no))

        canonical = entry["canonical"]
        if canonical_json(_content_of(entry)) != canonical:
            issue("canonical mismatch")

        if (entry.get("exportPrevHashSha256") or None) != export_prev:
            issue("prev-hash mismatch")
        if _export_hash(export_prev, canonical) != str(entry["exportHashSha256"]).lower():
            issue("hash mismatch")
        export_prev = entry["exportHashSha256"]

        stored_hash = entry.get("hash")
        if stored_hash:
            if (entry.get("prevHash") or None) != stored_prev:
                issue("stored prev-hash mismatch")
            if _stored_hash(stored_prev, canonical) != stored_hash:
                issue("stored hash mismatch")
        stored_prev = stored_hash or None

        if signature_checker is not None:
            key = trusted_public_key or entry.get("publicKey")
            signature = entry.get("signature")
            if not key or not signature or not stored_hash:
                issue("missing signature")
            elif not signature_checker(key, stored_hash, signature):
                issue("bad signature")

    return ItemResult(item_id=item_id, event_count=len(rows), issues=issues)


def verify_custody_log(
    text: str,
    *,
    signature_checker: Optional[SignatureChecker] = None,
    trusted_public_key: Optional[str] = None,
) -> CustodyLogResult:
    """Replay every item's chains from a custody_log.jsonl text.

    `signature_checker(public_key_b64, hash, signature_b64) -> bool` enables
    signature checks; `trusted_public_key` overrides the key embedded in the
    lines (an embedded key only proves self-consistency).
    """

    groups: Dict[str, List[Tuple[int, Dict[str, Any]]]] = {}
    malformed: List[LogIssue] = []

    # Only "\n" separates records; U+2028 and friends may appear unescaped
    # inside JSON strings.
    for line_no, raw in enumerate(text.split("\n"), start=1):
        raw = raw.removesuffix("\r")
        if not raw.strip():
            continue
        try:
            entry = parse_log_line(line_no, raw)
        except MalformedLogEntry as exc:
            malformed.append(LogIssue(reason=exc.reason, line=exc.line_no))
            continue
        groups.setdefault(str(entry["itemId"]), []).append((line_no, entry))

    items = [
        _verify_item(item_id, rows, signature_checker, trusted_public_key)
        for item_id, rows in groups.items()
    ]
    return CustodyLogResult(items=items, malformed=malformed)


# --- bundles ---


def _verify_bundle_files(
    files: Mapping[str, bytes],
    *,
    signature_checker: Optional[SignatureChecker],
    trusted_public_key: Optional[str],
) -> VerificationReport:
    errors: List[str] = []
    manifest_raw = files.get(MANIFEST_NAME)
    if manifest_raw is None:
        return VerificationReport(errors=[f"missing {MANIFEST_NAME}"])
    try:
        manifest = json.loads(manifest_raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return VerificationReport(errors=[f"unreadable {MANIFEST_NAME}"])

    media = {name: data for name, data in files.items() if name.startswith(f"{MEDIA_DIR}/")}
    file_results = verify_files(manifest, media)

    log_raw = files.get(CUSTODY_LOG_NAME)
    if log_raw is None:
        errors.append(f"missing {CUSTODY_LOG_NAME}")
        log_result = CustodyLogResult(items=[], malformed=[])
    else:
        log_result = verify_custody_log(
            log_raw.decode("utf-8", errors="replace"),
            signature_checker=signature_checker,
            trusted_public_key=trusted_public_key,
        )

    return VerificationReport(
        files=file_results,
        items=log_result.items,
        malformed=log_result.malformed,
        errors=errors,
    )


def _strip_root(names: Sequence[str]) -> str:
    """The common bundle root directory of archive members ('' if none)."""

    if any(n == MANIFEST_NAME for n in names):
        return ""
    for n in names:
        if n.endswith("/" + MANIFEST_NAME) and n.count("/") == 1:
            return n[: -len(MANIFEST_NAME)]
    return ""


def verify_bundle_zip(
    source: Union[str, Path, bytes],
    *,
    signature_checker: Optional[SignatureChecker] = None,
    trusted_public_key: Optional[str] = None,
) -> VerificationReport:
    """Verify an export archive (path or raw bytes)."""

    handle = io.BytesIO(source) if isinstance(source, (bytes, bytearray)) else Path(source)
    try:
        with zipfile.ZipFile(handle) as zf:
            names = [n for n in zf.namelist() if not n.endswith("/")]
            root = _strip_root(names)
            files = {n[len(root):]: zf.read(n) for n in names if n.startswith(root)}
    except zipfile.BadZipFile:
        return VerificationReport(errors=["not a zip archive"])
    return _verify_bundle_files(
        files, signature_checker=signature_checker, trusted_public_key=trusted_public_key
    )


def verify_bundle_dir(
    bundle_dir: Union[str, Path],
    *,
    signature_checker: Optional[SignatureChecker] = None,
    trusted_public_key: Optional[str] = None,
) -> VerificationReport:
    """Verify an extracted bundle directory.

    Accepts the bundle root or a parent holding exactly one bundle root.
    """

    root = Path(bundle_dir)
    if not (root / MANIFEST_NAME).is_file():
        candidates = [p for p in root.iterdir() if (p / MANIFEST_NAME).is_file()] if root.is_dir() else []
        if len(candidates) != 1:
            return VerificationReport(errors=[f"missing {MANIFEST_NAME}"])
        root = candidates[0]

    files: Dict[str, bytes] = {}
    for p in sorted(root.rglob("*")):
        if p.is_file():
            files[p.relative_to(root).as_posix()] = p.read_bytes()
    return _verify_bundle_files(
        files, signature_checker=signature_checker, trusted_public_key=trusted_public_key
    )


def verify_bundle(
    path: Union[str, Path],
    *,
    signature_checker: Optional[SignatureChecker] = None,
    trusted_public_key: Optional[str] = None,
) -> VerificationReport:
    """Dispatch on path type: directory or zip archive."""

    p = Path(path)
    if p.is_dir():
        return verify_bundle_dir(
            p, signature_checker=signature_checker, trusted_public_key=trusted_public_key
        )
    return verify_bundle_zip(
        p, signature_checker=signature_checker, trusted_public_key=trusted_public_key
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="evault-verify",
        description="Verify an Evidence Vault export bundle offline.",
    )
    p.add_argument("bundle", help="Export .zip or extracted bundle directory")
    p.add_argument("--json", action="store_true", help="Print the report as JSON")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    path = Path(args.bundle)
    if not path.exists():
        print(f"error: no such file or directory: {path}", file=sys.stderr)
        return 2
    report = verify_bundle(path)
    if args.json:
        print(json.dumps(report.to_dict(), indent=2, sort_keys=True))
    else:
        print(report.render_text())
    return 0 if report.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
