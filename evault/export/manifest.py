from __future__ import annotations

import csv
import io
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from evault.crypto.blob import KeyLike
from evault.custody.canonical import iso_from_ms
from evault.storage.models import EvidenceItem, ItemLocation, now_ms

from .content import ContentStrategy, OutputMode, ResolvedContent, Variant, content_strategy

log = logging.getLogger("evault.export")

CSV_COLUMNS = (
    "filename",
    "sha256",
    "capturedAt",
    "what",
    "where",
    "notes",
    "location_lat",
    "location_lon",
    "location_accuracy",
    "location_ts",
    "custody_log",
)


def custody_pointer(item_id: str) -> str:
    return f"custody/{item_id}.json"


@dataclass(frozen=True, slots=True)
class ManifestLocation:
    lat: float
    lon: float
    accuracy: Optional[float] = None
    ts: Optional[str] = None

    @classmethod
    def from_item_location(cls, location: Optional[ItemLocation]) -> Optional["ManifestLocation"]:
        if location is None:
            return None
        return cls(
            lat=location.lat,
            lon=location.lon,
            accuracy=location.accuracy,
            ts=iso_from_ms(location.ts) if location.ts is not None else None,
        )

    def to_payload(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"lat": self.lat, "lon": self.lon}
        if self.accuracy is not None:
            out["accuracy"] = self.accuracy
        if self.ts is not None:
            out["ts"] = self.ts
        return out


@dataclass(frozen=True, slots=True)
class ManifestFileEntry:
    filename: str
    sha256: str
    captured_at: str
    custody_log: str
    what: Optional[str] = None
    where: Optional[str] = None
    notes: Optional[str] = None
    location: Optional[ManifestLocation] = None

    def to_payload(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "filename": self.filename,
            "sha256": self.sha256,
            "capturedAt": self.captured_at,
        }
        for key, value in (("what", self.what), ("where", self.where), ("notes", self.notes)):
            if value is not None:
                out[key] = value
        if self.location is not None:
            out["location"] = self.location.to_payload()
        out["custodyLog"] = self.custody_log
        return out


@dataclass(frozen=True, slots=True)
class ExportManifest:
    export_id: str
    created_at: str
    output_mode: OutputMode
    include_originals: bool
    include_redacted: bool
    include_metadata: bool
    files: List[ManifestFileEntry]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "exportId": self.export_id,
            "createdAt": self.created_at,
            "outputMode": OutputMode(self.output_mode).value,
            "includeOriginals": self.include_originals,
            "includeRedacted": self.include_redacted,
            "includeMetadata": self.include_metadata,
            "files": [f.to_payload() for f in self.files],
        }


@dataclass(frozen=True)
class ManifestBuild:
    """A manifest in its three renderings, plus the resolved file contents.

    `contents` is aligned with `manifest.files` and holds exported bytes
    (plaintext in review mode); it is kept out of repr.
    """

    manifest: ExportManifest
    json: str
    csv: str
    contents: List[ResolvedContent] = field(default_factory=list, repr=False)


def _csv_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def manifest_to_csv(files: Sequence[ManifestFileEntry]) -> str:
    """Render manifest entries as CSV with a fixed header.

    Fields containing a comma, quote or newline are quoted, with embedded
    quotes doubled. Rows are separated by `\\n`; there is no trailing newline.
    """

    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n", quoting=csv.QUOTE_MINIMAL)
    writer.writerow(CSV_COLUMNS)
    for f in files:
        loc = f.location
        writer.writerow(
            [
                _csv_value(f.filename),
                _csv_value(f.sha256),
                _csv_value(f.captured_at),
                _csv_value(f.what),
                _csv_value(f.where),
                _csv_value(f.notes),
                _csv_value(loc.lat if loc else None),
                _csv_value(loc.lon if loc else None),
                _csv_value(loc.accuracy if loc else None),
                _csv_value(loc.ts if loc else None),
                _csv_value(f.custody_log),
            ]
        )
    return buf.getvalue().rstrip("\n")


def manifest_to_json(manifest: ExportManifest) -> str:
    """Pretty JSON in schema field order."""

    return json.dumps(manifest.to_payload(), indent=2, ensure_ascii=False)


def _requested_variants(include_originals: bool, include_redacted: bool) -> Tuple[Variant, ...]:
    variants: List[Variant] = []
    if include_originals:
        variants.append(Variant.ORIGINAL)
    if include_redacted:
        variants.append(Variant.REDACTED)
    return tuple(variants)


def _entry_for(
    item: EvidenceItem, content: ResolvedContent, include_metadata: bool
) -> ManifestFileEntry:
    md = item.metadata if include_metadata else None
    return ManifestFileEntry(
        filename=content.filename,
        sha256=content.sha256,
        captured_at=iso_from_ms(item.captured_at),
        custody_log=custody_pointer(item.id),
        what=md.what if md else None,
        where=md.where if md else None,
        notes=md.notes if md else None,
        location=ManifestLocation.from_item_location(item.location) if include_metadata else None,
    )


def resolve_export_contents(
    items: Iterable[EvidenceItem],
    strategy: ContentStrategy,
    *,
    include_originals: bool,
    include_redacted: bool,
) -> List[Tuple[EvidenceItem, ResolvedContent]]:
    """Resolve every requested variant that exists, in item order."""

    out: List[Tuple[EvidenceItem, ResolvedContent]] = []
    variants = _requested_variants(include_originals, include_redacted)
    for item in items:
        for variant in variants:
            content = strategy.resolve(item, variant)
            if content is not None:
                out.append((item, content))
    return out


def build_export_manifest(
    *,
    export_id: str,
    items: Sequence[EvidenceItem],
    include_originals: bool = True,
    include_redacted: bool = True,
    include_metadata: bool = True,
    output_mode: Union[OutputMode, str] = OutputMode.REVIEW,
    vault_key: Optional[KeyLike] = None,
    created_at_ms: Optional[int] = None,
) -> ManifestBuild:
    """Hash every selected item variant and build the export manifest.

    Review mode hashes decrypted plaintext and requires `vault_key`
    (MissingVaultKey otherwise). Encrypted mode hashes the canonical
    sealed payload and never needs a key.

    Security notes:
    - A variant that fails authentication raises DecryptionFailed; there
      is no partial manifest.

    """

    mode = OutputMode(output_mode)
    strategy = content_strategy(mode, vault_key)
    resolved = resolve_export_contents(
        items,
        strategy,
        include_originals=include_originals,
        include_redacted=include_redacted,
    )

    files = [_entry_for(item, content, include_metadata) for item, content in resolved]
    manifest = ExportManifest(
        export_id=export_id,
        created_at=iso_from_ms(created_at_ms if created_at_ms is not None else now_ms()),
        output_mode=mode,
        include_originals=include_originals,
        include_redacted=include_redacted,
        include_metadata=include_metadata,
        files=files,
    )
    log.debug(
        "export_manifest_built",
        extra={"export_id": export_id, "output_mode": mode.value, "file_count": len(files)},
    )
    return ManifestBuild(
        manifest=manifest,
        json=manifest_to_json(manifest),
        csv=manifest_to_csv(files),
        contents=[content for _, content in resolved],
    )
