from __future__ import annotations

import csv
import hashlib
import io
import json

import pytest

from evault.custody.canonical import canonical_stringify
from evault.errors import MissingVaultKey
from evault.export.content import OutputMode, extension_for_mime
from evault.export.manifest import (
    CSV_COLUMNS,
    ManifestFileEntry,
    ManifestLocation,
    build_export_manifest,
    manifest_to_csv,
)
from evault.items import capture_item, save_redacted_copy
from evault.storage.models import ItemLocation, ItemMetadata, RedactionRect

PLAINTEXT = b"\x89PNG known plaintext bytes"


@pytest.fixture
def photo(vault):
    store, key = vault
    item = capture_item(
        store,
        key,
        PLAINTEXT,
        mime="image/png",
        item_type="photo",
        item_id="p1",
        captured_at=1_700_000_000_000,
        metadata=ItemMetadata(what="Crowd", where="Square", notes="Taken at dusk"),
        location=ItemLocation(lat=52.5, lon=13.4, accuracy=8.0, ts=1_700_000_000_500),
    )
    return save_redacted_copy(
        store, key, item.id, b"redacted png", mime="image/png", rects=[RedactionRect(0, 0, 1, 1)]
    )


def test_review_hash_matches_plaintext(vault, photo) -> None:
    _store, key = vault
    built = build_export_manifest(
        export_id="exp-1", items=[photo], vault_key=key, created_at_ms=1_700_000_100_000
    )
    original, redacted = built.manifest.files

    assert original.filename == "media/item-p1-original.png"
    assert original.sha256 == hashlib.sha256(PLAINTEXT).hexdigest()
    assert redacted.filename == "media/item-p1-redacted.png"
    assert redacted.sha256 == hashlib.sha256(b"redacted png").hexdigest()
    assert [c.data for c in built.contents] == [PLAINTEXT, b"redacted png"]


def test_manifest_json_shape(vault, photo) -> None:
    _store, key = vault
    built = build_export_manifest(
        export_id="exp-1", items=[photo], vault_key=key, created_at_ms=1_700_000_100_000
    )
    doc = json.loads(built.json)
    assert list(doc) == [
        "exportId",
        "createdAt",
        "outputMode",
        "includeOriginals",
        "includeRedacted",
        "includeMetadata",
        "files",
    ]
    assert doc["createdAt"] == "2023-11-14T22:15:00.000Z"
    entry = doc["files"][0]
    assert entry["capturedAt"] == "2023-11-14T22:13:20.000Z"
    assert entry["location"] == {"lat": 52.5, "lon": 13.4, "accuracy": 8.0, "ts": "2023-11-14T22:13:20.500Z"}
    assert entry["custodyLog"] == "custody/p1.json"


def test_metadata_and_variant_flags(vault, photo) -> None:
    _store, key = vault
    built = build_export_manifest(
        export_id="exp-2",
        items=[photo],
        vault_key=key,
        include_originals=False,
        include_metadata=False,
    )
    assert [f.filename for f in built.manifest.files] == ["media/item-p1-redacted.png"]
    entry = built.manifest.files[0].to_payload()
    assert "what" not in entry and "location" not in entry


def test_review_mode_without_key_fails(photo) -> None:
    with pytest.raises(MissingVaultKey):
        build_export_manifest(export_id="exp-3", items=[photo])


def test_encrypted_mode_needs_no_key(photo) -> None:
    built = build_export_manifest(
        export_id="exp-4", items=[photo], output_mode=OutputMode.ENCRYPTED
    )
    original = built.manifest.files[0]
    assert original.filename == "media/item-p1-original.enc.json"

    payload = {
        "nonce": photo.encrypted_blob.nonce,
        "cipher": photo.encrypted_blob.cipher,
        "mime": photo.blob_mime,
        "size": photo.blob_size,
    }
    expected = hashlib.sha256(canonical_stringify(payload).encode("utf-8")).hexdigest()
    assert original.sha256 == expected
    assert hashlib.sha256(built.contents[0].data).hexdigest() == expected
    assert PLAINTEXT not in built.contents[0].data


def test_csv_escapes_commas_and_quotes() -> None:
    entry = ManifestFileEntry(
        filename="media/item-1-original.jpg",
        sha256="ab" * 32,
        captured_at="2024-01-01T00:00:00.000Z",
        custody_log="custody/1.json",
        what="Photo",
        notes='He said "stop", then left',
        location=ManifestLocation(lat=1.0, lon=2.5),
    )
    text = manifest_to_csv([entry])
    lines = text.split("\n")

    assert lines[0] == ",".join(CSV_COLUMNS)
    assert '"He said ""stop"", then left"' in lines[1]
    assert not text.endswith("\n")

    row = next(csv.DictReader(io.StringIO(text)))
    assert row["notes"] == 'He said "stop", then left'
    assert row["location_lat"] == "1"
    assert row["location_lon"] == "2.5"
    assert row["location_accuracy"] == ""


def test_csv_quotes_newlines() -> None:
    entry = ManifestFileEntry(
        filename="f", sha256="0", captured_at="t", custody_log="c", notes="line1\nline2"
    )
    row = next(csv.DictReader(io.StringIO(manifest_to_csv([entry]))))
    assert row["notes"] == "line1\nline2"


def test_extension_for_mime() -> None:
    assert extension_for_mime("image/jpeg") == "jpg"
    assert extension_for_mime("IMAGE/PNG") == "png"
    assert extension_for_mime("application/x-unknown") == "bin"
    assert extension_for_mime(None) == "bin"
