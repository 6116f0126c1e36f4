from __future__ import annotations

import hashlib
import io
import json
import zipfile

import pytest

from evault.crypto.signing import verify_hash_signature
from evault.custody import chain_for
from evault.errors import MissingVaultKey
from evault.export import build_export_zip, verify_bundle_zip, write_export_zip
from evault.export.bundle import bundle_root_name
from evault.export.custody_log import build_custody_log, export_hash
from evault.items import capture_item, save_redacted_copy
from evault.storage.models import CustodyAction, ItemMetadata, RedactionRect

CREATED = 1_700_000_100_000
ROOT = "EvidenceVault_Export_20231114"


@pytest.fixture
def photo(vault):
    store, key = vault
    item = capture_item(
        store,
        key,
        b"original photo bytes",
        mime="image/jpeg",
        item_type="photo",
        item_id="ph-1",
        metadata=ItemMetadata(what="Scene", notes="a, b"),
    )
    return save_redacted_copy(
        store, key, item.id, b"redacted photo", mime="image/jpeg", rects=[RedactionRect(0, 0, 2, 2)]
    )


def _zip_members(data: bytes):
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        return {n: zf.read(n) for n in zf.namelist()}


def test_review_export_scenario(vault, photo) -> None:
    store, key = vault
    bundle = build_export_zip(
        store, items=[photo], export_id="exp-1", vault_key=key, created_at_ms=CREATED
    )
    members = _zip_members(bundle.zip_data)

    assert bundle.root == ROOT
    assert bundle.zip_filename == f"{ROOT}.zip"
    assert sorted(members) == sorted(
        f"{ROOT}/{p}"
        for p in (
            "README.txt",
            "manifest.json",
            "manifest.csv",
            "custody_log.jsonl",
            "verify/verify.html",
            "verify/verify.js",
            "media/item-ph-1-original.jpg",
            "media/item-ph-1-redacted.jpg",
        )
    )

    manifest = json.loads(members[f"{ROOT}/manifest.json"])
    assert manifest["exportId"] == "exp-1"
    for entry in manifest["files"]:
        data = members[f"{ROOT}/{entry['filename']}"]
        assert hashlib.sha256(data).hexdigest() == entry["sha256"]

    lines = members[f"{ROOT}/custody_log.jsonl"].decode("utf-8").split("\n")
    assert len(lines) == 2
    for line in lines:
        assert json.loads(line)["exportHashSha256"]


def test_custody_log_lines_replay(vault, photo) -> None:
    store, _key = vault
    log = build_custody_log(store, [photo.id, photo.id])
    first, second = log.entries

    assert len(log) == 2
    assert list(first) == [
        "id",
        "itemId",
        "ts",
        "action",
        "details",
        "prevHash",
        "hash",
        "signature",
        "publicKey",
        "canonical",
        "exportPrevHashSha256",
        "exportHashSha256",
    ]
    assert first["exportPrevHashSha256"] is None
    assert first["exportHashSha256"] == export_hash(None, first["canonical"])
    assert second["exportPrevHashSha256"] == first["exportHashSha256"]
    assert second["exportHashSha256"] == export_hash(first["exportHashSha256"], second["canonical"])
    assert second["prevHash"] == first["hash"]
    assert verify_hash_signature(first["publicKey"], first["hash"], first["signature"])


def test_custody_log_restarts_per_item(vault, photo) -> None:
    store, key = vault
    other = capture_item(store, key, b"audio", mime="audio/ogg", item_type="audio", item_id="au-1")
    log = build_custody_log(store, [photo.id, other.id])
    assert [e["itemId"] for e in log.entries] == ["ph-1", "ph-1", "au-1"]
    assert log.entries[2]["exportPrevHashSha256"] is None


def test_encrypted_export_verifies_without_key(vault, photo) -> None:
    store, _key = vault
    bundle = build_export_zip(
        store, items=[photo], output_mode="encrypted", created_at_ms=CREATED
    )
    members = _zip_members(bundle.zip_data)
    assert f"{ROOT}/media/item-ph-1-original.enc.json" in members
    assert b"original photo bytes" not in b"".join(members.values())

    report = verify_bundle_zip(bundle.zip_data)
    assert report.ok, report.render_text()


def test_record_custody_appends_export_events_after_build(vault, photo) -> None:
    store, key = vault
    bundle = build_export_zip(
        store, items=[photo], export_id="exp-9", vault_key=key, record_custody=True
    )

    assert len(bundle.custody_log.splitlines()) == 2
    assert len(bundle.custody_events) == 1
    event = bundle.custody_events[0]
    assert event.action == CustodyAction.EXPORT
    assert event.details == {
        "exportId": "exp-9",
        "outputMode": "review",
        "files": ["media/item-ph-1-original.jpg", "media/item-ph-1-redacted.jpg"],
    }
    assert chain_for(store).verify(photo.id).ok


def test_record_custody_requires_key(vault, photo) -> None:
    store, _key = vault
    with pytest.raises(MissingVaultKey):
        build_export_zip(store, items=[photo], output_mode="encrypted", record_custody=True)


def test_review_export_requires_key(vault, photo) -> None:
    store, _key = vault
    with pytest.raises(MissingVaultKey):
        build_export_zip(store, items=[photo])


def test_readme_and_csv_contents(vault, photo) -> None:
    store, key = vault
    bundle = build_export_zip(store, items=[photo], export_id="exp-r", vault_key=key)
    members = _zip_members(bundle.zip_data)
    readme = members[f"{bundle.root}/README.txt"].decode("utf-8")
    assert "Export ID: exp-r" in readme
    assert "Output mode: review" in readme
    assert "The command-line verifier is authoritative" in readme
    verify_js = members[f"{bundle.root}/verify/verify.js"].decode("utf-8")
    assert "confirm with the command-line verifier" in verify_js
    assert '"a, b"' in bundle.manifest_csv


def test_write_export_zip(tmp_path, vault, photo) -> None:
    store, key = vault
    bundle = build_export_zip(store, items=[photo], vault_key=key, created_at_ms=CREATED)
    path = write_export_zip(bundle, tmp_path / "out")
    assert path.name == f"{ROOT}.zip"
    assert path.read_bytes() == bundle.zip_data


def test_bundle_root_name_uses_utc_date() -> None:
    # 2024-03-01T23:30:00Z
    assert bundle_root_name(1_709_335_800_000) == "EvidenceVault_Export_20240301"


def test_archive_is_deterministic_for_fixed_inputs(vault, photo) -> None:
    store, key = vault
    a = build_export_zip(store, items=[photo], export_id="e", vault_key=key, created_at_ms=CREATED)
    b = build_export_zip(store, items=[photo], export_id="e", vault_key=key, created_at_ms=CREATED)
    assert a.zip_data == b.zip_data
