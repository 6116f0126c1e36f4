from __future__ import annotations

import json
import os

import pytest

from evault.custody import chain_for, verify_custody_chain
from evault.demo import demo_store, ensure_demo_vault, seed_demo_data
from evault.errors import DecryptionFailed, ItemNotFound
from evault.export.content import Variant
from evault.items import (
    TESTIMONY_MIME,
    capture_item,
    load_item_plaintext,
    record_ai_suggestions,
    save_redacted_copy,
    save_testimony,
)
from evault.redaction import hydrate_face_suggestions
from evault.storage.models import CustodyAction, ItemLocation, ItemMetadata, ItemType, RedactionRect
from evault.tests.conftest import FAST_KDF


def test_capture_encrypts_and_records_custody(vault) -> None:
    store, key = vault
    item = capture_item(
        store,
        key,
        b"\xff\xd8jpeg-bytes",
        mime="image/jpeg",
        item_type="photo",
        metadata=ItemMetadata(what="Checkpoint", where="Gate 3"),
        location=ItemLocation(lat=10.0, lon=20.0, accuracy=5.0, ts=1),
        captured_at=1_700_000_000_000,
    )

    stored = store.get_item(item.id)
    assert stored == item
    assert stored.blob_size == len(b"\xff\xd8jpeg-bytes")
    assert b"jpeg-bytes" not in json.dumps(stored.to_payload()).encode()
    assert load_item_plaintext(key, stored).data == b"\xff\xd8jpeg-bytes"

    events = store.list_custody_events(item.id)
    assert [e.action for e in events] == [CustodyAction.CAPTURE]
    assert events[0].details == {"type": "photo", "mime": "image/jpeg", "size": 12}


def test_testimony_is_json_and_lifts_metadata(vault) -> None:
    store, key = vault
    item = save_testimony(
        store, key, {"what": "Statement", "where": "Plaza", "notes": "Signed", "when": "noon"}
    )
    assert item.type == ItemType.TESTIMONY
    assert item.blob_mime == TESTIMONY_MIME
    assert item.metadata == ItemMetadata(what="Statement", where="Plaza", notes="Signed")
    payload = json.loads(load_item_plaintext(key, item).data)
    assert payload["when"] == "noon"


def test_redacted_copy_keeps_original_and_extends_chain(vault) -> None:
    store, key = vault
    item = capture_item(store, key, b"original", mime="image/png", item_type=ItemType.PHOTO)
    rects = [RedactionRect(1, 1, 4, 4), RedactionRect(5, 5, 2, 2)]

    updated = save_redacted_copy(
        store, key, item.id, b"redacted", mime="image/png", rects=rects, auto=True
    )

    assert updated.encrypted_blob == item.encrypted_blob
    assert updated.redacted_size == len(b"redacted")
    assert updated.redaction.rects == rects
    assert load_item_plaintext(key, updated, Variant.ORIGINAL).data == b"original"
    assert load_item_plaintext(key, updated, "redacted").data == b"redacted"

    events = store.list_custody_events(item.id)
    assert [e.action for e in events] == [CustodyAction.CAPTURE, CustodyAction.REDACT]
    assert events[1].details == {"method": "pixelate", "rectCount": 2, "auto": True}
    assert verify_custody_chain(events)


def test_missing_variant_and_wrong_key(vault) -> None:
    store, key = vault
    item = capture_item(store, key, b"original", mime="image/png", item_type="photo")
    with pytest.raises(LookupError):
        load_item_plaintext(key, item, Variant.REDACTED)
    with pytest.raises(DecryptionFailed):
        load_item_plaintext(b"\x00" * 32, item)


def test_capture_with_wrong_key_writes_nothing(vault) -> None:
    store, _key = vault
    with pytest.raises(DecryptionFailed):
        capture_item(store, os.urandom(32), b"img", mime="image/png", item_type="photo", item_id="w1")
    assert store.list_items() == []
    assert store.list_custody_events("w1") == []


def test_redaction_with_wrong_key_leaves_item_untouched(vault) -> None:
    store, key = vault
    item = capture_item(store, key, b"original", mime="image/png", item_type="photo")
    with pytest.raises(DecryptionFailed):
        save_redacted_copy(
            store, os.urandom(32), item.id, b"redacted", mime="image/png", rects=[]
        )
    assert store.get_item(item.id) == item
    assert [e.action for e in store.list_custody_events(item.id)] == [CustodyAction.CAPTURE]


def test_redaction_rects_are_normalized_before_recording(vault) -> None:
    store, key = vault
    item = capture_item(store, key, b"original", mime="image/png", item_type="photo")
    rects = [
        RedactionRect(10, 10, -4, -6),
        RedactionRect(8, 8, 5, 5),
        RedactionRect(3, 3, 0, 2),
        RedactionRect(20, 20, 1, 1),
    ]

    updated = save_redacted_copy(
        store, key, item.id, b"redacted", mime="image/png", rects=rects, image_size=(10, 10)
    )

    assert updated.redaction.rects == [RedactionRect(6, 4, 4, 6), RedactionRect(8, 8, 2, 2)]
    assert store.get_item(item.id).redaction.rects == updated.redaction.rects
    assert store.list_custody_events(item.id)[-1].details["rectCount"] == 2


def test_redaction_without_image_size_still_flips_and_drops_empty(vault) -> None:
    store, key = vault
    item = capture_item(store, key, b"original", mime="image/png", item_type="photo")
    updated = save_redacted_copy(
        store,
        key,
        item.id,
        b"redacted",
        mime="image/png",
        rects=[RedactionRect(5, 5, -2, 3), RedactionRect(1, 1, 0, 0)],
    )
    assert updated.redaction.rects == [RedactionRect(3, 5, 2, 3)]


def test_redacting_unknown_item(vault) -> None:
    store, key = vault
    with pytest.raises(ItemNotFound):
        save_redacted_copy(store, key, "missing", b"x", mime="image/png", rects=[])


def test_ai_suggestions_are_stored_without_custody_event(vault) -> None:
    store, key = vault
    item = capture_item(store, key, b"img", mime="image/png", item_type="photo")
    boxes = [RedactionRect(0, 0, 3, 3)]

    updated = record_ai_suggestions(
        store, item.id, model_version="blaze-face-1", rects=boxes, detected_at=77
    )
    assert updated.ai_suggestions.model_version == "blaze-face-1"
    assert store.get_item(item.id).ai_suggestions.boxes == boxes
    assert len(chain_for(store).events(item.id)) == 1
    assert hydrate_face_suggestions(updated.ai_suggestions.boxes, 77)[0].id == "stored-77-0"


def test_capture_rejects_unknown_type(vault) -> None:
    store, key = vault
    with pytest.raises(ValueError):
        capture_item(store, key, b"x", mime="text/plain", item_type="document")


def test_demo_vault_is_separate_and_seeded_once(tmp_path) -> None:
    store = demo_store(tmp_path)
    assert store.db_path.name == "demo.db"

    with ensure_demo_vault(store, kdf_params=FAST_KDF) as key:
        seeded = seed_demo_data(store, key)
        assert [i.type for i in seeded] == [ItemType.PHOTO, ItemType.TESTIMONY]
        assert seeded[0].redacted_blob is not None
        assert seed_demo_data(store, key) == []
        for item in seeded:
            assert chain_for(store).verify(item.id).ok

    # Re-opening unlocks with the well-known passphrase.
    with ensure_demo_vault(store) as key:
        assert load_item_plaintext(key, store.get_item(seeded[0].id)).mime == "image/png"
    assert not (tmp_path / "primary.db").exists()
