from __future__ import annotations

import threading
from dataclasses import replace

import pytest

from evault.crypto.blob import decrypt_blob, encrypt_blob
from evault.crypto.vault import create_vault
from evault.custody import (
    CustodyChain,
    append_custody_event,
    chain_for,
    hash_custody_payload,
    record_verification,
    verify_custody_chain,
    verify_custody_chain_details,
)
from evault.custody.schema import canonicalize_custody_event_content
from evault.errors import ChainForkDetected
from evault.storage.models import CustodyAction, CustodyEvent
from evault.tests.conftest import FAST_KDF


def _append_n(store, key, item_id: str, n: int):
    chain = chain_for(store)
    return [
        chain.append(item_id=item_id, action=CustodyAction.CAPTURE, vault_key=key, details={"n": i})
        for i in range(n)
    ]


def test_correct_horse_end_to_end(store) -> None:
    created = create_vault(store, "Case 42", "correct-horse", kdf_params=FAST_KDF)
    with created.vault_key as key:
        sealed = encrypt_blob(key, b"8bytes!!", mime="application/octet-stream")
        assert decrypt_blob(key, sealed).data == b"8bytes!!"

        capture = append_custody_event(
            store, item_id="item-1", action="capture", vault_key=key, details={"size": sealed.size}
        )
        redact = append_custody_event(
            store,
            item_id="item-1",
            action="redact",
            vault_key=key,
            details={"method": "pixelate", "rectCount": 1},
        )

    events = store.list_custody_events("item-1")
    assert [e.id for e in events] == [capture.id, redact.id]
    assert verify_custody_chain(events) is True

    corrupted = [events[0], replace(events[1], details={"method": "blur", "rectCount": 1})]
    assert verify_custody_chain(corrupted) is False


def test_chain_linkage_and_strictly_increasing_ts(vault) -> None:
    store, key = vault
    events = _append_n(store, key, "item-a", 5)

    assert events[0].prev_hash is None
    for prev, cur in zip(events, events[1:]):
        assert cur.prev_hash == prev.hash
        assert cur.ts > prev.ts
    assert store.list_custody_events("item-a") == events


def test_hash_covers_content_and_prefix(vault) -> None:
    store, key = vault
    first, second = _append_n(store, key, "item-h", 2)

    assert first.hash == hash_custody_payload(None, canonicalize_custody_event_content(first))
    assert second.hash == hash_custody_payload(
        first.hash, canonicalize_custody_event_content(second)
    )
    # prevHash/hash/signature are not part of the hashed content.
    assert '"hash"' not in canonicalize_custody_event_content(second)
    assert '"details":{"n":1}' in canonicalize_custody_event_content(second)


def test_absent_details_hash_as_null(vault) -> None:
    store, key = vault
    event = chain_for(store).append(item_id="item-n", action="verify", vault_key=key)
    assert event.details is None
    assert '"details":null' in canonicalize_custody_event_content(event)
    assert verify_custody_chain([event])


def test_empty_chain_is_valid() -> None:
    assert verify_custody_chain([]) is True
    report = verify_custody_chain_details([])
    assert report.ok and report.event_count == 0


@pytest.mark.parametrize("index", [0, 1, 2])
def test_any_single_details_edit_breaks_the_chain(vault, index: int) -> None:
    store, key = vault
    events = _append_n(store, key, "item-t", 3)
    tampered = list(events)
    tampered[index] = replace(events[index], details={"n": 99})

    assert verify_custody_chain(tampered) is False
    report = verify_custody_chain_details(tampered)
    assert not report.chain_ok
    assert [(i.event_id, i.reason) for i in report.issues] == [(events[index].id, "hash mismatch")]


def test_chains_are_per_item(vault) -> None:
    store, key = vault
    a = _append_n(store, key, "item-a", 2)
    b = _append_n(store, key, "item-b", 2)
    assert b[0].prev_hash is None
    assert verify_custody_chain(a) and verify_custody_chain(b)

    report = verify_custody_chain_details(a + b)
    assert not report.ok
    assert report.issues[0].reason == "events span multiple items"


def test_signatures_are_checked_independently(vault) -> None:
    store, key = vault
    events = _append_n(store, key, "item-s", 2)
    public_key = store.get_vault_meta().signing_public_key

    report = verify_custody_chain_details(events, public_key=public_key)
    assert report.ok and report.signatures_ok is True

    swapped = [events[0], replace(events[1], signature=events[0].signature)]
    report = verify_custody_chain_details(swapped, public_key=public_key)
    assert report.chain_ok is True
    assert report.signatures_ok is False
    assert [i.reason for i in report.issues] == ["bad signature"]

    unsigned = [replace(events[0], signature=None)]
    report = verify_custody_chain_details(unsigned, public_key=public_key)
    assert [i.reason for i in report.issues] == ["missing signature"]

    # Without a key, origin is simply not checked.
    assert verify_custody_chain_details(swapped).signatures_ok is None


def test_fork_is_rejected_on_append(vault) -> None:
    store, key = vault
    first, second = _append_n(store, key, "item-f", 2)
    rogue = CustodyEvent(
        id="rogue",
        item_id="item-f",
        ts=first.ts,
        action=CustodyAction.EXPORT,
        prev_hash=second.hash,
        hash="not-a-real-hash",
    )
    store.add_custody_event(rogue)

    with pytest.raises(ChainForkDetected):
        chain_for(store).append(item_id="item-f", action="verify", vault_key=key)


def test_detailed_report_flags_shared_prev_hash(vault) -> None:
    store, key = vault
    first, second = _append_n(store, key, "item-x", 2)
    twin = replace(second, id="twin", ts=second.ts + 1, details={"n": "twin"})
    twin = replace(twin, hash=hash_custody_payload(first.hash, canonicalize_custody_event_content(twin)))

    report = verify_custody_chain_details([first, second, twin])
    assert not report.chain_ok
    assert any(i.event_id == "twin" and i.reason.startswith("fork") for i in report.issues)


def test_stale_tail_cache_is_refreshed(vault) -> None:
    store, key = vault
    a = CustodyChain(store)
    b = CustodyChain(store)

    e1 = a.append(item_id="item-c", action="capture", vault_key=key)
    e2 = b.append(item_id="item-c", action="redact", vault_key=key)
    e3 = a.append(item_id="item-c", action="export", vault_key=key)

    assert e2.prev_hash == e1.hash
    assert e3.prev_hash == e2.hash
    assert verify_custody_chain(store.list_custody_events("item-c"))


def test_concurrent_appends_stay_linear(vault) -> None:
    store, key = vault
    chain = chain_for(store)
    errors = []

    def worker(i: int) -> None:
        try:
            chain.append(item_id="item-p", action="verify", vault_key=key, details={"worker": i})
        except Exception as exc:  # pragma: no cover - surfaced by the assert below
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    events = store.list_custody_events("item-p")
    assert len(events) == 8
    assert len({e.prev_hash for e in events}) == 8
    assert verify_custody_chain(events)


def test_record_verification_appends_verify_event(vault) -> None:
    store, key = vault
    _append_n(store, key, "item-v", 2)

    report, event = record_verification(store, "item-v", key)
    assert report.ok
    assert event.action == CustodyAction.VERIFY
    assert event.details == {"ok": True, "eventCount": 2, "issueCount": 0}
    assert chain_for(store).verify("item-v").event_count == 3


def test_append_logs_identifiers_only(vault, caplog) -> None:
    store, key = vault
    with caplog.at_level("INFO", logger="evault.custody"):
        event = chain_for(store).append(
            item_id="item-l", action="capture", vault_key=key, details={"secret": "s3cr3t"}
        )
    record = next(r for r in caplog.records if r.getMessage() == "custody_event_appended")
    assert record.event_id == event.id
    assert "s3cr3t" not in caplog.text
