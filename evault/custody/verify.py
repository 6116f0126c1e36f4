from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from evault.crypto.signing import verify_hash_signature
from evault.storage.models import CustodyEvent

from .schema import canonicalize_custody_event_content


def hash_custody_payload(prev_hash: Optional[str], payload: str) -> str:
    """Chain hash: BLAKE2b-256 over prevHash (or "") + canonical content, base64."""

    digest = hashlib.blake2b(f"{prev_hash or ''}{payload}".encode("utf-8"), digest_size=32)
    return base64.b64encode(digest.digest()).decode("ascii")


def compute_event_hash(event: CustodyEvent, prev_hash: Optional[str]) -> str:
    return hash_custody_payload(prev_hash, canonicalize_custody_event_content(event))


def sort_events(events: Iterable[CustodyEvent]) -> List[CustodyEvent]:
    """Stable sort by ts (ties keep their given order)."""

    return sorted(events, key=lambda e: e.ts)


@dataclass(frozen=True, slots=True)
class ChainIssue:
    """One itemised verification failure."""

    event_id: str
    index: int
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"eventId": self.event_id, "index": self.index, "reason": self.reason}


@dataclass(frozen=True)
class ChainReport:
    """Outcome of verifying one item's chain.

    chain_ok covers hash linkage; signatures_ok is None when no public key
    was supplied (origin not checked).
    """

    item_id: Optional[str]
    event_count: int
    chain_ok: bool
    signatures_ok: Optional[bool]
    issues: List[ChainIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.chain_ok and self.signatures_ok is not False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "itemId": self.item_id,
            "ok": self.ok,
            "chainOk": self.chain_ok,
            "signaturesOk": self.signatures_ok,
            "eventCount": self.event_count,
            "issues": [i.to_dict() for i in self.issues],
        }


def verify_custody_chain(events: Iterable[CustodyEvent]) -> bool:
    """Return True iff every event links to its predecessor and hashes correctly.

    An empty list is vacuously valid. Stops at the first bad event.
    """

    prev_hash: Optional[str] = None
    for event in sort_events(events):
        if (event.prev_hash or None) != prev_hash:
            return False
        if event.hash != compute_event_hash(event, prev_hash):
            return False
        prev_hash = event.hash
    return True


def verify_custody_chain_details(
    events: Iterable[CustodyEvent],
    *,
    public_key: Optional[str] = None,
) -> ChainReport:
    """Walk the whole chain and itemise every failure.

    Hash linkage and signatures are checked independently: the chain proves
    nothing was altered, the signature proves who produced each hash.

    """

    ordered = sort_events(events)
    issues: List[ChainIssue] = []
    chain_ok = True
    sigs_ok: Optional[bool] = None if public_key is None else True

    item_ids = {e.item_id for e in ordered}
    if len(item_ids) > 1:
        chain_ok = False
        issues.append(ChainIssue(event_id="", index=-1, reason="events span multiple items"))

    seen_prev: Dict[Optional[str], str] = {}
    prev_hash: Optional[str] = None

    for idx, event in enumerate(ordered):
        stored_prev = event.prev_hash or None

        if stored_prev in seen_prev:
            chain_ok = False
            issues.append(
                ChainIssue(
                    event_id=event.id,
                    index=idx,
                    reason=f"fork: shares prevHash with event {seen_prev[stored_prev]}",
                )
            )
        seen_prev.setdefault(stored_prev, event.id)

        if stored_prev != prev_hash:
            chain_ok = False
            issues.append(ChainIssue(event_id=event.id, index=idx, reason="prevHash mismatch"))

        expected = compute_event_hash(event, stored_prev)
        if event.hash != expected:
            chain_ok = False
            issues.append(ChainIssue(event_id=event.id, index=idx, reason="hash mismatch"))

        if public_key is not None:
            if not event.signature or not event.hash:
                sigs_ok = False
                issues.append(ChainIssue(event_id=event.id, index=idx, reason="missing signature"))
            elif not verify_hash_signature(public_key, event.hash, event.signature):
                sigs_ok = False
                issues.append(ChainIssue(event_id=event.id, index=idx, reason="bad signature"))

        prev_hash = event.hash

    return ChainReport(
        item_id=next(iter(item_ids)) if len(item_ids) == 1 else None,
        event_count=len(ordered),
        chain_ok=chain_ok,
        signatures_ok=sigs_ok,
        issues=issues,
    )
