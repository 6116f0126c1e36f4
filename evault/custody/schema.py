from __future__ import annotations

from typing import Any, Dict

from evault.storage.models import CustodyEvent

from .canonical import canonical_stringify

CUSTODY_EVENT_FIELDS = (
    "id",
    "itemId",
    "ts",
    "action",
    "details",
    "prevHash",
    "hash",
    "signature",
)

# Hashed content. prevHash, hash and signature are excluded to avoid
# self-reference; prevHash enters the hash as a prefix instead.
CUSTODY_CONTENT_FIELDS = ("id", "itemId", "ts", "action", "details")


def custody_event_content(event: CustodyEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "itemId": event.item_id,
        "ts": event.ts,
        "action": event.action.value,
        "details": event.details,
    }


def canonicalize_custody_event_content(event: CustodyEvent) -> str:
    return canonical_stringify(custody_event_content(event))


def custody_event_payload(event: CustodyEvent) -> Dict[str, Any]:
    return event.to_payload()


def canonicalize_custody_event(event: CustodyEvent) -> str:
    return canonical_stringify(custody_event_payload(event))
