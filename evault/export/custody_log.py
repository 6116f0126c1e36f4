from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from evault.custody.schema import canonicalize_custody_event_content
from evault.storage.models import CustodyEvent
from evault.storage.sqlite_store import VaultStore


def export_hash(prev_export_hash: Optional[str], canonical: str) -> str:
    """Transcript hash: SHA-256 hex over prevExportHash (or "") + canonical content."""

    return hashlib.sha256(f"{prev_export_hash or ''}{canonical}".encode("utf-8")).hexdigest()


def custody_log_entry(
    event: CustodyEvent,
    *,
    public_key: Optional[str],
    prev_export_hash: Optional[str],
) -> Dict[str, Any]:
    """One JSON-lines record.

    Carries the stored chain fields (prevHash/hash/signature) for signature
    checks and an independently chained export transcript hash over the
    same canonical content.
    """

    canonical = canonicalize_custody_event_content(event)
    return {
        "id": event.id,
        "itemId": event.item_id,
        "ts": event.ts,
        "action": event.action.value,
        "details": event.details,
        "prevHash": event.prev_hash,
        "hash": event.hash,
        "signature": event.signature,
        "publicKey": public_key,
        "canonical": canonical,
        "exportPrevHashSha256": prev_export_hash,
        "exportHashSha256": export_hash(prev_export_hash, canonical),
    }


@dataclass(frozen=True)
class CustodyLog:
    entries: List[Dict[str, Any]]

    @property
    def text(self) -> str:
        return "\n".join(json.dumps(e, ensure_ascii=False, separators=(",", ":")) for e in self.entries)

    def __len__(self) -> int:
        return len(self.entries)


def build_custody_log(store: VaultStore, item_ids: Iterable[str]) -> CustodyLog:
    """Export the custody events of the given items as a self-verifying transcript.

    Items keep first-seen order (duplicates dropped); events are ordered by
    ts per item. The export hash chain restarts for each item, matching the
    per-item stored chain.
    """

    meta = store.get_vault_meta()
    public_key = meta.signing_public_key if meta else None

    entries: List[Dict[str, Any]] = []
    for item_id in dict.fromkeys(item_ids):
        prev: Optional[str] = None
        for event in store.list_custody_events(item_id):
            entry = custody_log_entry(event, public_key=public_key, prev_export_hash=prev)
            entries.append(entry)
            prev = entry["exportHashSha256"]
    return CustodyLog(entries=entries)
