from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
from uuid import uuid4

from evault.crypto.blob import KeyLike
from evault.crypto.signing import sign_hash
from evault.errors import ChainForkDetected
from evault.storage.models import CustodyAction, CustodyEvent, now_ms
from evault.storage.sqlite_store import VaultStore

from .canonical import canonicalize
from .verify import ChainReport, compute_event_hash, verify_custody_chain_details

log = logging.getLogger("evault.custody")

# (hash, ts) of the newest event per item.
_Tail = Tuple[Optional[str], int]


@dataclass
class CustodyChain:
    """Single-writer custody ledger for one vault store.

    Responsibilities
    - Append signed, hash-linked events per item
    - Serialize appends per item (one lock per item id)
    - Keep a tail index (item id -> last hash, last ts) to avoid rescans
    - Refuse to give any event a second successor (fork)

    Security invariants
    - hash = H(prevHash || canonical({id, itemId, ts, action, details}))
    - ts is strictly increasing per item
    - Events are never rewritten once persisted

    """

    store: VaultStore

    _tails: Dict[str, _Tail] = field(default_factory=dict, init=False, repr=False)
    _locks: Dict[str, Lock] = field(default_factory=dict, init=False, repr=False)
    _guard: Lock = field(default_factory=Lock, init=False, repr=False)

    def _item_lock(self, item_id: str) -> Lock:
        with self._guard:
            lock = self._locks.get(item_id)
            if lock is None:
                lock = self._locks[item_id] = Lock()
            return lock

    def _load_tail(self, item_id: str) -> _Tail:
        last = self.store.last_custody_event(item_id)
        tail: _Tail = (last.hash, last.ts) if last else (None, 0)
        self._tails[item_id] = tail
        return tail

    def _current_tail(self, item_id: str) -> _Tail:
        """Cached tail, re-read from the store if the cache has gone stale."""

        tail = self._tails.get(item_id)
        if tail is None:
            tail = self._load_tail(item_id)
        if self.store.find_child_event(item_id, tail[0]) is None:
            return tail

        tail = self._load_tail(item_id)
        child = self.store.find_child_event(item_id, tail[0])
        if child is not None:
            log.error("custody_fork_rejected", extra={"item_id": item_id, "child_event_id": child})
            raise ChainForkDetected(
                f"custody chain for {item_id} already continues from its tail (event {child})"
            )
        return tail

    def append(
        self,
        *,
        item_id: str,
        action: Union[CustodyAction, str],
        vault_key: KeyLike,
        details: Optional[Mapping[str, Any]] = None,
    ) -> CustodyEvent:
        """Append, sign, and persist one event. Returns the sealed event."""

        action = CustodyAction(action)
        with self._item_lock(item_id):
            prev_hash, last_ts = self._current_tail(item_id)

            event = CustodyEvent(
                id=str(uuid4()),
                item_id=item_id,
                ts=max(now_ms(), last_ts + 1),
                action=action,
                details=canonicalize(dict(details)) if details is not None else None,
                prev_hash=prev_hash,
            )
            event_hash = compute_event_hash(event, prev_hash)
            signed = sign_hash(self.store, vault_key, event_hash)
            event = replace(event, hash=event_hash, signature=signed.signature)

            meta = self.store.require_vault_meta()
            if meta.signing_public_key != signed.public_key:
                self.store.update_vault_meta(meta.id, signing_public_key=signed.public_key)

            self.store.add_custody_event(event)
            self._tails[item_id] = (event.hash, event.ts)

        log.info(
            "custody_event_appended",
            extra={"item_id": item_id, "action": action.value, "event_id": event.id},
        )
        return event

    def events(self, item_id: str) -> List[CustodyEvent]:
        return self.store.list_custody_events(item_id)

    def verify(self, item_id: str, *, check_signatures: bool = True) -> ChainReport:
        """Verify an item's stored chain (and signatures, with the vault's public key)."""

        public_key = None
        if check_signatures:
            meta = self.store.get_vault_meta()
            public_key = meta.signing_public_key if meta else None
        return verify_custody_chain_details(self.events(item_id), public_key=public_key)

    def record_verification(self, item_id: str, vault_key: KeyLike) -> Tuple[ChainReport, CustodyEvent]:
        """Verify an item's chain, then append a `verify` event carrying the outcome."""

        report = self.verify(item_id)
        event = self.append(
            item_id=item_id,
            action=CustodyAction.VERIFY,
            vault_key=vault_key,
            details={
                "ok": report.ok,
                "eventCount": report.event_count,
                "issueCount": len(report.issues),
            },
        )
        return report, event


_CHAINS: Dict[str, CustodyChain] = {}
_CHAINS_LOCK = Lock()


def chain_for(store: VaultStore) -> CustodyChain:
    """The shared CustodyChain for a store's database file.

    All writers to one vault file go through the same chain object, so
    per-item serialization holds across call sites in this process.
    """

    key = str(Path(store.db_path).resolve())
    with _CHAINS_LOCK:
        chain = _CHAINS.get(key)
        if chain is None:
            chain = _CHAINS[key] = CustodyChain(store)
        return chain


def append_custody_event(
    store: VaultStore,
    *,
    item_id: str,
    action: Union[CustodyAction, str],
    vault_key: KeyLike,
    details: Optional[Mapping[str, Any]] = None,
) -> CustodyEvent:
    """Append a custody event for `item_id` through the store's shared chain."""

    return chain_for(store).append(
        item_id=item_id, action=action, vault_key=vault_key, details=details
    )


def record_verification(
    store: VaultStore, item_id: str, vault_key: KeyLike
) -> Tuple[ChainReport, CustodyEvent]:
    """Verify an item's chain and append a `verify` event with the outcome."""

    return chain_for(store).record_verification(item_id, vault_key)
