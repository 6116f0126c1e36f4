from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from evault.errors import ItemNotFound, VaultNotFound

from .models import PRIMARY_VAULT_ID, CustodyEvent, EvidenceItem, VaultMeta, now_ms

log = logging.getLogger("evault.storage")


def _json_dumps(obj: Any) -> str:
    """Deterministic JSON serialization for stored payloads."""

    return json.dumps(obj, sort_keys=True, separators=(",", ":"))


def _json_loads(text: str) -> Any:
    """Parse stored JSON. Database content is treated as untrusted."""

    return json.loads(text)


@dataclass(slots=True)
class VaultStore:
    """SQLite persistence for one vault: metadata, items, custody events, settings.

    Security notes:
    - Evidence blobs are stored only in their AEAD-sealed form.
    - Nothing here enforces append-only semantics; the custody hash chain
      detects edits to retained records, not deletion of whole records.

    Complexity
    - list_custody_events: O(e log e) per item via the (item_id, ts) index.
    - find_child_event: O(1) via the (item_id, prev_hash) index.
    """

    db_path: Path

    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path)

    def connect(self) -> sqlite3.Connection:
        con = sqlite3.connect(str(self.db_path))
        con.execute("PRAGMA foreign_keys = ON")
        return con

    def init_schema(self) -> None:
        """Create tables if missing."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as con:
            con.executescript(
                """
                CREATE TABLE IF NOT EXISTS vault_meta (
                    id TEXT PRIMARY KEY,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    payload_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS items (
                    id TEXT PRIMARY KEY,
                    type TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    captured_at INTEGER NOT NULL,
                    payload_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS custody_events (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    item_id TEXT NOT NULL,
                    ts INTEGER NOT NULL,
                    action TEXT NOT NULL,
                    prev_hash TEXT,
                    hash TEXT,
                    payload_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_custody_item_ts
                    ON custody_events(item_id, ts);
                CREATE INDEX IF NOT EXISTS idx_custody_item_prev
                    ON custody_events(item_id, prev_hash);

                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at INTEGER NOT NULL
                );
                """
            )

    # --- vault metadata ---

    def get_vault_meta(self, vault_id: str = PRIMARY_VAULT_ID) -> Optional[VaultMeta]:
        with self.connect() as con:
            row = con.execute(
                "SELECT payload_json FROM vault_meta WHERE id = ?", (vault_id,)
            ).fetchone()
        if row is None:
            return None
        return VaultMeta.from_payload(_json_loads(row[0]))

    def require_vault_meta(self, vault_id: str = PRIMARY_VAULT_ID) -> VaultMeta:
        meta = self.get_vault_meta(vault_id)
        if meta is None:
            raise VaultNotFound(f"no vault metadata in {self.db_path.name}")
        return meta

    def put_vault_meta(self, meta: VaultMeta) -> None:
        with self.connect() as con:
            con.execute(
                """INSERT INTO vault_meta(id, created_at, updated_at, payload_json)
                   VALUES(?,?,?,?)
                   ON CONFLICT(id) DO UPDATE SET
                     updated_at = excluded.updated_at,
                     payload_json = excluded.payload_json""",
                (meta.id, meta.created_at, meta.updated_at, _json_dumps(meta.to_payload())),
            )
            con.commit()

    def update_vault_meta(self, vault_id: str = PRIMARY_VAULT_ID, **changes: Any) -> VaultMeta:
        """Apply field changes to the stored VaultMeta and bump updated_at."""

        meta = replace(self.require_vault_meta(vault_id), updated_at=now_ms(), **changes)
        self.put_vault_meta(meta)
        return meta

    # --- items ---

    def add_item(self, item: EvidenceItem) -> None:
        with self.connect() as con:
            con.execute(
                """INSERT INTO items(id, type, created_at, captured_at, payload_json)
                   VALUES(?,?,?,?,?)""",
                (
                    item.id,
                    item.type.value,
                    item.created_at,
                    item.captured_at,
                    _json_dumps(item.to_payload()),
                ),
            )
            con.commit()

    def get_item(self, item_id: str) -> EvidenceItem:
        with self.connect() as con:
            row = con.execute("SELECT payload_json FROM items WHERE id = ?", (item_id,)).fetchone()
        if row is None:
            raise ItemNotFound(f"item not found: {item_id}")
        return EvidenceItem.from_payload(_json_loads(row[0]))

    def update_item(self, item: EvidenceItem) -> None:
        with self.connect() as con:
            cur = con.execute(
                "UPDATE items SET payload_json = ?, captured_at = ? WHERE id = ?",
                (_json_dumps(item.to_payload()), item.captured_at, item.id),
            )
            if cur.rowcount == 0:
                raise ItemNotFound(f"item not found: {item.id}")
            con.commit()

    def list_items(self, *, limit: int = 500, offset: int = 0) -> List[EvidenceItem]:
        """List items, newest capture first (bounded)."""

        limit_i = max(1, min(5000, int(limit)))
        offset_i = max(0, int(offset))
        with self.connect() as con:
            rows = con.execute(
                "SELECT payload_json FROM items ORDER BY captured_at DESC, id LIMIT ? OFFSET ?",
                (limit_i, offset_i),
            ).fetchall()
        return [EvidenceItem.from_payload(_json_loads(r[0])) for r in rows]

    def count_items(self) -> int:
        with self.connect() as con:
            return int(con.execute("SELECT COUNT(*) FROM items").fetchone()[0])

    # --- custody events ---

    def add_custody_event(self, event: CustodyEvent) -> None:
        with self.connect() as con:
            con.execute(
                """INSERT INTO custody_events(id, item_id, ts, action, prev_hash, hash, payload_json)
                   VALUES(?,?,?,?,?,?,?)""",
                (
                    event.id,
                    event.item_id,
                    event.ts,
                    event.action.value,
                    event.prev_hash,
                    event.hash,
                    _json_dumps(event.to_payload()),
                ),
            )
            con.commit()

    def list_custody_events(self, item_id: str) -> List[CustodyEvent]:
        """All custody events for an item, ordered by ts then insertion."""

        with self.connect() as con:
            rows = con.execute(
                "SELECT payload_json FROM custody_events WHERE item_id = ? ORDER BY ts, seq",
                (item_id,),
            ).fetchall()
        return [CustodyEvent.from_payload(_json_loads(r[0])) for r in rows]

    def last_custody_event(self, item_id: str) -> Optional[CustodyEvent]:
        with self.connect() as con:
            row = con.execute(
                """SELECT payload_json FROM custody_events WHERE item_id = ?
                   ORDER BY ts DESC, seq DESC LIMIT 1""",
                (item_id,),
            ).fetchone()
        return CustodyEvent.from_payload(_json_loads(row[0])) if row else None

    def find_child_event(self, item_id: str, prev_hash: Optional[str]) -> Optional[str]:
        """Return the id of an event already linked to `prev_hash`, if any.

        A `None` prev_hash asks whether the item already has a genesis event.
        """

        with self.connect() as con:
            if prev_hash is None:
                row = con.execute(
                    "SELECT id FROM custody_events WHERE item_id = ? AND prev_hash IS NULL LIMIT 1",
                    (item_id,),
                ).fetchone()
            else:
                row = con.execute(
                    "SELECT id FROM custody_events WHERE item_id = ? AND prev_hash = ? LIMIT 1",
                    (item_id, prev_hash),
                ).fetchone()
        return row[0] if row else None

    def list_custody_item_ids(self) -> List[str]:
        with self.connect() as con:
            rows = con.execute(
                "SELECT DISTINCT item_id FROM custody_events ORDER BY item_id"
            ).fetchall()
        return [r[0] for r in rows]

    # --- settings ---

    def get_setting(self, key: str) -> Optional[str]:
        with self.connect() as con:
            row = con.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def set_setting(self, key: str, value: str) -> None:
        with self.connect() as con:
            con.execute(
                """INSERT INTO settings(key, value, updated_at) VALUES(?,?,?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                     updated_at = excluded.updated_at""",
                (key, value, now_ms()),
            )
            con.commit()

    def summary(self) -> Dict[str, Any]:
        meta = self.get_vault_meta()
        return {
            "db": str(self.db_path),
            "vault_present": meta is not None,
            "vault_name": meta.vault_name if meta else None,
            "item_count": self.count_items(),
        }
