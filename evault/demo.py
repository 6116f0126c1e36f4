"""Demo vault with synthetic evidence, stored separately from real data."""

from __future__ import annotations

import base64
import logging
from datetime import datetime, UTC
from pathlib import Path
from typing import List, Optional, Union

from evault.crypto.blob import KeyLike
from evault.crypto.secrets import SecretBuffer
from evault.crypto.vault import create_vault, unlock_vault
from evault.items import capture_item, save_redacted_copy, save_testimony
from evault.storage.context import StorageMode, store_for_mode
from evault.storage.models import (
    EvidenceItem,
    ItemLocation,
    ItemMetadata,
    ItemType,
    KdfParams,
    RedactionRect,
    now_ms,
)
from evault.storage.sqlite_store import VaultStore

log = logging.getLogger("evault.demo")

DEMO_PASSPHRASE = "demo-vault-passphrase"
DEMO_VAULT_NAME = "Demo Vault"

# 10x10 PNG.
DEMO_PNG = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAoAAAAKCAYAAACNMs+9AAAAJ0lEQVR4nGP8z8Dwn4EIwESMolGF"
    "R9GkYwYqRZoGAgA2TgL5Zg7VvwAAAABJRU5ErkJggg=="
)


def demo_store(home: Union[str, Path]) -> VaultStore:
    return store_for_mode(StorageMode.DEMO, home)


def ensure_demo_vault(store: VaultStore, *, kdf_params: Optional[KdfParams] = None) -> SecretBuffer:
    """Create the demo vault if missing and return its (unlocked) vault key."""

    if store.get_vault_meta() is None:
        return create_vault(
            store, DEMO_VAULT_NAME, DEMO_PASSPHRASE, kdf_params=kdf_params
        ).vault_key
    return unlock_vault(store, DEMO_PASSPHRASE).vault_key


def seed_demo_data(store: VaultStore, vault_key: KeyLike) -> List[EvidenceItem]:
    """Populate an empty demo vault: one redacted photo and one testimony.

    A no-op (returns []) when the vault already holds items.
    """

    if store.count_items() > 0:
        return []

    now = now_ms()
    photo = capture_item(
        store,
        vault_key,
        DEMO_PNG,
        mime="image/png",
        item_type=ItemType.PHOTO,
        item_id=f"demo-photo-{now}",
        captured_at=now - 5 * 60 * 1000,
        metadata=ItemMetadata(
            what="Demo photo capture",
            where="Field checkpoint",
            notes="Synthetic evidence for demo walkthroughs",
        ),
        location=ItemLocation(lat=37.7749, lon=-122.4194, accuracy=42, ts=now - 5 * 60 * 1000),
    )
    photo = save_redacted_copy(
        store,
        vault_key,
        photo.id,
        DEMO_PNG,
        mime="image/png",
        rects=[RedactionRect(x=1, y=1, width=6, height=4)],
    )

    when = datetime.fromtimestamp((now - 30 * 60 * 1000) / 1000, tz=UTC)
    testimony = save_testimony(
        store,
        vault_key,
        {
            "what": "Demo written testimony",
            "when": when.isoformat(),
            "where": "Downtown plaza",
            "notes": "This is synthetic demo data for walkthroughs.",
        },
        item_id=f"demo-testimony-{now + 1}",
        captured_at=now - 30 * 60 * 1000,
    )

    log.info("demo_seeded", extra={"item_count": 2})
    return [photo, testimony]
