"""Evidence item services: capture, testimony, redaction, suggestions.

Every mutation that matters for provenance goes through the custody chain:
capture appends `capture`, saving a redacted copy appends `redact`.
"""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from typing import Any, Mapping, Optional, Sequence, Tuple, Union
from uuid import uuid4

from evault.crypto.blob import LARGE_VIDEO_BYTES, KeyLike, PlainBlob, decrypt_blob, encrypt_blob
from evault.crypto.signing import require_signing_key
from evault.custody.chain import CustodyChain, chain_for
from evault.export.content import Variant, variant_blob
from evault.redaction import normalize_redaction_rects
from evault.storage.models import (
    AiSuggestions,
    CustodyAction,
    EncryptedPayload,
    EvidenceItem,
    ItemLocation,
    ItemMetadata,
    ItemRedaction,
    ItemType,
    RedactionRect,
    now_ms,
)
from evault.storage.sqlite_store import VaultStore

log = logging.getLogger("evault.items")

TESTIMONY_MIME = "application/json"


def capture_item(
    store: VaultStore,
    vault_key: KeyLike,
    data: bytes,
    *,
    mime: str,
    item_type: Union[ItemType, str],
    metadata: Optional[ItemMetadata] = None,
    location: Optional[ItemLocation] = None,
    captured_at: Optional[int] = None,
    item_id: Optional[str] = None,
    chain: Optional[CustodyChain] = None,
    large_video_bytes: int = LARGE_VIDEO_BYTES,
) -> EvidenceItem:
    """Encrypt and store a new item, then append its `capture` event.

    The vault key is checked against the signing key first, so a wrong key
    leaves no item behind.
    """

    require_signing_key(store, vault_key)
    sealed = encrypt_blob(vault_key, data, mime=mime, large_video_bytes=large_video_bytes)
    now = now_ms()
    item = EvidenceItem(
        id=item_id or str(uuid4()),
        type=ItemType(item_type),
        created_at=now,
        captured_at=captured_at if captured_at is not None else now,
        encrypted_blob=EncryptedPayload(nonce=sealed.nonce, cipher=sealed.cipher),
        blob_mime=sealed.mime,
        blob_size=sealed.size,
        metadata=metadata or ItemMetadata(),
        location=location,
    )
    store.add_item(item)

    (chain or chain_for(store)).append(
        item_id=item.id,
        action=CustodyAction.CAPTURE,
        vault_key=vault_key,
        details={"type": item.type.value, "mime": item.blob_mime, "size": item.blob_size},
    )
    log.info(
        "item_captured",
        extra={"item_id": item.id, "item_type": item.type.value, "size": item.blob_size},
    )
    return item


def save_testimony(
    store: VaultStore,
    vault_key: KeyLike,
    testimony: Mapping[str, Any],
    *,
    metadata: Optional[ItemMetadata] = None,
    location: Optional[ItemLocation] = None,
    captured_at: Optional[int] = None,
    item_id: Optional[str] = None,
    chain: Optional[CustodyChain] = None,
) -> EvidenceItem:
    """Store a written statement as a JSON `testimony` item.

    When no metadata is given, what/where/notes are lifted from the
    testimony payload itself.
    """

    if metadata is None:
        metadata = ItemMetadata(
            what=testimony.get("what"),
            where=testimony.get("where"),
            notes=testimony.get("notes"),
        )
    payload = json.dumps(dict(testimony), ensure_ascii=False).encode("utf-8")
    return capture_item(
        store,
        vault_key,
        payload,
        mime=TESTIMONY_MIME,
        item_type=ItemType.TESTIMONY,
        metadata=metadata,
        location=location,
        captured_at=captured_at,
        item_id=item_id,
        chain=chain,
    )


def save_redacted_copy(
    store: VaultStore,
    vault_key: KeyLike,
    item_id: str,
    redacted: bytes,
    *,
    mime: str,
    rects: Sequence[RedactionRect],
    method: str = "pixelate",
    auto: bool = False,
    image_size: Optional[Tuple[float, float]] = None,
    chain: Optional[CustodyChain] = None,
) -> EvidenceItem:
    """Attach a redacted derivative to an item and append a `redact` event.

    The original encrypted blob is left untouched. Saving again replaces
    the previous redacted copy; each save is its own custody event.

    Rects are normalized before they are recorded: negative extents are
    flipped, rects are clamped to `image_size` (width, height) when given,
    and empty ones are dropped.
    """

    item = store.get_item(item_id)
    require_signing_key(store, vault_key)
    width, height = image_size if image_size is not None else (None, None)
    rects = normalize_redaction_rects(rects, width, height)
    sealed = encrypt_blob(vault_key, redacted, mime=mime)
    now = now_ms()
    updated = replace(
        item,
        redacted_blob=EncryptedPayload(nonce=sealed.nonce, cipher=sealed.cipher),
        redacted_mime=sealed.mime,
        redacted_size=sealed.size,
        redaction=ItemRedaction(method=method, rects=list(rects), created_at=now),
        updated_at=now,
    )
    store.update_item(updated)

    details: dict = {"method": method, "rectCount": len(rects)}
    if auto:
        details["auto"] = True
    (chain or chain_for(store)).append(
        item_id=item_id, action=CustodyAction.REDACT, vault_key=vault_key, details=details
    )
    log.info("item_redacted", extra={"item_id": item_id, "rect_count": len(rects)})
    return updated


def load_item_plaintext(
    vault_key: KeyLike, item: EvidenceItem, variant: Union[Variant, str] = Variant.ORIGINAL
) -> PlainBlob:
    """Decrypt one variant of an item. Raises LookupError if it doesn't exist."""

    blob = variant_blob(item, variant)
    if blob is None:
        raise LookupError(f"item {item.id} has no {Variant(variant).value} variant")
    return decrypt_blob(vault_key, blob)


def record_ai_suggestions(
    store: VaultStore,
    item_id: str,
    *,
    model_version: str,
    rects: Sequence[RedactionRect],
    detected_at: Optional[int] = None,
) -> EvidenceItem:
    """Store detector boxes on an item for later review.

    Suggestions are advisory; they enter the custody record only once a
    redaction using them is saved.
    """

    item = store.get_item(item_id)
    updated = replace(
        item,
        ai_suggestions=AiSuggestions(
            model_version=model_version,
            detected_at=detected_at if detected_at is not None else now_ms(),
            boxes=list(rects),
        ),
        updated_at=now_ms(),
    )
    store.update_item(updated)
    return updated
