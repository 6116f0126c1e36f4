"""Persistence for vault metadata, evidence items and custody events."""

from .context import StorageMode, storage_context, store_for_mode  # noqa: F401
from .models import (  # noqa: F401
    AiSuggestions,
    CustodyAction,
    CustodyEvent,
    EncryptedPayload,
    EvidenceItem,
    ItemLocation,
    ItemMetadata,
    ItemRedaction,
    ItemType,
    KdfParams,
    RedactionRect,
    VaultMeta,
    WrappedKey,
)
from .sqlite_store import VaultStore  # noqa: F401
