"""How an exported media variant is resolved and hashed.

Two strategies share one interface:

- ReviewContent decrypts the blob; the file is the plaintext and the hash is
  SHA-256 over those bytes.
- EncryptedContent never decrypts; the file is the canonical JSON of
  {cipher, mime, nonce, size} and the hash is SHA-256 over that text.

In both modes sha256(file bytes) == manifest sha256, so one verifier
handles either kind of bundle.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from evault.crypto.blob import EncryptedBlob, KeyLike, decrypt_blob
from evault.custody.canonical import canonical_stringify
from evault.errors import MissingVaultKey
from evault.storage.models import EvidenceItem


class OutputMode(str, Enum):
    REVIEW = "review"
    ENCRYPTED = "encrypted"


class Variant(str, Enum):
    ORIGINAL = "original"
    REDACTED = "redacted"


MIME_EXTENSION = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "audio/webm": "webm",
    "audio/mpeg": "mp3",
    "audio/wav": "wav",
    "audio/ogg": "ogg",
    "application/json": "json",
}

MEDIA_DIR = "media"


def extension_for_mime(mime: Optional[str]) -> str:
    return MIME_EXTENSION.get((mime or "").lower(), "bin")


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def variant_blob(item: EvidenceItem, variant: Union[Variant, str]) -> Optional[EncryptedBlob]:
    """The sealed blob for one variant of an item, or None if it doesn't exist.

    The redacted variant falls back to the original's mime/size when the
    item predates those fields.
    """

    if Variant(variant) is Variant.REDACTED:
        if item.redacted_blob is None:
            return None
        return EncryptedBlob(
            nonce=item.redacted_blob.nonce,
            cipher=item.redacted_blob.cipher,
            mime=item.redacted_mime or item.blob_mime,
            size=item.redacted_size if item.redacted_size is not None else item.blob_size,
        )
    return EncryptedBlob(
        nonce=item.encrypted_blob.nonce,
        cipher=item.encrypted_blob.cipher,
        mime=item.blob_mime,
        size=item.blob_size,
    )


@dataclass(frozen=True, slots=True)
class ResolvedContent:
    """One exported file: bundle-relative name, bytes, and their SHA-256."""

    item_id: str
    filename: str
    data: bytes = field(repr=False)
    sha256: str = ""
    mime: str = "application/octet-stream"


class ReviewContent:
    """Decrypt and export plaintext. Requires the vault key."""

    mode = OutputMode.REVIEW

    def __init__(self, vault_key: Optional[KeyLike]) -> None:
        if vault_key is None:
            raise MissingVaultKey("review-mode export requires an unlocked vault key")
        self._vault_key = vault_key

    def filename(self, item: EvidenceItem, variant: Variant, mime: str) -> str:
        return f"{MEDIA_DIR}/item-{item.id}-{variant.value}.{extension_for_mime(mime)}"

    def resolve(self, item: EvidenceItem, variant: Variant) -> Optional[ResolvedContent]:
        blob = variant_blob(item, variant)
        if blob is None:
            return None
        plain = decrypt_blob(self._vault_key, blob)
        return ResolvedContent(
            item_id=item.id,
            filename=self.filename(item, variant, blob.mime),
            data=plain.data,
            sha256=sha256_hex(plain.data),
            mime=blob.mime,
        )


class EncryptedContent:
    """Export the sealed payload as-is. Never touches a key."""

    mode = OutputMode.ENCRYPTED

    def filename(self, item: EvidenceItem, variant: Variant, mime: str) -> str:
        return f"{MEDIA_DIR}/item-{item.id}-{variant.value}.enc.json"

    def resolve(self, item: EvidenceItem, variant: Variant) -> Optional[ResolvedContent]:
        blob = variant_blob(item, variant)
        if blob is None:
            return None
        data = canonical_stringify(blob.to_payload()).encode("utf-8")
        return ResolvedContent(
            item_id=item.id,
            filename=self.filename(item, variant, blob.mime),
            data=data,
            sha256=sha256_hex(data),
            mime="application/json",
        )


ContentStrategy = Union[ReviewContent, EncryptedContent]


def content_strategy(
    output_mode: Union[OutputMode, str], vault_key: Optional[KeyLike] = None
) -> ContentStrategy:
    """Pick the strategy for an output mode.

    Raises MissingVaultKey for review mode without a key.
    """

    if OutputMode(output_mode) is OutputMode.REVIEW:
        return ReviewContent(vault_key)
    return EncryptedContent()
