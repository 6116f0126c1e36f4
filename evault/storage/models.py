from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

PRIMARY_VAULT_ID = "primary"


def now_ms() -> int:
    """Wall clock in epoch milliseconds (the vault's timestamp unit)."""

    return int(time.time() * 1000)


def _drop_none(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in payload.items() if v is not None}


class ItemType(str, Enum):
    PHOTO = "photo"
    VIDEO = "video"
    AUDIO = "audio"
    TESTIMONY = "testimony"


class CustodyAction(str, Enum):
    CAPTURE = "capture"
    REDACT = "redact"
    EXPORT = "export"
    VERIFY = "verify"
    DELETE = "delete"


class VaultStatus(str, Enum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"


@dataclass(frozen=True, slots=True)
class EncryptedPayload:
    """A nonce + AEAD ciphertext pair (both base64).

    Used for sealed blobs and for wrapped keys alike.
    """

    nonce: str
    cipher: str

    def to_payload(self) -> Dict[str, Any]:
        return {"nonce": self.nonce, "cipher": self.cipher}

    @classmethod
    def from_payload(cls, data: Optional[Mapping[str, Any]]) -> Optional["EncryptedPayload"]:
        if not isinstance(data, Mapping):
            return None
        nonce, cipher = data.get("nonce"), data.get("cipher")
        if not isinstance(nonce, str) or not isinstance(cipher, str):
            return None
        return cls(nonce=nonce, cipher=cipher)


# Wrapped keys share the sealed-payload shape.
WrappedKey = EncryptedPayload


@dataclass(frozen=True, slots=True)
class KdfParams:
    """Argon2id cost parameters, persisted next to the salt.

    Defaults follow the moderate interactive profile: 3 passes over 256 MiB.
    """

    alg: str = "argon2id"
    time_cost: int = 3
    memory_cost_kib: int = 256 * 1024
    parallelism: int = 1
    salt_bytes: int = 16
    key_bytes: int = 32

    def to_payload(self) -> Dict[str, Any]:
        return {
            "alg": self.alg,
            "timeCost": self.time_cost,
            "memoryCostKib": self.memory_cost_kib,
            "parallelism": self.parallelism,
            "saltBytes": self.salt_bytes,
            "keyBytes": self.key_bytes,
        }

    @classmethod
    def from_payload(cls, data: Optional[Mapping[str, Any]]) -> Optional["KdfParams"]:
        if not isinstance(data, Mapping):
            return None
        try:
            return cls(
                alg=str(data["alg"]),
                time_cost=int(data["timeCost"]),
                memory_cost_kib=int(data["memoryCostKib"]),
                parallelism=int(data["parallelism"]),
                salt_bytes=int(data["saltBytes"]),
                key_bytes=int(data["keyBytes"]),
            )
        except (KeyError, TypeError, ValueError):
            return None


@dataclass(frozen=True, slots=True)
class VaultMeta:
    """One record per vault.

    Security invariants
    - wrapped_vault_key is sealed under the passphrase-derived master key.
    - wrapped_signing_key is sealed under the vault key, never the master key.
    - The signing private key is never stored unwrapped.
    """

    id: str = PRIMARY_VAULT_ID
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)
    vault_name: Optional[str] = None
    status: VaultStatus = VaultStatus.LOCKED
    salt: Optional[str] = None
    kdf_params: Optional[KdfParams] = None
    wrapped_vault_key: Optional[WrappedKey] = None
    signing_public_key: Optional[str] = None
    wrapped_signing_key: Optional[WrappedKey] = None

    def to_payload(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "id": self.id,
                "createdAt": self.created_at,
                "updatedAt": self.updated_at,
                "vaultName": self.vault_name,
                "status": VaultStatus(self.status).value,
                "salt": self.salt,
                "kdfParams": self.kdf_params.to_payload() if self.kdf_params else None,
                "wrappedVaultKey": (
                    self.wrapped_vault_key.to_payload() if self.wrapped_vault_key else None
                ),
                "signingPublicKey": self.signing_public_key,
                "wrappedSigningKey": (
                    self.wrapped_signing_key.to_payload() if self.wrapped_signing_key else None
                ),
            }
        )

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "VaultMeta":
        status = data.get("status") or VaultStatus.LOCKED.value
        return cls(
            id=str(data.get("id") or PRIMARY_VAULT_ID),
            created_at=int(data.get("createdAt") or 0),
            updated_at=int(data.get("updatedAt") or 0),
            vault_name=data.get("vaultName"),
            status=VaultStatus(status),
            salt=data.get("salt"),
            kdf_params=KdfParams.from_payload(data.get("kdfParams")),
            wrapped_vault_key=WrappedKey.from_payload(data.get("wrappedVaultKey")),
            signing_public_key=data.get("signingPublicKey"),
            wrapped_signing_key=WrappedKey.from_payload(data.get("wrappedSigningKey")),
        )


@dataclass(frozen=True, slots=True)
class ItemMetadata:
    what: Optional[str] = None
    where: Optional[str] = None
    notes: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return _drop_none({"what": self.what, "where": self.where, "notes": self.notes})

    @classmethod
    def from_payload(cls, data: Optional[Mapping[str, Any]]) -> "ItemMetadata":
        data = data or {}
        return cls(what=data.get("what"), where=data.get("where"), notes=data.get("notes"))


@dataclass(frozen=True, slots=True)
class ItemLocation:
    lat: float
    lon: float
    accuracy: Optional[float] = None
    ts: Optional[int] = None

    def to_payload(self) -> Dict[str, Any]:
        return _drop_none(
            {"lat": self.lat, "lon": self.lon, "accuracy": self.accuracy, "ts": self.ts}
        )

    @classmethod
    def from_payload(cls, data: Optional[Mapping[str, Any]]) -> Optional["ItemLocation"]:
        if not isinstance(data, Mapping) or data.get("lat") is None or data.get("lon") is None:
            return None
        ts = data.get("ts")
        return cls(
            lat=float(data["lat"]),
            lon=float(data["lon"]),
            accuracy=float(data["accuracy"]) if data.get("accuracy") is not None else None,
            ts=int(ts) if ts is not None else None,
        )


@dataclass(frozen=True, slots=True)
class RedactionRect:
    """Axis-aligned rectangle in image pixel coordinates."""

    x: float
    y: float
    width: float
    height: float

    def to_payload(self) -> Dict[str, Any]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "RedactionRect":
        return cls(
            x=float(data["x"]),
            y=float(data["y"]),
            width=float(data["width"]),
            height=float(data["height"]),
        )


@dataclass(frozen=True, slots=True)
class ItemRedaction:
    method: str
    rects: List[RedactionRect]
    created_at: int

    def to_payload(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "rects": [r.to_payload() for r in self.rects],
            "createdAt": self.created_at,
        }

    @classmethod
    def from_payload(cls, data: Optional[Mapping[str, Any]]) -> Optional["ItemRedaction"]:
        if not isinstance(data, Mapping):
            return None
        return cls(
            method=str(data.get("method") or "pixelate"),
            rects=[RedactionRect.from_payload(r) for r in data.get("rects") or []],
            created_at=int(data.get("createdAt") or 0),
        )


@dataclass(frozen=True, slots=True)
class AiSuggestions:
    model_version: str
    detected_at: int
    boxes: List[RedactionRect]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "modelVersion": self.model_version,
            "detectedAt": self.detected_at,
            "boxes": [b.to_payload() for b in self.boxes],
        }

    @classmethod
    def from_payload(cls, data: Optional[Mapping[str, Any]]) -> Optional["AiSuggestions"]:
        if not isinstance(data, Mapping):
            return None
        return cls(
            model_version=str(data.get("modelVersion") or ""),
            detected_at=int(data.get("detectedAt") or 0),
            boxes=[RedactionRect.from_payload(b) for b in data.get("boxes") or []],
        )


@dataclass(frozen=True, slots=True)
class EvidenceItem:
    """An encrypted evidence record.

    The original `encrypted_blob` is never replaced; a redacted copy is
    stored alongside it as a derived artifact.
    """

    id: str
    type: ItemType
    created_at: int
    captured_at: int
    encrypted_blob: EncryptedPayload
    blob_mime: str
    blob_size: int
    metadata: ItemMetadata = field(default_factory=ItemMetadata)
    redacted_blob: Optional[EncryptedPayload] = None
    redacted_mime: Optional[str] = None
    redacted_size: Optional[int] = None
    location: Optional[ItemLocation] = None
    redaction: Optional[ItemRedaction] = None
    ai_suggestions: Optional[AiSuggestions] = None
    updated_at: Optional[int] = None

    def to_payload(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "id": self.id,
                "type": ItemType(self.type).value,
                "createdAt": self.created_at,
                "capturedAt": self.captured_at,
                "encryptedBlob": self.encrypted_blob.to_payload(),
                "blobMime": self.blob_mime,
                "blobSize": self.blob_size,
                "redactedBlob": self.redacted_blob.to_payload() if self.redacted_blob else None,
                "redactedMime": self.redacted_mime,
                "redactedSize": self.redacted_size,
                "metadata": self.metadata.to_payload(),
                "location": self.location.to_payload() if self.location else None,
                "redaction": self.redaction.to_payload() if self.redaction else None,
                "aiSuggestions": (
                    self.ai_suggestions.to_payload() if self.ai_suggestions else None
                ),
                "updatedAt": self.updated_at,
            }
        )

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "EvidenceItem":
        blob = EncryptedPayload.from_payload(data.get("encryptedBlob"))
        if blob is None:
            raise ValueError(f"item {data.get('id')!r} has no encrypted blob")
        return cls(
            id=str(data["id"]),
            type=ItemType(data["type"]),
            created_at=int(data["createdAt"]),
            captured_at=int(data.get("capturedAt") or data["createdAt"]),
            encrypted_blob=blob,
            blob_mime=str(data.get("blobMime") or "application/octet-stream"),
            blob_size=int(data.get("blobSize") or 0),
            metadata=ItemMetadata.from_payload(data.get("metadata")),
            redacted_blob=EncryptedPayload.from_payload(data.get("redactedBlob")),
            redacted_mime=data.get("redactedMime"),
            redacted_size=(
                int(data["redactedSize"]) if data.get("redactedSize") is not None else None
            ),
            location=ItemLocation.from_payload(data.get("location")),
            redaction=ItemRedaction.from_payload(data.get("redaction")),
            ai_suggestions=AiSuggestions.from_payload(data.get("aiSuggestions")),
            updated_at=int(data["updatedAt"]) if data.get("updatedAt") is not None else None,
        )


@dataclass(frozen=True, slots=True)
class CustodyEvent:
    """One link of an item's custody chain.

    `prev_hash`, `hash` and `signature` are sealed by the chain at append
    time and are excluded from the hashed content.
    """

    id: str
    item_id: str
    ts: int
    action: CustodyAction
    details: Optional[Dict[str, Any]] = None
    prev_hash: Optional[str] = None
    hash: Optional[str] = None
    signature: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "itemId": self.item_id,
            "ts": self.ts,
            "action": CustodyAction(self.action).value,
            "details": self.details,
            "prevHash": self.prev_hash,
            "hash": self.hash,
            "signature": self.signature,
        }

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "CustodyEvent":
        return cls(
            id=str(data["id"]),
            item_id=str(data["itemId"]),
            ts=int(data["ts"]),
            action=CustodyAction(data["action"]),
            details=data.get("details"),
            prev_hash=data.get("prevHash") or None,
            hash=data.get("hash"),
            signature=data.get("signature"),
        )
