from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ApiError(BaseModel):
    """Standard API error payload."""

    error: str
    detail: Optional[str] = None


class CreateVaultIn(BaseModel):
    vault_name: str = Field(min_length=1, max_length=200)
    passphrase: str = Field(min_length=1)


class UnlockIn(BaseModel):
    passphrase: str = Field(min_length=1)


class VaultOut(BaseModel):
    """Public vault state. Never includes wrapped keys or the salt."""

    vault_name: Optional[str] = None
    status: str
    signing_public_key: Optional[str] = None
    created_at: Optional[int] = None
    item_count: int = 0


class ItemOut(BaseModel):
    id: str
    type: str
    created_at: int
    captured_at: int
    blob_mime: str
    blob_size: int
    has_redacted: bool = False
    redacted_mime: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    location: Optional[Dict[str, Any]] = None


class CustodyOut(BaseModel):
    item_id: str
    events: List[Dict[str, Any]] = Field(default_factory=list)
    report: Dict[str, Any] = Field(default_factory=dict)


class ExportIn(BaseModel):
    item_ids: Optional[List[str]] = None
    include_originals: bool = True
    include_redacted: bool = True
    include_metadata: bool = True
    output_mode: str = Field(default="review", pattern="^(review|encrypted)$")
    record_custody: bool = True


class VerifyExportOut(BaseModel):
    ok: bool
    report: Dict[str, Any] = Field(default_factory=dict)
