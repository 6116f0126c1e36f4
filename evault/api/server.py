from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Response, UploadFile
from fastapi.responses import JSONResponse
from starlette.requests import Request

from evault.api.auth import API_KEY_HEADER, Caller, authenticate, load_api_keys, requires_auth
from evault.api.middleware import VaultRequestMiddleware
from evault.api.models import (
    CreateVaultIn,
    CustodyOut,
    ExportIn,
    ItemOut,
    UnlockIn,
    VaultOut,
    VerifyExportOut,
)
from evault.api.session import VaultSession
from evault.api.throttle import UnlockThrottle
from evault.config import VaultConfig, load_config
from evault.crypto.secrets import wipe_bytes
from evault.crypto.signing import verify_hash_signature
from evault.crypto.vault import create_vault, lock_vault, unlock_vault
from evault.custody.chain import chain_for
from evault.errors import (
    ChainForkDetected,
    DecryptionFailed,
    EvidenceVaultError,
    InvalidPassphrase,
    ItemNotFound,
    MissingVaultKey,
    VaultAlreadyExists,
    VaultNotFound,
)
from evault.export.bundle import build_export_zip
from evault.export.verifier import verify_bundle_zip
from evault.items import capture_item
from evault.logging_utils import configure_logging
from evault.storage.context import StorageMode, store_for_mode
from evault.storage.models import EvidenceItem, ItemLocation, ItemMetadata, ItemType, VaultStatus
from evault.storage.sqlite_store import VaultStore

log = logging.getLogger("evault.api")

# Errors are mapped to status codes with generic details; crypto failures
# never say more than their class name.
_ERROR_STATUS = {
    InvalidPassphrase: (401, "invalid_passphrase"),
    MissingVaultKey: (423, "vault_locked"),
    ItemNotFound: (404, "item_not_found"),
    VaultNotFound: (404, "vault_not_found"),
    DecryptionFailed: (422, "decryption_failed"),
    VaultAlreadyExists: (409, "vault_exists"),
    ChainForkDetected: (409, "custody_fork"),
}


def _item_out(item: EvidenceItem) -> ItemOut:
    return ItemOut(
        id=item.id,
        type=item.type.value,
        created_at=item.created_at,
        captured_at=item.captured_at,
        blob_mime=item.blob_mime,
        blob_size=item.blob_size,
        has_redacted=item.redacted_blob is not None,
        redacted_mime=item.redacted_mime,
        metadata=item.metadata.to_payload(),
        location=item.location.to_payload() if item.location else None,
    )


def create_app(
    *,
    config: Optional[VaultConfig] = None,
    mode: StorageMode = StorageMode.PRIMARY,
) -> FastAPI:
    """Create the local vault API.

    Security notes:
    - Intended for 127.0.0.1. The unlocked vault key lives in process memory
      until /vault/lock or shutdown.
    - When API keys are configured every endpoint except /health requires
      the X-Evault-Api-Key header.

    """

    cfg = config or load_config()
    mapping = load_api_keys()
    must_auth = requires_auth(mapping)

    configure_logging(cfg.log_level)

    app = FastAPI(title="Evidence Vault API", version="0.1")
    app.state.cfg = cfg
    app.state.must_auth = must_auth

    app.add_middleware(VaultRequestMiddleware)

    store: VaultStore = store_for_mode(mode, cfg.home)
    session = VaultSession()
    throttle = UnlockThrottle(per_minute=cfg.unlock_per_minute, burst=cfg.unlock_burst)
    app.state.store = store
    app.state.session = session

    @app.on_event("shutdown")
    def _wipe_session() -> None:
        session.clear()

    @app.exception_handler(EvidenceVaultError)
    async def _vault_error(request: Request, exc: EvidenceVaultError) -> JSONResponse:
        for cls, (status, code) in _ERROR_STATUS.items():
            if isinstance(exc, cls):
                return JSONResponse(status_code=status, content={"error": code})
        log.warning("api_vault_error", extra={"error_type": type(exc).__name__})
        return JSONResponse(status_code=400, content={"error": type(exc).__name__})

    def get_caller(
        request: Request,
        x_evault_api_key: Optional[str] = Header(default=None, alias=API_KEY_HEADER),
    ) -> Caller:
        """Authenticate the request (fail closed with 401)."""

        if not must_auth:
            caller = Caller(caller_id="local")
        else:
            caller = authenticate(x_evault_api_key, mapping)
            if caller is None:
                raise HTTPException(status_code=401, detail="unauthorized")
        request.state.caller_id = caller.caller_id
        return caller

    def _vault_out() -> VaultOut:
        meta = store.get_vault_meta()
        if meta is None:
            return VaultOut(status="absent")
        status = VaultStatus.UNLOCKED.value if session.unlocked else VaultStatus.LOCKED.value
        return VaultOut(
            vault_name=meta.vault_name,
            status=status,
            signing_public_key=meta.signing_public_key,
            created_at=meta.created_at,
            item_count=store.count_items(),
        )

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "auth_required": must_auth,
            "mode": StorageMode(mode).value,
            "vault_present": store.get_vault_meta() is not None,
            "unlocked": session.unlocked,
        }

    @app.get("/vault", response_model=VaultOut)
    def get_vault(caller: Caller = Depends(get_caller)) -> VaultOut:
        return _vault_out()

    @app.post("/vault", response_model=VaultOut, status_code=201)
    def create_vault_endpoint(body: CreateVaultIn, caller: Caller = Depends(get_caller)) -> VaultOut:
        created = create_vault(store, body.vault_name, body.passphrase, kdf_params=cfg.kdf_params)
        session.set(created.vault_key)
        return _vault_out()

    @app.post("/vault/unlock", response_model=VaultOut)
    def unlock_endpoint(
        body: UnlockIn, request: Request, caller: Caller = Depends(get_caller)
    ) -> VaultOut:
        client = getattr(request, "client", None)
        ident = f"{caller.caller_id}@{getattr(client, 'host', None) or 'unknown'}"
        decision = throttle.check(ident)
        if not decision.allowed:
            raise HTTPException(
                status_code=429,
                detail="too_many_attempts",
                headers={"Retry-After": str(decision.retry_after_seconds)},
            )
        unlocked = unlock_vault(store, body.passphrase)
        session.set(unlocked.vault_key)
        return _vault_out()

    @app.post("/vault/lock", response_model=VaultOut)
    def lock_endpoint(caller: Caller = Depends(get_caller)) -> VaultOut:
        session.clear()
        lock_vault(store)
        return _vault_out()

    @app.get("/items", response_model=List[ItemOut])
    def list_items_endpoint(
        response: Response,
        caller: Caller = Depends(get_caller),
        limit: int = 100,
        offset: int = 0,
    ) -> List[ItemOut]:
        """List items (metadata only, newest capture first).

        Pagination hints: X-Has-More, X-Next-Offset.
        """

        lim = max(1, min(500, int(limit)))
        off = max(0, int(offset))
        items = store.list_items(limit=lim, offset=off)
        has_more = len(items) == lim
        response.headers["X-Has-More"] = "true" if has_more else "false"
        if has_more:
            response.headers["X-Next-Offset"] = str(off + lim)
        return [_item_out(i) for i in items]

    def _read_upload(upload: UploadFile) -> bytearray:
        """Read an upload into memory in chunks, enforcing the size cap."""

        buf = bytearray()
        while True:
            chunk = upload.file.read(1024 * 1024)
            if not chunk:
                break
            buf.extend(chunk)
            if len(buf) > cfg.max_upload_bytes:
                wipe_bytes(buf)
                raise HTTPException(status_code=413, detail="upload_too_large")
        return buf

    @app.post("/items", response_model=ItemOut, status_code=201)
    def capture_endpoint(
        caller: Caller = Depends(get_caller),
        file: UploadFile = File(...),
        item_type: str = Form(default="photo"),
        what: Optional[str] = Form(default=None),
        where: Optional[str] = Form(default=None),
        notes: Optional[str] = Form(default=None),
        lat: Optional[float] = Form(default=None),
        lon: Optional[float] = Form(default=None),
        accuracy: Optional[float] = Form(default=None),
        captured_at: Optional[int] = Form(default=None),
    ) -> ItemOut:
        """Encrypt an uploaded file into the vault and record its capture.

        Security notes:
        - The plaintext upload buffer is zeroed after encryption.
        - The client filename is never stored.

        """

        try:
            kind = ItemType(item_type)
        except ValueError:
            raise HTTPException(status_code=422, detail="invalid_item_type") from None

        with session.key_copy() as key:
            data = _read_upload(file)
            try:
                location = (
                    ItemLocation(lat=lat, lon=lon, accuracy=accuracy, ts=captured_at)
                    if lat is not None and lon is not None
                    else None
                )
                item = capture_item(
                    store,
                    key,
                    data,
                    mime=file.content_type or "application/octet-stream",
                    item_type=kind,
                    metadata=ItemMetadata(what=what, where=where, notes=notes),
                    location=location,
                    captured_at=captured_at,
                    large_video_bytes=cfg.large_video_bytes,
                )
            finally:
                wipe_bytes(data)
        return _item_out(item)

    @app.get("/items/{item_id}/custody", response_model=CustodyOut)
    def custody_endpoint(item_id: str, caller: Caller = Depends(get_caller)) -> CustodyOut:
        """Custody events for an item plus a chain and signature report."""

        store.get_item(item_id)
        chain = chain_for(store)
        events = chain.events(item_id)
        report = chain.verify(item_id)
        return CustodyOut(
            item_id=item_id,
            events=[e.to_payload() for e in events],
            report=report.to_dict(),
        )

    @app.post("/export")
    def export_endpoint(body: ExportIn, caller: Caller = Depends(get_caller)) -> Response:
        """Build an export archive and return it as application/zip.

        Review mode needs the vault unlocked (423 otherwise); encrypted mode
        works while locked unless custody recording is requested.
        """

        if body.item_ids:
            items = [store.get_item(i) for i in dict.fromkeys(body.item_ids)]
        else:
            items = store.list_items(limit=5000)

        key = session.key_copy_or_none()
        try:
            bundle = build_export_zip(
                store,
                items=items,
                include_originals=body.include_originals,
                include_redacted=body.include_redacted,
                include_metadata=body.include_metadata,
                output_mode=body.output_mode,
                vault_key=key,
                record_custody=body.record_custody,
            )
        finally:
            if key is not None:
                key.wipe()

        headers = {
            "Content-Disposition": f'attachment; filename="{bundle.zip_filename}"',
            "X-Evault-Export-Id": bundle.manifest.export_id,
        }
        return Response(content=bundle.zip_data, media_type="application/zip", headers=headers)

    @app.post("/verify-export", response_model=VerifyExportOut)
    def verify_export_endpoint(
        caller: Caller = Depends(get_caller),
        bundle_zip: UploadFile = File(...),
    ) -> VerifyExportOut:
        """Verify an uploaded export archive, including custody signatures.

        Security notes:
        - The archive is untrusted input; it is read, never extracted to disk.
        - Signatures are checked against this vault's key when one exists,
          otherwise against the key embedded in the log (self-consistency only).

        """

        tmpdir = Path(tempfile.mkdtemp(prefix="evault_verify_"))
        try:
            path = tmpdir / "bundle.zip"
            with path.open("wb") as f:
                total = 0
                while True:
                    chunk = bundle_zip.file.read(1024 * 1024)
                    if not chunk:
                        break
                    total += len(chunk)
                    if total > cfg.max_upload_bytes:
                        raise HTTPException(status_code=413, detail="upload_too_large")
                    f.write(chunk)
            meta = store.get_vault_meta()
            report = verify_bundle_zip(
                path,
                signature_checker=verify_hash_signature,
                trusted_public_key=meta.signing_public_key if meta else None,
            )
            return VerifyExportOut(ok=report.ok, report=report.to_dict())
        finally:
            shutil.rmtree(tmpdir, ignore_errors=True)

    return app


def app_from_env() -> FastAPI:
    """Factory for Uvicorn (`uvicorn --factory evault.api.server:app_from_env`).

    Reads EVAULT_HOME and the other EVAULT_* settings; EVAULT_MODE selects
    the primary or demo database.
    """

    mode = os.environ.get("EVAULT_MODE", StorageMode.PRIMARY.value).strip() or "primary"
    return create_app(config=load_config(), mode=StorageMode(mode))
