from __future__ import annotations

import base64
import binascii
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305

from evault.errors import DecryptionFailed

from .secrets import BytesLike, SecretBuffer, wipe_bytes

log = logging.getLogger("evault.crypto")

KEY_BYTES = 32
NONCE_BYTES = 12
DEFAULT_MIME = "application/octet-stream"
LARGE_VIDEO_BYTES = 250 * 1024 * 1024


@dataclass(frozen=True, slots=True)
class EncryptedBlob:
    """An AEAD-sealed payload with transport-encoded nonce and ciphertext.

    `size` is the plaintext length; `mime` describes the plaintext.
    """

    nonce: str
    cipher: str
    mime: str = DEFAULT_MIME
    size: int = 0

    def to_payload(self) -> Dict[str, Any]:
        return {"nonce": self.nonce, "cipher": self.cipher, "mime": self.mime, "size": self.size}


@dataclass(frozen=True, slots=True)
class PlainBlob:
    """Decrypted payload plus its MIME type."""

    data: bytes
    mime: str = DEFAULT_MIME


KeyLike = Union[SecretBuffer, BytesLike]


def _key_view(key: KeyLike) -> memoryview:
    view = key.view() if isinstance(key, SecretBuffer) else memoryview(key)
    if len(view) != KEY_BYTES:
        raise ValueError(f"vault key must be {KEY_BYTES} bytes")
    return view


def b64encode(data: BytesLike) -> str:
    return base64.b64encode(bytes(data)).decode("ascii")


def b64decode(text: str) -> bytes:
    """Strict base64 decode.

    Rejects skipped characters and non-canonical encodings (non-zero
    padding bits), so every encoded string maps to exactly one byte string.
    """

    raw = base64.b64decode(text.encode("ascii"), validate=True)
    if base64.b64encode(raw).decode("ascii") != text:
        raise ValueError("non-canonical base64")
    return raw


def seal(key: KeyLike, plaintext: BytesLike) -> tuple[str, str]:
    """Encrypt with a fresh random nonce. Returns (nonce_b64, cipher_b64)."""

    nonce = os.urandom(NONCE_BYTES)
    ct = ChaCha20Poly1305(_key_view(key)).encrypt(nonce, bytes(plaintext), None)
    return b64encode(nonce), b64encode(ct)


def open_sealed(key: KeyLike, nonce_b64: str, cipher_b64: str) -> bytearray:
    """Decrypt and authenticate. Any failure is reported as DecryptionFailed.

    Security notes:
    - Never returns partial plaintext; the AEAD tag is checked first.
    - Decoding errors and tag failures are indistinguishable to the caller.

    """

    try:
        nonce = b64decode(nonce_b64)
        ct = b64decode(cipher_b64)
    except (binascii.Error, ValueError, UnicodeEncodeError, AttributeError):
        raise DecryptionFailed() from None
    if len(nonce) != NONCE_BYTES:
        raise DecryptionFailed()
    try:
        pt = ChaCha20Poly1305(_key_view(key)).decrypt(nonce, ct, None)
    except InvalidTag:
        raise DecryptionFailed() from None
    return bytearray(pt)


def encrypt_blob(
    vault_key: KeyLike,
    data: BytesLike,
    *,
    mime: Optional[str] = None,
    large_video_bytes: int = LARGE_VIDEO_BYTES,
) -> EncryptedBlob:
    """Encrypt a whole payload under the vault key.

    The plaintext working copy is zeroed after sealing. Large videos are
    accepted but logged, since the whole payload is held in memory.

    """

    mime = mime or DEFAULT_MIME
    plaintext = bytearray(data)
    size = len(plaintext)

    if mime.startswith("video/") and size > large_video_bytes:
        log.warning(
            "large_video_blob",
            extra={"size_mb": round(size / (1024 * 1024)), "threshold_bytes": large_video_bytes},
        )

    try:
        nonce, cipher = seal(vault_key, plaintext)
    finally:
        wipe_bytes(plaintext)

    return EncryptedBlob(nonce=nonce, cipher=cipher, mime=mime, size=size)


def decrypt_blob(vault_key: KeyLike, encrypted: EncryptedBlob) -> PlainBlob:
    """Open an EncryptedBlob. Raises DecryptionFailed on any authentication failure."""

    pt = open_sealed(vault_key, encrypted.nonce, encrypted.cipher)
    try:
        return PlainBlob(data=bytes(pt), mime=encrypted.mime or DEFAULT_MIME)
    finally:
        wipe_bytes(pt)
