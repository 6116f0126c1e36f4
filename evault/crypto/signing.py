from __future__ import annotations

import binascii
from dataclasses import dataclass
from typing import Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from evault.errors import SigningKeyUnavailable
from evault.storage.sqlite_store import VaultStore

from .blob import KeyLike, b64decode, b64encode, open_sealed
from .secrets import SecretBuffer

ALGORITHM = "Ed25519"


@dataclass(frozen=True)
class SigningKeys:
    """An unwrapped signing keypair. The caller must wipe private_key."""

    public_key: bytes
    private_key: SecretBuffer


@dataclass(frozen=True, slots=True)
class SignedHash:
    """Detached signature and the verifying key, both base64."""

    signature: str
    public_key: str


def _public_bytes(private_key: Ed25519PrivateKey) -> bytes:
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def load_signing_keys(store: VaultStore, vault_key: KeyLike) -> SigningKeys:
    """Unwrap the vault's Ed25519 seed with the vault key.

    If the vault has no stored public key yet, it is derived from the seed
    and written back to VaultMeta.

    Raises
    - SigningKeyUnavailable: the wrapped signing key is missing.
    - DecryptionFailed: the wrapper does not open under this vault key.

    """

    meta = store.require_vault_meta()
    wrapper = meta.wrapped_signing_key
    if wrapper is None:
        raise SigningKeyUnavailable("signing key wrapper missing")

    seed = SecretBuffer.take(open_sealed(vault_key, wrapper.nonce, wrapper.cipher))

    try:
        if meta.signing_public_key:
            public_key = b64decode(meta.signing_public_key)
        else:
            public_key = _public_bytes(Ed25519PrivateKey.from_private_bytes(seed.view()))
            store.update_vault_meta(meta.id, signing_public_key=b64encode(public_key))
    except BaseException:
        seed.wipe()
        raise

    return SigningKeys(public_key=public_key, private_key=seed)


def require_signing_key(store: VaultStore, vault_key: KeyLike) -> None:
    """Check that `vault_key` opens the vault's signing key, then wipe it.

    Callers that persist evidence run this first, so a wrong key fails
    before anything is written rather than when the custody event is signed.
    """

    load_signing_keys(store, vault_key).private_key.wipe()


def sign_hash(store: VaultStore, vault_key: KeyLike, hash_value: str) -> SignedHash:
    """Sign the UTF-8 bytes of `hash_value` with the vault's signing key.

    Security notes:
    - The private seed exists unwrapped only inside this call.

    """

    keys = load_signing_keys(store, vault_key)
    with keys.private_key as seed:
        signature = Ed25519PrivateKey.from_private_bytes(seed.view()).sign(
            hash_value.encode("utf-8")
        )
    return SignedHash(signature=b64encode(signature), public_key=b64encode(keys.public_key))


def load_public_key(public_key: Union[str, bytes]) -> Ed25519PublicKey:
    """Load a raw Ed25519 public key from base64 text or raw bytes."""

    raw = b64decode(public_key) if isinstance(public_key, str) else public_key
    return Ed25519PublicKey.from_public_bytes(raw)


def verify_hash_signature(public_key: Union[str, bytes], hash_value: str, signature_b64: str) -> bool:
    """Verify a detached signature over a chain hash. Never raises."""

    try:
        key = load_public_key(public_key)
        sig = b64decode(signature_b64)
    except (binascii.Error, ValueError, TypeError):
        return False

    try:
        key.verify(sig, hash_value.encode("utf-8"))
        return True
    except InvalidSignature:
        return False


def public_key_pem(public_key: Union[str, bytes]) -> str:
    """Render a raw base64 public key as SubjectPublicKeyInfo PEM."""

    return (
        load_public_key(public_key)
        .public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode("ascii")
    )
