from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from argon2.exceptions import HashingError
from argon2.low_level import Type, hash_secret_raw
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from evault.errors import DecryptionFailed, InvalidPassphrase, VaultAlreadyExists
from evault.storage.models import KdfParams, VaultMeta, VaultStatus, WrappedKey, now_ms
from evault.storage.sqlite_store import VaultStore

from .blob import KEY_BYTES, b64decode, b64encode, open_sealed, seal
from .secrets import SecretBuffer, wipe_bytes

log = logging.getLogger("evault.crypto")

__all__ = [
    "KdfParams",
    "CreatedVault",
    "UnlockedVault",
    "derive_master_key",
    "create_vault",
    "unlock_vault",
    "lock_vault",
]


@dataclass(frozen=True)
class CreatedVault:
    """Result of create_vault. The caller owns (and must wipe) vault_key."""

    vault_meta: VaultMeta
    vault_key: SecretBuffer


@dataclass(frozen=True)
class UnlockedVault:
    """Result of unlock_vault. The caller owns (and must wipe) vault_key."""

    vault_meta: VaultMeta
    vault_key: SecretBuffer


def derive_master_key(passphrase: str, salt: bytes, params: KdfParams) -> SecretBuffer:
    """Stretch a passphrase with Argon2id.

    Security notes:
    - Memory-hard and side-channel resistant (Argon2id).
    - Output depends on every cost parameter; persist them with the salt.
    - Deliberately slow (seconds with default parameters).

    """

    if params.alg != "argon2id":
        raise ValueError(f"unsupported kdf: {params.alg}")

    secret = bytearray(passphrase.encode("utf-8"))
    try:
        raw = hash_secret_raw(
            secret=bytes(secret),
            salt=salt,
            time_cost=params.time_cost,
            memory_cost=params.memory_cost_kib,
            parallelism=params.parallelism,
            hash_len=params.key_bytes,
            type=Type.ID,
        )
    finally:
        wipe_bytes(secret)
    return SecretBuffer(raw)


def _raw_private_bytes(private_key: Ed25519PrivateKey) -> bytearray:
    return bytearray(
        private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )


def _raw_public_bytes(private_key: Ed25519PrivateKey) -> bytes:
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def create_vault(
    store: VaultStore,
    vault_name: str,
    passphrase: str,
    *,
    kdf_params: Optional[KdfParams] = None,
    overwrite: bool = False,
) -> CreatedVault:
    """Create and persist a new vault.

    Steps
    - random salt, Argon2id master key
    - random 32-byte vault key, fresh Ed25519 signing keypair
    - vault key sealed under the master key (nonce #1)
    - signing seed sealed under the vault key (nonce #2)

    Returns the plaintext vault key; the master key and signing seed are
    wiped before returning, on success and on failure.

    """

    if not overwrite and store.get_vault_meta() is not None:
        raise VaultAlreadyExists("a vault already exists in this store")

    params = kdf_params or KdfParams()
    if params.key_bytes != KEY_BYTES:
        raise ValueError(f"key_bytes must be {KEY_BYTES}")

    salt = os.urandom(params.salt_bytes)

    with derive_master_key(passphrase, salt, params) as master_key, SecretBuffer(
        os.urandom(KEY_BYTES)
    ) as vault_key:
        signing_key = Ed25519PrivateKey.generate()
        with SecretBuffer.take(_raw_private_bytes(signing_key)) as seed:
            signing_nonce, signing_cipher = seal(vault_key, seed.view())
        public_key = b64encode(_raw_public_bytes(signing_key))
        del signing_key

        vault_nonce, vault_cipher = seal(master_key, vault_key.view())

        now = now_ms()
        meta = VaultMeta(
            created_at=now,
            updated_at=now,
            vault_name=vault_name,
            status=VaultStatus.UNLOCKED,
            salt=b64encode(salt),
            kdf_params=params,
            wrapped_vault_key=WrappedKey(nonce=vault_nonce, cipher=vault_cipher),
            signing_public_key=public_key,
            wrapped_signing_key=WrappedKey(nonce=signing_nonce, cipher=signing_cipher),
        )
        store.put_vault_meta(meta)
        returned = vault_key.copy()

    log.info("vault_created", extra={"vault_name": vault_name, "kdf_alg": params.alg})
    return CreatedVault(vault_meta=meta, vault_key=returned)


def unlock_vault(store: VaultStore, passphrase: str) -> UnlockedVault:
    """Re-derive the master key and open the wrapped vault key.

    Raises InvalidPassphrase for every failure: wrong passphrase, corrupted
    wrapper, and missing or incomplete metadata (including unusable KDF
    parameters) are indistinguishable.

    """

    meta = store.get_vault_meta()
    if meta is None or not meta.salt or meta.kdf_params is None or meta.wrapped_vault_key is None:
        log.warning("vault_unlock_failed")
        raise InvalidPassphrase()

    master_key: Optional[SecretBuffer] = None
    try:
        salt = b64decode(meta.salt)
        if meta.kdf_params.key_bytes != KEY_BYTES:
            raise ValueError("unexpected kdf key length")
        master_key = derive_master_key(passphrase, salt, meta.kdf_params)
        opened = open_sealed(master_key, meta.wrapped_vault_key.nonce, meta.wrapped_vault_key.cipher)
        if len(opened) != KEY_BYTES:
            wipe_bytes(opened)
            raise DecryptionFailed()
        vault_key = SecretBuffer.take(opened)
    except (DecryptionFailed, ValueError, TypeError, HashingError):
        log.warning("vault_unlock_failed")
        raise InvalidPassphrase() from None
    finally:
        if master_key is not None:
            master_key.wipe()

    meta = store.update_vault_meta(meta.id, status=VaultStatus.UNLOCKED)
    return UnlockedVault(vault_meta=meta, vault_key=vault_key)


def lock_vault(store: VaultStore, vault_key: Optional[SecretBuffer] = None) -> None:
    """Mark the vault locked and wipe the caller's key, if given."""

    if vault_key is not None:
        vault_key.wipe()
    if store.get_vault_meta() is not None:
        store.update_vault_meta(status=VaultStatus.LOCKED)
