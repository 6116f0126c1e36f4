"""Cryptographic building blocks for the vault.

Security notes
- Passphrases are stretched with Argon2id; the result only wraps the vault key.
- The vault key encrypts evidence blobs and wraps the Ed25519 signing key.
- Every secret that passes through this package lives in a SecretBuffer and
  is wiped after last use, including on exception paths.
"""

from .blob import EncryptedBlob, PlainBlob, decrypt_blob, encrypt_blob  # noqa: F401
from .secrets import SecretBuffer  # noqa: F401
from .signing import (  # noqa: F401
    SignedHash,
    load_signing_keys,
    sign_hash,
    verify_hash_signature,
)
from .vault import KdfParams, create_vault, lock_vault, unlock_vault  # noqa: F401
