from __future__ import annotations

from threading import Lock
from typing import Optional

from evault.crypto.secrets import SecretBuffer
from evault.errors import MissingVaultKey


class VaultSession:
    """Holds the unlocked vault key for the lifetime of a local API process.

    Security notes:
    - At most one key is held; replacing or clearing it wipes the old one.
    - Callers get a copy they must wipe, so a concurrent lock can't
      zero a key that is mid-use.

    """

    def __init__(self) -> None:
        self._key: Optional[SecretBuffer] = None
        self._lock = Lock()

    @property
    def unlocked(self) -> bool:
        with self._lock:
            return self._key is not None and not self._key.wiped

    def set(self, key: SecretBuffer) -> None:
        with self._lock:
            if self._key is not None:
                self._key.wipe()
            self._key = key

    def clear(self) -> None:
        with self._lock:
            if self._key is not None:
                self._key.wipe()
            self._key = None

    def key_copy(self) -> SecretBuffer:
        """A fresh copy of the held key. Raises MissingVaultKey when locked."""

        with self._lock:
            if self._key is None or self._key.wiped:
                raise MissingVaultKey("vault is locked")
            return self._key.copy()

    def key_copy_or_none(self) -> Optional[SecretBuffer]:
        with self._lock:
            if self._key is None or self._key.wiped:
                return None
            return self._key.copy()
