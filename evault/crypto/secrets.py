from __future__ import annotations

import hmac
from typing import Optional, Union

BytesLike = Union[bytes, bytearray, memoryview]


class SecretBuffer:
    """An owned, explicitly erasable buffer for key material.

    Use as a context manager to guarantee wiping on every exit path:

        with SecretBuffer(derive()) as key:
            cipher = ChaCha20Poly1305(key.view())

    Security notes:
    - The buffer copies its input into a private bytearray. The caller's
      original object (e.g. an immutable `bytes` returned by a library) cannot
      be zeroed by Python code, so drop references to it promptly.
    - `view()` hands out a memoryview over the live buffer; do not keep it
      beyond the `with` block.
    - repr() never reveals content.

    """

    __slots__ = ("_buf", "_wiped")

    def __init__(self, data: BytesLike) -> None:
        self._buf = bytearray(data)
        self._wiped = False

    @classmethod
    def take(cls, data: bytearray) -> "SecretBuffer":
        """Adopt `data` and zero the caller's buffer after copying it."""

        out = cls(data)
        wipe_bytes(data)
        return out

    def __len__(self) -> int:
        return len(self._buf)

    def __enter__(self) -> "SecretBuffer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.wipe()

    def __repr__(self) -> str:
        state = "wiped" if self._wiped else f"{len(self._buf)} bytes"
        return f"SecretBuffer(<{state}>)"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, SecretBuffer):
            return hmac.compare_digest(self.view(), other.view())
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    @property
    def wiped(self) -> bool:
        return self._wiped

    def view(self) -> memoryview:
        if self._wiped:
            raise ValueError("secret buffer has been wiped")
        return memoryview(self._buf)

    def copy(self) -> "SecretBuffer":
        return SecretBuffer(self.view())

    def wipe(self) -> None:
        """Overwrite the buffer with zeros. Idempotent."""

        wipe_bytes(self._buf)
        self._wiped = True


def wipe_bytes(buf: Optional[bytearray]) -> None:
    """Zero a mutable buffer in place."""

    if buf is None:
        return
    for i in range(len(buf)):
        buf[i] = 0
