from __future__ import annotations

from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Iterator, Union

from .sqlite_store import VaultStore


class StorageMode(str, Enum):
    """Which vault database a call operates on.

    Demo and real data live in separate files; callers pass the mode (or the
    store itself) explicitly instead of flipping a process-wide switch.
    """

    PRIMARY = "primary"
    DEMO = "demo"


def store_for_mode(mode: Union[StorageMode, str], home: Union[str, Path]) -> VaultStore:
    """Return an initialised store for `<home>/<mode>.db`."""

    m = StorageMode(mode)
    store = VaultStore(Path(home) / f"{m.value}.db")
    store.init_schema()
    return store


@contextmanager
def storage_context(mode: Union[StorageMode, str], home: Union[str, Path]) -> Iterator[VaultStore]:
    """Scope a block of work to one storage mode.

        with storage_context("demo", home) as store:
            seed_demo_data(store, ...)

    """

    yield store_for_mode(mode, home)
