from __future__ import annotations

import logging
from pathlib import Path

import pytest

from evault.crypto.vault import create_vault
from evault.storage.models import KdfParams
from evault.storage.sqlite_store import VaultStore

# Argon2id at the library minimum; production defaults take seconds.
FAST_KDF = KdfParams(time_cost=1, memory_cost_kib=8192, parallelism=1)


@pytest.fixture(autouse=True)
def _restore_evault_logger():
    """CLI/API entry points call configure_logging(); undo it between tests."""

    logger = logging.getLogger("evault")
    level, handlers = logger.level, list(logger.handlers)
    yield
    logger.setLevel(level)
    logger.handlers[:] = handlers


@pytest.fixture
def fast_kdf() -> KdfParams:
    return FAST_KDF


@pytest.fixture
def store(tmp_path: Path) -> VaultStore:
    s = VaultStore(tmp_path / "vault.db")
    s.init_schema()
    return s


@pytest.fixture
def vault(store: VaultStore):
    """(store, vault_key) for a freshly created vault; the key is wiped afterwards."""

    created = create_vault(store, "Test Vault", "correct-horse", kdf_params=FAST_KDF)
    yield store, created.vault_key
    created.vault_key.wipe()
