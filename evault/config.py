from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from evault.crypto.vault import KdfParams

DEFAULT_LARGE_VIDEO_BYTES = 250 * 1024 * 1024


@dataclass(frozen=True, slots=True)
class VaultConfig:
    """Runtime configuration for the CLI and the local API.

    Security notes:
    - Environment variables are treated as trusted local configuration.
    - KDF parameters only apply to newly created vaults; existing vaults
      always use the parameters persisted alongside their salt.

    """

    home: Path
    kdf_params: KdfParams
    large_video_bytes: int = DEFAULT_LARGE_VIDEO_BYTES
    max_upload_bytes: int = 512 * 1024 * 1024
    log_level: str = "INFO"
    unlock_per_minute: int = 10
    unlock_burst: int = 5


def _env_int(name: str, default: int) -> int:
    """Read an integer environment variable, falling back on bad input."""

    raw = os.environ.get(name, "").strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        return int(default)


def load_config(home: Optional[str] = None) -> VaultConfig:
    """Build a VaultConfig from the environment."""

    base = home or os.environ.get("EVAULT_HOME") or str(Path.home() / ".evault")
    defaults = KdfParams()
    kdf = KdfParams(
        time_cost=_env_int("EVAULT_KDF_TIME_COST", defaults.time_cost),
        memory_cost_kib=_env_int("EVAULT_KDF_MEMORY_KIB", defaults.memory_cost_kib),
        parallelism=_env_int("EVAULT_KDF_PARALLELISM", defaults.parallelism),
    )
    return VaultConfig(
        home=Path(base).expanduser(),
        kdf_params=kdf,
        large_video_bytes=_env_int("EVAULT_LARGE_VIDEO_BYTES", DEFAULT_LARGE_VIDEO_BYTES),
        max_upload_bytes=_env_int("EVAULT_MAX_UPLOAD_BYTES", 512 * 1024 * 1024),
        log_level=(os.environ.get("EVAULT_LOG_LEVEL") or "INFO").upper(),
        unlock_per_minute=_env_int("EVAULT_UNLOCK_PER_MINUTE", 10),
        unlock_burst=_env_int("EVAULT_UNLOCK_BURST", 5),
    )
