from __future__ import annotations

import hmac
import os
from dataclasses import dataclass
from typing import Dict, Optional

API_KEY_HEADER = "X-Evault-Api-Key"


@dataclass(frozen=True, slots=True)
class Caller:
    """Identity behind an API key. Only used for attribution in logs."""

    caller_id: str


def parse_api_keys(raw: str) -> Dict[str, Caller]:
    """Parse EVAULT_API_KEYS into an API key -> Caller mapping.

    Format (semicolon-separated): `<APIKEY>:<CALLER_ID>;...`
    A bare `<APIKEY>` entry is attributed to "local".

    Security notes:
    - Env var is trusted local configuration.
    - Malformed entries are ignored (fail closed by omission).

    """

    out: Dict[str, Caller] = {}
    for entry in (raw or "").split(";"):
        entry = entry.strip()
        if not entry:
            continue
        key, _, caller_id = entry.partition(":")
        key, caller_id = key.strip(), caller_id.strip() or "local"
        if key:
            out[key] = Caller(caller_id=caller_id)
    return out


def load_api_keys() -> Dict[str, Caller]:
    return parse_api_keys(os.environ.get("EVAULT_API_KEYS", ""))


def requires_auth(mapping: Dict[str, Caller]) -> bool:
    """Auth is required if EVAULT_REQUIRE_AUTH is truthy or any key is configured."""

    if os.environ.get("EVAULT_REQUIRE_AUTH", "").strip().lower() in {"1", "true", "yes"}:
        return True
    return bool(mapping)


def authenticate(api_key: Optional[str], mapping: Dict[str, Caller]) -> Optional[Caller]:
    """Constant-time lookup of an API key. Returns None on failure."""

    if not api_key:
        return None
    found: Optional[Caller] = None
    # Compare against every key so timing doesn't reveal position.
    for k, caller in mapping.items():
        if hmac.compare_digest(k.encode("utf-8"), api_key.encode("utf-8")):
            found = caller
    return found
