"""Per-item custody hash chains.

Each evidence item owns an append-only sequence of signed events. The hash
chain proves internal consistency of the retained events; the Ed25519
signature over each hash proves it was produced by the vault's key holder.
The two are checked independently.
"""

from .canonical import UNDEFINED, canonical_stringify, canonicalize  # noqa: F401
from .chain import (  # noqa: F401
    CustodyChain,
    append_custody_event,
    chain_for,
    record_verification,
)
from .schema import (  # noqa: F401
    canonicalize_custody_event,
    canonicalize_custody_event_content,
    custody_event_content,
    custody_event_payload,
)
from .verify import (  # noqa: F401
    ChainIssue,
    ChainReport,
    hash_custody_payload,
    verify_custody_chain,
    verify_custody_chain_details,
)
