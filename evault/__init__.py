"""Evidence Vault core.

Local-first evidence capture with an encrypted-at-rest vault, a signed
per-item custody hash chain, and offline-verifiable export bundles.

Security notes
- Key material is held in erasable buffers and wiped after last use.
- Custody verification proves consistency of retained records; it cannot
  detect silent deletion of whole records.
"""

__version__ = "0.1.0"
