from __future__ import annotations


class EvidenceVaultError(Exception):
    """
    Base exception for all evidence vault failures.
    """

    pass


class InvalidPassphrase(EvidenceVaultError):
    """
    Raised when a vault cannot be unlocked.

    The message is deliberately generic: a wrong passphrase, a corrupted
    wrapper and missing vault metadata all look the same to the caller.
    """

    def __init__(self, message: str = "invalid passphrase") -> None:
        super().__init__(message)


class DecryptionFailed(EvidenceVaultError):
    """
    Raised when AEAD authentication fails (wrong key, corruption, tampering).
    """

    def __init__(self, message: str = "decryption failed") -> None:
        super().__init__(message)


class SigningKeyUnavailable(EvidenceVaultError):
    """
    Raised when the wrapped signing key is missing from vault metadata.
    """

    pass


class MissingVaultKey(EvidenceVaultError):
    """
    Raised when an operation that needs plaintext runs without a vault key.
    """

    pass


class VaultNotFound(EvidenceVaultError):
    """
    Raised when the store holds no vault metadata.
    """

    pass


class VaultAlreadyExists(EvidenceVaultError):
    """
    Raised when creating a vault over an existing one.
    """

    pass


class ItemNotFound(EvidenceVaultError, KeyError):
    """
    Raised when an evidence item id is unknown.
    """

    def __str__(self) -> str:
        return Exception.__str__(self)


class ChainForkDetected(EvidenceVaultError):
    """
    Raised when an append would give a custody event a second successor.
    """

    pass


class MalformedLogEntry(EvidenceVaultError, ValueError):
    """
    Raised for an unparseable custody-log line.

    Verifiers catch this per line and report it as an issue.
    """

    def __init__(self, line_no: int, reason: str) -> None:
        super().__init__(f"line {line_no}: {reason}")
        self.line_no = line_no
        self.reason = reason
