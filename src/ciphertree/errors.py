"""Exception taxonomy for the vault core."""


class VaultError(Exception):
    """Base class for every error raised by ciphertree."""
    pass


class ValidationError(VaultError):
    """Raised when a metadata document or resolution payload is malformed.

    Covers unknown schema versions, hybrid documents that mix v1-shaped and
    v2-shaped children, and fields of the wrong type. Documents are never
    repaired; callers must rebuild a valid one.
    """
    pass


class CryptoError(VaultError):
    """Raised by wrap/unwrap/rewrap, AEAD and signing failures.

    The message is the same for every failure of a given operation so that
    callers (and anyone watching them) cannot tell a wrong key apart from a
    corrupted ciphertext. ``code`` is for internal branching only and is never
    shown to end users.
    """

    def __init__(self, message: str, code: str):
        super().__init__(message)
        self.code = code


class ConsistencyError(VaultError):
    """Raised when a pointer record cannot be trusted or cannot be advanced."""
    pass


class StaleSequenceError(ConsistencyError):
    """Raised when a pointer record's sequence is not above the last known one."""

    def __init__(self, candidate: int, last_known: int):
        self.candidate = candidate
        self.last_known = last_known
        super().__init__(f"Stale pointer sequence {candidate} (last known {last_known})")


class ResolutionError(ConsistencyError):
    """Raised when neither the naming layer nor the cache yields a usable record."""
    pass


class NamingLayerError(VaultError):
    """Raised by a naming layer that is unreachable or rejects a record."""
    pass


class RevocationRaceError(VaultError):
    """Raised when a share is revoked while its item is being rotated."""
    pass


class ShareConflictError(VaultError):
    """Raised for self-shares and duplicate active shares."""
    pass


class NotFoundError(VaultError):
    """Raised for a missing path, share or blob."""
    pass


GENERIC_FAILURE_MESSAGE = "Operation failed"


def user_message(exc: Exception) -> str:
    """Message safe to show an end user for ``exc``."""
    if isinstance(exc, CryptoError):
        return GENERIC_FAILURE_MESSAGE
    return str(exc) or GENERIC_FAILURE_MESSAGE
