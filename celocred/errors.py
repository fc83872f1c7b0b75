"""
CeloCred — Error Taxonomy

    InputError           malformed handle / address / type. Rejected before any external call.
    UpstreamUnavailable  identity source or oracle unreachable.
    ProfileNotFound      identity source has no such handle.
    PolicyRejection      terminal, user-facing, never retried automatically.
    LedgerUnconfirmed    timeout / dropped. Safe to retry.
    LedgerRejected       ledger-level revert (e.g. reused proof hash). Never retry the same payload.
"""
from typing import Any, Optional


class CeloCredError(Exception):
    def __init__(self, message: str, detail: Optional[dict] = None):
        self.message = message
        self.detail = detail or {}
        super().__init__(message)


# ── Input ─────────────────────────────────────────

class InputError(CeloCredError):
    pass


class InvalidHandle(InputError):
    pass


class InvalidAddress(InputError):
    pass


class UnknownContributionType(InputError):
    pass


# ── Upstream ──────────────────────────────────────

class UpstreamUnavailable(CeloCredError):
    def __init__(self, message: str, source: str = "", **kwargs):
        self.source = source
        super().__init__(message, **kwargs)


class OracleUnavailable(UpstreamUnavailable):
    def __init__(self, message: str, **kwargs):
        super().__init__(message, source="oracle", **kwargs)


class ProfileNotFound(CeloCredError):
    def __init__(self, handle: str):
        self.handle = handle
        super().__init__(f"GitHub profile '{handle}' not found")


# ── Policy ────────────────────────────────────────

class PolicyRejection(CeloCredError):
    """A submission that will never score. `reason` is safe to show to the user."""

    def __init__(self, reason: str, code: str = "rejected", **kwargs):
        self.reason = reason
        self.code = code
        super().__init__(reason, **kwargs)


# ── Ledger ────────────────────────────────────────

class LedgerError(CeloCredError):
    retry_safe = False

    def __init__(self, message: str, step: str = "", cause: Optional[BaseException] = None, **kwargs):
        self.step = step
        self.cause = cause
        super().__init__(message, **kwargs)


class LedgerUnconfirmed(LedgerError):
    """The write may still land. `tx` is the signed write, when one was made."""
    retry_safe = True

    def __init__(self, message: str, tx: Optional[Any] = None, **kwargs):
        self.tx = tx
        super().__init__(message, **kwargs)


class LedgerRejected(LedgerError):
    retry_safe = False


class LedgerTransientError(LedgerError):
    """Backend-level hiccup (connection reset, 5xx) before the ledger accepted anything."""
    retry_safe = True
