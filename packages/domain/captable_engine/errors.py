"""Typed errors raised by the cap table engine.

Every error carries a ``details`` dict with enough structure (entity id,
expected vs. actual values) for the caller to decide between retry and abort.
The engine never renders user-facing messages; the calling layer does.

Retry guidance:
    - ``LedgerConflict``: safe to retry the whole operation once.
    - Everything else: deterministic rejection, do not retry unchanged.

Hash mismatches found during verification are not errors; they are reported
as ``HashMismatch`` records inside ``ChainVerification``.
"""

from typing import Any, Dict, Optional


class CapTableError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details: Dict[str, Any] = details or {}


# =============================================================================
# Ledger Errors
# =============================================================================

class LedgerError(CapTableError):
    """A ledger write was rejected. The ledger is left unchanged."""


class InvalidStateTransition(LedgerError):
    """Illegal status change for a transaction, instrument, grant, or round."""


class InsufficientBalance(LedgerError):
    """A transfer, cancellation, or conversion exceeds the holder's balance."""


class AuthorizedSharesExceeded(LedgerError):
    """Issuing would push a share class past its authorized total."""


class InvalidSplitRatio(LedgerError):
    """A split ratio is non-positive or leaves a fractional balance."""


class InactiveShareholder(LedgerError):
    """A transaction references a shareholder that is not ACTIVE."""


class LedgerConflict(LedgerError):
    """A concurrent writer changed the ledger first (stale version or duplicate id)."""


# =============================================================================
# Record Errors
# =============================================================================

class ImmutableRecord(CapTableError):
    """Attempt to alter a CONFIRMED transaction or an existing snapshot."""


class RecordNotFound(CapTableError, KeyError):
    """A referenced company record does not exist."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class ShareClassInUse(CapTableError):
    """A share class cannot be retired while it has issued shares."""


# =============================================================================
# Instrument and Option Errors
# =============================================================================

class DilutionComputationError(CapTableError):
    """The conversion-price fixed point failed to converge or is undefined."""


class ConversionTriggerNotMet(CapTableError):
    """The funding round does not satisfy the instrument's conversion trigger."""


class OptionPoolExhausted(CapTableError):
    """A grant would exceed the option plan's pool."""


class ExerciseNotAllowed(CapTableError):
    """The grant cannot be exercised for the requested quantity or date."""


# =============================================================================
# Snapshot and Export Errors
# =============================================================================

class InvalidSnapshotDate(CapTableError):
    """Snapshot date lies in the future or before the latest snapshot."""


class VerificationCancelled(CapTableError):
    """Hash-chain verification was cancelled or timed out. Nothing was written."""


class UnsupportedExportFormat(CapTableError):
    """No exporter is registered for the requested format."""


__all__ = [
    "CapTableError",
    "LedgerError",
    "InvalidStateTransition",
    "InsufficientBalance",
    "AuthorizedSharesExceeded",
    "InvalidSplitRatio",
    "InactiveShareholder",
    "LedgerConflict",
    "ImmutableRecord",
    "RecordNotFound",
    "ShareClassInUse",
    "DilutionComputationError",
    "ConversionTriggerNotMet",
    "OptionPoolExhausted",
    "ExerciseNotAllowed",
    "InvalidSnapshotDate",
    "VerificationCancelled",
    "UnsupportedExportFormat",
]
