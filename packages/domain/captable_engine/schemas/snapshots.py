"""Cap table snapshots and hash-chain verification results.

A snapshot freezes the aggregated holdings of a company at a point in time and
links itself to its predecessor through ``previous_hash``. Snapshots are
append-only: altering or deleting one breaks every link after it, which
``verify_chain`` reports day by day.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Literal, Optional, Tuple
from pydantic import Field, field_validator

from .base import (
    RecordModel,
    DomainModel,
    CompanyId,
    RecordId,
    ShareCount,
    utcnow,
)


VerificationStatus = Literal["VALID", "INVALID", "NO_DATA"]
MismatchKind = Literal["HASH", "LINK", "TOTALS"]

SnapshotHolding = Tuple[str, str, Decimal]


# =============================================================================
# Snapshot
# =============================================================================

class CapTableSnapshot(RecordModel):
    """Immutable, hash-chained point-in-time cap table.

    ``holdings`` are the recorded inputs of ``state_hash``: positive
    (shareholder_id, share_class_id, shares) tuples sorted by
    (shareholder_id, share_class_id).
    """

    id: RecordId
    company_id: CompanyId

    snapshot_date: datetime = Field(
        description="Instant the snapshot represents"
    )

    trigger: str = Field(
        default="manual",
        min_length=1,
        description="Free-form event tag (manual, auto, round_closed, ...)"
    )

    total_shares: ShareCount
    total_shareholders: int = Field(ge=0)

    holdings: Tuple[SnapshotHolding, ...] = Field(
        default=(),
        description="Sorted (shareholder_id, share_class_id, shares) tuples"
    )

    state_hash: str = Field(min_length=64, max_length=64)
    previous_hash: str = Field(min_length=64, max_length=64)

    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("holdings")
    @classmethod
    def validate_holdings_sorted(cls, v):
        keys = [(holder_id, class_id) for holder_id, class_id, _ in v]
        if keys != sorted(keys):
            raise ValueError("holdings must be sorted by (shareholder_id, share_class_id)")
        return v


# =============================================================================
# Verification Results
# =============================================================================

class HashMismatch(DomainModel):
    """One integrity failure found while walking a chain. Reported, never raised."""

    record_id: RecordId
    day: date
    kind: MismatchKind = Field(
        description="HASH: stored != recomputed; LINK: previous_hash broken; "
                    "TOTALS: recorded totals disagree with holdings"
    )
    expected: str
    actual: str


class ChainVerification(DomainModel):
    """Day-grouped verification report for a hash chain.

    days_verified == days_valid + days_invalid
    status: NO_DATA when nothing was checked, VALID when days_invalid == 0,
    otherwise INVALID.
    """

    status: VerificationStatus
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    days_verified: int = Field(default=0, ge=0)
    days_valid: int = Field(default=0, ge=0)
    days_invalid: int = Field(default=0, ge=0)
    records_checked: int = Field(default=0, ge=0)
    invalid_days: List[date] = Field(default_factory=list)
    mismatches: List[HashMismatch] = Field(default_factory=list)
