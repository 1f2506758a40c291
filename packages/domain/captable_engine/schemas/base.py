"""Base classes and type system for the cap table engine models.

This module provides the foundational types, decimal helpers, and base classes
used throughout the schema system. All quantities (shares, money, percentages)
are ``decimal.Decimal``; floats never enter a computation.
"""

from decimal import Decimal, ROUND_DOWN
from datetime import datetime, timezone
from typing import Annotated, Literal
from pydantic import BaseModel, Field, ConfigDict

# =============================================================================
# Base Models
# =============================================================================

class DomainModel(BaseModel):
    """Base class for all engine models.

    Provides common configuration for all Pydantic models in the engine:
    - Validation on assignment for runtime safety
    - Support for Decimal and datetime types
    """

    model_config = ConfigDict(
        frozen=False,  # Views and configs may be adjusted after construction
        validate_assignment=True,
        arbitrary_types_allowed=True,
    )


class RecordModel(DomainModel):
    """Base class for persisted ledger records.

    Records (transactions, grants, instruments, snapshots, audit entries) are
    immutable values. A status change produces a new record via
    ``model_copy(update=...)``; the stores swap the old value for the new one
    under the company lock.
    """

    model_config = ConfigDict(
        frozen=True,
        arbitrary_types_allowed=True,
    )


# =============================================================================
# Type Aliases - Numeric
# =============================================================================

ShareCount = Annotated[
    Decimal,
    Field(ge=0, description="Number of shares (non-negative)")
]

PositiveShareCount = Annotated[
    Decimal,
    Field(gt=0, description="Number of shares (strictly positive)")
]

MoneyAmount = Annotated[
    Decimal,
    Field(ge=0, description="Currency amount (non-negative)")
]

PositiveMoneyAmount = Annotated[
    Decimal,
    Field(gt=0, description="Currency amount (strictly positive)")
]

Rate = Annotated[
    Decimal,
    Field(ge=0, le=1, description="Rate as decimal fraction (0.0 to 1.0)")
]

Percentage = Annotated[
    Decimal,
    Field(ge=0, le=100, description="Percentage points (0 to 100)")
]


# =============================================================================
# ID Conventions
# =============================================================================

CompanyId = Annotated[str, Field(min_length=1, description="Company identifier")]
ShareClassId = Annotated[str, Field(min_length=1, description="Share class identifier")]
ShareholderId = Annotated[str, Field(min_length=1, description="Shareholder identifier")]
RecordId = Annotated[str, Field(min_length=1, description="UUID or user-defined record id")]


# =============================================================================
# Enumerations
# =============================================================================
#
# Closed tagged variants. They carry no behaviour; display labels and badges
# belong to the presentation layer.

ShareClassType = Literal["QUOTA", "COMMON", "PREFERRED"]
AntiDilutionType = Literal["NONE", "FULL_RATCHET", "WEIGHTED_AVERAGE"]
ShareholderType = Literal["FOUNDER", "INVESTOR", "EMPLOYEE", "ADVISOR", "CORPORATE"]
ShareholderStatus = Literal["ACTIVE", "INACTIVE", "PENDING"]
ActorType = Literal["USER", "SYSTEM", "ADMIN"]


# =============================================================================
# Decimal Helpers
# =============================================================================

ZERO = Decimal("0")
ONE = Decimal("1")
HUNDRED = Decimal("100")


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize a datetime to UTC, treating naive values as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def canonical_decimal(value: Decimal) -> str:
    """Render a decimal as a stable fixed-point string.

    The same numeric value always yields the same text regardless of how it was
    constructed: trailing zeros are stripped and exponents are expanded.

    Examples:
        Decimal("1000")     -> "1000"
        Decimal("1E+3")     -> "1000"
        Decimal("2.500")    -> "2.5"
        Decimal("0.000")    -> "0"
    """
    if value == 0:
        return "0"
    return format(value.normalize(), "f")


def truncate(value: Decimal, quantum: Decimal) -> Decimal:
    """Truncate toward zero to a multiple of ``quantum`` (e.g. whole shares)."""
    return (value / quantum).to_integral_value(rounding=ROUND_DOWN) * quantum


def is_whole(value: Decimal) -> bool:
    """True when the decimal has no fractional part."""
    return value == value.to_integral_value()
