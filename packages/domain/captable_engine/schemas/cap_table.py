"""Cap table views.

Views are derived outputs: they are recomputed from the ledger on every call
and never stored as mutable state. Percentages are percentage points rounded
to the configured number of places (6 by default) and always sum to exactly
100 when the denominator is positive.
"""

from datetime import datetime
from decimal import Decimal
from typing import Generic, List, Optional, TypeVar
from pydantic import BaseModel, Field

from .base import (
    DomainModel,
    CompanyId,
    ShareClassId,
    ShareholderId,
    ShareCount,
    ZERO,
)
from .instruments import ConversionQuote, UnconvertedInstrument


# =============================================================================
# Current Cap Table
# =============================================================================

class CapTableEntry(DomainModel):
    """Holdings of one shareholder in one share class."""

    shareholder_id: ShareholderId
    shareholder_name: Optional[str] = None
    shareholder_type: Optional[str] = None
    share_class_id: ShareClassId
    share_class_name: Optional[str] = None
    share_type: Optional[str] = None

    shares: ShareCount
    ownership_percentage: Decimal = Field(description="shares / total shares, in points")
    voting_power: ShareCount = Field(description="shares * votes_per_share")
    voting_percentage: Decimal = Field(description="voting_power / total voting power, in points")


class CapTableSummary(DomainModel):
    total_shares: ShareCount = Field(default=ZERO)
    total_shareholders: int = Field(default=0, ge=0)
    total_share_classes: int = Field(default=0, ge=0)
    total_voting_power: ShareCount = Field(default=ZERO)
    last_updated: Optional[datetime] = None


class CapTableView(DomainModel):
    """Current ownership of a company.

    Usage:
        view = aggregator.current_cap_table("acme")
        view.summary.total_shares          # Decimal("1000000")
        view.entries[0].ownership_percentage  # Decimal("60.000000")
    """

    company_id: CompanyId
    share_class_id: Optional[ShareClassId] = Field(
        default=None,
        description="Share class filter the view was computed with"
    )
    as_of: Optional[datetime] = None
    entries: List[CapTableEntry] = Field(default_factory=list)
    summary: CapTableSummary = Field(default_factory=CapTableSummary)

    def entries_for(self, shareholder_id: str) -> List[CapTableEntry]:
        return [e for e in self.entries if e.shareholder_id == shareholder_id]

    def shares_of(self, shareholder_id: str) -> Decimal:
        return sum((e.shares for e in self.entries_for(shareholder_id)), ZERO)


# =============================================================================
# Fully Diluted Cap Table
# =============================================================================

class FullyDilutedEntry(DomainModel):
    """Fully diluted position of one shareholder across all classes."""

    shareholder_id: ShareholderId
    shareholder_name: Optional[str] = None
    shareholder_type: Optional[str] = None

    current_shares: ShareCount = Field(default=ZERO)
    current_percentage: Decimal = Field(default=ZERO)
    options_vested: ShareCount = Field(
        default=ZERO,
        description="Vested, unexercised options"
    )
    options_unvested: ShareCount = Field(default=ZERO)
    convertible_shares: ShareCount = Field(
        default=ZERO,
        description="As-converted shares of OUTSTANDING instruments"
    )
    fully_diluted_shares: ShareCount = Field(default=ZERO)
    fully_diluted_percentage: Decimal = Field(default=ZERO)


class FullyDilutedSummary(DomainModel):
    total_shares_outstanding: ShareCount = Field(default=ZERO)
    total_options_outstanding: ShareCount = Field(default=ZERO)
    total_convertible_shares: ShareCount = Field(default=ZERO)
    fully_diluted_shares: ShareCount = Field(default=ZERO)
    iterations: int = Field(
        default=0,
        ge=0,
        description="Fixed-point iterations used to price convertibles"
    )


class FullyDilutedView(DomainModel):
    company_id: CompanyId
    as_of: Optional[datetime] = None
    funding_round_id: Optional[str] = None
    entries: List[FullyDilutedEntry] = Field(default_factory=list)
    summary: FullyDilutedSummary = Field(default_factory=FullyDilutedSummary)
    conversions: List[ConversionQuote] = Field(default_factory=list)
    unconverted: List[UnconvertedInstrument] = Field(default_factory=list)

    def entry_for(self, shareholder_id: str) -> Optional[FullyDilutedEntry]:
        return next((e for e in self.entries if e.shareholder_id == shareholder_id), None)


# =============================================================================
# Pagination
# =============================================================================

T = TypeVar("T")


class PageMeta(DomainModel):
    total: int = Field(ge=0)
    page: int = Field(ge=1)
    limit: int = Field(ge=1)
    total_pages: int = Field(ge=0)


class Page(BaseModel, Generic[T]):
    """One page of results: ``{data, meta}``."""

    data: List[T] = Field(default_factory=list)
    meta: PageMeta
