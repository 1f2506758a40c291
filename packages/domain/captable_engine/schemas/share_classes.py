"""Share class definitions and derived per-class totals.

A share class carries the voting weight, conversion ratio and (for preferred
classes) liquidation terms consulted by every ownership computation. The
issued total is never stored on the class itself; it is derived by folding the
ledger into ``ShareClassTotals``.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from pydantic import Field, model_validator

from .base import (
    RecordModel,
    DomainModel,
    CompanyId,
    ShareClassId,
    ShareClassType,
    AntiDilutionType,
    ShareCount,
    ZERO,
    utcnow,
)


# =============================================================================
# Share Class
# =============================================================================

class ShareClass(RecordModel):
    """Authoritative metadata for a class of shares.

    Share types:
        - QUOTA: Quotas of a limited liability company (Ltda.)
        - COMMON: Ordinary shares (ON)
        - PREFERRED: Preferred shares (PN), optionally with liquidation terms

    Preferred-only terms:
        liquidation_preference_multiple, participating_rights,
        participation_cap and seniority are rejected on QUOTA and COMMON
        classes.

    Conversion:
        conversion_ratio is the number of target-class shares credited per
        share of this class when a holder converts (1 share -> N shares).

    Example:
        ShareClass(
            id="pn-a",
            company_id="acme",
            name="Preferred A",
            share_type="PREFERRED",
            total_authorized=Decimal("2000000"),
            liquidation_preference_multiple=Decimal("1"),
            seniority=0,
        )
    """

    id: ShareClassId = Field(
        description="Unique identifier for this share class"
    )

    company_id: CompanyId = Field(
        description="Owning company"
    )

    name: str = Field(
        min_length=1,
        description="Human-readable class name"
    )

    share_type: ShareClassType = Field(
        description="QUOTA, COMMON or PREFERRED"
    )

    total_authorized: ShareCount = Field(
        description="Maximum number of shares that may be issued in this class"
    )

    votes_per_share: int = Field(
        default=1,
        ge=0,
        description="Votes carried by each share (0 = non-voting)"
    )

    liquidation_preference_multiple: Optional[Decimal] = Field(
        default=None,
        ge=0,
        description="Liquidation preference as a multiple of investment (preferred only)"
    )

    participating_rights: bool = Field(
        default=False,
        description="Participates pro-rata after its preference (preferred only)"
    )

    participation_cap: Optional[Decimal] = Field(
        default=None,
        gt=0,
        description="Cap on participation as a multiple of investment (preferred only)"
    )

    seniority: Optional[int] = Field(
        default=None,
        ge=0,
        description="Rank in the liquidation stack, 0 = most senior (preferred only)"
    )

    conversion_ratio: Decimal = Field(
        default=Decimal("1"),
        gt=0,
        description="Target-class shares credited per share converted"
    )

    anti_dilution_type: AntiDilutionType = Field(
        default="NONE",
        description="Anti-dilution protection carried by the class"
    )

    created_at: datetime = Field(
        default_factory=utcnow,
        description="Creation timestamp"
    )

    @model_validator(mode='after')
    def validate_preferred_terms(self):
        """Liquidation terms only make sense on preferred shares."""
        if self.share_type != "PREFERRED":
            preferred_only = {
                "liquidation_preference_multiple": self.liquidation_preference_multiple,
                "participation_cap": self.participation_cap,
                "seniority": self.seniority,
            }
            present = [name for name, value in preferred_only.items() if value is not None]
            if self.participating_rights:
                present.append("participating_rights")
            if present:
                raise ValueError(
                    f"{', '.join(present)} only valid for PREFERRED share classes, "
                    f"not {self.share_type}"
                )
        if self.participation_cap is not None and not self.participating_rights:
            raise ValueError("participation_cap requires participating_rights")
        return self


# =============================================================================
# Derived Totals
# =============================================================================

class ShareClassTotals(DomainModel):
    """Issued and authorized totals of a class, as derived from the ledger.

    ``total_authorized`` starts at the registry value and is rewritten by
    confirmed splits; ``total_issued`` is the sum of all holder balances.
    """

    share_class_id: ShareClassId
    total_authorized: ShareCount
    total_issued: ShareCount = Field(default=ZERO)

    @property
    def available(self) -> Decimal:
        """Shares still available for issuance."""
        return self.total_authorized - self.total_issued
