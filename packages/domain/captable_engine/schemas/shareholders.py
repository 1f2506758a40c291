"""Shareholder records."""

from datetime import datetime
from pydantic import Field

from .base import (
    RecordModel,
    CompanyId,
    ShareholderId,
    ShareholderType,
    ShareholderStatus,
    utcnow,
)


class Shareholder(RecordModel):
    """A person or entity that may hold ledger balances.

    Only ACTIVE shareholders may appear in new transactions. A shareholder with
    confirmed ledger history is never dropped; removal sets it INACTIVE.
    """

    id: ShareholderId = Field(
        description="Unique identifier for this shareholder"
    )

    company_id: CompanyId = Field(
        description="Owning company"
    )

    name: str = Field(
        min_length=1,
        description="Legal or display name"
    )

    shareholder_type: ShareholderType = Field(
        description="FOUNDER, INVESTOR, EMPLOYEE, ADVISOR or CORPORATE"
    )

    status: ShareholderStatus = Field(
        default="ACTIVE",
        description="ACTIVE, INACTIVE or PENDING"
    )

    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == "ACTIVE"
