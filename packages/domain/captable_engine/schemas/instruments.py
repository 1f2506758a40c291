"""Convertible instruments and funding rounds.

A convertible instrument (SAFE, convertible note, mutuo conversivel,
investimento-anjo) is money invested today that turns into shares at a later
priced round. While OUTSTANDING it dilutes the fully diluted view by its
as-converted share count; once CONVERTED it is represented on the ledger by a
CONVERSION transaction and no longer dilutes.

Conversion price candidates:
    ROUND_PRICE: round price per share
    DISCOUNT:    round price * (1 - discount_rate)
    CAP:         valuation_cap / fully diluted shares

The lowest candidate wins (most shares for the investor). Accrued interest is
added to the principal before dividing.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Dict, FrozenSet, List, Literal, Optional, Union
from dateutil.relativedelta import relativedelta
from pydantic import Field, model_validator

from .base import (
    RecordModel,
    DomainModel,
    CompanyId,
    RecordId,
    ShareClassId,
    ShareholderId,
    MoneyAmount,
    PositiveMoneyAmount,
    ShareCount,
    Rate,
    ZERO,
    ONE,
    utcnow,
)
from .options import to_date


InstrumentType = Literal[
    "SAFE",
    "CONVERTIBLE_NOTE",
    "MUTUO_CONVERSIVEL",
    "INVESTIMENTO_ANJO",
    "MISTO",
]
InterestType = Literal["SIMPLE", "COMPOUND"]
ConversionTrigger = Literal["QUALIFIED_FINANCING", "MATURITY", "NONE"]
InstrumentStatus = Literal["OUTSTANDING", "CONVERTED", "REDEEMED", "MATURED", "CANCELLED"]
PricingMethod = Literal["ROUND_PRICE", "DISCOUNT", "CAP"]
FundingRoundStatus = Literal["DRAFT", "OPEN", "CLOSING", "CLOSED", "CANCELLED"]

INSTRUMENT_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "OUTSTANDING": frozenset({"CONVERTED", "REDEEMED", "MATURED", "CANCELLED"}),
    "MATURED": frozenset({"OUTSTANDING", "CONVERTED", "REDEEMED"}),
    "CONVERTED": frozenset(),
    "REDEEMED": frozenset(),
    "CANCELLED": frozenset(),
}

FUNDING_ROUND_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "DRAFT": frozenset({"OPEN", "CANCELLED"}),
    "OPEN": frozenset({"CLOSING", "CANCELLED"}),
    "CLOSING": frozenset({"CLOSED", "OPEN"}),
    "CLOSED": frozenset(),
    "CANCELLED": frozenset(),
}

DEFAULT_SCENARIO_VALUATIONS = [
    Decimal("2000000"),
    Decimal("4000000"),
    Decimal("6000000"),
    Decimal("8000000"),
    Decimal("10000000"),
]


# =============================================================================
# Funding Round
# =============================================================================

class FundingRound(RecordModel):
    """A priced financing round.

    Closing a round is the usual trigger for converting outstanding
    instruments at the round's price.
    """

    id: RecordId
    company_id: CompanyId
    name: str = Field(min_length=1)

    target_amount: MoneyAmount = Field(
        description="Amount the round intends to raise"
    )

    pre_money_valuation: MoneyAmount = Field(
        description="Pre-money valuation of the company"
    )

    price_per_share: Optional[MoneyAmount] = Field(
        default=None,
        description="Round price; derived from pre-money / fully diluted shares when absent"
    )

    share_class_id: Optional[ShareClassId] = Field(
        default=None,
        description="Class issued to round investors"
    )

    status: FundingRoundStatus = Field(default="DRAFT")

    created_at: datetime = Field(default_factory=utcnow)
    closed_at: Optional[datetime] = None

    @property
    def accepts_conversions(self) -> bool:
        """Round is live (OPEN or CLOSING) or already closed."""
        return self.status in ("OPEN", "CLOSING", "CLOSED")


# =============================================================================
# Conversion Record
# =============================================================================

class ConversionRecord(DomainModel):
    """Recorded outcome of an executed conversion."""

    funding_round_id: RecordId
    transaction_id: RecordId
    share_class_id: ShareClassId
    conversion_amount: MoneyAmount = Field(description="Principal plus accrued interest")
    conversion_price: Decimal = Field(gt=0)
    shares_issued: ShareCount
    method_used: PricingMethod
    executed_at: datetime
    executed_by: Optional[str] = None


class InterestPeriod(DomainModel):
    """Interest accrued during one calendar-month period."""

    period: str = Field(description="Period label, YYYY-MM")
    days: int = Field(ge=0)
    interest_accrued: MoneyAmount
    cumulative_interest: MoneyAmount


# =============================================================================
# Convertible Instrument
# =============================================================================

class ConvertibleInstrument(RecordModel):
    """A SAFE, convertible note or similar instrument.

    Example:
        ConvertibleInstrument(
            id="safe-1",
            company_id="acme",
            shareholder_id="angel",
            instrument_type="SAFE",
            principal_amount=Decimal("500000"),
            issue_date=date(2024, 1, 1),
            valuation_cap=Decimal("10000000"),
            discount_rate=Decimal("0.20"),
        )
    """

    id: RecordId
    company_id: CompanyId
    shareholder_id: ShareholderId

    instrument_type: InstrumentType

    principal_amount: MoneyAmount = Field(
        description="Amount invested"
    )

    interest_rate: Rate = Field(
        default=ZERO,
        description="Annual interest rate as a decimal fraction"
    )

    interest_type: InterestType = Field(default="SIMPLE")

    issue_date: date
    maturity_date: Optional[date] = None

    valuation_cap: Optional[PositiveMoneyAmount] = Field(
        default=None,
        description="Ceiling valuation for the conversion price"
    )

    discount_rate: Optional[Rate] = Field(
        default=None,
        description="Discount to the round price (0.20 = 20%)"
    )

    qualified_financing_threshold: Optional[MoneyAmount] = Field(
        default=None,
        description="Minimum round size that triggers conversion"
    )

    conversion_trigger: ConversionTrigger = Field(default="QUALIFIED_FINANCING")

    target_share_class_id: Optional[ShareClassId] = Field(
        default=None,
        description="Class the instrument converts into"
    )

    target_round_id: Optional[RecordId] = Field(
        default=None,
        description="Round group the instrument is expected to convert in"
    )

    auto_convert: bool = Field(
        default=False,
        description="Convert automatically when its round closes"
    )

    mfn_clause: bool = Field(
        default=False,
        description="Adopt the best terms of later instruments in the same round group"
    )

    status: InstrumentStatus = Field(default="OUTSTANDING")

    conversion: Optional[ConversionRecord] = None

    redemption_amount: Optional[MoneyAmount] = None
    status_changed_at: Optional[datetime] = None
    notes: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode='after')
    def validate_terms(self):
        if self.maturity_date is not None and self.maturity_date <= self.issue_date:
            raise ValueError("maturity_date must be after issue_date")
        if self.conversion_trigger == "MATURITY" and self.valuation_cap is None:
            raise ValueError("MATURITY conversion requires a valuation_cap")
        if self.discount_rate is not None and self.discount_rate >= ONE:
            raise ValueError("discount_rate must be below 1")
        return self

    def days_elapsed(self, as_of: Union[date, datetime]) -> int:
        return max(0, (to_date(as_of) - self.issue_date).days)

    def accrued_interest(self, as_of: Union[date, datetime], day_count: int = 365) -> Decimal:
        """Interest accrued from issue date to ``as_of``.

        SIMPLE:   P * r * days / day_count
        COMPOUND: P * ((1 + r / day_count) ** days - 1)   (daily compounding)
        """
        return self._interest_for_days(self.days_elapsed(as_of), day_count)

    def conversion_amount(self, as_of: Union[date, datetime], day_count: int = 365) -> Decimal:
        return self.principal_amount + self.accrued_interest(as_of, day_count)

    def interest_breakdown(
        self,
        as_of: Union[date, datetime],
        day_count: int = 365,
    ) -> List[InterestPeriod]:
        """Month-by-month interest accrual from issue date to ``as_of``."""
        end = to_date(as_of)
        periods: List[InterestPeriod] = []
        cumulative = ZERO
        start = self.issue_date
        index = 0
        while True:
            period_start = self.issue_date + relativedelta(months=index)
            if period_start >= end:
                break
            period_end = min(self.issue_date + relativedelta(months=index + 1), end)
            days = (period_end - period_start).days
            total = self._interest_for_days((period_end - start).days, day_count)
            periods.append(InterestPeriod(
                period=period_start.strftime("%Y-%m"),
                days=days,
                interest_accrued=total - cumulative,
                cumulative_interest=total,
            ))
            cumulative = total
            index += 1
        return periods

    def _interest_for_days(self, days: int, day_count: int) -> Decimal:
        if days <= 0 or self.interest_rate == 0:
            return ZERO
        principal = self.principal_amount
        rate = self.interest_rate
        if self.interest_type == "SIMPLE":
            return principal * rate * days / day_count
        factor = (ONE + rate / day_count) ** days
        return principal * factor - principal


# =============================================================================
# Conversion Quotes and Scenarios
# =============================================================================

class PriceCandidate(DomainModel):
    method: PricingMethod
    price: Decimal


class ConversionQuote(DomainModel):
    """Priced, converged as-converted outcome for one instrument."""

    instrument_id: RecordId
    shareholder_id: ShareholderId
    conversion_amount: MoneyAmount
    conversion_price: Decimal
    method_used: PricingMethod
    shares: ShareCount
    candidates: List[PriceCandidate] = Field(default_factory=list)
    effective_valuation_cap: Optional[MoneyAmount] = None
    effective_discount_rate: Optional[Rate] = None
    mfn_sources: Dict[str, RecordId] = Field(
        default_factory=dict,
        description="Term name -> sibling instrument id the term was adopted from"
    )


class UnconvertedInstrument(DomainModel):
    """An instrument left out of the as-converted view or a round close."""

    instrument_id: RecordId
    shareholder_id: ShareholderId
    reason: Literal[
        "NO_PRICE",
        "THRESHOLD_NOT_MET",
        "MATURITY_NOT_REACHED",
        "ROUND_NOT_LIVE",
        "NO_SHARE_CLASS",
    ]


class ScenarioMethod(DomainModel):
    conversion_price: Decimal
    shares_issued: ShareCount
    ownership_percentage: Decimal


class ConversionScenario(DomainModel):
    """Conversion outcome at one hypothetical pre-money valuation."""

    hypothetical_valuation: MoneyAmount
    pre_money_shares: ShareCount
    round_price_per_share: Decimal
    discount_method: Optional[ScenarioMethod] = None
    cap_method: Optional[ScenarioMethod] = None
    best_method: PricingMethod
    final_conversion_price: Decimal
    final_shares_issued: ShareCount
    final_ownership_percentage: Decimal
    dilution_to_existing: Decimal


class ConversionScenarios(DomainModel):
    instrument_id: RecordId
    conversion_amount: MoneyAmount
    valuation_cap: Optional[MoneyAmount] = None
    discount_rate: Optional[Rate] = None
    cap_triggers_above: Optional[Decimal] = Field(
        default=None,
        description="Valuation above which the cap beats the discount"
    )
    scenarios: List[ConversionScenario] = Field(default_factory=list)
