"""Option plans, option grants and vesting.

An option plan reserves a pool of shares in one share class. Grants draw from
the pool and vest on a cliff + periodic schedule. Exercised options leave the
option domain entirely: the exercise becomes an ordinary ISSUANCE transaction
on the ledger.

Vesting mechanics:
    cliff_date      = grant_date + cliff_months
    vesting_end     = grant_date + vesting_duration_months
    cliff_amount    = quantity * cliff_months / vesting_duration_months
    per_period      = (quantity - cliff_amount) / post_cliff_periods

    Before the cliff nothing is vested. At or after vesting_end everything is.
    In between: cliff_amount + per_period * elapsed_periods, floored to whole
    shares. The schedule gives the remainder to the last period.

Example:
    48-month grant of 4,800 options, 12-month cliff, monthly vesting:
        - 12 months: 1,200 vested (cliff)
        - 13 months: 1,300 vested
        - 48 months: 4,800 vested
"""

from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_DOWN
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
    PositiveShareCount,
    ShareCount,
    MoneyAmount,
    ZERO,
    HUNDRED,
    utcnow,
)


TerminationPolicy = Literal["FORFEITURE", "ACCELERATION", "PRO_RATA"]
OptionPlanStatus = Literal["ACTIVE", "CLOSED"]
VestingFrequency = Literal["MONTHLY", "QUARTERLY", "ANNUALLY"]
GrantStatus = Literal["ACTIVE", "EXERCISED", "CANCELLED", "EXPIRED", "FORFEITED"]

FREQUENCY_MONTHS: Dict[str, int] = {
    "MONTHLY": 1,
    "QUARTERLY": 3,
    "ANNUALLY": 12,
}

CENT = Decimal("0.01")

GRANT_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "ACTIVE": frozenset({"EXERCISED", "CANCELLED", "EXPIRED", "FORFEITED"}),
    "EXERCISED": frozenset(),
    "CANCELLED": frozenset(),
    "EXPIRED": frozenset(),
    "FORFEITED": frozenset(),
}

OPTION_PLAN_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "ACTIVE": frozenset({"CLOSED"}),
    "CLOSED": frozenset(),
}


def to_date(value: Union[date, datetime]) -> date:
    """Calendar date of a date or datetime."""
    if isinstance(value, datetime):
        return value.date()
    return value


def add_months(start: date, months: int) -> date:
    return start + relativedelta(months=months)


def months_between(start: date, end: date) -> int:
    """Whole calendar months from start to end (0 if end precedes start)."""
    delta = relativedelta(end, start)
    return max(0, delta.years * 12 + delta.months)


def floor_shares(value: Decimal) -> Decimal:
    return value.to_integral_value(rounding=ROUND_DOWN)


# =============================================================================
# Option Plan
# =============================================================================

class OptionPlan(RecordModel):
    """An employee option pool.

    Termination policies (applied to a grant once it is terminated):
        - FORFEITURE: vesting stops at the termination date
        - ACCELERATION: the whole grant vests at termination
        - PRO_RATA: vesting is prorated daily to the termination date,
          ignoring the cliff

    After termination the holder has ``exercise_window_days`` to exercise
    vested options; past the window the grant no longer dilutes.
    """

    id: RecordId
    company_id: CompanyId
    name: str = Field(min_length=1)

    share_class_id: ShareClassId = Field(
        description="Class that exercised options are issued in"
    )

    total_pool_size: PositiveShareCount = Field(
        description="Options reserved for grants under this plan"
    )

    termination_policy: TerminationPolicy = Field(default="FORFEITURE")

    exercise_window_days: int = Field(
        default=90,
        ge=1,
        le=365,
        description="Days after termination during which vested options stay exercisable"
    )

    status: OptionPlanStatus = Field(default="ACTIVE")

    created_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Vesting Status
# =============================================================================

class VestingStatus(DomainModel):
    """Vesting position of a grant at a point in time."""

    vested: ShareCount
    unvested: ShareCount
    exercisable: ShareCount
    percentage: Decimal = Field(description="Vested percentage, 2 dp")
    cliff_date: date
    cliff_met: bool
    next_vesting_date: Optional[date] = None
    next_vesting_amount: ShareCount = Field(default=ZERO)


class VestingEvent(DomainModel):
    """One entry of a grant's vesting schedule."""

    vesting_date: date
    quantity: ShareCount
    cumulative: ShareCount
    event_type: Literal["CLIFF", "MONTHLY", "QUARTERLY", "ANNUALLY"]


# =============================================================================
# Option Grant
# =============================================================================

class OptionGrant(RecordModel):
    """Options granted to a shareholder under a plan.

    ``exercised`` counts options already converted into shares; the vested
    but unexercised remainder is what dilutes the fully diluted view.
    """

    id: RecordId
    company_id: CompanyId
    plan_id: RecordId
    shareholder_id: ShareholderId

    quantity: PositiveShareCount = Field(
        description="Total options granted"
    )

    exercised: ShareCount = Field(
        default=ZERO,
        description="Options exercised so far"
    )

    strike_price: MoneyAmount = Field(
        description="Exercise price per share"
    )

    grant_date: date
    expiration_date: date

    cliff_months: int = Field(default=12, ge=0)
    vesting_duration_months: int = Field(default=48, ge=0)
    vesting_frequency: VestingFrequency = Field(default="MONTHLY")

    status: GrantStatus = Field(default="ACTIVE")

    terminated_at: Optional[datetime] = Field(
        default=None,
        description="Holder's termination time; starts the exercise window"
    )

    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode='after')
    def validate_schedule(self):
        if self.cliff_months > self.vesting_duration_months:
            raise ValueError("cliff_months cannot exceed vesting_duration_months")
        if self.exercised > self.quantity:
            raise ValueError("exercised cannot exceed quantity")
        if self.expiration_date <= self.grant_date:
            raise ValueError("expiration_date must be after grant_date")
        return self

    @property
    def cliff_date(self) -> date:
        return add_months(self.grant_date, self.cliff_months)

    @property
    def vesting_end_date(self) -> date:
        return add_months(self.grant_date, self.vesting_duration_months)

    @property
    def cliff_amount(self) -> Decimal:
        if self.vesting_duration_months == 0:
            return self.quantity
        return self.quantity * self.cliff_months / self.vesting_duration_months

    @property
    def post_cliff_periods(self) -> int:
        period = FREQUENCY_MONTHS[self.vesting_frequency]
        return (self.vesting_duration_months - self.cliff_months) // period

    @property
    def per_period_amount(self) -> Decimal:
        periods = self.post_cliff_periods
        if periods <= 0:
            return ZERO
        return (self.quantity - self.cliff_amount) / periods

    @property
    def pool_usage(self) -> Decimal:
        """Options this grant holds against its plan's pool.

        Cancelled, forfeited and expired grants return their unexercised
        options to the pool.
        """
        if self.status in ("ACTIVE", "EXERCISED"):
            return self.quantity
        return self.exercised

    def exercise_window_closes(self, window_days: int) -> Optional[datetime]:
        if self.terminated_at is None:
            return None
        return self.terminated_at + timedelta(days=window_days)

    def is_exercise_window_open(self, as_of: datetime, window_days: int) -> bool:
        closes = self.exercise_window_closes(window_days)
        return closes is None or as_of <= closes

    def scheduled_vested(self, on: date) -> Decimal:
        """Vested quantity per the schedule alone, floored to whole shares."""
        if on < self.cliff_date:
            return ZERO
        if on >= self.vesting_end_date:
            return self.quantity
        period = FREQUENCY_MONTHS[self.vesting_frequency]
        elapsed = months_between(self.cliff_date, on) // period
        vested = self.cliff_amount + self.per_period_amount * elapsed
        return floor_shares(min(vested, self.quantity))

    def _vested_at_termination(self, policy: str) -> Decimal:
        terminated_on = to_date(self.terminated_at)
        if policy == "ACCELERATION":
            return self.quantity
        if policy == "PRO_RATA":
            total_days = (self.vesting_end_date - self.grant_date).days
            if total_days <= 0:
                return self.quantity
            served = max(0, (terminated_on - self.grant_date).days)
            return floor_shares(min(self.quantity * served / total_days, self.quantity))
        return self.scheduled_vested(terminated_on)

    def vesting(
        self,
        as_of: Union[date, datetime],
        policy: Optional[TerminationPolicy] = None,
    ) -> VestingStatus:
        """Vesting position as of a date.

        Args:
            as_of: Evaluation date
            policy: Plan termination policy, applied when the grant has been
                terminated on or before ``as_of`` (defaults to FORFEITURE)

        Returns:
            VestingStatus with vested/unvested/exercisable quantities
        """
        on = to_date(as_of)
        cliff_date = self.cliff_date

        if self.status != "ACTIVE":
            vested = self.quantity if self.status == "EXERCISED" else ZERO
            return VestingStatus(
                vested=vested,
                unvested=self.quantity - vested,
                exercisable=max(vested - self.exercised, ZERO),
                percentage=(HUNDRED if self.status == "EXERCISED" else ZERO).quantize(CENT),
                cliff_date=cliff_date,
                cliff_met=self.status == "EXERCISED",
            )

        terminated = self.terminated_at is not None and to_date(self.terminated_at) <= on
        if terminated:
            vested = self._vested_at_termination(policy or "FORFEITURE")
        else:
            vested = self.scheduled_vested(on)

        next_date: Optional[date] = None
        next_amount = ZERO
        if not terminated and vested < self.quantity:
            if on < cliff_date:
                next_date = cliff_date
                next_amount = floor_shares(self.cliff_amount)
            else:
                period = FREQUENCY_MONTHS[self.vesting_frequency]
                elapsed = months_between(cliff_date, on) // period
                candidate = add_months(cliff_date, (elapsed + 1) * period)
                if candidate <= self.vesting_end_date:
                    next_date = candidate
                    next_amount = floor_shares(self.per_period_amount)

        percentage = (vested / self.quantity * HUNDRED).quantize(CENT)
        return VestingStatus(
            vested=vested,
            unvested=self.quantity - vested,
            exercisable=max(vested - self.exercised, ZERO),
            percentage=percentage,
            cliff_date=cliff_date,
            cliff_met=on >= cliff_date,
            next_vesting_date=next_date,
            next_vesting_amount=next_amount,
        )

    def vesting_schedule(self) -> List[VestingEvent]:
        """Full vesting schedule; the last period absorbs rounding remainder."""
        events: List[VestingEvent] = []
        cliff_vested = floor_shares(self.cliff_amount)
        cumulative = cliff_vested

        if self.cliff_months > 0:
            events.append(VestingEvent(
                vesting_date=self.cliff_date,
                quantity=cliff_vested,
                cumulative=cumulative,
                event_type="CLIFF",
            ))

        period = FREQUENCY_MONTHS[self.vesting_frequency]
        periods = self.post_cliff_periods
        per_period = floor_shares(self.per_period_amount)
        for index in range(1, periods + 1):
            on = add_months(self.cliff_date, index * period)
            if on > self.vesting_end_date:
                break
            amount = self.quantity - cumulative if index == periods else per_period
            cumulative += amount
            events.append(VestingEvent(
                vesting_date=on,
                quantity=amount,
                cumulative=cumulative,
                event_type=self.vesting_frequency,
            ))

        if cumulative < self.quantity and events:
            last = events[-1]
            events[-1] = last.model_copy(update={
                "quantity": last.quantity + self.quantity - cumulative,
                "cumulative": self.quantity,
            })
        elif not events:
            events.append(VestingEvent(
                vesting_date=self.grant_date,
                quantity=self.quantity,
                cumulative=self.quantity,
                event_type="CLIFF",
            ))
        return events
