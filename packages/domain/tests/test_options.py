"""Tests for option plans, grants, vesting and exercise.

Tests cover:
- Cliff + periodic vesting and the vesting schedule
- Termination policies (forfeiture, acceleration, pro rata)
- Pool accounting and pool exhaustion
- Exercise into ledger issuances and its rejections
- Sweeping expired and forfeited grants
"""

import pytest
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, ROUND_DOWN

from captable_engine.errors import (
    ExerciseNotAllowed,
    InactiveShareholder,
    InvalidStateTransition,
    OptionPoolExhausted,
)
from captable_engine.schemas import OptionGrant, OptionPlan


def make_grant(grant_id="g1", quantity="4800", **overrides):
    fields = dict(
        id=grant_id,
        company_id="acme",
        plan_id="esop",
        shareholder_id="carol",
        quantity=Decimal(quantity),
        strike_price=Decimal("0.50"),
        grant_date=date(2024, 1, 15),
        expiration_date=date(2034, 1, 15),
    )
    fields.update(overrides)
    return OptionGrant(**fields)


@pytest.fixture
def plan(engine):
    return engine.book.add_option_plan(OptionPlan(
        id="esop",
        company_id="acme",
        name="ESOP 2024",
        share_class_id="on",
        total_pool_size=Decimal("10000"),
    ))


# =============================================================================
# Vesting
# =============================================================================

class TestVesting:
    """48-month grant of 4,800 options, 12-month cliff, monthly vesting."""

    def test_nothing_vests_before_cliff(self):
        status = make_grant().vesting(date(2025, 1, 14))

        assert status.vested == 0
        assert status.unvested == Decimal("4800")
        assert not status.cliff_met
        assert status.next_vesting_date == date(2025, 1, 15)
        assert status.next_vesting_amount == Decimal("1200")

    def test_cliff_vests_a_quarter(self):
        status = make_grant().vesting(date(2025, 1, 15))

        assert status.vested == Decimal("1200")
        assert status.percentage == Decimal("25.00")
        assert status.cliff_met
        assert status.next_vesting_date == date(2025, 2, 15)
        assert status.next_vesting_amount == Decimal("100")

    def test_monthly_after_cliff(self):
        grant = make_grant()
        assert grant.vesting(date(2025, 2, 15)).vested == Decimal("1300")
        assert grant.vesting(date(2025, 3, 14)).vested == Decimal("1300")
        assert grant.vesting(date(2026, 1, 15)).vested == Decimal("2400")

    def test_fully_vested_at_end(self):
        status = make_grant().vesting(date(2028, 1, 15))

        assert status.vested == Decimal("4800")
        assert status.unvested == 0
        assert status.next_vesting_date is None

    def test_exercisable_excludes_exercised(self):
        status = make_grant(exercised=Decimal("1000")).vesting(date(2025, 1, 15))
        assert status.exercisable == Decimal("200")

    def test_quarterly_schedule(self):
        grant = make_grant(vesting_frequency="QUARTERLY")

        assert grant.vesting(date(2025, 4, 14)).vested == Decimal("1200")
        assert grant.vesting(date(2025, 4, 15)).vested == Decimal("1500")

    def test_schedule_totals_quantity(self):
        events = make_grant().vesting_schedule()

        assert events[0].event_type == "CLIFF"
        assert events[0].quantity == Decimal("1200")
        assert len(events) == 37
        assert events[-1].vesting_date == date(2028, 1, 15)
        assert events[-1].cumulative == Decimal("4800")

    def test_schedule_last_period_absorbs_remainder(self):
        events = make_grant(quantity="1000").vesting_schedule()

        assert sum(e.quantity for e in events) == Decimal("1000")
        assert events[-1].cumulative == Decimal("1000")

    def test_cliff_cannot_exceed_duration(self):
        with pytest.raises(ValueError, match="cliff_months cannot exceed"):
            make_grant(cliff_months=60)

    def test_expiration_must_follow_grant(self):
        with pytest.raises(ValueError, match="expiration_date must be after"):
            make_grant(expiration_date=date(2024, 1, 1))


class TestTerminationPolicies:
    """Grant terminated on 2025-07-15, evaluated two years later."""

    def terminated(self):
        return make_grant(terminated_at=datetime(2025, 7, 15, tzinfo=timezone.utc))

    def test_forfeiture_stops_vesting(self):
        status = self.terminated().vesting(date(2027, 7, 15), "FORFEITURE")

        assert status.vested == Decimal("1800")
        assert status.next_vesting_date is None

    def test_acceleration_vests_everything(self):
        status = self.terminated().vesting(date(2027, 7, 15), "ACCELERATION")
        assert status.vested == Decimal("4800")

    def test_pro_rata_ignores_cliff(self):
        grant = self.terminated()
        total_days = (date(2028, 1, 15) - date(2024, 1, 15)).days
        served = (date(2025, 7, 15) - date(2024, 1, 15)).days
        expected = (Decimal("4800") * served / total_days).to_integral_value(rounding=ROUND_DOWN)

        assert grant.vesting(date(2027, 7, 15), "PRO_RATA").vested == expected

    def test_termination_in_the_future_is_ignored(self):
        status = self.terminated().vesting(date(2025, 2, 15), "ACCELERATION")
        assert status.vested == Decimal("1300")


# =============================================================================
# Pool accounting
# =============================================================================

class TestPool:

    def test_grants_draw_from_pool(self, engine, plan):
        engine.book.grant_options(make_grant("g1", "6000"))

        assert engine.book.pool_granted("acme", "esop") == Decimal("6000")
        assert engine.book.pool_available("acme", "esop") == Decimal("4000")

    def test_pool_exhausted(self, engine, plan):
        engine.book.grant_options(make_grant("g1", "6000"))

        with pytest.raises(OptionPoolExhausted) as exc_info:
            engine.book.grant_options(make_grant("g2", "5000"))

        assert exc_info.value.details["available"] == Decimal("4000")
        assert [g.id for g in engine.book.grants("acme")] == ["g1"]

    def test_cancelled_grant_returns_options(self, engine, plan):
        engine.book.grant_options(make_grant("g1", "6000"))
        cancelled = engine.book.cancel_grant("acme", "g1")

        assert cancelled.status == "CANCELLED"
        assert cancelled.terminated_at is not None
        assert engine.book.pool_available("acme", "esop") == Decimal("10000")

    def test_closed_plan_takes_no_grants(self, engine, plan):
        engine.book.close_option_plan("acme", "esop")

        with pytest.raises(InvalidStateTransition, match="CLOSED"):
            engine.book.grant_options(make_grant())

    def test_grantee_must_be_active(self, engine, plan):
        engine.registry.set_shareholder_status("acme", "carol", "PENDING")

        with pytest.raises(InactiveShareholder):
            engine.book.grant_options(make_grant())

    def test_new_grant_must_be_active(self, engine, plan):
        with pytest.raises(InvalidStateTransition, match="must be ACTIVE"):
            engine.book.grant_options(make_grant(status="CANCELLED"))

    def test_grant_vesting_uses_plan_policy(self, engine):
        engine.book.add_option_plan(OptionPlan(
            id="esop",
            company_id="acme",
            name="ESOP",
            share_class_id="on",
            total_pool_size=Decimal("10000"),
            termination_policy="ACCELERATION",
        ))
        engine.book.grant_options(make_grant())
        engine.book.terminate_grant("acme", "g1")

        assert engine.book.grant_vesting("acme", "g1").vested == Decimal("4800")


# =============================================================================
# Exercise
# =============================================================================

class TestExercise:
    """The engine clock reads 2025-01-15, the cliff date of the default grant."""

    def test_exercise_issues_shares(self, engine, plan):
        engine.book.grant_options(make_grant())

        txn_id = engine.book.exercise_options("acme", "g1", Decimal("1000"))

        txn = engine.ledger.get("acme", txn_id)
        assert txn.type == "ISSUANCE"
        assert txn.status == "CONFIRMED"
        assert txn.price_per_share == Decimal("0.50")
        assert txn.notes == "Option exercise of grant g1"
        assert engine.ledger.state_as_of("acme").balance("carol", "on") == Decimal("1000")

        grant = engine.book.get_grant("acme", "g1")
        assert grant.exercised == Decimal("1000")
        assert grant.status == "ACTIVE"
        assert engine.book.grant_vesting("acme", "g1").exercisable == Decimal("200")

    def test_exercise_beyond_vested(self, engine, plan):
        engine.book.grant_options(make_grant())

        with pytest.raises(ExerciseNotAllowed) as exc_info:
            engine.book.exercise_options("acme", "g1", Decimal("1201"))

        assert exc_info.value.details["reason"] == "INSUFFICIENT_VESTED"
        assert engine.ledger.version("acme") == 0

    def test_exercise_non_positive(self, engine, plan):
        engine.book.grant_options(make_grant())

        with pytest.raises(ExerciseNotAllowed, match="Cannot exercise 0"):
            engine.book.exercise_options("acme", "g1", Decimal("0"))

    def test_full_exercise_marks_grant_exercised(self, engine, plan):
        engine.book.grant_options(make_grant(quantity="500", cliff_months=0, vesting_duration_months=0))

        engine.book.exercise_options("acme", "g1", Decimal("500"))

        grant = engine.book.get_grant("acme", "g1")
        assert grant.status == "EXERCISED"
        assert grant.pool_usage == Decimal("500")
        with pytest.raises(ExerciseNotAllowed, match="is EXERCISED"):
            engine.book.exercise_options("acme", "g1", Decimal("1"))

    def test_exercise_after_expiration(self, engine, plan, clock):
        engine.book.grant_options(make_grant(expiration_date=date(2025, 1, 1)))

        with pytest.raises(ExerciseNotAllowed) as exc_info:
            engine.book.exercise_options("acme", "g1", Decimal("10"))
        assert exc_info.value.details["reason"] == "GRANT_EXPIRED"

    def test_exercise_window_after_termination(self, engine, plan, clock):
        engine.book.grant_options(make_grant())
        engine.book.terminate_grant("acme", "g1")

        engine.book.exercise_options("acme", "g1", Decimal("100"), as_of=clock.now + timedelta(days=90))
        with pytest.raises(ExerciseNotAllowed) as exc_info:
            engine.book.exercise_options("acme", "g1", Decimal("100"), as_of=clock.now + timedelta(days=91))
        assert exc_info.value.details["reason"] == "EXERCISE_WINDOW_CLOSED"

    def test_exercise_is_audited(self, engine, plan):
        engine.book.grant_options(make_grant())
        engine.book.exercise_options("acme", "g1", Decimal("1000"), actor_id="admin")

        entries = engine.audit.entries("acme", action="OPTION_EXERCISED")
        assert len(entries) == 1
        assert entries[0].actor_id == "admin"
        assert entries[0].changes["after"]["exercised"] == "1000"


# =============================================================================
# Sweeps
# =============================================================================

class TestSweep:

    def test_sweep_expires_and_forfeits(self, engine, plan, clock):
        engine.book.grant_options(make_grant("expiring", "100", expiration_date=date(2025, 3, 1)))
        engine.book.grant_options(make_grant("leaver", "100"))
        engine.book.grant_options(make_grant("stayer", "100"))
        engine.book.terminate_grant("acme", "leaver")

        changed = engine.book.sweep_grants("acme", as_of=clock.now + timedelta(days=120))

        assert {g.id: g.status for g in changed} == {"expiring": "EXPIRED", "leaver": "FORFEITED"}
        assert engine.book.get_grant("acme", "stayer").status == "ACTIVE"
        assert engine.book.pool_available("acme", "esop") == Decimal("9900")

    def test_terminate_only_active_grants(self, engine, plan):
        engine.book.grant_options(make_grant())
        engine.book.cancel_grant("acme", "g1")

        with pytest.raises(InvalidStateTransition, match="Cannot terminate"):
            engine.book.terminate_grant("acme", "g1")
