"""Tests for the fully diluted view and convertible pricing.

Tests cover:
- Options in the fully diluted count (vested, unvested, terminated, expired)
- Cap-priced conversion fixed point and its divergence
- Round price and discount candidates
- Qualified financing threshold and unpriceable instruments
- MFN adoption of later sibling terms
- Conversion scenarios across hypothetical valuations
"""

import pytest
from datetime import date, datetime, timezone
from decimal import Decimal

from pydantic import ValidationError

from captable_engine.errors import DilutionComputationError, RecordNotFound
from captable_engine.schemas import (
    ConversionRecord,
    ConvertibleInstrument,
    FundingRound,
    OptionGrant,
    OptionPlan,
)


def safe(instrument_id="safe-1", principal="512500", **overrides):
    fields = dict(
        id=instrument_id,
        company_id="acme",
        shareholder_id="angel",
        instrument_type="SAFE",
        principal_amount=Decimal(principal),
        issue_date=date(2024, 6, 1),
    )
    fields.update(overrides)
    return ConvertibleInstrument(**fields)


def seed_round(round_id="seed", price=None, target="2000000", pre_money="20000000", status="OPEN"):
    return FundingRound(
        id=round_id,
        company_id="acme",
        name=round_id.title(),
        target_amount=Decimal(target),
        pre_money_valuation=Decimal(pre_money),
        price_per_share=Decimal(price) if price is not None else None,
        status=status,
    )


def add_grant(engine, grant_id="g1", **overrides):
    if not engine.book.option_plans("acme"):
        engine.book.add_option_plan(OptionPlan(
            id="esop",
            company_id="acme",
            name="ESOP",
            share_class_id="on",
            total_pool_size=Decimal("100000"),
        ))
    fields = dict(
        id=grant_id,
        company_id="acme",
        plan_id="esop",
        shareholder_id="carol",
        quantity=Decimal("4800"),
        strike_price=Decimal("0.50"),
        grant_date=date(2024, 1, 15),
        expiration_date=date(2034, 1, 15),
    )
    fields.update(overrides)
    return engine.book.grant_options(OptionGrant(**fields))


# =============================================================================
# Options
# =============================================================================

class TestOptions:

    def test_no_instruments_equals_current(self, founded):
        view = founded.resolver.fully_diluted("acme")

        assert view.summary.fully_diluted_shares == Decimal("1000000")
        assert view.summary.iterations == 0
        for entry in view.entries:
            assert entry.fully_diluted_percentage == entry.current_percentage

    def test_options_count_vested_and_unvested(self, founded):
        """At the cliff: 1,200 vested and 3,600 unvested options."""
        add_grant(founded)

        view = founded.resolver.fully_diluted("acme")
        carol = view.entry_for("carol")

        assert carol.current_shares == 0
        assert carol.options_vested == Decimal("1200")
        assert carol.options_unvested == Decimal("3600")
        assert carol.fully_diluted_shares == Decimal("4800")
        assert view.summary.total_options_outstanding == Decimal("4800")
        assert view.summary.fully_diluted_shares == Decimal("1004800")
        assert sum(e.fully_diluted_percentage for e in view.entries) == Decimal("100")

    def test_terminated_grant_drops_unvested(self, founded):
        add_grant(founded)
        founded.book.terminate_grant("acme", "g1")

        carol = founded.resolver.fully_diluted("acme").entry_for("carol")

        assert carol.options_vested == Decimal("1200")
        assert carol.options_unvested == 0

    def test_expired_grant_excluded(self, founded):
        add_grant(founded, expiration_date=date(2025, 1, 1))

        view = founded.resolver.fully_diluted("acme")

        assert view.entry_for("carol") is None
        assert view.summary.total_options_outstanding == 0

    def test_exercised_options_move_to_current(self, founded):
        add_grant(founded)
        founded.book.exercise_options("acme", "g1", Decimal("1000"))

        carol = founded.resolver.fully_diluted("acme").entry_for("carol")

        assert carol.current_shares == Decimal("1000")
        assert carol.options_vested == Decimal("200")
        assert carol.fully_diluted_shares == Decimal("4800")


# =============================================================================
# Cap pricing fixed point
# =============================================================================

class TestCapPricing:

    def test_cap_only_safe_converges(self, founded):
        """512,500 at a 10M cap on 1M shares converts into ~54,018 shares.

        Fixed point: shares = A * T0 / (cap - A) = 512500 * 1e6 / 9487500.
        """
        founded.book.add_convertible(safe(valuation_cap=Decimal("10000000")))

        view = founded.resolver.fully_diluted("acme")
        quote = view.conversions[0]

        assert quote.method_used == "CAP"
        assert abs(quote.shares - Decimal("54018")) <= 1
        assert view.entry_for("angel").convertible_shares == quote.shares
        assert view.summary.fully_diluted_shares == Decimal("1000000") + quote.shares
        assert view.summary.iterations > 1

    def test_fully_diluted_never_below_current(self, founded):
        founded.book.add_convertible(safe(valuation_cap=Decimal("10000000")))
        add_grant(founded)

        view = founded.resolver.fully_diluted("acme")

        for entry in view.entries:
            assert entry.fully_diluted_shares >= entry.current_shares
        assert view.summary.fully_diluted_shares >= view.summary.total_shares_outstanding

    def test_amount_at_or_above_cap_diverges(self, founded):
        founded.book.add_convertible(safe(principal="10000000", valuation_cap=Decimal("10000000")))

        with pytest.raises(DilutionComputationError, match="did not converge") as exc_info:
            founded.resolver.fully_diluted("acme")

        assert exc_info.value.details["iterations"] == 100

    def test_zero_cap_is_rejected(self):
        with pytest.raises(ValidationError, match="greater than 0"):
            safe(valuation_cap=Decimal("0"))

    def test_zero_base_with_cap(self, engine):
        engine.book.add_convertible(safe(valuation_cap=Decimal("10000000")))

        with pytest.raises(DilutionComputationError, match="zero fully diluted shares"):
            engine.resolver.fully_diluted("acme")

    def test_interest_increases_conversion_amount(self, founded, clock):
        founded.book.add_convertible(safe(
            principal="100000",
            instrument_type="CONVERTIBLE_NOTE",
            interest_rate=Decimal("0.10"),
            issue_date=date(2024, 1, 15),
            valuation_cap=Decimal("10000000"),
        ))

        quote = founded.resolver.fully_diluted("acme").conversions[0]

        # 2024-01-15 to 2025-01-15 is 366 days: 100000 * 0.10 * 366 / 365
        assert quote.conversion_amount.quantize(Decimal("0.01")) == Decimal("110027.40")


# =============================================================================
# Round price and discount
# =============================================================================

class TestRoundPricing:

    def test_discount_beats_round_price(self, founded):
        founded.book.add_funding_round(seed_round(price="2.00"))
        founded.book.add_convertible(safe(principal="100000", discount_rate=Decimal("0.20")))

        view = founded.resolver.fully_diluted("acme")
        quote = view.conversions[0]

        assert view.funding_round_id == "seed"
        assert quote.method_used == "DISCOUNT"
        assert quote.conversion_price == Decimal("1.60")
        assert quote.shares == Decimal("62500")
        assert [c.method for c in quote.candidates] == ["DISCOUNT", "ROUND_PRICE"]

    def test_cap_beats_discount_at_high_valuation(self, founded):
        founded.book.add_funding_round(seed_round())
        founded.book.add_convertible(safe(
            principal="100000",
            valuation_cap=Decimal("5000000"),
            discount_rate=Decimal("0.20"),
        ))

        quote = founded.resolver.fully_diluted("acme").conversions[0]

        # round price 20 (20M / 1M), discount 16, cap ~4.9
        assert quote.method_used == "CAP"
        assert quote.conversion_price < Decimal("5")

    def test_round_without_price_uses_pre_money(self, founded):
        founded.book.add_funding_round(seed_round(pre_money="3000000"))
        founded.book.add_convertible(safe(principal="300000"))

        quote = founded.resolver.fully_diluted("acme").conversions[0]

        assert quote.method_used == "ROUND_PRICE"
        assert quote.conversion_price == Decimal("3")
        assert quote.shares == Decimal("100000")

    def test_explicit_round_id(self, founded):
        founded.book.add_funding_round(seed_round("draft-a", price="4", status="DRAFT"))
        founded.book.add_convertible(safe(principal="100000"))

        assert founded.resolver.fully_diluted("acme").unconverted[0].reason == "NO_PRICE"
        view = founded.resolver.fully_diluted("acme", round_id="draft-a")
        assert view.conversions[0].shares == Decimal("25000")

    def test_unknown_round_id(self, founded):
        with pytest.raises(RecordNotFound):
            founded.resolver.fully_diluted("acme", round_id="missing")


# =============================================================================
# Unconverted instruments
# =============================================================================

class TestUnconverted:

    def test_threshold_not_met(self, founded):
        founded.book.add_funding_round(seed_round(price="2.00", target="2000000"))
        founded.book.add_convertible(safe(
            principal="100000",
            discount_rate=Decimal("0.20"),
            qualified_financing_threshold=Decimal("5000000"),
        ))

        view = founded.resolver.fully_diluted("acme")

        assert view.conversions == []
        assert view.unconverted[0].reason == "THRESHOLD_NOT_MET"
        assert view.summary.total_convertible_shares == 0

    def test_no_price_without_round_or_cap(self, founded):
        founded.book.add_convertible(safe(principal="100000", discount_rate=Decimal("0.20")))

        view = founded.resolver.fully_diluted("acme")

        assert view.unconverted[0].instrument_id == "safe-1"
        assert view.unconverted[0].reason == "NO_PRICE"
        assert view.summary.fully_diluted_shares == Decimal("1000000")

    def test_redeemed_instruments_stop_diluting(self, founded):
        founded.book.add_convertible(safe(valuation_cap=Decimal("10000000")))
        founded.book.redeem_convertible("acme", "safe-1", Decimal("512500"), notes="Board approved")

        view = founded.resolver.fully_diluted("acme")
        instrument = founded.book.get_convertible("acme", "safe-1")

        assert view.conversions == []
        assert instrument.status == "REDEEMED"
        assert instrument.notes == "[Redemption] Board approved"


# =============================================================================
# MFN
# =============================================================================

class TestMFN:

    def test_mfn_adopts_later_sibling_terms(self, founded):
        founded.book.add_convertible(safe(
            "early", issue_date=date(2023, 12, 1), target_round_id="seed",
            valuation_cap=Decimal("5000000"),
        ))
        founded.book.add_convertible(safe(
            "mfn", issue_date=date(2024, 1, 1), target_round_id="seed", mfn_clause=True,
            valuation_cap=Decimal("10000000"),
        ))
        founded.book.add_convertible(safe(
            "later", issue_date=date(2024, 3, 1), target_round_id="seed",
            valuation_cap=Decimal("8000000"), discount_rate=Decimal("0.25"),
        ))

        terms = founded.resolver.effective_terms("acme", founded.book.get_convertible("acme", "mfn"))

        assert terms.valuation_cap == Decimal("8000000")
        assert terms.discount_rate == Decimal("0.25")
        assert terms.sources == {"valuation_cap": "later", "discount_rate": "later"}

    def test_mfn_ignores_cancelled_and_other_groups(self, founded):
        founded.book.add_convertible(safe(
            "mfn", issue_date=date(2024, 1, 1), target_round_id="seed", mfn_clause=True,
            valuation_cap=Decimal("10000000"),
        ))
        founded.book.add_convertible(safe(
            "cancelled", issue_date=date(2024, 2, 1), target_round_id="seed",
            valuation_cap=Decimal("4000000"),
        ))
        founded.book.add_convertible(safe(
            "other", issue_date=date(2024, 2, 1), target_round_id="series-a",
            valuation_cap=Decimal("3000000"),
        ))
        founded.book.cancel_convertible("acme", "cancelled", reason="Investor withdrew")

        terms = founded.resolver.effective_terms("acme", founded.book.get_convertible("acme", "mfn"))

        assert terms.valuation_cap == Decimal("10000000")
        assert terms.sources == {}

    def test_mfn_counts_siblings_that_reach_the_round(self, founded):
        founded.book.add_convertible(safe(
            "mfn", issue_date=date(2024, 1, 1), target_round_id="seed", mfn_clause=True,
            valuation_cap=Decimal("10000000"),
        ))
        for sibling_id, day, cap in (
            ("redeemed", 1, "3000000"),
            ("converted-elsewhere", 2, "4000000"),
            ("converted-here", 3, "6000000"),
        ):
            founded.book.add_convertible(safe(
                sibling_id, issue_date=date(2024, 2, day), target_round_id="seed",
                valuation_cap=Decimal(cap),
            ))
        founded.book.redeem_convertible("acme", "redeemed", Decimal("512500"))
        for sibling_id, round_id in (("converted-elsewhere", "bridge"), ("converted-here", "seed")):
            founded.book._mark_converted("acme", sibling_id, ConversionRecord(
                funding_round_id=round_id,
                transaction_id=f"t-{sibling_id}",
                share_class_id="on",
                conversion_amount=Decimal("512500"),
                conversion_price=Decimal("1"),
                shares_issued=Decimal("512500"),
                method_used="CAP",
                executed_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
            ))

        terms = founded.resolver.effective_terms("acme", founded.book.get_convertible("acme", "mfn"))

        assert terms.valuation_cap == Decimal("6000000")
        assert terms.sources == {"valuation_cap": "converted-here"}

    def test_mfn_terms_reach_the_quote(self, founded):
        founded.book.add_convertible(safe(
            "mfn", principal="100000", issue_date=date(2024, 1, 1), target_round_id="seed",
            mfn_clause=True, valuation_cap=Decimal("10000000"),
        ))
        founded.book.add_convertible(safe(
            "later", principal="100000", issue_date=date(2024, 3, 1), target_round_id="seed",
            valuation_cap=Decimal("8000000"),
        ))

        quotes = {q.instrument_id: q for q in founded.resolver.fully_diluted("acme").conversions}

        assert quotes["mfn"].effective_valuation_cap == Decimal("8000000")
        assert quotes["mfn"].mfn_sources == {"valuation_cap": "later"}
        assert quotes["mfn"].shares == quotes["later"].shares


# =============================================================================
# Scenarios
# =============================================================================

class TestScenarios:
    """500,000 SAFE, 4M cap, 20% discount, 1M shares outstanding."""

    @pytest.fixture
    def instrument(self, founded):
        return founded.book.add_convertible(safe(
            principal="500000",
            valuation_cap=Decimal("4000000"),
            discount_rate=Decimal("0.20"),
        ))

    def test_low_valuation_favours_discount(self, founded, instrument):
        result = founded.resolver.conversion_scenarios("acme", "safe-1", [Decimal("2000000")])
        scenario = result.scenarios[0]

        assert scenario.round_price_per_share == Decimal("2")
        assert scenario.best_method == "DISCOUNT"
        assert scenario.final_conversion_price == Decimal("1.6")
        assert scenario.final_shares_issued == Decimal("312500")
        assert scenario.final_ownership_percentage == Decimal("23.81")
        assert scenario.cap_method.shares_issued == Decimal("250000")

    def test_high_valuation_favours_cap(self, founded, instrument):
        result = founded.resolver.conversion_scenarios("acme", "safe-1", [Decimal("10000000")])
        scenario = result.scenarios[0]

        assert scenario.best_method == "CAP"
        assert scenario.final_conversion_price == Decimal("4")
        assert scenario.final_shares_issued == Decimal("125000")
        assert scenario.final_ownership_percentage == Decimal("11.11")
        assert scenario.discount_method.shares_issued == Decimal("62500")

    def test_cap_trigger_valuation(self, founded, instrument):
        result = founded.resolver.conversion_scenarios("acme", "safe-1")

        assert result.cap_triggers_above == Decimal("5000000")
        assert len(result.scenarios) == 5
        assert result.conversion_amount == Decimal("500000")

    def test_non_positive_valuation(self, founded, instrument):
        with pytest.raises(ValueError, match="must be positive"):
            founded.resolver.conversion_scenarios("acme", "safe-1", [Decimal("0")])

    def test_no_outstanding_shares(self, engine):
        engine.book.add_convertible(safe(valuation_cap=Decimal("4000000")))

        with pytest.raises(DilutionComputationError) as exc_info:
            engine.resolver.conversion_scenarios("acme", "safe-1")
        assert exc_info.value.details["reason"] == "ZERO_PREMONEY_SHARES"


# =============================================================================
# Interest
# =============================================================================

class TestInterest:
    """Accrual on the instrument itself, outside any engine."""

    def note(self, **overrides):
        fields = dict(
            instrument_type="CONVERTIBLE_NOTE",
            principal="120000",
            interest_rate=Decimal("0.10"),
            issue_date=date(2024, 1, 1),
        )
        fields.update(overrides)
        return safe(**fields)

    def test_simple_interest(self):
        assert self.note().accrued_interest(date(2024, 3, 1)) == Decimal("120000") * Decimal("0.10") * 60 / 365

    def test_no_interest_before_issue(self):
        assert self.note().accrued_interest(date(2023, 12, 1)) == 0

    def test_compound_interest_is_daily(self):
        note = self.note(interest_type="COMPOUND", interest_rate=Decimal("0.365"), principal="1000")
        assert note.accrued_interest(date(2024, 1, 11)).quantize(Decimal("0.01")) == Decimal("10.05")

    def test_monthly_breakdown(self):
        note = self.note()
        periods = note.interest_breakdown(date(2024, 3, 1))

        assert [p.period for p in periods] == ["2024-01", "2024-02"]
        assert [p.days for p in periods] == [31, 29]
        total = sum(p.interest_accrued for p in periods)
        assert abs(total - periods[-1].cumulative_interest) < Decimal("1E-20")
        assert periods[-1].cumulative_interest == note.accrued_interest(date(2024, 3, 1))

    def test_breakdown_ends_mid_month(self):
        periods = self.note().interest_breakdown(date(2024, 2, 10))

        assert [p.days for p in periods] == [31, 9]
