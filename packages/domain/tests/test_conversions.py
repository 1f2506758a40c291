"""Tests for convertible conversion and funding round close.

Tests cover:
- Converting an instrument into ledger shares
- Idempotent re-conversion and invalid states
- Conversion triggers (round status, threshold, maturity)
- Target share class resolution
- Closing a round: batch conversion, skips, preflight, snapshot
- Round close triggers and instruments outside the batch
"""

import pytest
from datetime import date
from decimal import Decimal

from captable_engine.errors import (
    AuthorizedSharesExceeded,
    ConversionTriggerNotMet,
    InvalidStateTransition,
)
from captable_engine.schemas import ConvertibleInstrument, FundingRound, ShareClass


def make_safe(instrument_id="safe-1", **overrides):
    fields = dict(
        id=instrument_id,
        company_id="acme",
        shareholder_id="angel",
        instrument_type="SAFE",
        principal_amount=Decimal("100000"),
        issue_date=date(2024, 6, 1),
        discount_rate=Decimal("0.20"),
        target_round_id="series-a",
        auto_convert=True,
    )
    fields.update(overrides)
    return ConvertibleInstrument(**fields)


@pytest.fixture
def series_a(founded):
    """Series A at 2.00 per share issuing Preferred A."""
    founded.registry.add_share_class(ShareClass(
        id="pn-a",
        company_id="acme",
        name="Preferred A",
        share_type="PREFERRED",
        total_authorized=Decimal("5000000"),
        liquidation_preference_multiple=Decimal("1"),
        seniority=0,
    ))
    founded.book.add_funding_round(FundingRound(
        id="series-a",
        company_id="acme",
        name="Series A",
        target_amount=Decimal("3000000"),
        pre_money_valuation=Decimal("2000000"),
        price_per_share=Decimal("2.00"),
        share_class_id="pn-a",
        status="OPEN",
    ))
    return founded


# =============================================================================
# Single conversion
# =============================================================================

class TestConvert:

    def test_convert_issues_shares(self, series_a):
        series_a.book.add_convertible(make_safe())

        converted = series_a.conversions.convert("acme", "safe-1", "series-a", actor_id="cfo")

        assert converted.status == "CONVERTED"
        record = converted.conversion
        assert record.method_used == "DISCOUNT"
        assert record.conversion_price == Decimal("1.6")
        assert record.shares_issued == Decimal("62500")
        assert record.share_class_id == "pn-a"
        assert record.executed_by == "cfo"

        txn = series_a.ledger.get("acme", record.transaction_id)
        assert txn.type == "CONVERSION"
        assert txn.converted_instrument_id == "safe-1"
        assert txn.to_shareholder_id == "angel"
        assert txn.quantity == Decimal("62500")
        assert series_a.ledger.state_as_of("acme").balance("angel", "pn-a") == Decimal("62500")

    def test_converted_instrument_stops_diluting(self, series_a):
        series_a.book.add_convertible(make_safe())
        before = series_a.resolver.fully_diluted("acme")

        series_a.conversions.convert("acme", "safe-1", "series-a")
        after = series_a.resolver.fully_diluted("acme")

        assert before.entry_for("angel").convertible_shares == Decimal("62500")
        assert after.conversions == []
        assert after.entry_for("angel").current_shares == Decimal("62500")
        assert after.summary.fully_diluted_shares == before.summary.fully_diluted_shares

    def test_reconversion_is_idempotent(self, series_a):
        series_a.book.add_convertible(make_safe())
        first = series_a.conversions.convert("acme", "safe-1", "series-a")

        second = series_a.conversions.convert("acme", "safe-1", "series-a")

        assert second == first
        assert len(series_a.ledger.transactions("acme", type="CONVERSION")) == 1

    def test_converted_instrument_cannot_convert_elsewhere(self, series_a):
        series_a.book.add_convertible(make_safe())
        series_a.conversions.convert("acme", "safe-1", "series-a")
        series_a.book.add_funding_round(FundingRound(
            id="series-b",
            company_id="acme",
            name="Series B",
            target_amount=Decimal("10000000"),
            pre_money_valuation=Decimal("20000000"),
            status="OPEN",
        ))

        with pytest.raises(InvalidStateTransition, match="CONVERTED"):
            series_a.conversions.convert("acme", "safe-1", "series-b")

    def test_explicit_share_class(self, series_a):
        series_a.book.add_convertible(make_safe())

        converted = series_a.conversions.convert("acme", "safe-1", "series-a", share_class_id="on")

        assert converted.conversion.share_class_id == "on"
        assert converted.target_share_class_id == "on"
        assert series_a.ledger.state_as_of("acme").balance("angel", "on") == Decimal("62500")

    def test_no_target_class(self, founded):
        founded.book.add_funding_round(FundingRound(
            id="series-a",
            company_id="acme",
            name="Series A",
            target_amount=Decimal("3000000"),
            pre_money_valuation=Decimal("2000000"),
            price_per_share=Decimal("2.00"),
            status="OPEN",
        ))
        founded.book.add_convertible(make_safe())

        with pytest.raises(ValueError, match="No target share class"):
            founded.conversions.convert("acme", "safe-1", "series-a")


# =============================================================================
# Triggers
# =============================================================================

class TestTriggers:

    def test_draft_round_does_not_trigger(self, series_a):
        series_a.book.add_funding_round(FundingRound(
            id="bridge",
            company_id="acme",
            name="Bridge",
            target_amount=Decimal("500000"),
            pre_money_valuation=Decimal("2000000"),
            price_per_share=Decimal("2.00"),
            share_class_id="pn-a",
        ))
        series_a.book.add_convertible(make_safe())

        with pytest.raises(ConversionTriggerNotMet, match="is DRAFT"):
            series_a.conversions.convert("acme", "safe-1", "bridge")

    def test_threshold_not_met(self, series_a):
        series_a.book.add_convertible(make_safe(qualified_financing_threshold=Decimal("5000000")))

        with pytest.raises(ConversionTriggerNotMet, match="qualified financing threshold"):
            series_a.conversions.convert("acme", "safe-1", "series-a")

        assert series_a.book.get_convertible("acme", "safe-1").status == "OUTSTANDING"

    def test_maturity_instrument_waits_for_maturity(self, series_a):
        series_a.book.add_convertible(make_safe(
            instrument_type="MUTUO_CONVERSIVEL",
            conversion_trigger="MATURITY",
            valuation_cap=Decimal("1000000"),
            discount_rate=None,
            maturity_date=date(2026, 6, 1),
        ))

        with pytest.raises(ConversionTriggerNotMet, match="converts at maturity"):
            series_a.conversions.convert("acme", "safe-1", "series-a")

        series_a.book.mark_matured("acme", "safe-1")
        converted = series_a.conversions.convert("acme", "safe-1", "series-a")

        assert converted.conversion.method_used == "CAP"
        assert converted.conversion.shares_issued > 0


# =============================================================================
# Round close
# =============================================================================

class TestCloseRound:

    def test_close_converts_auto_instruments(self, series_a):
        series_a.book.add_convertible(make_safe("auto-1"))
        series_a.book.add_convertible(make_safe("auto-any", target_round_id=None))
        series_a.book.add_convertible(make_safe("manual", auto_convert=False))

        result = series_a.conversions.close_round("acme", "series-a")

        assert {i.id for i in result.converted} == {"auto-1", "auto-any"}
        assert result.skipped == []
        assert result.funding_round.status == "CLOSED"
        assert result.funding_round.closed_at is not None
        assert series_a.book.get_convertible("acme", "manual").status == "OUTSTANDING"
        assert series_a.ledger.state_as_of("acme").balance("angel", "pn-a") == Decimal("125000")

    def test_close_takes_round_closed_snapshot(self, series_a):
        series_a.book.add_convertible(make_safe())

        result = series_a.conversions.close_round("acme", "series-a")

        assert result.snapshot is not None
        assert result.snapshot.trigger == "round_closed"
        assert result.snapshot.total_shares == Decimal("1062500")

    def test_close_skips_threshold_misses(self, series_a):
        series_a.book.add_convertible(make_safe("small"))
        series_a.book.add_convertible(make_safe("picky", qualified_financing_threshold=Decimal("5000000")))

        result = series_a.conversions.close_round("acme", "series-a")

        assert [i.id for i in result.converted] == ["small"]
        assert [(s.instrument_id, s.reason) for s in result.skipped] == [("picky", "THRESHOLD_NOT_MET")]
        assert series_a.book.get_convertible("acme", "picky").status == "OUTSTANDING"

    def test_close_that_exceeds_authorized_converts_nothing(self, series_a):
        series_a.registry.add_share_class(ShareClass(
            id="pn-tiny",
            company_id="acme",
            name="Preferred Tiny",
            share_type="PREFERRED",
            total_authorized=Decimal("100000"),
        ))
        series_a.book.add_convertible(make_safe("first", target_share_class_id="pn-tiny"))
        series_a.book.add_convertible(make_safe("second", target_share_class_id="pn-tiny"))

        with pytest.raises(AuthorizedSharesExceeded):
            series_a.conversions.close_round("acme", "series-a")

        assert series_a.ledger.transactions("acme", type="CONVERSION") == []
        assert series_a.book.get_convertible("acme", "first").status == "OUTSTANDING"
        assert series_a.book.get_funding_round("acme", "series-a").status == "OPEN"

    def test_close_requires_live_round(self, series_a):
        series_a.conversions.close_round("acme", "series-a")

        with pytest.raises(InvalidStateTransition, match="Cannot close round"):
            series_a.conversions.close_round("acme", "series-a")

    def test_conversions_are_audited(self, series_a):
        series_a.book.add_convertible(make_safe())
        series_a.conversions.close_round("acme", "series-a")

        actions = [e.action for e in series_a.audit.entries("acme")]
        assert "CONVERTIBLE_CONVERTED" in actions
        assert actions.index("FUNDING_ROUND_CLOSING") < actions.index("FUNDING_ROUND_CLOSED")
        assert actions[-1] == "SNAPSHOT_CREATED"

    def test_close_waits_for_maturity_trigger(self, series_a):
        series_a.book.add_convertible(make_safe("small"))
        series_a.book.add_convertible(make_safe(
            "note",
            instrument_type="CONVERTIBLE_NOTE",
            conversion_trigger="MATURITY",
            valuation_cap=Decimal("1000000"),
            discount_rate=None,
            maturity_date=date(2030, 1, 1),
        ))

        result = series_a.conversions.close_round("acme", "series-a")

        assert [i.id for i in result.converted] == ["small"]
        assert [(s.instrument_id, s.reason) for s in result.skipped] == [("note", "MATURITY_NOT_REACHED")]
        assert series_a.book.get_convertible("acme", "note").status == "OUTSTANDING"

    def test_unrelated_instruments_do_not_block_close(self, series_a):
        series_a.book.add_convertible(make_safe())
        series_a.book.add_convertible(make_safe(
            "elsewhere",
            principal_amount=Decimal("1000000"),
            valuation_cap=Decimal("1000000"),
            discount_rate=None,
            target_round_id="other",
            auto_convert=False,
        ))

        result = series_a.conversions.close_round("acme", "series-a")

        assert [i.id for i in result.converted] == ["safe-1"]
        assert result.skipped == []
        assert series_a.book.get_convertible("acme", "elsewhere").status == "OUTSTANDING"
        assert series_a.ledger.state_as_of("acme").balance("angel", "pn-a") == Decimal("62500")

    def test_cap_price_ignores_non_participants(self, series_a):
        """100,000 at a 1M cap on 1M shares: shares = 100000 * 1e6 / 900000."""
        series_a.book.add_convertible(make_safe(valuation_cap=Decimal("1000000"), discount_rate=None))
        series_a.book.add_convertible(make_safe(
            "manual",
            principal_amount=Decimal("500000"),
            valuation_cap=Decimal("2000000"),
            auto_convert=False,
        ))

        result = series_a.conversions.close_round("acme", "series-a")

        record = result.converted[0].conversion
        assert record.method_used == "CAP"
        assert record.shares_issued == Decimal("111111")
