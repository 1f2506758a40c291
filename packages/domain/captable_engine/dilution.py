"""Fully diluted cap table.

Fully diluted shares = outstanding shares
                     + outstanding options (vested unexercised + unvested)
                     + as-converted shares of OUTSTANDING convertibles

Convertible pricing is circular: a valuation cap converts at
``cap / fully_diluted_shares``, but the fully diluted count includes the
shares the conversion itself creates. The resolver runs a bounded fixed point:

    T0 = outstanding + options
    repeat:
        shares_i = amount_i / price_i(T)
        T' = T0 + sum(shares_i)
        stop when |T' - T| < convergence_tolerance
    raise DilutionComputationError after max_dilution_iterations

For a single cap-priced instrument the fixed point is
``shares = amount * T0 / (cap - amount)``; it diverges when
``amount >= cap``.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

from .book import InstrumentBook
from .config import EngineCFG
from .errors import DilutionComputationError
from .ledger import EquityLedger
from .rounding import largest_remainder, percentage_of
from .schemas.base import ZERO, ONE, as_utc, truncate
from .schemas.cap_table import FullyDilutedEntry, FullyDilutedSummary, FullyDilutedView
from .schemas.instruments import (
    ConversionQuote,
    ConversionScenario,
    ConversionScenarios,
    ConvertibleInstrument,
    FundingRound,
    PriceCandidate,
    ScenarioMethod,
    UnconvertedInstrument,
    DEFAULT_SCENARIO_VALUATIONS,
)
from .schemas.options import to_date

logger = logging.getLogger(__name__)

# Tie-break order when candidates price equally
METHOD_ORDER = ("ROUND_PRICE", "DISCOUNT", "CAP")

_SCENARIO_PLACES = 2


def _converts_into(instrument: ConvertibleInstrument, round_id: str) -> bool:
    if instrument.status in ("OUTSTANDING", "MATURED"):
        return True
    return (
        instrument.status == "CONVERTED"
        and instrument.conversion is not None
        and instrument.conversion.funding_round_id == round_id
    )


class EffectiveTerms(NamedTuple):
    """Cap and discount after applying MFN adoption."""

    valuation_cap: Optional[Decimal]
    discount_rate: Optional[Decimal]
    sources: Dict[str, str]


class Resolution(NamedTuple):
    """Outcome of pricing a set of instruments against one base."""

    quotes: List[ConversionQuote]
    unconverted: List[UnconvertedInstrument]
    iterations: int
    base_shares: Decimal


class OptionPosition(NamedTuple):
    vested: Decimal
    unvested: Decimal


class DilutionResolver:
    """Computes the fully diluted view and prices convertible conversions.

    Usage:
        resolver = DilutionResolver(ledger, book)
        view = resolver.fully_diluted("acme")
        view.summary.fully_diluted_shares
        view.conversions[0].method_used      # "CAP"
    """

    def __init__(
        self,
        ledger: EquityLedger,
        book: InstrumentBook,
        cfg: Optional[EngineCFG] = None,
    ):
        self.ledger = ledger
        self.book = book
        self.registry = ledger.registry
        self.cfg = cfg or ledger.cfg
        self.clock = ledger.clock

    # =========================================================================
    # Fully diluted view
    # =========================================================================

    def fully_diluted(
        self,
        company_id: str,
        as_of: Optional[datetime] = None,
        round_id: Optional[str] = None,
    ) -> FullyDilutedView:
        """Fully diluted ownership per shareholder.

        Args:
            company_id: Company to compute
            as_of: Ledger cut-off and valuation date for vesting and interest
                (default: now)
            round_id: Price convertibles against this round instead of the
                latest OPEN/CLOSING one

        Raises:
            RecordNotFound: ``round_id`` does not exist
            DilutionComputationError: Conversion pricing does not converge
        """
        when = as_utc(as_of or self.clock())
        funding_round = self._pricing_round(company_id, round_id)
        places = self.cfg.percentage_places

        with self.cfg.decimal_context():
            current = self._outstanding_by_holder(company_id, as_of)
            options = self.option_positions(company_id, when)
            resolution = self.resolve_conversions(
                company_id,
                self.book.convertibles(company_id, status="OUTSTANDING"),
                funding_round,
                as_of,
            )

            convertible: Dict[str, Decimal] = {}
            for quote in resolution.quotes:
                convertible[quote.shareholder_id] = convertible.get(quote.shareholder_id, ZERO) + quote.shares

            holders = sorted(set(current) | set(options) | set(convertible))
            fully: Dict[str, Decimal] = {}
            for holder_id in holders:
                position = options.get(holder_id, OptionPosition(ZERO, ZERO))
                fully[holder_id] = (
                    current.get(holder_id, ZERO)
                    + position.vested
                    + position.unvested
                    + convertible.get(holder_id, ZERO)
                )

            current_pct = largest_remainder([(h, current.get(h, ZERO)) for h in holders], places)
            fully_pct = largest_remainder([(h, fully[h]) for h in holders], places)

            entries: List[FullyDilutedEntry] = []
            for holder_id in holders:
                holder = self.registry.find_shareholder(company_id, holder_id)
                position = options.get(holder_id, OptionPosition(ZERO, ZERO))
                entries.append(FullyDilutedEntry(
                    shareholder_id=holder_id,
                    shareholder_name=holder.name if holder else None,
                    shareholder_type=holder.shareholder_type if holder else None,
                    current_shares=current.get(holder_id, ZERO),
                    current_percentage=current_pct[holder_id],
                    options_vested=position.vested,
                    options_unvested=position.unvested,
                    convertible_shares=convertible.get(holder_id, ZERO),
                    fully_diluted_shares=fully[holder_id],
                    fully_diluted_percentage=fully_pct[holder_id],
                ))
            entries.sort(key=lambda e: (-e.fully_diluted_shares, e.shareholder_id))

            outstanding = sum(current.values(), ZERO)
            option_total = sum((p.vested + p.unvested for p in options.values()), ZERO)
            convertible_total = sum(convertible.values(), ZERO)
            summary = FullyDilutedSummary(
                total_shares_outstanding=outstanding,
                total_options_outstanding=option_total,
                total_convertible_shares=convertible_total,
                fully_diluted_shares=outstanding + option_total + convertible_total,
                iterations=resolution.iterations,
            )

        logger.debug(
            "Fully diluted %s: %s shares (%s outstanding, %s options, %s as-converted)",
            company_id, summary.fully_diluted_shares, outstanding, option_total, convertible_total,
        )
        return FullyDilutedView(
            company_id=company_id,
            as_of=as_of,
            funding_round_id=funding_round.id if funding_round else None,
            entries=entries,
            summary=summary,
            conversions=resolution.quotes,
            unconverted=resolution.unconverted,
        )

    def option_positions(self, company_id: str, as_of: datetime) -> Dict[str, OptionPosition]:
        """Outstanding options per shareholder.

        Only ACTIVE grants count, under ACTIVE or CLOSED plans. Grants past
        their expiration date or post-termination exercise window drop out.
        """
        on = to_date(as_of)
        positions: Dict[str, OptionPosition] = {}
        for grant in self.book.grants(company_id, status="ACTIVE"):
            plan = self.book.get_option_plan(company_id, grant.plan_id)
            if on > grant.expiration_date:
                continue
            if not grant.is_exercise_window_open(as_of, plan.exercise_window_days):
                continue
            vesting = grant.vesting(as_of, plan.termination_policy)
            vested = truncate(vesting.exercisable, self.cfg.share_quantum)
            unvested = truncate(vesting.unvested, self.cfg.share_quantum)
            # Terminated grants stop vesting: the unvested part no longer dilutes
            if grant.terminated_at is not None and to_date(grant.terminated_at) <= on:
                unvested = ZERO
            previous = positions.get(grant.shareholder_id, OptionPosition(ZERO, ZERO))
            positions[grant.shareholder_id] = OptionPosition(
                previous.vested + vested,
                previous.unvested + unvested,
            )
        return positions

    # =========================================================================
    # Conversion pricing
    # =========================================================================

    def resolve_conversions(
        self,
        company_id: str,
        instruments: Sequence[ConvertibleInstrument],
        funding_round: Optional[FundingRound],
        as_of: Optional[datetime] = None,
    ) -> Resolution:
        """Price instruments against the fully diluted base, to a fixed point.

        Args:
            company_id: Company the instruments belong to
            instruments: Instruments to price (normally the OUTSTANDING ones)
            funding_round: Round supplying the round price and the
                qualified-financing test, if any
            as_of: Valuation date for accrued interest

        Returns:
            Resolution with one quote per priced instrument; instruments with
            no usable price or a missed threshold go to ``unconverted``

        Raises:
            DilutionComputationError: Zero base with cap pricing, or no
                convergence within ``max_dilution_iterations``
        """
        when = as_utc(as_of or self.clock())
        day_count = self.cfg.interest_day_count
        tolerance = self.cfg.convergence_tolerance

        with self.cfg.decimal_context():
            outstanding = sum(self._outstanding_by_holder(company_id, as_of).values(), ZERO)
            options = sum(
                (p.vested + p.unvested for p in self.option_positions(company_id, when).values()),
                ZERO,
            )
            base = outstanding + options
            round_price = self._round_price(funding_round, base)

            priced: List[Tuple[ConvertibleInstrument, Decimal, EffectiveTerms]] = []
            unconverted: List[UnconvertedInstrument] = []
            for instrument in sorted(instruments, key=lambda i: (i.issue_date, i.id)):
                if self._misses_threshold(instrument, funding_round):
                    unconverted.append(UnconvertedInstrument(
                        instrument_id=instrument.id,
                        shareholder_id=instrument.shareholder_id,
                        reason="THRESHOLD_NOT_MET",
                    ))
                    continue
                terms = self.effective_terms(company_id, instrument)
                if not self._has_price(instrument, terms, round_price):
                    unconverted.append(UnconvertedInstrument(
                        instrument_id=instrument.id,
                        shareholder_id=instrument.shareholder_id,
                        reason="NO_PRICE",
                    ))
                    continue
                priced.append((instrument, instrument.conversion_amount(when, day_count), terms))

            if not priced:
                return Resolution([], unconverted, 0, base)

            if base <= 0 and any(terms.valuation_cap is not None for _, _, terms in priced):
                raise DilutionComputationError(
                    "Cannot price a valuation cap against zero fully diluted shares",
                    {"company_id": company_id, "base_shares": base},
                )

            trial = base
            exact: Dict[str, Tuple[Decimal, List[PriceCandidate]]] = {}
            for iteration in range(1, self.cfg.max_dilution_iterations + 1):
                exact = {}
                for instrument, amount, terms in priced:
                    candidates = self._candidates(instrument, terms, round_price, trial)
                    if candidates[0].price <= 0:
                        raise DilutionComputationError(
                            f"Instrument {instrument.id} prices at {candidates[0].price}",
                            {
                                "instrument_id": instrument.id,
                                "method": candidates[0].method,
                                "price": candidates[0].price,
                            },
                        )
                    exact[instrument.id] = (amount / candidates[0].price, candidates)
                total = base + sum((shares for shares, _ in exact.values()), ZERO)
                logger.debug(
                    "Dilution iteration %d for %s: trial %s -> %s",
                    iteration, company_id, trial, total,
                )
                converged = abs(total - trial) < tolerance
                trial = total
                if converged:
                    break
            else:
                raise DilutionComputationError(
                    f"Conversion pricing did not converge in {self.cfg.max_dilution_iterations} iterations",
                    {
                        "company_id": company_id,
                        "iterations": self.cfg.max_dilution_iterations,
                        "last_total": trial,
                        "tolerance": tolerance,
                    },
                )

            quotes: List[ConversionQuote] = []
            for instrument, amount, terms in priced:
                shares, candidates = exact[instrument.id]
                best = candidates[0]
                quotes.append(ConversionQuote(
                    instrument_id=instrument.id,
                    shareholder_id=instrument.shareholder_id,
                    conversion_amount=amount,
                    conversion_price=best.price,
                    method_used=best.method,
                    shares=truncate(shares, self.cfg.share_quantum),
                    candidates=candidates,
                    effective_valuation_cap=terms.valuation_cap,
                    effective_discount_rate=terms.discount_rate,
                    mfn_sources=terms.sources,
                ))

        return Resolution(quotes, unconverted, iteration, base)

    def effective_terms(self, company_id: str, instrument: ConvertibleInstrument) -> EffectiveTerms:
        """Cap and discount after MFN adoption.

        An MFN instrument takes the lowest cap and the highest discount among
        instruments of the same round group issued strictly after it, using
        the siblings' own terms. A sibling counts while it can still convert
        into that round (OUTSTANDING or MATURED) or once it has converted
        there; CANCELLED, REDEEMED and siblings converted in another round
        pass nothing on.
        """
        cap = instrument.valuation_cap
        discount = instrument.discount_rate
        sources: Dict[str, str] = {}
        if not instrument.mfn_clause or instrument.target_round_id is None:
            return EffectiveTerms(cap, discount, sources)

        own_key = (instrument.issue_date, instrument.id)
        for sibling in self.book.convertibles(company_id, round_id=instrument.target_round_id):
            if (sibling.issue_date, sibling.id) <= own_key:
                continue
            if not _converts_into(sibling, instrument.target_round_id):
                continue
            if sibling.valuation_cap is not None and (cap is None or sibling.valuation_cap < cap):
                cap = sibling.valuation_cap
                sources["valuation_cap"] = sibling.id
            if sibling.discount_rate is not None and (discount is None or sibling.discount_rate > discount):
                discount = sibling.discount_rate
                sources["discount_rate"] = sibling.id
        return EffectiveTerms(cap, discount, sources)

    # =========================================================================
    # Scenarios
    # =========================================================================

    def conversion_scenarios(
        self,
        company_id: str,
        instrument_id: str,
        valuations: Optional[Sequence[Decimal]] = None,
        as_of: Optional[datetime] = None,
    ) -> ConversionScenarios:
        """What-if conversion outcomes across hypothetical pre-money valuations.

        Prices against the current outstanding shares (no fixed point): each
        scenario shows the round price, discount and cap outcomes and the
        method giving the investor the most shares.

        Raises:
            ValueError: A valuation is not positive
            DilutionComputationError: The company has no outstanding shares
        """
        instrument = self.book.get_convertible(company_id, instrument_id)
        valuations = list(valuations or DEFAULT_SCENARIO_VALUATIONS)
        for valuation in valuations:
            if valuation <= 0:
                raise ValueError(f"Hypothetical valuation must be positive, got {valuation}")

        when = as_utc(as_of or self.clock())
        with self.cfg.decimal_context():
            pre_money = sum(self._outstanding_by_holder(company_id, None).values(), ZERO)
            if pre_money <= 0:
                raise DilutionComputationError(
                    "Scenarios need outstanding shares",
                    {"company_id": company_id, "reason": "ZERO_PREMONEY_SHARES"},
                )

            amount = instrument.conversion_amount(when, self.cfg.interest_day_count)
            terms = self.effective_terms(company_id, instrument)
            cap_triggers_above = None
            if terms.valuation_cap is not None and terms.discount_rate:
                cap_triggers_above = terms.valuation_cap / (ONE - terms.discount_rate)

            scenarios = [
                self._scenario(valuation, pre_money, amount, terms)
                for valuation in valuations
            ]

        return ConversionScenarios(
            instrument_id=instrument.id,
            conversion_amount=amount,
            valuation_cap=terms.valuation_cap,
            discount_rate=terms.discount_rate,
            cap_triggers_above=cap_triggers_above,
            scenarios=scenarios,
        )

    def _scenario(
        self,
        valuation: Decimal,
        pre_money: Decimal,
        amount: Decimal,
        terms: EffectiveTerms,
    ) -> ConversionScenario:
        round_price = valuation / pre_money

        def method(price: Decimal) -> ScenarioMethod:
            shares = truncate(amount / price, self.cfg.share_quantum)
            return ScenarioMethod(
                conversion_price=price,
                shares_issued=shares,
                ownership_percentage=percentage_of(shares, pre_money + shares, _SCENARIO_PLACES),
            )

        options = [("ROUND_PRICE", method(round_price))]
        discount_method = None
        if terms.discount_rate:
            discount_method = method(round_price * (ONE - terms.discount_rate))
            options.append(("DISCOUNT", discount_method))
        cap_method = None
        if terms.valuation_cap is not None:
            cap_method = method(min(terms.valuation_cap / pre_money, round_price))
            options.append(("CAP", cap_method))

        best_name, best = options[0]
        for name, candidate in options[1:]:
            if candidate.shares_issued > best.shares_issued:
                best_name, best = name, candidate

        return ConversionScenario(
            hypothetical_valuation=valuation,
            pre_money_shares=pre_money,
            round_price_per_share=round_price,
            discount_method=discount_method,
            cap_method=cap_method,
            best_method=best_name,
            final_conversion_price=best.conversion_price,
            final_shares_issued=best.shares_issued,
            final_ownership_percentage=best.ownership_percentage,
            dilution_to_existing=percentage_of(best.shares_issued, pre_money + best.shares_issued, _SCENARIO_PLACES),
        )

    # =========================================================================
    # Internals
    # =========================================================================

    def _outstanding_by_holder(self, company_id: str, as_of: Optional[datetime]) -> Dict[str, Decimal]:
        state = self.ledger.state_as_of(company_id, as_of)
        totals: Dict[str, Decimal] = {}
        for holder_id, _, shares in state.holdings():
            totals[holder_id] = totals.get(holder_id, ZERO) + shares
        return totals

    def _pricing_round(self, company_id: str, round_id: Optional[str]) -> Optional[FundingRound]:
        if round_id is not None:
            return self.book.get_funding_round(company_id, round_id)
        return self.book.active_round(company_id)

    @staticmethod
    def _round_price(funding_round: Optional[FundingRound], base: Decimal) -> Optional[Decimal]:
        if funding_round is None:
            return None
        if funding_round.price_per_share:
            return funding_round.price_per_share
        if base > 0 and funding_round.pre_money_valuation > 0:
            return funding_round.pre_money_valuation / base
        return None

    @staticmethod
    def _misses_threshold(instrument: ConvertibleInstrument, funding_round: Optional[FundingRound]) -> bool:
        threshold = instrument.qualified_financing_threshold
        return (
            instrument.conversion_trigger == "QUALIFIED_FINANCING"
            and threshold is not None
            and funding_round is not None
            and funding_round.target_amount < threshold
        )

    @staticmethod
    def _has_price(
        instrument: ConvertibleInstrument,
        terms: EffectiveTerms,
        round_price: Optional[Decimal],
    ) -> bool:
        if instrument.conversion_trigger == "MATURITY":
            return terms.valuation_cap is not None
        return round_price is not None or terms.valuation_cap is not None

    @staticmethod
    def _candidates(
        instrument: ConvertibleInstrument,
        terms: EffectiveTerms,
        round_price: Optional[Decimal],
        trial_total: Decimal,
    ) -> List[PriceCandidate]:
        """Price candidates, best first."""
        candidates: List[PriceCandidate] = []
        if instrument.conversion_trigger != "MATURITY" and round_price is not None:
            candidates.append(PriceCandidate(method="ROUND_PRICE", price=round_price))
            if terms.discount_rate:
                candidates.append(PriceCandidate(
                    method="DISCOUNT",
                    price=round_price * (ONE - terms.discount_rate),
                ))
        if terms.valuation_cap is not None:
            candidates.append(PriceCandidate(
                method="CAP",
                price=terms.valuation_cap / trial_total,
            ))
        candidates.sort(key=lambda c: (c.price, METHOD_ORDER.index(c.method)))
        return candidates
