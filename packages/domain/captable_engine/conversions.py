"""Convertible instrument conversion and funding round close.

Converting an instrument prices it with ``DilutionResolver.resolve_conversions``
(the same fixed point the fully diluted view uses), appends a CONFIRMED
CONVERSION transaction that issues the shares into the target class, and marks
the instrument CONVERTED with a ``ConversionRecord``. Converting again into
the same round returns the recorded result unchanged.

Closing a round converts every auto-convert instrument it qualifies for,
moves the round to CLOSED and takes a ``round_closed`` snapshot.
"""

import logging
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, NamedTuple, Optional

from .book import InstrumentBook
from .dilution import DilutionResolver, Resolution
from .errors import (
    ConversionTriggerNotMet,
    DilutionComputationError,
    InactiveShareholder,
    InvalidStateTransition,
)
from .integrity import SnapshotService
from .ledger import EquityLedger
from .schemas.base import as_utc, canonical_decimal
from .schemas.instruments import (
    ConversionQuote,
    ConversionRecord,
    ConvertibleInstrument,
    FundingRound,
    UnconvertedInstrument,
)
from .schemas.options import to_date
from .schemas.snapshots import CapTableSnapshot
from .schemas.transactions import ConversionTransaction

logger = logging.getLogger(__name__)

CONVERTIBLE_STATUSES = ("OUTSTANDING", "MATURED")


def _require_shares(instrument: ConvertibleInstrument, quote: ConversionQuote) -> None:
    if quote.shares <= 0:
        raise DilutionComputationError(
            f"Instrument {instrument.id} converts into zero shares",
            {"instrument_id": instrument.id, "conversion_price": quote.conversion_price},
        )


class RoundClose(NamedTuple):
    """Outcome of closing a funding round."""

    funding_round: FundingRound
    converted: List[ConvertibleInstrument]
    skipped: List[UnconvertedInstrument]
    snapshot: Optional[CapTableSnapshot]


class ConvertibleConversionService:
    """Executes conversions of convertible instruments into shares.

    Usage:
        service = ConvertibleConversionService(resolver, snapshots)
        service.convert("acme", "safe-1", "series-a", share_class_id="pn-a")
        service.close_round("acme", "series-a")
    """

    def __init__(self, resolver: DilutionResolver, snapshots: Optional[SnapshotService] = None):
        self.resolver = resolver
        self.book: InstrumentBook = resolver.book
        self.ledger: EquityLedger = resolver.ledger
        self.registry = resolver.registry
        self.locks = self.book.locks
        self.clock = resolver.clock
        self.snapshots = snapshots

    # =========================================================================
    # Single conversion
    # =========================================================================

    def convert(
        self,
        company_id: str,
        instrument_id: str,
        round_id: str,
        share_class_id: Optional[str] = None,
        as_of: Optional[datetime] = None,
        actor_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ConvertibleInstrument:
        """Convert one instrument at a funding round.

        Args:
            company_id: Owning company
            instrument_id: OUTSTANDING or MATURED instrument
            round_id: Round supplying the price (OPEN, CLOSING or CLOSED)
            share_class_id: Class to issue into (default: the instrument's
                target class, then the round's class)
            as_of: Valuation date for interest (default: now)

        Returns:
            The CONVERTED instrument

        Raises:
            InvalidStateTransition: Instrument is not convertible
            ConversionTriggerNotMet: Round not live, threshold missed, or
                maturity not reached
            DilutionComputationError: Instrument cannot be priced
            AuthorizedSharesExceeded: Target class lacks authorized shares
        """
        when = as_utc(as_of or self.clock())
        with self.locks.hold(company_id):
            instrument = self.book.get_convertible(company_id, instrument_id)
            if instrument.status == "CONVERTED" and instrument.conversion is not None:
                if instrument.conversion.funding_round_id == round_id:
                    logger.info("Instrument %s already converted in round %s", instrument_id, round_id)
                    return instrument
            if instrument.status not in CONVERTIBLE_STATUSES:
                raise InvalidStateTransition(
                    f"Instrument {instrument_id} is {instrument.status} and cannot convert",
                    {"id": instrument_id, "status": instrument.status},
                )

            funding_round = self.book.get_funding_round(company_id, round_id)
            self._check_trigger(instrument, funding_round, to_date(when))
            class_id = self._target_class(instrument, funding_round, share_class_id)
            if class_id is None:
                raise ValueError(f"No target share class for instrument {instrument_id}")
            self.registry.get_share_class(company_id, class_id)

            resolution = self._resolve(company_id, [instrument], funding_round, when)
            quote = self._quote_for(resolution, instrument)
            converted = self._execute(instrument, funding_round, class_id, quote, when, actor_id, notes)

        return converted

    # =========================================================================
    # Round close
    # =========================================================================

    def close_round(
        self,
        company_id: str,
        round_id: str,
        as_of: Optional[datetime] = None,
        actor_id: Optional[str] = None,
    ) -> RoundClose:
        """Close a funding round, converting its auto-convert instruments.

        An OPEN round passes through CLOSING. Auto-convert instruments
        targeting this round (or no round) whose trigger is met form the
        batch; the batch alone is priced in one fixed point and then issued.
        Instruments whose trigger is not met, that cannot be priced or that
        have no class are skipped. Manual instruments and instruments aimed at
        other rounds play no part. The whole batch is checked against
        authorized shares before anything is written.

        Raises:
            InvalidStateTransition: Round is not OPEN or CLOSING
            AuthorizedSharesExceeded: The batch does not fit (nothing converted)
        """
        when = as_utc(as_of or self.clock())
        with self.locks.hold(company_id):
            funding_round = self.book.get_funding_round(company_id, round_id)
            if funding_round.status not in ("OPEN", "CLOSING"):
                raise InvalidStateTransition(
                    f"Cannot close round {round_id} in status {funding_round.status}",
                    {"id": round_id, "from": funding_round.status, "to": "CLOSED"},
                )

            candidates = [
                i for i in self._convertible(company_id)
                if i.auto_convert and i.target_round_id in (None, round_id)
            ]
            not_triggered: Dict[str, UnconvertedInstrument] = {}
            for instrument in candidates:
                try:
                    self._check_trigger(instrument, funding_round, to_date(when))
                except ConversionTriggerNotMet as exc:
                    not_triggered[instrument.id] = UnconvertedInstrument(
                        instrument_id=instrument.id,
                        shareholder_id=instrument.shareholder_id,
                        reason=exc.details["reason"],
                    )
            batch = [i for i in candidates if i.id not in not_triggered]

            # Only the batch converting now takes part in the fixed point
            resolution = self._resolve(company_id, batch, funding_round, when)
            unpriced = {u.instrument_id: u for u in resolution.unconverted}
            quotes = {q.instrument_id: q for q in resolution.quotes}

            planned = []
            skipped: List[UnconvertedInstrument] = []
            for instrument in candidates:
                left_out = not_triggered.get(instrument.id) or unpriced.get(instrument.id)
                if left_out is not None:
                    skipped.append(left_out)
                    continue
                class_id = self._target_class(instrument, funding_round, None)
                if class_id is None:
                    skipped.append(UnconvertedInstrument(
                        instrument_id=instrument.id,
                        shareholder_id=instrument.shareholder_id,
                        reason="NO_SHARE_CLASS",
                    ))
                    continue
                planned.append((instrument, class_id, quotes[instrument.id]))

            self._preflight(company_id, planned)

            converted = [
                self._execute(instrument, funding_round, class_id, quote, when, actor_id, None)
                for instrument, class_id, quote in planned
            ]
            if funding_round.status == "OPEN":
                self.book.transition_round(company_id, round_id, "CLOSING", actor_id)
            closed = self.book.transition_round(company_id, round_id, "CLOSED", actor_id)

        for item in skipped:
            logger.info("Round %s close skipped instrument %s (%s)", round_id, item.instrument_id, item.reason)
        logger.info(
            "Closed round %s of company %s: %d instruments converted",
            round_id, company_id, len(converted),
        )

        snapshot = None
        if self.snapshots is not None:
            snapshot = self.snapshots.create_auto_snapshot(company_id, trigger="round_closed")
        return RoundClose(closed, converted, skipped, snapshot)

    # =========================================================================
    # Internals
    # =========================================================================

    def _convertible(self, company_id: str) -> List[ConvertibleInstrument]:
        return [
            i for i in self.book.convertibles(company_id)
            if i.status in CONVERTIBLE_STATUSES
        ]

    def _resolve(
        self,
        company_id: str,
        instruments: List[ConvertibleInstrument],
        funding_round: FundingRound,
        when: datetime,
    ) -> Resolution:
        return self.resolver.resolve_conversions(company_id, instruments, funding_round, when)

    @staticmethod
    def _target_class(
        instrument: ConvertibleInstrument,
        funding_round: FundingRound,
        share_class_id: Optional[str],
    ) -> Optional[str]:
        return share_class_id or instrument.target_share_class_id or funding_round.share_class_id

    @staticmethod
    def _check_trigger(instrument: ConvertibleInstrument, funding_round: FundingRound, on: date) -> None:
        if not funding_round.accepts_conversions:
            raise ConversionTriggerNotMet(
                f"Round {funding_round.id} is {funding_round.status}",
                {"round_id": funding_round.id, "status": funding_round.status, "reason": "ROUND_NOT_LIVE"},
            )
        threshold = instrument.qualified_financing_threshold
        if threshold is not None and funding_round.target_amount < threshold:
            raise ConversionTriggerNotMet(
                f"Round {funding_round.id} raises less than the qualified financing threshold",
                {
                    "instrument_id": instrument.id,
                    "threshold": canonical_decimal(threshold),
                    "round_amount": canonical_decimal(funding_round.target_amount),
                    "reason": "THRESHOLD_NOT_MET",
                },
            )
        if (
            instrument.conversion_trigger == "MATURITY"
            and instrument.status != "MATURED"
            and instrument.maturity_date is not None
            and on < instrument.maturity_date
        ):
            raise ConversionTriggerNotMet(
                f"Instrument {instrument.id} converts at maturity ({instrument.maturity_date})",
                {
                    "instrument_id": instrument.id,
                    "maturity_date": instrument.maturity_date,
                    "reason": "MATURITY_NOT_REACHED",
                },
            )

    @staticmethod
    def _quote_for(resolution: Resolution, instrument: ConvertibleInstrument) -> ConversionQuote:
        for quote in resolution.quotes:
            if quote.instrument_id == instrument.id:
                _require_shares(instrument, quote)
                return quote
        reason = next(
            (u.reason for u in resolution.unconverted if u.instrument_id == instrument.id),
            "NO_PRICE",
        )
        raise DilutionComputationError(
            f"Instrument {instrument.id} cannot be priced",
            {"instrument_id": instrument.id, "reason": reason},
        )

    def _preflight(self, company_id: str, planned: list) -> None:
        """Apply the planned batch to a scratch fold; raises what the ledger would."""
        state = self.ledger.state_as_of(company_id)
        for instrument, class_id, quote in planned:
            _require_shares(instrument, quote)
            holder = self.registry.get_shareholder(company_id, instrument.shareholder_id)
            if not holder.is_active:
                raise InactiveShareholder(
                    f"Shareholder {holder.id} is {holder.status}",
                    {"shareholder_id": holder.id, "status": holder.status},
                )
            state.issue(instrument.shareholder_id, class_id, quote.shares)

    def _execute(
        self,
        instrument: ConvertibleInstrument,
        funding_round: FundingRound,
        class_id: str,
        quote: ConversionQuote,
        when: datetime,
        actor_id: Optional[str],
        notes: Optional[str],
    ) -> ConvertibleInstrument:
        company_id = instrument.company_id
        shares: Decimal = quote.shares
        description = f"Convertible conversion: {instrument.instrument_type} -> {class_id}. Method: {quote.method_used}."
        transaction_id = self.ledger.append(
            ConversionTransaction(
                id=str(uuid.uuid4()),
                company_id=company_id,
                share_class_id=class_id,
                to_shareholder_id=instrument.shareholder_id,
                converted_instrument_id=instrument.id,
                quantity=shares,
                price_per_share=quote.conversion_price,
                status="CONFIRMED",
                created_at=when,
                notes=f"{description} {notes}" if notes else description,
            ),
            actor_id=actor_id,
        )
        record = ConversionRecord(
            funding_round_id=funding_round.id,
            transaction_id=transaction_id,
            share_class_id=class_id,
            conversion_amount=quote.conversion_amount,
            conversion_price=quote.conversion_price,
            shares_issued=shares,
            method_used=quote.method_used,
            executed_at=when,
            executed_by=actor_id,
        )
        converted = self.book._mark_converted(company_id, instrument.id, record, actor_id)
        logger.info(
            "Converted instrument %s into %s shares of %s at %s (%s)",
            instrument.id, shares, class_id, quote.conversion_price, quote.method_used,
        )
        return converted
