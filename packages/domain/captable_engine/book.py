"""Instrument book: option plans, option grants, convertibles and funding rounds.

These records feed the fully diluted view but never touch balances directly.
The two places where they reach the ledger are option exercise (a CONFIRMED
ISSUANCE) and convertible conversion (a CONFIRMED CONVERSION, see
``conversions.py``).

Every mutation runs under the company lock and publishes a new per-company
map, so readers iterate a stable view.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, FrozenSet, List, Optional, TypeVar

from pydantic import BaseModel

from .audit import AuditLog
from .concurrency import CompanyLocks
from .config import EngineCFG
from .errors import (
    ExerciseNotAllowed,
    InactiveShareholder,
    InvalidStateTransition,
    LedgerConflict,
    OptionPoolExhausted,
    RecordNotFound,
)
from .ledger import EquityLedger
from .schemas.base import ZERO, as_utc
from .schemas.instruments import (
    ConvertibleInstrument,
    ConversionRecord,
    FundingRound,
    FUNDING_ROUND_TRANSITIONS,
    INSTRUMENT_TRANSITIONS,
)
from .schemas.options import (
    OptionGrant,
    OptionPlan,
    VestingStatus,
    GRANT_TRANSITIONS,
    OPTION_PLAN_TRANSITIONS,
    to_date,
)
from .schemas.transactions import IssuanceTransaction

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

_KINDS = ("option_plan", "option_grant", "convertible", "funding_round")


class InstrumentBook:
    """Per-company store of option and convertible records.

    Usage:
        book = InstrumentBook(ledger)
        book.add_option_plan(OptionPlan(id="esop", company_id="acme", name="ESOP",
                                        share_class_id="on", total_pool_size=Decimal("100000")))
        book.grant_options(OptionGrant(id="g1", company_id="acme", plan_id="esop", ...))
        book.exercise_options("acme", "g1", Decimal("1000"))   # -> ledger transaction id
    """

    def __init__(
        self,
        ledger: EquityLedger,
        locks: Optional[CompanyLocks] = None,
        audit: Optional[AuditLog] = None,
        cfg: Optional[EngineCFG] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.ledger = ledger
        self.registry = ledger.registry
        self.locks = locks or ledger.locks
        self.audit = audit if audit is not None else ledger.audit
        self.cfg = cfg or ledger.cfg
        self.clock = clock or ledger.clock
        self._stores: Dict[str, Dict[str, Dict[str, BaseModel]]] = {kind: {} for kind in _KINDS}

    # =========================================================================
    # Option plans
    # =========================================================================

    def add_option_plan(self, plan: OptionPlan, actor_id: Optional[str] = None) -> OptionPlan:
        self.registry.get_share_class(plan.company_id, plan.share_class_id)
        return self._insert("option_plan", plan, actor_id)

    def get_option_plan(self, company_id: str, plan_id: str) -> OptionPlan:
        return self._get("option_plan", company_id, plan_id)

    def option_plans(self, company_id: str, status: Optional[str] = None) -> List[OptionPlan]:
        return self._list("option_plan", company_id, status=status)

    def close_option_plan(self, company_id: str, plan_id: str, actor_id: Optional[str] = None) -> OptionPlan:
        """Stop new grants. Existing grants keep vesting and diluting."""
        return self._transition("option_plan", company_id, plan_id, "CLOSED",
                                OPTION_PLAN_TRANSITIONS, actor_id)

    def pool_granted(self, company_id: str, plan_id: str) -> Decimal:
        """Options currently held against the plan's pool."""
        return sum(
            (g.pool_usage for g in self.grants(company_id, plan_id=plan_id)),
            ZERO,
        )

    def pool_available(self, company_id: str, plan_id: str) -> Decimal:
        plan = self.get_option_plan(company_id, plan_id)
        return plan.total_pool_size - self.pool_granted(company_id, plan_id)

    # =========================================================================
    # Option grants
    # =========================================================================

    def grant_options(self, grant: OptionGrant, actor_id: Optional[str] = None) -> OptionGrant:
        """Record a new grant against an ACTIVE plan.

        Raises:
            InvalidStateTransition: Plan is CLOSED or grant is not ACTIVE
            InactiveShareholder: Grantee is not ACTIVE
            OptionPoolExhausted: Grant exceeds the plan's available pool
        """
        company_id = grant.company_id
        with self.locks.hold(company_id):
            plan = self.get_option_plan(company_id, grant.plan_id)
            if plan.status != "ACTIVE":
                raise InvalidStateTransition(
                    f"Option plan {plan.id} is {plan.status}; no new grants",
                    {"plan_id": plan.id, "status": plan.status},
                )
            if grant.status != "ACTIVE":
                raise InvalidStateTransition(
                    f"New grants must be ACTIVE, got {grant.status}",
                    {"id": grant.id, "status": grant.status},
                )
            self._require_active_shareholder(company_id, grant.shareholder_id)

            available = self.pool_available(company_id, plan.id)
            if grant.quantity > available:
                raise OptionPoolExhausted(
                    f"Grant of {grant.quantity} exceeds available pool of plan {plan.id}",
                    {
                        "plan_id": plan.id,
                        "pool_size": plan.total_pool_size,
                        "available": available,
                        "requested": grant.quantity,
                    },
                )
            return self._insert("option_grant", grant, actor_id)

    def get_grant(self, company_id: str, grant_id: str) -> OptionGrant:
        return self._get("option_grant", company_id, grant_id)

    def grants(
        self,
        company_id: str,
        plan_id: Optional[str] = None,
        shareholder_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[OptionGrant]:
        return [
            g for g in self._list("option_grant", company_id, status=status)
            if (plan_id is None or g.plan_id == plan_id)
            and (shareholder_id is None or g.shareholder_id == shareholder_id)
        ]

    def grant_vesting(self, company_id: str, grant_id: str, as_of: Optional[datetime] = None) -> VestingStatus:
        """Vesting of a grant under its plan's termination policy."""
        grant = self.get_grant(company_id, grant_id)
        plan = self.get_option_plan(company_id, grant.plan_id)
        return grant.vesting(as_of or self.clock(), plan.termination_policy)

    def cancel_grant(self, company_id: str, grant_id: str, actor_id: Optional[str] = None) -> OptionGrant:
        """Cancel a grant; unexercised options return to the pool."""
        grant = self.get_grant(company_id, grant_id)
        updates = {} if grant.terminated_at else {"terminated_at": as_utc(self.clock())}
        return self._transition("option_grant", company_id, grant_id, "CANCELLED",
                                GRANT_TRANSITIONS, actor_id, **updates)

    def terminate_grant(
        self,
        company_id: str,
        grant_id: str,
        terminated_at: Optional[datetime] = None,
        actor_id: Optional[str] = None,
    ) -> OptionGrant:
        """Record the grantee's termination.

        The grant stays ACTIVE: vesting is settled by the plan's termination
        policy and vested options stay exercisable for the plan's window.
        """
        with self.locks.hold(company_id):
            grant = self.get_grant(company_id, grant_id)
            if grant.status != "ACTIVE":
                raise InvalidStateTransition(
                    f"Cannot terminate grant {grant_id} in status {grant.status}",
                    {"id": grant_id, "status": grant.status},
                )
            when = as_utc(terminated_at or self.clock())
            updated = OptionGrant.model_validate({**grant.model_dump(), "terminated_at": when})
            self._replace("option_grant", updated)
            self._record(company_id, "OPTION_GRANT_TERMINATED", "option_grant", grant_id,
                         before={"terminated_at": None}, after={"terminated_at": when},
                         actor_id=actor_id)
        return updated

    def sweep_grants(self, company_id: str, as_of: Optional[datetime] = None) -> List[OptionGrant]:
        """Expire grants past their expiration date and forfeit grants whose
        post-termination exercise window has closed.

        Returns:
            Grants whose status changed
        """
        now = as_utc(as_of or self.clock())
        changed: List[OptionGrant] = []
        with self.locks.hold(company_id):
            for grant in self.grants(company_id, status="ACTIVE"):
                plan = self.get_option_plan(company_id, grant.plan_id)
                if to_date(now) > grant.expiration_date:
                    target = "EXPIRED"
                elif not grant.is_exercise_window_open(now, plan.exercise_window_days):
                    target = "FORFEITED"
                else:
                    continue
                changed.append(self._transition("option_grant", company_id, grant.id, target,
                                                GRANT_TRANSITIONS, None))
        return changed

    def exercise_options(
        self,
        company_id: str,
        grant_id: str,
        quantity: Decimal,
        as_of: Optional[datetime] = None,
        actor_id: Optional[str] = None,
    ) -> str:
        """Exercise vested options into shares.

        Emits a CONFIRMED ISSUANCE in the plan's share class at the strike
        price and increases the grant's ``exercised`` count. A fully exercised
        grant becomes EXERCISED.

        Returns:
            Ledger transaction id of the issuance

        Raises:
            ExerciseNotAllowed: Grant not ACTIVE, expired, window closed, or
                quantity outside (0, exercisable]
            AuthorizedSharesExceeded: The issuance would exceed the class's
                authorized total (grant unchanged)
        """
        now = as_utc(as_of or self.clock())
        with self.locks.hold(company_id):
            grant = self.get_grant(company_id, grant_id)
            plan = self.get_option_plan(company_id, grant.plan_id)
            if grant.status != "ACTIVE":
                raise ExerciseNotAllowed(
                    f"Grant {grant_id} is {grant.status}",
                    {"id": grant_id, "reason": "GRANT_NOT_ACTIVE", "status": grant.status},
                )
            if to_date(now) > grant.expiration_date:
                raise ExerciseNotAllowed(
                    f"Grant {grant_id} expired on {grant.expiration_date}",
                    {"id": grant_id, "reason": "GRANT_EXPIRED"},
                )
            if not grant.is_exercise_window_open(now, plan.exercise_window_days):
                raise ExerciseNotAllowed(
                    f"Exercise window of grant {grant_id} closed",
                    {
                        "id": grant_id,
                        "reason": "EXERCISE_WINDOW_CLOSED",
                        "exercise_window_days": plan.exercise_window_days,
                    },
                )
            vesting = grant.vesting(now, plan.termination_policy)
            if quantity <= 0 or quantity > vesting.exercisable:
                raise ExerciseNotAllowed(
                    f"Cannot exercise {quantity} options of grant {grant_id}",
                    {
                        "id": grant_id,
                        "reason": "INSUFFICIENT_VESTED",
                        "exercisable": vesting.exercisable,
                        "requested": quantity,
                    },
                )

            transaction_id = self.ledger.append(
                IssuanceTransaction(
                    id=str(uuid.uuid4()),
                    company_id=company_id,
                    share_class_id=plan.share_class_id,
                    to_shareholder_id=grant.shareholder_id,
                    quantity=quantity,
                    price_per_share=grant.strike_price,
                    status="CONFIRMED",
                    created_at=now,
                    notes=f"Option exercise of grant {grant_id}",
                ),
                actor_id=actor_id,
            )

            exercised = grant.exercised + quantity
            updated = OptionGrant.model_validate({
                **grant.model_dump(),
                "exercised": exercised,
                "status": "EXERCISED" if exercised == grant.quantity else "ACTIVE",
            })
            self._replace("option_grant", updated)
            self._record(company_id, "OPTION_EXERCISED", "option_grant", grant_id,
                         before={"exercised": grant.exercised},
                         after={"exercised": exercised, "transaction_id": transaction_id},
                         actor_id=actor_id)

        logger.info("Exercised %s options of grant %s (transaction %s)", quantity, grant_id, transaction_id)
        return transaction_id

    # =========================================================================
    # Convertible instruments
    # =========================================================================

    def add_convertible(self, instrument: ConvertibleInstrument, actor_id: Optional[str] = None) -> ConvertibleInstrument:
        company_id = instrument.company_id
        if instrument.status != "OUTSTANDING":
            raise InvalidStateTransition(
                f"New instruments must be OUTSTANDING, got {instrument.status}",
                {"id": instrument.id, "status": instrument.status},
            )
        self._require_active_shareholder(company_id, instrument.shareholder_id)
        if instrument.target_share_class_id is not None:
            self.registry.get_share_class(company_id, instrument.target_share_class_id)
        return self._insert("convertible", instrument, actor_id)

    def get_convertible(self, company_id: str, instrument_id: str) -> ConvertibleInstrument:
        return self._get("convertible", company_id, instrument_id)

    def convertibles(
        self,
        company_id: str,
        status: Optional[str] = None,
        round_id: Optional[str] = None,
    ) -> List[ConvertibleInstrument]:
        return [
            c for c in self._list("convertible", company_id, status=status)
            if round_id is None or c.target_round_id == round_id
        ]

    def transition_convertible(
        self,
        company_id: str,
        instrument_id: str,
        target_status: str,
        actor_id: Optional[str] = None,
        **updates,
    ) -> ConvertibleInstrument:
        updates.setdefault("status_changed_at", as_utc(self.clock()))
        return self._transition("convertible", company_id, instrument_id, target_status,
                                INSTRUMENT_TRANSITIONS, actor_id, **updates)

    def redeem_convertible(
        self,
        company_id: str,
        instrument_id: str,
        redemption_amount: Decimal,
        notes: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> ConvertibleInstrument:
        """Pay the instrument back in cash; it stops diluting."""
        return self.transition_convertible(
            company_id, instrument_id, "REDEEMED", actor_id,
            redemption_amount=redemption_amount,
            notes=self._append_note(company_id, instrument_id, "Redemption", notes),
        )

    def cancel_convertible(
        self,
        company_id: str,
        instrument_id: str,
        reason: str,
        actor_id: Optional[str] = None,
    ) -> ConvertibleInstrument:
        return self.transition_convertible(
            company_id, instrument_id, "CANCELLED", actor_id,
            notes=self._append_note(company_id, instrument_id, "Cancelled", reason),
        )

    def mark_matured(self, company_id: str, instrument_id: str, actor_id: Optional[str] = None) -> ConvertibleInstrument:
        return self.transition_convertible(company_id, instrument_id, "MATURED", actor_id)

    def _mark_converted(
        self,
        company_id: str,
        instrument_id: str,
        record: ConversionRecord,
        actor_id: Optional[str] = None,
    ) -> ConvertibleInstrument:
        return self.transition_convertible(
            company_id, instrument_id, "CONVERTED", actor_id,
            conversion=record,
            target_share_class_id=record.share_class_id,
            status_changed_at=record.executed_at,
        )

    # =========================================================================
    # Funding rounds
    # =========================================================================

    def add_funding_round(self, funding_round: FundingRound, actor_id: Optional[str] = None) -> FundingRound:
        if funding_round.status not in ("DRAFT", "OPEN"):
            raise InvalidStateTransition(
                f"New rounds must be DRAFT or OPEN, got {funding_round.status}",
                {"id": funding_round.id, "status": funding_round.status},
            )
        if funding_round.share_class_id is not None:
            self.registry.get_share_class(funding_round.company_id, funding_round.share_class_id)
        return self._insert("funding_round", funding_round, actor_id)

    def get_funding_round(self, company_id: str, round_id: str) -> FundingRound:
        return self._get("funding_round", company_id, round_id)

    def funding_rounds(self, company_id: str, status: Optional[str] = None) -> List[FundingRound]:
        return self._list("funding_round", company_id, status=status)

    def active_round(self, company_id: str) -> Optional[FundingRound]:
        """Latest OPEN or CLOSING round, if any."""
        live = [r for r in self.funding_rounds(company_id) if r.status in ("OPEN", "CLOSING")]
        if not live:
            return None
        return max(live, key=lambda r: (r.created_at, r.id))

    def transition_round(
        self,
        company_id: str,
        round_id: str,
        target_status: str,
        actor_id: Optional[str] = None,
    ) -> FundingRound:
        updates = {}
        if target_status == "CLOSED":
            updates["closed_at"] = as_utc(self.clock())
        return self._transition("funding_round", company_id, round_id, target_status,
                                FUNDING_ROUND_TRANSITIONS, actor_id, **updates)

    # =========================================================================
    # Internals
    # =========================================================================

    def _require_active_shareholder(self, company_id: str, shareholder_id: str) -> None:
        holder = self.registry.get_shareholder(company_id, shareholder_id)
        if not holder.is_active:
            raise InactiveShareholder(
                f"Shareholder {shareholder_id} is {holder.status}",
                {"shareholder_id": shareholder_id, "status": holder.status},
            )

    def _append_note(self, company_id: str, instrument_id: str, label: str, text: Optional[str]) -> Optional[str]:
        current = self.get_convertible(company_id, instrument_id).notes
        if not text:
            return current
        return f"{current or ''}\n[{label}] {text}".strip()

    def _get(self, kind: str, company_id: str, record_id: str):
        try:
            return self._stores[kind].get(company_id, {})[record_id]
        except KeyError:
            raise RecordNotFound(
                f"{kind} not found: {record_id}",
                {"entity": kind, "company_id": company_id, "id": record_id},
            ) from None

    def _list(self, kind: str, company_id: str, status: Optional[str] = None) -> list:
        return [
            r for r in self._stores[kind].get(company_id, {}).values()
            if status is None or r.status == status
        ]

    def _insert(self, kind: str, record: M, actor_id: Optional[str]) -> M:
        company_id = record.company_id
        with self.locks.hold(company_id):
            current = self._stores[kind].get(company_id, {})
            if record.id in current:
                raise LedgerConflict(
                    f"{kind} already exists: {record.id}",
                    {"entity": kind, "id": record.id},
                )
            self._stores[kind][company_id] = {**current, record.id: record}
            self._record(company_id, f"{kind.upper()}_CREATED", kind, record.id,
                         after=record, actor_id=actor_id)
        return record

    def _replace(self, kind: str, record: BaseModel) -> None:
        current = self._stores[kind].get(record.company_id, {})
        self._stores[kind][record.company_id] = {**current, record.id: record}

    def _transition(
        self,
        kind: str,
        company_id: str,
        record_id: str,
        target_status: str,
        transitions: Dict[str, FrozenSet[str]],
        actor_id: Optional[str],
        **updates,
    ):
        with self.locks.hold(company_id):
            current = self._get(kind, company_id, record_id)
            if target_status not in transitions.get(current.status, frozenset()):
                raise InvalidStateTransition(
                    f"Cannot move {kind} {record_id} from {current.status} to {target_status}",
                    {"entity": kind, "id": record_id, "from": current.status, "to": target_status},
                )
            updated = type(current).model_validate({
                **current.model_dump(),
                **updates,
                "status": target_status,
            })
            self._replace(kind, updated)
            self._record(company_id, f"{kind.upper()}_{target_status}", kind, record_id,
                         before={"status": current.status}, after={"status": target_status},
                         actor_id=actor_id)
        return updated

    def _record(self, company_id: str, action: str, resource_type: str, resource_id: str, **kwargs) -> None:
        if self.audit is not None:
            self.audit.record(company_id, action, resource_type, resource_id, **kwargs)
