"""Equity ledger.

The ledger is the append-only, per-company sequence of transactions and the
single source of truth for ownership. Only CONFIRMED transactions participate
in the fold; a CONFIRMED transaction is write-once.

Writes are serialized per company (``CompanyLocks``). Each write publishes a
new immutable ``Journal`` (version + tuple of transactions); readers grab the
current journal reference without locking and always see a consistent prefix.

Validation on write:
    - Referenced share classes and shareholders exist; shareholders are ACTIVE
    - Debits (transfer, cancellation, share conversion) fit the current
      confirmed balance
    - Confirming re-folds every confirmed transaction plus the candidate in
      (created_at, sequence) order; any invariant failure rejects the write
    - A failed write leaves the journal untouched
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .audit import AuditLog
from .concurrency import CompanyLocks
from .config import EngineCFG
from .errors import (
    ImmutableRecord,
    InactiveShareholder,
    InsufficientBalance,
    InvalidSplitRatio,
    InvalidStateTransition,
    LedgerConflict,
    RecordNotFound,
    ShareClassInUse,
)
from .registry import ShareClassRegistry
from .schemas.base import as_utc, utcnow
from .schemas.ledger_state import LedgerState
from .schemas.shareholders import Shareholder
from .schemas.transactions import (
    BaseTransaction,
    SplitTransaction,
    INITIAL_STATUSES,
    TRANSACTION_TRANSITIONS,
)

logger = logging.getLogger(__name__)

ConfirmationListener = Callable[[BaseTransaction], None]

# Fields a DRAFT amendment may not touch
_PROTECTED_FIELDS = frozenset({"id", "company_id", "type", "status", "sequence", "confirmed_at"})


@dataclass(frozen=True)
class Journal:
    """Immutable view of a company's ledger at one version."""

    version: int = 0
    transactions: Tuple[BaseTransaction, ...] = ()

    def find(self, transaction_id: str) -> Tuple[int, Optional[BaseTransaction]]:
        for index, txn in enumerate(self.transactions):
            if txn.id == transaction_id:
                return index, txn
        return -1, None

    @property
    def next_sequence(self) -> int:
        return max((t.sequence for t in self.transactions), default=0) + 1

    def confirmed(self) -> List[BaseTransaction]:
        return [t for t in self.transactions if t.status == "CONFIRMED"]

    def replace(self, index: int, txn: BaseTransaction) -> "Journal":
        items = list(self.transactions)
        items[index] = txn
        return Journal(version=self.version + 1, transactions=tuple(items))

    def append(self, txn: BaseTransaction) -> "Journal":
        return Journal(version=self.version + 1, transactions=self.transactions + (txn,))


def fold_order(txn: BaseTransaction) -> Tuple[datetime, int]:
    return (txn.created_at, txn.sequence)


class EquityLedger:
    """Append-only transaction ledger with a per-company state machine.

    Usage:
        ledger = EquityLedger(registry)
        ledger.append(IssuanceTransaction(
            id="t1", company_id="acme", share_class_id="on",
            to_shareholder_id="alice", quantity=Decimal("600000"),
            status="CONFIRMED",
        ))
        state = ledger.state_as_of("acme")
        state.balance("alice", "on")   # Decimal("600000")
    """

    def __init__(
        self,
        registry: ShareClassRegistry,
        locks: Optional[CompanyLocks] = None,
        audit: Optional[AuditLog] = None,
        cfg: Optional[EngineCFG] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.locks = locks or registry.locks
        self.audit = audit
        self.cfg = cfg or EngineCFG()
        self.clock = clock
        self._journals: Dict[str, Journal] = {}
        self._listeners: List[ConfirmationListener] = []

    # -------------------------------------------------------------------------
    # Reads (lock-free)
    # -------------------------------------------------------------------------

    def journal(self, company_id: str) -> Journal:
        return self._journals.get(company_id, Journal())

    def version(self, company_id: str) -> int:
        return self.journal(company_id).version

    def get(self, company_id: str, transaction_id: str) -> BaseTransaction:
        _, txn = self.journal(company_id).find(transaction_id)
        if txn is None:
            raise RecordNotFound(
                f"Transaction not found: {transaction_id}",
                {"entity": "transaction", "company_id": company_id, "id": transaction_id},
            )
        return txn

    def transactions(
        self,
        company_id: str,
        status: Optional[str] = None,
        type: Optional[str] = None,
    ) -> List[BaseTransaction]:
        return [
            t for t in self.journal(company_id).transactions
            if (status is None or t.status == status) and (type is None or t.type == type)
        ]

    def confirmed_transactions_as_of(
        self,
        company_id: str,
        share_class_id: Optional[str] = None,
        as_of: Optional[datetime] = None,
    ) -> List[BaseTransaction]:
        """CONFIRMED transactions with confirmed_at <= as_of, in fold order.

        Args:
            company_id: Company whose ledger to read
            share_class_id: Keep only transactions whose source or target
                class matches
            as_of: Cut-off instant (default: everything confirmed so far)

        Returns:
            Transactions ordered by (created_at, sequence)
        """
        cutoff = as_utc(as_of) if as_of is not None else None
        selected = [
            t for t in self.journal(company_id).confirmed()
            if (cutoff is None or t.confirmed_at <= cutoff)
            and (share_class_id is None or share_class_id in t.share_class_ids())
        ]
        selected.sort(key=fold_order)
        return selected

    def state_as_of(self, company_id: str, as_of: Optional[datetime] = None) -> LedgerState:
        """Fold of all CONFIRMED transactions up to ``as_of``."""
        return self._fold(company_id, self.confirmed_transactions_as_of(company_id, as_of=as_of))

    def has_history(
        self,
        company_id: str,
        shareholder_id: Optional[str] = None,
        share_class_id: Optional[str] = None,
    ) -> bool:
        """True when a CONFIRMED transaction references the holder or class."""
        for txn in self.journal(company_id).confirmed():
            if shareholder_id is not None and shareholder_id in txn.shareholder_ids():
                return True
            if share_class_id is not None and share_class_id in txn.share_class_ids():
                return True
        return False

    def subscribe(self, listener: ConfirmationListener) -> None:
        """Call ``listener(transaction)`` after every confirmation."""
        self._listeners.append(listener)

    # -------------------------------------------------------------------------
    # Writes (serialized per company)
    # -------------------------------------------------------------------------

    def append(
        self,
        transaction: BaseTransaction,
        expected_version: Optional[int] = None,
        actor_id: Optional[str] = None,
    ) -> str:
        """Append a transaction.

        Args:
            transaction: New transaction in DRAFT, PENDING_APPROVAL, SUBMITTED
                or CONFIRMED status
            expected_version: Journal version the caller read; a mismatch
                raises LedgerConflict
            actor_id: Recorded in the audit log

        Returns:
            The transaction id

        Raises:
            InvalidStateTransition: Initial status not allowed
            LedgerConflict: Stale expected_version or duplicate id
            RecordNotFound: Unknown share class or shareholder
            InactiveShareholder: Referenced shareholder is not ACTIVE
            InsufficientBalance: A debit exceeds the confirmed balance
            AuthorizedSharesExceeded, InvalidSplitRatio: Confirmed fold fails
        """
        company_id = transaction.company_id
        if transaction.status not in INITIAL_STATUSES:
            raise InvalidStateTransition(
                f"Cannot append a transaction in status {transaction.status}",
                {"id": transaction.id, "status": transaction.status},
            )

        with self.locks.hold(company_id):
            journal = self.journal(company_id)
            self._check_version(company_id, journal, expected_version)
            _, existing = journal.find(transaction.id)
            if existing is not None:
                raise LedgerConflict(
                    f"Transaction id already exists: {transaction.id}",
                    {"id": transaction.id, "company_id": company_id},
                )

            self._check_references(transaction)
            candidate = transaction.model_copy(update={
                "sequence": journal.next_sequence,
                "created_at": as_utc(transaction.created_at),
                "confirmed_at": None,
            })
            self._check_debits(candidate, self._fold(company_id, journal.confirmed()))

            if candidate.status == "CONFIRMED":
                candidate = candidate.model_copy(update={"confirmed_at": self._confirmation_time(journal)})
                self._fold(company_id, journal.confirmed() + [candidate])

            self._journals[company_id] = journal.append(candidate)
            self._record(company_id, "TRANSACTION_CREATED", candidate.id,
                         after=candidate, actor_id=actor_id)

        if candidate.status == "CONFIRMED":
            self._on_confirmed(candidate)
        return candidate.id

    def transition(
        self,
        company_id: str,
        transaction_id: str,
        target_status: str,
        expected_version: Optional[int] = None,
        actor_id: Optional[str] = None,
    ) -> BaseTransaction:
        """Move a transaction along the status machine.

        Raises:
            ImmutableRecord: The transaction is CONFIRMED
            InvalidStateTransition: The move is not allowed from the current status
            LedgerConflict: Stale expected_version
            InsufficientBalance, AuthorizedSharesExceeded, InvalidSplitRatio:
                Confirming would break the fold (nothing changes)
        """
        with self.locks.hold(company_id):
            journal = self.journal(company_id)
            self._check_version(company_id, journal, expected_version)
            index, current = journal.find(transaction_id)
            if current is None:
                raise RecordNotFound(
                    f"Transaction not found: {transaction_id}",
                    {"entity": "transaction", "company_id": company_id, "id": transaction_id},
                )
            if current.status == "CONFIRMED":
                raise ImmutableRecord(
                    f"Transaction {transaction_id} is CONFIRMED and cannot change",
                    {"id": transaction_id, "status": current.status, "target": target_status},
                )
            if target_status not in TRANSACTION_TRANSITIONS.get(current.status, frozenset()):
                raise InvalidStateTransition(
                    f"Cannot move transaction {transaction_id} from {current.status} to {target_status}",
                    {"id": transaction_id, "from": current.status, "to": target_status},
                )

            update = {"status": target_status}
            if target_status == "CONFIRMED":
                self._check_references(current)
                update["confirmed_at"] = self._confirmation_time(journal)
            updated = current.model_copy(update=update)
            if target_status == "CONFIRMED":
                self._fold(company_id, journal.confirmed() + [updated])

            self._journals[company_id] = journal.replace(index, updated)
            self._record(company_id, f"TRANSACTION_{target_status}", transaction_id,
                         before={"status": current.status}, after={"status": target_status},
                         actor_id=actor_id)

        if target_status == "CONFIRMED":
            self._on_confirmed(updated)
        return updated

    def cancel(
        self,
        company_id: str,
        transaction_id: str,
        expected_version: Optional[int] = None,
        actor_id: Optional[str] = None,
    ) -> BaseTransaction:
        """Cancel a non-CONFIRMED transaction; it drops out of every future fold."""
        return self.transition(company_id, transaction_id, "CANCELLED", expected_version, actor_id)

    def amend(
        self,
        company_id: str,
        transaction_id: str,
        expected_version: Optional[int] = None,
        actor_id: Optional[str] = None,
        **changes,
    ) -> BaseTransaction:
        """Edit fields of a DRAFT transaction.

        Raises:
            ImmutableRecord: The transaction is CONFIRMED
            InvalidStateTransition: The transaction is past DRAFT
            ValueError: A protected field (id, type, status, ...) is changed
        """
        protected = sorted(_PROTECTED_FIELDS.intersection(changes))
        if protected:
            raise ValueError(f"Cannot amend protected fields: {', '.join(protected)}")

        with self.locks.hold(company_id):
            journal = self.journal(company_id)
            self._check_version(company_id, journal, expected_version)
            index, current = journal.find(transaction_id)
            if current is None:
                raise RecordNotFound(
                    f"Transaction not found: {transaction_id}",
                    {"entity": "transaction", "company_id": company_id, "id": transaction_id},
                )
            if current.status == "CONFIRMED":
                raise ImmutableRecord(
                    f"Transaction {transaction_id} is CONFIRMED and cannot change",
                    {"id": transaction_id},
                )
            if current.status != "DRAFT":
                raise InvalidStateTransition(
                    f"Only DRAFT transactions can be amended, {transaction_id} is {current.status}",
                    {"id": transaction_id, "status": current.status},
                )

            amended = type(current).model_validate({**current.model_dump(), **changes})
            self._check_references(amended)
            self._check_debits(amended, self._fold(company_id, journal.confirmed()))

            self._journals[company_id] = journal.replace(index, amended)
            self._record(company_id, "TRANSACTION_AMENDED", transaction_id,
                         before=current, after=amended, actor_id=actor_id)
        return amended

    # -------------------------------------------------------------------------
    # Registry removals guarded by ledger history
    # -------------------------------------------------------------------------

    def retire_share_class(self, company_id: str, share_class_id: str, actor_id: Optional[str] = None) -> None:
        """Remove a share class that was never used.

        Raises:
            ShareClassInUse: The class has issued shares or confirmed history
        """
        with self.locks.hold(company_id):
            self.registry.get_share_class(company_id, share_class_id)
            state = self.state_as_of(company_id)
            issued = state.totals[share_class_id].total_issued
            if issued > 0 or self.has_history(company_id, share_class_id=share_class_id):
                raise ShareClassInUse(
                    f"Share class {share_class_id} has ledger history",
                    {"share_class_id": share_class_id, "total_issued": issued},
                )
            removed = self.registry._drop_share_class(company_id, share_class_id)
            self._record(company_id, "SHARE_CLASS_RETIRED", share_class_id,
                         resource_type="share_class", before=removed, actor_id=actor_id)

    def remove_shareholder(
        self,
        company_id: str,
        shareholder_id: str,
        actor_id: Optional[str] = None,
    ) -> Optional[Shareholder]:
        """Remove a shareholder, soft-deleting when it has confirmed history.

        Returns:
            The INACTIVE record when soft-deleted, None when dropped
        """
        with self.locks.hold(company_id):
            self.registry.get_shareholder(company_id, shareholder_id)
            if self.has_history(company_id, shareholder_id=shareholder_id):
                return self.registry.set_shareholder_status(
                    company_id, shareholder_id, "INACTIVE", actor_id=actor_id
                )
            removed = self.registry._drop_shareholder(company_id, shareholder_id)
            self._record(company_id, "SHAREHOLDER_REMOVED", shareholder_id,
                         resource_type="shareholder", before=removed, actor_id=actor_id)
        return None

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _fold(self, company_id: str, transactions: Iterable[BaseTransaction]) -> LedgerState:
        state = LedgerState.from_share_classes(self.registry.share_classes(company_id))
        with self.cfg.decimal_context():
            for txn in sorted(transactions, key=fold_order):
                txn.apply(state)
                state.applied_count += 1
                if txn.confirmed_at is not None and (
                    state.last_updated is None or txn.confirmed_at > state.last_updated
                ):
                    state.last_updated = txn.confirmed_at
        return state

    def _check_version(self, company_id: str, journal: Journal, expected_version: Optional[int]) -> None:
        if expected_version is not None and expected_version != journal.version:
            raise LedgerConflict(
                f"Ledger for {company_id} changed (expected version {expected_version}, "
                f"found {journal.version})",
                {"company_id": company_id, "expected": expected_version, "actual": journal.version},
            )

    def _check_references(self, txn: BaseTransaction) -> None:
        for class_id in txn.share_class_ids():
            self.registry.get_share_class(txn.company_id, class_id)
        for holder_id in txn.shareholder_ids():
            holder = self.registry.get_shareholder(txn.company_id, holder_id)
            if not holder.is_active:
                raise InactiveShareholder(
                    f"Shareholder {holder_id} is {holder.status}",
                    {"shareholder_id": holder_id, "status": holder.status},
                )

    def _check_debits(self, txn: BaseTransaction, state: LedgerState) -> None:
        if isinstance(txn, SplitTransaction) and txn.split_ratio <= 0:
            raise InvalidSplitRatio(
                f"Split ratio must be positive, got {txn.split_ratio}",
                {"id": txn.id, "split_ratio": txn.split_ratio},
            )
        for holder_id, class_id, quantity in txn.debits():
            available = state.balance(holder_id, class_id)
            if available < quantity:
                raise InsufficientBalance(
                    f"Insufficient shares: {holder_id} holds {available} of {class_id}, "
                    f"transaction {txn.id} debits {quantity}",
                    {
                        "id": txn.id,
                        "shareholder_id": holder_id,
                        "share_class_id": class_id,
                        "available": available,
                        "requested": quantity,
                    },
                )

    def _confirmation_time(self, journal: Journal) -> datetime:
        now = as_utc(self.clock())
        latest = max(
            (t.confirmed_at for t in journal.transactions if t.confirmed_at is not None),
            default=None,
        )
        if latest is not None and now < latest:
            return latest
        return now

    def _on_confirmed(self, txn: BaseTransaction) -> None:
        logger.info(
            "Confirmed %s %s in company %s (%s shares of %s)",
            txn.type, txn.id, txn.company_id, txn.quantity, txn.share_class_id,
        )
        for listener in self._listeners:
            listener(txn)

    def _record(
        self,
        company_id: str,
        action: str,
        resource_id: str,
        resource_type: str = "transaction",
        **kwargs,
    ) -> None:
        if self.audit is not None:
            self.audit.record(company_id, action, resource_type, resource_id, **kwargs)
