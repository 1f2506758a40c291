"""Snapshots and hash-chain integrity.

A snapshot freezes the current cap table at an instant and chains itself to
the previous snapshot of the same company:

    state_hash = sha256(canonical_json({holdings, totalShareholders, totalShares}))

The hash covers the state alone, so an unchanged cap table hashes the same on
any day. ``previous_hash`` carries the link to the predecessor's stored hash;
the first snapshot links to the genesis sentinel (64 zeros). Snapshots are
append-only and kept in chronological order of ``snapshot_date``; a snapshot
may be backdated but never before the latest one already in the chain.
"""

import logging
import math
import threading
import uuid
from datetime import date, datetime, time, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from .aggregation import OwnershipAggregator
from .audit import AuditLog
from .concurrency import CompanyLocks
from .config import EngineCFG
from .errors import CapTableError, ImmutableRecord, InvalidSnapshotDate, RecordNotFound
from .hashing import snapshot_state_hash, sort_holdings, verify_daily_chain
from .ledger import EquityLedger
from .schemas.base import ZERO, as_utc, canonical_decimal
from .schemas.cap_table import Page, PageMeta
from .schemas.snapshots import CapTableSnapshot, ChainVerification, HashMismatch

logger = logging.getLogger(__name__)


def _end_of_day(value: Union[date, datetime]) -> datetime:
    if isinstance(value, datetime):
        return as_utc(value)
    return datetime.combine(value, time.max, tzinfo=timezone.utc)


def _recompute(snapshot: CapTableSnapshot) -> str:
    return snapshot_state_hash(
        snapshot.holdings,
        snapshot.total_shares,
        snapshot.total_shareholders,
    )


def _check_totals(snapshot: CapTableSnapshot) -> Optional[HashMismatch]:
    """Recorded totals must agree with the recorded holdings."""
    shares = sum((row[2] for row in snapshot.holdings), ZERO)
    holders = len({row[0] for row in snapshot.holdings})
    if shares == snapshot.total_shares and holders == snapshot.total_shareholders:
        return None
    return HashMismatch(
        record_id=snapshot.id,
        day=as_utc(snapshot.snapshot_date).date(),
        kind="TOTALS",
        expected=f"{canonical_decimal(shares)}/{holders}",
        actual=f"{canonical_decimal(snapshot.total_shares)}/{snapshot.total_shareholders}",
    )


class SnapshotService:
    """Creates, stores and verifies hash-chained cap table snapshots.

    Usage:
        snapshots = SnapshotService(aggregator)
        snapshots.create_snapshot("acme", trigger="manual")
        snapshots.verify_chain("acme").status   # "VALID"
    """

    def __init__(
        self,
        aggregator: OwnershipAggregator,
        locks: Optional[CompanyLocks] = None,
        audit: Optional[AuditLog] = None,
        cfg: Optional[EngineCFG] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        ledger = aggregator.ledger
        self.aggregator = aggregator
        self.locks = locks or ledger.locks
        self.audit = audit if audit is not None else ledger.audit
        self.cfg = cfg or aggregator.cfg
        self.clock = clock or ledger.clock
        self._chains: Dict[str, Tuple[CapTableSnapshot, ...]] = {}

    # =========================================================================
    # Creation
    # =========================================================================

    def create_snapshot(
        self,
        company_id: str,
        trigger: str = "manual",
        snapshot_date: Optional[datetime] = None,
        notes: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> CapTableSnapshot:
        """Freeze the cap table as of ``snapshot_date`` (default: now).

        Raises:
            InvalidSnapshotDate: Date in the future or before the latest snapshot
        """
        with self.locks.hold(company_id):
            now = as_utc(self.clock())
            when = as_utc(snapshot_date) if snapshot_date is not None else now
            if when > now:
                raise InvalidSnapshotDate(
                    f"Snapshot date {when.isoformat()} is in the future",
                    {"company_id": company_id, "snapshot_date": when, "now": now},
                )
            chain = self._chains.get(company_id, ())
            if chain and when < chain[-1].snapshot_date:
                raise InvalidSnapshotDate(
                    f"Snapshot date {when.isoformat()} precedes the latest snapshot",
                    {
                        "company_id": company_id,
                        "snapshot_date": when,
                        "latest": chain[-1].snapshot_date,
                    },
                )

            view = self.aggregator.current_cap_table(company_id, as_of=when)
            holdings = tuple(sort_holdings(
                (e.shareholder_id, e.share_class_id, e.shares) for e in view.entries
            ))
            previous_hash = chain[-1].state_hash if chain else self.cfg.genesis_hash
            snapshot = CapTableSnapshot(
                id=str(uuid.uuid4()),
                company_id=company_id,
                snapshot_date=when,
                trigger=trigger,
                total_shares=view.summary.total_shares,
                total_shareholders=view.summary.total_shareholders,
                holdings=holdings,
                state_hash=snapshot_state_hash(
                    holdings,
                    view.summary.total_shares,
                    view.summary.total_shareholders,
                ),
                previous_hash=previous_hash,
                notes=notes,
                created_at=now,
            )
            self._chains[company_id] = chain + (snapshot,)
            if self.audit is not None:
                self.audit.record(
                    company_id, "SNAPSHOT_CREATED", "snapshot", snapshot.id,
                    after={
                        "snapshot_date": when,
                        "trigger": trigger,
                        "state_hash": snapshot.state_hash,
                        "total_shares": snapshot.total_shares,
                    },
                    actor_id=actor_id,
                )

        logger.info(
            "Snapshot %s created for company %s (date %s, trigger %s)",
            snapshot.id, company_id, when.isoformat(), trigger,
        )
        return snapshot

    def create_auto_snapshot(
        self,
        company_id: str,
        trigger: str = "auto",
        notes: Optional[str] = None,
    ) -> Optional[CapTableSnapshot]:
        """Snapshot after a system event. Failures are logged, not raised."""
        try:
            return self.create_snapshot(company_id, trigger=trigger, notes=notes)
        except CapTableError as exc:
            logger.warning(
                "Automatic snapshot (%s) failed for company %s: %s",
                trigger, company_id, exc,
            )
            return None

    def attach_auto_snapshots(self, ledger: EquityLedger, trigger: str = "transaction_confirmed") -> None:
        """Take an automatic snapshot after every confirmed transaction."""
        ledger.subscribe(lambda txn: self.create_auto_snapshot(txn.company_id, trigger=trigger))

    def restore(self, snapshots: Iterable[CapTableSnapshot]) -> None:
        """Load previously persisted snapshots, oldest first.

        The records are appended as given; ``verify_chain`` is what judges them.

        Raises:
            ImmutableRecord: A snapshot with the same id already exists
        """
        for snapshot in snapshots:
            company_id = snapshot.company_id
            with self.locks.hold(company_id):
                chain = self._chains.get(company_id, ())
                if any(s.id == snapshot.id for s in chain):
                    raise ImmutableRecord(
                        f"Snapshot {snapshot.id} already exists and cannot be replaced",
                        {"company_id": company_id, "id": snapshot.id},
                    )
                self._chains[company_id] = chain + (snapshot,)

    # =========================================================================
    # Reads
    # =========================================================================

    def snapshots(self, company_id: str) -> List[CapTableSnapshot]:
        """All snapshots of a company, oldest first."""
        return list(self._chains.get(company_id, ()))

    def get_snapshot(self, company_id: str, snapshot_id: str) -> CapTableSnapshot:
        for snapshot in self._chains.get(company_id, ()):
            if snapshot.id == snapshot_id:
                return snapshot
        raise RecordNotFound(
            f"Snapshot not found: {snapshot_id}",
            {"entity": "snapshot", "company_id": company_id, "id": snapshot_id},
        )

    def snapshot_as_of(self, company_id: str, when: Union[date, datetime]) -> CapTableSnapshot:
        """Latest snapshot dated on or before ``when``.

        A bare date covers that whole UTC day.

        Raises:
            RecordNotFound: No snapshot on or before ``when``
        """
        cutoff = _end_of_day(when)
        candidates = [s for s in self._chains.get(company_id, ()) if s.snapshot_date <= cutoff]
        if not candidates:
            raise RecordNotFound(
                f"No snapshot on or before {cutoff.isoformat()}",
                {"entity": "snapshot", "company_id": company_id, "date": cutoff},
            )
        return max(candidates, key=lambda s: s.snapshot_date)

    def history(
        self,
        company_id: str,
        limit: Optional[int] = None,
        page: int = 1,
    ) -> Page[CapTableSnapshot]:
        """Snapshots newest first, paginated.

        ``limit`` defaults to ``default_history_limit`` and is capped at
        ``max_history_limit``.
        """
        if page < 1:
            raise ValueError(f"page must be >= 1, got {page}")
        if limit is not None and limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")
        limit = min(limit or self.cfg.default_history_limit, self.cfg.max_history_limit)

        ordered = sorted(
            self._chains.get(company_id, ()),
            key=lambda s: (s.snapshot_date, s.created_at),
            reverse=True,
        )
        start = (page - 1) * limit
        total = len(ordered)
        return Page[CapTableSnapshot](
            data=ordered[start:start + limit],
            meta=PageMeta(
                total=total,
                page=page,
                limit=limit,
                total_pages=math.ceil(total / limit),
            ),
        )

    # =========================================================================
    # Verification
    # =========================================================================

    def verify_chain(
        self,
        company_id: str,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> ChainVerification:
        """Verify the snapshot chain, grouped by UTC day of ``snapshot_date``.

        Read-only; scanning continues past failures.

        Raises:
            VerificationCancelled: ``cancel`` was set or ``timeout`` elapsed
        """
        chain = self._chains.get(company_id, ())

        def in_range(snapshot: CapTableSnapshot) -> bool:
            day = as_utc(snapshot.snapshot_date).date()
            return (date_from is None or day >= date_from) and (date_to is None or day <= date_to)

        selected = [s for s in chain if in_range(s)]
        predecessor = self.cfg.genesis_hash
        if selected:
            index = chain.index(selected[0])
            if index > 0:
                predecessor = chain[index - 1].state_hash

        result = verify_daily_chain(
            selected,
            record_id=lambda s: s.id,
            timestamp=lambda s: s.snapshot_date,
            stored_hash=lambda s: s.state_hash,
            previous_hash=lambda s: s.previous_hash,
            recompute=_recompute,
            predecessor_hash=predecessor,
            check_totals=_check_totals,
            date_from=date_from,
            date_to=date_to,
            cancel=cancel,
            timeout=timeout,
        )
        logger.info(
            "Verified snapshot chain of %s: %s (%d/%d days valid)",
            company_id, result.status, result.days_valid, result.days_verified,
        )
        return result
