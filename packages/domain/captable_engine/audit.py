"""Per-mutation audit log with its own hash chain.

Every state change in the engine (ledger appends and transitions, instrument
book changes, snapshot creation, conversions) records an ``AuditLogEntry``.
Entries of one company form a chain: each entry's ``previous_hash`` is the
``entry_hash`` of the entry before it, starting from the genesis sentinel.
"""

import logging
import threading
import uuid
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from .concurrency import CompanyLocks
from .config import EngineCFG
from .hashing import audit_entry_hash, canonicalize, verify_daily_chain
from .schemas.audit_log import AuditLogEntry
from .schemas.base import as_utc, utcnow
from .schemas.snapshots import ChainVerification

logger = logging.getLogger(__name__)


def _in_range(entry: AuditLogEntry, date_from: Optional[date], date_to: Optional[date]) -> bool:
    day = as_utc(entry.timestamp).date()
    if date_from is not None and day < date_from:
        return False
    if date_to is not None and day > date_to:
        return False
    return True


class AuditLog:
    """Append-only, hash-chained mutation log.

    Usage:
        audit = AuditLog()
        audit.record("acme", "SHARE_CLASS_CREATED", "share_class", "on",
                     after={"total_authorized": "1000000"})
        audit.verify("acme").status   # "VALID"
    """

    def __init__(
        self,
        cfg: Optional[EngineCFG] = None,
        locks: Optional[CompanyLocks] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.cfg = cfg or EngineCFG()
        self.locks = locks or CompanyLocks()
        self.clock = clock
        self._entries: Dict[str, Tuple[AuditLogEntry, ...]] = {}

    def record(
        self,
        company_id: str,
        action: str,
        resource_type: str,
        resource_id: Optional[str] = None,
        *,
        before: Any = None,
        after: Any = None,
        actor_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditLogEntry:
        """Append an entry to the company's chain.

        ``before``/``after`` may be pydantic models, dicts or plain values; they
        are stored in canonical JSON form.
        """
        changes = {"before": canonicalize(before), "after": canonicalize(after)}
        meta = canonicalize(metadata or {})
        actor_type = "USER" if actor_id else "SYSTEM"

        with self.locks.hold(company_id):
            chain = self._entries.get(company_id, ())
            previous_hash = chain[-1].entry_hash if chain else self.cfg.genesis_hash
            timestamp = as_utc(self.clock())
            if chain and timestamp < chain[-1].timestamp:
                timestamp = chain[-1].timestamp
            entry_id = str(uuid.uuid4())
            entry = AuditLogEntry(
                id=entry_id,
                company_id=company_id,
                actor_id=actor_id,
                actor_type=actor_type,
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                changes=changes,
                metadata=meta,
                timestamp=timestamp,
                previous_hash=previous_hash,
                entry_hash=audit_entry_hash(
                    entry_id=entry_id,
                    company_id=company_id,
                    actor_id=actor_id,
                    actor_type=actor_type,
                    action=action,
                    resource_type=resource_type,
                    resource_id=resource_id,
                    changes=changes,
                    metadata=meta,
                    timestamp=timestamp,
                    previous_hash=previous_hash,
                ),
            )
            self._entries[company_id] = chain + (entry,)

        logger.debug("Audit %s %s/%s for company %s", action, resource_type, resource_id, company_id)
        return entry

    def entries(
        self,
        company_id: str,
        *,
        action: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> List[AuditLogEntry]:
        """Entries of a company, oldest first, optionally filtered."""
        return [
            e for e in self._entries.get(company_id, ())
            if (action is None or e.action == action)
            and (resource_type is None or e.resource_type == resource_type)
            and (resource_id is None or e.resource_id == resource_id)
            and _in_range(e, date_from, date_to)
        ]

    def verify(
        self,
        company_id: str,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> ChainVerification:
        """Verify the company's audit chain, grouped by UTC day."""
        chain = self._entries.get(company_id, ())
        in_range = [e for e in chain if _in_range(e, date_from, date_to)]
        predecessor = self.cfg.genesis_hash
        if in_range:
            index = chain.index(in_range[0])
            if index > 0:
                predecessor = chain[index - 1].entry_hash

        return verify_daily_chain(
            in_range,
            record_id=lambda e: e.id,
            timestamp=lambda e: e.timestamp,
            stored_hash=lambda e: e.entry_hash,
            previous_hash=lambda e: e.previous_hash,
            recompute=_recompute_entry_hash,
            predecessor_hash=predecessor,
            date_from=date_from,
            date_to=date_to,
            cancel=cancel,
            timeout=timeout,
        )


def _recompute_entry_hash(entry: AuditLogEntry) -> str:
    return audit_entry_hash(
        entry_id=entry.id,
        company_id=entry.company_id,
        actor_id=entry.actor_id,
        actor_type=entry.actor_type,
        action=entry.action,
        resource_type=entry.resource_type,
        resource_id=entry.resource_id,
        changes=entry.changes,
        metadata=entry.metadata,
        timestamp=entry.timestamp,
        previous_hash=entry.previous_hash,
    )
