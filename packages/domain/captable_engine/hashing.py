"""Canonical serialization, SHA-256 hashing and day-grouped chain verification.

Canonical JSON is the load-bearing format for hash-chain compatibility. Two
implementations produce identical bytes for the same state when they follow
these rules:

    - Object keys sorted, compact separators (",", ":"), UTF-8, no ASCII escaping
    - Decimals rendered as canonical_decimal strings ("1000", "2.5", "0")
    - Datetimes converted to UTC and rendered in ISO-8601; dates in ISO-8601
    - Tuples rendered as arrays; pydantic models as their field dicts
    - Snapshot holdings sorted by (shareholder_id, share_class_id)

Snapshot payload (state only; chain linkage lives in previous_hash):
    {"holdings": [{"shareClassId": "on", "shareholderId": "a", "shares": "600000"}, ...],
     "totalShareholders": 2,
     "totalShares": "1000000"}
"""

import hashlib
import json
import logging
import threading
import time
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, TypeVar

from pydantic import BaseModel

from .errors import VerificationCancelled
from .schemas.base import as_utc, canonical_decimal
from .schemas.snapshots import ChainVerification, HashMismatch, SnapshotHolding

logger = logging.getLogger(__name__)

R = TypeVar("R")


# =============================================================================
# Canonical JSON
# =============================================================================

def canonicalize(value: Any) -> Any:
    """Convert a value into plain JSON types following the canonical rules."""
    if isinstance(value, BaseModel):
        return canonicalize(value.model_dump())
    if isinstance(value, bool) or value is None or isinstance(value, (int, str)):
        return value
    if isinstance(value, Decimal):
        return canonical_decimal(value)
    if isinstance(value, float):
        return canonical_decimal(Decimal(repr(value)))
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): canonicalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [canonicalize(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted(canonicalize(v) for v in value)
    raise TypeError(f"Cannot canonicalize value of type {type(value).__name__}")


def canonical_json(payload: Any) -> bytes:
    """Canonical UTF-8 JSON bytes of a payload."""
    return json.dumps(
        canonicalize(payload),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


# =============================================================================
# Record Hashes
# =============================================================================

def sort_holdings(holdings: Iterable[SnapshotHolding]) -> List[SnapshotHolding]:
    return sorted(holdings, key=lambda row: (row[0], row[1]))


def snapshot_payload(
    holdings: Sequence[SnapshotHolding],
    total_shares: Decimal,
    total_shareholders: int,
) -> dict:
    return {
        "holdings": [
            {"shareClassId": class_id, "shareholderId": holder_id, "shares": shares}
            for holder_id, class_id, shares in sort_holdings(holdings)
        ],
        "totalShareholders": total_shareholders,
        "totalShares": total_shares,
    }


def snapshot_state_hash(
    holdings: Sequence[SnapshotHolding],
    total_shares: Decimal,
    total_shareholders: int,
) -> str:
    """SHA-256 of a snapshot's canonical payload.

    Deterministic: the same holdings and totals always give the same hash,
    wherever the snapshot sits in the chain. Changing any single balance
    changes it.
    """
    payload = snapshot_payload(holdings, total_shares, total_shareholders)
    return sha256_hex(canonical_json(payload))


def audit_entry_hash(
    *,
    entry_id: str,
    company_id: str,
    actor_id: Optional[str],
    actor_type: str,
    action: str,
    resource_type: str,
    resource_id: Optional[str],
    changes: dict,
    metadata: dict,
    timestamp: datetime,
    previous_hash: str,
) -> str:
    """SHA-256 of an audit entry's canonical payload."""
    payload = {
        "action": action,
        "actorId": actor_id,
        "actorType": actor_type,
        "changes": changes,
        "companyId": company_id,
        "id": entry_id,
        "metadata": metadata,
        "previousHash": previous_hash,
        "resourceId": resource_id,
        "resourceType": resource_type,
        "timestamp": timestamp,
    }
    return sha256_hex(canonical_json(payload))


# =============================================================================
# Day-Grouped Chain Verification
# =============================================================================

def verify_daily_chain(
    records: Sequence[R],
    *,
    record_id: Callable[[R], str],
    timestamp: Callable[[R], datetime],
    stored_hash: Callable[[R], str],
    previous_hash: Callable[[R], str],
    recompute: Callable[[R], str],
    predecessor_hash: str,
    check_totals: Optional[Callable[[R], Optional[HashMismatch]]] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    cancel: Optional[threading.Event] = None,
    timeout: Optional[float] = None,
) -> ChainVerification:
    """Walk a chronologically ordered chain, grouped by UTC calendar day.

    A record is intact when its recomputed hash equals its stored hash, its
    ``previous_hash`` links to the record before it, and its recorded totals
    (if ``check_totals`` is given) are consistent. A day is valid when all of
    its records are intact.

    A link holds when it equals the predecessor's stored hash or the hash
    recomputed from the predecessor's recorded inputs. A tampered record is
    flagged by its own HASH check; its untouched successor is not. Deleted,
    inserted or re-hashed records still break the link.

    Scanning continues past failures so the full extent of tampering is
    reported. Nothing is mutated.

    Args:
        records: Records inside the requested range, oldest first
        predecessor_hash: Stored hash of the record immediately before the
            range (the genesis sentinel when the range starts the chain)
        cancel: Event checked between records
        timeout: Seconds before verification is abandoned

    Raises:
        VerificationCancelled: If ``cancel`` is set or ``timeout`` elapses
    """
    deadline = time.monotonic() + timeout if timeout is not None else None

    if not records:
        return ChainVerification(status="NO_DATA", date_from=date_from, date_to=date_to)

    day_ok: Dict[date, bool] = {}
    mismatches: List[HashMismatch] = []
    expected_link = predecessor_hash
    accepted_links = {predecessor_hash}

    for record in records:
        if cancel is not None and cancel.is_set():
            raise VerificationCancelled("Hash-chain verification cancelled", {"checked": len(day_ok)})
        if deadline is not None and time.monotonic() > deadline:
            raise VerificationCancelled(
                "Hash-chain verification timed out",
                {"timeout": timeout, "checked": len(day_ok)},
            )

        day = as_utc(timestamp(record)).date()
        rid = record_id(record)
        intact = True

        stored = stored_hash(record)
        recomputed = recompute(record)
        if recomputed != stored:
            intact = False
            mismatches.append(HashMismatch(
                record_id=rid, day=day, kind="HASH", expected=recomputed, actual=stored,
            ))

        link = previous_hash(record)
        if link not in accepted_links:
            intact = False
            mismatches.append(HashMismatch(
                record_id=rid, day=day, kind="LINK", expected=expected_link, actual=link,
            ))

        if check_totals is not None:
            totals_problem = check_totals(record)
            if totals_problem is not None:
                intact = False
                mismatches.append(totals_problem)

        day_ok[day] = day_ok.get(day, True) and intact
        expected_link = stored
        accepted_links = {stored, recomputed}

    invalid_days = [day for day, ok in day_ok.items() if not ok]
    for mismatch in mismatches:
        logger.warning(
            "Hash chain mismatch: record=%s day=%s kind=%s",
            mismatch.record_id, mismatch.day, mismatch.kind,
        )

    days_invalid = len(invalid_days)
    days = list(day_ok.keys())
    return ChainVerification(
        status="VALID" if days_invalid == 0 else "INVALID",
        date_from=date_from or days[0],
        date_to=date_to or days[-1],
        days_verified=len(days),
        days_valid=len(days) - days_invalid,
        days_invalid=days_invalid,
        records_checked=len(records),
        invalid_days=invalid_days,
        mismatches=mismatches,
    )
