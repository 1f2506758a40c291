"""Shared fixtures: a settable clock and an engine seeded with one company.

Company "acme":
- share class "on" (COMMON, 10,000,000 authorized, 1 vote per share)
- shareholders alice, bob (FOUNDER), carol (EMPLOYEE), angel (INVESTOR)
"""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from captable_engine import EngineCFG, build_engine
from captable_engine.schemas import IssuanceTransaction, ShareClass, Shareholder

START = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

COMPANY = "acme"


class Clock:
    """Clock handed to every engine component; tests move it by hand."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def engine(clock):
    engine = build_engine(cfg=EngineCFG(), clock=clock)
    engine.registry.add_share_class(ShareClass(
        id="on",
        company_id=COMPANY,
        name="Ordinary",
        share_type="COMMON",
        total_authorized=Decimal("10000000"),
    ))
    for holder_id, name, holder_type in [
        ("alice", "Alice", "FOUNDER"),
        ("bob", "Bob", "FOUNDER"),
        ("carol", "Carol", "EMPLOYEE"),
        ("angel", "Angel Fund", "INVESTOR"),
    ]:
        engine.registry.add_shareholder(Shareholder(
            id=holder_id,
            company_id=COMPANY,
            name=name,
            shareholder_type=holder_type,
        ))
    return engine


@pytest.fixture
def issue(engine):
    """Append an ISSUANCE and return its id."""

    def _issue(holder_id, quantity, share_class_id="on", status="CONFIRMED", txn_id=None, **kwargs):
        return engine.ledger.append(IssuanceTransaction(
            id=txn_id or f"t-{uuid.uuid4().hex[:8]}",
            company_id=COMPANY,
            share_class_id=share_class_id,
            to_shareholder_id=holder_id,
            quantity=Decimal(quantity),
            status=status,
            **kwargs,
        ))

    return _issue


@pytest.fixture
def founded(engine, issue):
    """alice 600,000 and bob 400,000 confirmed shares of "on"."""
    issue("alice", "600000", txn_id="founder-alice")
    issue("bob", "400000", txn_id="founder-bob")
    return engine
