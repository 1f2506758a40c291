"""Wiring of the engine components around one set of locks, audit log and clock."""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

from .aggregation import OwnershipAggregator
from .audit import AuditLog
from .book import InstrumentBook
from .concurrency import CompanyLocks
from .config import EngineCFG, load_config
from .conversions import ConvertibleConversionService
from .dilution import DilutionResolver
from .export import Exporter
from .facade import CapTableQueryFacade
from .integrity import SnapshotService
from .ledger import EquityLedger
from .registry import ShareClassRegistry
from .schemas.base import utcnow


@dataclass
class CapTableEngine:
    cfg: EngineCFG
    locks: CompanyLocks
    audit: AuditLog
    registry: ShareClassRegistry
    ledger: EquityLedger
    book: InstrumentBook
    aggregator: OwnershipAggregator
    resolver: DilutionResolver
    snapshots: SnapshotService
    conversions: ConvertibleConversionService
    facade: CapTableQueryFacade


def build_engine(
    cfg: Optional[EngineCFG] = None,
    clock: Callable[[], datetime] = utcnow,
    exporters: Optional[Dict[str, Exporter]] = None,
    auto_snapshots: bool = False,
) -> CapTableEngine:
    """Assemble a complete engine.

    Args:
        cfg: Configuration (default: ``load_config()``)
        clock: Source of "now" for every component
        exporters: Tabular exporters by format
        auto_snapshots: Snapshot after every confirmed transaction
    """
    cfg = cfg or load_config()
    locks = CompanyLocks()
    audit = AuditLog(cfg, locks, clock)
    registry = ShareClassRegistry(locks, audit)
    ledger = EquityLedger(registry, locks, audit, cfg, clock)
    book = InstrumentBook(ledger)
    aggregator = OwnershipAggregator(ledger)
    resolver = DilutionResolver(ledger, book)
    snapshots = SnapshotService(aggregator)
    if auto_snapshots:
        snapshots.attach_auto_snapshots(ledger)
    return CapTableEngine(
        cfg=cfg,
        locks=locks,
        audit=audit,
        registry=registry,
        ledger=ledger,
        book=book,
        aggregator=aggregator,
        resolver=resolver,
        snapshots=snapshots,
        conversions=ConvertibleConversionService(resolver, snapshots),
        facade=CapTableQueryFacade(aggregator, resolver, snapshots, exporters=exporters),
    )
