"""Cap Table Engine - Ownership aggregation, dilution and integrity.

This package turns an append-only ledger of equity events into:
- The current cap table (per shareholder and share class)
- The fully diluted cap table (options and as-converted convertibles)
- Hash-chained historical snapshots and a hash-chained audit log

The engine is designed to be:
- Framework-agnostic (no web, storage or rendering dependencies)
- Exact (Decimal arithmetic, largest-remainder percentages)
- Derived (balances and totals are recomputed, never stored)
"""

from .schemas import *  # noqa: F403, F401
from .errors import *  # noqa: F403, F401
from .aggregation import OwnershipAggregator
from .audit import AuditLog
from .book import InstrumentBook
from .concurrency import CompanyLocks
from .config import EngineCFG, load_config
from .conversions import ConvertibleConversionService, RoundClose
from .dilution import DilutionResolver, Resolution
from .engine import CapTableEngine, build_engine
from .export import ExportBundle
from .facade import CapTableQueryFacade
from .integrity import SnapshotService
from .ledger import EquityLedger
from .registry import ShareClassRegistry

__version__ = "0.1.0"
