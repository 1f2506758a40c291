"""Read-side entry point.

``CapTableQueryFacade`` is stateless: every call re-derives its answer from
the ledger, the instrument book and the stored snapshots.
"""

import logging
import threading
from datetime import date, datetime
from typing import Any, Dict, Optional, Union

from .aggregation import OwnershipAggregator
from .audit import AuditLog
from .dilution import DilutionResolver
from .errors import UnsupportedExportFormat
from .export import Exporter, TABULAR_FORMATS, build_export_bundle, build_oct_document
from .integrity import SnapshotService
from .schemas.cap_table import CapTableView, FullyDilutedView, Page
from .schemas.instruments import ConversionScenarios
from .schemas.snapshots import CapTableSnapshot, ChainVerification

logger = logging.getLogger(__name__)


class CapTableQueryFacade:
    """Queries over current, fully diluted and historical cap tables.

    Usage:
        facade = CapTableQueryFacade(aggregator, resolver, snapshots,
                                     exporters={"csv": write_csv})
        facade.current_cap_table("acme")
        facade.history("acme", limit=10, page=2)
        facade.export("acme", "oct")
    """

    def __init__(
        self,
        aggregator: OwnershipAggregator,
        resolver: DilutionResolver,
        snapshots: SnapshotService,
        audit: Optional[AuditLog] = None,
        exporters: Optional[Dict[str, Exporter]] = None,
    ):
        self.aggregator = aggregator
        self.resolver = resolver
        self.snapshots = snapshots
        self.ledger = aggregator.ledger
        self.registry = aggregator.registry
        self.audit = audit if audit is not None else self.ledger.audit
        self.clock = self.ledger.clock
        self._exporters: Dict[str, Exporter] = {}
        for fmt, exporter in (exporters or {}).items():
            self.register_exporter(fmt, exporter)

    # =========================================================================
    # Views
    # =========================================================================

    def current_cap_table(
        self,
        company_id: str,
        share_class_id: Optional[str] = None,
        as_of: Optional[datetime] = None,
    ) -> CapTableView:
        return self.aggregator.current_cap_table(company_id, share_class_id, as_of)

    def fully_diluted(
        self,
        company_id: str,
        as_of: Optional[datetime] = None,
        round_id: Optional[str] = None,
    ) -> FullyDilutedView:
        return self.resolver.fully_diluted(company_id, as_of, round_id)

    def conversion_scenarios(self, company_id: str, instrument_id: str, valuations=None) -> ConversionScenarios:
        return self.resolver.conversion_scenarios(company_id, instrument_id, valuations)

    # =========================================================================
    # History and integrity
    # =========================================================================

    def history(self, company_id: str, limit: Optional[int] = None, page: int = 1) -> Page[CapTableSnapshot]:
        return self.snapshots.history(company_id, limit, page)

    def snapshot_as_of(self, company_id: str, when: Union[date, datetime]) -> CapTableSnapshot:
        return self.snapshots.snapshot_as_of(company_id, when)

    def verify_integrity(
        self,
        company_id: str,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> ChainVerification:
        return self.snapshots.verify_chain(company_id, date_from, date_to, cancel, timeout)

    def verify_audit_trail(
        self,
        company_id: str,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> ChainVerification:
        if self.audit is None:
            return ChainVerification(status="NO_DATA", date_from=date_from, date_to=date_to)
        return self.audit.verify(company_id, date_from, date_to, cancel, timeout)

    # =========================================================================
    # Export
    # =========================================================================

    def register_exporter(self, fmt: str, exporter: Exporter) -> None:
        """Attach a renderer for a tabular format (pdf, xlsx or csv)."""
        fmt = fmt.lower()
        if fmt not in TABULAR_FORMATS:
            raise UnsupportedExportFormat(
                f"Exporters can only be registered for {', '.join(TABULAR_FORMATS)}",
                {"format": fmt},
            )
        self._exporters[fmt] = exporter

    def export(self, company_id: str, fmt: str, issuer: Optional[Dict[str, Any]] = None) -> Any:
        """Export a company's cap table.

        ``oct`` returns an Open Cap Table document. Tabular formats return
        whatever the registered exporter returns for the ``ExportBundle``.

        Raises:
            UnsupportedExportFormat: Unknown format or no exporter registered
        """
        fmt = fmt.lower()
        now = self.clock()
        if fmt == "oct":
            return build_oct_document(
                company_id,
                self.registry.share_classes(company_id),
                self.registry.shareholders(company_id),
                self.ledger.state_as_of(company_id),
                now,
                issuer,
            )

        exporter = self._exporters.get(fmt)
        if exporter is None:
            raise UnsupportedExportFormat(
                f"No exporter for format '{fmt}'",
                {"format": fmt, "available": ["oct", *sorted(self._exporters)]},
            )
        bundle = build_export_bundle(
            self.current_cap_table(company_id),
            self.fully_diluted(company_id),
            now,
        )
        logger.info("Exporting company %s as %s", company_id, fmt)
        return exporter(bundle)
