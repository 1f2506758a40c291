"""Export payloads.

Two export paths:
    - Tabular formats (pdf, xlsx, csv): the engine builds an ``ExportBundle``
      of pandas DataFrames and hands it to an injected exporter callable.
    - OCT (Open Cap Table): a JSON-ready document built in-engine.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional

import pandas as pd

from .frames import build_frames
from .schemas.base import as_utc, canonical_decimal
from .schemas.cap_table import CapTableView, FullyDilutedView
from .schemas.ledger_state import LedgerState
from .schemas.share_classes import ShareClass
from .schemas.shareholders import Shareholder

logger = logging.getLogger(__name__)

OCF_VERSION = "1.0.0"

TABULAR_FORMATS = ("pdf", "xlsx", "csv")

# Quotas of a Ltda map to OCT COMMON
OCT_CLASS_TYPES = {
    "QUOTA": "COMMON",
    "COMMON": "COMMON",
    "PREFERRED": "PREFERRED",
}


@dataclass
class ExportBundle:
    """Everything a tabular exporter needs for one company."""

    company_id: str
    generated_at: datetime
    cap_table: CapTableView
    fully_diluted: FullyDilutedView
    frames: Dict[str, pd.DataFrame] = field(default_factory=dict)

    @property
    def ownership(self) -> pd.DataFrame:
        return self.frames["ownership"]

    @property
    def summary(self) -> pd.DataFrame:
        return self.frames["summary"]


Exporter = Callable[[ExportBundle], Any]


def build_export_bundle(
    cap_table: CapTableView,
    fully_diluted: FullyDilutedView,
    generated_at: datetime,
) -> ExportBundle:
    """Build the export frames for both views."""
    return ExportBundle(
        company_id=cap_table.company_id,
        generated_at=as_utc(generated_at),
        cap_table=cap_table,
        fully_diluted=fully_diluted,
        frames=build_frames(cap_table, fully_diluted),
    )


def build_oct_document(
    company_id: str,
    share_classes: Iterable[ShareClass],
    shareholders: Iterable[Shareholder],
    state: LedgerState,
    generated_at: datetime,
    issuer: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Open Cap Table document for a company.

    Only ACTIVE shareholders are listed. Issuances are the current positive
    holdings per (stockholder, stock class).
    """
    classes = sorted(share_classes, key=lambda sc: (sc.name, sc.id))
    class_names = {sc.id: sc.name for sc in classes}
    active = sorted((sh for sh in shareholders if sh.is_active), key=lambda sh: sh.id)
    active_ids = {sh.id for sh in active}

    stock_classes = [
        {
            "id": sc.id,
            "name": sc.name,
            "classType": OCT_CLASS_TYPES[sc.share_type],
            "authorizedShares": canonical_decimal(sc.total_authorized),
            "issuedShares": canonical_decimal(state.totals[sc.id].total_issued) if sc.id in state.totals else "0",
            "votesPerShare": sc.votes_per_share,
            "liquidationPreferenceMultiple": (
                canonical_decimal(sc.liquidation_preference_multiple)
                if sc.liquidation_preference_multiple is not None
                else None
            ),
            "participatingPreferred": sc.participating_rights,
            "seniority": sc.seniority,
        }
        for sc in classes
    ]

    stockholders = [
        {"id": sh.id, "name": sh.name, "stakeholderType": sh.shareholder_type}
        for sh in active
    ]

    stock_issuances = [
        {
            "id": f"{holder_id}:{class_id}",
            "stockholderId": holder_id,
            "stockClassId": class_id,
            "stockClassName": class_names.get(class_id),
            "quantity": canonical_decimal(shares),
        }
        for holder_id, class_id, shares in state.holdings()
        if holder_id in active_ids
    ]

    logger.info(
        "OCT export generated for company %s: %d stockholders, %d issuances",
        company_id, len(stockholders), len(stock_issuances),
    )
    return {
        "ocfVersion": OCF_VERSION,
        "generatedAt": as_utc(generated_at).isoformat(),
        "issuer": {"id": company_id, **(issuer or {})},
        "stockClasses": stock_classes,
        "stockholders": stockholders,
        "stockIssuances": stock_issuances,
    }
