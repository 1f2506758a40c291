"""Cap table frames for tabular exporters.

Turn the aggregator and resolver views into pandas DataFrames for tabular
exporters (CSV, XLSX, PDF renderers live outside the engine).

Output DataFrames:
- ownership: one row per (shareholder, share class)
- ownership_by_class: ownership aggregated by share class
- fully_diluted: one row per shareholder
- conversions: one row per priced convertible
- summary: single row of headline totals

Quantities and percentages stay ``Decimal`` (object columns). Renderers
convert at their own boundary.
"""

from decimal import Decimal
from typing import Dict, List

import pandas as pd

from .rounding import percentage_of
from .schemas.base import ZERO
from .schemas.cap_table import CapTableView, FullyDilutedView

OWNERSHIP_COLUMNS = [
    "shareholder_id",
    "shareholder_name",
    "share_class_id",
    "share_class_name",
    "share_type",
    "shares",
    "ownership_pct",
    "voting_power",
    "voting_pct",
]

BY_CLASS_COLUMNS = [
    "share_class_id",
    "share_class_name",
    "shares",
    "ownership_pct",
    "holders_count",
]

FULLY_DILUTED_COLUMNS = [
    "shareholder_id",
    "shareholder_name",
    "current_shares",
    "current_pct",
    "options_vested",
    "options_unvested",
    "convertible_shares",
    "fully_diluted_shares",
    "fully_diluted_pct",
]

CONVERSION_COLUMNS = [
    "instrument_id",
    "shareholder_id",
    "conversion_amount",
    "conversion_price",
    "method_used",
    "shares",
]

SUMMARY_COLUMNS = [
    "total_shares",
    "total_shareholders",
    "total_share_classes",
    "total_voting_power",
    "options_outstanding",
    "convertible_shares",
    "fully_diluted_shares",
    "dilution_pct",
]


# =============================================================================
# Current ownership
# =============================================================================

def ownership_frame(view: CapTableView) -> pd.DataFrame:
    """One row per holding, in the view's order (shares descending)."""
    return pd.DataFrame(
        [
            {
                "shareholder_id": e.shareholder_id,
                "shareholder_name": e.shareholder_name,
                "share_class_id": e.share_class_id,
                "share_class_name": e.share_class_name,
                "share_type": e.share_type,
                "shares": e.shares,
                "ownership_pct": e.ownership_percentage,
                "voting_power": e.voting_power,
                "voting_pct": e.voting_percentage,
            }
            for e in view.entries
        ],
        columns=OWNERSHIP_COLUMNS,
    )


def ownership_by_class_frame(view: CapTableView) -> pd.DataFrame:
    """Holdings summed per share class, largest class first."""
    rows: Dict[str, dict] = {}
    holders: Dict[str, set] = {}
    for e in view.entries:
        row = rows.setdefault(e.share_class_id, {
            "share_class_id": e.share_class_id,
            "share_class_name": e.share_class_name,
            "shares": ZERO,
            "ownership_pct": ZERO,
        })
        row["shares"] += e.shares
        row["ownership_pct"] += e.ownership_percentage
        holders.setdefault(e.share_class_id, set()).add(e.shareholder_id)

    ordered: List[dict] = sorted(rows.values(), key=lambda r: (-r["shares"], r["share_class_id"]))
    for row in ordered:
        row["holders_count"] = len(holders[row["share_class_id"]])
    return pd.DataFrame(ordered, columns=BY_CLASS_COLUMNS)


# =============================================================================
# Fully diluted
# =============================================================================

def fully_diluted_frame(view: FullyDilutedView) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {
                "shareholder_id": e.shareholder_id,
                "shareholder_name": e.shareholder_name,
                "current_shares": e.current_shares,
                "current_pct": e.current_percentage,
                "options_vested": e.options_vested,
                "options_unvested": e.options_unvested,
                "convertible_shares": e.convertible_shares,
                "fully_diluted_shares": e.fully_diluted_shares,
                "fully_diluted_pct": e.fully_diluted_percentage,
            }
            for e in view.entries
        ],
        columns=FULLY_DILUTED_COLUMNS,
    )


def conversions_frame(view: FullyDilutedView) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {
                "instrument_id": q.instrument_id,
                "shareholder_id": q.shareholder_id,
                "conversion_amount": q.conversion_amount,
                "conversion_price": q.conversion_price,
                "method_used": q.method_used,
                "shares": q.shares,
            }
            for q in view.conversions
        ],
        columns=CONVERSION_COLUMNS,
    )


# =============================================================================
# Summary
# =============================================================================

def summary_frame(view: CapTableView, fd_view: FullyDilutedView) -> pd.DataFrame:
    """Headline totals across both views.

    ``dilution_pct`` is the share of the fully diluted count that is not yet
    outstanding, in points.
    """
    outstanding: Decimal = view.summary.total_shares
    fully_diluted: Decimal = fd_view.summary.fully_diluted_shares
    return pd.DataFrame([{
        "total_shares": outstanding,
        "total_shareholders": view.summary.total_shareholders,
        "total_share_classes": view.summary.total_share_classes,
        "total_voting_power": view.summary.total_voting_power,
        "options_outstanding": fd_view.summary.total_options_outstanding,
        "convertible_shares": fd_view.summary.total_convertible_shares,
        "fully_diluted_shares": fully_diluted,
        "dilution_pct": percentage_of(fully_diluted - outstanding, fully_diluted),
    }], columns=SUMMARY_COLUMNS)


def build_frames(view: CapTableView, fd_view: FullyDilutedView) -> Dict[str, pd.DataFrame]:
    """All export frames, keyed by name."""
    return {
        "ownership": ownership_frame(view),
        "ownership_by_class": ownership_by_class_frame(view),
        "fully_diluted": fully_diluted_frame(fd_view),
        "conversions": conversions_frame(fd_view),
        "summary": summary_frame(view, fd_view),
    }
