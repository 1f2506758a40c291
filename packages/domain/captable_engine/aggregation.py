"""Current ownership aggregation.

Folds the confirmed ledger into per-(shareholder, share class) entries and
derives ownership and voting percentages. Percentages are allocated with
largest-remainder rounding so they sum to exactly 100 whenever the total is
positive.
"""

import logging
from datetime import datetime
from typing import List, Optional

from .config import EngineCFG
from .ledger import EquityLedger
from .rounding import largest_remainder
from .schemas.base import ZERO
from .schemas.cap_table import CapTableEntry, CapTableSummary, CapTableView

logger = logging.getLogger(__name__)


class OwnershipAggregator:
    """Derives the current cap table from the ledger.

    Stateless: every call re-folds the ledger, so results are always
    consistent with the journal version that was read.
    """

    def __init__(self, ledger: EquityLedger, cfg: Optional[EngineCFG] = None):
        self.ledger = ledger
        self.registry = ledger.registry
        self.cfg = cfg or ledger.cfg

    def current_cap_table(
        self,
        company_id: str,
        share_class_id: Optional[str] = None,
        as_of: Optional[datetime] = None,
    ) -> CapTableView:
        """Current ownership of a company.

        Args:
            company_id: Company to aggregate
            share_class_id: Restrict entries (and totals) to one class
            as_of: Only count transactions confirmed at or before this instant

        Returns:
            CapTableView with entries sorted by shares descending

        Raises:
            RecordNotFound: If ``share_class_id`` is not registered
        """
        if share_class_id is not None:
            self.registry.get_share_class(company_id, share_class_id)

        state = self.ledger.state_as_of(company_id, as_of)
        places = self.cfg.percentage_places

        with self.cfg.decimal_context():
            holdings = [
                h for h in state.holdings()
                if share_class_id is None or h[1] == share_class_id
            ]
            voting = {
                (holder_id, class_id): shares * state.share_classes[class_id].votes_per_share
                for holder_id, class_id, shares in holdings
            }
            ownership_pct = largest_remainder(
                [((holder_id, class_id), shares) for holder_id, class_id, shares in holdings],
                places,
            )
            voting_pct = largest_remainder(list(voting.items()), places)

            entries: List[CapTableEntry] = []
            for holder_id, class_id, shares in holdings:
                key = (holder_id, class_id)
                share_class = state.share_classes[class_id]
                holder = self.registry.find_shareholder(company_id, holder_id)
                entries.append(CapTableEntry(
                    shareholder_id=holder_id,
                    shareholder_name=holder.name if holder else None,
                    shareholder_type=holder.shareholder_type if holder else None,
                    share_class_id=class_id,
                    share_class_name=share_class.name,
                    share_type=share_class.share_type,
                    shares=shares,
                    ownership_percentage=ownership_pct[key],
                    voting_power=voting[key],
                    voting_percentage=voting_pct[key],
                ))
            entries.sort(key=lambda e: (-e.shares, e.shareholder_id, e.share_class_id))

            total_classes = 1 if share_class_id is not None else len(state.share_classes)
            summary = CapTableSummary(
                total_shares=sum((e.shares for e in entries), ZERO),
                total_shareholders=len({e.shareholder_id for e in entries}),
                total_share_classes=total_classes,
                total_voting_power=sum(voting.values(), ZERO),
                last_updated=state.last_updated,
            )

        logger.debug(
            "Aggregated %d entries for company %s (total %s shares)",
            len(entries), company_id, summary.total_shares,
        )
        return CapTableView(
            company_id=company_id,
            share_class_id=share_class_id,
            as_of=as_of,
            entries=entries,
            summary=summary,
        )
