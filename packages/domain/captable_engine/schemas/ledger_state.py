"""Ledger fold state.

``LedgerState`` is the working value that confirmed transactions are replayed
into. It is rebuilt from scratch on every read (balances are never persisted),
which keeps the ledger as the single source of truth.

The state enforces the balance invariants during the fold:
    - No (holder, class) balance may go negative
    - total_issued never exceeds total_authorized
    - Splits never leave fractional balances
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, Iterator, List, Optional, Tuple
from pydantic import Field

from .base import DomainModel, ZERO, is_whole
from .share_classes import ShareClass, ShareClassTotals
from ..errors import (
    AuthorizedSharesExceeded,
    InsufficientBalance,
    InvalidSplitRatio,
    RecordNotFound,
)


Holding = Tuple[str, str, Decimal]


class LedgerState(DomainModel):
    """Balances per (shareholder, share class) and per-class totals.

    Usage:
        state = LedgerState.from_share_classes(registry.share_classes(company_id))
        for txn in ledger.confirmed_transactions_as_of(company_id):
            txn.apply(state)

        state.balance("alice", "on")     # Decimal("600000")
        list(state.holdings())           # [("alice", "on", Decimal("600000")), ...]
    """

    share_classes: Dict[str, ShareClass] = Field(
        default_factory=dict,
        description="Registry definitions, keyed by share class id"
    )

    balances: Dict[str, Dict[str, Decimal]] = Field(
        default_factory=dict,
        description="share_class_id -> shareholder_id -> shares"
    )

    totals: Dict[str, ShareClassTotals] = Field(
        default_factory=dict,
        description="Derived issued/authorized totals per class"
    )

    last_updated: Optional[datetime] = Field(
        default=None,
        description="confirmed_at of the last applied transaction"
    )

    applied_count: int = Field(default=0, ge=0)

    @classmethod
    def from_share_classes(cls, share_classes: Iterable[ShareClass]) -> "LedgerState":
        """Empty state seeded with the registry's authorized totals."""
        classes = {sc.id: sc for sc in share_classes}
        return cls(
            share_classes=classes,
            totals={
                sc.id: ShareClassTotals(
                    share_class_id=sc.id,
                    total_authorized=sc.total_authorized,
                )
                for sc in classes.values()
            },
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def share_class(self, share_class_id: str) -> ShareClass:
        try:
            return self.share_classes[share_class_id]
        except KeyError:
            raise RecordNotFound(
                f"Share class not found: {share_class_id}",
                {"entity": "share_class", "id": share_class_id},
            ) from None

    def balance(self, shareholder_id: str, share_class_id: str) -> Decimal:
        return self.balances.get(share_class_id, {}).get(shareholder_id, ZERO)

    def holdings(self) -> Iterator[Holding]:
        """Positive balances sorted by (shareholder_id, share_class_id)."""
        rows: List[Holding] = [
            (holder_id, class_id, shares)
            for class_id, by_holder in self.balances.items()
            for holder_id, shares in by_holder.items()
            if shares > 0
        ]
        rows.sort(key=lambda row: (row[0], row[1]))
        return iter(rows)

    @property
    def total_shares(self) -> Decimal:
        return sum((shares for _, _, shares in self.holdings()), ZERO)

    def shareholder_ids(self) -> List[str]:
        return sorted({holder_id for holder_id, _, _ in self.holdings()})

    # -------------------------------------------------------------------------
    # Mutations (used by Transaction.apply)
    # -------------------------------------------------------------------------

    def issue(self, shareholder_id: str, share_class_id: str, shares: Decimal) -> None:
        """Credit newly issued shares, enforcing the authorized limit.

        Raises:
            AuthorizedSharesExceeded: If the class would exceed its authorized total
        """
        totals = self._totals(share_class_id)
        if totals.total_issued + shares > totals.total_authorized:
            raise AuthorizedSharesExceeded(
                f"Issuing {shares} shares of {share_class_id} exceeds authorized total",
                {
                    "share_class_id": share_class_id,
                    "authorized": totals.total_authorized,
                    "issued": totals.total_issued,
                    "requested": shares,
                },
            )
        self._credit(shareholder_id, share_class_id, shares)
        totals.total_issued += shares

    def retire(self, shareholder_id: str, share_class_id: str, shares: Decimal) -> None:
        """Debit shares out of existence (cancellation, conversion source)."""
        totals = self._totals(share_class_id)
        self._debit(shareholder_id, share_class_id, shares)
        totals.total_issued -= shares

    def transfer(
        self,
        from_shareholder_id: str,
        to_shareholder_id: str,
        share_class_id: str,
        shares: Decimal,
    ) -> None:
        """Move shares between holders. Class totals do not change."""
        self._totals(share_class_id)
        self._debit(from_shareholder_id, share_class_id, shares)
        self._credit(to_shareholder_id, share_class_id, shares)

    def split(self, share_class_id: str, ratio: Decimal) -> None:
        """Multiply every balance and both totals of a class by ``ratio``.

        Raises:
            InvalidSplitRatio: If ratio <= 0 or any resulting balance is fractional
        """
        if ratio <= 0:
            raise InvalidSplitRatio(
                f"Split ratio must be positive, got {ratio}",
                {"share_class_id": share_class_id, "split_ratio": ratio},
            )
        totals = self._totals(share_class_id)
        by_holder = self.balances.get(share_class_id, {})
        scaled = {holder_id: shares * ratio for holder_id, shares in by_holder.items()}
        fractional = sorted(h for h, shares in scaled.items() if not is_whole(shares))
        if fractional or not is_whole(totals.total_authorized * ratio):
            raise InvalidSplitRatio(
                f"Split ratio {ratio} leaves fractional shares in {share_class_id}",
                {
                    "share_class_id": share_class_id,
                    "split_ratio": ratio,
                    "fractional_holders": fractional,
                },
            )
        self.balances[share_class_id] = scaled
        totals.total_issued = totals.total_issued * ratio
        totals.total_authorized = totals.total_authorized * ratio

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _totals(self, share_class_id: str) -> ShareClassTotals:
        self.share_class(share_class_id)
        return self.totals[share_class_id]

    def _credit(self, shareholder_id: str, share_class_id: str, shares: Decimal) -> None:
        by_holder = self.balances.setdefault(share_class_id, {})
        by_holder[shareholder_id] = by_holder.get(shareholder_id, ZERO) + shares

    def _debit(self, shareholder_id: str, share_class_id: str, shares: Decimal) -> None:
        available = self.balance(shareholder_id, share_class_id)
        if available < shares:
            raise InsufficientBalance(
                f"Insufficient shares: {shareholder_id} holds {available} of "
                f"{share_class_id}, trying to debit {shares}",
                {
                    "shareholder_id": shareholder_id,
                    "share_class_id": share_class_id,
                    "available": available,
                    "requested": shares,
                },
            )
        by_holder = self.balances[share_class_id]
        remaining = available - shares
        if remaining == 0:
            del by_holder[shareholder_id]
        else:
            by_holder[shareholder_id] = remaining
