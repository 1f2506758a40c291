"""Equity ledger transactions.

Transactions are immutable records of equity movements. Current ownership is
computed by replaying CONFIRMED transactions in creation order into a
``LedgerState``; nothing else contributes to a balance.

Lifecycle (status machine):
    DRAFT            -> PENDING_APPROVAL | SUBMITTED | CANCELLED
    PENDING_APPROVAL -> SUBMITTED | CANCELLED
    SUBMITTED        -> CONFIRMED | FAILED | CANCELLED
    FAILED           -> SUBMITTED | CANCELLED
    CONFIRMED, CANCELLED: terminal

A CONFIRMED transaction is never altered; an error is corrected by recording a
new, opposite transaction.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Dict, FrozenSet, List, Literal, Optional, Tuple, Union
from pydantic import Field, TypeAdapter, model_validator

from .base import (
    RecordModel,
    CompanyId,
    RecordId,
    ShareClassId,
    ShareholderId,
    PositiveShareCount,
    MoneyAmount,
    utcnow,
)
from .ledger_state import LedgerState


TransactionType = Literal["ISSUANCE", "TRANSFER", "CONVERSION", "CANCELLATION", "SPLIT"]

TransactionStatus = Literal[
    "DRAFT",
    "PENDING_APPROVAL",
    "SUBMITTED",
    "CONFIRMED",
    "FAILED",
    "CANCELLED",
]

TRANSACTION_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "DRAFT": frozenset({"PENDING_APPROVAL", "SUBMITTED", "CANCELLED"}),
    "PENDING_APPROVAL": frozenset({"SUBMITTED", "CANCELLED"}),
    "SUBMITTED": frozenset({"CONFIRMED", "FAILED", "CANCELLED"}),
    "FAILED": frozenset({"SUBMITTED", "CANCELLED"}),
    "CONFIRMED": frozenset(),
    "CANCELLED": frozenset(),
}

# Statuses a transaction may carry when first appended
INITIAL_STATUSES: FrozenSet[str] = frozenset(
    {"DRAFT", "PENDING_APPROVAL", "SUBMITTED", "CONFIRMED"}
)

Debit = Tuple[str, str, Decimal]


# =============================================================================
# Transaction Base Class
# =============================================================================

class BaseTransaction(RecordModel, ABC):
    """Fields shared by every transaction type.

    ``sequence`` and ``confirmed_at`` are assigned by the ledger; values
    supplied by the caller are overwritten on append.
    """

    id: RecordId = Field(
        description="Unique identifier (UUID or user-defined)"
    )

    company_id: CompanyId = Field(
        description="Company whose ledger this transaction belongs to"
    )

    share_class_id: ShareClassId = Field(
        description="Share class affected (source class for conversions)"
    )

    quantity: PositiveShareCount = Field(
        description="Number of shares moved"
    )

    price_per_share: Optional[MoneyAmount] = Field(
        default=None,
        description="Price per share, if any"
    )

    status: TransactionStatus = Field(
        default="DRAFT",
        description="Lifecycle status"
    )

    created_at: datetime = Field(
        default_factory=utcnow,
        description="Creation time; the fold replays in (created_at, sequence) order"
    )

    confirmed_at: Optional[datetime] = Field(
        default=None,
        description="Set by the ledger when the transaction becomes CONFIRMED"
    )

    sequence: int = Field(
        default=0,
        ge=0,
        description="Ledger-assigned append order"
    )

    notes: Optional[str] = Field(default=None)

    @property
    def is_confirmed(self) -> bool:
        return self.status == "CONFIRMED"

    @property
    def total_value(self) -> Optional[Decimal]:
        if self.price_per_share is None:
            return None
        return self.price_per_share * self.quantity

    def shareholder_ids(self) -> List[str]:
        """Shareholders referenced by this transaction."""
        return []

    def share_class_ids(self) -> List[str]:
        """Share classes touched (source and target)."""
        return [self.share_class_id]

    def debits(self) -> List[Debit]:
        """(shareholder, class, quantity) balances this transaction reduces."""
        return []

    @abstractmethod
    def apply(self, state: LedgerState) -> None:
        """Apply this transaction to a fold state.

        Args:
            state: LedgerState to mutate

        Raises:
            InsufficientBalance: If a debit exceeds the holder's balance
            AuthorizedSharesExceeded: If an issuance exceeds the authorized total
            InvalidSplitRatio: If a split leaves fractional shares
        """
        pass


# =============================================================================
# Issuance
# =============================================================================

class IssuanceTransaction(BaseTransaction):
    """New shares are issued to a holder.

    Covers founder allocations, priced-round investments and option exercises
    (an exercise leaves the option domain as an ordinary issuance).
    """

    type: Literal["ISSUANCE"] = "ISSUANCE"

    to_shareholder_id: ShareholderId = Field(
        description="Holder receiving the shares"
    )

    def shareholder_ids(self) -> List[str]:
        return [self.to_shareholder_id]

    def apply(self, state: LedgerState) -> None:
        state.issue(self.to_shareholder_id, self.share_class_id, self.quantity)


# =============================================================================
# Transfer
# =============================================================================

class TransferTransaction(BaseTransaction):
    """Shares move from one holder to another (secondary sale, gift).

    Transfers never change the class's issued total.
    """

    type: Literal["TRANSFER"] = "TRANSFER"

    from_shareholder_id: ShareholderId = Field(
        description="Holder giving up the shares"
    )

    to_shareholder_id: ShareholderId = Field(
        description="Holder receiving the shares"
    )

    @model_validator(mode='after')
    def validate_distinct_holders(self):
        if self.from_shareholder_id == self.to_shareholder_id:
            raise ValueError("TRANSFER requires different from/to shareholders")
        return self

    def shareholder_ids(self) -> List[str]:
        return [self.from_shareholder_id, self.to_shareholder_id]

    def debits(self) -> List[Debit]:
        return [(self.from_shareholder_id, self.share_class_id, self.quantity)]

    def apply(self, state: LedgerState) -> None:
        state.transfer(
            self.from_shareholder_id,
            self.to_shareholder_id,
            self.share_class_id,
            self.quantity,
        )


# =============================================================================
# Cancellation
# =============================================================================

class CancellationTransaction(BaseTransaction):
    """Shares are cancelled (repurchase, forfeiture of restricted stock)."""

    type: Literal["CANCELLATION"] = "CANCELLATION"

    from_shareholder_id: ShareholderId = Field(
        description="Holder whose shares are cancelled"
    )

    def shareholder_ids(self) -> List[str]:
        return [self.from_shareholder_id]

    def debits(self) -> List[Debit]:
        return [(self.from_shareholder_id, self.share_class_id, self.quantity)]

    def apply(self, state: LedgerState) -> None:
        state.retire(self.from_shareholder_id, self.share_class_id, self.quantity)


# =============================================================================
# Conversion
# =============================================================================

class ConversionTransaction(BaseTransaction):
    """Shares convert between classes, or a convertible instrument converts.

    Two shapes:
        Share conversion:
            from_shareholder_id and to_share_class_id are set. ``quantity``
            shares of ``share_class_id`` are cancelled and
            ``quantity * conversion_ratio`` shares of ``to_share_class_id``
            are issued to the same holder (constant economic value, not
            constant share count).

        Instrument conversion:
            converted_instrument_id and to_shareholder_id are set. ``quantity``
            shares of ``share_class_id`` (the instrument's target class) are
            issued to the instrument holder.
    """

    type: Literal["CONVERSION"] = "CONVERSION"

    from_shareholder_id: Optional[ShareholderId] = Field(
        default=None,
        description="Holder converting shares (share conversion)"
    )

    to_shareholder_id: Optional[ShareholderId] = Field(
        default=None,
        description="Holder receiving shares (instrument conversion)"
    )

    to_share_class_id: Optional[ShareClassId] = Field(
        default=None,
        description="Target class of a share conversion"
    )

    converted_instrument_id: Optional[RecordId] = Field(
        default=None,
        description="Convertible instrument being converted"
    )

    @model_validator(mode='after')
    def validate_shape(self):
        if self.converted_instrument_id is not None:
            if self.to_shareholder_id is None:
                raise ValueError("instrument CONVERSION requires to_shareholder_id")
            if self.from_shareholder_id is not None:
                raise ValueError("instrument CONVERSION cannot debit from_shareholder_id")
        else:
            if self.from_shareholder_id is None or self.to_share_class_id is None:
                raise ValueError(
                    "share CONVERSION requires from_shareholder_id and to_share_class_id"
                )
            if self.to_share_class_id == self.share_class_id:
                raise ValueError("share CONVERSION requires a different target class")
        return self

    @property
    def is_instrument_conversion(self) -> bool:
        return self.converted_instrument_id is not None

    def shareholder_ids(self) -> List[str]:
        return [h for h in (self.from_shareholder_id, self.to_shareholder_id) if h]

    def share_class_ids(self) -> List[str]:
        if self.to_share_class_id is None:
            return [self.share_class_id]
        return [self.share_class_id, self.to_share_class_id]

    def debits(self) -> List[Debit]:
        if self.is_instrument_conversion:
            return []
        return [(self.from_shareholder_id, self.share_class_id, self.quantity)]

    def apply(self, state: LedgerState) -> None:
        if self.is_instrument_conversion:
            state.issue(self.to_shareholder_id, self.share_class_id, self.quantity)
            return

        source = state.share_class(self.share_class_id)
        state.share_class(self.to_share_class_id)
        holder = self.to_shareholder_id or self.from_shareholder_id
        state.retire(self.from_shareholder_id, self.share_class_id, self.quantity)
        state.issue(holder, self.to_share_class_id, self.quantity * source.conversion_ratio)


# =============================================================================
# Split
# =============================================================================

class SplitTransaction(BaseTransaction):
    """Forward or reverse split of a share class.

    Every balance and both class totals are multiplied by ``split_ratio``
    (2 = 2-for-1 forward split, 0.5 = 1-for-2 reverse split). ``quantity`` is
    informational and does not drive the fold.
    """

    type: Literal["SPLIT"] = "SPLIT"

    split_ratio: Decimal = Field(
        description="New shares per old share"
    )

    def apply(self, state: LedgerState) -> None:
        state.split(self.share_class_id, self.split_ratio)


# =============================================================================
# Discriminated Union
# =============================================================================

Transaction = Annotated[
    Union[
        IssuanceTransaction,
        TransferTransaction,
        CancellationTransaction,
        ConversionTransaction,
        SplitTransaction,
    ],
    Field(discriminator='type')
]

_transaction_adapter = TypeAdapter(Transaction)


def parse_transaction(data: dict) -> BaseTransaction:
    """Validate a plain dict into the matching transaction type."""
    return _transaction_adapter.validate_python(data)
