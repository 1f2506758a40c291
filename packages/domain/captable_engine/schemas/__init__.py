"""Cap table engine schemas.

This package contains all Pydantic models for the engine:
- Base types, decimal helpers and conventions
- Share classes and shareholders
- Ledger transactions and the fold state
- Option plans, grants and vesting
- Convertible instruments and funding rounds
- Snapshots, verification results and audit entries
- Current and fully diluted views

Usage:
    from captable_engine.schemas import (
        ShareClass, Shareholder, IssuanceTransaction, TransferTransaction,
        OptionPlan, OptionGrant, ConvertibleInstrument, FundingRound,
        CapTableView, FullyDilutedView, CapTableSnapshot
    )
"""

# Base types
from .base import (
    DomainModel,
    RecordModel,
    ShareCount,
    PositiveShareCount,
    MoneyAmount,
    PositiveMoneyAmount,
    Rate,
    Percentage,
    CompanyId,
    ShareClassId,
    ShareholderId,
    RecordId,
    ShareClassType,
    AntiDilutionType,
    ShareholderType,
    ShareholderStatus,
    ActorType,
    canonical_decimal,
    utcnow,
)

# Registry records
from .share_classes import ShareClass, ShareClassTotals
from .shareholders import Shareholder

# Ledger
from .ledger_state import LedgerState
from .transactions import (
    BaseTransaction,
    Transaction,
    TransactionType,
    TransactionStatus,
    IssuanceTransaction,
    TransferTransaction,
    CancellationTransaction,
    ConversionTransaction,
    SplitTransaction,
    TRANSACTION_TRANSITIONS,
    parse_transaction,
)

# Options
from .options import (
    OptionPlan,
    OptionGrant,
    VestingStatus,
    VestingEvent,
    TerminationPolicy,
    VestingFrequency,
    GrantStatus,
)

# Instruments and rounds
from .instruments import (
    ConvertibleInstrument,
    ConversionRecord,
    FundingRound,
    InterestPeriod,
    ConversionQuote,
    PriceCandidate,
    UnconvertedInstrument,
    ConversionScenario,
    ConversionScenarios,
    ScenarioMethod,
    InstrumentType,
    InstrumentStatus,
    PricingMethod,
    FundingRoundStatus,
)

# Snapshots and audit
from .snapshots import (
    CapTableSnapshot,
    HashMismatch,
    ChainVerification,
    VerificationStatus,
)
from .audit_log import AuditLogEntry

# Views
from .cap_table import (
    CapTableEntry,
    CapTableSummary,
    CapTableView,
    FullyDilutedEntry,
    FullyDilutedSummary,
    FullyDilutedView,
    Page,
    PageMeta,
)

__all__ = [
    # Base
    "DomainModel",
    "RecordModel",
    "ShareCount",
    "PositiveShareCount",
    "MoneyAmount",
    "PositiveMoneyAmount",
    "Rate",
    "Percentage",
    "CompanyId",
    "ShareClassId",
    "ShareholderId",
    "RecordId",
    "ShareClassType",
    "AntiDilutionType",
    "ShareholderType",
    "ShareholderStatus",
    "ActorType",
    "canonical_decimal",
    "utcnow",
    # Registry
    "ShareClass",
    "ShareClassTotals",
    "Shareholder",
    # Ledger
    "LedgerState",
    "BaseTransaction",
    "Transaction",
    "TransactionType",
    "TransactionStatus",
    "IssuanceTransaction",
    "TransferTransaction",
    "CancellationTransaction",
    "ConversionTransaction",
    "SplitTransaction",
    "TRANSACTION_TRANSITIONS",
    "parse_transaction",
    # Options
    "OptionPlan",
    "OptionGrant",
    "VestingStatus",
    "VestingEvent",
    "TerminationPolicy",
    "VestingFrequency",
    "GrantStatus",
    # Instruments
    "ConvertibleInstrument",
    "ConversionRecord",
    "FundingRound",
    "InterestPeriod",
    "ConversionQuote",
    "PriceCandidate",
    "UnconvertedInstrument",
    "ConversionScenario",
    "ConversionScenarios",
    "ScenarioMethod",
    "InstrumentType",
    "InstrumentStatus",
    "PricingMethod",
    "FundingRoundStatus",
    # Snapshots and audit
    "CapTableSnapshot",
    "HashMismatch",
    "ChainVerification",
    "VerificationStatus",
    "AuditLogEntry",
    # Views
    "CapTableEntry",
    "CapTableSummary",
    "CapTableView",
    "FullyDilutedEntry",
    "FullyDilutedSummary",
    "FullyDilutedView",
    "Page",
    "PageMeta",
]
