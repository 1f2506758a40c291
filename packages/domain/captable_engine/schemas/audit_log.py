"""Audit log entries."""

from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import Field

from .base import RecordModel, CompanyId, RecordId, ActorType


class AuditLogEntry(RecordModel):
    """One recorded mutation, chained to the previous entry of its company.

    ``changes`` holds ``{"before": ..., "after": ...}`` JSON-ready payloads.
    ``entry_hash`` covers every other field plus ``previous_hash``.
    """

    id: RecordId
    company_id: CompanyId

    actor_id: Optional[str] = Field(
        default=None,
        description="User or service that performed the action"
    )

    actor_type: ActorType = Field(default="SYSTEM")

    action: str = Field(
        min_length=1,
        description="Verb tag, e.g. TRANSACTION_CONFIRMED, SNAPSHOT_CREATED"
    )

    resource_type: str = Field(min_length=1)
    resource_id: Optional[str] = None

    changes: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    timestamp: datetime
    previous_hash: str = Field(min_length=64, max_length=64)
    entry_hash: str = Field(min_length=64, max_length=64)
