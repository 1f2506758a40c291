"""Share class and shareholder registry.

The registry holds the static definitions every computation consults. It never
stores balances or issued totals; those come from the ledger fold. Removal of
classes and shareholders is guarded by ledger history and therefore goes
through ``EquityLedger.retire_share_class`` / ``EquityLedger.remove_shareholder``.
"""

import logging
from typing import Dict, List, Optional

from .audit import AuditLog
from .concurrency import CompanyLocks
from .errors import LedgerConflict, RecordNotFound
from .schemas.share_classes import ShareClass
from .schemas.shareholders import Shareholder

logger = logging.getLogger(__name__)


class ShareClassRegistry:
    """Per-company share classes and shareholders.

    Maps are replaced copy-on-write under the company lock, so readers never
    observe a half-applied change.
    """

    def __init__(self, locks: Optional[CompanyLocks] = None, audit: Optional[AuditLog] = None):
        self.locks = locks or CompanyLocks()
        self.audit = audit
        self._share_classes: Dict[str, Dict[str, ShareClass]] = {}
        self._shareholders: Dict[str, Dict[str, Shareholder]] = {}

    # -------------------------------------------------------------------------
    # Share classes
    # -------------------------------------------------------------------------

    def add_share_class(self, share_class: ShareClass, actor_id: Optional[str] = None) -> ShareClass:
        company_id = share_class.company_id
        with self.locks.hold(company_id):
            current = self._share_classes.get(company_id, {})
            if share_class.id in current:
                raise LedgerConflict(
                    f"Share class already exists: {share_class.id}",
                    {"entity": "share_class", "id": share_class.id},
                )
            self._share_classes[company_id] = {**current, share_class.id: share_class}
            self._record(company_id, "SHARE_CLASS_CREATED", "share_class", share_class.id,
                         after=share_class, actor_id=actor_id)
        return share_class

    def get_share_class(self, company_id: str, share_class_id: str) -> ShareClass:
        try:
            return self._share_classes.get(company_id, {})[share_class_id]
        except KeyError:
            raise RecordNotFound(
                f"Share class not found: {share_class_id}",
                {"entity": "share_class", "company_id": company_id, "id": share_class_id},
            ) from None

    def share_classes(self, company_id: str) -> List[ShareClass]:
        return list(self._share_classes.get(company_id, {}).values())

    def _drop_share_class(self, company_id: str, share_class_id: str) -> ShareClass:
        current = self._share_classes.get(company_id, {})
        removed = self.get_share_class(company_id, share_class_id)
        self._share_classes[company_id] = {k: v for k, v in current.items() if k != share_class_id}
        return removed

    # -------------------------------------------------------------------------
    # Shareholders
    # -------------------------------------------------------------------------

    def add_shareholder(self, shareholder: Shareholder, actor_id: Optional[str] = None) -> Shareholder:
        company_id = shareholder.company_id
        with self.locks.hold(company_id):
            current = self._shareholders.get(company_id, {})
            if shareholder.id in current:
                raise LedgerConflict(
                    f"Shareholder already exists: {shareholder.id}",
                    {"entity": "shareholder", "id": shareholder.id},
                )
            self._shareholders[company_id] = {**current, shareholder.id: shareholder}
            self._record(company_id, "SHAREHOLDER_CREATED", "shareholder", shareholder.id,
                         after=shareholder, actor_id=actor_id)
        return shareholder

    def get_shareholder(self, company_id: str, shareholder_id: str) -> Shareholder:
        try:
            return self._shareholders.get(company_id, {})[shareholder_id]
        except KeyError:
            raise RecordNotFound(
                f"Shareholder not found: {shareholder_id}",
                {"entity": "shareholder", "company_id": company_id, "id": shareholder_id},
            ) from None

    def find_shareholder(self, company_id: str, shareholder_id: str) -> Optional[Shareholder]:
        return self._shareholders.get(company_id, {}).get(shareholder_id)

    def shareholders(self, company_id: str, status: Optional[str] = None) -> List[Shareholder]:
        return [
            s for s in self._shareholders.get(company_id, {}).values()
            if status is None or s.status == status
        ]

    def set_shareholder_status(
        self,
        company_id: str,
        shareholder_id: str,
        status: str,
        actor_id: Optional[str] = None,
    ) -> Shareholder:
        with self.locks.hold(company_id):
            before = self.get_shareholder(company_id, shareholder_id)
            after = Shareholder.model_validate({**before.model_dump(), "status": status})
            self._shareholders[company_id] = {**self._shareholders[company_id], shareholder_id: after}
            self._record(company_id, "SHAREHOLDER_STATUS_CHANGED", "shareholder", shareholder_id,
                         before={"status": before.status}, after={"status": status},
                         actor_id=actor_id)
        return after

    def _drop_shareholder(self, company_id: str, shareholder_id: str) -> Shareholder:
        removed = self.get_shareholder(company_id, shareholder_id)
        self._shareholders[company_id] = {
            k: v for k, v in self._shareholders[company_id].items() if k != shareholder_id
        }
        return removed

    def _record(self, company_id: str, action: str, resource_type: str, resource_id: str, **kwargs) -> None:
        if self.audit is not None:
            self.audit.record(company_id, action, resource_type, resource_id, **kwargs)
