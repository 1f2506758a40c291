"""Per-company write serialization.

All mutations of one company (ledger appends and transitions, instrument book
changes, snapshot creation) run under that company's lock. Different companies
never contend: there is no global operation lock. Readers never lock; stores
publish new immutable values copy-on-write, so a reader always sees a
consistent prefix.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class CompanyLocks:
    """Hands out one re-entrant lock per company.

    The lock is re-entrant so that composite operations (closing a round
    converts instruments, which appends ledger transactions, which records
    audit entries) can nest without deadlocking.

    Usage:
        locks = CompanyLocks()
        with locks.hold("acme"):
            ...  # single writer for "acme"
    """

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def lock_for(self, company_id: str) -> threading.RLock:
        lock = self._locks.get(company_id)
        if lock is None:
            with self._guard:
                lock = self._locks.setdefault(company_id, threading.RLock())
        return lock

    @contextmanager
    def hold(self, company_id: str) -> Iterator[None]:
        with self.lock_for(company_id):
            yield

    def __contains__(self, company_id: str) -> bool:
        return company_id in self._locks
