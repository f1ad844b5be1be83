"""Shared fixtures for reconciliation tests."""
import threading
from typing import Any, Dict, List, Optional, Sequence

import pytest


class FakeCrm:
    """In-memory stand-in for SalesforceClient keyed by lead email."""

    def __init__(self):
        self.leads: Dict[str, Dict[str, Any]] = {}
        self.queries: List[str] = []
        self.patches: List[tuple] = []
        self.authenticated = 0
        # email -> number of queries that return nothing before the lead shows up
        self.index_lag: Dict[str, int] = {}
        self._lock = threading.Lock()

    def add_lead(self, email: str, lead_id: str, **fields) -> None:
        self.leads[email] = {'Id': lead_id, 'FirstName': 'Test', 'LastName': 'Lead', **fields}

    def authenticate(self):
        self.authenticated += 1

    def find_lead_by_email(self, email: str,
                           fields: Sequence[str] = ('Id',)) -> Optional[Dict[str, Any]]:
        with self._lock:
            self.queries.append(email)
            if self.index_lag.get(email, 0) > 0:
                self.index_lag[email] -= 1
                return None
            record = self.leads.get(email)
            if record is None:
                return None
            return {k: v for k, v in record.items() if k in fields}

    def patch_lead(self, lead_id: str, fields: Dict[str, Any]) -> None:
        with self._lock:
            self.patches.append((lead_id, dict(fields)))
            for record in self.leads.values():
                if record['Id'] == lead_id:
                    record.update(fields)

    def lead(self, email: str) -> Dict[str, Any]:
        return self.leads[email]


@pytest.fixture
def fake_crm():
    return FakeCrm()


@pytest.fixture
def no_sleep():
    """Recording replacement for time.sleep."""
    delays = []
    return delays.append, delays
