"""
Shared fixtures for the Bill Workflow Hub tests.
"""
import copy
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from services.master_data import InMemoryMasterDataLookup
from services.stores import InMemoryBillStore, InMemoryTransitionLog
from services.workflow_config import WorkflowConfig
from services.workflow_engine import WorkflowEngine


START = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock handed to the engine."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


BASE_BILL = {
    "serial_number": "2500001",
    "position": 1,
    "max_position_reached": 1,
    "site_status": "accept",
    "nature_of_work": "Civil",
    "vendor": "vendor-1",
    "region": "Mumbai",
    "project_description": "Tower A",
    "tax_inv_number": "INV-001",
    "tax_inv_amount": 1000,
    "workflow_state": {
        "current_state": "Site_Team",
        "last_updated": START.isoformat(),
        "history": [],
    },
}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_bill():
    """Factory for bill snapshots with sensible defaults."""
    def _make(bill_id="bill-1", **overrides):
        bill = copy.deepcopy(BASE_BILL)
        bill["id"] = bill_id
        bill.update(overrides)
        return bill
    return _make


@pytest.fixture
def bill_store():
    return InMemoryBillStore()


@pytest.fixture
def transition_log():
    return InMemoryTransitionLog()


@pytest.fixture
def master_data():
    return InMemoryMasterDataLookup(
        natures={"now-service": "Service", "now-material": "Material", "now-civil": "Civil"},
        vendors={
            "vendor-1": {"id": "vendor-1", "vendor_no": "V001", "vendor_name": "Acme Builders"},
            "vendor-2": {"id": "vendor-2", "vendor_no": "V002", "vendor_name": "Zenith Steel"},
        },
        users={
            "u-site": {"id": "u-site", "name": "Site Officer", "role": "site_team", "department": "Site Office"},
            "u-ro": {"id": "u-ro", "name": "Regional Officer", "role": "regional_office", "department": "Finance"},
        },
    )


@pytest.fixture
def engine(bill_store, transition_log, master_data, clock):
    return WorkflowEngine(
        bill_store=bill_store,
        transition_log=transition_log,
        config=WorkflowConfig(),
        master_data=master_data,
        clock=clock,
    )
