from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from circulation.catalog import Catalog
from circulation.inventory import InventoryLedger
from circulation.loans import LoanLifecycle
from circulation.models import Actor, Role


class FakeClock:
    """Controllable time source for loan tests."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def db_file(tmp_path, request):
    # A unique database file for every test
    return str(tmp_path / f"test_{request.node.name}.db")


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def catalog(db_file):
    return Catalog(db_file)


@pytest.fixture
def ledger(db_file, catalog):
    return InventoryLedger(db_file)


@pytest.fixture
def loans(db_file, catalog, ledger, clock):
    return LoanLifecycle(db_file, ledger=ledger, clock=clock, daily_rate=Decimal("0.50"))


@pytest.fixture
def alice():
    return Actor(id="alice", role=Role.MEMBER)


@pytest.fixture
def bob():
    return Actor(id="bob", role=Role.MEMBER)


@pytest.fixture
def librarian():
    return Actor(id="lib-1", role=Role.LIBRARIAN)
