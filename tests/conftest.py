"""Shared fixtures for SplitLedger tests."""

import pytest

from splitledger.config import Settings
from splitledger.db import Database
from splitledger.models import Money
from splitledger.service import LedgerService

ALICE, BOB, CAROL, DAVE = 1, 2, 3, 4


def usd(amount: int) -> Money:
    """Shorthand for a USD amount in cents."""
    return Money(amount=amount, currency="USD")


@pytest.fixture
def settings(tmp_path):
    """Create settings pointing at a temporary database."""
    return Settings(
        database_path=tmp_path / "ledger.db",
        lock_timeout_seconds=0.05,
        conflict_backoff_seconds=0.0,
    )


@pytest.fixture
def db(settings):
    """Create a temporary database."""
    db = Database(settings.database_path)
    yield db
    db.close()


@pytest.fixture
def service(settings, db):
    """Create a LedgerService instance."""
    return LedgerService(settings, db)


@pytest.fixture
def group(service):
    """A USD group with Alice, Bob and Carol."""
    group = service.create_group("Trip", "USD")
    for user_id in (ALICE, BOB, CAROL):
        service.add_participant(group.id, user_id)
    return group
