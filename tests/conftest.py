"""
Shared fixtures for Token Ledger tests.

Every test gets a fresh in-memory SQLite database and a clock that ticks
one second per call, so creation order is deterministic.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from tokenledger.audit import AuditLogger
from tokenledger.config import DatabaseSettings, LedgerSettings
from tokenledger.models import Actor, Purchase, UserRole
from tokenledger.orchestrator import LedgerService
from tokenledger.queries import LedgerQueries
from tokenledger.services.storage import SqlAuditStorage, SqlLedgerStorage, build_engine


class TickingClock:
    """Returns a strictly increasing naive UTC time on every call."""

    def __init__(self, start: datetime = datetime(2025, 1, 1, 12, 0, 0)):
        self._now = start

    def __call__(self) -> datetime:
        self._now += timedelta(seconds=1)
        return self._now


def day(n: int) -> datetime:
    """Purchase date on day n of January 2025."""
    return datetime(2025, 1, n)


@pytest.fixture
def ledger_settings():
    return LedgerSettings(baseline_meter_reading=0.0)


@pytest.fixture
def engine():
    engine = build_engine(DatabaseSettings(url="sqlite://"))
    yield engine
    engine.dispose()


@pytest.fixture
def storage(engine):
    storage = SqlLedgerStorage(engine)
    storage.create_schema()
    return storage


@pytest.fixture
def audit_storage(engine, storage):
    return SqlAuditStorage(engine)


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def service(storage, audit_storage, ledger_settings, clock):
    return LedgerService(
        storage,
        audit_logger=AuditLogger(audit_storage),
        settings=ledger_settings,
        clock=clock,
    )


@pytest.fixture
def queries(storage, ledger_settings):
    return LedgerQueries(storage, settings=ledger_settings)


def _register(service, name, role=UserRole.USER, is_locked=False) -> Actor:
    result = service.register_user(name, role=role, is_locked=is_locked)
    assert result.success, result.error
    return Actor.from_user(result.value)


@pytest.fixture
def admin(service):
    return _register(service, "Admin", role=UserRole.ADMIN)


@pytest.fixture
def member(service):
    return _register(service, "Member")


@pytest.fixture
def other_member(service):
    return _register(service, "Other Member")


@pytest.fixture
def locked_member(service):
    return _register(service, "Locked Member", is_locked=True)


@pytest.fixture
def buy(service, admin):
    """Create a purchase and return it; fails the test if it is rejected."""

    def _buy(
        meter_reading,
        purchase_day: int,
        total_tokens="100",
        total_payment="50",
        actor=None,
        is_emergency=False,
    ) -> Purchase:
        result = service.create_purchase(
            total_tokens=Decimal(str(total_tokens)),
            total_payment=Decimal(str(total_payment)),
            meter_reading=Decimal(str(meter_reading)),
            purchase_date=day(purchase_day),
            actor=actor or admin,
            is_emergency=is_emergency,
        )
        assert result.success, result.error
        return result.value

    return _buy


@pytest.fixture
def contribute(service, admin):
    """Create a contribution and return the ContributionView."""

    def _contribute(purchase, amount, actor=None, user_id=None, **kwargs):
        actor = actor or admin
        result = service.create_contribution(
            purchase_id=purchase.id,
            user_id=user_id or actor.user_id,
            contribution_amount=Decimal(str(amount)),
            actor=actor,
            **kwargs,
        )
        assert result.success, result.error
        return result.value

    return _contribute
