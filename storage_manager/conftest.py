# storage_manager/conftest.py
import sys
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

# Add repository root to PYTHONPATH
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from storage_manager.core.config import StorageConfig
from storage_manager.core.database import init_engine, create_all_tables, drop_all_tables
from storage_manager.features.assignments.repository import StorageRepository
from storage_manager.features.assignments.service import AssignmentService
from storage_manager.features.billing.manual_review import ManualReviewEscalator
from storage_manager.features.billing.reconciliation import BillingReconciler
from storage_manager.features.notifications.service import NotificationService
from storage_manager.features.violations.service import ViolationService
from storage_manager.tests.mocks import FakeSubscriptionStore, RecordingMailer


TEST_DATABASE_URL = "sqlite+pysqlite:///:memory:"


@pytest.fixture(scope="function", autouse=True)
def database():
    """
    Fresh in-memory SQLite database per test.

    StaticPool keeps a single connection so every session sees the same data.
    """
    init_engine(TEST_DATABASE_URL)
    create_all_tables()
    yield
    drop_all_tables()


@pytest.fixture
def config():
    return StorageConfig(
        billing_enabled=True,
        default_price_id="",
        default_daily_rate=Decimal("2.00"),
        grace_period_hours=48,
        notification_recipients=("staff@example.org",),
        base_url="https://storage.example.org",
    )


@pytest.fixture
def repository():
    return StorageRepository()


@pytest.fixture
def store():
    return FakeSubscriptionStore()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def notifications(config, repository, mailer):
    return NotificationService(config, repository, mailer)


@pytest.fixture
def escalator(repository, notifications):
    return ManualReviewEscalator(repository, notifications)


@pytest.fixture
def reconciler(config, store, repository, escalator):
    return BillingReconciler(config, store, repository, escalator)


@pytest.fixture
def violations(config, repository):
    return ViolationService(config, repository)


@pytest.fixture
def assignment_service(repository, reconciler, violations, notifications):
    return AssignmentService(repository, reconciler, violations, notifications)


@pytest.fixture
def storage_type(repository):
    return repository.create_type("Locker", stripe_price_id="price_locker", monthly_price=Decimal("25.00"))


@pytest.fixture
def member(repository):
    return repository.create_member("Ada Lovelace", email="ada@example.org")


@pytest.fixture
def make_assignment(repository, storage_type, member):
    """Create an active assignment on a fresh unit."""
    counter = {"n": 0}

    def _make(member_id=None, type_id=None, complimentary=False, price_id=""):
        counter["n"] += 1
        unit = repository.create_unit(f"L-{counter['n']:02d}", type_id=type_id or storage_type.id)
        return repository.create_assignment(
            unit.id,
            member_id or member.id,
            date(2024, 1, 1),
            price_snapshot=Decimal("25.00"),
            complimentary=complimentary,
            stripe_price_id=price_id,
        )

    return _make
