from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Set, Tuple

import pytest

from models.errors import CollaboratorUnavailableError
from models.schemas import Order, OrderProduct, OrderStatus, SubscriptionPlan
from services.bundles import OrderBundleBuilder
from services.integration import PrescriptionResult
from services.store import InMemoryRecordStore
from services.subscriptions import SubscriptionService
from services.workflow import WorkflowEngine


class FailingRecordStore(InMemoryRecordStore):
    """In-memory store that raises on chosen (operation, collection) pairs."""

    def __init__(self) -> None:
        super().__init__()
        self.failures: Set[Tuple[str, str]] = set()
        self.fail_after: Dict[Tuple[str, str], int] = {}
        self.calls: List[Tuple[str, str, str]] = []

    def fail(self, operation: str, collection: str, after: int = 0) -> None:
        """Fail `operation` on `collection` once `after` calls have succeeded."""
        self.failures.add((operation, collection))
        self.fail_after[(operation, collection)] = after

    def _check(self, operation: str, collection: str, key: str = "") -> None:
        self.calls.append((operation, collection, key))
        pair = (operation, collection)
        if pair not in self.failures:
            return
        if self.fail_after[pair] > 0:
            self.fail_after[pair] -= 1
            return
        raise CollaboratorUnavailableError("record store", f"{operation} on {collection} failed")

    def create(self, collection, key, fields):
        self._check("create", collection, key)
        return super().create(collection, key, fields)

    def get(self, collection, key):
        self._check("get", collection, key)
        return super().get(collection, key)

    def update(self, collection, key, fields):
        self._check("update", collection, key)
        return super().update(collection, key, fields)

    def query(self, collection, filters=None, order_by=None, limit=None):
        self._check("query", collection)
        return super().query(collection, filters, order_by, limit)

    def delete(self, collection, key):
        self._check("delete", collection, key)
        return super().delete(collection, key)


class ManualScheduler:
    """Scheduler double: jobs run only when the test calls `run_pending`."""

    def __init__(self) -> None:
        self.jobs: Dict[str, Tuple[float, Callable[[], None]]] = {}
        self.cancelled: List[str] = []

    def schedule(self, key, delay, callback):
        self.jobs[key] = (delay, callback)

    def cancel(self, key):
        if self.jobs.pop(key, None) is None:
            return False
        self.cancelled.append(key)
        return True

    def pending(self, key):
        return key in self.jobs

    def delay_for(self, key):
        return self.jobs[key][0]

    def run_pending(self, key=None):
        keys = [key] if key is not None else list(self.jobs)
        for k in keys:
            _, callback = self.jobs.pop(k)
            callback()


class RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: List[Tuple[str, OrderStatus]] = []

    def notify_status_change(self, order, new_status):
        self.sent.append((order.id, new_status))
        if self.fail:
            raise RuntimeError("notification gateway down")


class FakePrescriptionService:
    def __init__(self, succeed: bool = True) -> None:
        self.succeed = succeed
        self.calls: List[str] = []

    def issue_prescription(self, order):
        self.calls.append(order.id)
        if not self.succeed:
            return PrescriptionResult(success=False, error="prescriber rejected request")
        return PrescriptionResult(success=True, prescription_id=f"presc_{len(self.calls)}")


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def tick(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return FailingRecordStore()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def prescriptions():
    return FakePrescriptionService()


@pytest.fixture
def engine(store, notifier, prescriptions, scheduler, clock):
    return WorkflowEngine(store, notifier=notifier, prescriptions=prescriptions, scheduler=scheduler, clock=clock)


@pytest.fixture
def builder(store, engine, clock):
    return OrderBundleBuilder(store, engine, clock=clock)


@pytest.fixture
def subscriptions(store, clock):
    return SubscriptionService(store, clock=clock)


@pytest.fixture
def make_order():
    def _make(order_id="order_test", requires_prescription=True, **kwargs):
        return Order(id=order_id, patient_id="patient_1", requires_prescription=requires_prescription, **kwargs)

    return _make


@pytest.fixture
def basic_plan():
    return SubscriptionPlan(id="plan_basic", name="Basic care", amount=30.0)


@pytest.fixture
def premium_plan():
    return SubscriptionPlan(id="plan_premium", name="Premium care", amount=90.0)


@pytest.fixture
def rx_product():
    return OrderProduct(id="prod_rx", name="Finasteride 1mg", price=25.0, requires_prescription=True)


@pytest.fixture
def otc_product():
    return OrderProduct(id="prod_otc", name="Biotin gummies", price=12.5, quantity=2)
