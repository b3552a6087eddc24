"""Shared fixtures for the payments backend tests.

All async tests run on asyncio through the AnyIO pytest plugin
(``@pytest.mark.anyio``). Nothing here talks to a real gateway, Firestore
or Redis.
"""

import asyncio
import copy
import uuid
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest
from google.api_core.exceptions import AlreadyExists, FailedPrecondition

from app.models.order_model import Address, OrderItem, PendingOrder
from app.models.payment_model import Customer, PaymentInitiation, PaymentStatus
from app.services.order_submitter import OrderSubmitter
from app.services.payment_session import PaymentSession
from app.services.pending_order_store import FilePendingOrderStore
from app.services.record_store import RecordStoreError


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Force pytest-anyio to use asyncio event loop."""

    return "asyncio"


class FakeGateway:
    """Scripted stand-in for PaymentGatewayClient.

    ``statuses`` are returned in order by ``query_status``; an Exception in
    the list is raised instead. Once exhausted, ``default`` is returned.
    """

    def __init__(
        self,
        statuses: Optional[List[Any]] = None,
        reference: str = "ref-123",
        ussd_code: Optional[str] = "*126#",
        initiate_error: Optional[Exception] = None,
        default: PaymentStatus = PaymentStatus.PENDING,
        delay: float = 0.0,
    ) -> None:
        self.statuses = list(statuses or [])
        self.reference = reference
        self.ussd_code = ussd_code
        self.initiate_error = initiate_error
        self.default = default
        self.delay = delay
        self.gate: Optional[asyncio.Event] = None

        self.initiate_calls: List[Any] = []
        self.status_calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.verify_calls: List[Any] = []
        self.verify_result: Optional[dict] = None

    async def initiate(self, req):
        self.initiate_calls.append(req)
        if self.initiate_error is not None:
            raise self.initiate_error
        return PaymentInitiation(reference=self.reference, ussd_code=self.ussd_code)

    async def query_status(self, reference: str) -> PaymentStatus:
        self.status_calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            item = self.statuses.pop(0) if self.statuses else self.default
            if isinstance(item, Exception):
                raise item
            return item
        finally:
            self.in_flight -= 1

    async def verify(self, reference: str, order_data: Optional[dict] = None):
        self.verify_calls.append((reference, order_data))
        return self.verify_result


class MemoryRecordStore:
    """In-memory RecordStore with create-if-absent semantics."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.create_calls = 0

    async def create(self, collection, record, key=None):
        self.create_calls += 1
        if self.fail:
            raise RecordStoreError("store unavailable")
        col = self.collections.setdefault(collection, {})
        key = key or f"{collection}-{len(col) + 1}"
        if key in col:
            return col[key]
        col[key] = {**record, "id": key}
        return col[key]

    async def get(self, collection, key):
        return self.collections.get(collection, {}).get(key)

    async def update(self, collection, key, changes):
        record = self.collections[collection][key]
        record.update(changes)
        return record

    async def query(self, collection, **filters):
        return [
            r for r in self.collections.get(collection, {}).values()
            if all(r.get(k) == v for k, v in filters.items())
        ]


class BlockingRecordStore(MemoryRecordStore):
    """Holds every create() until ``release`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()
        self.waiting = 0

    async def create(self, collection, record, key=None):
        self.waiting += 1
        await self.release.wait()
        return await super().create(collection, record, key=key)


class CountingStore(FilePendingOrderStore):
    """File store that counts successful clear() calls."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.clears = 0

    async def clear(self, expected=None) -> bool:
        cleared = await super().clear(expected)
        if cleared:
            self.clears += 1
        return cleared


# ----- Firestore stand-in (document get/create/set/update/delete with update-time preconditions) -----
class FakeSnapshot:
    def __init__(self, doc_id, data, update_time) -> None:
        self.id = doc_id
        self._data = data
        self.update_time = update_time

    @property
    def exists(self) -> bool:
        return self._data is not None

    def to_dict(self):
        return copy.deepcopy(self._data)


class FakeDocument:
    def __init__(self, db, collection: str, doc_id: str) -> None:
        self.db = db
        self.collection = collection
        self.id = doc_id

    def _docs(self) -> Dict[str, Dict[str, Any]]:
        return self.db.data.setdefault(self.collection, {})

    def _write(self, data) -> None:
        self.db.clock += 1
        self._docs()[self.id] = {"data": copy.deepcopy(data), "updated": self.db.clock}

    def _check(self, option) -> None:
        entry = self._docs().get(self.id)
        if option is not None and (entry is None or entry["updated"] != option.last_update_time):
            raise FailedPrecondition("document changed")

    def get(self):
        entry = self._docs().get(self.id)
        if entry is None:
            return FakeSnapshot(self.id, None, None)
        return FakeSnapshot(self.id, entry["data"], entry["updated"])

    def create(self, data) -> None:
        if self.id in self._docs():
            raise AlreadyExists("document exists")
        self._write(data)

    def set(self, data) -> None:
        self._write(data)

    def update(self, data, option=None) -> None:
        self._check(option)
        self._write({**self._docs()[self.id]["data"], **data})

    def delete(self, option=None) -> None:
        self._check(option)
        self._docs().pop(self.id, None)


class FakeCollection:
    def __init__(self, db, name: str) -> None:
        self.db = db
        self.name = name

    def document(self, doc_id: Optional[str] = None) -> FakeDocument:
        return FakeDocument(self.db, self.name, doc_id or uuid.uuid4().hex)


class FakeFirestore:
    def __init__(self) -> None:
        self.data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.clock = 0

    def collection(self, name: str) -> FakeCollection:
        return FakeCollection(self, name)

    @staticmethod
    def write_option(**kwargs):
        return SimpleNamespace(**kwargs)


@pytest.fixture
def customer() -> Customer:
    return Customer(
        id="user-1",
        name="Awa Ngono",
        email="awa@example.cm",
        phone="650123456",
        address="Rue 1.234",
        city="Douala",
    )


@pytest.fixture
def pending_order() -> PendingOrder:
    return PendingOrder(
        items=[OrderItem(product_id="p-1", vendor_id="v-1", name="Ndolé pot", quantity=2, price=5000)],
        shipping_address=Address(full_name="Awa Ngono", address="Rue 1.234", city="Douala"),
        payment_method="mtn_mobile_money",
        subtotal=10000,
        shipping=1500,
        total_amount=11500,
    )


@pytest.fixture
def pending_store(tmp_path) -> CountingStore:
    return CountingStore("user-1", base_dir=str(tmp_path))


@pytest.fixture
def record_store() -> MemoryRecordStore:
    return MemoryRecordStore()


@pytest.fixture
def failing_record_store() -> MemoryRecordStore:
    return MemoryRecordStore(fail=True)


@pytest.fixture
def blocking_record_store() -> BlockingRecordStore:
    return BlockingRecordStore()


@pytest.fixture
def fake_db() -> FakeFirestore:
    return FakeFirestore()


@pytest.fixture
def make_session(customer, pending_store, record_store):
    """Factory for sessions with short intervals and fake collaborators."""

    def factory(gateway: FakeGateway, **overrides) -> PaymentSession:
        kwargs = dict(
            amount=11500,
            order_id="order-42",
            customer=customer,
            gateway=gateway,
            pending_orders=pending_store,
            submitter=OrderSubmitter(record_store),
            vendor_id="v-1",
            poll_interval=0.01,
            deadline_seconds=0.5,
        )
        kwargs.update(overrides)
        return PaymentSession(**kwargs)

    return factory


@pytest.fixture
def make_gateway():
    return FakeGateway
