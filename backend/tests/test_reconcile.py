import pytest

from app.core.errors import SubmissionFailed
from app.services.pending_order_store import PENDING_ORDERS_COLLECTION, FirestorePendingOrderStore
from app.tasks.reconcile import retry_pending_order


@pytest.mark.anyio
async def test_nothing_staged(anyio_backend, make_gateway, pending_store, record_store):
    result = await retry_pending_order("user-1", make_gateway(), pending_store, record_store)
    assert result == {"status": "nothing_to_do"}


@pytest.mark.anyio
async def test_staged_order_without_payment_is_left_alone(
    anyio_backend, make_gateway, pending_store, record_store, pending_order
):
    await pending_store.save(pending_order)
    gateway = make_gateway()

    result = await retry_pending_order("user-1", gateway, pending_store, record_store)

    assert result == {"status": "awaiting_payment"}
    assert gateway.verify_calls == []
    assert (await pending_store.load()) is not None


@pytest.mark.anyio
async def test_verify_creates_order(anyio_backend, make_gateway, pending_store, record_store, pending_order):
    await pending_store.save(pending_order.model_copy(update={"payment_reference": "ref-5"}))
    gateway = make_gateway()
    gateway.verify_result = {"id": "o-55"}

    result = await retry_pending_order("user-1", gateway, pending_store, record_store)

    assert result == {"status": "created", "order_id": "o-55", "via": "verify"}
    reference, order_data = gateway.verify_calls[0]
    assert reference == "ref-5"
    assert "paymentReference" not in order_data
    assert record_store.create_calls == 0
    assert (await pending_store.load()) is None


@pytest.mark.anyio
async def test_falls_back_to_direct_submission(anyio_backend, make_gateway, pending_store, record_store, pending_order):
    await pending_store.save(pending_order.model_copy(update={"payment_reference": "ref-5"}))

    result = await retry_pending_order("user-1", make_gateway(), pending_store, record_store)

    assert result["status"] == "created"
    assert result["via"] == "orders"
    assert record_store.create_calls == 1
    assert (await pending_store.load()) is None


@pytest.mark.anyio
async def test_submission_failure_keeps_order(
    anyio_backend, make_gateway, pending_store, failing_record_store, pending_order
):
    await pending_store.save(pending_order.model_copy(update={"payment_reference": "ref-5"}))

    with pytest.raises(SubmissionFailed):
        await retry_pending_order("user-1", make_gateway(), pending_store, failing_record_store)

    assert (await pending_store.load()).payment_reference == "ref-5"


@pytest.mark.anyio
async def test_retry_reads_the_shared_firestore_slot(anyio_backend, make_gateway, fake_db, record_store, pending_order):
    # staged by the web process, retried by a worker holding its own store instance
    await FirestorePendingOrderStore("user-1", db=fake_db).save(
        pending_order.model_copy(update={"payment_reference": "ref-5"})
    )

    worker_store = FirestorePendingOrderStore("user-1", db=fake_db)
    result = await retry_pending_order("user-1", make_gateway(), worker_store, record_store)

    assert result["status"] == "created"
    assert record_store.create_calls == 1
    assert "user-1" not in fake_db.data[PENDING_ORDERS_COLLECTION]

def test_celery_task_runs_retry(monkeypatch):
    from app.tasks import reconcile_celery

    calls = []

    async def fake_retry(user_id, gateway, pending_orders, record_store):
        calls.append((user_id, pending_orders.context_id))
        return {"status": "nothing_to_do"}

    monkeypatch.setattr(reconcile_celery, "retry_pending_order", fake_retry)

    assert reconcile_celery.retry_pending_order_task("user-9") == {"status": "nothing_to_do"}
    assert calls == [("user-9", "user-9")]
