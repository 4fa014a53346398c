import asyncio
import re
from datetime import timedelta

import pytest

from frontdesk.core.errors import IdempotencyConflictError
from frontdesk.services.idempotency import (
    InMemoryIdempotencyStore,
    compute_request_hash,
    generate_key,
)


@pytest.mark.parametrize(
    "operation,prefix",
    [("distribution", "dist"), ("payment", "pay"), ("close", "close")],
)
def test_generate_key_format(operation, prefix):
    key = generate_key(operation)

    assert re.fullmatch(rf"{prefix}-\d{{13}}-[a-z0-9]{{10}}", key)


def test_generated_keys_are_unique():
    keys = {generate_key("payment") for _ in range(500)}

    assert len(keys) == 500


def test_generate_key_rejects_unknown_operation():
    with pytest.raises(ValueError):
        generate_key("refund")


def test_request_hash_ignores_key_order():
    a = compute_request_hash("payment", "1", {"amount": 50.0, "method": "card"})
    b = compute_request_hash("payment", "1", {"method": "card", "amount": 50.0})

    assert a == b
    assert a != compute_request_hash("payment", "2", {"amount": 50.0, "method": "card"})


@pytest.mark.asyncio
async def test_replay_returns_stored_snapshot_without_recomputing():
    store = InMemoryIdempotencyStore()
    calls = []

    async def compute():
        calls.append(1)
        return {"paid": 50.0}

    first = await store.store_or_replay(
        key="pay-123", operation="payment", folio_id="1", payload={"amount": 50.0}, compute=compute
    )
    second = await store.store_or_replay(
        key="pay-123", operation="payment", folio_id="1", payload={"amount": 50.0}, compute=compute
    )

    assert first == ({"paid": 50.0}, False)
    assert second == ({"paid": 50.0}, True)
    assert len(calls) == 1
    record = await store.get("pay-123")
    assert record.operation == "payment"


@pytest.mark.asyncio
async def test_key_reuse_with_different_payload_conflicts():
    store = InMemoryIdempotencyStore()

    async def compute():
        return {}

    await store.store_or_replay(
        key="pay-123", operation="payment", folio_id="1", payload={"amount": 50.0}, compute=compute
    )
    with pytest.raises(IdempotencyConflictError):
        await store.store_or_replay(
            key="pay-123", operation="payment", folio_id="1", payload={"amount": 60.0}, compute=compute
        )


@pytest.mark.asyncio
async def test_concurrent_calls_with_same_key_compute_once():
    store = InMemoryIdempotencyStore()
    calls = []

    async def compute():
        calls.append(1)
        await asyncio.sleep(0.01)
        return {"ok": True}

    results = await asyncio.gather(
        *[
            store.store_or_replay(key="close-1", operation="close", folio_id="1", payload={}, compute=compute)
            for _ in range(3)
        ]
    )

    assert len(calls) == 1
    assert sorted(replayed for _, replayed in results) == [False, True, True]


@pytest.mark.asyncio
async def test_failed_compute_stores_nothing():
    store = InMemoryIdempotencyStore()

    async def compute():
        raise RuntimeError("backend down")

    with pytest.raises(RuntimeError):
        await store.store_or_replay(key="pay-1", operation="payment", folio_id="1", payload={}, compute=compute)

    assert await store.get("pay-1") is None


@pytest.mark.asyncio
async def test_expired_record_is_dropped():
    store = InMemoryIdempotencyStore()

    async def compute():
        return {}

    await store.store_or_replay(key="pay-1", operation="payment", folio_id="1", payload={}, compute=compute)
    record = await store.get("pay-1")
    record.expires_at = record.created_at - timedelta(seconds=1)

    assert await store.get("pay-1") is None


@pytest.mark.asyncio
async def test_key_locks_are_released_once_stored():
    store = InMemoryIdempotencyStore()

    async def compute():
        await asyncio.sleep(0.01)
        return {}

    await asyncio.gather(
        *[
            store.store_or_replay(key=f"pay-{i % 2}", operation="payment", folio_id="1", payload={}, compute=compute)
            for i in range(4)
        ]
    )

    assert len(store._locks) == 0


@pytest.mark.asyncio
async def test_expired_records_are_purged_when_storing():
    store = InMemoryIdempotencyStore()

    async def compute():
        return {}

    await store.store_or_replay(key="pay-1", operation="payment", folio_id="1", payload={}, compute=compute)
    store._records["pay-1"].expires_at = store._records["pay-1"].created_at - timedelta(seconds=1)

    await store.store_or_replay(key="pay-2", operation="payment", folio_id="1", payload={}, compute=compute)

    assert list(store._records) == ["pay-2"]
