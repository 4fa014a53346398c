"""
MongoIdempotencyRepository - idempotency records in MongoDB.

Collection: idempotency_keys
- unique index on key
- TTL index on expires_at
"""

from datetime import timedelta
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from frontdesk.core.errors import IdempotencyConflictError
from frontdesk.models.base import _utcnow
from frontdesk.models.idempotency import IdempotencyRecord
from frontdesk.services.idempotency import IdempotencyStore, compute_request_hash

DEFAULT_TTL_HOURS = 24


class MongoIdempotencyRepository(IdempotencyStore):
    """Idempotency store shared by every API worker."""

    def __init__(self, db: AsyncIOMotorDatabase, ttl_hours: int = DEFAULT_TTL_HOURS):
        self.db = db
        self.collection = db["idempotency_keys"]
        self.ttl_hours = ttl_hours

    async def get(self, key: str) -> Optional[IdempotencyRecord]:
        doc = await self.collection.find_one({"key": key})
        if not doc:
            return None
        doc.pop("_id", None)
        return IdempotencyRecord(**doc)

    async def store_or_replay(self, *, key, operation, folio_id, payload, compute):
        request_hash = compute_request_hash(operation, folio_id, payload)

        existing = await self.get(key)
        if existing:
            if existing.request_hash != request_hash:
                raise IdempotencyConflictError(key, operation)
            return existing.response_snapshot, True

        snapshot = await compute()

        now = _utcnow()
        record = IdempotencyRecord(
            key=key,
            operation=operation,
            folio_id=folio_id,
            request_hash=request_hash,
            response_snapshot=snapshot,
            created_at=now,
            expires_at=now + timedelta(hours=self.ttl_hours),
        )
        try:
            await self.collection.insert_one(record.model_dump())
            return snapshot, False
        except DuplicateKeyError:
            # Another worker stored the same key first; its answer wins.
            winner = await self.get(key)
            if winner is None:
                raise
            if winner.request_hash != request_hash:
                raise IdempotencyConflictError(key, operation)
            return winner.response_snapshot, True


async def ensure_idempotency_indexes(db: AsyncIOMotorDatabase) -> None:
    await db["idempotency_keys"].create_index("key", unique=True, name="uniq_idem_key")
    await db["idempotency_keys"].create_index(
        "expires_at", expireAfterSeconds=0, name="ttl_idem_expires"
    )
