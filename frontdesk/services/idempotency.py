"""
Idempotency keys and the store that answers replays.

Every mutating backend call carries a key. The store keeps the answer next to
the key: a replay with the same payload returns the stored snapshot and the
backend is not called again.
"""

from __future__ import annotations

import abc
import hashlib
import json
import random
import string
import time
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from frontdesk.core.errors import IdempotencyConflictError
from frontdesk.models.base import _utcnow
from frontdesk.models.idempotency import IdempotencyRecord
from frontdesk.utils.locks import KeyedLock

KEY_PREFIXES = {
    "distribution": "dist",
    "payment": "pay",
    "close": "close",
}

_ALPHABET = string.ascii_lowercase + string.digits

ComputeFn = Callable[[], Awaitable[Dict[str, Any]]]


def generate_key(operation: str) -> str:
    """Timestamp plus random suffix, e.g. pay-1718035200123-k3j9x0a1bc."""
    prefix = KEY_PREFIXES.get(operation)
    if prefix is None:
        raise ValueError(f"Unknown operation kind: {operation}")
    suffix = "".join(random.choices(_ALPHABET, k=10))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


def canonical_json(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), sort_keys=True, ensure_ascii=False, default=str)


def compute_request_hash(operation: str, folio_id: str, payload: Dict[str, Any]) -> str:
    raw = f"{operation}|{folio_id}|{canonical_json(payload)}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class IdempotencyStore(abc.ABC):
    @abc.abstractmethod
    async def get(self, key: str) -> Optional[IdempotencyRecord]:
        raise NotImplementedError

    @abc.abstractmethod
    async def store_or_replay(
        self,
        *,
        key: str,
        operation: str,
        folio_id: str,
        payload: Dict[str, Any],
        compute: ComputeFn,
    ) -> Tuple[Dict[str, Any], bool]:
        """Return (response_snapshot, replayed)."""
        raise NotImplementedError


def _check_same_request(record: IdempotencyRecord, request_hash: str) -> None:
    if record.request_hash != request_hash:
        raise IdempotencyConflictError(record.key, record.operation)


class InMemoryIdempotencyStore(IdempotencyStore):
    """Process-local store. One lock per key so a replay waits for the first call."""

    def __init__(self, ttl_hours: int = 24):
        self._records: Dict[str, IdempotencyRecord] = {}
        self._locks = KeyedLock()
        self._ttl = timedelta(hours=ttl_hours)

    async def get(self, key: str) -> Optional[IdempotencyRecord]:
        record = self._records.get(key)
        if record and record.expires_at and record.expires_at <= _utcnow():
            del self._records[key]
            return None
        return record

    def _purge_expired(self) -> None:
        now = _utcnow()
        expired = [key for key, record in self._records.items() if record.expires_at and record.expires_at <= now]
        for key in expired:
            del self._records[key]

    async def store_or_replay(self, *, key, operation, folio_id, payload, compute):
        request_hash = compute_request_hash(operation, folio_id, payload)
        async with self._locks.hold(key):
            existing = await self.get(key)
            if existing:
                _check_same_request(existing, request_hash)
                return existing.response_snapshot, True

            snapshot = await compute()
            self._purge_expired()
            now = _utcnow()
            self._records[key] = IdempotencyRecord(
                key=key,
                operation=operation,
                folio_id=folio_id,
                request_hash=request_hash,
                response_snapshot=snapshot,
                created_at=now,
                expires_at=now + self._ttl,
            )
            return snapshot, False
