"""
Idempotency record - the stored answer to one mutating operation.

One record per key. A replay with the same request hash is answered from
response_snapshot without calling the backend again.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import Field

from frontdesk.models.base import DomainModel, _utcnow


class IdempotencyRecord(DomainModel):
    key: str
    operation: str  # distribution | payment | close
    folio_id: str
    request_hash: str
    response_snapshot: Dict[str, Any]
    created_at: datetime = Field(default_factory=_utcnow)
    expires_at: Optional[datetime] = None
