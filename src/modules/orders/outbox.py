"""Pending-write outbox.

Remote writes that failed with a transient ``NetworkError`` are queued
here and replayed in FIFO order on the next successful reload.  Entries
are persisted through the order store so they survive a restart.

Workflow:
1. The facade applies the write optimistically and enqueues it.
2. ``ReconciliationEngine.flush_outbox`` replays entries oldest first.
3. On success the entry is removed and the local record confirmed.
4. On a transient failure the entry stays, ``retry_count`` increments
   and the flush stops to preserve ordering.
5. On a hard failure the entry is dropped and the write rolled back.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

import structlog
import uuid6
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from modules.orders.models import utcnow
from modules.orders.repositories.interfaces import IOrderStore

logger = structlog.get_logger(__name__)


class PendingWrite(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    entry_id: str = Field(default_factory=lambda: str(uuid6.uuid7()))
    kind: Literal["create", "update_status"]
    order_id: str
    payload: Dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utcnow)
    retry_count: int = 0
    last_error: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.kind} ({self.order_id}) retries={self.retry_count}"


class PendingWriteOutbox:
    """FIFO queue of pending remote writes, persisted via the store."""

    def __init__(self, store: IOrderStore) -> None:
        self._store = store
        self._entries: List[PendingWrite] = []

    def load(self) -> None:
        entries = []
        for raw in self._store.load_outbox():
            try:
                entries.append(PendingWrite.model_validate(raw))
            except ValidationError as exc:
                logger.warning("outbox.entry_skipped", error=str(exc))
        self._entries = entries
        logger.info("outbox.loaded", pending=len(entries))

    def __len__(self) -> int:
        return len(self._entries)

    def entries(self) -> List[PendingWrite]:
        return list(self._entries)

    def has_pending(self, order_id: str) -> bool:
        return any(entry.order_id == order_id for entry in self._entries)

    def enqueue(self, kind: str, order_id: str, payload: Dict[str, Any]) -> PendingWrite:
        entry = PendingWrite(kind=kind, order_id=order_id, payload=payload)
        self._entries.append(entry)
        self._save()
        logger.info("outbox.enqueued", kind=kind, order_id=order_id, pending=len(self._entries))
        return entry

    def remove(self, entry_id: str) -> None:
        self._entries = [e for e in self._entries if e.entry_id != entry_id]
        self._save()

    def mark_failed(self, entry_id: str, error: str) -> None:
        self._entries = [
            e.model_copy(update={"retry_count": e.retry_count + 1, "last_error": error})
            if e.entry_id == entry_id
            else e
            for e in self._entries
        ]
        self._save()

    def retarget(self, old_id: str, new_id: str) -> None:
        """Point entries queued for a provisional id at the server id."""
        self._entries = [
            e.model_copy(update={"order_id": new_id}) if e.order_id == old_id else e
            for e in self._entries
        ]
        self._save()

    def drop_for(self, order_id: str) -> List[PendingWrite]:
        """Remove and return every entry queued for *order_id*."""
        dropped = [e for e in self._entries if e.order_id == order_id]
        if dropped:
            self._entries = [e for e in self._entries if e.order_id != order_id]
            self._save()
        return dropped

    def _save(self) -> None:
        self._store.save_outbox([entry.model_dump(mode="json") for entry in self._entries])
