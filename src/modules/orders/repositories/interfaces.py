"""Order store interface.

Extends ``IRepository[OrderRecord]`` with what the synchronization core
needs beyond plain CRUD: provisional-id re-keying, id aliases and the
persisted pending-write outbox.

``ReconciliationEngine`` is the only writer; everything else reads.
Reads are synchronous in-memory lookups.
"""

from __future__ import annotations

from abc import abstractmethod
from typing import Any, Dict, List, Optional

from modules.core.repositories.interfaces import IRepository
from modules.orders.models import OrderRecord


class IOrderStore(IRepository[OrderRecord]):
    """Durable ``order_id -> OrderRecord`` mapping.

    Orders are never physically removed: ``delete`` tombstones the record
    so it leaves the visible set while its history stays on disk.
    """

    @abstractmethod
    def load(self) -> None:
        """Populate memory from durable storage (cold start)."""

    @abstractmethod
    def get_by_id(self, id: str) -> Optional[OrderRecord]:
        """Retrieve a record by id, following provisional-id aliases."""

    @abstractmethod
    def list(self, filters: Optional[Dict[str, Any]] = None) -> List[OrderRecord]:
        """List records.

        Supported filter keys:
        - ``status``
        - ``cook_id``
        - ``customer_id``
        - ``include_tombstoned`` (default ``False``)
        """

    @abstractmethod
    def rekey(self, old_id: str, record: OrderRecord) -> OrderRecord:
        """Replace the record stored under *old_id* with *record*.

        Used when a provisional order is confirmed under its server id;
        *old_id* stays resolvable as an alias.
        """

    @abstractmethod
    def resolve_id(self, id: str) -> str:
        """Return the current id for *id* (identity unless aliased)."""

    @abstractmethod
    def load_outbox(self) -> List[Dict[str, Any]]:
        """Return the persisted pending-write entries."""

    @abstractmethod
    def save_outbox(self, entries: List[Dict[str, Any]]) -> None:
        """Persist the pending-write entries."""
