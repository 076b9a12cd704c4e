"""JSON-file implementation of the order store.

Layout inside ``cache_dir``:

- ``orders.json``   flat list of records, one per ``order_id``, in
  insertion order (see ``OrderRecord.to_flat``)
- ``aliases.json``  ``{provisional_id: server_id}``
- ``outbox.json``   pending-write entries awaiting retry

Every write goes to a temporary file that then replaces the target, so a
crash never leaves a half-written file.  Write-through: a record is
persisted before it becomes visible to readers.  When the disk write
fails the failure is logged as ``StorageError`` and the in-memory state
stays authoritative (durability degraded, availability preserved).
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
from pydantic import ValidationError

from modules.orders.exceptions import StorageError
from modules.orders.models import OrderRecord
from modules.orders.repositories.interfaces import IOrderStore

logger = structlog.get_logger(__name__)

ORDERS_FILE = "orders.json"
ALIASES_FILE = "aliases.json"
OUTBOX_FILE = "outbox.json"


class OrderJsonRepository(IOrderStore):
    """Order store backed by JSON files in a cache directory."""

    def __init__(self, cache_dir: Path | str) -> None:
        self._dir = Path(cache_dir)
        self._records: Dict[str, OrderRecord] = {}
        self._aliases: Dict[str, str] = {}
        self.durable = True

    # ------------------------------------------------------------------
    # Cold start
    # ------------------------------------------------------------------

    def load(self) -> None:
        records: Dict[str, OrderRecord] = {}
        for raw in self._read_json(ORDERS_FILE, default=[]):
            try:
                record = OrderRecord.from_flat(raw)
            except (ValidationError, TypeError) as exc:
                logger.warning(
                    "store.record_skipped",
                    order_id=raw.get("order_id") if isinstance(raw, dict) else None,
                    error=str(exc),
                )
                continue
            records[record.order_id] = record

        self._records = records
        self._aliases = dict(self._read_json(ALIASES_FILE, default={}))
        logger.info("store.loaded", order_count=len(records), alias_count=len(self._aliases))

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def resolve_id(self, id: str) -> str:
        return self._aliases.get(id, id)

    def get_by_id(self, id: str) -> Optional[OrderRecord]:
        return self._records.get(self.resolve_id(id))

    def list(self, filters: Optional[Dict[str, Any]] = None) -> List[OrderRecord]:
        filters = dict(filters or {})
        include_tombstoned = filters.pop("include_tombstoned", False)
        results = []
        for record in self._records.values():
            if record.tombstoned and not include_tombstoned:
                continue
            order = record.order
            if any(getattr(order, key) != value for key, value in filters.items()):
                continue
            results.append(record)
        return results

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def save(self, entity: OrderRecord) -> OrderRecord:
        """Persist (create or update) a record, then expose it."""
        updated = dict(self._records)
        updated[entity.order_id] = entity
        self._persist_orders(updated)
        self._records = updated
        return entity

    def delete(self, id: str) -> bool:
        """Tombstone a record.  History is kept on disk."""
        record = self.get_by_id(id)
        if record is None:
            return False
        if not record.tombstoned:
            self.save(record.model_copy(update={"tombstoned": True}))
            logger.info("store.tombstoned", order_id=record.order_id)
        return True

    def rekey(self, old_id: str, record: OrderRecord) -> OrderRecord:
        updated: Dict[str, OrderRecord] = {}
        for key, value in self._records.items():
            if key == old_id:
                updated[record.order_id] = record
            elif key != record.order_id:
                updated[key] = value
        if record.order_id not in updated:
            updated[record.order_id] = record

        aliases = {k: v for k, v in self._aliases.items()}
        for alias, target in aliases.items():
            if target == old_id:
                aliases[alias] = record.order_id
        aliases[old_id] = record.order_id

        self._persist_orders(updated)
        self._persist(ALIASES_FILE, aliases)
        self._records = updated
        self._aliases = aliases
        logger.info("store.rekeyed", old_id=old_id, order_id=record.order_id)
        return record

    # ------------------------------------------------------------------
    # Outbox
    # ------------------------------------------------------------------

    def load_outbox(self) -> List[Dict[str, Any]]:
        return list(self._read_json(OUTBOX_FILE, default=[]))

    def save_outbox(self, entries: List[Dict[str, Any]]) -> None:
        self._persist(OUTBOX_FILE, entries)

    # ------------------------------------------------------------------
    # File helpers
    # ------------------------------------------------------------------

    def _persist_orders(self, records: Dict[str, OrderRecord]) -> None:
        self._persist(ORDERS_FILE, [record.to_flat() for record in records.values()])

    def _persist(self, name: str, payload: Any) -> None:
        try:
            self._write_json(name, payload)
        except StorageError as exc:
            self.durable = False
            logger.error("store.persist_failed", file=name, error=str(exc))
        else:
            self.durable = True

    def _write_json(self, name: str, payload: Any) -> None:
        target = self._dir / name
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self._dir, prefix=f".{name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(payload, fh, ensure_ascii=False)
                os.replace(tmp_path, target)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except (OSError, TypeError, ValueError) as exc:
            raise StorageError(f"Cannot write {target}: {exc}") from exc

    def _read_json(self, name: str, default: Any) -> Any:
        path = self._dir / name
        if not path.exists():
            return default
        try:
            with path.open(encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as exc:
            corrupt = path.with_suffix(path.suffix + ".corrupt")
            logger.error("store.unreadable", file=name, error=str(exc), moved_to=str(corrupt))
            try:
                os.replace(path, corrupt)
            except OSError as move_exc:
                logger.error("store.quarantine_failed", file=name, error=str(move_exc))
            return default
        if not isinstance(data, type(default)):
            logger.error("store.unexpected_layout", file=name)
            return default
        return data
