"""Record store behind a narrow get/upsert/list interface.

The engine never depends on a concrete storage engine. ``MemoryStore`` is the
thread-safe default; ``JsonFileStore`` persists the same tables to a JSON file
for the command line.
"""

from __future__ import annotations

import json
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional, TypeVar

from loguru import logger
from pydantic import BaseModel, ValidationError

from topomapper.exceptions import StoreError
from topomapper.models import (
    Credential,
    Device,
    DeviceMac,
    DhcpLease,
    FailedCredential,
    Interface,
    MatchedDevice,
    Network,
    Scan,
    ScanLog,
)

T = TypeVar("T", bound=BaseModel)

RECORD_TYPES: dict[str, type[BaseModel]] = {
    cls.__name__: cls
    for cls in (
        Network,
        Device,
        DeviceMac,
        Interface,
        Credential,
        MatchedDevice,
        FailedCredential,
        Scan,
        ScanLog,
        DhcpLease,
    )
}


class RecordStore(ABC):
    """Abstract record store keyed by model type and record id."""

    @abstractmethod
    def get(self, model: type[T], record_id: str) -> Optional[T]:
        """Return the record with ``record_id`` or None."""

    @abstractmethod
    def upsert(self, record: T) -> T:
        """Insert or replace a record by id."""

    @abstractmethod
    def delete(self, model: type[BaseModel], record_id: str) -> bool:
        """Delete one record. Returns True if it existed."""

    @abstractmethod
    def list(self, model: type[T], **filters: Any) -> list[T]:
        """Return records in insertion order whose fields equal ``filters``."""

    def find_one(self, model: type[T], **filters: Any) -> Optional[T]:
        found = self.list(model, **filters)
        return found[0] if found else None

    def list_by_network(self, model: type[T], network_id: str) -> list[T]:
        return self.list(model, network_id=network_id)

    def delete_where(self, model: type[BaseModel], **filters: Any) -> int:
        records = self.list(model, **filters)
        for record in records:
            self.delete(model, record.id)  # type: ignore[attr-defined]
        return len(records)

    def get_by_mac(self, mac: str) -> Optional[Device]:
        """Find a device by its primary MAC, falling back to secondary MACs."""
        mac = mac.upper()
        device = self.find_one(Device, mac=mac)
        if device is not None:
            return device
        secondary = self.find_one(DeviceMac, mac=mac)
        if secondary is not None:
            return self.get(Device, secondary.device_id)
        return None


class MemoryStore(RecordStore):
    """In-process store. Records are copied on the way in and out."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._tables: dict[str, dict[str, BaseModel]] = {}

    def _table(self, model: type[BaseModel]) -> dict[str, BaseModel]:
        return self._tables.setdefault(model.__name__, {})

    def get(self, model: type[T], record_id: str) -> Optional[T]:
        with self._lock:
            record = self._table(model).get(record_id)
            return record.model_copy(deep=True) if record is not None else None  # type: ignore[return-value]

    def upsert(self, record: T) -> T:
        with self._lock:
            self._table(type(record))[record.id] = record.model_copy(deep=True)  # type: ignore[attr-defined]
        return record

    def delete(self, model: type[BaseModel], record_id: str) -> bool:
        with self._lock:
            return self._table(model).pop(record_id, None) is not None

    def list(self, model: type[T], **filters: Any) -> list[T]:
        with self._lock:
            return [
                record.model_copy(deep=True)  # type: ignore[misc]
                for record in self._table(model).values()
                if all(getattr(record, k) == v for k, v in filters.items())
            ]

    def dump(self) -> dict[str, list[dict[str, Any]]]:
        with self._lock:
            return {
                name: [record.model_dump(mode="json") for record in table.values()]
                for name, table in self._tables.items()
            }

    def load(self, data: dict[str, list[dict[str, Any]]]) -> None:
        with self._lock:
            for name, rows in data.items():
                model = RECORD_TYPES.get(name)
                if model is None:
                    logger.warning(f"Ignoring unknown table {name!r}")
                    continue
                table = self._table(model)
                for row in rows:
                    record = model.model_validate(row)
                    table[record.id] = record  # type: ignore[attr-defined]


class JsonFileStore(MemoryStore):
    """MemoryStore that loads from and flushes to one JSON file."""

    def __init__(self, path: str | Path):
        super().__init__()
        self.path = Path(path)
        if self.path.exists():
            try:
                self.load(json.loads(self.path.read_text(encoding="utf-8")))
            except (OSError, ValueError, ValidationError) as e:
                raise StoreError(f"Cannot read state file {self.path}: {e}") from e
            logger.debug(f"Loaded state from {self.path}")

    def flush(self) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            tmp.write_text(json.dumps(self.dump(), indent=2), encoding="utf-8")
            tmp.replace(self.path)
        except OSError as e:
            raise StoreError(f"Cannot write state file {self.path}: {e}") from e
        logger.debug(f"Flushed state to {self.path}")
