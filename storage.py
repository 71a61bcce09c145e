"""
Key-value storage for the ledger collections.

Every record type lives in its own ordered collection, identified by a
numeric slot. Values are plain dicts; monetary values are kept as Decimal
in memory and written as strings to disk.
"""

import json
import os
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

logger = structlog.get_logger()


class Slot(IntEnum):
    CUSTOMERS = 0
    ACCOUNTS = 1
    TRANSACTIONS = 2
    LOANS = 3
    IDEMPOTENCY = 4


class KeyValueStore(ABC):
    @abstractmethod
    def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Get a record by key. Returns None if the key is absent."""
        pass

    @abstractmethod
    def insert(self, key: str, value: Dict[str, Any]) -> None:
        """Insert or replace the record stored under key."""
        pass

    @abstractmethod
    def values(self) -> List[Dict[str, Any]]:
        """All records, in insertion order."""
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete a record. Returns False if the key was absent."""
        pass

    @abstractmethod
    def __len__(self) -> int:
        pass


class InMemoryStore(KeyValueStore):
    def __init__(self):
        self.records: Dict[str, Dict[str, Any]] = {}

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        record = self.records.get(key)
        return dict(record) if record is not None else None

    def insert(self, key: str, value: Dict[str, Any]) -> None:
        self.records[key] = dict(value)

    def values(self) -> List[Dict[str, Any]]:
        return [dict(record) for record in self.records.values()]

    def delete(self, key: str) -> bool:
        return self.records.pop(key, None) is not None

    def __len__(self) -> int:
        return len(self.records)

    def clear(self) -> None:
        """Clear all records (for testing)."""
        self.records.clear()


def _encode(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class JsonFileStore(InMemoryStore):
    """In-memory store mirrored to a JSON file.

    The whole collection is rewritten on every mutation through a temporary
    file and ``os.replace``, so a crash never leaves a half-written file.
    """

    def __init__(self, path: Path):
        super().__init__()
        self.path = Path(path)
        if self.path.exists():
            with self.path.open(encoding="utf-8") as fh:
                self.records = json.load(fh)
            logger.debug("Collection loaded", path=str(self.path), records=len(self.records))

    def insert(self, key: str, value: Dict[str, Any]) -> None:
        staged = dict(self.records)
        staged[key] = dict(value)
        self._commit(staged)

    def delete(self, key: str) -> bool:
        if key not in self.records:
            return False
        staged = dict(self.records)
        del staged[key]
        self._commit(staged)
        return True

    def clear(self) -> None:
        self._commit({})

    def _commit(self, staged: Dict[str, Dict[str, Any]]) -> None:
        # Memory only changes once the file holds the staged records
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        with tmp_path.open("w", encoding="utf-8") as fh:
            json.dump(staged, fh, default=_encode)
        os.replace(tmp_path, self.path)
        self.records = staged


def open_store(slot: Slot, storage_dir: Optional[str] = None) -> KeyValueStore:
    """Open the collection for a slot, file-backed when storage_dir is given."""
    if storage_dir is None:
        return InMemoryStore()
    return JsonFileStore(Path(storage_dir) / f"collection_{int(slot)}.json")
