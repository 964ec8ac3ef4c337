"""
Client-local persisted state

KeyValueStore is the storage capability injected into the proctoring layer.
JsonFileStore keeps a single JSON object on disk and rewrites it on every
write (last write wins; there is one writer per process).
"""

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from schoolportal.logging_config import logger


class KeyValueStore(ABC):
    """Minimal string-keyed store"""

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        ...

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def items(self) -> Iterator[Tuple[str, Any]]:
        ...


class MemoryStore(KeyValueStore):
    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def items(self) -> Iterator[Tuple[str, Any]]:
        return iter(list(self._data.items()))


class JsonFileStore(KeyValueStore):
    """Store backed by one JSON file"""

    def __init__(self, path: str):
        self.path = Path(path)
        self._data: Dict[str, Any] = {}
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
            if isinstance(data, dict):
                self._data = data
            else:
                logger.warning(f"Ignoring malformed store file {self.path}")
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load store {self.path}: {e}")

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump(self._data, f, indent=2)

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._flush()

    def delete(self, key: str) -> None:
        if key in self._data:
            del self._data[key]
            self._flush()

    def items(self) -> Iterator[Tuple[str, Any]]:
        return iter(list(self._data.items()))


class CompromiseRegistry:
    """
    Durable per-test Compromise Flags.

    Keys are test ids rendered as strings. The student-facing client only
    ever sets flags; clearing one is a teacher action on the server.
    """

    def __init__(self, store: KeyValueStore):
        self.store = store

    def is_compromised(self, test_id: Any) -> bool:
        return bool(self.store.get(str(test_id), False))

    def mark(self, test_id: Any) -> None:
        if not self.is_compromised(test_id):
            logger.log_integrity_event(test_id, "flag_persisted")
        self.store.set(str(test_id), True)

    def compromised_ids(self) -> List[str]:
        return sorted(key for key, value in self.store.items() if value)
