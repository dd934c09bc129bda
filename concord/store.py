"""Key-value persistence port for Concord state.

Two implementations share the same four operations (get/set/delete/list by
prefix): an in-memory store used by tests and ephemeral runs, and a
file-backed store that keeps one JSON document per key under the data dir.
Missing or corrupt documents read as absent; they are never fatal.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List
import copy
import json
import logging
import threading
try:
    import fcntl  # type: ignore
except Exception:  # pragma: no cover - non-POSIX environments
    fcntl = None

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
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
    def list_prefix(self, prefix: str) -> List[str]:
        ...

    def update(self, key: str, updater: Callable[[Any], Any], default: Any = None) -> Any:
        """Read-modify-write a single key."""
        value = updater(self.get(key, default))
        self.set(key, value)
        return value


class MemoryStore(KeyValueStore):
    def __init__(self) -> None:
        self._data: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            if key not in self._data:
                return default
            return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def list_prefix(self, prefix: str) -> List[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))

    def update(self, key: str, updater: Callable[[Any], Any], default: Any = None) -> Any:
        with self._lock:
            current = copy.deepcopy(self._data.get(key, default))
            value = updater(current)
            self._data[key] = copy.deepcopy(value)
            return value


class FileStore(KeyValueStore):
    """One JSON file per key; ``a/b`` maps to ``<root>/a/b.json``."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self._lock = threading.Lock()

    def _path(self, key: str) -> Path:
        parts = [p for p in key.split("/") if p and p not in (".", "..")]
        if not parts:
            raise ValueError(f"invalid store key: {key!r}")
        return self.root.joinpath(*parts[:-1]) / f"{parts[-1]}.json"

    def get(self, key: str, default: Any = None) -> Any:
        path = self._path(key)
        if not path.exists():
            return default
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except Exception:
            logger.warning("Corrupt store entry %s, treating as empty", path, exc_info=True)
            return default

    def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(value, indent=2), encoding="utf-8")
        tmp.replace(path)

    def delete(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            path.unlink()

    def list_prefix(self, prefix: str) -> List[str]:
        if not self.root.exists():
            return []
        keys = []
        for path in self.root.rglob("*.json"):
            key = path.relative_to(self.root).with_suffix("").as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    def update(self, key: str, updater: Callable[[Any], Any], default: Any = None) -> Any:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            if fcntl is None:
                value = updater(self.get(key, default))
                self.set(key, value)
                return value
            with path.open("a+", encoding="utf-8") as handle:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                try:
                    handle.seek(0)
                    data = handle.read()
                    current = default
                    if data.strip():
                        try:
                            current = json.loads(data)
                        except ValueError:
                            logger.warning("Corrupt store entry %s, treating as empty", path)
                    value = updater(current)
                    handle.seek(0)
                    handle.truncate()
                    handle.write(json.dumps(value, indent=2))
                    return value
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def open_store(data_dir: str | Path | None) -> KeyValueStore:
    if data_dir is None:
        return MemoryStore()
    return FileStore(Path(data_dir) / "state")
