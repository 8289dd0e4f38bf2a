"""
Key-value stores backing conversations, pending requests, entity records and caches.

Every store serializes its writers with a re-entrant lock. File backed stores write to a
temporary file and atomically replace the target, so a crash never leaves a half-written file.
"""

import copy
import json
import os
import re
import tempfile
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import StorageConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class KeyValueStore(ABC):
    """Common interface for persisted state surfaces."""

    def __init__(self):
        self.lock = threading.RLock()

    @abstractmethod
    def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the value for key, or None."""

    @abstractmethod
    def set(self, key: str, value: Dict[str, Any]) -> None:
        """Insert or replace the value for key."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete key. Returns True if something was removed."""

    @abstractmethod
    def items(self) -> List[Tuple[str, Dict[str, Any]]]:
        """Snapshot of all (key, value) pairs."""

    def keys(self) -> List[str]:
        return [key for key, _ in self.items()]

    def values(self) -> List[Dict[str, Any]]:
        return [value for _, value in self.items()]

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def count(self) -> int:
        return len(self.items())

    def sweep(self, predicate: Callable[[str, Dict[str, Any]], bool]) -> int:
        """Delete every entry matching predicate.

        Args:
            predicate: Called with (key, value); True marks the entry for deletion

        Returns:
            Number of entries removed
        """
        with self.lock:
            doomed = [key for key, value in self.items() if predicate(key, value)]
            removed = 0
            for key in doomed:
                if self.delete(key):
                    removed += 1
            return removed


class MemoryStore(KeyValueStore):
    """Process-local store. Nothing survives a restart."""

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Any]] = {}

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self.lock:
            return copy.deepcopy(self._data.get(key))

    def set(self, key: str, value: Dict[str, Any]) -> None:
        with self.lock:
            self._data[key] = copy.deepcopy(value)

    def delete(self, key: str) -> bool:
        with self.lock:
            return self._data.pop(key, None) is not None

    def items(self) -> List[Tuple[str, Dict[str, Any]]]:
        with self.lock:
            return copy.deepcopy(list(self._data.items()))


def _atomic_write_json(path: str, payload: Any) -> None:
    directory = os.path.dirname(path) or '.'
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix='.tmp-', suffix='.json')
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(payload, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


class JsonFileStore(KeyValueStore):
    """Whole map persisted as a single JSON object file.

    The map is loaded lazily and rewritten in full on every mutation. Read and write failures
    are logged and the store keeps working from memory for that call.
    """

    def __init__(self, path: str):
        super().__init__()
        self.path = path
        self._data: Optional[Dict[str, Dict[str, Any]]] = None

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if self._data is not None:
            return self._data

        self._data = {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                loaded = json.load(f)
            if isinstance(loaded, dict):
                self._data = loaded
                logger.debug(f'Loaded {len(self._data)} entries from {self.path}')
            else:
                logger.warning(f'Ignoring {self.path}: expected a JSON object, got {type(loaded).__name__}')
        except FileNotFoundError:
            pass
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f'Failed to load {self.path}, starting empty: {e}')
        return self._data

    def _flush(self) -> None:
        try:
            _atomic_write_json(self.path, self._data)
        except (OSError, TypeError, ValueError) as e:
            logger.error(f'Failed to persist {self.path}; change kept in memory only: {e}')

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self.lock:
            return copy.deepcopy(self._load().get(key))

    def set(self, key: str, value: Dict[str, Any]) -> None:
        with self.lock:
            self._load()[key] = copy.deepcopy(value)
            self._flush()

    def delete(self, key: str) -> bool:
        with self.lock:
            removed = self._load().pop(key, None) is not None
            if removed:
                self._flush()
            return removed

    def items(self) -> List[Tuple[str, Dict[str, Any]]]:
        with self.lock:
            return copy.deepcopy(list(self._load().items()))

    def sweep(self, predicate: Callable[[str, Dict[str, Any]], bool]) -> int:
        with self.lock:
            data = self._load()
            doomed = [key for key, value in data.items() if predicate(key, value)]
            for key in doomed:
                del data[key]
            if doomed:
                self._flush()
            return len(doomed)


def _safe_filename(key: str) -> str:
    return re.sub(r'[^A-Za-z0-9._-]+', '-', key).strip('-').lower() or 'unnamed'


class JsonDirectoryStore(KeyValueStore):
    """One JSON file per key inside a directory.

    Corrupt or unreadable files are skipped with a warning so a single bad record never hides
    the rest of the directory.
    """

    def __init__(self, directory: str):
        super().__init__()
        self.directory = directory

    def _path(self, key: str) -> str:
        return os.path.join(self.directory, f'{_safe_filename(key)}.json')

    def _read(self, path: str) -> Optional[Dict[str, Any]]:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                value = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f'Skipping unreadable record {path}: {e}')
            return None
        if not isinstance(value, dict):
            logger.warning(f'Skipping record {path}: expected a JSON object')
            return None
        return value

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self.lock:
            return self._read(self._path(key))

    def set(self, key: str, value: Dict[str, Any]) -> None:
        with self.lock:
            try:
                _atomic_write_json(self._path(key), value)
            except (OSError, TypeError, ValueError) as e:
                logger.error(f'Failed to persist record {key}: {e}')

    def delete(self, key: str) -> bool:
        with self.lock:
            try:
                os.unlink(self._path(key))
                return True
            except FileNotFoundError:
                return False
            except OSError as e:
                logger.error(f'Failed to delete record {key}: {e}')
                return False

    def items(self) -> List[Tuple[str, Dict[str, Any]]]:
        with self.lock:
            try:
                names = sorted(os.listdir(self.directory))
            except FileNotFoundError:
                return []
            except OSError as e:
                logger.warning(f'Could not list {self.directory}: {e}')
                return []

            pairs = []
            for name in names:
                if not name.endswith('.json') or name.startswith('.'):
                    continue
                value = self._read(os.path.join(self.directory, name))
                if value is not None:
                    pairs.append((value.get('id') or name[:-5], value))
            return pairs


def get_store(storage_config: StorageConfig, name: str) -> KeyValueStore:
    """Factory: return the configured store for a named state surface.

    Args:
        storage_config: Storage section of the application config
        name: Surface name, e.g. 'conversations' or 'pending-requests'

    Returns:
        KeyValueStore instance
    """
    backend = storage_config.backend
    if backend == 'memory':
        return MemoryStore()
    elif backend == 'file':
        return JsonFileStore(os.path.join(storage_config.data_path, f'{name}.json'))
    else:
        raise ValueError(f'Unknown storage backend: {backend}')


def get_entity_store(storage_config: StorageConfig, domain: str) -> KeyValueStore:
    """Factory: return the entity record store for a domain."""
    if storage_config.backend == 'memory':
        return MemoryStore()
    return JsonDirectoryStore(os.path.join(storage_config.data_path, domain, 'entities'))
