"""Durable key-value storage for session state

Values are strings, mirroring browser ``localStorage`` semantics; structured
entries (``sessionData``, ``userData``, ``pkce_data``) are stored as JSON text.
"""

import json
import logging
import os
import platform
from pathlib import Path
from typing import Dict, Optional


logger = logging.getLogger(__name__)

_PROBE_KEY = "__token_test__"


class KeyValueStorage:
    """Minimal string key-value store interface"""

    type = "abstract"

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def remove(self, key: str) -> None:
        raise NotImplementedError


class MemoryStorage(KeyValueStorage):
    """In-process storage; state is lost when the process exits"""

    type = "memory"

    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class FileStorage(KeyValueStorage):
    """Storage backed by a single JSON file with owner-only permissions"""

    type = "file"

    def __init__(self, path: Path):
        """Initialize file storage

        Args:
            path: JSON file holding all keys
        """
        self.path = Path(path)
        self._ensure_secure_directory()

    def _ensure_secure_directory(self) -> None:
        """Create parent directory with secure permissions"""
        parent_dir = self.path.parent
        if not parent_dir.exists():
            parent_dir.mkdir(parents=True, exist_ok=True)
            # Set directory permissions to 700 on Unix-like systems
            if platform.system() != "Windows":
                os.chmod(parent_dir, 0o700)

    def _read(self) -> Dict[str, str]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (ValueError, OSError) as e:
            # JSONDecodeError and UnicodeDecodeError are ValueErrors
            logger.error(f"Ignoring unreadable storage file {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.error(f"Ignoring storage file {self.path}: expected an object")
            return {}
        return data

    def _write(self, data: Dict[str, str]) -> None:
        self.path.write_text(json.dumps(data, indent=2))
        # Set file permissions to 600 on Unix-like systems
        if platform.system() != "Windows":
            os.chmod(self.path, 0o600)

    def get(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def remove(self, key: str) -> None:
        data = self._read()
        if key in data:
            del data[key]
            if data:
                self._write(data)
            else:
                self.path.unlink()


def open_storage(path: Optional[Path]) -> KeyValueStorage:
    """Open file storage at ``path``, falling back to memory storage

    Args:
        path: Storage file location, or None for memory storage

    Returns:
        A usable storage backend
    """
    if path is None:
        return MemoryStorage()

    try:
        storage = FileStorage(path)
        storage.set(_PROBE_KEY, "test")
        storage.remove(_PROBE_KEY)
        return storage
    except OSError as e:
        logger.warning(f"File storage at {path} not available ({e}), using in-memory storage")
        return MemoryStorage()
