"""
JSON file storage backend.

This is the default storage backend. All documents live in one JSON
file; every operation reloads the file, so several processes (the
sweep scheduler and the API server) can share it. Read-modify-write
cycles hold an exclusive ``fcntl`` lock on a sidecar lock file, which
makes the conditional writes atomic across processes.
"""

import fcntl
import json
import os
from contextlib import contextmanager
from typing import Any

from storage.base import StorageReadError, StorageWriteError
from storage.memory import MemoryStorage


class JSONFileStorage(MemoryStorage):
    """
    JSON file storage backend.

    Reuses the in-memory document layout; the file is the source of
    truth and is loaded under the lock before every operation.
    """

    def __init__(self, file_path: str = "racesteward_data.json"):
        """
        Initialize JSON file storage.

        Args:
            file_path: Path to the JSON file
        """
        super().__init__()
        self.file_path = file_path
        self.lock_path = f"{file_path}.lock"

    @contextmanager
    def _file_lock(self, mode: int):
        with open(self.lock_path, "a") as lock:
            fcntl.flock(lock.fileno(), mode)
            try:
                yield
            finally:
                fcntl.flock(lock.fileno(), fcntl.LOCK_UN)

    @contextmanager
    def _reading(self):
        with self._lock, self._file_lock(fcntl.LOCK_SH):
            self._load()
            yield

    @contextmanager
    def _writing(self):
        with self._lock, self._file_lock(fcntl.LOCK_EX):
            self._load()
            yield
            self._save()

    def _load(self) -> None:
        """
        Load all collections from the JSON file.

        Raises:
            StorageReadError: If reading fails
        """
        try:
            if not os.path.exists(self.file_path):
                data = {}
            else:
                with open(self.file_path, "r", encoding="utf-8") as f:
                    raw_data = f.read()
                data = json.loads(raw_data) if raw_data.strip() else {}
        except PermissionError as e:
            raise StorageReadError(f"Permission denied: {self.file_path}") from e
        except json.JSONDecodeError as e:
            raise StorageReadError(f"Invalid JSON format: {e}") from e
        except OSError as e:
            raise StorageReadError(f"Failed to load documents: {e}") from e

        if not isinstance(data, dict):
            raise StorageReadError("Invalid document file: top level must be an object")

        self._events = data.get("events", {})
        self._protests = data.get("protests", {})
        self._votes = data.get("votes", {})
        self._users = data.get("users", {})
        self._notifications = data.get("notifications", {})
        self._claims = data.get("claims", {})

    def _save(self) -> None:
        """
        Save all collections to the JSON file.

        Raises:
            StorageWriteError: If writing fails
        """
        payload = {
            "events": self._events,
            "protests": self._protests,
            "votes": self._votes,
            "users": self._users,
            "notifications": self._notifications,
            "claims": self._claims,
        }
        try:
            data = json.dumps(payload, indent=2, ensure_ascii=False)

            # Write to file atomically (write to temp, then rename)
            temp_path = f"{self.file_path}.tmp"
            with open(temp_path, "w", encoding="utf-8") as f:
                f.write(data)
            os.replace(temp_path, self.file_path)

        except PermissionError as e:
            raise StorageWriteError(f"Permission denied: {self.file_path}") from e
        except (OSError, TypeError, ValueError) as e:
            raise StorageWriteError(f"Failed to save documents: {e}") from e

    def is_available(self) -> bool:
        """
        Check if file storage is available.

        Returns:
            True if the file path is writable
        """
        directory = os.path.dirname(self.file_path) or "."
        if not os.path.exists(directory):
            return False
        return os.access(directory, os.W_OK)

    def get_info(self) -> dict[str, Any]:
        """Get storage backend information."""
        info = super().get_info()
        info.update({
            "file_path": self.file_path,
            "file_exists": os.path.exists(self.file_path),
        })

        if os.path.exists(self.file_path):
            try:
                stat = os.stat(self.file_path)
                info["file_size_bytes"] = stat.st_size
                info["last_modified"] = stat.st_mtime
            except OSError:
                pass

        return info
