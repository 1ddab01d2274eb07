"""Small JSON key-value store for preferences and cached exchange rates."""

import fcntl
import json
import logging
import os
from pathlib import Path
from typing import Any

from receiptsync.errors import CacheError

logger = logging.getLogger(__name__)


class LocalStore:
    """Key-value store persisted as a single JSON object on disk.

    Writes take an exclusive ``fcntl`` lock on the file so that two
    processes sharing the same store do not interleave partial writes.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def _read_all(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_SH)
                try:
                    content = f.read()
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            raise CacheError(f"Failed to read local store: {e}") from e
        if not content.strip():
            return {}
        try:
            data = json.loads(content)
        except ValueError:
            logger.warning("[store] %s is corrupt, starting empty", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str, default: Any = None) -> Any:
        return self._read_all().get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._update(lambda data: data.__setitem__(key, value))

    def delete(self, key: str) -> None:
        self._update(lambda data: data.pop(key, None))

    def _update(self, change) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, mode="a+", encoding="utf-8") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                try:
                    f.seek(0)
                    content = f.read()
                    try:
                        data = json.loads(content) if content.strip() else {}
                    except ValueError:
                        data = {}
                    if not isinstance(data, dict):
                        data = {}
                    change(data)
                    f.seek(0)
                    f.truncate()
                    json.dump(data, f, ensure_ascii=False, indent=2, default=str)
                    f.flush()
                    os.fsync(f.fileno())
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            raise CacheError(f"Failed to write local store: {e}") from e
