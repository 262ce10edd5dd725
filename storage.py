"""
Key-value persistence for Medbox.

The engines only need `get(key) -> bytes | None` and `set(key, bytes)`.
FileStore keeps one file per key under a data directory, MemoryStore is a
dict for tests and throwaway sessions.
"""

import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Optional

from data_encryption import BlobCipher

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class KeyValueStore:
    """Interface for the persistence store used by the engines."""

    def get(self, key: str) -> Optional[bytes]:
        raise NotImplementedError

    def set(self, key: str, value: bytes) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class MemoryStore(KeyValueStore):
    """In-memory store. Nothing survives the process."""

    def __init__(self):
        self._data: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class FileStore(KeyValueStore):
    """
    Stores each key as a file in `data_dir`.

    Writes go to a temporary file that is renamed over the target, so a
    crash leaves either the old or the new value for that key. Values are
    encrypted at rest when the cipher has a key.
    """

    def __init__(self, data_dir: str, cipher: Optional[BlobCipher] = None):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.cipher = cipher or BlobCipher()

    def _path(self, key: str) -> Path:
        if not _KEY_PATTERN.match(key):
            raise ValueError(f"Invalid store key: {key!r}")
        return self.data_dir / f"{key}.json"

    def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path, "rb") as f:
                raw = f.read()
        except OSError as e:
            logger.error(f"Could not read {path}: {e}")
            return None
        return self.cipher.decrypt(raw)

    def set(self, key: str, value: bytes) -> None:
        path = self._path(key)
        payload = self.cipher.encrypt(bytes(value))
        fd, tmp_path = tempfile.mkstemp(dir=self.data_dir, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        logger.debug(f"Saved {len(payload)} bytes to {path}")

    def delete(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            path.unlink()
