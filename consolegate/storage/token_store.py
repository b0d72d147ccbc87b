from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional, Protocol

from redis import Redis

from consolegate.config import Settings, TokenStorageBackend
from consolegate.logging import get_logger

logger = get_logger(__name__)

# Fixed key names; absence of AUTH_TOKEN_KEY at startup means anonymous
AUTH_TOKEN_KEY = "auth_token"
REFRESH_TOKEN_KEY = "refresh_token"


class TokenStorage(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryTokenStorage:
    """Process-local storage; tokens do not survive a restart."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._values: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._values[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)


class FileTokenStorage:
    """JSON file storage written atomically with owner-only permissions."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, str]:
        if not self.path.exists() or self.path.is_symlink():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except (OSError, ValueError) as exc:
            logger.warning("token_file_unreadable", path=str(self.path), error=str(exc))
            return {}
        if not isinstance(data, dict):
            logger.warning("token_file_malformed", path=str(self.path))
            return {}
        return {str(k): str(v) for k, v in data.items() if isinstance(v, str)}

    def _write(self, values: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.chmod(self.path.parent, 0o700)
        except PermissionError:
            # Directory may be shared and owned by someone else
            pass
        # Write to a temp file then rename so readers never see a partial file
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=".tokens_", suffix=".tmp"
        )
        try:
            try:
                os.fchmod(fd, 0o600)
                os.write(fd, json.dumps(values).encode())
            finally:
                os.close(fd)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            values = self._read()
            values[key] = value
            self._write(values)

    def delete(self, key: str) -> None:
        with self._lock:
            values = self._read()
            if key not in values:
                return
            del values[key]
            self._write(values)


class RedisTokenStorage:
    """Redis-backed storage for consoles running on shared hosts."""

    def __init__(self, client: Redis, *, namespace: str = "consolegate") -> None:
        self.client = client
        self.namespace = namespace

    @classmethod
    def from_url(
        cls, redis_url: str, *, namespace: str = "consolegate", socket_timeout: float = 5.0
    ) -> "RedisTokenStorage":
        client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client, namespace=namespace)

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def get(self, key: str) -> Optional[str]:
        value = self.client.get(self._key(key))
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def set(self, key: str, value: str) -> None:
        self.client.set(self._key(key), value)

    def delete(self, key: str) -> None:
        self.client.delete(self._key(key))


def build_token_storage(settings: Settings) -> TokenStorage:
    backend = TokenStorageBackend(settings.token_storage)
    if backend is TokenStorageBackend.MEMORY:
        return MemoryTokenStorage()
    if backend is TokenStorageBackend.REDIS:
        return RedisTokenStorage.from_url(
            settings.redis_url, namespace=settings.token_namespace
        )
    return FileTokenStorage(settings.token_file_path)


__all__ = [
    "AUTH_TOKEN_KEY",
    "REFRESH_TOKEN_KEY",
    "TokenStorage",
    "MemoryTokenStorage",
    "FileTokenStorage",
    "RedisTokenStorage",
    "build_token_storage",
]
