import logging
import threading
from typing import Dict, Optional

import redis
from flask import Flask

from shared.errors import StorageError
from .models import db, StoredValue

logger = logging.getLogger(__name__)


class DurableStore:
    """
    Key/value persistence that survives process restarts.

    Writes are synchronous: set() and delete() return only after the backend
    has accepted the write, and raise StorageError otherwise.
    """

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str):
        raise NotImplementedError

    def delete(self, key: str):
        raise NotImplementedError


class MemoryStore(DurableStore):
    """Process-local store; a 'restart' is simulated by sharing one instance."""

    def __init__(self, initial: Dict[str, str] = None):
        self._data = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str):
        with self._lock:
            self._data[key] = value

    def delete(self, key: str):
        with self._lock:
            self._data.pop(key, None)

    def keys(self):
        with self._lock:
            return list(self._data.keys())


class RedisStore(DurableStore):
    def __init__(self, redis_client: redis.Redis, namespace: str = 'session_client'):
        self.redis = redis_client
        self.namespace = namespace

    @classmethod
    def from_url(cls, redis_url: str, namespace: str = 'session_client') -> "RedisStore":
        client = redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5
        )
        return cls(client, namespace)

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def get(self, key: str) -> Optional[str]:
        try:
            return self.redis.get(self._key(key))
        except redis.RedisError as e:
            raise StorageError(key, f"Failed to read '{key}': {e}") from e

    def set(self, key: str, value: str):
        try:
            self.redis.set(self._key(key), value)
        except redis.RedisError as e:
            raise StorageError(key, f"Failed to write '{key}': {e}") from e

    def delete(self, key: str):
        try:
            self.redis.delete(self._key(key))
        except redis.RedisError as e:
            raise StorageError(key, f"Failed to delete '{key}': {e}") from e


class SqlStore(DurableStore):
    """
    Store backed by the stored_values table. Pushes its own app context so it
    can be used from the connectivity thread as well as from requests.
    """

    def __init__(self, app: Flask):
        self.app = app

    def get(self, key: str) -> Optional[str]:
        with self.app.app_context():
            try:
                row = StoredValue.query.filter_by(key=key).first()
            except Exception as e:
                db.session.rollback()
                raise StorageError(key, f"Failed to read '{key}': {e}") from e
            return row.value if row else None

    def set(self, key: str, value: str):
        with self.app.app_context():
            try:
                row = StoredValue.query.filter_by(key=key).first()
                if row:
                    row.value = value
                else:
                    db.session.add(StoredValue(key=key, value=value))
                db.session.commit()
            except Exception as e:
                db.session.rollback()
                raise StorageError(key, f"Failed to write '{key}': {e}") from e

    def delete(self, key: str):
        with self.app.app_context():
            try:
                StoredValue.query.filter_by(key=key).delete()
                db.session.commit()
            except Exception as e:
                db.session.rollback()
                raise StorageError(key, f"Failed to delete '{key}': {e}") from e


def create_store(app: Flask) -> DurableStore:
    """Build the store selected by STORE_BACKEND."""
    backend = app.config.get('STORE_BACKEND', 'sql')

    if backend == 'memory':
        return MemoryStore()
    if backend == 'redis':
        return RedisStore.from_url(app.config.get('REDIS_URL', 'redis://localhost:6379'))
    if backend == 'sql':
        return SqlStore(app)

    raise ValueError(f"Unknown store backend: {backend}")
