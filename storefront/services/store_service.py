"""
Key/value stores used by the cart engine.

- Persistent local store: SQLAlchemy ``StoredValue`` rows (cart snapshots).
- Ephemeral session store: Redis with TTL'd keys, degrading gracefully to
  "no value" when Redis is unavailable (notification ledger, coupon state).
- ``MemoryStore`` for tests and when Redis is disabled.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, date
from decimal import Decimal
from typing import Any, Dict, List, Optional

import redis
from redis.exceptions import RedisError, ConnectionError, TimeoutError
from flask import Flask
from sqlalchemy.exc import SQLAlchemyError

from storefront.models.stored_value import StoredValue

logger = logging.getLogger(__name__)


def _serialize(value: Any) -> str:
    """Serialize Python object to JSON string with Decimal precision."""
    def default_handler(obj: Any) -> Any:
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        elif isinstance(obj, Decimal):
            return {"__decimal__": str(obj)}
        elif isinstance(obj, (set, frozenset)):
            return sorted(obj)
        raise TypeError(f"Object of type {type(obj)} is not JSON serializable")
    return json.dumps(value, default=default_handler)


def _deserialize(value: str) -> Any:
    """Deserialize JSON string to Python object, reconstructing Decimals."""
    def object_hook(dct: Dict[str, Any]) -> Any:
        if "__decimal__" in dct:
            return Decimal(dct["__decimal__"])
        return dct
    return json.loads(value, object_hook=object_hook)


class KeyValueStore(ABC):
    """Minimal get/set/remove interface shared by every store."""

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        """Return the stored value or ``default``."""

    @abstractmethod
    def set(self, key: str, value: Any) -> bool:
        """Store a JSON-serializable value. Returns False when the write was dropped."""

    @abstractmethod
    def remove(self, key: str) -> bool:
        """Delete a key. Missing keys are not an error."""

    def scoped(self, scope: str) -> 'ScopedStore':
        return ScopedStore(self, scope)


class ScopedStore(KeyValueStore):
    """View over another store with every key prefixed by ``scope:``."""

    def __init__(self, store: KeyValueStore, scope: str):
        self._store = store
        self._scope = scope

    def _key(self, key: str) -> str:
        return f"{self._scope}:{key}"

    def get(self, key: str, default: Any = None) -> Any:
        return self._store.get(self._key(key), default)

    def set(self, key: str, value: Any) -> bool:
        return self._store.set(self._key(key), value)

    def remove(self, key: str) -> bool:
        return self._store.remove(self._key(key))


class MemoryStore(KeyValueStore):
    """In-process store. Values are kept serialized so callers never share references."""

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            raw = self._data.get(key)
        return _deserialize(raw) if raw is not None else default

    def set(self, key: str, value: Any) -> bool:
        serialized = _serialize(value)
        with self._lock:
            self._data[key] = serialized
        return True

    def remove(self, key: str) -> bool:
        with self._lock:
            self._data.pop(key, None)
        return True

    def keys(self, prefix: str = '') -> List[str]:
        with self._lock:
            return [k for k in self._data if k.startswith(prefix)]


class SqlKeyValueStore(KeyValueStore):
    """Durable store backed by the ``stored_value`` table."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def get(self, key: str, default: Any = None) -> Any:
        session = self._session_factory()
        try:
            row = session.get(StoredValue, key)
            if row is None:
                return default
            return _deserialize(row.value)
        except (SQLAlchemyError, json.JSONDecodeError) as e:
            logger.warning(f"[STORE] ✗ Get error for {key}: {e}")
            return default
        finally:
            self._session_factory.remove()

    def set(self, key: str, value: Any) -> bool:
        session = self._session_factory()
        try:
            serialized = _serialize(value)
            row = session.get(StoredValue, key)
            if row is None:
                session.add(StoredValue(key=key, value=serialized))
            else:
                row.value = serialized
            session.commit()
            return True
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"[STORE] ✗ Set error for {key}: {e}")
            return False
        finally:
            self._session_factory.remove()

    def remove(self, key: str) -> bool:
        session = self._session_factory()
        try:
            session.query(StoredValue).filter(StoredValue.key == key).delete()
            session.commit()
            return True
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"[STORE] ✗ Remove error for {key}: {e}")
            return False
        finally:
            self._session_factory.remove()

    def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with ``prefix``. Returns the number of rows removed."""
        session = self._session_factory()
        try:
            deleted = session.query(StoredValue).filter(
                StoredValue.key.like(f"{prefix}%")
            ).delete(synchronize_session=False)
            session.commit()
            if deleted:
                logger.info(f"[STORE] PURGE: {prefix}* ({deleted} keys)")
            return deleted
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"[STORE] ✗ Purge error for {prefix}: {e}")
            raise
        finally:
            self._session_factory.remove()


class RedisSessionStore(KeyValueStore):
    """
    Redis-backed ephemeral store.

    Keys pattern: {prefix}:session:{key}
    """

    def __init__(self, app: Optional[Flask] = None, client: Optional[redis.Redis] = None):
        self.client: Optional[redis.Redis] = client
        self._enabled: bool = client is not None
        self._prefix: str = "storefront"
        self._ttl: int = 86400

        if app:
            self.init_app(app)

    def init_app(self, app: Flask) -> None:
        """Initialize Redis client from Flask app config."""
        self._enabled = app.config.get('SESSION_STORE_ENABLED', True)
        self._prefix = app.config.get('SESSION_STORE_PREFIX', 'storefront')
        self._ttl = app.config.get('SESSION_STORE_TTL', 86400)
        redis_url = app.config.get('REDIS_URL', 'redis://localhost:6379/0')

        if not self._enabled:
            logger.info("[STORE] Session store is DISABLED via config")
            return

        try:
            self.client = redis.from_url(
                redis_url,
                decode_responses=True,
                socket_connect_timeout=3,
                socket_timeout=3,
                socket_keepalive=True,
                max_connections=50,
                retry_on_timeout=True,
                health_check_interval=30
            )
            self.client.ping()
            logger.info(f"[STORE] ✓ Redis connected: {redis_url}")
        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.warning(f"[STORE] ⚠ Redis connection failed: {e}. Session store DISABLED.")
            self._enabled = False
            self.client = None

    def is_available(self) -> bool:
        """Check if Redis is available and healthy."""
        if not self._enabled or not self.client:
            return False
        try:
            self.client.ping()
            return True
        except (ConnectionError, RedisError):
            return False

    def _build_key(self, key: str) -> str:
        return f"{self._prefix}:session:{key}"

    def get(self, key: str, default: Any = None) -> Any:
        if not self.is_available():
            return default
        try:
            value = self.client.get(self._build_key(key))
            if value is None:
                return default
            return _deserialize(value)
        except (RedisError, json.JSONDecodeError) as e:
            logger.warning(f"[STORE] ✗ Get error: {e}")
            return default

    def set(self, key: str, value: Any) -> bool:
        if not self.is_available():
            return False
        try:
            self.client.setex(self._build_key(key), self._ttl, _serialize(value))
            return True
        except (RedisError, TypeError) as e:
            logger.warning(f"[STORE] ✗ Set error: {e}")
            return False

    def remove(self, key: str) -> bool:
        if not self.is_available():
            return False
        try:
            self.client.delete(self._build_key(key))
            return True
        except RedisError as e:
            logger.warning(f"[STORE] ✗ Delete error: {e}")
            return False


def init_stores(app: Flask) -> None:
    """Create the local and session stores and register them on the app."""
    from storefront.database import get_session

    local_store = SqlKeyValueStore(get_session())

    session_store: KeyValueStore
    redis_store = RedisSessionStore(app)
    if redis_store.is_available():
        session_store = redis_store
    else:
        logger.info("[STORE] Using in-process session store")
        session_store = MemoryStore()

    if not hasattr(app, 'extensions'):
        app.extensions = {}
    app.extensions['stores'] = {
        'local': local_store,
        'session': session_store,
    }


def get_stores(app: Flask) -> Dict[str, KeyValueStore]:
    """Get the stores registered by ``init_stores``."""
    stores = app.extensions.get('stores')
    if stores is None:
        raise RuntimeError("Stores not initialized.")
    return stores
