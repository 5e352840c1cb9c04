"""Namespaced key-value substrate with in-memory and shared Redis backends."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
import json
import logging
from threading import Lock
from typing import Any, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

StoredValue = int | str | frozenset[str]


class KeyValueBackendError(RuntimeError):
    """Raised when the key-value backend rejects a read, write, or clear."""


class KeyValueStore(Protocol):
    """Protocol implemented by all key-value backends."""

    async def get(self, namespace: str, key: str) -> StoredValue | None:
        """Return the value stored under ``key`` or None."""

    async def get_all(self, namespace: str) -> dict[str, StoredValue]:
        """Return every entry in the namespace."""

    async def contains(self, namespace: str, key: str) -> bool:
        """Return True when ``key`` exists in the namespace."""

    async def commit(
        self,
        namespace: str,
        puts: Mapping[str, StoredValue],
        removals: Iterable[str] = (),
    ) -> None:
        """Apply puts and removals to the namespace as one atomic batch."""

    async def clear(self, namespace: str) -> None:
        """Remove every entry in the namespace."""

    async def close(self) -> None:
        """Release backend resources if needed."""

    async def reset(self) -> None:
        """Clear all namespaces (primarily for test isolation)."""


def _coerce(value: StoredValue) -> StoredValue:
    if isinstance(value, bool) or not isinstance(value, (int, str, frozenset, set)):
        raise TypeError(f"Unsupported stored value type: {type(value).__name__}")
    if isinstance(value, set):
        return frozenset(value)
    return value


class InMemoryKeyValueStore:
    """Process-local backend keyed by namespace then key."""

    def __init__(self) -> None:
        self._namespaces: dict[str, dict[str, StoredValue]] = {}
        self._lock = Lock()

    async def get(self, namespace: str, key: str) -> StoredValue | None:
        with self._lock:
            return self._namespaces.get(namespace, {}).get(key)

    async def get_all(self, namespace: str) -> dict[str, StoredValue]:
        with self._lock:
            return dict(self._namespaces.get(namespace, {}))

    async def contains(self, namespace: str, key: str) -> bool:
        with self._lock:
            return key in self._namespaces.get(namespace, {})

    async def commit(
        self,
        namespace: str,
        puts: Mapping[str, StoredValue],
        removals: Iterable[str] = (),
    ) -> None:
        staged = {key: _coerce(value) for key, value in puts.items()}
        with self._lock:
            entries = self._namespaces.setdefault(namespace, {})
            for key in removals:
                entries.pop(key, None)
            entries.update(staged)

    async def clear(self, namespace: str) -> None:
        with self._lock:
            self._namespaces.pop(namespace, None)

    async def close(self) -> None:
        return

    async def reset(self) -> None:
        with self._lock:
            self._namespaces.clear()


def encode_stored_value(value: StoredValue) -> str:
    """Encode a stored value as JSON text for the Redis hash field."""

    value = _coerce(value)
    if isinstance(value, frozenset):
        return json.dumps(sorted(value))
    return json.dumps(value)


def decode_stored_value(raw: str) -> StoredValue:
    """Decode a Redis hash field written by :func:`encode_stored_value`."""

    try:
        decoded: Any = json.loads(raw)
    except ValueError as exc:
        raise KeyValueBackendError("Key-value backend returned malformed value") from exc
    if isinstance(decoded, list):
        return frozenset(str(item) for item in decoded)
    if isinstance(decoded, bool) or not isinstance(decoded, (int, str)):
        raise KeyValueBackendError("Key-value backend returned unexpected value type")
    return decoded


class RedisKeyValueStore:
    """Redis-backed store; each namespace is one hash at ``{prefix}:{namespace}``."""

    def __init__(
        self,
        *,
        redis_url: str | None = None,
        prefix: str = "heartbeat",
        client: Any | None = None,
    ) -> None:
        if client is None:
            if not redis_url:
                raise ValueError("RedisKeyValueStore requires redis_url or client")
            client = Redis.from_url(redis_url, encoding="utf-8", decode_responses=True)
        self._client = client
        self._prefix = prefix

    def _redis_key(self, namespace: str) -> str:
        return f"{self._prefix}:{namespace}"

    async def get(self, namespace: str, key: str) -> StoredValue | None:
        try:
            raw = await self._client.hget(self._redis_key(namespace), key)
        except RedisError as exc:
            raise KeyValueBackendError("Key-value backend unavailable") from exc
        if raw is None:
            return None
        return decode_stored_value(raw)

    async def get_all(self, namespace: str) -> dict[str, StoredValue]:
        try:
            raw_entries = await self._client.hgetall(self._redis_key(namespace))
        except RedisError as exc:
            raise KeyValueBackendError("Key-value backend unavailable") from exc
        return {str(key): decode_stored_value(raw) for key, raw in raw_entries.items()}

    async def contains(self, namespace: str, key: str) -> bool:
        try:
            return bool(await self._client.hexists(self._redis_key(namespace), key))
        except RedisError as exc:
            raise KeyValueBackendError("Key-value backend unavailable") from exc

    async def commit(
        self,
        namespace: str,
        puts: Mapping[str, StoredValue],
        removals: Iterable[str] = (),
    ) -> None:
        redis_key = self._redis_key(namespace)
        mapping = {key: encode_stored_value(value) for key, value in puts.items()}
        # Fields that are rewritten in the same batch must not be deleted after the write.
        doomed = [key for key in removals if key not in mapping]
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                if doomed:
                    pipe.hdel(redis_key, *doomed)
                if mapping:
                    pipe.hset(redis_key, mapping=mapping)
                await pipe.execute()
        except RedisError as exc:
            raise KeyValueBackendError("Key-value backend unavailable") from exc

    async def clear(self, namespace: str) -> None:
        try:
            await self._client.delete(self._redis_key(namespace))
        except RedisError as exc:
            raise KeyValueBackendError("Key-value backend unavailable") from exc

    async def close(self) -> None:
        await self._client.aclose()

    async def reset(self) -> None:
        keys: list[str] = []
        try:
            async for key in self._client.scan_iter(match=f"{self._prefix}:*"):
                keys.append(str(key))
            if keys:
                await self._client.delete(*keys)
        except RedisError as exc:
            raise KeyValueBackendError("Key-value backend unavailable") from exc


def create_key_value_store(
    *,
    backend: str,
    redis_url: str | None,
    prefix: str = "heartbeat",
    logger: logging.Logger | None = None,
) -> tuple[KeyValueStore, bool]:
    """Create the configured backend and indicate if it uses shared state."""

    normalized_backend = backend.strip().lower()
    if normalized_backend == "memory":
        return InMemoryKeyValueStore(), False

    if normalized_backend == "redis":
        if not redis_url:
            raise RuntimeError("STORAGE_BACKEND=redis requires REDIS_URL")
        return RedisKeyValueStore(redis_url=redis_url, prefix=prefix), True

    if normalized_backend == "auto":
        if redis_url:
            return RedisKeyValueStore(redis_url=redis_url, prefix=prefix), True
        if logger:
            logger.warning("storage_backend_auto_fallback backend=memory reason=redis_url_missing")
        return InMemoryKeyValueStore(), False

    raise ValueError(f"Unsupported STORAGE_BACKEND value: {backend}")
