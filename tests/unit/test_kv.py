from __future__ import annotations

import logging

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from heartbeat_info.kv import (
    InMemoryKeyValueStore,
    KeyValueBackendError,
    RedisKeyValueStore,
    StoredValue,
    create_key_value_store,
    decode_stored_value,
    encode_stored_value,
)


class _FakePipeline:
    def __init__(self, client: _FakeRedis) -> None:
        self._client = client
        self._commands: list[tuple[str, tuple, dict]] = []

    async def __aenter__(self) -> _FakePipeline:
        return self

    async def __aexit__(self, *exc_info) -> None:
        self._commands.clear()

    def hdel(self, name: str, *keys: str) -> _FakePipeline:
        self._commands.append(("hdel", (name, *keys), {}))
        return self

    def hset(self, name: str, mapping: dict[str, str]) -> _FakePipeline:
        self._commands.append(("hset", (name,), {"mapping": mapping}))
        return self

    async def execute(self) -> list[int]:
        if self._client.fail:
            raise RedisConnectionError("connection refused")
        self._client.executed_batches += 1
        results = []
        for command, args, kwargs in self._commands:
            results.append(await getattr(self._client, command)(*args, **kwargs))
        return results


class _FakeRedis:
    """Tiny subset of the redis.asyncio hash API used by RedisKeyValueStore."""

    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}
        self.fail = False
        self.executed_batches = 0
        self.closed = False

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("connection refused")

    async def hget(self, name: str, key: str) -> str | None:
        self._check()
        return self.hashes.get(name, {}).get(key)

    async def hgetall(self, name: str) -> dict[str, str]:
        self._check()
        return dict(self.hashes.get(name, {}))

    async def hexists(self, name: str, key: str) -> bool:
        self._check()
        return key in self.hashes.get(name, {})

    async def hset(self, name: str, mapping: dict[str, str]) -> int:
        self.hashes.setdefault(name, {}).update(mapping)
        return len(mapping)

    async def hdel(self, name: str, *keys: str) -> int:
        entries = self.hashes.get(name, {})
        return sum(entries.pop(key, None) is not None for key in keys)

    async def delete(self, *names: str) -> int:
        self._check()
        return sum(self.hashes.pop(name, None) is not None for name in names)

    async def scan_iter(self, match: str):
        prefix = match.rstrip("*")
        for name in list(self.hashes):
            if name.startswith(prefix):
                yield name

    def pipeline(self, transaction: bool = True) -> _FakePipeline:
        assert transaction is True
        return _FakePipeline(self)

    async def aclose(self) -> None:
        self.closed = True


async def test_in_memory_store_commit_get_and_clear() -> None:
    kv = InMemoryKeyValueStore()
    await kv.commit("ns", {"count": 2, "day": "2023-01-01", "ua:sdk": {"2023-01-01"}})

    assert await kv.get("ns", "count") == 2
    assert await kv.get("ns", "ua:sdk") == frozenset({"2023-01-01"})
    assert await kv.contains("ns", "day") is True
    assert await kv.get("other", "count") is None

    await kv.commit("ns", {"count": 0}, removals=["ua:sdk", "missing"])
    assert await kv.get_all("ns") == {"count": 0, "day": "2023-01-01"}

    await kv.clear("ns")
    assert await kv.get_all("ns") == {}


async def test_in_memory_store_rejects_unsupported_values() -> None:
    kv = InMemoryKeyValueStore()
    with pytest.raises(TypeError):
        await kv.commit("ns", {"ok": 1, "bad": 1.5})
    assert await kv.get_all("ns") == {}


def test_stored_value_encoding() -> None:
    assert encode_stored_value(frozenset({"b", "a"})) == '["a", "b"]'
    assert decode_stored_value('["a", "b"]') == frozenset({"a", "b"})
    assert decode_stored_value(encode_stored_value(42)) == 42
    assert decode_stored_value(encode_stored_value("2023-01-01")) == "2023-01-01"

    with pytest.raises(KeyValueBackendError):
        decode_stored_value("{not json")
    with pytest.raises(KeyValueBackendError):
        decode_stored_value('{"a": 1}')


def test_stored_value_covers_counter_date_and_date_set() -> None:
    assert StoredValue == int | str | frozenset[str]


async def test_redis_store_uses_one_hash_per_namespace() -> None:
    client = _FakeRedis()
    kv = RedisKeyValueStore(client=client, prefix="hb")

    await kv.commit("heartbeat-usage:app", {"ua:sdk": frozenset({"2023-01-01"}), "meta:count": 1})
    assert client.hashes == {
        "hb:heartbeat-usage:app": {"ua:sdk": '["2023-01-01"]', "meta:count": "1"},
    }
    assert client.executed_batches == 1

    assert await kv.get("heartbeat-usage:app", "meta:count") == 1
    assert await kv.get("heartbeat-usage:app", "missing") is None
    assert await kv.contains("heartbeat-usage:app", "ua:sdk") is True
    assert await kv.get_all("heartbeat-usage:app") == {
        "ua:sdk": frozenset({"2023-01-01"}),
        "meta:count": 1,
    }

    await kv.commit("heartbeat-usage:app", {"meta:count": 0, "ua:sdk": frozenset({"2023-01-02"})}, ["ua:sdk"])
    assert await kv.get("heartbeat-usage:app", "ua:sdk") == frozenset({"2023-01-02"})

    await kv.commit("heartbeat-usage:app", {"meta:count": 0}, ["ua:sdk"])
    assert await kv.get_all("heartbeat-usage:app") == {"meta:count": 0}

    await kv.clear("heartbeat-usage:app")
    assert client.hashes == {}


async def test_redis_store_reset_only_touches_prefix() -> None:
    client = _FakeRedis()
    client.hashes["unrelated:key"] = {"a": "1"}
    kv = RedisKeyValueStore(client=client, prefix="hb")
    await kv.commit("one", {"a": 1})
    await kv.commit("two", {"b": 2})

    await kv.reset()
    assert client.hashes == {"unrelated:key": {"a": "1"}}

    await kv.close()
    assert client.closed is True


async def test_redis_errors_surface_as_backend_errors() -> None:
    client = _FakeRedis()
    client.fail = True
    kv = RedisKeyValueStore(client=client, prefix="hb")

    with pytest.raises(KeyValueBackendError):
        await kv.get("ns", "key")
    with pytest.raises(KeyValueBackendError):
        await kv.get_all("ns")
    with pytest.raises(KeyValueBackendError):
        await kv.commit("ns", {"key": 1})
    with pytest.raises(KeyValueBackendError):
        await kv.clear("ns")


def test_create_key_value_store_selects_backend(caplog) -> None:
    store, shared = create_key_value_store(backend="memory", redis_url=None)
    assert isinstance(store, InMemoryKeyValueStore)
    assert shared is False

    store, shared = create_key_value_store(backend=" Redis ", redis_url="redis://localhost:6379/0")
    assert isinstance(store, RedisKeyValueStore)
    assert shared is True

    with caplog.at_level(logging.WARNING):
        store, shared = create_key_value_store(
            backend="auto",
            redis_url=None,
            logger=logging.getLogger("heartbeat_info.kv"),
        )
    assert isinstance(store, InMemoryKeyValueStore)
    assert shared is False
    assert "storage_backend_auto_fallback" in caplog.text

    with pytest.raises(RuntimeError):
        create_key_value_store(backend="redis", redis_url=None)
    with pytest.raises(ValueError):
        create_key_value_store(backend="sqlite", redis_url=None)
