from __future__ import annotations

import copy
import inspect
from typing import Any

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import WatchError


def _text(value: Any) -> str:
    # Mirror decode_responses=True: everything round-trips as str.
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


def _score(bound: Any) -> float:
    if bound in ("-inf", float("-inf")):
        return float("-inf")
    if bound in ("+inf", "inf", float("inf")):
        return float("inf")
    return float(bound)


class FakePipeline:
    """MULTI/EXEC pipeline with WATCH, shaped like redis.asyncio's Pipeline.

    After ``watch()`` commands run immediately until ``multi()``; from then on
    they are buffered and applied all-or-nothing by ``execute()``.
    """

    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self._watched: dict[str, int] = {}
        self._watching = False
        self._commands: list[tuple[str, tuple, dict]] = []

    async def __aenter__(self) -> FakePipeline:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.reset()

    async def reset(self) -> None:
        self._watched = {}
        self._watching = False
        self._commands = []

    async def watch(self, *keys: str) -> None:
        self._redis._check()
        for key in keys:
            self._watched[key] = self._redis._version(key)
        self._watching = True

    def multi(self) -> None:
        self._watching = False

    def __getattr__(self, name: str) -> Any:
        command = getattr(self._redis, name)
        if self._watching:
            return command

        def _buffer(*args: Any, **kwargs: Any) -> FakePipeline:
            self._commands.append((name, args, kwargs))
            return self

        return _buffer

    async def execute(self) -> list[Any]:
        try:
            self._redis._check()
            if any(self._redis._version(key) != version for key, version in self._watched.items()):
                raise WatchError("Watched variable changed.")
            snapshot = self._redis._snapshot()
            results: list[Any] = []
            try:
                for name, args, kwargs in self._commands:
                    results.append(await getattr(self._redis, name)(*args, **kwargs))
            except Exception:
                # EXEC is atomic: a failure part-way leaves no trace.
                self._redis._restore(snapshot)
                raise
            return results
        finally:
            await self.reset()


class FakeRedis:
    """In-process stand-in for the redis.asyncio commands the broker uses."""

    def __init__(self, *, unreachable: bool = False) -> None:
        self.unreachable = unreachable
        self.closed = False
        self.hashes: dict[str, dict[str, str]] = {}
        self.lists: dict[str, list[str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.strings: dict[str, str] = {}
        self._versions: dict[str, int] = {}

    def _check(self) -> None:
        if self.unreachable:
            raise RedisConnectionError("fake redis unreachable")

    def _touch(self, *keys: str) -> None:
        for key in keys:
            self._versions[key] = self._versions.get(key, 0) + 1

    def _version(self, key: str) -> int:
        return self._versions.get(key, 0)

    def _snapshot(self) -> tuple:
        return copy.deepcopy((self.hashes, self.lists, self.zsets, self.strings, self._versions))

    def _restore(self, snapshot: tuple) -> None:
        self.hashes, self.lists, self.zsets, self.strings, self._versions = snapshot

    def pipeline(self, transaction: bool = True, shard_hint: str | None = None) -> FakePipeline:
        return FakePipeline(self)

    async def transaction(self, func: Any, *watches: str, value_from_callable: bool = False, **_: Any) -> Any:
        # Same retry-on-WatchError loop as redis.asyncio.Redis.transaction.
        async with self.pipeline(True) as pipe:
            while True:
                try:
                    if watches:
                        await pipe.watch(*watches)
                    func_value = func(pipe)
                    if inspect.isawaitable(func_value):
                        func_value = await func_value
                    exec_value = await pipe.execute()
                    return func_value if value_from_callable else exec_value
                except WatchError:
                    continue

    async def ping(self) -> bool:
        self._check()
        return True

    async def aclose(self) -> None:
        self.closed = True

    async def hset(self, key: str, field: str | None = None, value: Any = None, mapping: dict | None = None) -> int:
        self._check()
        target = self.hashes.setdefault(key, {})
        items: dict[str, Any] = dict(mapping or {})
        if field is not None:
            items[field] = value
        added = 0
        for name, item in items.items():
            if name not in target:
                added += 1
            target[_text(name)] = _text(item)
        self._touch(key)
        return added

    async def hget(self, key: str, field: str) -> str | None:
        self._check()
        return self.hashes.get(key, {}).get(field)

    async def hgetall(self, key: str) -> dict[str, str]:
        self._check()
        return dict(self.hashes.get(key, {}))

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        self._check()
        target = self.hashes.setdefault(key, {})
        current = int(target.get(field, "0")) + amount
        target[field] = str(current)
        self._touch(key)
        return current

    async def lpush(self, key: str, *values: Any) -> int:
        self._check()
        target = self.lists.setdefault(key, [])
        for value in values:
            target.insert(0, _text(value))
        self._touch(key)
        return len(target)

    async def rpop(self, key: str) -> str | None:
        self._check()
        target = self.lists.get(key)
        if not target:
            return None
        value = target.pop()
        if not target:
            del self.lists[key]
        self._touch(key)
        return value

    async def llen(self, key: str) -> int:
        self._check()
        return len(self.lists.get(key, []))

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        self._check()
        target = self.lists.get(key, [])
        stop = len(target) if end == -1 else end + 1
        return list(target[start:stop])

    async def lrem(self, key: str, count: int, value: Any) -> int:
        # Only count=0 (remove all occurrences) is used by the broker.
        self._check()
        target = self.lists.get(key, [])
        needle = _text(value)
        kept = [item for item in target if item != needle]
        removed = len(target) - len(kept)
        if kept:
            self.lists[key] = kept
        else:
            self.lists.pop(key, None)
        if removed:
            self._touch(key)
        return removed

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            for store in (self.hashes, self.lists, self.zsets, self.strings):
                if key in store:
                    del store[key]
                    removed += 1
            self._touch(key)
        return removed

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        self._check()
        target = self.zsets.setdefault(key, {})
        added = sum(1 for member in mapping if _text(member) not in target)
        for member, score in mapping.items():
            target[_text(member)] = float(score)
        self._touch(key)
        return added

    async def zrem(self, key: str, *members: Any) -> int:
        self._check()
        target = self.zsets.get(key, {})
        removed = 0
        for member in members:
            if target.pop(_text(member), None) is not None:
                removed += 1
        if key in self.zsets and not target:
            del self.zsets[key]
        if removed:
            self._touch(key)
        return removed

    async def zscore(self, key: str, member: Any) -> float | None:
        self._check()
        return self.zsets.get(key, {}).get(_text(member))

    async def zrangebyscore(self, key: str, min: Any, max: Any) -> list[str]:
        self._check()
        low, high = _score(min), _score(max)
        members = sorted(self.zsets.get(key, {}).items(), key=lambda item: (item[1], item[0]))
        return [member for member, score in members if low <= score <= high]

    async def zcard(self, key: str) -> int:
        self._check()
        return len(self.zsets.get(key, {}))

    async def set(self, key: str, value: Any) -> bool:
        self._check()
        self.strings[key] = _text(value)
        self._touch(key)
        return True

    async def get(self, key: str) -> str | None:
        self._check()
        return self.strings.get(key)


class FlakyRedis(FakeRedis):
    """FakeRedis that drops the connection on the next call of one command."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_next: str | None = None

    def _maybe_fail(self, command: str) -> None:
        if self.fail_next == command:
            self.fail_next = None
            raise RedisConnectionError(f"connection lost during {command}")

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        self._maybe_fail("zadd")
        return await super().zadd(key, mapping)

    async def lpush(self, key: str, *values: Any) -> int:
        self._maybe_fail("lpush")
        return await super().lpush(key, *values)


def fake_redis_factory(client: FakeRedis | None = None):
    """Return a broker redis factory that always hands out the same fake."""
    shared = client or FakeRedis()

    def _factory() -> FakeRedis:
        shared.closed = False
        return shared

    return _factory
