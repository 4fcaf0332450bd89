import asyncio
from decimal import Decimal

import pytest
import pytest_asyncio
from redis.exceptions import WatchError

from timeledger.client import TimeBank
from timeledger.core.config import Config
from timeledger.storage.memory import InMemoryStorage
from timeledger.storage.redis import RedisStorage


@pytest.fixture
def config() -> Config:
    """Default fee policy with fast lock retries so contention tests stay quick."""
    return Config(lock_retry_count=200, lock_retry_delay=0.001)


@pytest.fixture
def memory_storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def bank(config, memory_storage) -> TimeBank:
    return TimeBank(config=config, storage=memory_storage)


@pytest_asyncio.fixture
async def funded_bank(bank):
    """Bank with alice (100.00 hours) and bob (10.00 hours)."""
    await bank.open_account("alice", initial_balance=Decimal("100.00"))
    await bank.open_account("bob", initial_balance=Decimal("10.00"))
    return bank


class InterleavingStorage(InMemoryStorage):
    """
    Memory storage that yields to the event loop around reads and commits.

    Plain InMemoryStorage never suspends, so gathered tasks run one after
    another. Here a read hands control to other tasks before returning and
    a commit before checking versions, the way a network backend would.
    """

    async def get(self, collection, key):
        data = await super().get(collection, key)
        await asyncio.sleep(0)
        return data

    async def query(self, collection, *args, **kwargs):
        records = await super().query(collection, *args, **kwargs)
        await asyncio.sleep(0)
        return records

    async def commit(self, operations):
        await asyncio.sleep(0)
        await super().commit(operations)


@pytest.fixture
def interleaving_storage() -> InterleavingStorage:
    return InterleavingStorage()


@pytest.fixture
def racing_bank(config, interleaving_storage) -> TimeBank:
    return TimeBank(config=config, storage=interleaving_storage)


class FakeRedisScript:
    """Registered Lua script stand-in for the lock release script."""

    def __init__(self, server: "FakeRedis") -> None:
        self._server = server

    async def __call__(self, keys=(), args=()):
        [key], [token] = keys, args
        if self._server.strings.get(key) == token:
            self._server.drop(key)
            return 1
        return 0


class FakePipeline:
    """
    MULTI/EXEC pipeline with WATCH support.

    After ``watch`` and before ``multi`` commands run immediately; otherwise
    they are queued until ``execute``, which raises WatchError if a watched
    key changed in the meantime.
    """

    def __init__(self, server: "FakeRedis") -> None:
        self._server = server
        self._watched: dict[str, int] = {}
        self._immediate = False
        self._queue: list[tuple[str, tuple]] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self._watched.clear()
        self._queue.clear()

    async def watch(self, *keys):
        self._watched = {k: self._server.revision(k) for k in keys}
        self._immediate = True
        if self._server.after_watch is not None:
            self._server.after_watch()

    def multi(self):
        self._immediate = False

    def get(self, key):
        if self._immediate:
            return self._server.get(key)
        self._queue.append(("get", (key,)))
        return self

    def set(self, key, value):
        self._queue.append(("set", (key, value)))
        return self

    def sadd(self, key, member):
        self._queue.append(("sadd", (key, member)))
        return self

    def srem(self, key, member):
        self._queue.append(("srem", (key, member)))
        return self

    def delete(self, *keys):
        self._queue.append(("delete", keys))
        return self

    async def execute(self):
        if any(self._server.revision(k) != rev for k, rev in self._watched.items()):
            self._queue.clear()
            raise WatchError("Watched variable changed.")
        queued, self._queue = self._queue, []
        self._server.exec_calls += 1
        return [await getattr(self._server, name)(*args) for name, args in queued]


class FakeRedis:
    """In-memory replacement for the ``redis.asyncio`` client used by RedisStorage."""

    def __init__(self) -> None:
        self.strings: dict[str, str] = {}
        self.sets: dict[str, set[str]] = {}
        self.revisions: dict[str, int] = {}
        self.exec_calls = 0
        self.after_watch = None

    def revision(self, key: str) -> int:
        return self.revisions.get(key, 0)

    def _touch(self, key: str) -> None:
        self.revisions[key] = self.revision(key) + 1

    def drop(self, key: str) -> int:
        existed = self.strings.pop(key, None) is not None or self.sets.pop(key, None) is not None
        if existed:
            self._touch(key)
        return int(existed)

    async def get(self, key):
        return self.strings.get(key)

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.strings:
            return None
        self.strings[key] = str(value)
        self._touch(key)
        return True

    async def mget(self, keys):
        return [self.strings.get(k) for k in keys]

    async def sadd(self, key, member):
        members = self.sets.setdefault(key, set())
        added = member not in members
        members.add(member)
        return int(added)

    async def srem(self, key, member):
        members = self.sets.get(key, set())
        removed = member in members
        members.discard(member)
        return int(removed)

    async def smembers(self, key):
        return set(self.sets.get(key, set()))

    async def scard(self, key):
        return len(self.sets.get(key, set()))

    async def delete(self, *keys):
        return sum(self.drop(k) for k in keys)

    async def incrby(self, key, amount):
        value = int(self.strings.get(key, "0")) + amount
        await self.set(key, value)
        return value

    async def incrbyfloat(self, key, amount):
        value = float(self.strings.get(key, "0")) + amount
        await self.set(key, value)
        return value

    async def ping(self):
        return True

    async def aclose(self):
        return None

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    def register_script(self, script):
        return FakeRedisScript(self)


@pytest.fixture
def fake_redis(monkeypatch) -> FakeRedis:
    server = FakeRedis()
    monkeypatch.setattr("redis.asyncio.from_url", lambda url, **kwargs: server)
    return server


@pytest.fixture
def redis_storage(fake_redis) -> RedisStorage:
    return RedisStorage(redis_url="redis://localhost:6379/15", prefix="test")


class RecordingHandler:
    """Event subscriber that keeps every event it receives."""

    def __init__(self) -> None:
        self.events = []

    def __call__(self, event) -> None:
        self.events.append(event)

    def of_type(self, event_type):
        return [e for e in self.events if e.type == event_type]


@pytest.fixture
def recorder(bank) -> RecordingHandler:
    handler = RecordingHandler()
    bank.on(handler)
    return handler
