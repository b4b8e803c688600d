import threading

import pytest
import redis

from cartsync.domain.errors import LockTimeoutError
from cartsync.services.lock_service import LockService, MemoryLockService


class FakeRedis:
    """Just enough of SET NX PX and the compare-and-delete script."""

    def __init__(self):
        self.values = {}
        self.failures = 0

    def set(self, name, value, nx=False, px=None):
        if self.failures:
            self.failures -= 1
            raise redis.ConnectionError("connection reset")
        if nx and name in self.values:
            return None
        self.values[name] = value
        return True

    def eval(self, script, numkeys, key, token):
        if self.values.get(key) == token:
            del self.values[key]
            return 1
        return 0


class TestMemoryLockService:
    def test_hold_releases_on_exit(self):
        locks = MemoryLockService()

        with locks.hold("cart:user:1"):
            assert "cart:user:1" in locks._owners

        assert locks._owners == {}

    def test_busy_key_times_out(self):
        locks = MemoryLockService()

        with locks.hold("cart:user:1"):
            with pytest.raises(LockTimeoutError):
                with locks.hold("cart:user:1", wait=0.1):
                    pass

    def test_released_on_error(self):
        locks = MemoryLockService()

        with pytest.raises(RuntimeError):
            with locks.hold("cart:session:s1"):
                raise RuntimeError("boom")

        with locks.hold("cart:session:s1", wait=0):
            pass

    def test_expired_owner_can_be_taken_over(self):
        locks = MemoryLockService()
        assert locks.acquire("k", "first", ttl_ms=0)

        assert locks.acquire("k", "second", ttl_ms=1000)
        assert locks.release("k", "first") is False
        assert locks.release("k", "second") is True

    def test_hold_many_takes_every_key(self):
        locks = MemoryLockService()

        with locks.hold_many(["cart:user:1", "cart:session:s1", "cart:user:1"]):
            assert set(locks._owners) == {"cart:user:1", "cart:session:s1"}

        assert locks._owners == {}

    def test_serializes_threads(self):
        locks = MemoryLockService()
        inside = []
        overlaps = []

        def worker():
            for _ in range(20):
                with locks.hold("cart:user:1", wait=5):
                    inside.append(1)
                    if len(inside) > 1:
                        overlaps.append(len(inside))
                    inside.pop()

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert overlaps == []


class TestRedisLockService:
    def test_acquire_and_release(self):
        fake = FakeRedis()
        locks = LockService(client=fake)

        with locks.hold("cart:user:1") as token:
            assert fake.values["cart:user:1"] == token

        assert fake.values == {}

    def test_foreign_token_is_not_released(self):
        fake = FakeRedis()
        locks = LockService(client=fake)
        fake.values["cart:user:1"] = "someone-else"

        assert locks.release("cart:user:1", "mine") is False
        assert fake.values["cart:user:1"] == "someone-else"

    def test_contended_key_times_out(self):
        fake = FakeRedis()
        fake.values["cart:user:1"] = "someone-else"

        with pytest.raises(LockTimeoutError):
            with LockService(client=fake).hold("cart:user:1", wait=0.1):
                pass

    def test_transient_redis_error_is_retried(self):
        fake = FakeRedis()
        fake.failures = 1

        assert LockService(client=fake).acquire("cart:user:1", "t", ttl_ms=1000) is True
