import threading
import time
import uuid
from contextlib import ExitStack, contextmanager
from functools import lru_cache

import redis
from redis.exceptions import RedisError

from cartsync.domain.errors import LockTimeoutError
from cartsync.utils.logging import get_logger
from cartsync.utils.retry import redis_retry
from cartsync.utils.settings import LOCK_TTL_MS, LOCK_WAIT_SECONDS, REDIS_URL

logger = get_logger(__name__)

#LUA porownaj i usun, atomicity
_RELEASE_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
else
    return 0
end
"""

#redis wykonuje atomowo przez lua, skrypt dziala jako jedna nieprzerywalna operacja
#nie mozna wcisnac sie miedzy GET a DEL

_POLL_SECONDS = 0.05


class _IdentityLocks:
    """Per-identity mutual exclusion around get-or-create + mutate.

    Subclasses provide ``acquire``/``release``; ``hold`` and ``hold_many`` are
    the context managers the services use.
    """

    def acquire(self, key: str, token: str, ttl_ms: int) -> bool:
        raise NotImplementedError

    def release(self, key: str, token: str) -> bool:
        raise NotImplementedError

    @contextmanager
    def hold(self, key: str, wait: float = LOCK_WAIT_SECONDS, ttl_ms: int = LOCK_TTL_MS):
        token = uuid.uuid4().hex
        deadline = time.monotonic() + wait

        while not self.acquire(key, token, ttl_ms):
            if time.monotonic() >= deadline:
                raise LockTimeoutError(f"Could not lock {key} within {wait}s")
            time.sleep(_POLL_SECONDS)

        try:
            yield token
        finally:
            if not self.release(key, token):
                logger.warning(f"Lock {key} expired before release")

    @contextmanager
    def hold_many(self, keys, wait: float = LOCK_WAIT_SECONDS, ttl_ms: int = LOCK_TTL_MS):
        # zawsze w tej samej kolejnosci, bez zakleszczen przy merge
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self.hold(key, wait=wait, ttl_ms=ttl_ms))
            yield


class LockService(_IdentityLocks):
    """
    -blokada per tozsamosc (user albo sesja goscia)
    -zwalnianie locka
    -atomowosc przy pomocy lua
    """

    def __init__(self, url: str | None = None, client: redis.Redis | None = None):
        self.redis = client or redis.Redis.from_url(url or REDIS_URL, decode_responses=True)

    @redis_retry()
    def acquire(self, key: str, token: str, ttl_ms: int) -> bool:
        #SET cart:user:42 "<token>" NX PX 10000
        return bool(self.redis.set(name=key, value=token, nx=True, px=ttl_ms))

    @redis_retry()
    def release(self, key: str, token: str) -> bool:
        res = self.redis.eval(_RELEASE_LUA, 1, key, token)
        return bool(res)


class MemoryLockService(_IdentityLocks):
    """In-process locks for a single worker, local development and tests."""

    def __init__(self):
        self._owners: dict[str, tuple[str, float]] = {}
        self._guard = threading.Lock()

    def acquire(self, key: str, token: str, ttl_ms: int) -> bool:
        now = time.monotonic()
        with self._guard:
            owner = self._owners.get(key)
            if owner is not None and owner[1] > now:
                return False
            self._owners[key] = (token, now + ttl_ms / 1000)
            return True

    def release(self, key: str, token: str) -> bool:
        with self._guard:
            owner = self._owners.get(key)
            if owner is None or owner[0] != token:
                return False
            del self._owners[key]
            return True


@lru_cache()
def get_lock_service() -> _IdentityLocks:
    if not REDIS_URL:
        logger.info("REDIS_URL not set, using in-process identity locks")
        return MemoryLockService()

    try:
        service = LockService(REDIS_URL)
        service.redis.ping()
        logger.info("Identity locks backed by Redis")
        return service
    except RedisError as err:
        logger.warning(f"Redis unavailable ({err}), using in-process identity locks")
        return MemoryLockService()
