import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from typing import Iterable

from .database import RedisClient
from .errors import LockTimeoutError
from .logging_config import get_logger

logger = get_logger("ledger.locks")

# delete the key only if it still holds our token
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class RedisAccountLock:
    """Per-account Redis locks (SET NX EX), taken in ascending account id order.

    Serializes transfers across processes before they reach the database.
    Row locks in the unit of work still apply underneath.
    """

    def __init__(
        self,
        redis_client: RedisClient,
        lock_timeout: float = 10.0,
        retry_delay: float = 0.05,
        lock_ttl: int = 30,
        key_prefix: str = "ledger:account_lock",
    ):
        self.redis_client = redis_client
        self.lock_timeout = lock_timeout  # how long to wait for a key
        self.retry_delay = retry_delay
        self.lock_ttl = lock_ttl  # expiry, in case the holder dies
        self.key_prefix = key_prefix

    def _key(self, account_id: int) -> str:
        return f"{self.key_prefix}:{account_id}"

    @asynccontextmanager
    async def hold(self, account_ids: Iterable[int]):
        token = str(uuid.uuid4())
        acquired = []
        try:
            for account_id in sorted(set(account_ids)):
                key = self._key(account_id)
                if not await self._acquire(key, token):
                    raise LockTimeoutError(
                        "Could not lock accounts in time", account_id=account_id
                    )
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                await self._release(key, token)

    async def _acquire(self, key: str, token: str) -> bool:
        redis = await self.redis_client.get_client()
        deadline = time.monotonic() + self.lock_timeout

        while True:
            if await redis.set(key, token, nx=True, ex=self.lock_ttl):
                return True
            if time.monotonic() >= deadline:
                logger.warning("Lock %s not acquired within %ss", key, self.lock_timeout)
                return False
            await asyncio.sleep(self.retry_delay)

    async def _release(self, key: str, token: str):
        redis = await self.redis_client.get_client()
        released = await redis.eval(RELEASE_SCRIPT, 1, key, token)
        if not released:
            logger.warning("Lock %s expired or was taken over before release", key)
