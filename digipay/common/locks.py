"""Short-lived per-order locks backed by Redis."""

from contextlib import contextmanager
from uuid import uuid4

import redis

from digipay.common.logging import logger


RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class RedisOrderLock:
    """`SET NX EX` lock scoped to one order.

    `hold()` yields False when another worker holds the lock. When Redis is
    unreachable the lock degrades to a no-op and yields True: the order
    table's conditional writes stay authoritative.
    """

    def __init__(self, client: redis.Redis, namespace: str = "lock:order", ttl_seconds: int = 30) -> None:
        self.client = client
        self.namespace = namespace
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, url: str, ttl_seconds: int = 30) -> "RedisOrderLock":
        return cls(redis.Redis.from_url(url, decode_responses=True), ttl_seconds=ttl_seconds)

    @contextmanager
    def hold(self, order_id: str):
        key = f"{self.namespace}:{order_id}"
        token = str(uuid4())
        try:
            acquired = bool(self.client.set(key, token, nx=True, ex=self.ttl_seconds))
        except redis.RedisError as exc:
            logger.warning("order_lock_unavailable order_id=%s error=%s", order_id, exc)
            yield True
            return
        try:
            yield acquired
        finally:
            if acquired:
                try:
                    self.client.eval(RELEASE_SCRIPT, 1, key, token)
                except redis.RedisError as exc:
                    logger.warning("order_lock_release_failed order_id=%s error=%s", order_id, exc)
