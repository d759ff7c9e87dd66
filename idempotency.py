# idempotency.py
import logging

import redis

logger = logging.getLogger(__name__)

PAYMENT_EVENTS = "payment-event"
REVOKED_TOKENS = "revoked-token"
USED_RESET_TOKENS = "used-reset-token"


def make_redis(url: str, socket_timeout: int = 5) -> redis.Redis:
    return redis.Redis.from_url(
        url,
        decode_responses=True,
        socket_timeout=socket_timeout,
        socket_connect_timeout=socket_timeout,
    )


class IdempotencyGuard:
    """Claim-once bookkeeping on Redis.

    ``claim`` is a single ``SET key 1 NX EX ttl``, so two deliveries of the
    same key can never both observe "not claimed". Keys expire after ``ttl``
    seconds so the keyspace does not grow unbounded.
    """

    def __init__(self, client: redis.Redis, namespace: str, ttl_seconds: int = 3600):
        self.client = client
        self.namespace = namespace
        self.ttl_seconds = ttl_seconds

    def key(self, name: str) -> str:
        return f"{self.namespace}:{name}"

    def claim(self, name: str, ttl_seconds: int | None = None) -> bool:
        ttl = ttl_seconds if ttl_seconds is not None else self.ttl_seconds
        claimed = self.client.set(self.key(name), "1", nx=True, ex=max(int(ttl), 1))
        return bool(claimed)

    def is_claimed(self, name: str) -> bool:
        return bool(self.client.exists(self.key(name)))

    def release(self, name: str) -> None:
        self.client.delete(self.key(name))
        logger.info("released claim %s", self.key(name))
