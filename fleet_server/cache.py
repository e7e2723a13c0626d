from __future__ import annotations

import logging
import threading
import time
from typing import Callable

import redis
from redis.backoff import NoBackoff
from redis.retry import Retry

logger = logging.getLogger("fleet_server.cache")


def redis_client(redis_url: str) -> redis.Redis:
    # single attempt: callers fall back locally rather than stall a request
    return redis.Redis.from_url(
        redis_url,
        decode_responses=True,
        socket_timeout=1.0,
        socket_connect_timeout=1.0,
        retry=Retry(NoBackoff(), 0),
    )


class RedisRateLimiter:
    """Fixed-window counter per key. Falls back to an in-process window when Redis is down unless ``fail_closed``."""

    def __init__(
        self,
        redis_url: str,
        fail_closed: bool = True,
        client: redis.Redis | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client or redis_client(redis_url)
        self.fail_closed = fail_closed
        self._monotonic = monotonic
        self._local_counts: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()

    def ping(self) -> None:
        self.client.ping()

    def allow(self, key: str, limit: int, window_seconds: int = 60) -> bool:
        bucket = f"ratelimit:{key}"
        try:
            count = self.client.incr(bucket)
            if count == 1:
                self.client.expire(bucket, max(1, window_seconds))
            return int(count) <= max(1, limit)
        except redis.RedisError:
            if self.fail_closed:
                logger.warning("rate limiter unavailable; rejecting", extra={"bucket": bucket})
                return False
            return self._allow_local(bucket, limit, window_seconds)

    def _allow_local(self, bucket: str, limit: int, window_seconds: int) -> bool:
        now = self._monotonic()
        with self._lock:
            count, reset_at = self._local_counts.get(bucket, (0, now + window_seconds))
            if now >= reset_at:
                count = 0
                reset_at = now + window_seconds
            count += 1
            self._local_counts[bucket] = (count, reset_at)
        return count <= max(1, limit)


class RedisCommandLease:
    """Per-device dispatch lease: ``SET NX PX`` so only one command per interval wins.

    Redis is the source of truth across processes. When it cannot be reached
    the lease degrades to an in-process map so a single node still throttles.
    """

    def __init__(
        self,
        redis_url: str,
        interval_ms: int,
        client: redis.Redis | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client or redis_client(redis_url)
        self.interval_ms = max(0, interval_ms)
        self._monotonic = monotonic
        self._local_expiry: dict[str, float] = {}
        self._lock = threading.Lock()

    def acquire(self, device_id: str, holder: str) -> bool:
        if self.interval_ms == 0:
            return True
        key = f"control:lease:{device_id}"
        try:
            return bool(self.client.set(key, holder, nx=True, px=self.interval_ms))
        except redis.RedisError:
            logger.warning("command lease store unavailable; using local lease", extra={"device_id": device_id})
            return self._acquire_local(key)

    def _acquire_local(self, key: str) -> bool:
        now = self._monotonic()
        with self._lock:
            expires_at = self._local_expiry.get(key)
            if expires_at is not None and now < expires_at:
                return False
            self._local_expiry[key] = now + self.interval_ms / 1000.0
        return True
