import logging
import time
import uuid
from collections import defaultdict, deque
from functools import lru_cache
from threading import Lock

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from agentduty.core.config import get_settings

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id", str(uuid.uuid4()))
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["x-request-id"] = request_id
        response.headers["x-process-time-ms"] = f"{duration_ms:.2f}"
        logger.debug(
            "%s %s -> %s",
            request.method,
            request.url.path,
            response.status_code,
            extra={"request_id": request_id, "duration_ms": round(duration_ms, 2)},
        )
        return response


class RateLimiter:
    """
    Fixed-window counter keyed by client and path.
    Uses Redis when REDIS_URL is set so every instance shares the window,
    otherwise keeps per-process buckets that ``reset()`` clears.
    """

    def __init__(self, max_requests: int, redis_url: str | None = None) -> None:
        self.max_requests = max(1, max_requests)
        self._buckets: dict[str, deque[float]] = defaultdict(deque)
        self._lock = Lock()
        self._redis = None
        if redis_url:
            from redis import Redis

            self._redis = Redis.from_url(redis_url, decode_responses=True)

    def allow(self, key: str, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        if self._redis is not None:
            try:
                redis_key = f"ratelimit:{key}:{int(now // WINDOW_SECONDS)}"
                count = self._redis.incr(redis_key)
                if count == 1:
                    self._redis.expire(redis_key, WINDOW_SECONDS)
                return count <= self.max_requests
            except Exception as exc:  # noqa: BLE001
                logger.warning("Redis rate limiter unavailable, using local buckets: %s", exc)

        with self._lock:
            bucket = self._buckets[key]
            while bucket and (now - bucket[0]) > WINDOW_SECONDS:
                bucket.popleft()
            if len(bucket) >= self.max_requests:
                return False
            bucket.append(now)
            return True

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()


@lru_cache(maxsize=1)
def get_rate_limiter() -> RateLimiter:
    settings = get_settings()
    return RateLimiter(settings.rate_limit_requests_per_minute, redis_url=settings.redis_url)


class RateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        settings = get_settings()
        if not settings.rate_limit_enabled:
            return await call_next(request)

        path = request.url.path
        if path in settings.rate_limit_exempt_paths_list:
            return await call_next(request)

        limiter = get_rate_limiter()
        client_ip = request.client.host if request.client else "unknown"
        if not limiter.allow(f"{client_ip}:{path}"):
            return JSONResponse(
                status_code=429,
                content={
                    "detail": "Rate limit exceeded. Please retry shortly.",
                    "limit_per_minute": limiter.max_requests,
                },
            )
        return await call_next(request)
