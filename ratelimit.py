"""
Fixed-window request limiting backed by MongoDB

Counters live in the `ratelimit` collection, one document per
scope/client/window, so every API instance sees the same counts. Expired windows
are removed by the TTL index on `expires_at` (see database.ensure_indexes).
"""
import logging
import math
import time
from datetime import datetime, timezone
from typing import Optional, Tuple

from fastapi import Request, Response
from pymongo import ReturnDocument

from database import collection
from errors import RateLimitExceededError

logger = logging.getLogger(__name__)


def client_identity(request: Request) -> str:
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RateLimiter:
    """FastAPI dependency allowing `max_requests` per client every `window_seconds`."""

    def __init__(self, scope: str, max_requests: int, window_seconds: int,
                 message: str = "Too many requests. Try again later."):
        self.scope = scope
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.message = message

    def hit(self, identity: str, now: Optional[float] = None) -> Tuple[int, int]:
        """Count one request; return the window's count and seconds until it resets."""
        now = time.time() if now is None else now
        window_start = int(now // self.window_seconds) * self.window_seconds
        window_end = window_start + self.window_seconds
        doc = collection("ratelimit").find_one_and_update(
            {"_id": f"{self.scope}:{identity}:{window_start}"},
            {
                "$inc": {"count": 1},
                "$setOnInsert": {"expires_at": datetime.fromtimestamp(window_end, timezone.utc)},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return doc["count"], max(1, math.ceil(window_end - now))

    def __call__(self, request: Request, response: Response):
        identity = client_identity(request)
        count, reset_in = self.hit(identity)
        response.headers["X-RateLimit-Limit"] = str(self.max_requests)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.max_requests - count))
        if count > self.max_requests:
            logger.warning(
                "Rate limit exceeded: scope=%s client=%s path=%s retry_after=%ss",
                self.scope, identity, request.url.path, reset_in,
            )
            raise RateLimitExceededError(reset_in, self.message)
