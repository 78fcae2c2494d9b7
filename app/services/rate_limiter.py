"""
Rate limiting for operator actions that start background work.
"""
import asyncio
import logging
import time
from typing import Any, Dict

from fastapi import HTTPException, status

logger = logging.getLogger("fleetsync.rate_limiter")

# operation -> (requests, period in seconds)
DEFAULT_LIMITS = {
    "start_import": (5, 300),
    "start_extraction": (5, 300),
    "health_check": (30, 60),
    "default": (100, 60),
}


class RateLimiter:
    """
    Fixed-window request counter per admin and operation.

    Counters live in process memory.
    """

    def __init__(self):
        self._windows: Dict[str, Dict[str, float]] = {}
        self._lock = asyncio.Lock()
        self._limits = dict(DEFAULT_LIMITS)

    def set_limit(self, operation: str, requests: int, period: int) -> None:
        """Override the limit of an operation."""
        self._limits[operation] = (requests, period)

    async def check_rate_limit(self, subject: str, operation: str = "default") -> bool:
        """
        Count one request and reject it when the window is full.

        Args:
            subject: Who is making the request (admin id from the token)
            operation: Limited operation name

        Raises:
            HTTPException: 429 with a Retry-After header
        """
        requests, period = self._limits.get(operation, self._limits["default"])
        key = f"{subject}:{operation}"
        now = time.time()

        async with self._lock:
            window = self._windows.get(key)
            if window is None or now > window["reset_at"]:
                window = {"count": 0, "reset_at": now + period}
                self._windows[key] = window

            if window["count"] >= requests:
                reset_in = max(1, int(window["reset_at"] - now))
                logger.warning(f"Rate limit exceeded for {key}, resets in {reset_in}s")
                raise HTTPException(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    detail=f"Rate limit exceeded. Try again in {reset_in} seconds.",
                    headers={"Retry-After": str(reset_in)}
                )

            window["count"] += 1
            logger.debug(f"Rate limit for {key}: {window['count']}/{requests}")
            return True

    async def get_limit_status(self, subject: str, operation: str = "default") -> Dict[str, Any]:
        """Remaining budget for a subject and operation."""
        requests, period = self._limits.get(operation, self._limits["default"])
        now = time.time()
        async with self._lock:
            window = self._windows.get(f"{subject}:{operation}")
            if window is None or now > window["reset_at"]:
                return {"limit": requests, "remaining": requests, "reset": int(now + period), "used": 0}
            return {
                "limit": requests,
                "remaining": max(0, requests - int(window["count"])),
                "reset": int(window["reset_at"]),
                "used": int(window["count"]),
            }


# Singleton instance for dependency injection
_rate_limiter = RateLimiter()

def get_rate_limiter() -> RateLimiter:
    """Get the singleton rate limiter instance."""
    return _rate_limiter
