"""
TTL cache with in-flight request de-duplication.

Results cached here are advisory; callers must behave correctly on a miss.
"""

import asyncio
import base64
import hashlib
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


def fingerprint(prefix: str, data: Any) -> str:
    """Stable cache key: prefix plus the base64 SHA-256 of the sorted JSON"""
    digest = hashlib.sha256(
        json.dumps(data, sort_keys=True, default=str).encode("utf-8")
    ).digest()
    return f"{prefix}:{base64.urlsafe_b64encode(digest).decode('ascii')[:50]}"


class TTLCache:
    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._pending: Dict[str, asyncio.Future] = {}

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        self.purge_expired()
        self._entries.pop(key, None)
        # oldest insertion goes first when full
        while self._entries and len(self._entries) >= self.max_entries:
            del self._entries[next(iter(self._entries))]
        self._entries[key] = (self._clock() + (self.ttl if ttl is None else ttl), value)

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        logger.info(f"[cache] Cleared {count} entries")
        return count

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, (exp, _) in self._entries.items() if now >= exp]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    async def dedupe(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        """Concurrent callers with the same key share one in-flight call"""
        pending = self._pending.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        future = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        try:
            result = await factory()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except BaseException as e:
            future.set_exception(e)
            # mark retrieved so an unawaited future does not warn
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._pending.pop(key, None)

    async def with_cache(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
        should_cache: Callable[[Any], bool] = lambda _: True,
    ) -> Any:
        cached = self.get(key)
        if cached is not None:
            logger.debug(f"[cache] Hit {key}")
            return cached
        result = await self.dedupe(key, factory)
        if should_cache(result):
            self.set(key, result, ttl)
        return result
