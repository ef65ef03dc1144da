import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from . import config
from .errors import ValidationError

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"
_KEY_RE = re.compile(r"^[A-Za-z0-9_-]{8,64}$")


def validate_key(key: Optional[str]) -> Optional[str]:
    """Return the key unchanged, ``None`` when absent, or raise on a bad format."""
    if key is None or key == "":
        return None
    if not _KEY_RE.match(key):
        raise ValidationError(
            "Invalid idempotency key format",
            detail="Idempotency-Key must be 8-64 characters of A-Z, a-z, 0-9, _ or -",
        )
    return key


@dataclass
class IdempotencyEntry:
    key: str
    inserted_at: float
    response: Dict[str, Any]
    status_code: int = 200

    def expired(self, now: float, ttl: float) -> bool:
        return now - self.inserted_at > ttl


class IdempotencyStore:
    """In-process key -> response cache with a TTL.

    Entries past their TTL read as absent even before the periodic sweep
    removes them. Two concurrent requests carrying the same unseen key both
    miss and both run; only completed responses are replayed.
    """

    def __init__(
        self,
        ttl: float = config.IDEMPOTENCY_TTL_SEC,
        sweep_interval: float = config.IDEMPOTENCY_SWEEP_SEC,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._entries: Dict[str, IdempotencyEntry] = {}
        self._lock = asyncio.Lock()
        self._sweeper: Optional[asyncio.Task] = None
        self.hits = 0
        self.misses = 0

    async def get(self, key: str) -> Optional[IdempotencyEntry]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if entry.expired(self._clock(), self.ttl):
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return entry

    async def set(self, key: str, response: Dict[str, Any], status_code: int = 200) -> None:
        async with self._lock:
            self._entries[key] = IdempotencyEntry(key, self._clock(), response, status_code)

    async def sweep(self) -> int:
        now = self._clock()
        async with self._lock:
            stale = [k for k, e in self._entries.items() if e.expired(now, self.ttl)]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug("Idempotency sweep removed %d entries", len(stale))
        return len(stale)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()

    async def stats(self) -> dict:
        async with self._lock:
            return {
                "backend": "memory",
                "entries": len(self._entries),
                "ttl_sec": self.ttl,
                "hits": self.hits,
                "misses": self.misses,
            }

    # ── lifecycle ────────────────────────────────────────────────
    async def run_sweeper(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except Exception as exc:
                logger.error("idempotency sweep error: %s", exc)

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self.run_sweeper())

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None


@dataclass
class RedisIdempotencyStore:
    """Same contract as :class:`IdempotencyStore`, backed by Redis ``SETEX``.

    Redis expires keys itself, so there is nothing to sweep.
    """

    redis_client: Any
    ttl: int = config.IDEMPOTENCY_TTL_SEC
    prefix: str = "idempotency:"
    hits: int = field(default=0)
    misses: int = field(default=0)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, key: str) -> Optional[IdempotencyEntry]:
        raw = await self.redis_client.get(self._key(key))
        if not raw:
            self.misses += 1
            return None
        data = json.loads(raw)
        self.hits += 1
        return IdempotencyEntry(
            key, data.get("inserted_at", 0.0), data["response"], data.get("status_code", 200)
        )

    async def set(self, key: str, response: Dict[str, Any], status_code: int = 200) -> None:
        payload = json.dumps({"inserted_at": time.time(), "response": response, "status_code": status_code})
        await self.redis_client.setex(self._key(key), int(self.ttl), payload)

    async def sweep(self) -> int:
        return 0

    async def clear(self) -> None:
        async for k in self.redis_client.scan_iter(match=f"{self.prefix}*"):
            await self.redis_client.delete(k)

    async def stats(self) -> dict:
        return {"backend": "redis", "ttl_sec": self.ttl, "hits": self.hits, "misses": self.misses}

    def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None
