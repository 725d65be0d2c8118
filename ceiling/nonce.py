"""
Ceiling Nonce Ledger.

Issues single-use challenges and consumes them atomically. A presentation
is only accepted while the challenge it is bound to is still live and
unused; concurrent consumers of the same challenge get exactly one winner.

Supports both in-memory and Redis-backed storage.
"""

import asyncio
import json
import logging
import math
import secrets
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import asdict, dataclass, replace
from typing import Callable, Dict, List, Optional, Tuple

from ceiling.config import NONCE_TTL_SECONDS, REAP_INTERVAL_SECONDS
from ceiling.errors import ReplayError
from ceiling.scopes import CREDENTIAL_PURPOSES, required_credential_types

logger = logging.getLogger(__name__)

# 18 bytes = 144 bits of randomness
NONCE_BYTES = 18


@dataclass
class NonceEntry:
    """
    A tracked challenge.

    ``used`` goes from False to True exactly once.
    """

    value: str
    domain: str
    requested_scope: str
    created_at: float
    expires_at: float
    used: bool = False

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "NonceEntry":
        return cls(**data)


@dataclass(frozen=True)
class Challenge:
    """What the caller gets back when it asks for a challenge."""

    nonce: str
    domain: str
    required_types: Tuple[str, ...]
    ttl: int

    @property
    def credentials_required(self) -> List[Dict[str, str]]:
        return [{"type": t, "purpose": CREDENTIAL_PURPOSES.get(t, "")} for t in self.required_types]


# =============================================================================
# Stores
# =============================================================================


class ChallengeStoreInterface(ABC):
    """Abstract interface for challenge storage implementations."""

    @abstractmethod
    async def issue(self, entry: NonceEntry) -> None:
        """Store a new, unused challenge."""
        pass

    @abstractmethod
    async def consume(self, value: str, domain: str, now: float) -> NonceEntry:
        """
        Atomically check a challenge and mark it used.

        Raises:
            ReplayError: unknown, expired, used or domain_mismatch.
        """
        pass

    @abstractmethod
    async def purge_expired(self, now: float) -> int:
        """Remove expired challenges. Returns count removed."""
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Drop every challenge."""
        pass


class MemoryChallengeStore(ChallengeStoreInterface):
    """
    In-memory challenge store guarded by an asyncio lock.

    Suitable for single-instance deployments. For multi-instance
    deployments, use RedisChallengeStore.

    Example:
        >>> store = MemoryChallengeStore(max_size=100000)
        >>> ledger = ChallengeLedger(store)
        >>> challenge = await ledger.issue_challenge("expense-api", "expense:approve")
        >>> entry = await ledger.consume_challenge(challenge.nonce, "expense-api")
    """

    def __init__(self, max_size: int = 100000):
        """
        Initialize the memory challenge store.

        Args:
            max_size: Maximum live challenges before forced eviction.
        """
        self._entries: "OrderedDict[str, NonceEntry]" = OrderedDict()
        self._max_size = max_size
        self._lock = asyncio.Lock()
        self._stats = {"issued": 0, "consumed": 0, "replays_blocked": 0, "evicted": 0, "purged": 0}

    async def issue(self, entry: NonceEntry) -> None:
        async with self._lock:
            if len(self._entries) >= self._max_size:
                self._purge_internal(time.time())
            # Evict oldest if still at capacity; an evicted challenge reads as unknown
            while len(self._entries) >= self._max_size:
                oldest = next(iter(self._entries))
                del self._entries[oldest]
                self._stats["evicted"] += 1
                logger.warning("Challenge store at capacity, evicted oldest challenge")

            self._entries[entry.value] = replace(entry)
            self._stats["issued"] += 1

    async def consume(self, value: str, domain: str, now: float) -> NonceEntry:
        async with self._lock:
            entry = self._entries.get(value)

            if entry is None:
                self._stats["replays_blocked"] += 1
                raise ReplayError("unknown")

            if now >= entry.expires_at:
                del self._entries[value]
                self._stats["replays_blocked"] += 1
                raise ReplayError("expired")

            if entry.used:
                self._stats["replays_blocked"] += 1
                raise ReplayError("used")

            if entry.domain != domain:
                self._stats["replays_blocked"] += 1
                raise ReplayError("domain_mismatch")

            entry.used = True
            self._stats["consumed"] += 1
            return replace(entry)

    async def purge_expired(self, now: float) -> int:
        async with self._lock:
            return self._purge_internal(now)

    def _purge_internal(self, now: float) -> int:
        """Internal purge without lock."""
        expired = [value for value, entry in self._entries.items() if now >= entry.expires_at]
        for value in expired:
            del self._entries[value]
        self._stats["purged"] += len(expired)
        return len(expired)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def stats(self) -> dict:
        """Return store statistics."""
        return {**self._stats, "active": len(self._entries), "max_size": self._max_size}


# Check-and-mark in one server-side step. Returns the stored JSON on success,
# otherwise the rejection reason.
_CONSUME_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 'unknown'
end
local entry = cjson.decode(raw)
if tonumber(ARGV[2]) >= tonumber(entry['expires_at']) then
  redis.call('DEL', KEYS[1])
  return 'expired'
end
if entry['used'] then
  return 'used'
end
if entry['domain'] ~= ARGV[1] then
  return 'domain_mismatch'
end
entry['used'] = true
redis.call('SET', KEYS[1], cjson.encode(entry), 'KEEPTTL')
return raw
"""


class RedisChallengeStore(ChallengeStoreInterface):
    """
    Redis-backed challenge store for distributed deployments.

    Consumption runs as a Lua script, so the check and the used-flag write
    are a single atomic step across every authorization server instance.
    Keys expire on their own via TTL.

    Example:
        >>> import redis.asyncio as redis
        >>> client = redis.Redis(host='localhost', port=6379)
        >>> store = RedisChallengeStore(client)
    """

    def __init__(self, redis_client, key_prefix: str = "ceiling:nonce:", grace_period: int = 5):
        """
        Initialize Redis challenge store.

        Args:
            redis_client: An async Redis client (redis.asyncio.Redis).
            key_prefix: Prefix for challenge keys.
            grace_period: Extra seconds to keep a key after its expiry.
        """
        self._redis = redis_client
        self._prefix = key_prefix
        self._grace_period = grace_period

    def _key(self, value: str) -> str:
        """Generate prefixed key."""
        return f"{self._prefix}{value}"

    async def issue(self, entry: NonceEntry) -> None:
        ttl = max(int(math.ceil(entry.expires_at - entry.created_at)) + self._grace_period, 1)
        stored = await self._redis.set(
            self._key(entry.value), json.dumps(entry.to_dict()), ex=ttl, nx=True
        )
        if not stored:
            raise RuntimeError("Challenge collision")

    async def consume(self, value: str, domain: str, now: float) -> NonceEntry:
        try:
            result = await self._redis.eval(_CONSUME_SCRIPT, 1, self._key(value), domain, repr(now))
        except Exception as e:
            # Fail closed: an unreachable store never authorizes anything
            logger.error(f"Redis challenge consume error: {e}")
            raise ReplayError("unknown")

        if isinstance(result, bytes):
            result = result.decode("utf-8")
        if result in ReplayError.REASONS:
            raise ReplayError(result)

        entry = NonceEntry.from_dict(json.loads(result))
        entry.used = True
        return entry

    async def purge_expired(self, now: float) -> int:
        """Redis handles expiration automatically via TTL."""
        return 0

    async def clear(self) -> None:
        """Delete all keys with our prefix."""
        cursor = 0
        while True:
            cursor, keys = await self._redis.scan(cursor, match=f"{self._prefix}*", count=100)
            if keys:
                await self._redis.delete(*keys)
            if cursor == 0:
                break

    async def ping(self) -> bool:
        """Check Redis connectivity."""
        try:
            return await self._redis.ping()
        except Exception:
            return False


# =============================================================================
# Ledger
# =============================================================================


def generate_nonce() -> str:
    """Cryptographically random, URL-safe challenge value."""
    return secrets.token_urlsafe(NONCE_BYTES)


class ChallengeLedger:
    """
    Issues and consumes challenges on behalf of the authorization server.

    Only this class creates nonces; nothing outside the server can
    originate one.
    """

    def __init__(
        self,
        store: Optional[ChallengeStoreInterface] = None,
        ttl_seconds: int = NONCE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the ledger.

        Args:
            store: Challenge storage (defaults to MemoryChallengeStore).
            ttl_seconds: Lifetime of a challenge.
            clock: Time source, in epoch seconds.
        """
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.store = store or MemoryChallengeStore()
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    async def issue_challenge(self, domain: str, requested_scope: str = "") -> Challenge:
        """
        Create a fresh challenge for one authorization attempt.

        Args:
            domain: Audience the resulting presentation must be bound to.
            requested_scope: Intended action, e.g. ``expense:approve``.

        Returns:
            Challenge with the nonce, required credential types and TTL.
        """
        now = self._clock()
        entry = NonceEntry(
            value=generate_nonce(),
            domain=domain,
            requested_scope=requested_scope or "",
            created_at=now,
            expires_at=now + self.ttl_seconds,
        )
        await self.store.issue(entry)

        challenge = Challenge(
            nonce=entry.value,
            domain=domain,
            required_types=required_credential_types(entry.requested_scope),
            ttl=self.ttl_seconds,
        )
        logger.info(
            f"Generated challenge (scope: {entry.requested_scope or 'all'}, "
            f"credentials: {', '.join(challenge.required_types)})"
        )
        return challenge

    async def consume_challenge(self, nonce: str, domain: str) -> NonceEntry:
        """
        Consume a challenge exactly once.

        Raises:
            ReplayError: If the challenge is unknown, expired, used, or bound
                to a different domain.
        """
        if not nonce:
            raise ReplayError("unknown")
        try:
            return await self.store.consume(nonce, domain, self._clock())
        except ReplayError as e:
            logger.warning(f"Challenge rejected: {e.reason}")
            raise

    async def purge_expired(self) -> int:
        removed = await self.store.purge_expired(self._clock())
        if removed:
            logger.debug(f"Purged {removed} expired challenge(s)")
        return removed

    async def clear(self) -> None:
        await self.store.clear()
        logger.info("Challenge ledger cleared")


class ChallengeReaper:
    """
    Background task that purges expired challenges on a timer.

    Purging is idempotent and takes the store's lock, so it never races a
    consume in progress.
    """

    def __init__(self, ledger: ChallengeLedger, interval: float = REAP_INTERVAL_SECONDS):
        self._ledger = ledger
        self._interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start reaping on the running event loop."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        """Cancel the reaper and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def run_once(self) -> int:
        return await self._ledger.purge_expired()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.run_once()
            except Exception as e:
                logger.warning(f"Challenge reaper run failed: {e}")
