"""EVM chain client with rate limiting, failover, and caching.

This module provides the chain reader used by contract monitors:
- Token bucket rate limiting to respect provider limits
- Failover from the primary to a secondary RPC URL
- Optional Redis caching of block timestamps (blocks are immutable)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, TypeVar

from redis.asyncio import Redis
from redis.exceptions import RedisError
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from coin_indexer.errors import ChainReaderError, DecodeError
from coin_indexer.indexer.models import LogEntry

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 1
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_TIMESTAMP_CACHE_TTL_SECONDS = 3600
DEFAULT_PRIMARY_RECOVERY_SECONDS = 60.0

# Transport failures surface as aiohttp/OS errors rather than Web3Exception.
_RPC_ERRORS: tuple[type[BaseException], ...] = (Web3Exception, OSError, TimeoutError)


class RPCError(ChainReaderError):
    """Raised when an RPC call fails on every configured endpoint."""


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        if max_requests_per_second <= 0:
            raise ValueError("max_requests_per_second must be > 0")
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            await asyncio.sleep((tokens - self.tokens) / self.refill_rate)


class ChainClient:
    """Read-only chain client implementing the `ChainReader` port.

    Example:
        ```python
        client = ChainClient(
            rpc_url="https://eth.llamarpc.com",
            fallback_rpc_url="https://ethereum-rpc.publicnode.com",
        )
        head = await client.get_block_number()
        logs = await client.get_logs(
            address="0xa0b8...",
            topic=TRANSFER_EVENT_SIGNATURE,
            from_block=head - 10,
            to_block=head,
        )
        await client.aclose()
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        poa: bool = False,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        timestamp_cache_ttl_seconds: int = DEFAULT_TIMESTAMP_CACHE_TTL_SECONDS,
    ) -> None:
        """Initialize the chain client.

        Args:
            rpc_url: Primary RPC endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            redis: Optional Redis client for caching block timestamps.
            poa: Inject the proof-of-authority extraData middleware.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Attempts per endpoint before failing over.
            retry_delay_seconds: Initial delay between attempts.
            timestamp_cache_ttl_seconds: Redis TTL for cached block timestamps.
        """
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")

        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._redis = redis
        self._poa = poa
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._timestamp_ttl = timestamp_cache_ttl_seconds

        self._w3 = self._new_web3_client(rpc_url)
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = self._new_web3_client(fallback_rpc_url)

        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = DEFAULT_PRIMARY_RECOVERY_SECONDS

        self._cache_prefix = "chain:"

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        client = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        if self._poa:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        return client

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
        except RedisError as e:
            logger.warning("Cache get failed: %s", e)
            return None
        if isinstance(value, bytes):
            return value.decode()
        return str(value) if value is not None else None

    async def _set_cached(self, key: str, value: str, ttl: int) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl)
        except RedisError as e:
            logger.warning("Cache set failed: %s", e)

    def _should_try_primary(self) -> bool:
        if self._primary_healthy or self._w3_fallback is None:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _call_endpoint(
        self,
        w3: AsyncWeb3[AsyncHTTPProvider],
        label: str,
        name: str,
        call: Callable[[AsyncWeb3[AsyncHTTPProvider]], Awaitable[T]],
    ) -> T:
        delay = self._retry_delay
        for attempt in range(self._max_retries):
            try:
                return await call(w3)
            except _RPC_ERRORS as e:
                logger.warning(
                    "%s RPC %s failed (attempt %d/%d): %s",
                    label,
                    name,
                    attempt + 1,
                    self._max_retries,
                    e,
                )
                if attempt == self._max_retries - 1:
                    raise
                await asyncio.sleep(delay)
                delay *= 2
        raise AssertionError("unreachable")

    async def _execute(
        self,
        name: str,
        call: Callable[[AsyncWeb3[AsyncHTTPProvider]], Awaitable[T]],
    ) -> T:
        """Execute an RPC call with retry and failover.

        Args:
            name: Call name used in log messages.
            call: Receives a web3 instance and returns the awaitable to run.

        Raises:
            RPCError: If every endpoint failed.
        """
        await self._rate_limiter.acquire()
        last_error: BaseException | None = None

        if self._should_try_primary():
            try:
                result = await self._call_endpoint(self._w3, "Primary", name, call)
            except _RPC_ERRORS as e:
                last_error = e
                self._primary_healthy = False
                self._last_primary_check = time.monotonic()
            else:
                self._primary_healthy = True
                return result

        if self._w3_fallback is not None:
            try:
                result = await self._call_endpoint(self._w3_fallback, "Fallback", name, call)
            except _RPC_ERRORS as e:
                last_error = e
            else:
                logger.info("Fallback RPC succeeded for %s", name)
                return result

        raise RPCError(f"RPC call {name} failed on all endpoints: {last_error}")

    async def get_block_number(self) -> int:
        """Return the current chain head height."""
        number = await self._execute("eth_blockNumber", lambda w3: w3.eth.block_number)
        return int(number)

    async def get_logs(
        self,
        *,
        address: str,
        topic: str,
        from_block: int,
        to_block: int,
    ) -> list[LogEntry]:
        """Fetch logs for one contract and topic0 over an inclusive range.

        Entries that cannot be normalized (pending logs, malformed fields)
        are logged and left out.
        """
        if from_block > to_block:
            raise ValueError(f"from_block {from_block} > to_block {to_block}")

        filter_params: dict[str, Any] = {
            "address": AsyncWeb3.to_checksum_address(address),
            "topics": [topic],
            "fromBlock": from_block,
            "toBlock": to_block,
        }
        raw_logs = await self._execute("eth_getLogs", lambda w3: w3.eth.get_logs(filter_params))

        entries: list[LogEntry] = []
        for raw in raw_logs:
            try:
                entries.append(LogEntry.from_rpc(raw))
            except DecodeError as e:
                logger.warning("Dropping malformed log from %s: %s", address, e)
        return entries

    async def get_block_timestamp(self, block_number: int) -> datetime:
        """Return the timestamp of a block as a UTC datetime."""
        if block_number < 0:
            raise ValueError("block_number must be >= 0")

        cache_key = f"{self._cache_prefix}block_ts:{block_number}"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return datetime.fromtimestamp(int(cached), tz=UTC)

        block = await self._execute("eth_getBlockByNumber", lambda w3: w3.eth.get_block(block_number))
        timestamp = int(block["timestamp"])
        await self._set_cached(cache_key, str(timestamp), ttl=self._timestamp_ttl)
        return datetime.fromtimestamp(timestamp, tz=UTC)

    async def health_check(self) -> bool:
        """Check if the client can reach any RPC endpoint."""
        try:
            await self.get_block_number()
            return True
        except RPCError:
            return False

    async def aclose(self) -> None:
        """Close async HTTP provider sessions."""
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            result = disconnect()
            if asyncio.iscoroutine(result):
                await result
