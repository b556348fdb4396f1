"""Tests for the chain client."""

from __future__ import annotations

from datetime import UTC, datetime
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import RedisError

from coin_indexer.chain.client import ChainClient, RateLimiter, RPCError
from coin_indexer.indexer.decoder import TRANSFER_EVENT_SIGNATURE

USDC_CHECKSUM = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
TS = 1_700_000_000


class FakeEth:
    """Stand-in for `AsyncWeb3.eth` with scripted failures."""

    def __init__(self, *, head: int = 100, failures: int = 0, logs: list[dict[str, Any]] | None = None) -> None:
        self.head = head
        self.failures = failures
        self.logs = logs or []
        self.calls: list[str] = []
        self.log_filters: list[dict[str, Any]] = []

    async def _answer(self, name: str, value: Any) -> Any:
        self.calls.append(name)
        if self.failures:
            self.failures -= 1
            raise OSError(f"{name}: connection refused")
        return value

    @property
    def block_number(self) -> Any:
        return self._answer("block_number", self.head)

    def get_logs(self, params: dict[str, Any]) -> Any:
        self.log_filters.append(params)
        return self._answer("get_logs", self.logs)

    def get_block(self, block_number: int) -> Any:
        return self._answer("get_block", {"number": block_number, "timestamp": TS + block_number})


def _fake_w3(eth: FakeEth) -> SimpleNamespace:
    return SimpleNamespace(eth=eth, provider=MagicMock(disconnect=AsyncMock()))


def _client(
    primary: FakeEth,
    fallback: FakeEth | None = None,
    *,
    redis: Any = None,
    max_retries: int = 1,
) -> ChainClient:
    client = ChainClient(
        "http://localhost:8545",
        fallback_rpc_url="http://localhost:8546" if fallback is not None else None,
        redis=redis,
        max_requests_per_second=1000,
        max_retries=max_retries,
        retry_delay_seconds=0,
    )
    client._w3 = _fake_w3(primary)  # type: ignore[assignment]
    if fallback is not None:
        client._w3_fallback = _fake_w3(fallback)  # type: ignore[assignment]
    return client


def _raw_log(**overrides: Any) -> dict[str, Any]:
    raw: dict[str, Any] = {
        "address": USDC_CHECKSUM,
        "topics": [
            bytes.fromhex(TRANSFER_EVENT_SIGNATURE[2:]),
            bytes(12) + bytes.fromhex("11" * 20),
            bytes(12) + bytes.fromhex("22" * 20),
        ],
        "data": (5).to_bytes(32, "big"),
        "transactionHash": bytes.fromhex("ab" * 32),
        "blockNumber": 120,
        "logIndex": 3,
        "removed": False,
    }
    raw.update(overrides)
    return raw


class TestRateLimiter:
    def test_rejects_non_positive_rate(self) -> None:
        with pytest.raises(ValueError):
            RateLimiter.create(0)

    @pytest.mark.asyncio
    async def test_acquire_consumes_tokens(self) -> None:
        limiter = RateLimiter.create(10)
        await limiter.acquire()
        await limiter.acquire()
        assert limiter.tokens <= 9


class TestExecute:
    def test_rejects_zero_retries(self) -> None:
        with pytest.raises(ValueError):
            ChainClient("http://localhost:8545", max_retries=0)

    @pytest.mark.asyncio
    async def test_primary_answers(self) -> None:
        primary = FakeEth(head=4242)
        assert await _client(primary).get_block_number() == 4242
        assert primary.calls == ["block_number"]

    @pytest.mark.asyncio
    async def test_fails_over_to_fallback(self) -> None:
        primary = FakeEth(failures=10)
        fallback = FakeEth(head=77)
        client = _client(primary, fallback)

        assert await client.get_block_number() == 77
        # Primary stays parked until the recovery interval elapses.
        assert await client.get_block_number() == 77
        assert primary.calls == ["block_number"]
        assert fallback.calls == ["block_number", "block_number"]

    @pytest.mark.asyncio
    async def test_all_endpoints_failing_raises_rpc_error(self) -> None:
        client = _client(FakeEth(failures=10), FakeEth(failures=10))
        with pytest.raises(RPCError, match="eth_blockNumber"):
            await client.get_block_number()

    @pytest.mark.asyncio
    async def test_primary_only_failure(self) -> None:
        client = _client(FakeEth(failures=1))
        with pytest.raises(RPCError):
            await client.get_block_number()
        assert await client.health_check() is True

    @pytest.mark.asyncio
    async def test_retries_within_endpoint(self) -> None:
        primary = FakeEth(head=9, failures=2)
        client = _client(primary, max_retries=3)
        assert await client.get_block_number() == 9
        assert len(primary.calls) == 3

    @pytest.mark.asyncio
    async def test_health_check_reports_failure(self) -> None:
        assert await _client(FakeEth(failures=10)).health_check() is False


class TestGetLogs:
    @pytest.mark.asyncio
    async def test_builds_filter_and_normalizes_entries(self) -> None:
        primary = FakeEth(logs=[_raw_log()])
        client = _client(primary)

        entries = await client.get_logs(
            address=USDC_CHECKSUM.lower(),
            topic=TRANSFER_EVENT_SIGNATURE,
            from_block=100,
            to_block=149,
        )

        assert primary.log_filters == [
            {
                "address": USDC_CHECKSUM,
                "topics": [TRANSFER_EVENT_SIGNATURE],
                "fromBlock": 100,
                "toBlock": 149,
            }
        ]
        assert len(entries) == 1
        assert entries[0].address == USDC_CHECKSUM.lower()
        assert entries[0].tx_hash == "0x" + "ab" * 32
        assert (entries[0].block_number, entries[0].log_index) == (120, 3)

    @pytest.mark.asyncio
    async def test_drops_pending_logs(self) -> None:
        primary = FakeEth(logs=[_raw_log(blockNumber=None, logIndex=None), _raw_log(logIndex=4)])
        entries = await _client(primary).get_logs(
            address=USDC_CHECKSUM, topic=TRANSFER_EVENT_SIGNATURE, from_block=1, to_block=2
        )
        assert [e.log_index for e in entries] == [4]

    @pytest.mark.asyncio
    async def test_rejects_inverted_range(self) -> None:
        with pytest.raises(ValueError):
            await _client(FakeEth()).get_logs(
                address=USDC_CHECKSUM, topic=TRANSFER_EVENT_SIGNATURE, from_block=10, to_block=9
            )

    @pytest.mark.asyncio
    async def test_failure_raises_rpc_error(self) -> None:
        with pytest.raises(RPCError, match="eth_getLogs"):
            await _client(FakeEth(failures=1)).get_logs(
                address=USDC_CHECKSUM, topic=TRANSFER_EVENT_SIGNATURE, from_block=1, to_block=2
            )


class TestBlockTimestamp:
    @pytest.mark.asyncio
    async def test_without_cache(self) -> None:
        primary = FakeEth()
        stamp = await _client(primary).get_block_timestamp(5)
        assert stamp == datetime.fromtimestamp(TS + 5, tz=UTC)
        assert primary.calls == ["get_block"]

    @pytest.mark.asyncio
    async def test_cache_miss_populates_redis(self) -> None:
        redis = AsyncMock()
        redis.get.return_value = None
        primary = FakeEth()

        await _client(primary, redis=redis).get_block_timestamp(5)

        redis.get.assert_awaited_once_with("chain:block_ts:5")
        redis.set.assert_awaited_once_with("chain:block_ts:5", str(TS + 5), ex=3600)

    @pytest.mark.asyncio
    async def test_cache_hit_skips_rpc(self) -> None:
        redis = AsyncMock()
        redis.get.return_value = str(TS).encode()
        primary = FakeEth()

        stamp = await _client(primary, redis=redis).get_block_timestamp(5)

        assert stamp == datetime.fromtimestamp(TS, tz=UTC)
        assert primary.calls == []

    @pytest.mark.asyncio
    async def test_redis_errors_fall_back_to_rpc(self) -> None:
        redis = AsyncMock()
        redis.get.side_effect = RedisError("down")
        redis.set.side_effect = RedisError("down")
        primary = FakeEth()

        stamp = await _client(primary, redis=redis).get_block_timestamp(7)

        assert stamp == datetime.fromtimestamp(TS + 7, tz=UTC)
        assert primary.calls == ["get_block"]


@pytest.mark.asyncio
async def test_aclose_disconnects_every_provider() -> None:
    client = _client(FakeEth(), FakeEth())
    await client.aclose()
    client._w3.provider.disconnect.assert_awaited_once()
    assert client._w3_fallback is not None
    client._w3_fallback.provider.disconnect.assert_awaited_once()
