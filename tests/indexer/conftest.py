"""In-memory chain and store doubles for ingestion tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

import pytest

from coin_indexer.errors import ChainReaderError, StoreError
from coin_indexer.indexer.decoder import TRANSFER_TOPIC
from coin_indexer.indexer.models import ContractDescriptor, LogEntry, TransferRecord
from coin_indexer.indexer.ports import InsertResult

GENESIS_TS = 1_700_000_000
SENDER = "0x1111111111111111111111111111111111111111"
RECIPIENT = "0x2222222222222222222222222222222222222222"


def block_time(block_number: int) -> datetime:
    return datetime.fromtimestamp(GENESIS_TS + block_number * 12, tz=UTC)


def _pad(address: str) -> bytes:
    return bytes(12) + bytes.fromhex(address[2:])


def make_transfer_log(
    *,
    address: str,
    block_number: int,
    log_index: int = 0,
    sender: str = SENDER,
    recipient: str = RECIPIENT,
    amount: int = 1,
    tx_hash: str | None = None,
    topics: tuple[bytes, ...] | None = None,
    data: bytes | None = None,
) -> LogEntry:
    return LogEntry(
        address=address,
        topics=topics if topics is not None else (TRANSFER_TOPIC, _pad(sender), _pad(recipient)),
        data=data if data is not None else amount.to_bytes(32, "big"),
        tx_hash=tx_hash or f"0x{address[2:10]}{block_number:024x}{log_index:032x}",
        block_number=block_number,
        log_index=log_index,
    )


class FakeChain:
    """Chain reader serving a fixed log set."""

    def __init__(self, head: int = 0) -> None:
        self.head = head
        self.logs: list[LogEntry] = []
        self.unfiltered_logs: list[LogEntry] = []
        self.get_logs_calls: list[tuple[str, int, int]] = []
        self.timestamp_calls: list[int] = []
        self.fail_get_logs_calls: set[int] = set()
        self.fail_addresses: set[str] = set()
        self.fail_head = False
        self.hang_get_logs = False

    async def get_block_number(self) -> int:
        if self.fail_head:
            raise ChainReaderError("node unreachable")
        return self.head

    async def get_logs(self, *, address: str, topic: str, from_block: int, to_block: int) -> list[LogEntry]:
        self.get_logs_calls.append((address, from_block, to_block))
        if len(self.get_logs_calls) in self.fail_get_logs_calls or address in self.fail_addresses:
            raise ChainReaderError(f"eth_getLogs failed for [{from_block}, {to_block}]")
        if self.hang_get_logs:
            await asyncio.Event().wait()
        matched = [
            log
            for log in self.logs
            if log.address == address and from_block <= log.block_number <= to_block
        ]
        matched.extend(log for log in self.unfiltered_logs if from_block <= log.block_number <= to_block)
        return matched

    async def get_block_timestamp(self, block_number: int) -> datetime:
        self.timestamp_calls.append(block_number)
        return block_time(block_number)


class MemoryEventStore:
    """Event store keyed on (tx_hash, log_index)."""

    def __init__(self) -> None:
        self.records: dict[tuple[str, int], TransferRecord] = {}
        self.calls = 0
        self.fail_on_calls: set[int] = set()
        self.raise_unexpected = False
        self.entered = asyncio.Event()
        self.gate: asyncio.Event | None = None

    async def insert_many(self, records: Sequence[TransferRecord]) -> InsertResult:
        self.calls += 1
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.raise_unexpected:
            raise RuntimeError("driver exploded")
        if self.calls in self.fail_on_calls:
            raise StoreError("database unavailable")
        inserted = duplicates = conflicts = 0
        for record in records:
            existing = self.records.get(record.key)
            if existing is None:
                self.records[record.key] = record
                inserted += 1
            elif existing == record:
                duplicates += 1
            else:
                conflicts += 1
        return InsertResult(inserted=inserted, duplicates=duplicates, conflicts=conflicts)

    def for_contract(self, address: str) -> list[TransferRecord]:
        return [r for r in self.records.values() if r.contract_address == address]


class MemoryProgressStore:
    """Progress store that rejects regressions."""

    def __init__(self) -> None:
        self.checkpoints: dict[str, int] = {}
        self.history: list[tuple[str, int]] = []

    async def get(self, contract_address: str) -> int | None:
        return self.checkpoints.get(contract_address)

    async def set(self, contract_address: str, block_number: int) -> bool:
        current = self.checkpoints.get(contract_address)
        if current is not None and block_number < current:
            return False
        self.checkpoints[contract_address] = block_number
        self.history.append((contract_address, block_number))
        return True


class MemoryRegistry:
    """Contract registry with an active flag per address."""

    def __init__(self) -> None:
        self.contracts: dict[str, tuple[ContractDescriptor, bool]] = {}

    async def list_active(self) -> list[ContractDescriptor]:
        return [d for d, active in self.contracts.values() if active]

    async def add(self, descriptor: ContractDescriptor) -> bool:
        existing = self.contracts.get(descriptor.address)
        if existing is not None and existing[1]:
            return False
        self.contracts[descriptor.address] = (descriptor, True)
        return True

    async def ensure(self, descriptor: ContractDescriptor) -> bool:
        if descriptor.address in self.contracts:
            return False
        self.contracts[descriptor.address] = (descriptor, True)
        return True

    async def deactivate(self, contract_address: str) -> bool:
        existing = self.contracts.get(contract_address)
        if existing is None or not existing[1]:
            return False
        self.contracts[contract_address] = (existing[0], False)
        return True


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Yield to the event loop until `predicate` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def events() -> MemoryEventStore:
    return MemoryEventStore()


@pytest.fixture
def progress() -> MemoryProgressStore:
    return MemoryProgressStore()


@pytest.fixture
def registry() -> MemoryRegistry:
    return MemoryRegistry()


@pytest.fixture
def make_log() -> Callable[..., LogEntry]:
    return make_transfer_log


@pytest.fixture
def until() -> Callable[..., object]:
    return wait_until


@pytest.fixture
def descriptor(token_address: str) -> ContractDescriptor:
    return ContractDescriptor.create(name="USDC", address=token_address, start_block=100)
