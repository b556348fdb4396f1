"""Ports consumed by the ingestion engine.

Monitors depend only on these protocols; concrete implementations are
injected at construction time (`ChainClient`, and the SQL stores in
`coin_indexer.storage.stores`).
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from coin_indexer.indexer.models import ContractDescriptor, LogEntry, TransferRecord


@dataclass(frozen=True)
class InsertResult:
    """Outcome of an idempotent batch insert."""

    inserted: int = 0
    duplicates: int = 0
    conflicts: int = 0

    @property
    def attempted(self) -> int:
        return self.inserted + self.duplicates + self.conflicts


class ChainReader(Protocol):
    """Read-only access to a chain node.

    Implementations raise `ChainReaderError` on any failure.
    """

    async def get_block_number(self) -> int: ...

    async def get_logs(
        self,
        *,
        address: str,
        topic: str,
        from_block: int,
        to_block: int,
    ) -> list[LogEntry]: ...

    async def get_block_timestamp(self, block_number: int) -> datetime: ...


class ProgressStore(Protocol):
    """Durable per-contract checkpoint."""

    async def get(self, contract_address: str) -> int | None: ...

    async def set(self, contract_address: str, block_number: int) -> bool:
        """Advance the checkpoint.

        Returns False when the write was rejected because it would regress.
        """
        ...


class EventStore(Protocol):
    """Durable, uniquely-keyed transfer records."""

    async def insert_many(self, records: Sequence[TransferRecord]) -> InsertResult:
        """Insert records, ignoring ones whose key already exists."""
        ...


class ContractRegistry(Protocol):
    """Durable list of monitored contracts."""

    async def list_active(self) -> list[ContractDescriptor]: ...

    async def add(self, descriptor: ContractDescriptor) -> bool:
        """Add or reactivate a contract. Returns False if it was already active."""
        ...

    async def ensure(self, descriptor: ContractDescriptor) -> bool:
        """Insert a contract unless its address is already known, active or not.

        Returns True if a new row was inserted.
        """
        ...

    async def deactivate(self, contract_address: str) -> bool: ...
