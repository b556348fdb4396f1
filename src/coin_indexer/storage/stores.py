"""SQL-backed implementations of the ingestion ports.

Each call opens its own session through `DatabaseManager`, so one store
instance can be shared by every monitor.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from sqlalchemy.exc import SQLAlchemyError

from coin_indexer.errors import ConfigurationError, StoreError
from coin_indexer.indexer.models import ContractDescriptor, TransferRecord
from coin_indexer.indexer.ports import InsertResult
from coin_indexer.storage.database import DatabaseManager
from coin_indexer.storage.repos import (
    BlockProgressRepository,
    ContractDTO,
    ContractRepository,
    TransferDTO,
    TransferRepository,
)

logger = logging.getLogger(__name__)


def _record_to_dto(record: TransferRecord) -> TransferDTO:
    return TransferDTO(
        tx_hash=record.tx_hash,
        log_index=record.log_index,
        block_number=record.block_number,
        contract_address=record.contract_address,
        token_name=record.token_name,
        from_address=record.from_address,
        to_address=record.to_address,
        amount=str(record.amount),
        block_timestamp=record.block_timestamp,
        price_usd=record.price_usd,
        value_usd=record.value_usd,
    )


class SqlEventStore:
    """Event store writing transfers through `TransferRepository`."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def insert_many(self, records: Sequence[TransferRecord]) -> InsertResult:
        if not records:
            return InsertResult()
        try:
            async with self._db.get_async_session() as session:
                result = await TransferRepository(session).insert_many(
                    [_record_to_dto(r) for r in records]
                )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to insert {len(records)} transfers: {e}") from e

        return result


class SqlProgressStore:
    """Progress store backed by the `block_progress` table."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def get(self, contract_address: str) -> int | None:
        try:
            async with self._db.get_async_session() as session:
                progress = await BlockProgressRepository(session).get(contract_address)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read progress for {contract_address}: {e}") from e
        return progress.last_block if progress else None

    async def set(self, contract_address: str, block_number: int) -> bool:
        try:
            async with self._db.get_async_session() as session:
                advanced = await BlockProgressRepository(session).advance(contract_address, block_number)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to write progress for {contract_address}: {e}") from e

        if not advanced:
            logger.warning(
                "Rejected checkpoint regression for %s to block %d", contract_address, block_number
            )
        return advanced


class SqlContractRegistry:
    """Contract registry backed by the `contracts` table."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def list_active(self) -> list[ContractDescriptor]:
        try:
            async with self._db.get_async_session() as session:
                rows = await ContractRepository(session).list_active()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to list contracts: {e}") from e

        descriptors: list[ContractDescriptor] = []
        for row in rows:
            try:
                descriptors.append(
                    ContractDescriptor.create(name=row.name, address=row.address, start_block=row.start_block)
                )
            except ConfigurationError as e:
                logger.error("Skipping invalid registry row %s: %s", row.address, e)
        return descriptors

    async def add(self, descriptor: ContractDescriptor) -> bool:
        return await self._add(descriptor, reactivate=True)

    async def ensure(self, descriptor: ContractDescriptor) -> bool:
        return await self._add(descriptor, reactivate=False)

    async def _add(self, descriptor: ContractDescriptor, *, reactivate: bool) -> bool:
        try:
            async with self._db.get_async_session() as session:
                return await ContractRepository(session).add(
                    ContractDTO(
                        name=descriptor.name,
                        address=descriptor.address,
                        start_block=descriptor.start_block,
                    ),
                    reactivate=reactivate,
                )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to add contract {descriptor.address}: {e}") from e

    async def deactivate(self, contract_address: str) -> bool:
        try:
            async with self._db.get_async_session() as session:
                return await ContractRepository(session).deactivate(contract_address)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to deactivate contract {contract_address}: {e}") from e
