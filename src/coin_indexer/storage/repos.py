"""Repository pattern implementations for data access.

This module provides clean data access abstractions for indexed transfers,
monitored contracts, and block progress checkpoints.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from coin_indexer.errors import StoreError
from coin_indexer.indexer.ports import InsertResult
from coin_indexer.storage.models import BlockProgressModel, ContractModel, TransferModel

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# Keeps bound parameters well under the SQLite and asyncpg limits.
_BATCH_SIZE = 500


def _dialect_insert(session: AsyncSession, model: type[Any]) -> Any:
    """Return the dialect-specific INSERT construct (supports ON CONFLICT)."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise StoreError(f"Unsupported database dialect: {dialect}")


def _batched(items: Sequence[Any], size: int = _BATCH_SIZE) -> list[Sequence[Any]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


@dataclass
class TransferDTO:
    """Data transfer object for indexed Transfer events."""

    tx_hash: str
    log_index: int
    block_number: int
    contract_address: str
    token_name: str
    from_address: str
    to_address: str
    amount: str
    block_timestamp: datetime
    price_usd: float | None = None
    value_usd: float | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: TransferModel) -> TransferDTO:
        return cls(
            tx_hash=model.tx_hash,
            log_index=model.log_index,
            block_number=model.block_number,
            contract_address=model.contract_address,
            token_name=model.token_name,
            from_address=model.from_address,
            to_address=model.to_address,
            amount=model.amount,
            block_timestamp=model.block_timestamp,
            price_usd=model.price_usd,
            value_usd=model.value_usd,
            created_at=model.created_at,
        )

    @property
    def key(self) -> tuple[str, int]:
        return (self.tx_hash.lower(), self.log_index)

    def same_payload(self, other: TransferDTO) -> bool:
        """Compare the on-chain fields (ignores labels and annotations)."""
        return (
            self.block_number == other.block_number
            and self.contract_address.lower() == other.contract_address.lower()
            and self.from_address.lower() == other.from_address.lower()
            and self.to_address.lower() == other.to_address.lower()
            and self.amount == other.amount
        )


@dataclass
class ContractDTO:
    """Data transfer object for monitored contracts."""

    name: str
    address: str
    start_block: int
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: ContractModel) -> ContractDTO:
        return cls(
            name=model.name,
            address=model.address,
            start_block=model.start_block,
            is_active=model.is_active,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )


@dataclass
class BlockProgressDTO:
    """Data transfer object for block progress checkpoints."""

    contract: str
    last_block: int
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: BlockProgressModel) -> BlockProgressDTO:
        return cls(
            contract=model.contract,
            last_block=model.last_block,
            updated_at=model.updated_at,
        )


class TransferRepository:
    """Repository for indexed transfers."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def get_by_key(self, tx_hash: str, log_index: int) -> TransferDTO | None:
        """Get a transfer by its uniqueness key."""
        result = await self.session.execute(
            select(TransferModel).where(
                (TransferModel.tx_hash == tx_hash.lower()) & (TransferModel.log_index == log_index)
            )
        )
        model = result.scalar_one_or_none()
        return TransferDTO.from_model(model) if model else None

    async def list_by_contract(
        self,
        contract_address: str,
        *,
        limit: int = 100,
        offset: int = 0,
    ) -> list[TransferDTO]:
        """List transfers for a contract ordered by chain position.

        Args:
            contract_address: Token contract address.
            limit: Maximum number of results.
            offset: Number of rows to skip.

        Returns:
            List of TransferDTOs ordered by (block_number, log_index).
        """
        result = await self.session.execute(
            select(TransferModel)
            .where(TransferModel.contract_address == contract_address.lower())
            .order_by(TransferModel.block_number.asc(), TransferModel.log_index.asc())
            .limit(limit)
            .offset(offset)
        )
        return [TransferDTO.from_model(m) for m in result.scalars().all()]

    async def count_by_contract(self, contract_address: str) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(TransferModel)
            .where(TransferModel.contract_address == contract_address.lower())
        )
        return int(result.scalar_one())

    async def _get_existing(self, dtos: Sequence[TransferDTO]) -> dict[tuple[str, int], TransferDTO]:
        wanted = {dto.key for dto in dtos}
        hashes = sorted({tx_hash for tx_hash, _ in wanted})
        existing: dict[tuple[str, int], TransferDTO] = {}
        for batch in _batched(hashes):
            result = await self.session.execute(
                select(TransferModel).where(TransferModel.tx_hash.in_(batch))
            )
            for model in result.scalars().all():
                dto = TransferDTO.from_model(model)
                if dto.key in wanted:
                    existing[dto.key] = dto
        return existing

    async def insert_many(self, dtos: Sequence[TransferDTO]) -> InsertResult:
        """Insert transfers idempotently.

        Rows whose `(tx_hash, log_index)` already exist are never overwritten.
        An existing row whose on-chain fields differ from the incoming one is
        counted as a conflict and logged; the stored row stays authoritative.

        Returns:
            Counts of inserted, duplicate, and conflicting rows.
        """
        if not dtos:
            return InsertResult()

        duplicates = 0
        conflicts = 0
        unique: dict[tuple[str, int], TransferDTO] = {}
        for dto in dtos:
            if dto.key in unique:
                duplicates += 1
                continue
            unique[dto.key] = dto

        existing = await self._get_existing(list(unique.values()))
        fresh: list[TransferDTO] = []
        for key, dto in unique.items():
            stored = existing.get(key)
            if stored is None:
                fresh.append(dto)
            elif stored.same_payload(dto):
                duplicates += 1
            else:
                conflicts += 1
                logger.warning(
                    "Conflicting transfer %s:%d ignored (stored block=%d amount=%s, incoming block=%d amount=%s)",
                    key[0],
                    key[1],
                    stored.block_number,
                    stored.amount,
                    dto.block_number,
                    dto.amount,
                )

        inserted = 0
        now = datetime.now(UTC)
        for batch in _batched(fresh):
            rows = [
                {
                    "tx_hash": dto.tx_hash.lower(),
                    "log_index": dto.log_index,
                    "block_number": dto.block_number,
                    "contract_address": dto.contract_address.lower(),
                    "token_name": dto.token_name,
                    "from_address": dto.from_address.lower(),
                    "to_address": dto.to_address.lower(),
                    "amount": dto.amount,
                    "block_timestamp": dto.block_timestamp,
                    "price_usd": dto.price_usd,
                    "value_usd": dto.value_usd,
                    "created_at": now,
                }
                for dto in batch
            ]
            stmt = _dialect_insert(self.session, TransferModel).values(rows)
            stmt = stmt.on_conflict_do_nothing(index_elements=["tx_hash", "log_index"])
            result = await self.session.execute(stmt.returning(TransferModel.id))
            written = len(result.all())
            inserted += written
            # Rows inserted concurrently by another writer since the lookup.
            duplicates += len(batch) - written

        await self.session.flush()
        return InsertResult(inserted=inserted, duplicates=duplicates, conflicts=conflicts)


class ContractRepository:
    """Repository for monitored contracts."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_address(self, address: str) -> ContractDTO | None:
        result = await self.session.execute(
            select(ContractModel).where(ContractModel.address == address.lower())
        )
        model = result.scalar_one_or_none()
        return ContractDTO.from_model(model) if model else None

    async def list_active(self) -> list[ContractDTO]:
        result = await self.session.execute(
            select(ContractModel).where(ContractModel.is_active.is_(True)).order_by(ContractModel.id.asc())
        )
        return [ContractDTO.from_model(m) for m in result.scalars().all()]

    async def list_all(self) -> list[ContractDTO]:
        result = await self.session.execute(select(ContractModel).order_by(ContractModel.id.asc()))
        return [ContractDTO.from_model(m) for m in result.scalars().all()]

    async def add(self, dto: ContractDTO, *, reactivate: bool = True) -> bool:
        """Insert a contract, or reactivate a deactivated one.

        Args:
            dto: Contract to register.
            reactivate: When False, an existing inactive row is left alone.

        Returns:
            True if a row was inserted or reactivated, False otherwise.
        """
        result = await self.session.execute(
            select(ContractModel).where(ContractModel.address == dto.address.lower())
        )
        model = result.scalar_one_or_none()
        if model is not None:
            if model.is_active or not reactivate:
                return False
            model.is_active = True
            model.name = dto.name
            model.start_block = dto.start_block
            await self.session.flush()
            return True

        self.session.add(
            ContractModel(
                name=dto.name,
                address=dto.address.lower(),
                start_block=dto.start_block,
                is_active=True,
            )
        )
        await self.session.flush()
        return True

    async def deactivate(self, address: str) -> bool:
        """Mark a contract inactive.

        Returns:
            True if an active contract was deactivated, False otherwise.
        """
        result = await self.session.execute(
            update(ContractModel)
            .where((ContractModel.address == address.lower()) & (ContractModel.is_active.is_(True)))
            .values(is_active=False, updated_at=datetime.now(UTC))
        )
        # SQLAlchemy Result does have rowcount but typing doesn't reflect it
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]


class BlockProgressRepository:
    """Repository for per-contract block progress."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, contract: str) -> BlockProgressDTO | None:
        result = await self.session.execute(
            select(BlockProgressModel).where(BlockProgressModel.contract == contract.lower())
        )
        model = result.scalar_one_or_none()
        return BlockProgressDTO.from_model(model) if model else None

    async def list_all(self) -> list[BlockProgressDTO]:
        result = await self.session.execute(select(BlockProgressModel).order_by(BlockProgressModel.contract))
        return [BlockProgressDTO.from_model(m) for m in result.scalars().all()]

    async def advance(self, contract: str, last_block: int) -> bool:
        """Move the checkpoint forward; never backward.

        Returns:
            True if the stored checkpoint now equals `last_block`, False if the
            write was rejected because a higher checkpoint already exists.
        """
        contract = contract.lower()
        stmt = _dialect_insert(self.session, BlockProgressModel).values(
            contract=contract,
            last_block=last_block,
            updated_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["contract"],
            set_={
                "last_block": stmt.excluded.last_block,
                "updated_at": stmt.excluded.updated_at,
            },
            where=BlockProgressModel.last_block < stmt.excluded.last_block,
        )
        await self.session.execute(stmt)
        await self.session.flush()

        current = await self.get(contract)
        return current is not None and current.last_block == last_block
