"""Storage layer - Database schemas, repositories, and SQL stores."""

from coin_indexer.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from coin_indexer.storage.models import (
    Base,
    BlockProgressModel,
    ContractModel,
    TransferModel,
)
from coin_indexer.storage.repos import (
    BlockProgressDTO,
    BlockProgressRepository,
    ContractDTO,
    ContractRepository,
    TransferDTO,
    TransferRepository,
)
from coin_indexer.storage.stores import SqlContractRegistry, SqlEventStore, SqlProgressStore

__all__ = [
    "Base",
    "BlockProgressDTO",
    "BlockProgressModel",
    "BlockProgressRepository",
    "ContractDTO",
    "ContractModel",
    "ContractRepository",
    "DatabaseManager",
    "SqlContractRegistry",
    "SqlEventStore",
    "SqlProgressStore",
    "TransferDTO",
    "TransferModel",
    "TransferRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
