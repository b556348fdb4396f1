"""Ingestion engine - decoding, chunking, monitors, and supervision."""

from coin_indexer.indexer.decoder import (
    TRANSFER_EVENT_SIGNATURE,
    TRANSFER_TOPIC,
    ParsedTransfer,
    parse_transfer_log,
)
from coin_indexer.indexer.models import (
    ContractDescriptor,
    LogEntry,
    TransferRecord,
    normalize_address,
)
from coin_indexer.indexer.monitor import (
    BlockTimestampCache,
    ContractMonitor,
    MonitorState,
    MonitorStats,
    TickResult,
)
from coin_indexer.indexer.ports import (
    ChainReader,
    ContractRegistry,
    EventStore,
    InsertResult,
    ProgressStore,
)
from coin_indexer.indexer.ranges import BlockRange, next_range, split_range
from coin_indexer.indexer.supervisor import IngestionSupervisor, SupervisorState, SupervisorStats

__all__ = [
    "TRANSFER_EVENT_SIGNATURE",
    "TRANSFER_TOPIC",
    "BlockRange",
    "BlockTimestampCache",
    "ChainReader",
    "ContractDescriptor",
    "ContractMonitor",
    "ContractRegistry",
    "EventStore",
    "IngestionSupervisor",
    "InsertResult",
    "LogEntry",
    "MonitorState",
    "MonitorStats",
    "ParsedTransfer",
    "ProgressStore",
    "SupervisorState",
    "SupervisorStats",
    "TickResult",
    "TransferRecord",
    "next_range",
    "normalize_address",
    "parse_transfer_log",
    "split_range",
]
