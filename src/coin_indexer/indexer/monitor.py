"""Per-contract polling monitor.

A `ContractMonitor` owns one contract's ingestion lifecycle: timer-driven
polling, range computation, chunked fetch, decode, persist, and checkpoint
advance. Every failure is contained inside the monitor; the only visible
effect of an error is that the checkpoint does not move for that tick.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TypeVar

from coin_indexer.errors import ChainReaderError, DecodeError, StoreError
from coin_indexer.indexer.decoder import TRANSFER_EVENT_SIGNATURE, ParsedTransfer, parse_transfer_log
from coin_indexer.indexer.models import ContractDescriptor, LogEntry
from coin_indexer.indexer.ports import ChainReader, EventStore, ProgressStore
from coin_indexer.indexer.ranges import BlockRange, next_range, split_range

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_POLL_INTERVAL_SECONDS = 15.0
DEFAULT_MAX_CHUNK_BLOCKS = 1000


class MonitorState(str, Enum):
    """Lifecycle state of a contract monitor."""

    IDLE = "idle"
    POLLING = "polling"
    FETCHING = "fetching"
    DECODING = "decoding"
    PERSISTING = "persisting"
    STOPPING = "stopping"


@dataclass
class MonitorStats:
    """Running counters for one monitor."""

    ticks: int = 0
    successful_ticks: int = 0
    failed_ticks: int = 0
    chunks_processed: int = 0
    records_inserted: int = 0
    duplicates: int = 0
    conflicts: int = 0
    decode_failures: int = 0
    last_checkpoint: int | None = None
    last_tick_time: datetime | None = None
    last_error: str | None = None


@dataclass
class TickResult:
    """Outcome of a single polling tick."""

    block_range: BlockRange | None = None
    chunks_total: int = 0
    chunks_completed: int = 0
    inserted: int = 0
    duplicates: int = 0
    conflicts: int = 0
    decode_failures: int = 0
    checkpoint: int | None = None
    stopped: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


StateCallback = Callable[[MonitorState], None]


class _StopRequested(Exception):
    """Raised internally when a stop signal wins the race against a chain call."""


class BlockTimestampCache:
    """Per-chunk memo of block timestamps.

    Logs from the same block share one lookup.
    """

    def __init__(self, fetch: Callable[[int], Awaitable[datetime]]) -> None:
        self._fetch = fetch
        self._timestamps: dict[int, datetime] = {}

    async def get(self, block_number: int) -> datetime:
        cached = self._timestamps.get(block_number)
        if cached is not None:
            return cached
        timestamp = await self._fetch(block_number)
        self._timestamps[block_number] = timestamp
        return timestamp

    def __len__(self) -> int:
        return len(self._timestamps)


class ContractMonitor:
    """Polls one contract for Transfer events and persists them.

    Example:
        ```python
        monitor = ContractMonitor(
            descriptor,
            chain=client,
            events=SqlEventStore(db),
            progress=SqlProgressStore(db),
            poll_interval_seconds=15,
        )
        task = asyncio.create_task(monitor.run())
        ...
        monitor.request_stop()
        await task
        ```
    """

    def __init__(
        self,
        descriptor: ContractDescriptor,
        *,
        chain: ChainReader,
        events: EventStore,
        progress: ProgressStore,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_chunk_blocks: int = DEFAULT_MAX_CHUNK_BLOCKS,
        confirmations: int = 0,
        shutdown_event: asyncio.Event | None = None,
        on_state_change: StateCallback | None = None,
    ) -> None:
        """Initialize the monitor.

        Args:
            descriptor: Contract to monitor.
            chain: Chain reader used for heights, logs, and timestamps.
            events: Store receiving decoded transfer records.
            progress: Store holding this contract's checkpoint.
            poll_interval_seconds: Delay between ticks.
            max_chunk_blocks: Widest block range fetched in one query.
            confirmations: Blocks behind the head left unprocessed.
            shutdown_event: Process-wide stop signal shared with other monitors.
            on_state_change: Callback for state changes.
        """
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")
        if max_chunk_blocks < 1:
            raise ValueError("max_chunk_blocks must be >= 1")
        if confirmations < 0:
            raise ValueError("confirmations must be >= 0")

        self._descriptor = descriptor
        self._chain = chain
        self._events = events
        self._progress = progress
        self._poll_interval = poll_interval_seconds
        self._max_chunk_blocks = max_chunk_blocks
        self._confirmations = confirmations
        self._on_state_change = on_state_change

        self._shutdown_event = shutdown_event
        self._stop_event = asyncio.Event()

        self._state = MonitorState.IDLE
        self._stats = MonitorStats()

    @property
    def descriptor(self) -> ContractDescriptor:
        return self._descriptor

    @property
    def state(self) -> MonitorState:
        """Current monitor state."""
        return self._state

    @property
    def stats(self) -> MonitorStats:
        """Current monitor statistics."""
        return self._stats

    @property
    def stop_requested(self) -> bool:
        if self._stop_event.is_set():
            return True
        return self._shutdown_event is not None and self._shutdown_event.is_set()

    def request_stop(self) -> None:
        """Ask this monitor alone to stop after its current chunk."""
        self._stop_event.set()

    def _set_state(self, new_state: MonitorState) -> None:
        old_state = self._state
        self._state = new_state
        if self._on_state_change and old_state != new_state:
            try:
                self._on_state_change(new_state)
            except Exception as e:
                logger.warning("State change callback failed: %s", e)

    async def _wait_for_stop(self) -> None:
        events = [self._stop_event]
        if self._shutdown_event is not None:
            events.append(self._shutdown_event)
        waiters = [asyncio.ensure_future(event.wait()) for event in events]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    async def _interruptible(self, awaitable: Awaitable[T]) -> T:
        """Await an external call unless a stop signal arrives first.

        Raises:
            _StopRequested: If the stop signal won; the call is cancelled.
        """
        call = asyncio.ensure_future(awaitable)
        if self.stop_requested:
            call.cancel()
            await asyncio.wait({call})
            raise _StopRequested
        stop_waiter = asyncio.ensure_future(self._wait_for_stop())
        try:
            await asyncio.wait({call, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for fut in (call, stop_waiter):
                if not fut.done():
                    fut.cancel()

        if call.done() and not call.cancelled():
            return call.result()
        await asyncio.wait({call})
        raise _StopRequested

    async def run(self) -> None:
        """Poll until stopped.

        The first tick runs immediately; later ticks wait for the poll
        interval or the stop signal, whichever comes first.
        """
        logger.info(
            "Monitor started for %s (%s) from block %d",
            self._descriptor.name,
            self._descriptor.address,
            self._descriptor.start_block,
        )
        first_tick = True
        try:
            while not self.stop_requested:
                if not first_tick:
                    try:
                        await asyncio.wait_for(self._wait_for_stop(), timeout=self._poll_interval)
                        break
                    except TimeoutError:
                        pass
                first_tick = False
                await self.tick()
        finally:
            self._set_state(MonitorState.STOPPING)
            logger.info(
                "Monitor stopped for %s (checkpoint=%s)",
                self._descriptor.address,
                self._stats.last_checkpoint,
            )
            self._set_state(MonitorState.IDLE)

    async def tick(self) -> TickResult:
        """Process every unprocessed block up to the current head.

        Never raises for chain or store failures; they are reported in the
        returned `TickResult` and the checkpoint stays at the last
        committed chunk.
        """
        address = self._descriptor.address
        result = TickResult()
        self._stats.ticks += 1
        self._stats.last_tick_time = datetime.now(UTC)
        self._set_state(MonitorState.POLLING)

        try:
            checkpoint = await self._interruptible(self._progress.get(address))
            result.checkpoint = checkpoint
            if checkpoint is not None:
                self._stats.last_checkpoint = checkpoint

            head = await self._interruptible(self._chain.get_block_number())
            block_range = next_range(
                checkpoint=checkpoint,
                start_block=self._descriptor.start_block,
                head=head - self._confirmations,
            )
            if block_range is None:
                logger.debug("No new blocks for %s (checkpoint=%s, head=%d)", address, checkpoint, head)
            else:
                result.block_range = block_range
                chunks = split_range(block_range, self._max_chunk_blocks)
                result.chunks_total = len(chunks)
                logger.debug("Processing %s for %s in %d chunks", block_range, address, len(chunks))
                for chunk in chunks:
                    if self.stop_requested:
                        result.stopped = True
                        break
                    await self._process_chunk(chunk, result)
                    result.chunks_completed += 1
        except _StopRequested:
            result.stopped = True
            logger.info("Stop requested for %s; abandoning in-flight chunk", address)
        except (ChainReaderError, StoreError) as e:
            result.error = str(e)
            logger.warning("Tick aborted for %s at checkpoint %s: %s", address, result.checkpoint, e)
        except Exception as e:
            result.error = str(e)
            logger.exception("Unexpected error in tick for %s", address)

        if result.error is None:
            self._stats.successful_ticks += 1
        else:
            self._stats.failed_ticks += 1
            self._stats.last_error = result.error

        if result.inserted:
            logger.info(
                "Indexed %d transfers for %s %s (checkpoint=%s)",
                result.inserted,
                self._descriptor.name,
                result.block_range,
                result.checkpoint,
            )
        self._set_state(MonitorState.IDLE)
        return result

    def _decode(self, logs: list[LogEntry], result: TickResult) -> list[ParsedTransfer]:
        parsed: list[ParsedTransfer] = []
        for log in logs:
            if log.address != self._descriptor.address:
                logger.warning(
                    "Skipping log %s:%d from unexpected address %s",
                    log.tx_hash,
                    log.log_index,
                    log.address,
                )
                result.decode_failures += 1
                continue
            try:
                parsed.append(parse_transfer_log(log))
            except DecodeError as e:
                logger.warning("Skipping undecodable log %s:%d: %s", log.tx_hash, log.log_index, e)
                result.decode_failures += 1
        parsed.sort(key=lambda p: (p.block_number, p.log_index))
        return parsed

    async def _process_chunk(self, chunk: BlockRange, result: TickResult) -> None:
        address = self._descriptor.address

        self._set_state(MonitorState.FETCHING)
        logs = await self._interruptible(
            self._chain.get_logs(
                address=address,
                topic=TRANSFER_EVENT_SIGNATURE,
                from_block=chunk.start,
                to_block=chunk.end,
            )
        )

        self._set_state(MonitorState.DECODING)
        failures_before = result.decode_failures
        parsed = self._decode(logs, result)
        self._stats.decode_failures += result.decode_failures - failures_before

        self._set_state(MonitorState.FETCHING)
        timestamps = BlockTimestampCache(
            lambda n: self._interruptible(self._chain.get_block_timestamp(n))
        )
        records = [p.to_record(self._descriptor, await timestamps.get(p.block_number)) for p in parsed]

        # Persist and checkpoint run to completion once started.
        self._set_state(MonitorState.PERSISTING)
        inserted = await self._events.insert_many(records)
        advanced = await self._progress.set(address, chunk.end)

        result.inserted += inserted.inserted
        result.duplicates += inserted.duplicates
        result.conflicts += inserted.conflicts
        self._stats.records_inserted += inserted.inserted
        self._stats.duplicates += inserted.duplicates
        self._stats.conflicts += inserted.conflicts
        self._stats.chunks_processed += 1

        if advanced:
            result.checkpoint = chunk.end
            self._stats.last_checkpoint = chunk.end
        else:
            logger.warning("Checkpoint for %s not advanced to %d (already ahead)", address, chunk.end)

        logger.debug(
            "Chunk %s for %s: %d logs, %d inserted, %d duplicates",
            chunk,
            address,
            len(logs),
            inserted.inserted,
            inserted.duplicates,
        )
