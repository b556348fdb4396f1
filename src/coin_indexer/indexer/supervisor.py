"""Ingestion supervisor.

The supervisor runs one `ContractMonitor` task per active contract, accepts
new contracts at runtime, and drains every monitor on shutdown.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from coin_indexer.errors import ConfigurationError, DuplicateContractError, StoreError
from coin_indexer.indexer.models import ContractDescriptor
from coin_indexer.indexer.monitor import (
    DEFAULT_MAX_CHUNK_BLOCKS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    ContractMonitor,
    MonitorStats,
)
from coin_indexer.indexer.ports import ChainReader, ContractRegistry, EventStore, ProgressStore

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY_REFRESH_SECONDS = 30.0


class SupervisorState(str, Enum):
    """Supervisor lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class SupervisorStats:
    """Statistics for the supervisor."""

    started_at: datetime | None = None
    monitors_started: int = 0
    monitors_stopped: int = 0
    monitor_crashes: int = 0
    registry_refreshes: int = 0
    last_error: str | None = None


@dataclass
class _MonitorHandle:
    monitor: ContractMonitor
    task: asyncio.Task[None]


class IngestionSupervisor:
    """Runs and drains per-contract monitors.

    Example:
        ```python
        supervisor = IngestionSupervisor(
            chain=client,
            events=SqlEventStore(db),
            progress=SqlProgressStore(db),
            registry=SqlContractRegistry(db),
            descriptors=[usdc, weth],
        )
        async with supervisor:
            await supervisor.register(new_token)
            ...
        ```
    """

    def __init__(
        self,
        *,
        chain: ChainReader,
        events: EventStore,
        progress: ProgressStore,
        registry: ContractRegistry | None = None,
        descriptors: Sequence[ContractDescriptor] = (),
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_chunk_blocks: int = DEFAULT_MAX_CHUNK_BLOCKS,
        confirmations: int = 0,
        registry_refresh_seconds: float = DEFAULT_REGISTRY_REFRESH_SECONDS,
    ) -> None:
        """Initialize the supervisor.

        Args:
            chain: Chain reader shared by every monitor.
            events: Event store shared by every monitor.
            progress: Progress store shared by every monitor.
            registry: Optional durable contract registry.
            descriptors: Contracts configured at startup.
            poll_interval_seconds: Delay between monitor ticks.
            max_chunk_blocks: Widest block range fetched in one query.
            confirmations: Blocks behind the head left unprocessed.
            registry_refresh_seconds: Interval between registry re-reads.
        """
        self._chain = chain
        self._events = events
        self._progress = progress
        self._registry = registry
        self._descriptors = list(descriptors)
        self._poll_interval = poll_interval_seconds
        self._max_chunk_blocks = max_chunk_blocks
        self._confirmations = confirmations
        self._registry_refresh = registry_refresh_seconds

        self._state = SupervisorState.STOPPED
        self._stats = SupervisorStats()
        self._monitors: dict[str, _MonitorHandle] = {}
        self._shutdown_event = asyncio.Event()
        self._refresh_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def stats(self) -> SupervisorStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == SupervisorState.RUNNING

    @property
    def addresses(self) -> list[str]:
        """Addresses with a live monitor task."""
        return [address for address, handle in self._monitors.items() if not handle.task.done()]

    def monitor_stats(self) -> dict[str, MonitorStats]:
        return {address: handle.monitor.stats for address, handle in self._monitors.items()}

    def get_monitor(self, address: str) -> ContractMonitor | None:
        handle = self._monitors.get(address.lower())
        return handle.monitor if handle else None

    async def start(self) -> None:
        """Start one monitor per active contract.

        Config descriptors are first synced into the registry (when one is
        configured) so the registry is the single source of active contracts.
        Only addresses the registry has never seen are inserted; a contract
        deactivated earlier stays inactive.
        An invalid or duplicate descriptor is logged and skipped.

        Raises:
            RuntimeError: If the supervisor is already running.
        """
        if self._state != SupervisorState.STOPPED:
            raise RuntimeError(f"Cannot start supervisor in state {self._state}")
        if self._shutdown_event.is_set():
            raise RuntimeError("Supervisor cannot be restarted after shutdown")

        self._state = SupervisorState.STARTING
        logger.info("Starting ingestion supervisor...")

        initial = self._descriptors
        if self._registry is not None:
            for descriptor in self._descriptors:
                await self._registry.ensure(descriptor)
            initial = await self._registry.list_active()

        for descriptor in initial:
            try:
                self._start_monitor(descriptor)
            except DuplicateContractError as e:
                logger.error("Skipping contract: %s", e)

        if self._registry is not None:
            self._refresh_task = asyncio.create_task(self._registry_loop())

        self._stats.started_at = datetime.now(UTC)
        self._state = SupervisorState.RUNNING
        logger.info("Ingestion supervisor started with %d monitors", len(self._monitors))

    def _start_monitor(self, descriptor: ContractDescriptor) -> ContractMonitor:
        existing = self._monitors.get(descriptor.address)
        if existing is not None and not existing.task.done():
            raise DuplicateContractError(descriptor.address)

        monitor = ContractMonitor(
            descriptor,
            chain=self._chain,
            events=self._events,
            progress=self._progress,
            poll_interval_seconds=self._poll_interval,
            max_chunk_blocks=self._max_chunk_blocks,
            confirmations=self._confirmations,
            shutdown_event=self._shutdown_event,
        )
        task = asyncio.create_task(monitor.run(), name=f"monitor:{descriptor.address}")
        task.add_done_callback(lambda t, address=descriptor.address: self._on_monitor_done(address, t))
        self._monitors[descriptor.address] = _MonitorHandle(monitor=monitor, task=task)
        self._stats.monitors_started += 1
        return monitor

    def _on_monitor_done(self, address: str, task: asyncio.Task[None]) -> None:
        self._stats.monitors_stopped += 1
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._stats.monitor_crashes += 1
            self._stats.last_error = str(error)
            logger.error("Monitor for %s crashed: %s", address, error, exc_info=error)

    async def register(self, descriptor: ContractDescriptor) -> ContractMonitor:
        """Start monitoring a new contract without touching running monitors.

        Raises:
            RuntimeError: If the supervisor is not running.
            DuplicateContractError: If the address already has a live monitor.
        """
        if self._state != SupervisorState.RUNNING:
            raise RuntimeError(f"Cannot register contracts in state {self._state}")

        existing = self._monitors.get(descriptor.address)
        if existing is not None and not existing.task.done():
            raise DuplicateContractError(descriptor.address)

        if self._registry is not None:
            await self._registry.add(descriptor)
        monitor = self._start_monitor(descriptor)
        logger.info(
            "Registered %s (%s) from block %d",
            descriptor.name,
            descriptor.address,
            descriptor.start_block,
        )
        return monitor

    async def deactivate(self, address: str) -> bool:
        """Stop monitoring a contract and mark it inactive.

        Returns:
            True if a live monitor was drained.
        """
        address = address.lower()
        if self._registry is not None:
            await self._registry.deactivate(address)
        return await self._drain_monitor(address)

    async def _drain_monitor(self, address: str) -> bool:
        handle = self._monitors.get(address)
        if handle is None:
            return False
        handle.monitor.request_stop()
        # The handle stays registered until the task exits so stop() awaits it too.
        await asyncio.wait({handle.task})
        if self._monitors.get(address) is handle:
            del self._monitors[address]
        logger.info("Monitor for %s drained", address)
        return True

    async def refresh_registrations(self) -> None:
        """Reconcile running monitors with the registry's active contracts."""
        if self._registry is None:
            return
        self._stats.registry_refreshes += 1

        # Monitors registered while the read is in flight are not stale.
        known = set(self._monitors)
        active = {d.address: d for d in await self._registry.list_active()}

        for address, descriptor in active.items():
            handle = self._monitors.get(address)
            if handle is None or handle.task.done():
                self._start_monitor(descriptor)
                logger.info("Picked up %s (%s) from registry", descriptor.name, address)

        for address in [a for a in self._monitors if a in known and a not in active]:
            logger.info("Contract %s no longer active; draining monitor", address)
            await self._drain_monitor(address)

    async def _registry_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self._registry_refresh)
                break
            except TimeoutError:
                pass
            try:
                await self.refresh_registrations()
            except (StoreError, ConfigurationError) as e:
                self._stats.last_error = str(e)
                logger.warning("Registry refresh failed: %s", e)

    async def stop(self) -> None:
        """Signal every monitor to stop and wait for all of them to drain."""
        if self._state == SupervisorState.STOPPED:
            return

        self._state = SupervisorState.STOPPING
        logger.info("Stopping ingestion supervisor (%d monitors)...", len(self._monitors))
        self._shutdown_event.set()

        if self._refresh_task is not None:
            self._refresh_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._refresh_task
            self._refresh_task = None

        tasks = [handle.task for handle in self._monitors.values()]
        if tasks:
            await asyncio.wait(tasks)

        self._state = SupervisorState.STOPPED
        logger.info("Ingestion supervisor stopped")

    def request_shutdown(self) -> None:
        """Set the shutdown signal; `run()` then drains and returns."""
        self._shutdown_event.set()

    async def run(self) -> None:
        """Start and block until shutdown is requested, then drain."""
        await self.start()
        try:
            await self._shutdown_event.wait()
        finally:
            await self.stop()

    async def __aenter__(self) -> IngestionSupervisor:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()
