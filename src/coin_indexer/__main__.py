"""Command-line entry point.

Usage:
    coin-indexer index
    coin-indexer init-db
    coin-indexer add-contract --name USDC --address 0x... --start-block 6082465
    coin-indexer deactivate-contract 0x...
    coin-indexer status
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from collections.abc import Sequence

from pydantic import ValidationError
from redis.asyncio import Redis
from sqlalchemy.exc import SQLAlchemyError

from coin_indexer import __version__
from coin_indexer.chain.client import ChainClient
from coin_indexer.config import Settings, get_settings, load_contract_descriptors
from coin_indexer.errors import ConfigurationError, IndexerError
from coin_indexer.indexer.models import ContractDescriptor, normalize_address
from coin_indexer.indexer.supervisor import IngestionSupervisor
from coin_indexer.storage.database import DatabaseManager
from coin_indexer.storage.repos import BlockProgressRepository, ContractRepository, TransferRepository
from coin_indexer.storage.stores import SqlContractRegistry, SqlEventStore, SqlProgressStore

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="coin-indexer",
        description="Poll-based ERC-20 Transfer event indexer",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("index", help="Run the ingestion supervisor until interrupted")
    subparsers.add_parser("init-db", help="Create database tables")

    add = subparsers.add_parser("add-contract", help="Register a contract for monitoring")
    add.add_argument("--name", required=True, help="Token label stored on every transfer")
    add.add_argument("--address", required=True, help="Contract address (0x...)")
    add.add_argument("--start-block", type=int, default=0, help="First block to index")

    deactivate = subparsers.add_parser("deactivate-contract", help="Stop monitoring a contract")
    deactivate.add_argument("address", help="Contract address (0x...)")

    subparsers.add_parser("status", help="Show contracts, checkpoints and transfer counts")
    return parser


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(level=settings.get_logging_level(), format=LOG_FORMAT)


async def run_index(settings: Settings) -> None:
    """Run the supervisor until SIGINT/SIGTERM, then drain every monitor."""
    settings.validate_requirements(command="index")
    rpc_url = settings.chain.rpc_url
    if rpc_url is None:
        raise ConfigurationError("CHAIN_RPC_URL is required for the index command")

    descriptors = load_contract_descriptors(settings.indexer.contracts)
    logger.info("Starting indexer with settings: %s", settings.redacted_summary())

    db = DatabaseManager(settings.database.url, echo=settings.database.echo)
    redis = Redis.from_url(settings.redis.url) if settings.redis.url else None
    chain = ChainClient(
        rpc_url,
        fallback_rpc_url=settings.chain.fallback_rpc_url,
        redis=redis,
        poa=settings.chain.poa,
        max_requests_per_second=settings.chain.max_requests_per_second,
        max_retries=settings.chain.max_retries,
        timestamp_cache_ttl_seconds=settings.indexer.timestamp_cache_ttl_seconds,
    )
    supervisor = IngestionSupervisor(
        chain=chain,
        events=SqlEventStore(db),
        progress=SqlProgressStore(db),
        registry=SqlContractRegistry(db),
        descriptors=descriptors,
        poll_interval_seconds=settings.indexer.poll_interval_seconds,
        max_chunk_blocks=settings.indexer.max_chunk_blocks,
        confirmations=settings.indexer.confirmations,
        registry_refresh_seconds=settings.indexer.registry_refresh_seconds,
    )

    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        # add_signal_handler is unavailable on Windows event loops.
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, supervisor.request_shutdown)
            installed.append(sig)

    try:
        if not await chain.health_check():
            logger.warning("Chain RPC is not reachable yet; monitors will retry every tick")
        await supervisor.run()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        await chain.aclose()
        if redis is not None:
            await redis.aclose()
        await db.dispose_async()


async def init_db(settings: Settings) -> None:
    db = DatabaseManager(settings.database.url, echo=settings.database.echo)
    try:
        await db.init_schema_async()
    finally:
        await db.dispose_async()


async def add_contract(settings: Settings, *, name: str, address: str, start_block: int) -> bool:
    descriptor = ContractDescriptor.create(name=name, address=address, start_block=start_block)
    db = DatabaseManager(settings.database.url, echo=settings.database.echo)
    try:
        added = await SqlContractRegistry(db).add(descriptor)
    finally:
        await db.dispose_async()
    if added:
        print(f"Registered {descriptor.name} ({descriptor.address}) from block {descriptor.start_block}")
    else:
        print(f"Contract {descriptor.address} is already active")
    return added


async def deactivate_contract(settings: Settings, *, address: str) -> bool:
    canonical = normalize_address(address)
    db = DatabaseManager(settings.database.url, echo=settings.database.echo)
    try:
        deactivated = await SqlContractRegistry(db).deactivate(canonical)
    finally:
        await db.dispose_async()
    if deactivated:
        print(f"Deactivated {canonical}")
    else:
        print(f"No active contract {canonical}")
    return deactivated


async def show_status(settings: Settings) -> None:
    db = DatabaseManager(settings.database.url, echo=settings.database.echo)
    try:
        async with db.get_async_session() as session:
            contracts = await ContractRepository(session).list_all()
            progress_repo = BlockProgressRepository(session)
            transfer_repo = TransferRepository(session)
            print(f"{'name':<16} {'address':<42} {'active':<6} {'start':>10} {'checkpoint':>12} {'transfers':>10}")
            for contract in contracts:
                progress = await progress_repo.get(contract.address)
                count = await transfer_repo.count_by_contract(contract.address)
                checkpoint = str(progress.last_block) if progress else "-"
                print(
                    f"{contract.name:<16} {contract.address:<42} {'yes' if contract.is_active else 'no':<6} "
                    f"{contract.start_block:>10} {checkpoint:>12} {count:>10}"
                )
    finally:
        await db.dispose_async()


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"Invalid configuration:\n{e}", file=sys.stderr)
        return 2
    configure_logging(settings)

    try:
        if args.command == "index":
            asyncio.run(run_index(settings))
        elif args.command == "init-db":
            asyncio.run(init_db(settings))
        elif args.command == "add-contract":
            asyncio.run(
                add_contract(settings, name=args.name, address=args.address, start_block=args.start_block)
            )
        elif args.command == "deactivate-contract":
            if not asyncio.run(deactivate_contract(settings, address=args.address)):
                return 1
        elif args.command == "status":
            asyncio.run(show_status(settings))
    except (ConfigurationError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    except (IndexerError, SQLAlchemyError) as e:
        logger.error("%s failed: %s", args.command, e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
