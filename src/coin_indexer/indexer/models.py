"""Data models for the ingestion engine.

This module defines the immutable value types that flow between the chain
reader, the decoder, the monitors, and the stores.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from web3 import Web3

from coin_indexer.errors import ConfigurationError, DecodeError

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def normalize_address(address: str) -> str:
    """Validate an address and return its canonical lowercase hex form.

    Mixed-case input must carry a valid EIP-55 checksum.

    Raises:
        ConfigurationError: If the address is malformed.
    """
    candidate = address.strip()
    if not _ADDRESS_RE.match(candidate):
        raise ConfigurationError(f"Invalid contract address: {address!r}")
    body = candidate[2:]
    if body != body.lower() and body != body.upper() and not Web3.is_checksum_address(candidate):
        raise ConfigurationError(f"Address checksum mismatch: {address!r}")
    return candidate.lower()


def _to_bytes(value: Any, *, field: str) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        hexed = value[2:] if value.startswith(("0x", "0X")) else value
        try:
            return bytes.fromhex(hexed)
        except ValueError as e:
            raise DecodeError(f"Field {field} is not valid hex: {value!r}") from e
    raise DecodeError(f"Field {field} has unsupported type {type(value).__name__}")


def _to_int(value: Any, *, field: str) -> int:
    if isinstance(value, bool):
        raise DecodeError(f"Field {field} is not an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 16) if value.startswith(("0x", "0X")) else int(value)
        except ValueError as e:
            raise DecodeError(f"Field {field} is not an integer: {value!r}") from e
    raise DecodeError(f"Field {field} has unsupported type {type(value).__name__}")


@dataclass(frozen=True)
class ContractDescriptor:
    """A monitored token contract.

    Attributes:
        name: Display label, stored on every transfer as the token name.
        address: Canonical lowercase hex address.
        start_block: Block below which this contract is never polled.
    """

    name: str
    address: str
    start_block: int

    @classmethod
    def create(cls, *, name: str, address: str, start_block: int = 0) -> ContractDescriptor:
        """Validate and normalize a descriptor.

        Raises:
            ConfigurationError: If any field is invalid.
        """
        if not name or not name.strip():
            raise ConfigurationError("Contract name must not be empty")
        if start_block < 0:
            raise ConfigurationError(f"start_block must be >= 0 (got {start_block})")
        return cls(name=name.strip(), address=normalize_address(address), start_block=start_block)


@dataclass(frozen=True)
class LogEntry:
    """A raw event log as returned by `eth_getLogs`."""

    address: str
    topics: tuple[bytes, ...]
    data: bytes
    tx_hash: str
    block_number: int
    log_index: int
    removed: bool = False

    @classmethod
    def from_rpc(cls, raw: Mapping[str, Any]) -> LogEntry:
        """Build a log entry from a web3 `AttributeDict` or raw JSON-RPC object.

        Raises:
            DecodeError: If required fields are missing or malformed.
        """
        try:
            address = raw["address"]
            topics = raw["topics"]
            data = raw.get("data", b"")
            tx_hash = raw["transactionHash"]
            block_number = raw["blockNumber"]
            log_index = raw["logIndex"]
        except KeyError as e:
            raise DecodeError(f"Log is missing field {e.args[0]!r}") from e

        if address is None or tx_hash is None or block_number is None or log_index is None:
            raise DecodeError("Log is pending (null position fields)")

        if isinstance(address, str):
            address_hex = address.lower()
        else:
            address_hex = "0x" + _to_bytes(address, field="address").hex()
        return cls(
            address=address_hex,
            topics=tuple(_to_bytes(t, field="topics") for t in topics),
            data=_to_bytes(data or b"", field="data"),
            tx_hash="0x" + _to_bytes(tx_hash, field="transactionHash").hex(),
            block_number=_to_int(block_number, field="blockNumber"),
            log_index=_to_int(log_index, field="logIndex"),
            removed=bool(raw.get("removed", False)),
        )


@dataclass(frozen=True)
class TransferRecord:
    """A decoded, timestamped transfer ready for persistence.

    Uniquely identified by `(tx_hash, log_index)`. The amount is an
    arbitrary-precision integer in raw token units.
    """

    tx_hash: str
    log_index: int
    block_number: int
    contract_address: str
    token_name: str
    from_address: str
    to_address: str
    amount: int
    block_timestamp: datetime
    price_usd: float | None = None
    value_usd: float | None = None

    @property
    def key(self) -> tuple[str, int]:
        """Uniqueness key of the record."""
        return (self.tx_hash, self.log_index)
