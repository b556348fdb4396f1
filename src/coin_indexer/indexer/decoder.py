"""ERC-20 Transfer log decoding.

Decoding is pure: it never touches the network. The block timestamp is
resolved by the caller and attached with `ParsedTransfer.to_record`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from web3 import Web3

from coin_indexer.errors import DecodeError
from coin_indexer.indexer.models import ContractDescriptor, LogEntry, TransferRecord

# ERC20 Transfer(address,address,uint256)
TRANSFER_EVENT_SIGNATURE = Web3.to_hex(Web3.keccak(text="Transfer(address,address,uint256)"))
TRANSFER_TOPIC = bytes.fromhex(TRANSFER_EVENT_SIGNATURE[2:])

_WORD_SIZE = 32
_ADDRESS_SIZE = 20


def _topic_to_address(topic: bytes) -> str:
    if len(topic) != _WORD_SIZE:
        raise DecodeError(f"Indexed address topic must be {_WORD_SIZE} bytes (got {len(topic)})")
    return "0x" + topic[-_ADDRESS_SIZE:].hex()


@dataclass(frozen=True)
class ParsedTransfer:
    """Transfer fields recovered from a single log, without a timestamp."""

    tx_hash: str
    log_index: int
    block_number: int
    contract_address: str
    from_address: str
    to_address: str
    amount: int

    def to_record(self, contract: ContractDescriptor, block_timestamp: datetime) -> TransferRecord:
        if block_timestamp.tzinfo is None:
            raise ValueError("block_timestamp must be timezone-aware")
        return TransferRecord(
            tx_hash=self.tx_hash,
            log_index=self.log_index,
            block_number=self.block_number,
            contract_address=contract.address,
            token_name=contract.name,
            from_address=self.from_address,
            to_address=self.to_address,
            amount=self.amount,
            block_timestamp=block_timestamp,
        )


def parse_transfer_log(log: LogEntry) -> ParsedTransfer:
    """Decode a Transfer log.

    Args:
        log: Raw log entry.

    Returns:
        The parsed transfer.

    Raises:
        DecodeError: If the log is not a well-formed Transfer event.
    """
    if log.removed:
        raise DecodeError(f"Log {log.tx_hash}:{log.log_index} was removed by a reorg")
    if len(log.topics) < 3:
        raise DecodeError(f"Transfer log needs 3 topics (got {len(log.topics)})")
    if log.topics[0] != TRANSFER_TOPIC:
        raise DecodeError(f"Unexpected event signature 0x{log.topics[0].hex()}")
    if len(log.data) < _WORD_SIZE:
        raise DecodeError(f"Transfer data needs {_WORD_SIZE} bytes (got {len(log.data)})")

    return ParsedTransfer(
        tx_hash=log.tx_hash,
        log_index=log.log_index,
        block_number=log.block_number,
        contract_address=log.address,
        from_address=_topic_to_address(log.topics[1]),
        to_address=_topic_to_address(log.topics[2]),
        amount=int.from_bytes(log.data[:_WORD_SIZE], "big"),
    )
