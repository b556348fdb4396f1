"""Exception hierarchy for the indexer.

Transient failures (`ChainReaderError`, `StoreError`) abort a single polling
tick and are retried on the next one. `DecodeError` skips a single log.
`ConfigurationError` is raised before a contract is ever monitored.
"""

from __future__ import annotations


class IndexerError(Exception):
    """Base exception for indexer errors."""


class ConfigurationError(IndexerError):
    """Raised when a contract or setting is invalid."""


class DuplicateContractError(ConfigurationError):
    """Raised when a contract address is registered twice."""

    def __init__(self, address: str) -> None:
        super().__init__(f"Contract {address} is already registered")
        self.address = address


class DecodeError(IndexerError):
    """Raised when a raw log cannot be decoded into a transfer."""


class ChainReaderError(IndexerError):
    """Raised when the chain node cannot answer a query."""


class StoreError(IndexerError):
    """Raised when the record store rejects or fails a write."""
