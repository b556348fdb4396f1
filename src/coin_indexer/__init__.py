"""Coin Indexer - poll-based ERC-20 transfer ingestion."""

__version__ = "0.1.0"
