"""Chain access - RPC client for reading blocks and logs."""

from coin_indexer.chain.client import ChainClient, RateLimiter, RPCError

__all__ = [
    "ChainClient",
    "RPCError",
    "RateLimiter",
]
