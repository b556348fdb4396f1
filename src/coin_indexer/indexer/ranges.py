"""Block range arithmetic."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class BlockRange:
    """Inclusive block range `[start, end]`."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(f"Invalid block range [{self.start}, {self.end}]")

    @property
    def width(self) -> int:
        return self.end - self.start + 1

    def __str__(self) -> str:
        return f"[{self.start}, {self.end}]"


def next_range(
    *,
    checkpoint: int | None,
    start_block: int,
    head: int,
) -> BlockRange | None:
    """Compute the unprocessed range for a contract.

    Returns None when there are no new blocks.
    """
    from_block = start_block if checkpoint is None else max(checkpoint + 1, start_block)
    if from_block > head:
        return None
    return BlockRange(from_block, head)


def split_range(block_range: BlockRange, max_width: int) -> list[BlockRange]:
    """Split a range into consecutive chunks no wider than `max_width`."""
    if max_width < 1:
        raise ValueError("max_width must be >= 1")
    chunks: list[BlockRange] = []
    for from_block in range(block_range.start, block_range.end + 1, max_width):
        to_block = min(block_range.end, from_block + max_width - 1)
        chunks.append(BlockRange(from_block, to_block))
    return chunks
