"""
Split normalized records into fixed-size, positionally tagged batches.
"""

import math
from typing import Sequence

from holdings_import.config import BATCH_SIZE
from holdings_import.models import Batch, NormalizedRecord


def make_batches(
    records: Sequence[NormalizedRecord],
    size: int | None = None,
) -> list[Batch]:
    """
    Slice *records* into ``ceil(len(records) / size)`` batches.

    Order is preserved and no record is dropped or repeated; the last batch
    may be shorter.  ``batch_index`` is 1-based.
    """
    size = size if size is not None else BATCH_SIZE
    if size <= 0:
        raise ValueError(f"batch size must be positive, got {size}")

    total = math.ceil(len(records) / size)
    return [
        Batch(
            records=tuple(records[start : start + size]),
            batch_index=i + 1,
            total_batches=total,
        )
        for i, start in enumerate(range(0, len(records), size))
    ]
