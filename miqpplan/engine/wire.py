"""Flat trajectory record layout exchanged with the discrete engine.

Each record is ``[time, x, y, vx, vy, ax, ay]``; a trajectory of ``n``
records is a flat array of size ``n * RECORD_WIDTH``.
"""

from typing import Tuple

import numpy as np

TIME = 0
X = 1
Y = 2
VX = 3
VY = 4
AX = 5
AY = 6
RECORD_WIDTH = 7


def pack_records(records: np.ndarray, time_offset: float = 0.0) -> Tuple[np.ndarray, int]:
    """Flatten (n, RECORD_WIDTH) records, shifting the time column."""
    records = np.array(records, dtype=float).reshape(-1, RECORD_WIDTH)
    records[:, TIME] += time_offset
    flat = records.ravel()
    return flat, flat.size


def unpack_records(flat: np.ndarray, size: int) -> np.ndarray:
    """View the first ``size`` entries of a flat array as (n, RECORD_WIDTH) records.

    Raises:
        ValueError: if ``size`` is not a whole number of records or exceeds the array.
    """
    flat = np.asarray(flat, dtype=float).ravel()
    if size % RECORD_WIDTH != 0:
        raise ValueError(f"Trajectory size {size} is not a multiple of {RECORD_WIDTH}")
    if size > flat.size:
        raise ValueError(f"Trajectory size {size} exceeds buffer of {flat.size}")
    return flat[:size].reshape(-1, RECORD_WIDTH)
