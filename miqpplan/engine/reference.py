"""Reference polylines and the reference trajectories built on them.

:class:`ReferencePath` precomputes cumulative arc length, segment tangents
and angles of a polyline so that repeated projection and interpolation are
cheap.  :func:`generate_reference_records` turns a path, an initial state
and a desired motion into a time-parameterised trajectory in the engine's
record layout.
"""

import logging
from typing import Tuple

import numpy as np
from shapely.geometry import LineString, Point

from miqpplan.engine import wire

logger = logging.getLogger(__name__)


class ReferencePath:
    """Arc-length parameterised polyline.

    Args:
        points: (M, 2) array of path positions, M >= 2.
    """

    def __init__(self, points: np.ndarray):
        points = np.asarray(points, dtype=float).reshape(-1, 2)
        if len(points) < 2:
            raise ValueError("ReferencePath requires at least 2 points")
        self._points = points
        n = len(points)

        diffs = np.diff(points, axis=0)
        seg_lengths = np.maximum(np.linalg.norm(diffs, axis=1), 1e-9)

        self._arc_lengths = np.zeros(n)
        self._arc_lengths[1:] = np.cumsum(seg_lengths)
        self._total_length = self._arc_lengths[-1]
        self._seg_angles = np.arctan2(diffs[:, 1], diffs[:, 0])
        self._line = LineString(points)

    @property
    def points(self) -> np.ndarray:
        return self._points

    @property
    def total_length(self) -> float:
        return self._total_length

    @property
    def line(self) -> LineString:
        return self._line

    def project(self, x: float, y: float) -> float:
        """Arc length of the closest point on the path."""
        return float(self._line.project(Point(x, y)))

    def interpolate(self, s: float) -> Tuple[float, float, float]:
        """Position and tangent angle at arc length ``s`` (clamped to the path)."""
        s = float(np.clip(s, 0.0, self._total_length))
        idx = np.searchsorted(self._arc_lengths, s, side='right') - 1
        idx = int(np.clip(idx, 0, len(self._points) - 2))

        seg_start_s = self._arc_lengths[idx]
        seg_len = self._arc_lengths[idx + 1] - seg_start_s
        t = 0.0 if seg_len < 1e-9 else (s - seg_start_s) / seg_len

        a = self._points[idx]
        pt = a + t * (self._points[idx + 1] - a)
        return float(pt[0]), float(pt[1]), float(self._seg_angles[idx])

    def truncated(self, max_s: float) -> "ReferencePath":
        """Path cut off at arc length ``max_s``."""
        if max_s >= self._total_length:
            return self
        max_s = max(max_s, 1e-3)
        keep = self._points[self._arc_lengths < max_s]
        x, y, _ = self.interpolate(max_s)
        return ReferencePath(np.vstack([keep, [x, y]]))


def generate_reference_records(path: ReferencePath,
                               initial_state: np.ndarray,
                               desired_velocity: float,
                               desired_offset: float,
                               track_reference: bool,
                               nr_steps: int,
                               ts: float,
                               acc_min: float,
                               acc_max: float) -> np.ndarray:
    """Speed profile along a path from the car's projection onto it.

    The speed ramps towards ``desired_velocity`` within ``[acc_min, acc_max]``
    and is capped by a braking envelope that ends at the stop point: the path
    end when tracking the reference, else ``s0 + desired_offset``.

    Args:
        path: Reference path in engine coordinates.
        initial_state: ``[x, vx, ax, y, vy, ay]``.
        desired_velocity: Target speed (m/s).
        desired_offset: Distance to travel when not tracking the reference (m).
        track_reference: Whether to follow the whole path.
        nr_steps: Number of records.
        ts: Time between records (s).
        acc_min: Strongest deceleration (negative, m/s^2).
        acc_max: Strongest acceleration (m/s^2).

    Returns:
        (nr_steps, RECORD_WIDTH) records with time starting at 0.
    """
    x0, vx0, _, y0, vy0, _ = initial_state
    s = path.project(x0, y0)
    v = float(np.hypot(vx0, vy0))
    if track_reference:
        s_stop = path.total_length
    else:
        s_stop = min(path.total_length, s + max(0.0, desired_offset))
    braking = max(-acc_min, 1e-3)

    records = np.zeros((nr_steps, wire.RECORD_WIDTH))
    for k in range(nr_steps):
        px, py, angle = path.interpolate(s)
        records[k, wire.TIME] = k * ts
        records[k, wire.X] = px
        records[k, wire.Y] = py
        records[k, wire.VX] = v * np.cos(angle)
        records[k, wire.VY] = v * np.sin(angle)

        v_target = min(desired_velocity, np.sqrt(2.0 * braking * max(0.0, s_stop - s)))
        a = np.clip((v_target - v) / ts, acc_min, acc_max)
        v_next = max(0.0, v + a * ts)
        s = min(s + 0.5 * (v + v_next) * ts, s_stop)
        v = v_next

    if nr_steps > 1:
        records[:, wire.AX] = np.gradient(records[:, wire.VX], ts)
        records[:, wire.AY] = np.gradient(records[:, wire.VY], ts)
    logger.debug("Reference trajectory: s_stop=%.2f, final v=%.2f", s_stop, v)
    return records
