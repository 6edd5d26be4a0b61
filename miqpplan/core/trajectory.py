"""Trajectory data model.

A :class:`DiscretizedTrajectory` is an immutable, time-ordered sequence of
:class:`TrajectoryPoint` objects.  Arc length ``s`` is the cumulative
Euclidean distance between consecutive points.
"""

import logging
import os
from dataclasses import dataclass, replace, astuple, fields
from collections.abc import Sequence
from typing import Iterable, List, Optional

import numpy as np

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrajectoryPoint:
    """A single point of a planned trajectory.

    ``da`` (jerk) and ``dkappa`` (curvature rate) are time derivatives of
    ``a`` and ``kappa``.
    """
    x: float = 0.0
    y: float = 0.0
    s: float = 0.0
    theta: float = 0.0
    kappa: float = 0.0
    v: float = 0.0
    a: float = 0.0
    relative_time: float = 0.0
    da: float = 0.0
    dkappa: float = 0.0

    @property
    def position(self) -> np.ndarray:
        return np.array([self.x, self.y])


FIELD_NAMES = tuple(f.name for f in fields(TrajectoryPoint))


def compute_arc_length(positions) -> np.ndarray:
    """Cumulative Euclidean distance along an (N, 2) array of positions."""
    positions = np.asarray(positions, dtype=float).reshape(-1, 2)
    s = np.zeros(len(positions))
    if len(positions) > 1:
        s[1:] = np.cumsum(np.linalg.norm(np.diff(positions, axis=0), axis=1))
    return s


class DiscretizedTrajectory(Sequence):
    """Immutable sequence of trajectory points.

    Args:
        points: Trajectory points ordered by relative time.

    Raises:
        ValueError: if relative time or arc length decreases anywhere.
    """

    def __init__(self, points: Iterable[TrajectoryPoint] = ()):
        self._points = tuple(points)
        if len(self._points) > 1:
            times = np.array([p.relative_time for p in self._points])
            if np.any(np.diff(times) < 0.0):
                raise ValueError("Trajectory relative time must be non-decreasing")
            s = np.array([p.s for p in self._points])
            if np.any(np.diff(s) < -1e-9):
                raise ValueError("Trajectory arc length must be non-decreasing")

    @classmethod
    def from_states(cls, times, states, jerks=None, curvature_rates=None,
                    s0: float = 0.0) -> "DiscretizedTrajectory":
        """Build a trajectory from ``[x, y, theta, v, a, kappa]`` rows.

        Args:
            times: (N,) relative times.
            states: (N, 6) state rows.
            jerks: Optional (N,) jerk values stored as ``da``.
            curvature_rates: Optional (N,) curvature rates stored as ``dkappa``.
            s0: Arc length of the first point.
        """
        states = np.asarray(states, dtype=float).reshape(-1, 6)
        times = np.asarray(times, dtype=float)
        if len(times) != len(states):
            raise ValueError("times and states must have the same length")
        s = s0 + compute_arc_length(states[:, :2])
        jerks = np.zeros(len(states)) if jerks is None else np.asarray(jerks, dtype=float)
        curvature_rates = (np.zeros(len(states)) if curvature_rates is None
                           else np.asarray(curvature_rates, dtype=float))
        points = []
        for i, (x, y, theta, v, a, kappa) in enumerate(states):
            points.append(TrajectoryPoint(
                x=float(x), y=float(y), s=float(s[i]), theta=float(theta),
                kappa=float(kappa), v=float(v), a=float(a),
                relative_time=float(times[i]), da=float(jerks[i]),
                dkappa=float(curvature_rates[i]),
            ))
        return cls(points)

    def __getitem__(self, idx):
        if isinstance(idx, slice):
            return DiscretizedTrajectory(self._points[idx])
        return self._points[idx]

    def __len__(self):
        return len(self._points)

    def __repr__(self):
        if not self._points:
            return "DiscretizedTrajectory([])"
        return (f"DiscretizedTrajectory({len(self)} points, "
                f"t=[{self._points[0].relative_time:.2f}, {self._points[-1].relative_time:.2f}])")

    @property
    def points(self) -> List[TrajectoryPoint]:
        return list(self._points)

    @property
    def positions(self) -> np.ndarray:
        return np.array([[p.x, p.y] for p in self._points]).reshape(-1, 2)

    @property
    def relative_times(self) -> np.ndarray:
        return np.array([p.relative_time for p in self._points])

    @property
    def velocities(self) -> np.ndarray:
        return np.array([p.v for p in self._points])

    def states(self) -> np.ndarray:
        """(N, 6) array of ``[x, y, theta, v, a, kappa]`` rows."""
        return np.array([[p.x, p.y, p.theta, p.v, p.a, p.kappa]
                         for p in self._points]).reshape(-1, 6)

    def to_array(self) -> np.ndarray:
        """(N, len(FIELD_NAMES)) array in :data:`FIELD_NAMES` column order."""
        return np.array([astuple(p) for p in self._points]).reshape(-1, len(FIELD_NAMES))

    def total_time(self) -> float:
        if len(self._points) < 2:
            return 0.0
        return self._points[-1].relative_time - self._points[0].relative_time

    def fill_time_derivatives(self) -> "DiscretizedTrajectory":
        """Return a copy whose ``da``/``dkappa`` are forward time differences."""
        n = len(self._points)
        if n < 2:
            return DiscretizedTrajectory(replace(p, da=0.0, dkappa=0.0) for p in self._points)
        times = self.relative_times
        accs = np.array([p.a for p in self._points])
        kappas = np.array([p.kappa for p in self._points])
        dt = np.diff(times)
        safe_dt = np.where(dt > 1e-9, dt, 1.0)
        da = np.where(dt > 1e-9, np.diff(accs) / safe_dt, 0.0)
        dkappa = np.where(dt > 1e-9, np.diff(kappas) / safe_dt, 0.0)
        da = np.append(da, da[-1])
        dkappa = np.append(dkappa, dkappa[-1])
        return DiscretizedTrajectory(
            replace(p, da=float(da[i]), dkappa=float(dkappa[i]))
            for i, p in enumerate(self._points))

    def shifted_in_time(self, offset: float) -> "DiscretizedTrajectory":
        return DiscretizedTrajectory(
            replace(p, relative_time=p.relative_time + offset) for p in self._points)


def save_trajectory_to_file(trajectory: DiscretizedTrajectory,
                            directory: str,
                            file_name: str) -> Optional[str]:
    """Write a trajectory as CSV to ``directory/file_name``.

    Returns:
        The written path, or None if the trajectory is empty.
    """
    if len(trajectory) == 0:
        logger.debug("Not saving empty trajectory %s", file_name)
        return None
    os.makedirs(directory, exist_ok=True)
    path = os.path.join(directory, file_name)
    np.savetxt(path, trajectory.to_array(), delimiter=",",
               header=",".join(FIELD_NAMES), comments="")
    logger.debug("Saved trajectory with %d points to %s", len(trajectory), path)
    return path
