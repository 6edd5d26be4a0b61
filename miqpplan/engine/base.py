"""Interface of the discrete optimization engine.

The planner talks to the engine through opaque integer handles: the engine
owns every car and obstacle, callers only keep the keys returned by
:meth:`DiscreteEngine.add_car` and :meth:`DiscreteEngine.add_obstacle`.
Trajectories cross the interface in the flat record layout of
:mod:`miqpplan.engine.wire`.
"""

import abc
import logging
from typing import Tuple

import numpy as np

from miqpplan.core.config import EngineSettings

logger = logging.getLogger(__name__)

INVALID_HANDLE = -1


class DiscreteEngine(abc.ABC):
    """Abstract discrete optimization engine.

    Initial states are second-order world states ``[x, vx, ax, y, vy, ay]``
    and reference points are (M, 2) polylines, both already translated into
    the engine's coordinate frame.

    Args:
        settings: Engine settings fixed for the engine's lifetime.
    """

    def __init__(self, settings: EngineSettings):
        self._settings = settings
        self._closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self):
        """Release all engine resources. Further calls are invalid."""
        self._closed = True

    def horizon_length(self) -> int:
        return self._settings.nr_steps

    def timestep(self) -> float:
        return self._settings.ts

    def collision_radius(self) -> float:
        return self._settings.collision_radius

    @abc.abstractmethod
    def add_car(self, initial_state: np.ndarray, reference_points: np.ndarray,
                desired_velocity: float, desired_offset: float, timestamp: float,
                track_reference: bool) -> int:
        """Insert a car and return its handle."""
        raise NotImplementedError

    @abc.abstractmethod
    def update_car(self, handle: int, initial_state: np.ndarray,
                   reference_points: np.ndarray, timestamp: float,
                   track_reference: bool):
        """Replace state and reference of an existing car."""
        raise NotImplementedError

    @abc.abstractmethod
    def update_desired_velocity(self, handle: int, desired_velocity: float,
                                desired_offset: float):
        raise NotImplementedError

    @abc.abstractmethod
    def remove_all_obstacles(self):
        raise NotImplementedError

    @abc.abstractmethod
    def add_obstacle(self, p1: np.ndarray, p2: np.ndarray, p3: np.ndarray,
                     p4: np.ndarray, is_static: bool, is_soft: bool) -> int:
        """Register an obstacle given by four (N, 2) corner sequences.

        Returns:
            The obstacle handle, or ``INVALID_HANDLE`` if the engine refuses it.
        """
        raise NotImplementedError

    @abc.abstractmethod
    def update_map(self, left_boundary: np.ndarray, right_boundary: np.ndarray) -> bool:
        """Keep the car between two road boundary polylines.

        Both polylines are (M, 2) points in the engine's local frame.  They
        replace any earlier map and hold until :meth:`clear_map`.

        Returns:
            False if the engine refuses the boundaries.
        """
        raise NotImplementedError

    @abc.abstractmethod
    def clear_map(self):
        raise NotImplementedError

    @abc.abstractmethod
    def solve(self, timestamp: float) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    def get_solution_trajectory(self, handle: int,
                                time_offset: float) -> Tuple[np.ndarray, int]:
        """Flat records of the last solution for a car and their total size."""
        raise NotImplementedError

    @abc.abstractmethod
    def get_last_reference_trajectory(self, handle: int,
                                      time_offset: float) -> Tuple[np.ndarray, int]:
        """Flat records of the car's current reference and their total size."""
        raise NotImplementedError
