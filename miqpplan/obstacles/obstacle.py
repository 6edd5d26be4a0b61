"""Obstacles as handed over by perception and prediction."""

import logging
from dataclasses import dataclass
from typing import Optional, Union

import numpy as np
from shapely.geometry import Polygon

from miqpplan.core.geometry import box_polygon
from miqpplan.core.status import ObstacleProcessingError
from miqpplan.core.trajectory import DiscretizedTrajectory, TrajectoryPoint

logger = logging.getLogger(__name__)


@dataclass
class Obstacle:
    """A perceived obstacle with an optional predicted trajectory.

    Args:
        id: Perception identifier.
        x, y: Centre of the perception bounding box.
        heading: Orientation of the bounding box (rad).
        length, width: Bounding box extent (m).
        polygon: Perception polygon; defaults to the bounding box.
        is_virtual: Virtual obstacles (stop lines, ...) are never avoided.
        trajectory: Predicted trajectory; obstacles without one are static.
    """
    id: Union[int, str]
    x: float
    y: float
    heading: float = 0.0
    length: float = 4.5
    width: float = 1.8
    polygon: Optional[Polygon] = None
    is_virtual: bool = False
    trajectory: Optional[DiscretizedTrajectory] = None

    def __post_init__(self):
        if self.polygon is None:
            self.polygon = self.perception_bounding_box()

    @property
    def is_static(self) -> bool:
        return not self.has_trajectory

    @property
    def has_trajectory(self) -> bool:
        return self.trajectory is not None and len(self.trajectory) > 0

    def perception_bounding_box(self, extend_length: float = 0.0,
                                extend_width: float = 0.0) -> Polygon:
        return box_polygon(self.x, self.y, self.heading,
                           self.length + extend_length, self.width + extend_width)

    def bounding_box(self, point: TrajectoryPoint, extend_length: float = 0.0) -> Polygon:
        """Box of the obstacle placed at a predicted trajectory point."""
        return box_polygon(point.x, point.y, point.theta, self.length + extend_length, self.width)

    def get_point_at_time(self, t: float) -> TrajectoryPoint:
        """Predicted pose at relative time ``t``.

        Linear interpolation between predicted points, clamped to the first
        and last one.  Static obstacles return their current pose.

        Raises:
            ObstacleProcessingError: if the prediction cannot be evaluated.
        """
        if not self.has_trajectory:
            return TrajectoryPoint(x=self.x, y=self.y, theta=self.heading, relative_time=t)

        points = self.trajectory.points
        times = self.trajectory.relative_times
        if not np.all(np.isfinite(times)):
            raise ObstacleProcessingError(f"Obstacle {self.id} has an invalid prediction")
        if t <= times[0]:
            return points[0]
        if t >= times[-1]:
            return points[-1]

        idx = int(np.searchsorted(times, t, side='right')) - 1
        p0, p1 = points[idx], points[idx + 1]
        dt = p1.relative_time - p0.relative_time
        w = 0.0 if dt < 1e-9 else (t - p0.relative_time) / dt
        dtheta = (p1.theta - p0.theta + np.pi) % (2 * np.pi) - np.pi
        return TrajectoryPoint(
            x=p0.x + w * (p1.x - p0.x),
            y=p0.y + w * (p1.y - p0.y),
            s=p0.s + w * (p1.s - p0.s),
            theta=p0.theta + w * dtheta,
            kappa=p0.kappa + w * (p1.kappa - p0.kappa),
            v=p0.v + w * (p1.v - p0.v),
            a=p0.a + w * (p1.a - p0.a),
            relative_time=t,
        )

    @classmethod
    def constant_velocity(cls, id: Union[int, str], x: float, y: float,
                          heading: float, speed: float, horizon: float, dt: float,
                          start_time: float = 0.0, **kwargs) -> "Obstacle":
        """Obstacle moving along its heading at constant speed.

        Args:
            id: Identifier.
            x, y: Current position.
            heading: Direction of travel (rad).
            speed: Constant speed (m/s).
            horizon: Prediction length (s).
            dt: Prediction timestep (s).
            start_time: Relative time of the current position.
            **kwargs: Further :class:`Obstacle` fields (length, width, ...).
        """
        n = int(np.ceil(horizon / dt)) + 1
        times = start_time + dt * np.arange(n)
        states = np.zeros((n, 6))
        states[:, 0] = x + speed * np.cos(heading) * dt * np.arange(n)
        states[:, 1] = y + speed * np.sin(heading) * dt * np.arange(n)
        states[:, 2] = heading
        states[:, 3] = speed
        trajectory = DiscretizedTrajectory.from_states(times, states)
        return cls(id=id, x=x, y=y, heading=heading, trajectory=trajectory, **kwargs)
