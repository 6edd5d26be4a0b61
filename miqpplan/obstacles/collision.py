"""Post-solve collision checks of a planned trajectory."""

import logging
from dataclasses import dataclass
from typing import Sequence

import numpy as np
from shapely.geometry import Point, Polygon

from miqpplan.core.config import VehicleParams
from miqpplan.core.geometry import box_polygon
from miqpplan.core.trajectory import DiscretizedTrajectory, TrajectoryPoint
from miqpplan.obstacles.obstacle import Obstacle

logger = logging.getLogger(__name__)


@dataclass
class RoadBoundaries:
    """Left and right road edges as (M, 2) polylines in driving direction."""
    left: np.ndarray
    right: np.ndarray

    def drivable_polygon(self) -> Polygon:
        left = np.asarray(self.left, dtype=float).reshape(-1, 2)
        right = np.asarray(self.right, dtype=float).reshape(-1, 2)
        return Polygon(np.vstack([left, right[::-1]])).buffer(0)


def ego_footprint(point: TrajectoryPoint, vehicle: VehicleParams) -> Polygon:
    """Ego box at a trajectory point; the reference point sits ``back_edge_to_center`` ahead of the rear."""
    shift = vehicle.length / 2.0 - vehicle.back_edge_to_center
    cx = point.x + shift * np.cos(point.theta)
    cy = point.y + shift * np.sin(point.theta)
    return box_polygon(cx, cy, point.theta, vehicle.length, vehicle.width)


def in_collision(obstacles: Sequence[Obstacle], trajectory: DiscretizedTrajectory,
                 vehicle: VehicleParams) -> bool:
    """True if the ego footprint overlaps any non-virtual obstacle at any point."""
    relevant = [obs for obs in obstacles if not obs.is_virtual]
    if not relevant:
        return False
    for point in trajectory:
        footprint = ego_footprint(point, vehicle)
        for obstacle in relevant:
            if obstacle.has_trajectory:
                shape = obstacle.bounding_box(obstacle.get_point_at_time(point.relative_time))
            else:
                shape = obstacle.polygon
            if footprint.intersects(shape):
                logger.debug("Collision with obstacle %s at t=%.2f", obstacle.id, point.relative_time)
                return True
    return False


def environment_collision(boundaries: RoadBoundaries, trajectory: DiscretizedTrajectory) -> bool:
    """True if any trajectory point lies outside the drivable polygon."""
    drivable = boundaries.drivable_polygon()
    for point in trajectory:
        if not drivable.covers(Point(point.x, point.y)):
            logger.debug("Trajectory leaves the road at t=%.2f", point.relative_time)
            return True
    return False
