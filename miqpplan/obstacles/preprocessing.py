"""Turn perceived obstacles into the engine's inflated quadrilaterals.

Every polygon handed to the engine is buffered by the engine's collision
radius and replaced by its minimum-area bounding rectangle, so the engine
always receives exactly four corners per horizon step.
"""

import logging
import time
from typing import List, Sequence, Tuple

import numpy as np
from shapely.geometry import MultiPoint, Polygon
from shapely.geometry.polygon import orient

from miqpplan.core.config import PlannerConfig
from miqpplan.core.geometry import MapOffset
from miqpplan.core.status import ObstacleProcessingError, PlanningError
from miqpplan.engine.base import DiscreteEngine, INVALID_HANDLE
from miqpplan.obstacles.obstacle import Obstacle

logger = logging.getLogger(__name__)


def inflate_polygon(polygon: Polygon, radius: float, offset: MapOffset = None) -> np.ndarray:
    """Four counter-clockwise corners of the inflated polygon's bounding rectangle.

    Args:
        polygon: Obstacle polygon in world coordinates.
        radius: Inflation distance (m).
        offset: Map offset subtracted from the corners.

    Returns:
        (4, 2) array of corners.

    Raises:
        ObstacleProcessingError: if the inflated polygon has no four-corner box.
    """
    rect = polygon.buffer(radius).minimum_rotated_rectangle
    if rect.geom_type != 'Polygon':
        raise ObstacleProcessingError(f"Inflated obstacle is a {rect.geom_type}, not a polygon")
    rect = orient(rect, sign=1.0)
    corners = np.asarray(rect.exterior.coords)[:-1]
    if len(corners) != 4:
        raise ObstacleProcessingError(f"Inflated obstacle has {len(corners)} corners instead of 4")
    if offset is not None:
        corners = offset.to_local(corners)
    return corners


def merge_close_polygons(polygons: Sequence[Polygon], distance: float) -> List[Polygon]:
    """Replace polygons closer than ``distance`` by their convex hull until none are.

    The hull of two polygons contains all of their vertices; polygons farther
    apart than ``distance`` are returned unchanged.
    """
    merged = list(polygons)
    changed = True
    while changed:
        changed = False
        for i in range(len(merged)):
            for j in range(i + 1, len(merged)):
                if merged[i].distance(merged[j]) < distance:
                    vertices = list(merged[i].exterior.coords) + list(merged[j].exterior.coords)
                    merged[i] = MultiPoint(vertices).convex_hull
                    del merged[j]
                    changed = True
                    break
            if changed:
                break
    return merged


def static_obstacle_polygons(obstacles: Sequence[Obstacle],
                             config: PlannerConfig) -> Tuple[List[Polygon], bool]:
    """Extended (and optionally merged) polygons of all non-virtual static obstacles.

    Returns:
        ``(polygons, is_soft)``; static obstacles are soft whenever they are
        extended.
    """
    ext_l = config.extension_length_static
    ext_w = config.extension_width_static
    is_soft = ext_l > 0 or ext_w > 0

    polygons = []
    for obstacle in obstacles:
        if obstacle.is_virtual or not obstacle.is_static:
            continue
        polygons.append(obstacle.perception_bounding_box(ext_l, ext_w))

    if config.merge_static_obstacles and len(polygons) > 1:
        n_before = len(polygons)
        polygons = merge_close_polygons(polygons, config.static_obstacle_distance_criteria)
        if len(polygons) < n_before:
            logger.info("Merged %d static obstacles into %d polygons", n_before, len(polygons))
    return polygons, is_soft


def sample_dynamic_obstacle(obstacle: Obstacle, start_time: float, nr_steps: int,
                            ts: float, extension_length: float = 0.0) -> List[Polygon]:
    """Predicted boxes of a moving obstacle at ``start_time + i * ts``."""
    boxes = []
    for i in range(nr_steps):
        point = obstacle.get_point_at_time(start_time + i * ts)
        boxes.append(obstacle.bounding_box(point, extension_length))
    return boxes


def _corner_sequences(polygons: Sequence[Polygon], radius: float,
                      offset: MapOffset) -> List[np.ndarray]:
    """Split per-step polygons into the four (N, 2) corner sequences."""
    corners = np.array([inflate_polygon(poly, radius, offset) for poly in polygons])
    return [corners[:, m, :] for m in range(4)]


def register_obstacles(engine: DiscreteEngine, obstacles: Sequence[Obstacle],
                       start_time: float, config: PlannerConfig) -> int:
    """Clear the engine's obstacles and register this cycle's ones.

    Args:
        engine: Engine to fill.
        obstacles: All obstacles of the cycle; virtual ones are ignored.
        start_time: Relative time of the first horizon step.
        config: Planner configuration.

    Returns:
        Number of obstacles the engine accepted.

    Raises:
        ObstacleProcessingError: if a polygon or prediction cannot be processed.
    """
    before = time.perf_counter()
    engine.remove_all_obstacles()
    N = engine.horizon_length()
    ts = engine.timestep()
    radius = engine.collision_radius()
    offset = config.map_offset
    added = 0

    try:
        static_polygons, static_soft = static_obstacle_polygons(obstacles, config)
        for polygon in static_polygons:
            p1, p2, p3, p4 = _corner_sequences([polygon] * N, radius, offset)
            handle = engine.add_obstacle(p1, p2, p3, p4, True, static_soft)
            if handle == INVALID_HANDLE:
                logger.warning("Engine refused static obstacle polygon, skipping it")
                continue
            logger.debug("Added static obstacle with engine handle %d", handle)
            added += 1

        for obstacle in obstacles:
            if obstacle.is_virtual or obstacle.is_static:
                continue
            boxes = sample_dynamic_obstacle(obstacle, start_time, N, ts,
                                            config.extension_length_dynamic)
            p1, p2, p3, p4 = _corner_sequences(boxes, radius, offset)
            handle = engine.add_obstacle(p1, p2, p3, p4, False, True)
            if handle == INVALID_HANDLE:
                logger.warning("Engine refused dynamic obstacle %s, skipping it", obstacle.id)
                continue
            logger.debug("Added dynamic obstacle %s with engine handle %d", obstacle.id, handle)
            added += 1
    except PlanningError:
        raise
    except Exception as e:
        raise ObstacleProcessingError(f"Processing of obstacles failed: {e}") from e

    logger.info("Obstacle processing: %d obstacles registered in %.3fs",
                added, time.perf_counter() - before)
    return added
