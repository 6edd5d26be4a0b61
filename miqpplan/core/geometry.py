"""Small geometry helpers shared by the engine, obstacles and planner."""

import logging
from dataclasses import dataclass

import numpy as np
from shapely.geometry import Polygon

logger = logging.getLogger(__name__)


def normalize_angle(angle):
    """Wrap an angle (or array of angles) to [-pi, pi)."""
    return (angle + np.pi) % (2 * np.pi) - np.pi


def box_polygon(cx: float, cy: float, heading: float,
                length: float, width: float) -> Polygon:
    """Oriented rectangle centred at (cx, cy), corners counter-clockwise.

    Args:
        cx, cy: Box centre.
        heading: Orientation of the length axis (rad).
        length: Extent along the heading.
        width: Extent perpendicular to the heading.
    """
    c, s = np.cos(heading), np.sin(heading)
    half_l, half_w = length / 2.0, width / 2.0
    corners = []
    for sl, sw in [(1, -1), (1, 1), (-1, 1), (-1, -1)]:
        corners.append((cx + sl * half_l * c - sw * half_w * s,
                        cy + sl * half_l * s + sw * half_w * c))
    return Polygon(corners)


@dataclass(frozen=True)
class MapOffset:
    """Translation applied to geometry before it enters an optimizer.

    Solver-internal coordinates are ``world - offset`` so that they stay
    close to the origin.
    """
    x: float = 0.0
    y: float = 0.0

    def to_local(self, points) -> np.ndarray:
        pts = np.array(points, dtype=float)
        pts[..., 0] -= self.x
        pts[..., 1] -= self.y
        return pts

    def to_global(self, points) -> np.ndarray:
        pts = np.array(points, dtype=float)
        pts[..., 0] += self.x
        pts[..., 1] += self.y
        return pts
