"""Conversions between trajectory points and the engine's state and records."""

import logging

import numpy as np

from miqpplan.core.geometry import MapOffset
from miqpplan.core.trajectory import DiscretizedTrajectory, TrajectoryPoint
from miqpplan.engine import wire

logger = logging.getLogger(__name__)


def to_initial_state(point: TrajectoryPoint, offset: MapOffset,
                     minimum_speed: float = 0.1) -> np.ndarray:
    """Second-order engine state ``[x, vx, ax, y, vy, ay]`` of a trajectory point.

    The speed is floored at ``minimum_speed`` so the heading stays defined.
    The acceleration adds the centripetal part ``v^2 kappa`` normal to the heading.
    """
    v = max(point.v, minimum_speed)
    c, s = np.cos(point.theta), np.sin(point.theta)
    x, y = offset.to_local([point.x, point.y])
    a_normal = v ** 2 * point.kappa
    state = np.array([
        x,
        v * c,
        point.a * c - a_normal * s,
        y,
        v * s,
        point.a * s + a_normal * c,
    ])
    logger.debug("Initial engine state: %s", np.array2string(state, precision=3))
    return state


def records_to_trajectory(flat: np.ndarray, size: int, offset: MapOffset,
                          low_speed_check: bool, minimum_valid_speed_vx_vy: float = 0.5,
                          initial_heading: float = 0.0) -> DiscretizedTrajectory:
    """Trajectory from engine records in world coordinates.

    Args:
        flat: Flat record array.
        size: Number of valid entries in ``flat``.
        offset: Map offset added back to positions.
        low_speed_check: Cut the trajectory at the first record whose
            ``|vx|`` and ``|vy|`` are both at most ``minimum_valid_speed_vx_vy``.
        minimum_valid_speed_vx_vy: Speed threshold of the low speed check.
        initial_heading: Heading used while the speed is zero.
    """
    records = wire.unpack_records(flat, size)
    if low_speed_check:
        slow = ((np.abs(records[:, wire.VX]) <= minimum_valid_speed_vx_vy)
                & (np.abs(records[:, wire.VY]) <= minimum_valid_speed_vx_vy))
        if np.any(slow):
            cut = int(np.argmax(slow))
            logger.info("Record %d has invalid (vx, vy) = (%.3f, %.3f), skipping further points",
                        cut, records[cut, wire.VX], records[cut, wire.VY])
            records = records[:cut]

    n = len(records)
    states = np.zeros((n, 6))
    heading = initial_heading
    for i, rec in enumerate(records):
        vx, vy, ax, ay = rec[wire.VX], rec[wire.VY], rec[wire.AX], rec[wire.AY]
        speed_sq = vx * vx + vy * vy
        if speed_sq >= 1e-6:
            heading = np.arctan2(vy, vx)
        c, s = np.cos(heading), np.sin(heading)
        kappa = 0.0 if speed_sq < 1e-3 else (vx * ay - ax * vy) / speed_sq ** 1.5
        states[i] = [rec[wire.X], rec[wire.Y], heading, np.sqrt(speed_sq),
                     ax * c + ay * s, kappa]
    if n:
        states[:, :2] = offset.to_global(states[:, :2])

    trajectory = DiscretizedTrajectory.from_states(records[:, wire.TIME], states)
    trajectory = trajectory.fill_time_derivatives()
    for i, point in enumerate(trajectory):
        logger.debug("Planned trajectory at i=%d: %s", i, point)
    return trajectory


def standstill_trajectory(init_point: TrajectoryPoint, nr_steps: int,
                          ts: float) -> DiscretizedTrajectory:
    """Trajectory holding the initial pose with zero speed."""
    times = init_point.relative_time + ts * np.arange(nr_steps)
    states = np.zeros((nr_steps, 6))
    states[:, 0] = init_point.x
    states[:, 1] = init_point.y
    states[:, 2] = init_point.theta
    return DiscretizedTrajectory.from_states(times, states, s0=init_point.s)
