"""Per-cycle planner mode and the desired motion it implies."""

import logging
from dataclasses import dataclass
from enum import IntEnum

logger = logging.getLogger(__name__)


class PlannerState(IntEnum):
    DRIVING = 0
    START = 1
    STOP = 2
    STANDSTILL = 3


def determine_planner_state(velocity: float, stop_distance: float,
                            destination_threshold: float = 0.5,
                            standstill_velocity_threshold: float = 0.1,
                            minimum_valid_speed: float = 1.0,
                            distance_stop_before: float = 1.0,
                            distance_start_slowdown: float = 15.0) -> PlannerState:
    """Classify the planning cycle from the ego speed and the distance to stop.

    Checked in order: standing at the target, starting from low speed,
    within the slow-down distance, otherwise driving.
    """
    if velocity < standstill_velocity_threshold and stop_distance < destination_threshold:
        state = PlannerState.STANDSTILL
    elif velocity < minimum_valid_speed and stop_distance >= destination_threshold:
        state = PlannerState.START
    elif stop_distance - distance_stop_before < distance_start_slowdown:
        state = PlannerState.STOP
    else:
        state = PlannerState.DRIVING
    logger.debug("Planner state %s (v=%.2f, stop distance=%.2f)", state.name, velocity, stop_distance)
    return state


@dataclass(frozen=True)
class DesiredMotion:
    """Targets handed to the engine for one cycle."""
    track_reference: bool
    velocity: float
    offset: float


def determine_desired_motion(state: PlannerState, stop_distance: float,
                             distance_stop_before: float, distance_start_slowdown: float,
                             cruise_speed: float, delta_s_desired: float) -> DesiredMotion:
    """Desired velocity and longitudinal offset for the given mode.

    Near the stop target the offset is the remaining distance minus the stop
    buffer; the velocity is zero unless the vehicle is starting.
    """
    near_stop = stop_distance - distance_stop_before < distance_start_slowdown
    if near_stop:
        offset = max(0.0, stop_distance - distance_stop_before)
        velocity = cruise_speed if state is PlannerState.START else 0.0
        return DesiredMotion(False, velocity, offset)
    return DesiredMotion(True, cruise_speed, delta_s_desired)
