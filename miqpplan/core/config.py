"""Configuration surface of the planning core.

Every bound, weight and tolerance is a dataclass field with a documented
default.  :meth:`PlannerConfig.from_dict` overrides any subset of them,
nested sections being given as nested dicts::

    config = PlannerConfig.from_dict({
        'default_cruise_speed': 8.0,
        'engine': {'nr_steps': 30, 'ts': 0.2},
        'smoother_solver': {'max_time': 0.3},
    })
"""

import json
import logging
from dataclasses import dataclass, field, fields, is_dataclass, replace
from typing import Dict, Optional

from miqpplan.core.geometry import MapOffset

logger = logging.getLogger(__name__)


@dataclass
class VehicleParams:
    """Ego vehicle geometry (m)."""
    length: float = 4.8
    width: float = 2.1
    back_edge_to_center: float = 1.0
    wheel_base: float = 2.8


@dataclass
class EngineSettings:
    """Settings handed to the discrete optimization engine on creation."""
    nr_steps: int = 20
    ts: float = 0.25
    nr_regions: int = 16
    nr_neighbouring_possible_regions: int = 1
    max_solution_time: float = 5.0
    relative_mip_gap_tolerance: float = 0.1
    max_velocity_fitting: float = 10.0
    minimum_region_change_speed: float = 2.0
    jerk_weight: float = 1.0
    position_weight: float = 2.0
    velocity_weight: float = 0.0
    slack_weight_obstacle: float = 2000.0
    slack_weight_map: float = 2000.0
    acc_lon_max_limit: float = 2.0
    acc_lon_min_limit: float = -4.0
    jerk_lon_max_limit: float = 3.0
    acc_lat_min_max_limit: float = 1.6
    jerk_lat_min_max_limit: float = 1.4
    collision_radius: float = 1.0
    wheelbase: float = 2.8
    obstacle_roi_filter: bool = False
    obstacle_roi_behind_distance: float = 5.0
    obstacle_roi_front_distance: float = 30.0
    obstacle_roi_side_distance: float = 15.0
    max_obstacles: int = 20
    big_m: float = 1000.0


@dataclass
class SmootherProblemParameters:
    """Costs and bounds of the smoothing problem."""
    # costs for deviation from the coarse trajectory
    cost_offset_x: float = 1e1
    cost_offset_y: float = 1e1
    cost_offset_theta: float = 0.0
    cost_offset_v: float = 1e1
    # costs on absolute values
    cost_curvature: float = 1e2
    cost_acceleration: float = 0.0
    # costs on inputs
    cost_curvature_change: float = 2e1
    cost_acceleration_change: float = 2e0
    cost_smoothing_epsilon: float = 1e-4
    lower_bound_acceleration: float = -8.0
    upper_bound_acceleration: float = 4.0
    tol_acceleration: float = 1e-2
    lower_bound_curvature: float = -0.2
    upper_bound_curvature: float = 0.2
    tol_curvature: float = 1e-2
    lower_bound_velocity: float = 0.0
    upper_bound_velocity: float = 15.0
    tol_velocity: float = 1e-2
    lower_bound_jerk: float = -5.0
    upper_bound_jerk: float = 5.0
    tol_jerk: float = 1e-2
    lower_bound_curvature_change: float = -5.0
    upper_bound_curvature_change: float = 5.0
    tol_curvature_change: float = 1e-2


@dataclass
class SmootherSolverParameters:
    """Termination criteria of the smoothing solve; the first one hit wins."""
    x_tol_rel: float = 1e-6
    x_tol_abs: float = 1e-6
    f_tol: float = 1e-6
    ineq_const_tol: float = 1e-4
    eq_const_tol: float = 1e-4
    max_num_evals: int = 1000
    max_time: float = 0.5


@dataclass
class PlannerConfig:
    """Top-level configuration of :class:`~miqpplan.planner.MiqpPlanner`."""
    pts_offset_x: float = 0.0
    pts_offset_y: float = 0.0
    destination_distance_stop_threshold: float = 0.5
    distance_start_slowdown: float = 15.0
    distance_stop_before: float = 1.0
    cutoff_distance_reference_after_stop: float = 2.0
    delta_s_desired: float = 5.0
    default_cruise_speed: float = 5.0
    minimum_percentage_valid_miqp_points: float = 0.5
    minimum_valid_speed_planning: float = 1.0
    standstill_velocity_threshold: float = 0.1
    minimum_valid_speed_vx_vy: float = 0.5
    consider_obstacles: bool = True
    merge_static_obstacles: bool = True
    static_obstacle_distance_criteria: float = 1.0
    extension_length_static: float = 0.0
    extension_width_static: float = 0.0
    extension_length_dynamic: float = 0.0
    use_environment_polygon: bool = False
    use_smoothing: bool = True
    smoothing_subsampling: int = 3
    collision_radius_add: float = 0.0
    wheelbase_add: float = 0.0
    log_dir: Optional[str] = None
    vehicle: VehicleParams = field(default_factory=VehicleParams)
    engine: EngineSettings = field(default_factory=EngineSettings)
    smoother_problem: SmootherProblemParameters = field(default_factory=SmootherProblemParameters)
    smoother_solver: SmootherSolverParameters = field(default_factory=SmootherSolverParameters)

    @property
    def map_offset(self) -> MapOffset:
        return MapOffset(self.pts_offset_x, self.pts_offset_y)

    def engine_settings(self) -> EngineSettings:
        """Engine settings with vehicle-derived collision radius and wheelbase."""
        return replace(
            self.engine,
            collision_radius=self.vehicle.width / 2.0 + self.collision_radius_add,
            wheelbase=self.vehicle.wheel_base + self.wheelbase_add,
        )

    @classmethod
    def from_dict(cls, values: Optional[Dict]) -> "PlannerConfig":
        return _update_dataclass(cls(), values or {})

    def to_dict(self) -> Dict:
        return _dataclass_to_dict(self)


def _update_dataclass(instance, values: Dict):
    known = {f.name: f for f in fields(instance)}
    updates = {}
    for key, value in values.items():
        if key not in known:
            raise ValueError(f"Unknown configuration key '{key}' for {type(instance).__name__}")
        current = getattr(instance, key)
        if is_dataclass(current):
            if not isinstance(value, dict):
                raise ValueError(f"Configuration section '{key}' must be a mapping")
            updates[key] = _update_dataclass(current, value)
        else:
            updates[key] = value
    return replace(instance, **updates)


def _dataclass_to_dict(instance) -> Dict:
    result = {}
    for f in fields(instance):
        value = getattr(instance, f.name)
        result[f.name] = _dataclass_to_dict(value) if is_dataclass(value) else value
    return result


def load_config(path: str) -> PlannerConfig:
    """Read a :class:`PlannerConfig` from a JSON file of overrides."""
    with open(path, "r") as f:
        values = json.load(f)
    config = PlannerConfig.from_dict(values)
    logger.info("Loaded planner configuration from %s", path)
    return config
