"""Planner orchestrator: one planning cycle from request to trajectory.

Each call to :meth:`MiqpPlanner.plan`:

1. classifies the cycle (DRIVING, START, STOP or STANDSTILL),
2. inserts or updates the ego car in the discrete engine,
3. sets the desired velocity and offset of the mode,
4. re-registers all obstacles,
5. takes the engine's reference (START/STOP) or solves (DRIVING),
6. rejects results with too few valid points,
7. checks the result for collisions with obstacles and road edges,
8. optionally smooths the result.

Every failure comes back as a tagged :class:`PlanningResult`; no exception
leaves :meth:`MiqpPlanner.plan`.
"""

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import numpy as np

from miqpplan.core.config import EngineSettings, PlannerConfig
from miqpplan.core.status import ErrorCode, InvalidRequestError, PlanningError, PlanningStatus
from miqpplan.core.trajectory import DiscretizedTrajectory, TrajectoryPoint, save_trajectory_to_file
from miqpplan.engine.base import DiscreteEngine, INVALID_HANDLE
from miqpplan.engine.milp_engine import MilpEngine
from miqpplan.engine.reference import ReferencePath
from miqpplan.obstacles.collision import RoadBoundaries, environment_collision, in_collision
from miqpplan.obstacles.obstacle import Obstacle
from miqpplan.obstacles.preprocessing import register_obstacles
from miqpplan.planner.conversion import records_to_trajectory, standstill_trajectory, to_initial_state
from miqpplan.planner.planner_state import PlannerState, determine_desired_motion, determine_planner_state
from miqpplan.smoothing.trajectory_smoother import smooth_trajectory

logger = logging.getLogger(__name__)


@dataclass
class PlanningRequest:
    """Inputs of one planning cycle.

    Args:
        init_point: Planning start point (world coordinates).
        reference_line: (M, 2) reference polyline in world coordinates.
        obstacles: Perceived obstacles.
        stop_distance: Distance to the stop target; defaults to the remaining
            length of the reference line beyond the ego projection.
        road_boundaries: Road edges for the environment check.
        timestamp: Absolute planning time; defaults to the wall clock.
    """
    init_point: TrajectoryPoint
    reference_line: np.ndarray
    obstacles: List[Obstacle] = field(default_factory=list)
    stop_distance: Optional[float] = None
    road_boundaries: Optional[RoadBoundaries] = None
    timestamp: Optional[float] = None


@dataclass
class PlanningResult:
    """Outcome of one planning cycle."""
    status: PlanningStatus
    trajectory: DiscretizedTrajectory = field(default_factory=DiscretizedTrajectory)
    cost: float = 0.0
    drivable: bool = False
    planner_state: Optional[PlannerState] = None
    obstacle_collision: bool = False
    environment_collision: bool = False

    @property
    def ok(self) -> bool:
        return self.status.ok()


@dataclass
class PlanningSession:
    """State kept across planning cycles."""
    first_run: bool = True
    ego_handle: int = INVALID_HANDLE
    cycles: int = 0


class MiqpPlanner:
    """Trajectory planner around a discrete optimization engine.

    Args:
        engine_factory: Creates the engine from its settings.
    """

    def __init__(self, engine_factory: Callable[[EngineSettings], DiscreteEngine] = MilpEngine):
        self._engine_factory = engine_factory
        self._engine: Optional[DiscreteEngine] = None
        self._config: Optional[PlannerConfig] = None
        self._session = PlanningSession()

    @property
    def config(self) -> Optional[PlannerConfig]:
        return self._config

    @property
    def engine(self) -> Optional[DiscreteEngine]:
        return self._engine

    @property
    def session(self) -> PlanningSession:
        return self._session

    def init(self, config: Optional[PlannerConfig]) -> PlanningStatus:
        """Create the engine and reset the session."""
        if config is None:
            logger.error("Please provide a planner configuration")
            return PlanningStatus(ErrorCode.CONFIG_MISSING, "planner parameters missing")
        if self._engine is not None:
            self.stop()
        self._config = config
        self._engine = self._engine_factory(config.engine_settings())
        self._session = PlanningSession()
        logger.info("MIQP planner configuration: %s", config)
        return PlanningStatus.success()

    def stop(self):
        """Destroy the engine. The planner must be re-initialised before planning again."""
        if self._engine is not None:
            self._engine.close()
            self._engine = None

    def plan(self, request: PlanningRequest) -> PlanningResult:
        """Run one planning cycle."""
        if self._engine is None or self._config is None:
            return PlanningResult(PlanningStatus(ErrorCode.CONFIG_MISSING, "planner not initialised"))
        before = time.perf_counter()
        try:
            result = self._plan(request)
        except PlanningError as e:
            logger.error("Planning failed: %s", e)
            result = PlanningResult(e.to_status())
        except Exception as e:
            logger.exception("Unhandled exception during planning")
            result = PlanningResult(PlanningStatus(ErrorCode.SOLVER_EXCEPTION, str(e)))
        self._session.cycles += 1
        logger.info("Planning cycle %d took %.3fs: %s",
                    self._session.cycles, time.perf_counter() - before, result.status)
        return result

    # ------------------------------------------------------------------
    # Planning cycle
    # ------------------------------------------------------------------

    def _plan(self, request: PlanningRequest) -> PlanningResult:
        config = self._config
        engine = self._engine
        init = request.init_point
        offset = config.map_offset
        timestamp = request.timestamp if request.timestamp is not None else time.time()

        reference = np.asarray(request.reference_line, dtype=float).reshape(-1, 2)
        if len(reference) < 2:
            raise InvalidRequestError(f"Reference line needs at least 2 points, got {len(reference)}")
        path = ReferencePath(reference)
        s_ego = path.project(init.x, init.y)
        stop_distance = (request.stop_distance if request.stop_distance is not None
                         else path.total_length - s_ego)

        # --- Mode ---
        state = determine_planner_state(
            init.v, stop_distance,
            destination_threshold=config.destination_distance_stop_threshold,
            standstill_velocity_threshold=config.standstill_velocity_threshold,
            minimum_valid_speed=config.minimum_valid_speed_planning,
            distance_stop_before=config.distance_stop_before,
            distance_start_slowdown=config.distance_start_slowdown)
        logger.info("Planner state %s, stop distance %.2fm", state.name, stop_distance)

        if state is PlannerState.STANDSTILL:
            trajectory = standstill_trajectory(init, engine.horizon_length(), engine.timestep())
            return PlanningResult(PlanningStatus.success(), trajectory, 0.0, True, state)

        # --- Ego car ---
        truncated = path.truncated(s_ego + stop_distance + config.cutoff_distance_reference_after_stop)
        ref_local = offset.to_local(truncated.points)
        logger.debug("Reference line has %d points", len(ref_local))
        initial_state = to_initial_state(init, offset)
        motion = determine_desired_motion(
            state, stop_distance, config.distance_stop_before, config.distance_start_slowdown,
            config.default_cruise_speed, config.delta_s_desired)

        session = self._session
        if session.first_run:
            session.ego_handle = engine.add_car(initial_state, ref_local, motion.velocity,
                                                motion.offset, timestamp, motion.track_reference)
            session.first_run = False
            logger.info("Added ego car with handle %d", session.ego_handle)
        else:
            engine.update_car(session.ego_handle, initial_state, ref_local, timestamp,
                              motion.track_reference)
            engine.update_desired_velocity(session.ego_handle, motion.velocity, motion.offset)

        # --- Obstacles ---
        if config.consider_obstacles:
            register_obstacles(engine, request.obstacles, init.relative_time, config)

        # --- Map ---
        if config.use_environment_polygon and request.road_boundaries is not None:
            map_start = time.perf_counter()
            bounds = request.road_boundaries
            left = offset.to_local(np.asarray(bounds.left, dtype=float).reshape(-1, 2))
            right = offset.to_local(np.asarray(bounds.right, dtype=float).reshape(-1, 2))
            if not engine.update_map(left, right):
                logger.warning("Engine refused the road boundaries, planning without them")
                engine.clear_map()
            logger.info("Map processing took %.3fs", time.perf_counter() - map_start)
        else:
            engine.clear_map()

        # --- Plan ---
        if state in (PlannerState.START, PlannerState.STOP):
            logger.info("%s trajectory, using reference instead of engine solution", state.name)
            flat, size = engine.get_last_reference_trajectory(session.ego_handle, init.relative_time)
            low_speed_check = False
        else:
            solve_start = time.perf_counter()
            success = engine.solve(timestamp)
            logger.info("Engine solve took %.3fs", time.perf_counter() - solve_start)
            if not success:
                raise PlanningError("Engine found no solution", ErrorCode.ENGINE_SOLVE_FAILURE)
            flat, size = engine.get_solution_trajectory(session.ego_handle, init.relative_time)
            low_speed_check = True

        trajectory = records_to_trajectory(flat, size, offset, low_speed_check,
                                           config.minimum_valid_speed_vx_vy, init.theta)

        if config.minimum_percentage_valid_miqp_points * engine.horizon_length() > len(trajectory):
            raise PlanningError(f"Trajectory has too many invalid points ({len(trajectory)} valid)",
                                ErrorCode.INSUFFICIENT_VALID_POINTS)

        # --- Collision checks (reported, not enforced) ---
        obstacle_hit = False
        if config.consider_obstacles:
            obstacle_hit = in_collision(request.obstacles, trajectory, config.vehicle)
            if obstacle_hit:
                logger.error("Planning success but collision with obstacle")
        environment_hit = False
        if config.use_environment_polygon:
            if request.road_boundaries is None:
                logger.warning("Environment check enabled but no road boundaries given")
            else:
                environment_hit = environment_collision(request.road_boundaries, trajectory)
                if environment_hit:
                    logger.error("Planning success but collision with environment")

        # --- Smoothing ---
        if config.use_smoothing:
            smooth_start = time.perf_counter()
            success, smoothed = smooth_trajectory(
                trajectory, init, config.smoothing_subsampling, config.smoother_problem,
                config.smoother_solver, offset, config.log_dir)
            logger.info("Smoothing took %.3fs", time.perf_counter() - smooth_start)
            if not success:
                raise PlanningError("Smoothing failed", ErrorCode.SMOOTHING_FAILURE)
            trajectory = smoothed

        if config.log_dir is not None:
            save_trajectory_to_file(trajectory, os.path.join(config.log_dir, "planner"),
                                    f"{timestamp:.3f}_{state.name.lower()}.csv")

        return PlanningResult(PlanningStatus.success(), trajectory, 0.0, True, state,
                              obstacle_collision=obstacle_hit,
                              environment_collision=environment_hit)
