import os

import numpy as np
import pytest

from miqpplan.core.config import PlannerConfig
from miqpplan.core.status import ErrorCode
from miqpplan.core.trajectory import TrajectoryPoint
from miqpplan.engine import wire
from miqpplan.engine.milp_engine import MilpEngine
from miqpplan.obstacles.collision import RoadBoundaries
from miqpplan.obstacles.obstacle import Obstacle
from miqpplan.planner.miqp_planner import MiqpPlanner, PlanningRequest
from miqpplan.planner.planner_state import PlannerState


class SpyEngine(MilpEngine):
    def __init__(self, settings=None):
        super().__init__(settings)
        self.solve_calls = 0

    def solve(self, timestamp):
        self.solve_calls += 1
        return super().solve(timestamp)


class MapSpyEngine(SpyEngine):
    def __init__(self, settings=None):
        super().__init__(settings)
        self.maps = []
        self.clear_calls = 0

    def update_map(self, left_boundary, right_boundary):
        self.maps.append((np.array(left_boundary), np.array(right_boundary)))
        return super().update_map(left_boundary, right_boundary)

    def clear_map(self):
        self.clear_calls += 1
        super().clear_map()


class FailingEngine(MilpEngine):
    def solve(self, timestamp):
        return False


class ShortSolutionEngine(MilpEngine):
    def solve(self, timestamp):
        return True

    def get_solution_trajectory(self, handle, time_offset):
        return wire.pack_records(self._car(handle).reference[:3], time_offset)


class RaisingEngine(MilpEngine):
    def solve(self, timestamp):
        raise RuntimeError("solver crashed")


def _reference(length=50.0, offset_x=0.0):
    x = np.linspace(0.0, length, int(length) + 1)
    return np.column_stack([x + offset_x, np.zeros_like(x)])


def _planner(engine_factory=SpyEngine, **config):
    config.setdefault('use_smoothing', False)
    planner = MiqpPlanner(engine_factory)
    assert planner.init(PlannerConfig(**config)).ok()
    return planner


def _request(x=0.0, v=5.0, **kwargs):
    init = TrajectoryPoint(x=x, y=0.0, theta=0.0, v=v)
    kwargs.setdefault('reference_line', _reference())
    return PlanningRequest(init_point=init, timestamp=0.0, **kwargs)


def test_driving_without_smoothing():
    planner = _planner()
    result = planner.plan(_request())
    assert result.ok, result.status
    assert result.planner_state is PlannerState.DRIVING
    assert result.drivable
    assert len(result.trajectory) == planner.engine.horizon_length()
    assert np.all(np.diff(result.trajectory.positions[:, 0]) > 0.0)
    assert np.allclose(result.trajectory.positions[:, 1], 0.0, atol=1e-3)
    assert result.trajectory[-1].v == pytest.approx(5.0, abs=0.5)
    assert not result.obstacle_collision
    assert planner.engine.solve_calls == 1


def test_driving_with_smoothing():
    planner = _planner(use_smoothing=True, smoothing_subsampling=3)
    result = planner.plan(_request())
    assert result.ok, result.status
    n = planner.engine.horizon_length()
    assert len(result.trajectory) == n + 3 * (n - 1)
    assert result.trajectory[0].x == pytest.approx(0.0, abs=1e-6)
    assert result.trajectory[0].v == pytest.approx(5.0)


def test_second_cycle_updates_the_car():
    planner = _planner()
    assert planner.plan(_request()).ok
    assert not planner.session.first_run
    result = planner.plan(_request(x=1.25))
    assert result.ok, result.status
    assert planner.session.cycles == 2
    assert planner.session.ego_handle == 0
    assert result.trajectory[0].x == pytest.approx(1.25, abs=1e-6)


def test_map_offset_is_applied():
    planner = _planner(pts_offset_x=1000.0)
    result = planner.plan(_request(x=1000.0, reference_line=_reference(offset_x=1000.0)))
    assert result.ok, result.status
    assert result.trajectory[0].x == pytest.approx(1000.0, abs=1e-6)
    assert result.trajectory[-1].x > 1000.0


def test_parked_car_is_avoided():
    planner = _planner()
    result = planner.plan(_request(obstacles=[Obstacle(id=1, x=15.0, y=0.0)]))
    assert result.ok, result.status
    assert planner.engine.num_obstacles == 1
    assert np.abs(result.trajectory.positions[:, 1]).max() > 1.0


def test_standstill_skips_the_engine():
    planner = _planner()
    result = planner.plan(_request(x=49.9, v=0.05))
    assert result.ok
    assert result.planner_state is PlannerState.STANDSTILL
    assert len(result.trajectory) == planner.engine.horizon_length()
    assert np.allclose(result.trajectory.velocities, 0.0)
    assert planner.engine.solve_calls == 0


def test_stop_uses_the_reference():
    planner = _planner()
    result = planner.plan(_request(x=47.0, v=3.0))
    assert result.ok, result.status
    assert result.planner_state is PlannerState.STOP
    assert planner.engine.solve_calls == 0
    assert result.trajectory[-1].v == pytest.approx(0.0, abs=1e-6)
    assert result.trajectory.positions[:, 0].max() <= 49.0 + 1e-6


def test_start_uses_the_reference():
    planner = _planner()
    result = planner.plan(_request(v=0.5))
    assert result.ok, result.status
    assert result.planner_state is PlannerState.START
    assert planner.engine.solve_calls == 0
    assert result.trajectory[-1].v > 0.5


def test_environment_collision_is_reported():
    x = np.linspace(0.0, 10.0, 11)
    road = RoadBoundaries(left=np.column_stack([x, np.full_like(x, 3.0)]),
                          right=np.column_stack([x, np.full_like(x, -3.0)]))
    planner = _planner(use_environment_polygon=True)
    result = planner.plan(_request(road_boundaries=road))
    assert result.ok
    assert result.environment_collision


def _road_boundaries(left_y, right_y, length=50.0, offset_x=0.0):
    x = np.linspace(0.0, length, int(length) + 1) + offset_x
    return RoadBoundaries(left=np.column_stack([x, np.full_like(x, left_y)]),
                          right=np.column_stack([x, np.full_like(x, right_y)]))


def test_road_boundaries_reach_the_engine_in_local_coordinates():
    planner = _planner(MapSpyEngine, use_environment_polygon=True, pts_offset_x=1000.0)
    road = _road_boundaries(3.0, -3.0, offset_x=1000.0)
    result = planner.plan(_request(x=1000.0, reference_line=_reference(offset_x=1000.0),
                                   road_boundaries=road))
    assert result.ok, result.status
    assert len(planner.engine.maps) == 1
    left, right = planner.engine.maps[0]
    assert left[0] == pytest.approx([0.0, 3.0])
    assert right[-1] == pytest.approx([50.0, -3.0])
    assert planner.engine.has_map


def test_map_is_cleared_without_environment_polygon():
    planner = _planner(MapSpyEngine)
    result = planner.plan(_request(road_boundaries=_road_boundaries(3.0, -3.0)))
    assert result.ok, result.status
    assert planner.engine.maps == []
    assert planner.engine.clear_calls == 1
    assert not planner.engine.has_map


def test_parked_car_is_passed_on_the_open_side():
    planner = _planner(use_environment_polygon=True)
    result = planner.plan(_request(obstacles=[Obstacle(id=1, x=15.0, y=0.0)],
                                   road_boundaries=_road_boundaries(1.5, -8.0)))
    assert result.ok, result.status
    ys = result.trajectory.positions[:, 1]
    assert ys.max() <= 1.5 - planner.engine.collision_radius() + 1e-2
    assert ys.min() < -1.0


def test_trajectory_is_logged(tmp_path):
    planner = _planner(log_dir=str(tmp_path))
    assert planner.plan(_request()).ok
    assert len(os.listdir(tmp_path / "planner")) == 1


def test_engine_failure():
    result = _planner(FailingEngine).plan(_request())
    assert result.status.code is ErrorCode.ENGINE_SOLVE_FAILURE
    assert len(result.trajectory) == 0


def test_too_few_valid_points():
    result = _planner(ShortSolutionEngine).plan(_request())
    assert result.status.code is ErrorCode.INSUFFICIENT_VALID_POINTS


def test_unexpected_exception_is_reported():
    result = _planner(RaisingEngine).plan(_request())
    assert result.status.code is ErrorCode.SOLVER_EXCEPTION
    assert "solver crashed" in result.status.message


def test_invalid_reference():
    result = _planner().plan(_request(reference_line=np.array([[0.0, 0.0]])))
    assert result.status.code is ErrorCode.INVALID_REQUEST


def test_missing_configuration():
    planner = MiqpPlanner()
    assert planner.init(None).code is ErrorCode.CONFIG_MISSING
    assert planner.plan(_request()).status.code is ErrorCode.CONFIG_MISSING

    planner = _planner()
    planner.stop()
    assert planner.engine is None
    assert planner.plan(_request()).status.code is ErrorCode.CONFIG_MISSING
