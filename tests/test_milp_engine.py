import numpy as np
import pytest

from miqpplan.core.config import EngineSettings
from miqpplan.engine import wire
from miqpplan.engine.base import INVALID_HANDLE
from miqpplan.engine.milp_engine import MilpEngine


def _road(length=60.0):
    x = np.linspace(0.0, length, int(length) + 1)
    return np.column_stack([x, np.zeros_like(x)])


def _box_corners(cx, cy, half_l, half_w, n):
    corners = [(cx - half_l, cy - half_w), (cx + half_l, cy - half_w),
               (cx + half_l, cy + half_w), (cx - half_l, cy + half_w)]
    return [np.tile(c, (n, 1)) for c in corners]


def test_straight_road_without_obstacles():
    engine = MilpEngine(EngineSettings())
    handle = engine.add_car(np.array([0.0, 5.0, 0.0, 0.0, 0.0, 0.0]), _road(), 5.0, 5.0, 0.0, True)
    assert engine.solve(0.0)
    flat, size = engine.get_solution_trajectory(handle, 2.0)
    records = wire.unpack_records(flat, size)
    assert records.shape == (engine.horizon_length(), wire.RECORD_WIDTH)
    assert records[0, wire.TIME] == pytest.approx(2.0)
    assert records[0, wire.X] == pytest.approx(0.0, abs=1e-6)
    assert records[0, wire.VX] == pytest.approx(5.0, abs=1e-6)
    assert np.all(np.diff(records[:, wire.X]) > 0.0)
    assert np.allclose(records[:, wire.Y], 0.0, atol=1e-3)
    assert np.isfinite(engine.last_objective)


def test_reference_trajectory_is_available_before_solve():
    engine = MilpEngine(EngineSettings(nr_steps=10))
    handle = engine.add_car(np.array([0.0, 5.0, 0.0, 0.0, 0.0, 0.0]), _road(), 5.0, 5.0, 0.0, True)
    flat, size = engine.get_solution_trajectory(handle, 0.0)
    assert size == 0
    flat, size = engine.get_last_reference_trajectory(handle, 0.0)
    assert size == 10 * wire.RECORD_WIDTH


def test_hard_obstacle_is_avoided():
    settings = EngineSettings()
    engine = MilpEngine(settings)
    handle = engine.add_car(np.array([0.0, 5.0, 0.0, 0.0, 0.0, 0.0]), _road(), 5.0, 5.0, 0.0, True)
    p1, p2, p3, p4 = _box_corners(15.0, 0.0, 2.0, 1.0, settings.nr_steps)
    assert engine.add_obstacle(p1, p2, p3, p4, True, False) != INVALID_HANDLE
    assert engine.solve(0.0)
    records = wire.unpack_records(*engine.get_solution_trajectory(handle, 0.0))
    tol = 1e-2
    for x, y in records[1:, wire.X:wire.Y + 1]:
        inside = (13.0 + tol < x < 17.0 - tol) and (-1.0 + tol < y < 1.0 - tol)
        assert not inside


def test_clockwise_obstacle_is_reoriented():
    engine = MilpEngine(EngineSettings(nr_steps=5))
    p1, p2, p3, p4 = _box_corners(15.0, 0.0, 2.0, 1.0, 5)
    assert engine.add_obstacle(p4, p3, p2, p1, True, True) == 0
    assert engine.num_obstacles == 1


def test_add_obstacle_refusals():
    engine = MilpEngine(EngineSettings(nr_steps=5, max_obstacles=1))
    p1, p2, p3, p4 = _box_corners(15.0, 0.0, 2.0, 1.0, 4)
    assert engine.add_obstacle(p1, p2, p3, p4, True, False) == INVALID_HANDLE
    p1, p2, p3, p4 = _box_corners(15.0, 0.0, 2.0, 1.0, 5)
    assert engine.add_obstacle(p1, p2, p3, p4, True, False) == 0
    assert engine.add_obstacle(p1, p2, p3, p4, True, False) == INVALID_HANDLE
    engine.remove_all_obstacles()
    assert engine.num_obstacles == 0
    assert engine.add_obstacle(p1, p2, p3, p4, False, True) != INVALID_HANDLE


def test_roi_filter_drops_far_obstacles():
    settings = EngineSettings(nr_steps=5, obstacle_roi_filter=True)
    engine = MilpEngine(settings)
    engine.add_car(np.array([0.0, 5.0, 0.0, 0.0, 0.0, 0.0]), _road(), 5.0, 5.0, 0.0, True)
    engine.add_obstacle(*_box_corners(10.0, 0.0, 2.0, 1.0, 5), True, False)
    engine.add_obstacle(*_box_corners(100.0, 0.0, 2.0, 1.0, 5), True, False)
    car = next(iter(engine._cars.values()))
    assert len(engine._obstacles_in_roi(car)) == 1


def test_unknown_handle_and_closed_engine():
    engine = MilpEngine(EngineSettings(nr_steps=5))
    assert not engine.solve(0.0)
    with pytest.raises(ValueError):
        engine.get_solution_trajectory(7, 0.0)
    with engine:
        pass
    assert engine.closed
    with pytest.raises(RuntimeError):
        engine.solve(0.0)


def test_update_car_and_desired_velocity():
    engine = MilpEngine(EngineSettings(nr_steps=10))
    handle = engine.add_car(np.array([0.0, 5.0, 0.0, 0.0, 0.0, 0.0]), _road(), 5.0, 5.0, 0.0, True)
    engine.update_car(handle, np.array([1.0, 5.0, 0.0, 0.0, 0.0, 0.0]), _road(), 0.25, False)
    engine.update_desired_velocity(handle, 0.0, 3.0)
    records = wire.unpack_records(*engine.get_last_reference_trajectory(handle, 0.0))
    assert records[0, wire.X] == pytest.approx(1.0)
    assert records[:, wire.X].max() <= 4.0 + 1e-9


def _boundary(y, length=60.0):
    x = np.linspace(0.0, length, int(length) + 1)
    return np.column_stack([x, np.full_like(x, y)])


def test_update_map_refusals_and_clear():
    engine = MilpEngine(EngineSettings(nr_steps=5))
    assert not engine.has_map
    assert not engine.update_map(np.zeros((1, 2)), _boundary(-3.0))
    assert not engine.update_map(_boundary(3.0), np.array([[0.0, np.nan], [1.0, 0.0]]))
    assert not engine.has_map
    assert engine.update_map(_boundary(3.0), _boundary(-3.0))
    assert engine.has_map
    engine.clear_map()
    assert not engine.has_map


def test_road_boundaries_hold_the_car_against_its_reference():
    settings = EngineSettings()
    engine = MilpEngine(settings)
    reference = _boundary(4.0)
    handle = engine.add_car(np.array([0.0, 5.0, 0.0, 0.0, 0.0, 0.0]), reference, 5.0, 5.0, 0.0, True)
    assert engine.solve(0.0)
    free = wire.unpack_records(*engine.get_solution_trajectory(handle, 0.0))
    assert free[:, wire.Y].max() > 2.5

    assert engine.update_map(_boundary(3.0), _boundary(-3.0))
    assert engine.solve(0.0)
    bounded = wire.unpack_records(*engine.get_solution_trajectory(handle, 0.0))
    upper = 3.0 - settings.collision_radius
    assert bounded[:, wire.Y].max() <= upper + 1e-2
    assert bounded[:, wire.Y].max() > 1.0


def test_road_boundaries_choose_the_side_to_pass():
    settings = EngineSettings()
    engine = MilpEngine(settings)
    handle = engine.add_car(np.array([0.0, 5.0, 0.0, 0.0, 0.0, 0.0]), _road(), 5.0, 5.0, 0.0, True)
    p1, p2, p3, p4 = _box_corners(15.0, 0.0, 2.0, 1.0, settings.nr_steps)
    assert engine.add_obstacle(p1, p2, p3, p4, True, False) != INVALID_HANDLE
    # Only the right side leaves room between obstacle and road edge
    assert engine.update_map(_boundary(1.5), _boundary(-6.0))
    assert engine.solve(0.0)
    records = wire.unpack_records(*engine.get_solution_trajectory(handle, 0.0))
    ys = records[:, wire.Y]
    assert ys.max() <= 1.5 - settings.collision_radius + 1e-2
    assert ys.min() >= -6.0 + settings.collision_radius - 1e-2
    assert ys.min() < -1.0 + 1e-2
