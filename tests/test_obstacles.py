import numpy as np
import pytest

from miqpplan.core.config import EngineSettings, PlannerConfig
from miqpplan.core.geometry import MapOffset, box_polygon
from miqpplan.core.status import ObstacleProcessingError
from miqpplan.core.trajectory import DiscretizedTrajectory, TrajectoryPoint
from miqpplan.engine.milp_engine import MilpEngine
from miqpplan.obstacles.obstacle import Obstacle
from miqpplan.obstacles.preprocessing import (
    inflate_polygon, merge_close_polygons, register_obstacles, sample_dynamic_obstacle,
    static_obstacle_polygons,
)


def _signed_area(corners):
    x, y = corners[:, 0], corners[:, 1]
    return 0.5 * np.sum(x * np.roll(y, -1) - np.roll(x, -1) * y)


def test_default_polygon_is_bounding_box():
    obs = Obstacle(id=1, x=5.0, y=1.0, length=4.0, width=2.0)
    assert obs.is_static
    assert obs.polygon.area == pytest.approx(8.0)
    assert obs.polygon.centroid.x == pytest.approx(5.0)


def test_prediction_is_interpolated_and_clamped():
    obs = Obstacle.constant_velocity("car", x=0.0, y=0.0, heading=0.0, speed=2.0,
                                     horizon=2.0, dt=0.5)
    assert not obs.is_static
    assert obs.get_point_at_time(0.75).x == pytest.approx(1.5)
    assert obs.get_point_at_time(-1.0).x == pytest.approx(0.0)
    assert obs.get_point_at_time(10.0).x == pytest.approx(4.0)


def test_invalid_prediction_raises():
    points = [TrajectoryPoint(relative_time=0.0), TrajectoryPoint(relative_time=np.nan)]
    obs = Obstacle(id=2, x=0.0, y=0.0, trajectory=DiscretizedTrajectory(points))
    with pytest.raises(ObstacleProcessingError):
        obs.get_point_at_time(0.5)


def test_inflate_polygon_gives_ccw_rectangle():
    corners = inflate_polygon(box_polygon(0.0, 0.0, 0.0, 2.0, 2.0), 0.5)
    assert corners.shape == (4, 2)
    assert _signed_area(corners) == pytest.approx(9.0, abs=1e-3)
    assert corners[:, 0].max() == pytest.approx(1.5, abs=1e-6)


def test_inflate_polygon_applies_offset():
    offset = MapOffset(100.0, 50.0)
    corners = inflate_polygon(box_polygon(100.0, 50.0, 0.3, 4.0, 2.0), 0.0, offset)
    assert np.allclose(corners.mean(axis=0), [0.0, 0.0], atol=1e-6)
    assert _signed_area(corners) > 0


def test_merge_close_polygons():
    a = box_polygon(0.0, 0.0, 0.0, 2.0, 2.0)
    b = box_polygon(2.5, 0.0, 0.0, 2.0, 2.0)
    c = box_polygon(20.0, 0.0, 0.0, 2.0, 2.0)
    merged = merge_close_polygons([a, b, c], 1.0)
    assert len(merged) == 2
    assert merged[0].contains(a.centroid) and merged[0].contains(b.centroid)
    assert merged[0].area == pytest.approx(9.0)
    assert len(merge_close_polygons([a, c], 1.0)) == 2


def test_merge_repeats_until_stable():
    boxes = [box_polygon(2.5 * i, 0.0, 0.0, 2.0, 2.0) for i in range(4)]
    assert len(merge_close_polygons(boxes, 1.0)) == 1


def test_static_polygons_skip_virtual_and_moving():
    static = Obstacle(id=1, x=10.0, y=0.0)
    virtual = Obstacle(id=2, x=20.0, y=0.0, is_virtual=True)
    moving = Obstacle.constant_velocity(3, x=30.0, y=0.0, heading=0.0, speed=1.0, horizon=1.0, dt=0.5)
    polygons, soft = static_obstacle_polygons([static, virtual, moving], PlannerConfig())
    assert len(polygons) == 1
    assert not soft

    config = PlannerConfig(extension_length_static=1.0)
    polygons, soft = static_obstacle_polygons([static], config)
    assert soft
    assert polygons[0].area == pytest.approx(5.5 * 1.8)


def test_sample_dynamic_obstacle_moves_linearly():
    obs = Obstacle.constant_velocity("car", x=10.0, y=0.0, heading=0.0, speed=2.0,
                                     horizon=5.0, dt=0.25)
    boxes = sample_dynamic_obstacle(obs, 0.0, 5, 0.5)
    assert len(boxes) == 5
    assert [b.centroid.x for b in boxes] == pytest.approx([10.0, 11.0, 12.0, 13.0, 14.0])


def test_register_obstacles_respects_capacity():
    engine = MilpEngine(EngineSettings(nr_steps=5, max_obstacles=1))
    obstacles = [Obstacle(id=1, x=10.0, y=0.0), Obstacle(id=2, x=40.0, y=0.0)]
    assert register_obstacles(engine, obstacles, 0.0, PlannerConfig()) == 1
    assert engine.num_obstacles == 1


def test_register_obstacles_clears_previous_cycle():
    engine = MilpEngine(EngineSettings(nr_steps=5))
    obstacles = [
        Obstacle(id=1, x=10.0, y=0.0),
        Obstacle(id=2, x=40.0, y=0.0, is_virtual=True),
        Obstacle.constant_velocity(3, x=20.0, y=3.0, heading=0.0, speed=1.0, horizon=2.0, dt=0.25),
    ]
    assert register_obstacles(engine, obstacles, 0.0, PlannerConfig()) == 2
    assert register_obstacles(engine, obstacles[:1], 0.0, PlannerConfig()) == 1
    assert engine.num_obstacles == 1


class RecordingEngine(MilpEngine):
    def __init__(self, settings=None):
        super().__init__(settings)
        self.added = []

    def add_obstacle(self, p1, p2, p3, p4, is_static, is_soft):
        corners = np.array([np.array(p, dtype=float) for p in (p1, p2, p3, p4)])
        self.added.append((corners, is_static, is_soft))
        return super().add_obstacle(p1, p2, p3, p4, is_static, is_soft)


def test_register_dynamic_obstacle_passes_inflated_moving_corners():
    engine = RecordingEngine(EngineSettings(nr_steps=5, ts=0.25, collision_radius=1.0))
    config = PlannerConfig(pts_offset_x=100.0, pts_offset_y=50.0)
    obstacle = Obstacle.constant_velocity("car", x=110.0, y=50.0, heading=0.0, speed=2.0,
                                          horizon=3.0, dt=0.1, length=4.0, width=2.0)
    assert register_obstacles(engine, [obstacle], 0.0, config) == 1

    assert len(engine.added) == 1
    corners, is_static, is_soft = engine.added[0]
    assert corners.shape == (4, 5, 2)
    assert not is_static
    assert is_soft

    centres = corners.mean(axis=0)
    assert centres[:, 0] == pytest.approx([10.0, 10.5, 11.0, 11.5, 12.0], abs=1e-6)
    assert centres[:, 1] == pytest.approx(np.zeros(5), abs=1e-6)
    assert len({tuple(np.round(corners[:, k, :].ravel(), 6)) for k in range(5)}) == 5

    for k in range(5):
        step = corners[:, k, :]
        assert _signed_area(step) == pytest.approx(6.0 * 4.0, rel=1e-3)
        sides = np.sort(np.linalg.norm(np.roll(step, -1, axis=0) - step, axis=1))
        assert sides == pytest.approx([4.0, 4.0, 6.0, 6.0], rel=1e-3)
