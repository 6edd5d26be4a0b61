import matplotlib
matplotlib.use("Agg")

import numpy as np

from miqpplan.core.status import PlanningStatus
from miqpplan.core.trajectory import DiscretizedTrajectory
from miqpplan.obstacles.collision import RoadBoundaries
from miqpplan.obstacles.obstacle import Obstacle
from miqpplan.planner.miqp_planner import PlanningResult
from miqpplan.planner.planner_state import PlannerState
from miqpplan.plotting import TrajectoryPlotter


def test_plot_planning_result():
    times = 0.25 * np.arange(10)
    states = np.zeros((10, 6))
    states[:, 0] = 5.0 * times
    states[:, 3] = 5.0
    result = PlanningResult(PlanningStatus.success(), DiscretizedTrajectory.from_states(times, states),
                            drivable=True, planner_state=PlannerState.DRIVING)
    x = np.linspace(0.0, 20.0, 21)
    reference = np.column_stack([x, np.zeros_like(x)])
    road = RoadBoundaries(left=reference + [0.0, 3.5], right=reference - [0.0, 3.5])
    obstacles = [Obstacle(id=1, x=15.0, y=2.0),
                 Obstacle.constant_velocity(2, x=5.0, y=-2.0, heading=0.0, speed=2.0, horizon=3.0, dt=0.5)]

    fig = TrajectoryPlotter(footprint_interval=3).plot(result, reference, obstacles, road)
    ax = fig.axes[0]
    # four ego footprints and two obstacles
    assert len(ax.patches) == 6
    assert ax.get_title().startswith("DRIVING")
