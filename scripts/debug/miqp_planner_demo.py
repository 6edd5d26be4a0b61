"""
MIQP planner demo on a synthetic road.

Runs a short closed loop: every cycle the ego is moved along the previously
planned trajectory and the planner is called again.  The road is a gentle
curve with one parked car and one slower car ahead.

Run from the repo root:
    python scripts/debug/miqp_planner_demo.py
    python scripts/debug/miqp_planner_demo.py --cycles 20 --plot
    python scripts/debug/miqp_planner_demo.py --config my_config.json --no-smoothing
"""

import sys
import os
import logging
import argparse
from dataclasses import replace
from datetime import datetime

import numpy as np

# Ensure repo root is on the path so miqpplan is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from miqpplan.core import PlannerConfig, TrajectoryPoint, load_config
from miqpplan.obstacles import Obstacle, RoadBoundaries
from miqpplan.planner import MiqpPlanner, PlanningRequest

logger = logging.getLogger(__name__)


def setup_logging(main_logger: logging.Logger = None, debug: bool = False, log_path: str = None):
    level = logging.DEBUG if debug else logging.INFO

    logging.getLogger("matplotlib").setLevel(logging.INFO)

    log_formatter = logging.Formatter("[%(name)-30.30s] [%(levelname)-6.6s]  %(message)s")
    console_handler = logging.StreamHandler(stream=sys.stdout)
    console_handler.setFormatter(log_formatter)
    root_logger = logging.getLogger("")
    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    if main_logger is not None:
        main_logger.setLevel(level)

    if log_path:
        if not os.path.isdir(log_path):
            raise FileNotFoundError(f"Logging path {log_path} does not exist.")
        date_time = datetime.today().strftime('%Y%m%d_%H%M%S')
        file_handler = logging.FileHandler(f"{log_path}/{date_time}.log")
        file_handler.setFormatter(log_formatter)
        root_logger.addHandler(file_handler)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="MIQP planner closed-loop demo")
    parser.add_argument("--config", "-c", type=str, default=None,
                        help="JSON file with planner configuration overrides")
    parser.add_argument("--cycles", type=int, default=10,
                        help="Number of planning cycles")
    parser.add_argument("--cycle_time", type=float, default=0.5,
                        help="Time the ego advances between cycles (s)")
    parser.add_argument("--plot", action="store_true",
                        help="Plot every planning result")
    parser.add_argument("--no-smoothing", dest="smoothing", action="store_false",
                        help="Disable trajectory smoothing")
    parser.add_argument("--debug", action="store_true")
    parser.add_argument("--log_path", type=str, default=None)
    return parser.parse_args()


def build_road(length: float = 120.0, lane_half_width: float = 3.5):
    """Gently curving centre line with its road edges."""
    s = np.linspace(0.0, length, 121)
    centre = np.column_stack([s, 4.0 * np.sin(s / 40.0)])
    heading = np.arctan2(np.gradient(centre[:, 1]), np.gradient(centre[:, 0]))
    normal = np.column_stack([-np.sin(heading), np.cos(heading)])
    boundaries = RoadBoundaries(left=centre + lane_half_width * normal,
                                right=centre - lane_half_width * normal)
    return centre, boundaries


def build_obstacles(horizon: float, dt: float):
    parked = Obstacle(id="parked", x=35.0, y=4.0 * np.sin(35.0 / 40.0) - 2.5,
                      heading=np.arctan(0.1 * np.cos(35.0 / 40.0)), length=4.5, width=1.8)
    slow = Obstacle.constant_velocity("slow", x=60.0, y=4.0 * np.sin(60.0 / 40.0), heading=0.0,
                                      speed=2.0, horizon=horizon, dt=dt, length=4.5, width=1.8)
    return [parked, slow]


def advance(result, t: float) -> TrajectoryPoint:
    """First planned point at or after relative time ``t``."""
    for point in result.trajectory:
        if point.relative_time >= t:
            return point
    return result.trajectory[-1]


def main():
    args = parse_args()
    setup_logging(logger, debug=args.debug, log_path=args.log_path)

    config = load_config(args.config) if args.config else PlannerConfig()
    config = replace(config, use_smoothing=args.smoothing, use_environment_polygon=True)

    reference, boundaries = build_road()
    horizon = config.engine.nr_steps * config.engine.ts + args.cycles * args.cycle_time
    obstacles = build_obstacles(horizon, config.engine.ts)

    plotter = None
    if args.plot:
        import matplotlib.pyplot as plt
        from miqpplan.plotting import TrajectoryPlotter
        plotter = TrajectoryPlotter(config.vehicle)

    planner = MiqpPlanner()
    status = planner.init(config)
    if not status.ok():
        logger.error("Could not initialise planner: %s", status)
        return

    ego = TrajectoryPoint(x=0.0, y=0.0, theta=np.arctan(0.1), v=5.0)
    for cycle in range(args.cycles):
        request = PlanningRequest(init_point=ego, reference_line=reference, obstacles=obstacles,
                                  road_boundaries=boundaries, timestamp=ego.relative_time)
        result = planner.plan(request)
        logger.info("Cycle %d: %s, state %s, %d points, collisions obstacle=%s environment=%s",
                    cycle, result.status, result.planner_state.name if result.planner_state else '-',
                    len(result.trajectory), result.obstacle_collision, result.environment_collision)
        if plotter is not None and len(result.trajectory) > 0:
            plotter.plot(result, reference, obstacles, boundaries)
            plt.show()
        if not result.ok or len(result.trajectory) == 0:
            break
        ego = advance(result, ego.relative_time + args.cycle_time)
        logger.info("Ego at (%.2f, %.2f), v=%.2f", ego.x, ego.y, ego.v)

    planner.stop()


if __name__ == "__main__":
    main()
