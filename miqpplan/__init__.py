from miqpplan.core import ErrorCode, PlanningStatus, PlanningError, PlannerConfig, load_config, \
    TrajectoryPoint, DiscretizedTrajectory, MapOffset
from miqpplan.smoothing import TrajectorySmoother, SmootherStatus, smooth_trajectory
from miqpplan.engine import DiscreteEngine, MilpEngine
from miqpplan.obstacles import Obstacle, RoadBoundaries
from miqpplan.planner import MiqpPlanner, PlanningRequest, PlanningResult, PlannerState
