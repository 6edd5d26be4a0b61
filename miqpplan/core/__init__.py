from miqpplan.core.status import ErrorCode, PlanningStatus, PlanningError, InvalidRequestError, \
    ObstacleProcessingError, SmootherInitError
from miqpplan.core.geometry import MapOffset, normalize_angle, box_polygon
from miqpplan.core.trajectory import TrajectoryPoint, DiscretizedTrajectory, compute_arc_length, \
    save_trajectory_to_file
from miqpplan.core.config import VehicleParams, EngineSettings, SmootherProblemParameters, \
    SmootherSolverParameters, PlannerConfig, load_config
