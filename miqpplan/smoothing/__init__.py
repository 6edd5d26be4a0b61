from miqpplan.smoothing.kinematic_model import model_f, model_dfdx, model_dfdu, integrate_model
from miqpplan.smoothing.trajectory_smoother import TrajectorySmoother, SmootherStatus, smooth_trajectory
