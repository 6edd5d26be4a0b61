from miqpplan.planner.planner_state import PlannerState, DesiredMotion, determine_planner_state, \
    determine_desired_motion
from miqpplan.planner.conversion import to_initial_state, records_to_trajectory, standstill_trajectory
from miqpplan.planner.miqp_planner import MiqpPlanner, PlanningRequest, PlanningResult, PlanningSession
