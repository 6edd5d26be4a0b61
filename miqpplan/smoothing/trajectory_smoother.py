"""Nonlinear post-smoothing of a coarse trajectory.

The coarse trajectory returned by the discrete engine is refined on a finer
time grid with :func:`scipy.optimize.minimize` (SLSQP).  The decision
variables are the inputs ``[j, xi]`` at every fine step; states follow
from :func:`~miqpplan.smoothing.kinematic_model.integrate_model`, so the
first state is pinned to the start condition by construction and every
gradient is composed from the model's analytic Jacobians.

Objective:
    sum_k w_j sqrt(j_k^2 + eps) + w_xi sqrt(xi_k^2 + eps)
    + sum_i (X_{i(s+1)} - X_ref_i)^T W (X_{i(s+1)} - X_ref_i)
    + sum_k w_kappa kappa_k^2 + w_a a_k^2

Constraints:
    jerk and curvature rate as variable bounds,
    acceleration, curvature and velocity as state inequalities.
"""

import logging
import os
import time
from enum import IntEnum
from typing import Optional, Tuple

import numpy as np
from scipy.optimize import minimize

from miqpplan.core.config import SmootherProblemParameters, SmootherSolverParameters
from miqpplan.core.geometry import MapOffset, normalize_angle
from miqpplan.core.status import SmootherInitError
from miqpplan.core.trajectory import DiscretizedTrajectory, TrajectoryPoint, save_trajectory_to_file
from miqpplan.smoothing.kinematic_model import (
    THETA, V, A, KAPPA, STATE_SIZE, J, XI, INPUT_SIZE, integrate_model,
)

logger = logging.getLogger(__name__)


class SmootherStatus(IntEnum):
    """Signed termination codes. Positive values mean the result is usable."""
    SUCCESS = 1
    STOPVAL_REACHED = 2
    FTOL_REACHED = 3
    XTOL_REACHED = 4
    MAXEVAL_REACHED = 5
    MAXTIME_REACHED = 6
    ROUNDOFF_TOLERATED = 10
    FAILURE = -1
    INVALID_ARGS = -2
    OUT_OF_MEMORY = -3
    ROUNDOFF_LIMITED = -4
    FORCED_STOP = -5
    EXCEPTION = -11
    NOT_INITIALIZED = -100

    @property
    def usable(self) -> bool:
        return self.value > 0


# SLSQP exit modes (scipy.optimize.minimize(method='SLSQP').status)
_SLSQP_STATUS = {
    0: SmootherStatus.FTOL_REACHED,
    2: SmootherStatus.INVALID_ARGS,
    5: SmootherStatus.ROUNDOFF_LIMITED,
    6: SmootherStatus.ROUNDOFF_LIMITED,
    7: SmootherStatus.ROUNDOFF_LIMITED,
    8: SmootherStatus.ROUNDOFF_LIMITED,
    9: SmootherStatus.MAXEVAL_REACHED,
}


class _EarlyStop(Exception):
    """Raised from inside solver callbacks to end the solve with a status."""

    def __init__(self, status: SmootherStatus):
        super().__init__(status.name)
        self.status = status


class TrajectorySmoother:
    """SQP smoother for coarse trajectories.

    Usage::

        smoother = TrajectorySmoother(problem_params, solver_params)
        if smoother.initialize_problem(3, coarse):
            status = smoother.optimize()
            if status.usable:
                smooth = smoother.get_optimized_trajectory()

    Args:
        problem_params: Costs and bounds (see :class:`SmootherProblemParameters`).
        solver_params: Termination criteria (see :class:`SmootherSolverParameters`).
        map_offset: Positions are shifted by this offset for the solve.
    """

    def __init__(self,
                 problem_params: Optional[SmootherProblemParameters] = None,
                 solver_params: Optional[SmootherSolverParameters] = None,
                 map_offset: Optional[MapOffset] = None):
        self._params = problem_params or SmootherProblemParameters()
        self._solver = solver_params or SmootherSolverParameters()
        self._offset = map_offset or MapOffset()

        self._ready = False
        self._status = SmootherStatus.NOT_INITIALIZED
        self._num_evals = 0

        self._x0 = np.zeros(STATE_SIZE)
        self._x_ref = np.zeros((0, STATE_SIZE))
        self._ref_idx = np.zeros(0, dtype=int)
        self._u = np.zeros(0)
        self._n_steps = 0
        self._h = 0.0
        self._t0 = 0.0
        self._s0 = 0.0

        self._start_time = 0.0
        self._best_u = self._u
        self._best_cost = float('inf')
        self._prev_u = self._u
        self._cache_key = None
        self._cache = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def status(self) -> SmootherStatus:
        return self._status

    @property
    def num_evaluations(self) -> int:
        """Objective evaluations in the last :meth:`optimize` call."""
        return self._num_evals

    @property
    def problem_size(self) -> int:
        return self._u.size

    @property
    def step_size(self) -> float:
        return self._h

    @property
    def inputs(self) -> np.ndarray:
        """Current input sequence as an (n_steps, 2) array."""
        return self._u.reshape(-1, INPUT_SIZE).copy()

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def initialize_problem(self, subsampling: int,
                           input_trajectory: DiscretizedTrajectory,
                           init_point: Optional[TrajectoryPoint] = None) -> bool:
        """Set up the fine-grid problem from a coarse trajectory.

        Args:
            subsampling: Number of intermediate steps between two coarse points.
            input_trajectory: Coarse trajectory to refine.
            init_point: Start condition pinned as the first state.  Defaults to
                the first point of ``input_trajectory``.

        Returns:
            True if the problem is ready to optimize, False if the trajectory
            has a single point and needs no smoothing.

        Raises:
            SmootherInitError: on empty input, negative subsampling, or a
                trajectory without positive duration.
        """
        self._ready = False
        self._status = SmootherStatus.NOT_INITIALIZED
        self._num_evals = 0
        self._cache_key = None
        self._cache = None

        n_points = len(input_trajectory)
        if n_points < 1:
            raise SmootherInitError("Empty input trajectory")
        if n_points == 1:
            logger.info("Input trajectory has only one point, no need for smoothing")
            return False
        if subsampling < 0:
            raise SmootherInitError(f"Subsampling must be non-negative, got {subsampling}")

        duration = input_trajectory.total_time()
        if duration <= 0.0:
            raise SmootherInitError(f"Input trajectory has non-positive duration {duration:.3f}s")

        self._n_steps = n_points + (n_points - 1) * subsampling
        self._h = duration / (self._n_steps - 1)
        self._t0 = input_trajectory[0].relative_time
        self._s0 = input_trajectory[0].s
        self._ref_idx = np.arange(n_points) * (subsampling + 1)

        x_ref = input_trajectory.states()
        x_ref[:, :2] = self._offset.to_local(x_ref[:, :2])
        self._x_ref = x_ref

        start = init_point if init_point is not None else input_trajectory[0]
        x0 = np.array([start.x, start.y, start.theta, start.v, start.a, start.kappa])
        x0[:2] = self._offset.to_local(x0[:2])
        self._x0 = x0

        # Seed every fine step with the inputs of its enclosing coarse point
        u = np.zeros((self._n_steps, INPUT_SIZE))
        for idx_input, pt in enumerate(input_trajectory):
            first = idx_input * (subsampling + 1)
            last = min(first + subsampling + 1, self._n_steps)
            u[first:last, J] = pt.da
            u[first:last, XI] = pt.dkappa
        lb, ub = self._input_bounds()
        self._u = np.clip(u.ravel(), lb, ub)

        logger.debug("Smoother initialised: %d coarse points, %d steps, h=%.4f",
                     n_points, self._n_steps, self._h)
        self._ready = True
        return True

    def _input_bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        p = self._params
        lb = np.tile([p.lower_bound_jerk, p.lower_bound_curvature_change], self._n_steps)
        ub = np.tile([p.upper_bound_jerk, p.upper_bound_curvature_change], self._n_steps)
        return lb, ub

    # ------------------------------------------------------------------
    # Model evaluation
    # ------------------------------------------------------------------

    def _integrate(self, u: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        key = u.tobytes()
        if key != self._cache_key:
            self._cache = integrate_model(self._x0, u, self._n_steps, self._h)
            self._cache_key = key
        return self._cache

    def _check_budget(self):
        if self._num_evals > self._solver.max_num_evals:
            raise _EarlyStop(SmootherStatus.MAXEVAL_REACHED)
        if time.perf_counter() - self._start_time > self._solver.max_time:
            raise _EarlyStop(SmootherStatus.MAXTIME_REACHED)

    def _track_best(self, u: np.ndarray, cost: float):
        if not np.isfinite(cost) or cost >= self._best_cost:
            return
        if np.min(self.inequality_constraints(u)) < -self._solver.ineq_const_tol:
            return
        self._best_cost = cost
        self._best_u = np.array(u, dtype=float, copy=True)

    def _state_weights(self) -> np.ndarray:
        p = self._params
        return np.array([p.cost_offset_x, p.cost_offset_y, p.cost_offset_theta,
                         p.cost_offset_v, 0.0, 0.0])

    def objective(self, u: np.ndarray) -> Tuple[float, np.ndarray]:
        """Cost and its gradient with respect to the flat input vector."""
        p = self._params
        eps = p.cost_smoothing_epsilon
        states, dXdU = self._integrate(u)
        U = u.reshape(-1, INPUT_SIZE)

        root_j = np.sqrt(U[:, J] ** 2 + eps)
        root_xi = np.sqrt(U[:, XI] ** 2 + eps)
        cost = p.cost_acceleration_change * root_j.sum() + p.cost_curvature_change * root_xi.sum()
        grad_u = np.zeros_like(U)
        grad_u[:, J] = p.cost_acceleration_change * U[:, J] / root_j
        grad_u[:, XI] = p.cost_curvature_change * U[:, XI] / root_xi

        # Reference deviation
        weights = self._state_weights()
        diff = states[self._ref_idx] - self._x_ref
        diff[:, THETA] = normalize_angle(diff[:, THETA])
        cost += float(np.sum(weights * diff ** 2))
        grad_x = np.zeros_like(states)
        grad_x[self._ref_idx] += 2.0 * weights * diff

        # Absolute values
        cost += p.cost_curvature * float(np.sum(states[:, KAPPA] ** 2))
        cost += p.cost_acceleration * float(np.sum(states[:, A] ** 2))
        grad_x[:, KAPPA] += 2.0 * p.cost_curvature * states[:, KAPPA]
        grad_x[:, A] += 2.0 * p.cost_acceleration * states[:, A]

        grad = grad_u.ravel() + np.einsum('ks,ksm->m', grad_x, dXdU)
        return cost, grad

    def _state_limits(self):
        p = self._params
        return [
            (A, p.lower_bound_acceleration - p.tol_acceleration,
             p.upper_bound_acceleration + p.tol_acceleration),
            (KAPPA, p.lower_bound_curvature - p.tol_curvature,
             p.upper_bound_curvature + p.tol_curvature),
            (V, p.lower_bound_velocity - p.tol_velocity,
             p.upper_bound_velocity + p.tol_velocity),
        ]

    def inequality_constraints(self, u: np.ndarray) -> np.ndarray:
        """Constraint values; feasible where every entry is >= 0."""
        states, _ = self._integrate(u)
        values = []
        for idx, lower, upper in self._state_limits():
            values.append(states[1:, idx] - lower)
            values.append(upper - states[1:, idx])
        return np.concatenate(values)

    def inequality_jacobian(self, u: np.ndarray) -> np.ndarray:
        _, dXdU = self._integrate(u)
        rows = []
        for idx, _, _ in self._state_limits():
            rows.append(dXdU[1:, idx, :])
            rows.append(-dXdU[1:, idx, :])
        return np.vstack(rows)

    # ------------------------------------------------------------------
    # Solve
    # ------------------------------------------------------------------

    def optimize(self) -> SmootherStatus:
        """Run the solve from the seeded inputs.

        Returns:
            The termination status; positive means the inputs now hold a
            usable result.
        """
        if not self._ready:
            logger.error("Optimization problem was not initialized")
            self._status = SmootherStatus.NOT_INITIALIZED
            return self._status

        self._num_evals = 0
        self._start_time = time.perf_counter()
        # The clipped seed is the fallback; only feasible iterates that lower
        # the cost replace it
        self._best_u = self._u.copy()
        self._best_cost, _ = self.objective(self._u)
        self._prev_u = self._u.copy()
        solver = self._solver

        def fun(u):
            self._num_evals += 1
            self._check_budget()
            cost, grad = self.objective(u)
            self._track_best(u, cost)
            return cost, grad

        def cons(u):
            self._check_budget()
            return self.inequality_constraints(u)

        def cons_jac(u):
            self._check_budget()
            return self.inequality_jacobian(u)

        def callback(uk):
            uk = np.array(uk, dtype=float, copy=True)
            step = np.abs(uk - self._prev_u)
            self._prev_u = uk
            tol = np.maximum(solver.x_tol_abs, solver.x_tol_rel * np.abs(uk))
            if np.all(step <= tol):
                raise _EarlyStop(SmootherStatus.XTOL_REACHED)

        lb, ub = self._input_bounds()
        try:
            result = minimize(
                fun,
                self._u,
                jac=True,
                method='SLSQP',
                bounds=list(zip(lb, ub)),
                constraints=[{'type': 'ineq', 'fun': cons, 'jac': cons_jac}],
                callback=callback,
                options={'maxiter': solver.max_num_evals, 'ftol': solver.f_tol},
            )
        except _EarlyStop as stop:
            self._status = stop.status
            self._u = self._best_u
            logger.info("Smoothing stopped early: %s after %d evaluations",
                        stop.status.name, self._num_evals)
        except ValueError as e:
            logger.warning("Invalid smoothing arguments: %s", e)
            self._status = SmootherStatus.INVALID_ARGS
        except MemoryError:
            logger.warning("Ran out of memory during smoothing")
            self._status = SmootherStatus.OUT_OF_MEMORY
        except ArithmeticError as e:
            logger.warning("Roundoff limited smoothing: %s", e)
            self._status = SmootherStatus.ROUNDOFF_TOLERATED
            self._u = self._best_u
        except Exception as e:
            logger.error("Unhandled exception while smoothing: %s", e)
            self._status = SmootherStatus.EXCEPTION
            return self._status
        else:
            status = _SLSQP_STATUS.get(result.status, SmootherStatus.FAILURE)
            if status is SmootherStatus.ROUNDOFF_LIMITED:
                logger.warning("Halted because roundoff errors limited progress: %s", result.message)
                status = SmootherStatus.ROUNDOFF_TOLERATED
            self._status = status
            if status.usable:
                x = np.asarray(result.x, dtype=float)
                self._track_best(x, self.objective(x)[0])
                self._u = self._best_u

        solve_time = time.perf_counter() - self._start_time
        if self._status.usable:
            violation = -min(0.0, float(np.min(self.inequality_constraints(self._u))))
            if violation > solver.ineq_const_tol:
                logger.warning("Smoothed trajectory violates state bounds by %.4f", violation)
            logger.info("Smoothing optimization successful, status %s (%d evals, %.3fs)",
                        self._status.name, self._num_evals, solve_time)
        else:
            logger.error("Smoothing optimization failed, status %s (%d evals, %.3fs)",
                         self._status.name, self._num_evals, solve_time)
        return self._status

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def get_optimized_trajectory(self) -> DiscretizedTrajectory:
        """Integrate the current inputs into a trajectory in world coordinates."""
        if not self._ready:
            return DiscretizedTrajectory()
        states, _ = self._integrate(self._u)
        states = states.copy()
        states[:, :2] = self._offset.to_global(states[:, :2])
        states[:, THETA] = normalize_angle(states[:, THETA])
        U = self._u.reshape(-1, INPUT_SIZE)
        times = self._t0 + self._h * np.arange(self._n_steps)
        return DiscretizedTrajectory.from_states(times, states, U[:, J], U[:, XI], s0=self._s0)

    def validate_smoothing_solution(self) -> bool:
        """Re-integrate the inputs and check every bound within tolerance.

        Violations are logged; the result is not retracted.
        """
        if not self._ready:
            return False
        p = self._params
        states, _ = self._integrate(self._u)
        U = self._u.reshape(-1, INPUT_SIZE)
        valid = True

        checks = [
            ("jerk", U[:, J], p.lower_bound_jerk, p.upper_bound_jerk, p.tol_jerk),
            ("curvature change", U[:, XI], p.lower_bound_curvature_change,
             p.upper_bound_curvature_change, p.tol_curvature_change),
            ("acceleration", states[:, A], p.lower_bound_acceleration,
             p.upper_bound_acceleration, p.tol_acceleration),
            ("curvature", states[:, KAPPA], p.lower_bound_curvature,
             p.upper_bound_curvature, p.tol_curvature),
            ("velocity", states[:, V], p.lower_bound_velocity,
             p.upper_bound_velocity, p.tol_velocity),
        ]
        for name, values, lower, upper, tol in checks:
            bad = np.flatnonzero((values < lower - tol) | (values > upper + tol))
            if bad.size:
                logger.warning("Smoothed %s out of bounds [%.3f, %.3f] at %d steps, first %d: %.4f",
                               name, lower, upper, bad.size, bad[0], values[bad[0]])
                valid = False

        if np.max(np.abs(states[0] - self._x0)) > self._solver.eq_const_tol:
            logger.warning("Smoothed trajectory does not start at the initial state")
            valid = False
        return valid


def smooth_trajectory(trajectory: DiscretizedTrajectory,
                      init_point: Optional[TrajectoryPoint] = None,
                      subsampling: int = 3,
                      problem_params: Optional[SmootherProblemParameters] = None,
                      solver_params: Optional[SmootherSolverParameters] = None,
                      map_offset: Optional[MapOffset] = None,
                      log_dir: Optional[str] = None) -> Tuple[bool, DiscretizedTrajectory]:
    """Smooth a coarse trajectory end to end.

    Args:
        trajectory: Coarse trajectory.
        init_point: Start condition; defaults to the first trajectory point.
        subsampling: Intermediate steps between two coarse points.
        problem_params: Smoother costs and bounds.
        solver_params: Smoother termination criteria.
        map_offset: Offset applied for the solve.
        log_dir: If given, input and output are dumped there as CSV.

    Returns:
        ``(success, trajectory)``.  A single-point trajectory is returned
        unchanged as a success; on failure the input is returned.

    Raises:
        SmootherInitError: if the trajectory cannot be set up for smoothing.
    """
    smoother = TrajectorySmoother(problem_params, solver_params, map_offset)
    if not smoother.initialize_problem(subsampling, trajectory, init_point):
        return True, trajectory

    status = smoother.optimize()
    if not status.usable:
        return False, trajectory

    smoothed = smoother.get_optimized_trajectory()
    if not smoother.validate_smoothing_solution():
        logger.warning("Smoothed trajectory violates its bounds, keeping it anyway")

    if log_dir is not None:
        stamp = f"{time.time():.3f}"
        save_trajectory_to_file(trajectory, os.path.join(log_dir, "smoothing"), f"{stamp}_input.csv")
        save_trajectory_to_file(smoothed, os.path.join(log_dir, "smoothing"), f"{stamp}_output.csv")
    return True, smoothed
