"""Mixed-integer engine backed by :func:`scipy.optimize.milp` (HiGHS).

Each car is planned with a decoupled triple integrator in x and y:

    p_{k+1} = p_k + v_k ts + a_k ts^2 / 2 + j_k ts^3 / 6
    v_{k+1} = v_k + a_k ts + j_k ts^2 / 2
    a_{k+1} = a_k + j_k ts

The heading circle is split into ``nr_regions`` sectors.  One binary per
sector and step selects the sector holding the velocity; in the selected
sector the acceleration and jerk are limited in its longitudinal/lateral
frame and the longitudinal speed is capped.  Obstacles are convex
quadrilaterals avoided through a Big-M disjunction over their four edges.
Road boundaries, when set, become a softened lateral corridor around the
reference at every step.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
from scipy.optimize import milp, LinearConstraint, Bounds
from scipy.sparse import lil_matrix, csc_matrix
from shapely.geometry import LineString, Point, Polygon

from miqpplan.core.config import EngineSettings
from miqpplan.core.geometry import box_polygon
from miqpplan.engine import wire
from miqpplan.engine.base import DiscreteEngine, INVALID_HANDLE
from miqpplan.engine.reference import ReferencePath, generate_reference_records

logger = logging.getLogger(__name__)

# Indices into the second-order state [x, vx, ax, y, vy, ay]
SX, SVX, SAX, SY, SVY, SAY = range(6)


@dataclass
class _Car:
    initial_state: np.ndarray
    path: ReferencePath
    desired_velocity: float
    desired_offset: float
    timestamp: float
    track_reference: bool
    reference: np.ndarray = None
    solution: Optional[np.ndarray] = None


@dataclass
class _Obstacle:
    corners: np.ndarray  # (4, N, 2), counter-clockwise
    is_static: bool
    is_soft: bool
    polygons: List[Polygon] = field(default_factory=list)


class MilpEngine(DiscreteEngine):
    """Discrete engine solving one MILP per car.

    Args:
        settings: Engine settings (horizon, limits, weights, solver budget).
    """

    def __init__(self, settings: Optional[EngineSettings] = None):
        super().__init__(settings or EngineSettings())
        self._cars: Dict[int, _Car] = {}
        self._next_car = 0
        self._obstacles: Dict[int, _Obstacle] = {}
        self._next_obstacle = 0
        self._map: Optional[Tuple[LineString, LineString]] = None
        self._last_solve_time = 0.0
        self._last_objective = np.nan

    @property
    def last_solve_time(self) -> float:
        return self._last_solve_time

    @property
    def last_objective(self) -> float:
        return self._last_objective

    @property
    def num_obstacles(self) -> int:
        return len(self._obstacles)

    def close(self):
        self._cars.clear()
        self._obstacles.clear()
        self._map = None
        super().close()

    def _check_open(self):
        if self._closed:
            raise RuntimeError("Engine has been closed")

    def _car(self, handle: int) -> _Car:
        if handle not in self._cars:
            raise ValueError(f"Unknown car handle {handle}")
        return self._cars[handle]

    # ------------------------------------------------------------------
    # Cars
    # ------------------------------------------------------------------

    def add_car(self, initial_state, reference_points, desired_velocity,
                desired_offset, timestamp, track_reference) -> int:
        self._check_open()
        car = _Car(initial_state=np.asarray(initial_state, dtype=float).copy(),
                   path=ReferencePath(reference_points),
                   desired_velocity=float(desired_velocity),
                   desired_offset=float(desired_offset),
                   timestamp=float(timestamp),
                   track_reference=bool(track_reference))
        self._update_reference(car)
        handle = self._next_car
        self._next_car += 1
        self._cars[handle] = car
        logger.debug("Added car %d with %d reference points", handle, len(car.path.points))
        return handle

    def update_car(self, handle, initial_state, reference_points, timestamp,
                   track_reference):
        self._check_open()
        car = self._car(handle)
        car.initial_state = np.asarray(initial_state, dtype=float).copy()
        car.path = ReferencePath(reference_points)
        car.timestamp = float(timestamp)
        car.track_reference = bool(track_reference)
        car.solution = None
        self._update_reference(car)

    def update_desired_velocity(self, handle, desired_velocity, desired_offset):
        self._check_open()
        car = self._car(handle)
        car.desired_velocity = float(desired_velocity)
        car.desired_offset = float(desired_offset)
        self._update_reference(car)

    def _update_reference(self, car: _Car):
        s = self._settings
        car.reference = generate_reference_records(
            car.path, car.initial_state, car.desired_velocity, car.desired_offset,
            car.track_reference, s.nr_steps, s.ts, s.acc_lon_min_limit, s.acc_lon_max_limit)

    # ------------------------------------------------------------------
    # Obstacles
    # ------------------------------------------------------------------

    def remove_all_obstacles(self):
        self._check_open()
        self._obstacles.clear()

    def add_obstacle(self, p1, p2, p3, p4, is_static, is_soft) -> int:
        self._check_open()
        n = self._settings.nr_steps
        if len(self._obstacles) >= self._settings.max_obstacles:
            logger.warning("Obstacle capacity of %d reached", self._settings.max_obstacles)
            return INVALID_HANDLE
        corners = np.array([np.asarray(p, dtype=float) for p in (p1, p2, p3, p4)])
        if corners.shape != (4, n, 2):
            logger.warning("Obstacle corners of shape %s do not match horizon %d",
                           corners.shape, n)
            return INVALID_HANDLE

        obstacle = _Obstacle(corners=corners, is_static=bool(is_static), is_soft=bool(is_soft))
        for k in range(n):
            poly = Polygon(corners[:, k, :])
            if not poly.exterior.is_ccw:
                corners[:, k, :] = corners[::-1, k, :]
                poly = Polygon(corners[:, k, :])
            obstacle.polygons.append(poly)

        handle = self._next_obstacle
        self._next_obstacle += 1
        self._obstacles[handle] = obstacle
        return handle

    def _obstacles_in_roi(self, car: _Car) -> List[_Obstacle]:
        s = self._settings
        if not s.obstacle_roi_filter:
            return list(self._obstacles.values())

        x0, vx0, _, y0, vy0, _ = car.initial_state
        heading = np.arctan2(vy0, vx0)
        length = s.obstacle_roi_behind_distance + s.obstacle_roi_front_distance
        shift = 0.5 * (s.obstacle_roi_front_distance - s.obstacle_roi_behind_distance)
        roi = box_polygon(x0 + shift * np.cos(heading), y0 + shift * np.sin(heading),
                          heading, length, 2.0 * s.obstacle_roi_side_distance)
        kept = [obs for obs in self._obstacles.values()
                if any(roi.intersects(poly) for poly in obs.polygons)]
        logger.debug("ROI filter kept %d of %d obstacles", len(kept), len(self._obstacles))
        return kept

    # ------------------------------------------------------------------
    # Map
    # ------------------------------------------------------------------

    def update_map(self, left_boundary, right_boundary) -> bool:
        self._check_open()
        lines = []
        for side, points in (('left', left_boundary), ('right', right_boundary)):
            points = np.asarray(points, dtype=float)
            if (points.ndim != 2 or points.shape[1] != 2 or len(points) < 2
                    or not np.all(np.isfinite(points))):
                logger.warning("Refusing %s road boundary of shape %s", side, points.shape)
                return False
            lines.append(LineString(points))
        self._map = (lines[0], lines[1])
        return True

    def clear_map(self):
        self._check_open()
        self._map = None

    @property
    def has_map(self) -> bool:
        return self._map is not None

    def _lateral_corridor(self, car: _Car) -> np.ndarray:
        """Road corridor across the reference at every step after the first.

        Returns:
            (N-1, 4) rows ``[n_x, n_y, lower, upper]``; the position p of the
            step should satisfy ``lower <= n.p <= upper``.
        """
        s = self._settings
        left, right = self._map
        radius = s.collision_radius
        corridor = np.zeros((s.nr_steps - 1, 4))
        for k in range(1, s.nr_steps):
            p_ref = car.reference[k, [wire.X, wire.Y]]
            _, _, angle = car.path.interpolate(car.path.project(p_ref[0], p_ref[1]))
            normal = np.array([-np.sin(angle), np.cos(angle)])
            pt = Point(p_ref)
            q_left = np.asarray(left.interpolate(left.project(pt)).coords[0])
            q_right = np.asarray(right.interpolate(right.project(pt)).coords[0])
            upper = float(normal @ q_left) - radius
            lower = float(normal @ q_right) + radius
            if lower > upper:
                # Road narrower than the car, aim for its centre
                lower = upper = 0.5 * (lower + upper)
            corridor[k - 1] = [normal[0], normal[1], lower, upper]
        return corridor

    # ------------------------------------------------------------------
    # Solve
    # ------------------------------------------------------------------

    def solve(self, timestamp: float) -> bool:
        self._check_open()
        if not self._cars:
            logger.warning("Solve called without cars")
            return False
        before = time.perf_counter()
        success = True
        for handle, car in self._cars.items():
            if abs(timestamp - car.timestamp) > 1e-6:
                logger.debug("Car %d state is from t=%.3f, solving at t=%.3f",
                             handle, car.timestamp, timestamp)
            car.solution = self._solve_car(car, self._obstacles_in_roi(car))
            success = success and car.solution is not None
        self._last_solve_time = time.perf_counter() - before
        logger.debug("MILP solve for %d cars took %.3fs", len(self._cars), self._last_solve_time)
        return success

    def _admissible_regions(self, initial_state: np.ndarray) -> Tuple[int, List[int]]:
        s = self._settings
        R = s.nr_regions
        vx0, vy0 = initial_state[SVX], initial_state[SVY]
        heading = np.arctan2(vy0, vx0)
        r0 = int(np.round(heading / (2 * np.pi / R))) % R
        if np.hypot(vx0, vy0) < s.minimum_region_change_speed:
            return r0, [r0]
        nb = min(s.nr_neighbouring_possible_regions, R // 2)
        return r0, sorted({(r0 + d) % R for d in range(-nb, nb + 1)})

    def _clip_initial_state(self, state: np.ndarray, phi: float) -> np.ndarray:
        """Project the initial acceleration into the limits of its region."""
        s = self._settings
        c, sn = np.cos(phi), np.sin(phi)
        a_lon = c * state[SAX] + sn * state[SAY]
        a_lat = -sn * state[SAX] + c * state[SAY]
        a_lon_c = np.clip(a_lon, s.acc_lon_min_limit, s.acc_lon_max_limit)
        a_lat_c = np.clip(a_lat, -s.acc_lat_min_max_limit, s.acc_lat_min_max_limit)
        if a_lon_c != a_lon or a_lat_c != a_lat:
            logger.debug("Initial acceleration (%.2f, %.2f) clipped to (%.2f, %.2f)",
                         a_lon, a_lat, a_lon_c, a_lat_c)
        state = state.copy()
        state[SAX] = c * a_lon_c - sn * a_lat_c
        state[SAY] = sn * a_lon_c + c * a_lat_c
        return state

    def _solve_car(self, car: _Car, obstacles: List[_Obstacle]) -> Optional[np.ndarray]:
        """Build and solve the MILP of one car.

        Returns:
            (N, RECORD_WIDTH) records with time starting at 0, or None if
            no feasible point was found.
        """
        s = self._settings
        N = s.nr_steps
        ts = s.ts
        R = s.nr_regions
        M = s.big_m
        ref = car.reference

        r0, regions = self._admissible_regions(car.initial_state)
        phis = 2 * np.pi * np.arange(R) / R
        half_width = np.pi / R
        z_init = self._clip_initial_state(car.initial_state, phis[r0])

        v0_lon = np.cos(phis[r0]) * z_init[SVX] + np.sin(phis[r0]) * z_init[SVY]
        a0_lon = max(0.0, np.cos(phis[r0]) * z_init[SAX] + np.sin(phis[r0]) * z_init[SAY])
        v_max = max(s.max_velocity_fitting,
                    v0_lon + a0_lon ** 2 / (2 * max(s.jerk_lon_max_limit, 1e-3)) + 1e-3)

        N_obs = len(obstacles)
        corridor = self._lateral_corridor(car) if self._map is not None else np.zeros((0, 4))

        # --- Decision variable layout ---
        # States:    6*N      [x, vx, ax, y, vy, ay] at each step
        # Jerk:      2*(N-1)  [jx, jy]
        # Pos slack: 2*N, vel slack: 2*N, jerk slack: 2*(N-1)
        # Regions:   R*N binaries
        # Obstacles: 4*N_obs*(N-1) binaries + N_obs*(N-1) slacks
        # Map:       N-1 slacks when road boundaries are set
        n_state = 6 * N
        n_jerk = 2 * (N - 1)
        n_pos = 2 * N
        n_vel = 2 * N
        n_reg = R * N
        n_obin = 4 * N_obs * (N - 1)
        n_oslack = N_obs * (N - 1)
        n_mslack = len(corridor)

        z_off = 0
        j_off = z_off + n_state
        ep_off = j_off + n_jerk
        ev_off = ep_off + n_pos
        ej_off = ev_off + n_vel
        r_off = ej_off + n_jerk
        ob_off = r_off + n_reg
        os_off = ob_off + n_obin
        ms_off = os_off + n_oslack
        n_vars = ms_off + n_mslack

        def zi(k, i):
            return z_off + 6 * k + i

        def ji(k, i):
            return j_off + 2 * k + i

        def ri(k, r):
            return r_off + R * k + r

        # --- Objective ---
        c_vec = np.zeros(n_vars)
        c_vec[ep_off:ep_off + n_pos] = s.position_weight
        c_vec[ev_off:ev_off + n_vel] = s.velocity_weight
        c_vec[ej_off:ej_off + n_jerk] = s.jerk_weight
        c_vec[os_off:os_off + n_oslack] = s.slack_weight_obstacle
        c_vec[ms_off:ms_off + n_mslack] = s.slack_weight_map

        # --- Count constraint rows ---
        n_adm = len(regions)
        n_rows = (6 + 6 * (N - 1) + N
                  + 7 * (N - 1) * n_adm + 4 * (N - 1) * n_adm
                  + 2 * n_pos + 2 * n_vel + 2 * n_jerk
                  + 5 * N_obs * (N - 1) + 2 * n_mslack)
        A = lil_matrix((n_rows, n_vars))
        lb = np.zeros(n_rows)
        ub = np.zeros(n_rows)
        row = 0

        # --- Initial state ---
        for i in range(6):
            A[row, zi(0, i)] = 1.0
            lb[row] = z_init[i]; ub[row] = z_init[i]; row += 1

        # --- Triple integrator dynamics ---
        for k in range(N - 1):
            for axis, (p, v, a) in enumerate([(SX, SVX, SAX), (SY, SVY, SAY)]):
                jk = ji(k, axis)
                # p_{k+1} = p + v ts + a ts^2/2 + j ts^3/6
                A[row, zi(k + 1, p)] = 1.0
                A[row, zi(k, p)] = -1.0
                A[row, zi(k, v)] = -ts
                A[row, zi(k, a)] = -ts ** 2 / 2
                A[row, jk] = -ts ** 3 / 6
                row += 1
                # v_{k+1} = v + a ts + j ts^2/2
                A[row, zi(k + 1, v)] = 1.0
                A[row, zi(k, v)] = -1.0
                A[row, zi(k, a)] = -ts
                A[row, jk] = -ts ** 2 / 2
                row += 1
                # a_{k+1} = a + j ts
                A[row, zi(k + 1, a)] = 1.0
                A[row, zi(k, a)] = -1.0
                A[row, jk] = -ts
                row += 1

        # --- Exactly one region per step ---
        for k in range(N):
            for r in range(R):
                A[row, ri(k, r)] = 1.0
            lb[row] = 1.0; ub[row] = 1.0; row += 1

        # --- Region constraints (Big-M): expr - M*b >= bound - M ---
        def big_m_row(coeffs, b_idx, bound):
            nonlocal row
            for idx, val in coeffs:
                A[row, idx] = val
            A[row, b_idx] = -M
            lb[row] = bound - M; ub[row] = np.inf; row += 1

        for r in regions:
            phi = phis[r]
            c, sn = np.cos(phi), np.sin(phi)
            lo, hi = phi - half_width, phi + half_width
            for k in range(1, N):
                b = ri(k, r)
                vx, vy = zi(k, SVX), zi(k, SVY)
                ax, ay = zi(k, SAX), zi(k, SAY)
                # Velocity inside the sector cone
                big_m_row([(vx, -np.sin(lo)), (vy, np.cos(lo))], b, 0.0)
                big_m_row([(vx, np.sin(hi)), (vy, -np.cos(hi))], b, 0.0)
                # Longitudinal speed cap
                big_m_row([(vx, -c), (vy, -sn)], b, -v_max)
                # Longitudinal and lateral acceleration
                big_m_row([(ax, c), (ay, sn)], b, s.acc_lon_min_limit)
                big_m_row([(ax, -c), (ay, -sn)], b, -s.acc_lon_max_limit)
                big_m_row([(ax, -sn), (ay, c)], b, -s.acc_lat_min_max_limit)
                big_m_row([(ax, sn), (ay, -c)], b, -s.acc_lat_min_max_limit)
            for k in range(N - 1):
                b = ri(k, r)
                jx, jy = ji(k, 0), ji(k, 1)
                big_m_row([(jx, c), (jy, sn)], b, -s.jerk_lon_max_limit)
                big_m_row([(jx, -c), (jy, -sn)], b, -s.jerk_lon_max_limit)
                big_m_row([(jx, -sn), (jy, c)], b, -s.jerk_lat_min_max_limit)
                big_m_row([(jx, sn), (jy, -c)], b, -s.jerk_lat_min_max_limit)

        # --- L1 slack: e >= |z - ref| ---
        def l1_rows(e_idx, z_idx, target):
            nonlocal row
            # e - z >= -target
            A[row, e_idx] = 1.0
            A[row, z_idx] = -1.0
            lb[row] = -target; ub[row] = np.inf; row += 1
            # e + z >= target
            A[row, e_idx] = 1.0
            A[row, z_idx] = 1.0
            lb[row] = target; ub[row] = np.inf; row += 1

        for k in range(N):
            l1_rows(ep_off + 2 * k, zi(k, SX), ref[k, wire.X])
            l1_rows(ep_off + 2 * k + 1, zi(k, SY), ref[k, wire.Y])
            l1_rows(ev_off + 2 * k, zi(k, SVX), ref[k, wire.VX])
            l1_rows(ev_off + 2 * k + 1, zi(k, SVY), ref[k, wire.VY])
        for k in range(N - 1):
            l1_rows(ej_off + 2 * k, ji(k, 0), 0.0)
            l1_rows(ej_off + 2 * k + 1, ji(k, 1), 0.0)

        # --- Obstacle avoidance (Big-M over edges) ---
        for o, obs in enumerate(obstacles):
            for k in range(1, N):
                b_base = ob_off + 4 * (o * (N - 1) + k - 1)
                slack = os_off + o * (N - 1) + k - 1
                pts = obs.corners[:, k, :]
                for m in range(4):
                    p_m = pts[m]
                    d = pts[(m + 1) % 4] - p_m
                    length = np.hypot(d[0], d[1])
                    if length < 1e-9:
                        normal = np.zeros(2)
                    else:
                        normal = np.array([d[1], -d[0]]) / length
                    # n.p - M*b + slack >= n.p_m - M
                    A[row, zi(k, SX)] = normal[0]
                    A[row, zi(k, SY)] = normal[1]
                    A[row, b_base + m] = -M
                    A[row, slack] = 1.0
                    lb[row] = float(normal @ p_m) - M; ub[row] = np.inf; row += 1
                for m in range(4):
                    A[row, b_base + m] = 1.0
                lb[row] = 1.0; ub[row] = np.inf; row += 1

        # --- Road corridor: lower <= n.p <= upper, softened by a slack ---
        for k, (nx, ny, lower, upper) in enumerate(corridor, start=1):
            slack = ms_off + k - 1
            A[row, zi(k, SX)] = nx
            A[row, zi(k, SY)] = ny
            A[row, slack] = 1.0
            lb[row] = lower; ub[row] = np.inf; row += 1
            A[row, zi(k, SX)] = -nx
            A[row, zi(k, SY)] = -ny
            A[row, slack] = 1.0
            lb[row] = -upper; ub[row] = np.inf; row += 1

        A = A[:row]
        lb = lb[:row]
        ub = ub[:row]

        # --- Variable bounds ---
        var_lb = np.full(n_vars, -np.inf)
        var_ub = np.full(n_vars, np.inf)
        var_lb[ep_off:os_off] = 0.0
        var_ub[r_off:os_off] = 1.0
        admissible = np.zeros(R, dtype=bool)
        admissible[regions] = True
        for k in range(N):
            for r in range(R):
                if not admissible[r] or (k == 0 and r != r0):
                    var_ub[ri(k, r)] = 0.0
        var_lb[os_off:] = 0.0
        for o, obs in enumerate(obstacles):
            if not obs.is_soft:
                var_ub[os_off + o * (N - 1):os_off + (o + 1) * (N - 1)] = 0.0

        integrality = np.zeros(n_vars)
        integrality[r_off:os_off] = 1

        # --- Solve ---
        constraints = LinearConstraint(csc_matrix(A), lb, ub)
        result = milp(
            c=c_vec,
            constraints=constraints,
            integrality=integrality,
            bounds=Bounds(var_lb, var_ub),
            options={'time_limit': s.max_solution_time,
                     'mip_rel_gap': s.relative_mip_gap_tolerance},
        )

        if result.x is None:
            logger.info("MILP found no solution: %s", result.message)
            self._last_objective = np.nan
            return None
        if result.status == 1:
            logger.warning("MILP hit its limit, using best feasible point: %s", result.message)

        self._last_objective = float(result.fun)
        z = result.x[z_off:z_off + n_state].reshape(N, 6)
        records = np.zeros((N, wire.RECORD_WIDTH))
        records[:, wire.TIME] = ts * np.arange(N)
        records[:, wire.X] = z[:, SX]
        records[:, wire.Y] = z[:, SY]
        records[:, wire.VX] = z[:, SVX]
        records[:, wire.VY] = z[:, SVY]
        records[:, wire.AX] = z[:, SAX]
        records[:, wire.AY] = z[:, SAY]

        if N_obs:
            slack_used = result.x[os_off:os_off + n_oslack]
            if np.any(slack_used > 1e-6):
                logger.warning("MILP violates soft obstacles by up to %.3fm", slack_used.max())
        if n_mslack:
            slack_used = result.x[ms_off:ms_off + n_mslack]
            if np.any(slack_used > 1e-6):
                logger.warning("MILP leaves the road by up to %.3fm", slack_used.max())
        return records

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def get_solution_trajectory(self, handle, time_offset) -> Tuple[np.ndarray, int]:
        self._check_open()
        car = self._car(handle)
        if car.solution is None:
            return np.zeros(0), 0
        return wire.pack_records(car.solution, time_offset)

    def get_last_reference_trajectory(self, handle, time_offset) -> Tuple[np.ndarray, int]:
        self._check_open()
        car = self._car(handle)
        return wire.pack_records(car.reference, time_offset)
