"""Discrete-time kinematic vehicle model with analytic Jacobians.

State ``[x, y, theta, v, a, kappa]``, input ``[j, xi]`` (jerk and
curvature rate).  One step is a Heun (trapezoidal) update:

    v'     = v + h * a
    theta' = theta + h * v * kappa
    kappa' = kappa + h * xi
    a'     = a + h * j

    x_{k+1}     = x + h/2 * (v cos(theta) + v' cos(theta'))
    y_{k+1}     = y + h/2 * (v sin(theta) + v' sin(theta'))
    theta_{k+1} = theta + h/2 * (v kappa + v' kappa')
    v_{k+1}     = v + h/2 * (a + a')
    a_{k+1}     = a'
    kappa_{k+1} = kappa'
"""

from typing import Tuple

import numpy as np

X = 0
Y = 1
THETA = 2
V = 3
A = 4
KAPPA = 5
STATE_SIZE = 6

J = 0
XI = 1
INPUT_SIZE = 2


def _predictors(x, u, h):
    v_pred = x[V] + h * x[A]
    theta_pred = x[THETA] + h * x[V] * x[KAPPA]
    kappa_pred = x[KAPPA] + h * u[XI]
    a_pred = x[A] + h * u[J]
    return v_pred, theta_pred, kappa_pred, a_pred


def model_f(x: np.ndarray, u: np.ndarray, h: float) -> np.ndarray:
    """Advance state ``x`` by one step of length ``h`` under input ``u``."""
    v_pred, theta_pred, kappa_pred, a_pred = _predictors(x, u, h)
    theta, v, a, kappa = x[THETA], x[V], x[A], x[KAPPA]
    return np.array([
        x[X] + 0.5 * h * (v * np.cos(theta) + v_pred * np.cos(theta_pred)),
        x[Y] + 0.5 * h * (v * np.sin(theta) + v_pred * np.sin(theta_pred)),
        theta + 0.5 * h * (v * kappa + v_pred * kappa_pred),
        v + 0.5 * h * (a + a_pred),
        a_pred,
        kappa_pred,
    ])


def model_dfdx(x: np.ndarray, u: np.ndarray, h: float) -> np.ndarray:
    """Jacobian of :func:`model_f` with respect to the state (6x6)."""
    v_pred, theta_pred, kappa_pred, _ = _predictors(x, u, h)
    theta, v, kappa = x[THETA], x[V], x[KAPPA]
    ct, st = np.cos(theta), np.sin(theta)
    cp, sp = np.cos(theta_pred), np.sin(theta_pred)
    hh = 0.5 * h

    d = np.eye(STATE_SIZE)
    d[X, THETA] = -hh * (v * st + v_pred * sp)
    d[X, V] = hh * (ct + cp - h * kappa * v_pred * sp)
    d[X, A] = hh * h * cp
    d[X, KAPPA] = -hh * h * v * v_pred * sp

    d[Y, THETA] = hh * (v * ct + v_pred * cp)
    d[Y, V] = hh * (st + sp + h * kappa * v_pred * cp)
    d[Y, A] = hh * h * sp
    d[Y, KAPPA] = hh * h * v * v_pred * cp

    d[THETA, V] = hh * (kappa + kappa_pred)
    d[THETA, A] = hh * h * kappa_pred
    d[THETA, KAPPA] = hh * (v + v_pred)

    d[V, A] = h
    return d


def model_dfdu(x: np.ndarray, u: np.ndarray, h: float) -> np.ndarray:
    """Jacobian of :func:`model_f` with respect to the input (6x2)."""
    v_pred = x[V] + h * x[A]
    d = np.zeros((STATE_SIZE, INPUT_SIZE))
    d[THETA, XI] = 0.5 * h * h * v_pred
    d[V, J] = 0.5 * h * h
    d[A, J] = h
    d[KAPPA, XI] = h
    return d


def integrate_model(x0: np.ndarray, u: np.ndarray, num_steps: int,
                    h: float) -> Tuple[np.ndarray, np.ndarray]:
    """Roll the model out and propagate input sensitivities.

    Args:
        x0: Initial state (6,).
        u: Inputs, either (num_steps, 2) or flat (2 * num_steps,).  Row
            ``i - 1`` drives the transition to state ``i``.
        num_steps: Number of states including ``x0``.
        h: Step size (s).

    Returns:
        ``(X, dXdU)`` with ``X`` of shape (num_steps, 6) and ``dXdU`` of
        shape (num_steps, 6, 2 * num_steps), where ``dXdU[i, :, m]`` is the
        derivative of state ``i`` with respect to flat input entry ``m``.
    """
    u = np.asarray(u, dtype=float).reshape(num_steps, INPUT_SIZE)
    states = np.zeros((num_steps, STATE_SIZE))
    dXdU = np.zeros((num_steps, STATE_SIZE, INPUT_SIZE * num_steps))
    states[0] = x0

    for i in range(1, num_steps):
        x_prev, u_prev = states[i - 1], u[i - 1]
        states[i] = model_f(x_prev, u_prev, h)
        past = INPUT_SIZE * (i - 1)
        if past > 0:
            dXdU[i, :, :past] = model_dfdx(x_prev, u_prev, h) @ dXdU[i - 1, :, :past]
        dXdU[i, :, past:past + INPUT_SIZE] = model_dfdu(x_prev, u_prev, h)

    return states, dXdU
