import numpy as np
import pytest

from miqpplan.smoothing.kinematic_model import (
    STATE_SIZE, INPUT_SIZE, X, V, THETA, model_f, model_dfdx, model_dfdu, integrate_model,
)


def _numeric_jacobian(fn, z, eps=1e-6):
    base = fn(z)
    jac = np.zeros((base.size, z.size))
    for i in range(z.size):
        dz = np.zeros_like(z)
        dz[i] = eps
        jac[:, i] = (fn(z + dz) - fn(z - dz)) / (2 * eps)
    return jac


def test_straight_constant_speed_step():
    x = np.array([0.0, 0.0, 0.0, 5.0, 0.0, 0.0])
    nxt = model_f(x, np.zeros(INPUT_SIZE), 0.1)
    assert nxt[X] == pytest.approx(0.5)
    assert nxt[V] == pytest.approx(5.0)
    assert nxt[THETA] == pytest.approx(0.0)


def test_state_jacobian_matches_finite_differences():
    x = np.array([1.0, -2.0, 0.4, 3.0, 0.7, 0.05])
    u = np.array([0.3, -0.02])
    h = 0.2
    numeric = _numeric_jacobian(lambda z: model_f(z, u, h), x)
    assert np.allclose(model_dfdx(x, u, h), numeric, atol=1e-6)


def test_input_jacobian_matches_finite_differences():
    x = np.array([1.0, -2.0, -1.1, 4.0, -0.5, 0.1])
    u = np.array([-0.8, 0.04])
    h = 0.25
    numeric = _numeric_jacobian(lambda z: model_f(x, z, h), u)
    assert np.allclose(model_dfdu(x, u, h), numeric, atol=1e-6)


def test_integrate_model_sensitivities():
    rng = np.random.default_rng(3)
    n = 6
    h = 0.15
    x0 = np.array([0.0, 0.0, 0.2, 4.0, 0.5, 0.02])
    u = rng.normal(scale=0.3, size=INPUT_SIZE * n)

    states, dXdU = integrate_model(x0, u, n, h)
    assert states.shape == (n, STATE_SIZE)
    assert dXdU.shape == (n, STATE_SIZE, INPUT_SIZE * n)
    assert np.allclose(states[0], x0)
    # first state does not depend on any input
    assert np.allclose(dXdU[0], 0.0)

    numeric = _numeric_jacobian(lambda z: integrate_model(x0, z, n, h)[0].ravel(), u)
    assert np.allclose(dXdU.reshape(n * STATE_SIZE, -1), numeric, atol=1e-5)


def test_last_input_has_no_effect():
    n = 4
    states, dXdU = integrate_model(np.zeros(STATE_SIZE), np.zeros((n, INPUT_SIZE)), n, 0.1)
    assert np.allclose(dXdU[:, :, -INPUT_SIZE:], 0.0)
