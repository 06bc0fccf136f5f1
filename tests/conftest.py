"""Shared fixtures for the test suite."""

import jax

jax.config.update("jax_enable_x64", True)

import jax.numpy as jnp
import pytest

from jax_implicit import Oracle


def coupled_residual(z, p):
    """
    Coupled system with one auxiliary output:

        r0 = z0 + z0^3 - p0
        r1 = z1 + z0/2 - p1
        r2 = z2 + z2^3 - p2*p1
        a  = z0*p2 + z2

    At p = (2, 1, 2) the solution is z = (1, 0.5, 1) and a = 3.
    """
    r = jnp.stack([
        z[0] + z[0] ** 3 - p[0],
        z[1] + 0.5 * z[0] - p[1],
        z[2] + z[2] ** 3 - p[2] * p[1],
    ])
    aux = jnp.reshape(z[0] * p[2] + z[2], (1,))
    return r, aux


@pytest.fixture
def coupled_oracle():
    return Oracle(coupled_residual, in_shapes=[3, 3], name="coupled")


@pytest.fixture
def coupled_point():
    """Initial guess, parameters, expected solution and expected dz/dp."""
    z0 = jnp.zeros(3)
    p = jnp.array([2.0, 1.0, 2.0])
    z_expected = jnp.array([1.0, 0.5, 1.0])
    dzdp = jnp.array([
        [0.25, 0.0, 0.0],
        [-0.125, 1.0, 0.0],
        [0.0, 0.5, 0.25],
    ])
    return z0, p, z_expected, dzdp


@pytest.fixture
def scalar_oracle():
    """Residual z^2 - p of a scalar unknown z."""
    return Oracle(lambda z, p: z**2 - p, in_shapes=[1, 1], name="square")
