"""Unit tests for the oracle adapter."""

import pytest
import jax
import jax.numpy as jnp
import numpy as np

from jax_implicit import DimensionMismatchError, Oracle, OracleProtocol, Sparsity


@pytest.fixture
def oracle():
    """Residual z^2 - p with auxiliary output z*p, for vectors of length 2."""
    return Oracle(lambda z, p: (z**2 - p, z * p), in_shapes=[(2,), (2,)], name="sq")


class TestOracle:

    def test_implements_protocol(self, oracle):
        assert isinstance(oracle, OracleProtocol)

    def test_introspection(self, oracle):
        assert oracle.n_in == 2
        assert oracle.n_out == 2
        assert oracle.shape_in(0) == (2,)
        assert oracle.shape_out(1) == (2,)
        assert oracle.sparsity_in(0) == Sparsity.dense(2)
        assert oracle.sparsity_out(0).is_column()
        assert oracle.nnz_in(1) == 2
        assert oracle.sz_w() == 4

    def test_scalar_shapes(self):
        oracle = Oracle(lambda x: jnp.sum(x), in_shapes=[3])
        assert oracle.n_out == 1
        assert oracle.shape_out(0) == ()
        assert oracle.sparsity_out(0).shape == (1, 1)

    def test_evaluate(self, oracle):
        r, aux = oracle.evaluate([jnp.array([2.0, 3.0]), jnp.array([4.0, 1.0])])
        assert jnp.allclose(r, jnp.array([0.0, 8.0]))
        assert jnp.allclose(aux, jnp.array([8.0, 3.0]))

    def test_evaluate_missing_input_is_zero(self, oracle):
        r, _ = oracle.evaluate([jnp.array([1.0, 2.0]), None])
        assert jnp.allclose(r, jnp.array([1.0, 4.0]))

    def test_evaluate_wrong_size(self, oracle):
        with pytest.raises(DimensionMismatchError):
            oracle.evaluate([jnp.ones(3), jnp.ones(2)])
        with pytest.raises(DimensionMismatchError):
            oracle.evaluate([jnp.ones(2)])

    def test_invalid_output_sparsity(self):
        with pytest.raises(ValueError):
            Oracle(lambda x: x, in_shapes=[2], sparsity_out=[Sparsity.dense(3)])

    def test_jacobian_oracle(self, oracle):
        jac = oracle.jacobian(0, 0)
        assert jac.n_in == 2
        assert jac.n_out == 1
        assert jac.shape_out(0) == (2, 2)
        assert jac.sparsity_out(0) == Sparsity.diag(2)
        (J,) = jac.evaluate([jnp.array([1.0, 3.0]), jnp.zeros(2)])
        assert jnp.allclose(J, jnp.diag(jnp.array([2.0, 6.0])))

    def test_forward_matches_jvp(self, oracle):
        z, p = jnp.array([1.0, 2.0]), jnp.array([0.5, -1.0])
        seeds = [
            [jnp.array([1.0, 0.0]), None],
            [None, jnp.array([0.0, 1.0])],
        ]
        fsens = oracle.forward([z, p], seeds)
        assert len(fsens) == 2
        for seed, sens in zip(seeds, fsens):
            tangent = tuple(jnp.zeros(2) if s is None else s for s in seed)
            _, expected = jax.jvp(lambda z, p: (z**2 - p, z * p), (z, p), tangent)
            assert jnp.allclose(sens[0], expected[0])
            assert jnp.allclose(sens[1], expected[1])

    def test_reverse_matches_vjp(self, oracle):
        z, p = jnp.array([1.0, 2.0]), jnp.array([0.5, -1.0])
        w = jnp.array([1.0, -2.0])
        (asens,) = oracle.reverse([z, p], [[w, None]])
        assert jnp.allclose(asens[0], 2.0 * z * w)
        assert jnp.allclose(asens[1], -w)

    def test_no_directions(self, oracle):
        z, p = jnp.ones(2), jnp.ones(2)
        assert oracle.forward([z, p], []) == []
        assert oracle.reverse([z, p], []) == []

    def test_seed_length_mismatch(self, oracle):
        with pytest.raises(DimensionMismatchError):
            oracle.forward([jnp.ones(2), jnp.ones(2)], [[None]])

    def test_dependency(self, oracle):
        np.testing.assert_array_equal(oracle.dependency(0, 0), np.eye(2, dtype=bool))
        np.testing.assert_array_equal(oracle.dependency(1, 1), np.eye(2, dtype=bool))

    def test_propagate_forward(self, oracle):
        bits = np.array([1, 2], dtype=np.uint64)
        r, aux = oracle.propagate_forward([bits, None])
        np.testing.assert_array_equal(r, [1, 2])
        np.testing.assert_array_equal(aux, [1, 2])

    def test_propagate_forward_into_buffers(self, oracle):
        out = [np.full(2, 7, dtype=np.uint64), None]
        res = oracle.propagate_forward([None, np.array([4, 8], dtype=np.uint64)], out=out)
        assert res[0] is out[0]
        np.testing.assert_array_equal(out[0], [4, 8])
        np.testing.assert_array_equal(res[1], [4, 8])

    def test_propagate_reverse(self, oracle):
        z_bits, p_bits = oracle.propagate_reverse([None, np.array([1, 2], dtype=np.uint64)])
        np.testing.assert_array_equal(z_bits, [1, 2])
        np.testing.assert_array_equal(p_bits, [1, 2])

    def test_numeric_sensitivities_vanish_without_dependency(self):
        oracle = Oracle(lambda z, p: z * p[0], in_shapes=[2, 2])
        (sens,) = oracle.forward([jnp.ones(2), jnp.ones(2)], [[None, jnp.array([0.0, 1.0])]])
        (bits,) = oracle.propagate_forward([None, np.array([0, 1], dtype=np.uint64)])
        assert jnp.allclose(sens[0], 0.0)
        assert np.all(bits == 0)
