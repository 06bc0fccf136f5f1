"""Unit tests for implicit differentiation and dependency propagation."""

import pytest
import jax
import jax.numpy as jnp
import numpy as np

from jax_implicit import LU, Oracle, SingularJacobianError, rootfinder
from jax_implicit.linsolvers import registry as linsol_registry


class CountingLU(LU):
    """LU solver recording how often it factorises and solves."""

    def __init__(self):
        super().__init__()
        self.n_factorize = 0
        self.n_solve = 0

    def factorize(self, A):
        self.n_factorize += 1
        super().factorize(A)

    def solve(self, rhs, transpose=False):
        self.n_solve += 1
        return super().solve(rhs, transpose=transpose)


@pytest.fixture
def solved(coupled_oracle, coupled_point):
    """Newton rootfinder on the coupled system, with inputs and outputs at the root."""
    z0, p, _, _ = coupled_point
    rf = rootfinder("newton", coupled_oracle)
    inputs = [z0, p]
    return rf, inputs, rf.eval(inputs)


def unit(k, n=3):
    return jnp.zeros(n).at[k].set(1.0)


class TestForward:

    def test_scalar_root(self, scalar_oracle):
        """2z dz = dp, so dz/dp = 0.25 at p = 4, z = 2."""
        rf = rootfinder("newton", scalar_oracle)
        (sens,) = rf.forward([1.0, 4.0], [[None, 1.0]])
        assert jnp.allclose(sens[0], 0.25)
        (asens,) = rf.reverse([1.0, 4.0], [[1.0]])
        assert jnp.allclose(asens[1], 0.25)

    def test_sensitivities(self, solved, coupled_point):
        rf, inputs, outputs = solved
        dzdp = coupled_point[3]
        fseed = [[None, unit(k)] for k in range(3)]
        fsens = rf.forward(inputs, fseed, outputs)
        assert len(fsens) == 3
        for k, sens in enumerate(fsens):
            assert jnp.allclose(sens[0], dzdp[:, k], atol=1e-10)

    def test_auxiliary_output(self, solved):
        rf, inputs, outputs = solved
        fsens = rf.forward(inputs, [[None, unit(k)] for k in range(3)], outputs)
        da_dp = jnp.array([s[1][0] for s in fsens])
        assert jnp.allclose(da_dp, jnp.array([0.5, 0.5, 1.25]), atol=1e-10)

    def test_recomputes_solution(self, solved, coupled_point):
        rf, inputs, _ = solved
        (sens,) = rf.forward(inputs, [[None, unit(0)]])
        assert jnp.allclose(sens[0], coupled_point[3][:, 0], atol=1e-10)

    def test_guess_seeds_ignored(self, solved):
        rf, inputs, outputs = solved
        (sens,) = rf.forward(inputs, [[jnp.ones(3), None]], outputs)
        assert jnp.allclose(sens[0], 0.0)
        assert jnp.allclose(sens[1], 0.0)

    def test_linearized_residual_vanishes(self, solved, coupled_oracle):
        """dr/dz dz + dr/dp dp = 0 along the implicit function."""
        rf, inputs, outputs = solved
        dp = jnp.array([0.3, -1.0, 2.0])
        (sens,) = rf.forward(inputs, [[None, dp]], outputs)
        f_arg = [outputs[0], inputs[1]]
        (lin,) = coupled_oracle.forward(f_arg, [[sens[0], dp]])
        assert jnp.allclose(lin[0], 0.0, atol=1e-10)

    def test_batching_matches_single_directions(self, solved):
        rf, inputs, outputs = solved
        seeds = [
            [None, jnp.array([1.0, 2.0, 3.0])],
            [None, jnp.array([-1.0, 0.0, 0.5])],
            [None, None],
        ]
        batched = rf.forward(inputs, seeds, outputs)
        for seed, sens in zip(seeds, batched):
            (single,) = rf.forward(inputs, [seed], outputs)
            for a, b in zip(sens, single):
                assert jnp.allclose(a, b, atol=1e-12)

    def test_finite_differences(self, solved, coupled_point):
        rf, inputs, _ = solved
        z0, p, _, _ = coupled_point
        J = rf.jacobian(inputs, 1, 0)
        h = 1e-5
        columns = []
        for k in range(3):
            (z_plus, _) = rf.eval([z0, p + h * unit(k)])
            (z_minus, _) = rf.eval([z0, p - h * unit(k)])
            columns.append((z_plus - z_minus) / (2 * h))
        assert jnp.allclose(J, jnp.stack(columns, axis=1), atol=1e-6)

    def test_jacobian(self, solved, coupled_point):
        rf, inputs, _ = solved
        assert jnp.allclose(rf.jacobian(inputs, 1, 0), coupled_point[3], atol=1e-10)
        assert jnp.allclose(
            rf.jacobian(inputs, 1, 1), jnp.array([[0.5, 0.5, 1.25]]), atol=1e-10
        )
        # The solution does not depend on the initial guess
        assert jnp.allclose(rf.jacobian(inputs, 0, 0), 0.0)


class TestOutputShape:

    @pytest.fixture
    def column_rf(self):
        """Unknown of shape (2,), residual of shape (2, 1)."""
        oracle = Oracle(lambda z, p: jnp.reshape(z**2 - p, (2, 1)), in_shapes=[2, 2])
        return rootfinder("newton", oracle)

    def test_eval(self, column_rf):
        (z,) = column_rf.eval([jnp.ones(2), jnp.array([4.0, 9.0])])
        assert z.shape == (2, 1)
        assert jnp.allclose(z, jnp.array([[2.0], [3.0]]))

    def test_forward(self, column_rf):
        inputs = [jnp.ones(2), jnp.array([4.0, 9.0])]
        (sens,) = column_rf.forward(inputs, [[None, jnp.array([1.0, 0.0])]])
        assert sens[0].shape == (2, 1)
        assert jnp.allclose(sens[0], jnp.array([[0.25], [0.0]]))

    def test_outputs_passed_back(self, column_rf):
        inputs = [jnp.ones(2), jnp.array([4.0, 9.0])]
        outputs = column_rf.eval(inputs)
        (sens,) = column_rf.forward(inputs, [[None, jnp.array([0.0, 1.0])]], outputs)
        assert jnp.allclose(sens[0], jnp.array([[0.0], [1.0 / 6.0]]))
        (asens,) = column_rf.reverse(inputs, [[jnp.ones((2, 1))]], outputs)
        assert jnp.allclose(asens[1], jnp.array([0.25, 1.0 / 6.0]))


class TestReverse:

    def test_sensitivities(self, solved, coupled_point):
        rf, inputs, outputs = solved
        dzdp = coupled_point[3]
        w = jnp.array([1.0, -2.0, 0.5])
        (asens,) = rf.reverse(inputs, [[w, None]], outputs)
        assert jnp.allclose(asens[1], w @ dzdp, atol=1e-10)
        assert jnp.allclose(asens[0], 0.0)

    def test_auxiliary_seed(self, solved):
        rf, inputs, outputs = solved
        (asens,) = rf.reverse(inputs, [[None, jnp.ones(1)]], outputs)
        assert jnp.allclose(asens[1], jnp.array([0.5, 0.5, 1.25]), atol=1e-10)
        assert jnp.allclose(asens[0], 0.0)

    def test_duality(self, solved):
        """<w, J v> = <J^T w, v> over all outputs, auxiliary included."""
        rf, inputs, outputs = solved
        k1, k2, k3 = jax.random.split(jax.random.PRNGKey(0), 3)
        v = jax.random.normal(k1, (3,))
        w_z = jax.random.normal(k2, (3,))
        w_a = jax.random.normal(k3, (1,))
        (fsens,) = rf.forward(inputs, [[None, v]], outputs)
        (asens,) = rf.reverse(inputs, [[w_z, w_a]], outputs)
        lhs = jnp.dot(w_z, fsens[0]) + jnp.dot(w_a, fsens[1])
        rhs = jnp.dot(asens[1], v)
        assert jnp.allclose(lhs, rhs, atol=1e-10)

    def test_batching_matches_single_directions(self, solved):
        rf, inputs, outputs = solved
        seeds = [
            [jnp.array([1.0, 0.0, 0.0]), jnp.array([2.0])],
            [jnp.array([0.0, 1.0, -1.0]), None],
        ]
        batched = rf.reverse(inputs, seeds, outputs)
        for seed, sens in zip(seeds, batched):
            (single,) = rf.reverse(inputs, [seed], outputs)
            for a, b in zip(sens, single):
                assert jnp.allclose(a, b, atol=1e-12)


class TestLinearSolves:

    @pytest.fixture
    def counting(self, monkeypatch, coupled_oracle, coupled_point):
        monkeypatch.setattr(linsol_registry, "_plugins", dict(linsol_registry._plugins))
        linsol_registry.register("counting_lu", CountingLU)
        z0, p, _, _ = coupled_point
        rf = rootfinder("newton", coupled_oracle, {"linear_solver": "counting_lu"})
        inputs = [z0, p]
        outputs = rf.eval(inputs)
        rf.linsol.n_factorize = 0
        rf.linsol.n_solve = 0
        return rf, inputs, outputs

    def test_no_directions_is_a_no_op(self, counting):
        rf, inputs, outputs = counting
        assert rf.forward(inputs, [], outputs) == []
        assert rf.reverse(inputs, [], outputs) == []
        assert rf.linsol.n_factorize == 0
        assert rf.linsol.n_solve == 0

    def test_one_solve_for_all_directions(self, counting):
        rf, inputs, outputs = counting
        rf.forward(inputs, [[None, unit(k)] for k in range(3)], outputs)
        assert rf.linsol.n_factorize == 1
        assert rf.linsol.n_solve == 1

        rf.reverse(inputs, [[unit(k), None] for k in range(3)], outputs)
        assert rf.linsol.n_factorize == 2
        assert rf.linsol.n_solve == 2

    def test_singular_jacobian_at_point(self, scalar_oracle):
        rf = rootfinder("newton", scalar_oracle)
        with pytest.raises(SingularJacobianError):
            rf.forward([0.0, 0.0], [[None, 1.0]], outputs=[jnp.zeros(1)])


class TestDependencyPropagation:

    EXPECTED = np.array([
        [1, 1, 0],
        [1, 1, 0],
        [0, 1, 1],
    ], dtype=bool)

    def test_jac_sparsity(self, solved):
        rf, _, _ = solved
        np.testing.assert_array_equal(rf.jac_sparsity(1, 0).pattern, self.EXPECTED)
        assert rf.jac_sparsity(1, 1).pattern.all()
        assert not rf.jac_sparsity(0, 0).pattern.any()

    def test_forward_and_reverse_agree(self, solved):
        rf, _, _ = solved
        for iind in range(2):
            for oind in range(2):
                assert rf.jac_sparsity(iind, oind, "forward") == rf.jac_sparsity(
                    iind, oind, "reverse"
                )

    def test_invalid_mode(self, solved):
        rf, _, _ = solved
        with pytest.raises(ValueError):
            rf.jac_sparsity(1, 0, mode="sideways")

    def test_sound_against_numeric_jacobian(self, solved):
        """Every numeric nonzero is reported structurally."""
        rf, inputs, _ = solved
        for oind in range(2):
            J = np.asarray(rf.jacobian(inputs, 1, oind))
            pattern = rf.jac_sparsity(1, oind).pattern
            assert not np.any((np.abs(J) > 1e-12) & ~pattern)

    def test_independent_entry(self, solved):
        """z2 does not depend on p0."""
        rf, _, _ = solved
        assert not rf.jac_sparsity(1, 0).pattern[2, 0]

    def test_sp_forward(self, solved):
        rf, _, _ = solved
        arg = [
            np.full(3, 8, dtype=np.uint64),
            np.array([1, 2, 4], dtype=np.uint64),
        ]
        res = [np.zeros(3, dtype=np.uint64), np.zeros(1, dtype=np.uint64)]
        rf.sp_forward(arg, res)
        # Bits on the initial guess are ignored
        np.testing.assert_array_equal(res[0], [3, 3, 6])
        np.testing.assert_array_equal(res[1], [7])

    def test_sp_forward_skips_missing_outputs(self, solved):
        rf, _, _ = solved
        res = [None, np.zeros(1, dtype=np.uint64)]
        rf.sp_forward([None, np.array([1, 0, 0], dtype=np.uint64)], res)
        np.testing.assert_array_equal(res[1], [1])

    def test_sp_reverse(self, solved):
        rf, _, _ = solved
        arg = [
            np.full(3, 16, dtype=np.uint64),
            np.array([8, 0, 0], dtype=np.uint64),
        ]
        res = [np.array([1, 2, 4], dtype=np.uint64), np.zeros(1, dtype=np.uint64)]
        rf.sp_reverse(arg, res)
        # The unknown slot keeps its previous bits
        np.testing.assert_array_equal(arg[0], [16, 16, 16])
        np.testing.assert_array_equal(arg[1], [8 | 3, 7, 4])
        assert not res[0].any()
        assert not res[1].any()

    def test_many_directions(self):
        """More than 64 unknowns need several sweeps."""
        n = 70
        oracle = Oracle(lambda z, p: z + z**3 - p, in_shapes=[n, n])
        rf = rootfinder("newton", oracle)
        np.testing.assert_array_equal(
            rf.jac_sparsity(1, 0).pattern, np.eye(n, dtype=bool)
        )
        np.testing.assert_array_equal(
            rf.jac_sparsity(1, 0, "reverse").pattern, np.eye(n, dtype=bool)
        )
