"""Direct linear solvers."""

from flax import nnx
from jax import Array
import jax.numpy as jnp
import jax.scipy.linalg as jax_linalg

from .base import AbstractLinearSolver


class LU(AbstractLinearSolver):
    """
    Dense LU factorisation with partial pivoting.

    Dispatches to `jax.scipy.linalg.lu_factor` and `jax.scipy.linalg.lu_solve`.
    Suitable for small and medium systems. This is the default linear solver.

    Implements: LinearSolverProtocol
    """

    def __init__(self):
        super().__init__()
        self._lu = nnx.Variable(jnp.zeros((0, 0)))
        self._piv = nnx.Variable(jnp.zeros((0,), dtype=jnp.int32))

    def factorize(self, A: Array) -> None:
        """
        Factorise A = P*L*U.

        A zero or non-finite pivot marks the matrix as singular.
        """
        A = self._check_matrix(A)
        lu, piv = jax_linalg.lu_factor(A)
        self._lu.set_value(lu)
        self._piv.set_value(piv)
        self._singular = bool(
            jnp.any(jnp.diag(lu) == 0) | ~jnp.all(jnp.isfinite(lu))
        )
        self._factorized = True

    def solve(self, rhs: Array, transpose: bool = False) -> Array:
        """
        Solve A*X = B, or A^T*X = B when transpose is set.

        Args:
            rhs: Right-hand sides of shape (n, k)
            transpose: Solve with the transposed matrix

        Returns:
            Solution of shape (n, k)
        """
        self._check_factorized()
        factors = (self._lu.get_value(), self._piv.get_value())
        return jax_linalg.lu_solve(factors, rhs, trans=1 if transpose else 0)


class QR(AbstractLinearSolver):
    """
    Dense QR factorisation.

    Dispatches to `jax.numpy.linalg.qr` and triangular solves with
    `jax.scipy.linalg.solve_triangular`. More robust than LU for badly
    conditioned Jacobians, at roughly twice the cost.

    Implements: LinearSolverProtocol
    """

    def __init__(self):
        super().__init__()
        self._q = nnx.Variable(jnp.zeros((0, 0)))
        self._r = nnx.Variable(jnp.zeros((0, 0)))

    def factorize(self, A: Array) -> None:
        A = self._check_matrix(A)
        q, r = jnp.linalg.qr(A)
        self._q.set_value(q)
        self._r.set_value(r)
        # Rank-deficient columns leave round-off on the diagonal of R
        d = jnp.abs(jnp.diag(r))
        tol = jnp.finfo(r.dtype).eps * max(self.n, 1) * jnp.max(d, initial=0.0)
        self._singular = bool(
            jnp.any(d <= tol) | ~jnp.all(jnp.isfinite(r))
        )
        self._factorized = True

    def solve(self, rhs: Array, transpose: bool = False) -> Array:
        self._check_factorized()
        q, r = self._q.get_value(), self._r.get_value()
        if transpose:
            # A^T = R^T Q^T
            y = jax_linalg.solve_triangular(r, rhs, trans=1, lower=False)
            return q @ y
        return jax_linalg.solve_triangular(r, q.T @ rhs, lower=False)
