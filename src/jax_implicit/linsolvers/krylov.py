"""Linear solvers based on Krylov subspaces."""

from flax import nnx
import jax
from jax import Array
import jax.numpy as jnp
import jax.scipy.sparse.linalg as jax_sparse

from ..errors import ConvergenceError
from .base import AbstractLinearSolver

# Accepted residual, relative to the requested tolerance
_SLACK = 100.0


def _check_converged(name: str, op: Array, rhs: Array, x: Array, tol: float) -> Array:
    """Raise unless every column of x solves op @ x = rhs to within tolerance."""
    res = jnp.linalg.norm(op @ x - rhs, axis=0)
    bound = _SLACK * max(tol, float(jnp.finfo(x.dtype).eps)) * jnp.linalg.norm(rhs, axis=0)
    if not bool(jnp.all(jnp.isfinite(x))) or bool(jnp.any(res > bound)):
        worst = float(jnp.max(res)) if res.size else 0.0
        raise ConvergenceError(
            f"{name}: linear solve did not converge (residual norm {worst:.2e})",
            residual_norm=worst,
        )
    return x


class GMRES(AbstractLinearSolver):
    """
    Generalised Minimal Residual (GMRES).

    Dispatches to `jax.scipy.sparse.linalg.gmres`, once per right-hand side
    column under `jax.vmap`. Suitable for general non-symmetric systems.
    Nothing is factorised; the matrix is kept for the iterations.

    Implements: LinearSolverProtocol

    Attributes:
        tol: Convergence tolerance for residual norm
        maxiter: Maximum number of iterations
    """

    def __init__(self, tol: float = 1e-10, maxiter: int = 100):
        super().__init__()
        self.tol = tol
        self.maxiter = maxiter
        self._A = nnx.Variable(jnp.zeros((0, 0)))

    def factorize(self, A: Array) -> None:
        self._A.set_value(self._check_matrix(A))
        self._factorized = True

    def solve(self, rhs: Array, transpose: bool = False) -> Array:
        """
        Solve A*X = B column by column.

        Args:
            rhs: Right-hand sides of shape (n, k)
            transpose: Iterate on A^T instead of A

        Returns:
            Approximate solution of shape (n, k)

        Raises:
            ConvergenceError: If a column misses the tolerance
        """
        self._check_factorized()
        A = self._A.get_value()
        op = A.T if transpose else A

        def solve_column(b):
            solution, _ = jax_sparse.gmres(op, b, tol=self.tol, maxiter=self.maxiter)
            return solution

        x = jax.vmap(solve_column, in_axes=1, out_axes=1)(rhs)
        return _check_converged("GMRES", op, rhs, x, self.tol)


class BiCGStab(AbstractLinearSolver):
    """
    Stabilised Biconjugate Gradients (BiCGStab).

    Dispatches to `jax.scipy.sparse.linalg.bicgstab`, once per right-hand
    side column under `jax.vmap`. Suitable for non-symmetric systems.

    Implements: LinearSolverProtocol

    Attributes:
        tol: Convergence tolerance for residual norm
        maxiter: Maximum number of iterations
    """

    def __init__(self, tol: float = 1e-10, maxiter: int = 100):
        super().__init__()
        self.tol = tol
        self.maxiter = maxiter
        self._A = nnx.Variable(jnp.zeros((0, 0)))

    def factorize(self, A: Array) -> None:
        self._A.set_value(self._check_matrix(A))
        self._factorized = True

    def solve(self, rhs: Array, transpose: bool = False) -> Array:
        self._check_factorized()
        A = self._A.get_value()
        op = A.T if transpose else A

        def solve_column(b):
            solution, _ = jax_sparse.bicgstab(op, b, tol=self.tol, maxiter=self.maxiter)
            return solution

        x = jax.vmap(solve_column, in_axes=1, out_axes=1)(rhs)
        return _check_converged("BiCGStab", op, rhs, x, self.tol)
