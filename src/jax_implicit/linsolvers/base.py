"""Abstract base class for linear solvers."""

from typing import Optional

from flax import nnx
from jax import Array
import jax.numpy as jnp

from ..custom_types import BitVector
from ..errors import DimensionMismatchError, NotInitializedError
from ..oracle import Sparsity


class AbstractLinearSolver(nnx.Module):
    """
    Base class for linear solvers.

    Implements the structural half of LinearSolverProtocol on top of the
    sparsity pattern given to `reset`. Subclasses provide `factorize` and
    `solve`, and set `_singular` when a factorisation breaks down.
    """

    def __init__(self):
        self.sparsity = Sparsity.dense(0, 0)
        self._is_reset = False
        self._factorized = False
        self._singular = False

    @property
    def n(self) -> int:
        return self.sparsity.size1

    def reset(self, sparsity: Sparsity) -> None:
        if not sparsity.is_square():
            raise DimensionMismatchError(
                f"Linear solver needs a square pattern, got {sparsity.shape}"
            )
        self.sparsity = sparsity
        self._is_reset = True
        self._factorized = False
        self._singular = False

    def _check_reset(self):
        if not self._is_reset:
            raise NotInitializedError(
                f"{type(self).__name__}.reset() must be called before use"
            )

    def _check_factorized(self):
        self._check_reset()
        if not self._factorized:
            raise NotInitializedError(
                f"{type(self).__name__}.factorize() must be called before solve()"
            )

    def _check_matrix(self, A: Array) -> Array:
        self._check_reset()
        A = jnp.asarray(A)
        if A.shape != (self.n, self.n):
            raise DimensionMismatchError(
                f"Expected a ({self.n}, {self.n}) matrix, got shape {A.shape}"
            )
        return A

    def factorize(self, A: Array) -> None:
        raise NotImplementedError

    def solve(self, rhs: Array, transpose: bool = False) -> Array:
        raise NotImplementedError

    def structural_solve(
        self, bits: BitVector, transpose: bool = False, out: Optional[BitVector] = None
    ) -> BitVector:
        self._check_reset()
        return self.sparsity.spsolve(bits, transpose=transpose, out=out)

    def structural_rank(self) -> int:
        self._check_reset()
        return self.sparsity.structural_rank()

    def is_singular(self) -> bool:
        """Structurally singular pattern, or breakdown of the last factorisation."""
        self._check_reset()
        return self._singular or self.sparsity.is_singular()
