"""Protocol for linear solvers used in rootfinding and implicit differentiation."""

from typing import Optional, Protocol, runtime_checkable

from jax import Array

from ..custom_types import BitVector
from ..oracle import Sparsity


@runtime_checkable
class LinearSolverProtocol(Protocol):
    """
    Protocol for linear solvers.

    A linear solver is reset once against the sparsity pattern of the
    Jacobian, then numerically factorised for every new matrix. Each
    factorisation serves any number of right-hand sides, solved together
    as the columns of one matrix.
    """

    def reset(self, sparsity: Sparsity) -> None:
        """Prepare for matrices with the given sparsity pattern."""
        ...

    def factorize(self, A: Array) -> None:
        """Numerically factorise the (n, n) matrix A."""
        ...

    def solve(self, rhs: Array, transpose: bool = False) -> Array:
        """
        Solve A*X = B (or A^T*X = B) with the last factorised matrix.

        Args:
            rhs: Right-hand sides B of shape (n, k)
            transpose: Solve with the transposed matrix

        Returns:
            Solution X of shape (n, k)
        """
        ...

    def structural_solve(
        self, bits: BitVector, transpose: bool = False, out: Optional[BitVector] = None
    ) -> BitVector:
        """Dependency bits of x given dependency bits of b."""
        ...

    def structural_rank(self) -> int: ...

    def is_singular(self) -> bool: ...
