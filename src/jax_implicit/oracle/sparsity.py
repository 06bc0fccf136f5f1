"""Structural sparsity patterns and structural (boolean) linear solves."""

from functools import cached_property
from typing import Optional

import numpy as np
import scipy.sparse as sp
from scipy.sparse.csgraph import connected_components, structural_rank

from ..custom_types import BitVector, Shape


def as_matrix_shape(shape: Shape) -> tuple[int, int]:
    """
    Two-dimensional shape used for sparsity patterns.

    Scalars become (1, 1) and vectors become columns. Arrays of higher rank
    are flattened into a column.
    """
    if len(shape) == 0:
        return (1, 1)
    if len(shape) == 1:
        return (shape[0], 1)
    if len(shape) == 2:
        return (shape[0], shape[1])
    return (int(np.prod(shape)), 1)


class Sparsity:
    """
    Boolean sparsity pattern of a matrix.

    Entry (i, j) is True when the matrix may hold a structural nonzero there.
    Nonzeros are numbered in row-major order, matching `jnp.ravel`.
    """

    def __init__(self, pattern):
        pattern = np.asarray(pattern, dtype=bool)
        if pattern.ndim != 2:
            raise ValueError(f"Sparsity pattern must be 2-D, got shape {pattern.shape}")
        self.pattern = pattern
        self.pattern.setflags(write=False)

    @classmethod
    def dense(cls, nrow: int, ncol: int = 1) -> "Sparsity":
        return cls(np.ones((nrow, ncol), dtype=bool))

    @classmethod
    def diag(cls, n: int) -> "Sparsity":
        return cls(np.eye(n, dtype=bool))

    @classmethod
    def for_shape(cls, shape: Shape) -> "Sparsity":
        """Dense pattern of an array with the given shape."""
        return cls.dense(*as_matrix_shape(shape))

    @property
    def shape(self) -> tuple[int, int]:
        return self.pattern.shape

    @property
    def size1(self) -> int:
        return self.pattern.shape[0]

    @property
    def size2(self) -> int:
        return self.pattern.shape[1]

    @property
    def nnz(self) -> int:
        return int(self.pattern.sum())

    @property
    def T(self) -> "Sparsity":
        return Sparsity(self.pattern.T)

    def is_dense(self) -> bool:
        return bool(self.pattern.all())

    def is_column(self) -> bool:
        return self.size2 == 1

    def is_square(self) -> bool:
        return self.size1 == self.size2

    def structural_rank(self) -> int:
        """Size of a maximum matching between rows and columns."""
        if self.pattern.size == 0:
            return 0
        return int(structural_rank(sp.csr_matrix(self.pattern.astype(np.int8))))

    def is_singular(self) -> bool:
        """Whether no numeric values can make this (square) pattern invertible."""
        if not self.is_square():
            raise ValueError(f"is_singular requires a square pattern, got {self.shape}")
        return self.structural_rank() < self.size1

    @cached_property
    def _components(self) -> tuple[int, np.ndarray, np.ndarray]:
        # Connected components of the bipartite row/column graph.
        m, n = self.shape
        if m == 0 or n == 0:
            return m + n, np.arange(m), np.arange(m, m + n)
        p = sp.csr_matrix(self.pattern.astype(np.int8))
        graph = sp.bmat([[None, p], [p.T, None]], format="csr")
        ncomp, labels = connected_components(graph, directed=False)
        return ncomp, labels[:m], labels[m:]

    def spsolve(
        self,
        b: BitVector,
        transpose: bool = False,
        out: Optional[BitVector] = None,
    ) -> BitVector:
        """
        Structural solve of A x = b (or A^T x = b) on dependency bit vectors.

        A nonsingular matrix is block diagonal over the connected components
        of its row/column graph, so every unknown in a component may depend
        on every right-hand side entry of the same component.

        Args:
            b: Right-hand side bits, indexed by rows (columns if transposed)
            transpose: Solve with the transposed pattern
            out: Optional buffer receiving the result

        Returns:
            Solution bits, indexed by columns (rows if transposed)
        """
        ncomp, row_labels, col_labels = self._components
        src, dst = (col_labels, row_labels) if transpose else (row_labels, col_labels)
        comp = np.zeros(ncomp, dtype=np.uint64)
        np.bitwise_or.at(comp, src, np.asarray(b, dtype=np.uint64))
        if out is None:
            return comp[dst]
        out[:] = comp[dst]
        return out

    def __eq__(self, other) -> bool:
        if not isinstance(other, Sparsity):
            return NotImplemented
        return self.shape == other.shape and bool(np.array_equal(self.pattern, other.pattern))

    __hash__ = None

    def __repr__(self) -> str:
        return f"Sparsity({self.size1}x{self.size2}, nnz={self.nnz})"


def bits_mv(pattern: np.ndarray, bits: BitVector) -> BitVector:
    """OR-propagate bits through a pattern: y[r] = OR over c with P[r, c] of x[c]."""
    masked = np.where(pattern, np.asarray(bits, dtype=np.uint64)[None, :], np.uint64(0))
    return np.bitwise_or.reduce(masked, axis=1)


def bits_mv_t(pattern: np.ndarray, bits: BitVector) -> BitVector:
    """Transposed OR-propagation: x[c] = OR over r with P[r, c] of y[r]."""
    masked = np.where(pattern, np.asarray(bits, dtype=np.uint64)[:, None], np.uint64(0))
    return np.bitwise_or.reduce(masked, axis=0)
