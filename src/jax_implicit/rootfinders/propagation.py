"""
Forward and reverse propagation through an implicit solve.

By the implicit function theorem, along r(z(p), p) = 0

    dz = -J^{-1} (dr/dp) dp,        J = dr/dz.

The sweeps below are written once against a `Ring` and instantiated twice:
over real numbers (directional derivatives, numeric linear solves) and over
bit vectors (dependency propagation, structural linear solves). The boolean
pass therefore follows exactly the same path as the numeric one.
"""

from typing import TYPE_CHECKING, Any, Optional, Protocol, Sequence

import jax.numpy as jnp
import numpy as np

from ..errors import SingularJacobianError

if TYPE_CHECKING:
    from .base import Rootfinder


class Ring(Protocol):
    """Arithmetic a propagation sweep runs over. None stands for a zero seed."""

    def forward(self, fseed: Sequence[Sequence[Any]]) -> list[list[Any]]:
        """Propagate per-direction input seeds through the oracle."""
        ...

    def reverse(self, aseed: Sequence[Sequence[Any]]) -> list[list[Any]]:
        """Propagate per-direction output seeds back through the oracle."""
        ...

    def solve(self, columns: Sequence[Any], transpose: bool) -> list[Any]:
        """Return -J^{-1} b (or -J^{-T} b) for every column b at once."""
        ...

    def add(self, a: Any, b: Any) -> Any: ...

    def zeros_like(self, a: Any) -> Any: ...


class NumericRing:
    """Real arithmetic: JAX arrays, batched numeric solves."""

    def __init__(self, rootfinder: "Rootfinder", f_arg: Sequence[jnp.ndarray]):
        self.oracle = rootfinder.oracle
        self.jac = rootfinder.jac
        self.linsol = rootfinder.linsol
        self.f_arg = list(f_arg)
        self.n = rootfinder.n
        self.shape_z = self.oracle.shape_in(rootfinder.iin)
        self.shape_r = self.oracle.shape_out(rootfinder.iout)
        self._factorized = False

    def forward(self, fseed):
        return self.oracle.forward(self.f_arg, fseed)

    def reverse(self, aseed):
        return self.oracle.reverse(self.f_arg, aseed)

    def _factorize(self):
        if self._factorized:
            return
        # Jacobian at the solution
        J = self.jac.evaluate(self.f_arg)[0]
        self.linsol.factorize(jnp.reshape(J, (self.n, self.n)))
        if self.linsol.is_singular():
            raise SingularJacobianError(
                f"Jacobian of {self.oracle.name} is singular at the solution"
            )
        self._factorized = True

    def solve(self, columns, transpose):
        self._factorize()
        rhs = jnp.stack(
            [jnp.zeros(self.n) if c is None else jnp.ravel(c) for c in columns], axis=1
        )
        x = self.linsol.solve(-rhs, transpose=transpose)
        shape = self.shape_r if transpose else self.shape_z
        return [x[:, d].reshape(shape) for d in range(len(columns))]

    def add(self, a, b):
        if a is None:
            return b
        if b is None:
            return a
        # column vectors may come as (n,) or (n, 1)
        return a + jnp.reshape(jnp.asarray(b), jnp.shape(a))

    def zeros_like(self, a):
        return None if a is None else jnp.zeros_like(a)


class BitRing:
    """
    Boolean arithmetic on dependency bit vectors (one uint64 word per element).

    Uses the rootfinder's work arena: tmp1 and tmp2 hold the right-hand side
    and solution of the structural solve, the rest stages the outputs of
    forward passes through the oracle.
    """

    def __init__(self, rootfinder: "Rootfinder"):
        self.oracle = rootfinder.oracle
        self.linsol = rootfinder.linsol
        n = rootfinder.n
        w = rootfinder._work.get_value()
        self.tmp1 = w[:n]
        self.tmp2 = w[n:2 * n]
        self.staging = self._staging(w[2 * n:])

    def _staging(self, w: np.ndarray) -> Optional[list[np.ndarray]]:
        sizes = [self.oracle.nnz_out(j) for j in range(self.oracle.n_out)]
        if sum(sizes) > w.size:
            return None
        views, offset = [], 0
        for size in sizes:
            views.append(w[offset:offset + size])
            offset += size
        return views

    def forward(self, fseed):
        out = self.staging if len(fseed) == 1 else None
        return [self.oracle.propagate_forward(seed, out=out) for seed in fseed]

    def reverse(self, aseed):
        return [self.oracle.propagate_reverse(seed) for seed in aseed]

    def solve(self, columns, transpose):
        solutions = []
        for col in columns:
            self.tmp1[:] = 0 if col is None else col
            self.tmp2[:] = 0
            self.linsol.structural_solve(self.tmp1, transpose=transpose, out=self.tmp2)
            solutions.append(self.tmp2 if len(columns) == 1 else self.tmp2.copy())
        return solutions

    def add(self, a, b):
        if a is None:
            return b
        if b is None:
            return a
        return np.bitwise_or(a, b)

    def zeros_like(self, a):
        return None if a is None else np.zeros_like(a)


def forward_sweep(
    ring: Ring, iin: int, iout: int, n_out: int, fseed: Sequence[Sequence[Any]]
) -> list[list[Any]]:
    """
    Forward sensitivities of a rootfinder for all seed directions.

    Args:
        ring: Arithmetic to run in
        iin: Index of the unknown among the oracle inputs
        iout: Index of the residual among the oracle outputs
        n_out: Number of oracle outputs
        fseed: Per direction, one seed per oracle input

    Returns:
        Per direction, one sensitivity per output. Slot `iout` holds the
        sensitivity of the solved unknown.
    """
    nfwd = len(fseed)
    if nfwd == 0:
        return []

    # The unknown is an output of the solve, so seeds on the guess are ignored
    f_fseed = [list(seed) for seed in fseed]
    for seed in f_fseed:
        seed[iin] = None
    fsens = ring.forward(f_fseed)

    # One solve for all directions
    z_sens = ring.solve([fsens[d][iout] for d in range(nfwd)], transpose=False)

    # Propagate to auxiliary outputs
    if n_out > 1:
        for d in range(nfwd):
            f_fseed[d][iin] = z_sens[d]
        fsens = ring.forward(f_fseed)

    for d in range(nfwd):
        fsens[d][iout] = z_sens[d]
    return fsens


def reverse_sweep(
    ring: Ring, iin: int, iout: int, n_out: int, aseed: Sequence[Sequence[Any]]
) -> list[list[Any]]:
    """
    Adjoint sensitivities of a rootfinder for all seed directions.

    Args:
        ring: Arithmetic to run in
        iin: Index of the unknown among the oracle inputs
        iout: Index of the residual among the oracle outputs
        n_out: Number of oracle outputs
        aseed: Per direction, one seed per output. Slot `iout` seeds the
            solved unknown.

    Returns:
        Per direction, one sensitivity per oracle input. Slot `iin` is zero.
    """
    nadj = len(aseed)
    if nadj == 0:
        return []

    # Seeds for the auxiliary outputs only
    f_aseed = [[None if i == iout else a for i, a in enumerate(seed)] for seed in aseed]

    asens_aux = None
    if n_out > 1:
        asens_aux = ring.reverse(f_aseed)
        rhs = [ring.add(asens_aux[d][iin], aseed[d][iout]) for d in range(nadj)]
    else:
        rhs = [aseed[d][iout] for d in range(nadj)]

    # One transposed solve for all directions
    rhs = ring.solve(rhs, transpose=True)

    # Auxiliary seeds were already accounted for above
    f_aseed = [[rhs[d] if i == iout else None for i in range(n_out)] for d in range(nadj)]
    asens = ring.reverse(f_aseed)

    for d in range(nadj):
        # No dependency on the guess
        asens[d][iin] = ring.zeros_like(asens[d][iin])
        if asens_aux is not None:
            for i in range(len(asens[d])):
                if i != iin:
                    asens[d][i] = ring.add(asens[d][i], asens_aux[d][i])
    return asens
