"""Abstract base class for rootfinders."""

import logging
from typing import Any, ClassVar, Literal, Mapping, Optional, Sequence

from flax import nnx
from jax import Array
import jax.numpy as jnp
import numpy as np

from ..custom_types import BitVector, Seeds
from ..errors import (
    ConstraintLengthError,
    ConvergenceError,
    DimensionMismatchError,
    InvalidOptionError,
    NotInitializedError,
    StructuralSingularityError,
)
from ..linsolvers import registry as linsol_registry
from ..oracle import OracleProtocol, Sparsity
from .options import RootfinderOptions
from .propagation import BitRing, NumericRing, forward_sweep, reverse_sweep

logger = logging.getLogger(__name__)

_BITS = 64


def satisfies_constraints(z: Array, constraints: Sequence[int]) -> bool:
    """Whether z meets the sign constraints (empty constraints always hold)."""
    if len(constraints) == 0:
        return True
    c = np.asarray(constraints)
    z = np.asarray(z).ravel()
    ok = (
        np.where(c == 1, z >= 0, True)
        & np.where(c == -1, z <= 0, True)
        & np.where(c == 2, z > 0, True)
        & np.where(c == -2, z < 0, True)
    )
    return bool(ok.all())


class Rootfinder(nnx.Module):
    """
    Base class for rootfinders.

    A rootfinder turns an oracle with residual output r(z, p) into the
    implicit function p -> z(p) defined by r(z(p), p) = 0. The oracle input
    at `implicit_input` is the initial guess for z; the output at
    `implicit_output` is replaced by the solution. All other outputs are
    evaluated at the solution.

    Subclasses implement `solve`, the numeric iteration. Derivatives and
    dependency propagation are provided here for every subclass.

    Attributes:
        oracle: Residual function
        options: Parsed options
        iin: Index of the unknown among the oracle inputs
        iout: Index of the residual among the oracle outputs
        n: Number of unknowns (and residual equations)
        jac: Oracle computing the Jacobian dr/dz
        sp_jac: Sparsity pattern of the Jacobian
        linsol: Linear solver, reset against sp_jac
        constraints: Sign constraints on the unknown
    """

    options_class: ClassVar[type[RootfinderOptions]] = RootfinderOptions

    def __init__(
        self,
        oracle: OracleProtocol,
        options: Optional[Mapping[str, Any] | RootfinderOptions] = None,
    ):
        self.oracle = oracle
        self._initialized = False
        self.init(options)

    def init(self, options: Optional[Mapping[str, Any] | RootfinderOptions] = None) -> None:
        """
        Validate the oracle, build the Jacobian and set up the linear solver.

        Raises:
            InvalidOptionError: Unknown option or index out of range
            DimensionMismatchError: Unknown and residual are not dense vectors
                of the same length, or the Jacobian has the wrong shape
            ConstraintLengthError: Constraint vector is neither empty nor of length n
            StructuralSingularityError: Jacobian is structurally rank-deficient
            UnknownPluginError: Linear solver is not registered
        """
        self._initialized = False
        opts = self.options_class.from_dict(options)
        oracle = self.oracle
        iin, iout = opts.implicit_input, opts.implicit_output

        # Get the number of equations and check consistency
        if oracle.n_in == 0 or not 0 <= iin < oracle.n_in:
            raise InvalidOptionError(
                f"Implicit input {iin} not in range [0, {oracle.n_in})"
            )
        if oracle.n_out == 0 or not 0 <= iout < oracle.n_out:
            raise InvalidOptionError(
                f"Implicit output {iout} not in range [0, {oracle.n_out})"
            )
        sp_r, sp_z = oracle.sparsity_out(iout), oracle.sparsity_in(iin)
        if not (sp_r.is_dense() and sp_r.is_column()):
            raise DimensionMismatchError(
                f"Residual must be a dense vector, got shape {oracle.shape_out(iout)}"
            )
        if not (sp_z.is_dense() and sp_z.is_column()):
            raise DimensionMismatchError(
                f"Unknown must be a dense vector, got shape {oracle.shape_in(iin)}"
            )
        n = oracle.nnz_out(iout)
        if n != oracle.nnz_in(iin):
            raise DimensionMismatchError(
                f"Dimension mismatch. Input size is {oracle.nnz_in(iin)}, "
                f"while output size is {n}"
            )

        # Generate Jacobian if not provided
        jac = opts.jacobian_function
        if jac is None:
            jac = oracle.jacobian(iin, iout)
        sp_jac = jac.sparsity_out(0)
        if sp_jac.shape != (n, n):
            raise DimensionMismatchError(
                f"Jacobian must be {n}x{n}, got {sp_jac.size1}x{sp_jac.size2}"
            )

        # Check for structural singularity in the Jacobian
        rank = sp_jac.structural_rank()
        if rank < n:
            raise StructuralSingularityError(rank, n)

        if len(opts.constraints) not in (0, n):
            raise ConstraintLengthError(
                "Constraint vector, if supplied, must be of length n, "
                f"but got {len(opts.constraints)} and n = {n}"
            )

        linsol = linsol_registry.instantiate(
            opts.linear_solver, **opts.linear_solver_options
        )
        linsol.reset(sp_jac)

        # Work arena for dependency propagation
        sz_w = max(oracle.sz_w(), jac.sz_w()) + 2 * n

        self.options = opts
        self.iin = iin
        self.iout = iout
        self.n = n
        self.jac = jac
        self.sp_jac = sp_jac
        self.linsol = linsol
        self.constraints = opts.constraints
        self._work = nnx.Variable(np.zeros(sz_w, dtype=np.uint64))
        self._initialized = True
        logger.debug(
            "Initialized %s for %s: n=%d, nnz(J)=%d, linear solver '%s'",
            type(self).__name__, oracle.name, n, sp_jac.nnz, opts.linear_solver,
        )

    def _check_initialized(self):
        if not self._initialized:
            raise NotInitializedError(
                f"{type(self).__name__} is not initialized; init() failed or was never run"
            )

    # Introspection

    @property
    def n_in(self) -> int:
        return self.oracle.n_in

    @property
    def n_out(self) -> int:
        return self.oracle.n_out

    def nnz_in(self, i: int) -> int:
        return self.oracle.nnz_in(i)

    def nnz_out(self, i: int) -> int:
        return self.oracle.nnz_out(i)

    # Evaluation

    def _prepare_inputs(self, inputs: Sequence[Optional[Array]]) -> list[Array]:
        if len(inputs) != self.n_in:
            raise DimensionMismatchError(
                f"{type(self).__name__} expects {self.n_in} inputs, got {len(inputs)}"
            )
        dtype = getattr(self.oracle, "dtype", None)
        args = []
        for i, x in enumerate(inputs):
            shape = self.oracle.shape_in(i)
            if x is None:
                args.append(jnp.zeros(shape, dtype))
                continue
            x = jnp.asarray(x, dtype)
            if x.size != self.nnz_in(i):
                raise DimensionMismatchError(
                    f"Input {i} has {x.size} elements, expected shape {shape}"
                )
            args.append(x.reshape(shape))
        return args

    def solve(self, inputs: list[Array]) -> Array:
        """
        Find z with r(z, p) = 0.

        Args:
            inputs: Oracle inputs; `inputs[iin]` is the initial guess

        Returns:
            The unknown z

        Raises:
            ConvergenceError: If the iteration fails
        """
        raise NotImplementedError

    def eval(self, inputs: Sequence[Optional[Array]]) -> list[Array]:
        """
        Solve the implicit equation.

        Args:
            inputs: One array per oracle input. The entry at `implicit_input`
                is the initial guess. None stands for zeros.

        Returns:
            Oracle outputs at the solution, with the solved unknown in the
            slot `implicit_output`.

        Raises:
            ConvergenceError: If no root satisfying the constraints was found
        """
        self._check_initialized()
        args = self._prepare_inputs(inputs)
        z = jnp.reshape(self.solve(args), self.oracle.shape_in(self.iin))
        if not satisfies_constraints(z, self.constraints):
            raise ConvergenceError(
                f"Solution of {type(self).__name__} violates the constraints {self.constraints}"
            )
        # The unknown takes the place, and so the shape, of the residual
        z_out = jnp.reshape(z, self.oracle.shape_out(self.iout))
        if self.n_out == 1:
            return [z_out]
        f_arg = list(args)
        f_arg[self.iin] = z
        outputs = self.oracle.evaluate(f_arg)
        outputs[self.iout] = z_out
        return outputs

    def __call__(self, *inputs) -> list[Array]:
        return self.eval(list(inputs))

    def _at_solution(self, inputs, outputs) -> list[Array]:
        args = self._prepare_inputs(inputs)
        if outputs is None:
            outputs = self.eval(args)
        f_arg = list(args)
        f_arg[self.iin] = jnp.reshape(outputs[self.iout], self.oracle.shape_in(self.iin))
        return f_arg

    # Differentiation

    def forward(
        self,
        inputs: Sequence[Optional[Array]],
        fseed: Seeds,
        outputs: Optional[Sequence[Array]] = None,
    ) -> list[list[Array]]:
        """
        Forward sensitivities for all seed directions with one linear solve.

        Args:
            inputs: Point to differentiate at
            fseed: Per direction, one seed per input. Seeds on the unknown
                are ignored.
            outputs: Result of `eval(inputs)`, recomputed when omitted

        Returns:
            Per direction, one sensitivity per output
        """
        self._check_initialized()
        if len(fseed) == 0:
            return []
        f_arg = self._at_solution(inputs, outputs)
        ring = NumericRing(self, f_arg)
        fsens = forward_sweep(ring, self.iin, self.iout, self.n_out, fseed)
        shape_out = self.oracle.shape_out(self.iout)
        for sens in fsens:
            sens[self.iout] = jnp.reshape(sens[self.iout], shape_out)
        return fsens

    def reverse(
        self,
        inputs: Sequence[Optional[Array]],
        aseed: Seeds,
        outputs: Optional[Sequence[Array]] = None,
    ) -> list[list[Array]]:
        """
        Adjoint sensitivities for all seed directions with one linear solve.

        Args:
            inputs: Point to differentiate at
            aseed: Per direction, one seed per output
            outputs: Result of `eval(inputs)`, recomputed when omitted

        Returns:
            Per direction, one sensitivity per input. The sensitivity with
            respect to the initial guess is zero.
        """
        self._check_initialized()
        if len(aseed) == 0:
            return []
        f_arg = self._at_solution(inputs, outputs)
        ring = NumericRing(self, f_arg)
        return reverse_sweep(ring, self.iin, self.iout, self.n_out, aseed)

    def jacobian(self, inputs: Sequence[Optional[Array]], iind: int, oind: int) -> Array:
        """
        Dense Jacobian of output `oind` with respect to input `iind`.

        All nnz_in(iind) unit directions are propagated in one forward call.

        Returns:
            Matrix of shape (nnz_out(oind), nnz_in(iind))
        """
        n_i = self.nnz_in(iind)
        eye = jnp.eye(n_i)
        shape = self.oracle.shape_in(iind)
        fseed = [
            [eye[k].reshape(shape) if i == iind else None for i in range(self.n_in)]
            for k in range(n_i)
        ]
        fsens = self.forward(inputs, fseed)
        if not fsens:
            return jnp.zeros((self.nnz_out(oind), 0))
        return jnp.stack([jnp.ravel(s[oind]) for s in fsens], axis=1)

    # Dependency propagation

    def sp_forward(
        self,
        arg: Sequence[Optional[BitVector]],
        res: Sequence[Optional[BitVector]],
    ) -> None:
        """
        Forward dependency propagation.

        Args:
            arg: Bit vector per input (None for no seeds). Bits on the
                unknown are ignored.
            res: Buffers receiving the output bits (None if not needed)
        """
        self._check_initialized()
        fsens = forward_sweep(BitRing(self), self.iin, self.iout, self.n_out, [list(arg)])[0]
        for buf, bits in zip(res, fsens):
            if buf is not None:
                buf[:] = bits

    def sp_reverse(
        self,
        arg: Sequence[Optional[BitVector]],
        res: Sequence[Optional[BitVector]],
    ) -> None:
        """
        Reverse dependency propagation.

        Input bits are OR-ed into `arg`; the bits of the unknown are left
        as they were. The consumed seeds in `res` are cleared.
        """
        self._check_initialized()
        asens = reverse_sweep(BitRing(self), self.iin, self.iout, self.n_out, [list(res)])[0]
        for i, (buf, bits) in enumerate(zip(arg, asens)):
            if buf is not None and i != self.iin:
                buf |= bits
        for buf in res:
            if buf is not None:
                buf[:] = 0

    def jac_sparsity(
        self, iind: int, oind: int, mode: Literal["forward", "reverse"] = "forward"
    ) -> Sparsity:
        """
        Structural Jacobian pattern of output `oind` with respect to input `iind`.

        Seeds up to 64 columns (forward) or rows (reverse) per sweep.
        """
        n_i, n_o = self.nnz_in(iind), self.nnz_out(oind)
        pattern = np.zeros((n_o, n_i), dtype=bool)

        if mode == "forward":
            for start in range(0, n_i, _BITS):
                width = min(_BITS, n_i - start)
                shifts = np.arange(width, dtype=np.uint64)
                arg = [np.zeros(self.nnz_in(i), dtype=np.uint64) for i in range(self.n_in)]
                arg[iind][start:start + width] = np.uint64(1) << shifts
                res = [np.zeros(self.nnz_out(j), dtype=np.uint64) for j in range(self.n_out)]
                self.sp_forward(arg, res)
                bits = res[oind][:, None] >> shifts[None, :]
                pattern[:, start:start + width] = (bits & np.uint64(1)).astype(bool)
        elif mode == "reverse":
            for start in range(0, n_o, _BITS):
                width = min(_BITS, n_o - start)
                shifts = np.arange(width, dtype=np.uint64)
                arg = [np.zeros(self.nnz_in(i), dtype=np.uint64) for i in range(self.n_in)]
                res = [np.zeros(self.nnz_out(j), dtype=np.uint64) for j in range(self.n_out)]
                res[oind][start:start + width] = np.uint64(1) << shifts
                self.sp_reverse(arg, res)
                bits = arg[iind][None, :] >> shifts[:, None]
                pattern[start:start + width, :] = (bits & np.uint64(1)).astype(bool)
        else:
            raise ValueError(f"mode must be 'forward' or 'reverse', got {mode!r}")
        return Sparsity(pattern)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.oracle!r})"
