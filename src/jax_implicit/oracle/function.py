"""Oracle adapter wrapping a JAX-traceable residual function."""

from functools import cached_property
import math
from typing import Optional, Sequence

import jax
from jax import Array
import jax.numpy as jnp
import numpy as np

from ..custom_types import BitVector, ResidualFn, Seeds, Shape
from ..errors import DimensionMismatchError
from .dependency import jacobian_sparsity
from .sparsity import Sparsity, as_matrix_shape, bits_mv, bits_mv_t


def _as_shape(shape) -> Shape:
    if isinstance(shape, int):
        return (shape,)
    return tuple(int(s) for s in shape)


class Oracle:
    """
    Vector function with a fixed number of inputs and outputs.

    Wraps any JAX-traceable callable `fn(*inputs)` returning either a single
    array or a tuple of arrays, and exposes it uniformly to rootfinders.

    Implements: OracleProtocol

    Attributes:
        name: Name used in error messages and derived oracles
        fn: Wrapped function
        dtype: Floating point type of the inputs

    Example:
        ```python
        import jax.numpy as jnp
        from jax_implicit import Oracle

        # residual z**2 - p and an auxiliary output z * p
        oracle = Oracle(lambda z, p: (z**2 - p, z * p), in_shapes=[(1,), (1,)])
        r, aux = oracle.evaluate([jnp.array([2.0]), jnp.array([4.0])])
        ```
    """

    def __init__(
        self,
        fn: ResidualFn,
        in_shapes: Sequence[Shape | int],
        name: str = "oracle",
        dtype=None,
        sparsity_out: Optional[Sequence[Sparsity]] = None,
    ):
        self.name = name
        self.fn = fn
        if dtype is None:
            dtype = jax.dtypes.canonicalize_dtype(np.float64)
        self.dtype = jnp.dtype(dtype)
        self._in_shapes = tuple(_as_shape(s) for s in in_shapes)
        self._examples = tuple(jnp.zeros(s, self.dtype) for s in self._in_shapes)

        out = jax.eval_shape(self._call, *self._examples)
        self._out_shapes = tuple(tuple(o.shape) for o in out)

        if sparsity_out is not None:
            sparsity_out = tuple(sparsity_out)
            if len(sparsity_out) != self.n_out:
                raise ValueError(
                    f"{name}: got {len(sparsity_out)} output sparsities "
                    f"for {self.n_out} outputs"
                )
            for j, sp in enumerate(sparsity_out):
                if sp.shape != as_matrix_shape(self._out_shapes[j]):
                    raise ValueError(
                        f"{name}: sparsity {sp.shape} does not match the shape "
                        f"{self._out_shapes[j]} of output {j}"
                    )
        self._sparsity_out = sparsity_out

        self._eval = jax.jit(self._call)
        self._jvp = jax.jit(self._jvp_batched)
        self._vjp = jax.jit(self._vjp_batched)

    def _call(self, *args) -> tuple[Array, ...]:
        out = self.fn(*args)
        if isinstance(out, (tuple, list)):
            return tuple(jnp.asarray(o) for o in out)
        return (jnp.asarray(out),)

    def _jvp_batched(self, primals, tangents):
        def push(t):
            return jax.jvp(self._call, primals, t)[1]

        return jax.vmap(push)(tangents)

    def _vjp_batched(self, primals, cotangents):
        _, pull = jax.vjp(self._call, *primals)
        return jax.vmap(pull)(cotangents)

    # Introspection

    @property
    def n_in(self) -> int:
        return len(self._in_shapes)

    @property
    def n_out(self) -> int:
        return len(self._out_shapes)

    def shape_in(self, i: int) -> Shape:
        return self._in_shapes[i]

    def shape_out(self, i: int) -> Shape:
        return self._out_shapes[i]

    def sparsity_in(self, i: int) -> Sparsity:
        return Sparsity.for_shape(self._in_shapes[i])

    def sparsity_out(self, i: int) -> Sparsity:
        if self._sparsity_out is not None:
            return self._sparsity_out[i]
        return Sparsity.for_shape(self._out_shapes[i])

    def nnz_in(self, i: int) -> int:
        """Number of stored elements of input i (arrays are stored densely)."""
        return math.prod(self._in_shapes[i])

    def nnz_out(self, i: int) -> int:
        """Number of stored elements of output i (arrays are stored densely)."""
        return math.prod(self._out_shapes[i])

    def sz_w(self) -> int:
        return sum(self.nnz_out(j) for j in range(self.n_out))

    # Numeric evaluation

    def _prepare(self, inputs: Sequence[Optional[Array]]) -> tuple[Array, ...]:
        if len(inputs) != self.n_in:
            raise DimensionMismatchError(
                f"{self.name} expects {self.n_in} inputs, got {len(inputs)}"
            )
        return tuple(self._cast(x, self._in_shapes[i], f"input {i}") for i, x in enumerate(inputs))

    def _cast(self, x, shape: Shape, what: str) -> Array:
        if x is None:
            return jnp.zeros(shape, self.dtype)
        x = jnp.asarray(x, self.dtype)
        if x.size != math.prod(shape):
            raise DimensionMismatchError(
                f"{self.name}: {what} has {x.size} elements, expected shape {shape}"
            )
        return x.reshape(shape)

    def evaluate(self, inputs: Sequence[Optional[Array]]) -> list[Array]:
        """
        Evaluate the function.

        Args:
            inputs: One array per input. None stands for zeros.

        Returns:
            List of outputs
        """
        return list(self._eval(*self._prepare(inputs)))

    def jacobian(self, iin: int, iout: int) -> "Oracle":
        """
        Oracle computing the Jacobian of output `iout` with respect to input `iin`.

        The derived oracle takes the same inputs and returns a single
        (nnz_out(iout), nnz_in(iin)) matrix. Its output sparsity is the
        structural dependency pattern of this oracle.
        """
        n_o, n_i = self.nnz_out(iout), self.nnz_in(iin)
        call = self._call

        def jac_fn(*args):
            def f(x):
                a = list(args)
                a[iin] = x
                return call(*a)[iout]

            return jax.jacfwd(f)(args[iin]).reshape(n_o, n_i)

        return Oracle(
            jac_fn,
            self._in_shapes,
            name=f"jac_{self.name}",
            dtype=self.dtype,
            sparsity_out=[Sparsity(self.dependency(iout, iin))],
        )

    def _stack(self, seeds: Seeds, shapes: Sequence[Shape], what: str) -> tuple[Array, ...]:
        for seed in seeds:
            if len(seed) != len(shapes):
                raise DimensionMismatchError(
                    f"{self.name}: {what} seed has {len(seed)} entries, expected {len(shapes)}"
                )
        return tuple(
            jnp.stack([self._cast(seed[i], shape, f"{what} seed {i}") for seed in seeds])
            for i, shape in enumerate(shapes)
        )

    def forward(self, inputs: Sequence[Optional[Array]], fseed: Seeds) -> list[list[Array]]:
        """
        Forward directional derivatives for all seed directions at once.

        Args:
            inputs: Point of linearisation
            fseed: One seed per direction, each a list with one entry per input

        Returns:
            One list of output sensitivities per direction
        """
        nfwd = len(fseed)
        if nfwd == 0:
            return []
        tangents = self._stack(fseed, self._in_shapes, "forward")
        sens = self._jvp(self._prepare(inputs), tangents)
        return [[s[d] for s in sens] for d in range(nfwd)]

    def reverse(self, inputs: Sequence[Optional[Array]], aseed: Seeds) -> list[list[Array]]:
        """
        Adjoint directional derivatives for all seed directions at once.

        Args:
            inputs: Point of linearisation
            aseed: One seed per direction, each a list with one entry per output

        Returns:
            One list of input sensitivities per direction
        """
        nadj = len(aseed)
        if nadj == 0:
            return []
        cotangents = self._stack(aseed, self._out_shapes, "adjoint")
        sens = self._vjp(self._prepare(inputs), cotangents)
        return [[s[d] for s in sens] for d in range(nadj)]

    # Dependency propagation

    @cached_property
    def _dependencies(self) -> list[list[np.ndarray]]:
        return jacobian_sparsity(self._call, self._examples)

    def dependency(self, iout: int, iin: int) -> np.ndarray:
        """Boolean (nnz_out(iout), nnz_in(iin)) structural dependency pattern."""
        return self._dependencies[iout][iin]

    def propagate_forward(
        self,
        arg: Sequence[Optional[BitVector]],
        out: Optional[Sequence[Optional[BitVector]]] = None,
    ) -> list[BitVector]:
        """
        Forward dependency propagation.

        Args:
            arg: Bit vector per input (None for no seeds)
            out: Optional buffers receiving the output bits

        Returns:
            Bit vector per output
        """
        if len(arg) != self.n_in:
            raise DimensionMismatchError(
                f"{self.name} expects {self.n_in} input bit vectors, got {len(arg)}"
            )
        res = []
        for j in range(self.n_out):
            if out is not None and out[j] is not None:
                acc = out[j]
                acc[:] = 0
            else:
                acc = np.zeros(self.nnz_out(j), dtype=np.uint64)
            for i, bits in enumerate(arg):
                if bits is not None:
                    acc |= bits_mv(self.dependency(j, i), bits)
            res.append(acc)
        return res

    def propagate_reverse(self, res: Sequence[Optional[BitVector]]) -> list[BitVector]:
        """
        Reverse dependency propagation.

        Args:
            res: Bit vector per output (None for no seeds)

        Returns:
            Bit vector per input
        """
        if len(res) != self.n_out:
            raise DimensionMismatchError(
                f"{self.name} expects {self.n_out} output bit vectors, got {len(res)}"
            )
        arg = [np.zeros(self.nnz_in(i), dtype=np.uint64) for i in range(self.n_in)]
        for j, bits in enumerate(res):
            if bits is None:
                continue
            for i in range(self.n_in):
                arg[i] |= bits_mv_t(self.dependency(j, i), bits)
        return arg

    def __repr__(self) -> str:
        return f"Oracle({self.name!r}, in={list(self._in_shapes)}, out={list(self._out_shapes)})"
