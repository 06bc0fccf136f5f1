"""Protocol for oracles, the residual functions consumed by rootfinders."""

from typing import Optional, Protocol, Sequence, runtime_checkable

from jax import Array

from ..custom_types import BitVector, Seeds, Shape
from .sparsity import Sparsity


@runtime_checkable
class OracleProtocol(Protocol):
    """
    Protocol for oracles.

    An oracle is a vector function with a fixed number of inputs and outputs,
    each of fixed shape. Besides numeric evaluation it provides a symbolic
    Jacobian, batched forward/reverse directional derivatives and boolean
    dependency propagation. Numeric sensitivities must vanish wherever the
    dependency propagation reports no dependency.
    """

    name: str

    @property
    def n_in(self) -> int: ...

    @property
    def n_out(self) -> int: ...

    def shape_in(self, i: int) -> Shape: ...

    def shape_out(self, i: int) -> Shape: ...

    def sparsity_in(self, i: int) -> Sparsity: ...

    def sparsity_out(self, i: int) -> Sparsity: ...

    def nnz_in(self, i: int) -> int: ...

    def nnz_out(self, i: int) -> int: ...

    def sz_w(self) -> int:
        """Number of bit-vector words used as staging by `propagate_forward`."""
        ...

    def evaluate(self, inputs: Sequence[Array]) -> list[Array]: ...

    def jacobian(self, iin: int, iout: int) -> "OracleProtocol":
        """Oracle with the same inputs returning d(output iout)/d(input iin)."""
        ...

    def forward(self, inputs: Sequence[Array], fseed: Seeds) -> list[list[Array]]:
        """Output sensitivities for every forward seed direction."""
        ...

    def reverse(self, inputs: Sequence[Array], aseed: Seeds) -> list[list[Array]]:
        """Input sensitivities for every adjoint seed direction."""
        ...

    def propagate_forward(
        self,
        arg: Sequence[Optional[BitVector]],
        out: Optional[Sequence[Optional[BitVector]]] = None,
    ) -> list[BitVector]:
        """Bits of every output that may depend on the seeded inputs."""
        ...

    def propagate_reverse(self, res: Sequence[Optional[BitVector]]) -> list[BitVector]:
        """Bits of every input that may influence the seeded outputs."""
        ...
