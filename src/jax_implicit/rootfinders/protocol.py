"""Protocol for rootfinders."""

from typing import Literal, Optional, Protocol, Sequence, runtime_checkable

from jax import Array

from ..custom_types import BitVector, Seeds
from ..oracle import Sparsity


@runtime_checkable
class RootfinderProtocol(Protocol):
    """
    Protocol for rootfinders.

    A rootfinder is itself a function: its inputs are those of the residual
    oracle and its outputs are those of the oracle, except that the residual
    slot carries the solution z with r(z, p) = 0. Like an oracle it can be
    differentiated in forward and reverse mode and supports dependency
    propagation.
    """

    n: int
    iin: int
    iout: int

    def eval(self, inputs: Sequence[Optional[Array]]) -> list[Array]:
        """
        Solve r(z, p) = 0.

        Args:
            inputs: Oracle inputs; the one at `implicit_input` is the initial guess

        Returns:
            Oracle outputs at the solution, with z at `implicit_output`
        """
        ...

    def forward(
        self,
        inputs: Sequence[Optional[Array]],
        fseed: Seeds,
        outputs: Optional[Sequence[Array]] = None,
    ) -> list[list[Array]]:
        """Output sensitivities for every forward seed direction."""
        ...

    def reverse(
        self,
        inputs: Sequence[Optional[Array]],
        aseed: Seeds,
        outputs: Optional[Sequence[Array]] = None,
    ) -> list[list[Array]]:
        """Input sensitivities for every adjoint seed direction."""
        ...

    def sp_forward(
        self,
        arg: Sequence[Optional[BitVector]],
        res: Sequence[Optional[BitVector]],
    ) -> None:
        """Write into `res` the bits of every output depending on the seeded inputs."""
        ...

    def sp_reverse(
        self,
        arg: Sequence[Optional[BitVector]],
        res: Sequence[Optional[BitVector]],
    ) -> None:
        """OR into `arg` the bits of every input influencing the seeded outputs."""
        ...

    def jac_sparsity(
        self, iind: int, oind: int, mode: Literal["forward", "reverse"] = "forward"
    ) -> Sparsity:
        """Structural Jacobian pattern of one output with respect to one input."""
        ...
