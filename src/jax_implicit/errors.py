"""Exceptions raised by rootfinders, linear solvers and the plugin registries."""

from typing import Optional, Sequence


class RootfinderError(Exception):
    """Base class for all errors raised by jax_implicit."""


class UnknownPluginError(RootfinderError, LookupError):
    """A plugin name was requested that is neither registered nor discoverable."""

    def __init__(self, kind: str, name: str, available: Sequence[str] = ()):
        self.kind = kind
        self.name = name
        self.available = tuple(available)
        msg = f"Unknown {kind} plugin '{name}'."
        if self.available:
            msg += f" Available: {', '.join(self.available)}."
        super().__init__(msg)


class InvalidOptionError(RootfinderError, ValueError):
    """An option key is not recognised or its value is out of range."""


class DimensionMismatchError(RootfinderError, ValueError):
    """Shapes of the unknown, the residual or the Jacobian do not agree."""


class ConstraintLengthError(DimensionMismatchError):
    """The constraint vector is neither empty nor of length n."""


class StructuralSingularityError(RootfinderError, ValueError):
    """The Jacobian sparsity pattern is structurally rank-deficient."""

    def __init__(self, rank: int, n: int):
        self.rank = rank
        self.n = n
        super().__init__(
            "Singularity - the Jacobian is structurally rank-deficient. "
            f"sprank(J)={rank} (instead of {n})"
        )


class ConvergenceError(RootfinderError, RuntimeError):
    """The numeric solve failed to drive the residual to tolerance."""

    def __init__(
        self,
        message: str,
        iterations: Optional[int] = None,
        residual_norm: Optional[float] = None,
    ):
        self.iterations = iterations
        self.residual_norm = residual_norm
        super().__init__(message)


class SingularJacobianError(RootfinderError, ArithmeticError):
    """The Jacobian is numerically singular at the requested point."""


class NotInitializedError(RootfinderError, RuntimeError):
    """The rootfinder was used after a failed or missing initialisation."""
