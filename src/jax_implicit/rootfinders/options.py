"""Options recognised by rootfinders."""

from dataclasses import dataclass, field, fields
from typing import Any, Mapping, Optional, Self

from ..errors import InvalidOptionError
from ..oracle import OracleProtocol

CONSTRAINT_VALUES = (-2, -1, 0, 1, 2)


@dataclass(frozen=True)
class RootfinderOptions:
    """
    Options available in all rootfinders.

    Attributes:
        linear_solver: Name of the linear solver plugin used for Newton
            steps and sensitivities
        linear_solver_options: Keyword arguments for the linear solver
        constraints: Sign constraint per unknown component. 0: free,
            1: z >= 0, -1: z <= 0, 2: z > 0, -2: z < 0. Empty: unconstrained.
        implicit_input: Index of the oracle input solved for
        implicit_output: Index of the oracle output driven to zero
        jacobian_function: Oracle computing the Jacobian of the residual
            with respect to the unknown. Generated when None.
    """

    linear_solver: str = "lu"
    linear_solver_options: Mapping[str, Any] = field(default_factory=dict)
    constraints: tuple[int, ...] = ()
    implicit_input: int = 0
    implicit_output: int = 0
    jacobian_function: Optional[OracleProtocol] = None

    def __post_init__(self):
        object.__setattr__(self, "constraints", tuple(int(c) for c in self.constraints))
        object.__setattr__(self, "linear_solver_options", dict(self.linear_solver_options))
        if not isinstance(self.linear_solver, str):
            raise InvalidOptionError(
                f"linear_solver must be a plugin name, got {self.linear_solver!r}"
            )
        bad = [c for c in self.constraints if c not in CONSTRAINT_VALUES]
        if bad:
            raise InvalidOptionError(
                f"Constraint values must be in {CONSTRAINT_VALUES}, got {bad}"
            )

    @classmethod
    def from_dict(cls, options: Optional[Mapping[str, Any] | Self] = None) -> Self:
        """
        Build options from a mapping, rejecting unknown keys.

        Raises:
            InvalidOptionError: If a key is not an option of this class
        """
        if options is None:
            return cls()
        if isinstance(options, cls):
            return options
        if isinstance(options, RootfinderOptions):
            options = {f.name: getattr(options, f.name) for f in fields(options)}
        names = [f.name for f in fields(cls)]
        unknown = sorted(set(options) - set(names))
        if unknown:
            raise InvalidOptionError(
                f"Unknown option(s) {unknown} for {cls.__name__}. "
                f"Available: {sorted(names)}"
            )
        return cls(**options)
