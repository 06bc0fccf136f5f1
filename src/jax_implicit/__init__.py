"""
JAX Implicit Functions

Solve implicit equations r(z, p) = 0 for z with JAX, and differentiate the
solution with respect to p via the implicit function theorem.

Main components:
- oracle: Residual functions with derivatives and dependency propagation
- linsolvers: Linear solvers for Newton steps and sensitivities
- rootfinders: Numerical rootfinders and their forward/reverse derivatives
"""

from .oracle import Oracle, OracleProtocol, Sparsity, jacobian_sparsity

# Rootfinding
from .rootfinders import (
    Rootfinder,
    RootfinderOptions,
    Newton,
    Hybrid,
    rootfinder,
    has_rootfinder,
    load_rootfinder,
    doc_rootfinder,
)

# Linear solvers
from .linsolvers import LU, QR, GMRES, BiCGStab, has_linsol, load_linsol, doc_linsol

from .errors import (
    RootfinderError,
    UnknownPluginError,
    InvalidOptionError,
    DimensionMismatchError,
    ConstraintLengthError,
    StructuralSingularityError,
    ConvergenceError,
    SingularJacobianError,
    NotInitializedError,
)

__all__ = [
    # Oracles
    "Oracle",
    "OracleProtocol",
    "Sparsity",
    "jacobian_sparsity",

    # Rootfinders
    "Rootfinder",
    "RootfinderOptions",
    "Newton",
    "Hybrid",
    "rootfinder",
    "has_rootfinder",
    "load_rootfinder",
    "doc_rootfinder",

    # Linear solvers
    "LU",
    "QR",
    "GMRES",
    "BiCGStab",
    "has_linsol",
    "load_linsol",
    "doc_linsol",

    # Errors
    "RootfinderError",
    "UnknownPluginError",
    "InvalidOptionError",
    "DimensionMismatchError",
    "ConstraintLengthError",
    "StructuralSingularityError",
    "ConvergenceError",
    "SingularJacobianError",
    "NotInitializedError",
]
