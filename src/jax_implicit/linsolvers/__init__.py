"""Linear solvers used in rootfinding and implicit differentiation."""

from ..plugins import PluginRegistry
from .protocol import LinearSolverProtocol
from .base import AbstractLinearSolver
from .direct import LU, QR
from .krylov import GMRES, BiCGStab

registry = PluginRegistry("linsolvers")
registry.register("lu", LU)
registry.register("qr", QR)
registry.register("gmres", GMRES)
registry.register("bicgstab", BiCGStab)


def has_linsol(name: str) -> bool:
    """Whether a linear solver plugin of that name exists."""
    return registry.has(name)


def load_linsol(name: str) -> None:
    """Load a linear solver plugin, raising UnknownPluginError if it is missing."""
    registry.load(name)


def doc_linsol(name: str) -> str:
    """Documentation of a linear solver plugin."""
    return registry.doc(name)


__all__ = [
    # Protocol
    "LinearSolverProtocol",
    "AbstractLinearSolver",

    # Direct solvers
    "LU",
    "QR",

    # Krylov methods
    "GMRES",
    "BiCGStab",

    # Plugins
    "registry",
    "has_linsol",
    "load_linsol",
    "doc_linsol",
]
