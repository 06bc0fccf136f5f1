"""Rootfinders turning a residual oracle into an implicit function."""

from typing import Any, Mapping, Optional

from ..oracle import OracleProtocol
from ..plugins import PluginRegistry
from .protocol import RootfinderProtocol
from .options import RootfinderOptions
from .base import Rootfinder, satisfies_constraints
from .newton import Newton, NewtonOptions
from .hybrid import Hybrid, HybridOptions

registry = PluginRegistry("rootfinders")
registry.register("newton", Newton)
registry.register("hybrid", Hybrid)


def rootfinder(
    solver: str,
    oracle: OracleProtocol,
    options: Optional[Mapping[str, Any]] = None,
) -> Rootfinder:
    """
    Create a rootfinder by plugin name.

    Args:
        solver: Plugin name, e.g. "newton"
        oracle: Residual function
        options: Rootfinder options (see `RootfinderOptions` and the
            plugin's own options class)

    Returns:
        Initialized rootfinder

    Raises:
        UnknownPluginError: If no rootfinder of that name exists
    """
    return registry.instantiate(solver, oracle, options)


def has_rootfinder(name: str) -> bool:
    """Whether a rootfinder plugin of that name exists."""
    return registry.has(name)


def load_rootfinder(name: str) -> None:
    """Load a rootfinder plugin, raising UnknownPluginError if it is missing."""
    registry.load(name)


def doc_rootfinder(name: str) -> str:
    """Documentation of a rootfinder plugin."""
    return registry.doc(name)


__all__ = [
    # Protocol
    "RootfinderProtocol",
    "Rootfinder",
    "RootfinderOptions",
    "satisfies_constraints",

    # Solvers
    "Newton",
    "NewtonOptions",
    "Hybrid",
    "HybridOptions",

    # Plugins
    "registry",
    "rootfinder",
    "has_rootfinder",
    "load_rootfinder",
    "doc_rootfinder",
]
