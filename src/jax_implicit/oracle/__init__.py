"""Oracles: residual functions with derivatives and dependency propagation."""

from .protocol import OracleProtocol
from .function import Oracle
from .sparsity import Sparsity
from .dependency import jacobian_sparsity


__all__ = [
    "OracleProtocol",
    "Oracle",
    "Sparsity",
    "jacobian_sparsity",
]
