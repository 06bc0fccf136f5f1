"""Powell hybrid and Levenberg-Marquardt rootfinding through SciPy."""

from dataclasses import dataclass
import logging

from jax import Array
import jax.numpy as jnp
import numpy as np
from scipy import optimize

from ..errors import ConvergenceError, InvalidOptionError
from .base import Rootfinder
from .options import RootfinderOptions

logger = logging.getLogger(__name__)

# Name of the iteration budget option of each scipy method
_BUDGET = {"hybr": "maxfev", "lm": "maxiter"}


@dataclass(frozen=True)
class HybridOptions(RootfinderOptions):
    """
    Options of the hybrid rootfinder.

    Attributes:
        method: `scipy.optimize.root` method, "hybr" or "lm"
        abstol: Required max-norm of the residual at the solution
        xtol: Relative tolerance between iterates passed to SciPy
        max_iter: Iteration (or function evaluation) budget
    """

    method: str = "hybr"
    abstol: float = 1e-10
    xtol: float = 1e-12
    max_iter: int = 1000

    def __post_init__(self):
        super().__post_init__()
        if self.method not in _BUDGET:
            raise InvalidOptionError(
                f"method must be one of {sorted(_BUDGET)}, got {self.method!r}"
            )


class Hybrid(Rootfinder):
    """
    Rootfinder delegating the iteration to `scipy.optimize.root`.

    Residual and Jacobian are evaluated through the oracle and its Jacobian
    oracle, so derivatives are exact. Sign constraints are not enforced
    during the iteration, only checked on the result.

    Implements: RootfinderProtocol
    """

    options_class = HybridOptions

    def solve(self, inputs: list[Array]) -> Array:
        opts = self.options
        args = list(inputs)
        shape = self.oracle.shape_in(self.iin)
        dtype = args[self.iin].dtype

        def fun(x):
            args[self.iin] = jnp.asarray(x, dtype).reshape(shape)
            return np.asarray(self.oracle.evaluate(args)[self.iout], dtype=np.float64).ravel()

        def jac(x):
            args[self.iin] = jnp.asarray(x, dtype).reshape(shape)
            J = self.jac.evaluate(args)[0]
            return np.asarray(J, dtype=np.float64).reshape(self.n, self.n)

        x0 = np.asarray(args[self.iin], dtype=np.float64).ravel()
        sol = optimize.root(
            fun,
            x0,
            jac=jac,
            method=opts.method,
            options={"xtol": opts.xtol, _BUDGET[opts.method]: opts.max_iter},
        )
        norm = float(np.max(np.abs(sol.fun))) if sol.fun.size else 0.0
        logger.debug(
            "Hybrid (%s) finished after %s evaluations: %s (|r| = %.2e)",
            opts.method, sol.get("nfev"), sol.message, norm,
        )
        if norm > opts.abstol:
            raise ConvergenceError(
                f"Hybrid ({opts.method}) failed: {sol.message} "
                f"Final residual norm: {norm:.2e}.",
                iterations=sol.get("nfev"),
                residual_norm=norm,
            )
        return jnp.asarray(sol.x, dtype)
