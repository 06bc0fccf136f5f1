"""Newton-Raphson method for root finding."""

from dataclasses import dataclass
import logging
from typing import Callable, Optional

from jax import Array
import jax.numpy as jnp

from ..errors import ConvergenceError
from .base import Rootfinder, satisfies_constraints
from .options import RootfinderOptions

logger = logging.getLogger(__name__)

_MAX_HALVINGS = 50


@dataclass(frozen=True)
class NewtonOptions(RootfinderOptions):
    """
    Options of the Newton rootfinder.

    Attributes:
        abstol: Stop when the max-norm of the residual is below this
        abstol_step: Stop when the max-norm of the Newton step is below this.
            The residual must still meet `abstol`, else the solve fails.
        max_iter: Maximum number of Newton iterations
        print_iteration: Log every iteration at INFO level
        iteration_callback: Called as `callback(k, z, residual_norm)` after
            every residual evaluation. Returning True interrupts the solve.
    """

    abstol: float = 1e-12
    abstol_step: float = 1e-12
    max_iter: int = 1000
    print_iteration: bool = False
    iteration_callback: Optional[Callable[[int, Array, float], bool]] = None


class Newton(Rootfinder):
    """
    Newton-Raphson root-finding algorithm.

    Iterative update: $z \\leftarrow z - \\alpha J^{-1}(z) r(z)$, where the
    step length $\\alpha$ starts at one and is halved until the sign
    constraints on z hold.

    Implements: RootfinderProtocol

    Example:
        ```python
        from jax_implicit import Oracle, rootfinder

        oracle = Oracle(lambda z, p: z**2 - p, in_shapes=[1, 1])
        solver = rootfinder("newton", oracle, {"abstol": 1e-10})
        z, = solver.eval([1.0, 4.0])  # z = 2
        ```
    """

    options_class = NewtonOptions

    def _residual(self, args: list[Array], z: Array) -> Array:
        args[self.iin] = z
        return jnp.ravel(self.oracle.evaluate(args)[self.iout])

    def _step(self, args: list[Array], z: Array, r: Array, k: int) -> Array:
        args[self.iin] = z
        J = jnp.reshape(self.jac.evaluate(args)[0], (self.n, self.n))
        self.linsol.factorize(J)
        if self.linsol.is_singular():
            raise ConvergenceError(
                f"Newton: Jacobian of {self.oracle.name} is singular at iteration {k}",
                iterations=k,
            )
        return -self.linsol.solve(r[:, None])[:, 0]

    def _line_search(self, z: Array, dz: Array, k: int) -> Array:
        """Halve the step until the constraints hold."""
        z_new = z + dz
        for _ in range(_MAX_HALVINGS):
            if satisfies_constraints(z_new, self.constraints):
                return z_new
            dz = 0.5 * dz
            z_new = z + dz
        raise ConvergenceError(
            f"Newton: no step satisfying the constraints found at iteration {k}",
            iterations=k,
        )

    def solve(self, inputs: list[Array]) -> Array:
        """
        Find the root of the residual using Newton-Raphson method.

        Args:
            inputs: Oracle inputs, with the initial guess at `implicit_input`

        Returns:
            Solution z (flattened)

        Raises:
            ConvergenceError: On a singular Jacobian, when no feasible step
                exists, when interrupted by the callback, or when `max_iter`
                is exceeded
        """
        opts = self.options
        args = list(inputs)
        shape = self.oracle.shape_in(self.iin)
        z = jnp.ravel(args[self.iin])
        if not satisfies_constraints(z, self.constraints):
            logger.warning(
                "Newton: initial guess for %s violates the constraints %s",
                self.oracle.name, self.constraints,
            )

        norm = float("inf")
        for k in range(opts.max_iter + 1):
            r = self._residual(args, z.reshape(shape))
            norm = float(jnp.max(jnp.abs(r))) if r.size else 0.0

            if opts.print_iteration:
                logger.info("Newton iter %4d: |r|_inf = %.6e", k, norm)
            if opts.iteration_callback is not None and opts.iteration_callback(k, z, norm):
                raise ConvergenceError(
                    f"Newton: interrupted by iteration callback at iteration {k}",
                    iterations=k,
                    residual_norm=norm,
                )

            if norm <= opts.abstol:
                logger.debug("Newton converged in %d iterations (|r| = %.2e)", k, norm)
                return z
            if k == opts.max_iter:
                break

            dz = self._step(args, z.reshape(shape), r, k)
            if not bool(jnp.all(jnp.isfinite(dz))):
                raise ConvergenceError(
                    f"Newton: non-finite step at iteration {k}",
                    iterations=k,
                    residual_norm=norm,
                )
            z_new = self._line_search(z, dz, k)
            step = float(jnp.max(jnp.abs(z_new - z))) if z.size else 0.0
            z = z_new
            if step <= opts.abstol_step:
                # A vanishing step is only a root if the residual vanishes too
                r = self._residual(args, z.reshape(shape))
                norm = float(jnp.max(jnp.abs(r))) if r.size else 0.0
                if norm <= opts.abstol:
                    logger.debug("Newton converged in %d iterations (|dz| = %.2e)", k + 1, step)
                    return z
                raise ConvergenceError(
                    f"Newton: step below abstol_step at iteration {k + 1} "
                    f"but residual norm is {norm:.2e}.",
                    iterations=k + 1,
                    residual_norm=norm,
                )

        raise ConvergenceError(
            f"Newton: did not converge within {opts.max_iter} iterations. "
            f"Final residual norm: {norm:.2e}.",
            iterations=opts.max_iter,
            residual_norm=norm,
        )
