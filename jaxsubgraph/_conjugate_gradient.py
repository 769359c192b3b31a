from __future__ import annotations

import enum
import math
from dataclasses import dataclass
from typing import Any, Callable, Generic, Literal, Protocol, TypeVar

import jax
from jax import numpy as jnp
from loguru import logger

from ._exceptions import InvalidConfigError, NonDescentStepError

Y = TypeVar("Y")
E = TypeVar("E")


class LinearLeastSquaresSystem(Protocol[Y, E]):
    """Everything conjugate gradient needs to know about a linear least-squares
    problem `min_y ½‖A·y - b‖²`.

    `Y` and `E` can be any JAX pytrees: the solver only combines them with
    `jax.tree.map`.
    """

    def error(self, y: Y) -> jax.Array:
        """Objective value at `y`."""
        ...

    def gradient(self, y: Y) -> Y:
        """Gradient of `error()` at `y`, `A^T·(A·y - b)`."""
        ...

    def apply_forward(self, y: Y) -> E:
        """Compute `A·y`."""
        ...

    def apply_adjoint(self, e: E) -> Y:
        """Compute `A^T·e`."""
        ...


class ConjugateGradientStatus(enum.Enum):
    CONVERGED = enum.auto()
    MAX_ITERATIONS_REACHED = enum.auto()
    NON_DESCENT = enum.auto()
    """A step failed to decrease the error. The best iterate so far is returned."""


@dataclass(frozen=True)
class ConjugateGradientConfig:
    """Conjugate gradient parameters.

    Vanilla dataclass: values are validated on construction and never traced."""

    relative_tolerance: float = 1e-4
    """We terminate if `‖gradient‖ <= relative_tolerance * ‖initial gradient‖`."""
    absolute_tolerance: float = 1e-5
    """We terminate if `‖gradient‖ < absolute_tolerance`. Also checked before the
    first step."""
    max_iterations: int = 100
    """Maximum number of conjugate gradient steps."""
    direction_update: Literal[
        "polak_ribiere", "fletcher_reeves", "steepest_descent"
    ] = "polak_ribiere"
    """How the next search direction is formed. Polak-Ribière is clipped at zero,
    which restarts along the negative gradient when conjugacy is lost."""
    reset_interval: int | None = None
    """Recompute the gradient from scratch, instead of updating it, every
    `reset_interval` steps. Defaults to `round(sqrt(dim))`."""
    non_descent_tolerance: float = 1e-10
    """Relative error increase tolerated before a step counts as non-descent."""
    raise_on_non_descent: bool = False
    """Raise `NonDescentStepError` instead of returning a `NON_DESCENT` status."""

    def __post_init__(self) -> None:
        if not self.relative_tolerance >= 0.0:
            raise InvalidConfigError(
                f"relative_tolerance must be non-negative, got {self.relative_tolerance}."
            )
        if not self.absolute_tolerance >= 0.0:
            raise InvalidConfigError(
                f"absolute_tolerance must be non-negative, got {self.absolute_tolerance}."
            )
        if self.max_iterations < 1:
            raise InvalidConfigError(
                f"max_iterations must be at least 1, got {self.max_iterations}."
            )
        if self.direction_update not in (
            "polak_ribiere",
            "fletcher_reeves",
            "steepest_descent",
        ):
            raise InvalidConfigError(
                f"Unknown direction_update: {self.direction_update!r}."
            )
        if self.reset_interval is not None and self.reset_interval < 1:
            raise InvalidConfigError(
                f"reset_interval must be at least 1, got {self.reset_interval}."
            )
        if not self.non_descent_tolerance >= 0.0:
            raise InvalidConfigError(
                "non_descent_tolerance must be non-negative, got"
                f" {self.non_descent_tolerance}."
            )


@dataclass(frozen=True)
class ConjugateGradientResult(Generic[Y]):
    y: Y
    """Final (or best, for `NON_DESCENT`) iterate."""
    status: ConjugateGradientStatus
    iterations: int
    """Number of accepted steps."""
    error: float
    """`error(y)` at the returned iterate."""
    gradient_norm: float
    """Gradient norm at the last accepted iterate."""
    initial_gradient_norm: float
    error_history: tuple[float, ...]
    """`error(y)` after each accepted step, starting with the initial iterate."""

    @property
    def converged(self) -> bool:
        return self.status is ConjugateGradientStatus.CONVERGED


@jax.jit
def _tree_dot(a: Any, b: Any) -> jax.Array:
    leaves = [
        jnp.vdot(x, y) for x, y in zip(jax.tree.leaves(a), jax.tree.leaves(b))
    ]
    return sum(leaves, start=jnp.zeros(()))


@jax.jit
def _tree_axpy(alpha: jax.Array, x: Any, y: Any) -> Any:
    """`alpha * x + y`."""
    return jax.tree.map(lambda x_, y_: alpha * x_ + y_, x, y)


def _tree_dim(tree: Any) -> int:
    return sum(leaf.size for leaf in jax.tree.leaves(tree))


def conjugate_gradient(
    system: LinearLeastSquaresSystem[Y, E],
    y0: Y,
    config: ConjugateGradientConfig = ConjugateGradientConfig(),
    should_stop: Callable[[int], bool] | None = None,
    verbose: bool = False,
) -> ConjugateGradientResult[Y]:
    """Minimize `system.error(y)` with conjugate gradient, starting from `y0`.

    The step length comes from an exact line search on the quadratic,
    `α = -⟨d, g⟩ / ‖A·d‖²`, and the gradient is updated with
    `g ← g + α·Aᵀ·(A·d)` instead of being recomputed.

    Args:
        system: Objective, gradient, and forward/adjoint operator pair.
        y0: Starting iterate.
        config: Tolerances, iteration cap, and direction update rule.
        should_stop: Optional cooperative cancellation hook. Called with the
            iteration count between steps; returning `True` terminates with
            `MAX_ITERATIONS_REACHED`.
        verbose: Log one line per step.

    Raises:
        NonDescentStepError: if a step fails to decrease the error and
            `config.raise_on_non_descent` is set.
    """
    reset_interval = (
        config.reset_interval
        if config.reset_interval is not None
        else max(1, int(math.sqrt(_tree_dim(y0)) + 0.5))
    )

    # Start with g0 = A'(A y0 - b), d0 = -g0: first step is along the negative
    # gradient.
    y = y0
    g = system.gradient(y)
    d = jax.tree.map(jnp.negative, g)
    dotg = float(_tree_dot(g, g))
    gradient_norm0 = math.sqrt(dotg)
    error = float(system.error(y))
    error_history = [error]

    def result(
        status: ConjugateGradientStatus, iterations: int
    ) -> ConjugateGradientResult[Y]:
        if verbose:
            logger.info(
                "CG terminated @ iteration #{}: status={} error={:.6e} |g|={:.3e}",
                iterations,
                status.name,
                error,
                math.sqrt(dotg),
            )
        return ConjugateGradientResult(
            y=y,
            status=status,
            iterations=iterations,
            error=error,
            gradient_norm=math.sqrt(dotg),
            initial_gradient_norm=gradient_norm0,
            error_history=tuple(error_history),
        )

    # A zero gradient has no search direction, whatever the tolerances.
    if dotg == 0.0 or gradient_norm0 < config.absolute_tolerance:
        return result(ConjugateGradientStatus.CONVERGED, 0)

    threshold = config.relative_tolerance**2 * dotg
    for k in range(1, config.max_iterations + 1):
        # Exact line search along d.
        Ad = system.apply_forward(d)
        dAd = float(_tree_dot(Ad, Ad))
        alpha = -float(_tree_dot(d, g)) / dAd if dAd > 0.0 else math.nan

        y_new = _tree_axpy(alpha, d, y)
        error_new = float(system.error(y_new))
        if not (
            error_new - error <= config.non_descent_tolerance * (1.0 + abs(error))
        ):
            message = (
                f"CG step #{k} increased the error from {error:.6e} to"
                f" {error_new:.6e} (alpha={alpha:.3e}, |A d|^2={dAd:.3e})."
            )
            if config.raise_on_non_descent:
                raise NonDescentStepError(message, iteration=k)
            logger.warning("{} Returning the best iterate so far.", message)
            return result(ConjugateGradientStatus.NON_DESCENT, k - 1)

        y = y_new
        error = error_new
        error_history.append(error)

        # Update the gradient, or recompute it to flush accumulated roundoff.
        g_prev = g
        if k % reset_interval == 0:
            g = system.gradient(y)
        else:
            g = _tree_axpy(alpha, system.apply_adjoint(Ad), g)
        prev_dotg = dotg
        dotg = float(_tree_dot(g, g))

        if verbose:
            logger.info(
                "CG step #{}: error={:.6e} |g|={:.3e} alpha={:.3e}",
                k,
                error,
                math.sqrt(dotg),
                alpha,
            )

        if dotg <= threshold or math.sqrt(dotg) < config.absolute_tolerance:
            return result(ConjugateGradientStatus.CONVERGED, k)
        if k == config.max_iterations:
            break
        if should_stop is not None and should_stop(k):
            if verbose:
                logger.info("CG stopped early by caller after {} steps.", k)
            break

        # Next search direction.
        if config.direction_update == "steepest_descent":
            beta = 0.0
        elif config.direction_update == "fletcher_reeves":
            beta = dotg / prev_dotg
        else:
            beta = max(
                0.0, float(_tree_dot(g, _tree_axpy(-1.0, g_prev, g))) / prev_dotg
            )
        d = _tree_axpy(beta, d, jax.tree.map(jnp.negative, g))

    return result(ConjugateGradientStatus.MAX_ITERATIONS_REACHED, k)
