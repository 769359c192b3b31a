from typing import Any

import jax
import jax_dataclasses as jdc
import numpy as onp
import pytest
from jax import numpy as jnp

import jaxsubgraph


@jdc.pytree_dataclass
class DenseSystem:
    """`min_y ½‖A·y - b‖²` with a dense `A`."""

    A: jax.Array
    b: jax.Array

    def error(self, y: jax.Array) -> jax.Array:
        return 0.5 * jnp.sum((self.A @ y - self.b) ** 2)

    def gradient(self, y: jax.Array) -> jax.Array:
        return self.A.T @ (self.A @ y - self.b)

    def apply_forward(self, y: jax.Array) -> jax.Array:
        return self.A @ y

    def apply_adjoint(self, e: jax.Array) -> jax.Array:
        return self.A.T @ e


@jdc.pytree_dataclass
class SplitSystem:
    """Same as `DenseSystem`, but iterates are dictionaries of two blocks."""

    A: jax.Array
    b: jax.Array
    split: jdc.Static[int]

    def _join(self, y: dict[str, jax.Array]) -> jax.Array:
        return jnp.concatenate([y["head"], y["tail"]])

    def _split(self, v: jax.Array) -> dict[str, jax.Array]:
        return {"head": v[: self.split], "tail": v[self.split :]}

    def error(self, y: dict[str, jax.Array]) -> jax.Array:
        return 0.5 * jnp.sum((self.A @ self._join(y) - self.b) ** 2)

    def gradient(self, y: dict[str, jax.Array]) -> dict[str, jax.Array]:
        return self._split(self.A.T @ (self.A @ self._join(y) - self.b))

    def apply_forward(self, y: dict[str, jax.Array]) -> jax.Array:
        return self.A @ self._join(y)

    def apply_adjoint(self, e: jax.Array) -> dict[str, jax.Array]:
        return self._split(self.A.T @ e)


class WrongSignSystem(DenseSystem):
    """Reports the negated gradient, so every step goes uphill."""

    def gradient(self, y: jax.Array) -> jax.Array:
        return -super().gradient(y)


def _random_problem(seed: int, shape: tuple[int, int] = (30, 10)) -> tuple[Any, Any]:
    rng = onp.random.default_rng(seed)
    return jnp.asarray(rng.normal(size=shape)), jnp.asarray(rng.normal(size=shape[0]))


@pytest.mark.parametrize(
    "direction_update,max_iterations",
    [
        ("polak_ribiere", 100),
        ("fletcher_reeves", 100),
        ("steepest_descent", 2000),
    ],
)
def test_matches_lstsq(direction_update: Any, max_iterations: int):
    A, b = _random_problem(seed=0)
    config = jaxsubgraph.ConjugateGradientConfig(
        relative_tolerance=1e-10,
        absolute_tolerance=0.0,
        max_iterations=max_iterations,
        direction_update=direction_update,
    )
    result = jaxsubgraph.conjugate_gradient(DenseSystem(A, b), jnp.zeros(10), config)

    assert result.converged
    assert result.status == jaxsubgraph.ConjugateGradientStatus.CONVERGED
    x_ref, *_ = onp.linalg.lstsq(onp.asarray(A), onp.asarray(b), rcond=None)
    onp.testing.assert_allclose(result.y, x_ref, rtol=1e-6, atol=1e-8)
    assert result.gradient_norm <= 1e-10 * result.initial_gradient_norm


def test_error_history_is_monotone():
    A, b = _random_problem(seed=1)
    result = jaxsubgraph.conjugate_gradient(
        DenseSystem(A, b),
        jnp.zeros(10),
        jaxsubgraph.ConjugateGradientConfig(relative_tolerance=1e-8),
    )
    history = onp.array(result.error_history)
    assert len(history) == result.iterations + 1
    assert onp.all(onp.diff(history) <= 1e-12)
    assert result.error == history[-1]


def test_pytree_iterates():
    A, b = _random_problem(seed=2)
    config = jaxsubgraph.ConjugateGradientConfig(
        relative_tolerance=1e-10, absolute_tolerance=0.0
    )
    result = jaxsubgraph.conjugate_gradient(
        SplitSystem(A, b, split=4),
        {"head": jnp.zeros(4), "tail": jnp.zeros(6)},
        config,
    )
    x_ref, *_ = onp.linalg.lstsq(onp.asarray(A), onp.asarray(b), rcond=None)
    onp.testing.assert_allclose(result.y["head"], x_ref[:4], rtol=1e-6, atol=1e-8)
    onp.testing.assert_allclose(result.y["tail"], x_ref[4:], rtol=1e-6, atol=1e-8)


def test_already_converged():
    A, b = _random_problem(seed=3)
    x_ref, *_ = onp.linalg.lstsq(onp.asarray(A), onp.asarray(b), rcond=None)
    result = jaxsubgraph.conjugate_gradient(DenseSystem(A, b), jnp.asarray(x_ref))
    assert result.status == jaxsubgraph.ConjugateGradientStatus.CONVERGED
    assert result.iterations == 0


def test_zero_gradient_without_absolute_tolerance():
    # Starting exactly at the solution leaves no search direction.
    A = jnp.eye(3)
    b = jnp.array([1.0, -2.0, 3.0])
    config = jaxsubgraph.ConjugateGradientConfig(absolute_tolerance=0.0)
    result = jaxsubgraph.conjugate_gradient(DenseSystem(A, b), b, config)
    assert result.status == jaxsubgraph.ConjugateGradientStatus.CONVERGED
    assert result.iterations == 0
    assert result.gradient_norm == 0.0
    onp.testing.assert_allclose(result.y, b)


def test_max_iterations():
    A, b = _random_problem(seed=4)
    config = jaxsubgraph.ConjugateGradientConfig(
        relative_tolerance=0.0, absolute_tolerance=0.0, max_iterations=3
    )
    result = jaxsubgraph.conjugate_gradient(DenseSystem(A, b), jnp.zeros(10), config)
    assert result.status == jaxsubgraph.ConjugateGradientStatus.MAX_ITERATIONS_REACHED
    assert result.iterations == 3
    assert not result.converged


def test_should_stop():
    A, b = _random_problem(seed=5)
    config = jaxsubgraph.ConjugateGradientConfig(
        relative_tolerance=0.0, absolute_tolerance=0.0
    )
    calls = []

    def should_stop(iteration: int) -> bool:
        calls.append(iteration)
        return iteration >= 2

    result = jaxsubgraph.conjugate_gradient(
        DenseSystem(A, b), jnp.zeros(10), config, should_stop=should_stop
    )
    assert result.status == jaxsubgraph.ConjugateGradientStatus.MAX_ITERATIONS_REACHED
    assert result.iterations == 2
    assert calls == [1, 2]


def test_non_descent_returns_best_iterate():
    A, b = _random_problem(seed=6)
    y0 = jnp.ones(10)
    system = WrongSignSystem(A, b)
    result = jaxsubgraph.conjugate_gradient(system, y0)

    assert result.status == jaxsubgraph.ConjugateGradientStatus.NON_DESCENT
    assert result.iterations == 0
    onp.testing.assert_allclose(result.y, y0)
    assert result.error == pytest.approx(float(system.error(y0)))


def test_non_descent_raises():
    A, b = _random_problem(seed=6)
    config = jaxsubgraph.ConjugateGradientConfig(raise_on_non_descent=True)
    with pytest.raises(jaxsubgraph.NonDescentStepError) as excinfo:
        jaxsubgraph.conjugate_gradient(WrongSignSystem(A, b), jnp.ones(10), config)
    assert excinfo.value.iteration == 1


def test_deterministic():
    A, b = _random_problem(seed=7)
    config = jaxsubgraph.ConjugateGradientConfig(max_iterations=5)
    first = jaxsubgraph.conjugate_gradient(DenseSystem(A, b), jnp.zeros(10), config)
    second = jaxsubgraph.conjugate_gradient(DenseSystem(A, b), jnp.zeros(10), config)
    onp.testing.assert_array_equal(first.y, second.y)
    assert first.error_history == second.error_history
    assert first.iterations == second.iterations


@pytest.mark.parametrize(
    "kwargs",
    [
        dict(relative_tolerance=-1.0),
        dict(absolute_tolerance=-1e-3),
        dict(max_iterations=0),
        dict(direction_update="newton"),
        dict(reset_interval=0),
        dict(non_descent_tolerance=-1.0),
    ],
)
def test_invalid_config(kwargs: dict):
    with pytest.raises(jaxsubgraph.InvalidConfigError):
        jaxsubgraph.ConjugateGradientConfig(**kwargs)

    # Also usable as a plain `ValueError`.
    with pytest.raises(ValueError):
        jaxsubgraph.ConjugateGradientConfig(**kwargs)
