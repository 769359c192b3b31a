import jax
import numpy as onp
import pytest

import jaxsubgraph

# Tolerances in these tests assume double precision.
jax.config.update("jax_enable_x64", True)


def scalar_factor(terms: dict, b: float) -> jaxsubgraph.JacobianFactor:
    """Factor on scalar variables: `Σ a_k·x_k - b`."""
    return jaxsubgraph.JacobianFactor.make(
        {key: onp.array([[a]]) for key, a in terms.items()}, [b]
    )


def make_grid_graph(
    rows: int, cols: int, dim: int = 2, seed: int = 0
) -> jaxsubgraph.GaussianFactorGraph:
    """Random grid-shaped graph: a prior on the corner, plus one factor per
    horizontal and vertical edge. Every interior cycle closes a loop."""
    rng = onp.random.default_rng(seed)

    def random_block() -> onp.ndarray:
        return rng.normal(size=(dim, dim)) + 3.0 * onp.eye(dim)

    factors = [
        jaxsubgraph.JacobianFactor.make(
            {(0, 0): onp.eye(dim)}, rng.normal(size=dim)
        )
    ]
    for i in range(rows):
        for j in range(cols):
            for neighbor in ((i + 1, j), (i, j + 1)):
                if neighbor[0] < rows and neighbor[1] < cols:
                    factors.append(
                        jaxsubgraph.JacobianFactor.make(
                            {(i, j): random_block(), neighbor: -random_block()},
                            rng.normal(size=dim),
                        )
                    )
    return jaxsubgraph.GaussianFactorGraph.make(factors)


def dense_least_squares(
    graph: jaxsubgraph.GaussianFactorGraph,
) -> jaxsubgraph.VectorValues:
    """Reference solution from `numpy.linalg.lstsq`, in the graph's layout."""
    layout = graph.make_layout()
    A, b = graph.to_dense(layout)
    x, *_ = onp.linalg.lstsq(onp.asarray(A), onp.asarray(b), rcond=None)
    return jaxsubgraph.VectorValues.from_flat(x, layout)


@pytest.fixture
def triangle_graph() -> jaxsubgraph.GaussianFactorGraph:
    """Three scalar variables: a prior on 0, a chain 0-1-2, and a loop closure
    2-0 that disagrees slightly with the chain."""
    return jaxsubgraph.GaussianFactorGraph.make(
        [
            scalar_factor({0: 1.0}, 0.0),
            scalar_factor({0: -1.0, 1: 1.0}, 1.0),
            scalar_factor({1: -1.0, 2: 1.0}, 1.0),
            scalar_factor({2: 1.0, 0: -1.0}, 1.9),
        ]
    )


@pytest.fixture
def grid_graph() -> jaxsubgraph.GaussianFactorGraph:
    return make_grid_graph(4, 5)
