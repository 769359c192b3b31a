import numpy as onp
import pytest
from jax import numpy as jnp

import jaxsubgraph
from conftest import make_grid_graph


def test_factor_error_vector():
    factor = jaxsubgraph.JacobianFactor.make(
        {"a": onp.array([[1.0, 2.0]]), "b": onp.array([[3.0]])}, [1.0]
    )
    x = jaxsubgraph.VectorValues.from_dict({"a": [1.0, 1.0], "b": 2.0})
    onp.testing.assert_allclose(factor.multiply(x), [9.0])
    onp.testing.assert_allclose(factor.error_vector(x), [8.0])
    assert float(factor.error(x)) == pytest.approx(32.0)


def test_inconsistent_dims():
    with pytest.raises(ValueError):
        jaxsubgraph.GaussianFactorGraph.make(
            [
                jaxsubgraph.JacobianFactor.make({"a": onp.eye(2)}, [0.0, 0.0]),
                jaxsubgraph.JacobianFactor.make({"a": onp.eye(1)}, [0.0]),
            ]
        )


def test_dense_and_sparse_forms_agree():
    graph = make_grid_graph(3, 3, seed=1)
    ordering = list(reversed(graph.keys()))

    A_dense, b = graph.to_dense(ordering)
    A_sparse = graph.to_sparse(ordering)
    assert A_sparse.shape == A_dense.shape
    onp.testing.assert_allclose(A_sparse.as_scipy_coo_matrix().toarray(), A_dense)
    onp.testing.assert_allclose(b, graph.rhs_vector())

    x_flat = onp.random.default_rng(0).normal(size=A_dense.shape[1])
    onp.testing.assert_allclose(
        A_sparse @ jnp.asarray(x_flat), A_dense @ x_flat, rtol=1e-10
    )
    y_flat = onp.random.default_rng(1).normal(size=A_dense.shape[0])
    onp.testing.assert_allclose(
        A_sparse.T @ jnp.asarray(y_flat), A_dense.T @ y_flat, rtol=1e-10
    )


def test_operators_match_dense():
    graph = make_grid_graph(3, 4, seed=2)
    layout = graph.make_layout()
    A, b = graph.to_dense(layout)
    A = onp.asarray(A)
    b = onp.asarray(b)

    rng = onp.random.default_rng(3)
    x_flat = rng.normal(size=layout.dim)
    x = graph.assemble_values(x_flat, layout)

    onp.testing.assert_allclose(graph.multiply(x).flatten(), A @ x_flat, rtol=1e-10)
    onp.testing.assert_allclose(
        graph.error_vectors(x).flatten(), A @ x_flat - b, rtol=1e-10
    )
    assert float(graph.error(x)) == pytest.approx(
        0.5 * onp.sum((A @ x_flat - b) ** 2), rel=1e-10
    )

    e = graph.error_vectors(x)
    onp.testing.assert_allclose(
        graph.transpose_multiply(e, layout).storage, A.T @ (A @ x_flat - b), rtol=1e-10
    )
    onp.testing.assert_allclose(
        graph.gradient(x).storage, A.T @ (A @ x_flat - b), rtol=1e-10
    )


def test_assemble_values_ordering():
    graph = make_grid_graph(2, 2, dim=1)
    ordering = [(1, 1), (0, 0), (1, 0), (0, 1)]
    values = graph.assemble_values(onp.arange(4.0), ordering)
    onp.testing.assert_allclose(values[(1, 1)], [0.0])
    onp.testing.assert_allclose(values[(0, 1)], [3.0])


def test_subgraph():
    graph = make_grid_graph(2, 3)
    sub = graph.subgraph([0, 2])
    assert len(sub) == 2
    assert sub.factors[0] is graph.factors[0]
    assert sub.factors[1] is graph.factors[2]


def test_factor_transpose_multiply_add():
    factor = jaxsubgraph.JacobianFactor.make(
        {"a": onp.array([[1.0, 2.0], [0.0, 1.0]]), "b": onp.array([[3.0], [4.0]])},
        [0.0, 0.0],
    )
    layout = jaxsubgraph.VectorLayout.make({"b": 1, "a": 2})
    storage = factor.transpose_multiply_add(
        jnp.array([1.0, -1.0]), jnp.ones(layout.dim), layout
    )
    # b: 1 + (3 - 4); a: 1 + (1 - 0, 2 - 1).
    onp.testing.assert_allclose(storage, [0.0, 2.0, 2.0])


def test_graph_products_match_factor_products():
    graph = make_grid_graph(3, 3, seed=7)
    layout = graph.make_layout()
    x = graph.assemble_values(
        onp.random.default_rng(8).normal(size=layout.dim), layout
    )

    e = graph.error_vectors(x)
    assert e.sizes == graph.row_sizes()
    for factor, value in zip(graph.factors, e.values):
        onp.testing.assert_allclose(value, factor.error_vector(x), rtol=1e-10)

    expected = jnp.zeros(layout.dim)
    for factor, value in zip(graph.factors, e.values):
        expected = factor.transpose_multiply_add(value, expected, layout)
    onp.testing.assert_allclose(
        graph.transpose_multiply(e, layout).storage, expected, rtol=1e-10
    )
