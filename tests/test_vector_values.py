import jax
import numpy as onp
import pytest
from jax import numpy as jnp

import jaxsubgraph


def test_from_dict_layout():
    values = jaxsubgraph.VectorValues.from_dict({"a": [1.0, 2.0], "b": 3.0})
    assert values.layout.keys == ("a", "b")
    assert values.layout.dims == (2, 1)
    assert values.layout.offsets == (0, 2)
    assert values.layout.dim == 3
    onp.testing.assert_allclose(values["a"], [1.0, 2.0])
    onp.testing.assert_allclose(values["b"], [3.0])
    assert "a" in values
    assert "c" not in values


def test_flatten_with_ordering():
    values = jaxsubgraph.VectorValues.from_dict({"a": [1.0, 2.0], "b": 3.0})
    onp.testing.assert_allclose(values.flatten(), [1.0, 2.0, 3.0])
    onp.testing.assert_allclose(values.flatten(["b", "a"]), [3.0, 1.0, 2.0])


def test_update_layout_preserves_mapping():
    values = jaxsubgraph.VectorValues.from_dict(
        {"a": [1.0, 2.0], "b": 3.0, "c": [4.0, 5.0]}
    )
    reordered = values.update_layout(values.layout.reordered(["c", "a", "b"]))
    assert reordered.layout.keys == ("c", "a", "b")
    onp.testing.assert_allclose(reordered.storage, [4.0, 5.0, 1.0, 2.0, 3.0])
    for key in values.keys():
        onp.testing.assert_allclose(reordered[key], values[key])

    # Same layout is a no-op.
    assert values.update_layout(values.layout) is values


def test_arithmetic():
    x = jaxsubgraph.VectorValues.from_dict({0: [1.0, 2.0], 1: 3.0})
    y = jaxsubgraph.VectorValues.from_dict({0: [0.5, -1.0], 1: 2.0})

    onp.testing.assert_allclose((x + y).storage, [1.5, 1.0, 5.0])
    onp.testing.assert_allclose((x - y).storage, [0.5, 3.0, 1.0])
    onp.testing.assert_allclose((-x).storage, [-1.0, -2.0, -3.0])
    onp.testing.assert_allclose((2.0 * x).storage, [2.0, 4.0, 6.0])
    onp.testing.assert_allclose((x * 2.0).storage, [2.0, 4.0, 6.0])
    assert float(x.dot(y)) == pytest.approx(0.5 - 2.0 + 6.0)
    assert float(x.squared_norm()) == pytest.approx(14.0)

    # Inputs are untouched.
    onp.testing.assert_allclose(x.storage, [1.0, 2.0, 3.0])


def test_arithmetic_layout_mismatch():
    x = jaxsubgraph.VectorValues.from_dict({0: 1.0, 1: 2.0})
    y = jaxsubgraph.VectorValues.from_dict({1: 2.0, 0: 1.0})
    with pytest.raises(AssertionError):
        x + y


def test_vector_values_is_pytree():
    x = jaxsubgraph.VectorValues.from_dict({"a": [1.0, 2.0], "b": 3.0})
    leaves = jax.tree.leaves(x)
    assert len(leaves) == 1

    @jax.jit
    def double(v: jaxsubgraph.VectorValues) -> jaxsubgraph.VectorValues:
        return v * 2.0

    onp.testing.assert_allclose(double(x).storage, 2.0 * x.storage)
    assert double(x).layout == x.layout


def test_errors_operations():
    e1 = jaxsubgraph.Errors.make((jnp.array([1.0, 2.0]), jnp.array([3.0])))
    e2 = jaxsubgraph.Errors.make((jnp.array([0.0, 1.0]), jnp.array([-1.0])))

    assert float(e1.dot(e2)) == pytest.approx(2.0 - 3.0)
    assert float(e1.squared_norm()) == pytest.approx(14.0)
    onp.testing.assert_allclose((e1 - e2).flatten(), [1.0, 1.0, 4.0])
    onp.testing.assert_allclose((0.5 * e1).flatten(), [0.5, 1.0, 1.5])

    joined = jaxsubgraph.Errors.concatenate(e1, e2)
    assert len(joined) == 4
    head, tail = joined.split(2)
    onp.testing.assert_allclose(head.flatten(), e1.flatten())
    onp.testing.assert_allclose(tail.flatten(), e2.flatten())


def test_empty_errors():
    empty = jaxsubgraph.Errors.make(())
    assert len(empty) == 0
    assert float(empty.squared_norm()) == 0.0
    assert empty.flatten().shape == (0,)


def test_errors_entries():
    e = jaxsubgraph.Errors.make(
        (jnp.array([1.0, 2.0]), 3.0, jnp.array([4.0, 5.0, 6.0]))
    )
    assert e.sizes == (2, 1, 3)
    onp.testing.assert_allclose(e.values[1], [3.0])
    onp.testing.assert_allclose(e.values[2], [4.0, 5.0, 6.0])

    # Entry lengths have to match, even when the totals agree.
    other = jaxsubgraph.Errors.make((jnp.zeros(3), jnp.zeros(3)))
    with pytest.raises(AssertionError):
        e + other
