from __future__ import annotations

import jax
import jax_dataclasses as jdc
import numpy as onp
import scipy.sparse
from jax import numpy as jnp


@jdc.pytree_dataclass
class SparseCooCoordinates:
    rows: jax.Array
    """Row indices of non-zero entries. Shape should be `(N,)`."""
    cols: jax.Array
    """Column indices of non-zero entries. Shape should be `(N,)`."""
    shape: jdc.Static[tuple[int, int]]
    """Shape of matrix."""


@jdc.pytree_dataclass
class SparseCooMatrix:
    """Sparse matrix in COO form. Duplicate coordinates are summed."""

    values: jax.Array
    """Non-zero matrix values. Shape should be `(N,)`."""
    coords: SparseCooCoordinates
    """Indices describing non-zero entries."""

    @property
    def shape(self) -> tuple[int, int]:
        return self.coords.shape

    def __matmul__(self, other: jax.Array) -> jax.Array:
        """Compute `Ax`, where `x` is a 1D vector."""
        assert other.shape == (
            self.shape[1],
        ), "Inner product only supported for 1D vectors!"
        return (
            jnp.zeros(self.shape[0], dtype=other.dtype)
            .at[self.coords.rows]
            .add(self.values * other[self.coords.cols])
        )

    @property
    def T(self) -> SparseCooMatrix:
        """Return transpose of our sparse matrix."""
        return SparseCooMatrix(
            values=self.values,
            coords=SparseCooCoordinates(
                rows=self.coords.cols,
                cols=self.coords.rows,
                shape=self.shape[::-1],
            ),
        )

    def to_dense(self) -> jax.Array:
        """Convert to a dense JAX array."""
        return (
            jnp.zeros(self.shape, dtype=self.values.dtype)
            .at[self.coords.rows, self.coords.cols]
            .add(self.values)
        )

    def as_scipy_coo_matrix(self) -> scipy.sparse.coo_matrix:
        """Convert to a sparse scipy matrix."""
        return scipy.sparse.coo_matrix(
            (
                onp.asarray(self.values),
                (onp.asarray(self.coords.rows), onp.asarray(self.coords.cols)),
            ),
            shape=self.shape,
        )
