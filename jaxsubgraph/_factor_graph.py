from __future__ import annotations

from typing import Iterable, Mapping, Sequence

import jax
import jax_dataclasses as jdc
import numpy as onp
from jax import numpy as jnp

from ._errors import Errors
from ._sparse_matrices import SparseCooCoordinates, SparseCooMatrix
from ._vector_values import Key, Ordering, VectorLayout, VectorValues


@jdc.pytree_dataclass
class JacobianFactor:
    """Linear factor `Σ_k A_k·x_k - b`, connecting one or more variables."""

    keys: jdc.Static[tuple[Key, ...]]
    """Variables touched by this factor."""
    blocks: tuple[jax.Array, ...]
    """One `(rows, dim_k)` block per key, aligned with `keys`."""
    b: jax.Array
    """Right-hand side. Shape should be `(rows,)`."""

    @staticmethod
    def make(
        terms: Mapping[Key, jax.Array | onp.ndarray]
        | Sequence[tuple[Key, jax.Array | onp.ndarray]],
        b: jax.Array | onp.ndarray | Sequence[float] | float,
    ) -> JacobianFactor:
        """Create a factor from `key -> A_k` terms and a right-hand side."""
        items = list(terms.items()) if isinstance(terms, Mapping) else list(terms)
        b_vec = jnp.atleast_1d(jnp.asarray(b, dtype=float))
        assert b_vec.ndim == 1, "b should be a vector!"
        assert len(items) > 0, "Factors need at least one variable."

        keys = tuple(key for key, _ in items)
        assert len(set(keys)) == len(keys), f"Duplicate keys in factor: {keys}"

        blocks = list[jax.Array]()
        for key, block in items:
            block = jnp.asarray(block, dtype=float)
            if block.ndim < 2:
                block = block.reshape((b_vec.shape[0], -1))
            assert block.shape[0] == b_vec.shape[0], (
                f"Block for {key} has {block.shape[0]} rows, expected {b_vec.shape[0]}."
            )
            blocks.append(block)

        return JacobianFactor(keys=keys, blocks=tuple(blocks), b=b_vec)

    @property
    def rows(self) -> int:
        return self.b.shape[0]

    def dim_from_key(self) -> dict[Key, int]:
        return {key: block.shape[1] for key, block in zip(self.keys, self.blocks)}

    def multiply(self, x: VectorValues) -> jax.Array:
        """Compute `Σ_k A_k·x_k`."""
        out = jnp.zeros(self.rows, dtype=x.storage.dtype)
        for key, block in zip(self.keys, self.blocks):
            out = out + block @ x[key]
        return out

    def error_vector(self, x: VectorValues) -> jax.Array:
        """Compute `Σ_k A_k·x_k - b`."""
        return self.multiply(x) - self.b

    def error(self, x: VectorValues) -> jax.Array:
        return 0.5 * jnp.sum(self.error_vector(x) ** 2)

    def transpose_multiply_add(
        self, e: jax.Array, storage: jax.Array, layout: VectorLayout
    ) -> jax.Array:
        """Accumulate `A_k^T·e` into each variable's slot of a storage vector."""
        assert e.shape == (self.rows,)
        for key, block in zip(self.keys, self.blocks):
            storage = storage.at[layout.slice(key)].add(block.T @ e)
        return storage


@jdc.pytree_dataclass
class GaussianFactorGraph:
    """Immutable linear factor graph representing a sparse system `A·x = b`.

    Each factor contributes one block-row to `A` and one segment to `b`."""

    factors: tuple[JacobianFactor, ...]

    @staticmethod
    def make(factors: Iterable[JacobianFactor]) -> GaussianFactorGraph:
        graph = GaussianFactorGraph(tuple(factors))

        # Catches inconsistent variable dimensions early.
        graph.dim_from_key()
        return graph

    def __len__(self) -> int:
        return len(self.factors)

    def __iter__(self):
        return iter(self.factors)

    def keys(self) -> tuple[Key, ...]:
        """Variables in the graph, ordered by first appearance."""
        return tuple(self.dim_from_key().keys())

    def dim_from_key(self) -> dict[Key, int]:
        dim_from_key: dict[Key, int] = {}
        for factor in self.factors:
            for key, dim in factor.dim_from_key().items():
                if dim_from_key.setdefault(key, dim) != dim:
                    raise ValueError(
                        f"Variable {key} has inconsistent dimensions:"
                        f" {dim_from_key[key]} vs {dim}."
                    )
        return dim_from_key

    def make_layout(
        self, ordering: Ordering | VectorLayout | None = None
    ) -> VectorLayout:
        """Layout over the graph's variables. An existing layout is passed through
        as-is, so subgraphs can share the layout of their parent graph."""
        if isinstance(ordering, VectorLayout):
            return ordering
        return VectorLayout.make(self.dim_from_key(), ordering)

    def subgraph(self, indices: Iterable[int]) -> GaussianFactorGraph:
        """Graph containing only the factors at `indices`."""
        return GaussianFactorGraph(tuple(self.factors[i] for i in indices))

    def row_sizes(self) -> tuple[int, ...]:
        """Number of rows contributed by each factor."""
        return tuple(factor.rows for factor in self.factors)

    def multiply(self, x: VectorValues) -> Errors:
        """Compute `A·x`, one entry per factor. Evaluated as a single sparse
        matrix-vector product."""
        return Errors(self.to_sparse(x.layout) @ x.storage, self.row_sizes())

    def error_vectors(self, x: VectorValues) -> Errors:
        """Compute `A·x - b`, one entry per factor."""
        return self.multiply(x) - self.rhs()

    def error(self, x: VectorValues) -> jax.Array:
        """Half the sum of squared per-factor residuals."""
        return 0.5 * self.error_vectors(x).squared_norm()

    def transpose_multiply(self, e: Errors, layout: VectorLayout) -> VectorValues:
        """Compute `A^T·e`."""
        assert e.sizes == self.row_sizes()
        return VectorValues(self.to_sparse(layout).T @ e.flat, layout)

    def gradient(self, x: VectorValues) -> VectorValues:
        """Gradient of `error()`, `A^T·(A·x - b)`."""
        return self.transpose_multiply(self.error_vectors(x), x.layout)

    def rhs(self) -> Errors:
        return Errors.make(factor.b for factor in self.factors)

    def rhs_vector(self) -> jax.Array:
        return self.rhs().flatten()

    def _jacobian_coords(self, layout: VectorLayout) -> tuple[onp.ndarray, onp.ndarray]:
        rows = list[onp.ndarray]()
        cols = list[onp.ndarray]()
        row_offset = 0
        for factor in self.factors:
            for key, block in zip(factor.keys, factor.blocks):
                block_rows, block_cols = block.shape
                col_offset = layout.slice(key).start
                rows.append(
                    onp.repeat(onp.arange(block_rows) + row_offset, block_cols)
                )
                cols.append(
                    onp.tile(onp.arange(block_cols) + col_offset, block_rows)
                )
            row_offset += factor.rows
        if len(rows) == 0:
            return onp.zeros(0, dtype=onp.int32), onp.zeros(0, dtype=onp.int32)
        return onp.concatenate(rows), onp.concatenate(cols)

    def to_sparse(
        self, ordering: Ordering | VectorLayout | None = None
    ) -> SparseCooMatrix:
        """Sparse `A` with columns laid out in `ordering`."""
        layout = self.make_layout(ordering)
        rows, cols = self._jacobian_coords(layout)
        values = [block.reshape(-1) for factor in self.factors for block in factor.blocks]
        return SparseCooMatrix(
            values=jnp.concatenate(values) if values else jnp.zeros(0, dtype=float),
            coords=SparseCooCoordinates(
                rows=jnp.asarray(rows),
                cols=jnp.asarray(cols),
                shape=(sum(factor.rows for factor in self.factors), layout.dim),
            ),
        )

    def to_dense(
        self, ordering: Ordering | VectorLayout | None = None
    ) -> tuple[jax.Array, jax.Array]:
        """Dense `(A, b)` with columns laid out in `ordering`."""
        return self.to_sparse(ordering).to_dense(), self.rhs_vector()

    def assemble_values(
        self,
        vector: jax.Array | onp.ndarray,
        ordering: Ordering | VectorLayout | None = None,
    ) -> VectorValues:
        """Reconstruct a keyed vector from a flat vector laid out in `ordering`."""
        return VectorValues.from_flat(vector, self.make_layout(ordering))
