from __future__ import annotations

from dataclasses import dataclass

import jax
import jax_dataclasses as jdc
import numpy as onp
import scipy.linalg
from jax import numpy as jnp

from ._exceptions import DegenerateSystemError
from ._factor_graph import GaussianFactorGraph
from ._vector_values import Key, Ordering, VectorLayout, VectorValues


@jdc.pytree_dataclass
class GaussianConditional:
    """One eliminated variable: `R·x_frontal + Σ_k S_k·x_parent_k = d`."""

    frontal: jdc.Static[Key]
    parents: jdc.Static[tuple[Key, ...]]
    R: jax.Array
    """Upper-triangular, square. Shape should be `(dim, dim)`."""
    S: tuple[jax.Array, ...]
    """One `(dim, parent_dim)` block per parent."""
    d: jax.Array


@jdc.pytree_dataclass
class GaussianBayesNet:
    """Triangular factorization `R·x = d` produced by elimination.

    Conditionals are stored in elimination order, so every parent of a
    conditional appears after it.
    """

    conditionals: tuple[GaussianConditional, ...]
    layout: jdc.Static[VectorLayout]
    """Variables in elimination order."""

    def triangular_solver(self) -> TriangularSolver:
        """Assemble a solver for `R` and `R^T` systems. Requires concrete values,
        so this should be called outside of JIT."""
        return TriangularSolver.make(self)

    def optimize(self) -> VectorValues:
        """Back-substitute to get the solution of `R·x = d`."""
        rhs = VectorValues.from_blocks(
            (conditional.d for conditional in self.conditionals), self.layout
        )
        return self.triangular_solver().solve(rhs)

    def solve(self, y: VectorValues) -> VectorValues:
        """Compute `R^{-1}·y`."""
        return self.triangular_solver().solve(y.update_layout(self.layout))

    def solve_transpose(self, v: VectorValues) -> VectorValues:
        """Compute `R^{-T}·v`."""
        return self.triangular_solver().solve_transpose(v.update_layout(self.layout))

    def check_nonsingular(self, pivot_tolerance: float = 0.0) -> None:
        """Raise `DegenerateSystemError` on missing, non-square, or singular `R`
        blocks."""
        frontals = tuple(conditional.frontal for conditional in self.conditionals)
        if frontals != self.layout.keys:
            raise DegenerateSystemError(
                "Conditionals do not match the elimination order:"
                f" {frontals} vs {self.layout.keys}."
            )
        for conditional in self.conditionals:
            dim = self.layout.dim_of(conditional.frontal)
            if conditional.R.shape != (dim, dim):
                raise DegenerateSystemError(
                    f"Conditional on {conditional.frontal} has R of shape"
                    f" {conditional.R.shape}, expected {(dim, dim)}."
                )
            min_pivot = float(onp.min(onp.abs(onp.diag(onp.asarray(conditional.R)))))
            if min_pivot <= pivot_tolerance:
                raise DegenerateSystemError(
                    f"Zero pivot while eliminating {conditional.frontal}"
                    f" (|R_ii| = {min_pivot:.3e})."
                )


@jdc.pytree_dataclass
class _LevelSchedule:
    """Block-triangular system `T·x = v`, split into dependency levels.

    Every block in a level only depends on blocks from earlier levels, so a
    whole level is solved with one gather and two scatters. `lax.scan` runs over
    the levels; the compiled program does not grow with the number of variables.

    Arrays are padded to a common width per level. Padded rows point at a sink
    slot one past the end of `x`, which stays zero.
    """

    rows: jax.Array
    """Storage index of each row in the level. Shape `(levels, width)`."""
    off_rows: jax.Array
    """Off-diagonal entries: position of the row within the level."""
    off_cols: jax.Array
    """Off-diagonal entries: storage index of the column."""
    off_values: jax.Array
    diag_rows: jax.Array
    """Inverted diagonal blocks: position of the row within the level."""
    diag_cols: jax.Array
    """Inverted diagonal blocks: position of the column within the level."""
    diag_values: jax.Array

    @staticmethod
    def make(
        dim: int,
        row_levels: onp.ndarray,
        diag: tuple[onp.ndarray, onp.ndarray, onp.ndarray],
        off: tuple[onp.ndarray, onp.ndarray, onp.ndarray],
    ) -> _LevelSchedule:
        """Build from scalar COO entries.

        Args:
            dim: Number of rows and columns.
            row_levels: Level of each row. Shape `(dim,)`.
            diag: `(rows, cols, values)` of the inverted diagonal blocks.
            off: `(rows, cols, values)` of the off-diagonal entries.
        """
        num_levels = int(row_levels.max()) + 1 if dim > 0 else 0
        rows_from_level = _group_by_level(row_levels, num_levels)

        # Position of each row within its level.
        position = onp.zeros(dim, dtype=onp.int64)
        for level_rows in rows_from_level:
            position[level_rows] = onp.arange(len(level_rows))

        diag_rows, diag_cols, diag_values = diag
        off_rows, off_cols, off_values = off
        diag_from_level = _group_by_level(row_levels[diag_rows], num_levels)
        off_from_level = _group_by_level(row_levels[off_rows], num_levels)

        def pad(
            groups: list[onp.ndarray], source: onp.ndarray, fill: float, dtype
        ) -> onp.ndarray:
            width = max((len(group) for group in groups), default=0)
            out = onp.full((num_levels, width), fill, dtype=dtype)
            for level, group in enumerate(groups):
                out[level, : len(group)] = source[group]
            return out

        all_rows = onp.arange(dim)
        return _LevelSchedule(
            rows=jnp.asarray(pad(rows_from_level, all_rows, dim, onp.int64)),
            off_rows=jnp.asarray(pad(off_from_level, position[off_rows], 0, onp.int64)),
            off_cols=jnp.asarray(pad(off_from_level, off_cols, dim, onp.int64)),
            off_values=jnp.asarray(pad(off_from_level, off_values, 0.0, float)),
            diag_rows=jnp.asarray(
                pad(diag_from_level, position[diag_rows], 0, onp.int64)
            ),
            diag_cols=jnp.asarray(
                pad(diag_from_level, position[diag_cols], 0, onp.int64)
            ),
            diag_values=jnp.asarray(pad(diag_from_level, diag_values, 0.0, float)),
        )

    def solve(self, v: jax.Array) -> jax.Array:
        (dim,) = v.shape
        width = self.rows.shape[1]
        v_padded = jnp.concatenate([v, jnp.zeros((1,), dtype=v.dtype)])

        def solve_level(x: jax.Array, level) -> tuple[jax.Array, None]:
            (
                rows,
                off_rows,
                off_cols,
                off_values,
                diag_rows,
                diag_cols,
                diag_values,
            ) = level
            # Subtract contributions from already-solved levels, then apply the
            # inverted diagonal blocks.
            rhs = v_padded[rows] - (
                jnp.zeros(width, dtype=v.dtype)
                .at[off_rows]
                .add(off_values * x[off_cols])
            )
            x_level = (
                jnp.zeros(width, dtype=v.dtype)
                .at[diag_rows]
                .add(diag_values * rhs[diag_cols])
            )
            return x.at[rows].set(x_level), None

        x, _ = jax.lax.scan(
            solve_level,
            jnp.zeros(dim + 1, dtype=v.dtype),
            (
                self.rows,
                self.off_rows,
                self.off_cols,
                self.off_values,
                self.diag_rows,
                self.diag_cols,
                self.diag_values,
            ),
        )
        return x[:dim]


def _group_by_level(levels: onp.ndarray, num_levels: int) -> list[onp.ndarray]:
    """Indices of the entries at each level, in their original order."""
    order = onp.argsort(levels, kind="stable")
    bounds = onp.searchsorted(levels[order], onp.arange(num_levels + 1))
    return [order[bounds[k] : bounds[k + 1]] for k in range(num_levels)]


def _block_coords(
    rows: slice, cols: slice, block: onp.ndarray
) -> tuple[onp.ndarray, onp.ndarray, onp.ndarray]:
    num_rows, num_cols = block.shape
    return (
        onp.repeat(onp.arange(rows.start, rows.stop), num_cols),
        onp.tile(onp.arange(cols.start, cols.stop), num_rows),
        block.reshape(-1),
    )


def _concatenate_coords(
    coords: list[tuple[onp.ndarray, onp.ndarray, onp.ndarray]],
) -> tuple[onp.ndarray, onp.ndarray, onp.ndarray]:
    if len(coords) == 0:
        empty = onp.zeros(0, dtype=onp.int64)
        return empty, empty, onp.zeros(0)
    rows, cols, values = zip(*coords)
    return onp.concatenate(rows), onp.concatenate(cols), onp.concatenate(values)


@jdc.pytree_dataclass
class TriangularSolver:
    """Solves `R·x = y` and `R^T·z = v` for the `R` of a Bayes net.

    `R^{-1}` is applied by back-substitution, scheduled by depth: a variable is
    solved one level after the deepest of its parents. `R^{-T}` is applied by
    forward substitution, scheduled by height: one level after the highest of
    its children. For a spanning tree, the number of levels is the tree depth.
    """

    layout: jdc.Static[VectorLayout]
    back_substitution: _LevelSchedule
    forward_substitution: _LevelSchedule

    @staticmethod
    def make(bayes_net: GaussianBayesNet) -> TriangularSolver:
        bayes_net.check_nonsingular()
        layout = bayes_net.layout
        conditionals = bayes_net.conditionals

        index_from_key = {key: i for i, key in enumerate(layout.keys)}
        depth = onp.zeros(len(conditionals), dtype=onp.int64)
        height = onp.zeros(len(conditionals), dtype=onp.int64)
        for i in reversed(range(len(conditionals))):
            for parent in conditionals[i].parents:
                depth[i] = max(depth[i], depth[index_from_key[parent]] + 1)
        for i, conditional in enumerate(conditionals):
            for parent in conditional.parents:
                j = index_from_key[parent]
                height[j] = max(height[j], height[i] + 1)

        diag = list[tuple[onp.ndarray, onp.ndarray, onp.ndarray]]()
        diag_transpose = list[tuple[onp.ndarray, onp.ndarray, onp.ndarray]]()
        off = list[tuple[onp.ndarray, onp.ndarray, onp.ndarray]]()
        off_transpose = list[tuple[onp.ndarray, onp.ndarray, onp.ndarray]]()
        for conditional in conditionals:
            frontal = layout.slice(conditional.frontal)
            R = onp.asarray(conditional.R)
            R_inv = scipy.linalg.solve_triangular(R, onp.eye(R.shape[0]), lower=False)
            diag.append(_block_coords(frontal, frontal, R_inv))
            diag_transpose.append(_block_coords(frontal, frontal, R_inv.T))
            for parent, S in zip(conditional.parents, conditional.S):
                S = onp.asarray(S)
                off.append(_block_coords(frontal, layout.slice(parent), S))
                off_transpose.append(_block_coords(layout.slice(parent), frontal, S.T))

        row_depth = onp.repeat(depth, layout.dims)
        row_height = onp.repeat(height, layout.dims)
        return TriangularSolver(
            layout=layout,
            back_substitution=_LevelSchedule.make(
                layout.dim,
                row_depth,
                _concatenate_coords(diag),
                _concatenate_coords(off),
            ),
            forward_substitution=_LevelSchedule.make(
                layout.dim,
                row_height,
                _concatenate_coords(diag_transpose),
                _concatenate_coords(off_transpose),
            ),
        )

    @property
    def num_levels(self) -> int:
        return self.back_substitution.rows.shape[0]

    def solve(self, y: VectorValues) -> VectorValues:
        """Compute `R^{-1}·y`."""
        assert y.layout == self.layout
        return VectorValues(self.back_substitution.solve(y.storage), self.layout)

    def solve_transpose(self, v: VectorValues) -> VectorValues:
        """Compute `R^{-T}·v`."""
        assert v.layout == self.layout
        return VectorValues(self.forward_substitution.solve(v.storage), self.layout)


@dataclass(frozen=True)
class _DenseFactor:
    """Host-side copy of a linear factor, used during elimination."""

    keys: tuple[Key, ...]
    blocks: tuple[onp.ndarray, ...]
    b: onp.ndarray


def eliminate(
    graph: GaussianFactorGraph,
    ordering: Ordering,
    pivot_tolerance: float = 1e-9,
) -> GaussianBayesNet:
    """Sequential QR elimination of a linear factor graph.

    For each variable in `ordering`, every remaining factor touching it is
    stacked into one dense block system and QR-factored. The first `dim` rows
    give the conditional on that variable; the rest become a new factor on the
    separator. Eliminating a tree leaves-first produces no fill-in.

    Elimination is sequential and structure-dependent, so it runs on the host
    with numpy. Only the resulting conditionals are converted to JAX arrays.

    Pivots are rejected when `|R_ii| <= pivot_tolerance * max(1, |Ab|)`.

    Raises:
        DegenerateSystemError: if the ordering does not cover the graph's
            variables, if a variable is not constrained by any factor, or if its
            pivot block is singular.
    """
    dim_from_key = graph.dim_from_key()
    ordering = tuple(ordering)
    missing = set(dim_from_key.keys()) - set(ordering)
    if len(missing) > 0:
        raise DegenerateSystemError(
            f"Ordering leaves variables uneliminated: {sorted(map(str, missing))}"
        )
    if len(set(ordering)) != len(ordering):
        raise DegenerateSystemError("Ordering contains duplicate variables.")

    position_from_key = {key: i for i, key in enumerate(ordering)}
    factors: list[_DenseFactor | None] = [
        _DenseFactor(
            keys=factor.keys,
            blocks=tuple(onp.asarray(block) for block in factor.blocks),
            b=onp.asarray(factor.b),
        )
        for factor in graph.factors
    ]
    factor_ids_from_key: dict[Key, list[int]] = {key: [] for key in dim_from_key}
    for factor_id, factor in enumerate(factors):
        assert factor is not None
        for key in factor.keys:
            factor_ids_from_key[key].append(factor_id)

    conditionals = list[GaussianConditional]()
    for key in ordering:
        if key not in dim_from_key:
            raise DegenerateSystemError(f"Variable {key} has no factors; it is free.")

        involved = list[_DenseFactor]()
        for factor_id in factor_ids_from_key[key]:
            factor = factors[factor_id]
            if factor is not None:
                involved.append(factor)
                factors[factor_id] = None
        if len(involved) == 0:
            raise DegenerateSystemError(
                f"Variable {key} is left unconstrained after eliminating its"
                " neighbors; it is free."
            )

        # Frontal variable first, then separator keys in elimination order.
        separator = sorted(
            {k for factor in involved for k in factor.keys if k != key},
            key=lambda k: position_from_key[k],
        )
        columns = [key] + separator
        column_layout = VectorLayout.make(
            {k: dim_from_key[k] for k in columns}, columns
        )

        # Stack involved factors into `[A | b]`.
        Ab = onp.concatenate(
            [_dense_block_row(factor, column_layout) for factor in involved], axis=0
        )
        num_rows = Ab.shape[0]
        dim = dim_from_key[key]
        if num_rows < dim:
            raise DegenerateSystemError(
                f"Variable {key} has {num_rows} constraint rows but dimension {dim}."
            )

        R = onp.linalg.qr(Ab, mode="r")
        R_frontal = R[:dim, :dim]
        scale = max(1.0, float(onp.max(onp.abs(Ab))))
        min_pivot = float(onp.min(onp.abs(onp.diag(R_frontal))))
        if min_pivot <= pivot_tolerance * scale:
            raise DegenerateSystemError(
                f"Zero pivot while eliminating {key} (|R_ii| = {min_pivot:.3e})."
            )

        conditionals.append(
            GaussianConditional(
                frontal=key,
                parents=tuple(separator),
                R=jnp.asarray(R_frontal),
                S=tuple(
                    jnp.asarray(R[:dim, column_layout.slice(k)]) for k in separator
                ),
                d=jnp.asarray(R[:dim, -1]),
            )
        )

        # Remaining rows constrain only the separator. Without a separator they
        # are pure residual and can be dropped.
        if len(separator) > 0 and R.shape[0] > dim:
            factors.append(
                _DenseFactor(
                    keys=tuple(separator),
                    blocks=tuple(R[dim:, column_layout.slice(k)] for k in separator),
                    b=R[dim:, -1],
                )
            )
            for k in separator:
                factor_ids_from_key[k].append(len(factors) - 1)

    return GaussianBayesNet(
        conditionals=tuple(conditionals),
        layout=VectorLayout.make(dim_from_key, ordering),
    )


def _dense_block_row(factor: _DenseFactor, column_layout: VectorLayout) -> onp.ndarray:
    """Dense `[A | b]` rows of a factor over the columns in `column_layout`."""
    out = onp.zeros((factor.b.shape[0], column_layout.dim + 1))
    for k, block in zip(factor.keys, factor.blocks):
        out[:, column_layout.slice(k)] = block
    out[:, -1] = factor.b
    return out
