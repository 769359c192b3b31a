from __future__ import annotations

import jax
import jax_dataclasses as jdc
import numpy as onp
from jax import numpy as jnp
from loguru import logger

from ._elimination import GaussianBayesNet, TriangularSolver
from ._errors import Errors
from ._exceptions import DegenerateSystemError
from ._factor_graph import GaussianFactorGraph
from ._sparse_matrices import SparseCooMatrix
from ._vector_values import Ordering, VectorLayout, VectorValues


@jdc.pytree_dataclass
class _SubgraphOperators:
    """Array form of the split system. Every operator is a fixed number of
    gathers, scatters and scans, so compiled programs don't grow with the graph.
    """

    a1: SparseCooMatrix
    b1: Errors
    a2: SparseCooMatrix
    b2: Errors
    b2bar: Errors
    r1: TriangularSolver
    xbar: VectorValues

    @jdc.jit
    def x(self, y: VectorValues) -> VectorValues:
        return self.xbar + self.r1.solve(y)

    @jdc.jit
    def error(self, y: VectorValues) -> jax.Array:
        x = self.x(y).storage
        tree_residual = self.a1 @ x - self.b1.flat
        loop_residual = self.a2 @ x - self.b2.flat
        return 0.5 * (jnp.sum(tree_residual**2) + jnp.sum(loop_residual**2))

    @jdc.jit
    def gradient(self, y: VectorValues) -> VectorValues:
        loop_residual = self.a2 @ self.r1.solve(y).storage - self.b2bar.flat
        return y + self.r1.solve_transpose(
            VectorValues(self.a2.T @ loop_residual, y.layout)
        )

    @jdc.jit
    def apply_forward(self, y: VectorValues) -> Errors:
        return Errors.concatenate(
            Errors.from_vector_values(y),
            Errors(self.a2 @ self.r1.solve(y).storage, self.b2.sizes),
        )

    @jdc.jit
    def apply_adjoint(self, e: Errors) -> VectorValues:
        layout = self.xbar.layout
        e_tree, e_loop = e.split(len(layout))
        assert e_tree.sizes == layout.dims
        assert e_loop.sizes == self.b2.sizes
        return VectorValues(e_tree.flat, layout) + self.r1.solve_transpose(
            VectorValues(self.a2.T @ e_loop.flat, layout)
        )


@jdc.pytree_dataclass
class SubgraphPreconditioner:
    """Linear system `A·x = b` in subgraph-preconditioned coordinates.

    Starting with a graph `A·x = b`, we split it in two systems `A1·x = b1` (a
    spanning tree) and `A2·x = b2` (everything else). Eliminating the tree gives
    `R1·x = c1` with solution `xbar`, and we make the substitution
    `y = R1·(x - xbar)`. Conjugate gradient then runs on `y`, and the result is
    mapped back with `x(y)`.

    In `y` coordinates the objective is `½‖y‖² + ½‖A2·R1⁻¹·y - b2bar‖²` (up to
    a constant), where `b2bar = b2 - A2·xbar`. The forward operator is therefore
    `[I; A2·R1⁻¹]`, and its adjoint is `[I, R1⁻ᵀ·A2ᵀ]`.

    All members are immutable. Build one instance per linearization with
    `SubgraphPreconditioner.make()`.
    """

    ab1: GaussianFactorGraph
    """Spanning-tree subgraph, `A1·x = b1`."""
    ab2: GaussianFactorGraph
    """Loop-closing subgraph, `A2·x = b2`."""
    rc1: GaussianBayesNet
    """Triangular factorization of `ab1`, `R1·x = c1`."""
    xbar: VectorValues
    """Solution of `R1·x = c1`."""
    b2bar: Errors
    """`b2 - A2·xbar`, one entry per factor of `ab2`."""
    operators: _SubgraphOperators
    """Sparse matrices and the triangular solver used by the operators below."""

    @staticmethod
    def make(
        ab1: GaussianFactorGraph,
        ab2: GaussianFactorGraph,
        rc1: GaussianBayesNet,
        xbar: VectorValues,
    ) -> SubgraphPreconditioner:
        """Build a preconditioner and precompute `b2bar`.

        Raises:
            DegenerateSystemError: if `rc1` does not cover every variable of `ab1`
                and `ab2`, or if one of its `R` blocks is non-square or singular.
        """
        layout = rc1.layout
        uncovered = (set(ab1.keys()) | set(ab2.keys())) - set(layout.keys)
        if len(uncovered) > 0:
            raise DegenerateSystemError(
                f"Tree factorization leaves variables free: {sorted(map(str, uncovered))}"
            )
        rc1.check_nonsingular()

        # Resolve layout mismatches; `y` always lives in the elimination layout.
        xbar = xbar.update_layout(layout)
        b2bar = -ab2.error_vectors(xbar)
        operators = _SubgraphOperators(
            a1=ab1.to_sparse(layout),
            b1=ab1.rhs(),
            a2=ab2.to_sparse(layout),
            b2=ab2.rhs(),
            b2bar=b2bar,
            r1=rc1.triangular_solver(),
            xbar=xbar,
        )
        return SubgraphPreconditioner(
            ab1=ab1, ab2=ab2, rc1=rc1, xbar=xbar, b2bar=b2bar, operators=operators
        )

    @property
    def layout(self) -> VectorLayout:
        """Layout shared by `x` and `y`: variables in elimination order."""
        return self.rc1.layout

    def zero_y(self) -> VectorValues:
        """`y = 0`, which maps to `x = xbar`."""
        return VectorValues.zeros(self.layout)

    def x(self, y: VectorValues) -> VectorValues:
        """`x = xbar + R1⁻¹·y`."""
        assert y.layout == self.layout
        return self.operators.x(y)

    def error(self, y: VectorValues) -> jax.Array:
        """`½‖A1·x(y) - b1‖² + ½‖A2·x(y) - b2‖²`."""
        assert y.layout == self.layout
        return self.operators.error(y)

    def gradient(self, y: VectorValues) -> VectorValues:
        """`y + R1⁻ᵀ·A2ᵀ·(A2·R1⁻¹·y - b2bar)`."""
        assert y.layout == self.layout
        return self.operators.gradient(y)

    def apply_forward(self, y: VectorValues) -> Errors:
        """Apply the forward operator: `[y; A2·R1⁻¹·y]`.

        The tree part has one entry per variable, in layout order; the loop part
        has one entry per factor of `ab2`."""
        assert y.layout == self.layout
        return self.operators.apply_forward(y)

    def apply_adjoint(self, e: Errors) -> VectorValues:
        """Apply the adjoint operator: `e_tree + R1⁻ᵀ·A2ᵀ·e_loop`."""
        assert len(e) == len(self.layout) + len(self.ab2)
        return self.operators.apply_adjoint(e)

    def ab1_dense(self, ordering: Ordering | None = None) -> tuple[jax.Array, jax.Array]:
        return self.ab1.to_dense(self._resolve_layout(ordering))

    def ab2_dense(self, ordering: Ordering | None = None) -> tuple[jax.Array, jax.Array]:
        return self.ab2.to_dense(self._resolve_layout(ordering))

    def a1_sparse(self, ordering: Ordering | None = None) -> SparseCooMatrix:
        return self.ab1.to_sparse(self._resolve_layout(ordering))

    def a2_sparse(self, ordering: Ordering | None = None) -> SparseCooMatrix:
        return self.ab2.to_sparse(self._resolve_layout(ordering))

    def b1(self) -> jax.Array:
        return self.ab1.rhs_vector()

    def b2(self) -> jax.Array:
        return self.ab2.rhs_vector()

    def assemble_values(
        self, vector: jax.Array | onp.ndarray, ordering: Ordering | None = None
    ) -> VectorValues:
        return VectorValues.from_flat(vector, self._resolve_layout(ordering))

    def _resolve_layout(self, ordering: Ordering | None) -> VectorLayout:
        return self.layout if ordering is None else self.layout.reordered(ordering)

    def log_summary(self) -> None:
        """Log the size of each part of the split system."""
        logger.info(
            "SubgraphPreconditioner: {} variables (dim {}), {} tree factors,"
            " {} loop factors, {} triangular solve levels, |b2bar|={:.3e}",
            len(self.layout),
            self.layout.dim,
            len(self.ab1),
            len(self.ab2),
            self.operators.r1.num_levels,
            float(jnp.sqrt(self.b2bar.squared_norm())),
        )
