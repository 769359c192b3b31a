"""Solve a random grid-shaped linear factor graph with subgraph-preconditioned
conjugate gradient, and compare against plain conjugate gradient and a dense
least-squares solve.

For a summary of options:

    python subgraph_grid.py --help

"""

import jax
import jax_dataclasses as jdc
import numpy as onp
import tyro
from jax import numpy as jnp

import jaxsubgraph

jax.config.update("jax_enable_x64", True)


@jdc.pytree_dataclass
class UnpreconditionedSystem:
    """The graph's own `A·x = b`, with no change of variables."""

    A: jaxsubgraph.SparseCooMatrix
    b: jaxsubgraph.Errors
    layout: jdc.Static[jaxsubgraph.VectorLayout]

    @staticmethod
    def make(graph: jaxsubgraph.GaussianFactorGraph) -> "UnpreconditionedSystem":
        layout = graph.make_layout()
        return UnpreconditionedSystem(graph.to_sparse(layout), graph.rhs(), layout)

    @jdc.jit
    def error(self, x: jaxsubgraph.VectorValues) -> jax.Array:
        residual = self.A @ x.storage - self.b.flat
        return 0.5 * jnp.sum(residual**2)

    @jdc.jit
    def gradient(self, x: jaxsubgraph.VectorValues) -> jaxsubgraph.VectorValues:
        residual = self.A @ x.storage - self.b.flat
        return jaxsubgraph.VectorValues(self.A.T @ residual, self.layout)

    @jdc.jit
    def apply_forward(self, x: jaxsubgraph.VectorValues) -> jaxsubgraph.Errors:
        return jaxsubgraph.Errors(self.A @ x.storage, self.b.sizes)

    @jdc.jit
    def apply_adjoint(self, e: jaxsubgraph.Errors) -> jaxsubgraph.VectorValues:
        return jaxsubgraph.VectorValues(self.A.T @ e.flat, self.layout)


def make_grid(
    rows: int, cols: int, noise: float, seed: int
) -> jaxsubgraph.GaussianFactorGraph:
    """2D grid of 2-dimensional variables, measured by noisy relative offsets.
    A prior anchors the corner."""
    rng = onp.random.default_rng(seed)
    factors = [
        jaxsubgraph.JacobianFactor.make({(0, 0): onp.eye(2)}, onp.zeros(2))
    ]
    for i in range(rows):
        for j in range(cols):
            for di, dj in ((1, 0), (0, 1)):
                if i + di < rows and j + dj < cols:
                    offset = onp.array([di, dj], dtype=float)
                    factors.append(
                        jaxsubgraph.JacobianFactor.make(
                            {(i, j): -onp.eye(2), (i + di, j + dj): onp.eye(2)},
                            offset + noise * rng.normal(size=2),
                        )
                    )
    return jaxsubgraph.GaussianFactorGraph.make(factors)


def main(
    rows: int = 20,
    cols: int = 20,
    noise: float = 0.1,
    seed: int = 0,
    max_iterations: int = 500,
    verbose: bool = False,
) -> None:
    with jaxsubgraph.utils.stopwatch("Making graph"):
        graph = make_grid(rows, cols, noise, seed)
    cg_config = jaxsubgraph.ConjugateGradientConfig(
        relative_tolerance=1e-8, max_iterations=max_iterations
    )

    solver = jaxsubgraph.SubgraphSolver(
        jaxsubgraph.SubgraphSolverConfig(cg=cg_config, verbose=verbose)
    )
    with jaxsubgraph.utils.stopwatch("Subgraph-preconditioned solve"):
        x, summary = solver.solve(graph, return_summary=True)
        jax.block_until_ready(x)

    with jaxsubgraph.utils.stopwatch("Unpreconditioned solve"):
        plain = jaxsubgraph.conjugate_gradient(
            UnpreconditionedSystem.make(graph),
            jaxsubgraph.VectorValues.zeros(graph.make_layout()),
            cg_config,
        )
        jax.block_until_ready(plain.y)

    with jaxsubgraph.utils.stopwatch("Dense solve"):
        A, b = graph.to_dense()
        x_dense, *_ = onp.linalg.lstsq(onp.asarray(A), onp.asarray(b), rcond=None)

    print(f"Variables: {rows * cols}, factors: {len(graph)}")
    print(
        f"Tree factors: {len(summary.split.tree)},"
        f" loop factors: {len(summary.split.loops)}"
    )
    print(f"Subgraph CG: {summary.iterations} iterations ({summary.stage.name})")
    print(f"Plain CG: {plain.iterations} iterations ({plain.status.name})")
    print(f"Max deviation from dense: {onp.max(onp.abs(x.storage - x_dense)):.3e}")


if __name__ == "__main__":
    tyro.cli(main)
