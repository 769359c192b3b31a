from __future__ import annotations

import enum
import math
import time
from dataclasses import dataclass, field
from typing import Literal, overload

from loguru import logger

from ._conjugate_gradient import (
    ConjugateGradientConfig,
    ConjugateGradientResult,
    ConjugateGradientStatus,
    conjugate_gradient,
)
from ._elimination import eliminate
from ._exceptions import InvalidConfigError
from ._factor_graph import GaussianFactorGraph
from ._preconditioner import SubgraphPreconditioner
from ._subgraph import SubgraphSplit, split_spanning_tree
from ._vector_values import Key, VectorValues
from .utils import stopwatch


class SolveStage(enum.Enum):
    """Progress of one solve cycle."""

    UNINITIALIZED = enum.auto()
    TREE_BUILT = enum.auto()
    ELIMINATED = enum.auto()
    PRECONDITIONER_READY = enum.auto()
    CONVERGED = enum.auto()
    MAX_ITERATIONS_REACHED = enum.auto()
    NON_DESCENT = enum.auto()


_STAGE_FROM_CG_STATUS = {
    ConjugateGradientStatus.CONVERGED: SolveStage.CONVERGED,
    ConjugateGradientStatus.MAX_ITERATIONS_REACHED: SolveStage.MAX_ITERATIONS_REACHED,
    ConjugateGradientStatus.NON_DESCENT: SolveStage.NON_DESCENT,
}


@dataclass(frozen=True)
class SubgraphSolverConfig:
    cg: ConjugateGradientConfig = field(default_factory=ConjugateGradientConfig)
    """Conjugate gradient parameters."""
    verbose: bool = False
    """Set to `True` to log stages and CG steps. Warnings are always logged."""
    time_budget: float | None = None
    """Wall-clock budget in seconds for the CG phase. Checked between steps;
    running out terminates with `MAX_ITERATIONS_REACHED`."""
    root: Key | None = None
    """Spanning tree root. See `split_spanning_tree()`."""
    pivot_tolerance: float = 1e-9
    """Relative pivot tolerance used when eliminating the tree."""

    def __post_init__(self) -> None:
        if self.time_budget is not None and not self.time_budget > 0.0:
            raise InvalidConfigError(
                f"time_budget must be positive, got {self.time_budget}."
            )
        if not self.pivot_tolerance >= 0.0:
            raise InvalidConfigError(
                f"pivot_tolerance must be non-negative, got {self.pivot_tolerance}."
            )


@dataclass(frozen=True)
class SubgraphSolveSummary:
    stage: SolveStage
    """Final stage reached."""
    cg: ConjugateGradientResult[VectorValues]
    split: SubgraphSplit
    timings: dict[str, float]
    """Elapsed seconds for each stage."""

    @property
    def iterations(self) -> int:
        return self.cg.iterations


@dataclass(frozen=True)
class SubgraphSolver:
    """Solves a linear factor graph with subgraph-preconditioned conjugate
    gradient: split off a spanning tree, eliminate it, and run CG on what's
    left in tree-preconditioned coordinates."""

    config: SubgraphSolverConfig = field(default_factory=SubgraphSolverConfig)

    def build_preconditioner(
        self,
        graph: GaussianFactorGraph,
        timings: dict[str, float] | None = None,
    ) -> tuple[SubgraphPreconditioner, SubgraphSplit]:
        """Split, eliminate, and build the preconditioned system for one
        linearization.

        Raises:
            DisconnectedGraphError: if no spanning tree covers all variables.
            DegenerateSystemError: if the tree subsystem is singular.
        """
        verbose = self.config.verbose
        with stopwatch("split", timings, verbose):
            split = split_spanning_tree(graph, root=self.config.root)
        if verbose:
            logger.info(
                "Stage {}: {} tree factors, {} loop factors, root={}",
                SolveStage.TREE_BUILT.name,
                len(split.tree),
                len(split.loops),
                split.root,
            )

        with stopwatch("eliminate", timings, verbose):
            rc1 = eliminate(
                split.tree, split.ordering, pivot_tolerance=self.config.pivot_tolerance
            )
            xbar = rc1.optimize()
        if verbose:
            logger.info("Stage {}", SolveStage.ELIMINATED.name)

        preconditioner = SubgraphPreconditioner.make(split.tree, split.loops, rc1, xbar)
        if verbose:
            logger.info("Stage {}", SolveStage.PRECONDITIONER_READY.name)
            preconditioner.log_summary()
        return preconditioner, split

    def optimize(
        self, preconditioner: SubgraphPreconditioner
    ) -> tuple[VectorValues, ConjugateGradientResult[VectorValues]]:
        """Run CG from `y = 0` (`x = xbar`) and map the result back to `x`."""
        deadline = (
            math.inf
            if self.config.time_budget is None
            else time.time() + self.config.time_budget
        )

        def should_stop(iteration: int) -> bool:
            return time.time() > deadline

        cg_result = conjugate_gradient(
            preconditioner,
            preconditioner.zero_y(),
            self.config.cg,
            should_stop=should_stop,
            verbose=self.config.verbose,
        )
        return preconditioner.x(cg_result.y), cg_result

    @overload
    def solve(
        self,
        graph: GaussianFactorGraph,
        return_summary: Literal[False] = False,
    ) -> VectorValues: ...

    @overload
    def solve(
        self,
        graph: GaussianFactorGraph,
        return_summary: Literal[True],
    ) -> tuple[VectorValues, SubgraphSolveSummary]: ...

    def solve(
        self,
        graph: GaussianFactorGraph,
        return_summary: bool = False,
    ) -> VectorValues | tuple[VectorValues, SubgraphSolveSummary]:
        """Compute the least-squares solution of a linear factor graph. For a
        graph linearized around some point, this is the correction to apply.

        Structural and elimination errors propagate to the caller untouched.
        """
        timings: dict[str, float] = {}
        preconditioner, split = self.build_preconditioner(graph, timings)
        with stopwatch("conjugate_gradient", timings, self.config.verbose):
            x, cg_result = self.optimize(preconditioner)

        stage = _STAGE_FROM_CG_STATUS[cg_result.status]
        if self.config.verbose:
            logger.info(
                "Stage {} after {} CG iterations: error {:.6e} -> {:.6e}",
                stage.name,
                cg_result.iterations,
                cg_result.error_history[0],
                cg_result.error,
            )

        # Report the correction in the graph's own variable order.
        x = x.update_layout(graph.make_layout())
        if return_summary:
            return x, SubgraphSolveSummary(
                stage=stage, cg=cg_result, split=split, timings=timings
            )
        else:
            return x

    def update(
        self, graph: GaussianFactorGraph, linearization_point: VectorValues
    ) -> VectorValues:
        """Solve for the correction and apply it to a vector-space linearization
        point: `linearization_point + correction`."""
        correction = self.solve(graph)
        return linearization_point + correction.update_layout(
            linearization_point.layout
        )
