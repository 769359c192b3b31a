from __future__ import annotations

from dataclasses import dataclass

import numpy as onp
import scipy.sparse
import scipy.sparse.csgraph

from ._exceptions import (
    DegenerateSystemError,
    DisconnectedGraphError,
    InvalidConfigError,
)
from ._factor_graph import GaussianFactorGraph
from ._vector_values import Key


@dataclass(frozen=True)
class SubgraphSplit:
    """Result of partitioning a linear factor graph around a spanning tree."""

    tree: GaussianFactorGraph
    """`Ab1`: unary factors plus one factor per spanning-tree edge."""
    loops: GaussianFactorGraph
    """`Ab2`: every remaining (loop-closing) factor."""
    ordering: tuple[Key, ...]
    """Elimination ordering for `tree`. Leaves first, root last."""
    root: Key
    """Root of the spanning tree."""
    tree_indices: tuple[int, ...]
    """Indices of `tree` factors in the input graph."""
    loop_indices: tuple[int, ...]
    """Indices of `loops` factors in the input graph."""


def split_spanning_tree(
    graph: GaussianFactorGraph, root: Key | None = None
) -> SubgraphSplit:
    """Split a graph into a spanning-tree subgraph and its complement.

    The spanning tree is a breadth-first tree of the variable adjacency graph,
    where two variables are adjacent if a binary factor connects them. Unary
    factors never close a loop, so all of them go into the tree subgraph.
    Factors touching more than two variables are always treated as
    loop-closing.

    Args:
        graph: Linear factor graph to split.
        root: Variable to grow the tree from. Defaults to the first variable
            with a unary factor, or the first variable of the graph.

    Raises:
        DisconnectedGraphError: if the spanning tree cannot reach every variable.
        InvalidConfigError: if `root` is not a variable of the graph.
    """
    keys = graph.keys()
    if len(keys) == 0:
        raise DegenerateSystemError("Cannot split a graph with no variables.")
    index_from_key = {key: i for i, key in enumerate(keys)}
    num_vars = len(keys)

    # Build the (symmetric) variable adjacency matrix from binary factors.
    edge_rows = list[int]()
    edge_cols = list[int]()
    for factor in graph.factors:
        if len(factor.keys) == 2:
            i, j = (index_from_key[k] for k in factor.keys)
            edge_rows.extend((i, j))
            edge_cols.extend((j, i))
    adjacency = scipy.sparse.coo_matrix(
        (
            onp.ones(len(edge_rows)),
            (
                onp.asarray(edge_rows, dtype=onp.int64),
                onp.asarray(edge_cols, dtype=onp.int64),
            ),
        ),
        shape=(num_vars, num_vars),
    ).tocsr()

    num_components, labels = scipy.sparse.csgraph.connected_components(
        adjacency, directed=False
    )
    if num_components > 1:
        components = [
            [keys[i] for i in onp.flatnonzero(labels == label)]
            for label in range(num_components)
        ]
        raise DisconnectedGraphError(
            f"Variable graph has {num_components} connected components; a"
            f" spanning tree cannot cover all variables. Components: {components}"
        )

    if root is None:
        root = next(
            (factor.keys[0] for factor in graph.factors if len(factor.keys) == 1),
            keys[0],
        )
    if root not in index_from_key:
        raise InvalidConfigError(f"Root {root} is not a variable of the graph.")

    bfs_order, predecessors = scipy.sparse.csgraph.breadth_first_order(
        adjacency,
        i_start=index_from_key[root],
        directed=False,
        return_predecessors=True,
    )
    assert len(bfs_order) == num_vars

    # Each tree edge is claimed by the first binary factor along it.
    unclaimed_edges = {
        (min(int(i), int(predecessors[i])), max(int(i), int(predecessors[i])))
        for i in bfs_order
        if predecessors[i] >= 0
    }
    tree_indices = list[int]()
    loop_indices = list[int]()
    for factor_index, factor in enumerate(graph.factors):
        if len(factor.keys) == 1:
            tree_indices.append(factor_index)
        elif len(factor.keys) == 2:
            i, j = sorted(index_from_key[k] for k in factor.keys)
            if (i, j) in unclaimed_edges:
                unclaimed_edges.remove((i, j))
                tree_indices.append(factor_index)
            else:
                loop_indices.append(factor_index)
        else:
            loop_indices.append(factor_index)
    assert len(unclaimed_edges) == 0

    return SubgraphSplit(
        tree=graph.subgraph(tree_indices),
        loops=graph.subgraph(loop_indices),
        ordering=tuple(keys[i] for i in reversed(bfs_order)),
        root=root,
        tree_indices=tuple(tree_indices),
        loop_indices=tuple(loop_indices),
    )
