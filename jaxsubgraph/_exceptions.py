class SubgraphSolverError(Exception):
    """Base class for errors raised while building or running a subgraph solve."""


class DisconnectedGraphError(SubgraphSolverError):
    """The variable adjacency graph has more than one connected component, so no
    spanning tree can cover every variable."""


class DegenerateSystemError(SubgraphSolverError):
    """Elimination produced (or was handed) a singular triangular factor: a free
    variable, a zero pivot, or a non-square `R` block."""


class NonDescentStepError(SubgraphSolverError):
    """A conjugate gradient step failed to decrease the objective."""

    def __init__(self, message: str, iteration: int) -> None:
        super().__init__(message)
        self.iteration = iteration
        """Iteration at which the anomaly was detected."""


class InvalidConfigError(SubgraphSolverError, ValueError):
    """Rejected configuration value."""
