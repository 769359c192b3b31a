from . import utils as utils
from ._conjugate_gradient import ConjugateGradientConfig as ConjugateGradientConfig
from ._conjugate_gradient import ConjugateGradientResult as ConjugateGradientResult
from ._conjugate_gradient import ConjugateGradientStatus as ConjugateGradientStatus
from ._conjugate_gradient import LinearLeastSquaresSystem as LinearLeastSquaresSystem
from ._conjugate_gradient import conjugate_gradient as conjugate_gradient
from ._elimination import GaussianBayesNet as GaussianBayesNet
from ._elimination import GaussianConditional as GaussianConditional
from ._elimination import TriangularSolver as TriangularSolver
from ._elimination import eliminate as eliminate
from ._errors import Errors as Errors
from ._exceptions import DegenerateSystemError as DegenerateSystemError
from ._exceptions import DisconnectedGraphError as DisconnectedGraphError
from ._exceptions import InvalidConfigError as InvalidConfigError
from ._exceptions import NonDescentStepError as NonDescentStepError
from ._exceptions import SubgraphSolverError as SubgraphSolverError
from ._factor_graph import GaussianFactorGraph as GaussianFactorGraph
from ._factor_graph import JacobianFactor as JacobianFactor
from ._preconditioner import SubgraphPreconditioner as SubgraphPreconditioner
from ._solver import SolveStage as SolveStage
from ._solver import SubgraphSolveSummary as SubgraphSolveSummary
from ._solver import SubgraphSolver as SubgraphSolver
from ._solver import SubgraphSolverConfig as SubgraphSolverConfig
from ._sparse_matrices import SparseCooCoordinates as SparseCooCoordinates
from ._sparse_matrices import SparseCooMatrix as SparseCooMatrix
from ._subgraph import SubgraphSplit as SubgraphSplit
from ._subgraph import split_spanning_tree as split_spanning_tree
from ._vector_values import Key as Key
from ._vector_values import Ordering as Ordering
from ._vector_values import VectorLayout as VectorLayout
from ._vector_values import VectorValues as VectorValues
