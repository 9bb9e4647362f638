"""pipex: an evaluation engine for pipeline expressions."""

from pipex.pipex_config import PipeConfig, load_config, dump_config
from pipex.pipex_datatypes import (
    Scope, Binding, Boundary, Thunk, VisibilityFlag, Invisible, Closure,
    Name, Literal, Call, Assign, Block, Fn, Return, Pipe,
    Stage, Pipeline, lazy_args,
    PipelineError, ConfigurationError, StageFailure, UnboundIdentifier,
    EvaluationError, EvaluationDepthError, NonLocalExit,
)
from pipex.pipex_evaluator import Evaluator
from pipex.pipex_expander import Expander, ExpandedForm
from pipex.pipex_scopes import PipeClosure, ScopeGuard, select_scope
from pipex.pipex_engine import PipelineEngine, evaluate_pipeline, make_pipeline_closure
from pipex.pipex_printer import Printer
from pipex.pipex_runtime import StdLib, PipelineRunner, ExecutionResult, default_scope

__version__ = "0.1.0"
