# pipex runtime: builtins and the host-facing runner

import inspect
from dataclasses import dataclass, field
from typing import Any, List, Optional, Literal, Dict, Iterable

from pipex.pipex_config import PipeConfig
from pipex.pipex_datatypes import (
    Scope, Boundary, Thunk, Invisible, Node, Pipeline, lazy_args,
    PipelineError, ConfigurationError, StageFailure, UnboundIdentifier,
    EvaluationError, EvaluationDepthError, NonLocalExit,
)
from pipex.pipex_evaluator import Evaluator, callable_name
from pipex.pipex_engine import PipelineEngine
from pipex.pipex_expander import Expander
from pipex.pipex_printer import Printer
from pipex.pipex_scopes import PipeClosure


# ===================================================================
# 1. The Standard Library
# ===================================================================
class StdLib:
    """Python implementations of the pipex builtins.

    A method `_foo_bar` is bound as `foo-bar`. Methods marked with
    `lazy_args` receive Thunks; a keyword-only `scope` parameter receives
    the calling scope.
    """
    def __init__(self, evaluator: Optional[Evaluator] = None):
        self.evaluator = evaluator

    def bind_into(self, scope: Scope) -> Scope:
        for name, member in inspect.getmembers(self):
            if name.startswith('_') and not name.startswith('__') and callable(member):
                scope[name[1:].replace('_', '-')] = member
        return scope

    # --- Math and Logic ---
    def _add(self, a, b): return a + b
    def _sub(self, a, b): return a - b
    def _mul(self, a, b): return a * b
    def _div(self, a, b): return a / b
    def _neg(self, x): return -x
    def _eq(self, a, b): return a == b
    def _double(self, x): return x * 2
    def _increment(self, x): return x + 1

    # --- Values ---
    def _identity(self, x): return x
    def _invisible(self, x=None): return Invisible(x)
    def _visible(self, x=None): return x
    def _list(self, *items): return list(items)
    def _pair(self, a, b): return [a, b]
    def _columns(self, x, y):
        """A two-column table: {'x': [...], 'y': [...]}."""
        return {"x": x, "y": y}
    def _len(self, collection): return len(collection)

    def _fail(self, message="failed"):
        raise RuntimeError(message)

    # --- Side effects ---
    def _emit(self, topic_or_topics, *message_parts):
        """Generates a side-effect event for the host application."""
        topics = topic_or_topics if isinstance(topic_or_topics, list) else [topic_or_topics]
        event = {"topics": topics, "message": " ".join(map(str, message_parts))}
        if self.evaluator:
            self.evaluator.side_effects.append(event)
        return Invisible(None)

    def _print(self, value):
        if self.evaluator:
            self.evaluator.side_effects.append({"topics": ["stdout"], "message": Printer().pformat(value)})
        return Invisible(value)

    # --- Scopes ---
    def _assign(self, name, value, *, scope: Scope):
        scope[name] = value
        return Invisible(value)

    def _current_scope(self, *, scope: Scope):
        return scope

    # --- Laziness ---
    @lazy_args
    def _force(self, thunk):
        return thunk.force()

    @lazy_args
    def _try(self, expr, fallback=None):
        """Forces `expr`; if that raises, returns the (forced) fallback instead."""
        ev = self.evaluator
        depth = len(ev.call_stack) if ev is not None else 0
        try:
            return expr.force()
        except Exception:
            if ev is not None:
                del ev.call_stack[depth:]
            return fallback.force() if fallback is not None else None


def default_scope(evaluator: Optional[Evaluator] = None) -> Scope:
    """A fresh root scope holding the builtins, with its own exit boundary."""
    root = Scope(boundary=Boundary("root"))
    return StdLib(evaluator).bind_into(root)


# ===================================================================
# 2. Host execution
# ===================================================================

@dataclass
class ExecutionResult:
    """The structured result of a runner call."""
    status: Literal['success', 'error']
    value: Any = None
    visible: bool = True
    error_message: Optional[str] = None
    error: Optional[BaseException] = None
    side_effects: List[Dict] = field(default_factory=list)

    def format_error(self) -> str:
        if self.status != 'error':
            return ""
        return str(self.error_message or "Unknown error")


class PipelineRunner:
    """Evaluates pipelines and expressions against a persistent root scope.

    Errors are reported as ExecutionResult values rather than raised, and a
    `return` reaching the root scope becomes the result.
    """

    def __init__(self, config: Optional[PipeConfig] = None):
        self.config = config or PipeConfig()
        self.evaluator = Evaluator(self.config)
        self.root_scope = default_scope(self.evaluator)
        self.printer = Printer()

    def bind(self, name: str, value: Any):
        """Exposes a host value or callable to pipeline stages."""
        self.root_scope[name] = value

    def _seed(self, initial_value: Any) -> Thunk:
        if isinstance(initial_value, Thunk):
            return initial_value
        if isinstance(initial_value, Node):
            return self.evaluator.capture(initial_value, self.root_scope)
        return Thunk.of_value(initial_value)

    def run(self, stages: Iterable[Any], initial_value: Any = None, **options) -> ExecutionResult:
        """Runs a pipeline over `initial_value` in the root scope."""
        def _go(engine: PipelineEngine):
            pipeline = Pipeline(tuple(stages), self.root_scope)
            return engine.evaluate(pipeline, self._seed(initial_value), self.root_scope)
        return self._execute(_go, options)

    def eval(self, node: Any, **options) -> ExecutionResult:
        """Evaluates an expression (which may contain Pipe nodes) in the root scope."""
        return self._execute(lambda engine: self.evaluator.eval(node, self.root_scope), options)

    def make_closure(self, stages: Iterable[Any], **options) -> PipeClosure:
        config = self.config.replace(**{**options, "scope_kind": "closure"})
        engine = PipelineEngine(self.evaluator, config)
        return engine.make_closure(Pipeline(tuple(stages), self.root_scope))

    def explain(self, stages: Iterable[Any], **options) -> str:
        """Renders the rewritten form of a pipeline without running it."""
        expander = Expander(self.config.replace(**options))
        form = expander.expand(Pipeline(tuple(stages), self.root_scope))
        return self.printer.pformat(form.node)

    def display(self, result: ExecutionResult) -> Optional[str]:
        """The printed value of a successful, visible result; otherwise None."""
        if result.status != 'success':
            return None
        return self.printer.display(result.value, result.visible)

    def _execute(self, action, options) -> ExecutionResult:
        ev = self.evaluator
        ev.side_effects.clear()
        ev.call_stack.clear()
        prev_config = ev.config
        try:
            config = self.config.replace(**options)
            ev.config = config
            try:
                value, visible = action(PipelineEngine(ev, config))
            finally:
                ev.config = prev_config
        except NonLocalExit as sig:
            if sig.target is self.root_scope.boundary:
                return ExecutionResult('success', sig.value, sig.visible, side_effects=list(ev.side_effects))
            return self._error(EvaluationError("return outside of any execution unit"))
        except Exception as e:
            return self._error(e)
        return ExecutionResult('success', value, visible, side_effects=list(ev.side_effects))

    def _error(self, e: Exception) -> ExecutionResult:
        msg = self._format_runtime_error(e)
        self.evaluator.side_effects.append({'topics': ['stderr'], 'message': msg})
        return ExecutionResult(
            'error',
            error_message=msg,
            error=e,
            side_effects=list(self.evaluator.side_effects),
        )

    def _format_runtime_error(self, e: Exception) -> str:
        match e:
            case ConfigurationError():
                msg = f"ConfigurationError: {e}"
            case StageFailure():
                msg = f"StageFailure: {e}"
            case UnboundIdentifier():
                msg = f"UnboundIdentifier: {e.name}"
            case EvaluationDepthError():
                msg = f"EvaluationDepthError: {e}"
            case EvaluationError():
                msg = f"EvaluationError: {e}"
            case PipelineError():
                msg = f"PipelineError: {e}"
            case _:
                msg = f"InternalError: {type(e).__name__}: {e}"
        frames = e.frames if isinstance(e, PipelineError) and e.frames is not None else self.evaluator.call_stack
        st = self._format_stacktrace(frames)
        if st:
            msg += "\n" + st
        return msg

    def _format_stacktrace(self, stack) -> str:
        if not stack:
            return ""
        pf = self.printer.pformat

        def fmt(arg):
            if isinstance(arg, Thunk):
                return pf(arg.value) if arg.forced else "<thunk>"
            if callable(arg) and not isinstance(arg, PipeClosure):
                return callable_name(arg)
            return pf(arg)

        frames = []
        for frame in stack:
            args_s = " ".join(fmt(a) for a in frame.get('args') or [])
            frames.append(f"({frame.get('name') or '<call>'}{' ' + args_s if args_s else ''})")
        return "pipex stacktrace: " + " ".join(frames)
