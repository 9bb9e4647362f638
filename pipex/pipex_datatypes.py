"""
Defines the core data types for the pipex pipeline engine.

This module provides the runtime primitives (scopes, bindings, thunks,
exit boundaries, the visibility flag), the expression nodes that stages
are written in, the Stage/Pipeline containers, and the error hierarchy.
"""

from abc import ABC
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Tuple, Callable, TYPE_CHECKING
import collections.abc

if TYPE_CHECKING:
    from pipex.pipex_evaluator import Evaluator


# =================================================================
# Errors
# =================================================================

class PipelineError(Exception):
    """Base class for every error raised by the engine.

    `frames` holds the call frames that were active when the error left a
    pipeline evaluation; the evaluator's own call stack is unwound by then.
    """
    frames: Optional[List[Dict[str, Any]]] = None


class ConfigurationError(PipelineError, ValueError):
    """A pipeline or option set that cannot be rewritten. Raised before any stage runs."""
    pass


class StageFailure(PipelineError):
    """A stage's own computation raised. The original exception is the __cause__."""
    def __init__(self, index: int, label: str, error: BaseException):
        super().__init__(f"stage {index} ({label}): {type(error).__name__}: {error}")
        self.index = index
        self.label = label
        self.error = error


class UnboundIdentifier(PipelineError, LookupError):
    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return self.name


class EvaluationError(PipelineError):
    """Engine-level misuse: recursive forcing, bad call targets, arity mismatches."""
    pass


class EvaluationDepthError(EvaluationError):
    def __init__(self, limit: int):
        super().__init__(f"evaluation depth exceeded max_depth={limit}")
        self.limit = limit


class NonLocalExit(BaseException):
    """Unwind signal raised by `return`, tagged with the Boundary it targets.

    Derives from BaseException so that stage code catching Exception never
    intercepts control flow.
    """
    def __init__(self, value: Any, visible: bool, target: Optional['Boundary']):
        super().__init__(value)
        self.value = value
        self.visible = visible
        self.target = target

    def __repr__(self) -> str:
        return f"NonLocalExit(value={self.value!r}, target={self.target!r})"


# =================================================================
# Runtime Primitives
# =================================================================

class Boundary:
    """An execution unit that a non-local exit can target. Compared by identity."""
    def __init__(self, label: str = "unit"):
        self.label = label

    def __repr__(self) -> str:
        return f"<Boundary {self.label} #{id(self)}>"


class Invisible:
    """Returned by a callable to mark its result as hidden from default display."""
    __slots__ = ("value",)

    def __init__(self, value: Any = None):
        self.value = value

    def __repr__(self) -> str:
        return f"Invisible({self.value!r})"

    def __eq__(self, other):
        return isinstance(other, Invisible) and self.value == other.value


class Binding:
    """A name's slot in a Scope: a forced value or a Thunk.

    `engine` marks bindings introduced by pipeline evaluation, so that teardown
    only ever removes what the engine added.
    """
    __slots__ = ("value", "engine")

    def __init__(self, value: Any, engine: bool = False):
        self.value = value
        self.engine = engine

    def __repr__(self) -> str:
        tag = " engine" if self.engine else ""
        return f"<Binding{tag} {self.value!r}>"


class Scope:
    """A chained identifier-to-binding mapping.

    Lookup walks the parent chain; writes always land in this scope's own
    bindings. A scope may carry a Boundary, which marks it as the root scope
    of an execution unit (a closure call, a new-scope pipeline, a script).
    """
    def __init__(self, parent: Optional['Scope'] = None, boundary: Optional[Boundary] = None):
        self.bindings: Dict[str, Binding] = {}
        self.meta: Dict[str, Any] = {
            "parent": parent,
            "boundary": boundary,
        }

    def _check_key(self, key: Any) -> str:
        if not isinstance(key, str):
            raise TypeError(f"Scope key must be a str, not {type(key)}")
        return key

    def bind(self, name: str, value: Any, *, engine: bool = False) -> Binding:
        binding = Binding(value, engine=engine)
        self.bindings[self._check_key(name)] = binding
        return binding

    def __setitem__(self, key: Any, value: Any):
        self.bind(key, value)

    def __getitem__(self, key: Any) -> Any:
        """Returns the raw bound value (a Thunk is returned unforced)."""
        return self.lookup(key).value

    def __delitem__(self, key: Any):
        key = self._check_key(key)
        if key not in self.bindings:
            raise UnboundIdentifier(key)
        del self.bindings[key]

    def __contains__(self, key: Any) -> bool:
        if isinstance(key, str):
            return self.find_owner(key) is not None
        return False

    def find_owner(self, key: str) -> Optional['Scope']:
        """Finds the Scope in the parent chain that owns key."""
        scope = self
        while scope is not None:
            if key in scope.bindings:
                return scope
            scope = scope.parent
        return None

    def lookup(self, key: Any) -> Binding:
        key = self._check_key(key)
        owner = self.find_owner(key)
        if owner is None:
            raise UnboundIdentifier(key)
        return owner.bindings[key]

    def local(self, key: str) -> Optional[Binding]:
        """The binding owned by this scope itself, ignoring parents."""
        return self.bindings.get(key)

    def get(self, key: Any, default: Any = None) -> Any:
        if not isinstance(key, str):
            return default
        owner = self.find_owner(key)
        if owner is not None:
            return owner.bindings[key].value
        return default

    def find_boundary(self) -> Optional[Boundary]:
        """The nearest Boundary on the chain; None when evaluating outside any unit."""
        scope = self
        while scope is not None:
            if scope.boundary is not None:
                return scope.boundary
            scope = scope.parent
        return None

    @property
    def parent(self) -> Optional['Scope']:
        return self.meta.get("parent")

    @property
    def boundary(self) -> Optional[Boundary]:
        return self.meta.get("boundary")

    def keys(self) -> collections.abc.KeysView:
        """Returns a view of keys in the current scope only."""
        return self.bindings.keys()

    def __repr__(self) -> str:
        keys = ', '.join(self.bindings.keys())
        parent_id = f", parent=#{id(self.parent)}" if self.parent else ""
        return f"<Scope bindings=[{keys}]{parent_id}>"


UNFORCED = "unforced"
FORCING = "forcing"
FORCED = "forced"
FAILED = "failed"


class Thunk:
    """A deferred computation: an expression plus the scope to evaluate it in.

    Forcing runs the expression at most once and memoizes (value, visible).
    A failed force leaves the thunk FAILED; every later force re-raises the
    same exception.

    `upstream` links a pipeline stage's thunk to the thunk of the stage that
    feeds it. When this thunk's expression would force the upstream first
    anyway, force() walks the chain and runs it bottom-up in a loop instead
    of recursing, which keeps evaluation depth flat for long pipelines.
    """
    def __init__(self, expr: Any, scope: Optional[Scope], evaluator: Optional['Evaluator'],
                 *, upstream: Optional['Thunk'] = None, upstream_name: Optional[str] = None):
        self.expr = expr
        self.scope = scope
        self.evaluator = evaluator
        self.upstream = upstream
        self.upstream_name = upstream_name
        self.state = UNFORCED
        self.value: Any = None
        self.visible: bool = True
        self.error: Optional[BaseException] = None
        self.released = False
        self.on_forced: List[Callable[['Thunk'], None]] = []

    @classmethod
    def of_value(cls, value: Any, visible: bool = True) -> 'Thunk':
        """An already-forced thunk, used for values handed in from Python."""
        t = cls(None, None, None)
        t.state = FORCED
        t.value = value
        t.visible = visible
        return t

    @property
    def forced(self) -> bool:
        return self.state == FORCED

    def force(self) -> Any:
        return self.outcome()[0]

    def outcome(self) -> Tuple[Any, bool]:
        """Force if needed; returns the memoized (value, visible)."""
        if self.state == FORCED:
            return self.value, self.visible
        if self.state == FAILED:
            raise self.error
        if self.state == FORCING:
            raise EvaluationError("thunk forced while already being forced")

        pending = [self]
        current = self
        while (
            current.upstream is not None
            and current.upstream.state == UNFORCED
            and current._forces_upstream()
        ):
            current = current.upstream
            pending.append(current)
        for thunk in reversed(pending):
            thunk._run()
        return self.value, self.visible

    def _forces_upstream(self) -> bool:
        if self.evaluator is None or self.upstream_name is None:
            return False
        return self.evaluator.forces_binding_first(self.expr, self.upstream_name, self.scope)

    def _run(self):
        if self.state != UNFORCED:
            if self.state == FAILED:
                raise self.error
            return
        self.state = FORCING
        try:
            value, visible = self.evaluator._eval(self.expr, self.scope)
        except Exception as e:
            self.state = FAILED
            self.error = e
            raise
        except BaseException:
            # A non-local exit interrupted the force; the thunk may be forced again.
            self.state = UNFORCED
            raise
        self.value = value
        self.visible = visible
        self.state = FORCED
        for callback in list(self.on_forced):
            callback(self)

    def release(self):
        """Drop the captured expression and scope; the memoized value stays."""
        if self.state != FORCED:
            raise EvaluationError("only a forced thunk can be released")
        self.expr = None
        self.scope = None
        self.upstream = None
        self.released = True

    def __repr__(self) -> str:
        if self.state == FORCED:
            return f"<Thunk forced {self.value!r}>"
        return f"<Thunk {self.state}>"


class VisibilityFlag:
    """Visibility of the most recently completed stage of one pipeline evaluation."""
    def __init__(self):
        self.visible = True
        self.stage: Optional[int] = None

    def set(self, visible: bool, stage: Optional[int] = None):
        self.visible = bool(visible)
        self.stage = stage

    def __bool__(self) -> bool:
        return self.visible

    def __repr__(self) -> str:
        return f"<VisibilityFlag visible={self.visible} stage={self.stage}>"


# =================================================================
# Expression Nodes
# =================================================================

class Node(ABC):
    """Abstract base class for every expression node."""
    pass


class Name(Node):
    """An identifier reference."""
    def __init__(self, text: str):
        self.text = text

    def __repr__(self) -> str:
        return f"Name<{self.text!r}>"

    def __eq__(self, other):
        return isinstance(other, Name) and self.text == other.text

    def __hash__(self):
        return hash(self.text)


class Literal(Node):
    def __init__(self, value: Any):
        self.value = value

    def __repr__(self) -> str:
        return f"Literal({self.value!r})"

    def __eq__(self, other):
        return isinstance(other, Literal) and self.value == other.value


class Call(Node):
    """A call of `func` (any node) with positional and keyword argument nodes."""
    def __init__(self, func: Any, args: Optional[List[Any]] = None, kwargs: Optional[Dict[str, Any]] = None):
        self.func = func
        self.args = list(args or [])
        self.kwargs = dict(kwargs or {})

    def __repr__(self) -> str:
        return f"Call({self.func!r}, {self.args!r}, {self.kwargs!r})"

    def __eq__(self, other):
        return (
            isinstance(other, Call)
            and self.func == other.func
            and self.args == other.args
            and self.kwargs == other.kwargs
        )


class Assign(Node):
    """Binds the value of `expr` into the scope the node is evaluated in.

    `engine` is set only on assignments produced by the rewriter.
    """
    def __init__(self, target: str, expr: Any, engine: bool = False):
        self.target = target
        self.expr = expr
        self.engine = engine

    def __repr__(self) -> str:
        return f"Assign({self.target!r}, {self.expr!r})"

    def __eq__(self, other):
        return isinstance(other, Assign) and self.target == other.target and self.expr == other.expr


class Block(Node):
    def __init__(self, exprs: List[Any]):
        self.exprs = list(exprs)

    def __repr__(self) -> str:
        return f"Block({self.exprs!r})"

    def __eq__(self, other):
        return isinstance(other, Block) and self.exprs == other.exprs


class Fn(Node):
    """A function literal; evaluates to a Closure over the defining scope."""
    def __init__(self, params: List[str], body: Any, name: Optional[str] = None):
        self.params = list(params)
        self.body = body
        self.name = name

    def __repr__(self) -> str:
        return f"Fn({self.params!r}, {self.body!r})"

    def __eq__(self, other):
        return isinstance(other, Fn) and self.params == other.params and self.body == other.body


class Return(Node):
    """Non-local exit out of the nearest enclosing execution unit."""
    def __init__(self, expr: Any = None):
        self.expr = expr

    def __repr__(self) -> str:
        return f"Return({self.expr!r})"

    def __eq__(self, other):
        return isinstance(other, Return) and self.expr == other.expr


class Pipe(Node):
    """A pipeline written inside an expression.

    `options` are PipeConfig overrides (strategy, scope_kind, ...). With `lhs`
    left as None under the closure scope kind, the node evaluates to the
    reusable pipeline closure instead of a result.
    """
    def __init__(self, lhs: Any, stages: List['Stage'], **options):
        self.lhs = lhs
        self.stages = list(stages)
        self.options = options

    def __repr__(self) -> str:
        return f"Pipe({self.lhs!r}, {self.stages!r}, {self.options!r})"

    def __eq__(self, other):
        return (
            isinstance(other, Pipe)
            and self.lhs == other.lhs
            and self.stages == other.stages
            and self.options == other.options
        )


# --- Nodes produced by the rewriter -------------------------------

class Step(Node):
    """One stage's evaluation inside a rewritten form.

    Records the stage's visibility into the pipeline's VisibilityFlag and
    reports errors raised by the stage as StageFailure.
    """
    def __init__(self, index: int, label: str, expr: Any, flag: Optional[VisibilityFlag] = None):
        self.index = index
        self.label = label
        self.expr = expr
        self.flag = flag

    def __repr__(self) -> str:
        return f"Step({self.index}, {self.expr!r})"

    def __eq__(self, other):
        return isinstance(other, Step) and self.index == other.index and self.expr == other.expr


class DelayedAssign(Node):
    """Binds `target` to a Thunk of `expr` without evaluating it (lazy strategy)."""
    def __init__(self, target: str, expr: Any, upstream: Optional[str] = None, cleanup: Any = None):
        self.target = target
        self.expr = expr
        self.upstream = upstream
        self.cleanup = cleanup

    def __repr__(self) -> str:
        return f"DelayedAssign({self.target!r}, {self.expr!r})"

    def __eq__(self, other):
        return (
            isinstance(other, DelayedAssign)
            and self.target == other.target
            and self.expr == other.expr
            and self.upstream == other.upstream
        )


class Tee(Node):
    """Evaluates `upstream` once, runs `stage` with `slot` standing for that
    value, then re-injects the upstream value as the result."""
    def __init__(self, stage: Any, upstream: Any, slot: str):
        self.stage = stage
        self.upstream = upstream
        self.slot = slot

    def __repr__(self) -> str:
        return f"Tee({self.stage!r}, {self.upstream!r})"

    def __eq__(self, other):
        return (
            isinstance(other, Tee)
            and self.stage == other.stage
            and self.upstream == other.upstream
            and self.slot == other.slot
        )


# =================================================================
# Callables
# =================================================================

class Closure:
    """A function created by an Fn node: parameters, body, and defining scope."""
    def __init__(self, params: List[str], body: Any, scope: Scope, name: Optional[str] = None):
        self.params = list(params)
        self.body = body
        self.scope = scope
        self.name = name

    def __repr__(self) -> str:
        return f"<Closure {self.name or 'fn'}({', '.join(self.params)})>"

    def __eq__(self, other):
        if not isinstance(other, Closure):
            return NotImplemented
        # The defining scope is not compared.
        return self.params == other.params and self.body == other.body


def lazy_args(func):
    """Marks a Python callable as receiving its arguments as unforced Thunks."""
    func._pipex_lazy_args = True
    return func


def is_lazy_callable(func) -> bool:
    if getattr(func, "_pipex_lazy_args", False):
        return True
    inner = getattr(func, "__func__", None)
    return bool(inner is not None and getattr(inner, "_pipex_lazy_args", False))


# =================================================================
# Pipelines
# =================================================================

@dataclass(frozen=True)
class Stage:
    """One operation of a pipeline.

    `expr` is an expression node, or a Python callable as shorthand for
    calling it with the upstream value. `tee` marks a side-effect stage whose
    own result is discarded and the upstream value passed on instead.
    """
    expr: Any
    tee: bool = False
    label: Optional[str] = None

    @classmethod
    def call(cls, func: Any, *args, tee: bool = False, label: Optional[str] = None, **kwargs) -> 'Stage':
        """Builds a Call stage. A str `func` is looked up by name."""
        target = Name(func) if isinstance(func, str) else Literal(func)
        return cls(Call(target, list(args), kwargs), tee=tee, label=label)


@dataclass(frozen=True)
class Pipeline:
    """An ordered sequence of stages plus the scope the pipeline was written in."""
    stages: Tuple[Stage, ...]
    scope: Optional[Scope] = field(default=None, compare=False)

    def __post_init__(self):
        stages = tuple(s if isinstance(s, Stage) else Stage(s) for s in self.stages)
        object.__setattr__(self, "stages", stages)

    def __len__(self) -> int:
        return len(self.stages)

    def __iter__(self):
        return iter(self.stages)
