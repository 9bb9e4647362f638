"""
The core pipex interpreter: the Evaluator.

Every evaluation returns a (value, visible) pair. Scopes are passed
explicitly to every call; there is no ambient "current scope".
"""
import inspect
import sys
from typing import Any, List, Optional, Tuple, Dict

from pipex.pipex_config import PipeConfig, debug_enabled
from pipex.pipex_datatypes import (
    Scope, Boundary, Thunk, Invisible, Closure,
    Node, Name, Literal, Call, Assign, Block, Fn, Return, Pipe,
    Step, DelayedAssign, Tee, Pipeline,
    StageFailure, UnboundIdentifier, EvaluationError, EvaluationDepthError,
    ConfigurationError, NonLocalExit, is_lazy_callable,
)
from pipex.pipex_expander import substitute
from pipex.pipex_scopes import PipeClosure

Outcome = Tuple[Any, bool]


def _accepts_scope(func) -> bool:
    """True when the callable declares a keyword-only `scope` parameter."""
    try:
        sig = inspect.signature(func)
    except (TypeError, ValueError):
        return False
    param = sig.parameters.get("scope")
    return param is not None and param.kind == inspect.Parameter.KEYWORD_ONLY


def callable_name(func) -> str:
    if isinstance(func, Closure):
        return func.name or "fn"
    n = getattr(func, "__name__", None)
    if isinstance(n, str) and n:
        if inspect.ismethod(func) and type(func.__self__).__name__ == "StdLib":
            return n.lstrip("_").replace("_", "-")
        return n
    return "<callable>"


class Evaluator:
    """The pipex execution engine."""

    def __init__(self, config: Optional[PipeConfig] = None):
        self.config = config or PipeConfig()
        self.side_effects: List[Dict[str, Any]] = []
        self.call_stack: List[Dict[str, Any]] = []
        self.depth = 0
        self.current_node = None

    @property
    def max_depth(self) -> Optional[int]:
        return self.config.max_depth

    def _dbg(self, *parts):
        if debug_enabled():
            print("[DBG]", *parts, file=sys.stderr)

    def trace(self, message: str):
        """Records an engine trace event when tracing is enabled."""
        self._dbg(message)
        if self.config.trace:
            self.side_effects.append({"topics": ["trace"], "message": message})

    def _push_frame(self, name, func, args):
        self.call_stack.append({"name": name, "func": func, "args": args})

    def _pop_frame(self):
        if self.call_stack:
            self.call_stack.pop()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def eval(self, node: Any, scope: Scope) -> Outcome:
        """Public entry point. Returns (value, visible)."""
        return self._eval(node, scope)

    def value(self, node: Any, scope: Scope) -> Any:
        return self._eval(node, scope)[0]

    def _eval(self, node: Any, scope: Scope) -> Outcome:
        """Recursive dispatcher for evaluating any node, with depth accounting."""
        self.depth += 1
        try:
            if self.max_depth is not None and self.depth > self.max_depth:
                raise EvaluationDepthError(self.max_depth)
            self.current_node = node
            return self._dispatch(node, scope)
        finally:
            self.depth -= 1

    def _dispatch(self, node: Any, scope: Scope) -> Outcome:
        match node:
            case Name():
                return self.lookup(node.text, scope), True

            case Literal():
                return node.value, True

            case Call():
                return self._eval_call(node, scope)

            case Assign():
                value, _ = self._eval(node.expr, scope)
                scope.bind(node.target, value, engine=node.engine)
                return value, False

            case Block():
                result: Outcome = (None, True)
                for expr in node.exprs:
                    result = self._eval(expr, scope)
                return result

            case Fn():
                return Closure(node.params, node.body, scope, node.name), True

            case Return():
                if node.expr is None:
                    value, visible = None, True
                else:
                    value, visible = self._eval(node.expr, scope)
                target = scope.find_boundary()
                self._dbg("RETURN", "target", target)
                raise NonLocalExit(value, visible, target)

            case Pipe():
                return self._eval_pipe(node, scope)

            case Step():
                return self._eval_step(node, scope)

            case DelayedAssign():
                return self._eval_delayed_assign(node, scope)

            case Tee():
                value, _ = self._eval(node.upstream, scope)
                self._eval(substitute(node.stage, node.slot, Literal(value)), scope)
                return value, True

            case Node():
                raise EvaluationError(f"cannot evaluate node {node!r}")

            case _:
                # A raw Python value is its own literal
                return node, True

    def lookup(self, name: str, scope: Scope) -> Any:
        """Resolves a name, forcing a bound Thunk."""
        value = scope.lookup(name).value
        if isinstance(value, Thunk):
            return value.force()
        return value

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def capture(self, expr: Any, scope: Scope) -> Thunk:
        """Wraps an argument expression as a Thunk over the calling scope."""
        if isinstance(expr, Literal):
            return Thunk.of_value(expr.value)
        if not isinstance(expr, Node):
            return Thunk.of_value(expr)
        return Thunk(expr, scope, self)

    def _eval_call(self, node: Call, scope: Scope) -> Outcome:
        func, _ = self._eval(node.func, scope)
        args = [self.capture(a, scope) for a in node.args]
        kwargs = {k: self.capture(v, scope) for k, v in node.kwargs.items()}
        return self.call(func, args, kwargs, scope)

    def call(self, func: Any, args: List[Thunk], kwargs: Optional[Dict[str, Thunk]] = None,
             scope: Optional[Scope] = None) -> Outcome:
        """Calls `func` with argument thunks. Returns (value, visible)."""

        kwargs = kwargs or {}
        name = callable_name(func)
        if isinstance(func, PipeClosure):
            if len(args) != 1 or kwargs:
                raise EvaluationError(f"pipeline closure takes exactly one argument, got {len(args) + len(kwargs)}")
            self._push_frame(name, func, args)
            result = func.invoke(args[0])
            self._pop_frame()
            return result

        if isinstance(func, Closure):
            self._push_frame(name, func, args)
            result = self._call_closure(func, args, kwargs)
            self._pop_frame()
            return result

        if not callable(func):
            raise EvaluationError(f"{func!r} is not callable")

        if is_lazy_callable(func):
            pos: List[Any] = list(args)
            kw: Dict[str, Any] = dict(kwargs)
        else:
            pos = [t.force() for t in args]
            kw = {k: t.force() for k, t in kwargs.items()}
        if scope is not None and _accepts_scope(func):
            kw["scope"] = scope

        self._push_frame(name, func, pos)
        result = func(*pos, **kw)
        self._pop_frame()
        if isinstance(result, Invisible):
            return result.value, False
        return result, True

    def _call_closure(self, fn: Closure, args: List[Thunk], kwargs: Dict[str, Thunk]) -> Outcome:
        if len(args) > len(fn.params):
            raise EvaluationError(f"{fn.name or 'fn'} expects {len(fn.params)} argument(s), got {len(args)}")
        local = Scope(parent=fn.scope, boundary=Boundary(fn.name or "fn"))
        for param, thunk in zip(fn.params, args):
            local.bind(param, thunk)
        for key, thunk in kwargs.items():
            if key not in fn.params:
                raise EvaluationError(f"{fn.name or 'fn'} got an unexpected argument {key!r}")
            if key in local.bindings:
                raise EvaluationError(f"{fn.name or 'fn'} got multiple values for {key!r}")
            local.bind(key, thunk)
        missing = [p for p in fn.params if p not in local.bindings]
        if missing:
            raise EvaluationError(f"{fn.name or 'fn'} is missing argument(s): {', '.join(missing)}")
        try:
            return self._eval(fn.body, local)
        except NonLocalExit as sig:
            if sig.target is local.boundary:
                return sig.value, sig.visible
            raise

    def forces_binding_first(self, expr: Any, name: str, scope: Optional[Scope]) -> bool:
        """True when evaluating `expr` in `scope` forces the binding `name`
        before anything else observable happens.

        Holds for a reference to the name, a strict call whose arguments ahead
        of the one forcing it are already settled, a closure call whose body
        forces the parameter fed by it, and a Tee over it.
        """
        if scope is None:
            return False
        return self._forces_first(expr, name, scope, frozenset())

    def _forces_first(self, expr: Any, name: str, scope: Scope, shadow: frozenset) -> bool:
        match expr:
            case Name(text=text):
                return text == name and text not in shadow
            case Step() | Assign():
                return self._forces_first(expr.expr, name, scope, shadow)
            case Block(exprs=[first, *_]):
                return self._forces_first(first, name, scope, shadow)
            case Tee():
                return self._forces_first(expr.upstream, name, scope, shadow)
            case Call():
                return self._call_forces_first(expr, name, scope, shadow)
        return False

    def _static_callee(self, func: Any, scope: Scope, shadow: frozenset) -> Any:
        """The call target of `func` when resolving it has no effects, else None."""
        match func:
            case Literal(value=target):
                return target
            case Fn():
                return func
            case Name(text=fname):
                if fname in shadow:
                    return None
                owner = scope.find_owner(fname)
                if owner is None:
                    return None
                target = owner.bindings[fname].value
                if isinstance(target, Thunk):
                    return target.value if target.forced else None
                return target
        return None

    def _is_settled(self, arg: Any, scope: Scope, shadow: frozenset) -> bool:
        """True when forcing the argument cannot run any code."""
        match arg:
            case Literal():
                return True
            case Name(text=text):
                if text in shadow:
                    return False
                owner = scope.find_owner(text)
                if owner is None:
                    return False
                value = owner.bindings[text].value
                return not isinstance(value, Thunk) or value.forced
            case Node():
                return False
        return True

    def _call_forces_first(self, expr: Call, name: str, scope: Scope, shadow: frozenset) -> bool:
        target = self._static_callee(expr.func, scope, shadow)
        if target is None or isinstance(target, PipeClosure):
            return False

        if isinstance(target, (Fn, Closure)):
            # Arguments are bound unforced; the body decides what is forced first
            params = list(target.params)
            literal = isinstance(target, Fn)
            body_scope = scope if literal else target.scope
            outer = shadow if literal else frozenset()
            if literal and name not in params:
                if self._forces_first(target.body, name, body_scope, outer | set(params)):
                    return True
            bound = dict(zip(params, expr.args))
            if len(expr.args) > len(params) or any(k in bound or k not in params for k in expr.kwargs):
                return False
            bound.update(expr.kwargs)
            if len(bound) != len(params):
                return False
            for param, arg in bound.items():
                inner = (outer | set(params)) - {param}
                if (self._forces_first(target.body, param, body_scope, inner)
                        and self._forces_first(arg, name, scope, shadow)):
                    return True
            return False

        if not callable(target) or is_lazy_callable(target):
            return False
        # Strict callables force positional then keyword arguments, in order
        for arg in list(expr.args) + list(expr.kwargs.values()):
            if self._forces_first(arg, name, scope, shadow):
                return True
            if not self._is_settled(arg, scope, shadow):
                return False
        return False

    # ------------------------------------------------------------------
    # Pipeline nodes
    # ------------------------------------------------------------------

    def _eval_step(self, node: Step, scope: Scope) -> Outcome:
        self.trace(f"stage {node.index} ({node.label}) start")
        try:
            value, visible = self._eval(node.expr, scope)
        except (StageFailure, UnboundIdentifier, EvaluationError):
            raise
        except Exception as e:
            self.trace(f"stage {node.index} ({node.label}) failed: {type(e).__name__}")
            raise StageFailure(node.index, node.label, e) from e
        if node.flag is not None:
            node.flag.set(visible, node.index)
        self.trace(f"stage {node.index} ({node.label}) done visible={str(visible).lower()}")
        return value, visible

    def _eval_delayed_assign(self, node: DelayedAssign, scope: Scope) -> Outcome:
        upstream = None
        if node.upstream is not None:
            binding = scope.local(node.upstream)
            if binding is not None and isinstance(binding.value, Thunk):
                upstream = binding.value
        thunk = Thunk(node.expr, scope, self, upstream=upstream, upstream_name=node.upstream)
        scope.bind(node.target, thunk, engine=True)
        if node.cleanup is not None:
            node.cleanup.track(node.target, thunk, node.upstream)
        return None, False

    def _eval_pipe(self, node: Pipe, scope: Scope) -> Outcome:
        from pipex.pipex_engine import PipelineEngine

        config = self.config.replace(**node.options)
        engine = PipelineEngine(self, config)
        pipeline = Pipeline(tuple(node.stages), scope)
        if node.lhs is None:
            if config.scope_kind != "closure":
                raise ConfigurationError("a pipe without an input requires scope_kind 'closure'")
            return engine.make_closure(pipeline), True
        seed = self.capture(node.lhs, scope)
        return engine.evaluate(pipeline, seed, caller_scope=scope)
