"""
The stage rewriter: turns a Pipeline into an executable form.

Three strategies are supported:

- nested: the upstream expression is substituted for the placeholder,
  giving `h(g(f(_)))`. Depth grows with the pipeline and a placeholder
  named k times re-evaluates the upstream k times.
- eager: `{ _ <- f(_); _ <- g(_); h(_) }`. Every stage is forced in turn
  and the final stage is evaluated in place so its own visibility survives.
- lazy: `{ ._1 <~ f(_); ._2 <~ g(._1); h(._2) }`, where `<~` binds a Thunk.
  Nothing runs until the final stage forces it.

All validation happens here, before any stage executes.
"""
from dataclasses import dataclass, field
from typing import Any, List, Optional

from pipex.pipex_config import PipeConfig
from pipex.pipex_datatypes import (
    Stage, Pipeline, VisibilityFlag, ConfigurationError,
    Node, Name, Literal, Call, Assign, Block, Fn, Return, Pipe,
    Step, DelayedAssign, Tee, Closure,
)


# =================================================================
# Tree helpers
# =================================================================

def substitute(expr: Any, name: str, replacement: Any) -> Any:
    """Returns a copy of `expr` with every reference to `name` replaced.

    Function literals that rebind `name` shadow it, and a nested Pipe's
    stages keep their own placeholder; only its input is rewritten.
    """
    match expr:
        case Name():
            return replacement if expr.text == name else expr
        case Call():
            return Call(
                substitute(expr.func, name, replacement),
                [substitute(a, name, replacement) for a in expr.args],
                {k: substitute(v, name, replacement) for k, v in expr.kwargs.items()},
            )
        case Assign():
            return Assign(expr.target, substitute(expr.expr, name, replacement), engine=expr.engine)
        case Block():
            return Block([substitute(e, name, replacement) for e in expr.exprs])
        case Fn():
            if name in expr.params:
                return expr
            return Fn(expr.params, substitute(expr.body, name, replacement), expr.name)
        case Return():
            if expr.expr is None:
                return expr
            return Return(substitute(expr.expr, name, replacement))
        case Pipe():
            lhs = None if expr.lhs is None else substitute(expr.lhs, name, replacement)
            return Pipe(lhs, expr.stages, **expr.options)
        case Step():
            return Step(expr.index, expr.label, substitute(expr.expr, name, replacement), expr.flag)
        case DelayedAssign():
            return DelayedAssign(expr.target, substitute(expr.expr, name, replacement), expr.upstream, expr.cleanup)
        case Tee():
            stage = expr.stage if expr.slot == name else substitute(expr.stage, name, replacement)
            return Tee(stage, substitute(expr.upstream, name, replacement), expr.slot)
        case _:
            return expr


def count_references(expr: Any, name: str) -> int:
    """How many times `expr` refers to `name`, under the same rules as substitute()."""
    match expr:
        case Name():
            return 1 if expr.text == name else 0
        case Call():
            return (
                count_references(expr.func, name)
                + sum(count_references(a, name) for a in expr.args)
                + sum(count_references(v, name) for v in expr.kwargs.values())
            )
        case Assign():
            return count_references(expr.expr, name)
        case Block():
            return sum(count_references(e, name) for e in expr.exprs)
        case Fn():
            return 0 if name in expr.params else count_references(expr.body, name)
        case Return():
            return 0 if expr.expr is None else count_references(expr.expr, name)
        case Pipe():
            return 0 if expr.lhs is None else count_references(expr.lhs, name)
        case Step() | DelayedAssign():
            return count_references(expr.expr, name)
        case Tee():
            own = 0 if expr.slot == name else count_references(expr.stage, name)
            return own + count_references(expr.upstream, name)
        case _:
            return 0


def bound_names(expr: Any) -> set:
    """Every name a stage expression can bind when evaluated."""
    match expr:
        case Assign():
            return {expr.target} | bound_names(expr.expr)
        case DelayedAssign():
            return {expr.target} | bound_names(expr.expr)
        case Fn():
            return set(expr.params) | bound_names(expr.body)
        case Call():
            out = bound_names(expr.func)
            for a in expr.args:
                out |= bound_names(a)
            for v in expr.kwargs.values():
                out |= bound_names(v)
            return out
        case Block():
            out = set()
            for e in expr.exprs:
                out |= bound_names(e)
            return out
        case Return():
            return set() if expr.expr is None else bound_names(expr.expr)
        case Pipe():
            out = set() if expr.lhs is None else bound_names(expr.lhs)
            for stage in expr.stages:
                out |= bound_names(stage.expr if isinstance(stage, Stage) else stage)
            return out
        case Step():
            return bound_names(expr.expr)
        case Tee():
            return bound_names(expr.stage) | bound_names(expr.upstream)
        case _:
            return set()


def stage_label(stage: Stage) -> str:
    if stage.label:
        return stage.label
    expr = stage.expr
    if isinstance(expr, Call):
        expr = expr.func
    match expr:
        case Name():
            return expr.text
        case Literal():
            expr = expr.value
        case Fn():
            return expr.name or "fn"
    if isinstance(expr, Closure):
        return expr.name or "fn"
    name = getattr(expr, "__name__", None)
    if isinstance(name, str) and name:
        return name
    return type(expr).__name__.lower()


# =================================================================
# Expansion
# =================================================================

@dataclass
class PreparedStage:
    """A stage after normalisation and validation."""
    index: int
    label: str
    expr: Any
    tee: bool = False


@dataclass
class ExpandedForm:
    """The executable form of a pipeline.

    `names` are the bindings the form introduces in its execution scope
    (placeholder first); `final_input` is the binding the last stage reads.
    """
    node: Any
    strategy: str
    names: List[str] = field(default_factory=list)
    final_input: Optional[str] = None


class Expander:
    """Rewrites pipelines according to a PipeConfig."""

    def __init__(self, config: Optional[PipeConfig] = None):
        self.config = config or PipeConfig()

    @property
    def placeholder(self) -> str:
        return self.config.placeholder_name

    def lazy_name(self, k: int) -> str:
        return f".{self.placeholder}{k}"

    def is_engine_name(self, name: str) -> bool:
        ph = self.placeholder
        if name == ph:
            return True
        prefix = "." + ph
        return name.startswith(prefix) and name[len(prefix):].isdigit()

    # --- Validation -----------------------------------------------

    def normalize(self, stage: Stage, index: int) -> Any:
        """Applies implicit first-argument insertion."""
        ph = Name(self.placeholder)
        expr = stage.expr
        match expr:
            case Name() if expr.text != self.placeholder:
                return Call(expr, [ph])
            case Fn():
                return Call(expr, [ph])
            case Call():
                direct = list(expr.args) + list(expr.kwargs.values())
                if ph in direct:
                    return expr
                return Call(expr.func, [ph] + expr.args, expr.kwargs)
            case Node():
                return expr
            case Closure():
                return Call(Literal(expr), [ph])
            case _ if callable(expr):
                return Call(Literal(expr), [ph])
        raise ConfigurationError(f"stage {index} is not an expression: {expr!r}")

    def prepare(self, pipeline: Pipeline) -> List[PreparedStage]:
        """Normalises and validates every stage. Raises ConfigurationError."""
        if len(pipeline.stages) == 0:
            raise ConfigurationError("a pipeline needs at least one stage")
        prepared = []
        for index, stage in enumerate(pipeline.stages):
            label = stage_label(stage)
            expr = self.normalize(stage, index)
            refs = count_references(expr, self.placeholder)
            if refs == 0 and not stage.tee:
                raise ConfigurationError(
                    f"stage {index} ({label}) never uses the placeholder {self.placeholder!r}; "
                    f"mark it tee=True if it only runs for its side effect"
                )
            if refs > 1 and not self.config.allow_multi_reference:
                raise ConfigurationError(
                    f"stage {index} ({label}) references the placeholder {refs} times "
                    f"and allow_multi_reference is off"
                )
            clashes = sorted(n for n in bound_names(expr) if self.is_engine_name(n))
            if clashes:
                raise ConfigurationError(
                    f"stage {index} ({label}) binds {', '.join(clashes)}, "
                    f"which collides with the placeholder"
                )
            prepared.append(PreparedStage(index, label, expr, stage.tee))
        return prepared

    # --- Forms ----------------------------------------------------

    def _stage_node(self, stage: PreparedStage, upstream: Any, flag: Optional[VisibilityFlag]) -> Step:
        if stage.tee:
            body = Tee(stage.expr, upstream, self.placeholder)
        else:
            body = substitute(stage.expr, self.placeholder, upstream)
        return Step(stage.index, stage.label, body, flag)

    def expand(self, pipeline: Pipeline, *, flag: Optional[VisibilityFlag] = None,
               cleanup: Any = None, strategy: Optional[str] = None) -> ExpandedForm:
        strategy = strategy or self.config.strategy
        stages = self.prepare(pipeline)
        ph = self.placeholder

        if len(stages) == 1:
            node = self._stage_node(stages[0], Name(ph), flag)
            return ExpandedForm(node, "single", [ph], ph)

        match strategy:
            case "nested":
                return self._expand_nested(stages, flag)
            case "eager":
                return self._expand_eager(stages, flag)
            case "lazy":
                return self._expand_lazy(stages, flag, cleanup)
        raise ConfigurationError(f"unknown strategy {strategy!r}")

    def _expand_nested(self, stages, flag) -> ExpandedForm:
        ph = self.placeholder
        acc: Any = Name(ph)
        for stage in stages:
            acc = self._stage_node(stage, acc, flag)
        return ExpandedForm(acc, "nested", [ph], ph)

    def _expand_eager(self, stages, flag) -> ExpandedForm:
        ph = self.placeholder
        exprs: List[Any] = [
            Assign(ph, self._stage_node(stage, Name(ph), flag), engine=True)
            for stage in stages[:-1]
        ]
        exprs.append(self._stage_node(stages[-1], Name(ph), flag))
        return ExpandedForm(Block(exprs), "eager", [ph], ph)

    def _expand_lazy(self, stages, flag, cleanup) -> ExpandedForm:
        names = [self.placeholder] + [self.lazy_name(k) for k in range(1, len(stages))]
        exprs: List[Any] = []
        for k, stage in enumerate(stages[:-1]):
            exprs.append(DelayedAssign(
                names[k + 1],
                self._stage_node(stage, Name(names[k]), flag),
                upstream=names[k],
                cleanup=cleanup,
            ))
        exprs.append(self._stage_node(stages[-1], Name(names[-1]), flag))
        return ExpandedForm(Block(exprs), "lazy", names, names[-1])
