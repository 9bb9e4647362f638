"""
Pipeline evaluation: rewriting, scope selection, execution and teardown.
"""
from typing import Any, Iterable, Optional, Tuple

from pipex.pipex_config import PipeConfig
from pipex.pipex_cleanup import CleanupManager
from pipex.pipex_datatypes import (
    Scope, Thunk, Pipeline, VisibilityFlag, NonLocalExit, PipelineError,
)
from pipex.pipex_evaluator import Evaluator
from pipex.pipex_expander import Expander, ExpandedForm
from pipex.pipex_scopes import PipeClosure, select_scope


class PipelineEngine:
    """Evaluates pipelines with one Evaluator under one PipeConfig."""

    def __init__(self, evaluator: Optional[Evaluator] = None, config: Optional[PipeConfig] = None):
        self.evaluator = evaluator or Evaluator(config)
        self.config = config or self.evaluator.config
        self.expander = Expander(self.config)

    def evaluate(self, pipeline: Pipeline, seed: Thunk, caller_scope: Optional[Scope] = None) -> Tuple[Any, bool]:
        """Runs `pipeline` on `seed`. Returns (value, visible)."""
        self.expander.prepare(pipeline)
        caller_scope = caller_scope if caller_scope is not None else pipeline.scope
        kind = self.config.scope_kind
        if kind == "closure":
            if pipeline.scope is None:
                pipeline = Pipeline(pipeline.stages, caller_scope)
            return self.make_closure(pipeline).invoke(seed)
        return self.evaluate_in(pipeline, seed, kind, caller_scope)

    def make_closure(self, pipeline: Pipeline) -> PipeClosure:
        return PipeClosure(self, pipeline)

    def evaluate_in(self, pipeline: Pipeline, seed: Thunk, kind: str, caller_scope: Optional[Scope]) -> Tuple[Any, bool]:
        ev = self.evaluator
        lexical = pipeline.scope if pipeline.scope is not None else caller_scope
        scope, guard = select_scope(kind, caller_scope, lexical)
        flag = VisibilityFlag()
        cleanup = CleanupManager(guard, ev) if self.config.strategy == "lazy" else None
        form = self.expander.expand(pipeline, flag=flag, cleanup=cleanup)
        if cleanup is not None:
            cleanup.pin(form.final_input)
        guard.reserve(form.names)
        ev._dbg("PIPE", form.strategy, kind, "stages", len(pipeline))
        mark = len(ev.call_stack)
        try:
            guard.bind(self.config.placeholder_name, seed)
            value, _ = self.run(form, scope, cleanup)
        except NonLocalExit as sig:
            if guard.boundary is None or sig.target is not guard.boundary:
                raise
            ev.trace(f"return contained by {kind} scope")
            value = sig.value
            flag.set(sig.visible, flag.stage)
        except PipelineError as e:
            if e.frames is None:
                e.frames = list(ev.call_stack)
            raise
        finally:
            touched = guard.teardown()
            del ev.call_stack[mark:]
            ev.trace(f"teardown {kind}: {', '.join(touched) if touched else '-'}")
        return value, flag.visible

    def run(self, form: ExpandedForm, scope: Scope, cleanup: Optional[CleanupManager] = None) -> Tuple[Any, bool]:
        """Executes an expanded form against its execution scope."""
        value, visible = self.evaluator.eval(form.node, scope)
        if cleanup is not None:
            cleanup.sweep()
        return value, visible


def _build(strategy, scope_kind, placeholder_name, allow_multi_reference,
           config: Optional[PipeConfig], evaluator: Optional[Evaluator]) -> PipelineEngine:
    base = config or (evaluator.config if evaluator is not None else PipeConfig())
    merged = base.replace(
        strategy=strategy,
        scope_kind=scope_kind,
        placeholder_name=placeholder_name,
        allow_multi_reference=allow_multi_reference,
    )
    if evaluator is None:
        evaluator = Evaluator(merged)
    return PipelineEngine(evaluator, merged)


def evaluate_pipeline(stages: Iterable[Any], initial_value: Any, strategy: Optional[str] = None,
                      scope_kind: Optional[str] = None, caller_scope: Optional[Scope] = None, *,
                      placeholder_name: Optional[str] = None,
                      allow_multi_reference: Optional[bool] = None,
                      config: Optional[PipeConfig] = None,
                      evaluator: Optional[Evaluator] = None) -> Tuple[Any, bool]:
    """Evaluates `stages` applied to `initial_value`. Returns (value, visible).

    Options left as None fall back to `config` (or the evaluator's config).
    Without a caller scope a fresh root scope with the builtins is used. Under
    scope_kind 'closure' the pipeline closure is built and invoked once.
    """
    engine = _build(strategy, scope_kind, placeholder_name, allow_multi_reference, config, evaluator)
    if caller_scope is None:
        from pipex.pipex_runtime import default_scope
        caller_scope = default_scope(engine.evaluator)
    pipeline = Pipeline(tuple(stages), caller_scope)
    seed = initial_value if isinstance(initial_value, Thunk) else Thunk.of_value(initial_value)
    return engine.evaluate(pipeline, seed, caller_scope)


def make_pipeline_closure(stages: Iterable[Any], lexical_scope: Optional[Scope] = None, *,
                          strategy: Optional[str] = None,
                          placeholder_name: Optional[str] = None,
                          allow_multi_reference: Optional[bool] = None,
                          config: Optional[PipeConfig] = None,
                          evaluator: Optional[Evaluator] = None) -> PipeClosure:
    """Builds the reusable one-argument pipeline callable."""
    engine = _build(strategy, "closure", placeholder_name, allow_multi_reference, config, evaluator)
    if lexical_scope is None:
        from pipex.pipex_runtime import default_scope
        lexical_scope = default_scope(engine.evaluator)
    return engine.make_closure(Pipeline(tuple(stages), lexical_scope))
