"""
Scope selection: where a rewritten pipeline runs.

- current: the caller's live scope is borrowed. Every name the engine
  touches is snapshotted first and restored on exit, success or failure.
- new: a fresh scope whose parent is the pipeline's lexical scope, with its
  own exit Boundary. Engine bindings are dropped on exit.
- closure: a PipeClosure is built once; each invocation gets a fresh scope,
  exactly as for `new`.
"""
from typing import Any, Dict, List, Optional, Tuple, TYPE_CHECKING

from pipex.pipex_datatypes import (
    Scope, Binding, Boundary, Thunk, Pipeline, ConfigurationError,
)

if TYPE_CHECKING:
    from pipex.pipex_engine import PipelineEngine


class ScopeGuard:
    """Bind/restore discipline for the names one evaluation introduces.

    `owned` is True when the guard's scope was created for the evaluation
    (new/closure). A borrowed scope (current) gets its prior bindings back.
    """
    def __init__(self, scope: Scope, *, owned: bool):
        self.scope = scope
        self.owned = owned
        self._saved: Dict[str, Optional[Binding]] = {}
        self.torn_down = False

    @property
    def boundary(self) -> Optional[Boundary]:
        """The boundary whose exits this evaluation contains (None when borrowed)."""
        return self.scope.boundary if self.owned else None

    def reserve(self, names):
        """Snapshots the scope's own binding for each name, once."""
        for name in names:
            if name not in self._saved:
                self._saved[name] = self.scope.local(name)

    def bind(self, name: str, value: Any) -> Binding:
        self.reserve([name])
        return self.scope.bind(name, value, engine=True)

    def release(self, name: str) -> bool:
        """Unbinds an engine binding before exit. Returns True if one was removed."""
        binding = self.scope.local(name)
        if binding is not None and binding.engine:
            del self.scope.bindings[name]
            return True
        return False

    def teardown(self) -> List[str]:
        """Restores the scope. Returns the names it touched."""
        touched = []
        for name in reversed(list(self._saved)):
            prior = self._saved[name]
            current = self.scope.local(name)
            if prior is not None and not self.owned:
                if current is not prior:
                    self.scope.bindings[name] = prior
                    touched.append(name)
            elif current is not None and current.engine:
                del self.scope.bindings[name]
                touched.append(name)
        self._saved.clear()
        self.torn_down = True
        return touched


def select_scope(kind: str, caller_scope: Scope, lexical_scope: Optional[Scope] = None) -> Tuple[Scope, ScopeGuard]:
    """Chooses the execution scope for one evaluation.

    Returns (execution_scope, guard); call guard.teardown() on exit.
    """
    if kind == "current":
        if caller_scope is None:
            raise ConfigurationError("scope_kind 'current' needs a caller scope")
        return caller_scope, ScopeGuard(caller_scope, owned=False)
    if kind in ("new", "closure"):
        parent = lexical_scope if lexical_scope is not None else caller_scope
        scope = Scope(parent=parent, boundary=Boundary(f"{kind}-pipeline"))
        return scope, ScopeGuard(scope, owned=True)
    raise ConfigurationError(f"unknown scope_kind {kind!r}")


class PipeClosure:
    """A pipeline packaged as a reusable one-argument callable.

    Called from Python it takes the input value and returns (value, visible).
    Each invocation runs in its own scope under the closure's lexical scope,
    and a `return` inside it ends only that invocation.
    """
    def __init__(self, engine: 'PipelineEngine', pipeline: Pipeline):
        if pipeline.scope is None:
            raise ConfigurationError("a pipeline closure needs a defining scope")
        # Rewrite-time errors surface when the closure is built, not when called.
        engine.expander.prepare(pipeline)
        self.engine = engine
        self.pipeline = pipeline

    @property
    def scope(self) -> Scope:
        return self.pipeline.scope

    @property
    def config(self):
        return self.engine.config

    def invoke(self, seed: Thunk) -> Tuple[Any, bool]:
        return self.engine.evaluate_in(self.pipeline, seed, "closure", self.pipeline.scope)

    def __call__(self, value: Any) -> Tuple[Any, bool]:
        seed = value if isinstance(value, Thunk) else Thunk.of_value(value)
        return self.invoke(seed)

    def __repr__(self) -> str:
        return f"<PipeClosure stages={len(self.pipeline)} strategy={self.config.strategy}>"
