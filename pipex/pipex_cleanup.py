"""
Cleanup manager for the lazy strategy.

After every stage completes, forced stage thunks drop their captured
expression and scope, and an intermediate binding is unbound as soon as
every thunk that reads it has been forced. Unforced thunks are never
touched, and the binding the final stage reads stays until teardown.
"""
from typing import Dict, List, Optional, Set

from pipex.pipex_datatypes import Thunk


class CleanupManager:
    def __init__(self, guard, evaluator=None):
        self.guard = guard
        self.evaluator = evaluator
        self.thunks: Dict[str, Thunk] = {}
        self.dependents: Dict[str, List[Thunk]] = {}
        self.pinned: Set[str] = set()
        self.unbound: Set[str] = set()
        self.released: Set[str] = set()

    def _trace(self, message: str):
        if self.evaluator is not None:
            self.evaluator.trace(message)

    def pin(self, name: Optional[str]):
        """Keeps `name` bound until teardown."""
        if name is not None:
            self.pinned.add(name)

    def track(self, name: str, thunk: Thunk, upstream: Optional[str] = None):
        """Registers a stage thunk bound to `name` that reads `upstream`."""
        self.thunks[name] = thunk
        if upstream is not None:
            self.dependents.setdefault(upstream, []).append(thunk)
        thunk.on_forced.append(self._stage_done)

    def _stage_done(self, thunk: Thunk):
        self.sweep()

    def sweep(self):
        for name, thunk in self.thunks.items():
            if thunk.forced and name not in self.released:
                thunk.release()
                self.released.add(name)
                self._trace(f"cleanup released {name}")
        for name, readers in self.dependents.items():
            if name in self.unbound or name in self.pinned:
                continue
            if readers and all(t.forced for t in readers):
                if self.guard.release(name):
                    self._trace(f"cleanup unbound {name}")
                self.unbound.add(name)
