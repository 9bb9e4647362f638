"""
A pretty-printer for pipex values, expression nodes and rewritten forms.
"""
import collections.abc

from pipex.pipex_datatypes import (
    Scope, Thunk, Invisible, Closure, Stage,
    Name, Literal, Call, Assign, Block, Fn, Return, Pipe,
    Step, DelayedAssign, Tee,
)
from pipex.pipex_scopes import PipeClosure


class Printer:
    """Formats pipex objects into compact, source-like strings."""

    def __init__(self, indent_width=2):
        self._indent_char = " " * indent_width
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format an object."""
        handler = self._get_handler(obj)
        return handler(obj, level)

    def display(self, value, visible=True):
        """What default display shows for a result: nothing when invisible."""
        if not visible:
            return None
        return self.pformat(value)

    def _get_handler(self, obj):
        """Dispatcher to find the correct formatting method."""
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, collections.abc.Mapping): return self._pformat_dict
        if isinstance(obj, (list, tuple)): return self._pformat_list
        if isinstance(obj, Scope): return lambda o, l: repr(o)
        if callable(obj): return self._pformat_callable
        # Default to Python's repr for unknown types
        return lambda o, l: repr(o)

    def _create_handlers(self):
        return {
            str: self._pformat_str,
            int: self._pformat_primitive,
            float: self._pformat_primitive,
            bool: self._pformat_bool,
            type(None): self._pformat_none,
            Name: self._pformat_name,
            Literal: self._pformat_literal,
            Call: self._pformat_call,
            Assign: self._pformat_assign,
            DelayedAssign: self._pformat_delayed_assign,
            Block: self._pformat_block,
            Fn: self._pformat_fn,
            Return: self._pformat_return,
            Pipe: self._pformat_pipe,
            Step: self._pformat_step,
            Tee: self._pformat_tee,
            Stage: self._pformat_stage,
            Thunk: self._pformat_thunk,
            Invisible: self._pformat_invisible,
            Closure: self._pformat_closure,
            PipeClosure: self._pformat_pipe_closure,
        }

    # --- Values ---

    def _pformat_primitive(self, obj, level):
        return str(obj)

    def _pformat_str(self, obj, level):
        return f"'{obj}'"

    def _pformat_bool(self, obj, level):
        return 'true' if obj else 'false'

    def _pformat_none(self, obj, level):
        return 'none'

    def _pformat_list(self, obj, level):
        return "#[" + ", ".join(self.pformat(x, level) for x in obj) + "]"

    def _pformat_dict(self, obj, level):
        items = ", ".join(f"{k}: {self.pformat(v, level)}" for k, v in obj.items())
        return "#{" + items + "}"

    def _pformat_callable(self, obj, level):
        from pipex.pipex_evaluator import callable_name
        return callable_name(obj)

    def _pformat_thunk(self, obj, level):
        if obj.forced:
            return f"<thunk forced {self.pformat(obj.value, level)}>"
        return f"<thunk {obj.state}>"

    def _pformat_invisible(self, obj, level):
        return self.pformat(obj.value, level)

    def _pformat_closure(self, obj, level):
        return f"fn({', '.join(obj.params)}) {self.pformat(obj.body, level)}"

    def _pformat_pipe_closure(self, obj, level):
        stages = " |> ".join(self.pformat(s, level) for s in obj.pipeline.stages)
        return f"<pipeline {stages}>"

    # --- Nodes ---

    def _pformat_name(self, obj, level):
        return obj.text

    def _pformat_literal(self, obj, level):
        return self.pformat(obj.value, level)

    def _pformat_call(self, obj, level):
        if isinstance(obj.func, Name):
            head = obj.func.text
        elif isinstance(obj.func, Literal):
            head = self.pformat(obj.func.value, level)
        else:
            head = f"({self.pformat(obj.func, level)})"
        parts = [self.pformat(a, level) for a in obj.args]
        parts += [f"{k}={self.pformat(v, level)}" for k, v in obj.kwargs.items()]
        return f"{head}({', '.join(parts)})"

    def _pformat_assign(self, obj, level):
        return f"{obj.target} <- {self.pformat(obj.expr, level)}"

    def _pformat_delayed_assign(self, obj, level):
        return f"{obj.target} <~ {self.pformat(obj.expr, level)}"

    def _pformat_block(self, obj, level):
        if not obj.exprs:
            return "{}"
        indent = self._indent_char * (level + 1)
        lines = [f"{indent}{self.pformat(e, level + 1)}" for e in obj.exprs]
        closing = self._indent_char * level
        return "{\n" + "\n".join(lines) + f"\n{closing}}}"

    def _pformat_fn(self, obj, level):
        return f"fn({', '.join(obj.params)}) {self.pformat(obj.body, level)}"

    def _pformat_return(self, obj, level):
        if obj.expr is None:
            return "return()"
        return f"return({self.pformat(obj.expr, level)})"

    def _pformat_stage(self, obj, level):
        text = self.pformat(obj.expr, level)
        return f"tee {text}" if obj.tee else text

    def _pformat_pipe(self, obj, level):
        parts = [] if obj.lhs is None else [self.pformat(obj.lhs, level)]
        parts += [self.pformat(s, level) for s in obj.stages]
        text = " |> ".join(parts)
        return text if obj.lhs is not None else f"|> {text}"

    def _pformat_step(self, obj, level):
        return self.pformat(obj.expr, level)

    def _pformat_tee(self, obj, level):
        return f"tee({self.pformat(obj.stage, level)}, {self.pformat(obj.upstream, level)})"
