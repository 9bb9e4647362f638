import pytest

from pipex.pipex_engine import make_pipeline_closure
from pipex.pipex_evaluator import Evaluator
from pipex.pipex_printer import Printer
from pipex.pipex_runtime import StdLib
from pipex.pipex_datatypes import (
    Scope, Thunk, Invisible, Closure, Stage,
    Name, Literal, Call, Assign, Block, Fn, Return, Pipe,
)


@pytest.fixture
def printer():
    return Printer()


@pytest.mark.parametrize("value, expected", [
    (3, "3"),
    (2.5, "2.5"),
    ("hi", "'hi'"),
    (True, "true"),
    (None, "none"),
    ([1, "a"], "#[1, 'a']"),
    ((1, 2), "#[1, 2]"),
    ({"x": [1], "y": False}, "#{x: #[1], y: false}"),
])
def test_values(printer, value, expected):
    assert printer.pformat(value) == expected


def test_callables(printer):
    assert printer.pformat(StdLib()._current_scope) == "current-scope"
    assert printer.pformat(len) == "len"


def test_thunks(printer):
    assert printer.pformat(Thunk.of_value(3)) == "<thunk forced 3>"
    assert printer.pformat(Thunk(Name("x"), Scope(), Evaluator())) == "<thunk unforced>"
    assert printer.pformat(Invisible("x")) == "'x'"


def test_display_hides_invisible_results(printer):
    assert printer.display(3) == "3"
    assert printer.display(3, visible=False) is None


def test_nodes(printer):
    assert printer.pformat(Call(Name("add"), [Name("_"), Literal(1)], {"k": Literal("v")})) == "add(_, 1, k='v')"
    assert printer.pformat(Call(Literal(len), [Name("_")])) == "len(_)"
    assert printer.pformat(Assign("x", Literal(2))) == "x <- 2"
    assert printer.pformat(Return()) == "return()"
    assert printer.pformat(Return(Name("_"))) == "return(_)"
    assert printer.pformat(Fn(["a", "b"], Name("a"))) == "fn(a, b) a"
    assert printer.pformat(Block([])) == "{}"
    assert printer.pformat(Closure(["x"], Name("x"), Scope())) == "fn(x) x"


def test_nested_blocks_indent(printer):
    node = Block([Assign("x", Literal(1)), Block([Name("x")])])
    assert printer.pformat(node) == "{\n  x <- 1\n  {\n    x\n  }\n}"


def test_pipes_and_stages(printer):
    stages = [Stage(Name("double")), Stage(Call(Name("emit"), [Name("_")]), tee=True)]
    assert printer.pformat(Pipe(Literal(5), stages)) == "5 |> double |> tee emit(_)"
    assert printer.pformat(Pipe(None, stages[:1])) == "|> double"


def test_pipeline_closure(printer):
    closure = make_pipeline_closure([Name("double"), Name("increment")])
    assert printer.pformat(closure) == "<pipeline double |> increment>"
