import random

import pytest

from pipex.pipex_config import PipeConfig
from pipex.pipex_engine import evaluate_pipeline, make_pipeline_closure
from pipex.pipex_evaluator import Evaluator
from pipex.pipex_runtime import default_scope
from pipex.pipex_datatypes import (
    Stage, Name, Literal, Call, Assign, Fn, lazy_args,
    StageFailure, EvaluationDepthError, ConfigurationError,
)

STRATEGIES = ["nested", "eager", "lazy"]
SCOPE_KINDS = ["current", "new", "closure"]

_ = Name("_")


@pytest.fixture
def evaluator():
    return Evaluator()


@pytest.fixture
def caller(evaluator):
    return default_scope(evaluator)


def call(name, *args):
    return Call(Name(name), list(args))


@pytest.mark.parametrize("scope_kind", SCOPE_KINDS)
@pytest.mark.parametrize("strategy", STRATEGIES)
def test_double_increment_double(strategy, scope_kind):
    stages = [Name("double"), Name("increment"), Name("double")]
    assert evaluate_pipeline(stages, 5, strategy, scope_kind) == (22, True)


@pytest.mark.parametrize("strategy", STRATEGIES)
def test_visibility_follows_final_stage(strategy):
    assert evaluate_pipeline([Name("double"), Name("invisible")], 5, strategy) == (10, False)
    assert evaluate_pipeline([Name("invisible"), Name("double")], 5, strategy) == (10, True)
    assert evaluate_pipeline([Name("double"), Name("print")], 5, strategy) == (10, False)
    # Same as the final stage evaluated on its own
    assert evaluate_pipeline([Name("invisible")], 10, strategy) == (10, False)


@pytest.mark.parametrize("strategy", STRATEGIES)
def test_stage_forms(strategy):
    stages = [
        Stage.call("add", 1),
        Stage.call("sub", Literal(100), _),
        Fn(["x"], call("mul", Name("x"), Literal(2))),
        lambda v: v + 0.5,
        Stage.call("columns", y=Literal("k")),
    ]
    value, visible = evaluate_pipeline(stages, 4, strategy)
    assert value == {"x": 190.5, "y": "k"}
    assert visible is True


@pytest.mark.parametrize("strategy", ["eager", "lazy"])
def test_repeated_placeholder_evaluates_upstream_once(strategy):
    calls = []

    def generate(seed):
        calls.append(seed)
        return [random.random() for _ in range(3)]

    for _run in range(5):
        calls.clear()
        value, _visible = evaluate_pipeline([generate, Stage.call("columns", _, _)], 0, strategy)
        assert value["x"] == value["y"]
        assert calls == [0]


def test_nested_reevaluates_upstream_per_reference():
    calls = []

    def counter(seed):
        calls.append(seed)
        return len(calls)

    value, _visible = evaluate_pipeline([counter, Stage.call("columns", _, _)], 0, "nested")
    assert value == {"x": 1, "y": 2}
    assert len(calls) == 2

    calls.clear()
    value, _visible = evaluate_pipeline([counter, Stage.call("list", _, _, _)], 0, "nested")
    assert value == [1, 2, 3]
    assert len(calls) == 3


def test_lazy_never_runs_an_unreferenced_failing_stage():
    ran = []

    def explode(x):
        ran.append(x)
        raise RuntimeError("boom")

    @lazy_args
    def ignore(thunk):
        return "sentinel"

    assert evaluate_pipeline([explode, ignore], 1, "lazy") == ("sentinel", True)
    assert ran == []

    with pytest.raises(StageFailure) as excinfo:
        evaluate_pipeline([explode, ignore], 1, "eager")
    assert excinfo.value.index == 0
    assert ran == [1]


def test_lazy_failure_can_be_caught_downstream():
    stages = [Name("fail"), Stage.call("try", _, Literal("caught"))]
    assert evaluate_pipeline(stages, "x", "lazy") == ("caught", True)
    with pytest.raises(StageFailure):
        evaluate_pipeline(stages, "x", "eager")


@pytest.mark.parametrize("stage", [
    Name("increment"),
    Stage.call("add", Literal(1), _),
    Stage.call("add", a=Literal(1), b=_),
    Fn(["x"], call("increment", Name("x"))),
], ids=["name", "second-argument", "keyword", "fn"])
def test_long_pipeline_depth(stage):
    stages = [stage] * 50
    limited = PipeConfig(max_depth=60)
    assert evaluate_pipeline(stages, 0, "eager", config=limited) == (50, True)
    assert evaluate_pipeline(stages, 0, "lazy", config=limited) == (50, True)
    with pytest.raises(EvaluationDepthError):
        evaluate_pipeline(stages, 0, "nested", config=limited)
    assert evaluate_pipeline([stage] * 400, 0, "lazy") == (400, True)


def test_lazy_depth_through_a_named_closure():
    evaluator = Evaluator(PipeConfig(max_depth=60))
    caller = default_scope(evaluator)
    evaluator.eval(Assign("bump", Fn(["n"], call("add", Name("n"), Literal(1)))), caller)
    stages = [Name("bump")] * 50
    assert evaluate_pipeline(stages, 0, "lazy", caller_scope=caller, evaluator=evaluator) == (50, True)


def test_lazy_keeps_argument_order_ahead_of_the_upstream():
    seen = []

    def note(x):
        seen.append(x)
        return x

    stages = [note, Stage.call("pair", Call(Literal(note), [Literal("first")]), _)]
    assert evaluate_pipeline(stages, 5, "lazy") == (["first", 5], True)
    assert seen == ["first", 5]

    seen.clear()
    assert evaluate_pipeline(stages, 5, "eager") == (["first", 5], True)
    assert seen == [5, "first"]


@pytest.mark.parametrize("strategy", STRATEGIES)
def test_assignment_reaches_caller_only_under_current(strategy, evaluator):
    stages = [Name("double"), Stage.call("assign", Literal("seen"), _), Name("increment")]

    caller = default_scope(evaluator)
    assert evaluate_pipeline(stages, 5, strategy, "current", caller, evaluator=evaluator) == (11, True)
    assert caller["seen"] == 10

    for kind in ("new", "closure"):
        caller = default_scope(evaluator)
        assert evaluate_pipeline(stages, 5, strategy, kind, caller, evaluator=evaluator) == (11, True)
        assert "seen" not in caller


@pytest.mark.parametrize("strategy", STRATEGIES)
def test_current_scope_restores_existing_placeholder(strategy, caller, evaluator):
    caller["_"] = "original"
    assert evaluate_pipeline([Name("double"), Name("increment")], 5, strategy, "current", caller,
                             evaluator=evaluator) == (11, True)
    assert caller["_"] == "original"
    assert caller.local("._1") is None


@pytest.mark.parametrize("strategy", STRATEGIES)
def test_teardown_on_failure(strategy, evaluator):
    stages = [Name("double"), Name("fail"), Name("increment")]

    caller = default_scope(evaluator)
    with pytest.raises(StageFailure) as excinfo:
        evaluate_pipeline(stages, 5, strategy, "current", caller, evaluator=evaluator)
    assert excinfo.value.index == 1
    assert excinfo.value.label == "fail"
    assert isinstance(excinfo.value.error, RuntimeError)
    assert caller.local("_") is None
    assert caller.local("._1") is None
    assert caller.local("._2") is None

    caller = default_scope(evaluator)
    caller["_"] = "original"
    with pytest.raises(StageFailure):
        evaluate_pipeline(stages, 5, strategy, "current", caller, evaluator=evaluator)
    assert caller["_"] == "original"


def test_failing_closure_leaves_no_call_frames():
    evaluator = Evaluator()
    closure = make_pipeline_closure([Name("double"), Name("fail")], evaluator=evaluator)
    for _attempt in range(100):
        with pytest.raises(StageFailure) as excinfo:
            closure(5)
    assert evaluator.call_stack == []
    frame = excinfo.value.frames[-1]
    assert frame["name"] == "fail"
    assert frame["args"] == [10]


@pytest.mark.parametrize("strategy", STRATEGIES)
def test_engine_errors_raised_by_stage_code_are_stage_failures(strategy):
    def reject(x):
        raise ConfigurationError(f"bad value {x}")

    with pytest.raises(StageFailure) as excinfo:
        evaluate_pipeline([Name("double"), reject, Name("increment")], 5, strategy)
    assert excinfo.value.index == 1
    assert isinstance(excinfo.value.error, ConfigurationError)
    assert excinfo.value.__cause__ is excinfo.value.error


def test_configuration_errors_precede_any_stage():
    ran = []

    def record(x):
        ran.append(x)
        return x

    with pytest.raises(ConfigurationError):
        evaluate_pipeline([record, Literal(3)], 1, "eager")
    with pytest.raises(ConfigurationError):
        evaluate_pipeline([record, Stage.call("pair", _, _)], 1, "lazy", allow_multi_reference=False)
    assert ran == []


def test_stages_read_caller_bindings(evaluator):
    caller = default_scope(evaluator)
    caller["offset"] = 100
    for kind in SCOPE_KINDS:
        assert evaluate_pipeline([Stage.call("add", Name("offset"))], 1, "lazy", kind, caller,
                                 evaluator=evaluator) == (101, True)


@pytest.mark.parametrize("strategy", STRATEGIES)
def test_custom_placeholder(strategy):
    it = Name("it")
    stages = [Stage.call("sub", Literal(10), it), Stage.call("pair", it, it)]
    assert evaluate_pipeline(stages, 3, strategy, placeholder_name="it") == ([7, 7], True)


@pytest.mark.parametrize("strategy", STRATEGIES)
def test_tee_passes_upstream_value_through(strategy, evaluator):
    seen = []
    stages = [Name("double"), Stage(Call(Literal(seen.append), [_]), tee=True), Name("increment")]
    assert evaluate_pipeline(stages, 5, strategy, evaluator=evaluator) == (11, True)
    assert seen == [10]


@pytest.mark.parametrize("strategy", STRATEGIES)
def test_pipeline_closure_is_reusable(strategy):
    closure = make_pipeline_closure([Name("double"), Name("increment")], strategy=strategy)
    assert closure(5) == (11, True)
    assert closure(1) == (3, True)
    assert "_" not in closure.scope


def test_pipeline_closure_as_a_stage():
    inner = make_pipeline_closure([Name("double"), Name("double")])
    assert evaluate_pipeline([inner, Name("increment")], 5) == (21, True)


def test_pipeline_closure_rejects_bad_pipeline_at_build_time():
    with pytest.raises(ConfigurationError):
        make_pipeline_closure([])
