import pytest

from pipex.pipex_config import PipeConfig
from pipex.pipex_runtime import PipelineRunner, StdLib, ExecutionResult
from pipex.pipex_datatypes import (
    Scope, Stage, Name, Literal, Call, Return, StageFailure, UnboundIdentifier,
)

_ = Name("_")


def assert_ok(result, expected=None):
    assert result.status == "success", result.error_message
    if expected is not None:
        assert result.value == expected


def assert_error(result, contains=None):
    assert result.status == "error"
    if contains is not None:
        assert contains in (result.error_message or "")


@pytest.fixture
def runner():
    return PipelineRunner()


def test_run_returns_value_and_visibility(runner):
    result = runner.run([Name("double"), Name("increment"), Name("double")], 5)
    assert_ok(result, 22)
    assert result.visible is True
    assert runner.display(result) == "22"

    hidden = runner.run([Name("double"), Name("invisible")], 5)
    assert_ok(hidden, 10)
    assert hidden.visible is False
    assert runner.display(hidden) is None


@pytest.mark.parametrize("strategy", ["nested", "eager", "lazy"])
@pytest.mark.parametrize("scope_kind", ["current", "new", "closure"])
def test_run_options(runner, strategy, scope_kind):
    result = runner.run([Name("double"), Name("increment")], 5, strategy=strategy, scope_kind=scope_kind)
    assert_ok(result, 11)
    # Options apply to one call only
    assert runner.evaluator.config is runner.config


def test_host_bindings_are_visible_to_stages(runner):
    runner.bind("shout", lambda s: s.upper() + "!")
    assert_ok(runner.run([Name("shout")], "hi"), "HI!")


def test_expression_seed_is_evaluated_lazily(runner):
    seed = Call(Name("add"), [Literal(1), Literal(2)])
    assert_ok(runner.run([Name("double")], seed), 6)


def test_stage_failure_message_and_stacktrace(runner):
    result = runner.run([Name("double"), Name("fail")], 5)
    assert_error(result, "StageFailure: stage 1 (fail): RuntimeError: 10")
    assert "pipex stacktrace: (fail 10)" in result.error_message
    assert isinstance(result.error, StageFailure)
    assert isinstance(result.error.__cause__, RuntimeError)
    stderr = [e for e in result.side_effects if e["topics"] == ["stderr"]]
    assert stderr and stderr[0]["message"] == result.format_error()


def test_unbound_identifier_message(runner):
    result = runner.run([Name("nope")], 1)
    assert_error(result)
    assert result.error_message == "UnboundIdentifier: nope"
    assert isinstance(result.error, UnboundIdentifier)


def test_configuration_error_message(runner):
    result = runner.run([], 1)
    assert_error(result, "ConfigurationError: a pipeline needs at least one stage")
    result = runner.run([Name("double")], 1, strategy="sideways")
    assert_error(result, "ConfigurationError: unknown strategy 'sideways'")


def test_depth_error_message():
    runner = PipelineRunner(PipeConfig(max_depth=20))
    result = runner.run([Name("increment")] * 20, 0, strategy="nested")
    assert_error(result, "EvaluationDepthError: evaluation depth exceeded max_depth=20")
    assert_ok(runner.run([Name("increment")] * 20, 0, strategy="lazy"), 20)
    assert_ok(runner.run([Name("increment")] * 20, 0, strategy="nested", max_depth=None), 20)


def test_return_at_root_is_the_result(runner):
    assert_ok(runner.eval(Return(Literal("done"))), "done")


def test_side_effects_are_collected_per_run(runner):
    stages = [
        Name("double"),
        Stage(Call(Name("emit"), [Literal("log"), Literal("value"), _]), tee=True),
        Name("print"),
    ]
    result = runner.run(stages, 5)
    assert_ok(result, 10)
    assert result.visible is False
    assert {"topics": ["log"], "message": "value 10"} in result.side_effects
    assert {"topics": ["stdout"], "message": "10"} in result.side_effects

    second = runner.run([Name("double")], 1)
    assert second.side_effects == []


def test_make_closure_runs_in_fresh_scopes(runner):
    closure = runner.make_closure([Stage.call("assign", Literal("tmp"), _), Name("increment")], strategy="eager")
    assert closure(1) == (2, True)
    assert closure(2) == (3, True)
    assert "tmp" not in runner.root_scope
    assert closure.config.scope_kind == "closure"


def test_explain_renders_each_strategy(runner):
    stages = [Name("double"), Name("increment"), Name("double")]
    assert runner.explain(stages, strategy="nested") == "double(increment(double(_)))"
    assert runner.explain(stages, strategy="eager") == "{\n  _ <- double(_)\n  _ <- increment(_)\n  double(_)\n}"
    assert runner.explain(stages, strategy="lazy") == "{\n  ._1 <~ double(_)\n  ._2 <~ increment(._1)\n  double(._2)\n}"


def test_stdlib_bind_into_uses_dashed_names():
    scope = StdLib().bind_into(Scope())
    assert "current-scope" in scope
    assert "double" in scope
    assert "bind-into" not in scope


def test_try_trims_the_call_stack(runner):
    node = Call(Name("try"), [Call(Name("fail"), [Literal("x")]), Literal("ok")])
    assert_ok(runner.eval(node), "ok")
    assert runner.evaluator.call_stack == []


def test_execution_result_format_error():
    assert ExecutionResult("success", 1).format_error() == ""
    assert ExecutionResult("error", error_message="boom").format_error() == "boom"
    assert ExecutionResult("error").format_error() == "Unknown error"
