# tests/test_context.py
import pytest

from stageflow.context import Context, expand_variables
from stageflow.errors import ConfigurationError
from stageflow.model import PipelineSource


def test_branch_variables(make_ctx):
    ctx = make_ctx("main", sha="0123456789abcdef", message="fix", variables={"DEPLOY": "1"})
    env = ctx.ci_variables()
    assert env["CI_COMMIT_BRANCH"] == "main"
    assert "CI_COMMIT_TAG" not in env
    assert env["CI_COMMIT_SHORT_SHA"] == "01234567"
    assert env["CI_PIPELINE_SOURCE"] == "push"
    assert env["CI_PROJECT_PATH"] == "group/app"
    assert env["DEPLOY"] == "1"


def test_tag_variables(make_ctx):
    env = make_ctx("v2.0", is_tag=True).ci_variables()
    assert env["CI_COMMIT_TAG"] == "v2.0"
    assert "CI_COMMIT_BRANCH" not in env


def test_predefined_names_win_over_pipeline_variables(make_ctx):
    ctx = make_ctx("main", variables={"CI_COMMIT_REF_NAME": "spoofed", "CI_COMMIT_TAG": "v9"})
    assert ctx.lookup("CI_COMMIT_REF_NAME") == "main"
    assert ctx.lookup("CI_COMMIT_TAG") is None


def test_context_is_frozen(make_ctx):
    ctx = make_ctx(changed=["./src/a.py", "README.md"])
    assert ctx.changed_paths == frozenset({"src/a.py", "README.md"})
    assert ctx.pipeline_source is PipelineSource.PUSH
    with pytest.raises(AttributeError):
        ctx.ref = "other"
    with pytest.raises(TypeError):
        ctx.variables["X"] = "1"


def test_unknown_source(make_event):
    with pytest.raises(ConfigurationError):
        Context.from_event(make_event(source="carrier-pigeon"))


def test_expand_variables():
    env = {"REF": "main", "N": "3"}
    assert expand_variables("build-$REF-${N}x", env) == "build-main-3x"
    assert expand_variables("$MISSING/path", env) == "/path"
    assert expand_variables("no vars", env) == "no vars"
