# tests/test_rules.py
"""Rule evaluation and `changes` glob matching."""
import pytest

from stageflow import job, pipeline, rule
from stageflow.errors import ConfigurationError
from stageflow.model import RuleClause, When
from stageflow.rules import (
    changes_match,
    compile_glob,
    evaluate,
    evaluate_workflow,
    select_active_jobs,
)


def test_first_matching_clause_wins(make_ctx):
    rules = (
        rule('$CI_COMMIT_BRANCH == "main"', changes=["docs/**"]),
        rule('$CI_COMMIT_BRANCH == "main"', when="manual"),
        rule(None),
    )
    decision = evaluate(rules, make_ctx("main", changed=["src/app.py"]))
    assert decision.when is When.MANUAL
    assert decision.clause == 1
    assert decision.included


def test_when_never_short_circuits(make_ctx):
    rules = (
        rule('$CI_PIPELINE_SOURCE == "schedule"', when="never"),
        rule(None),
    )
    assert not evaluate(rules, make_ctx(source="schedule")).included
    assert evaluate(rules, make_ctx(source="push")).included


def test_no_match_excludes_the_job(make_ctx):
    decision = evaluate((rule('$CI_COMMIT_TAG'),), make_ctx("main"))
    assert not decision.included
    assert decision.clause is None


def test_changes_is_a_conjunct_of_its_clause(make_ctx):
    clause = rule('$CI_COMMIT_BRANCH', changes=["src/**/*.py"])
    assert evaluate((clause,), make_ctx(changed=["src/pkg/mod.py"])).included
    assert not evaluate((clause,), make_ctx(changed=["README.md"])).included
    assert not evaluate((clause,), make_ctx("v1", is_tag=True, changed=["src/pkg/mod.py"])).included


def test_empty_clause_matches_everything(make_ctx):
    assert evaluate((RuleClause(),), make_ctx()).when is When.ON_SUCCESS


@pytest.mark.parametrize(
    "glob, path, expected",
    [
        ("src/**/*.py", "src/a.py", True),
        ("src/**/*.py", "src/x/y/a.py", True),
        ("src/**/*.py", "lib/a.py", False),
        ("*.md", "README.md", True),
        ("*.md", "docs/a.md", False),
        ("docs/**", "docs/a/b.md", True),
        ("{api,web}/Dockerfile", "web/Dockerfile", True),
        ("{api,web}/Dockerfile", "cli/Dockerfile", False),
        ("file?.txt", "file1.txt", True),
        ("[!a]bc", "xbc", True),
        ("[!a]bc", "abc", False),
        ("./Makefile", "Makefile", True),
    ],
)
def test_glob_semantics(glob, path, expected):
    assert bool(compile_glob(glob).match(path)) is expected


@pytest.mark.parametrize("glob", ["src/[", "{a,b", ""])
def test_bad_globs_are_configuration_errors(glob):
    with pytest.raises(ConfigurationError) as exc:
        compile_glob(glob)
    assert exc.value.kind == "bad_glob"


def test_changes_match_any_path_any_glob():
    assert changes_match(["a/**", "b/*.txt"], ["c/x", "b/y.txt"])
    assert not changes_match(["a/**"], [])


def test_workflow_without_rules_always_creates(make_ctx):
    assert evaluate_workflow((), make_ctx()).when is When.ALWAYS
    assert not evaluate_workflow((rule('$CI_COMMIT_TAG'),), make_ctx()).included


def test_select_active_jobs(make_ctx):
    config = pipeline(
        job("lint", "make lint"),
        job("docs", "make docs", rules=[rule(None, changes=["docs/**"])]),
        job("deploy", "make deploy", stage="deploy", rules=[rule('$CI_COMMIT_TAG', when="manual")]),
    )
    active = select_active_jobs(config, make_ctx("v1.0", is_tag=True, changed=["src/x.py"]))

    assert set(active.jobs) == {"lint", "deploy"}
    assert active.excluded == frozenset({"docs"})
    assert active.is_manual("deploy")
    assert not active.is_manual("lint")
    assert "docs" not in active
    assert len(active) == 2
    with pytest.raises(TypeError):
        active.jobs["docs"] = config.jobs["docs"]
