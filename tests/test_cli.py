# tests/test_cli.py
"""Command line interface, driven through click's CliRunner."""
import json
import os

import pytest
from click.testing import CliRunner

from stageflow.cli import cli

CONFIG = """
stages: [build, test]

build:
  stage: build
  script:
    - mkdir -p dist
    - echo "$CI_COMMIT_REF_NAME" > dist/ref.txt
  artifacts:
    paths: [dist/]

unit:
  stage: test
  needs:
    - job: build
      artifacts: true
  script:
    - grep -q feature dist/ref.txt

docs:
  stage: test
  rules:
    - changes: [docs/**]
  script: [echo docs]
"""


@pytest.fixture
def repo(tmp_path):
    root = tmp_path / "repo"
    root.mkdir()
    (root / ".stageflow-ci.yml").write_text(CONFIG, encoding="utf-8")
    return root


@pytest.fixture
def runner(repo):
    return CliRunner()


def invoke(runner, repo, *args):
    cwd = os.getcwd()
    os.chdir(repo)
    try:
        return runner.invoke(cli, list(args), catch_exceptions=False)
    finally:
        os.chdir(cwd)


def test_validate(runner, repo):
    result = invoke(runner, repo, "validate")
    assert result.exit_code == 0
    assert "OK: 3 job(s), 2 stage(s), 0 template(s)" in result.output


def test_validate_reports_configuration_errors(runner, repo):
    (repo / "bad.yml").write_text("a:\n  script: x\n  needs: [ghost]\n", encoding="utf-8")
    result = invoke(runner, repo, "validate", "-c", "bad.yml")
    assert result.exit_code == 2
    assert "missing_reference" in result.output


def test_validate_missing_file(runner, repo):
    result = invoke(runner, repo, "validate", "-c", "nope.yml")
    assert result.exit_code == 2
    assert "not found" in result.output


def test_plan(runner, repo):
    result = invoke(runner, repo, "plan", "--no-git", "--ref", "feature", "--changed", "src/app.py")
    assert result.exit_code == 0
    assert "build (when=on_success" in result.output
    assert "docs (skipped: rules)" in result.output


def test_plan_json(runner, repo):
    result = invoke(runner, repo, "plan", "--no-git", "--ref", "feature", "--changed", "docs/index.md", "--json")
    assert result.exit_code == 0
    data = json.loads(result.output)
    assert data["excluded"] == []
    assert data["graph"]["order"] == ["build", "docs", "unit"]
    assert data["graph"]["jobs"]["unit"] == [{"upstream": "build", "kind": "need", "artifacts": True}]


def test_run_and_list_artifacts(runner, repo, tmp_path):
    store = str(tmp_path / "store")
    result = invoke(
        runner, repo,
        "run", "--no-git", "--ref", "feature", "--sha", "abc123",
        "--artifacts-dir", store, "--workers", "2",
    )
    assert result.exit_code == 0, result.output
    assert "build: SUCCESS" in result.output
    assert "unit: SUCCESS" in result.output
    assert "PIPELINE: SUCCEEDED" in result.output

    listed = invoke(runner, repo, "artifacts", "list", "--artifacts-dir", store)
    assert listed.exit_code == 0
    assert "feature build abc123" in listed.output

    expired = invoke(runner, repo, "artifacts", "expire", "--artifacts-dir", store)
    assert "Expired 0 artifact(s)." in expired.output


def test_failing_run_exits_nonzero(runner, repo, tmp_path):
    result = invoke(
        runner, repo,
        "run", "--no-git", "--ref", "main",
        "--artifacts-dir", str(tmp_path / "store"),
    )
    assert result.exit_code == 1
    assert "unit: FAILED (script_failure)" in result.output
    assert "PIPELINE: FAILED" in result.output


def test_bad_variable_syntax(runner, repo):
    result = invoke(runner, repo, "plan", "--no-git", "--var", "NOEQUALS")
    assert result.exit_code == 2
