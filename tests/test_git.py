# tests/test_git.py
"""Trigger facts read from a throwaway git repository."""
import shutil
import subprocess

import pytest

from stageflow.git_facts import git

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def sh(repo, *args):
    subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True)


@pytest.fixture
def repo(tmp_path):
    sh(tmp_path, "init", "-q", "-b", "main")
    sh(tmp_path, "config", "user.email", "ci@example.com")
    sh(tmp_path, "config", "user.name", "CI")
    (tmp_path / "app.py").write_text("print('hi')\n")
    sh(tmp_path, "add", ".")
    sh(tmp_path, "commit", "-q", "-m", "initial")
    return tmp_path


def test_trigger_event_on_a_branch(repo):
    (repo / "src").mkdir()
    (repo / "src" / "mod.py").write_text("x = 1\n")
    sh(repo, "add", ".")
    sh(repo, "commit", "-q", "-m", "add module")

    event = git.trigger_event(cwd=repo, project="group/app")
    assert event.ref == "main"
    assert not event.is_tag
    assert event.commit_sha == git.head_sha(repo)
    assert event.commit_message == "add module"
    # no origin/main: falls back to HEAD~1
    assert list(event.changed_paths) == ["src/mod.py"]


def test_tag_at_head(repo):
    sh(repo, "tag", "v1.0.0")
    event = git.trigger_event(cwd=repo, project="group/app")
    assert event.ref == "v1.0.0"
    assert event.is_tag


def test_dirty_tree_reports_uncommitted_paths(repo):
    (repo / "app.py").write_text("print('changed')\n")
    (repo / "new.txt").write_text("new\n")
    assert git.is_dirty(repo)
    assert git.changed_paths(cwd=repo) == ["app.py", "new.txt"]


def test_first_commit_lists_every_file(repo):
    assert git.changed_paths(cwd=repo) == ["app.py"]


@pytest.mark.parametrize(
    "url, expected",
    [
        ("git@gitlab.example.com:group/app.git", "group/app"),
        ("https://gitlab.example.com/group/sub/app.git", "group/sub/app"),
        ("https://gitlab.example.com/group/app/", "group/app"),
    ],
)
def test_project_path_from_origin(repo, url, expected):
    sh(repo, "remote", "add", "origin", url)
    assert git.project_path(repo) == expected


def test_project_path_without_remote(repo):
    assert git.project_path(repo) == repo.name
