# git.py
# Small, focused wrapper around the Git CLI.
# Everything the CLI needs to describe "the push that just happened" for a
# local run comes from here, so no other module shells out to git.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional

from ..context import TriggerEvent
from ..model import PipelineSource


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Non-zero exit raises subprocess.CalledProcessError; callers that can
    live without an answer catch it themselves.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Absolute path of the repository root, as git sees it."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    return _git(["rev-parse", "HEAD"], cwd)


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    # porcelain output is stable; any line at all means uncommitted work
    return _git(["status", "--porcelain"], cwd) != ""


def current_branch(cwd: Optional[str | Path] = None) -> Optional[str]:
    """Branch name, or None on a detached HEAD."""
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd)
    return None if name == "HEAD" else name


def tag_at_head(cwd: Optional[str | Path] = None) -> Optional[str]:
    """A tag pointing exactly at HEAD, if there is one."""
    try:
        return _git(["describe", "--tags", "--exact-match", "HEAD"], cwd) or None
    except subprocess.CalledProcessError:
        return None


def commit_message(cwd: Optional[str | Path] = None) -> str:
    return _git(["log", "-1", "--format=%B"], cwd)


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Files changed between two refs, relative to the repository root.

    Typical usage:
        base = merge_base("origin/main")
        files = changed_files(base)
    """
    out = _git(["diff", "--name-only", f"{base}..{head}"], cwd)
    if not out:
        return []
    return out.splitlines()


def working_tree_changes(cwd: Optional[str | Path] = None) -> List[str]:
    """Staged, unstaged and untracked paths."""
    files = set()
    for args in (["diff", "--name-only"], ["diff", "--name-only", "--cached"],
                 ["ls-files", "--others", "--exclude-standard"]):
        out = _git(args, cwd)
        if out:
            files.update(out.splitlines())
    return sorted(files)


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    """Common ancestor of HEAD and `with_ref`; where the branch diverged."""
    return _git(["merge-base", "HEAD", with_ref], cwd)


def get_remote_url(remote: str = "origin", cwd: Optional[str | Path] = None) -> str:
    return _git(["remote", "get-url", remote], cwd)


def project_path(cwd: Optional[str | Path] = None) -> str:
    """
    "group/name" from the origin URL (git@host:group/name.git or
    https://host/group/name.git); the directory name when there is no remote.
    """
    try:
        url = get_remote_url("origin", cwd).rstrip("/")
    except subprocess.CalledProcessError:
        return repo_root(cwd).name
    if url.endswith(".git"):
        url = url[:-4]
    if "://" in url:
        url = url.split("://", 1)[1].split("/", 1)[-1]
    elif ":" in url:
        url = url.split(":", 1)[1]
    return url


def changed_paths(compare_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> List[str]:
    """
    What a push of the current state would change:
      - dirty tree  -> the uncommitted paths
      - clean tree  -> HEAD against its merge-base with compare_ref,
                       falling back to HEAD~1, then to every tracked file
    """
    if is_dirty(cwd):
        return working_tree_changes(cwd)
    try:
        base = merge_base(compare_ref, cwd)
    except subprocess.CalledProcessError:
        base = "HEAD~1"
    try:
        return changed_files(base, "HEAD", cwd)
    except subprocess.CalledProcessError:
        # first commit
        out = _git(["ls-files"], cwd)
        return out.splitlines() if out else []


def trigger_event(
    *,
    compare_ref: str = "origin/main",
    source: PipelineSource | str = PipelineSource.PUSH,
    project: Optional[str] = None,
    cwd: Optional[str | Path] = None,
) -> TriggerEvent:
    """Describe the local repository state as a trigger event."""
    tag = tag_at_head(cwd)
    ref = tag or current_branch(cwd) or head_sha(cwd)
    return TriggerEvent(
        ref=ref,
        commit_sha=head_sha(cwd),
        is_tag=tag is not None,
        pipeline_source=source,
        commit_message=commit_message(cwd),
        changed_paths=changed_paths(compare_ref, cwd),
        project=project if project is not None else project_path(cwd),
    )
