# tests/test_executor.py
"""ShellExecutionAdapter against the local /bin/sh."""
import os
import threading
import time
from datetime import datetime, timezone

import pytest

from stageflow import job
from stageflow.artifacts import ArtifactKey, StoredArtifact
from stageflow.dsl import artifacts
from stageflow.errors import InfrastructureError
from stageflow.executor import ShellExecutionAdapter

pytestmark = pytest.mark.skipif(not os.path.exists("/bin/sh"), reason="needs a POSIX shell")


@pytest.fixture
def shell(tmp_path):
    src = tmp_path / "src"
    src.mkdir()
    (src / "input.txt").write_text("hello\n")
    (src / ".git").mkdir()
    return ShellExecutionAdapter(source_dir=src, workspace_root=tmp_path / "ws")


def run(adapter, spec, env=None, inputs=(), cancel=None):
    return adapter.run(spec, env or {}, list(inputs), cancel or threading.Event())


def test_script_output_is_collected(shell):
    spec = job(
        "build",
        "mkdir -p dist",
        'cp input.txt "dist/$NAME.txt"',
        "test ! -d .git",
        artifacts=artifacts("dist/"),
    )
    result = run(shell, spec, {"NAME": "out"})

    assert result.ok
    assert result.output_files == {"dist/out.txt": b"hello\n"}
    assert result.duration_ms >= 0


def test_first_failing_command_stops_the_script(shell):
    spec = job("unit", "echo before", "exit 3", "echo after")
    result = run(shell, spec)

    assert result.exit_code == 3
    assert not result.ok
    assert "before" in result.log
    assert "after" not in result.log


def test_after_script_always_runs(shell):
    spec = job("unit", "exit 1", after_script=["echo cleanup", "exit 7"], before_script=["echo setup"])
    result = run(shell, spec)

    assert result.exit_code == 1  # after_script's own exit code is ignored
    assert "setup" in result.log
    assert "cleanup" in result.log


def test_input_artifacts_are_restored(shell):
    art = StoredArtifact(
        key=ArtifactKey(job="build", ref="main", sha="abc"),
        created_at=datetime.now(timezone.utc),
        expires_at=None,
        files={"dist/app.bin": b"payload"},
    )
    spec = job("unit", "grep -q payload dist/app.bin")
    assert run(shell, spec, inputs=[art]).ok


def test_artifact_paths_outside_workspace_are_rejected(shell):
    art = StoredArtifact(
        key=ArtifactKey(job="build", ref="main", sha="abc"),
        created_at=datetime.now(timezone.utc),
        expires_at=None,
        files={"../escape.txt": b"x"},
    )
    with pytest.raises(InfrastructureError):
        run(shell, job("unit", "true"), inputs=[art])


def test_cancel_terminates_the_job(shell):
    cancel = threading.Event()
    timer = threading.Timer(0.3, cancel.set)
    timer.start()
    started = time.monotonic()
    result = run(shell, job("slow", "sleep 30", after_script=["echo never"]), cancel=cancel)

    assert result.cancelled
    assert not result.ok
    assert time.monotonic() - started < 10
    assert "never" not in result.log


def test_missing_shell_is_an_infrastructure_error(tmp_path):
    adapter = ShellExecutionAdapter(shell=str(tmp_path / "no-such-shell"))
    with pytest.raises(InfrastructureError):
        run(adapter, job("unit", "true"))
