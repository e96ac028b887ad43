# executor.py
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Protocol, Sequence

from .artifacts import StoredArtifact, select_files
from .errors import InfrastructureError
from .model import JobSpec

log = logging.getLogger(__name__)

LOG_TAIL = 4000  # characters of job output kept on the result


@dataclass
class ExecutionResult:
    exit_code: int
    duration_ms: int = 0
    output_files: Mapping[str, bytes] = field(default_factory=dict)
    log: str = ""
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.cancelled


class ExecutionAdapter(Protocol):
    """
    Boundary to whatever actually runs a job body.

    Implementations return an ExecutionResult for anything the job itself
    did (including a nonzero exit) and raise InfrastructureError when the
    job could not be run at all. When cancel_event is set they should stop
    the job and return promptly with cancelled=True.
    """

    def run(
        self,
        job: JobSpec,
        env: Mapping[str, str],
        input_artifacts: Sequence[StoredArtifact],
        cancel_event: threading.Event,
    ) -> ExecutionResult:
        ...


# ----------------------------------------------------------------------
# Shell adapter
# ----------------------------------------------------------------------

def _restore(workspace: Path, artifacts: Sequence[StoredArtifact]) -> None:
    for art in artifacts:
        for rel, data in art.files.items():
            target = (workspace / rel).resolve()
            if workspace not in target.parents:
                raise InfrastructureError(f"artifact {art.key} holds a path outside the workspace: {rel}")
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)


def _collect(workspace: Path, paths: Sequence[str]) -> Dict[str, bytes]:
    if not paths:
        return {}
    files: Dict[str, bytes] = {}
    for p in workspace.rglob("*"):
        if p.is_file():
            files[p.relative_to(workspace).as_posix()] = b""
    keep = select_files(files, paths)
    return {rel: (workspace / rel).read_bytes() for rel in sorted(keep)}


class ShellExecutionAdapter:
    """
    Runs a job's scripts with the local shell.

    Each job gets a fresh workspace (a copy of `source_dir` when given),
    input artifacts are unpacked into it, then:
      before_script + script   (as one `sh -e` script; first failure stops it)
      after_script             (always, unless cancelled; exit code ignored)
    Files matching artifacts.paths are collected afterwards.
    """

    def __init__(
        self,
        *,
        source_dir: Optional[str | Path] = None,
        workspace_root: Optional[str | Path] = None,
        shell: str = "/bin/sh",
        kill_after: float = 5.0,
        keep_workspace: bool = False,
    ):
        self.source_dir = Path(source_dir).resolve() if source_dir else None
        self.workspace_root = Path(workspace_root).resolve() if workspace_root else None
        self.shell = shell
        self.kill_after = kill_after
        self.keep_workspace = keep_workspace

    def _workspace(self, job: JobSpec) -> Path:
        if self.workspace_root is not None:
            self.workspace_root.mkdir(parents=True, exist_ok=True)
        ws = Path(tempfile.mkdtemp(prefix=f"stageflow-{job.name.replace('/', '_')}-",
                                   dir=str(self.workspace_root) if self.workspace_root else None))
        if self.source_dir is not None:
            shutil.copytree(
                self.source_dir,
                ws,
                dirs_exist_ok=True,
                ignore=shutil.ignore_patterns(".git", ".stageflow"),
            )
        return ws.resolve()

    def _exec(self, script: Sequence[str], ws: Path, env: Dict[str, str], cancel_event: threading.Event, out) -> tuple[int, bool]:
        try:
            proc = subprocess.Popen(
                [self.shell, "-ec", "\n".join(script)],
                cwd=str(ws),
                env=env,
                stdout=out,
                stderr=subprocess.STDOUT,
            )
        except OSError as e:
            raise InfrastructureError(f"could not start {self.shell}: {e}") from e

        while True:
            try:
                return proc.wait(timeout=0.1), False
            except subprocess.TimeoutExpired:
                pass
            if cancel_event.is_set():
                proc.terminate()
                try:
                    proc.wait(timeout=self.kill_after)
                except subprocess.TimeoutExpired:
                    proc.kill()
                    proc.wait()
                return proc.returncode, True

    def run(
        self,
        job: JobSpec,
        env: Mapping[str, str],
        input_artifacts: Sequence[StoredArtifact],
        cancel_event: threading.Event,
    ) -> ExecutionResult:
        started = time.monotonic()
        try:
            ws = self._workspace(job)
        except OSError as e:
            raise InfrastructureError(f"could not prepare workspace for {job.name}: {e}") from e

        full_env = os.environ.copy()
        full_env.update(env)
        log_path = ws.parent / f"{ws.name}.log"
        try:
            _restore(ws, input_artifacts)
            with open(log_path, "wb") as out:
                body = list(job.before_script) + list(job.script)
                code, cancelled = (0, False)
                if body:
                    code, cancelled = self._exec(body, ws, full_env, cancel_event, out)
                if job.after_script and not cancelled:
                    after_code, _ = self._exec(job.after_script, ws, full_env, threading.Event(), out)
                    if after_code != 0:
                        log.warning("[%s] after_script exited %s (ignored)", job.name, after_code)

            files = _collect(ws, job.artifacts.paths if job.artifacts else ())
            text = log_path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            raise InfrastructureError(f"workspace error in {job.name}: {e}") from e
        finally:
            log_path.unlink(missing_ok=True)
            if not self.keep_workspace:
                shutil.rmtree(ws, ignore_errors=True)

        return ExecutionResult(
            exit_code=code,
            duration_ms=int((time.monotonic() - started) * 1000),
            output_files=files,
            log=text[-LOG_TAIL:],
            cancelled=cancelled,
        )
