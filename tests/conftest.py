# tests/conftest.py
"""
Shared fixtures: trigger/context factories, a scripted execution adapter and
a scheduler factory that shuts its pools down after each test.
"""
import threading
import time

import pytest

from stageflow.context import Context, TriggerEvent
from stageflow.errors import InfrastructureError
from stageflow.executor import ExecutionResult
from stageflow.scheduler import Scheduler


class FakeAdapter:
    """
    Execution adapter driven by a per-job script of outcomes.

    outcomes[name] is a list consumed one entry per attempt (the last entry
    repeats):
      int       -> exit code
      "infra"   -> raise InfrastructureError
      "crash"   -> raise RuntimeError (anything escaping the adapter)
      "block"   -> wait for the cancel event, then report cancelled
      "hang"    -> ignore the cancel event until release is set
    """

    def __init__(self, outcomes=None, files=None, delay=0.0):
        self.outcomes = {name: list(seq) for name, seq in (outcomes or {}).items()}
        self.files = files or {}
        self.delay = delay
        self.calls = []
        self.release = threading.Event()
        self.max_concurrent = 0
        self._running = 0
        self._lock = threading.Lock()
        self._started = {}

    def started(self, name):
        with self._lock:
            return self._started.setdefault(name, threading.Event())

    def names(self):
        with self._lock:
            return [c["job"] for c in self.calls]

    def _next(self, name):
        seq = self.outcomes.get(name)
        if not seq:
            return 0
        return seq.pop(0) if len(seq) > 1 else seq[0]

    def run(self, job, env, input_artifacts, cancel_event):
        with self._lock:
            self.calls.append({"job": job.name, "env": dict(env), "inputs": list(input_artifacts)})
            self._running += 1
            self.max_concurrent = max(self.max_concurrent, self._running)
            outcome = self._next(job.name)
            started = self._started.setdefault(job.name, threading.Event())
        started.set()
        try:
            if outcome == "infra":
                raise InfrastructureError("runner lost")
            if outcome == "crash":
                raise RuntimeError("adapter blew up")
            if outcome == "block":
                cancel_event.wait(10)
                return ExecutionResult(exit_code=-15, cancelled=True)
            if outcome == "hang":
                self.release.wait(10)
                return ExecutionResult(exit_code=-15, cancelled=True)
            if self.delay:
                time.sleep(self.delay)
            return ExecutionResult(exit_code=outcome, output_files=self.files.get(job.name, {}))
        finally:
            with self._lock:
                self._running -= 1


@pytest.fixture
def make_event():
    def _make(ref="main", *, is_tag=False, source="push", changed=(), message="", sha="abc123def4567890",
              project="group/app", variables=None):
        return TriggerEvent(
            ref=ref,
            commit_sha=sha,
            is_tag=is_tag,
            pipeline_source=source,
            commit_message=message,
            changed_paths=tuple(changed),
            project=project,
            variables=variables or {},
        )
    return _make


@pytest.fixture
def make_ctx(make_event):
    def _make(*args, **kwargs):
        return Context.from_event(make_event(*args, **kwargs))
    return _make


@pytest.fixture
def make_adapter():
    created = []

    def _make(outcomes=None, files=None, delay=0.0):
        a = FakeAdapter(outcomes, files, delay)
        created.append(a)
        return a

    yield _make
    for a in created:
        a.release.set()


@pytest.fixture
def adapter(make_adapter):
    return make_adapter()


@pytest.fixture
def make_scheduler():
    created = []

    def _make(adapter, store=None, **kwargs):
        kwargs.setdefault("max_workers", 4)
        kwargs.setdefault("poll_interval", 0.01)
        kwargs.setdefault("poll_timeout", 2.0)
        kwargs.setdefault("cancel_grace", 2.0)
        s = Scheduler(adapter, store, **kwargs)
        created.append(s)
        return s

    yield _make
    for s in created:
        s.shutdown(wait=False)
