# scheduler.py
from __future__ import annotations

import dataclasses
import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional, Set

from .artifacts import ArtifactKey, ArtifactStore, MemoryArtifactStore, StoredArtifact, select_files
from .context import expand_variables
from .dag import NEED, POLL, STAGE, PollNode
from .errors import ArtifactExistsError, ExternalDependencyTimeout
from .executor import ExecutionAdapter, ExecutionResult
from .external import APIError, LocalPipelineIndex, PipelineClient, check_external
from .model import AttemptRecord, FailureClass, JobRun, JobState, PipelineStatus, When
from .settings import EngineSettings, default_workers

if TYPE_CHECKING:
    from .runner import PipelineRun

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Each pipeline run is driven by one loop (in the caller's thread) that
# owns every state change of its JobRuns. Everything else talks to the
# loop through the run's inbox:
#
#   worker thread  -> JobFinished   (adapter returned or raised)
#   any worker     -> SlotFreed     (broadcast to every active run)
#   poll thread    -> PollChecked   (one cross-pipeline status check)
#   callers        -> Play / Cancel / Supersede
#
# Worker slots are a semaphore shared by all runs of one Scheduler, so the
# pool size bounds concurrent jobs across pipelines. Poll intervals and
# timeouts are timers of the loop; a poll thread only makes a single check.
# ---------------------------------------------------------------------


# ----------------------------------------------------------------------
# Messages
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class JobFinished:
    job: str
    attempt: int
    result: Optional[ExecutionResult] = None
    error: Optional[BaseException] = None


@dataclass(frozen=True)
class SlotFreed:
    pass


@dataclass(frozen=True)
class PollChecked:
    node: str
    satisfied: bool


@dataclass(frozen=True)
class Play:
    job: str


@dataclass(frozen=True)
class Cancel:
    reason: str = "cancelled"


@dataclass(frozen=True)
class Supersede:
    by: Optional[str] = None


# ----------------------------------------------------------------------
# Per-run driver state
# ----------------------------------------------------------------------

@dataclass
class _Drive:
    run: "PipelineRun"
    in_flight: Set[str] = field(default_factory=set)
    cancel_events: Dict[str, threading.Event] = field(default_factory=dict)
    deadlines: Dict[str, float] = field(default_factory=dict)
    preempting: Set[str] = field(default_factory=set)
    polls: Dict[str, Optional[bool]] = field(default_factory=dict)  # None = still polling
    poll_due: Dict[str, float] = field(default_factory=dict)
    poll_deadlines: Dict[str, float] = field(default_factory=dict)
    poll_checking: Set[str] = field(default_factory=set)
    cancelling: bool = False

    def jobs_in(self, *states: JobState) -> List[JobRun]:
        return [jr for jr in self.run.jobs.values() if jr.state in states]


def _skip_reason(blockers: List[JobRun]) -> str:
    """A failed upstream wins; otherwise pass on why the upstream was skipped."""
    if any(up.state is not JobState.SKIPPED for up in blockers):
        return "upstream_failed"
    return blockers[0].skip_reason or "upstream_failed"


class Scheduler:
    """
    Runs PipelineRuns on a bounded worker pool.

    One Scheduler may drive several runs concurrently (each from its own
    thread); they share the pool, the artifact store and the cross-pipeline
    client.
    """

    def __init__(
        self,
        adapter: ExecutionAdapter,
        store: Optional[ArtifactStore] = None,
        *,
        max_workers: Optional[int] = None,
        external: Optional[PipelineClient] = None,
        poll_interval: float = 30.0,
        poll_timeout: float = 3600.0,
        cancel_grace: float = 30.0,
        poll_workers: Optional[int] = None,
        wait_for_manual: bool = False,
        publish: bool = True,
    ):
        self.adapter = adapter
        self.store = store if store is not None else MemoryArtifactStore()
        self.external = external if external is not None else LocalPipelineIndex(self.store)
        self.max_workers = max_workers or default_workers()
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.cancel_grace = cancel_grace
        self.wait_for_manual = wait_for_manual
        self.publish = publish

        self._slots = threading.BoundedSemaphore(self.max_workers)
        self._pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="stageflow-job")
        self._poll_pool = ThreadPoolExecutor(max_workers=poll_workers, thread_name_prefix="stageflow-poll")
        self._inboxes_lock = threading.Lock()
        self._inboxes: Set[queue.Queue] = set()

    @classmethod
    def from_settings(cls, settings: EngineSettings, adapter: ExecutionAdapter, store: ArtifactStore, **kwargs) -> "Scheduler":
        return cls(
            adapter,
            store,
            max_workers=settings.workers,
            poll_interval=settings.poll_interval,
            poll_timeout=settings.poll_timeout,
            cancel_grace=settings.cancel_grace,
            **kwargs,
        )

    def __enter__(self) -> "Scheduler":
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()

    def shutdown(self, wait: bool = True) -> None:
        self._poll_pool.shutdown(wait=wait, cancel_futures=True)
        self._pool.shutdown(wait=wait, cancel_futures=True)

    # ------------------------------------------------------------------
    # Driving one run
    # ------------------------------------------------------------------

    def execute(self, run: "PipelineRun") -> "PipelineRun":
        """Drive `run` until every JobRun is terminal. Blocks the caller."""
        if run.status is PipelineStatus.SKIPPED:
            log.info("pipeline %s skipped by workflow rules", run.id)
            return run
        if run.status is not PipelineStatus.CREATED:
            raise RuntimeError(f"pipeline {run.id} has already been executed")

        st = _Drive(run=run)
        with self._inboxes_lock:
            self._inboxes.add(run.inbox)
        run.mark_running()
        log.info("pipeline %s started (%d jobs, ref=%s)", run.id, len(run.jobs), run.context.ref)

        try:
            self._start_polls(st)
            self._loop(st)
        finally:
            with self._inboxes_lock:
                self._inboxes.discard(run.inbox)

        run.finish()
        log.info("pipeline %s finished: %s", run.id, run.status.value)
        if self.publish and hasattr(self.external, "publish"):
            try:
                self.external.publish(run.to_report())
            except APIError as e:
                log.warning("could not publish pipeline %s: %s", run.id, e)
        return run

    def _loop(self, st: _Drive) -> None:
        run = st.run
        while True:
            if not st.cancelling:
                self._tick_polls(st)
                self._sweep(st)
                self._start_ready(st)
                if self._stalled(st):
                    manual = st.jobs_in(JobState.MANUAL)
                    if not manual:
                        raise RuntimeError(f"pipeline {run.id} cannot make progress")
                    if not self.wait_for_manual:
                        for jr in manual:
                            jr.skip_reason = "manual"
                            jr.transition(JobState.SKIPPED)
                            log.info("[%s] manual job not played; skipped", jr.name)
                        continue

            if all(jr.terminal for jr in run.jobs.values()):
                return

            timeout = None
            wake = [*st.deadlines.values(), *st.poll_deadlines.values(), *st.poll_due.values()]
            if wake:
                timeout = max(0.0, min(wake) - time.monotonic())
            try:
                msg = run.inbox.get(timeout=timeout)
            except queue.Empty:
                msg = None
            except KeyboardInterrupt:
                msg = Cancel("interrupted")

            if msg is not None:
                self._dispatch(st, msg)
            self._expire_deadlines(st)

    def _dispatch(self, st: _Drive, msg) -> None:
        if isinstance(msg, JobFinished):
            self._on_finished(st, msg)
        elif isinstance(msg, PollChecked):
            self._on_poll_checked(st, msg)
        elif isinstance(msg, Play):
            self._on_play(st, msg.job)
        elif isinstance(msg, Cancel):
            self._cancel(st, msg.reason)
        elif isinstance(msg, Supersede):
            self._on_supersede(st, msg)
        # SlotFreed only wakes the loop

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def _verdict(self, st: _Drive, jr: JobRun) -> str:
        """
        One of: "ready", "wait", "skip", "timeout". A "skip" also records
        jr.skip_reason.
        """
        run = st.run
        always = run.active.decisions[jr.name].when is When.ALWAYS
        pending = timed_out = False
        blockers: List[JobRun] = []

        for dep in run.graph.dependencies(jr.name):
            if dep.kind == POLL:
                state = st.polls.get(dep.upstream)
                if state is None:
                    pending = True
                elif state is False:
                    timed_out = True
                continue

            up = run.jobs[dep.upstream]
            if not up.terminal:
                pending = True
                continue
            if always or up.state is JobState.SUCCEEDED:
                continue
            # allow_failure makes a failed/skipped upstream count as done,
            # but never satisfies a need that requires its artifacts
            if up.spec.allow_failure and not dep.artifacts:
                continue
            blockers.append(up)

        if blockers:
            jr.skip_reason = _skip_reason(blockers)
            return "skip"
        if timed_out:
            return "timeout"
        if pending:
            return "wait"
        return "ready"

    def _sweep(self, st: _Drive) -> None:
        """Fixed point: skip what can no longer run, promote what can."""
        run = st.run
        changed = True
        while changed:
            changed = False
            for name in run.graph.order:
                jr = run.jobs[name]
                if jr.state is not JobState.PENDING:
                    continue
                verdict = self._verdict(st, jr)
                if verdict == "skip":
                    jr.transition(JobState.SKIPPED)
                    log.info("[%s] skipped (%s): a required upstream did not succeed", name, jr.skip_reason)
                    changed = True
                elif verdict == "timeout":
                    jr.failure = FailureClass.EXTERNAL_DEPENDENCY_TIMEOUT
                    jr.transition(JobState.FAILED)
                    log.warning("[%s] failed: external dependency timed out", name)
                    changed = True
                elif verdict == "ready":
                    jr.transition(JobState.READY)
                    log.debug("[%s] ready", name)
                    changed = True

    def _stalled(self, st: _Drive) -> bool:
        if st.in_flight or st.jobs_in(JobState.READY, JobState.RUNNING):
            return False
        if any(state is None for state in st.polls.values()):
            return False
        return not all(jr.terminal for jr in st.run.jobs.values())

    # ------------------------------------------------------------------
    # Starting jobs
    # ------------------------------------------------------------------

    def _start_ready(self, st: _Drive) -> None:
        run = st.run
        for name in run.graph.order:
            jr = run.jobs[name]
            if jr.state is not JobState.READY:
                continue
            if not self._slots.acquire(blocking=False):
                return  # woken again by SlotFreed
            jr.transition(JobState.RUNNING)
            jr.attempt += 1
            jr.failure = None
            cancel_event = threading.Event()
            st.cancel_events[name] = cancel_event
            st.in_flight.add(name)
            env = self.job_env(run, jr)
            inputs = self.input_artifacts(st, jr)
            log.info("[%s] attempt %d started", name, jr.attempt)
            try:
                self._pool.submit(self._work, run.inbox, jr, jr.attempt, env, inputs, cancel_event)
            except RuntimeError:
                self._slots.release()
                raise

    def _work(self, inbox: queue.Queue, jr: JobRun, attempt: int, env, inputs, cancel_event) -> None:
        started = time.monotonic()
        result: Optional[ExecutionResult] = None
        error: Optional[BaseException] = None
        try:
            result = self.adapter.run(jr.spec, env, inputs, cancel_event)
        except Exception as e:  # anything escaping the adapter is an infrastructure failure
            log.warning("[%s] adapter error: %s", jr.name, e)
            error = e
        finally:
            self._slots.release()
        if result is not None and not result.duration_ms:
            result.duration_ms = int((time.monotonic() - started) * 1000)
        inbox.put(JobFinished(job=jr.name, attempt=attempt, result=result, error=error))
        self._broadcast(SlotFreed(), skip=inbox)

    def _broadcast(self, msg, skip: Optional[queue.Queue] = None) -> None:
        with self._inboxes_lock:
            targets = [q for q in self._inboxes if q is not skip]
        for q in targets:
            q.put(msg)

    def job_env(self, run: "PipelineRun", jr: JobRun) -> Dict[str, str]:
        env: Dict[str, str] = dict(run.config.variables)
        env.update(run.context.ci_variables())
        env.update({
            "CI": "true",
            "CI_PIPELINE_ID": run.id,
            "CI_JOB_NAME": jr.name,
            "CI_JOB_STAGE": jr.spec.stage,
        })
        for key, value in jr.spec.variables.items():
            env[key] = expand_variables(value, env)
        return env

    def input_artifacts(self, st: _Drive, jr: JobRun) -> List[StoredArtifact]:
        run = st.run
        out: List[StoredArtifact] = []
        for dep in run.graph.dependencies(jr.name):
            if dep.kind == POLL:
                node: PollNode = run.graph.poll_nodes[dep.upstream]
                art = self.external.latest_artifact(node.project, node.ref, node.job)
            elif dep.kind == STAGE or (dep.kind == NEED and dep.artifacts):
                key = run.jobs[dep.upstream].artifact_key
                art = self.store.get(key) if key is not None else None
            else:
                art = None
            if art is not None:
                out.append(art)
        return out

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def _on_finished(self, st: _Drive, msg: JobFinished) -> None:
        run = st.run
        jr = run.jobs[msg.job]
        st.in_flight.discard(msg.job)
        st.cancel_events.pop(msg.job, None)
        st.deadlines.pop(msg.job, None)

        if msg.job in st.preempting:
            st.preempting.discard(msg.job)
            self._preempted(st, jr)
            return
        if jr.state is not JobState.RUNNING or msg.attempt != jr.attempt:
            log.debug("[%s] late result for attempt %d ignored", msg.job, msg.attempt)
            return

        result = msg.result
        if msg.error is not None:
            failure: Optional[FailureClass] = FailureClass.TRANSIENT_INFRASTRUCTURE
            exit_code = None
        elif result.cancelled:
            failure = None if st.cancelling else FailureClass.TRANSIENT_INFRASTRUCTURE
            exit_code = result.exit_code
        elif result.exit_code == 0:
            failure, exit_code = None, 0
        else:
            failure, exit_code = FailureClass.SCRIPT_FAILURE, result.exit_code

        jr.history.append(AttemptRecord(
            number=msg.attempt,
            failure=failure,
            exit_code=exit_code,
            duration_ms=result.duration_ms if result is not None else 0,
        ))
        jr.exit_code = exit_code

        if result is not None and result.ok:
            self._emit_artifacts(run, jr, result, succeeded=True)
            jr.transition(JobState.SUCCEEDED)
            log.info("[%s] succeeded (attempt %d)", jr.name, jr.attempt)
            return

        if st.cancelling:
            jr.transition(JobState.CANCELLED)
            log.info("[%s] cancelled", jr.name)
            return

        jr.failure = failure
        jr.transition(JobState.FAILED)
        if jr.spec.retry.allows(failure, jr.attempt):
            log.info(
                "[%s] attempt %d failed (%s); retrying (%d/%d)",
                jr.name, jr.attempt, failure.value, jr.attempt, jr.spec.retry.max,
            )
            jr.transition(JobState.PENDING)
            return

        if result is not None:
            self._emit_artifacts(run, jr, result, succeeded=False)
        log.info("[%s] failed after %d attempt(s): %s", jr.name, jr.attempt, failure.value)

    def _emit_artifacts(self, run: "PipelineRun", jr: JobRun, result: ExecutionResult, *, succeeded: bool) -> None:
        policy = jr.spec.artifacts
        if policy is None or not policy.emits(succeeded):
            return
        files = select_files(result.output_files, policy.paths)
        if policy.name:
            policy = dataclasses.replace(policy, name=expand_variables(policy.name, self.job_env(run, jr)))
        key = ArtifactKey(job=jr.name, ref=run.context.ref, sha=run.context.commit_sha, project=run.context.project)
        try:
            self.store.put(key, files, policy)
        except ArtifactExistsError:
            log.warning("[%s] artifact %s already exists; keeping the stored one", jr.name, key)
        jr.artifact_key = key

    # ------------------------------------------------------------------
    # Manual jobs, cancellation, pre-emption
    # ------------------------------------------------------------------

    def _on_play(self, st: _Drive, name: str) -> None:
        jr = st.run.jobs.get(name)
        if jr is None or jr.state is not JobState.MANUAL:
            log.warning("pipeline %s: cannot play %s (not a waiting manual job)", st.run.id, name)
            return
        if st.cancelling:
            return
        jr.transition(JobState.PENDING)
        log.info("[%s] played", name)

    def _cancel(self, st: _Drive, reason: str) -> None:
        run = st.run
        if st.cancelling:
            return
        st.cancelling = True
        st.poll_due.clear()
        st.poll_deadlines.clear()
        run.cancel_reason = reason
        log.info("pipeline %s cancelling (%s)", run.id, reason)
        deadline = time.monotonic() + self.cancel_grace
        for jr in run.jobs.values():
            if jr.terminal:
                continue
            if jr.state is JobState.RUNNING:
                if jr.name not in st.preempting:
                    st.cancel_events[jr.name].set()
                    st.deadlines[jr.name] = deadline
                continue
            jr.transition(JobState.CANCELLED)

    def _on_supersede(self, st: _Drive, msg: Supersede) -> None:
        run = st.run
        if st.cancelling:
            return
        running = st.jobs_in(JobState.RUNNING)
        if any(not jr.spec.interruptible for jr in running):
            log.info("pipeline %s not superseded: a non-interruptible job is running", run.id)
            return
        deadline = time.monotonic() + self.cancel_grace
        for jr in running:
            st.preempting.add(jr.name)
            st.cancel_events[jr.name].set()
            st.deadlines[jr.name] = deadline
        for jr in st.jobs_in(JobState.READY):
            jr.transition(JobState.PENDING)
            jr.preemptions += 1
        reason = f"superseded by {msg.by}" if msg.by else "superseded"
        self._cancel(st, reason)

    def _preempted(self, st: _Drive, jr: JobRun) -> None:
        # the interrupted attempt does not count
        jr.transition(JobState.PENDING)
        jr.attempt -= 1
        jr.preemptions += 1
        log.info("[%s] pre-empted", jr.name)
        if st.cancelling:
            jr.transition(JobState.CANCELLED)

    def _expire_deadlines(self, st: _Drive) -> None:
        now = time.monotonic()
        for name, deadline in list(st.deadlines.items()):
            if now < deadline:
                continue
            del st.deadlines[name]
            st.in_flight.discard(name)
            jr = st.run.jobs[name]
            if name in st.preempting:
                st.preempting.discard(name)
                self._preempted(st, jr)
            elif jr.state is JobState.RUNNING:
                jr.transition(JobState.CANCELLED)
            log.warning("[%s] did not stop within %.1fs; marked cancelled", name, self.cancel_grace)

    # ------------------------------------------------------------------
    # Cross-pipeline polls
    # ------------------------------------------------------------------

    def _start_polls(self, st: _Drive) -> None:
        now = time.monotonic()
        for node_id in st.run.graph.poll_nodes:
            st.polls[node_id] = None
            st.poll_due[node_id] = now
            # measured from pipeline start, not from when a check gets a thread
            st.poll_deadlines[node_id] = now + self.poll_timeout

    def _tick_polls(self, st: _Drive) -> None:
        """Time out overdue polls, then submit the checks that are due."""
        now = time.monotonic()
        for node_id, deadline in list(st.poll_deadlines.items()):
            if now >= deadline:
                self._poll_timed_out(st, node_id, now)
        for node_id, due in list(st.poll_due.items()):
            if now < due or node_id in st.poll_checking:
                continue
            del st.poll_due[node_id]
            st.poll_checking.add(node_id)
            self._poll_pool.submit(self._check, st.run.inbox, st.run.graph.poll_nodes[node_id])

    def _check(self, inbox: queue.Queue, node: PollNode) -> None:
        try:
            satisfied = check_external(self.external, node) is not None
        except Exception as e:  # counts as "not yet", like an API error
            log.warning("poll %s failed: %s", node.id, e)
            satisfied = False
        inbox.put(PollChecked(node=node.id, satisfied=satisfied))

    def _on_poll_checked(self, st: _Drive, msg: PollChecked) -> None:
        st.poll_checking.discard(msg.node)
        if st.cancelling or st.polls.get(msg.node) is not None:
            return
        if msg.satisfied:
            st.polls[msg.node] = True
            st.poll_deadlines.pop(msg.node, None)
            return
        st.poll_due[msg.node] = time.monotonic() + self.poll_interval

    def _poll_timed_out(self, st: _Drive, node_id: str, now: float) -> None:
        node = st.run.graph.poll_nodes[node_id]
        started = st.poll_deadlines.pop(node_id) - self.poll_timeout
        st.poll_due.pop(node_id, None)
        st.polls[node_id] = False
        error = ExternalDependencyTimeout(project=node.project, ref=node.ref, job=node.job, waited_s=now - started)
        log.warning("pipeline %s: %s", st.run.id, error)
