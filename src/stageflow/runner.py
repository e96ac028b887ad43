# runner.py
from __future__ import annotations

import logging
import queue
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from .artifacts import utcnow
from .config import PipelineConfig
from .context import Context, TriggerEvent
from .dag import JobGraph, build_graph
from .model import JobRun, JobState, PipelineStatus, When
from .rules import ActiveJobSet, evaluate_workflow, select_active_jobs
from .scheduler import Cancel, Play, Supersede

if TYPE_CHECKING:
    from .scheduler import Scheduler

log = logging.getLogger(__name__)


@dataclass(eq=False)
class PipelineRun:
    """
    One pipeline run: its Context, the active job set, the job graph and a
    JobRun per active job. Only the Scheduler driving it changes job states;
    other threads talk to it through play() / cancel() / supersede().
    """
    id: str
    config: PipelineConfig
    context: Context
    active: ActiveJobSet
    graph: Optional[JobGraph]
    jobs: Dict[str, JobRun] = field(default_factory=dict)
    status: PipelineStatus = PipelineStatus.CREATED
    cancel_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    inbox: queue.Queue = field(default_factory=queue.Queue, repr=False)

    # ---- lifecycle (called by the Scheduler) ----

    def mark_running(self) -> None:
        self.status = PipelineStatus.RUNNING
        self.started_at = utcnow()

    def finish(self) -> None:
        self.status = self.terminal_status()
        self.finished_at = utcnow()

    # ---- requests from other threads ----

    def play(self, job: str) -> None:
        if job not in self.jobs:
            raise KeyError(f"no job named {job!r} in pipeline {self.id}")
        self.inbox.put(Play(job))

    def cancel(self, reason: str = "cancelled") -> None:
        self.inbox.put(Cancel(reason))

    def supersede(self, by: Optional[str] = None) -> bool:
        """
        Ask the run to give way to a newer one. Only honored when every
        running job is interruptible; returns whether it was requested.
        """
        if self.status in (PipelineStatus.SUCCEEDED, PipelineStatus.FAILED,
                           PipelineStatus.CANCELLED, PipelineStatus.SKIPPED):
            return False
        running = [jr for jr in self.jobs.values() if jr.state is JobState.RUNNING]
        if any(not jr.spec.interruptible for jr in running):
            return False
        self.inbox.put(Supersede(by))
        return True

    # ---- results ----

    @property
    def done(self) -> bool:
        return self.status not in (PipelineStatus.CREATED, PipelineStatus.RUNNING)

    def terminal_status(self) -> PipelineStatus:
        """
        Cancelled if cancellation was requested; Failed if any job without
        allow_failure ended Failed or Cancelled; Succeeded otherwise.
        Skipped jobs are neutral.
        """
        if self.graph is None:
            return PipelineStatus.SKIPPED
        if self.cancel_reason is not None:
            return PipelineStatus.CANCELLED
        for jr in self.jobs.values():
            if jr.spec.allow_failure:
                continue
            if jr.state in (JobState.FAILED, JobState.CANCELLED):
                return PipelineStatus.FAILED
        return PipelineStatus.SUCCEEDED

    def results(self) -> Dict[str, str]:
        return {name: jr.state.value for name, jr in self.jobs.items()}

    def to_report(self) -> dict:
        ctx = self.context
        order = self.graph.order if self.graph is not None else ()
        return {
            "id": self.id,
            "project": ctx.project,
            "ref": ctx.ref,
            "sha": ctx.commit_sha,
            "source": ctx.pipeline_source.value,
            "status": self.status.value,
            "cancel_reason": self.cancel_reason,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "jobs": [self.jobs[name].to_dict() for name in order],
        }


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def create_pipeline(config: PipelineConfig, event: TriggerEvent, *, pipeline_id: Optional[str] = None) -> PipelineRun:
    """
    Context -> workflow rules -> active job set -> job graph -> JobRuns.

    Every ConfigurationError surfaces here, before a single JobRun exists.
    """
    ctx = Context.from_event(event)
    run_id = pipeline_id or uuid.uuid4().hex[:12]

    workflow = evaluate_workflow(config.workflow_rules, ctx)
    if not workflow.included:
        log.info("workflow rules exclude ref %s (%s); no pipeline", ctx.ref, ctx.pipeline_source.value)
        empty = ActiveJobSet(jobs={}, decisions={}, excluded=frozenset(config.jobs), stages=config.stages)
        return PipelineRun(
            id=run_id, config=config, context=ctx, active=empty, graph=None,
            status=PipelineStatus.SKIPPED,
        )

    active = select_active_jobs(config, ctx)
    graph = build_graph(active, ctx)

    jobs: Dict[str, JobRun] = {}
    for name in graph.order:
        initial = JobState.MANUAL if active.decisions[name].when is When.MANUAL else JobState.PENDING
        jobs[name] = JobRun(spec=active.jobs[name], state=initial)

    log.info(
        "pipeline %s created: %d active, %d excluded",
        run_id, len(active), len(active.excluded),
    )
    return PipelineRun(id=run_id, config=config, context=ctx, active=active, graph=graph, jobs=jobs)


def run_pipeline(config: PipelineConfig, event: TriggerEvent, scheduler: "Scheduler") -> PipelineRun:
    run = create_pipeline(config, event)
    return scheduler.execute(run)


class PipelineRegistry:
    """
    Active runs per (project, ref). Registering a newer run asks the older
    one to give way (pre-empting interruptible jobs, then cancelling it).
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._active: Dict[Tuple[str, str], PipelineRun] = {}

    def register(self, run: PipelineRun) -> Optional[PipelineRun]:
        """Returns the run that was superseded, if any."""
        key = (run.context.project, run.context.ref)
        with self._lock:
            previous = self._active.get(key)
            self._active[key] = run
        if previous is None or previous is run or previous.done:
            return None
        if previous.supersede(by=run.id):
            log.info("pipeline %s supersedes %s on %s@%s", run.id, previous.id, *key)
            return previous
        log.info("pipeline %s keeps running alongside %s (non-interruptible work)", previous.id, run.id)
        return None

    def release(self, run: PipelineRun) -> None:
        key = (run.context.project, run.context.ref)
        with self._lock:
            if self._active.get(key) is run:
                del self._active[key]

    def active(self) -> List[PipelineRun]:
        with self._lock:
            return list(self._active.values())
