# model.py
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import TYPE_CHECKING, Dict, FrozenSet, List, Mapping, Optional, Tuple

from .errors import IllegalTransition

if TYPE_CHECKING:
    from .artifacts import ArtifactKey
    from .predicates import Predicate


class PipelineSource(str, Enum):
    WEB = "web"
    SCHEDULE = "schedule"
    PUSH = "push"
    PIPELINE = "pipeline"
    API = "api"
    TRIGGER = "trigger"


class When(str, Enum):
    ON_SUCCESS = "on_success"
    NEVER = "never"
    MANUAL = "manual"
    ALWAYS = "always"


class EmitWhen(str, Enum):
    ON_SUCCESS = "on_success"
    ON_FAILURE = "on_failure"
    ALWAYS = "always"


class FailureClass(str, Enum):
    TRANSIENT_INFRASTRUCTURE = "transient_infrastructure"
    SCRIPT_FAILURE = "script_failure"
    EXTERNAL_DEPENDENCY_TIMEOUT = "external_dependency_timeout"


class JobState(str, Enum):
    MANUAL = "manual"
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class PipelineStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"  # workflow rules excluded the whole pipeline


TERMINAL_STATES = frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.SKIPPED, JobState.CANCELLED})

# FAILED -> PENDING is the retry loop; RUNNING/READY -> PENDING is pre-emption.
_TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    JobState.MANUAL: frozenset({JobState.PENDING, JobState.SKIPPED, JobState.CANCELLED}),
    JobState.PENDING: frozenset({JobState.READY, JobState.SKIPPED, JobState.CANCELLED, JobState.FAILED}),
    JobState.READY: frozenset({JobState.RUNNING, JobState.PENDING, JobState.SKIPPED, JobState.CANCELLED}),
    JobState.RUNNING: frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED, JobState.PENDING}),
    JobState.FAILED: frozenset({JobState.PENDING}),
    JobState.SUCCEEDED: frozenset(),
    JobState.SKIPPED: frozenset(),
    JobState.CANCELLED: frozenset(),
}


# ----------------------------------------------------------------------
# Declarative job model
# ----------------------------------------------------------------------

DEFAULT_RETENTION = timedelta(days=30)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry up to `max` extra attempts for failures whose class is in `on`."""
    max: int = 0
    on: FrozenSet[FailureClass] = frozenset({FailureClass.TRANSIENT_INFRASTRUCTURE})

    def allows(self, failure: FailureClass, attempt: int) -> bool:
        # never auto-retried, whatever the policy says
        if failure is FailureClass.EXTERNAL_DEPENDENCY_TIMEOUT:
            return False
        return failure in self.on and attempt <= self.max


@dataclass(frozen=True)
class ArtifactPolicy:
    paths: Tuple[str, ...] = ()
    when: EmitWhen = EmitWhen.ON_SUCCESS
    expire_in: Optional[timedelta] = DEFAULT_RETENTION  # None = never expires
    name: Optional[str] = None

    def emits(self, succeeded: bool) -> bool:
        if self.when is EmitWhen.ALWAYS:
            return True
        if self.when is EmitWhen.ON_SUCCESS:
            return succeeded
        return not succeeded


@dataclass(frozen=True)
class NeedRef:
    """
    A dependency declared under `needs`.

    project/ref are only set for needs that point at another pipeline.
    """
    job: str
    project: Optional[str] = None
    ref: Optional[str] = None
    artifacts: bool = False  # true = artifacts required, and handed to the job

    def is_cross_pipeline(self, project: str, ref: str) -> bool:
        if self.project is None and self.ref is None:
            return False
        return (self.project or project, self.ref or ref) != (project, ref)


@dataclass(frozen=True)
class RuleClause:
    condition: Optional["Predicate"] = None  # None matches everything
    changes: Optional[Tuple[str, ...]] = None
    when: When = When.ON_SUCCESS


@dataclass(frozen=True)
class JobSpec:
    name: str
    stage: str = "test"
    rules: Tuple[RuleClause, ...] = ()
    # None = stage-barrier mode; a tuple (even empty) = DAG mode
    needs: Optional[Tuple[NeedRef, ...]] = None
    variables: Mapping[str, str] = field(default_factory=dict)
    retry: RetryPolicy = RetryPolicy()
    artifacts: Optional[ArtifactPolicy] = None
    allow_failure: bool = False
    interruptible: bool = False
    script: Tuple[str, ...] = ()
    before_script: Tuple[str, ...] = ()
    after_script: Tuple[str, ...] = ()
    image: Optional[str] = None
    tags: Tuple[str, ...] = ()

    @property
    def dag_mode(self) -> bool:
        return self.needs is not None

    def local_needs(self, project: str, ref: str) -> List[NeedRef]:
        return [n for n in (self.needs or ()) if not n.is_cross_pipeline(project, ref)]

    def cross_needs(self, project: str, ref: str) -> List[NeedRef]:
        return [n for n in (self.needs or ()) if n.is_cross_pipeline(project, ref)]


@dataclass(frozen=True)
class Decision:
    """Outcome of rule evaluation for one job. when=NEVER means excluded."""
    when: When
    clause: Optional[int] = None  # index of the matching clause, if any

    @property
    def included(self) -> bool:
        return self.when is not When.NEVER

    @classmethod
    def exclude(cls, clause: Optional[int] = None) -> "Decision":
        return cls(When.NEVER, clause)


# ----------------------------------------------------------------------
# Runtime entities
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class AttemptRecord:
    number: int
    failure: Optional[FailureClass]
    exit_code: Optional[int]
    duration_ms: int


@dataclass(eq=False)
class JobRun:
    """
    Runtime state of one job inside one pipeline run.

    State changes go through transition(), which enforces the transition
    table under the run's own lock.
    """
    spec: JobSpec
    state: JobState = JobState.PENDING
    attempt: int = 0
    failure: Optional[FailureClass] = None
    exit_code: Optional[int] = None
    skip_reason: Optional[str] = None
    artifact_key: Optional["ArtifactKey"] = None
    preemptions: int = 0
    history: List[AttemptRecord] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, target: JobState) -> None:
        with self._lock:
            if target not in _TRANSITIONS[self.state]:
                raise IllegalTransition(job=self.spec.name, current=self.state.value, target=target.value)
            self.state = target

    def to_dict(self) -> dict:
        return {
            "name": self.spec.name,
            "stage": self.spec.stage,
            "state": self.state.value,
            "attempts": self.attempt,
            "failure": self.failure.value if self.failure else None,
            "exit_code": self.exit_code,
            "skip_reason": self.skip_reason,
            "allow_failure": self.spec.allow_failure,
            "artifact": self.artifact_key.as_dict() if self.artifact_key is not None else None,
            "preemptions": self.preemptions,
        }
