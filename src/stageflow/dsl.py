# src/stageflow/dsl.py
from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Union

from .config import DEFAULT_STAGE, PipelineConfig, parse_duration, parse_retry
from .model import (
    DEFAULT_RETENTION,
    ArtifactPolicy,
    EmitWhen,
    JobSpec,
    NeedRef,
    RetryPolicy,
    RuleClause,
    When,
)
from .predicates import Predicate, compile_expression
from .rules import compile_glob


# ---------------------------------------------------------------------
# Small builders
# ---------------------------------------------------------------------

def rule(
    if_: Union[str, Predicate, None] = None,
    *,
    changes: Optional[Sequence[str]] = None,
    when: Union[When, str] = When.ON_SUCCESS,
) -> RuleClause:
    """rule('$CI_COMMIT_BRANCH == "main"', changes=["src/**"], when="manual")"""
    condition = compile_expression(if_) if isinstance(if_, str) else if_
    globs = None
    if changes is not None:
        globs = tuple(changes)
        for g in globs:
            compile_glob(g)
    return RuleClause(condition=condition, changes=globs, when=When(when))


def need(job: str, *, project: Optional[str] = None, ref: Optional[str] = None, artifacts: bool = False) -> NeedRef:
    return NeedRef(job=job, project=project, ref=ref, artifacts=artifacts)


def artifacts(
    *paths: str,
    when: Union[EmitWhen, str] = EmitWhen.ON_SUCCESS,
    expire_in: Any = None,
    name: Optional[str] = None,
) -> ArtifactPolicy:
    for p in paths:
        compile_glob(p)
    return ArtifactPolicy(
        paths=tuple(paths),
        when=EmitWhen(when),
        expire_in=DEFAULT_RETENTION if expire_in is None else parse_duration(expire_in),
        name=name,
    )


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *script: str,
    stage: str = DEFAULT_STAGE,
    rules: Optional[Iterable[RuleClause]] = None,
    when: Union[When, str] = When.ON_SUCCESS,
    needs: Optional[Iterable[Union[str, NeedRef]]] = None,
    variables: Optional[Mapping[str, Any]] = None,
    retry: Union[int, Mapping[str, Any], RetryPolicy, None] = None,
    artifacts: Optional[ArtifactPolicy] = None,
    allow_failure: bool = False,
    interruptible: bool = False,
    before_script: Sequence[str] = (),
    after_script: Sequence[str] = (),
    image: Optional[str] = None,
    tags: Sequence[str] = (),
) -> JobSpec:
    """
    job("unit", "pytest -q", stage="test", needs=["build"], retry=2)

    needs=None keeps stage-barrier ordering; needs=[] starts immediately.
    Without rules the job is included with `when`.
    """
    clauses = tuple(rules) if rules is not None else (RuleClause(when=When(when)),)
    need_refs = None
    if needs is not None:
        need_refs = tuple(NeedRef(job=n) if isinstance(n, str) else n for n in needs)
    retry_policy = retry if isinstance(retry, RetryPolicy) else parse_retry(retry, name)

    return JobSpec(
        name=name,
        stage=stage,
        rules=clauses,
        needs=need_refs,
        variables={k: str(v) for k, v in (variables or {}).items()},
        retry=retry_policy,
        artifacts=artifacts,
        allow_failure=allow_failure,
        interruptible=interruptible,
        script=tuple(script),
        before_script=tuple(before_script),
        after_script=tuple(after_script),
        image=image,
        tags=tuple(tags),
    )


def pipeline(
    *jobs: JobSpec,
    stages: Optional[Sequence[str]] = None,
    variables: Optional[Mapping[str, Any]] = None,
    workflow: Optional[Iterable[RuleClause]] = None,
) -> PipelineConfig:
    """Assemble and validate a PipelineConfig from job specs."""
    vars_: Dict[str, str] = {k: str(v) for k, v in (variables or {}).items()}
    return PipelineConfig.from_jobs(
        jobs,
        stages=stages,
        variables=vars_,
        workflow_rules=tuple(workflow or ()),
    )

