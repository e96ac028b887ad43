# config.py
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import yaml

from .errors import ConfigurationError
from .model import (
    DEFAULT_RETENTION,
    ArtifactPolicy,
    EmitWhen,
    FailureClass,
    JobSpec,
    NeedRef,
    RetryPolicy,
    RuleClause,
    When,
)
from .predicates import compile_expression
from .rules import compile_glob
from .templates import apply_defaults, resolve

log = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = ".stageflow-ci.yml"
DEFAULT_STAGES = ("build", "test", "deploy")
DEFAULT_STAGE = "test"

# top-level keys that are never jobs
RESERVED_KEYS = {
    "stages", "variables", "default", "workflow", "include",
    "image", "services", "cache", "before_script", "after_script", "types",
}
# legacy global keywords that behave like `default:` entries
GLOBAL_DEFAULT_KEYS = ("image", "before_script", "after_script")

RETRY_WHEN = {
    "runner_system_failure": {FailureClass.TRANSIENT_INFRASTRUCTURE},
    "unknown_failure": {FailureClass.TRANSIENT_INFRASTRUCTURE},
    "api_failure": {FailureClass.TRANSIENT_INFRASTRUCTURE},
    "stuck_or_timeout_failure": {FailureClass.TRANSIENT_INFRASTRUCTURE},
    "scheduler_failure": {FailureClass.TRANSIENT_INFRASTRUCTURE},
    "data_integrity_failure": {FailureClass.TRANSIENT_INFRASTRUCTURE},
    "transient_infrastructure": {FailureClass.TRANSIENT_INFRASTRUCTURE},
    "script_failure": {FailureClass.SCRIPT_FAILURE},
    "always": {FailureClass.TRANSIENT_INFRASTRUCTURE, FailureClass.SCRIPT_FAILURE},
}


@dataclass
class PipelineConfig:
    stages: Tuple[str, ...]
    jobs: Dict[str, JobSpec]
    variables: Dict[str, str] = field(default_factory=dict)
    workflow_rules: Tuple[RuleClause, ...] = ()
    templates: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_jobs(
        cls,
        jobs: Iterable[JobSpec],
        *,
        stages: Optional[Iterable[str]] = None,
        variables: Optional[Mapping[str, str]] = None,
        workflow_rules: Iterable[RuleClause] = (),
    ) -> "PipelineConfig":
        by_name: Dict[str, JobSpec] = {}
        for j in jobs:
            if j.name in by_name:
                raise ConfigurationError("duplicate_job", f"duplicate job name: {j.name}")
            by_name[j.name] = j
        cfg = cls(
            stages=normalize_stages(stages),
            jobs=by_name,
            variables=dict(variables or {}),
            workflow_rules=tuple(workflow_rules),
        )
        cfg.validate()
        return cfg

    def stage_index(self, stage: str) -> int:
        return self.stages.index(stage)

    def validate(self) -> None:
        """
        Static checks that do not depend on the trigger:
          - every job's stage is declared
          - every local need names a defined job in the same or an earlier stage
        """
        for job in self.jobs.values():
            if job.stage not in self.stages:
                raise ConfigurationError(
                    "unknown_stage",
                    f"job '{job.name}' uses undeclared stage '{job.stage}'",
                    {"stages": list(self.stages)},
                )
        for job in self.jobs.values():
            for need in job.needs or ():
                if need.project is not None or need.ref is not None:
                    continue  # may point at another pipeline; checked at graph build
                target = self.jobs.get(need.job)
                if target is None:
                    raise ConfigurationError(
                        "missing_reference",
                        f"job '{job.name}' needs unknown job '{need.job}'",
                        {"known": sorted(self.jobs)},
                    )
                if self.stage_index(target.stage) > self.stage_index(job.stage):
                    raise ConfigurationError(
                        "stage_order",
                        f"job '{job.name}' (stage {job.stage}) needs '{need.job}' from later stage {target.stage}",
                    )


def normalize_stages(stages: Optional[Iterable[str]]) -> Tuple[str, ...]:
    out = [str(s) for s in (stages if stages is not None else DEFAULT_STAGES)]
    if len(set(out)) != len(out):
        raise ConfigurationError("invalid_value", f"duplicate stage names in {out}")
    if ".pre" not in out:
        out.insert(0, ".pre")
    if ".post" not in out:
        out.append(".post")
    return tuple(out)


# ----------------------------------------------------------------------
# Scalar parsers
# ----------------------------------------------------------------------

_DURATION_UNITS = {
    "s": 1, "sec": 1, "secs": 1, "second": 1, "seconds": 1,
    "m": 60, "min": 60, "mins": 60, "minute": 60, "minutes": 60,
    "h": 3600, "hr": 3600, "hrs": 3600, "hour": 3600, "hours": 3600,
    "d": 86400, "day": 86400, "days": 86400,
    "w": 604800, "wk": 604800, "wks": 604800, "week": 604800, "weeks": 604800,
    "mo": 2592000, "month": 2592000, "months": 2592000,
    "y": 31536000, "yr": 31536000, "yrs": 31536000, "year": 31536000, "years": 31536000,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)\s*([a-z]+)")


def parse_duration(value: Any) -> Optional[timedelta]:
    """
    "7 days", "3 hours", "2h 30m", "1 week and 2 days", 3600 -> timedelta.
    "never" -> None (never expires).
    """
    if isinstance(value, bool):
        raise ConfigurationError("invalid_value", f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    text = str(value).strip().lower()
    if text == "never":
        return None
    if re.fullmatch(r"\d+", text):
        return timedelta(seconds=int(text))

    parts = _DURATION_PART.findall(text)
    leftover = re.sub(r"\band\b|,", "", _DURATION_PART.sub("", text)).strip()
    if not parts or leftover:
        raise ConfigurationError("invalid_value", f"invalid duration {value!r}")

    total = 0.0
    for amount, unit in parts:
        if unit not in _DURATION_UNITS:
            raise ConfigurationError("invalid_value", f"unknown duration unit {unit!r} in {value!r}")
        total += float(amount) * _DURATION_UNITS[unit]
    return timedelta(seconds=total)


def _enum(enum_cls, value: Any, what: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = [e.value for e in enum_cls]
        raise ConfigurationError("invalid_value", f"invalid {what} {value!r}", {"allowed": allowed}) from None


def _str_list(value: Any, what: str) -> Tuple[str, ...]:
    """Scripts may nest lists (YAML anchors splice them in); flatten one level at a time."""
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list):
        out: List[str] = []
        for item in value:
            if isinstance(item, list):
                out.extend(_str_list(item, what))
            elif item is None:
                continue
            else:
                out.append(str(item))
        return tuple(out)
    raise ConfigurationError("invalid_value", f"{what} must be a string or a list")


def _variables(value: Any, owner: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigurationError("invalid_value", f"'{owner}': variables must be a mapping")
    out = {}
    for k, v in value.items():
        if isinstance(v, Mapping):  # {value: ..., description: ...}
            v = v.get("value", "")
        out[str(k)] = "" if v is None else str(v)
    return out


def parse_retry(value: Any, owner: str) -> RetryPolicy:
    if value is None:
        return RetryPolicy()
    if isinstance(value, bool):
        raise ConfigurationError("invalid_value", f"'{owner}': retry must be an int or a mapping")
    if isinstance(value, int):
        max_, when = value, None
    elif isinstance(value, Mapping):
        max_, when = value.get("max", 0), value.get("when")
    else:
        raise ConfigurationError("invalid_value", f"'{owner}': retry must be an int or a mapping")
    if not isinstance(max_, int) or isinstance(max_, bool) or max_ < 0:
        raise ConfigurationError("invalid_value", f"'{owner}': retry.max must be a non-negative int")
    if when is None:
        return RetryPolicy(max=max_)
    classes = set()
    for name in _str_list(when, "retry.when"):
        if name not in RETRY_WHEN:
            raise ConfigurationError(
                "invalid_value",
                f"'{owner}': unknown retry.when value {name!r}",
                {"allowed": sorted(RETRY_WHEN)},
            )
        classes |= RETRY_WHEN[name]
    return RetryPolicy(max=max_, on=frozenset(classes))


def parse_artifacts(value: Any, owner: str) -> Optional[ArtifactPolicy]:
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise ConfigurationError("invalid_value", f"'{owner}': artifacts must be a mapping")
    expire = parse_duration(value["expire_in"]) if "expire_in" in value else DEFAULT_RETENTION
    paths = _str_list(value.get("paths"), "artifacts.paths")
    for p in paths:
        compile_glob(p)
    return ArtifactPolicy(
        paths=paths,
        when=_enum(EmitWhen, value.get("when", "on_success"), "artifacts.when"),
        expire_in=expire,
        name=str(value["name"]) if value.get("name") is not None else None,
    )


def parse_needs(value: Any, owner: str) -> Optional[Tuple[NeedRef, ...]]:
    if value is None:
        return None
    if not isinstance(value, list):
        raise ConfigurationError("invalid_value", f"'{owner}': needs must be a list")
    out: List[NeedRef] = []
    for item in value:
        if isinstance(item, str):
            out.append(NeedRef(job=item))
        elif isinstance(item, Mapping) and "job" in item:
            out.append(NeedRef(
                job=str(item["job"]),
                project=str(item["project"]) if item.get("project") is not None else None,
                ref=str(item["ref"]) if item.get("ref") is not None else None,
                artifacts=bool(item.get("artifacts", False)),
            ))
        else:
            raise ConfigurationError("invalid_value", f"'{owner}': invalid needs entry {item!r}")
    return tuple(out)


def parse_rules(value: Any, owner: str, default_when: When = When.ON_SUCCESS) -> Tuple[RuleClause, ...]:
    if not isinstance(value, list):
        raise ConfigurationError("invalid_value", f"'{owner}': rules must be a list")
    clauses: List[RuleClause] = []
    for item in value:
        if not isinstance(item, Mapping):
            raise ConfigurationError("invalid_value", f"'{owner}': invalid rule {item!r}")
        condition = compile_expression(item["if"]) if item.get("if") is not None else None
        changes = None
        if "changes" in item:
            raw = item["changes"]
            if isinstance(raw, Mapping):
                raw = raw.get("paths")
            changes = _str_list(raw, "changes")
            for g in changes:
                compile_glob(g)
        when = _enum(When, item.get("when", default_when.value), "rules.when")
        clauses.append(RuleClause(condition=condition, changes=changes, when=when))
    return tuple(clauses)


# ----------------------------------------------------------------------
# Jobs
# ----------------------------------------------------------------------

def build_job_spec(name: str, data: Mapping[str, Any]) -> JobSpec:
    """Turn a resolved (templates merged, defaults applied) mapping into a JobSpec."""
    job_when = _enum(When, data.get("when", "on_success"), "when")
    if "rules" in data and data["rules"] is not None:
        rules = parse_rules(data["rules"], name, job_when)
    else:
        rules = (RuleClause(when=job_when),)

    allow_failure = data.get("allow_failure", False)
    if isinstance(allow_failure, Mapping):  # {exit_codes: [...]}
        allow_failure = True

    tags = _str_list(data.get("tags"), "tags")
    return JobSpec(
        name=name,
        stage=str(data.get("stage", DEFAULT_STAGE)),
        rules=rules,
        needs=parse_needs(data.get("needs"), name),
        variables=_variables(data.get("variables"), name),
        retry=parse_retry(data.get("retry"), name),
        artifacts=parse_artifacts(data.get("artifacts"), name),
        allow_failure=bool(allow_failure),
        interruptible=bool(data.get("interruptible", False)),
        script=_str_list(data.get("script"), "script"),
        before_script=_str_list(data.get("before_script"), "before_script"),
        after_script=_str_list(data.get("after_script"), "after_script"),
        image=str(data["image"]) if data.get("image") is not None else None,
        tags=tags,
    )


def parse_config(doc: Mapping[str, Any]) -> PipelineConfig:
    """
    Parse a loaded configuration mapping into a PipelineConfig.

    Every job is fully materialized here (templates, defaults) so that a
    malformed file fails before any pipeline is created.
    """
    if not isinstance(doc, Mapping):
        raise ConfigurationError("invalid_value", "configuration root must be a mapping")

    if "include" in doc:
        log.warning("'include' is not interpreted; included files are ignored")

    stages = normalize_stages(doc.get("stages"))
    variables = _variables(doc.get("variables"), "variables")

    workflow = doc.get("workflow") or {}
    workflow_rules = parse_rules(workflow.get("rules") or [], "workflow") if isinstance(workflow, Mapping) else ()

    defaults: Dict[str, Any] = {k: doc[k] for k in GLOBAL_DEFAULT_KEYS if k in doc}
    if isinstance(doc.get("default"), Mapping):
        defaults.update(doc["default"])

    # pass 1: collect every template before resolving anything
    templates: Dict[str, Dict[str, Any]] = {}
    raw_jobs: Dict[str, Mapping[str, Any]] = {}
    for key, value in doc.items():
        key = str(key)
        if key in RESERVED_KEYS:
            continue
        if not isinstance(value, Mapping):
            if key.startswith("."):
                continue  # hidden keys may hold plain anchors (script lists etc.)
            raise ConfigurationError("invalid_value", f"job '{key}' must be a mapping")
        if key.startswith("."):
            templates[key] = dict(value)
        else:
            raw_jobs[key] = value

    # pass 2: materialize jobs
    jobs: Dict[str, JobSpec] = {}
    for name, raw in raw_jobs.items():
        resolved = apply_defaults(resolve(raw, templates, name=name), defaults)
        if "trigger" in resolved and "script" not in resolved:
            log.info("job %s is a downstream trigger; it runs as an opaque unit", name)
        jobs[name] = build_job_spec(name, resolved)

    cfg = PipelineConfig(
        stages=stages,
        jobs=jobs,
        variables=variables,
        workflow_rules=workflow_rules,
        templates=templates,
    )
    cfg.validate()
    return cfg


def load_config(path: str | Path = DEFAULT_CONFIG_FILE) -> PipelineConfig:
    cfg_path = Path(path).expanduser().resolve()
    if not cfg_path.exists():
        raise FileNotFoundError(f"Pipeline configuration not found: {cfg_path}")
    try:
        doc = yaml.safe_load(cfg_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigurationError("invalid_value", f"could not parse {cfg_path.name}: {e}") from None
    return parse_config(doc or {})
