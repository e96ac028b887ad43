# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class ConfigurationError(Exception):
    """
    Fatal, pre-execution error in a pipeline declaration.

    Raised while parsing, resolving templates, evaluating rules or building
    the job graph. A pipeline that hits one never starts a single job.

    kind is a stable code:
      cycle, missing_reference, missing_template, template_cycle, bad_glob,
      bad_expression, stage_order, unknown_stage, invalid_value, duplicate_job
    """
    kind: str
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class InfrastructureError(Exception):
    """Worker crash, network blip, lost runner. Classified as transient."""


class ArtifactExistsError(Exception):
    """An artifact key is immutable once written."""


@dataclass
class ExternalDependencyTimeout(Exception):
    project: str
    ref: str
    job: str
    waited_s: float

    def __str__(self) -> str:
        return (
            f"external job {self.project}@{self.ref}:{self.job} did not succeed "
            f"with artifacts within {self.waited_s:.1f}s"
        )


@dataclass
class IllegalTransition(Exception):
    job: str
    current: str
    target: str

    def __str__(self) -> str:
        return f"[{self.job}] illegal state transition {self.current} -> {self.target}"
