# context.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, Mapping

from .errors import ConfigurationError
from .model import PipelineSource


@dataclass(frozen=True)
class TriggerEvent:
    """
    What the VCS webhook collaborator hands us. The engine only consumes it.
    """
    ref: str
    commit_sha: str = ""
    is_tag: bool = False
    pipeline_source: PipelineSource | str = PipelineSource.PUSH
    commit_message: str = ""
    changed_paths: Iterable[str] = ()
    project: str = ""
    variables: Mapping[str, str] = field(default_factory=dict)


def _source(value: PipelineSource | str) -> PipelineSource:
    try:
        return PipelineSource(value)
    except ValueError:
        allowed = [s.value for s in PipelineSource]
        raise ConfigurationError(
            "invalid_value",
            f"unknown pipeline source {value!r}",
            {"allowed": allowed},
        ) from None


@dataclass(frozen=True)
class Context:
    """
    Facts a rule evaluates against. Built once per pipeline run, never mutated.
    """
    ref: str
    is_tag: bool
    pipeline_source: PipelineSource
    changed_paths: FrozenSet[str]
    commit_message: str
    commit_sha: str = ""
    project: str = ""
    variables: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "changed_paths", frozenset(self.changed_paths))
        object.__setattr__(self, "variables", MappingProxyType(dict(self.variables)))

    @classmethod
    def from_event(cls, event: TriggerEvent) -> "Context":
        return cls(
            ref=event.ref,
            is_tag=bool(event.is_tag),
            pipeline_source=_source(event.pipeline_source),
            changed_paths=frozenset(p[2:] if p.startswith("./") else p for p in event.changed_paths),
            commit_message=event.commit_message,
            commit_sha=event.commit_sha,
            project=event.project,
            variables=dict(event.variables),
        )

    def ci_variables(self) -> Dict[str, str]:
        """
        Predefined variables, as rule expressions and job scripts see them.
        Pipeline variables come first so predefined names always win.
        """
        out: Dict[str, str] = dict(self.variables)
        out.update({
            "CI_COMMIT_REF_NAME": self.ref,
            "CI_PIPELINE_SOURCE": self.pipeline_source.value,
            "CI_COMMIT_SHA": self.commit_sha,
            "CI_COMMIT_SHORT_SHA": self.commit_sha[:8],
            "CI_COMMIT_MESSAGE": self.commit_message,
            "CI_PROJECT_PATH": self.project,
        })
        # branch and tag are mutually exclusive; the absent one is undefined
        out.pop("CI_COMMIT_TAG", None)
        out.pop("CI_COMMIT_BRANCH", None)
        if self.is_tag:
            out["CI_COMMIT_TAG"] = self.ref
        else:
            out["CI_COMMIT_BRANCH"] = self.ref
        return out

    def lookup(self, name: str) -> str | None:
        return self.ci_variables().get(name)


_VAR_RE = re.compile(r"\$(?:\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)\}|(?P<bare>[A-Za-z_][A-Za-z0-9_]*))")


def expand_variables(text: str, variables: Mapping[str, str]) -> str:
    """Expand $VAR and ${VAR}. Unknown variables expand to ''."""
    def _sub(m: re.Match) -> str:
        name = m.group("braced") or m.group("bare")
        return str(variables.get(name, ""))

    return _VAR_RE.sub(_sub, text)
