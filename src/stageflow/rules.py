# rules.py
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from types import MappingProxyType
from typing import TYPE_CHECKING, FrozenSet, Iterable, Mapping, Sequence

from .context import Context
from .errors import ConfigurationError
from .model import Decision, JobSpec, RuleClause, When

if TYPE_CHECKING:
    from .config import PipelineConfig

log = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Glob matching for `changes`
# ----------------------------------------------------------------------

def _translate(glob: str, pattern: str) -> str:
    out = []
    i, n = 0, len(glob)
    while i < n:
        c = glob[i]
        if c == "*":
            if glob.startswith("**/", i):
                out.append("(?:.*/)?")  # zero or more directories
                i += 3
            elif glob.startswith("**", i):
                out.append(".*")
                i += 2
            else:
                out.append("[^/]*")
                i += 1
        elif c == "?":
            out.append("[^/]")
            i += 1
        elif c == "[":
            end = glob.find("]", i + 1)
            if end < 0 or end == i + 1:
                raise ConfigurationError("bad_glob", f"unclosed character class in {pattern!r}")
            body = glob[i + 1:end]
            if body.startswith("!"):
                body = "^" + body[1:]
            out.append("[" + body.replace("\\", "\\\\") + "]")
            i = end + 1
        elif c == "{":
            end = glob.find("}", i + 1)
            if end < 0:
                raise ConfigurationError("bad_glob", f"unclosed brace in {pattern!r}")
            alts = glob[i + 1:end].split(",")
            out.append("(?:" + "|".join(_translate(a, pattern) for a in alts) + ")")
            i = end + 1
        else:
            out.append(re.escape(c))
            i += 1
    return "".join(out)


@lru_cache(maxsize=1024)
def compile_glob(pattern: str) -> re.Pattern:
    """
    Compile a `changes` glob.

    `**` crosses directory boundaries, `*` and `?` do not.
    Raises ConfigurationError(bad_glob) for malformed patterns.
    """
    glob = pattern[2:] if pattern.startswith("./") else pattern
    if not glob:
        raise ConfigurationError("bad_glob", "empty glob pattern")
    try:
        return re.compile("^" + _translate(glob, pattern) + "$")
    except re.error as e:
        raise ConfigurationError("bad_glob", f"invalid glob {pattern!r}: {e}") from None


def changes_match(globs: Iterable[str], paths: Iterable[str]) -> bool:
    compiled = [compile_glob(g) for g in globs]
    return any(rx.match(p) for p in paths for rx in compiled)


# ----------------------------------------------------------------------
# Rule evaluation
# ----------------------------------------------------------------------

def clause_matches(clause: RuleClause, ctx: Context) -> bool:
    if clause.condition is not None and not clause.condition.evaluate(ctx):
        return False
    # changes is a conjunct of the same clause, not a separate rule
    if clause.changes is not None and not changes_match(clause.changes, ctx.changed_paths):
        return False
    return True


def evaluate(rules: Sequence[RuleClause], ctx: Context) -> Decision:
    """
    First fully-matching clause wins, including `when: never`.
    No match at all excludes the job.
    """
    for idx, clause in enumerate(rules):
        if clause_matches(clause, ctx):
            return Decision(clause.when, idx)
    return Decision.exclude()


def evaluate_workflow(rules: Sequence[RuleClause], ctx: Context) -> Decision:
    """Pipeline-level rules. An empty list always creates the pipeline."""
    if not rules:
        return Decision(When.ALWAYS)
    return evaluate(rules, ctx)


@dataclass(frozen=True)
class ActiveJobSet:
    """
    The jobs that take part in one pipeline run. Produced once, never mutated.
    """
    jobs: Mapping[str, JobSpec]
    decisions: Mapping[str, Decision]
    excluded: FrozenSet[str] = field(default_factory=frozenset)
    stages: tuple = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "jobs", MappingProxyType(dict(self.jobs)))
        object.__setattr__(self, "decisions", MappingProxyType(dict(self.decisions)))
        object.__setattr__(self, "excluded", frozenset(self.excluded))

    def __contains__(self, name: str) -> bool:
        return name in self.jobs

    def __len__(self) -> int:
        return len(self.jobs)

    def is_manual(self, name: str) -> bool:
        return self.decisions[name].when is When.MANUAL


def select_active_jobs(config: "PipelineConfig", ctx: Context) -> ActiveJobSet:
    jobs = {}
    decisions = {}
    excluded = set()
    for name, spec in config.jobs.items():
        decision = evaluate(spec.rules, ctx)
        decisions[name] = decision
        if decision.included:
            jobs[name] = spec
            log.debug("job %s included (when=%s, clause=%s)", name, decision.when.value, decision.clause)
        else:
            excluded.add(name)
            log.debug("job %s excluded (clause=%s)", name, decision.clause)
    return ActiveJobSet(jobs=jobs, decisions=decisions, excluded=excluded, stages=tuple(config.stages))
