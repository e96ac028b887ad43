# settings.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from .artifacts import DEFAULT_ARTIFACTS_DIR
from .errors import ConfigurationError


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


def _number(environ: Mapping[str, str], name: str, default, cast):
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise ConfigurationError("invalid_value", f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ConfigurationError("invalid_value", f"{name} must be positive, got {raw!r}")
    return value


@dataclass(frozen=True)
class EngineSettings:
    """
    Engine knobs, read from STAGEFLOW_* environment variables.
    CLI options override them.
    """
    workers: int = field(default_factory=default_workers)
    poll_interval: float = 30.0
    poll_timeout: float = 3600.0
    cancel_grace: float = 30.0
    artifacts_dir: str = DEFAULT_ARTIFACTS_DIR
    project: str = ""

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineSettings":
        env = os.environ if environ is None else environ
        return cls(
            workers=_number(env, "STAGEFLOW_WORKERS", default_workers(), int),
            poll_interval=_number(env, "STAGEFLOW_POLL_INTERVAL", 30.0, float),
            poll_timeout=_number(env, "STAGEFLOW_POLL_TIMEOUT", 3600.0, float),
            cancel_grace=_number(env, "STAGEFLOW_CANCEL_GRACE", 30.0, float),
            artifacts_dir=env.get("STAGEFLOW_ARTIFACTS_DIR") or DEFAULT_ARTIFACTS_DIR,
            project=env.get("STAGEFLOW_PROJECT", ""),
        )
