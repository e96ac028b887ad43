"""Console output formatting utilities for stageflow."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from ..artifacts import ArtifactKey, StoredArtifact
    from ..runner import PipelineRun


_STATUS_LABELS = {
    "succeeded": "SUCCESS",
    "failed": "FAILED",
    "skipped": "SKIPPED",
    "cancelled": "CANCELLED",
    "manual": "MANUAL",
}


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_pipeline_started(self, run: "PipelineRun", config_path: str) -> None:
        """Print run start information."""
        ctx = run.context
        print("\nPIPELINE STARTED")
        print(f"Pipeline: {run.id}")
        print(f"Project: {ctx.project or '(local)'}")
        print(f"Ref: {ctx.ref}{' (tag)' if ctx.is_tag else ''}")
        print(f"Commit: {ctx.commit_sha[:8] or '(none)'}")
        print(f"Config: {config_path}")
        print(f"Jobs: {len(run.jobs)}")
        print()

    def print_plan(self, run: "PipelineRun") -> None:
        """Print the active job set and what each job waits for."""
        self.print_header("PLAN")
        if run.graph is None:
            print("  (workflow rules exclude this pipeline)")
            return
        by_stage: dict[str, list[str]] = {}
        for name in run.graph.order:
            by_stage.setdefault(run.jobs[name].spec.stage, []).append(name)
        for stage in run.active.stages:
            names = by_stage.get(stage)
            if not names:
                continue
            print(f"{stage}:")
            for name in names:
                deps = run.graph.dependencies(name)
                when = run.active.decisions[name].when.value
                mode = "needs" if run.jobs[name].spec.dag_mode else "stage"
                upstream = ", ".join(d.upstream for d in deps) or "-"
                print(f"  {name} (when={when}, {mode}; after: {upstream})")
        if run.active.excluded:
            print("excluded:")
            for name in sorted(run.active.excluded):
                self.print_plan_job_skipped(name, "rules")

    def print_plan_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped in plan."""
        print(f"  {name} (skipped: {reason})")

    def print_results(self, run: "PipelineRun") -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for name, jr in run.jobs.items():
            label = _STATUS_LABELS.get(jr.state.value, jr.state.value.upper())
            extra = []
            if jr.attempt > 1:
                extra.append(f"attempts={jr.attempt}")
            if jr.failure is not None:
                extra.append(jr.failure.value)
            if jr.skip_reason:
                extra.append(jr.skip_reason)
            if jr.spec.allow_failure and jr.state.value == "failed":
                extra.append("allowed")
            suffix = f" ({', '.join(extra)})" if extra else ""
            print(f"  {name}: {label}{suffix}")
        print(f"\nPIPELINE: {run.status.value.upper()}")
        if run.cancel_reason:
            print(f"Reason: {run.cancel_reason}")

    def print_artifacts(self, artifacts: Iterable["StoredArtifact"]) -> None:
        """Print stored artifacts, one per line."""
        rows = list(artifacts)
        if not rows:
            print("No artifacts stored.")
            return
        for art in rows:
            k = art.key
            expires = art.expires_at.isoformat() if art.expires_at else "never"
            print(f"  {k.project or '-'} {k.ref} {k.job} {k.sha[:8]}  files={len(art.files)}  expires={expires}")

    def print_expired(self, keys: list["ArtifactKey"]) -> None:
        print(f"Expired {len(keys)} artifact(s).")
        if self.debug:
            for k in keys:
                print(f"  {k.project or '-'} {k.ref} {k.job} {k.sha[:8]}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
