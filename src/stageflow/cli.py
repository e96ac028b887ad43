# cli.py
from __future__ import annotations

import dataclasses
import json
import logging
import subprocess
import sys
from pathlib import Path
from typing import Optional

import click

from stageflow.artifacts import FileArtifactStore
from stageflow.config import DEFAULT_CONFIG_FILE, PipelineConfig, load_config
from stageflow.context import TriggerEvent
from stageflow.errors import ConfigurationError
from stageflow.executor import ShellExecutionAdapter
from stageflow.external import HttpPipelineClient, LocalPipelineIndex
from stageflow.git_facts import git
from stageflow.model import PipelineSource, PipelineStatus
from stageflow.runner import PipelineRun, create_pipeline
from stageflow.scheduler import Scheduler
from stageflow.settings import EngineSettings
from stageflow.ui.console import Console, get_console, set_console

EXIT_CODES = {
    PipelineStatus.SUCCEEDED: 0,
    PipelineStatus.SKIPPED: 0,
    PipelineStatus.FAILED: 1,
    PipelineStatus.CANCELLED: 130,
}


def _config_error(e: ConfigurationError) -> None:
    get_console().print_error(
        "Invalid pipeline configuration",
        e.message,
        details=[f"kind: {e.kind}"] + [f"{k}: {v}" for k, v in e.details.items()],
        suggestion="Fix the configuration and run `stageflow validate` again.",
    )
    sys.exit(2)


def _load(config_path: str) -> PipelineConfig:
    try:
        return load_config(config_path)
    except FileNotFoundError as e:
        get_console().print_error(
            "Configuration file not found",
            str(e),
            suggestion=f"Create {DEFAULT_CONFIG_FILE} or pass --config <path>.",
        )
        sys.exit(2)
    except ConfigurationError as e:
        _config_error(e)


def _settings() -> EngineSettings:
    try:
        return EngineSettings.from_env()
    except ConfigurationError as e:
        _config_error(e)


def _parse_vars(pairs) -> dict:
    out = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--var")
        k, v = pair.split("=", 1)
        out[k] = v
    return out


def _build_event(
    *,
    ref: Optional[str],
    sha: Optional[str],
    tag: bool,
    source: str,
    message: Optional[str],
    changed: tuple,
    project: Optional[str],
    variables: dict,
    compare_ref: str,
    use_git: bool,
) -> TriggerEvent:
    """
    Trigger facts for a local run: the git repository supplies defaults,
    explicit options win.
    """
    console = get_console()
    event = TriggerEvent(ref=ref or "main", pipeline_source=source)
    if use_git:
        try:
            event = git.trigger_event(compare_ref=compare_ref, source=source, project=project)
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            if ref is None:
                console.print_error(
                    "Could not read git facts",
                    "Not inside a git repository (or git is not installed).",
                    details=[str(e)],
                    suggestion="Pass the trigger explicitly:\n  stageflow run --no-git --ref main --changed src/app.py",
                )
                sys.exit(2)
            console.print_debug(f"git unavailable ({e}); using explicit trigger options only")

    overrides = {"pipeline_source": source, "variables": variables}
    if ref is not None:
        overrides["ref"] = ref
        overrides["is_tag"] = tag
    elif tag:
        overrides["is_tag"] = True
    if sha is not None:
        overrides["commit_sha"] = sha
    if message is not None:
        overrides["commit_message"] = message
    if changed:
        overrides["changed_paths"] = tuple(changed)
    if project is not None:
        overrides["project"] = project
    return dataclasses.replace(event, **overrides)


def trigger_options(fn):
    """Options describing the event that triggers the pipeline."""
    options = [
        click.option("--config", "-c", "config_path", default=DEFAULT_CONFIG_FILE, show_default=True, help="Pipeline configuration file"),
        click.option("--ref", default=None, help="Branch or tag name (defaults to the current git ref)"),
        click.option("--sha", default=None, help="Commit SHA (defaults to HEAD)"),
        click.option("--tag", is_flag=True, default=False, help="Treat --ref as a tag"),
        click.option(
            "--source",
            type=click.Choice([s.value for s in PipelineSource]),
            default=PipelineSource.PUSH.value,
            show_default=True,
            help="Pipeline source",
        ),
        click.option("--message", default=None, help="Commit message (defaults to HEAD's)"),
        click.option("--changed", multiple=True, help="Changed path (repeatable; defaults to git diff)"),
        click.option("--project", default=None, help="Project path (defaults to STAGEFLOW_PROJECT or the origin remote)"),
        click.option("--var", "variables", multiple=True, help="Pipeline variable KEY=VALUE (repeatable)"),
        click.option("--compare-ref", default="origin/main", show_default=True, help="Git ref to diff against"),
        click.option("--git/--no-git", "use_git", default=True, show_default=True, help="Read trigger defaults from git"),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


def _event_from_options(opts: dict, settings: EngineSettings) -> TriggerEvent:
    project = opts["project"]
    if project is None and settings.project:
        project = settings.project
    return _build_event(
        ref=opts["ref"],
        sha=opts["sha"],
        tag=opts["tag"],
        source=opts["source"],
        message=opts["message"],
        changed=opts["changed"],
        project=project,
        variables=_parse_vars(opts["variables"]),
        compare_ref=opts["compare_ref"],
        use_git=opts["use_git"],
    )


def _create(config: PipelineConfig, event: TriggerEvent) -> PipelineRun:
    try:
        return create_pipeline(config, event)
    except ConfigurationError as e:
        _config_error(e)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """stageflow: rule-driven CI pipeline engine."""
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--config", "-c", "config_path", default=DEFAULT_CONFIG_FILE, show_default=True, help="Pipeline configuration file")
def validate(config_path):
    """Parse and statically validate a pipeline configuration."""
    console = get_console()
    config = _load(config_path)
    stages = [s for s in config.stages if s not in (".pre", ".post")]
    console.print_info(
        f"OK: {len(config.jobs)} job(s), {len(stages)} stage(s), {len(config.templates)} template(s)"
    )
    console.print_debug(f"stages: {list(config.stages)}")


@cli.command()
@trigger_options
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the plan as JSON")
def plan(as_json, **opts):
    """Show which jobs a trigger would run, and in which order."""
    console = get_console()
    settings = _settings()
    config = _load(opts["config_path"])
    event = _event_from_options(opts, settings)
    run = _create(config, event)

    if as_json:
        data = {
            "ref": run.context.ref,
            "status": run.status.value,
            "excluded": sorted(run.active.excluded),
            "graph": run.graph.to_dict() if run.graph is not None else None,
        }
        click.echo(json.dumps(data, indent=2, sort_keys=True))
        return
    console.print_plan(run)


@cli.command()
@trigger_options
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option("--artifacts-dir", default=None, help="Artifact store directory")
@click.option("--poll-interval", default=None, type=float, help="Cross-pipeline poll interval (seconds)")
@click.option("--poll-timeout", default=None, type=float, help="Cross-pipeline poll timeout (seconds)")
@click.option("--api", default=None, help="Pipeline service URL for cross-pipeline needs and publishing")
@click.option("--keep-workspace", is_flag=True, default=False, help="Keep job workspaces after the run")
def run(workers, artifacts_dir, poll_interval, poll_timeout, api, keep_workspace, **opts):
    """Run a pipeline locally."""
    console = get_console()
    settings = _settings()
    overrides = {
        "workers": workers,
        "artifacts_dir": artifacts_dir,
        "poll_interval": poll_interval,
        "poll_timeout": poll_timeout,
    }
    settings = dataclasses.replace(settings, **{k: v for k, v in overrides.items() if v is not None})

    config = _load(opts["config_path"])
    event = _event_from_options(opts, settings)
    pipeline_run = _create(config, event)

    store = FileArtifactStore(settings.artifacts_dir)
    external = HttpPipelineClient(api, store=store) if api else LocalPipelineIndex(store)
    source_dir = Path(opts["config_path"]).resolve().parent
    adapter = ShellExecutionAdapter(source_dir=source_dir, keep_workspace=keep_workspace)

    console.print_pipeline_started(pipeline_run, opts["config_path"])
    try:
        with Scheduler.from_settings(settings, adapter, store, external=external) as scheduler:
            scheduler.execute(pipeline_run)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    console.print_results(pipeline_run)
    sys.exit(EXIT_CODES[pipeline_run.status])


@cli.group()
def artifacts():
    """Inspect or sweep the artifact store."""


@artifacts.command("list")
@click.option("--artifacts-dir", default=None, help="Artifact store directory")
@click.option("--job", default=None, help="Only this job")
@click.option("--ref", default=None, help="Only this ref")
def list_artifacts(artifacts_dir, job, ref):
    """List stored, non-expired artifacts."""
    settings = _settings()
    store = FileArtifactStore(artifacts_dir or settings.artifacts_dir)
    rows = []
    for key in store.keys():
        if job is not None and key.job != job:
            continue
        if ref is not None and key.ref != ref:
            continue
        art = store.get(key)
        if art is not None:
            rows.append(art)
    rows.sort(key=lambda a: a.created_at)
    get_console().print_artifacts(rows)


@artifacts.command("expire")
@click.option("--artifacts-dir", default=None, help="Artifact store directory")
def expire_artifacts(artifacts_dir):
    """Remove every artifact past its expiry."""
    settings = _settings()
    store = FileArtifactStore(artifacts_dir or settings.artifacts_dir)
    removed = store.expire()
    get_console().print_expired(removed)


if __name__ == "__main__":
    cli()
