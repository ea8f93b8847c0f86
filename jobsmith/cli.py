"""
CLI interface for jobsmith.

Provides commands to build job artifacts, run jobs, and inspect them.

Jobs are decorated classes in src/**/*_job.py. ``jobsmith build`` bundles
each of them (or each group of them) into a .pyz archive under dist/ and
``jobsmith run <job_id>`` executes one, rebuilding first if needed.
"""

import functools
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click

from jobsmith import __version__

logger = logging.getLogger(__name__)


def _require_config(ctx):
    """Return the loaded config, or exit with the load error."""
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Fix the file or run 'jobsmith init --force' to recreate it.", err=True)
        raise SystemExit(1)
    return ctx.obj["config"]


@click.group()
@click.version_option(version=__version__, prog_name="jobsmith")
@click.option(
    "--config", "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Path to jobsmith.yaml (default: ./jobsmith.yaml)",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx, config_path: Optional[Path], verbose: bool):
    """
    jobsmith - Bundle decorated job classes and run them by id.
    """
    from jobsmith.config import ConfigError, load_config
    from jobsmith.utils import setup_logging

    ctx.ensure_object(dict)
    # Resolved so a rebuild subprocess started elsewhere finds the same file
    ctx.obj["config_path"] = config_path.resolve() if config_path else None
    try:
        config = load_config(config_path)
    except ConfigError as e:
        # init can still run; every other command reports this
        ctx.obj["config_error"] = str(e)
        setup_logging(log_level="DEBUG" if verbose else "INFO")
        return

    ctx.obj["config"] = config
    setup_logging(
        log_level="DEBUG" if verbose else config.log_level,
        log_format=config.log_format,
        log_file=config.log_file,
    )


@main.command("build")
@click.option(
    "--mode",
    type=click.Choice(["per-job", "grouped"]),
    help="Override the configured build mode",
)
@click.option("--json", "as_json", is_flag=True, help="Print the build result as JSON")
@click.pass_context
def build(ctx, mode: Optional[str], as_json: bool):
    """
    Build one artifact per job (or per group) and write the manifest.

    Examples:

        jobsmith build

        jobsmith build --mode grouped

        jobsmith build --json
    """
    from jobsmith.builder import build as run_build
    from jobsmith.config import ConfigError
    from jobsmith.errors import JobsmithError
    from jobsmith.utils import print_info, print_success, relative_to_root

    config = _require_config(ctx)
    try:
        if mode is not None:
            config = config.with_mode(mode)
        result = run_build(config)
    except (JobsmithError, ConfigError) as e:
        click.echo(f"✗ Build failed: {e}", err=True)
        raise SystemExit(1)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    for key in sorted(result.artifacts):
        print_info(relative_to_root(result.artifacts[key], config.project_root))
    print_success(
        f"Built {len(result.jobs)} job(s) into {len(result.artifacts)} artifact(s) "
        f"({result.mode})"
    )


@main.command("run")
@click.argument("job_id", required=False)
@click.option("--no-build", is_flag=True, help="Fail instead of rebuilding a missing artifact")
@click.pass_context
def run(ctx, job_id: Optional[str], no_build: bool):
    """
    Run a job by id.

    JOB_ID is the id given in @job("...") or, for a bare @job, the class name.

    Examples:

        jobsmith run nightly-report

        jobsmith run nightly-report --no-build
    """
    from jobsmith.runner import format_result, run_job, subprocess_rebuild

    if not job_id:
        click.echo(ctx.get_usage(), err=True)
        click.echo("✗ Missing job id", err=True)
        raise SystemExit(1)

    config = _require_config(ctx)
    rebuild = functools.partial(subprocess_rebuild, config_path=ctx.obj.get("config_path"))

    try:
        value = run_job(job_id, config, no_build=no_build, rebuild=rebuild)
    except Exception as e:
        # Job failures are reported the same way as resolution failures
        logger.debug(f"{job_id} failed", exc_info=True)
        click.echo(f"✗ {job_id} failed: {e}", err=True)
        raise SystemExit(1)

    output = format_result(value)
    if output is not None:
        click.echo(output)


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
@click.pass_context
def init(ctx, force: bool):
    """Initialize jobsmith.yaml in the current directory."""
    import yaml

    from jobsmith.config import CONFIG_FILENAME, default_config_data

    cfg_path = ctx.obj.get("config_path") or Path.cwd() / CONFIG_FILENAME
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    cfg_path.parent.mkdir(parents=True, exist_ok=True)
    cfg_path.write_text(yaml.safe_dump(default_config_data(), sort_keys=False))
    click.echo(f"Initialized jobsmith config at {cfg_path}", err=True)


@main.group("jobs")
def jobs_group():
    """Inspect jobs and their artifacts."""
    pass


@jobs_group.command("list")
@click.option("--group", "group_name", help="Only show jobs in this group")
@click.option("--json", "as_json", is_flag=True, help="Print jobs as a JSON list")
@click.pass_context
def list_jobs(ctx, group_name: Optional[str], as_json: bool):
    """List decorated jobs found in the source tree."""
    from jobsmith.discovery import discover_jobs
    from jobsmith.errors import JobsmithError
    from jobsmith.utils import relative_to_root

    config = _require_config(ctx)
    try:
        candidates = discover_jobs(config)
    except JobsmithError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    if group_name:
        candidates = [c for c in candidates if c.group_name == group_name]
        if not candidates:
            click.echo(f"No jobs in group '{group_name}'.")
            return

    candidates = sorted(candidates, key=lambda c: c.job_id)
    if as_json:
        click.echo(json.dumps([c.to_dict() for c in candidates], indent=2))
        return

    for c in candidates:
        if c.is_default_exported:
            export = "default"
        elif c.is_exported:
            export = "named"
        else:
            export = "unexported"
        group = c.group_name or "-"
        where = relative_to_root(c.source_file, config.project_root)
        click.echo(f"{c.job_id}\t{c.class_name}\t{group}\t{export}\t{where}")


@jobs_group.command("show")
@click.argument("job_id")
@click.pass_context
def show_job(ctx, job_id: str):
    """Show the manifest entry of a built job."""
    from jobsmith.errors import JobsmithError
    from jobsmith.manifest import read_manifest

    config = _require_config(ctx)
    try:
        manifest = read_manifest(config.manifest_path)
    except JobsmithError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    entry = manifest.get(job_id)
    if entry is None:
        click.echo(f"✗ Unknown job: {job_id} (not in {config.manifest_path})", err=True)
        click.echo("Run 'jobsmith build' to refresh the manifest.", err=True)
        raise SystemExit(1)

    click.echo(f"Job: {job_id}")
    click.echo(f"Artifact: {config.out_dir / entry.artifact_path}")
    click.echo()
    click.echo(json.dumps(entry.to_dict(), indent=2))


if __name__ == "__main__":
    sys.exit(main())
