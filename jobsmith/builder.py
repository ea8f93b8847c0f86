"""
Build orchestrator for jobsmith.

Coordinates one build pass:
discover -> validate -> synthesize entries -> bundle once -> write manifest

A pass either succeeds completely or raises; the manifest is only
written after every artifact has been produced.
"""

import logging
import shutil
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from jobsmith.bundler import BundleOptions, Bundler, PyzBundler, read_declared_dependencies
from jobsmith.config import JobsmithConfig
from jobsmith.discovery import discover_jobs
from jobsmith.errors import BundlingError
from jobsmith.manifest import build_manifest, write_manifest
from jobsmith.schemas import Manifest, ValidatedJob
from jobsmith.synthesis import EntryModule, render_group_module, synthesize_job, write_entry
from jobsmith.utils import format_duration
from jobsmith.validation import validate_jobs

logger = logging.getLogger(__name__)


@dataclass
class BuildResult:
    """Result of one build pass."""

    mode: str
    started_at: datetime
    ended_at: datetime
    duration_seconds: float
    jobs: list[ValidatedJob] = field(default_factory=list)
    entries: list[EntryModule] = field(default_factory=list)
    artifacts: dict[str, Path] = field(default_factory=dict)
    manifest: Manifest = field(default_factory=Manifest)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "mode": self.mode,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "jobs": [j.job_id for j in self.jobs],
            "artifacts": {key: str(path) for key, path in self.artifacts.items()},
            "manifest": self.manifest.to_dict(),
        }


def partition_jobs(
    jobs: list[ValidatedJob], grouped: bool
) -> tuple[list[ValidatedJob], dict[str, list[ValidatedJob]]]:
    """
    Split jobs into standalone jobs and groups.

    In per-job mode group markers are ignored. In grouped mode a job with
    a group is bundled only as part of its group.

    Returns:
        (standalone jobs, group name -> members), both in discovery order
    """
    singles: list[ValidatedJob] = []
    groups: dict[str, list[ValidatedJob]] = {}
    for j in jobs:
        if grouped and j.group_name is not None:
            groups.setdefault(j.group_name, []).append(j)
        else:
            singles.append(j)
    return singles, groups


def synthesize_entries(
    singles: list[ValidatedJob],
    groups: dict[str, list[ValidatedJob]],
    config: JobsmithConfig,
) -> list[EntryModule]:
    """Synthesize every entry module of a pass (per-job entries in parallel)."""
    with ThreadPoolExecutor(max_workers=config.workers) as pool:
        entries = list(pool.map(lambda j: synthesize_job(j, config), singles))
    for group_name, members in groups.items():
        entries.append(render_group_module(group_name, members, config))
    return entries


def build(config: JobsmithConfig, bundler: Optional[Bundler] = None) -> BuildResult:
    """
    Run a complete build pass.

    Args:
        config: Build configuration (mode included)
        bundler: Bundling engine (defaults to PyzBundler)

    Returns:
        BuildResult describing what was built

    Raises:
        DiscoveryError, ValidationError, SynthesisError, BundlingError
    """
    started_at = datetime.now(timezone.utc)
    start = time.monotonic()

    candidates = discover_jobs(config)
    jobs = validate_jobs(candidates, config)
    singles, groups = partition_jobs(jobs, config.grouped)
    entries = synthesize_entries(singles, groups, config)

    # Stale entries from earlier passes must not linger next to new ones
    if config.scratch_dir.exists():
        shutil.rmtree(config.scratch_dir)
    for entry in entries:
        write_entry(entry, config.scratch_dir)

    options = BundleOptions(
        entries={entry.key: entry.path for entry in entries},
        output_dir=config.out_dir,
        source_root=config.source_root,
        target=config.target,
        externals=list(config.externals),
        force_inlined=read_declared_dependencies(config.project_root),
    )
    logger.info(
        f"Bundling {len(entries)} entry module(s) "
        f"({len(singles)} job(s), {len(groups)} group(s), mode={config.mode})"
    )
    artifacts = (bundler or PyzBundler()).bundle(options)

    missing = sorted(key for key in options.entries if key not in artifacts)
    if missing:
        raise BundlingError(f"Bundler produced no artifact for: {', '.join(missing)}")

    manifest = build_manifest(singles, groups)
    write_manifest(manifest, config.manifest_path)

    duration = time.monotonic() - start
    logger.info(f"Built {len(jobs)} job(s) in {format_duration(duration)}")
    return BuildResult(
        mode=config.mode,
        started_at=started_at,
        ended_at=datetime.now(timezone.utc),
        duration_seconds=duration,
        jobs=jobs,
        entries=entries,
        artifacts=artifacts,
        manifest=manifest,
    )
