"""
Runtime resolver/dispatcher - execute a built job by id.

Resolution steps for ``run_job``:
1. Locate the artifact through the manifest (or guess ``jobs/<id>.pyz``)
2. Make sure it exists, rebuilding at most once unless told not to
3. Load the archive's entry module
4. Extract the implementation (``default`` first, then the ``JOBS`` registry)
5. Instantiate it and call its entry method, awaiting coroutine results

Error handling contract:
- Resolution problems raise RuntimeResolutionError
- A failed rebuild raises BundlingError
- Exceptions raised by the job itself propagate unchanged
"""

import asyncio
import importlib
import inspect
import json
import logging
import subprocess
import sys
from collections.abc import Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from types import ModuleType
from typing import Any, Callable, Iterator, Optional
from zipfile import BadZipFile

from jobsmith.bundler import ENTRY_MODULE, archive_modules, read_build_info
from jobsmith.config import JobsmithConfig
from jobsmith.discovery import DEFAULT_EXPORT_NAME
from jobsmith.errors import BundlingError, RuntimeResolutionError
from jobsmith.manifest import artifact_path_for, read_manifest
from jobsmith.schemas import MODE_GROUP, ManifestEntry
from jobsmith.synthesis import REGISTRY_NAME

logger = logging.getLogger(__name__)

# Called with the active config when an artifact is missing
RebuildFn = Callable[[JobsmithConfig], None]


@dataclass
class ResolvedArtifact:
    """Where a job id resolves to, and how it was found."""
    job_id: str
    artifact: Path
    entry: Optional[ManifestEntry] = None

    @property
    def exists(self) -> bool:
        return self.artifact.is_file()


def locate_artifact(job_id: str, config: JobsmithConfig) -> ResolvedArtifact:
    """Resolve a job id through the manifest, falling back to ``jobs/<id>.pyz``."""
    entry = read_manifest(config.manifest_path).get(job_id)
    relative = entry.artifact_path if entry else artifact_path_for(f"jobs/{job_id}")
    return ResolvedArtifact(job_id=job_id, artifact=config.out_dir / relative, entry=entry)


def subprocess_rebuild(config: JobsmithConfig, config_path: Optional[Path] = None) -> None:
    """
    Rebuild by running ``python -m jobsmith build`` in the project root.

    Raises:
        BundlingError: If the build exits non-zero
    """
    cmd = [sys.executable, "-m", "jobsmith"]
    if config_path is not None:
        cmd += ["--config", str(config_path)]
    cmd += ["build", "--mode", config.mode]

    logger.info(f"Rebuilding: {' '.join(cmd)}")
    proc = subprocess.run(cmd, cwd=config.project_root, capture_output=True, text=True)
    if proc.returncode != 0:
        detail = (proc.stderr or proc.stdout).strip()
        raise BundlingError(
            f"Rebuild failed with exit code {proc.returncode}" + (f":\n{detail}" if detail else "")
        )


def ensure_built(
    job_id: str,
    config: JobsmithConfig,
    no_build: bool = False,
    rebuild: Optional[RebuildFn] = None,
) -> ResolvedArtifact:
    """
    Resolve a job's artifact, rebuilding once if it is missing.

    Raises:
        RuntimeResolutionError: If the artifact is missing and rebuilding is
            disabled, or still missing after the rebuild
        BundlingError: If the rebuild fails
    """
    resolved = locate_artifact(job_id, config)
    if resolved.exists:
        return resolved

    if no_build:
        raise RuntimeResolutionError(
            f"Artifact for job '{job_id}' not found at {resolved.artifact}. "
            f"Run 'jobsmith build' first, or drop --no-build."
        )

    logger.info(f"Artifact for job '{job_id}' is missing; rebuilding")
    (rebuild or subprocess_rebuild)(config)

    resolved = locate_artifact(job_id, config)
    if not resolved.exists:
        raise RuntimeResolutionError(
            f"Artifact for job '{job_id}' not found at {resolved.artifact} after rebuilding. "
            f"Is '{job_id}' a declared job?"
        )
    return resolved


def _check_target(artifact: Path) -> None:
    try:
        info = read_build_info(artifact)
    except (BadZipFile, OSError, ValueError) as e:
        raise RuntimeResolutionError(f"Artifact {artifact} is not a readable archive: {e}") from e

    target = info.get("target")
    if not target:
        return
    try:
        required = tuple(int(p) for p in str(target).split("."))
    except ValueError:
        raise RuntimeResolutionError(f"Artifact {artifact} records an invalid target: {target!r}")
    if required > sys.version_info[:len(required)]:
        running = f"{sys.version_info.major}.{sys.version_info.minor}"
        raise RuntimeResolutionError(
            f"Artifact {artifact} was built for Python {target}+, running {running}"
        )


def _evict(names: list[str]) -> None:
    for name in names:
        sys.modules.pop(name, None)


@contextmanager
def load_artifact(artifact: Path) -> Iterator[ModuleType]:
    """
    Import an archive's entry module.

    The archive is on ``sys.path`` only while the context is open. Modules
    it contains are dropped from ``sys.modules`` before and after, so every
    load sees the archive's current contents.

    Raises:
        RuntimeResolutionError: If the archive is unreadable, targets a newer
            Python, or its entry module cannot be imported
    """
    _check_target(artifact)
    names = [ENTRY_MODULE] + archive_modules(artifact)
    location = str(artifact)

    _evict(names)
    sys.path.insert(0, location)
    # Refresh zipimport's view of an archive rewritten at the same path
    importlib.invalidate_caches()
    try:
        try:
            module = importlib.import_module(ENTRY_MODULE)
        except ImportError as e:
            raise RuntimeResolutionError(f"Cannot load artifact {artifact}: {e}") from e
        yield module
    finally:
        if location in sys.path:
            sys.path.remove(location)
        _evict(names)


def extract_implementation(module: ModuleType, resolved: ResolvedArtifact) -> type:
    """
    Pick the job implementation out of a loaded entry module.

    A direct ``default`` export wins. Otherwise the ``JOBS`` registry is
    consulted, keyed by job id, but only for artifacts the manifest
    records as groups.

    Raises:
        RuntimeResolutionError: If neither yields an implementation
    """
    impl = getattr(module, DEFAULT_EXPORT_NAME, None)
    if impl is not None:
        return impl

    registry = getattr(module, REGISTRY_NAME, None)
    if isinstance(registry, Mapping) and resolved.entry is not None and resolved.entry.mode == MODE_GROUP:
        impl = registry.get(resolved.job_id)
        if impl is not None:
            return impl

    raise RuntimeResolutionError(
        f"artifact exposes no job implementation: {resolved.artifact} (job '{resolved.job_id}')"
    )


async def _await(awaitable: Any) -> Any:
    return await awaitable


def execute(impl: type, entry_method: str = "run") -> Any:
    """
    Instantiate a job and call its entry method.

    Coroutine results are run to completion. Exceptions raised by the job
    propagate unchanged.

    Raises:
        RuntimeResolutionError: If the instance has no callable entry method
    """
    instance = impl()
    method = getattr(instance, entry_method, None)
    if method is None or not callable(method):
        raise RuntimeResolutionError(
            f"job instance has no executable entry point: "
            f"{type(instance).__name__}.{entry_method}() is not defined"
        )

    result = method()
    if inspect.isawaitable(result):
        result = asyncio.run(_await(result))
    return result


def format_result(value: Any) -> Optional[str]:
    """
    Render a job result for stdout.

    Returns:
        None for None, JSON when serializable, ``str(value)`` otherwise
    """
    if value is None:
        return None
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return str(value)


def run_job(
    job_id: str,
    config: JobsmithConfig,
    no_build: bool = False,
    rebuild: Optional[RebuildFn] = None,
) -> Any:
    """
    Resolve, load and execute a job by id.

    Args:
        job_id: Job to run
        config: Project configuration
        no_build: Fail instead of rebuilding a missing artifact
        rebuild: Rebuild hook (defaults to a ``python -m jobsmith build`` subprocess)

    Returns:
        The value returned by the job's entry method

    Raises:
        RuntimeResolutionError: If the job cannot be resolved
        BundlingError: If a rebuild fails
    """
    resolved = ensure_built(job_id, config, no_build=no_build, rebuild=rebuild)
    logger.debug(
        f"Resolved job '{job_id}' to {resolved.artifact}",
        extra={"job_id": job_id, "event": "artifact_resolved"},
    )
    with load_artifact(resolved.artifact) as module:
        impl = extract_implementation(module, resolved)
        return execute(impl, config.entry_method)
