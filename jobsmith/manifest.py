"""
Manifest persistence.

The manifest is written once per successful build, after bundling, and
read by the runner to locate a job's artifact. Writes are atomic.
"""

import json
import logging
from pathlib import Path

from jobsmith.errors import RuntimeResolutionError
from jobsmith.schemas import MODE_GROUP, MODE_SINGLE, Manifest, ManifestEntry, ValidatedJob
from jobsmith.utils import atomic_write_text

logger = logging.getLogger(__name__)


def artifact_path_for(key: str) -> str:
    """Artifact path, relative to the output directory, of an entry key."""
    return f"{key}.pyz"


def build_manifest(singles: list[ValidatedJob], groups: dict[str, list[ValidatedJob]]) -> Manifest:
    """
    Build the manifest of one build pass.

    Args:
        singles: Jobs bundled into their own artifact
        groups: Group name -> jobs folded into that group's artifact
    """
    entries = {}
    for j in singles:
        entries[j.job_id] = ManifestEntry(
            mode=MODE_SINGLE,
            artifact_path=artifact_path_for(f"jobs/{j.job_id}"),
        )
    for group_name, members in groups.items():
        for j in members:
            entries[j.job_id] = ManifestEntry(
                mode=MODE_GROUP,
                artifact_path=artifact_path_for(f"groups/{group_name}"),
                group_name=group_name,
            )
    return Manifest(entries=entries)


def write_manifest(manifest: Manifest, path: Path) -> None:
    """Write the manifest as JSON, replacing any previous one atomically."""
    atomic_write_text(path, json.dumps(manifest.to_dict(), indent=2, sort_keys=True) + "\n")
    logger.debug(f"Wrote manifest with {len(manifest)} job(s) to {path}")


def read_manifest(path: Path) -> Manifest:
    """
    Read the manifest.

    Returns:
        The manifest, or an empty one if the file does not exist

    Raises:
        RuntimeResolutionError: If the file exists but is not a valid manifest
    """
    if not path.exists():
        return Manifest()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("expected a JSON object")
        return Manifest.from_dict(data)
    except (OSError, ValueError, KeyError, TypeError) as e:
        raise RuntimeResolutionError(f"Corrupt manifest at {path}: {e}") from e
