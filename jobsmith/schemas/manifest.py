"""
Manifest schema - how each job id resolves to an artifact.

On disk the manifest is a JSON object keyed by job id:

    {
      "nightly-report": {"mode": "group", "artifact_path": "groups/reports.pyz",
                         "group_name": "reports"},
      "cleanup": {"mode": "single", "artifact_path": "jobs/cleanup.pyz"}
    }

``artifact_path`` is relative to the build output directory.
"""

from dataclasses import dataclass, field
from typing import Any, Literal, Optional

MODE_SINGLE = "single"
MODE_GROUP = "group"


@dataclass(frozen=True)
class ManifestEntry:
    """
    Resolution record for one job id.

    Attributes:
        mode: "single" (artifact exposes ``default``) or "group"
            (artifact exposes a ``JOBS`` registry keyed by job id)
        artifact_path: Artifact location relative to the output directory
        group_name: Group the job was folded into (mode "group" only)
    """
    mode: Literal["single", "group"]
    artifact_path: str
    group_name: Optional[str] = None

    def __post_init__(self):
        if self.mode not in (MODE_SINGLE, MODE_GROUP):
            raise ValueError(f"Invalid manifest mode: {self.mode}")
        if self.mode == MODE_GROUP and not self.group_name:
            raise ValueError("group_name is required when mode is 'group'")
        if self.mode == MODE_SINGLE and self.group_name:
            raise ValueError("group_name is only valid when mode is 'group'")

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"mode": self.mode, "artifact_path": self.artifact_path}
        if self.group_name is not None:
            result["group_name"] = self.group_name
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ManifestEntry":
        return cls(
            mode=data["mode"],
            artifact_path=data["artifact_path"],
            group_name=data.get("group_name"),
        )


@dataclass
class Manifest:
    """Mapping of job id to ManifestEntry."""
    entries: dict[str, ManifestEntry] = field(default_factory=dict)

    def get(self, job_id: str) -> Optional[ManifestEntry]:
        return self.entries.get(job_id)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def to_dict(self) -> dict[str, Any]:
        return {job_id: self.entries[job_id].to_dict() for job_id in sorted(self.entries)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Manifest":
        return cls(entries={job_id: ManifestEntry.from_dict(entry) for job_id, entry in data.items()})
