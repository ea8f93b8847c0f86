"""
Job schemas - discovered and validated job records.

A CandidateJob is what discovery extracts from one decorated class.
A ValidatedJob is a candidate that passed identity and export checks.
Both live only for the duration of one build pass.
"""

from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional


@dataclass(frozen=True)
class CandidateJob:
    """
    A decorated class found in a job source file.

    Attributes:
        source_file: Absolute path of the file declaring the class
        class_name: Declared class name
        job_id: Explicit id from @job("id"), else the class name
        is_default_exported: Module binds ``default = ClassName``
        is_exported: Class is public (``__all__`` or no leading underscore),
            or default-exported
        group_name: Name from @group("name"), if any
    """
    source_file: Path
    class_name: str
    job_id: str
    is_default_exported: bool = False
    is_exported: bool = False
    group_name: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["source_file"] = str(self.source_file)
        return data


@dataclass(frozen=True)
class ValidatedJob(CandidateJob):
    """A candidate whose id is well-formed and unique within the build pass."""

    @classmethod
    def from_candidate(cls, candidate: CandidateJob) -> "ValidatedJob":
        return cls(
            source_file=candidate.source_file,
            class_name=candidate.class_name,
            job_id=candidate.job_id,
            is_default_exported=candidate.is_default_exported,
            is_exported=candidate.is_exported,
            group_name=candidate.group_name,
        )
