"""
jobsmith.schemas - Data structures shared by the build pass and the runner.

Lifecycle of one build pass:
1. Marker: a @job / @group decorator read from the syntax tree
2. CandidateJob: one decorated class, with its id, export shape and group
3. ValidatedJob: a candidate that passed identity and export checks
4. ManifestEntry: how the runner resolves the job id to an artifact

Boundaries:
- discovery/validation/synthesis/builder: produce entries and the manifest
- runner: reads the manifest, never the sources
"""

from .marker import Marker, MarkerKind
from .job import CandidateJob, ValidatedJob
from .manifest import Manifest, ManifestEntry, MODE_GROUP, MODE_SINGLE

__all__ = [
    # Markers
    "Marker",
    "MarkerKind",
    # Jobs
    "CandidateJob",
    "ValidatedJob",
    # Manifest
    "Manifest",
    "ManifestEntry",
    "MODE_GROUP",
    "MODE_SINGLE",
]
