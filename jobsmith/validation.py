"""Identity and export validation for discovered jobs."""

import logging
import re

from jobsmith.config import JobsmithConfig
from jobsmith.errors import ValidationError
from jobsmith.schemas import CandidateJob, ValidatedJob
from jobsmith.utils import relative_to_root

logger = logging.getLogger(__name__)

# Job ids and group names become artifact file names
JOB_ID_RE = re.compile(r"^[A-Za-z0-9._-]+$")


def validate_jobs(candidates: list[CandidateJob], config: JobsmithConfig) -> list[ValidatedJob]:
    """
    Validate the full candidate set of one build pass.

    Every problem is collected before failing:
    - job not exported
    - job id empty or outside [A-Za-z0-9._-]
    - the same job id declared more than once (every declaration listed)
    - in grouped mode, a group name outside [A-Za-z0-9._-]

    Args:
        candidates: All candidates across all scanned files
        config: Build configuration

    Returns:
        The candidates as ValidatedJobs, in the same order

    Raises:
        ValidationError: Listing every problem found
    """
    root = config.project_root
    problems: list[str] = []

    for j in candidates:
        where = f"{j.class_name} in {relative_to_root(j.source_file, root)}"
        if not j.is_exported:
            problems.append(
                f'Job "{j.job_id}" ({where}) must be exported. Drop the leading underscore, '
                f"list it in __all__, or bind it with 'default = {j.class_name}'."
            )
        if not j.job_id or not JOB_ID_RE.match(j.job_id):
            problems.append(
                f'Invalid job id "{j.job_id}" for class {where}. Allowed: {JOB_ID_RE.pattern}'
            )
        if config.grouped and j.group_name is not None and not JOB_ID_RE.match(j.group_name):
            problems.append(
                f'Invalid group name "{j.group_name}" for class {where}. Allowed: {JOB_ID_RE.pattern}'
            )

    by_id: dict[str, list[CandidateJob]] = {}
    for j in candidates:
        by_id.setdefault(j.job_id, []).append(j)
    for job_id, declared in by_id.items():
        if len(declared) > 1:
            problems.append(f'Duplicate job id "{job_id}":')
            for j in declared:
                problems.append(
                    f"  {job_id}: {j.class_name} ({relative_to_root(j.source_file, root)})"
                )

    if problems:
        raise ValidationError(problems)

    logger.debug(f"Validated {len(candidates)} job(s)")
    return [ValidatedJob.from_candidate(j) for j in candidates]
