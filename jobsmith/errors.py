"""
Error classes for jobsmith.

Every failure in a build pass or an invocation is one of these:
- DiscoveryError: a job source cannot be parsed or a job cannot be named
- ValidationError: jobs are unexported, badly named, or collide (collects all)
- SynthesisError: discovery and synthesis disagree about a job's source
- BundlingError: the bundler (or a rebuild it was asked for) failed
- RuntimeResolutionError: an artifact is missing or exposes no usable job

Exceptions raised by a job's own entry method are never wrapped; they
propagate to the caller unchanged.

Error handling contract:
- Build failures abort the whole pass, nothing is partially written
- The CLI is the only layer that turns these into exit codes
"""


class JobsmithError(Exception):
    """Base exception for jobsmith."""
    pass


class DiscoveryError(JobsmithError):
    """
    Discovery failed - the whole build pass is aborted.

    Examples:
    - A job source file has a syntax error
    - @job is given an id that is not a string literal
    - No job sources or no decorated classes were found
    """
    pass


class ValidationError(JobsmithError):
    """
    One or more discovered jobs are invalid.

    Validation collects every problem it can find in one pass, so the
    message lists all offending jobs, one per line. The individual
    problems are available on ``problems``.
    """

    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        super().__init__(
            "Job validation failed:\n" + "\n".join(f" - {p}" for p in self.problems)
        )


class SynthesisError(JobsmithError):
    """
    Entry module synthesis failed.

    Raised when the class found during discovery cannot be located again,
    or when a relative import cannot be re-expressed from the entry.
    """
    pass


class BundlingError(JobsmithError):
    """The bundler failed, or a rebuild triggered at run time failed."""
    pass


class RuntimeResolutionError(JobsmithError):
    """
    A job could not be resolved at invocation time.

    Examples:
    - Artifact missing and rebuilding is disabled
    - Artifact exposes neither ``default`` nor a ``JOBS`` registry
    - Job instance has no entry method
    """
    pass
