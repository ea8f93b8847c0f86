"""
Job markers - no-op class decorators used for discovery.

    from jobsmith import job, group

    @job("nightly-report")
    @group("reports")
    class NightlyReport:
        def run(self):
            ...

The build pass reads these statically from the syntax tree; at run time
they return the class untouched.
"""

from typing import Callable, Optional, TypeVar, Union

T = TypeVar("T", bound=type)


def job(id: Union[str, T, None] = None) -> Union[T, Callable[[T], T]]:
    """Mark a class as a job, optionally with an explicit job id.

    Works bare (``@job``) and called (``@job("id")`` / ``@job()``).
    """
    if isinstance(id, type):
        return id

    def decorator(cls: T) -> T:
        return cls

    return decorator


def group(name: Optional[str] = None) -> Callable[[T], T]:
    """Place a job in a named group (used by ``grouped`` builds only)."""
    if isinstance(name, type):
        return name  # type: ignore[return-value]

    def decorator(cls: T) -> T:
        return cls

    return decorator
