"""
Marker schema - what a job or group decorator looked like in source.

Markers are read from the syntax tree, never from runtime reflection.
A decorator either appears bare (``@job``) or called with a string
argument (``@job("id")``).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class MarkerKind(str, Enum):
    """Shape of a decorator occurrence."""
    BARE = "bare"
    WITH_ARG = "with_arg"


@dataclass(frozen=True)
class Marker:
    """
    A recognized decorator on a class declaration.

    Attributes:
        name: Decorator name as configured (e.g. "job", "group")
        kind: BARE for ``@job`` / ``@job()``, WITH_ARG for ``@job("x")``
        value: The string argument when kind is WITH_ARG
    """
    name: str
    kind: MarkerKind = MarkerKind.BARE
    value: Optional[str] = None

    def __post_init__(self):
        if self.kind == MarkerKind.WITH_ARG and self.value is None:
            raise ValueError("value is required when kind is 'with_arg'")
        if self.kind == MarkerKind.BARE and self.value is not None:
            raise ValueError("value is only valid when kind is 'with_arg'")

    @classmethod
    def bare(cls, name: str) -> "Marker":
        return cls(name=name)

    @classmethod
    def with_arg(cls, name: str, value: str) -> "Marker":
        return cls(name=name, kind=MarkerKind.WITH_ARG, value=value)
