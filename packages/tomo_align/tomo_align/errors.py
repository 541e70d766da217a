"""
tomo_align.errors

Typed exceptions for the alignment core.
"""

from __future__ import annotations


class AlignmentError(Exception):
    """Base tomo_align error."""


class ParameterLengthError(AlignmentError, ValueError):
    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"Parameter vector has {actual} entries, layout expects {expected}"
        )
        self.expected = expected
        self.actual = actual


class ConfigurationError(AlignmentError, ValueError):
    pass
