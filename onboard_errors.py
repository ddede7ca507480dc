# onboard_errors.py
"""
Errors raised by the onboarding engine and its step tasks.

Benign early termination (the form finished and navigated away before every
planned step ran) is deliberately absent: it is an outcome, not an error.
"""

from typing import Sequence


class OnboardError(Exception):
    """Base class for every error the onboarding engine raises itself."""


class ConfigurationError(OnboardError):
    """Required values are absent or invalid. Raised before any browser is launched."""


class ValidationRejection(OnboardError):
    """The target form flagged one or more fields after a step ran."""

    def __init__(self, messages: Sequence[str]):
        self.messages = list(messages)
        joined = ". ".join(m.strip().rstrip(".") for m in self.messages)
        super().__init__(f"Validation errors found. {joined}.")


class StructuralInconsistency(OnboardError):
    """The summary page still asks for information after a clean step sequence."""


class QuiescenceTimeout(OnboardError):
    """The page never went network-idle within the allowed time."""


class FieldNotFoundError(OnboardError):
    """A step task could not find the control it has to fill or click."""
