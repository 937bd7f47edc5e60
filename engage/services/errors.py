"""Failure taxonomy of the inbound pipeline.

Errors raised before the inbound message is committed (validation,
normalization, persistence) reach the caller. Everything raised after that
point is contained by the reply step and never fails the inbound message.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for pipeline failures."""


class ValidationError(PipelineError):
    """Malformed or unauthenticated delivery. Rejected, not retried by us."""

    def __init__(self, message: str, status_code: int = 400):
        self.status_code = status_code
        super().__init__(message)


class NormalizationError(ValidationError):
    """No known payload shape matched the delivery."""


class PersistenceFailure(PipelineError):
    """The inbound event could not be stored. The broker must retry it."""


class GenerationFailure(PipelineError):
    def __init__(self, reason: str, detail: Optional[str] = None):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}" if detail else reason)


class DispatchFailure(PipelineError):
    def __init__(self, reason: str, detail: Optional[str] = None):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}" if detail else reason)


class InvalidModeError(ValueError):
    def __init__(self, value: object, accepted: list[str]):
        self.value = value
        self.accepted = accepted
        super().__init__(f"Unknown automation mode {value!r}. Accepted values: {', '.join(accepted)}")
