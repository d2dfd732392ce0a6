"""Error taxonomy shared by every pipeline component.

All errors carry the request id (when known) so they can be correlated
with log lines and latency samples.
"""

from __future__ import annotations

import time

from pydantic import BaseModel
from pydantic import Field


class FieldError(BaseModel):
    """One field-level validation failure."""

    model_config = {"frozen": True}

    field: str = Field(description="Dotted path of the offending field.")
    message: str = Field(description="Human-readable reason.")
    code: str = Field(default="invalid", description="Machine-readable reason.")


class DegradedModeWarning(BaseModel):
    """A non-fatal condition: an optional subsystem was unavailable."""

    model_config = {"frozen": True}

    component: str = Field(description="Subsystem that degraded (memory, knowledge, ...).")
    message: str = Field(description="What went wrong.")
    request_id: str | None = Field(default=None)
    timestamp: float = Field(default_factory=time.time)


class PipelineError(Exception):
    """Base class for typed pipeline failures."""

    code = "internal_error"

    def __init__(self, message: str, *, request_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.request_id = request_id

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "request_id": self.request_id,
        }


class RequestValidationError(PipelineError):
    """The request is malformed or violates a business invariant."""

    code = "validation_error"

    def __init__(
        self,
        errors: list[FieldError],
        *,
        request_id: str | None = None,
    ) -> None:
        summary = "; ".join(f"{e.field}: {e.message}" for e in errors[:3])
        super().__init__(summary or "invalid request", request_id=request_id)
        self.errors = list(errors)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["fields"] = [e.model_dump() for e in self.errors]
        return data


class ConflictError(PipelineError):
    """A state write supplied a stale version."""

    code = "conflict"

    def __init__(
        self,
        scope: str,
        key: str,
        *,
        expected_version: int,
        actual_version: int,
        request_id: str | None = None,
    ) -> None:
        super().__init__(
            f"version conflict on {scope}/{key}: "
            f"expected {expected_version}, found {actual_version}",
            request_id=request_id,
        )
        self.scope = scope
        self.key = key
        self.expected_version = expected_version
        self.actual_version = actual_version


class StateContentionError(PipelineError):
    """A state write kept losing its transaction to writers of other keys.

    The caller's version was still current; retrying later is safe.
    """

    code = "contention"

    def __init__(self, scope: str, *, attempts: int, request_id: str | None = None) -> None:
        super().__init__(
            f"state scope {scope} is under write contention; "
            f"gave up after {attempts} attempts",
            request_id=request_id,
        )
        self.scope = scope
        self.attempts = attempts


class PipelineTimeout(PipelineError, TimeoutError):
    """The overall request deadline elapsed."""

    code = "timeout"


class ProviderError(PipelineError):
    """The language-model provider call failed.

    ``transient`` marks network-class failures (timeouts, 429, 5xx) that
    are safe to retry.
    """

    code = "provider_error"

    def __init__(
        self,
        message: str,
        *,
        transient: bool = False,
        status_code: int | None = None,
        request_id: str | None = None,
    ) -> None:
        super().__init__(message, request_id=request_id)
        self.transient = transient
        self.status_code = status_code


class HandlerError(PipelineError):
    """A content handler could not process the message."""

    code = "handler_error"
