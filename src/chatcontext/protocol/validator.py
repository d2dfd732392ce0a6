"""Structured request validation with field-level error reporting."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field
from typing import Any

from pydantic import ValidationError

from chatcontext.errors import FieldError
from chatcontext.models.messages import TextContent
from chatcontext.models.schemas import StructuredRequest


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating one request: the parsed model or every error."""

    request: StructuredRequest | None = None
    errors: list[FieldError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.request is not None and not self.errors


def field_errors_from(exc: ValidationError) -> list[FieldError]:
    """Map every pydantic error to a dotted-path ``FieldError``."""
    errors: list[FieldError] = []
    for err in exc.errors():
        path = ".".join(str(part) for part in err.get("loc", ()))
        errors.append(
            FieldError(
                field=path or "<root>",
                message=str(err.get("msg", "Invalid input")),
                code=str(err.get("type", "invalid")),
            )
        )
    return errors


class SchemaValidator:
    """Validates inbound structured requests against the versioned contract.

    ``validate`` is pure: it never mutates its input and never touches any
    backend. All violations are collected rather than stopping at the
    first one, so callers can render per-field feedback.
    """

    def validate(self, raw: Any) -> ValidationResult:
        if not isinstance(raw, Mapping):
            return ValidationResult(
                errors=[
                    FieldError(
                        field="<root>",
                        message="request must be a JSON object",
                        code="model_type",
                    )
                ]
            )

        try:
            request = StructuredRequest.model_validate(dict(raw))
        except ValidationError as exc:
            return ValidationResult(errors=field_errors_from(exc))

        errors = self._check_semantics(request)
        if errors:
            return ValidationResult(errors=errors)
        return ValidationResult(request=request)

    @staticmethod
    def _check_semantics(request: StructuredRequest) -> list[FieldError]:
        errors: list[FieldError] = []
        content = request.message.content
        if isinstance(content, TextContent) and not content.text.strip():
            errors.append(
                FieldError(
                    field="message.content.text",
                    message="text must not be empty",
                    code="empty",
                )
            )
        ctx = request.options.context
        overlap = set(ctx.required_sources) & set(ctx.excluded_sources)
        if overlap:
            names = ", ".join(sorted(source.value for source in overlap))
            errors.append(
                FieldError(
                    field="options.context.excluded_sources",
                    message=f"sources both required and excluded: {names}",
                    code="conflicting_sources",
                )
            )
        return errors
