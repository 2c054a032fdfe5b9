"""Failure taxonomy shared by the interpolation, execution and exploration layers."""
from __future__ import annotations

from typing import Any, List, Optional


class AtfError(Exception):
    """Base class for every engine failure that ends up on a StepRecord or verdict."""

    reason_code = "failed"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.details = details

    def as_error_message(self) -> str:
        return f"[{self.reason_code}] {self}"


def describe_failure(exc: BaseException) -> str:
    """Verdict reason for ``exc``: tagged for engine failures, class-prefixed otherwise."""
    if isinstance(exc, AtfError):
        return exc.as_error_message()
    return f"{exc.__class__.__name__}: {exc}"


class MissingBinding(AtfError):
    reason_code = "missing_binding"

    def __init__(self, kind: str, key: str) -> None:
        label = "environment variable" if kind == "ENV" else "state value"
        super().__init__(f"Missing {label}: {key}", kind=kind, key=key)
        self.kind = kind
        self.key = key


class DriverError(AtfError):
    """Browser or HTTP transport failure, timeouts included."""

    reason_code = "driver_error"


class TransportTerminated(DriverError):
    reason_code = "transport_terminated"


class GuardViolation(AtfError):
    reason_code = "guard_violation"


class AssertionMismatch(AtfError):
    reason_code = "assertion_mismatch"


class ResponseSchemaViolation(AtfError):
    reason_code = "response_schema_violation"

    def __init__(self, message: str, errors: Optional[List[str]] = None) -> None:
        super().__init__(message, errors=list(errors or []))
        self.errors = list(errors or [])


class SchemaReferenceError(AtfError):
    reason_code = "schema_reference_error"


class InvalidProposal(AtfError):
    reason_code = "invalid_proposal"


class LLMError(AtfError):
    reason_code = "llm_error"


class InvalidTrace(AtfError):
    reason_code = "invalid_trace"


class StepFailed(AtfError):
    reason_code = "step_failed"


__all__ = [
    "AtfError",
    "AssertionMismatch",
    "DriverError",
    "GuardViolation",
    "InvalidProposal",
    "InvalidTrace",
    "LLMError",
    "MissingBinding",
    "ResponseSchemaViolation",
    "SchemaReferenceError",
    "StepFailed",
    "TransportTerminated",
    "describe_failure",
]
