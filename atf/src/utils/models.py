"""Shared data models for traces, step records and run verdicts.

Traces are persisted with camelCase keys (``selectorOrEndpoint``, ``apiBaseUrl``);
the models expose snake_case attributes and accept either spelling on input.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

RunMode = Literal["replay", "compiled", "explore"]
TRACE_VERSION = 1


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class TraceAction(str, Enum):
    """Closed action vocabulary: UI actions first, then HTTP verbs."""

    NAVIGATE = "navigate"
    CLICK = "click"
    INPUT = "input"
    SELECT = "select"
    PRESS = "press"
    WAIT_FOR_TEXT = "waitForText"
    WAIT_FOR_SELECTOR = "waitForSelector"
    EXTRACT_TEXT = "extractText"
    GET = "get"
    POST = "post"
    PUT = "put"
    PATCH = "patch"
    DELETE = "delete"

    @property
    def is_ui(self) -> bool:
        return self not in HTTP_ACTIONS

    @property
    def http_method(self) -> Optional[str]:
        if self in HTTP_ACTIONS:
            return self.value.upper()
        return None


HTTP_ACTIONS = frozenset(
    {TraceAction.GET, TraceAction.POST, TraceAction.PUT, TraceAction.PATCH, TraceAction.DELETE}
)
UI_ACTIONS = frozenset(action for action in TraceAction if action not in HTTP_ACTIONS)


class StepGuards(_CamelModel):
    """Checks evaluated right after the action ran; any failure fails the attempt."""

    expect_url_includes: Optional[str] = None
    expect_text_includes: Optional[Union[str, List[str]]] = None
    expect_status_code: Optional[int] = None
    allow_retry: bool = Field(default=False, description="Grants exactly one extra attempt")
    timeout_ms: Optional[int] = None

    def text_needles(self) -> List[str]:
        value = self.expect_text_includes
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return [str(item) for item in value]


class TraceStep(_CamelModel):
    """Single action inside a trace."""

    id: str
    action: TraceAction
    selector_or_endpoint: str
    input: Optional[Any] = None
    expected: Optional[Dict[str, Any]] = None
    guards: Optional[StepGuards] = None


class TracePolicies(_CamelModel):
    headless: bool = True
    no_mocks: bool = True
    max_steps: int = 15
    timeouts_ms: int = 60000


class TraceGenerator(_CamelModel):
    mode: str = "manual"
    llm_provider: str = ""
    llm_model: str = ""


class TraceInputs(_CamelModel):
    env: Dict[str, str] = Field(default_factory=dict)


class Trace(_CamelModel):
    """Ordered steps plus the metadata needed to replay them."""

    version: Literal[1] = TRACE_VERSION
    kind: Literal["ui", "api"] = Field(alias="type")
    test_name: str
    description: str = ""
    app: str
    base_url: str = ""
    api_base_url: str = ""
    created_at: str = ""
    generator: TraceGenerator = Field(default_factory=TraceGenerator)
    inputs: TraceInputs = Field(default_factory=TraceInputs)
    policies: TracePolicies = Field(default_factory=TracePolicies)
    steps: List[TraceStep] = Field(default_factory=list)

    def declared_secrets(self) -> List[str]:
        return [value for value in self.inputs.env.values() if isinstance(value, str)]


class StepRecord(_CamelModel):
    """Immutable log entry emitted once per step (not per retry)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    step_id: str
    action: str
    status: Literal["pass", "fail"]
    started_at: str
    ended_at: str
    duration_ms: int
    attempts: int = 1
    error: Optional[str] = None
    reason_code: Optional[str] = None
    selector_or_endpoint: str = ""
    input: Optional[Any] = None
    expected: Optional[Dict[str, Any]] = None
    guards: Optional[Dict[str, Any]] = None
    artifacts: Dict[str, str] = Field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return self.status == "pass"


class RunVerdict(_CamelModel):
    """Terminal outcome of a run; computed once at teardown."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    status: Literal["pass", "fail"]
    reasons: List[str] = Field(default_factory=list)
    failed_step_id: Optional[str] = None

    @classmethod
    def from_records(
        cls,
        records: Iterable[StepRecord],
        extra_reasons: Iterable[str] = (),
    ) -> "RunVerdict":
        reasons: List[str] = []
        failed_step_id: Optional[str] = None
        for record in records:
            if record.status == "fail":
                failed_step_id = record.step_id
                reasons.append(record.error or f"Step {record.step_id} failed")
                break
        reasons.extend(reason for reason in extra_reasons if reason)
        return cls(
            status="fail" if reasons else "pass",
            reasons=reasons,
            failed_step_id=failed_step_id,
        )


__all__ = [
    "HTTP_ACTIONS",
    "RunMode",
    "RunVerdict",
    "StepGuards",
    "StepRecord",
    "TRACE_VERSION",
    "Trace",
    "TraceAction",
    "TraceGenerator",
    "TraceInputs",
    "TracePolicies",
    "TraceStep",
    "UI_ACTIONS",
]
