"""Parsing and validation of model-proposed steps."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Mapping, Optional

from atf.src.utils.errors import InvalidProposal
from atf.src.utils.models import StepGuards, TraceAction, TraceStep

STOP_ACTION = "stop"
UI_EXPECTED_KEYS = ("textIncludes", "selectorText", "saveState")

_STEP_ALIASES = {
    "selector_or_endpoint": "selectorOrEndpoint",
    "selector": "selectorOrEndpoint",
    "endpoint": "selectorOrEndpoint",
}
_GUARD_ALIASES = {
    "expect_url_includes": "expectUrlIncludes",
    "expect_text_includes": "expectTextIncludes",
    "expect_status_code": "expectStatusCode",
    "allow_retry": "allowRetry",
    "timeout_ms": "timeoutMs",
}
_UI_EXPECTED_ALIASES = {
    "text_includes": "textIncludes",
    "selector_text": "selectorText",
    "save_state": "saveState",
}
_API_EXPECTED_ALIASES = {"save_state": "saveState"}


def _camel_keys(raw: Mapping[str, Any], aliases: Mapping[str, str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {key: value for key, value in raw.items() if key not in aliases}
    for key, value in raw.items():
        if key in aliases:
            out.setdefault(aliases[key], value)
    return out


def extract_json_object(response_text: str) -> Dict[str, Any]:
    """Strip code fences and chatter, then decode the outermost JSON object."""
    text = (response_text or "").strip()
    if text.startswith("```json"):
        text = text[7:]
    if text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    text = text.strip()
    if not text:
        raise InvalidProposal("empty_response_from_model")

    if not text.startswith("{"):
        first = text.find("{")
        last = text.rfind("}")
        if first != -1 and last != -1 and last > first:
            text = text[first:last + 1].strip()

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise InvalidProposal(f"Response is not valid JSON: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise InvalidProposal("LLM produced non-object step")
    return data


def parse_action(value: Any) -> TraceAction:
    if isinstance(value, str):
        try:
            return TraceAction(value)
        except ValueError:
            lowered = value.strip().lower()
            for action in TraceAction:
                if action.value.lower() == lowered:
                    return action
    allowed = ", ".join(action.value for action in TraceAction)
    raise InvalidProposal(f"Invalid action {value!r}; allowed: {allowed}")


def filter_guards(raw: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(raw, Mapping):
        return None
    source = _camel_keys(raw, _GUARD_ALIASES)
    guards: Dict[str, Any] = {}
    if isinstance(source.get("expectUrlIncludes"), str):
        guards["expectUrlIncludes"] = source["expectUrlIncludes"]
    text = source.get("expectTextIncludes")
    if isinstance(text, str) and text:
        guards["expectTextIncludes"] = text
    elif isinstance(text, list):
        needles: List[str] = [str(item) for item in text if isinstance(item, str) and item]
        if needles:
            guards["expectTextIncludes"] = needles
    status = source.get("expectStatusCode")
    if isinstance(status, int) and not isinstance(status, bool):
        guards["expectStatusCode"] = status
    if isinstance(source.get("allowRetry"), bool):
        guards["allowRetry"] = source["allowRetry"]
    timeout = source.get("timeoutMs")
    if isinstance(timeout, int) and not isinstance(timeout, bool) and timeout > 0:
        guards["timeoutMs"] = timeout
    return guards or None


def filter_expected(raw: Any, action: TraceAction) -> Optional[Dict[str, Any]]:
    if not isinstance(raw, Mapping):
        return None
    expected = _camel_keys(raw, _UI_EXPECTED_ALIASES if action.is_ui else _API_EXPECTED_ALIASES)
    if action.is_ui:
        expected = {key: expected[key] for key in UI_EXPECTED_KEYS if key in expected}
        if "selectorText" in expected and not isinstance(expected["selectorText"], Mapping):
            expected.pop("selectorText")
    if "saveState" in expected and not isinstance(expected["saveState"], Mapping):
        expected.pop("saveState")
    return expected or None


def normalize_step(candidate: Mapping[str, Any], index: int) -> TraceStep:
    """Build step ``s<index+1>`` from a decoded proposal, rejecting malformed ones."""
    data = _camel_keys(candidate, _STEP_ALIASES)
    action = parse_action(data.get("action"))
    target = data.get("selectorOrEndpoint")
    if not isinstance(target, str) or not target.strip():
        raise InvalidProposal("selectorOrEndpoint is required")

    guards = filter_guards(data.get("guards"))
    return TraceStep(
        id=f"s{index + 1}",
        action=action,
        selector_or_endpoint=target.strip(),
        input=data.get("input"),
        expected=filter_expected(data.get("expected"), action),
        guards=StepGuards.model_validate(guards) if guards else None,
    )


def parse_proposal(response_text: str, index: int) -> Optional[TraceStep]:
    """Return the proposed step, or ``None`` when the model signals it is done."""
    data = extract_json_object(response_text)
    action = data.get("action")
    if isinstance(action, str) and action.strip().lower() == STOP_ACTION:
        return None
    return normalize_step(data, index)


__all__ = [
    "STOP_ACTION",
    "UI_EXPECTED_KEYS",
    "extract_json_object",
    "filter_expected",
    "filter_guards",
    "normalize_step",
    "parse_action",
    "parse_proposal",
]
