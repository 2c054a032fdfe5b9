"""Loading, validating and persisting trace documents."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Mapping

from pydantic import ValidationError

from .errors import InvalidTrace
from .models import Trace

TRACE_SUFFIX = ".trace.json"


def parse_trace(data: Mapping[str, Any], *, require_steps: bool = True) -> Trace:
    """Validate a decoded document; ``require_steps`` enforces a runnable trace."""
    if not isinstance(data, Mapping):
        raise InvalidTrace("Invalid trace file: document must be an object")
    try:
        trace = Trace.model_validate(dict(data))
    except ValidationError as exc:
        lines = []
        for error in exc.errors():
            location = ".".join(str(part) for part in error.get("loc", ())) or "<root>"
            lines.append(f"{location}: {error.get('msg')}")
        raise InvalidTrace("Invalid trace file: " + "; ".join(lines), errors=lines) from exc
    if require_steps and not trace.steps:
        raise InvalidTrace("Invalid trace file: steps must not be empty")
    return trace


def load_trace(path: Path | str, *, require_steps: bool = True) -> Trace:
    trace_path = Path(path)
    try:
        raw = trace_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise InvalidTrace(f"Cannot read trace {trace_path}: {exc}") from exc
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise InvalidTrace(f"Invalid trace file: {exc}") from exc
    return parse_trace(data, require_steps=require_steps)


def trace_path_for(root: Path | str, trace: Trace) -> Path:
    return Path(root) / trace.app / f"{trace.test_name}{TRACE_SUFFIX}"


def save_trace(trace: Trace, path: Path | str) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(trace.to_dict(), indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    return target


__all__ = ["TRACE_SUFFIX", "load_trace", "parse_trace", "save_trace", "trace_path_for"]
