"""Placeholder resolution for step fields.

Supported tokens::

    ${baseUrl}        trace base URL
    ${apiBaseUrl}     trace API base URL
    ${ENV:NAME}       value from the run's environment (must exist)
    ${STATE:a.b.0}    dotted path into the run state (must exist)

Resolution is a single pass: text produced by a substitution is never re-scanned.
"""
from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from .errors import MissingBinding

_TOKEN_RE = re.compile(
    r"\$\{(?:(?P<base>baseUrl|apiBaseUrl)|ENV:(?P<env>[A-Za-z0-9_]+)|STATE:(?P<state>[A-Za-z0-9_.\-\[\]]+))\}"
)
_INDEX_RE = re.compile(r"\[(\d+)\]")

MISSING = object()


@dataclass(slots=True)
class InterpolationContext:
    """Per-run resolution context; owned by exactly one executor."""

    base_url: str
    api_base_url: str
    env: Mapping[str, str] = field(default_factory=dict)
    state: Dict[str, Any] = field(default_factory=dict)


def build_context(
    base_url: str,
    api_base_url: str,
    trace_env: Optional[Mapping[str, str]] = None,
    *,
    env_overrides: Optional[Mapping[str, str]] = None,
    state: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> InterpolationContext:
    """Seed the environment once: process values, then trace-declared, then overrides."""
    source = os.environ if environ is None else environ
    env: Dict[str, str] = {key: value for key, value in source.items() if isinstance(value, str)}
    env.update({key: str(value) for key, value in (trace_env or {}).items()})
    env.update({key: str(value) for key, value in (env_overrides or {}).items()})
    return InterpolationContext(
        base_url=base_url or "",
        api_base_url=api_base_url or "",
        env=MappingProxyType(env),
        state=dict(state or {}),
    )


def _split_path(path: str) -> List[str]:
    normalized = _INDEX_RE.sub(r".\1", path)
    return [segment for segment in normalized.split(".") if segment != ""]


def get_path(value: Any, path: str) -> Any:
    """Walk ``path`` through mappings and sequences; returns ``MISSING`` when absent."""
    current = value
    for segment in _split_path(path):
        if isinstance(current, Mapping):
            if segment not in current:
                return MISSING
            current = current[segment]
        elif isinstance(current, (list, tuple)):
            if not segment.isdigit():
                return MISSING
            index = int(segment)
            if index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def _render(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (bool, dict, list)) or value is None:
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def resolve(template: str, ctx: InterpolationContext) -> str:
    if not template or "${" not in template:
        return template

    def substitute(match: re.Match) -> str:
        base = match.group("base")
        if base == "baseUrl":
            return ctx.base_url
        if base == "apiBaseUrl":
            return ctx.api_base_url

        env_key = match.group("env")
        if env_key is not None:
            if env_key not in ctx.env:
                raise MissingBinding("ENV", env_key)
            return ctx.env[env_key]

        state_path = match.group("state")
        found = get_path(ctx.state, state_path)
        if found is MISSING:
            raise MissingBinding("STATE", state_path)
        return _render(found)

    return _TOKEN_RE.sub(substitute, template)


def resolve_deep(value: Any, ctx: InterpolationContext) -> Any:
    """Apply :func:`resolve` to every string leaf; other leaves are returned untouched."""
    if isinstance(value, str):
        return resolve(value, ctx)
    if isinstance(value, (list, tuple)):
        return [resolve_deep(item, ctx) for item in value]
    if isinstance(value, Mapping):
        return {key: resolve_deep(item, ctx) for key, item in value.items()}
    return value


__all__ = [
    "InterpolationContext",
    "MISSING",
    "build_context",
    "get_path",
    "resolve",
    "resolve_deep",
]
