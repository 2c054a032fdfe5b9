"""Secret redaction for persisted run evidence.

Redacts, without any model in the loop:
- header sets (sensitive header names are always masked)
- request/response bodies (dict/list JSON-serializable structures)
- free-form strings such as log lines

Keeps a RedactionReport (counters per kind).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

REDACTION_MARKER = "[REDACTED]"
MIN_SECRET_LENGTH = 4
SENSITIVE_HEADERS = frozenset({"authorization", "cookie", "set-cookie", "x-api-key", "api-key"})


@dataclass
class RedactionReport:
    counts: Dict[str, int] = field(default_factory=dict)

    def inc(self, kind: str, n: int = 1) -> None:
        self.counts[kind] = int(self.counts.get(kind, 0)) + int(n)


class Redactor:
    """Masks declared secret values wherever they appear in a structure."""

    def __init__(self, secrets: Optional[Iterable[str]] = None, *, marker: str = REDACTION_MARKER):
        self.marker = marker
        self.report = RedactionReport()
        self._secrets: List[str] = []
        for secret in secrets or ():
            self.add_secret(secret)

    @property
    def secrets(self) -> List[str]:
        return list(self._secrets)

    def add_secret(self, secret: Any) -> None:
        if not isinstance(secret, str) or len(secret) < MIN_SECRET_LENGTH:
            return
        if secret in self._secrets:
            return
        self._secrets.append(secret)
        # Longest first so a secret that contains another is masked whole.
        self._secrets.sort(key=len, reverse=True)

    def redact_text(self, text: str) -> str:
        if not text or not self._secrets:
            return text
        out = text
        for secret in self._secrets:
            hits = out.count(secret)
            if hits:
                self.report.inc("secret_value", hits)
                out = out.replace(secret, self.marker)
        return out

    def redact_headers(self, headers: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for key, value in (headers or {}).items():
            if str(key).lower() in SENSITIVE_HEADERS:
                self.report.inc("sensitive_header", 1)
                out[key] = self.marker
            else:
                out[key] = self.redact_jsonable(value)
        return out

    def redact_jsonable(self, obj: Any) -> Any:
        """Walk dict/list structures; keys and string leaves are both redacted."""
        if isinstance(obj, str):
            return self.redact_text(obj)
        if isinstance(obj, Mapping):
            return {
                (self.redact_text(key) if isinstance(key, str) else key): self.redact_jsonable(value)
                for key, value in obj.items()
            }
        if isinstance(obj, (list, tuple)):
            return [self.redact_jsonable(item) for item in obj]
        return obj


def redact(obj: Any, secrets: Iterable[str]) -> Any:
    return Redactor(secrets).redact_jsonable(obj)


def redact_headers(headers: Optional[Mapping[str, Any]], secrets: Iterable[str] = ()) -> Dict[str, Any]:
    return Redactor(secrets).redact_headers(headers)


__all__ = [
    "MIN_SECRET_LENGTH",
    "REDACTION_MARKER",
    "RedactionReport",
    "Redactor",
    "SENSITIVE_HEADERS",
    "redact",
    "redact_headers",
]
