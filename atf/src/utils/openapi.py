"""Optional response-contract checks against an OpenAPI document."""
from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from .errors import ResponseSchemaViolation, SchemaReferenceError

logger = logging.getLogger(__name__)

_TEMPLATE_SEGMENT = re.compile(r"^\{[^/{}]+\}$")


class OpenApiValidator:
    """Validates HTTP responses against ``paths.<path>.<method>.responses`` schemas."""

    def __init__(self, document: Optional[Mapping[str, Any]] = None) -> None:
        self.document: Optional[Dict[str, Any]] = dict(document) if document else None

    @classmethod
    def from_file(cls, path: Path | str) -> "OpenApiValidator":
        raw = Path(path).read_text(encoding="utf-8")
        return cls(json.loads(raw))

    @property
    def loaded(self) -> bool:
        return self.document is not None

    # ------------------------------------------------------------------
    def find_operation(self, method: str, path: str) -> Optional[Dict[str, Any]]:
        paths = (self.document or {}).get("paths") or {}
        clean_path = path.split("?", 1)[0].rstrip("/") or "/"
        method_key = method.lower()

        item = paths.get(clean_path)
        if isinstance(item, Mapping) and isinstance(item.get(method_key), Mapping):
            return dict(item[method_key])

        wanted = clean_path.strip("/").split("/")
        for template, candidate in paths.items():
            if not isinstance(candidate, Mapping) or not isinstance(candidate.get(method_key), Mapping):
                continue
            parts = template.rstrip("/").strip("/").split("/")
            if len(parts) != len(wanted):
                continue
            if all(
                part == actual or (_TEMPLATE_SEGMENT.match(part) and actual)
                for part, actual in zip(parts, wanted)
            ):
                return dict(candidate[method_key])
        return None

    @staticmethod
    def _response_for_status(operation: Mapping[str, Any], status: int) -> Optional[Mapping[str, Any]]:
        responses = operation.get("responses") or {}
        for key in (str(status), f"{str(status)[0]}XX", f"{str(status)[0]}xx", "default"):
            if key in responses:
                return responses[key]
        return None

    def response_schema(self, method: str, path: str, status: int) -> Optional[Any]:
        if not self.document:
            return None
        operation = self.find_operation(method, path)
        if operation is None:
            logger.debug("No contract operation for %s %s", method, path)
            return None
        response = self._response_for_status(operation, status)
        if not isinstance(response, Mapping):
            return None
        response = self.dereference(response)
        content = response.get("content") or {}
        media = content.get("application/json")
        if not isinstance(media, Mapping) or "schema" not in media:
            return None
        return media["schema"]

    # ------------------------------------------------------------------
    def _resolve_ref(self, ref: str) -> Any:
        if not ref.startswith("#/"):
            raise SchemaReferenceError(f"Unsupported reference {ref}", ref=ref)
        current: Any = self.document
        for raw_segment in ref[2:].split("/"):
            segment = raw_segment.replace("~1", "/").replace("~0", "~")
            if isinstance(current, Mapping) and segment in current:
                current = current[segment]
            else:
                raise SchemaReferenceError(f"Cannot resolve reference {ref}", ref=ref)
        return current

    def dereference(self, schema: Any, _stack: Tuple[str, ...] = ()) -> Any:
        """Inline every internal ``$ref``; a reference cycle raises SchemaReferenceError."""
        if isinstance(schema, list):
            return [self.dereference(item, _stack) for item in schema]
        if not isinstance(schema, Mapping):
            return schema
        ref = schema.get("$ref")
        if isinstance(ref, str):
            if ref in _stack:
                chain = " -> ".join(_stack + (ref,))
                raise SchemaReferenceError(f"Circular reference {chain}", ref=ref)
            return self.dereference(self._resolve_ref(ref), _stack + (ref,))
        return {key: self.dereference(value, _stack) for key, value in schema.items()}

    # ------------------------------------------------------------------
    def validate_response(self, method: str, path: str, status: int, body: Any) -> List[str]:
        """Return validation messages; an empty list means the response conforms."""
        schema = self.response_schema(method, path, status)
        if schema is None:
            return []
        resolved = self.dereference(schema)
        try:
            Draft7Validator.check_schema(resolved)
        except SchemaError as exc:
            raise SchemaReferenceError(f"Invalid response schema: {exc.message}") from exc
        validator = Draft7Validator(resolved)
        errors = []
        for error in sorted(validator.iter_errors(body), key=lambda err: [str(part) for part in err.path]):
            location = "/".join(str(part) for part in error.path) or "<root>"
            errors.append(f"{location}: {error.message}")
        return errors

    def check_response(self, method: str, path: str, status: int, body: Any) -> None:
        errors = self.validate_response(method, path, status, body)
        if errors:
            raise ResponseSchemaViolation(
                f"Response for {method.upper()} {path} ({status}) violates contract: {errors[0]}",
                errors,
            )


def load_validator(path: Optional[Path | str]) -> Optional[OpenApiValidator]:
    """Load the contract at ``path`` if it exists; ``None`` when there is none."""
    if path is None:
        return None
    candidate = Path(path)
    if not candidate.is_file():
        return None
    return OpenApiValidator.from_file(candidate)


__all__ = ["OpenApiValidator", "load_validator"]
