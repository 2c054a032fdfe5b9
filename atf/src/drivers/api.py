"""Stateless HTTP driver built on requests."""
from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import urljoin

import requests

from atf.src.utils.errors import DriverError


@dataclass(slots=True)
class ApiRequest:
    method: str
    path: str
    headers: Dict[str, str] = field(default_factory=dict)
    query: Dict[str, Any] = field(default_factory=dict)
    body: Any = None


@dataclass(slots=True)
class ApiResponse:
    status: int
    headers: Dict[str, str]
    body: Any
    duration_ms: int
    url: str
    request: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "headers": dict(self.headers),
            "body": self.body,
            "durationMs": self.duration_ms,
            "url": self.url,
            "request": dict(self.request),
        }


class ApiDriver:
    """Sends one request per call; keeps no state between calls beyond the connection pool."""

    def __init__(self, base_url: str, *, timeout_ms: int = 30000, session: Optional[requests.Session] = None) -> None:
        self.base_url = base_url or ""
        self.timeout_ms = timeout_ms
        self._session = session or requests.Session()

    def build_url(self, path: str) -> str:
        if not self.base_url:
            return path
        return urljoin(self.base_url, path)

    def request(self, req: ApiRequest, *, timeout_ms: Optional[int] = None) -> ApiResponse:
        url = self.build_url(req.path)
        headers = {"Content-Type": "application/json"}
        headers.update({str(key): str(value) for key, value in (req.headers or {}).items()})

        data: Any = None
        if isinstance(req.body, (str, bytes)):
            data = req.body
        elif req.body is not None:
            data = json.dumps(req.body)

        timeout = (timeout_ms or self.timeout_ms) / 1000
        started = time.monotonic()
        try:
            response = self._session.request(
                req.method.upper(),
                url,
                params=req.query or None,
                headers=headers,
                data=data,
                timeout=timeout,
            )
        except requests.RequestException as exc:
            raise DriverError(f"{req.method.upper()} {url} failed: {exc}", url=url) from exc
        duration_ms = int((time.monotonic() - started) * 1000)

        text = response.text
        try:
            body: Any = json.loads(text) if text else text
        except ValueError:
            body = text

        return ApiResponse(
            status=response.status_code,
            headers={key.lower(): value for key, value in response.headers.items()},
            body=body,
            duration_ms=duration_ms,
            url=response.url or url,
            request={
                "method": req.method.upper(),
                "path": req.path,
                "headers": headers,
                "query": dict(req.query or {}),
                "body": req.body,
            },
        )

    def close(self) -> None:
        self._session.close()


__all__ = ["ApiDriver", "ApiRequest", "ApiResponse"]
