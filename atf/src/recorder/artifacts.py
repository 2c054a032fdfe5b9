"""Durable, append-only evidence for a single run.

Layout of ``<runs_root>/<run_id>/``::

    run.json       run metadata; rewritten once at finalize with the evidence manifest
    steps.jsonl    one StepRecord per line
    logs.jsonl     structured log lines
    verdict.json   terminal verdict, written exactly once
    ui/            screenshots
    api/           redacted HTTP exchanges
"""
from __future__ import annotations

import hashlib
import json
import logging
import secrets
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from atf.src.drivers.api import ApiResponse
from atf.src.drivers.browser import BrowserDriver
from atf.src.utils.config import CONFIG
from atf.src.utils.models import RunMode, RunVerdict, StepRecord, Trace
from atf.src.utils.redaction import Redactor

logger = logging.getLogger(__name__)

STEPS_FILE = "steps.jsonl"
LOGS_FILE = "logs.jsonl"
RUN_FILE = "run.json"
VERDICT_FILE = "verdict.json"
SUMMARY_FILE = "summary.json"

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_run_id(mode: str) -> str:
    return f"{mode}_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


def file_digest(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def build_manifest(run_dir: Path) -> Dict[str, Dict[str, Any]]:
    """SHA-256 and size of every evidence file except run metadata and summaries."""
    manifest: Dict[str, Dict[str, Any]] = {}
    for path in sorted(run_dir.rglob("*")):
        if not path.is_file():
            continue
        relative = path.relative_to(run_dir).as_posix()
        if relative in {RUN_FILE, SUMMARY_FILE}:
            continue
        manifest[relative] = {"sha256": file_digest(path), "bytes": path.stat().st_size}
    return manifest


class ArtifactWriter:
    """Owns the storage namespace of one run.

    Args:
        trace: Trace being executed (identity and declared secrets).
        mode: ``replay``, ``compiled`` or ``explore``.
        runs_root: Parent directory for run namespaces.
        run_id: Explicit run id; generated when omitted.
        redactor: Secret filter; seeded from ``trace.inputs.env`` when omitted.
    """

    def __init__(
        self,
        trace: Trace,
        mode: RunMode,
        *,
        runs_root: Path | str | None = None,
        run_id: Optional[str] = None,
        redactor: Optional[Redactor] = None,
    ) -> None:
        self.trace = trace
        self.mode = mode
        self.run_id = run_id or new_run_id(mode)
        root = Path(runs_root) if runs_root is not None else CONFIG.run.runs_root
        self.run_dir = root.resolve() / self.run_id
        self.redactor = redactor or Redactor(trace.declared_secrets())
        self.started_at = utc_now_iso()
        self.records: List[StepRecord] = []
        self._finalized = False

    # ------------------------------------------------------------------
    @property
    def steps_file(self) -> Path:
        return self.run_dir / STEPS_FILE

    @property
    def logs_file(self) -> Path:
        return self.run_dir / LOGS_FILE

    @property
    def run_file(self) -> Path:
        return self.run_dir / RUN_FILE

    @property
    def verdict_file(self) -> Path:
        return self.run_dir / VERDICT_FILE

    @property
    def finalized(self) -> bool:
        return self._finalized

    def _metadata(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "mode": self.mode,
            "trace": {
                "app": self.trace.app,
                "testName": self.trace.test_name,
                "type": self.trace.kind,
            },
            "startedAt": self.started_at,
            "baseUrl": self.trace.base_url,
            "apiBaseUrl": self.trace.api_base_url,
        }

    @staticmethod
    def _write_json(path: Path, payload: Any, mode: str = "w") -> None:
        with path.open(mode, encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, ensure_ascii=False, default=str)
            handle.write("\n")

    def _append_line(self, path: Path, payload: Dict[str, Any]) -> None:
        with path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")

    # ------------------------------------------------------------------
    def init(self) -> None:
        (self.run_dir / "ui").mkdir(parents=True, exist_ok=True)
        (self.run_dir / "api").mkdir(parents=True, exist_ok=True)
        self.steps_file.touch()
        self.logs_file.touch()
        self._write_json(self.run_file, self._metadata())

    def record_step(self, record: StepRecord) -> None:
        self.records.append(record)
        payload = record.to_dict()
        step_input = payload.get("input")
        if isinstance(step_input, dict) and isinstance(step_input.get("headers"), dict):
            payload["input"] = dict(step_input, headers=self.redactor.redact_headers(step_input["headers"]))
        self._append_line(self.steps_file, self.redactor.redact_jsonable(payload))

    def log(self, message: str, level: str = "info", **meta: Any) -> None:
        safe_message = self.redactor.redact_text(message)
        safe_meta = self.redactor.redact_jsonable(meta)
        entry = {"timestamp": utc_now_iso(), "level": level, "message": safe_message}
        entry.update(safe_meta)
        logger.log(_LOG_LEVELS.get(level, logging.INFO), "[%s] %s", self.run_id, safe_message)
        if self._finalized:
            return
        self._append_line(self.logs_file, entry)

    def save_ui_screenshot(self, step_id: str, browser: BrowserDriver) -> str:
        relative = f"ui/{step_id}-{int(time.time() * 1000)}.png"
        browser.screenshot(str(self.run_dir / relative))
        return relative

    def save_api_exchange(self, step_id: str, response: ApiResponse) -> str:
        relative = f"api/{step_id}-{int(time.time() * 1000)}.json"
        request = response.request or {}
        payload = {
            "request": {
                "method": request.get("method"),
                "path": request.get("path"),
                "query": self.redactor.redact_jsonable(request.get("query") or {}),
                "headers": self.redactor.redact_headers(request.get("headers")),
                "body": self.redactor.redact_jsonable(request.get("body")),
            },
            "response": {
                "status": response.status,
                "headers": self.redactor.redact_headers(response.headers),
                "body": self.redactor.redact_jsonable(response.body),
                "durationMs": response.duration_ms,
                "url": self.redactor.redact_text(response.url),
            },
        }
        self._write_json(self.run_dir / relative, payload, mode="x")
        return relative

    def finalize(self, verdict: RunVerdict) -> None:
        """Write the verdict once and seal run.json with the evidence manifest."""
        if self._finalized:
            raise FileExistsError(f"Verdict already written for run {self.run_id}")
        self._write_json(self.verdict_file, self.redactor.redact_jsonable(verdict.to_dict()), mode="x")
        self._finalized = True
        metadata = self._metadata()
        metadata.update(
            {
                "finishedAt": utc_now_iso(),
                "verdict": self.redactor.redact_jsonable(verdict.to_dict()),
                "artifacts": {"steps": STEPS_FILE, "logs": LOGS_FILE, "verdict": VERDICT_FILE},
                "redaction": dict(self.redactor.report.counts),
                "manifest": build_manifest(self.run_dir),
            }
        )
        self._write_json(self.run_file, metadata)


__all__ = [
    "ArtifactWriter",
    "LOGS_FILE",
    "RUN_FILE",
    "STEPS_FILE",
    "SUMMARY_FILE",
    "VERDICT_FILE",
    "build_manifest",
    "file_digest",
    "new_run_id",
    "utc_now_iso",
]
