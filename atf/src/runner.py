"""Replay and compiled-mode run drivers."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Optional

from atf.src.drivers.browser import BrowserDriver
from atf.src.execution.executor import TraceExecutor
from atf.src.recorder.artifacts import ArtifactWriter
from atf.src.utils.config import AppConfig, CONFIG
from atf.src.utils.errors import StepFailed, describe_failure
from atf.src.utils.models import RunVerdict, StepRecord, Trace, TraceStep
from atf.src.utils.trace_io import load_trace

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunResult:
    verdict: RunVerdict
    run_id: str
    artifacts_path: Path
    trace: Trace
    records: List[StepRecord]


def run_trace(
    trace: Trace,
    *,
    headless: Optional[bool] = None,
    config: Optional[AppConfig] = None,
    runs_root: Path | str | None = None,
    browser_factory: Optional[Callable[[], BrowserDriver]] = None,
    **executor_options: Any,
) -> RunResult:
    """Replay ``trace`` step by step, stopping at the first failure.

    The verdict is always written; setup errors and unexpected exceptions end up
    in ``verdict.reasons`` instead of propagating.
    """
    cfg = config or CONFIG
    artifacts = ArtifactWriter(trace, "replay", runs_root=runs_root or cfg.run.runs_root)
    artifacts.init()
    artifacts.log(f"Replaying {trace.app}/{trace.test_name} ({len(trace.steps)} steps)")

    executor = TraceExecutor(
        trace,
        artifacts,
        headless=headless,
        config=cfg,
        browser_factory=browser_factory,
        **executor_options,
    )

    extra_reasons: List[str] = []
    try:
        executor.setup()
        for step in trace.steps:
            record = executor.run_step(step)
            artifacts.record_step(record)
            if not record.passed:
                artifacts.log(f"Step {step.id} failed: {record.error}", "error", stepId=step.id)
                break
    except Exception as exc:  # noqa: BLE001 - surfaced through the verdict
        logger.exception("Run %s aborted", artifacts.run_id)
        extra_reasons.append(describe_failure(exc))
    finally:
        executor.teardown()

    verdict = RunVerdict.from_records(artifacts.records, extra_reasons)
    artifacts.finalize(verdict)
    artifacts.log(f"Run finished: {verdict.status}", "info" if verdict.status == "pass" else "error")
    return RunResult(
        verdict=verdict,
        run_id=artifacts.run_id,
        artifacts_path=artifacts.run_dir,
        trace=trace,
        records=list(artifacts.records),
    )


def run_trace_file(trace_path: Path | str, **options: Any) -> RunResult:
    """Load and replay a persisted trace; an unreadable or invalid file raises InvalidTrace."""
    trace = load_trace(trace_path)
    return run_trace(trace, **options)


class CompiledRunner:
    """Harness used by compiled standalone tests: one ``execute_step`` call per step."""

    def __init__(
        self,
        trace: Trace,
        *,
        config: Optional[AppConfig] = None,
        runs_root: Path | str | None = None,
        **executor_options: Any,
    ) -> None:
        cfg = config or CONFIG
        self.trace = trace
        self.artifacts = ArtifactWriter(trace, "compiled", runs_root=runs_root or cfg.run.runs_root)
        self.executor = TraceExecutor(trace, self.artifacts, config=cfg, **executor_options)
        self._reasons: List[str] = []
        self._verdict: Optional[RunVerdict] = None

    @property
    def verdict(self) -> Optional[RunVerdict]:
        return self._verdict

    def setup(self) -> None:
        self.artifacts.init()
        try:
            self.executor.setup()
        except Exception as exc:
            self._reasons.append(describe_failure(exc))
            raise

    def execute_step(self, step: TraceStep) -> StepRecord:
        record = self.executor.run_step(step)
        self.artifacts.record_step(record)
        if not record.passed:
            raise StepFailed(record.error or f"Step {step.id} failed", step_id=step.id)
        return record

    def teardown(self) -> RunVerdict:
        try:
            self.executor.teardown()
        finally:
            if self._verdict is None:
                self._verdict = RunVerdict.from_records(self.artifacts.records, self._reasons)
                self.artifacts.finalize(self._verdict)
        return self._verdict


__all__ = ["CompiledRunner", "RunResult", "run_trace", "run_trace_file"]
