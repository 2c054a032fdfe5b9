"""Run summaries and evidence verification."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List

from atf.src.recorder.artifacts import RUN_FILE, STEPS_FILE, SUMMARY_FILE, VERDICT_FILE, file_digest


def _read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def read_steps(run_dir: Path | str) -> List[Dict[str, Any]]:
    path = Path(run_dir) / STEPS_FILE
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


def verify_run(run_dir: Path | str) -> List[str]:
    """Return evidence files whose digest no longer matches the sealed manifest."""
    root = Path(run_dir)
    metadata = _read_json(root / RUN_FILE)
    manifest: Dict[str, Dict[str, Any]] = metadata.get("manifest") or {}
    mismatched: List[str] = []
    for relative, entry in sorted(manifest.items()):
        path = root / relative
        if not path.is_file() or file_digest(path) != entry.get("sha256"):
            mismatched.append(relative)
    return mismatched


def build_summary(run_dir: Path | str) -> Dict[str, object]:
    """Return a compact summary of a finished run."""

    root = Path(run_dir)
    if not (root / RUN_FILE).exists():
        raise FileNotFoundError(f"Run {root.name} not found")
    metadata = _read_json(root / RUN_FILE)
    verdict = _read_json(root / VERDICT_FILE)
    steps = read_steps(root)
    trace_meta = metadata.get("trace") or {}

    return {
        "runId": metadata.get("runId", root.name),
        "mode": metadata.get("mode"),
        "app": trace_meta.get("app"),
        "testName": trace_meta.get("testName"),
        "verdict": verdict.get("status"),
        "reasons": list(verdict.get("reasons") or []),
        "totalSteps": len(steps),
        "durationMs": sum(int(step.get("durationMs") or 0) for step in steps),
        "failedSteps": [
            {
                "stepId": step.get("stepId"),
                "action": step.get("action"),
                "error": step.get("error"),
                "reasonCode": step.get("reasonCode"),
            }
            for step in steps
            if step.get("status") != "pass"
        ],
        "artifacts": sorted(
            {path for step in steps for path in (step.get("artifacts") or {}).values()}
        ),
    }


def write_summary(run_dir: Path | str) -> Path:
    summary = build_summary(run_dir)
    target = Path(run_dir) / SUMMARY_FILE
    target.write_text(json.dumps(summary, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    return target


__all__ = ["build_summary", "read_steps", "verify_run", "write_summary"]
