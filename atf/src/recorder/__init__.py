"""Run evidence: artifacts, verdicts and summaries."""
from atf.src.recorder.artifacts import ArtifactWriter
from atf.src.recorder.report import build_summary, verify_run, write_summary

__all__ = ["ArtifactWriter", "build_summary", "verify_run", "write_summary"]
