"""atf package root exposing the replay, compiled and exploration entry points."""

from atf.src.explorer import ExplorationResult, Explorer, ExplorerOptions
from atf.src.recorder.report import build_summary, verify_run
from atf.src.runner import CompiledRunner, RunResult, run_trace, run_trace_file
from atf.src.utils.trace_io import load_trace, save_trace

__all__ = [
    "CompiledRunner",
    "ExplorationResult",
    "Explorer",
    "ExplorerOptions",
    "RunResult",
    "build_summary",
    "load_trace",
    "run_trace",
    "run_trace_file",
    "save_trace",
    "verify_run",
]
