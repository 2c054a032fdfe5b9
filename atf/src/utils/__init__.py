"""Utility exports for atf."""
from atf.src.utils.config import CONFIG, AppConfig, BrowserConfig, LLMConfig, RunConfig
from atf.src.utils.models import RunVerdict, StepGuards, StepRecord, Trace, TraceAction, TraceStep

__all__ = [
    "CONFIG",
    "AppConfig",
    "BrowserConfig",
    "LLMConfig",
    "RunConfig",
    "RunVerdict",
    "StepGuards",
    "StepRecord",
    "Trace",
    "TraceAction",
    "TraceStep",
]
