"""Step execution engine."""
from atf.src.execution.executor import TraceExecutor, subset_match

__all__ = ["TraceExecutor", "subset_match"]
