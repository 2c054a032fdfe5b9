"""
Autonomous exploration

Goal in, replayable trace out: the model proposes one step at a time and the
replay executor runs it.
"""

from .explorer import ExplorationResult, Explorer, ExplorerOptions, ExplorerState, HaltReason
from .parsing import parse_proposal

__all__ = [
    "ExplorationResult",
    "Explorer",
    "ExplorerOptions",
    "ExplorerState",
    "HaltReason",
    "parse_proposal",
]
