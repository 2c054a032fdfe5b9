"""LLM collaborator."""
from atf.src.llm.client import LLMClient

__all__ = ["LLMClient"]
