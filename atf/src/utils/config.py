"""Configuration helpers for atf services."""
from __future__ import annotations

import logging
import os
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(slots=True)
class LLMConfig:
    """Settings for the step-proposal model."""

    provider: str = field(default_factory=lambda: os.getenv("ATF_LLM_PROVIDER", "ollama"))
    model: str = field(default_factory=lambda: os.getenv("ATF_LLM_MODEL", "llama3.1"))
    base_url: Optional[str] = field(default_factory=lambda: os.getenv("ATF_LLM_BASE_URL"))
    api_key: Optional[str] = field(
        default_factory=lambda: os.getenv("ATF_LLM_API_KEY") or os.getenv("OPENAI_API_KEY")
    )
    timeout_ms: int = field(default_factory=lambda: _env_int("ATF_LLM_TIMEOUT_MS", 60000))

    def __post_init__(self) -> None:
        provider = (self.provider or "ollama").strip()
        if provider == "openaiCompat":
            provider = "openai"
        self.provider = provider.lower()


@dataclass(slots=True)
class BrowserConfig:
    """How the browser session is hosted: in-process or in a worker process."""

    mode: str = field(default_factory=lambda: os.getenv("ATF_BROWSER_MODE", "auto"))
    worker_command: List[str] = field(default_factory=list)
    request_timeout: int = field(default_factory=lambda: _env_int("ATF_BROWSER_TIMEOUT", 45))

    def __post_init__(self) -> None:
        self.mode = (self.mode or "auto").strip().lower()
        if not self.worker_command:
            raw = os.getenv("ATF_BROWSER_WORKER")
            if raw:
                self.worker_command = shlex.split(raw)
            else:
                self.worker_command = [sys.executable, "-m", "atf.src.drivers.browser_worker"]


@dataclass(slots=True)
class RunConfig:
    """Where run evidence, traces and API contracts live."""

    runs_root: Path = field(default_factory=lambda: Path(os.getenv("ATF_RUNS_DIR", "runs")))
    traces_root: Path = field(default_factory=lambda: Path(os.getenv("ATF_TRACES_DIR", "traces")))
    contracts_root: Path = field(default_factory=lambda: Path(os.getenv("ATF_CONTRACTS_DIR", "apps")))
    http_timeout_ms: int = field(default_factory=lambda: _env_int("ATF_HTTP_TIMEOUT_MS", 30000))

    def contract_path(self, app: str) -> Path:
        return self.contracts_root / app / "openapi.json"


@dataclass(slots=True)
class AppConfig:
    """Aggregated configuration for the engine."""

    llm: LLMConfig = field(default_factory=LLMConfig)
    browser: BrowserConfig = field(default_factory=BrowserConfig)
    run: RunConfig = field(default_factory=RunConfig)


def load_config(dotenv_path: Path | str | None = None) -> AppConfig:
    """Load ``.env`` (never overriding exported variables) and build a fresh config."""
    load_dotenv(dotenv_path=dotenv_path, override=False)
    return AppConfig()


def configure_logging(level: str | int | None = None) -> None:
    """Install one stderr handler; stdout stays free for the worker protocol."""
    resolved = level or os.getenv("ATF_LOG_LEVEL", "INFO")
    logging.basicConfig(
        level=resolved,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


CONFIG = AppConfig()
