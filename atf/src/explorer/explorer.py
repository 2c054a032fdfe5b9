"""
Autonomous explorer

Only a goal is given; the model looks at the current page (or last API
exchange) and proposes one step at a time. Each accepted step runs through the
same executor used for replay and is appended to a new trace.

    observing -> proposing -> executing -> (observing | halted)
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from atf.src.drivers.browser import BrowserDriver
from atf.src.execution.executor import TraceExecutor
from atf.src.explorer.parsing import parse_proposal
from atf.src.llm.client import LLMClient
from atf.src.recorder.artifacts import ArtifactWriter, utc_now_iso
from atf.src.utils.config import AppConfig, CONFIG
from atf.src.utils.errors import AtfError, InvalidProposal, LLMError, describe_failure
from atf.src.utils.models import (
    RunVerdict,
    Trace,
    TraceAction,
    TraceGenerator,
    TraceInputs,
    TracePolicies,
    TraceStep,
)
from atf.src.utils.trace_io import save_trace, trace_path_for

logger = logging.getLogger(__name__)

DEFAULT_MAX_STEPS = 15
PROPOSAL_ATTEMPTS = 3
OBSERVED_ELEMENT_LIMIT = 25
ELEMENT_TEXT_LIMIT = 120
RECENT_STEP_COUNT = 3

OBSERVE_SCRIPT = """(limit) => {
  const query = '[data-testid], a, button, input, select, textarea, [role="button"]';
  const seen = new Set();
  const out = [];
  for (const node of Array.from(document.querySelectorAll(query))) {
    if (out.length >= limit) break;
    let ref = null;
    const testId = node.getAttribute('data-testid');
    const name = node.getAttribute('name');
    if (testId) ref = `[data-testid="${testId}"]`;
    else if (node.id) ref = `#${node.id}`;
    else if (name) ref = `${node.tagName.toLowerCase()}[name="${name}"]`;
    if (!ref || seen.has(ref)) continue;
    seen.add(ref);
    const text = (node.innerText || node.value || node.getAttribute('placeholder') || '').trim();
    out.push({ ref, tag: node.tagName.toLowerCase(), text: text.slice(0, 120) });
  }
  return out;
}"""


class ExplorerState(str, Enum):
    OBSERVING = "observing"
    PROPOSING = "proposing"
    EXECUTING = "executing"
    HALTED = "halted"


class HaltReason(str, Enum):
    GOAL_REACHED = "goal_reached"
    BUDGET_EXHAUSTED = "budget_exhausted"
    STEP_FAILED = "step_failed"
    INVALID_PROPOSAL = "invalid_proposal"
    LLM_ERROR = "llm_error"
    SETUP_FAILED = "setup_failed"


class ExplorerOptions(BaseModel):
    """What to explore and under which budget."""

    app: str = Field(..., description="Application id; selects contract and output folders")
    test_name: str = Field(..., description="Name of the trace to synthesize")
    kind: Literal["ui", "api"] = Field(default="ui", description="Surface being explored")
    goal: str = Field(..., description="Natural-language goal handed to the model")
    base_url: str = Field(default="")
    api_base_url: str = Field(default="")
    env: Dict[str, str] = Field(default_factory=dict, description="Values exposed as ${ENV:KEY}")
    max_steps: int = Field(default=DEFAULT_MAX_STEPS, ge=1, description="Step budget")
    headless: bool = Field(default=True)


@dataclass(slots=True)
class ExplorationResult:
    verdict: RunVerdict
    halt_reason: HaltReason
    run_id: str
    artifacts_path: Path
    trace: Trace
    trace_path: Optional[Path] = None
    compiled: Any = None


class Explorer:
    """Bounded propose/execute loop that writes a replayable trace."""

    def __init__(
        self,
        options: ExplorerOptions,
        *,
        llm: Optional[LLMClient] = None,
        config: Optional[AppConfig] = None,
        runs_root: Path | str | None = None,
        traces_root: Path | str | None = None,
        compiler: Optional[Callable[[Path], Any]] = None,
        browser_factory: Optional[Callable[[], BrowserDriver]] = None,
        **executor_options: Any,
    ) -> None:
        self.options = options
        self.config = config or CONFIG
        self.llm = llm or LLMClient(self.config.llm)
        self.compiler = compiler
        self.traces_root = Path(traces_root) if traces_root is not None else self.config.run.traces_root
        self.state = ExplorerState.OBSERVING

        self.trace = Trace(
            kind=options.kind,
            test_name=options.test_name,
            description=options.goal,
            app=options.app,
            base_url=options.base_url,
            api_base_url=options.api_base_url,
            created_at=utc_now_iso(),
            generator=TraceGenerator(
                mode="explore",
                llm_provider=self.config.llm.provider,
                llm_model=self.config.llm.model,
            ),
            inputs=TraceInputs(env=dict(options.env)),
            policies=TracePolicies(headless=options.headless, max_steps=options.max_steps),
            steps=[],
        )
        self.artifacts = ArtifactWriter(
            self.trace, "explore", runs_root=runs_root or self.config.run.runs_root
        )
        self.executor = TraceExecutor(
            self.trace,
            self.artifacts,
            headless=options.headless,
            config=self.config,
            browser_factory=browser_factory,
            **executor_options,
        )

    def _enter(self, state: ExplorerState) -> None:
        if state is not self.state:
            logger.debug("Explorer %s: %s -> %s", self.artifacts.run_id, self.state.value, state.value)
        self.state = state

    # ------------------------------------------------------------------
    def run(self) -> ExplorationResult:
        self.artifacts.init()
        self.artifacts.log(f"Exploring {self.trace.app}: {self.options.goal}")
        reasons: List[str] = []
        halt = HaltReason.BUDGET_EXHAUSTED

        try:
            self.executor.setup()
        except Exception as exc:  # noqa: BLE001 - surfaced through the verdict
            logger.exception("Exploration %s setup failed", self.artifacts.run_id)
            halt = HaltReason.SETUP_FAILED
            reasons.append(describe_failure(exc))
        else:
            try:
                halt = self._loop(reasons)
            except Exception as exc:  # noqa: BLE001 - surfaced through the verdict
                logger.exception("Exploration %s aborted", self.artifacts.run_id)
                halt = HaltReason.STEP_FAILED
                reasons.append(describe_failure(exc))
        finally:
            self._enter(ExplorerState.HALTED)
            self.executor.teardown()

        verdict = RunVerdict.from_records(self.artifacts.records, reasons)
        self.artifacts.log(f"Exploration halted: {halt.value} ({verdict.status})")
        self.artifacts.finalize(verdict)

        result = ExplorationResult(
            verdict=verdict,
            halt_reason=halt,
            run_id=self.artifacts.run_id,
            artifacts_path=self.artifacts.run_dir,
            trace=self.trace,
        )
        if self.trace.steps:
            result.trace_path = save_trace(self.trace, trace_path_for(self.traces_root, self.trace))
            if self.compiler is not None:
                result.compiled = self.compiler(result.trace_path)
        return result

    def _loop(self, reasons: List[str]) -> HaltReason:
        for index in range(self.options.max_steps):
            self._enter(ExplorerState.OBSERVING)
            observation = self.observe()

            self._enter(ExplorerState.PROPOSING)
            try:
                step = self.propose_step(index, observation)
            except InvalidProposal as exc:
                reasons.append(exc.as_error_message())
                return HaltReason.INVALID_PROPOSAL
            except LLMError as exc:
                reasons.append(exc.as_error_message())
                return HaltReason.LLM_ERROR
            if step is None:
                return HaltReason.GOAL_REACHED

            self._enter(ExplorerState.EXECUTING)
            record = self.executor.run_step(step)
            self.artifacts.record_step(record)
            self.trace.steps.append(step)
            if not record.passed:
                return HaltReason.STEP_FAILED
        return HaltReason.BUDGET_EXHAUSTED

    # ------------------------------------------------------------------
    def observe(self) -> Dict[str, Any]:
        if self.trace.kind == "api":
            response = self.executor.last_api_response
            if response is None:
                return {"lastResponse": None}
            return {
                "lastResponse": self.artifacts.redactor.redact_jsonable(
                    {
                        "method": response.request.get("method"),
                        "url": response.url,
                        "status": response.status,
                        "body": response.body,
                    }
                )
            }

        browser = self.executor.browser
        if browser is None or not browser.started:
            return {}
        try:
            raw_elements = browser.evaluate(OBSERVE_SCRIPT, OBSERVED_ELEMENT_LIMIT) or []
            observation = {"url": browser.current_url(), "title": browser.title()}
        except AtfError as exc:
            self.artifacts.log(f"Observation failed: {exc}", "warn")
            return {"error": str(exc)}

        elements = []
        for element in list(raw_elements)[:OBSERVED_ELEMENT_LIMIT]:
            if not isinstance(element, dict) or not element.get("ref"):
                continue
            elements.append(
                {
                    "ref": str(element["ref"]),
                    "tag": str(element.get("tag") or ""),
                    "text": str(element.get("text") or "")[:ELEMENT_TEXT_LIMIT],
                }
            )
        observation["elements"] = elements
        return self.artifacts.redactor.redact_jsonable(observation)

    def system_prompt(self) -> str:
        actions = ", ".join(action.value for action in TraceAction)
        env_keys = ", ".join(f"${{ENV:{key}}}" for key in sorted(self.options.env)) or "none"
        return (
            "You operate a test automation engine. Output only one JSON object defining the next step: "
            '{"action", "selectorOrEndpoint", "input"?, "expected"?, "guards"?}. '
            f"Allowed actions: {actions}. "
            "Prefer data-testid selectors taken from the observed elements. "
            f"Available placeholders: ${{baseUrl}}, ${{apiBaseUrl}}, ${{STATE:key}}, {env_keys}. "
            'Return {"action":"stop"} when the goal is met.'
        )

    def _user_prompt(self, observation: Dict[str, Any]) -> str:
        recent = [
            {"action": step.action.value, "selectorOrEndpoint": step.selector_or_endpoint}
            for step in self.trace.steps[-RECENT_STEP_COUNT:]
        ]
        return json.dumps(
            {
                "goal": self.options.goal,
                "type": self.trace.kind,
                "observation": observation,
                "recentSteps": recent,
            },
            ensure_ascii=False,
            default=str,
        )

    def propose_step(self, index: int, observation: Dict[str, Any]) -> Optional[TraceStep]:
        """Ask for step ``index``; ``None`` means the model declared the goal reached.

        Malformed output is re-prompted with the validation error; provider
        failures (LLMError) propagate on the first occurrence.
        """
        system_prompt = self.system_prompt()
        user_prompt = self._user_prompt(observation)
        last_error = ""
        for attempt in range(1, PROPOSAL_ATTEMPTS + 1):
            prompt = f"{user_prompt}\nPrevious error: {last_error}" if last_error else user_prompt
            raw = self.llm.generate(system_prompt, prompt)
            try:
                return parse_proposal(raw, index)
            except InvalidProposal as exc:
                last_error = str(exc)
                self.artifacts.log(
                    f"Rejected proposal {attempt}/{PROPOSAL_ATTEMPTS}: {exc}", "warn", stepIndex=index
                )
        raise InvalidProposal(
            f"LLM could not produce a valid step after {PROPOSAL_ATTEMPTS} attempts: {last_error}"
        )


__all__ = [
    "DEFAULT_MAX_STEPS",
    "ExplorationResult",
    "Explorer",
    "ExplorerOptions",
    "ExplorerState",
    "HaltReason",
    "OBSERVE_SCRIPT",
    "PROPOSAL_ATTEMPTS",
]
