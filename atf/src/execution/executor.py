"""Step execution: interpolation, dispatch, retry, guards and expected-value checks."""
from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import urlsplit

from atf.src.drivers.api import ApiDriver, ApiRequest, ApiResponse
from atf.src.drivers.browser import BrowserDriver, select_browser_driver
from atf.src.recorder.artifacts import ArtifactWriter, utc_now_iso
from atf.src.utils.config import AppConfig, CONFIG
from atf.src.utils.errors import AssertionMismatch, AtfError, GuardViolation
from atf.src.utils.interpolation import (
    MISSING,
    InterpolationContext,
    build_context,
    get_path,
    resolve,
    resolve_deep,
)
from atf.src.utils.models import StepGuards, StepRecord, Trace, TraceAction, TraceStep
from atf.src.utils.openapi import OpenApiValidator, load_validator

logger = logging.getLogger(__name__)

SAVE_PREFIX = "save:"
HTTP_ENVELOPE_KEYS = ("body", "headers", "query")

_DISPATCH: Dict[TraceAction, str] = {
    TraceAction.NAVIGATE: "_do_navigate",
    TraceAction.CLICK: "_do_click",
    TraceAction.INPUT: "_do_input",
    TraceAction.SELECT: "_do_select",
    TraceAction.PRESS: "_do_press",
    TraceAction.WAIT_FOR_TEXT: "_do_wait_for_text",
    TraceAction.WAIT_FOR_SELECTOR: "_do_wait_for_selector",
    TraceAction.EXTRACT_TEXT: "_do_extract_text",
    TraceAction.GET: "_do_http",
    TraceAction.POST: "_do_http",
    TraceAction.PUT: "_do_http",
    TraceAction.PATCH: "_do_http",
    TraceAction.DELETE: "_do_http",
}

_unhandled = set(TraceAction) - set(_DISPATCH)
if _unhandled:
    raise RuntimeError(f"No executor handler for actions: {sorted(a.value for a in _unhandled)}")


def subset_match(actual: Any, expected: Any) -> bool:
    """True when every key declared in ``expected`` deep-equals the value in ``actual``."""
    if isinstance(expected, Mapping):
        if not isinstance(actual, Mapping):
            return False
        return all(key in actual and subset_match(actual[key], value) for key, value in expected.items())
    if isinstance(expected, (list, tuple)):
        if not isinstance(actual, (list, tuple)) or len(actual) != len(expected):
            return False
        return all(subset_match(item, want) for item, want in zip(actual, expected))
    if isinstance(expected, bool) or isinstance(actual, bool):
        return isinstance(expected, bool) and isinstance(actual, bool) and expected is actual
    return actual == expected


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


class TraceExecutor:
    """Runs one step at a time against the HTTP driver or a lazily started browser session.

    The executor exclusively owns its interpolation context; ``saveState``
    captures made by a step are visible to every later step of the same run.
    """

    def __init__(
        self,
        trace: Trace,
        artifacts: ArtifactWriter,
        *,
        headless: Optional[bool] = None,
        config: Optional[AppConfig] = None,
        browser_factory: Optional[Callable[[], BrowserDriver]] = None,
        api_driver: Optional[ApiDriver] = None,
        contract: Optional[OpenApiValidator] = None,
        env_overrides: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.trace = trace
        self.artifacts = artifacts
        self.config = config or CONFIG
        self.headless = trace.policies.headless if headless is None else headless
        self._browser_factory = browser_factory or (lambda: select_browser_driver(self.config.browser))
        self._browser: Optional[BrowserDriver] = None
        self._api = api_driver or ApiDriver(trace.api_base_url, timeout_ms=self.config.run.http_timeout_ms)
        self._contract = contract
        self._last_response: Optional[ApiResponse] = None
        self._context = build_context(
            trace.base_url,
            trace.api_base_url,
            trace.inputs.env,
            env_overrides=env_overrides,
        )

    # ------------------------------------------------------------------
    @property
    def context(self) -> InterpolationContext:
        return self._context

    @property
    def browser(self) -> Optional[BrowserDriver]:
        return self._browser

    @property
    def last_api_response(self) -> Optional[ApiResponse]:
        return self._last_response

    def current_url(self) -> str:
        if self._browser is None or not self._browser.started:
            return ""
        return self._browser.current_url()

    def setup(self) -> None:
        if self._contract is None:
            self._contract = load_validator(self.config.run.contract_path(self.trace.app))
            if self._contract is not None:
                self.artifacts.log(f"Loaded API contract for {self.trace.app}", "debug")
        if self.trace.kind == "ui":
            self._ensure_browser()

    def teardown(self) -> None:
        browser, self._browser = self._browser, None
        if browser is not None:
            try:
                browser.stop()
            except Exception as exc:  # noqa: BLE001 - teardown never masks the step outcome
                self.artifacts.log(f"Browser teardown failed: {exc}", "warn")
        self._api.close()

    def _ensure_browser(self) -> BrowserDriver:
        if self._browser is None:
            self._browser = self._browser_factory()
        if not self._browser.started:
            self._browser.start(self.trace.base_url, headless=self.headless)
        return self._browser

    # ------------------------------------------------------------------
    def run_step(self, step: TraceStep) -> StepRecord:
        started = time.monotonic()
        started_at = utc_now_iso()
        artifacts: Dict[str, str] = {}
        error: Optional[AtfError] = None
        attempts = 0
        # guards and evidence only ever see a response produced by this step
        self._last_response = None

        target = step.selector_or_endpoint
        resolved_input: Any = step.input
        resolved_expected: Optional[Dict[str, Any]] = step.expected
        guards = step.guards or StepGuards()
        try:
            target = resolve(step.selector_or_endpoint, self._context)
            resolved_input = resolve_deep(step.input, self._context)
            resolved_expected = resolve_deep(step.expected, self._context) if step.expected else None
            if step.guards is not None:
                guards = StepGuards.model_validate(resolve_deep(step.guards.to_dict(), self._context))
        except AtfError as exc:
            error = exc
        else:
            budget = 2 if guards.allow_retry else 1
            for attempt in range(1, budget + 1):
                attempts = attempt
                try:
                    self._execute(step.action, target, resolved_input, resolved_expected, guards)
                    error = None
                    break
                except AtfError as exc:
                    error = exc
                    if attempt < budget:
                        self.artifacts.log(f"Retrying step {step.id} due to {exc}", "warn", stepId=step.id)

        self._capture_evidence(step, error, artifacts)

        return StepRecord(
            step_id=step.id,
            action=step.action.value,
            status="fail" if error else "pass",
            started_at=started_at,
            ended_at=utc_now_iso(),
            duration_ms=int((time.monotonic() - started) * 1000),
            attempts=attempts,
            error=str(error) if error else None,
            reason_code=error.reason_code if error else None,
            selector_or_endpoint=target,
            input=resolved_input,
            expected=resolved_expected,
            guards=guards.to_dict() if step.guards is not None else None,
            artifacts=artifacts,
        )

    def _capture_evidence(self, step: TraceStep, error: Optional[AtfError], artifacts: Dict[str, str]) -> None:
        if step.action.is_ui:
            if error is None or self._browser is None or not self._browser.started:
                return
            try:
                artifacts["screenshot"] = self.artifacts.save_ui_screenshot(step.id, self._browser)
            except (AtfError, OSError) as exc:
                self.artifacts.log(f"Screenshot for step {step.id} failed: {exc}", "warn")
        elif self._last_response is not None:
            artifacts["api"] = self.artifacts.save_api_exchange(step.id, self._last_response)

    def _execute(
        self,
        action: TraceAction,
        target: str,
        input_value: Any,
        expected: Optional[Dict[str, Any]],
        guards: StepGuards,
    ) -> None:
        if action.is_ui:
            self._ensure_browser()
        handler = getattr(self, _DISPATCH[action])
        handler(action, target, input_value, guards)
        self._apply_guards(guards)
        self._apply_expected(action, expected)

    # -- UI actions -----------------------------------------------------
    def _do_navigate(self, action: TraceAction, target: str, input_value: Any, guards: StepGuards) -> None:
        self._browser.goto(target)

    def _do_click(self, action: TraceAction, target: str, input_value: Any, guards: StepGuards) -> None:
        self._browser.click(target)

    def _do_input(self, action: TraceAction, target: str, input_value: Any, guards: StepGuards) -> None:
        self._browser.type(target, _as_text(input_value))

    def _do_select(self, action: TraceAction, target: str, input_value: Any, guards: StepGuards) -> None:
        self._browser.select(target, _as_text(input_value))

    def _do_press(self, action: TraceAction, target: str, input_value: Any, guards: StepGuards) -> None:
        self._browser.press(target, _as_text(input_value))

    def _do_wait_for_text(self, action: TraceAction, target: str, input_value: Any, guards: StepGuards) -> None:
        self._browser.wait_for_text(target, guards.timeout_ms)

    def _do_wait_for_selector(
        self, action: TraceAction, target: str, input_value: Any, guards: StepGuards
    ) -> None:
        self._browser.wait_for_selector(target, guards.timeout_ms)

    def _do_extract_text(self, action: TraceAction, target: str, input_value: Any, guards: StepGuards) -> None:
        text = self._browser.extract_text(target)
        if isinstance(input_value, str) and input_value.startswith(SAVE_PREFIX):
            key = input_value[len(SAVE_PREFIX):].strip()
            if key:
                self._context.state[key] = text

    # -- HTTP actions ---------------------------------------------------
    def _do_http(self, action: TraceAction, endpoint: str, input_value: Any, guards: StepGuards) -> None:
        body: Any = input_value
        headers: Dict[str, str] = {}
        query: Dict[str, Any] = {}
        if isinstance(input_value, Mapping) and any(key in input_value for key in HTTP_ENVELOPE_KEYS):
            body = input_value.get("body")
            headers = dict(input_value.get("headers") or {})
            query = dict(input_value.get("query") or {})

        method = action.http_method or action.value.upper()
        self._last_response = None
        response = self._api.request(
            ApiRequest(method=method, path=endpoint, headers=headers, query=query, body=body),
            timeout_ms=guards.timeout_ms or self.trace.policies.timeouts_ms,
        )
        self._last_response = response

        if self._contract is not None:
            path = urlsplit(endpoint).path or endpoint
            self._contract.check_response(method, path, response.status, response.body)

    # -- checks ---------------------------------------------------------
    def _page_text(self) -> str:
        if self._browser is None or not self._browser.started:
            return ""
        return self._browser.text_content("body")

    def _apply_guards(self, guards: StepGuards) -> None:
        if guards.expect_url_includes:
            url = self.current_url()
            if guards.expect_url_includes not in url:
                raise GuardViolation(f"Guard failed: URL does not include {guards.expect_url_includes}")

        needles = guards.text_needles()
        if needles:
            body = self._page_text()
            for needle in needles:
                if needle not in body:
                    raise GuardViolation(f'Guard failed: page text missing "{needle}"')

        if guards.expect_status_code is not None:
            if self._last_response is None:
                raise GuardViolation("Guard failed: no API response to check status code")
            if self._last_response.status != guards.expect_status_code:
                raise GuardViolation(
                    f"Guard failed: expected status {guards.expect_status_code}, "
                    f"received {self._last_response.status}"
                )

    def _apply_expected(self, action: TraceAction, expected: Optional[Dict[str, Any]]) -> None:
        if not expected:
            return
        if action.is_ui:
            self._apply_ui_expected(expected)
            return

        if self._last_response is None:
            raise AssertionMismatch("No API response to validate expected payload")
        body = self._last_response.body
        subset = dict(expected)
        save_state = subset.pop("saveState", None)

        captured: Dict[str, Any] = {}
        if isinstance(save_state, Mapping):
            for key, path in save_state.items():
                value = get_path(body, str(path))
                if value is MISSING:
                    raise AssertionMismatch(
                        f"Response body has no value at '{path}' for state '{key}'",
                        status=self._last_response.status,
                    )
                captured[key] = value

        if subset and not subset_match(body, subset):
            raise AssertionMismatch("API response body does not match expected subset")
        self._context.state.update(captured)

    def _apply_ui_expected(self, expected: Dict[str, Any]) -> None:
        text_includes = expected.get("textIncludes")
        if text_includes:
            values = text_includes if isinstance(text_includes, list) else [text_includes]
            body = self._page_text()
            for value in values:
                if str(value) not in body:
                    raise AssertionMismatch(f'Expected text "{value}" not found')

        selector_text = expected.get("selectorText")
        if isinstance(selector_text, Mapping) and selector_text.get("selector"):
            text = self._browser.extract_text(selector_text["selector"])
            equals = selector_text.get("equals")
            includes = selector_text.get("includes")
            if equals is not None and text != equals:
                raise AssertionMismatch(f'Expected selector text to equal "{equals}", got "{text}"')
            if includes is not None and includes not in text:
                raise AssertionMismatch(f'Expected selector text to include "{includes}"')

        save_state = expected.get("saveState")
        if isinstance(save_state, Mapping):
            self._context.state.update(save_state)


__all__ = ["TraceExecutor", "subset_match"]
