import json

import pytest

from atf.src.execution.executor import TraceExecutor, subset_match
from atf.src.recorder.artifacts import ArtifactWriter
from atf.src.utils.models import Trace, TraceStep


def _trace(kind="api", steps=None, **extra):
    data = {
        "version": 1,
        "type": kind,
        "testName": "executor_case",
        "app": "shop",
        "baseUrl": "http://shop.test",
        "apiBaseUrl": extra.pop("api_base_url", "http://api.invalid"),
        "inputs": {"env": extra.pop("env", {})},
        "steps": steps or [],
    }
    data.update(extra)
    return Trace.model_validate(data)


def _executor(trace, app_config, browser=None, **kwargs):
    writer = ArtifactWriter(trace, "replay", runs_root=app_config.run.runs_root)
    writer.init()
    factory = (lambda: browser) if browser is not None else None
    executor = TraceExecutor(trace, writer, config=app_config, browser_factory=factory, **kwargs)
    return executor, writer


def _step(**data):
    return TraceStep.model_validate(data)


class TestSubsetMatch:
    def test_nested_partial_mapping(self):
        assert subset_match({"a": 1, "b": {"c": 2, "d": 3}}, {"b": {"c": 2}})

    def test_missing_key_fails(self):
        assert not subset_match({"a": 1}, {"b": None})

    def test_lists_compare_element_wise(self):
        assert subset_match({"xs": [{"id": 1, "n": "a"}, {"id": 2}]}, {"xs": [{"id": 1}, {"id": 2}]})
        assert not subset_match({"xs": [1, 2, 3]}, {"xs": [1, 2]})

    def test_bool_never_equals_number(self):
        assert not subset_match({"ok": 1}, {"ok": True})
        assert not subset_match({"ok": True}, {"ok": 1})
        assert subset_match({"ok": True}, {"ok": True})


class TestHttpSteps:
    def test_post_with_envelope_and_save_state(self, api_server, app_config):
        trace = _trace(api_base_url=api_server.base_url, env={"PASSWORD": "demo-pass-1"})
        executor, writer = _executor(trace, app_config)
        executor.setup()

        record = executor.run_step(
            _step(
                id="s1",
                action="post",
                selectorOrEndpoint="/api/login",
                input={"body": {"username": "demo", "password": "${ENV:PASSWORD}"}},
                expected={"saveState": {"authToken": "token"}, "user": {"name": "Demo"}},
                guards={"expectStatusCode": 200},
            )
        )

        assert record.status == "pass", record.error
        assert executor.context.state["authToken"] == "tok-123"
        assert record.input == {"body": {"username": "demo", "password": "demo-pass-1"}}
        assert record.artifacts["api"].startswith("api/s1-")

        exchange = json.loads((writer.run_dir / record.artifacts["api"]).read_text(encoding="utf-8"))
        assert exchange["request"]["body"]["password"] == "[REDACTED]"
        assert exchange["response"]["status"] == 200
        executor.teardown()

    def test_plain_input_is_the_body_and_query_is_sent(self, api_server, app_config):
        trace = _trace(api_base_url=api_server.base_url)
        executor, _ = _executor(trace, app_config)
        record = executor.run_step(
            _step(id="s1", action="get", selectorOrEndpoint="/api/echo", input={"query": {"page": "2"}})
        )
        assert record.passed
        assert executor.last_api_response.body == {"path": "/api/echo?page=2"}

    def test_missing_save_state_path_fails_step(self, api_server, app_config):
        trace = _trace(api_base_url=api_server.base_url)
        executor, _ = _executor(trace, app_config)
        record = executor.run_step(
            _step(
                id="s1",
                action="post",
                selectorOrEndpoint="/api/login",
                input={"username": "demo", "password": "wrong"},
                expected={"saveState": {"authToken": "token"}},
            )
        )
        assert record.status == "fail"
        assert record.reason_code == "assertion_mismatch"
        assert "authToken" not in executor.context.state
        assert executor.last_api_response.status == 401

    def test_status_guard_violation(self, api_server, app_config):
        trace = _trace(api_base_url=api_server.base_url)
        executor, _ = _executor(trace, app_config)
        record = executor.run_step(
            _step(id="s2", action="get", selectorOrEndpoint="/api/nothing", guards={"expectStatusCode": 200})
        )
        assert record.status == "fail"
        assert record.reason_code == "guard_violation"
        assert record.error == "Guard failed: expected status 200, received 404"
        assert record.attempts == 1

    def test_allow_retry_grants_exactly_one_more_attempt(self, api_server, app_config):
        trace = _trace(api_base_url=api_server.base_url)
        executor, writer = _executor(trace, app_config)
        record = executor.run_step(
            _step(
                id="s1",
                action="get",
                selectorOrEndpoint="/api/flaky",
                expected={"ready": True},
                guards={"expectStatusCode": 200, "allowRetry": True},
            )
        )
        assert record.passed
        assert record.attempts == 2
        assert api_server.flaky_calls == 2
        logs = writer.logs_file.read_text(encoding="utf-8")
        assert "Retrying step s1 due to Guard failed: expected status 200, received 503" in logs

    def test_without_retry_a_flaky_step_fails_after_one_attempt(self, api_server, app_config):
        trace = _trace(api_base_url=api_server.base_url)
        executor, _ = _executor(trace, app_config)
        record = executor.run_step(
            _step(id="s1", action="get", selectorOrEndpoint="/api/flaky", guards={"expectStatusCode": 200})
        )
        assert record.status == "fail"
        assert api_server.flaky_calls == 1

    def test_subset_mismatch(self, api_server, app_config):
        trace = _trace(api_base_url=api_server.base_url)
        executor, _ = _executor(trace, app_config)
        record = executor.run_step(
            _step(id="s1", action="get", selectorOrEndpoint="/api/products", expected={"count": 3})
        )
        assert record.reason_code == "assertion_mismatch"
        assert record.error == "API response body does not match expected subset"

    def test_missing_binding_fails_before_any_request(self, api_server, app_config):
        trace = _trace(api_base_url=api_server.base_url)
        executor, _ = _executor(trace, app_config)
        record = executor.run_step(
            _step(id="s1", action="get", selectorOrEndpoint="/api/items/${STATE:itemId}")
        )
        assert record.reason_code == "missing_binding"
        assert record.attempts == 0
        assert api_server.hits == []

    def test_failed_step_never_reuses_an_earlier_response(self, api_server, app_config):
        trace = _trace(api_base_url=api_server.base_url)
        executor, _ = _executor(trace, app_config)
        first = executor.run_step(_step(id="s1", action="get", selectorOrEndpoint="/api/products"))
        assert first.passed
        assert executor.last_api_response is not None

        second = executor.run_step(_step(id="s2", action="get", selectorOrEndpoint="/api/${STATE:nope}"))

        assert second.reason_code == "missing_binding"
        assert second.artifacts == {}
        assert executor.last_api_response is None
        assert api_server.paths() == ["/api/products"]

    def test_status_guard_on_ui_step_ignores_earlier_response(self, api_server, app_config, fake_browser):
        trace = _trace(api_base_url=api_server.base_url)
        executor, _ = _executor(trace, app_config, browser=fake_browser)
        assert executor.run_step(_step(id="s1", action="get", selectorOrEndpoint="/api/products")).passed

        record = executor.run_step(
            _step(id="s2", action="navigate", selectorOrEndpoint="${baseUrl}/login", guards={"expectStatusCode": 200})
        )

        assert record.reason_code == "guard_violation"
        assert record.error == "Guard failed: no API response to check status code"
        assert "api" not in record.artifacts

    def test_transport_failure_is_driver_error(self, app_config):
        trace = _trace(api_base_url="http://127.0.0.1:9")
        executor, _ = _executor(trace, app_config)
        record = executor.run_step(_step(id="s1", action="get", selectorOrEndpoint="/api/products"))
        assert record.reason_code == "driver_error"
        assert "api" not in record.artifacts

    def test_contract_violation_is_distinct_failure(self, api_server, app_config):
        contract_dir = app_config.run.contracts_root / "shop"
        contract_dir.mkdir(parents=True)
        (contract_dir / "openapi.json").write_text(
            json.dumps(
                {
                    "paths": {
                        "/api/products": {
                            "get": {
                                "responses": {
                                    "200": {
                                        "content": {
                                            "application/json": {
                                                "schema": {"type": "object", "required": ["total"]}
                                            }
                                        }
                                    }
                                }
                            }
                        }
                    }
                }
            ),
            encoding="utf-8",
        )
        trace = _trace(api_base_url=api_server.base_url)
        executor, _ = _executor(trace, app_config)
        executor.setup()
        record = executor.run_step(
            _step(id="s1", action="get", selectorOrEndpoint="/api/products", expected={"count": 2})
        )
        assert record.reason_code == "response_schema_violation"


class TestUiSteps:
    def test_browser_started_lazily_for_ui_action(self, app_config, fake_browser):
        trace = _trace(kind="api")
        executor, _ = _executor(trace, app_config, browser=fake_browser)
        executor.setup()
        assert fake_browser.calls == []

        record = executor.run_step(_step(id="s1", action="navigate", selectorOrEndpoint="${baseUrl}/login"))
        assert record.passed
        assert fake_browser.calls[0] == ("start", "http://shop.test", True)
        assert executor.current_url() == "http://shop.test/login"

    def test_ui_trace_starts_browser_at_setup(self, app_config, fake_browser):
        executor, _ = _executor(_trace(kind="ui"), app_config, browser=fake_browser, headless=False)
        executor.setup()
        assert fake_browser.calls == [("start", "http://shop.test", False)]
        executor.teardown()
        assert fake_browser.stopped

    def test_guards_and_expected_for_ui(self, app_config, fake_browser):
        executor, _ = _executor(_trace(kind="ui"), app_config, browser=fake_browser)
        executor.setup()
        executor.run_step(_step(id="s1", action="navigate", selectorOrEndpoint="/login"))
        record = executor.run_step(
            _step(
                id="s2",
                action="click",
                selectorOrEndpoint='[data-testid="submit"]',
                guards={"expectUrlIncludes": "/dashboard", "expectTextIncludes": ["Welcome back"]},
                expected={
                    "textIncludes": "Order #A-1001",
                    "selectorText": {"selector": "h1", "equals": "Dashboard"},
                    "saveState": {"landing": "dashboard"},
                },
            )
        )
        assert record.passed, record.error
        assert executor.context.state["landing"] == "dashboard"
        assert record.artifacts == {}

    def test_failed_ui_step_captures_screenshot(self, app_config, fake_browser):
        executor, writer = _executor(_trace(kind="ui"), app_config, browser=fake_browser)
        executor.setup()
        executor.run_step(_step(id="s1", action="navigate", selectorOrEndpoint="/"))
        record = executor.run_step(
            _step(id="s2", action="waitForText", selectorOrEndpoint="Checkout", guards={"timeoutMs": 250})
        )
        assert record.status == "fail"
        assert record.reason_code == "driver_error"
        assert ("waitForText", "Checkout", 250) in fake_browser.calls
        screenshot = record.artifacts["screenshot"]
        assert screenshot.startswith("ui/s2-")
        assert (writer.run_dir / screenshot).exists()

    def test_text_guard_failure(self, app_config, fake_browser):
        executor, _ = _executor(_trace(kind="ui"), app_config, browser=fake_browser)
        executor.setup()
        record = executor.run_step(
            _step(id="s1", action="navigate", selectorOrEndpoint="/", guards={"expectTextIncludes": "Logout"})
        )
        assert record.reason_code == "guard_violation"
        assert record.error == 'Guard failed: page text missing "Logout"'

    def test_retry_recovers_transient_click(self, app_config, make_browser):
        browser = make_browser(fail_clicks=1)
        executor, _ = _executor(_trace(kind="ui"), app_config, browser=browser)
        executor.setup()
        executor.run_step(_step(id="s1", action="navigate", selectorOrEndpoint="/"))
        record = executor.run_step(
            _step(
                id="s2",
                action="click",
                selectorOrEndpoint='[data-testid="login-link"]',
                guards={"allowRetry": True},
            )
        )
        assert record.passed
        assert record.attempts == 2

    def test_extract_text_with_save_directive(self, app_config, fake_browser):
        executor, _ = _executor(_trace(kind="ui"), app_config, browser=fake_browser)
        executor.setup()
        executor.run_step(_step(id="s1", action="navigate", selectorOrEndpoint="/dashboard"))
        record = executor.run_step(
            _step(id="s2", action="extractText", selectorOrEndpoint='[data-testid="order-id"]', input="save:orderId")
        )
        assert record.passed
        assert executor.context.state["orderId"] == "A-1001"

        follow = executor.run_step(
            _step(id="s3", action="waitForText", selectorOrEndpoint="#${STATE:orderId}")
        )
        assert follow.passed
        assert follow.selector_or_endpoint == "#A-1001"

    def test_input_select_press_pass_text(self, app_config, fake_browser):
        executor, _ = _executor(_trace(kind="ui"), app_config, browser=fake_browser)
        executor.setup()
        executor.run_step(_step(id="s1", action="input", selectorOrEndpoint="#q", input=42))
        executor.run_step(_step(id="s2", action="select", selectorOrEndpoint="#size", input="XL"))
        executor.run_step(_step(id="s3", action="press", selectorOrEndpoint="#q", input="Enter"))
        assert ("type", "#q", "42") in fake_browser.calls
        assert ("select", "#size", "XL") in fake_browser.calls
        assert ("press", "#q", "Enter") in fake_browser.calls


@pytest.mark.parametrize("action", ["get", "post", "put", "patch", "delete"])
def test_http_actions_use_uppercase_method(action, api_server, app_config):
    trace = _trace(api_base_url=api_server.base_url)
    executor, _ = _executor(trace, app_config)
    executor.run_step(_step(id="s1", action=action, selectorOrEndpoint="/api/echo"))
    assert executor.last_api_response.request["method"] == action.upper()
