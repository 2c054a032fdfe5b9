import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from atf.src.utils.config import AppConfig, BrowserConfig, LLMConfig, RunConfig
from atf.src.utils.errors import DriverError, LLMError

VALID_USER = {"username": "demo", "password": "demo-pass-1"}
TOKEN = "tok-123"
PRODUCTS = [
    {"id": "laptop", "name": "Laptop", "price": 1299},
    {"id": "mouse", "name": "Mouse", "price": 25},
]


class _StubApiHandler(BaseHTTPRequestHandler):
    server: "StubApiServer"

    def log_message(self, format, *args):  # noqa: A002 - silence request logging
        return

    def _read_json(self) -> Any:
        length = int(self.headers.get("Content-Length") or 0)
        raw = self.rfile.read(length) if length else b""
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return raw.decode("utf-8", "replace")

    def _send(self, status: int, payload: Any) -> None:
        body = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _record(self, body: Any) -> None:
        self.server.hits.append(
            {
                "method": self.command,
                "path": self.path,
                "authorization": self.headers.get("Authorization"),
                "body": body,
            }
        )

    def do_GET(self):  # noqa: N802
        self._record(None)
        path = self.path.split("?", 1)[0]
        if path == "/api/products":
            self._send(200, {"items": PRODUCTS, "count": len(PRODUCTS)})
        elif path == "/api/flaky":
            self.server.flaky_calls += 1
            if self.server.flaky_calls == 1:
                self._send(503, {"error": "warming up"})
            else:
                self._send(200, {"ready": True})
        elif path == "/api/echo":
            self._send(200, {"path": self.path})
        else:
            self._send(404, {"error": "not found"})

    def do_POST(self):  # noqa: N802
        body = self._read_json()
        self._record(body)
        if self.path == "/api/login":
            if isinstance(body, dict) and body.get("username") == VALID_USER["username"] and body.get(
                "password"
            ) == VALID_USER["password"]:
                self._send(200, {"token": TOKEN, "user": {"name": "Demo"}})
            else:
                self._send(401, {"error": "invalid credentials"})
        elif self.path == "/api/cart/items":
            if self.headers.get("Authorization") != f"Bearer {TOKEN}":
                self._send(401, {"error": "unauthorized"})
                return
            self._send(200, {"ok": True, "item": body})
        else:
            self._send(404, {"error": "not found"})


class StubApiServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self):
        super().__init__(("127.0.0.1", 0), _StubApiHandler)
        self.hits: List[Dict[str, Any]] = []
        self.flaky_calls = 0

    @property
    def base_url(self) -> str:
        host, port = self.server_address[:2]
        return f"http://{host}:{port}"

    def paths(self) -> List[str]:
        return [hit["path"] for hit in self.hits]


@pytest.fixture
def api_server():
    server = StubApiServer()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield server
    finally:
        server.shutdown()
        server.server_close()


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        llm=LLMConfig(provider="ollama", model="test-model", base_url="http://127.0.0.1:9", api_key=None),
        browser=BrowserConfig(mode="local", worker_command=["unused"]),
        run=RunConfig(
            runs_root=tmp_path / "runs",
            traces_root=tmp_path / "traces",
            contracts_root=tmp_path / "apps",
            http_timeout_ms=5000,
        ),
    )


class FakePage:
    def __init__(self, url: str, title: str, text: str, elements: Optional[List[Dict[str, str]]] = None,
                 selectors: Optional[Dict[str, str]] = None, links: Optional[Dict[str, str]] = None):
        self.url = url
        self.title = title
        self.text = text
        self.elements = elements or []
        self.selectors = selectors or {}
        self.links = links or {}


class FakeBrowser:
    """In-memory stand-in for a browser session with a few linked pages."""

    def __init__(self, pages: Dict[str, FakePage], *, fail_clicks: int = 0):
        self.pages = pages
        self.calls: List[tuple] = []
        self.base_url = ""
        self.headless = None
        self.page: Optional[FakePage] = None
        self.typed: Dict[str, str] = {}
        self.fail_clicks = fail_clicks
        self.stopped = False
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def _require(self) -> FakePage:
        if self.page is None:
            raise DriverError("UI driver not started")
        return self.page

    def start(self, base_url: str, headless: bool = True) -> None:
        self.calls.append(("start", base_url, headless))
        self.base_url = base_url
        self.headless = headless
        self._started = True
        self.page = FakePage(url="about:blank", title="", text="")

    def stop(self) -> None:
        self.calls.append(("stop",))
        self.stopped = True
        self._started = False

    def goto(self, url: str) -> None:
        self.calls.append(("goto", url))
        path = url[len(self.base_url):] if url.startswith(self.base_url) else url
        if path not in self.pages:
            raise DriverError(f"goto {url} failed: net::ERR_ABORTED")
        self.page = self.pages[path]

    def click(self, selector: str) -> None:
        self.calls.append(("click", selector))
        page = self._require()
        if self.fail_clicks:
            self.fail_clicks -= 1
            raise DriverError(f"click {selector} failed: element is not attached")
        if selector not in page.links:
            raise DriverError(f"click {selector} failed: no element")
        self.page = self.pages[page.links[selector]]

    def type(self, selector: str, text: str) -> None:
        self.calls.append(("type", selector, text))
        self.typed[selector] = text

    def select(self, selector: str, value: str) -> None:
        self.calls.append(("select", selector, value))

    def press(self, selector: str, key: str) -> None:
        self.calls.append(("press", selector, key))

    def wait_for_selector(self, selector: str, timeout_ms: Optional[int] = None) -> None:
        self.calls.append(("waitForSelector", selector, timeout_ms))
        if selector not in self._require().selectors:
            raise DriverError(f"wait for {selector} failed: Timeout {timeout_ms}ms exceeded")

    def wait_for_text(self, text: str, timeout_ms: Optional[int] = None) -> None:
        self.calls.append(("waitForText", text, timeout_ms))
        if text not in self._require().text:
            raise DriverError(f"wait for text {text!r} failed: Timeout {timeout_ms}ms exceeded")

    def extract_text(self, selector: str) -> str:
        page = self._require()
        if selector not in page.selectors:
            raise DriverError(f"extract text from {selector} failed: no element")
        return page.selectors[selector].strip()

    def text_content(self, selector: str) -> str:
        page = self._require()
        if selector == "body":
            return page.text
        return page.selectors.get(selector, "")

    def screenshot(self, path: str) -> None:
        self.calls.append(("screenshot", path))
        Path(path).write_bytes(b"\x89PNG fake")

    def current_url(self) -> str:
        page = self._require()
        return self.base_url + page.url if page.url.startswith("/") else page.url

    def title(self) -> str:
        return self._require().title

    def evaluate(self, source: str, arg: Any = None) -> Any:
        self.calls.append(("evaluate", arg))
        return list(self._require().elements)


def shop_pages() -> Dict[str, FakePage]:
    return {
        "/": FakePage(
            url="/",
            title="Shop",
            text="Welcome to the shop Login",
            elements=[
                {"ref": '[data-testid="login-link"]', "tag": "a", "text": "Login"},
                {"ref": "#search", "tag": "input", "text": ""},
            ],
            selectors={'[data-testid="login-link"]': "Login"},
            links={'[data-testid="login-link"]': "/login"},
        ),
        "/login": FakePage(
            url="/login",
            title="Sign in",
            text="Sign in Username Password Submit",
            elements=[
                {"ref": '[data-testid="username"]', "tag": "input", "text": ""},
                {"ref": '[data-testid="submit"]', "tag": "button", "text": "Submit"},
            ],
            selectors={'[data-testid="submit"]': "Submit", "h1": "  Sign in  "},
            links={'[data-testid="submit"]': "/dashboard"},
        ),
        "/dashboard": FakePage(
            url="/dashboard",
            title="Dashboard",
            text="Dashboard Welcome back, Demo Order #A-1001",
            selectors={'[data-testid="order-id"]': " A-1001 ", "h1": "Dashboard"},
        ),
    }


@pytest.fixture
def fake_browser() -> FakeBrowser:
    return FakeBrowser(shop_pages())


class ScriptedLLM:
    """Returns canned responses in order and remembers every prompt."""

    def __init__(self, responses: List[Any]):
        self.responses = list(responses)
        self.calls: List[Dict[str, str]] = []

    def generate(self, system_prompt: str, user_prompt: str) -> str:
        self.calls.append({"system": system_prompt, "user": user_prompt})
        if not self.responses:
            raise AssertionError("ScriptedLLM ran out of responses")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if isinstance(response, (dict, list)):
            return json.dumps(response)
        return response


@pytest.fixture
def llm_error() -> LLMError:
    return LLMError("LLM request failed: connection refused", provider="ollama")


@pytest.fixture
def make_browser():
    def factory(**kwargs) -> FakeBrowser:
        return FakeBrowser(shop_pages(), **kwargs)

    return factory


@pytest.fixture
def scripted_llm():
    return ScriptedLLM
