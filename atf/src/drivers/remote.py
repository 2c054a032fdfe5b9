"""Browser driver hosted in a child process, spoken to over JSON lines.

Wire format, one JSON object per line::

    parent -> worker   {"id": 7, "cmd": "goto", "url": "/login"}
    worker -> parent   {"id": 7, "ok": true, "result": null}
    worker -> parent   {"id": 8, "ok": false, "error": "Timeout 5000ms exceeded"}

Requests may be pipelined; responses are routed back by ``id`` in whatever order
they arrive. The worker's stderr is inherited and carries only diagnostics.
"""
from __future__ import annotations

import itertools
import json
import logging
import subprocess
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Any, Dict, List, Mapping, Optional, Sequence

from atf.src.utils.errors import DriverError, TransportTerminated

logger = logging.getLogger(__name__)

WAIT_MARGIN_SECONDS = 5


class LineChannel:
    """Multiplexed request/response channel over a child's stdin/stdout."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        request_timeout: float = 45,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.command = list(command)
        self.request_timeout = request_timeout
        self.env = dict(env) if env is not None else None
        self._process: Optional[subprocess.Popen[str]] = None
        self._reader: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._pending: Dict[int, Future] = {}
        self._ids = itertools.count(1)
        self._terminated: Optional[str] = None

    # ------------------------------------------------------------------
    @property
    def alive(self) -> bool:
        return self._process is not None and self._terminated is None

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def process(self) -> Optional[subprocess.Popen[str]]:
        return self._process

    def start(self) -> None:
        if self._process is not None:
            return
        try:
            self._process = subprocess.Popen(
                self.command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=None,
                text=True,
                encoding="utf-8",
                bufsize=1,
                env=self.env,
            )
        except OSError as exc:
            raise DriverError(f"Cannot start browser worker {self.command!r}: {exc}") from exc
        self._reader = threading.Thread(target=self._read_loop, name="atf-line-channel", daemon=True)
        self._reader.start()
        logger.debug("Browser worker started (pid=%s)", self._process.pid)

    # ------------------------------------------------------------------
    def _send(self, cmd: str, params: Optional[Mapping[str, Any]]) -> tuple[int, Future]:
        future: Future = Future()
        with self._lock:
            if self._process is None:
                raise TransportTerminated("Channel not started")
            if self._terminated is not None:
                raise TransportTerminated(self._terminated)
            request_id = next(self._ids)
            self._pending[request_id] = future

        message = dict(params or {})
        message["id"] = request_id
        message["cmd"] = cmd
        line = json.dumps(message, ensure_ascii=False) + "\n"
        try:
            with self._write_lock:
                stdin = self._process.stdin if self._process is not None else None
                if stdin is None:
                    raise OSError("worker stdin is not connected")
                stdin.write(line)
                stdin.flush()
        except (OSError, ValueError) as exc:
            self._fail_all(f"Browser worker transport error: {exc}")
            raise TransportTerminated(f"Browser worker transport error: {exc}") from exc
        return request_id, future

    def send(self, cmd: str, params: Optional[Mapping[str, Any]] = None) -> Future:
        """Write one request without waiting; the returned future settles on its response."""
        _, future = self._send(cmd, params)
        return future

    def call(self, cmd: str, params: Optional[Mapping[str, Any]] = None, timeout: Optional[float] = None) -> Any:
        request_id, future = self._send(cmd, params)
        wait = timeout if timeout is not None else self.request_timeout
        try:
            return future.result(timeout=wait)
        except FuturesTimeout:
            with self._lock:
                self._pending.pop(request_id, None)
            raise DriverError(f"Browser worker did not answer {cmd} within {wait}s") from None

    # ------------------------------------------------------------------
    def _read_loop(self) -> None:
        process = self._process
        if process is None or process.stdout is None:
            self._fail_all("Browser worker stdout is not connected")
            return
        try:
            for raw in process.stdout:
                line = raw.strip()
                if not line:
                    continue
                try:
                    message = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Dropping unparseable worker line: %.200s", line)
                    continue
                if not isinstance(message, dict):
                    logger.warning("Dropping non-object worker line: %.200s", line)
                    continue
                self._dispatch(message)
        except (OSError, ValueError) as exc:
            self._fail_all(f"Browser worker transport error: {exc}")
            return
        code = process.poll()
        suffix = f" (exit code {code})" if code is not None else ""
        self._fail_all(f"Browser worker exited{suffix}")

    def _dispatch(self, message: Dict[str, Any]) -> None:
        request_id = message.get("id")
        with self._lock:
            future = self._pending.pop(request_id, None) if isinstance(request_id, int) else None
        if future is None:
            logger.warning("Dropping response for unknown request id %r", request_id)
            return
        if message.get("ok"):
            future.set_result(message.get("result"))
        else:
            future.set_exception(DriverError(str(message.get("error") or "Browser worker command failed")))

    def _fail_all(self, reason: str) -> None:
        with self._lock:
            if self._terminated is None:
                self._terminated = reason
            pending: List[Future] = list(self._pending.values())
            self._pending.clear()
        if pending:
            logger.warning("%s; rejecting %d pending request(s)", reason, len(pending))
        for future in pending:
            if not future.done():
                future.set_exception(TransportTerminated(reason))

    # ------------------------------------------------------------------
    def close(self, timeout: float = 2.0) -> None:
        process = self._process
        if process is None:
            return
        with self._lock:
            if self._terminated is None:
                self._terminated = "Channel closed"
        if process.stdin is not None:
            try:
                process.stdin.close()
            except OSError:
                pass
        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait(timeout=timeout)
        if self._reader is not None:
            self._reader.join(timeout=timeout)
        self._fail_all(self._terminated or "Channel closed")
        if process.stdout is not None:
            process.stdout.close()


class RemoteBrowserDriver:
    """BrowserDriver whose Playwright session lives in a worker process."""

    def __init__(self, worker_command: Sequence[str], *, request_timeout: float = 45) -> None:
        self.worker_command = list(worker_command)
        self.request_timeout = request_timeout
        self._channel: Optional[LineChannel] = None
        self._started = False

    @property
    def started(self) -> bool:
        return self._started and self._channel is not None and self._channel.alive

    @property
    def channel(self) -> Optional[LineChannel]:
        return self._channel

    def _ensure_channel(self) -> LineChannel:
        if self._channel is None or not self._channel.alive:
            if self._channel is not None:
                self._channel.close()
            self._channel = LineChannel(self.worker_command, request_timeout=self.request_timeout)
            self._channel.start()
        return self._channel

    def _call(self, cmd: str, params: Optional[Mapping[str, Any]] = None, timeout_ms: Optional[int] = None) -> Any:
        if self._channel is None:
            raise DriverError("UI driver not started")
        wait = self.request_timeout
        if timeout_ms:
            wait = max(self.request_timeout, timeout_ms / 1000 + WAIT_MARGIN_SECONDS)
        return self._channel.call(cmd, params, timeout=wait)

    def start(self, base_url: str, headless: bool = True) -> None:
        channel = self._ensure_channel()
        channel.call("start", {"headless": headless, "base_url": base_url})
        self._started = True

    def stop(self) -> None:
        channel, self._channel = self._channel, None
        was_started, self._started = self._started, False
        if channel is None:
            return
        try:
            if was_started and channel.alive:
                channel.call("stop")
        except DriverError as exc:
            logger.warning("Browser worker stop failed: %s", exc)
        finally:
            channel.close()

    def goto(self, url: str) -> None:
        self._call("goto", {"url": url})

    def click(self, selector: str) -> None:
        self._call("click", {"selector": selector})

    def type(self, selector: str, text: str) -> None:
        self._call("type", {"selector": selector, "text": text})

    def select(self, selector: str, value: str) -> None:
        self._call("select", {"selector": selector, "value": value})

    def press(self, selector: str, key: str) -> None:
        self._call("press", {"selector": selector, "key": key})

    def wait_for_selector(self, selector: str, timeout_ms: Optional[int] = None) -> None:
        self._call("waitForSelector", {"selector": selector, "timeout": timeout_ms}, timeout_ms)

    def wait_for_text(self, text: str, timeout_ms: Optional[int] = None) -> None:
        self._call("waitForText", {"text": text, "timeout": timeout_ms}, timeout_ms)

    def extract_text(self, selector: str) -> str:
        return str(self._call("extractText", {"selector": selector}) or "")

    def text_content(self, selector: str) -> str:
        return str(self._call("textContent", {"selector": selector}) or "")

    def screenshot(self, path: str) -> None:
        self._call("screenshot", {"path": path})

    def current_url(self) -> str:
        return str(self._call("url") or "")

    def title(self) -> str:
        return str(self._call("title") or "")

    def evaluate(self, source: str, arg: Any = None) -> Any:
        return self._call("evaluate", {"source": source, "arg": arg})


__all__ = ["LineChannel", "RemoteBrowserDriver", "WAIT_MARGIN_SECONDS"]
