"""Isolated browser worker: ``python -m atf.src.drivers.browser_worker``.

Reads one JSON command per stdin line, drives a Playwright session and writes
exactly one JSON response per command to stdout. Diagnostics go to stderr.
"""
from __future__ import annotations

import json
import logging
import signal
import sys
from typing import Any, Callable, Dict, Mapping, Optional, TextIO

from atf.src.drivers.browser import LocalBrowserDriver
from atf.src.utils.config import configure_logging, load_config

logger = logging.getLogger("atf.browser_worker")

Handler = Callable[[LocalBrowserDriver, Mapping[str, Any]], Any]


def _start(driver: LocalBrowserDriver, message: Mapping[str, Any]) -> None:
    driver.start(message.get("base_url") or "", headless=bool(message.get("headless", True)))


COMMANDS: Dict[str, Handler] = {
    "start": _start,
    "stop": lambda driver, message: driver.stop(),
    "goto": lambda driver, message: driver.goto(message["url"]),
    "click": lambda driver, message: driver.click(message["selector"]),
    "type": lambda driver, message: driver.type(message["selector"], message.get("text") or ""),
    "select": lambda driver, message: driver.select(message["selector"], message["value"]),
    "press": lambda driver, message: driver.press(message["selector"], message["key"]),
    "waitForSelector": lambda driver, message: driver.wait_for_selector(
        message["selector"], message.get("timeout")
    ),
    "waitForText": lambda driver, message: driver.wait_for_text(message["text"], message.get("timeout")),
    "extractText": lambda driver, message: driver.extract_text(message["selector"]),
    "textContent": lambda driver, message: driver.text_content(message["selector"]),
    "screenshot": lambda driver, message: driver.screenshot(message["path"]),
    "url": lambda driver, message: driver.current_url(),
    "title": lambda driver, message: driver.title(),
    "evaluate": lambda driver, message: driver.evaluate(message["source"], message.get("arg")),
}


def handle_line(driver: LocalBrowserDriver, line: str) -> Optional[Dict[str, Any]]:
    """Turn one request line into its response object; blank lines yield ``None``."""
    if not line.strip():
        return None
    try:
        message = json.loads(line)
    except json.JSONDecodeError:
        return {"id": None, "ok": False, "error": "Invalid JSON"}
    if not isinstance(message, dict):
        return {"id": None, "ok": False, "error": "Invalid JSON"}

    request_id = message.get("id")
    cmd = message.get("cmd")
    handler = COMMANDS.get(cmd) if isinstance(cmd, str) else None
    if handler is None:
        return {"id": request_id, "ok": False, "error": f"Unknown command {cmd}"}
    try:
        result = handler(driver, message)
    except KeyError as exc:
        return {"id": request_id, "ok": False, "error": f"Missing parameter {exc.args[0]} for {cmd}"}
    except Exception as exc:  # noqa: BLE001 - every failure is reported back to the parent
        return {"id": request_id, "ok": False, "error": str(exc) or exc.__class__.__name__}
    return {"id": request_id, "ok": True, "result": result}


def serve(driver: LocalBrowserDriver, stdin: TextIO, stdout: TextIO) -> None:
    try:
        for line in stdin:
            response = handle_line(driver, line)
            if response is None:
                continue
            stdout.write(json.dumps(response, ensure_ascii=False, default=str) + "\n")
            stdout.flush()
    finally:
        driver.stop()


def _raise_exit(signum: int, _frame: Any) -> None:
    raise SystemExit(0)


def main() -> None:
    # .env may carry ATF_LOG_LEVEL
    load_config()
    configure_logging()
    signal.signal(signal.SIGTERM, _raise_exit)
    logger.info("Browser worker ready")
    serve(LocalBrowserDriver(), sys.stdin, sys.stdout)


if __name__ == "__main__":
    main()
