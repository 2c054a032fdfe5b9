"""HTTP and browser-session drivers."""
from atf.src.drivers.api import ApiDriver, ApiRequest, ApiResponse
from atf.src.drivers.browser import BrowserDriver, LocalBrowserDriver, select_browser_driver
from atf.src.drivers.remote import LineChannel, RemoteBrowserDriver

__all__ = [
    "ApiDriver",
    "ApiRequest",
    "ApiResponse",
    "BrowserDriver",
    "LineChannel",
    "LocalBrowserDriver",
    "RemoteBrowserDriver",
    "select_browser_driver",
]
