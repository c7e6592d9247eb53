import logging
import os
from dataclasses import dataclass
from typing import Callable, TypeVar

from ytrelay.models import ProxyConfig

log = logging.getLogger(__name__)

T = TypeVar("T")

COOKIE_FILENAME = "cookies.txt"
BROWSER_COOKIE_SOURCE = "chrome"

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@dataclass
class CookieSource:
    """Where yt-dlp should read session cookies from."""
    file: str | None = None
    browser: str | None = None

    def ytdlp_args(self) -> list[str]:
        if self.file:
            return ["--cookies", self.file]
        if self.browser:
            return ["--cookies-from-browser", self.browser]
        return []


def resolve_cookie_source(config_dir: str, cwd: str | None = None) -> CookieSource:
    """Pick cookies by precedence: config dir file, working dir file, browser profile."""
    candidates = [os.path.join(config_dir, COOKIE_FILENAME), os.path.join(cwd or os.getcwd(), COOKIE_FILENAME)]
    for path in candidates:
        if os.path.isfile(path):
            return CookieSource(file=os.path.abspath(path))
    log.debug("No cookie file found, falling back to %s browser cookies", BROWSER_COOKIE_SOURCE)
    return CookieSource(browser=BROWSER_COOKIE_SOURCE)


def requests_proxies(proxy_url: str | None) -> dict[str, str] | None:
    if not proxy_url:
        return None
    return {"http": proxy_url, "https": proxy_url}


def with_proxy_fallback(operation: Callable[[str | None], T], proxy: ProxyConfig | None, label: str) -> T:
    """Run ``operation(proxy_url)`` through the proxy, then once directly.

    The operation receives the proxy URL, or None for the direct attempt, and
    must otherwise send the same request both times. If the direct attempt
    also fails its exception propagates. Each call starts fresh, so a proxy
    failure here does not disable the proxy for other calls.
    """
    if proxy is not None and proxy.active:
        try:
            return operation(proxy.proxy_host)
        except Exception as e:
            log.warning("%s via proxy %s failed: %s; retrying without proxy", label, proxy.proxy_host, e)
    return operation(None)
