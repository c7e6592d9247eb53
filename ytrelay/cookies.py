"""Cookie helpers: Netscape cookie files for yt-dlp, header parsing for requests."""

import glob
import json
import logging
import os
import time
from typing import Any

log = logging.getLogger(__name__)

NETSCAPE_HEADER = "# Netscape HTTP Cookie File\n# This file was generated by ytrelay. Do not edit.\n\n"
MAX_COOKIE_FILES = 10


def parse_cookie_header(header: str) -> dict[str, str]:
    """Parse ``k=v; k2=v2`` into a dict. Malformed pairs are skipped."""
    cookies: dict[str, str] = {}
    for part in header.split(";"):
        if "=" not in part:
            continue
        name, value = part.split("=", 1)
        name = name.strip()
        if name:
            cookies[name] = value.strip()
    return cookies


def load_cookies(raw: str, default_domain: str = ".youtube.com") -> list[dict[str, Any]]:
    """Accept a JSON cookie export (list or {"cookies": [...]}) or a header string."""
    raw = raw.strip()
    if raw.startswith("[") or raw.startswith("{"):
        data = json.loads(raw)
        if isinstance(data, dict):
            data = data.get("cookies") or data.get("cookie_info", {}).get("cookies") or []
        return [c for c in data if isinstance(c, dict) and c.get("name")]
    return [
        {"name": k, "value": v, "domain": default_domain, "path": "/"}
        for k, v in parse_cookie_header(raw).items()
    ]


def to_netscape(cookies: list[dict[str, Any]]) -> str:
    lines = [NETSCAPE_HEADER]
    for c in cookies:
        domain = c.get("domain") or ""
        if c.get("httpOnly"):
            domain_field = "#HttpOnly_" + domain
        else:
            domain_field = domain
        include_subdomains = "TRUE" if domain.startswith(".") else "FALSE"
        secure = "TRUE" if c.get("secure") else "FALSE"
        expiry = c.get("expirationDate") or c.get("expires") or 0
        try:
            expiry = int(float(expiry))
        except (TypeError, ValueError):
            expiry = 0
        lines.append(
            "\t".join([
                domain_field,
                include_subdomains,
                c.get("path") or "/",
                secure,
                str(expiry),
                str(c["name"]),
                str(c.get("value", "")),
            ]) + "\n"
        )
    return "".join(lines)


def write_cookie_file(raw: str, cookies_dir: str, keep: int = MAX_COOKIE_FILES) -> str:
    """Write ``cookies_<ts>.txt`` in Netscape format and prune older files."""
    os.makedirs(cookies_dir, exist_ok=True)
    path = os.path.join(cookies_dir, f"cookies_{int(time.time() * 1000)}.txt")
    content = to_netscape(load_cookies(raw))
    tmp_path = path + ".tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        f.write(content)
    os.replace(tmp_path, path)
    _prune_cookie_files(cookies_dir, keep)
    log.info("Wrote cookie file %s", path)
    return path


def _prune_cookie_files(cookies_dir: str, keep: int):
    files = sorted(glob.glob(os.path.join(cookies_dir, "cookies_*.txt")), key=os.path.getmtime, reverse=True)
    for stale in files[keep:]:
        try:
            os.remove(stale)
        except OSError as e:
            log.warning("Failed to remove old cookie file %s: %s", stale, e)

