"""
Availability probe: a single bounded-timeout GET against the downstream
worker's health endpoint. Any failure mode collapses to "unavailable".
"""

import http.client
import logging
from typing import Tuple
from urllib.parse import urlsplit

log = logging.getLogger(__name__)


def _split_target(url: str) -> Tuple[str, str, int, str]:
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ValueError(f"unsupported health check url: {url}")
    port = parts.port or (443 if parts.scheme == "https" else 80)
    path = parts.path or "/"
    if parts.query:
        path = f"{path}?{parts.query}"
    return parts.scheme, parts.hostname, port, path


def http_status(url: str, timeout: float, method: str = "GET") -> int:
    scheme, host, port, path = _split_target(url)
    conn_cls = http.client.HTTPSConnection if scheme == "https" else http.client.HTTPConnection
    conn = conn_cls(host, port, timeout=timeout)
    try:
        conn.request(method, path, headers={"User-Agent": "linkqueue-probe/1.0"})
        resp = conn.getresponse()
        resp.read(4096)
        return resp.status
    finally:
        conn.close()


class AvailabilityProbe:
    def __init__(self, url: str, timeout_s: float = 5.0, method: str = "GET"):
        self.url = url
        self.timeout_s = timeout_s
        self.method = method
        log.info("availability probe targeting %s", url)

    def is_available(self) -> bool:
        try:
            status = http_status(self.url, self.timeout_s, self.method)
        except Exception as exc:  # noqa: BLE001
            log.info("worker unavailable: health check failed: %s", exc)
            return False
        if 200 <= status < 300:
            log.debug("worker available: health check returned %s", status)
            return True
        log.info("worker unavailable: health check returned %s", status)
        return False
