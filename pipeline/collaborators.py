"""
Contracts of the collaborators the queue drives (linking, notification,
per-item enrichment) plus the default implementations used by the CLI.
"""

from __future__ import annotations

import http.client
import json
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol
from urllib.parse import urlsplit

from core.models import LinkingRequest
from core.retry import Action

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class LinkResult:
    success: bool
    message: Optional[str] = None


class Linker(Protocol):
    def link(self, request: LinkingRequest) -> LinkResult: ...


class Notifier(Protocol):
    def notify(self, request: LinkingRequest, outcome: Action, detail: Optional[str] = None) -> None: ...


class Enricher(Protocol):
    def image_urls(self, request: LinkingRequest) -> List[str]: ...


class LoggingNotifier:
    def notify(self, request: LinkingRequest, outcome: Action, detail: Optional[str] = None) -> None:
        ref = request.source_ref
        log.info(
            "request %s for %s %s (channel=%s message=%s retry=%d)%s",
            request.id,
            request.subject_label,
            outcome.value,
            ref.channel_id,
            ref.message_id,
            request.retry_count,
            f": {detail}" if detail else "",
        )


class StoredImageEnricher:
    def image_urls(self, request: LinkingRequest) -> List[str]:
        return list(request.image_urls)


def _error_message(body: dict) -> Optional[str]:
    data = body.get("data")
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    for key in ("message", "error"):
        if body.get(key):
            return str(body[key])
    return None


class HttpLinkClient:
    """Client for the account manager's link endpoint (POST /api/link)."""

    def __init__(self, base_url: str, secret: str, timeout_s: float = 10.0):
        parts = urlsplit(base_url.rstrip("/"))
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise ValueError(f"unsupported link api url: {base_url}")
        self.scheme = parts.scheme
        self.host = parts.hostname
        self.port = parts.port or (443 if parts.scheme == "https" else 80)
        self.path = f"{parts.path}/api/link"
        self.secret = secret
        self.timeout_s = timeout_s

    def _post(self, payload: dict) -> tuple[int, bytes]:
        conn_cls = http.client.HTTPSConnection if self.scheme == "https" else http.client.HTTPConnection
        conn = conn_cls(self.host, self.port, timeout=self.timeout_s)
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.secret}",
        }
        try:
            conn.request("POST", self.path, body=json.dumps(payload).encode("utf-8"), headers=headers)
            resp = conn.getresponse()
            return resp.status, resp.read()
        finally:
            conn.close()

    def link_player(self, player_tag: str, user_id: str) -> LinkResult:
        payload = {"tag": player_tag, "userId": user_id, "source": "ticket-autolink"}
        log.info("linking tag %s to user %s", player_tag, user_id)
        try:
            status, raw = self._post(payload)
        except Exception as exc:  # noqa: BLE001
            log.warning("link call failed for user %s: %s", user_id, exc)
            return LinkResult(False, f"link service unreachable: {exc}")

        body: dict = {}
        if raw:
            try:
                parsed = json.loads(raw.decode("utf-8"))
                if isinstance(parsed, dict):
                    body = parsed
            except ValueError:
                log.debug("link response is not JSON: %r", raw[:200])

        if 200 <= status < 300:
            data = body.get("data") if isinstance(body.get("data"), dict) else body
            name = data.get("playerName") if isinstance(data, dict) else None
            return LinkResult(True, f"linked {player_tag}" + (f" ({name})" if name else ""))
        message = _error_message(body) or f"link service returned {status}"
        log.info("link rejected for user %s: %s", user_id, message)
        return LinkResult(False, message)


def no_player_tag(request: LinkingRequest) -> Optional[str]:
    return None


class RequestLinker:
    """Adapts HttpLinkClient to the Linker contract used by the processor."""

    def __init__(self, client: HttpLinkClient, tag_resolver: Callable[[LinkingRequest], Optional[str]] = no_player_tag):
        self.client = client
        self.tag_resolver = tag_resolver

    def link(self, request: LinkingRequest) -> LinkResult:
        tag = self.tag_resolver(request)
        if not tag:
            return LinkResult(False, "no player tag found")
        return self.client.link_player(tag, request.subject_id)
