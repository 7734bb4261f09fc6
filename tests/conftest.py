import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from core.models import LinkingRequest
from core.queue import RequestQueue
from core.state import QueueStore


def make_request(user: str = "1001", label: str = "alice#0001", **kwargs) -> LinkingRequest:
    return LinkingRequest.create(
        channel_id=kwargs.pop("channel_id", "555"),
        message_id=kwargs.pop("message_id", f"msg-{user}"),
        subject_id=user,
        subject_label=label,
        **kwargs,
    )


@pytest.fixture
def queue_file(tmp_path):
    return tmp_path / "linking_queue.json"


@pytest.fixture
def queue(queue_file):
    return RequestQueue(QueueStore(queue_file))


class StubServer:
    """Tiny local HTTP server; tests set `status` and `body` and read `calls`."""

    def __init__(self):
        self.status = 200
        self.body = {"status": "ok"}
        self.calls = []
        stub = self

        class Handler(BaseHTTPRequestHandler):
            def _reply(self):
                length = int(self.headers.get("Content-Length") or 0)
                raw = self.rfile.read(length) if length else b""
                stub.calls.append({
                    "method": self.command,
                    "path": self.path,
                    "headers": dict(self.headers),
                    "body": json.loads(raw) if raw else None,
                })
                payload = json.dumps(stub.body).encode()
                self.send_response(stub.status)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(payload)))
                self.end_headers()
                self.wfile.write(payload)

            do_GET = _reply
            do_POST = _reply

            def log_message(self, format, *args):
                pass

        self.httpd = HTTPServer(("127.0.0.1", 0), Handler)
        self.url = f"http://127.0.0.1:{self.httpd.server_port}"
        self.thread = threading.Thread(target=self.httpd.serve_forever, daemon=True)

    def start(self):
        self.thread.start()

    def stop(self):
        self.httpd.shutdown()
        self.httpd.server_close()


@pytest.fixture
def stub_server():
    server = StubServer()
    server.start()
    yield server
    server.stop()
