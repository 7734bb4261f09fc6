import pytest
from fastapi.testclient import TestClient

from api.server import create_app
from core.retry import Action

from conftest import make_request

SECRET = "test-secret"
AUTH = {"Authorization": f"Bearer {SECRET}"}


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def notify(self, request, outcome, detail=None):
        self.events.append((request.id, outcome, detail))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def client(queue, notifier):
    return TestClient(create_app(queue, SECRET, max_retries=3, notifier=notifier))


def test_create_app_requires_secret(queue):
    with pytest.raises(ValueError):
        create_app(queue, "")


@pytest.mark.parametrize(
    "headers",
    [
        {},
        {"Authorization": SECRET},
        {"Authorization": f"Basic {SECRET}"},
        {"Authorization": "Bearer wrong"},
    ],
)
def test_protected_routes_reject_bad_auth(client, queue, headers):
    req = make_request()
    queue.enqueue(req)
    for method, path in (("get", "/queue/pending"), ("get", "/queue/stats")):
        resp = getattr(client, method)(path, headers=headers)
        assert resp.status_code == 401
        assert resp.json() == {"success": False, "error": "Unauthorized"}

    resp = client.post("/queue/result", json={"requestId": req.id, "success": True}, headers=headers)
    assert resp.status_code == 401
    assert resp.json() == {"success": False, "error": "Unauthorized"}
    assert [r.id for r in queue.list_all()] == [req.id]


def test_pending_lists_without_removing(client, queue):
    a = make_request("1", image_urls=["https://cdn/a.png"])
    b = make_request("2")
    queue.enqueue(a)
    queue.enqueue(b)

    resp = client.get("/queue/pending", headers=AUTH)
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["count"] == 2
    assert [r["id"] for r in body["requests"]] == [a.id, b.id]
    first = body["requests"][0]
    assert first["sourceRef"] == {"channelId": "555", "messageId": "msg-1"}
    assert first["subjectId"] == "1"
    assert first["subjectLabel"] == "alice#0001"
    assert first["imageUrls"] == ["https://cdn/a.png"]
    assert first["createdAt"] == a.created_at
    assert first["retryCount"] == 0
    assert queue.size() == 2


def test_pending_enrichment_failure_degrades_one_item(queue):
    a, b = make_request("1"), make_request("2")
    queue.enqueue(a)
    queue.enqueue(b)

    class Enricher:
        def image_urls(self, request):
            if request.id == a.id:
                raise RuntimeError("message deleted")
            return ["https://cdn/fresh.png"]

    client = TestClient(create_app(queue, SECRET, enricher=Enricher()))
    body = client.get("/queue/pending", headers=AUTH).json()
    assert body["count"] == 2
    assert body["requests"][0]["imageUrls"] == []
    assert body["requests"][1]["imageUrls"] == ["https://cdn/fresh.png"]


def test_result_success_completes(client, queue, notifier):
    req = make_request()
    queue.enqueue(req)
    resp = client.post("/queue/result", json={"requestId": req.id, "success": True, "playerTag": "#ABC"}, headers=AUTH)
    assert resp.status_code == 200
    assert resp.json()["action"] == "completed"
    assert resp.json()["success"] is True
    assert queue.is_empty()
    assert notifier.events == [(req.id, Action.COMPLETED, "player tag #ABC")]


def test_result_failure_requeues_at_tail(client, queue, notifier):
    a, b = make_request("1"), make_request("2")
    queue.enqueue(a)
    queue.enqueue(b)
    resp = client.post("/queue/result", json={"requestId": a.id, "success": False, "errorMessage": "blurry"}, headers=AUTH)
    assert resp.status_code == 200
    body = resp.json()
    assert body["action"] == "requeued"
    assert body["retryCount"] == 1
    assert [(r.id, r.retry_count) for r in queue.list_all()] == [(b.id, 0), (a.id, 1)]
    assert notifier.events[-1][1] is Action.REQUEUED


def test_result_failure_at_ceiling_is_terminal(client, queue, notifier):
    req = make_request()
    queue.enqueue(req)
    actions = []
    for _ in range(4):
        resp = client.post("/queue/result", json={"requestId": req.id, "success": False}, headers=AUTH)
        assert resp.status_code == 200
        actions.append(resp.json()["action"])
    assert actions == ["requeued", "requeued", "requeued", "failed"]
    assert queue.is_empty()
    assert queue.remove_by_id(req.id) is None
    assert notifier.events[-1][1] is Action.FAILED

    resp = client.post("/queue/result", json={"requestId": req.id, "success": False}, headers=AUTH)
    assert resp.status_code == 404


def test_result_unknown_id_is_404(client, queue):
    queue.enqueue(make_request())
    resp = client.post("/queue/result", json={"requestId": "nope", "success": True}, headers=AUTH)
    assert resp.status_code == 404
    assert resp.json()["success"] is False
    assert queue.size() == 1


@pytest.mark.parametrize(
    "body",
    [
        {"success": True},
        {"requestId": "x"},
        {"requestId": "x", "success": "yes"},
        {"requestId": 5, "success": True},
        [],
    ],
)
def test_result_bad_payload_is_400(client, queue, body):
    req = make_request()
    queue.enqueue(req)
    resp = client.post("/queue/result", json=body, headers=AUTH)
    assert resp.status_code == 400
    assert resp.json()["success"] is False
    assert queue.list_all() == [req]


def test_result_invalid_json_is_400(client):
    resp = client.post(
        "/queue/result",
        content=b"{not json",
        headers={**AUTH, "Content-Type": "application/json"},
    )
    assert resp.status_code == 400
    assert resp.json() == {"success": False, "error": "Invalid JSON in request body"}


def test_result_internal_error_is_500_envelope(queue, notifier, monkeypatch):
    client = TestClient(create_app(queue, SECRET, notifier=notifier))
    req = make_request()
    queue.enqueue(req)

    def broken(request_id):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(queue, "remove_by_id", broken)
    resp = client.post("/queue/result", json={"requestId": req.id, "success": True}, headers=AUTH)
    assert resp.status_code == 500
    assert resp.json()["success"] is False
    assert "disk on fire" in resp.json()["error"]


def test_result_success_links_player_when_client_configured(queue, notifier):
    class FakeLinkClient:
        def __init__(self):
            self.calls = []

        def link_player(self, tag, user_id):
            from pipeline.collaborators import LinkResult

            self.calls.append((tag, user_id))
            return LinkResult(True, "linked #ABC (Bob)")

    link_client = FakeLinkClient()
    client = TestClient(create_app(queue, SECRET, notifier=notifier, link_client=link_client))
    req = make_request("77")
    queue.enqueue(req)
    resp = client.post("/queue/result", json={"requestId": req.id, "success": True, "playerTag": "#ABC"}, headers=AUTH)
    assert resp.json()["action"] == "completed"
    assert link_client.calls == [("#ABC", "77")]
    assert notifier.events == [(req.id, Action.COMPLETED, "linked #ABC (Bob)")]


def test_stats(client, queue):
    resp = client.get("/queue/stats", headers=AUTH)
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "queueSize": 0}

    a, b = make_request("1"), make_request("2")
    queue.enqueue(a)
    queue.enqueue(b)
    body = client.get("/queue/stats", headers=AUTH).json()
    assert body["queueSize"] == 2
    assert body["oldestRequestTimestamp"] == a.created_at
    assert body["newestRequestTimestamp"] == b.created_at


def test_health_is_open_and_reports_size(client, queue):
    queue.enqueue(make_request())
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["queueSize"] == queue.size()
    assert isinstance(body["timestamp"], int)


def test_health_reports_unhealthy_on_error(client, queue, monkeypatch):
    def broken():
        raise RuntimeError("lock poisoned")

    monkeypatch.setattr(queue, "size", broken)
    resp = client.get("/health")
    assert resp.status_code == 500
    assert resp.json()["status"] == "unhealthy"


def test_api_prefixed_paths(client, queue):
    req = make_request()
    queue.enqueue(req)
    assert client.get("/api/health").status_code == 200
    assert client.get("/api/queue/pending", headers=AUTH).json()["count"] == 1
    resp = client.post("/api/queue/result", json={"requestId": req.id, "success": True}, headers=AUTH)
    assert resp.json()["action"] == "completed"


def test_wrong_method_uses_error_envelope(client):
    resp = client.get("/queue/result", headers=AUTH)
    assert resp.status_code == 405
    assert resp.json()["success"] is False


def test_api_prefixed_pending_uses_flat_records(client, queue):
    req = make_request("1", guild_id="g1", image_urls=["https://cdn/a.png"]).with_retry()
    queue.enqueue(req)
    body = client.get("/api/queue/pending", headers=AUTH).json()
    assert body["success"] is True
    assert body["count"] == 1
    assert body["requests"] == [
        {
            "id": req.id,
            "messageId": "msg-1",
            "channelId": "555",
            "guildId": "g1",
            "userId": "1",
            "userTag": "alice#0001",
            "imageUrls": ["https://cdn/a.png"],
            "timestamp": req.created_at,
            "retryCount": 1,
        }
    ]


def test_api_prefixed_stats_uses_flat_names(client, queue):
    assert client.get("/api/queue/stats", headers=AUTH).json() == {"success": True, "queueSize": 0}
    a, b = make_request("1"), make_request("2")
    queue.enqueue(a)
    queue.enqueue(b)
    body = client.get("/api/queue/stats", headers=AUTH).json()
    assert body == {
        "success": True,
        "queueSize": 2,
        "oldestRequest": a.created_at,
        "newestRequest": b.created_at,
    }


def test_api_prefixed_routes_require_auth(client):
    for path in ("/api/queue/pending", "/api/queue/stats"):
        resp = client.get(path)
        assert resp.status_code == 401
        assert resp.json() == {"success": False, "error": "Unauthorized"}


def test_unhandled_error_is_logged_with_traceback(queue, caplog):
    app = create_app(queue, SECRET)

    @app.get("/boom")
    def boom():
        raise RuntimeError("queue exploded")

    client = TestClient(app, raise_server_exceptions=False)
    with caplog.at_level("ERROR", logger="api.server"):
        resp = client.get("/boom")
    assert resp.status_code == 500
    assert resp.json() == {"success": False, "error": "Internal server error"}
    records = [r for r in caplog.records if "unhandled error" in r.getMessage()]
    assert records and records[0].exc_info is not None
    assert "GET /boom" in records[0].getMessage()
