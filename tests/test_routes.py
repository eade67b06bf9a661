import csv
import io

import pytest
from httpx import ASGITransport, AsyncClient

from personaliz.main import create_app
from personaliz.pipeline.models import DeliveryStatus, GenerationStatus

from conftest import VIDEO_URL, completed_request, make_service, make_settings, new_payload

PAYLOAD = {
    "user_name": "Ana",
    "user_city": "Lima",
    "user_phone": "+51999999999",
    "actor_id": "actor_2",
}


@pytest.fixture
def api_service():
    return make_service()


@pytest.fixture
async def client(api_service):
    app = create_app(settings=make_settings(), service=api_service)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.mark.anyio
async def test_generate_then_status(client, api_service):
    response = await client.post("/api/video/generate", json=PAYLOAD)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["status"] == "PROCESSING"

    await api_service.drain(timeout=5)

    status = await client.get(f"/api/video/status/{body['request_id']}")
    assert status.status_code == 200
    data = status.json()
    assert data["generation_status"] == "COMPLETED"
    assert data["delivery_status"] == "SENT"
    assert data["artifact_url"] == VIDEO_URL
    assert data["actor"]["id"] == "actor_2"
    assert data["logs"][0]["message"] == "Video sent via WhatsApp"


@pytest.mark.anyio
async def test_generate_rejects_bad_input(client, api_service):
    missing = await client.post("/api/video/generate", json={"user_name": "Ana"})
    blank = await client.post("/api/video/generate", json={**PAYLOAD, "user_city": "   "})
    unknown_actor = await client.post("/api/video/generate", json={**PAYLOAD, "actor_id": "actor_99"})

    assert missing.status_code == 422
    assert blank.status_code == 400
    assert unknown_actor.status_code == 404
    rows, total = api_service.store.list_requests()
    assert total == 0


@pytest.mark.anyio
async def test_status_of_unknown_request_is_404(client):
    response = await client.get("/api/video/status/does-not-exist")
    assert response.status_code == 404


@pytest.mark.anyio
async def test_actors(client):
    listing = await client.get("/api/actors")
    one = await client.get("/api/actors/actor_1")
    missing = await client.get("/api/actors/actor_42")

    assert len(listing.json()["data"]) == 5
    assert one.json()["data"]["voice_id"] == "voice_sarah_001"
    assert missing.status_code == 404


@pytest.mark.anyio
async def test_synclabs_webhook_for_unknown_job_is_acknowledged(client):
    response = await client.post("/api/synclabs/webhook", json={"jobId": "X", "status": "completed"})

    assert response.status_code == 200
    assert response.json()["outcome"] == "unmatched"


@pytest.mark.anyio
async def test_synclabs_webhook_fails_request(client, api_service):
    request = completed_request(api_service)
    other = api_service.state.create(new_payload(user_name="Luis", actor_id="actor_1"), "voice_sarah_001")
    api_service.state.attach_generation_job(other.id, "job_9")

    response = await client.post(
        "/api/synclabs/webhook", json={"job_id": "job_9", "status": "failed", "error": "oom"}
    )

    assert response.status_code == 200
    assert api_service.state.get(other.id).generation_status is GenerationStatus.FAILED
    assert api_service.state.get(request.id).generation_status is GenerationStatus.COMPLETED


@pytest.mark.anyio
async def test_whatsapp_verify_handshake(client):
    ok = await client.get(
        "/api/whatsapp/webhook",
        params={"hub.mode": "subscribe", "hub.verify_token": "personaliz_verify_token", "hub.challenge": "1158201444"},
    )
    bad = await client.get(
        "/api/whatsapp/webhook",
        params={"hub.mode": "subscribe", "hub.verify_token": "wrong", "hub.challenge": "1158201444"},
    )

    assert ok.status_code == 200
    assert ok.text == "1158201444"
    assert bad.status_code == 403


@pytest.mark.anyio
async def test_whatsapp_webhook_always_acknowledges(client, api_service):
    request = completed_request(api_service)
    await api_service.dispatcher.dispatch(request.id)

    garbage = await client.post(
        "/api/whatsapp/webhook", content=b"not json", headers={"Content-Type": "application/json"}
    )
    statuses = await client.post("/api/whatsapp/webhook", json={
        "entry": [{"changes": [{"value": {"statuses": [
            {"id": "wamid.1", "status": "delivered"},
            {"id": "unknown", "status": "read"},
        ]}}]}],
    })

    assert garbage.status_code == 200
    assert statuses.status_code == 200
    assert statuses.json()["processed"] == 2
    assert api_service.state.get(request.id).delivery_status is DeliveryStatus.DELIVERED


@pytest.mark.anyio
@pytest.mark.parametrize(
    "body",
    [
        {"entry": ["oops"]},
        {"entry": [{"changes": [{"value": {"messages": ["x"]}}]}]},
        {"entry": [{"changes": [{"value": "x"}]}]},
    ],
)
async def test_whatsapp_webhook_acknowledges_wrong_shapes(client, body):
    response = await client.post("/api/whatsapp/webhook", json=body)

    assert response.status_code == 200
    assert response.json() == {"success": True, "processed": 0}


@pytest.mark.anyio
async def test_admin_views(client, api_service):
    await client.post("/api/video/generate", json=PAYLOAD)
    await client.post("/api/video/generate", json={**PAYLOAD, "user_name": "Bruno", "actor_id": "actor_1"})
    await api_service.drain(timeout=5)

    listing = (await client.get("/api/admin/requests", params={"search": "bru"})).json()["data"]
    stats = (await client.get("/api/admin/stats")).json()["data"]
    export = await client.get("/api/admin/export")

    assert [r["user_name"] for r in listing["requests"]] == ["Bruno"]
    assert listing["pagination"]["total_count"] == 1
    assert listing["statistics"]["by_status"] == {"COMPLETED": 2}

    assert stats["total_requests"] == 2
    assert stats["recent_requests"] == 2
    assert stats["success_rate"] == 100.0
    assert stats["delivery_breakdown"] == {"SENT": 2}

    assert export.status_code == 200
    assert export.headers["content-type"].startswith("text/csv")
    rows = list(csv.reader(io.StringIO(export.text)))
    assert rows[0][:3] == ["ID", "User Name", "User City"]
    assert len(rows) == 3


@pytest.mark.anyio
async def test_admin_export_rejects_bad_dates(client):
    response = await client.get("/api/admin/export", params={"start_date": "yesterday"})
    assert response.status_code == 400


@pytest.mark.anyio
async def test_health_and_status(client):
    health = await client.get("/health")
    status = await client.get("/api/status")
    snapshot = await client.get("/metrics")

    assert health.json()["status"] == "ok"
    assert status.json()["actors"] == 5
    assert status.json()["providers"]["synclabs"] == "mock"
    assert "counters" in snapshot.json()
