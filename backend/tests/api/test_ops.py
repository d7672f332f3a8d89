import pytest


@pytest.mark.asyncio
async def test_health_live(api_client):
    resp = await api_client.get("/health/live")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
    assert resp.headers.get("X-Request-Id")


@pytest.mark.asyncio
async def test_metrics_require_admin(api_client, admin_headers):
    resp = await api_client.get("/metrics")
    assert resp.status_code == 403
    assert "request_id" in resp.json()

    resp = await api_client.get("/metrics", headers=admin_headers)
    assert resp.status_code == 200
    assert "pixguard_admission_decisions" in resp.text
