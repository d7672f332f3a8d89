import pytest

from pixguard.moderation.domain import container
from pixguard.moderation.domain.subjects import SubjectRecord
from pixguard.moderation.domain.tasks import TaskStatus


async def _seed_failed_task() -> str:
    subjects = container.get_subject_repository()
    store = container.get_task_store()
    await subjects.create(SubjectRecord(id="img-1", ref="r1", filename="r1.png", client_key="203.0.113.7"))
    task = await store.create(subject_id="img-1", subject_ref="r1", artifact_name="r1.png")
    await store.mark_failed(task.id, error="provider unavailable")
    return task.id


@pytest.mark.asyncio
async def test_queue_admin_requires_token(api_client):
    resp = await api_client.get("/api/mod/v1/admin/queue")
    assert resp.status_code == 403

    resp = await api_client.get("/api/mod/v1/admin/queue", headers={"X-Admin-Token": "wrong"})
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_queue_status_reports_counts(api_client, admin_headers):
    await _seed_failed_task()

    resp = await api_client.get("/api/mod/v1/admin/queue", headers=admin_headers)

    assert resp.status_code == 200
    body = resp.json()
    assert body["failed"] == 1
    assert body["total"] == 1
    assert body["is_processing"] is False
    assert body["state"] == "idle"


@pytest.mark.asyncio
async def test_retry_resets_failed_tasks(api_client, admin_headers):
    task_id = await _seed_failed_task()

    resp = await api_client.post("/api/mod/v1/admin/queue/retry", headers=admin_headers)

    assert resp.status_code == 200
    assert resp.json() == {"reset": 1}
    task = await container.get_task_store().get(task_id)
    assert task.status is TaskStatus.PENDING
    assert task.retry_count == 0
    assert container.get_processor().state.value == "polling"


@pytest.mark.asyncio
async def test_start_and_stop_processor(api_client, admin_headers):
    resp = await api_client.post("/api/mod/v1/admin/queue/start", headers=admin_headers)
    assert resp.json() == {"state": "polling"}

    resp = await api_client.post("/api/mod/v1/admin/queue/stop", headers=admin_headers)
    assert resp.json() == {"state": "idle"}


@pytest.mark.asyncio
async def test_bearer_token_is_accepted(api_client):
    resp = await api_client.get("/api/mod/v1/admin/queue", headers={"Authorization": "Bearer test-admin-token"})
    assert resp.status_code == 200
