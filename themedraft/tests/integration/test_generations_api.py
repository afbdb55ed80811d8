from __future__ import annotations

import asyncio
import json
from dataclasses import replace

import pytest
from httpx import ASGITransport, AsyncClient

from themedraft.apps.api.main import create_app
from themedraft.domain.status import JobStatus
from themedraft.persistence.repos import quotas as quotas_repo
from themedraft.providers.generation.fake import FakeGenerationBackend
from themedraft.services.wiring import build_services
from themedraft.tests.utils.fakes import RecordingQueuePool
from themedraft.tests.utils.jobs import create_test_job, load_job, published_events


TENANT = "shop-a.myshopify.com"
HEADERS = {"X-Shop-Domain": TENANT}


def _client(resources, backend=None) -> AsyncClient:
    services = build_services(resources, backend=backend or FakeGenerationBackend())
    app = create_app(resources=resources, services=services)
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def _sse_events(body: str) -> list[dict]:
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


@pytest.mark.asyncio
async def test_health(resources) -> None:
    async with _client(resources) as client:
        response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_submit_requires_tenant(resources) -> None:
    async with _client(resources) as client:
        response = await client.post("/v1/generations", json={"template_type": "product", "prompt": "P"})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "TENANT_REQUIRED"


@pytest.mark.asyncio
async def test_inline_submission_runs_to_completion(resources) -> None:
    async with _client(resources) as client:
        response = await client.post(
            "/v1/generations",
            json={"template_type": "product", "prompt": "Hero banner"},
            headers=HEADERS,
        )
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["status"] == "COMPLETED"
        assert data["deduplicated"] is False
        assert response.headers["X-Request-Id"]

        detail = await client.get(f"/v1/generations/{data['job_id']}", headers=HEADERS)
    assert detail.status_code == 200
    job = detail.json()["data"]
    assert job["status"] == "COMPLETED"
    assert job["result"]["filename"] == "product.fake.liquid"
    assert job["retry_count"] == 0


@pytest.mark.asyncio
async def test_duplicate_submission_returns_same_job(resources) -> None:
    payload = {"template_type": "product", "prompt": "P"}
    async with _client(resources) as client:
        first = await client.post("/v1/generations", json=payload, headers=HEADERS)
        second = await client.post("/v1/generations", json=payload, headers=HEADERS)
        listing = await client.get("/v1/generations", headers=HEADERS)

    assert first.status_code == 201
    assert second.status_code == 200
    assert second.json()["data"]["deduplicated"] is True
    assert first.json()["data"]["job_id"] == second.json()["data"]["job_id"]
    assert len(listing.json()["data"]) == 1


@pytest.mark.asyncio
async def test_shop_query_param_identifies_tenant(resources) -> None:
    async with _client(resources) as client:
        response = await client.post(
            "/v1/generations",
            params={"shop": TENANT},
            json={"template_type": "page", "prompt": "About us"},
        )
        listing = await client.get("/v1/generations", headers=HEADERS)
    assert response.status_code == 201
    assert [job["id"] for job in listing.json()["data"]] == [response.json()["data"]["job_id"]]


@pytest.mark.asyncio
async def test_sixth_submission_in_window_is_rate_limited(resources) -> None:
    async with _client(resources) as client:
        responses = [
            await client.post(
                "/v1/generations",
                json={"template_type": "product", "prompt": f"prompt {i}"},
                headers=HEADERS,
            )
            for i in range(6)
        ]

    admitted = responses[:5]
    assert all(response.status_code == 201 for response in admitted)
    assert len({response.json()["data"]["job_id"] for response in admitted}) == 5
    denied = responses[5]
    assert denied.status_code == 429
    error = denied.json()["error"]
    assert error["code"] == "RATE_LIMITED"
    assert error["details"]["retry_after"] > 0
    assert int(denied.headers["Retry-After"]) == error["details"]["retry_after"]


@pytest.mark.asyncio
async def test_credit_ceiling_is_strict(resources) -> None:
    async with resources.session_factory() as session:
        await quotas_repo.insert_quota_if_absent(session, TENANT, credits_limit=2, max_daily_spend_usd=None)
        await session.commit()

    async with _client(resources) as client:
        codes = []
        for i in range(3):
            response = await client.post(
                "/v1/generations",
                json={"template_type": "collection", "prompt": f"grid {i}"},
                headers=HEADERS,
            )
            codes.append(response.status_code)
        quota = await client.get("/v1/quota", headers=HEADERS)

    assert codes == [201, 201, 429]
    assert response.json()["error"]["code"] == "CREDITS_EXHAUSTED"
    assert "Retry-After" not in response.headers
    snapshot = quota.json()["data"]
    assert snapshot["credits_used"] == 2
    assert snapshot["credits_remaining"] == 0


@pytest.mark.asyncio
async def test_queued_jobs_cannot_oversubscribe_credits(resources) -> None:
    async with resources.session_factory() as session:
        await quotas_repo.insert_quota_if_absent(session, TENANT, credits_limit=1, max_daily_spend_usd=None)
        await session.commit()

    pool = RecordingQueuePool()
    queued = replace(resources, queue_pool=pool)
    services = build_services(queued, backend=FakeGenerationBackend())
    app = create_app(resources=queued, services=services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        codes = []
        for i in range(3):
            response = await client.post(
                "/v1/generations",
                json={"template_type": "collection", "prompt": f"grid {i}"},
                headers=HEADERS,
            )
            codes.append(response.status_code)

        for entry in pool.enqueued:
            await services.worker.process(entry["args"][0]["job_id"])
        quota = await client.get("/v1/quota", headers=HEADERS)

    assert codes == [201, 429, 429]
    assert response.json()["error"]["code"] == "CREDITS_EXHAUSTED"
    assert len(pool.enqueued) == 1
    assert quota.json()["data"]["credits_used"] == 1


@pytest.mark.asyncio
async def test_malformed_submissions_are_rejected(resources) -> None:
    async with _client(resources) as client:
        bad_type = await client.post(
            "/v1/generations",
            json={"template_type": "checkout", "prompt": "P"},
            headers=HEADERS,
        )
        blank_prompt = await client.post(
            "/v1/generations",
            json={"template_type": "product", "prompt": "   "},
            headers=HEADERS,
        )
        listing = await client.get("/v1/generations", headers=HEADERS)

    assert bad_type.status_code == 400
    assert bad_type.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"
    assert blank_prompt.status_code == 400
    assert blank_prompt.json()["error"]["code"] == "INVALID_SUBMISSION"
    assert listing.json()["data"] == []


@pytest.mark.asyncio
async def test_jobs_are_tenant_scoped(resources) -> None:
    job = await create_test_job(resources, tenant_id="other-shop.myshopify.com")
    async with _client(resources) as client:
        detail = await client.get(f"/v1/generations/{job.id}", headers=HEADERS)
        events = await client.get(f"/v1/generations/{job.id}/events", headers=HEADERS)
    assert detail.status_code == 404
    assert detail.json()["error"]["code"] == "NOT_FOUND"
    assert events.status_code == 404


@pytest.mark.asyncio
async def test_list_limit_is_bounded(resources) -> None:
    async with _client(resources) as client:
        response = await client.get("/v1/generations", params={"limit": 101}, headers=HEADERS)
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_event_stream_for_finished_job_sends_snapshot_and_closes(resources) -> None:
    async with _client(resources) as client:
        submitted = await client.post(
            "/v1/generations",
            json={"template_type": "article", "prompt": "Long-form layout"},
            headers=HEADERS,
        )
        job_id = submitted.json()["data"]["job_id"]
        response = await client.get(f"/v1/generations/{job_id}/events", headers=HEADERS)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = _sse_events(response.text)
    assert len(events) == 1
    assert events[0]["status"] == "completed"
    assert events[0]["message"] == "Connected"
    assert events[0]["result"]["filename"] == "article.fake.liquid"


@pytest.mark.asyncio
async def test_queue_mode_enqueues_and_returns_pending(resources) -> None:
    pool = RecordingQueuePool()
    queued = replace(resources, queue_pool=pool)
    async with _client(queued) as client:
        response = await client.post(
            "/v1/generations",
            json={"template_type": "blog", "prompt": "Journal index"},
            headers=HEADERS,
        )
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["status"] == "PENDING"
    assert pool.enqueued[0]["kwargs"]["_job_id"] == data["job_id"]


@pytest.mark.asyncio
async def test_queue_outage_surfaces_job_id_and_fails_job(resources) -> None:
    queued = replace(resources, queue_pool=RecordingQueuePool(fail=True))
    async with _client(queued) as client:
        response = await client.post(
            "/v1/generations",
            json={"template_type": "blog", "prompt": "Journal index"},
            headers=HEADERS,
        )
    assert response.status_code == 503
    job_id = response.json()["error"]["details"]["job_id"]
    job = await load_job(resources, job_id)
    assert job.status == JobStatus.FAILED


@pytest.mark.asyncio
async def test_ops_queue_requires_admin_secret(resources) -> None:
    async with _client(resources) as client:
        await client.post("/v1/generations", json={"template_type": "page", "prompt": "FAQ"}, headers=HEADERS)
        denied = await client.get("/ops/queue")
        wrong = await client.get("/ops/queue", headers={"X-Admin-Secret": "nope"})
        allowed = await client.get("/ops/queue", headers={"X-Admin-Secret": "ops-secret"})
    assert denied.status_code == 401
    assert wrong.status_code == 401
    assert allowed.status_code == 200
    payload = allowed.json()
    assert payload["execution_mode"] == "inline"
    assert payload["queue_depth"] == 0
    assert payload["counters"]["admission.allowed"] == 1
    assert payload["counters"]["jobs.completed"] == 1
    assert payload["jobs"]["completed"] == 1
    assert payload["jobs"]["pending"] == 0


@pytest.mark.asyncio
async def test_disconnect_while_processing_cancels_without_charging(resources, fake_redis) -> None:
    started = asyncio.Event()
    release = asyncio.Event()

    class _GatedBackend:
        def __init__(self) -> None:
            self._inner = FakeGenerationBackend()

        async def generate(self, prompt: str, *, template_type: str, model: str):
            started.set()
            await release.wait()
            return await self._inner.generate(prompt, template_type=template_type, model=model)

    services = build_services(resources, backend=_GatedBackend())
    job = await create_test_job(resources, tenant_id=TENANT)
    worker_task = asyncio.create_task(services.worker.process(job.id))
    await started.wait()

    polls = {"count": 0}

    async def _disconnect_after_first_poll() -> bool:
        polls["count"] += 1
        return polls["count"] > 1

    received = [
        event
        async for event in services.progress.stream(
            job.id,
            is_disconnected=_disconnect_after_first_poll,
            poll_interval_s=0.01,
        )
    ]
    release.set()
    final_status = await worker_task

    assert received[0].status == "processing"
    assert final_status == JobStatus.CANCELLED
    assert (await load_job(resources, job.id)).status == JobStatus.CANCELLED
    statuses = [event["status"] for event in published_events(fake_redis, job.id)]
    assert "cancelled" in statuses
    assert "completed" not in statuses
    async with resources.session_factory() as session:
        quota = await quotas_repo.get_quota(session, TENANT)
    assert quota is None or quota.credits_used == 0


@pytest.mark.asyncio
async def test_disconnect_after_commit_keeps_completion(resources, fake_redis) -> None:
    services = build_services(resources, backend=FakeGenerationBackend())
    job = await create_test_job(resources, tenant_id=TENANT)

    assert await services.worker.process(job.id) == JobStatus.COMPLETED
    assert await services.progress.handle_disconnect(job.id) is False

    assert (await load_job(resources, job.id)).status == JobStatus.COMPLETED
    statuses = [event["status"] for event in published_events(fake_redis, job.id)]
    assert statuses[-1] == "completed"
    assert "cancelled" not in statuses
