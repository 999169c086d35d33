"""HTTP surface wired to in-memory components."""
from __future__ import annotations

import time
from contextlib import asynccontextmanager
from datetime import timedelta

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from taskrelay import runtime
from taskrelay.api.functions import router as functions_router
from taskrelay.api.health import router as health_router
from taskrelay.api.jobs import router as jobs_router
from taskrelay.api.messages import router as messages_router
from taskrelay.core.messages import IncomingMessage
from taskrelay.core.models import JobStatus, utcnow


@pytest.fixture
def client(registry, engine, llm, broker, gateway, orchestrator):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await engine.start()
        await gateway.connect()
        yield
        await engine.shutdown(drain_timeout=0)
        await gateway.disconnect()

    app = FastAPI(lifespan=lifespan)
    for router in (health_router, functions_router, jobs_router, messages_router):
        app.include_router(router)
    app.dependency_overrides.update(
        {
            runtime.get_registry: lambda: registry,
            runtime.get_job_engine: lambda: engine,
            runtime.get_llm_gateway: lambda: llm,
            runtime.get_gateway: lambda: gateway,
            runtime.get_orchestrator: lambda: orchestrator,
        }
    )
    with TestClient(app) as test_client:
        yield test_client


def wait_for_job(client: TestClient, job_id: str, timeout: float = 2.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        job = client.get(f"/api/jobs/{job_id}").json()
        if job["status"] in ("completed", "failed", "cancelled") or time.monotonic() > deadline:
            return job
        time.sleep(0.01)


def test_functions_catalog(client: TestClient) -> None:
    response = client.get("/api/functions")

    assert response.status_code == 200
    names = {item["name"] for item in response.json()["functions"]}
    assert names == {"mathUtils", "stringUtils", "timer", "sentimentAnalysis"}

    timer = client.get("/api/functions/timer").json()
    assert timer["type"] == "runner"
    assert client.get("/api/functions/weather").status_code == 404


def test_create_and_inspect_job(client: TestClient) -> None:
    response = client.post(
        "/api/jobs",
        json={"functionName": "mathUtils", "parameters": {"numbers": [2, 4], "operation": "sum"}},
    )

    assert response.status_code == 201
    job = wait_for_job(client, response.json()["jobId"])
    assert job["status"] == "completed"
    assert job["result"]["result"] == 6
    assert job["executionType"] == "instant"

    listing = client.get("/api/jobs", params={"status": "completed"}).json()
    assert [item["id"] for item in listing["jobs"]] == [job["id"]]
    assert listing["stats"]["completed"] == 1


def test_job_creation_errors(client: TestClient) -> None:
    missing = client.post("/api/jobs", json={"functionName": "weather"})
    assert missing.status_code == 404

    past = client.post(
        "/api/jobs",
        json={
            "functionName": "timer",
            "parameters": {"duration": 10},
            "executionType": "schedule",
            "scheduleTime": (utcnow() - timedelta(minutes=1)).isoformat(),
        },
    )
    assert past.status_code == 400
    assert "future" in past.json()["detail"]

    invalid = client.post("/api/jobs", json={"functionName": "timer", "executionType": "weekly"})
    assert invalid.status_code == 422


def test_repeat_interval_is_milliseconds(client: TestClient, engine) -> None:
    response = client.post(
        "/api/jobs",
        json={
            "functionName": "timer",
            "parameters": {"duration": 10},
            "executionType": "repeat",
            "repeatInterval": 60000,
            "repeatDeadline": (utcnow() + timedelta(minutes=10)).isoformat(),
        },
    )

    assert response.status_code == 201
    job = engine.get_job(response.json()["jobId"])
    assert job.data.repeat_interval == 60.0


def test_cancel_and_delete_scheduled_job(client: TestClient) -> None:
    job_id = client.post(
        "/api/jobs",
        json={
            "functionName": "timer",
            "parameters": {"duration": 10},
            "executionType": "schedule",
            "scheduleTime": (utcnow() + timedelta(minutes=5)).isoformat(),
        },
    ).json()["jobId"]
    assert client.get("/api/jobs/stats").json()["delayed"] == 1

    cancelled = client.post(f"/api/jobs/{job_id}/cancel").json()
    assert cancelled == {"success": True, "message": "Job cancelled"}
    assert client.get(f"/api/jobs/{job_id}").json()["status"] == JobStatus.CANCELLED.value
    assert client.post(f"/api/jobs/{job_id}/cancel").json()["success"] is False

    assert client.delete(f"/api/jobs/{job_id}").status_code == 204
    assert client.get(f"/api/jobs/{job_id}").status_code == 404
    assert client.post("/api/jobs/unknown/cancel").status_code == 404
    assert client.delete("/api/jobs/unknown").status_code == 404


def test_pause_and_resume_queue(client: TestClient) -> None:
    assert client.post("/api/jobs/queue/pause").json()["success"] is True
    job_id = client.post(
        "/api/jobs",
        json={"functionName": "stringUtils", "parameters": {"text": "abc", "operation": "reverse"}},
    ).json()["jobId"]

    time.sleep(0.05)
    assert client.get(f"/api/jobs/{job_id}").json()["status"] == "pending"
    assert client.get("/api/jobs/stats").json()["paused"] == 1

    client.post("/api/jobs/queue/resume")
    job = wait_for_job(client, job_id)
    assert job["status"] == "completed"
    assert job["result"]["result"] == "cba"

    assert client.post("/api/jobs/queue/clean", params={"grace": 0}).json() == {"success": True, "removed": 1}


def test_health_endpoints(client: TestClient) -> None:
    overall = client.get("/health")
    assert overall.status_code == 503
    body = overall.json()
    assert body["status"] == "unhealthy"
    assert len(body["modules"]) == 5

    assert client.get("/health/jobengine").status_code == 200
    assert client.get("/health/Orchestrator").status_code == 503
    assert client.get("/health/database").status_code == 404


def test_submit_message(client: TestClient, broker, gateway) -> None:
    response = client.post("/api/messages", json={"content": "What is the current system status?"})

    assert response.status_code == 202
    [body] = broker.pending(gateway.incoming_queue)
    message = IncomingMessage.parse(body)
    assert message.id == response.json()["messageId"]
    assert message.metadata == {"testMode": True}

    assert client.post("/api/messages", json={"content": ""}).status_code == 422


def test_templates_and_llm_instances(client: TestClient, llm, llm_config) -> None:
    templates = client.get("/api/message-templates").json()["templates"]
    assert "System Status" in {template["name"] for template in templates}

    instance_id = llm.create_instance(llm_config)
    instances = client.get("/api/llm/instances").json()
    assert [instance["id"] for instance in instances["instances"]] == [instance_id]
