import uuid
from typing import List

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY

import web.routers.generation as generation_router
from llm.stream_client import ScriptedStreamClient
from models.report import Report
from models.thread import Message
from schemas.frames import FrameDecoder
from services import rate_limiter
from services.auth_tokens import create_access_token
from services.generation.config import GenerationSettings
from services.generation.entity_extraction import NullEntityExtractor
from services.generation.registry import GenerationRegistry
from web import deps
from web.main import app

REPORT_CHUNKS = [
    "<h2>Overview</h2>\n",
    "<p>Microsoft (MSFT) grew cloud revenue 29%.</p>\n",
    "<h2>Risks</h2>\n",
    "<p>Capex intensity remains elevated.</p>\n",
]

GENERATE_URL = "/api/v1/playground/reports/generate"


def _auth(user_id: str = "user-1") -> dict:
    token, _ = create_access_token(user_id=user_id, email=f"{user_id}@example.com")
    return {"Authorization": f"Bearer {token}"}


def _frames(body: bytes) -> List:
    decoder = FrameDecoder()
    frames = decoder.feed(body) + decoder.flush()
    assert decoder.malformed == 0 and decoder.invalid == 0
    return frames


def _rejections(reason: str) -> float:
    return REGISTRY.get_sample_value("report_generation_rejected_total", {"reason": reason}) or 0.0


@pytest.fixture()
def registry():
    return GenerationRegistry(lease_ttl_seconds=60)


@pytest.fixture()
def model_client():
    return ScriptedStreamClient(REPORT_CHUNKS)


@pytest.fixture()
def api_client(engine, registry, model_client, monkeypatch):
    settings = GenerationSettings(
        model_allowlist=("gpt-4o-mini", "claude-3-haiku-20240307"),
        default_model="gpt-4o-mini",
        idle_timeout_seconds=5.0,
        total_timeout_seconds=30.0,
        lease_ttl_seconds=60.0,
    )
    monkeypatch.setattr(rate_limiter, "_get_client", lambda: None)
    app.dependency_overrides[deps.get_settings] = lambda: settings
    app.dependency_overrides[deps.get_generation_registry] = lambda: registry
    app.dependency_overrides[deps.get_model_client] = lambda: model_client
    app.dependency_overrides[deps.get_entity_extractor] = lambda: NullEntityExtractor()
    try:
        with TestClient(app) as client:
            yield client
    finally:
        app.dependency_overrides.clear()


def test_generate_requires_authentication(api_client, thread_factory):
    thread = thread_factory()

    response = api_client.post(GENERATE_URL, json={"threadId": str(thread.id), "prompt": "hi"})

    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "auth.required"


def test_invalid_token_is_rejected_by_middleware(api_client, thread_factory):
    thread = thread_factory()

    response = api_client.post(
        GENERATE_URL,
        json={"threadId": str(thread.id), "prompt": "hi"},
        headers={"Authorization": "Bearer not-a-jwt"},
    )

    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "auth.token_invalid"


def test_create_thread(api_client):
    response = api_client.post("/api/v1/playground/threads", json={"title": "Cloud names"}, headers=_auth())

    assert response.status_code == 201
    body = response.json()
    assert body["title"] == "Cloud names"
    assert body["status"] == "active"
    assert body["isBookmarked"] is False


def test_generate_streams_frames_and_persists_report(api_client, db_session, thread_factory):
    thread = thread_factory()

    response = api_client.post(
        GENERATE_URL,
        json={"threadId": str(thread.id), "prompt": "How is Microsoft's cloud business doing?"},
        headers={**_auth(), "Idempotency-Key": "gen-123"},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert response.headers["x-generation-id"] == "gen-123"
    frames = _frames(response.content)
    assert [frame.type for frame in frames] == [
        "content",
        "content",
        "content",
        "sections",
        "content",
        "sections",
        "complete",
    ]
    report = db_session.get(Report, uuid.UUID(frames[-1].report_id))
    assert report.generation_id == "gen-123"
    assert report.model == "gpt-4o-mini"
    rows = db_session.query(Message).filter(Message.thread_id == thread.id).order_by(Message.created_at).all()
    assert [(row.role, row.status) for row in rows] == [("user", "sent"), ("assistant", "sent")]


def test_followup_generation_sends_thread_history(api_client, model_client, thread_factory):
    thread = thread_factory()
    for key, prompt in (("gen-1", "First question"), ("gen-2", "Second question")):
        response = api_client.post(
            GENERATE_URL,
            json={"threadId": str(thread.id), "prompt": prompt},
            headers={**_auth(), "Idempotency-Key": key},
        )
        assert _frames(response.content)[-1].type == "complete"

    second_call = model_client.calls[1]["messages"]
    assert [message["role"] for message in second_call] == ["system", "user", "assistant", "user"]
    assert second_call[1]["content"] == "First question"
    assert second_call[2]["content"] == "".join(REPORT_CHUNKS)


def test_failed_generation_flags_prompt_and_keeps_it_out_of_history(api_client, model_client, db_session, thread_factory):
    thread = thread_factory()
    app.dependency_overrides[deps.get_model_client] = lambda: ScriptedStreamClient(REPORT_CHUNKS, fail_after=1)

    failed = _frames(
        api_client.post(GENERATE_URL, json={"threadId": str(thread.id), "prompt": "Doomed question"}, headers=_auth()).content
    )

    assert failed[-1].type == "error"
    prompt = db_session.query(Message).filter(Message.thread_id == thread.id).one()
    assert (prompt.role, prompt.status) == ("user", "error")

    app.dependency_overrides[deps.get_model_client] = lambda: model_client
    retried = _frames(
        api_client.post(GENERATE_URL, json={"threadId": str(thread.id), "prompt": "Second try"}, headers=_auth()).content
    )

    assert retried[-1].type == "complete"
    sent = model_client.calls[0]["messages"]
    assert [message["role"] for message in sent] == ["system", "user"]
    assert sent[1]["content"].startswith("Second try")


def test_repeated_idempotency_key_replays_existing_report(api_client, db_session, model_client, thread_factory):
    thread = thread_factory()
    payload = {"threadId": str(thread.id), "prompt": "Summarize Nvidia"}
    headers = {**_auth(), "Idempotency-Key": "retry-key"}

    first = _frames(api_client.post(GENERATE_URL, json=payload, headers=headers).content)
    second = _frames(api_client.post(GENERATE_URL, json=payload, headers=headers).content)

    assert [frame.type for frame in second] == ["complete"]
    assert second[0].report_id == first[-1].report_id
    assert len(model_client.calls) == 1
    assert db_session.query(Report).count() == 1
    assert db_session.query(Message).filter(Message.role == "user").count() == 1


def test_idempotency_key_reused_on_other_thread_conflicts(api_client, thread_factory):
    first_thread = thread_factory()
    second_thread = thread_factory()
    headers = {**_auth(), "Idempotency-Key": "shared-key"}
    api_client.post(GENERATE_URL, json={"threadId": str(first_thread.id), "prompt": "one"}, headers=headers)

    response = api_client.post(GENERATE_URL, json={"threadId": str(second_thread.id), "prompt": "two"}, headers=headers)

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "generation.key_conflict"


def test_second_generation_on_busy_thread_is_rejected(api_client, registry, db_session, thread_factory):
    thread = thread_factory()
    registry.acquire(str(thread.id), "already-running")

    response = api_client.post(GENERATE_URL, json={"threadId": str(thread.id), "prompt": "again"}, headers=_auth())

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "generation.in_progress"
    assert registry.active(str(thread.id)).generation_id == "already-running"
    assert db_session.query(Message).count() == 0


def test_rate_limited_request_releases_lease(api_client, registry, monkeypatch, thread_factory):
    thread = thread_factory()

    def exhausted(user_id, *, limit, window_seconds):
        raise HTTPException(status_code=429, detail={"code": "rate_limit_exceeded", "message": "slow down"})

    monkeypatch.setattr(generation_router, "check_generation_rate_limit", exhausted)
    before = _rejections("rate_limit_exceeded")

    response = api_client.post(GENERATE_URL, json={"threadId": str(thread.id), "prompt": "hi"}, headers=_auth())

    assert response.status_code == 429
    assert response.json()["detail"]["code"] == "rate_limit_exceeded"
    assert registry.active(str(thread.id)) is None
    assert _rejections("rate_limit_exceeded") == before + 1


@pytest.mark.parametrize(
    "payload_overrides,code",
    [
        ({"model": "gpt-2"}, "generation.model_not_allowed"),
        ({"language": "xx"}, "generation.language_unsupported"),
    ],
)
def test_invalid_options_are_rejected(api_client, thread_factory, payload_overrides, code):
    thread = thread_factory()
    payload = {"threadId": str(thread.id), "prompt": "hi", **payload_overrides}

    response = api_client.post(GENERATE_URL, json=payload, headers=_auth())

    assert response.status_code == 422
    assert response.json()["detail"]["code"] == code


def test_blank_prompt_fails_validation(api_client, thread_factory):
    thread = thread_factory()

    response = api_client.post(GENERATE_URL, json={"threadId": str(thread.id), "prompt": "   "}, headers=_auth())

    assert response.status_code == 422


def test_thread_ownership_is_enforced(api_client, thread_factory):
    thread = thread_factory(user_id="someone-else")

    forbidden = api_client.post(GENERATE_URL, json={"threadId": str(thread.id), "prompt": "hi"}, headers=_auth())
    missing = api_client.post(GENERATE_URL, json={"threadId": str(uuid.uuid4()), "prompt": "hi"}, headers=_auth())

    assert forbidden.status_code == 403
    assert forbidden.json()["detail"]["code"] == "thread.forbidden"
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "thread.not_found"


def test_cancel_endpoint(api_client, registry, thread_factory):
    thread = thread_factory()
    url = f"/api/v1/playground/threads/{thread.id}/generation/cancel"

    idle = api_client.post(url, headers=_auth())
    assert idle.status_code == 404
    assert idle.json()["detail"]["code"] == "generation.not_found"

    lease = registry.acquire(str(thread.id), "running-gen")
    active = api_client.post(url, headers=_auth())

    assert active.status_code == 200
    assert active.json() == {"threadId": str(thread.id), "generationId": "running-gen", "cancelled": True}
    assert lease.cancel_event.is_set()


def test_read_report_endpoints(api_client, thread_factory):
    thread = thread_factory()
    frames = _frames(
        api_client.post(
            GENERATE_URL,
            json={"threadId": str(thread.id), "prompt": "Microsoft"},
            headers={**_auth(), "Idempotency-Key": "lookup-key"},
        ).content
    )
    report_id = frames[-1].report_id

    by_id = api_client.get(f"/api/v1/playground/reports/{report_id}", headers=_auth())
    by_generation = api_client.get("/api/v1/playground/reports/generations/lookup-key", headers=_auth())
    other_user = api_client.get(f"/api/v1/playground/reports/{report_id}", headers=_auth("user-2"))
    unknown = api_client.get("/api/v1/playground/reports/generations/nope", headers=_auth())

    assert by_id.status_code == 200
    body = by_id.json()
    assert body["generationId"] == "lookup-key"
    assert [section["title"] for section in body["sections"]] == ["Overview", "Risks"]
    assert body["entities"] == []
    assert by_generation.json()["id"] == report_id
    assert other_user.status_code == 403
    assert unknown.status_code == 404


def test_health_and_metrics_skip_auth(api_client):
    assert api_client.get("/health").json() == {"status": "ok"}
    readiness = api_client.get("/health/status").json()
    assert readiness["database"]["ok"] is True
    assert readiness["generations"] == {"inFlight": 0}
    metrics = api_client.get("/metrics")
    assert metrics.status_code == 200
    assert "report_generation_total" in metrics.text
