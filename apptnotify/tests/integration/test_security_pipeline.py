from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select

from apptnotify.apps.api import security
from apptnotify.apps.api.main import create_app
from apptnotify.apps.api.rate_limit import DatabaseRateLimiter, set_rate_limiter
from apptnotify.core.config import get_settings
from apptnotify.domain.models import AuditEvent, IdempotencyRecord, NotificationRecord
from apptnotify.domain.types import utc_now
from apptnotify.persistence.db import SessionLocal
from apptnotify.tests.utils.auth import create_test_api_key


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


def _enqueue_body(recipient: str = "client@example.test", **overrides) -> dict:
    body = {
        "type": "email",
        "channel": "confirmation",
        "recipient": recipient,
        "subject": "Booked",
        "content": "Your appointment is confirmed",
    }
    body.update(overrides)
    return body


async def _count(model, *criteria) -> int:
    async with SessionLocal() as session:
        return int((await session.execute(select(func.count()).select_from(model).where(*criteria))).scalar_one())


@pytest.mark.asyncio
async def test_missing_credential_is_rejected_with_envelope() -> None:
    async with _client() as client:
        response = await client.post(
            "/v1/notifications",
            json=_enqueue_body(),
            headers={"X-Correlation-Id": "corr-missing-auth"},
        )

    assert response.status_code == 401
    assert response.headers["WWW-Authenticate"] == "Bearer"
    assert response.headers["X-Correlation-Id"] == "corr-missing-auth"
    payload = response.json()
    assert payload["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert payload["error"]["message"]
    assert payload["meta"] == {"correlation_id": "corr-missing-auth", "api_version": "v1"}
    assert await _count(NotificationRecord) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "key_kwargs",
    [
        {"key_revoked": True},
        {"key_expires_at": utc_now() - timedelta(minutes=1)},
        {"user_active": False},
    ],
)
async def test_unusable_credentials_are_rejected(key_kwargs) -> None:
    _raw_key, headers, _user_id, _key_id = await create_test_api_key(role="staff", **key_kwargs)
    async with _client() as client:
        response = await client.get("/v1/notifications/stats", headers=headers)
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"


@pytest.mark.asyncio
async def test_malformed_and_unknown_bearer_tokens_are_rejected() -> None:
    async with _client() as client:
        malformed = await client.get("/v1/notifications/stats", headers={"Authorization": "Token abc"})
        unknown = await client.get("/v1/notifications/stats", headers={"Authorization": "Bearer apnk_nope"})
    assert malformed.status_code == 401
    assert unknown.status_code == 401


@pytest.mark.asyncio
async def test_role_outside_allowed_set_is_forbidden_and_audited() -> None:
    _raw_key, headers, user_id, _key_id = await create_test_api_key(role="customer")
    async with _client() as client:
        response = await client.post("/v1/notifications", json=_enqueue_body(), headers=headers)

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "AUTH_FORBIDDEN"
    assert await _count(NotificationRecord) == 0
    async with SessionLocal() as session:
        event = (
            await session.execute(select(AuditEvent).where(AuditEvent.action == "notification.enqueue"))
        ).scalar_one()
    assert event.outcome == "failure"
    assert event.actor_id == user_id
    assert event.error_code == "AUTH_FORBIDDEN"


@pytest.mark.asyncio
async def test_successful_mutation_is_audited_with_rate_limit_headers() -> None:
    _raw_key, headers, user_id, _key_id = await create_test_api_key(role="staff")
    async with _client() as client:
        response = await client.post("/v1/notifications", json=_enqueue_body(), headers=headers)

    assert response.status_code == 201
    assert response.headers["X-RateLimit-Remaining"] == "9"
    assert "X-RateLimit-Reset" in response.headers
    record_id = response.json()["data"]["id"]
    async with SessionLocal() as session:
        event = (
            await session.execute(select(AuditEvent).where(AuditEvent.action == "notification.enqueue"))
        ).scalar_one()
    assert event.outcome == "success"
    assert event.actor_role == "staff"
    assert event.actor_id == user_id
    assert event.resource_id == record_id
    assert event.metadata_json["status_code"] == 201


@pytest.mark.asyncio
async def test_idempotent_replay_returns_identical_bytes() -> None:
    _raw_key, headers, _user_id, _key_id = await create_test_api_key(role="staff")
    idem_headers = {**headers, "Idempotency-Key": "enqueue-123"}
    async with _client() as client:
        first = await client.post("/v1/notifications", json=_enqueue_body(), headers=idem_headers)
        second = await client.post("/v1/notifications", json=_enqueue_body(), headers=idem_headers)

    assert first.status_code == 201
    assert second.status_code == 201
    assert second.content == first.content
    assert second.headers["Idempotency-Replayed"] == "true"
    assert "Idempotency-Replayed" not in first.headers
    assert await _count(NotificationRecord) == 1


@pytest.mark.asyncio
async def test_idempotency_key_reused_with_different_body_conflicts() -> None:
    _raw_key, headers, _user_id, _key_id = await create_test_api_key(role="staff")
    idem_headers = {**headers, "Idempotency-Key": "enqueue-456"}
    async with _client() as client:
        first = await client.post("/v1/notifications", json=_enqueue_body(), headers=idem_headers)
        second = await client.post(
            "/v1/notifications",
            json=_enqueue_body(recipient="someone-else@example.test"),
            headers=idem_headers,
        )

    assert first.status_code == 201
    assert second.status_code == 409
    assert second.json()["error"]["code"] == "IDEMPOTENCY_KEY_CONFLICT"
    assert await _count(NotificationRecord) == 1


@pytest.mark.asyncio
async def test_simultaneous_requests_with_one_key_execute_once() -> None:
    _raw_key, headers, _user_id, _key_id = await create_test_api_key(role="staff")
    idem_headers = {**headers, "Idempotency-Key": "enqueue-race"}
    async with _client() as client:
        first, second = await asyncio.gather(
            client.post("/v1/notifications", json=_enqueue_body(), headers=idem_headers),
            client.post("/v1/notifications", json=_enqueue_body(), headers=idem_headers),
        )

    assert {first.status_code, second.status_code} == {201}
    assert first.content == second.content
    replayed = [response.headers.get("Idempotency-Replayed") for response in (first, second)]
    assert replayed.count("true") == 1
    assert await _count(NotificationRecord) == 1
    assert await _count(IdempotencyRecord, IdempotencyRecord.state == "completed") == 1


@pytest.mark.asyncio
async def test_oversized_idempotency_key_is_invalid() -> None:
    _raw_key, headers, _user_id, _key_id = await create_test_api_key(role="staff")
    async with _client() as client:
        response = await client.post(
            "/v1/notifications",
            json=_enqueue_body(),
            headers={**headers, "Idempotency-Key": "k" * 129},
        )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "IDEMPOTENCY_KEY_INVALID"


@pytest.mark.asyncio
async def test_rate_limit_rejects_after_budget_and_recovers_next_window() -> None:
    clock = {"now": 1_800_000_000.0}
    set_rate_limiter(DatabaseRateLimiter(time_provider=lambda: clock["now"]))
    _raw_key, headers, _user_id, _key_id = await create_test_api_key(role="staff")

    async with _client() as client:
        for index in range(10):
            response = await client.post(
                "/v1/notifications",
                json=_enqueue_body(recipient=f"user{index}@example.test"),
                headers=headers,
            )
            assert response.status_code == 201
        limited = await client.post(
            "/v1/notifications",
            json=_enqueue_body(recipient="user10@example.test"),
            headers=headers,
        )
        assert limited.status_code == 429
        assert limited.json()["error"]["code"] == "RATE_LIMITED"
        assert int(limited.headers["Retry-After"]) >= 1
        assert limited.headers["X-RateLimit-Remaining"] == "0"

        clock["now"] += 61
        recovered = await client.post(
            "/v1/notifications",
            json=_enqueue_body(recipient="user10@example.test"),
            headers=headers,
        )
    assert recovered.status_code == 201
    assert await _count(NotificationRecord) == 11


@pytest.mark.asyncio
async def test_admins_skip_the_critical_rate_limit() -> None:
    _raw_key, headers, _user_id, _key_id = await create_test_api_key(role="admin")
    async with _client() as client:
        statuses = [
            (
                await client.post(
                    "/v1/notifications",
                    json=_enqueue_body(recipient=f"admin{index}@example.test"),
                    headers=headers,
                )
            ).status_code
            for index in range(12)
        ]
    assert statuses == [201] * 12


@pytest.mark.asyncio
async def test_rate_limit_disabled_by_settings(monkeypatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "false")
    get_settings.cache_clear()
    _raw_key, headers, _user_id, _key_id = await create_test_api_key(role="staff")
    async with _client() as client:
        for index in range(11):
            response = await client.post(
                "/v1/notifications",
                json=_enqueue_body(recipient=f"free{index}@example.test"),
                headers=headers,
            )
            assert response.status_code == 201
            assert "X-RateLimit-Remaining" not in response.headers


@pytest.mark.asyncio
async def test_audit_outage_does_not_fail_the_request(monkeypatch) -> None:
    async def _broken_record_event(**kwargs) -> None:
        raise RuntimeError("audit store down")

    monkeypatch.setattr(security, "record_event", _broken_record_event)
    _raw_key, headers, _user_id, _key_id = await create_test_api_key(role="staff")
    async with _client() as client:
        response = await client.post("/v1/notifications", json=_enqueue_body(), headers=headers)

    assert response.status_code == 201
    assert await _count(NotificationRecord) == 1


@pytest.mark.asyncio
async def test_preflight_short_circuits_without_credentials() -> None:
    async with _client() as client:
        response = await client.options(
            "/v1/notifications",
            headers={"Origin": "https://salon.example", "Access-Control-Request-Method": "POST"},
        )
    assert response.status_code == 200
    assert response.headers["Access-Control-Allow-Origin"] == "*"
    assert "Idempotency-Key" in response.headers["Access-Control-Allow-Headers"]
    assert await _count(AuditEvent) == 0


@pytest.mark.asyncio
async def test_cors_allow_list_only_echoes_known_origins(monkeypatch) -> None:
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://salon.example")
    get_settings.cache_clear()
    async with _client() as client:
        allowed = await client.options("/v1/notifications", headers={"Origin": "https://salon.example"})
        denied = await client.options("/v1/notifications", headers={"Origin": "https://evil.example"})
    assert allowed.headers["Access-Control-Allow-Origin"] == "https://salon.example"
    assert "Access-Control-Allow-Origin" not in denied.headers


@pytest.mark.asyncio
async def test_operation_crash_is_rendered_as_internal_error(monkeypatch) -> None:
    from apptnotify.apps.api.routes import notifications

    async def _explode(**kwargs):
        raise RuntimeError("database password is hunter2")

    monkeypatch.setattr(notifications, "queue_statistics", _explode)
    _raw_key, headers, _user_id, _key_id = await create_test_api_key(role="staff")
    async with _client() as client:
        response = await client.get("/v1/notifications/stats", headers=headers)

    assert response.status_code == 500
    payload = response.json()
    assert payload["error"] == {"code": "INTERNAL_ERROR", "message": "Internal server error"}
    assert "hunter2" not in response.text


@pytest.mark.asyncio
async def test_invalid_body_is_a_validation_error() -> None:
    _raw_key, headers, _user_id, _key_id = await create_test_api_key(role="staff")
    async with _client() as client:
        response = await client.post(
            "/v1/notifications",
            json=_enqueue_body(type="fax"),
            headers=headers,
        )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"
