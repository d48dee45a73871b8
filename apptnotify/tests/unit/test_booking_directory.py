from __future__ import annotations

from datetime import datetime, timezone

import httpx
import pytest

from apptnotify.core.errors import DirectoryError
from apptnotify.services.directory import HttpAppointmentDirectory


START = datetime(2026, 3, 3, 8, 45, tzinfo=timezone.utc)
END = datetime(2026, 3, 3, 9, 15, tzinfo=timezone.utc)

APPOINTMENT = {
    "id": 42,
    "starts_at": "2026-03-03T09:00:00Z",
    "status": "confirmed",
    "service": {"name": "Beard trim"},
    "customer": {"name": "Dana", "email": "dana@example.test", "phone": "+15550001111"},
    "staff": {"id": 7, "name": "Robin"},
}


def _directory(handler) -> HttpAppointmentDirectory:
    return HttpAppointmentDirectory(
        base_url="https://booking.example/api/",
        token="booking-token",
        timeout_s=2.0,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_lists_appointments_in_window() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"data": [APPOINTMENT]})

    appointments = await _directory(handler).list_appointments(starts_after=START, starts_before=END)

    [appointment] = appointments
    assert appointment.id == "42"
    assert appointment.starts_at == datetime(2026, 3, 3, 9, 0, tzinfo=timezone.utc)
    assert appointment.service_name == "Beard trim"
    assert appointment.customer_email == "dana@example.test"
    assert appointment.staff_id == "7"
    [request] = captured
    assert request.url.path == "/api/appointments"
    assert request.url.params["status"] == "confirmed"
    assert request.url.params["starts_after"] == START.isoformat()
    assert request.headers["Authorization"] == "Bearer booking-token"


@pytest.mark.asyncio
async def test_accepts_bare_list_and_filters_inactive_staff() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json=[
                {"id": "s1", "name": "Robin", "email": "robin@salon.example"},
                {"id": "s2", "name": "Former", "email": "former@salon.example", "is_active": False},
            ],
        )

    staff = await _directory(handler).list_active_staff()

    assert [member.id for member in staff] == ["s1"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(503, text="maintenance"),
        httpx.Response(200, text="<html>"),
        httpx.Response(200, json={"data": {"unexpected": True}}),
        httpx.Response(200, json={"data": [{"id": "x", "starts_at": "2026-03-03T09:00:00"}]}),
    ],
)
async def test_unusable_responses_raise_directory_error(response) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return response

    with pytest.raises(DirectoryError):
        await _directory(handler).list_appointments(starts_after=START, starts_before=END)


@pytest.mark.asyncio
async def test_unreachable_booking_api_raises_directory_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(DirectoryError):
        await _directory(handler).list_active_staff()
