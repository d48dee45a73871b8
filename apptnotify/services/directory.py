from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Protocol

import httpx

from apptnotify.core.config import get_settings
from apptnotify.core.errors import DirectoryError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Appointment:
    id: str
    starts_at: datetime
    status: str
    service_name: str
    customer_name: str | None = None
    customer_email: str | None = None
    customer_phone: str | None = None
    staff_id: str | None = None
    staff_name: str | None = None


@dataclass(frozen=True)
class StaffMember:
    id: str
    name: str
    email: str | None = None
    is_active: bool = True


class AppointmentDirectory(Protocol):
    async def list_appointments(
        self,
        *,
        starts_after: datetime,
        starts_before: datetime,
        status: str | None = "confirmed",
    ) -> list[Appointment]:
        ...

    async def list_active_staff(self) -> list[StaffMember]:
        ...


def _parse_datetime(value: Any) -> datetime:
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        raise ValueError("appointment start time must carry a UTC offset")
    return parsed


def parse_appointment(item: dict[str, Any]) -> Appointment:
    customer = item.get("customer") or {}
    staff = item.get("staff") or {}
    service = item.get("service") or {}
    return Appointment(
        id=str(item["id"]),
        starts_at=_parse_datetime(item["starts_at"]),
        status=str(item.get("status") or "confirmed"),
        service_name=str(service.get("name") or item.get("service_name") or "appointment"),
        customer_name=customer.get("name"),
        customer_email=customer.get("email"),
        customer_phone=customer.get("phone"),
        staff_id=str(staff["id"]) if staff.get("id") else None,
        staff_name=staff.get("name"),
    )


def parse_staff(item: dict[str, Any]) -> StaffMember:
    return StaffMember(
        id=str(item["id"]),
        name=str(item.get("name") or ""),
        email=item.get("email"),
        is_active=bool(item.get("is_active", True)),
    )


class HttpAppointmentDirectory:
    """Booking service client over its JSON REST API.

    Transport failures, non-2xx responses and payloads that do not parse all
    surface as ``DirectoryError`` so producers can fail one run cleanly.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        token: str | None = None,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._base_url = (base_url or settings.booking_api_url).rstrip("/")
        self._token = token if token is not None else settings.booking_api_token
        self._timeout = timeout_s or settings.booking_api_timeout_s
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def _get(self, path: str, params: dict[str, str]) -> list[dict[str, Any]]:
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.get(path, params=params, headers=self._headers())
        except httpx.HTTPError as exc:
            logger.warning("booking_api_unreachable path=%s error=%s", path, exc.__class__.__name__)
            raise DirectoryError(f"Booking API request failed: {exc.__class__.__name__}") from exc
        if response.status_code >= 300:
            logger.warning("booking_api_error path=%s status=%s", path, response.status_code)
            raise DirectoryError(f"Booking API returned {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise DirectoryError("Booking API returned invalid JSON") from exc
        items = payload.get("data") if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            raise DirectoryError("Booking API returned an unexpected payload")
        return items

    async def list_appointments(
        self,
        *,
        starts_after: datetime,
        starts_before: datetime,
        status: str | None = "confirmed",
    ) -> list[Appointment]:
        params = {"starts_after": starts_after.isoformat(), "starts_before": starts_before.isoformat()}
        if status:
            params["status"] = status
        items = await self._get("/appointments", params)
        try:
            return [parse_appointment(item) for item in items]
        except (KeyError, TypeError, ValueError) as exc:
            raise DirectoryError("Booking API returned a malformed appointment") from exc

    async def list_active_staff(self) -> list[StaffMember]:
        items = await self._get("/staff", {"active": "true"})
        try:
            staff = [parse_staff(item) for item in items]
        except (KeyError, TypeError, ValueError) as exc:
            raise DirectoryError("Booking API returned a malformed staff member") from exc
        return [member for member in staff if member.is_active]


_directory: AppointmentDirectory | None = None


def get_appointment_directory() -> AppointmentDirectory:
    global _directory
    if _directory is None:
        _directory = HttpAppointmentDirectory()
    return _directory


def set_appointment_directory(directory: AppointmentDirectory | None) -> None:
    global _directory
    _directory = directory
