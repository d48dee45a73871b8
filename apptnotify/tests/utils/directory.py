from __future__ import annotations

from datetime import datetime

from apptnotify.services.directory import Appointment, StaffMember


class StaticAppointmentDirectory:
    # In-memory booking data filtered the way the booking API filters it.

    def __init__(self, *, appointments: list[Appointment] | None = None, staff: list[StaffMember] | None = None):
        self.appointments = list(appointments or [])
        self.staff = list(staff or [])
        self.queries: list[tuple[datetime, datetime]] = []

    async def list_appointments(
        self,
        *,
        starts_after: datetime,
        starts_before: datetime,
        status: str | None = "confirmed",
    ) -> list[Appointment]:
        self.queries.append((starts_after, starts_before))
        return [
            item
            for item in self.appointments
            if starts_after <= item.starts_at <= starts_before and (status is None or item.status == status)
        ]

    async def list_active_staff(self) -> list[StaffMember]:
        return [member for member in self.staff if member.is_active]
