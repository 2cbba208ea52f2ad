# clinicbook/api/deps.py

from __future__ import annotations
from fastapi import Header, HTTPException

from clinicbook.core.config import settings
from clinicbook.core.logging import set_actor_context
from clinicbook.crud.appointment import SqlAppointmentRepository
from clinicbook.db.session import AsyncSessionLocal
from clinicbook.domain.appointment import Role
from clinicbook.domain.commands import Actor
from clinicbook.services.appointments import AppointmentService
from clinicbook.services.notifications import build_dispatcher


async def get_actor(
    x_actor_role: str = Header(..., description="patient or clinic, set by the session layer"),
    x_actor_id: str = Header(..., description="Patient or clinic id, set by the session layer"),
) -> Actor:
    # Identity is established upstream; we only check it is well-formed
    try:
        role = Role(x_actor_role.strip().lower())
    except ValueError:
        raise HTTPException(status_code=401, detail="X-Actor-Role must be 'patient' or 'clinic'")
    party_id = x_actor_id.strip()
    if not party_id:
        raise HTTPException(status_code=401, detail="X-Actor-Id is required")

    set_actor_context(role=role.value, party_id=party_id)
    return Actor(role=role, party_id=party_id)


def get_appointment_service() -> AppointmentService:
    repository = SqlAppointmentRepository(
        AsyncSessionLocal,
        retry_attempts=settings.SAVE_RETRY_ATTEMPTS,
        retry_backoff=settings.SAVE_RETRY_BACKOFF,
    )
    dispatcher = build_dispatcher(settings.NOTIFICATION_WEBHOOK_URL, settings.NOTIFICATION_TIMEOUT)
    return AppointmentService(repository, dispatcher, tz=settings.clinic_tz)
