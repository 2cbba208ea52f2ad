# clinicbook/api/routes/appointments.py

from __future__ import annotations
from typing import List, Optional
from fastapi import APIRouter, Depends, Query

from clinicbook.api.deps import get_actor, get_appointment_service
from clinicbook.domain.appointment import AppointmentStatus
from clinicbook.domain.commands import Actor
from clinicbook.schemas.appointment import (
    AppointmentCreate,
    AppointmentOut,
    ErrorOut,
    MessageCreate,
    TransitionOut,
    TransitionRequest,
)
from clinicbook.services.appointments import AppointmentService

router = APIRouter(prefix="/appointments", tags=["appointments"])

ERROR_RESPONSES = {
    403: {"model": ErrorOut},
    404: {"model": ErrorOut},
    409: {"model": ErrorOut},
    412: {"model": ErrorOut, "description": "Stale version: reload and retry"},
    422: {"model": ErrorOut},
}


@router.post("", response_model=AppointmentOut, status_code=201, responses=ERROR_RESPONSES)
async def request_appointment(
    payload: AppointmentCreate,
    actor: Actor = Depends(get_actor),
    service: AppointmentService = Depends(get_appointment_service),
):
    outcome = await service.request_appointment(
        actor,
        clinic_id=payload.clinic_id,
        requested_date=payload.requested_date,
        requested_time=payload.requested_time,
        service_type=payload.service_type,
        duration=payload.duration,
        reason=payload.reason,
    )
    return AppointmentOut.from_domain(outcome.appointment, actor.role)


@router.get("", response_model=List[AppointmentOut])
async def list_appointments(
    status: Optional[AppointmentStatus] = Query(None, description="Filter by status"),
    limit: int = Query(100, ge=1, le=500),
    actor: Actor = Depends(get_actor),
    service: AppointmentService = Depends(get_appointment_service),
):
    rows = await service.list_for_party(actor, status=status, limit=limit)
    return [AppointmentOut.from_domain(r, actor.role) for r in rows]


@router.get("/{appointment_id}", response_model=AppointmentOut, responses=ERROR_RESPONSES)
async def get_appointment(
    appointment_id: str,
    actor: Actor = Depends(get_actor),
    service: AppointmentService = Depends(get_appointment_service),
):
    appointment = await service.get_for_party(appointment_id, actor)
    return AppointmentOut.from_domain(appointment, actor.role)


@router.post("/{appointment_id}/transitions", response_model=TransitionOut, responses=ERROR_RESPONSES)
async def submit_transition(
    appointment_id: str,
    payload: TransitionRequest,
    actor: Actor = Depends(get_actor),
    service: AppointmentService = Depends(get_appointment_service),
):
    outcome = await service.submit_transition(
        appointment_id,
        payload.expected_version,
        actor,
        payload.command,
    )
    return TransitionOut(
        status=outcome.appointment.status,
        version=outcome.appointment.version,
        event=outcome.event.value,
        notifications_delivered=outcome.delivered,
        appointment=AppointmentOut.from_domain(outcome.appointment, actor.role),
    )


@router.post("/{appointment_id}/messages", response_model=AppointmentOut, status_code=201, responses=ERROR_RESPONSES)
async def post_message(
    appointment_id: str,
    payload: MessageCreate,
    actor: Actor = Depends(get_actor),
    service: AppointmentService = Depends(get_appointment_service),
):
    appointment = await service.post_message(appointment_id, actor, payload.text)
    return AppointmentOut.from_domain(appointment, actor.role)
