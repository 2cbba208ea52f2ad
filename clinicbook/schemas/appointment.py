# clinicbook/schemas/appointment.py

from __future__ import annotations
from datetime import date, datetime, time
from typing import Optional

from pydantic import BaseModel, Field

from clinicbook.domain.appointment import (
    Appointment,
    AppointmentStatus,
    ConfirmedDetails,
    CounterOffer,
    Message,
    OriginalRequest,
    Resolution,
    Role,
    ServiceType,
)
from clinicbook.domain.commands import Command, CommandType
from clinicbook.services.negotiation import allowed_commands


class AppointmentCreate(BaseModel):
    clinic_id: str = Field(..., min_length=1)
    requested_date: date = Field(..., description="YYYY-MM-DD, clinic local date")
    requested_time: time = Field(..., description="HH:MM, clinic local time")
    service_type: ServiceType
    duration: int = Field(30, description="Minutes")
    reason: Optional[str] = Field(None, max_length=1000)


class TransitionRequest(BaseModel):
    expected_version: int = Field(..., ge=0, description="Version the caller last saw")
    command: Command


class MessageCreate(BaseModel):
    text: str = Field(..., min_length=1)


class AppointmentOut(BaseModel):
    id: str
    patient_id: str
    clinic_id: str
    status: AppointmentStatus
    original_request: OriginalRequest
    counter_offer: Optional[CounterOffer] = None
    confirmed_details: Optional[ConfirmedDetails] = None
    resolution: Optional[Resolution] = None
    duration: int
    messages: list[Message] = Field(default_factory=list)
    last_activity_at: datetime
    created_at: datetime
    version: int
    allowed_commands: list[CommandType] = Field(
        default_factory=list, description="Commands the requesting actor may issue next"
    )

    @classmethod
    def from_domain(cls, appointment: Appointment, viewer: Optional[Role] = None) -> "AppointmentOut":
        data = appointment.model_dump()
        data["messages"] = list(appointment.messages)
        if viewer is not None:
            data["allowed_commands"] = allowed_commands(appointment.status, viewer)
        return cls(**data)


class TransitionOut(BaseModel):
    status: AppointmentStatus
    version: int
    event: str
    notifications_delivered: bool
    appointment: AppointmentOut


class ErrorOut(BaseModel):
    error_kind: str
    message: str
