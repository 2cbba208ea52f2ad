# clinicbook/domain/appointment.py
"""
Appointment aggregate.

The model is frozen: callers outside the negotiation engine can read an
appointment but never set its status, slots or timestamps. New states are built
with ``evolve``, which re-runs the presence invariants below.
"""
from __future__ import annotations

import enum
import uuid
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from clinicbook.core.errors import ValidationError


class AppointmentStatus(str, enum.Enum):
    PENDING = "pending"
    COUNTER_OFFERED = "counter-offered"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({AppointmentStatus.REJECTED, AppointmentStatus.CANCELLED})


class Role(str, enum.Enum):
    PATIENT = "patient"
    CLINIC = "clinic"

    @property
    def counterpart(self) -> "Role":
        return Role.CLINIC if self is Role.PATIENT else Role.PATIENT


class ServiceType(str, enum.Enum):
    CONSULTATION = "consultation"
    CLEANING = "cleaning"
    PROCEDURE = "procedure"
    EMERGENCY = "emergency"
    FOLLOW_UP = "follow-up"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class Slot(_Frozen):
    """A wall-clock date/time in the clinic's timezone plus a length in minutes."""

    day: date
    start: time
    duration: int = Field(gt=0)

    def starts_at(self, tz: tzinfo) -> datetime:
        return datetime.combine(self.day, self.start, tzinfo=tz)

    def ends_at(self, tz: tzinfo) -> datetime:
        return self.starts_at(tz) + timedelta(minutes=self.duration)


class OriginalRequest(_Frozen):
    slot: Slot
    service_type: ServiceType
    reason: Optional[str] = None
    requested_at: datetime


class CounterOffer(_Frozen):
    slot: Slot
    message: Optional[str] = None
    offered_at: datetime


class ConfirmedDetails(_Frozen):
    slot: Slot
    source: Literal["original-request", "counter-offer"]
    confirmed_at: datetime


class Resolution(_Frozen):
    """Who closed the appointment (reject/cancel), and the slot on the table at that moment."""

    by: Role
    slot: Slot
    reason: Optional[str] = None
    at: datetime


class Message(_Frozen):
    author_role: Role
    author_id: str
    text: str = Field(min_length=1)
    sent_at: datetime


class Appointment(_Frozen):
    id: str
    patient_id: str = Field(min_length=1)
    clinic_id: str = Field(min_length=1)
    status: AppointmentStatus
    original_request: OriginalRequest
    counter_offer: Optional[CounterOffer] = None
    confirmed_details: Optional[ConfirmedDetails] = None
    resolution: Optional[Resolution] = None
    duration: int = Field(gt=0)
    messages: tuple[Message, ...] = ()
    last_activity_at: datetime
    created_at: datetime
    version: int = Field(ge=0)

    @model_validator(mode="after")
    def _check_invariants(self) -> "Appointment":
        if (self.counter_offer is not None) != (self.status is AppointmentStatus.COUNTER_OFFERED):
            raise ValueError("counter_offer must be present exactly when status is counter-offered")
        if (self.confirmed_details is not None) != (self.status is AppointmentStatus.CONFIRMED):
            raise ValueError("confirmed_details must be present exactly when status is confirmed")
        if (self.resolution is not None) != self.status.is_terminal:
            raise ValueError("resolution must be present exactly when status is terminal")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def scheduled_slot(self) -> Slot:
        """The slot currently on the table: closed, settled, proposed, else requested."""
        if self.resolution is not None:
            return self.resolution.slot
        if self.confirmed_details is not None:
            return self.confirmed_details.slot
        if self.counter_offer is not None:
            return self.counter_offer.slot
        return self.original_request.slot

    def party_id(self, role: Role) -> str:
        return self.patient_id if role is Role.PATIENT else self.clinic_id


def evolve(appointment: Appointment, **changes) -> Appointment:
    """Return a validated copy of ``appointment`` with ``changes`` applied."""
    values = {name: getattr(appointment, name) for name in Appointment.model_fields}
    values.update(changes)
    return Appointment(**values)


# ---------- Input parsing ----------

def as_utc(moment: datetime) -> datetime:
    """Normalize to aware UTC; naive datetimes are taken to be UTC already."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def parse_day(value: Union[date, str, None], field: str = "date") -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not value:
        raise ValidationError(f"{field} is required", field=field)
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        raise ValidationError(f"{field} must be YYYY-MM-DD, got {value!r}", field=field)


def parse_time(value: Union[time, str, None], field: str = "time") -> time:
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0, tzinfo=None)
    if not value:
        raise ValidationError(f"{field} is required", field=field)
    try:
        parsed = time.fromisoformat(str(value).strip())
    except ValueError:
        raise ValidationError(f"{field} must be HH:MM, got {value!r}", field=field)
    return parsed.replace(second=0, microsecond=0, tzinfo=None)


def parse_duration(value, field: str = "duration") -> int:
    try:
        minutes = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a whole number of minutes", field=field)
    if minutes <= 0:
        raise ValidationError(f"{field} must be positive, got {minutes}", field=field)
    return minutes


def ensure_not_past(day: date, now: datetime, tz: tzinfo, field: str = "date") -> None:
    today = as_utc(now).astimezone(tz).date()
    if day < today:
        raise ValidationError(f"{field} {day.isoformat()} is in the past", field=field)


# ---------- Construction ----------

def create_appointment(
    patient_id: str,
    clinic_id: str,
    requested_date: Union[date, str],
    requested_time: Union[time, str],
    service_type: Union[ServiceType, str],
    duration: int,
    *,
    now: datetime,
    tz: tzinfo,
    reason: Optional[str] = None,
    appointment_id: Optional[str] = None,
) -> Appointment:
    """Build a new pending appointment from a patient's booking request."""
    if not patient_id or not str(patient_id).strip():
        raise ValidationError("patient_id is required", field="patient_id")
    if not clinic_id or not str(clinic_id).strip():
        raise ValidationError("clinic_id is required", field="clinic_id")

    day = parse_day(requested_date, "requested_date")
    start = parse_time(requested_time, "requested_time")
    minutes = parse_duration(duration)
    ensure_not_past(day, now, tz, "requested_date")

    try:
        service = ServiceType(service_type)
    except ValueError:
        allowed = ", ".join(s.value for s in ServiceType)
        raise ValidationError(f"service_type must be one of: {allowed}", field="service_type")

    now = as_utc(now)
    return Appointment(
        id=appointment_id or uuid.uuid4().hex,
        patient_id=str(patient_id).strip(),
        clinic_id=str(clinic_id).strip(),
        status=AppointmentStatus.PENDING,
        original_request=OriginalRequest(
            slot=Slot(day=day, start=start, duration=minutes),
            service_type=service,
            reason=(reason or "").strip() or None,
            requested_at=now,
        ),
        duration=minutes,
        last_activity_at=now,
        created_at=now,
        version=0,
    )
