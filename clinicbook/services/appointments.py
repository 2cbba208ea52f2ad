# clinicbook/services/appointments.py
"""
Appointment service: read-validate-write around the negotiation engine.

1) load the appointment from the repository
2) let the engine decide the next state (pure, may raise)
3) compare-and-save on the version the caller saw
4) hand notification intents to the dispatcher (best effort, after commit)

The business decision is never retried here. A lost race surfaces as
ConcurrencyConflictError so the caller can reload and ask the user again.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timezone, tzinfo
from typing import Callable, Optional, Sequence, Union

from clinicbook.core.errors import (
    ConcurrencyConflictError,
    InvalidTransitionError,
    NegotiationError,
    NotFoundError,
    UnauthorizedTransitionError,
    ValidationError,
)
from clinicbook.core.logging import get_logger
from clinicbook.crud.appointment import DEFAULT_LIST_LIMIT, AppointmentRepository
from clinicbook.domain.appointment import (
    Appointment,
    AppointmentStatus,
    Message,
    Role,
    ServiceType,
    as_utc,
    create_appointment,
)
from clinicbook.domain.commands import Actor, Command
from clinicbook.services.negotiation import apply_transition
from clinicbook.services.notifications import (
    LogNotificationDispatcher,
    NotificationDispatcher,
    NotificationEvent,
    NotificationIntent,
    build_intents,
    dispatch_best_effort,
)

logger = get_logger(__name__)

MAX_MESSAGE_LENGTH = 2000


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BookingOutcome:
    appointment: Appointment
    event: NotificationEvent
    intents: list[NotificationIntent]
    delivered: bool


class AppointmentService:
    def __init__(
        self,
        repository: AppointmentRepository,
        dispatcher: Optional[NotificationDispatcher] = None,
        *,
        clock: Callable[[], datetime] = utc_now,
        tz: tzinfo = timezone.utc,
    ):
        self.repository = repository
        self.dispatcher = dispatcher or LogNotificationDispatcher()
        self.clock = clock
        self.tz = tz

    async def request_appointment(
        self,
        actor: Actor,
        *,
        clinic_id: str,
        requested_date: Union[date, str],
        requested_time: Union[time, str],
        service_type: Union[ServiceType, str],
        duration: int = 30,
        reason: Optional[str] = None,
    ) -> BookingOutcome:
        """Patient-initiated booking request; notifies the clinic."""
        if actor.role is not Role.PATIENT:
            raise UnauthorizedTransitionError("only patients can request appointments")

        appointment = create_appointment(
            actor.party_id,
            clinic_id,
            requested_date,
            requested_time,
            service_type,
            duration,
            reason=reason,
            now=self.clock(),
            tz=self.tz,
        )
        await self.repository.add(appointment)

        event = NotificationEvent.APPOINTMENT_REQUESTED
        intents = build_intents(event, appointment, actor.role)
        logger.info(
            "appointment_requested",
            appointment_id=appointment.id,
            clinic_id=appointment.clinic_id,
            requested_date=appointment.original_request.slot.day.isoformat(),
        )
        delivered = await dispatch_best_effort(self.dispatcher, intents)
        return BookingOutcome(appointment, event, intents, delivered)

    async def submit_transition(
        self,
        appointment_id: str,
        expected_version: int,
        actor: Actor,
        command: Command,
    ) -> BookingOutcome:
        current = await self.repository.load(appointment_id)
        try:
            result = apply_transition(
                current,
                actor=actor,
                command=command,
                expected_version=expected_version,
                now=self.clock(),
                tz=self.tz,
            )
        except NegotiationError as e:
            logger.info(
                "transition_refused",
                appointment_id=appointment_id,
                command=command.type,
                error_kind=e.kind,
                status=current.status.value,
            )
            raise

        try:
            saved = await self.repository.compare_and_save(result.appointment, expected_version)
        except ConcurrencyConflictError:
            logger.warning(
                "transition_conflict",
                appointment_id=appointment_id,
                command=command.type,
                expected_version=expected_version,
            )
            raise
        logger.info(
            "transition_applied",
            appointment_id=appointment_id,
            command=command.type,
            from_status=current.status.value,
            to_status=saved.status.value,
            version=saved.version,
        )

        # Committed; delivery problems must not undo it
        delivered = await dispatch_best_effort(self.dispatcher, result.intents)
        return BookingOutcome(saved, result.event, result.intents, delivered)

    async def get_for_party(self, appointment_id: str, actor: Actor) -> Appointment:
        appointment = await self.repository.load(appointment_id)
        if appointment.party_id(actor.role) != actor.party_id:
            # Don't reveal other parties' appointments
            raise NotFoundError(f"appointment {appointment_id} not found", appointment_id=appointment_id)
        return appointment

    async def list_for_party(
        self,
        actor: Actor,
        status: Optional[AppointmentStatus] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> Sequence[Appointment]:
        return await self.repository.list_by_party(actor.role, actor.party_id, status, limit)

    async def post_message(self, appointment_id: str, actor: Actor, text: str) -> Appointment:
        """Append to the side channel; status and version are untouched."""
        text = (text or "").strip()
        if not text:
            raise ValidationError("message text is required", field="text")
        if len(text) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"message is longer than {MAX_MESSAGE_LENGTH} characters", field="text")

        appointment = await self.get_for_party(appointment_id, actor)
        if appointment.is_terminal:
            raise InvalidTransitionError(
                f"appointment {appointment_id} is {appointment.status.value} and closed to messages",
                appointment_id=appointment_id,
            )

        message = Message(
            author_role=actor.role,
            author_id=actor.party_id,
            text=text,
            sent_at=as_utc(self.clock()),
        )
        return await self.repository.append_message(appointment_id, message)
