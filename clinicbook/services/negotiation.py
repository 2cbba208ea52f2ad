# clinicbook/services/negotiation.py
"""
Negotiation engine: the only place an appointment changes state.

``apply_transition`` is a pure function of (appointment, actor, command,
expected version, now). It either returns the next appointment plus the
notification intents for the counterpart, or raises one of the typed errors in
``clinicbook.core.errors``. The input appointment is never modified.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Callable

from clinicbook.core.errors import (
    ConcurrencyConflictError,
    ConfirmedAppointmentElapsedError,
    InvalidTransitionError,
    UnauthorizedTransitionError,
    ValidationError,
)
from clinicbook.domain.appointment import (
    Appointment,
    AppointmentStatus,
    ConfirmedDetails,
    CounterOffer,
    Resolution,
    Role,
    Slot,
    as_utc,
    ensure_not_past,
    evolve,
    parse_day,
    parse_duration,
    parse_time,
)
from clinicbook.domain.commands import Actor, Command, CommandType
from clinicbook.services.notifications import (
    NotificationEvent,
    NotificationIntent,
    build_intents,
)

Effect = Callable[[Appointment, Actor, Command, datetime, tzinfo], dict]


@dataclass(frozen=True)
class Rule:
    roles: frozenset
    target: AppointmentStatus
    event: NotificationEvent
    effect: Effect


@dataclass(frozen=True)
class TransitionResult:
    appointment: Appointment
    event: NotificationEvent
    intents: list[NotificationIntent]


# ---------- Effects: return the field changes for the new state ----------

def _confirm_original(appointment, actor, command, now, tz) -> dict:
    slot = appointment.original_request.slot
    return {
        "confirmed_details": ConfirmedDetails(slot=slot, source="original-request", confirmed_at=now),
        "duration": slot.duration,
    }


def _confirm_counter_offer(appointment, actor, command, now, tz) -> dict:
    slot = appointment.counter_offer.slot
    return {
        "confirmed_details": ConfirmedDetails(slot=slot, source="counter-offer", confirmed_at=now),
        "counter_offer": None,
        "duration": slot.duration,
    }


def _propose(appointment, actor, command, now, tz) -> dict:
    if command.proposed_date is None or command.proposed_time is None:
        raise ValidationError("proposed_date and proposed_time are required", field="proposed_date")
    day = parse_day(command.proposed_date, "proposed_date")
    start = parse_time(command.proposed_time, "proposed_time")
    minutes = parse_duration(
        command.proposed_duration if command.proposed_duration is not None else appointment.duration,
        "proposed_duration",
    )
    ensure_not_past(day, now, tz, "proposed_date")
    slot = Slot(day=day, start=start, duration=minutes)
    if slot.starts_at(tz) <= now:
        raise ValidationError("proposed time has already passed", field="proposed_time")

    return {
        "counter_offer": CounterOffer(
            slot=slot,
            message=(command.message or "").strip() or None,
            offered_at=now,
        ),
        "confirmed_details": None,
        "duration": minutes,
    }


def _resolve(appointment, actor, command, now, tz) -> dict:
    reason = getattr(command, "reason", None)
    return {
        "resolution": Resolution(
            by=actor.role,
            slot=appointment.scheduled_slot,
            reason=(reason or "").strip() or None,
            at=now,
        ),
        "counter_offer": None,
        "confirmed_details": None,
    }


def _cancel_confirmed(appointment, actor, command, now, tz) -> dict:
    starts_at = appointment.confirmed_details.slot.starts_at(tz)
    if starts_at <= now:
        raise ConfirmedAppointmentElapsedError(
            f"appointment started at {starts_at.isoformat()} and can no longer be cancelled",
            appointment_id=appointment.id,
        )
    return _resolve(appointment, actor, command, now, tz)


PATIENT = frozenset({Role.PATIENT})
CLINIC = frozenset({Role.CLINIC})
EITHER = frozenset({Role.PATIENT, Role.CLINIC})

S = AppointmentStatus
C = CommandType
E = NotificationEvent

TRANSITIONS: dict[tuple[AppointmentStatus, CommandType], Rule] = {
    (S.PENDING, C.ACCEPT): Rule(CLINIC, S.CONFIRMED, E.APPOINTMENT_CONFIRMED, _confirm_original),
    (S.PENDING, C.COUNTER_OFFER): Rule(CLINIC, S.COUNTER_OFFERED, E.COUNTER_OFFER_MADE, _propose),
    (S.PENDING, C.REJECT): Rule(CLINIC, S.REJECTED, E.APPOINTMENT_REJECTED, _resolve),
    (S.PENDING, C.CANCEL): Rule(PATIENT, S.CANCELLED, E.APPOINTMENT_CANCELLED, _resolve),
    (S.COUNTER_OFFERED, C.ACCEPT_COUNTER_OFFER): Rule(PATIENT, S.CONFIRMED, E.APPOINTMENT_CONFIRMED, _confirm_counter_offer),
    (S.COUNTER_OFFERED, C.REJECT_COUNTER_OFFER): Rule(PATIENT, S.REJECTED, E.APPOINTMENT_REJECTED, _resolve),
    (S.COUNTER_OFFERED, C.CANCEL): Rule(PATIENT, S.CANCELLED, E.APPOINTMENT_CANCELLED, _resolve),
    (S.CONFIRMED, C.CANCEL): Rule(EITHER, S.CANCELLED, E.APPOINTMENT_CANCELLED, _cancel_confirmed),
    (S.CONFIRMED, C.RESCHEDULE): Rule(CLINIC, S.COUNTER_OFFERED, E.COUNTER_OFFER_MADE, _propose),
}


def allowed_commands(status: AppointmentStatus, role: Role) -> list[CommandType]:
    """Commands ``role`` may issue on an appointment in ``status`` (for UIs)."""
    return [cmd for (st, cmd), rule in TRANSITIONS.items() if st is status and role in rule.roles]


def apply_transition(
    appointment: Appointment,
    *,
    actor: Actor,
    command: Command,
    expected_version: int,
    now: datetime,
    tz: tzinfo = timezone.utc,
) -> TransitionResult:
    # Stale views are rejected before any other check
    if expected_version != appointment.version:
        raise ConcurrencyConflictError(
            f"appointment {appointment.id} is at version {appointment.version}, "
            f"command expected {expected_version}",
            appointment_id=appointment.id,
            current_version=appointment.version,
        )

    kind = CommandType(command.type)
    rule = TRANSITIONS.get((appointment.status, kind))
    if rule is None:
        raise InvalidTransitionError(
            f"cannot {kind.value} an appointment that is {appointment.status.value}",
            appointment_id=appointment.id,
        )

    if actor.role not in rule.roles:
        raise UnauthorizedTransitionError(
            f"{actor.role.value} may not {kind.value} a {appointment.status.value} appointment",
            appointment_id=appointment.id,
        )
    if actor.party_id != appointment.party_id(actor.role):
        raise UnauthorizedTransitionError(
            f"{actor.role.value} {actor.party_id} is not a party to this appointment",
            appointment_id=appointment.id,
        )

    now = as_utc(now)
    changes = rule.effect(appointment, actor, command, now, tz)
    updated = evolve(
        appointment,
        status=rule.target,
        last_activity_at=now,
        version=appointment.version + 1,
        **changes,
    )
    return TransitionResult(
        appointment=updated,
        event=rule.event,
        intents=build_intents(rule.event, updated, actor.role),
    )
