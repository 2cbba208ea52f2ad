# clinicbook/services/notifications.py
"""
Notification intents.

``build_intents`` turns an accepted transition into records describing who
should be told what. It never delivers anything; dispatchers below hand the
intents to a transport on a best-effort basis.
"""
from __future__ import annotations

import enum
from typing import Any, Iterable, Optional, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field

from clinicbook.core.logging import get_logger
from clinicbook.domain.appointment import Appointment, Role

logger = get_logger(__name__)


class NotificationEvent(str, enum.Enum):
    APPOINTMENT_REQUESTED = "AppointmentRequested"
    APPOINTMENT_CONFIRMED = "AppointmentConfirmed"
    COUNTER_OFFER_MADE = "CounterOfferMade"
    APPOINTMENT_REJECTED = "AppointmentRejected"
    APPOINTMENT_CANCELLED = "AppointmentCancelled"


class ActionType(str, enum.Enum):
    RESPOND_TO_REQUEST = "respond_to_request"
    CONFIRM_APPOINTMENT = "confirm_appointment"
    NONE = "none"


class NotificationIntent(BaseModel):
    model_config = ConfigDict(frozen=True)

    recipient_role: Role
    recipient_id: str
    event: NotificationEvent
    payload: dict[str, Any] = Field(default_factory=dict)
    title: str
    message: str
    action_required: bool = False
    action_type: ActionType = ActionType.NONE
    action_url: Optional[str] = None


# (event, recipient) -> (title, message template, action)
_COPY: dict[tuple[NotificationEvent, Role], tuple[str, str, ActionType]] = {
    (NotificationEvent.APPOINTMENT_REQUESTED, Role.CLINIC): (
        "New Appointment Request",
        "A patient has requested an appointment for {when}",
        ActionType.RESPOND_TO_REQUEST,
    ),
    (NotificationEvent.APPOINTMENT_CONFIRMED, Role.PATIENT): (
        "Appointment Confirmed",
        "Your appointment has been confirmed for {when}",
        ActionType.NONE,
    ),
    (NotificationEvent.APPOINTMENT_CONFIRMED, Role.CLINIC): (
        "Alternative Time Accepted",
        "The patient accepted the suggested time of {when}",
        ActionType.NONE,
    ),
    (NotificationEvent.COUNTER_OFFER_MADE, Role.PATIENT): (
        "Alternative Time Suggested",
        "The clinic has suggested an alternative time: {when}",
        ActionType.CONFIRM_APPOINTMENT,
    ),
    (NotificationEvent.APPOINTMENT_REJECTED, Role.PATIENT): (
        "Appointment Request Declined",
        "Unfortunately, the clinic cannot accommodate your requested appointment time",
        ActionType.NONE,
    ),
    (NotificationEvent.APPOINTMENT_REJECTED, Role.CLINIC): (
        "Alternative Time Declined",
        "The patient declined the suggested alternative time",
        ActionType.NONE,
    ),
    (NotificationEvent.APPOINTMENT_CANCELLED, Role.PATIENT): (
        "Appointment Cancelled",
        "Your appointment for {when} has been cancelled",
        ActionType.NONE,
    ),
    (NotificationEvent.APPOINTMENT_CANCELLED, Role.CLINIC): (
        "Appointment Cancelled",
        "The appointment for {when} has been cancelled",
        ActionType.NONE,
    ),
}


def _payload(appointment: Appointment) -> dict[str, Any]:
    slot = appointment.scheduled_slot
    return {
        "appointment_id": appointment.id,
        "status": appointment.status.value,
        "date": slot.day.isoformat(),
        "time": slot.start.strftime("%H:%M"),
        "duration": slot.duration,
    }


def build_intents(
    event: NotificationEvent,
    appointment: Appointment,
    actor_role: Role,
) -> list[NotificationIntent]:
    """One intent for the counterpart of whoever caused ``event``."""
    recipient = actor_role.counterpart
    title, template, action = _COPY[(event, recipient)]

    slot = appointment.scheduled_slot
    when = f"{slot.day.strftime('%a, %b %d %Y')} at {slot.start.strftime('%H:%M')}"
    message = template.format(when=when)

    # Reasons and clinic notes travel with the message, as in the inbox copy
    if event is NotificationEvent.COUNTER_OFFER_MADE and appointment.counter_offer.message:
        message = f"{message}. {appointment.counter_offer.message}"
    elif appointment.resolution is not None and appointment.resolution.reason:
        message = f"{message}. {appointment.resolution.reason}"

    return [
        NotificationIntent(
            recipient_role=recipient,
            recipient_id=appointment.party_id(recipient),
            event=event,
            payload=_payload(appointment),
            title=title,
            message=message,
            action_required=action is not ActionType.NONE,
            action_type=action,
            action_url=f"/appointments/{appointment.id}",
        )
    ]


# ---------- Delivery boundary ----------

class NotificationDispatcher(Protocol):
    async def dispatch(self, intents: Iterable[NotificationIntent]) -> None:
        ...


class LogNotificationDispatcher:
    """Writes intents to the log. Default when no transport is configured."""

    async def dispatch(self, intents: Iterable[NotificationIntent]) -> None:
        for intent in intents:
            logger.info(
                "notification_intent",
                notification_event=intent.event.value,
                recipient_role=intent.recipient_role.value,
                recipient_id=intent.recipient_id,
                appointment_id=intent.payload.get("appointment_id"),
            )


class WebhookNotificationDispatcher:
    """POSTs each intent as JSON to a delivery service (push/email/SMS fan-out)."""

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    async def dispatch(self, intents: Iterable[NotificationIntent]) -> None:
        intents = list(intents)
        if not intents:
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for intent in intents:
                resp = await client.post(self.url, json=intent.model_dump(mode="json"))
                resp.raise_for_status()
                logger.info(
                    "notification_delivered",
                    notification_event=intent.event.value,
                    recipient_id=intent.recipient_id,
                    status_code=resp.status_code,
                )


async def dispatch_best_effort(
    dispatcher: NotificationDispatcher,
    intents: list[NotificationIntent],
) -> bool:
    """
    Hand intents to ``dispatcher``. Delivery failures are logged and swallowed:
    the transition that produced the intents is already committed.
    """
    if not intents:
        return True
    try:
        await dispatcher.dispatch(intents)
        return True
    except Exception as e:
        logger.warning(
            "notification_dispatch_failed",
            error=str(e),
            error_type=type(e).__name__,
            intents=len(intents),
        )
        return False


def build_dispatcher(webhook_url: Optional[str] = None, timeout: float = 5.0) -> NotificationDispatcher:
    if webhook_url:
        return WebhookNotificationDispatcher(webhook_url, timeout=timeout)
    return LogNotificationDispatcher()
