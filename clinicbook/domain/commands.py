# clinicbook/domain/commands.py
"""Transition commands and the actor issuing them."""
from __future__ import annotations

import enum
from datetime import date, time
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from clinicbook.domain.appointment import Role


class CommandType(str, enum.Enum):
    ACCEPT = "accept"
    COUNTER_OFFER = "counter-offer"
    REJECT = "reject"
    CANCEL = "cancel"
    ACCEPT_COUNTER_OFFER = "accept-counter-offer"
    REJECT_COUNTER_OFFER = "reject-counter-offer"
    RESCHEDULE = "reschedule"


class Actor(BaseModel):
    """Identity supplied by the session layer; trusted as-is."""

    model_config = ConfigDict(frozen=True)

    role: Role
    party_id: str = Field(min_length=1)


class _Command(BaseModel):
    model_config = ConfigDict(frozen=True)


class Accept(_Command):
    type: Literal["accept"] = "accept"


class _Proposal(_Command):
    # Optional at the schema level so a missing value surfaces as a negotiation
    # ValidationError from the engine guard.
    proposed_date: Optional[date] = None
    proposed_time: Optional[time] = None
    proposed_duration: Optional[int] = None
    message: Optional[str] = None


class CounterOfferCommand(_Proposal):
    type: Literal["counter-offer"] = "counter-offer"


class Reschedule(_Proposal):
    type: Literal["reschedule"] = "reschedule"


class Reject(_Command):
    type: Literal["reject"] = "reject"
    reason: Optional[str] = None


class Cancel(_Command):
    type: Literal["cancel"] = "cancel"
    reason: Optional[str] = None


class AcceptCounterOffer(_Command):
    type: Literal["accept-counter-offer"] = "accept-counter-offer"


class RejectCounterOffer(_Command):
    type: Literal["reject-counter-offer"] = "reject-counter-offer"
    reason: Optional[str] = None


Command = Annotated[
    Union[
        Accept,
        CounterOfferCommand,
        Reject,
        Cancel,
        AcceptCounterOffer,
        RejectCounterOffer,
        Reschedule,
    ],
    Field(discriminator="type"),
]

command_adapter: TypeAdapter[Command] = TypeAdapter(Command)


def parse_command(payload: dict) -> Command:
    """Build a command from a ``{"type": ..., ...}`` mapping."""
    return command_adapter.validate_python(payload)
