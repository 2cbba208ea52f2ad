# clinicbook/crud/appointment.py
"""
Appointment persistence.

Every write after creation goes through ``compare_and_save``, a compare-and-swap
keyed on ``version``: of two writers racing on the same expected version,
exactly one wins and the other gets ``ConcurrencyConflictError``.
"""
from __future__ import annotations

import asyncio
from typing import Optional, Protocol, Sequence

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clinicbook.core.errors import ConcurrencyConflictError, NotFoundError, ValidationError
from clinicbook.core.logging import get_logger
from clinicbook.db.models.appointment import AppointmentMessageRecord, AppointmentRecord
from clinicbook.domain.appointment import (
    Appointment,
    AppointmentStatus,
    Message,
    Role,
    as_utc,
    evolve,
)

logger = get_logger(__name__)

DEFAULT_LIST_LIMIT = 100


class AppointmentRepository(Protocol):
    async def load(self, appointment_id: str) -> Appointment: ...

    async def add(self, appointment: Appointment) -> Appointment: ...

    async def compare_and_save(self, appointment: Appointment, expected_version: int) -> Appointment: ...

    async def list_by_party(
        self,
        role: Role,
        party_id: str,
        status: Optional[AppointmentStatus] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> Sequence[Appointment]: ...

    async def append_message(self, appointment_id: str, message: Message) -> Appointment: ...


def _check_successor(appointment: Appointment, expected_version: int) -> None:
    if appointment.version != expected_version + 1:
        raise ValueError(
            f"appointment version {appointment.version} is not the successor of {expected_version}"
        )


def _activity_key(appointment: Appointment):
    # Most recently active first; id keeps ties stable
    return (appointment.last_activity_at, appointment.id)


# ---------- In-memory ----------

class InMemoryAppointmentRepository:
    """Dict-backed repository; the lock makes compare-and-save atomic per process."""

    def __init__(self):
        self._items: dict[str, Appointment] = {}
        self._lock = asyncio.Lock()

    async def load(self, appointment_id: str) -> Appointment:
        try:
            return self._items[appointment_id]
        except KeyError:
            raise NotFoundError(f"appointment {appointment_id} not found", appointment_id=appointment_id)

    async def add(self, appointment: Appointment) -> Appointment:
        async with self._lock:
            if appointment.id in self._items:
                raise ValidationError(f"appointment {appointment.id} already exists", field="id")
            self._items[appointment.id] = appointment
        return appointment

    async def compare_and_save(self, appointment: Appointment, expected_version: int) -> Appointment:
        _check_successor(appointment, expected_version)
        async with self._lock:
            current = await self.load(appointment.id)
            if current.version != expected_version:
                raise ConcurrencyConflictError(
                    f"appointment {appointment.id} changed (version {current.version}, expected {expected_version})",
                    appointment_id=appointment.id,
                    current_version=current.version,
                )
            # Messages live outside the state machine; keep whatever is stored
            stored = evolve(appointment, messages=current.messages)
            self._items[appointment.id] = stored
        return stored

    async def list_by_party(
        self,
        role: Role,
        party_id: str,
        status: Optional[AppointmentStatus] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> Sequence[Appointment]:
        rows = [
            a for a in self._items.values()
            if a.party_id(role) == party_id and (status is None or a.status is status)
        ]
        rows.sort(key=_activity_key, reverse=True)
        return rows[:limit]

    async def append_message(self, appointment_id: str, message: Message) -> Appointment:
        async with self._lock:
            current = await self.load(appointment_id)
            updated = evolve(current, messages=current.messages + (message,))
            self._items[appointment_id] = updated
        return updated


# ---------- SQLAlchemy ----------

def _to_domain(record: AppointmentRecord) -> Appointment:
    return Appointment.model_validate({
        "id": record.id,
        "patient_id": record.patient_id,
        "clinic_id": record.clinic_id,
        "status": record.status,
        "original_request": record.original_request,
        "counter_offer": record.counter_offer,
        "confirmed_details": record.confirmed_details,
        "resolution": record.resolution,
        "duration": record.duration,
        "messages": [
            {
                "author_role": m.author_role,
                "author_id": m.author_id,
                "text": m.text,
                "sent_at": as_utc(m.sent_at),
            }
            for m in record.messages
        ],
        # SQLite hands back naive datetimes; everything is stored as UTC
        "last_activity_at": as_utc(record.last_activity_at),
        "created_at": as_utc(record.created_at),
        "version": record.version,
    })


def _state_columns(appointment: Appointment) -> dict:
    """Columns a transition may change; ids and created_at never move."""
    data = appointment.model_dump(mode="json", include={
        "original_request", "counter_offer", "confirmed_details", "resolution",
    })
    return {
        "status": appointment.status.value,
        "original_request": data["original_request"],
        "counter_offer": data["counter_offer"],
        "confirmed_details": data["confirmed_details"],
        "resolution": data["resolution"],
        "duration": appointment.duration,
        "version": appointment.version,
        "last_activity_at": appointment.last_activity_at,
    }


class SqlAppointmentRepository:
    """Repository over SQLAlchemy async sessions; one short session per call."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        retry_attempts: int = 3,
        retry_backoff: float = 0.05,
    ):
        self.session_factory = session_factory
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff = retry_backoff

    async def _get_record(self, db: AsyncSession, appointment_id: str) -> AppointmentRecord:
        record = await db.get(AppointmentRecord, appointment_id, populate_existing=True)
        if record is None:
            raise NotFoundError(f"appointment {appointment_id} not found", appointment_id=appointment_id)
        return record

    async def load(self, appointment_id: str) -> Appointment:
        async with self.session_factory() as db:
            return _to_domain(await self._get_record(db, appointment_id))

    async def add(self, appointment: Appointment) -> Appointment:
        record = AppointmentRecord(
            id=appointment.id,
            patient_id=appointment.patient_id,
            clinic_id=appointment.clinic_id,
            created_at=appointment.created_at,
            **_state_columns(appointment),
        )
        async with self.session_factory() as db:
            db.add(record)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise ValidationError(f"appointment {appointment.id} already exists", field="id")
        return appointment

    async def compare_and_save(self, appointment: Appointment, expected_version: int) -> Appointment:
        _check_successor(appointment, expected_version)

        # Only transient write failures are retried; a lost race is final
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._compare_and_save_once(appointment, expected_version)
            except OperationalError as e:
                if attempt >= self.retry_attempts:
                    raise
                logger.warning(
                    "compare_and_save_retry",
                    appointment_id=appointment.id,
                    attempt=attempt,
                    error=str(e),
                )
                await asyncio.sleep(self.retry_backoff * (2 ** (attempt - 1)))

    async def _compare_and_save_once(self, appointment: Appointment, expected_version: int) -> Appointment:
        async with self.session_factory() as db:
            result = await db.execute(
                sa.update(AppointmentRecord)
                .where(
                    AppointmentRecord.id == appointment.id,
                    AppointmentRecord.version == expected_version,
                )
                .values(**_state_columns(appointment))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                current = await db.scalar(
                    sa.select(AppointmentRecord.version).where(AppointmentRecord.id == appointment.id)
                )
                if current is None:
                    raise NotFoundError(f"appointment {appointment.id} not found", appointment_id=appointment.id)
                raise ConcurrencyConflictError(
                    f"appointment {appointment.id} changed (version {current}, expected {expected_version})",
                    appointment_id=appointment.id,
                    current_version=current,
                )
            await db.commit()
        return await self.load(appointment.id)

    async def list_by_party(
        self,
        role: Role,
        party_id: str,
        status: Optional[AppointmentStatus] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> Sequence[Appointment]:
        column = AppointmentRecord.patient_id if role is Role.PATIENT else AppointmentRecord.clinic_id
        q = sa.select(AppointmentRecord).where(column == party_id)
        if status is not None:
            q = q.where(AppointmentRecord.status == status.value)
        q = q.order_by(AppointmentRecord.last_activity_at.desc(), AppointmentRecord.id.desc()).limit(limit)
        async with self.session_factory() as db:
            res = await db.execute(q)
            return [_to_domain(r) for r in res.scalars().all()]

    async def append_message(self, appointment_id: str, message: Message) -> Appointment:
        async with self.session_factory() as db:
            await self._get_record(db, appointment_id)
            db.add(AppointmentMessageRecord(
                appointment_id=appointment_id,
                author_role=message.author_role.value,
                author_id=message.author_id,
                text=message.text,
                sent_at=message.sent_at,
            ))
            await db.commit()
        return await self.load(appointment_id)
