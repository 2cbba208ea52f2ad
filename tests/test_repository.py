#!/usr/bin/env python3
"""
Repository tests, run against both the in-memory and the SQLite-backed store.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from clinicbook.core.errors import ConcurrencyConflictError, NotFoundError, ValidationError
from clinicbook.crud.appointment import InMemoryAppointmentRepository
from clinicbook.domain.appointment import AppointmentStatus, Message, Role, create_appointment
from clinicbook.domain.commands import Accept, Actor, Reject
from clinicbook.services.negotiation import apply_transition
from conftest import CLINIC_ID, NOW, PATIENT_ID

UTC = timezone.utc
LATER = datetime(2025, 5, 21, 12, 0, tzinfo=UTC)
CLINIC = Actor(role=Role.CLINIC, party_id=CLINIC_ID)


def _accepted(appointment, now=LATER):
    return apply_transition(
        appointment,
        actor=CLINIC,
        command=Accept(),
        expected_version=appointment.version,
        now=now,
        tz=UTC,
    ).appointment


def _rejected(appointment, now=LATER):
    return apply_transition(
        appointment,
        actor=CLINIC,
        command=Reject(reason="closed for renovation"),
        expected_version=appointment.version,
        now=now,
        tz=UTC,
    ).appointment


def _request(appointment_id, patient_id=PATIENT_ID, clinic_id=CLINIC_ID, now=NOW):
    return create_appointment(
        patient_id, clinic_id, "2025-06-01", "10:00", "consultation", 30,
        now=now, tz=UTC, appointment_id=appointment_id,
    )


@pytest.mark.integration
class TestLoadAndAdd:

    @pytest.mark.asyncio
    async def test_add_then_load(self, repository, pending_appointment):
        await repository.add(pending_appointment)

        loaded = await repository.load("appt-1")
        assert loaded == pending_appointment

    @pytest.mark.asyncio
    async def test_load_missing(self, repository):
        with pytest.raises(NotFoundError):
            await repository.load("nope")

    @pytest.mark.asyncio
    async def test_duplicate_add(self, repository, pending_appointment):
        await repository.add(pending_appointment)
        with pytest.raises(ValidationError):
            await repository.add(pending_appointment)


@pytest.mark.integration
class TestCompareAndSave:
    """Optimistic concurrency on the version column"""

    @pytest.mark.asyncio
    async def test_saves_successor(self, repository, pending_appointment):
        await repository.add(pending_appointment)

        saved = await repository.compare_and_save(_accepted(pending_appointment), expected_version=0)

        assert saved.status is AppointmentStatus.CONFIRMED
        assert saved.version == 1
        loaded = await repository.load("appt-1")
        assert loaded == saved
        assert loaded.confirmed_details.source == "original-request"
        assert loaded.last_activity_at == LATER

    @pytest.mark.asyncio
    async def test_second_writer_on_same_version_loses(self, repository, pending_appointment):
        await repository.add(pending_appointment)
        first = _accepted(pending_appointment)
        second = _rejected(pending_appointment)

        await repository.compare_and_save(first, expected_version=0)
        with pytest.raises(ConcurrencyConflictError) as exc:
            await repository.compare_and_save(second, expected_version=0)

        assert exc.value.context["current_version"] == 1
        stored = await repository.load("appt-1")
        assert stored.status is AppointmentStatus.CONFIRMED
        assert stored.version == 1

    @pytest.mark.asyncio
    async def test_missing_appointment(self, repository, pending_appointment):
        with pytest.raises(NotFoundError):
            await repository.compare_and_save(_accepted(pending_appointment), expected_version=0)

    @pytest.mark.asyncio
    async def test_version_must_be_successor(self, repository, pending_appointment):
        await repository.add(pending_appointment)
        with pytest.raises(ValueError):
            await repository.compare_and_save(pending_appointment, expected_version=0)

    @pytest.mark.asyncio
    async def test_concurrent_writers_exactly_one_wins(self, pending_appointment):
        repository = InMemoryAppointmentRepository()
        await repository.add(pending_appointment)

        results = await asyncio.gather(
            repository.compare_and_save(_accepted(pending_appointment), expected_version=0),
            repository.compare_and_save(_rejected(pending_appointment), expected_version=0),
            return_exceptions=True,
        )

        conflicts = [r for r in results if isinstance(r, ConcurrencyConflictError)]
        winners = [r for r in results if not isinstance(r, Exception)]
        assert len(conflicts) == 1
        assert len(winners) == 1
        assert (await repository.load("appt-1")).version == 1


@pytest.mark.integration
class TestListByParty:

    @pytest.mark.asyncio
    async def test_most_recent_activity_first(self, repository):
        for i in range(3):
            await repository.add(_request(f"appt-{i}", now=NOW + timedelta(minutes=i)))
        await repository.add(_request("other", patient_id="patient-2", clinic_id="clinic-2"))

        rows = await repository.list_by_party(Role.PATIENT, PATIENT_ID)
        assert [a.id for a in rows] == ["appt-2", "appt-1", "appt-0"]

        # A transition moves an appointment to the top
        await repository.compare_and_save(_accepted(rows[-1]), expected_version=0)
        rows = await repository.list_by_party(Role.CLINIC, CLINIC_ID)
        assert [a.id for a in rows] == ["appt-0", "appt-2", "appt-1"]

    @pytest.mark.asyncio
    async def test_status_filter_and_limit(self, repository):
        for i in range(3):
            await repository.add(_request(f"appt-{i}", now=NOW + timedelta(minutes=i)))
        pending = await repository.load("appt-1")
        await repository.compare_and_save(_rejected(pending), expected_version=0)

        rejected = await repository.list_by_party(Role.CLINIC, CLINIC_ID, status=AppointmentStatus.REJECTED)
        assert [a.id for a in rejected] == ["appt-1"]
        assert rejected[0].resolution.reason == "closed for renovation"
        assert rejected[0].resolution.slot == pending.original_request.slot

        limited = await repository.list_by_party(Role.PATIENT, PATIENT_ID, limit=2)
        assert len(limited) == 2

    @pytest.mark.asyncio
    async def test_other_parties_see_nothing(self, repository, pending_appointment):
        await repository.add(pending_appointment)
        assert list(await repository.list_by_party(Role.CLINIC, "clinic-2")) == []


@pytest.mark.integration
class TestMessages:

    @pytest.mark.asyncio
    async def test_append_keeps_version(self, repository, pending_appointment):
        await repository.add(pending_appointment)
        message = Message(author_role=Role.PATIENT, author_id=PATIENT_ID, text="Is parking available?", sent_at=LATER)

        updated = await repository.append_message("appt-1", message)

        assert updated.version == 0
        assert [m.text for m in updated.messages] == ["Is parking available?"]
        assert updated.messages[0].sent_at == LATER

    @pytest.mark.asyncio
    async def test_messages_survive_transitions(self, repository, pending_appointment):
        await repository.add(pending_appointment)
        message = Message(author_role=Role.CLINIC, author_id=CLINIC_ID, text="See you soon", sent_at=LATER)
        await repository.append_message("appt-1", message)

        # The transition was computed from a view without the message
        saved = await repository.compare_and_save(_accepted(pending_appointment), expected_version=0)

        assert [m.text for m in saved.messages] == ["See you soon"]

    @pytest.mark.asyncio
    async def test_append_to_missing(self, repository):
        message = Message(author_role=Role.PATIENT, author_id=PATIENT_ID, text="hello", sent_at=LATER)
        with pytest.raises(NotFoundError):
            await repository.append_message("nope", message)
