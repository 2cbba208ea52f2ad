#!/usr/bin/env python3
"""
Appointment service tests: load / decide / compare-and-save / notify.
"""

from datetime import date, datetime, time, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from clinicbook.core.errors import (
    ConcurrencyConflictError,
    ConfirmedAppointmentElapsedError,
    InvalidTransitionError,
    NotFoundError,
    UnauthorizedTransitionError,
    ValidationError,
)
from clinicbook.crud.appointment import InMemoryAppointmentRepository
from clinicbook.domain.appointment import AppointmentStatus, Role
from clinicbook.domain.commands import (
    Accept,
    AcceptCounterOffer,
    Actor,
    Cancel,
    CounterOfferCommand,
    Reject,
)
from clinicbook.services.appointments import AppointmentService
from clinicbook.services.notifications import NotificationEvent
from conftest import CLINIC_ID, NOW, PATIENT_ID, RecordingDispatcher


@pytest.fixture
def service(clock, dispatcher):
    return AppointmentService(
        InMemoryAppointmentRepository(),
        dispatcher,
        clock=clock,
        tz=timezone.utc,
    )


async def _book(service, patient):
    outcome = await service.request_appointment(
        patient,
        clinic_id=CLINIC_ID,
        requested_date="2025-06-01",
        requested_time="10:00",
        service_type="cleaning",
        duration=30,
        reason="Six month check-up",
    )
    return outcome.appointment


@pytest.mark.unit
class TestRequestAppointment:

    @pytest.mark.asyncio
    async def test_patient_request_notifies_clinic(self, service, patient, dispatcher):
        outcome = await service.request_appointment(
            patient,
            clinic_id=CLINIC_ID,
            requested_date=date(2025, 6, 1),
            requested_time=time(10, 0),
            service_type="cleaning",
        )

        assert outcome.appointment.status is AppointmentStatus.PENDING
        assert outcome.appointment.patient_id == PATIENT_ID
        assert outcome.event is NotificationEvent.APPOINTMENT_REQUESTED
        assert outcome.delivered is True
        assert [i.recipient_id for i in dispatcher.sent] == [CLINIC_ID]

        stored = await service.repository.load(outcome.appointment.id)
        assert stored == outcome.appointment

    @pytest.mark.asyncio
    async def test_clinic_cannot_request(self, service, clinic):
        with pytest.raises(UnauthorizedTransitionError):
            await service.request_appointment(
                clinic,
                clinic_id=CLINIC_ID,
                requested_date="2025-06-01",
                requested_time="10:00",
                service_type="cleaning",
            )

    @pytest.mark.asyncio
    async def test_invalid_request_stores_nothing(self, service, patient):
        with pytest.raises(ValidationError):
            await service.request_appointment(
                patient,
                clinic_id=CLINIC_ID,
                requested_date="2025-05-01",
                requested_time="10:00",
                service_type="cleaning",
            )
        assert list(await service.list_for_party(patient)) == []


@pytest.mark.unit
class TestSubmitTransition:

    @pytest.mark.asyncio
    async def test_negotiation_flow(self, service, patient, clinic, dispatcher):
        appt = await _book(service, patient)

        offered = await service.submit_transition(
            appt.id, 0, clinic,
            CounterOfferCommand(proposed_date=date(2025, 6, 1), proposed_time=time(14, 0)),
        )
        assert offered.appointment.status is AppointmentStatus.COUNTER_OFFERED
        assert offered.appointment.version == 1

        confirmed = await service.submit_transition(appt.id, 1, patient, AcceptCounterOffer())
        assert confirmed.appointment.status is AppointmentStatus.CONFIRMED
        assert confirmed.appointment.confirmed_details.slot.start == time(14, 0)

        events = [(i.event, i.recipient_role) for i in dispatcher.sent]
        assert events == [
            (NotificationEvent.APPOINTMENT_REQUESTED, Role.CLINIC),
            (NotificationEvent.COUNTER_OFFER_MADE, Role.PATIENT),
            (NotificationEvent.APPOINTMENT_CONFIRMED, Role.CLINIC),
        ]

    @pytest.mark.asyncio
    async def test_stale_version_is_rejected(self, service, patient, clinic):
        appt = await _book(service, patient)
        await service.submit_transition(appt.id, 0, clinic, Accept())

        with pytest.raises(ConcurrencyConflictError):
            await service.submit_transition(appt.id, 0, clinic, Reject())

        stored = await service.repository.load(appt.id)
        assert stored.status is AppointmentStatus.CONFIRMED
        assert stored.version == 1

    @pytest.mark.asyncio
    async def test_lost_race_at_save(self, service, patient, clinic):
        appt = await _book(service, patient)
        # Someone else commits between our load and our save
        repo = service.repository
        original_load = repo.load
        raced = []

        async def load_then_race(appointment_id):
            snapshot = await original_load(appointment_id)
            if not raced:
                raced.append(True)
                await repo.compare_and_save(
                    snapshot.model_copy(update={"version": 1}), expected_version=0
                )
            return snapshot

        repo.load = load_then_race
        with pytest.raises(ConcurrencyConflictError):
            await service.submit_transition(appt.id, 0, clinic, Accept())

    @pytest.mark.asyncio
    async def test_refused_transition_leaves_state(self, service, patient, dispatcher):
        appt = await _book(service, patient)
        sent_before = len(dispatcher.sent)

        with pytest.raises(UnauthorizedTransitionError):
            await service.submit_transition(appt.id, 0, patient, Accept())

        stored = await service.repository.load(appt.id)
        assert stored.version == 0
        assert len(dispatcher.sent) == sent_before

    @pytest.mark.asyncio
    async def test_unknown_appointment(self, service, clinic):
        with pytest.raises(NotFoundError):
            await service.submit_transition("missing", 0, clinic, Accept())

    @pytest.mark.asyncio
    async def test_dispatch_failure_does_not_roll_back(self, clock, patient, clinic):
        service = AppointmentService(
            InMemoryAppointmentRepository(), RecordingDispatcher(fail=True), clock=clock
        )
        appt = await _book(service, patient)

        outcome = await service.submit_transition(appt.id, 0, clinic, Accept())

        assert outcome.delivered is False
        stored = await service.repository.load(appt.id)
        assert stored.status is AppointmentStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_cancel_after_start(self, service, clock, patient, clinic):
        appt = await _book(service, patient)
        await service.submit_transition(appt.id, 0, clinic, Accept())

        clock.now = datetime(2025, 6, 1, 10, 5, tzinfo=timezone.utc)
        with pytest.raises(ConfirmedAppointmentElapsedError):
            await service.submit_transition(appt.id, 1, patient, Cancel())

    @pytest.mark.asyncio
    async def test_transition_uses_clock(self, service, clock, patient, clinic):
        appt = await _book(service, patient)
        clock.now = NOW + timedelta(hours=2)

        outcome = await service.submit_transition(appt.id, 0, clinic, Accept())
        assert outcome.appointment.last_activity_at == NOW + timedelta(hours=2)


@pytest.mark.unit
class TestReadsAndMessages:

    @pytest.mark.asyncio
    async def test_non_party_gets_not_found(self, service, patient):
        appt = await _book(service, patient)
        stranger = Actor(role=Role.PATIENT, party_id="patient-9")

        with pytest.raises(NotFoundError):
            await service.get_for_party(appt.id, stranger)

    @pytest.mark.asyncio
    async def test_list_for_party(self, service, patient, clinic):
        first = await _book(service, patient)
        await service.submit_transition(first.id, 0, clinic, Reject())
        await _book(service, patient)

        assert len(await service.list_for_party(clinic)) == 2
        rejected = await service.list_for_party(patient, status=AppointmentStatus.REJECTED)
        assert [a.id for a in rejected] == [first.id]

    @pytest.mark.asyncio
    async def test_post_message(self, service, patient, clinic):
        appt = await _book(service, patient)

        updated = await service.post_message(appt.id, clinic, "  Please arrive 10 minutes early  ")

        assert updated.version == 0
        assert updated.status is AppointmentStatus.PENDING
        assert updated.messages[-1].text == "Please arrive 10 minutes early"
        assert updated.messages[-1].author_role is Role.CLINIC

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["", "   ", "x" * 2001])
    async def test_post_message_validation(self, service, patient, text):
        appt = await _book(service, patient)
        with pytest.raises(ValidationError):
            await service.post_message(appt.id, patient, text)

    @pytest.mark.asyncio
    async def test_closed_appointment_refuses_messages(self, service, patient, clinic):
        appt = await _book(service, patient)
        await service.submit_transition(appt.id, 0, patient, Cancel())

        with pytest.raises(InvalidTransitionError):
            await service.post_message(appt.id, clinic, "Sorry to see you go")

    @pytest.mark.asyncio
    async def test_dispatcher_is_awaited(self, clock, patient):
        dispatcher = AsyncMock()
        service = AppointmentService(InMemoryAppointmentRepository(), dispatcher, clock=clock)

        await _book(service, patient)
        dispatcher.dispatch.assert_awaited_once()
