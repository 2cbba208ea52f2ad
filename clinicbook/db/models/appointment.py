# clinicbook/db/models/appointment.py

from __future__ import annotations
from datetime import datetime, timezone
import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship
from clinicbook.db.session import Base

# BIGINT ids don't autoincrement on SQLite
BigIntId = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


class AppointmentRecord(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        sa.Index("ix_appointments_patient_id_status", "patient_id", "status"),
        sa.Index("ix_appointments_clinic_id_status", "clinic_id", "status"),
        sa.Index("ix_appointments_last_activity_at", "last_activity_at"),
    )

    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    patient_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    clinic_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    status: Mapped[str] = mapped_column(sa.String(32), nullable=False, server_default="pending")

    # Value objects stored as JSON documents
    original_request: Mapped[dict] = mapped_column(sa.JSON, nullable=False)
    counter_offer: Mapped[dict | None] = mapped_column(sa.JSON)
    confirmed_details: Mapped[dict | None] = mapped_column(sa.JSON)
    resolution: Mapped[dict | None] = mapped_column(sa.JSON)

    duration: Mapped[int] = mapped_column(sa.Integer, nullable=False, server_default="30")
    version: Mapped[int] = mapped_column(sa.Integer, nullable=False, server_default="0")

    # Store as timezone-aware UTC
    last_activity_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc)
    )

    # Relations
    messages: Mapped[list["AppointmentMessageRecord"]] = relationship(
        back_populates="appointment",
        order_by="AppointmentMessageRecord.id",
        lazy="selectin",
    )


class AppointmentMessageRecord(Base):
    __tablename__ = "appointment_messages"
    __table_args__ = (
        sa.Index("ix_appointment_messages_appointment_id", "appointment_id"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    appointment_id: Mapped[str] = mapped_column(
        sa.String(64), sa.ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False
    )
    author_role: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    author_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    text: Mapped[str] = mapped_column(sa.Text, nullable=False)
    sent_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)

    appointment: Mapped[AppointmentRecord] = relationship(back_populates="messages")
