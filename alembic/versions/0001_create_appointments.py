"""create appointments and appointment_messages

Revision ID: 0001_create_appointments
Revises:
Create Date: 2025-05-20 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_create_appointments'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'appointments',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('patient_id', sa.String(64), nullable=False),
        sa.Column('clinic_id', sa.String(64), nullable=False),
        sa.Column('status', sa.String(32), nullable=False, server_default='pending'),
        sa.Column('original_request', sa.JSON(), nullable=False),
        sa.Column('counter_offer', sa.JSON(), nullable=True),
        sa.Column('confirmed_details', sa.JSON(), nullable=True),
        sa.Column('resolution', sa.JSON(), nullable=True),
        sa.Column('duration', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_activity_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_appointments_patient_id_status', 'appointments', ['patient_id', 'status'])
    op.create_index('ix_appointments_clinic_id_status', 'appointments', ['clinic_id', 'status'])
    op.create_index('ix_appointments_last_activity_at', 'appointments', ['last_activity_at'])

    op.create_table(
        'appointment_messages',
        sa.Column('id', sa.BigInteger().with_variant(sa.Integer(), 'sqlite'), primary_key=True, autoincrement=True),
        sa.Column('appointment_id', sa.String(64), sa.ForeignKey('appointments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('author_role', sa.String(16), nullable=False),
        sa.Column('author_id', sa.String(64), nullable=False),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_appointment_messages_appointment_id', 'appointment_messages', ['appointment_id'])


def downgrade() -> None:
    op.drop_index('ix_appointment_messages_appointment_id', table_name='appointment_messages')
    op.drop_table('appointment_messages')
    op.drop_index('ix_appointments_last_activity_at', table_name='appointments')
    op.drop_index('ix_appointments_clinic_id_status', table_name='appointments')
    op.drop_index('ix_appointments_patient_id_status', table_name='appointments')
    op.drop_table('appointments')
