"""Create slots, tokens and configuration tables

Revision ID: 5f2a9c1d7e30
Revises:
Create Date: 2026-10-16 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '5f2a9c1d7e30'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

json_type = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def upgrade() -> None:
    # Slots: capacity counter and token-number sequence per doctor window
    op.create_table('slots',
        sa.Column('slot_id', sa.String(length=64), nullable=False),
        sa.Column('doctor_id', sa.String(length=64), nullable=False),
        sa.Column('specialty', sa.String(length=100), nullable=True),
        sa.Column('department', sa.String(length=100), nullable=True),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('start_time', sa.String(length=5), nullable=False),
        sa.Column('end_time', sa.String(length=5), nullable=False),
        sa.Column('max_capacity', sa.Integer(), nullable=False),
        sa.Column('current_allocation', sa.Integer(), nullable=False),
        sa.Column('emergency_reserved', sa.Integer(), nullable=False),
        sa.Column('last_token_number', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('slot_id'),
        sa.CheckConstraint('max_capacity >= 1', name='ck_slots_max_capacity'),
        sa.CheckConstraint(
            'current_allocation >= 0 AND current_allocation <= max_capacity',
            name='ck_slots_current_allocation',
        ),
        sa.CheckConstraint(
            'emergency_reserved >= 0 AND emergency_reserved <= max_capacity',
            name='ck_slots_emergency_reserved',
        ),
        sa.CheckConstraint('last_token_number >= 0', name='ck_slots_last_token_number'),
    )
    op.create_index('ix_slots_doctor_date', 'slots', ['doctor_id', 'date'])
    op.create_index('ix_slots_specialty_date', 'slots', ['specialty', 'date'])

    # Tokens: numbered patient claims on a slot
    op.create_table('tokens',
        sa.Column('token_id', sa.String(length=64), nullable=False),
        sa.Column('patient_id', sa.String(length=64), nullable=False),
        sa.Column('doctor_id', sa.String(length=64), nullable=False),
        sa.Column('slot_id', sa.String(length=64), nullable=False),
        sa.Column('token_number', sa.Integer(), nullable=False),
        sa.Column('source', sa.String(length=20), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('priority_level', sa.String(length=20), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('allocation_method', sa.String(length=20), nullable=False),
        sa.Column('metadata', json_type, nullable=False),
        sa.Column('cancellation_reason', sa.String(length=50), nullable=True),
        sa.Column('cancelled_by', sa.String(length=64), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(), nullable=True),
        sa.Column('consultation_started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['slot_id'], ['slots.slot_id'], ),
        sa.PrimaryKeyConstraint('token_id'),
        sa.UniqueConstraint('slot_id', 'token_number', name='uq_tokens_slot_token_number'),
    )
    op.create_index('ix_tokens_patient', 'tokens', ['patient_id'])
    op.create_index('ix_tokens_slot_status', 'tokens', ['slot_id', 'status'])
    op.create_index('ix_tokens_status_created', 'tokens', ['status', 'created_at'])

    # Business configuration overrides
    op.create_table('configuration',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('category', sa.String(length=50), nullable=False),
        sa.Column('key', sa.String(length=100), nullable=False),
        sa.Column('value', json_type, nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('updated_by', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('category', 'key', name='uq_configuration_category_key'),
    )


def downgrade() -> None:
    op.drop_table('configuration')
    op.drop_index('ix_tokens_status_created', table_name='tokens')
    op.drop_index('ix_tokens_slot_status', table_name='tokens')
    op.drop_index('ix_tokens_patient', table_name='tokens')
    op.drop_table('tokens')
    op.drop_index('ix_slots_specialty_date', table_name='slots')
    op.drop_index('ix_slots_doctor_date', table_name='slots')
    op.drop_table('slots')
