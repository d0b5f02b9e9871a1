"""Add sync version counters and change log

Revision ID: 0001_sync_tables
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '0001_sync_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Per-entity-type version counters
    op.create_table('sync_versions',
        sa.Column('entity_type', sa.String(length=50), nullable=False),
        sa.Column('current_version', sa.Integer(), server_default='0', nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('entity_type')
    )

    # Change log (append-only, nothing references it)
    op.create_table('sync_changes',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('entity_type', sa.String(length=50), nullable=False),
        sa.Column('entity_id', sa.String(length=50), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('payload', sa.JSON().with_variant(postgresql.JSONB(), 'postgresql'), nullable=False),
        sa.Column('actor_id', sa.String(length=50), server_default='system', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('entity_type', 'version', name='uq_sync_changes_entity_version')
    )
    op.create_index('idx_sync_changes_entity_version', 'sync_changes', ['entity_type', 'version'], unique=False)
    op.create_index(op.f('ix_sync_changes_created_at'), 'sync_changes', ['created_at'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_sync_changes_created_at'), table_name='sync_changes')
    op.drop_index('idx_sync_changes_entity_version', table_name='sync_changes')
    op.drop_table('sync_changes')
    op.drop_table('sync_versions')
