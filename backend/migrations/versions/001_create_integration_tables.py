"""create integration connection, sync log and synced record tables

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB


# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create the integration tables."""

    op.create_table(
        'integration_connection',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False, comment='Owner, issued by the auth platform'),
        sa.Column('provider_id', sa.String(64), nullable=False),
        sa.Column('category', sa.String(32), nullable=False),
        sa.Column('credentials_encrypted', sa.LargeBinary, nullable=False, comment='AES-256-GCM credential blob'),
        sa.Column('settings', JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('sync_direction', sa.String(16), nullable=False, server_default='bidirectional'),
        sa.Column('sync_frequency', sa.String(16), nullable=False, server_default='hourly'),
        sa.Column('enabled', sa.Boolean, nullable=False, server_default='true'),
        sa.Column('single_connection', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('sync_status', sa.String(16), nullable=False, server_default='pending'),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_error', sa.Text, nullable=True),
        sa.Column('last_error_code', sa.String(64), nullable=True),
        sa.Column('last_health_check_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('stats', JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.CheckConstraint(
            "sync_status IN ('pending', 'connected', 'error')",
            name='ck_integration_connection_sync_status',
        ),
    )
    op.create_index(
        'idx_integration_connection_user',
        'integration_connection',
        ['user_id', sa.text('created_at DESC')],
    )
    op.create_index(
        'idx_integration_connection_user_provider',
        'integration_connection',
        ['user_id', 'provider_id', 'enabled'],
    )
    # At most one enabled connection per (user, provider) for single-connection providers
    op.create_index(
        'uq_integration_connection_active_single',
        'integration_connection',
        ['user_id', 'provider_id'],
        unique=True,
        postgresql_where=sa.text('enabled AND single_connection'),
    )

    op.create_table(
        'sync_log_entry',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column(
            'connection_id',
            UUID(as_uuid=True),
            sa.ForeignKey('integration_connection.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True, comment='NULL while the attempt is in progress'),
        sa.Column('outcome', sa.String(16), nullable=True, comment='succeeded | partial | failed (NULL while open)'),
        sa.Column('direction', sa.String(16), nullable=False),
        sa.Column('operations', JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('items_processed', sa.Integer, nullable=False, server_default='0'),
        sa.Column('items_failed', sa.Integer, nullable=False, server_default='0'),
        sa.Column('items_orphaned', sa.Integer, nullable=False, server_default='0'),
        sa.Column('error_code', sa.String(64), nullable=True),
        sa.Column('error_detail', sa.Text, nullable=True),
        sa.Column('details', JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('duration_ms', sa.Integer, nullable=True),
        sa.CheckConstraint(
            "outcome IS NULL OR outcome IN ('succeeded', 'partial', 'failed')",
            name='ck_sync_log_entry_outcome',
        ),
        sa.CheckConstraint(
            'items_processed >= 0 AND items_failed >= 0 AND items_orphaned >= 0',
            name='ck_sync_log_entry_counts',
        ),
    )
    op.create_index(
        'idx_sync_log_entry_connection',
        'sync_log_entry',
        ['connection_id', sa.text('started_at DESC')],
    )
    # At most one open attempt per connection; this index is the admission check
    op.create_index(
        'uq_sync_log_entry_open',
        'sync_log_entry',
        ['connection_id'],
        unique=True,
        postgresql_where=sa.text('finished_at IS NULL'),
    )

    # Finished entries are immutable; pruning and cascades still delete them
    op.execute("""
        CREATE OR REPLACE FUNCTION reject_finished_sync_log_update() RETURNS trigger AS $$
        BEGIN
            IF OLD.finished_at IS NOT NULL THEN
                RAISE EXCEPTION 'sync_log_entry % is finished and cannot be modified', OLD.id;
            END IF;
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql
    """)
    op.execute("""
        CREATE TRIGGER trg_sync_log_entry_immutable
        BEFORE UPDATE ON sync_log_entry
        FOR EACH ROW EXECUTE FUNCTION reject_finished_sync_log_update()
    """)

    op.create_table(
        'synced_record',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column(
            'connection_id',
            UUID(as_uuid=True),
            sa.ForeignKey('integration_connection.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('operation', sa.String(32), nullable=False),
        sa.Column('external_key', sa.String(255), nullable=False),
        sa.Column('payload', JSONB, nullable=False),
        sa.Column('content_hash', sa.String(64), nullable=False),
        sa.Column('remote_confirmed', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('orphaned_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index(
        'uq_synced_record_connection_key',
        'synced_record',
        ['connection_id', 'operation', 'external_key'],
        unique=True,
    )
    op.create_index('idx_synced_record_orphaned', 'synced_record', ['connection_id', 'orphaned_at'])


def downgrade() -> None:
    """Drop the integration tables."""
    op.drop_index('idx_synced_record_orphaned', table_name='synced_record')
    op.drop_index('uq_synced_record_connection_key', table_name='synced_record')
    op.drop_table('synced_record')

    op.execute('DROP TRIGGER IF EXISTS trg_sync_log_entry_immutable ON sync_log_entry')
    op.execute('DROP FUNCTION IF EXISTS reject_finished_sync_log_update()')
    op.drop_index('uq_sync_log_entry_open', table_name='sync_log_entry')
    op.drop_index('idx_sync_log_entry_connection', table_name='sync_log_entry')
    op.drop_table('sync_log_entry')

    op.drop_index('uq_integration_connection_active_single', table_name='integration_connection')
    op.drop_index('idx_integration_connection_user_provider', table_name='integration_connection')
    op.drop_index('idx_integration_connection_user', table_name='integration_connection')
    op.drop_table('integration_connection')
