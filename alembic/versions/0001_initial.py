from __future__ import annotations
from alembic import op
import sqlalchemy as sa

revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None

MESSAGE_ID = sa.Numeric(20, 0)


def upgrade():
    op.create_table(
        'data_source',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('topic_name', sa.String(255), nullable=False),
        sa.Column('data_type', sa.String(64), nullable=False),
    )
    op.create_index('ix_data_source_topic_name', 'data_source', ['topic_name'], unique=True)
    category = op.create_table(
        'category',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('name', sa.String(128), nullable=False, unique=True),
    )
    qualifier = op.create_table(
        'qualifier',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('description', sa.String(64), nullable=False, unique=True),
    )
    status = op.create_table(
        'status',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('description', sa.String(64), nullable=False, unique=True),
    )
    op.create_table(
        'event',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('message_id', MESSAGE_ID, nullable=False),
        sa.Column('data_source_id', sa.Integer, sa.ForeignKey('data_source.id'), nullable=False),
        sa.Column('raw_event', sa.LargeBinary, nullable=True),
        sa.Column('partition', sa.Integer, nullable=True),
        sa.Column('offset', sa.BigInteger, nullable=True),
    )
    op.create_index('ix_event_data_source_id', 'event', ['data_source_id'])
    op.create_index('ux_event_message_data_source', 'event', ['message_id', 'data_source_id'], unique=True)
    op.create_table(
        'kafka_metadata',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('data_source_id', sa.Integer, sa.ForeignKey('data_source.id'), nullable=False),
        sa.Column('partition', sa.Integer, nullable=False),
        sa.Column('offsets', sa.BigInteger, nullable=False),
        sa.Column('first_message_id', MESSAGE_ID, nullable=False),
        sa.Column('last_message_id', MESSAGE_ID, nullable=False),
    )
    op.create_index('ix_kafka_metadata_data_source_id', 'kafka_metadata', ['data_source_id'])
    op.create_index('ux_kafka_metadata_position', 'kafka_metadata', ['data_source_id', 'partition', 'offsets'], unique=True)
    op.create_index('ix_kafka_metadata_range', 'kafka_metadata', ['data_source_id', 'first_message_id', 'last_message_id'])
    op.create_table(
        'cluster',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('cluster_id', sa.String(255), nullable=True),
        sa.Column('category_id', sa.Integer, sa.ForeignKey('category.id'), nullable=False),
        sa.Column('detector_id', sa.Integer, nullable=False),
        sa.Column('event_ids', sa.LargeBinary, nullable=True),
        sa.Column('raw_event_id', sa.Integer, sa.ForeignKey('event.id'), nullable=True),
        sa.Column('qualifier_id', sa.Integer, sa.ForeignKey('qualifier.id'), nullable=False),
        sa.Column('status_id', sa.Integer, sa.ForeignKey('status.id'), nullable=False),
        sa.Column('signature', sa.Text, nullable=False),
        sa.Column('size', sa.String(32), nullable=False),
        sa.Column('score', sa.Float, nullable=True),
        sa.Column('data_source_id', sa.Integer, sa.ForeignKey('data_source.id'), nullable=False),
        sa.Column('last_modification_time', sa.DateTime, nullable=True),
    )
    op.create_index('ix_cluster_raw_event_id', 'cluster', ['raw_event_id'])
    op.create_index('ix_cluster_data_source_id', 'cluster', ['data_source_id'])
    op.create_index('ux_cluster_external_data_source', 'cluster', ['cluster_id', 'data_source_id'], unique=True)
    op.create_table(
        'outlier',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('raw_event', sa.LargeBinary, nullable=False),
        sa.Column('digest', sa.String(64), nullable=False),
        sa.Column('data_source_id', sa.Integer, sa.ForeignKey('data_source.id'), nullable=False),
        sa.Column('event_ids', sa.LargeBinary, nullable=False),
        sa.Column('size', sa.String(32), nullable=False),
    )
    op.create_index('ix_outlier_data_source_id', 'outlier', ['data_source_id'])
    op.create_index('ux_outlier_digest_data_source', 'outlier', ['digest', 'data_source_id'], unique=True)
    op.create_table(
        'runtime_setting',
        sa.Column('name', sa.String(64), primary_key=True),
        sa.Column('value', sa.String(255), nullable=False),
    )

    op.bulk_insert(category, [{'name': 'unknown'}])
    op.bulk_insert(qualifier, [{'description': d} for d in ('benign', 'unknown', 'suspicious')])
    op.bulk_insert(status, [{'description': d} for d in ('reviewed', 'pending review', 'disabled')])


def downgrade():
    for name in ('runtime_setting', 'outlier', 'cluster', 'kafka_metadata', 'event', 'status', 'qualifier', 'category', 'data_source'):
        op.drop_table(name)
