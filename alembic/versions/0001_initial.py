"""initial

Revision ID: 0001_initial
Revises: 
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'items',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('name', sa.String(512), nullable=False),
        sa.Column('ext', sa.String(32), nullable=False),
        sa.Column('size', sa.BigInteger, nullable=False, server_default=sa.text('0')),
        sa.Column('mtime', sa.DateTime, nullable=True),
        sa.Column('media_type', sa.String(16), nullable=False, server_default='unknown'),
        sa.Column('width', sa.Integer, nullable=True),
        sa.Column('height', sa.Integer, nullable=True),
        sa.Column('duration', sa.Float, nullable=True),
        sa.Column('fps', sa.String(32), nullable=True),
        sa.Column('codec', sa.String(64), nullable=True),
        sa.Column('audio_codec', sa.String(64), nullable=True),
        sa.Column('bitrate', sa.BigInteger, nullable=True),
        sa.Column('sample_rate', sa.Integer, nullable=True),
        sa.Column('channels', sa.Integer, nullable=True),
        sa.Column('exif_data', sa.Text, nullable=True),
        sa.Column('camera', sa.String(255), nullable=True),
        sa.Column('taken_at', sa.DateTime, nullable=True),
        sa.Column('gps_latitude', sa.Float, nullable=True),
        sa.Column('gps_longitude', sa.Float, nullable=True),
        sa.Column('gps_altitude', sa.Float, nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime, server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
    )
    op.create_index('ix_items_name', 'items', ['name'])
    op.create_index('ix_items_mtime', 'items', ['mtime'])
    op.create_index('ix_items_media_type', 'items', ['media_type'])
    op.create_index('ix_items_taken_at', 'items', ['taken_at'])

    op.create_table(
        'item_folders',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('item_id', sa.String(64), sa.ForeignKey('items.id', ondelete='CASCADE'), nullable=False),
        sa.Column('folder_id', sa.String(64), nullable=False),
        sa.Column('created_at', sa.DateTime, server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.UniqueConstraint('item_id', 'folder_id', name='uq_item_folders_item_folder'),
    )
    op.create_index('ix_item_folders_item_id', 'item_folders', ['item_id'])
    op.create_index('ix_item_folders_folder_id', 'item_folders', ['folder_id'])

    op.create_table(
        'item_tags',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('item_id', sa.String(64), sa.ForeignKey('items.id', ondelete='CASCADE'), nullable=False),
        sa.Column('tag', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime, server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.UniqueConstraint('item_id', 'tag', name='uq_item_tags_item_tag'),
    )
    op.create_index('ix_item_tags_item_id', 'item_tags', ['item_id'])
    op.create_index('ix_item_tags_tag', 'item_tags', ['tag'])

    op.create_table(
        'cache_info',
        sa.Column('key', sa.String(64), primary_key=True),
        sa.Column('value', sa.Text, nullable=False),
        sa.Column('updated_at', sa.DateTime, server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
    )


def downgrade() -> None:
    op.drop_table('cache_info')
    op.drop_table('item_tags')
    op.drop_table('item_folders')
    op.drop_table('items')
