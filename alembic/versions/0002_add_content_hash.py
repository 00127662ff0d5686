"""Add content hash and sidecar bookkeeping columns to items

Revision ID: 0002_add_content_hash
Revises: 0001_initial
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0002_add_content_hash'
down_revision = '0001_initial'
branch_labels = None
depends_on = None


def upgrade():
    """Add content_hash, btime, url and annotation."""

    op.add_column('items', sa.Column('content_hash', sa.String(40), nullable=True))
    op.add_column('items', sa.Column('btime', sa.DateTime(), nullable=True))
    op.add_column('items', sa.Column('url', sa.Text(), nullable=False, server_default=''))
    op.add_column('items', sa.Column('annotation', sa.Text(), nullable=False, server_default=''))


def downgrade():
    """Drop the columns again."""

    op.drop_column('items', 'annotation')
    op.drop_column('items', 'url')
    op.drop_column('items', 'btime')
    op.drop_column('items', 'content_hash')
