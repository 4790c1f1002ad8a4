"""initial schema - channel accounts, inventory, sync rules, jobs, ledger, orders

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-17

Creates every table from the SQLAlchemy models on the migration's own
connection. Safe on a database that already has some tables (checkfirst).
"""
from typing import Sequence, Union

from alembic import op

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    from channelsync.models import Base

    Base.metadata.create_all(bind=op.get_bind(), checkfirst=True)


def downgrade() -> None:
    """Drop all tables. DESTRUCTIVE — only for dev/test environments."""
    from channelsync.models import Base

    Base.metadata.drop_all(bind=op.get_bind())
