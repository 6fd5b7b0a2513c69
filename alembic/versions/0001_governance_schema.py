"""Governance schema: tasks, attempts, dead letter queue, requests, actions.

Revision ID: 0001_governance_schema
Revises: None
Create Date: 2026-10-16
"""

from collections.abc import Sequence

from alembic import op

revision: str = "0001_governance_schema"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    bind = op.get_bind()
    from axis.models import Base

    Base.metadata.create_all(bind=bind)


def downgrade() -> None:
    bind = op.get_bind()
    from axis.models import Base

    Base.metadata.drop_all(bind=bind)
