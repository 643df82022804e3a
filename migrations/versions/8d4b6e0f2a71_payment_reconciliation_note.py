"""payments.reconciliation_note

Revision ID: 8d4b6e0f2a71
Revises: 3a1f9c2d7e10
Create Date: 2026-10-19 08:12:40.551207

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '8d4b6e0f2a71'
down_revision: Union[str, Sequence[str], None] = '3a1f9c2d7e10'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    # operator note for flagged payments; failure_reason stays tied to the FAILED transition
    with op.batch_alter_table("payments") as batch:
        batch.add_column(sa.Column("reconciliation_note", sa.Text(), nullable=True))


def downgrade() -> None:
    """Downgrade schema."""
    with op.batch_alter_table("payments") as batch:
        batch.drop_column("reconciliation_note")
