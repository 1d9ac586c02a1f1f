"""technicians table and one open registration per importer/year

Revision ID: b7d3e9f1a2c4
Revises: a0c1e2d3f4b5
Create Date: 2026-10-18 15:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = "b7d3e9f1a2c4"
down_revision: Union[str, Sequence[str], None] = "a0c1e2d3f4b5"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

OPEN_REGISTRATION = "state IN ('Submitted', 'Approved')"
LIVE_TECHNICIAN = "state IN ('Pending', 'Approved')"


def upgrade() -> None:
    """Upgrade schema."""
    bind = op.get_bind()
    insp = inspect(bind)
    existing_tables = set(insp.get_table_names())

    registration_indexes = {ix["name"] for ix in insp.get_indexes("registrations")}
    if "uq_registrations_importer_year_open" not in registration_indexes:
        op.create_index(
            "uq_registrations_importer_year_open",
            "registrations",
            ["importer_id", "year"],
            unique=True,
            sqlite_where=sa.text(OPEN_REGISTRATION),
            postgresql_where=sa.text(OPEN_REGISTRATION),
        )

    if "technicians" not in existing_tables:
        op.create_table(
            "technicians",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=True),
            sa.Column("full_name", sa.String(length=255), nullable=False),
            sa.Column("email", sa.String(length=320), nullable=False),
            sa.Column("telephone", sa.String(length=64), nullable=True),
            sa.Column("address", sa.Text(), nullable=True),
            sa.Column("national_id", sa.String(length=64), nullable=False),
            sa.Column("date_of_birth", sa.Date(), nullable=True),
            sa.Column("qualification_level", sa.String(length=32), nullable=False),
            sa.Column("training_institution", sa.String(length=255), nullable=False),
            sa.Column("training_completion_date", sa.Date(), nullable=True),
            sa.Column("documents_json", sa.Text(), nullable=False),
            sa.Column("state", sa.String(length=32), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("certificate_number", sa.Integer(), nullable=True, unique=True),
            sa.Column("approved_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("approved_by_user_id", sa.Integer(), nullable=True),
            sa.Column("rejected_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("rejected_by_user_id", sa.Integer(), nullable=True),
            sa.Column("rejection_reason", sa.String(length=512), nullable=True),
            sa.Column("document_storage_key", sa.String(length=512), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["approved_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["rejected_by_user_id"], ["users.id"], ondelete="SET NULL"),
        )
        op.create_index("idx_technicians_state", "technicians", ["state"])
        op.create_index(
            "uq_technicians_email_live",
            "technicians",
            ["email"],
            unique=True,
            sqlite_where=sa.text(LIVE_TECHNICIAN),
            postgresql_where=sa.text(LIVE_TECHNICIAN),
        )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("uq_technicians_email_live", table_name="technicians")
    op.drop_index("idx_technicians_state", table_name="technicians")
    op.drop_table("technicians")
    op.drop_index("uq_registrations_importer_year_open", table_name="registrations")
