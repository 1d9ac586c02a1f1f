"""initial licensing schema

Revision ID: a0c1e2d3f4b5
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = "a0c1e2d3f4b5"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _ts_columns() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False),
    ]


def upgrade() -> None:
    """Upgrade schema."""
    bind = op.get_bind()
    insp = inspect(bind)
    existing_tables = set(insp.get_table_names())

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("email", sa.String(length=320), nullable=False, unique=True),
            sa.Column("display_name", sa.String(length=255), nullable=True),
            sa.Column("password_hash", sa.String(length=255), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
        )

    if "roles" not in existing_tables:
        op.create_table(
            "roles",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("key", sa.String(length=64), nullable=False, unique=True),
            sa.Column("name", sa.String(length=128), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
        )

    if "permissions" not in existing_tables:
        op.create_table(
            "permissions",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("key", sa.String(length=128), nullable=False, unique=True),
            sa.Column("name", sa.String(length=128), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
        )

    if "user_roles" not in existing_tables:
        op.create_table(
            "user_roles",
            sa.Column("user_id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("role_id", sa.Integer(), primary_key=True, nullable=False),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
        )

    if "role_permissions" not in existing_tables:
        op.create_table(
            "role_permissions",
            sa.Column("role_id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("permission_id", sa.Integer(), primary_key=True, nullable=False),
            sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["permission_id"], ["permissions.id"], ondelete="CASCADE"),
        )

    if "audit_events" not in existing_tables:
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("request_id", sa.String(length=64), nullable=True),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("actor_user_email", sa.String(length=320), nullable=True),
            sa.Column("action", sa.String(length=128), nullable=False),
            sa.Column("entity_type", sa.String(length=128), nullable=True),
            sa.Column("entity_id", sa.String(length=128), nullable=True),
            sa.Column("reason", sa.String(length=512), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("client_ip", sa.String(length=64), nullable=True),
            sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.UniqueConstraint("request_id", "id", name="uq_audit_request_id_id"),
        )

    if "refrigerants" not in existing_tables:
        op.create_table(
            "refrigerants",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("code", sa.String(length=32), nullable=False, unique=True),
            sa.Column("chemical_name", sa.String(length=255), nullable=True),
            sa.Column("gwp_value", sa.Numeric(12, 3), nullable=False),
            sa.Column("restricted", sa.Boolean(), nullable=False),
            sa.Column("hs_code", sa.String(length=32), nullable=True),
            sa.Column("refrigerant_type", sa.String(length=64), nullable=True),
            *_ts_columns(),
        )
        op.create_index("idx_refrigerants_restricted", "refrigerants", ["restricted"])

    if "sequence_counters" not in existing_tables:
        op.create_table(
            "sequence_counters",
            sa.Column("name", sa.String(length=64), primary_key=True, nullable=False),
            sa.Column("value", sa.Integer(), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False),
        )

    if "importer_accounts" not in existing_tables:
        op.create_table(
            "importer_accounts",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=True),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("email", sa.String(length=320), nullable=True),
            sa.Column("business_address", sa.String(length=512), nullable=True),
            sa.Column("import_quota", sa.Numeric(18, 2), nullable=False),
            sa.Column("cumulative_imports", sa.Numeric(18, 2), nullable=False),
            sa.Column("balance", sa.Numeric(18, 2), nullable=False),
            sa.Column("importer_number", sa.Integer(), nullable=True, unique=True),
            sa.Column("version", sa.Integer(), nullable=False),
            *_ts_columns(),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
            sa.CheckConstraint("import_quota >= 0", name="ck_importer_quota_nonneg"),
            sa.CheckConstraint("cumulative_imports >= 0", name="ck_importer_cumulative_nonneg"),
            sa.CheckConstraint("balance >= 0", name="ck_importer_balance_nonneg"),
        )
        op.create_index("idx_importer_accounts_user", "importer_accounts", ["user_id"])

    if "registrations" not in existing_tables:
        op.create_table(
            "registrations",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("importer_id", sa.Integer(), nullable=False),
            sa.Column("year", sa.Integer(), nullable=False),
            sa.Column("is_retail", sa.Boolean(), nullable=False),
            sa.Column("refrigerants_json", sa.Text(), nullable=False),
            sa.Column("state", sa.String(length=32), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("certificate_number", sa.Integer(), nullable=True, unique=True),
            sa.Column("submitted_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("submitted_by_user_id", sa.Integer(), nullable=True),
            sa.Column("approved_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("approved_by_user_id", sa.Integer(), nullable=True),
            sa.Column("approver_name", sa.String(length=255), nullable=True),
            sa.Column("signature_storage_key", sa.String(length=512), nullable=True),
            sa.Column("rejected_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("rejected_by_user_id", sa.Integer(), nullable=True),
            sa.Column("rejection_reason", sa.String(length=512), nullable=True),
            sa.Column("document_storage_key", sa.String(length=512), nullable=True),
            *_ts_columns(),
            sa.ForeignKeyConstraint(["importer_id"], ["importer_accounts.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["submitted_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["approved_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["rejected_by_user_id"], ["users.id"], ondelete="SET NULL"),
        )
        op.create_index("idx_registrations_importer_year", "registrations", ["importer_id", "year"])
        op.create_index("idx_registrations_state", "registrations", ["state"])

    if "import_licenses" not in existing_tables:
        op.create_table(
            "import_licenses",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("importer_id", sa.Integer(), nullable=False),
            sa.Column("registration_id", sa.Integer(), nullable=False),
            sa.Column("year", sa.Integer(), nullable=False),
            sa.Column("import_number", sa.Integer(), nullable=False, unique=True),
            sa.Column("state", sa.String(length=32), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("total_co2_equivalent", sa.Numeric(18, 2), nullable=False),
            sa.Column("arrived_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("documents_json", sa.Text(), nullable=False),
            sa.Column("inspection_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("inspection_scheduled_by_user_id", sa.Integer(), nullable=True),
            sa.Column("approved_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("approved_by_user_id", sa.Integer(), nullable=True),
            sa.Column("approver_name", sa.String(length=255), nullable=True),
            sa.Column("signature_storage_key", sa.String(length=512), nullable=True),
            sa.Column("rejected_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("rejected_by_user_id", sa.Integer(), nullable=True),
            sa.Column("rejection_reason", sa.String(length=512), nullable=True),
            sa.Column("document_storage_key", sa.String(length=512), nullable=True),
            sa.Column("created_by_user_id", sa.Integer(), nullable=True),
            *_ts_columns(),
            sa.ForeignKeyConstraint(["importer_id"], ["importer_accounts.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["registration_id"], ["registrations.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["inspection_scheduled_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["approved_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["rejected_by_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="SET NULL"),
        )
        op.create_index("idx_import_licenses_importer_year", "import_licenses", ["importer_id", "year"])
        op.create_index("idx_import_licenses_registration", "import_licenses", ["registration_id"])
        op.create_index("idx_import_licenses_state", "import_licenses", ["state"])

    if "import_line_items" not in existing_tables:
        op.create_table(
            "import_line_items",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("import_id", sa.Integer(), nullable=False),
            sa.Column("refrigerant_code", sa.String(length=32), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False),
            sa.Column("volume", sa.Numeric(14, 4), nullable=False),
            sa.Column("unit", sa.String(length=8), nullable=False),
            sa.Column("gwp_at_time_of_import", sa.Numeric(12, 3), nullable=True),
            sa.Column("co2_equivalent", sa.Numeric(18, 2), nullable=False),
            sa.ForeignKeyConstraint(["import_id"], ["import_licenses.id"], ondelete="CASCADE"),
        )
        op.create_index("idx_import_line_items_import", "import_line_items", ["import_id"])


def downgrade() -> None:
    """Downgrade schema."""
    for idx, table in (
        ("idx_import_line_items_import", "import_line_items"),
        ("idx_import_licenses_state", "import_licenses"),
        ("idx_import_licenses_registration", "import_licenses"),
        ("idx_import_licenses_importer_year", "import_licenses"),
        ("idx_registrations_state", "registrations"),
        ("idx_registrations_importer_year", "registrations"),
        ("idx_importer_accounts_user", "importer_accounts"),
        ("idx_refrigerants_restricted", "refrigerants"),
    ):
        op.drop_index(idx, table_name=table)
    for table in (
        "import_line_items",
        "import_licenses",
        "registrations",
        "importer_accounts",
        "sequence_counters",
        "refrigerants",
        "audit_events",
        "role_permissions",
        "user_roles",
        "permissions",
        "roles",
        "users",
    ):
        op.drop_table(table)
