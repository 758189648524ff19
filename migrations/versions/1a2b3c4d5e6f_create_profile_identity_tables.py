"""create profile identity tables

Revision ID: 1a2b3c4d5e6f
Revises:
Create Date: 2026-10-17

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = "1a2b3c4d5e6f"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps(*names: str) -> list[sa.Column]:
    return [
        sa.Column(n, sa.DateTime(timezone=False), nullable=False, server_default=sa.func.current_timestamp())
        for n in names
    ]


def _profile_child(table: str, *columns: sa.Column) -> None:
    op.create_table(
        table,
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("profile_id", sa.Integer(), nullable=False),
        *columns,
        sa.ForeignKeyConstraint(["profile_id"], ["profiles.id"]),
    )


def upgrade() -> None:
    bind = op.get_bind()
    insp = inspect(bind)
    existing_tables = set(insp.get_table_names())

    def _has_index(table: str, name: str) -> bool:
        try:
            return any(ix.get("name") == name for ix in inspect(op.get_bind()).get_indexes(table))
        except Exception:
            return False

    def _ensure_index(name: str, table: str, cols: list[str], **kw) -> None:
        if not _has_index(table, name):
            op.create_index(name, table, cols, **kw)

    if "audit_events" not in existing_tables:
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            *_timestamps("created_at"),
            sa.Column("request_id", sa.String(length=64), nullable=True),
            sa.Column("tenant_id", sa.String(length=64), nullable=False),
            sa.Column("actor", sa.String(length=320), nullable=True),
            sa.Column("action", sa.String(length=128), nullable=False),
            sa.Column("entity_type", sa.String(length=128), nullable=True),
            sa.Column("entity_id", sa.String(length=128), nullable=True),
            sa.Column("reason", sa.String(length=512), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
        )
    _ensure_index("idx_audit_events_tenant_entity", "audit_events", ["tenant_id", "entity_type", "entity_id"])

    if "profiles" not in existing_tables:
        op.create_table(
            "profiles",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("tenant_id", sa.String(length=64), nullable=False),
            sa.Column("type", sa.String(length=16), nullable=False, server_default="INDIVIDUAL"),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="ACTIVE"),
            sa.Column("name", sa.Text(), nullable=False),
            sa.Column("display_name", sa.Text(), nullable=False),
            sa.Column("first_name", sa.Text(), nullable=True),
            sa.Column("last_name", sa.Text(), nullable=True),
            sa.Column("company_name", sa.Text(), nullable=True),
            sa.Column("email", sa.Text(), nullable=True),
            sa.Column("phone", sa.Text(), nullable=True),
            sa.Column("email_key", sa.Text(), nullable=True),
            sa.Column("phone_key", sa.Text(), nullable=True),
            sa.Column("company_key", sa.Text(), nullable=True),
            sa.Column("emails", sa.JSON(), nullable=False),
            sa.Column("phones", sa.JSON(), nullable=False),
            sa.Column("address", sa.JSON(), nullable=True),
            sa.Column("company_tax_id", sa.Text(), nullable=True),
            sa.Column("industry", sa.Text(), nullable=True),
            sa.Column("company_size", sa.Text(), nullable=True),
            sa.Column("website", sa.Text(), nullable=True),
            sa.Column("attributes", sa.JSON(), nullable=False),
            sa.Column("tags", sa.JSON(), nullable=False),
            sa.Column("segment_ids", sa.JSON(), nullable=False),
            sa.Column("primary_source", sa.String(length=16), nullable=False, server_default="MANUAL"),
            sa.Column("metadata", sa.JSON(), nullable=False),
            *_timestamps("created_at", "updated_at"),
            sa.Column("last_synced_at", sa.DateTime(timezone=False), nullable=True),
        )
    for idx_name, cols in (
        ("idx_profiles_tenant_status", ["tenant_id", "status"]),
        ("idx_profiles_tenant_email_key", ["tenant_id", "email_key"]),
        ("idx_profiles_tenant_phone_key", ["tenant_id", "phone_key"]),
        ("idx_profiles_tenant_company_key", ["tenant_id", "company_key"]),
        ("idx_profiles_tenant_created_at", ["tenant_id", "created_at"]),
    ):
        _ensure_index(idx_name, "profiles", cols)

    if "profile_identifiers" not in existing_tables:
        _profile_child(
            "profile_identifiers",
            sa.Column("source", sa.String(length=16), nullable=False),
            sa.Column("source_type", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("external_id", sa.Text(), nullable=False),
            sa.Column("external_ref", sa.Text(), nullable=True),
            sa.Column("match_quality", sa.Integer(), nullable=True),
            sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("metadata", sa.JSON(), nullable=True),
            *_timestamps("created_at", "updated_at"),
        )
    _ensure_index(
        "idx_profile_identifiers_lookup",
        "profile_identifiers",
        ["tenant_id", "source", "source_type", "external_id"],
    )
    _ensure_index("idx_profile_identifiers_profile_id", "profile_identifiers", ["profile_id"])
    # At most one ACTIVE identifier per (tenant, source, source_type, external_id).
    _ensure_index(
        "uq_profile_identifiers_active",
        "profile_identifiers",
        ["tenant_id", "source", "source_type", "external_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
        sqlite_where=sa.text("is_active = 1"),
    )

    if "tags" not in existing_tables:
        op.create_table(
            "tags",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("tenant_id", sa.String(length=64), nullable=False),
            sa.Column("name", sa.Text(), nullable=False),
            sa.Column("color", sa.String(length=16), nullable=True),
            *_timestamps("created_at"),
            sa.UniqueConstraint("tenant_id", "name", name="uq_tags_tenant_name"),
        )

    if "profile_tags" not in existing_tables:
        _profile_child(
            "profile_tags",
            sa.Column("tag_id", sa.Integer(), nullable=False),
            *_timestamps("created_at"),
            sa.ForeignKeyConstraint(["tag_id"], ["tags.id"], ondelete="CASCADE"),
            sa.UniqueConstraint("profile_id", "tag_id", name="uq_profile_tags_profile_tag"),
        )
    _ensure_index("idx_profile_tags_tag_id", "profile_tags", ["tag_id"])

    if "profile_events" not in existing_tables:
        _profile_child(
            "profile_events",
            sa.Column("event_type", sa.String(length=128), nullable=False),
            sa.Column("source", sa.String(length=16), nullable=True),
            sa.Column("properties", sa.JSON(), nullable=True),
            *_timestamps("timestamp"),
        )
    _ensure_index("idx_profile_events_profile_id", "profile_events", ["profile_id", "timestamp"])

    if "deals" not in existing_tables:
        _profile_child(
            "deals",
            sa.Column("title", sa.Text(), nullable=False),
            sa.Column("stage", sa.String(length=64), nullable=True),
            sa.Column("value", sa.Numeric(14, 2), nullable=True),
            *_timestamps("created_at"),
        )
    _ensure_index("idx_deals_profile_id", "deals", ["profile_id"])

    if "activities" not in existing_tables:
        _profile_child(
            "activities",
            sa.Column("activity_type", sa.String(length=64), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            *_timestamps("created_at"),
        )
    _ensure_index("idx_activities_profile_id", "activities", ["profile_id"])

    if "quotations" not in existing_tables:
        _profile_child(
            "quotations",
            sa.Column("quotation_number", sa.Text(), nullable=False),
            sa.Column("status", sa.String(length=32), nullable=True),
            sa.Column("total", sa.Numeric(14, 2), nullable=True),
            *_timestamps("created_at"),
        )
    _ensure_index("idx_quotations_profile_id", "quotations", ["profile_id"])

    if "billings" not in existing_tables:
        _profile_child(
            "billings",
            sa.Column("billing_number", sa.Text(), nullable=False),
            sa.Column("status", sa.String(length=32), nullable=True),
            sa.Column("amount", sa.Numeric(14, 2), nullable=True),
            *_timestamps("created_at"),
        )
    _ensure_index("idx_billings_profile_id", "billings", ["profile_id"])

    if "merge_candidates" not in existing_tables:
        op.create_table(
            "merge_candidates",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("tenant_id", sa.String(length=64), nullable=False),
            sa.Column("profile_id1", sa.Integer(), nullable=False),
            sa.Column("profile_id2", sa.Integer(), nullable=False),
            sa.Column("match_score", sa.Integer(), nullable=False),
            sa.Column("match_reasons", sa.JSON(), nullable=False),
            sa.Column("conflict_fields", sa.JSON(), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
            sa.Column("survivor_id", sa.Integer(), nullable=True),
            sa.Column("resolved_by", sa.String(length=320), nullable=True),
            *_timestamps("created_at"),
            sa.Column("resolved_at", sa.DateTime(timezone=False), nullable=True),
            sa.ForeignKeyConstraint(["profile_id1"], ["profiles.id"]),
            sa.ForeignKeyConstraint(["profile_id2"], ["profiles.id"]),
        )
    _ensure_index("idx_merge_candidates_tenant_status", "merge_candidates", ["tenant_id", "status"])
    _ensure_index("idx_merge_candidates_pair", "merge_candidates", ["tenant_id", "profile_id1", "profile_id2"])

    if "profile_sync_runs" not in existing_tables:
        op.create_table(
            "profile_sync_runs",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("tenant_id", sa.String(length=64), nullable=False),
            *_timestamps("ran_at"),
            sa.Column("api_url", sa.Text(), nullable=False),
            sa.Column("source_type", sa.String(length=64), nullable=True),
            sa.Column("sync_frequency", sa.String(length=64), nullable=True),
            sa.Column("total_fetched", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("success_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("skipped_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("duration_seconds", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="COMPLETED"),
            sa.Column("message", sa.Text(), nullable=True),
        )
    _ensure_index("idx_profile_sync_runs_tenant_ran_at", "profile_sync_runs", ["tenant_id", "ran_at"])


def downgrade() -> None:
    for table in (
        "profile_sync_runs",
        "merge_candidates",
        "billings",
        "quotations",
        "activities",
        "deals",
        "profile_events",
        "profile_tags",
        "tags",
        "profile_identifiers",
        "profiles",
        "audit_events",
    ):
        op.drop_table(table)
