from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class AuditEvent(Base):
    """
    Append-only audit trail event.
    Keep this table intentionally generic; module-specific tables can refer to it by id if needed.
    """

    __tablename__ = "audit_events"
    __table_args__ = (
        Index("idx_audit_events_tenant_entity", "tenant_id", "entity_type", "entity_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    actor: Mapped[str | None] = mapped_column(String(320), nullable=True)  # e.g. "sync:api", "ops@example.com"

    action: Mapped[str] = mapped_column(String(128), nullable=False)  # e.g. "profile.merge"
    entity_type: Mapped[str | None] = mapped_column(String(128), nullable=True)  # e.g. "Profile"
    entity_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)  # small JSON string


# Ensure module models are imported so Base.metadata includes their tables.
# (Kept at bottom to avoid circular imports.)
from app.cdp.modules.profiles.models import (  # noqa: E402,F401
    Activity,
    Billing,
    Deal,
    MergeCandidateRecord,
    Profile,
    ProfileEvent,
    ProfileIdentifier,
    ProfileTag,
    Quotation,
    Tag,
)
from app.cdp.modules.profile_sync.models import ProfileSyncRun  # noqa: E402,F401
