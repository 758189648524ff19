from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.cdp.models import Base


class ProfileType(str, Enum):
    INDIVIDUAL = "INDIVIDUAL"
    COMPANY = "COMPANY"


class ProfileStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    MERGED = "MERGED"


class Source(str, Enum):
    ERP = "ERP"
    LINE = "LINE"
    FACEBOOK = "FACEBOOK"
    CRM = "CRM"
    MANUAL = "MANUAL"
    WEBSITE = "WEBSITE"
    API = "API"


class CandidateStatus(str, Enum):
    PENDING = "PENDING"
    MERGED = "MERGED"
    REJECTED = "REJECTED"
    SUPERSEDED = "SUPERSEDED"


class Profile(Base):
    """
    Canonical entity record: one row of truth per resolved customer/company.

    Rows are never deleted. A soft delete sets INACTIVE; losing a merge sets
    MERGED and stores the survivor id under meta["mergedInto"].
    """

    __tablename__ = "profiles"
    __table_args__ = (
        Index("idx_profiles_tenant_status", "tenant_id", "status"),
        Index("idx_profiles_tenant_email_key", "tenant_id", "email_key"),
        Index("idx_profiles_tenant_phone_key", "tenant_id", "phone_key"),
        Index("idx_profiles_tenant_company_key", "tenant_id", "company_key"),
        Index("idx_profiles_tenant_created_at", "tenant_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)

    type: Mapped[str] = mapped_column(String(16), nullable=False, default=ProfileType.INDIVIDUAL.value)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ProfileStatus.ACTIVE.value)

    name: Mapped[str] = mapped_column(Text, nullable=False)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    first_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    company_name: Mapped[str | None] = mapped_column(Text, nullable=True)

    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Match keys maintained by the service layer (lowercased email, digits-only phone, canonical company).
    email_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    company_key: Mapped[str | None] = mapped_column(Text, nullable=True)

    emails: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    phones: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    address: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    company_tax_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    industry: Mapped[str | None] = mapped_column(Text, nullable=True)
    company_size: Mapped[str | None] = mapped_column(Text, nullable=True)
    website: Mapped[str | None] = mapped_column(Text, nullable=True)

    attributes: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    tags: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    segment_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    primary_source: Mapped[str] = mapped_column(String(16), nullable=False, default=Source.MANUAL.value)
    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    identifiers: Mapped[list["ProfileIdentifier"]] = relationship(
        "ProfileIdentifier",
        back_populates="profile",
        lazy="selectin",
        order_by="ProfileIdentifier.id",
    )


class ProfileIdentifier(Base):
    """
    Claim that an external record (source, source_type, external_id) denotes a profile.
    Never deleted; detach flips is_active.
    """

    __tablename__ = "profile_identifiers"
    __table_args__ = (
        Index("idx_profile_identifiers_lookup", "tenant_id", "source", "source_type", "external_id"),
        Index("idx_profile_identifiers_profile_id", "profile_id"),
        # At most one ACTIVE identifier per external record within a tenant.
        Index(
            "uq_profile_identifiers_active",
            "tenant_id",
            "source",
            "source_type",
            "external_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    profile_id: Mapped[int] = mapped_column(ForeignKey("profiles.id"), nullable=False)

    source: Mapped[str] = mapped_column(String(16), nullable=False)
    source_type: Mapped[str] = mapped_column(String(64), nullable=False, default="")  # "" when unclassified
    external_id: Mapped[str] = mapped_column(Text, nullable=False)
    external_ref: Mapped[str | None] = mapped_column(Text, nullable=True)  # e.g. "ERP:customers.ERP001"
    match_quality: Mapped[int | None] = mapped_column(Integer, nullable=True)  # 0-100

    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    meta: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    profile: Mapped[Profile] = relationship("Profile", back_populates="identifiers", lazy="selectin")


class Tag(Base):
    __tablename__ = "tags"
    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_tags_tenant_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    color: Mapped[str | None] = mapped_column(String(16), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class ProfileTag(Base):
    __tablename__ = "profile_tags"
    __table_args__ = (
        UniqueConstraint("profile_id", "tag_id", name="uq_profile_tags_profile_tag"),
        Index("idx_profile_tags_tag_id", "tag_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    profile_id: Mapped[int] = mapped_column(ForeignKey("profiles.id"), nullable=False)
    tag_id: Mapped[int] = mapped_column(ForeignKey("tags.id", ondelete="CASCADE"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    tag = relationship("Tag", foreign_keys=[tag_id], lazy="selectin")


class ProfileEvent(Base):
    __tablename__ = "profile_events"
    __table_args__ = (
        Index("idx_profile_events_profile_id", "profile_id", "timestamp"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    profile_id: Mapped[int] = mapped_column(ForeignKey("profiles.id"), nullable=False)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    source: Mapped[str | None] = mapped_column(String(16), nullable=True)
    properties: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class Deal(Base):
    __tablename__ = "deals"
    __table_args__ = (
        Index("idx_deals_profile_id", "profile_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    profile_id: Mapped[int] = mapped_column(ForeignKey("profiles.id"), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    stage: Mapped[str | None] = mapped_column(String(64), nullable=True)
    value: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class Activity(Base):
    __tablename__ = "activities"
    __table_args__ = (
        Index("idx_activities_profile_id", "profile_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    profile_id: Mapped[int] = mapped_column(ForeignKey("profiles.id"), nullable=False)
    activity_type: Mapped[str] = mapped_column(String(64), nullable=False)  # call, meeting, note...
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class Quotation(Base):
    __tablename__ = "quotations"
    __table_args__ = (
        Index("idx_quotations_profile_id", "profile_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    profile_id: Mapped[int] = mapped_column(ForeignKey("profiles.id"), nullable=False)
    quotation_number: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    total: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class Billing(Base):
    __tablename__ = "billings"
    __table_args__ = (
        Index("idx_billings_profile_id", "profile_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    profile_id: Mapped[int] = mapped_column(ForeignKey("profiles.id"), nullable=False)
    billing_number: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class MergeCandidateRecord(Base):
    """
    Persisted duplicate-detection result for a pair of profiles.
    Content is write-once; only status/resolution columns change when consumed.
    """

    __tablename__ = "merge_candidates"
    __table_args__ = (
        Index("idx_merge_candidates_tenant_status", "tenant_id", "status"),
        Index("idx_merge_candidates_pair", "tenant_id", "profile_id1", "profile_id2"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    profile_id1: Mapped[int] = mapped_column(ForeignKey("profiles.id"), nullable=False)
    profile_id2: Mapped[int] = mapped_column(ForeignKey("profiles.id"), nullable=False)

    match_score: Mapped[int] = mapped_column(Integer, nullable=False)
    match_reasons: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    conflict_fields: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=CandidateStatus.PENDING.value)
    survivor_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(320), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
