"""
Identifier Store: (tenant, source, source_type, external_id) -> profile id.

An identifier belongs to exactly one profile at a time and is never deleted;
detach flips is_active so the audit trail survives. Among ACTIVE identifiers the
tuple is unique per tenant. Values are compared exactly (no normalization here;
the resolver decides what an external id looks like).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError

from app.cdp.audit import record_event
from app.cdp.errors import ConflictError, NotFoundError, ValidationError
from app.cdp.modules.profiles.models import Profile, ProfileIdentifier, ProfileStatus, Source
from app.cdp.modules.profiles.service import get_profile
from app.cdp.modules.profiles.utils import parse_flag

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdentifierInput:
    source: str
    external_id: str
    source_type: str = ""
    external_ref: str | None = None
    match_quality: int | None = None
    is_primary: bool = False
    metadata: dict[str, Any] | None = field(default=None, compare=False)

    def normalized(self) -> "IdentifierInput":
        source = str(getattr(self.source, "value", self.source) or "").strip().upper()
        if source not in Source.__members__:
            raise ValidationError(f"Invalid identifier source: {self.source!r}")
        external_id = str(self.external_id or "").strip()
        if not external_id:
            raise ValidationError("Identifier external_id is required.")
        mq = self.match_quality
        if mq is not None:
            try:
                mq = int(mq)
            except (TypeError, ValueError):
                raise ValidationError(f"matchQuality must be a number (got {self.match_quality!r}).")
            if not 0 <= mq <= 100:
                raise ValidationError(f"matchQuality must be between 0 and 100 (got {mq}).")
        is_primary = parse_flag(self.is_primary)
        if is_primary is None:
            raise ValidationError(f"isPrimary must be a boolean (got {self.is_primary!r}).")
        return IdentifierInput(
            source=source,
            external_id=external_id,
            source_type=str(self.source_type or "").strip(),
            external_ref=(str(self.external_ref).strip() or None) if self.external_ref is not None else None,
            match_quality=mq,
            is_primary=is_primary,
            metadata=self.metadata,
        )


def find_active_identifier(
    s, tenant_id: str, source: str, source_type: str | None, external_id: str
) -> ProfileIdentifier | None:
    return (
        s.query(ProfileIdentifier)
        .filter(
            ProfileIdentifier.tenant_id == tenant_id,
            ProfileIdentifier.source == source,
            ProfileIdentifier.source_type == (source_type or ""),
            ProfileIdentifier.external_id == external_id,
            ProfileIdentifier.is_active.is_(True),
        )
        .one_or_none()
    )


def lookup(s, tenant_id: str, source: str, source_type: str | None, external_id: str) -> int | None:
    """Profile id currently claimed by an active identifier, or None."""
    ident = find_active_identifier(s, tenant_id, source, source_type, external_id)
    return ident.profile_id if ident else None


def find_by_external_id(
    s, tenant_id: str, source: str, external_id: str, source_type: str | None = None
) -> Profile | None:
    ident = find_active_identifier(s, tenant_id, source, source_type, external_id)
    return ident.profile if ident else None


def list_identifiers(s, tenant_id: str, profile_id: int, *, include_inactive: bool = False) -> list[ProfileIdentifier]:
    q = s.query(ProfileIdentifier).filter(
        ProfileIdentifier.tenant_id == tenant_id,
        ProfileIdentifier.profile_id == profile_id,
    )
    if not include_inactive:
        q = q.filter(ProfileIdentifier.is_active.is_(True))
    return q.order_by(ProfileIdentifier.is_primary.desc(), ProfileIdentifier.id.asc()).all()


def attach(
    s,
    tenant_id: str,
    profile_id: int,
    identifier: IdentifierInput,
    *,
    actor: str | None = None,
) -> ProfileIdentifier:
    """
    Attach an identifier to a profile.

    - Active identifier with the same tuple on another profile -> ConflictError (never re-linked).
    - Identical identifier already on this profile, active or detached -> returned unchanged.
    - is_primary clears the primary flag of the profile's other active identifiers from the same source.

    Concurrent attaches of one tuple to different profiles are arbitrated by the
    database: the partial unique index (Postgres) or the writer lock taken by
    BEGIN IMMEDIATE (SQLite). The loser sees the committed row and gets ConflictError.
    """
    ident_in = identifier.normalized()
    profile = get_profile(s, tenant_id, profile_id)
    if profile.status == ProfileStatus.MERGED.value:
        raise ValidationError(f"Profile {profile_id} was merged and cannot take new identifiers.")

    claimed = find_active_identifier(s, tenant_id, ident_in.source, ident_in.source_type, ident_in.external_id)
    if claimed is not None and claimed.profile_id != profile_id:
        raise ConflictError(
            f"Identifier for {ident_in.source}:{ident_in.external_id} already exists on another profile"
        )

    existing = (
        s.query(ProfileIdentifier)
        .filter(
            ProfileIdentifier.tenant_id == tenant_id,
            ProfileIdentifier.profile_id == profile_id,
            ProfileIdentifier.source == ident_in.source,
            ProfileIdentifier.source_type == ident_in.source_type,
            ProfileIdentifier.external_id == ident_in.external_id,
        )
        .order_by(ProfileIdentifier.is_active.desc(), ProfileIdentifier.id.desc())
        .first()
    )
    if existing is not None:
        return existing

    now = datetime.utcnow()
    try:
        with s.begin_nested():  # SAVEPOINT: the unique index arbitrates concurrent writers
            if ident_in.is_primary:
                (
                    s.query(ProfileIdentifier)
                    .filter(
                        ProfileIdentifier.tenant_id == tenant_id,
                        ProfileIdentifier.profile_id == profile_id,
                        ProfileIdentifier.source == ident_in.source,
                        ProfileIdentifier.is_active.is_(True),
                        ProfileIdentifier.is_primary.is_(True),
                    )
                    .update({"is_primary": False, "updated_at": now}, synchronize_session="fetch")
                )
            ident = ProfileIdentifier(
                tenant_id=tenant_id,
                profile=profile,
                source=ident_in.source,
                source_type=ident_in.source_type,
                external_id=ident_in.external_id,
                external_ref=ident_in.external_ref,
                match_quality=ident_in.match_quality,
                is_primary=ident_in.is_primary,
                is_active=True,
                meta=ident_in.metadata,
                created_at=now,
                updated_at=now,
            )
            s.add(ident)
            s.flush()
    except IntegrityError:
        logger.warning(
            "Identifier attach lost race tenant=%s %s:%s:%s",
            tenant_id, ident_in.source, ident_in.source_type, ident_in.external_id,
        )
        raise ConflictError(
            f"Identifier for {ident_in.source}:{ident_in.external_id} already exists on another profile"
        )

    record_event(
        s,
        tenant_id=tenant_id,
        actor=actor,
        action="identifier.attach",
        entity_type="ProfileIdentifier",
        entity_id=str(ident.id),
        metadata={
            "profile_id": profile_id,
            "source": ident.source,
            "source_type": ident.source_type,
            "external_id": ident.external_id,
            "is_primary": ident.is_primary,
        },
    )
    return ident


def detach(s, tenant_id: str, profile_id: int, identifier_id: int, *, actor: str | None = None) -> ProfileIdentifier:
    ident = (
        s.query(ProfileIdentifier)
        .filter(
            ProfileIdentifier.id == identifier_id,
            ProfileIdentifier.profile_id == profile_id,
            ProfileIdentifier.tenant_id == tenant_id,
        )
        .one_or_none()
    )
    if ident is None:
        raise NotFoundError("Identifier not found")

    if ident.is_active:
        ident.is_active = False
        ident.updated_at = datetime.utcnow()
        s.flush()
        record_event(
            s,
            tenant_id=tenant_id,
            actor=actor,
            action="identifier.detach",
            entity_type="ProfileIdentifier",
            entity_id=str(ident.id),
            metadata={"profile_id": profile_id, "source": ident.source, "external_id": ident.external_id},
        )
    return ident


def refresh_identifier(
    ident: ProfileIdentifier,
    *,
    external_ref: str | None = None,
    match_quality: int | None = None,
) -> bool:
    """Update identifier metadata in place when the incoming values differ. Returns True if changed."""
    changed = False
    if external_ref is not None and ident.external_ref != external_ref:
        ident.external_ref = external_ref
        changed = True
    if match_quality is not None and ident.match_quality != match_quality:
        ident.match_quality = match_quality
        changed = True
    if changed:
        ident.updated_at = datetime.utcnow()
    return changed


def profile_has_identifier(profile: Profile) -> bool:
    return any(i.is_active for i in (profile.identifiers or []))
