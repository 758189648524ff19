"""
Profile Store.

Every query is tenant-scoped: callers pass tenant_id explicitly and a profile
from another tenant is indistinguishable from a missing one (NotFoundError).

Profiles are never hard-deleted:
- deactivate_profile() -> INACTIVE ("[INACTIVE] " name prefix, meta.deletedAt)
- merge (see merge.py) -> MERGED, meta.mergedInto = survivor id

Match keys (email_key, phone_key, company_key) are recomputed whenever the
underlying field is written, so lookups never normalize at query time.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, fields as dc_fields
from datetime import datetime
from typing import Any

from sqlalchemy import Text, cast, exists, or_

from app.cdp.audit import record_event
from app.cdp.errors import NotFoundError, ValidationError
from app.cdp.modules.profiles.models import (
    Profile,
    ProfileIdentifier,
    ProfileStatus,
    ProfileTag,
    ProfileType,
    Source,
)
from app.cdp.modules.profiles.utils import (
    canonical_company_key,
    clean_text,
    generate_display_name,
    normalize_email,
    normalize_phone,
)

SCALAR_FIELDS = (
    "type",
    "status",
    "name",
    "display_name",
    "first_name",
    "last_name",
    "company_name",
    "email",
    "phone",
    "company_tax_id",
    "industry",
    "company_size",
    "website",
    "primary_source",
)

SORTABLE_COLUMNS = {
    "createdAt": Profile.created_at,
    "updatedAt": Profile.updated_at,
    "name": Profile.name,
    "displayName": Profile.display_name,
    "email": Profile.email,
    "lastSyncedAt": Profile.last_synced_at,
}


@dataclass
class ProfileData:
    """
    Field values for a profile write. None means "not present"; present values overwrite.
    """

    type: str | None = None
    status: str | None = None
    name: str | None = None
    display_name: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    company_name: str | None = None
    email: str | None = None
    phone: str | None = None
    emails: list[dict[str, Any]] | None = None
    phones: list[dict[str, Any]] | None = None
    address: dict[str, Any] | None = None
    company_tax_id: str | None = None
    industry: str | None = None
    company_size: str | None = None
    website: str | None = None
    attributes: dict[str, Any] | None = None
    tags: list[dict[str, Any]] | None = None
    segment_ids: list[str] | None = None
    primary_source: str | None = None
    metadata: dict[str, Any] | None = None

    def present(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in dc_fields(self) if getattr(self, f.name) is not None}

    def is_empty(self) -> bool:
        return not self.present()


def _check_enum(value: str | None, enum_cls, label: str) -> str | None:
    if value is None:
        return None
    v = str(getattr(value, "value", value)).strip().upper()
    if v not in enum_cls.__members__:
        raise ValidationError(f"Invalid {label}: {value!r}")
    return v


def validate_profile_data(data: ProfileData) -> ProfileData:
    data.type = _check_enum(data.type, ProfileType, "profile type")
    data.status = _check_enum(data.status, ProfileStatus, "profile status")
    data.primary_source = _check_enum(data.primary_source, Source, "source")
    if data.status == ProfileStatus.MERGED.value:
        raise ValidationError("Status MERGED is set by the merge engine only.")
    for attr in ("emails", "phones", "tags", "segment_ids"):
        v = getattr(data, attr)
        if v is not None and not isinstance(v, list):
            raise ValidationError(f"{attr} must be a list.")
    for attr in ("address", "attributes", "metadata"):
        v = getattr(data, attr)
        if v is not None and not isinstance(v, dict):
            raise ValidationError(f"{attr} must be an object.")
    return data


# ----------------------------------------------------------------------------
# Reads
# ----------------------------------------------------------------------------

def find_profile(s, tenant_id: str, profile_id: int) -> Profile | None:
    return (
        s.query(Profile)
        .filter(Profile.tenant_id == tenant_id, Profile.id == profile_id)
        .one_or_none()
    )


def get_profile(s, tenant_id: str, profile_id: int) -> Profile:
    p = find_profile(s, tenant_id, profile_id)
    if p is None:
        raise NotFoundError(f"Profile with ID {profile_id} not found")
    return p


def find_by_email(s, tenant_id: str, email: str | None) -> Profile | None:
    """ACTIVE profile whose email matches case-insensitively (oldest first)."""
    key = normalize_email(email)
    if not key:
        return None
    return (
        s.query(Profile)
        .filter(
            Profile.tenant_id == tenant_id,
            Profile.email_key == key,
            Profile.status == ProfileStatus.ACTIVE.value,
        )
        .order_by(Profile.id.asc())
        .first()
    )


def find_by_phone(s, tenant_id: str, phone: str | None) -> Profile | None:
    key = normalize_phone(phone)
    if not key:
        return None
    return (
        s.query(Profile)
        .filter(
            Profile.tenant_id == tenant_id,
            Profile.phone_key == key,
            Profile.status == ProfileStatus.ACTIVE.value,
        )
        .order_by(Profile.id.asc())
        .first()
    )


def resolve_profile_id(s, tenant_id: str, profile_id: int, *, max_hops: int = 32) -> int:
    """
    Follow meta.mergedInto forward pointers from a (possibly merged) profile id
    to the profile that currently represents the entity.
    """
    current = get_profile(s, tenant_id, profile_id)
    seen = {current.id}
    for _ in range(max_hops):
        if current.status != ProfileStatus.MERGED.value:
            return current.id
        nxt = (current.meta or {}).get("mergedInto")
        if nxt is None or nxt in seen:
            return current.id
        current = get_profile(s, tenant_id, int(nxt))
        seen.add(current.id)
    return current.id


def _select_for_update(s, tenant_id: str, profile_id: int) -> Profile:
    p = (
        s.query(Profile)
        .filter(Profile.tenant_id == tenant_id, Profile.id == profile_id)
        .with_for_update()
        .populate_existing()
        .one_or_none()
    )
    if p is None:
        raise NotFoundError(f"Profile with ID {profile_id} not found")
    return p


def lock_profile(s, tenant_id: str, profile_id: int, *, max_hops: int = 32) -> Profile:
    """
    Row-lock a profile (SELECT ... FOR UPDATE, fresh from the database) and follow
    mergedInto to the survivor, locking it too. The locks last until the caller's
    transaction ends, so a concurrent merge either finished before this returns or
    starts after the caller commits.
    """
    s.flush()  # populate_existing would discard pending changes
    current = _select_for_update(s, tenant_id, profile_id)
    seen = {current.id}
    for _ in range(max_hops):
        if current.status != ProfileStatus.MERGED.value:
            return current
        nxt = (current.meta or {}).get("mergedInto")
        if nxt is None or nxt in seen:
            return current
        current = _select_for_update(s, tenant_id, int(nxt))
        seen.add(current.id)
    return current


def list_profiles(
    s,
    tenant_id: str,
    *,
    search: str | None = None,
    type: str | None = None,
    status: str | None = None,
    source: str | None = None,
    industry: str | None = None,
    tag_ids: list[int] | None = None,
    segment_ids: list[str] | None = None,
    created_from: datetime | None = None,
    created_to: datetime | None = None,
    page: int = 1,
    limit: int = 20,
    sort_by: str = "createdAt",
    sort_order: str = "desc",
) -> dict[str, Any]:
    page = max(1, int(page or 1))
    limit = min(100, max(1, int(limit or 20)))

    q = s.query(Profile).filter(Profile.tenant_id == tenant_id)
    if type:
        q = q.filter(Profile.type == _check_enum(type, ProfileType, "profile type"))
    if status:
        q = q.filter(Profile.status == _check_enum(status, ProfileStatus, "profile status"))
    if industry:
        q = q.filter(Profile.industry.ilike(industry.strip()))
    if created_from:
        q = q.filter(Profile.created_at >= created_from)
    if created_to:
        q = q.filter(Profile.created_at <= created_to)
    if search and search.strip():
        like = f"%{search.strip()}%"
        q = q.filter(
            or_(
                Profile.name.ilike(like),
                Profile.email.ilike(like),
                Profile.phone.ilike(like),
                Profile.company_name.ilike(like),
            )
        )
    if source:
        src = _check_enum(source, Source, "source")
        q = q.filter(
            exists().where(
                ProfileIdentifier.profile_id == Profile.id,
                ProfileIdentifier.source == src,
                ProfileIdentifier.is_active.is_(True),
            )
        )
    if tag_ids:
        q = q.filter(
            exists().where(ProfileTag.profile_id == Profile.id, ProfileTag.tag_id.in_(list(tag_ids)))
        )
    if segment_ids:
        # JSON list serialized as text; portable across SQLite and Postgres.
        seg_text = cast(Profile.segment_ids, Text)
        q = q.filter(or_(*[seg_text.like(f'%"{seg}"%') for seg in segment_ids]))

    total = q.count()
    col = SORTABLE_COLUMNS.get(sort_by, Profile.created_at)
    order = col.asc() if (sort_order or "").lower() == "asc" else col.desc()
    rows = q.order_by(order, Profile.id.asc()).offset((page - 1) * limit).limit(limit).all()
    return {
        "data": rows,
        "meta": {
            "total": total,
            "page": page,
            "limit": limit,
            "totalPages": math.ceil(total / limit) if total else 0,
        },
    }


# ----------------------------------------------------------------------------
# Writes
# ----------------------------------------------------------------------------

def _auto_display_name(p: Profile) -> str:
    return generate_display_name(
        company_name=p.company_name,
        first_name=p.first_name,
        last_name=p.last_name,
        email=p.email,
    )


def _append_contact(items: list[dict[str, Any]], key: str, value: str, *, source: str | None, match_key) -> list[dict[str, Any]]:
    existing = {match_key(i.get(key)) for i in items if isinstance(i, dict)}
    if match_key(value) in existing:
        return items
    return [*items, {key: value, "type": "PRIMARY", "source": source}]


def apply_profile_data(p: Profile, data: ProfileData, *, source: str | None = None) -> list[str]:
    """
    Overwrite every present field on the profile (last write wins per field) and
    refresh derived keys. attributes/metadata are merged key by key.
    Returns the list of changed field names.
    """
    changed: list[str] = []
    auto_display = p.display_name is None or p.display_name == _auto_display_name(p)
    auto_name = p.name is None or p.name == p.display_name

    def _set(attr: str, val: Any) -> None:
        if getattr(p, attr) != val:
            setattr(p, attr, val)
            changed.append(attr)

    for attr in SCALAR_FIELDS:
        val = getattr(data, attr)
        if val is None:
            continue
        if isinstance(val, str):
            val = clean_text(val)
            if val is None:
                continue
        _set(attr, val)

    if data.address is not None:
        _set("address", dict(data.address))
    if data.emails is not None:
        _set("emails", list(data.emails))
    if data.phones is not None:
        _set("phones", list(data.phones))
    if data.tags is not None:
        _set("tags", list(data.tags))
    if data.segment_ids is not None:
        _set("segment_ids", [str(x) for x in data.segment_ids])
    if data.attributes:
        _set("attributes", {**(p.attributes or {}), **data.attributes})
    if data.metadata:
        _set("meta", {**(p.meta or {}), **data.metadata})

    if p.email:
        _set("emails", _append_contact(list(p.emails or []), "email", p.email, source=source, match_key=normalize_email))
    if p.phone:
        _set("phones", _append_contact(list(p.phones or []), "phone", p.phone, source=source, match_key=normalize_phone))

    if clean_text(data.display_name) is None and auto_display:
        _set("display_name", _auto_display_name(p))
    if clean_text(data.name) is None and auto_name:
        _set("name", p.display_name)

    p.email_key = normalize_email(p.email)
    p.phone_key = normalize_phone(p.phone)
    p.company_key = canonical_company_key(p.company_name) or None
    return changed


def create_profile(
    s,
    tenant_id: str,
    data: ProfileData,
    *,
    source: str | None = None,
    actor: str | None = None,
) -> Profile:
    data = validate_profile_data(data)
    now = datetime.utcnow()
    display_name = clean_text(data.display_name) or generate_display_name(
        company_name=data.company_name,
        first_name=data.first_name,
        last_name=data.last_name,
        email=data.email,
    )
    p = Profile(
        tenant_id=tenant_id,
        type=data.type or ProfileType.INDIVIDUAL.value,
        status=data.status or ProfileStatus.ACTIVE.value,
        name=clean_text(data.name) or display_name,
        display_name=display_name,
        primary_source=data.primary_source or (source or Source.MANUAL.value),
        emails=[],
        phones=[],
        attributes={},
        tags=[],
        segment_ids=[],
        meta={},
        created_at=now,
        updated_at=now,
    )
    apply_profile_data(p, data, source=source)
    s.add(p)
    s.flush()
    record_event(
        s,
        tenant_id=tenant_id,
        actor=actor,
        action="profile.create",
        entity_type="Profile",
        entity_id=str(p.id),
        metadata={"display_name": p.display_name, "primary_source": p.primary_source},
    )
    return p


def update_profile(
    s,
    tenant_id: str,
    profile_id: int,
    data: ProfileData,
    *,
    source: str | None = None,
    actor: str | None = None,
    reason: str | None = None,
    synced: bool = True,
) -> Profile:
    data = validate_profile_data(data)
    p = get_profile(s, tenant_id, profile_id)
    fields_changed = apply_profile_data(p, data, source=source)
    now = datetime.utcnow()
    if fields_changed:
        p.updated_at = now
    if synced:
        p.last_synced_at = now
    if fields_changed:
        record_event(
            s,
            tenant_id=tenant_id,
            actor=actor,
            action="profile.update",
            entity_type="Profile",
            entity_id=str(p.id),
            reason=reason,
            metadata={"fields_changed": fields_changed},
        )
    return p


def deactivate_profile(s, tenant_id: str, profile_id: int, *, actor: str | None = None) -> Profile:
    """Soft delete: INACTIVE status, name prefixed with "[INACTIVE] ", meta.deletedAt."""
    p = get_profile(s, tenant_id, profile_id)
    if p.status == ProfileStatus.MERGED.value:
        raise ValidationError(f"Profile {profile_id} was merged; it cannot be deactivated.")
    if p.status == ProfileStatus.INACTIVE.value:
        return p
    now = datetime.utcnow()
    p.status = ProfileStatus.INACTIVE.value
    p.name = f"[INACTIVE] {p.name}"
    p.meta = {**(p.meta or {}), "deletedAt": now.isoformat()}
    p.updated_at = now
    record_event(
        s,
        tenant_id=tenant_id,
        actor=actor,
        action="profile.deactivate",
        entity_type="Profile",
        entity_id=str(p.id),
    )
    return p
