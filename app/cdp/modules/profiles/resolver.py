"""
Ingestion Resolver: map one incoming external record to a profile.

Precedence (first hit wins):
1. active identifier for (source, source_type, externalId)
2. ACTIVE profile with the same email (case-insensitive)
3. ACTIVE profile with the same phone (digits-only key)
4. create a new profile

Present fields overwrite the target profile (last write wins per field, no
timestamp reconciliation: a late sync can overwrite newer data). The identifier
is attached, or its externalRef/matchQuality refreshed, and lastSyncedAt is set.

Batches are NOT transactional across records: each record runs in its own
SAVEPOINT, failures are counted and reported, and re-running a batch is safe
because every record goes back through the same precedence chain.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.exc import OperationalError

from app.cdp.errors import ValidationError
from app.cdp.modules.profiles.identifiers import (
    IdentifierInput,
    attach,
    find_active_identifier,
    refresh_identifier,
)
from app.cdp.modules.profiles.models import Profile, Source
from app.cdp.modules.profiles.service import (
    ProfileData,
    create_profile,
    find_by_email,
    find_by_phone,
    lock_profile,
    update_profile,
    validate_profile_data,
)
from app.cdp.modules.profiles.utils import clean_text, has_value, parse_flag

logger = logging.getLogger(__name__)

# ProfileData attribute -> accepted record keys (camelCase first, as sent by integrations).
_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "type": ("type",),
    "status": ("status",),
    "name": ("name",),
    "display_name": ("displayName", "display_name"),
    "first_name": ("firstName", "first_name"),
    "last_name": ("lastName", "last_name"),
    "company_name": ("companyName", "company_name"),
    "email": ("email",),
    "phone": ("phone",),
    "emails": ("emails",),
    "phones": ("phones",),
    "address": ("address",),
    "company_tax_id": ("companyTaxId", "company_tax_id"),
    "industry": ("industry",),
    "company_size": ("companySize", "company_size"),
    "website": ("website",),
    "attributes": ("attributes",),
    "tags": ("tags",),
    "segment_ids": ("segmentIds", "segment_ids"),
    "primary_source": ("primarySource", "primary_source"),
    "metadata": ("metadata",),
}


@dataclass
class IncomingRecord:
    data: ProfileData
    external_id: str | None = None
    external_ref: str | None = None
    match_quality: int | None = None
    is_primary: bool = False


@dataclass(frozen=True)
class ResolveOutcome:
    profile: Profile
    created: bool
    matched_by: str  # "identifier" | "email" | "phone" | "created"


@dataclass
class ImportResult:
    success: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "failed": self.failed, "skipped": self.skipped, "errors": list(self.errors)}


def _first(raw: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for k in keys:
        if k in raw and raw[k] is not None:
            return raw[k]
    return None


def _as_text(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    return clean_text(value)


def parse_record(raw: Any) -> IncomingRecord:
    """
    Turn an external record (mapping with camelCase or snake_case keys) into an IncomingRecord.

    externalId may sit at the top level or under metadata.externalId.
    Raises ValidationError for non-mappings, completely empty records and bad enum/number values.
    """
    if isinstance(raw, IncomingRecord):
        return raw
    if not isinstance(raw, Mapping):
        raise ValidationError(f"Record must be an object (got {type(raw).__name__}).")
    if not any(has_value(v) for v in raw.values()):
        raise ValidationError("Record is empty; nothing to import.")

    values: dict[str, Any] = {}
    for attr, keys in _FIELD_ALIASES.items():
        v = _first(raw, keys)
        if v is None:
            continue
        if attr in ("emails", "phones", "tags", "segment_ids", "address", "attributes", "metadata"):
            values[attr] = v
        else:
            text = _as_text(v)
            if text is not None:
                values[attr] = text
    data = validate_profile_data(ProfileData(**values))

    meta = raw.get("metadata") if isinstance(raw.get("metadata"), Mapping) else {}
    external_id = _as_text(_first(raw, ("externalId", "external_id"))) or _as_text(meta.get("externalId"))

    mq_raw = _first(raw, ("matchQuality", "match_quality"))
    match_quality: int | None = None
    if mq_raw is not None and mq_raw != "":
        try:
            match_quality = int(mq_raw)
        except (TypeError, ValueError):
            raise ValidationError(f"matchQuality must be a number (got {mq_raw!r}).")
        if not 0 <= match_quality <= 100:
            raise ValidationError(f"matchQuality must be between 0 and 100 (got {match_quality}).")

    primary_raw = _first(raw, ("isPrimary", "is_primary"))
    is_primary = parse_flag(primary_raw)
    if is_primary is None:
        raise ValidationError(f"isPrimary must be a boolean (got {primary_raw!r}).")

    return IncomingRecord(
        data=data,
        external_id=external_id,
        external_ref=_as_text(_first(raw, ("externalRef", "external_ref"))),
        match_quality=match_quality,
        is_primary=is_primary,
    )


def _normalize_source(source: str) -> str:
    v = str(getattr(source, "value", source) or "").strip().upper()
    if v not in Source.__members__:
        raise ValidationError(f"Invalid source: {source!r}")
    return v


def _find_target(s, tenant_id: str, source: str, source_type: str, rec: IncomingRecord):
    """Returns (profile | None, matched_by, identifier | None)."""
    if rec.external_id:
        ident = find_active_identifier(s, tenant_id, source, source_type, rec.external_id)
        if ident is not None:
            return ident.profile, "identifier", ident

    p = find_by_email(s, tenant_id, rec.data.email)
    if p is not None:
        return p, "email", None

    p = find_by_phone(s, tenant_id, rec.data.phone)
    if p is not None:
        return p, "phone", None

    return None, "created", None


def resolve_record(
    s,
    tenant_id: str,
    source: str,
    source_type: str | None,
    record: Any,
    *,
    actor: str | None = None,
) -> ResolveOutcome:
    source = _normalize_source(source)
    source_type = (source_type or "").strip()
    rec = parse_record(record)
    data = rec.data
    if data.primary_source is None:
        data.primary_source = source

    target, matched_by, ident = _find_target(s, tenant_id, source, source_type, rec)

    if target is None:
        profile = create_profile(s, tenant_id, data, source=source, actor=actor)
        profile.last_synced_at = datetime.utcnow()
        created = True
    else:
        # A merge that committed between lookup and lock redirects to the survivor.
        target = lock_profile(s, tenant_id, target.id)
        if ident is not None:
            s.refresh(ident)
        profile = update_profile(
            s, tenant_id, target.id, data, source=source, actor=actor, reason=f"ingest:{source}"
        )
        created = False

    if rec.external_id:
        if ident is not None and ident.profile_id == profile.id:
            refresh_identifier(ident, external_ref=rec.external_ref, match_quality=rec.match_quality)
        else:
            attach(
                s,
                tenant_id,
                profile.id,
                IdentifierInput(
                    source=source,
                    source_type=source_type,
                    external_id=rec.external_id,
                    external_ref=rec.external_ref,
                    match_quality=rec.match_quality,
                    is_primary=rec.is_primary,
                ),
                actor=actor,
            )

    s.flush()
    logger.debug(
        "resolve tenant=%s source=%s external_id=%s -> profile=%s (%s)",
        tenant_id, source, rec.external_id, profile.id, matched_by,
    )
    return ResolveOutcome(profile=profile, created=created, matched_by=matched_by)


def resolve_and_upsert(
    s,
    tenant_id: str,
    source: str,
    source_type: str | None,
    record: Any,
    *,
    actor: str | None = None,
) -> Profile:
    """Single-record ingestion. Raises on failure (ValidationError, ConflictError, ...)."""
    return resolve_record(s, tenant_id, source, source_type, record, actor=actor).profile


def import_batch(
    s,
    tenant_id: str,
    source: str,
    source_type: str | None,
    records: Iterable[Any],
    *,
    actor: str | None = None,
) -> ImportResult:
    """
    Import records independently.
    success = created a new profile, skipped = matched and updated an existing one,
    failed = record rejected (its SAVEPOINT is rolled back; the batch continues).
    """
    source = _normalize_source(source)
    result = ImportResult()
    for idx, record in enumerate(records):
        try:
            with s.begin_nested():
                outcome = resolve_record(s, tenant_id, source, source_type, record, actor=actor)
        except OperationalError:
            # Store unavailable: not a per-record problem.
            raise
        except Exception as exc:
            result.failed += 1
            result.errors.append(f"Record {idx}: Failed to import profile: {exc}")
            logger.warning("IMPORT: tenant=%s source=%s record=%d failed: %s", tenant_id, source, idx, exc)
            continue
        if outcome.created:
            result.success += 1
        else:
            result.skipped += 1
    logger.info(
        "IMPORT: tenant=%s source=%s success=%d skipped=%d failed=%d",
        tenant_id, source, result.success, result.skipped, result.failed,
    )
    return result
