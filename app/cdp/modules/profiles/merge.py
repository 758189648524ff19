"""
Merge Engine: apply an approved MergeCandidate.

Survivor selection: PROFILE2_WINS keeps profile 2; every other strategy keeps
profile 1 (the older profile, since candidates store the lower id first).

Field rules:
- PROFILE1_WINS / PROFILE2_WINS: winner's scalar values; winner's empty fields
  are filled from the loser.
- MERGE_BOTH: as PROFILE1_WINS, and the loser's differing email/phone are kept
  as SECONDARY entries of emails/phones.
- MANUAL: resolved_conflicts (field or "attributes.<key>" -> chosen value) must
  cover every stored conflict; everything else follows MERGE_BOTH.
- all strategies: tags, segment ids, emails and phones are unioned;
  attributes/metadata are dict-merged with winner precedence.

Everything after revalidation runs in one SAVEPOINT, holding SELECT ... FOR UPDATE
row locks on both profiles (taken in id order) until the caller commits. Any
failure rolls the savepoint back; no partial merge is ever visible.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from datetime import datetime
from enum import Enum
from typing import Any

from app.cdp.audit import record_event
from app.cdp.errors import IncompleteResolutionError, StaleCandidateError, ValidationError
from app.cdp.modules.profiles.duplicates import ATTRIBUTE_CONFLICT_PREFIX, get_candidate_record
from app.cdp.modules.profiles.models import (
    Activity,
    Billing,
    CandidateStatus,
    Deal,
    MergeCandidateRecord,
    Profile,
    ProfileEvent,
    ProfileStatus,
    ProfileTag,
    ProfileType,
    Quotation,
)
from app.cdp.modules.profiles.utils import (
    canonical_company_key,
    has_value,
    normalize_email,
    normalize_phone,
)

logger = logging.getLogger(__name__)


class MergeStrategy(str, Enum):
    PROFILE1_WINS = "PROFILE1_WINS"
    PROFILE2_WINS = "PROFILE2_WINS"
    MERGE_BOTH = "MERGE_BOTH"
    MANUAL = "MANUAL"


_SCALAR_FIELDS = (
    "type",
    "name",
    "display_name",
    "first_name",
    "last_name",
    "company_name",
    "email",
    "phone",
    "address",
    "company_tax_id",
    "industry",
    "company_size",
    "website",
)

# Dependent tables re-pointed wholesale from loser to survivor.
_DEPENDENTS = (
    ("events", ProfileEvent),
    ("deals", Deal),
    ("activities", Activity),
    ("quotations", Quotation),
    ("billings", Billing),
)


def _strategy(value: Any) -> MergeStrategy:
    if isinstance(value, MergeStrategy):
        return value
    try:
        return MergeStrategy(str(value).strip().upper())
    except ValueError:
        raise ValidationError(f"Invalid merge strategy: {value!r}")


def _json_key(item: Any) -> str:
    return json.dumps(item, sort_keys=True, default=str)


def _union(first: list | None, second: list | None, key=_json_key) -> list:
    out: list = []
    seen: set = set()
    for item in [*(first or []), *(second or [])]:
        k = key(item)
        if k in seen:
            continue
        seen.add(k)
        out.append(item)
    return out


def _contact_key(field_name: str, normalize):
    def _key(item: Any):
        if isinstance(item, dict):
            return normalize(item.get(field_name)) or _json_key(item)
        return _json_key(item)
    return _key


def _secondary(items: list, field_name: str, value: str, normalize, source: str | None) -> list:
    """Mark the loser's primary contact as SECONDARY, adding it when missing."""
    key = normalize(value)
    out: list = []
    found = False
    for item in items:
        if isinstance(item, dict) and normalize(item.get(field_name)) == key:
            item = {**item, "type": "SECONDARY"}
            found = True
        out.append(item)
    if not found:
        out.append({field_name: value, "type": "SECONDARY", "source": source})
    return out


def _stored_conflict_names(rec: MergeCandidateRecord) -> list[str]:
    return [c["name"] for c in (rec.conflict_fields or []) if isinstance(c, dict) and c.get("name")]


def _check_manual_resolution(rec: MergeCandidateRecord, resolved: Mapping[str, Any] | None) -> dict[str, Any]:
    resolved = dict(resolved or {})
    missing = [n for n in _stored_conflict_names(rec) if n not in resolved]
    if missing:
        raise IncompleteResolutionError(missing)
    unknown = [
        n for n in resolved
        if n not in _SCALAR_FIELDS
        and not (n.startswith(ATTRIBUTE_CONFLICT_PREFIX) and len(n) > len(ATTRIBUTE_CONFLICT_PREFIX))
    ]
    if unknown:
        raise ValidationError(f"Cannot resolve unknown field(s): {', '.join(sorted(unknown))}")
    if "type" in resolved:
        t = str(resolved["type"] or "").strip().upper()
        if t not in ProfileType.__members__:
            raise ValidationError(f"Invalid profile type: {resolved['type']!r}")
        resolved["type"] = t
    if isinstance(resolved.get("address"), str):
        # conflict values are reported as strings; addresses round-trip through JSON
        try:
            resolved["address"] = json.loads(resolved["address"])
        except ValueError:
            raise ValidationError("address must be a JSON object.")
    return resolved


def _revalidate(s, tenant_id: str, rec: MergeCandidateRecord) -> tuple[Profile, Profile]:
    if rec.status != CandidateStatus.PENDING.value:
        raise StaleCandidateError(f"Merge candidate {rec.id} is {rec.status}, not PENDING")
    profiles = (
        s.query(Profile)
        .filter(Profile.tenant_id == tenant_id, Profile.id.in_([rec.profile_id1, rec.profile_id2]))
        .order_by(Profile.id.asc())
        .with_for_update()
        .populate_existing()
        .all()
    )
    by_id = {p.id: p for p in profiles}
    p1, p2 = by_id.get(rec.profile_id1), by_id.get(rec.profile_id2)
    if p1 is None or p2 is None or p1.id == p2.id:
        raise StaleCandidateError(f"Merge candidate {rec.id} refers to missing profiles")
    for p in (p1, p2):
        if p.status != ProfileStatus.ACTIVE.value:
            raise StaleCandidateError(f"Profile {p.id} is {p.status}; merge candidate {rec.id} is stale")
    return p1, p2


def _apply_fields(
    survivor: Profile,
    loser: Profile,
    strategy: MergeStrategy,
    resolved: Mapping[str, Any],
) -> list[str]:
    changed: list[str] = []

    def _set(attr: str, val: Any) -> None:
        if getattr(survivor, attr) != val:
            setattr(survivor, attr, val)
            changed.append(attr)

    for f in _SCALAR_FIELDS:
        if f in resolved:
            _set(f, resolved[f])
        elif not has_value(getattr(survivor, f)) and has_value(getattr(loser, f)):
            _set(f, getattr(loser, f))

    emails = _union(survivor.emails, loser.emails, key=_contact_key("email", normalize_email))
    phones = _union(survivor.phones, loser.phones, key=_contact_key("phone", normalize_phone))
    keep_both = strategy in (MergeStrategy.MERGE_BOTH, MergeStrategy.MANUAL)
    if keep_both and loser.email and normalize_email(loser.email) != normalize_email(survivor.email):
        emails = _secondary(emails, "email", loser.email, normalize_email, loser.primary_source)
    if keep_both and loser.phone and normalize_phone(loser.phone) != normalize_phone(survivor.phone):
        phones = _secondary(phones, "phone", loser.phone, normalize_phone, loser.primary_source)
    _set("emails", emails)
    _set("phones", phones)

    _set("tags", _union(survivor.tags, loser.tags))
    _set("segment_ids", _union(survivor.segment_ids, loser.segment_ids, key=str))
    attributes = {**(loser.attributes or {}), **(survivor.attributes or {})}
    for name, val in resolved.items():
        if name.startswith(ATTRIBUTE_CONFLICT_PREFIX):
            attributes[name[len(ATTRIBUTE_CONFLICT_PREFIX):]] = val
    _set("attributes", attributes)
    _set("meta", {**(loser.meta or {}), **(survivor.meta or {})})

    survivor.email_key = normalize_email(survivor.email)
    survivor.phone_key = normalize_phone(survivor.phone)
    survivor.company_key = canonical_company_key(survivor.company_name) or None
    return changed


def _repoint(s, tenant_id: str, survivor: Profile, loser: Profile) -> dict[str, int]:
    counts: dict[str, int] = {}
    for label, model in _DEPENDENTS:
        counts[label] = (
            s.query(model)
            .filter(model.tenant_id == tenant_id, model.profile_id == loser.id)
            .update({"profile_id": survivor.id}, synchronize_session="fetch")
        )

    # Tag relations: drop the loser's rows for tags the survivor already has, move the rest.
    survivor_tag_ids = [t for (t,) in s.query(ProfileTag.tag_id).filter(ProfileTag.profile_id == survivor.id)]
    if survivor_tag_ids:
        (
            s.query(ProfileTag)
            .filter(ProfileTag.profile_id == loser.id, ProfileTag.tag_id.in_(survivor_tag_ids))
            .delete(synchronize_session="fetch")
        )
    counts["tag_relations"] = (
        s.query(ProfileTag)
        .filter(ProfileTag.profile_id == loser.id)
        .update({"profile_id": survivor.id}, synchronize_session="fetch")
    )

    # Identifiers: both sets survive; the survivor keeps its primary per source.
    now = datetime.utcnow()
    survivor_primary_sources = {
        i.source for i in survivor.identifiers if i.is_active and i.is_primary
    }
    moved = 0
    for ident in list(loser.identifiers):
        if ident.is_active and ident.is_primary and ident.source in survivor_primary_sources:
            ident.is_primary = False
        ident.profile = survivor
        ident.updated_at = now
        moved += 1
    counts["identifiers"] = moved
    s.flush()
    return counts


def _merge_one(
    s,
    tenant_id: str,
    rec: MergeCandidateRecord,
    strategy: MergeStrategy,
    resolved_conflicts: Mapping[str, Any] | None,
    actor: str | None,
) -> Profile:
    resolved: dict[str, Any] = {}
    if strategy == MergeStrategy.MANUAL:
        resolved = _check_manual_resolution(rec, resolved_conflicts)

    with s.begin_nested():
        p1, p2 = _revalidate(s, tenant_id, rec)
        if strategy == MergeStrategy.PROFILE2_WINS:
            survivor, loser = p2, p1
        else:
            survivor, loser = p1, p2

        fields_changed = _apply_fields(survivor, loser, strategy, resolved)
        counts = _repoint(s, tenant_id, survivor, loser)

        now = datetime.utcnow()
        survivor.updated_at = now
        loser.status = ProfileStatus.MERGED.value
        loser.meta = {**(loser.meta or {}), "mergedInto": survivor.id, "mergedAt": now.isoformat()}
        loser.updated_at = now

        rec.status = CandidateStatus.MERGED.value
        rec.survivor_id = survivor.id
        rec.resolved_at = now
        rec.resolved_by = actor
        s.flush()

        record_event(
            s,
            tenant_id=tenant_id,
            actor=actor,
            action="profile.merge",
            entity_type="Profile",
            entity_id=str(survivor.id),
            metadata={
                "candidate_id": rec.id,
                "strategy": strategy.value,
                "merged_profile_id": loser.id,
                "fields_changed": fields_changed,
                "repointed": counts,
            },
        )

    logger.info(
        "MERGE: tenant=%s candidate=%s strategy=%s survivor=%s loser=%s repointed=%s",
        tenant_id, rec.id, strategy.value, survivor.id, loser.id, counts,
    )
    return survivor


def merge(
    s,
    tenant_id: str,
    candidate_id: int,
    strategy: MergeStrategy | str,
    resolved_conflicts: Mapping[str, Any] | None = None,
    *,
    actor: str | None = None,
) -> Profile:
    """
    Apply one PENDING candidate and return the surviving profile.

    Raises StaleCandidateError when the candidate was already consumed or either
    profile is no longer ACTIVE, and IncompleteResolutionError (before touching
    anything) when a MANUAL merge leaves a conflict unresolved.
    """
    strat = _strategy(strategy)
    rec = get_candidate_record(s, tenant_id, candidate_id)
    return _merge_one(s, tenant_id, rec, strat, resolved_conflicts, actor)


def merge_many(
    s,
    tenant_id: str,
    candidate_ids: Iterable[int],
    strategy: MergeStrategy | str,
    resolved_conflicts: Mapping[int, Mapping[str, Any]] | None = None,
    *,
    actor: str | None = None,
) -> list[Profile]:
    """
    Apply several candidates as one unit: either all merge or none do.

    Candidates are applied in the given order. A candidate whose profiles were
    already consumed by an earlier merge in the same call is stale, like any
    other consumed candidate.
    """
    strat = _strategy(strategy)
    ids = list(candidate_ids)
    recs = [get_candidate_record(s, tenant_id, cid) for cid in ids]
    if strat == MergeStrategy.MANUAL:
        for rec in recs:
            _check_manual_resolution(rec, (resolved_conflicts or {}).get(rec.id))

    survivors: list[Profile] = []
    with s.begin_nested():
        for rec in recs:
            survivors.append(
                _merge_one(s, tenant_id, rec, strat, (resolved_conflicts or {}).get(rec.id), actor)
            )
    return survivors
