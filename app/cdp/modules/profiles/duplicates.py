"""
Duplicate Detector.

Finds pairs of ACTIVE profiles in one tenant that plausibly denote the same
entity but are not already linked by a shared active identifier.

Blocking (no full O(n^2) scan): profiles are bucketed by every email key,
phone key, canonical company key, tax id and 3-character name-token prefix
they carry; only profiles sharing a bucket are compared. Buckets larger than
max_block_size fall back to a sorted-neighborhood window.

Scoring is a weighted sum of independent signals, each reported as its own
MatchReason; total is capped at 100. A pair becomes a candidate only when the
total is strictly above the policy threshold. Every field set on both profiles
with differing values is reported as a ConflictField, as is every custom
attribute key both profiles set differently ("attributes.<key>"). The detector
never picks a winner.

Detection is read-only for profiles and identifiers. Persisting candidates
happens only after the whole scan completes, so a cancelled scan writes nothing.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from rapidfuzz import fuzz

from app.cdp.audit import record_event
from app.cdp.config import load_settings
from app.cdp.errors import DetectionCancelled, NotFoundError, StaleCandidateError
from app.cdp.modules.profiles.models import (
    CandidateStatus,
    MergeCandidateRecord,
    Profile,
    ProfileStatus,
    ProfileType,
)
from app.cdp.modules.profiles.utils import (
    has_value,
    name_key,
    normalize_email,
    normalize_phone,
    normalize_tax_id,
)

logger = logging.getLogger(__name__)

# Fields compared for conflicts, in report order.
CONFLICT_FIELDS = (
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

# Custom attribute keys conflict individually, reported as "attributes.<key>".
ATTRIBUTE_CONFLICT_PREFIX = "attributes."

_NEIGHBORHOOD_WINDOW = 10


@dataclass(frozen=True)
class MatchPolicy:
    threshold: int = 40
    weight_email: int = 50
    weight_phone: int = 45
    weight_company: int = 45
    weight_name: int = 25
    weight_source_family: int = 5
    name_similarity_threshold: int = 85
    max_block_size: int = 200

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "MatchPolicy":
        """Build from a Flask-style config mapping (see config.load_config)."""
        return cls(
            threshold=int(cfg.get("DUPLICATE_MATCH_THRESHOLD", cls.threshold)),
            weight_email=int(cfg.get("MATCH_WEIGHT_EMAIL", cls.weight_email)),
            weight_phone=int(cfg.get("MATCH_WEIGHT_PHONE", cls.weight_phone)),
            weight_company=int(cfg.get("MATCH_WEIGHT_COMPANY", cls.weight_company)),
            weight_name=int(cfg.get("MATCH_WEIGHT_NAME", cls.weight_name)),
            weight_source_family=int(cfg.get("MATCH_WEIGHT_SOURCE_FAMILY", cls.weight_source_family)),
            name_similarity_threshold=int(cfg.get("NAME_SIMILARITY_THRESHOLD", cls.name_similarity_threshold)),
            max_block_size=int(cfg.get("DUPLICATE_MAX_BLOCK_SIZE", cls.max_block_size)),
        )

    @classmethod
    def from_env(cls) -> "MatchPolicy":
        st = load_settings()
        return cls(
            threshold=st.duplicate_match_threshold,
            weight_email=st.match_weight_email,
            weight_phone=st.match_weight_phone,
            weight_company=st.match_weight_company,
            weight_name=st.match_weight_name,
            weight_source_family=st.match_weight_source_family,
            name_similarity_threshold=st.name_similarity_threshold,
            max_block_size=st.duplicate_max_block_size,
        )


@dataclass(frozen=True)
class MatchReason:
    reason: str
    score: int

    def to_dict(self) -> dict[str, Any]:
        return {"reason": self.reason, "score": self.score}


@dataclass(frozen=True)
class ConflictField:
    name: str
    value1: str
    value2: str

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "value1": self.value1, "value2": self.value2}


@dataclass(frozen=True)
class MergeCandidate:
    """A proposed, unapplied equivalence. profile_id1 is always the older (lower) id."""

    profile_id1: int
    profile_id2: int
    match_score: int
    match_reasons: tuple[MatchReason, ...]
    conflict_fields: tuple[ConflictField, ...]
    id: int | None = None
    status: str = CandidateStatus.PENDING.value

    @property
    def conflict_names(self) -> list[str]:
        return [c.name for c in self.conflict_fields]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "profileId1": self.profile_id1,
            "profileId2": self.profile_id2,
            "matchScore": self.match_score,
            "matchReasons": [r.to_dict() for r in self.match_reasons],
            "conflictFields": [c.to_dict() for c in self.conflict_fields],
            "status": self.status,
        }


def candidate_from_record(rec: MergeCandidateRecord) -> MergeCandidate:
    return MergeCandidate(
        id=rec.id,
        profile_id1=rec.profile_id1,
        profile_id2=rec.profile_id2,
        match_score=rec.match_score,
        match_reasons=tuple(MatchReason(r["reason"], int(r["score"])) for r in (rec.match_reasons or [])),
        conflict_fields=tuple(
            ConflictField(c["name"], c["value1"], c["value2"]) for c in (rec.conflict_fields or [])
        ),
        status=rec.status,
    )


# ----------------------------------------------------------------------------
# Signals
# ----------------------------------------------------------------------------

def _email_keys(p: Profile) -> set[str]:
    keys = {normalize_email(p.email)}
    keys.update(normalize_email(e.get("email")) for e in (p.emails or []) if isinstance(e, dict))
    keys.discard(None)
    return keys  # type: ignore[return-value]


def _phone_keys(p: Profile) -> set[str]:
    keys = {normalize_phone(p.phone)}
    keys.update(normalize_phone(x.get("phone")) for x in (p.phones or []) if isinstance(x, dict))
    keys.discard(None)
    return keys  # type: ignore[return-value]


def _comparable_name(p: Profile) -> str:
    if p.type == ProfileType.COMPANY.value and p.company_name:
        return name_key(p.company_name)
    return name_key(p.display_name or p.name)


def _active_identifier_tuples(p: Profile) -> set[tuple[str, str, str]]:
    return {(i.source, i.source_type, i.external_id) for i in (p.identifiers or []) if i.is_active}


def _active_sources(p: Profile) -> set[str]:
    return {i.source for i in (p.identifiers or []) if i.is_active}


def _conflict_value(field_name: str, value: Any) -> Any:
    """Comparison form of a field value (None when not set)."""
    if not has_value(value):
        return None
    if field_name == "email":
        return normalize_email(value)
    if field_name == "phone":
        return normalize_phone(value)
    if field_name == "company_tax_id":
        return normalize_tax_id(value)
    if field_name == "address":
        return {k: str(v).strip() for k, v in value.items() if has_value(v)}
    return str(value).strip()


def _display_value(value: Any) -> str:
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True, ensure_ascii=False)
    return str(value)


def compute_conflicts(p1: Profile, p2: Profile) -> list[ConflictField]:
    out: list[ConflictField] = []
    for f in CONFLICT_FIELDS:
        v1, v2 = getattr(p1, f), getattr(p2, f)
        c1, c2 = _conflict_value(f, v1), _conflict_value(f, v2)
        if c1 is None or c2 is None or c1 == c2:
            continue
        out.append(ConflictField(f, _display_value(v1), _display_value(v2)))
    a1, a2 = p1.attributes or {}, p2.attributes or {}
    for key in sorted(set(a1) & set(a2), key=str):
        v1, v2 = a1[key], a2[key]
        if not has_value(v1) or not has_value(v2):
            continue
        if json.dumps(v1, sort_keys=True, default=str) == json.dumps(v2, sort_keys=True, default=str):
            continue
        out.append(ConflictField(f"{ATTRIBUTE_CONFLICT_PREFIX}{key}", _display_value(v1), _display_value(v2)))
    return out


def score_pair(p1: Profile, p2: Profile, policy: MatchPolicy) -> tuple[int, list[MatchReason]]:
    reasons: list[MatchReason] = []

    if _email_keys(p1) & _email_keys(p2):
        reasons.append(MatchReason("Exact email match", policy.weight_email))

    if _phone_keys(p1) & _phone_keys(p2):
        reasons.append(MatchReason("Exact phone match", policy.weight_phone))

    both_company = p1.type == ProfileType.COMPANY.value and p2.type == ProfileType.COMPANY.value
    company_weight = policy.weight_company if both_company else policy.weight_company // 2
    tax1, tax2 = normalize_tax_id(p1.company_tax_id), normalize_tax_id(p2.company_tax_id)
    if tax1 and tax1 == tax2:
        reasons.append(MatchReason("Same company tax ID", company_weight))
    elif p1.company_key and p1.company_key == p2.company_key:
        reasons.append(MatchReason("Same normalized company name", company_weight))

    n1, n2 = _comparable_name(p1), _comparable_name(p2)
    if n1 and n2 and n1 != "unknown" and n2 != "unknown":
        ratio = int(round(fuzz.token_sort_ratio(n1, n2)))
        if ratio >= policy.name_similarity_threshold:
            reasons.append(MatchReason(f"Similar name ({ratio}%)", round(policy.weight_name * ratio / 100)))

    shared_sources = sorted(_active_sources(p1) & _active_sources(p2))
    if shared_sources:
        reasons.append(
            MatchReason(f"Both have {shared_sources[0]} identifiers (different ids)", policy.weight_source_family)
        )

    total = min(100, sum(r.score for r in reasons))
    return total, reasons


# ----------------------------------------------------------------------------
# Blocking
# ----------------------------------------------------------------------------

def _block_keys(p: Profile) -> set[tuple[str, str]]:
    keys: set[tuple[str, str]] = set()
    keys.update(("email", k) for k in _email_keys(p))
    keys.update(("phone", k) for k in _phone_keys(p))
    if p.company_key:
        keys.add(("company", p.company_key))
    tax = normalize_tax_id(p.company_tax_id)
    if tax:
        keys.add(("tax", tax))
    for token in _comparable_name(p).split():
        if len(token) >= 3 and token != "unknown":
            keys.add(("name", token[:3]))
    return keys


def _check_cancel(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise DetectionCancelled("Duplicate detection cancelled")


def _candidate_pairs(
    profiles: list[Profile], policy: MatchPolicy, cancel: threading.Event | None
) -> set[tuple[int, int]]:
    blocks: dict[tuple[str, str], list[Profile]] = defaultdict(list)
    for p in profiles:
        for key in _block_keys(p):
            blocks[key].append(p)

    pairs: set[tuple[int, int]] = set()
    for key, members in blocks.items():
        _check_cancel(cancel)
        if len(members) < 2:
            continue
        if len(members) <= policy.max_block_size:
            for i, a in enumerate(members):
                for b in members[i + 1:]:
                    pairs.add((min(a.id, b.id), max(a.id, b.id)))
            continue
        logger.info("DEDUPE: block %s has %d members; using sorted-neighborhood window", key, len(members))
        ordered = sorted(members, key=lambda p: (_comparable_name(p), p.id))
        for i, a in enumerate(ordered):
            for b in ordered[i + 1:i + 1 + _NEIGHBORHOOD_WINDOW]:
                pairs.add((min(a.id, b.id), max(a.id, b.id)))
    return pairs


# ----------------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------------

def find_merge_candidates(
    s,
    tenant_id: str,
    *,
    policy: MatchPolicy | None = None,
    cancel: threading.Event | None = None,
) -> list[MergeCandidate]:
    """
    Scan ACTIVE profiles of one tenant and return unsaved candidates, best score first.
    Raises DetectionCancelled if `cancel` is set during the scan.
    """
    policy = policy or MatchPolicy.from_env()
    profiles = (
        s.query(Profile)
        .filter(Profile.tenant_id == tenant_id, Profile.status == ProfileStatus.ACTIVE.value)
        .order_by(Profile.id.asc())
        .all()
    )
    by_id = {p.id: p for p in profiles}
    pairs = _candidate_pairs(profiles, policy, cancel)

    candidates: list[MergeCandidate] = []
    for n, (id1, id2) in enumerate(sorted(pairs)):
        if n % 500 == 0:
            _check_cancel(cancel)
        p1, p2 = by_id[id1], by_id[id2]
        if _active_identifier_tuples(p1) & _active_identifier_tuples(p2):
            continue  # already linked
        total, reasons = score_pair(p1, p2, policy)
        if total <= policy.threshold:
            continue
        candidates.append(
            MergeCandidate(
                profile_id1=id1,
                profile_id2=id2,
                match_score=total,
                match_reasons=tuple(reasons),
                conflict_fields=tuple(compute_conflicts(p1, p2)),
            )
        )
    _check_cancel(cancel)

    candidates.sort(key=lambda c: (-c.match_score, c.profile_id1, c.profile_id2))
    logger.info(
        "DEDUPE: tenant=%s profiles=%d compared_pairs=%d candidates=%d",
        tenant_id, len(profiles), len(pairs), len(candidates),
    )
    return candidates


def _same_content(rec: MergeCandidateRecord, cand: MergeCandidate) -> bool:
    return (
        rec.match_score == cand.match_score
        and (rec.match_reasons or []) == [r.to_dict() for r in cand.match_reasons]
        and (rec.conflict_fields or []) == [c.to_dict() for c in cand.conflict_fields]
    )


def detect_duplicates(
    s,
    tenant_id: str,
    *,
    policy: MatchPolicy | None = None,
    cancel: threading.Event | None = None,
    actor: str | None = None,
) -> list[MergeCandidate]:
    """
    Run a scan and persist its result as PENDING candidates.

    - unchanged pending candidate for a pair -> kept (same id)
    - changed result for a pair -> old row SUPERSEDED, new row inserted
    - pending pair no longer detected -> SUPERSEDED
    """
    found = find_merge_candidates(s, tenant_id, policy=policy, cancel=cancel)

    pending = (
        s.query(MergeCandidateRecord)
        .filter(
            MergeCandidateRecord.tenant_id == tenant_id,
            MergeCandidateRecord.status == CandidateStatus.PENDING.value,
        )
        .all()
    )
    pending_by_pair = {(r.profile_id1, r.profile_id2): r for r in pending}
    now = datetime.utcnow()
    out: list[MergeCandidate] = []
    seen_pairs: set[tuple[int, int]] = set()

    for cand in found:
        pair = (cand.profile_id1, cand.profile_id2)
        seen_pairs.add(pair)
        existing = pending_by_pair.get(pair)
        if existing is not None and _same_content(existing, cand):
            out.append(candidate_from_record(existing))
            continue
        if existing is not None:
            existing.status = CandidateStatus.SUPERSEDED.value
            existing.resolved_at = now
        rec = MergeCandidateRecord(
            tenant_id=tenant_id,
            profile_id1=cand.profile_id1,
            profile_id2=cand.profile_id2,
            match_score=cand.match_score,
            match_reasons=[r.to_dict() for r in cand.match_reasons],
            conflict_fields=[c.to_dict() for c in cand.conflict_fields],
            status=CandidateStatus.PENDING.value,
            created_at=now,
        )
        s.add(rec)
        s.flush()
        out.append(candidate_from_record(rec))

    superseded = 0
    for pair, rec in pending_by_pair.items():
        if pair not in seen_pairs:
            rec.status = CandidateStatus.SUPERSEDED.value
            rec.resolved_at = now
            superseded += 1

    record_event(
        s,
        tenant_id=tenant_id,
        actor=actor,
        action="merge_candidate.detect",
        entity_type="MergeCandidate",
        metadata={"candidates": len(out), "superseded": superseded},
    )
    return out


def get_candidate_record(s, tenant_id: str, candidate_id: int) -> MergeCandidateRecord:
    rec = (
        s.query(MergeCandidateRecord)
        .filter(MergeCandidateRecord.tenant_id == tenant_id, MergeCandidateRecord.id == candidate_id)
        .one_or_none()
    )
    if rec is None:
        raise NotFoundError(f"Merge candidate {candidate_id} not found")
    return rec


def get_candidate(s, tenant_id: str, candidate_id: int) -> MergeCandidate:
    return candidate_from_record(get_candidate_record(s, tenant_id, candidate_id))


def list_candidates(s, tenant_id: str, *, status: str | None = CandidateStatus.PENDING.value) -> list[MergeCandidate]:
    q = s.query(MergeCandidateRecord).filter(MergeCandidateRecord.tenant_id == tenant_id)
    if status:
        q = q.filter(MergeCandidateRecord.status == status)
    rows = q.order_by(MergeCandidateRecord.match_score.desc(), MergeCandidateRecord.id.asc()).all()
    return [candidate_from_record(r) for r in rows]


def reject_candidate(s, tenant_id: str, candidate_id: int, *, actor: str | None = None) -> MergeCandidate:
    rec = get_candidate_record(s, tenant_id, candidate_id)
    if rec.status != CandidateStatus.PENDING.value:
        raise StaleCandidateError(f"Merge candidate {candidate_id} is {rec.status}, not PENDING")
    rec.status = CandidateStatus.REJECTED.value
    rec.resolved_at = datetime.utcnow()
    rec.resolved_by = actor
    record_event(
        s,
        tenant_id=tenant_id,
        actor=actor,
        action="merge_candidate.reject",
        entity_type="MergeCandidate",
        entity_id=str(rec.id),
        metadata={"profile_id1": rec.profile_id1, "profile_id2": rec.profile_id2},
    )
    return candidate_from_record(rec)
