from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func

from app.cdp.config import load_settings
from app.cdp.modules.profiles.models import Profile, ProfileStatus, ProfileType
from app.cdp.modules.profiles.service import get_profile
from app.cdp.modules.profiles.utils import has_value


def profile_completion(p: Profile) -> int:
    """
    Completeness 0-100:
    basic 30 (name 5, email 10, phone 10, address 5)
    profile 30 (first/last name 5 each; INDIVIDUAL +20 with both names,
                COMPANY company 10, industry/tax id/size/website 5 each)
    additional 20 (tags 10, attributes 10)
    identifiers 20 (at least one active)
    """
    score = 0

    # basic
    if has_value(p.name):
        score += 5
    if has_value(p.email):
        score += 10
    if has_value(p.phone):
        score += 10
    if has_value(p.address):
        score += 5

    # profile
    if has_value(p.first_name):
        score += 5
    if has_value(p.last_name):
        score += 5
    if p.type == ProfileType.INDIVIDUAL.value:
        if has_value(p.first_name) and has_value(p.last_name):
            score += 20
    elif p.type == ProfileType.COMPANY.value:
        if has_value(p.company_name):
            score += 10
        for v in (p.industry, p.company_tax_id, p.company_size, p.website):
            if has_value(v):
                score += 5

    # additional
    if p.tags:
        score += 10
    if p.attributes:
        score += 10

    if any(i.is_active for i in (p.identifiers or [])):
        score += 20

    # A fully described company can exceed 100 points; clamp.
    return min(100, score)


def completion_score(s, tenant_id: str, profile_id: int) -> int:
    return profile_completion(get_profile(s, tenant_id, profile_id))


def statistics(s, tenant_id: str, *, recent_days: int | None = None) -> dict[str, Any]:
    if recent_days is None:
        recent_days = load_settings().stats_recent_days
    since = datetime.utcnow() - timedelta(days=recent_days)

    base = s.query(Profile).filter(Profile.tenant_id == tenant_id)

    by_type = dict(
        base.with_entities(Profile.type, func.count(Profile.id)).group_by(Profile.type).all()
    )
    by_status = dict(
        base.with_entities(Profile.status, func.count(Profile.id)).group_by(Profile.status).all()
    )
    by_source = dict(
        base.filter(Profile.status != ProfileStatus.MERGED.value)
        .with_entities(Profile.primary_source, func.count(Profile.id))
        .group_by(Profile.primary_source)
        .all()
    )

    return {
        "total": sum(by_status.values()),
        "individuals": by_type.get(ProfileType.INDIVIDUAL.value, 0),
        "companies": by_type.get(ProfileType.COMPANY.value, 0),
        "active": by_status.get(ProfileStatus.ACTIVE.value, 0),
        "inactive": by_status.get(ProfileStatus.INACTIVE.value, 0),
        "merged": by_status.get(ProfileStatus.MERGED.value, 0),
        "recent_created": base.filter(Profile.created_at >= since).count(),
        "recent_days": recent_days,
        "by_source": by_source,
    }
