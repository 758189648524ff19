"""Tests for the Duplicate Detector."""
import threading

import pytest

from app.cdp import create_app
from app.cdp.db import session_scope
from app.cdp.errors import DetectionCancelled, StaleCandidateError
from app.cdp.models import Base
from app.cdp.modules.profiles.duplicates import (
    MatchPolicy,
    detect_duplicates,
    find_merge_candidates,
    get_candidate,
    list_candidates,
    reject_candidate,
)
from app.cdp.modules.profiles.models import CandidateStatus, MergeCandidateRecord, Profile
from app.cdp.modules.profiles.service import ProfileData, create_profile, deactivate_profile

TENANT = "t1"
POLICY = MatchPolicy()


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    return app


def _profile(s, tenant_id=TENANT, **fields):
    return create_profile(s, tenant_id, ProfileData(**fields), source="MANUAL")


def _reasons(candidate):
    return [r.reason.lower() for r in candidate.match_reasons]


def test_same_email_produces_candidate_with_reason(app):
    with session_scope(app) as s:
        p1 = _profile(s, email="b@x.com", first_name="Bea")
        p2 = _profile(s, email="B@X.com", first_name="Beatrice")
        _profile(s, email="someone@else.com", first_name="Zed")

        candidates = find_merge_candidates(s, TENANT, policy=POLICY)
        assert len(candidates) == 1
        c = candidates[0]
        assert (c.profile_id1, c.profile_id2) == (p1.id, p2.id)
        assert "exact email match" in _reasons(c)
        assert c.match_score == sum(r.score for r in c.match_reasons)
        assert c.match_score > POLICY.threshold


def test_conflicting_fields_are_reported_not_resolved(app):
    with session_scope(app) as s:
        _profile(s, email="b@x.com", first_name="Bea", industry="Retail")
        _profile(s, email="b@x.com", first_name="Beatrice", industry="Retail", website="bea.example")

        (c,) = find_merge_candidates(s, TENANT, policy=POLICY)
        by_name = {f.name: f for f in c.conflict_fields}
        assert by_name["first_name"].value1 == "Bea"
        assert by_name["first_name"].value2 == "Beatrice"
        assert "industry" not in by_name  # equal
        assert "website" not in by_name  # only one side has it
        assert "email" not in by_name


def test_attribute_keys_conflict_individually(app):
    with session_scope(app) as s:
        _profile(s, email="b@x.com", attributes={"tier": "gold", "region": "north", "lang": "th"})
        _profile(s, email="b@x.com", attributes={"tier": "silver", "region": "north", "vip": True})

        (c,) = find_merge_candidates(s, TENANT, policy=POLICY)
        by_name = {f.name: f for f in c.conflict_fields}
        assert by_name["attributes.tier"].value1 == "gold"
        assert by_name["attributes.tier"].value2 == "silver"
        assert "attributes.region" not in by_name  # equal
        assert "attributes.lang" not in by_name  # only one side has it
        assert "attributes.vip" not in by_name


def test_score_must_exceed_threshold(app):
    with session_scope(app) as s:
        _profile(s, first_name="John", last_name="Smith")
        _profile(s, first_name="John", last_name="Smith")

        # name similarity alone stays under the default threshold
        assert find_merge_candidates(s, TENANT, policy=POLICY) == []

        lenient = MatchPolicy(threshold=20)
        (c,) = find_merge_candidates(s, TENANT, policy=lenient)
        assert any(r.startswith("similar name") for r in _reasons(c))


def test_policy_from_config_mapping():
    policy = MatchPolicy.from_config({"DUPLICATE_MATCH_THRESHOLD": 70, "MATCH_WEIGHT_EMAIL": 80})
    assert policy.threshold == 70
    assert policy.weight_email == 80
    assert policy.weight_phone == MatchPolicy.weight_phone


def test_company_signal_full_weight_only_for_companies(app):
    with session_scope(app) as s:
        c1 = _profile(s, type="COMPANY", company_name="Acme Co., Ltd.")
        c2 = _profile(s, type="COMPANY", company_name="ACME Inc")
        _profile(s, company_name="Acme", first_name="Ann")

        candidates = find_merge_candidates(s, TENANT, policy=POLICY)
        pairs = {(c.profile_id1, c.profile_id2) for c in candidates}
        assert pairs == {(c1.id, c2.id)}
        assert "same normalized company name" in _reasons(candidates[0])


def test_only_active_profiles_within_tenant(app):
    with session_scope(app) as s:
        p1 = _profile(s, email="a@x.com")
        p2 = _profile(s, email="a@x.com")
        _profile(s, tenant_id="t2", email="a@x.com")
        deactivate_profile(s, TENANT, p2.id)
        s.flush()
        assert find_merge_candidates(s, TENANT, policy=POLICY) == []

        p3 = _profile(s, email="a@x.com")
        (c,) = find_merge_candidates(s, TENANT, policy=POLICY)
        assert (c.profile_id1, c.profile_id2) == (p1.id, p3.id)


def test_oversized_block_still_pairs_neighbors(app):
    with session_scope(app) as s:
        for name in ("Ann", "Bob", "Cid", "Dee"):
            _profile(s, email="shared@x.com", first_name=name)
        small_blocks = MatchPolicy(max_block_size=2)
        candidates = find_merge_candidates(s, TENANT, policy=small_blocks)
        assert len(candidates) == 6


def test_cancelled_detection_persists_nothing(app):
    with session_scope(app) as s:
        _profile(s, email="a@x.com")
        _profile(s, email="a@x.com")
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(DetectionCancelled):
            detect_duplicates(s, TENANT, policy=POLICY, cancel=cancel)
        assert s.query(MergeCandidateRecord).count() == 0


def test_detection_does_not_touch_profiles(app):
    with session_scope(app) as s:
        p1 = _profile(s, email="a@x.com", first_name="Ann")
        p2 = _profile(s, email="a@x.com", first_name="Anna")
        s.flush()
        before = {p.id: (p.updated_at, p.status, p.first_name) for p in s.query(Profile)}
        detect_duplicates(s, TENANT, policy=POLICY)
        s.flush()
        s.expire_all()
        after = {p.id: (p.updated_at, p.status, p.first_name) for p in s.query(Profile)}
        assert before == after
        assert {p1.id, p2.id} == set(after)


def test_detect_persists_and_reuses_pending_candidates(app):
    with session_scope(app) as s:
        _profile(s, email="a@x.com", first_name="Ann")
        _profile(s, email="a@x.com", first_name="Anna")
        (first,) = detect_duplicates(s, TENANT, policy=POLICY)
        (second,) = detect_duplicates(s, TENANT, policy=POLICY)
        assert first.id is not None
        assert second.id == first.id
        assert [c.id for c in list_candidates(s, TENANT)] == [first.id]
        assert get_candidate(s, TENANT, first.id).status == CandidateStatus.PENDING.value


def test_changed_pair_supersedes_old_candidate(app):
    with session_scope(app) as s:
        p1 = _profile(s, email="a@x.com", first_name="Ann")
        p2 = _profile(s, email="a@x.com", first_name="Anna")
        (old,) = detect_duplicates(s, TENANT, policy=POLICY)

        p1.phone, p1.phone_key = "0811", "0811"
        p2.phone, p2.phone_key = "0811", "0811"
        s.flush()
        (new,) = detect_duplicates(s, TENANT, policy=POLICY)
        assert new.id != old.id
        assert new.match_score > old.match_score
        assert get_candidate(s, TENANT, old.id).status == CandidateStatus.SUPERSEDED.value


def test_reject_candidate(app):
    with session_scope(app) as s:
        _profile(s, email="a@x.com")
        _profile(s, email="a@x.com")
        (c,) = detect_duplicates(s, TENANT, policy=POLICY)
        rejected = reject_candidate(s, TENANT, c.id, actor="ops@example.com")
        assert rejected.status == CandidateStatus.REJECTED.value
        assert list_candidates(s, TENANT) == []
        with pytest.raises(StaleCandidateError):
            reject_candidate(s, TENANT, c.id)
