"""Tests for completion score and tenant statistics."""
from datetime import datetime, timedelta

import pytest

from app.cdp import create_app
from app.cdp.db import session_scope
from app.cdp.errors import NotFoundError
from app.cdp.models import Base
from app.cdp.modules.profiles.duplicates import MatchPolicy, detect_duplicates
from app.cdp.modules.profiles.identifiers import IdentifierInput, attach
from app.cdp.modules.profiles.merge import merge
from app.cdp.modules.profiles.scoring import completion_score, profile_completion, statistics
from app.cdp.modules.profiles.service import ProfileData, create_profile, deactivate_profile, update_profile

TENANT = "t1"


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    return app


def test_completion_grows_as_fields_are_filled(app):
    with session_scope(app) as s:
        p = create_profile(s, TENANT, ProfileData(first_name="Ann", last_name="Lee"))
        # name 5 + first 5 + last 5 + both names 20
        assert completion_score(s, TENANT, p.id) == 35

        update_profile(s, TENANT, p.id, ProfileData(email="ann@x.com", phone="0811"))
        assert completion_score(s, TENANT, p.id) == 55

        attach(s, TENANT, p.id, IdentifierInput(source="ERP", external_id="C1"))
        assert completion_score(s, TENANT, p.id) == 75

        update_profile(
            s, TENANT, p.id,
            ProfileData(tags=[{"name": "vip"}], attributes={"tier": "gold"}, address={"city": "Bangkok"}),
        )
        assert completion_score(s, TENANT, p.id) == 100


def test_completion_for_company_is_capped(app):
    with session_scope(app) as s:
        p = create_profile(
            s,
            TENANT,
            ProfileData(
                type="COMPANY", company_name="Acme", first_name="Ann", last_name="Lee",
                email="info@acme.example", phone="021234567", address={"city": "Bangkok"},
                industry="Retail", company_tax_id="0105512345678", company_size="50-200",
                website="acme.example", tags=[{"name": "vip"}], attributes={"tier": "gold"},
            ),
        )
        attach(s, TENANT, p.id, IdentifierInput(source="ERP", external_id="C1"))
        assert profile_completion(p) == 100


def test_completion_unknown_profile(app):
    with session_scope(app) as s:
        with pytest.raises(NotFoundError):
            completion_score(s, TENANT, 999)


def test_statistics(app):
    with session_scope(app) as s:
        a = create_profile(s, TENANT, ProfileData(email="a@x.com", first_name="Ann"), source="ERP")
        create_profile(s, TENANT, ProfileData(email="a@x.com", first_name="Anna"), source="LINE")
        create_profile(s, TENANT, ProfileData(type="COMPANY", company_name="Acme"), source="ERP")
        old = create_profile(s, TENANT, ProfileData(first_name="Old"), source="MANUAL")
        old.created_at = datetime.utcnow() - timedelta(days=90)
        deactivate_profile(s, TENANT, old.id)
        create_profile(s, "t2", ProfileData(first_name="Elsewhere"))
        s.flush()

        (c,) = detect_duplicates(s, TENANT, policy=MatchPolicy())
        merge(s, TENANT, c.id, "PROFILE1_WINS")
        s.flush()

        stats = statistics(s, TENANT)
        assert stats["total"] == 4
        assert stats["individuals"] == 3
        assert stats["companies"] == 1
        assert stats["active"] == 2
        assert stats["inactive"] == 1
        assert stats["merged"] == 1
        assert stats["recent_created"] == 3
        assert stats["by_source"] == {"ERP": 2, "MANUAL": 1}
        assert a.status == "ACTIVE"
