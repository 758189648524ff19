"""Tests for the Profile Store."""
import pytest

from app.cdp import create_app
from app.cdp.db import session_scope
from app.cdp.errors import NotFoundError, ValidationError
from app.cdp.models import AuditEvent, Base
from app.cdp.modules.profiles.identifiers import IdentifierInput, attach
from app.cdp.modules.profiles.models import ProfileStatus
from app.cdp.modules.profiles.service import (
    ProfileData,
    create_profile,
    deactivate_profile,
    find_by_email,
    find_by_phone,
    get_profile,
    list_profiles,
    update_profile,
)

TENANT = "t1"


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    return app


def test_create_derives_names_and_keys(app):
    with session_scope(app) as s:
        p = create_profile(
            s, TENANT, ProfileData(first_name="Ann", last_name="Lee", email="Ann@X.com", phone="+66 81-234 5678")
        )
        assert p.id is not None
        assert p.display_name == "Ann Lee"
        assert p.name == "Ann Lee"
        assert p.status == ProfileStatus.ACTIVE.value
        assert p.primary_source == "MANUAL"
        assert p.email_key == "ann@x.com"
        assert p.phone_key == "+66812345678"
        assert p.emails == [{"email": "Ann@X.com", "type": "PRIMARY", "source": None}]
        s.flush()
        assert s.query(AuditEvent).filter(AuditEvent.action == "profile.create").count() == 1


def test_create_company_display_name(app):
    with session_scope(app) as s:
        p = create_profile(s, TENANT, ProfileData(type="company", company_name="Acme Co., Ltd."))
        assert p.type == "COMPANY"
        assert p.display_name == "Acme Co., Ltd."
        assert p.company_key


def test_invalid_enum_values_are_rejected(app):
    with session_scope(app) as s:
        with pytest.raises(ValidationError):
            create_profile(s, TENANT, ProfileData(type="ROBOT"))
        with pytest.raises(ValidationError):
            create_profile(s, TENANT, ProfileData(status="MERGED", first_name="X"))


def test_lookup_is_tenant_scoped(app):
    with session_scope(app) as s:
        p = create_profile(s, TENANT, ProfileData(email="a@x.com", phone="(02) 555 0100"))
        assert find_by_email(s, TENANT, "A@X.COM").id == p.id
        assert find_by_phone(s, TENANT, "02-555-0100").id == p.id
        assert find_by_email(s, "t2", "a@x.com") is None
        with pytest.raises(NotFoundError):
            get_profile(s, "t2", p.id)


def test_update_overwrites_present_fields_only(app):
    with session_scope(app) as s:
        p = create_profile(s, TENANT, ProfileData(first_name="Ann", industry="Retail", attributes={"tier": "gold"}))
        update_profile(s, TENANT, p.id, ProfileData(industry="Logistics", attributes={"lang": "th"}), reason="edit")
        assert p.industry == "Logistics"
        assert p.first_name == "Ann"
        assert p.attributes == {"tier": "gold", "lang": "th"}
        assert p.last_synced_at is not None
        s.flush()
        ev = s.query(AuditEvent).filter(AuditEvent.action == "profile.update").one()
        assert ev.reason == "edit"


def test_deactivate_is_soft(app):
    with session_scope(app) as s:
        p = create_profile(s, TENANT, ProfileData(first_name="Ann", email="a@x.com"))
        deactivate_profile(s, TENANT, p.id)
        s.flush()
        assert p.status == ProfileStatus.INACTIVE.value
        assert p.name == "[INACTIVE] Ann"
        assert "deletedAt" in p.meta
        assert get_profile(s, TENANT, p.id).id == p.id
        assert find_by_email(s, TENANT, "a@x.com") is None

        # idempotent
        deactivate_profile(s, TENANT, p.id)
        assert p.name == "[INACTIVE] Ann"


def test_list_profiles_filters_and_pages(app):
    with session_scope(app) as s:
        for i in range(5):
            create_profile(s, TENANT, ProfileData(first_name=f"Person{i}", industry="Retail"))
        acme = create_profile(s, TENANT, ProfileData(type="COMPANY", company_name="Acme", industry="Logistics"))
        attach(s, TENANT, acme.id, IdentifierInput(source="ERP", external_id="C1"))
        create_profile(s, "t2", ProfileData(first_name="Person9"))
        s.flush()

        page = list_profiles(s, TENANT, limit=2, page=2, sort_by="name", sort_order="asc")
        assert page["meta"] == {"total": 6, "page": 2, "limit": 2, "totalPages": 3}
        assert [p.name for p in page["data"]] == ["Person1", "Person2"]

        assert [p.id for p in list_profiles(s, TENANT, type="company")["data"]] == [acme.id]
        assert [p.id for p in list_profiles(s, TENANT, source="ERP")["data"]] == [acme.id]
        assert list_profiles(s, TENANT, search="person")["meta"]["total"] == 5
        assert list_profiles(s, TENANT, industry="retail")["meta"]["total"] == 5


def test_list_profiles_limit_is_clamped(app):
    with session_scope(app) as s:
        result = list_profiles(s, TENANT, limit=1000)
        assert result["meta"]["limit"] == 100
        assert result["meta"]["totalPages"] == 0
