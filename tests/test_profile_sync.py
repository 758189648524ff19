"""Tests for the remote profile sync (API source)."""
import io
import json
import urllib.error

import pytest

from app.cdp import create_app
from app.cdp.db import session_scope
from app.cdp.errors import UpstreamFetchError
from app.cdp.models import AuditEvent, Base
from app.cdp.modules.profile_sync import client as client_mod
from app.cdp.modules.profile_sync.client import HttpProfileFetcher, unwrap_records
from app.cdp.modules.profile_sync.models import ProfileSyncRun
from app.cdp.modules.profile_sync.service import map_external_profile, sync_from_api
from app.cdp.modules.profiles.identifiers import lookup
from app.cdp.modules.profiles.models import Profile

TENANT = "t1"
API_URL = "https://crm.example.com/api/customers"


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    return app


class FakeFetcher:
    def __init__(self, records=None, error=None):
        self.records = records or []
        self.error = error
        self.calls = []

    def fetch(self, api_url, api_key):
        self.calls.append((api_url, api_key))
        if self.error:
            raise self.error
        return self.records


class _Resp(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


def test_map_external_profile_field_variants():
    rec = map_external_profile(
        {"id": 42, "Email": "ann@acme.example", "First Name": "Ann", "Company Name": "Acme", "TaxId": "123"}
    )
    assert rec["type"] == "COMPANY"
    assert rec["email"] == "ann@acme.example"
    assert rec["firstName"] == "Ann"
    assert rec["companyName"] == "Acme"
    assert rec["name"] == "Acme"
    assert rec["companyTaxId"] == "123"
    assert rec["metadata"]["externalId"] == "42"
    assert "address" not in rec


def test_map_external_profile_individual():
    rec = map_external_profile({"customerId": "c-1", "email": "bob@x.com", "lastName": "Stone", "address": {"zip": "10110"}})
    assert rec["type"] == "INDIVIDUAL"
    assert rec["name"] == "Stone"
    assert rec["address"] == {"postalCode": "10110"}
    assert rec["metadata"]["externalId"] == "c-1"


def test_unwrap_records_envelopes():
    assert unwrap_records([{"a": 1}]) == [{"a": 1}]
    assert unwrap_records({"data": [{"a": 1}]}) == [{"a": 1}]
    assert unwrap_records({"customers": [{"b": 2}]}) == [{"b": 2}]
    assert unwrap_records({"data": []}) == []
    with pytest.raises(UpstreamFetchError):
        unwrap_records("nope")
    with pytest.raises(UpstreamFetchError):
        unwrap_records({"data": {"not": "a list"}})


def test_sync_imports_records_as_api_source(app):
    fetcher = FakeFetcher(
        [
            {"id": "1", "email": "ann@x.com", "firstName": "Ann"},
            {"id": "2", "email": "bob@x.com", "firstName": "Bob"},
            {"id": "3", "email": "ann@x.com", "phone": "0811"},  # same person as id 1
            {"id": "4", "type": "ROBOT"},
        ]
    )
    with session_scope(app) as s:
        result = sync_from_api(s, TENANT, API_URL, "secret", sync_frequency="daily", fetcher=fetcher)

        assert fetcher.calls == [(API_URL, "secret")]
        assert result.total_fetched == 4
        assert (result.success, result.skipped, result.failed) == (2, 1, 1)
        assert result.sync_frequency == "daily"
        assert result.errors[0].startswith("Record 3:")

        ann_id = lookup(s, TENANT, "API", None, "1")
        assert ann_id is not None
        assert lookup(s, TENANT, "API", None, "3") == ann_id
        assert s.query(Profile).count() == 2

        run = s.query(ProfileSyncRun).one()
        assert run.status == "COMPLETED"
        assert (run.success_count, run.skipped_count, run.failed_count) == (2, 1, 1)
        assert s.query(AuditEvent).filter(AuditEvent.action == "profile_sync.completed").count() == 1


def test_sync_fetch_failure_processes_nothing(app):
    fetcher = FakeFetcher(error=UpstreamFetchError("HTTP 503: Service Unavailable"))
    with session_scope(app) as s:
        with pytest.raises(UpstreamFetchError):
            sync_from_api(s, TENANT, API_URL, "secret", fetcher=fetcher)
        assert s.query(Profile).count() == 0
        run = s.query(ProfileSyncRun).one()
        assert run.status == "FAILED"
        assert "503" in run.message
        assert s.query(AuditEvent).filter(AuditEvent.action == "profile_sync.failed").count() == 1


def test_http_fetcher_sends_bearer_token(monkeypatch):
    seen = {}

    def fake_urlopen(req, timeout):
        seen["auth"] = req.get_header("Authorization")
        seen["timeout"] = timeout
        return _Resp(json.dumps({"customers": [{"id": "1"}]}).encode("utf-8"))

    monkeypatch.setattr(client_mod.urllib.request, "urlopen", fake_urlopen)
    records = HttpProfileFetcher(timeout_seconds=5).fetch(API_URL, "k3y")
    assert records == [{"id": "1"}]
    assert seen == {"auth": "Bearer k3y", "timeout": 5}


def test_http_fetcher_raises_on_http_error(monkeypatch):
    def fake_urlopen(req, timeout):
        raise urllib.error.HTTPError(req.full_url, 401, "Unauthorized", {}, io.BytesIO(b"bad key"))

    monkeypatch.setattr(client_mod.urllib.request, "urlopen", fake_urlopen)
    with pytest.raises(UpstreamFetchError) as exc:
        HttpProfileFetcher().fetch(API_URL, "wrong")
    assert "HTTP 401" in str(exc.value)


def test_http_fetcher_retries_transport_errors(monkeypatch):
    attempts = []

    def fake_urlopen(req, timeout):
        attempts.append(1)
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr(client_mod.urllib.request, "urlopen", fake_urlopen)
    monkeypatch.setattr(client_mod.time, "sleep", lambda _s: None)
    with pytest.raises(UpstreamFetchError):
        HttpProfileFetcher(retries=2).fetch(API_URL, "k")
    assert len(attempts) == 3


@pytest.mark.parametrize("payload", ["<html>maintenance</html>", {"data": {"id": "1"}}, 42])
def test_sync_rejects_malformed_fetcher_payload(app, payload):
    fetcher = FakeFetcher(payload)
    with session_scope(app) as s:
        with pytest.raises(UpstreamFetchError, match="Expected array"):
            sync_from_api(s, TENANT, API_URL, "secret", fetcher=fetcher)
        assert s.query(Profile).count() == 0
        assert s.query(ProfileSyncRun).one().status == "FAILED"


def test_sync_accepts_enveloped_fetcher_payload(app):
    fetcher = FakeFetcher({"customers": [{"id": "1", "email": "ann@x.com"}]})
    with session_scope(app) as s:
        result = sync_from_api(s, TENANT, API_URL, "secret", fetcher=fetcher)
        assert result.total_fetched == 1
        assert lookup(s, TENANT, "API", None, "1") is not None
