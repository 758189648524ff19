import pytest

from scripts import dedupe_profiles, init_db, release
from scripts._db_utils import script_session
from app.cdp.modules.profiles.models import MergeCandidateRecord, Profile, ProfileStatus
from app.cdp.modules.profiles.service import ProfileData, create_profile


def test_release_requires_database_url():
    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        release.release_db_url({"ENV": "production"})


def test_release_refuses_sqlite_in_production():
    with pytest.raises(RuntimeError, match="sqlite"):
        release.release_db_url({"ENV": "production", "DATABASE_URL": "sqlite:///prod.db"})
    assert release.release_db_url({"ENV": "test", "DATABASE_URL": " sqlite:///x.db "}) == "sqlite:///x.db"


def test_init_db_creates_expected_schema(tmp_path):
    db_url = f"sqlite:///{tmp_path/'init.db'}"
    assert release.verify_schema(db_url)  # empty database: everything missing
    tables = init_db.create_tables(database_url=db_url)
    assert "profiles" in tables
    assert "merge_candidates" in tables
    assert release.verify_schema(db_url) == []


def test_dedupe_cli_detects_and_merges(tmp_path, monkeypatch, capsys):
    db_url = f"sqlite:///{tmp_path/'cli.db'}"
    monkeypatch.setenv("DATABASE_URL", db_url)
    init_db.create_tables(database_url=db_url)
    with script_session(db_url) as s:
        create_profile(s, "acme", ProfileData(email="a@x.com", first_name="Ann"))
        create_profile(s, "acme", ProfileData(email="a@x.com", first_name="Anna"))

    assert dedupe_profiles.main(["--tenant=acme", "--detect"]) == 0
    out = capsys.readouterr().out
    assert "Found 1 candidate pair(s)" in out
    assert "Exact email match" in out

    with script_session(db_url) as s:
        candidate_id = s.query(MergeCandidateRecord.id).scalar()

    assert dedupe_profiles.main(["--tenant=acme", f"--merge={candidate_id}"]) == 0
    with script_session(db_url) as s:
        statuses = sorted(p.status for p in s.query(Profile))
    assert statuses == [ProfileStatus.ACTIVE.value, ProfileStatus.MERGED.value]

    # consumed candidate
    assert dedupe_profiles.main(["--tenant=acme", f"--merge={candidate_id}"]) == 1
    assert "ERROR" in capsys.readouterr().err
