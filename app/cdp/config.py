import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    duplicate_match_threshold: int
    match_weight_email: int
    match_weight_phone: int
    match_weight_company: int
    match_weight_name: int
    match_weight_source_family: int
    name_similarity_threshold: int
    duplicate_max_block_size: int

    profile_sync_timeout_seconds: int
    profile_sync_retries: int
    stats_recent_days: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getint(name: str, default: int) -> int:
    raw = _getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).")


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///cdp.db"),
        duplicate_match_threshold=_getint("DUPLICATE_MATCH_THRESHOLD", 40),
        match_weight_email=_getint("MATCH_WEIGHT_EMAIL", 50),
        match_weight_phone=_getint("MATCH_WEIGHT_PHONE", 45),
        match_weight_company=_getint("MATCH_WEIGHT_COMPANY", 45),
        match_weight_name=_getint("MATCH_WEIGHT_NAME", 25),
        match_weight_source_family=_getint("MATCH_WEIGHT_SOURCE_FAMILY", 5),
        name_similarity_threshold=_getint("NAME_SIMILARITY_THRESHOLD", 85),
        duplicate_max_block_size=_getint("DUPLICATE_MAX_BLOCK_SIZE", 200),
        profile_sync_timeout_seconds=_getint("PROFILE_SYNC_TIMEOUT_SECONDS", 60),
        profile_sync_retries=_getint("PROFILE_SYNC_RETRIES", 3),
        stats_recent_days=_getint("STATS_RECENT_DAYS", 30),
    )


def load_config() -> dict:
    s = load_settings()
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        # matching policy (tunable, not constants)
        "DUPLICATE_MATCH_THRESHOLD": s.duplicate_match_threshold,
        "MATCH_WEIGHT_EMAIL": s.match_weight_email,
        "MATCH_WEIGHT_PHONE": s.match_weight_phone,
        "MATCH_WEIGHT_COMPANY": s.match_weight_company,
        "MATCH_WEIGHT_NAME": s.match_weight_name,
        "MATCH_WEIGHT_SOURCE_FAMILY": s.match_weight_source_family,
        "NAME_SIMILARITY_THRESHOLD": s.name_similarity_threshold,
        "DUPLICATE_MAX_BLOCK_SIZE": s.duplicate_max_block_size,
        # remote sync
        "PROFILE_SYNC_TIMEOUT_SECONDS": s.profile_sync_timeout_seconds,
        "PROFILE_SYNC_RETRIES": s.profile_sync_retries,
        "STATS_RECENT_DAYS": s.stats_recent_days,
    }
