from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from app.cdp.audit import record_event
from app.cdp.config import load_settings
from app.cdp.errors import UpstreamFetchError
from app.cdp.modules.profile_sync.client import HttpProfileFetcher, ProfileFetcher, unwrap_records
from app.cdp.modules.profile_sync.models import ProfileSyncRun
from app.cdp.modules.profiles.models import ProfileType, Source
from app.cdp.modules.profiles.resolver import ImportResult, import_batch

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    success: int
    failed: int
    skipped: int
    errors: list[str]
    total_fetched: int
    synced_at: datetime
    sync_frequency: str | None = None
    run_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "totalFetched": self.total_fetched,
            "syncedAt": self.synced_at.isoformat(),
            "syncFrequency": self.sync_frequency,
        }


def _safe_text(v: Any) -> str:
    if v is None or isinstance(v, (dict, list)):
        return ""
    return str(v).strip()


def _pick(data: dict[str, Any], *keys: str) -> str:
    for k in keys:
        v = _safe_text(data.get(k))
        if v:
            return v
    return ""


def map_external_profile(data: Any) -> Any:
    """
    Map one record from a third-party API to the ingestion record shape.
    Field names vary by vendor (email/Email/EMAIL, first_name, "Company Name", ...).
    Non-dict records are passed through so the resolver rejects them per record.
    """
    if not isinstance(data, dict):
        return data

    email = _pick(data, "email", "Email", "EMAIL")
    first_name = _pick(data, "firstName", "first_name", "First Name")
    last_name = _pick(data, "lastName", "last_name", "Last Name")
    phone = _pick(data, "phone", "Phone", "phoneNumber")
    company = _pick(data, "company", "Company", "companyName", "Company Name")
    website = _pick(data, "website", "Website")

    raw_address = data.get("address") or data.get("Address") or {}
    address: dict[str, str] = {}
    if isinstance(raw_address, dict):
        address = {
            "street": _safe_text(raw_address.get("street")),
            "city": _safe_text(raw_address.get("city")),
            "state": _safe_text(raw_address.get("state")),
            "country": _safe_text(raw_address.get("country")),
            "postalCode": _safe_text(raw_address.get("postalCode") or raw_address.get("zip")),
        }

    external_id = _pick(data, "id", "customerId", "externalId")

    record: dict[str, Any] = {
        "type": _pick(data, "type") or (ProfileType.COMPANY.value if company else ProfileType.INDIVIDUAL.value),
        "name": company or f"{first_name} {last_name}".strip() or email,
        "displayName": _pick(data, "displayName", "display_name") or first_name or company,
        "firstName": first_name,
        "lastName": last_name,
        "companyName": company,
        "email": email,
        "phone": phone,
        "companyTaxId": _pick(data, "companyTaxId", "company_tax_id", "taxId", "TaxId"),
        "industry": _pick(data, "industry", "Industry"),
        "companySize": _pick(data, "companySize", "company_size", "size"),
        "website": website,
        "metadata": {**data, "externalId": external_id},
    }
    if any(address.values()):
        record["address"] = {k: v for k, v in address.items() if v}
    return record


def sync_from_api(
    s,
    tenant_id: str,
    api_url: str,
    api_key: str,
    *,
    sync_frequency: str | None = None,
    source_type: str | None = None,
    fetcher: ProfileFetcher | None = None,
    actor: str | None = None,
) -> SyncResult:
    """
    Fetch records from api_url and import them as source=API.

    A fetch failure raises UpstreamFetchError and no record is processed. Per-record
    failures are counted in the result like any other batch import.
    """
    if fetcher is None:
        st = load_settings()
        fetcher = HttpProfileFetcher(timeout_seconds=st.profile_sync_timeout_seconds, retries=st.profile_sync_retries)

    start = time.time()
    try:
        raw_records = unwrap_records(fetcher.fetch(api_url, api_key))
    except UpstreamFetchError as e:
        duration = int(time.time() - start)
        logger.error("SYNC: tenant=%s fetch from %s failed: %s", tenant_id, api_url, e)
        s.add(
            ProfileSyncRun(
                tenant_id=tenant_id,
                api_url=api_url,
                source_type=source_type,
                sync_frequency=sync_frequency,
                duration_seconds=duration,
                status="FAILED",
                message=f"Failed to sync from API: {e}",
            )
        )
        record_event(
            s,
            tenant_id=tenant_id,
            actor=actor,
            action="profile_sync.failed",
            entity_type="ProfileSync",
            metadata={"api_url": api_url, "error": str(e)},
        )
        s.flush()
        raise

    logger.info("SYNC: tenant=%s fetched %d record(s) from %s", tenant_id, len(raw_records), api_url)
    result: ImportResult = import_batch(
        s,
        tenant_id,
        Source.API.value,
        source_type,
        [map_external_profile(r) for r in raw_records],
        actor=actor,
    )

    duration = int(time.time() - start)
    synced_at = datetime.utcnow()
    run = ProfileSyncRun(
        tenant_id=tenant_id,
        ran_at=synced_at,
        api_url=api_url,
        source_type=source_type,
        sync_frequency=sync_frequency,
        total_fetched=len(raw_records),
        success_count=result.success,
        skipped_count=result.skipped,
        failed_count=result.failed,
        duration_seconds=duration,
        status="COMPLETED",
        message=f"Created={result.success} updated={result.skipped} failed={result.failed}.",
    )
    s.add(run)
    s.flush()

    record_event(
        s,
        tenant_id=tenant_id,
        actor=actor,
        action="profile_sync.completed",
        entity_type="ProfileSyncRun",
        entity_id=str(run.id),
        metadata={
            "total_fetched": len(raw_records),
            "success": result.success,
            "skipped": result.skipped,
            "failed": result.failed,
            "duration_seconds": duration,
        },
    )
    s.flush()
    return SyncResult(
        success=result.success,
        failed=result.failed,
        skipped=result.skipped,
        errors=list(result.errors),
        total_fetched=len(raw_records),
        synced_at=synced_at,
        sync_frequency=sync_frequency,
        run_id=run.id,
    )
