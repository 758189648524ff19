from __future__ import annotations

import json
import logging
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Protocol

from app.cdp.errors import UpstreamFetchError

logger = logging.getLogger(__name__)


class ProfileFetcher(Protocol):
    def fetch(self, api_url: str, api_key: str) -> list[dict[str, Any]]:
        ...


class UpstreamRateLimited(UpstreamFetchError):
    pass


def unwrap_records(payload: Any) -> list[Any]:
    """
    Accept a bare JSON array, or an object wrapping it under "data" or "customers".
    """
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        records = payload.get("data") or payload.get("customers") or []
        if isinstance(records, list):
            return records
    raise UpstreamFetchError("Invalid API response format. Expected array of profiles.")


@dataclass(frozen=True)
class HttpProfileFetcher:
    timeout_seconds: int = 60
    retries: int = 3

    def request_json(self, api_url: str, api_key: str) -> Any:
        last_err: Exception | None = None
        for attempt in range(self.retries + 1):
            try:
                req = urllib.request.Request(api_url, method="GET")
                req.add_header("Authorization", f"Bearer {api_key}")
                req.add_header("Accept", "application/json")
                req.add_header("Content-Type", "application/json")
                with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                    raw = resp.read()
                    try:
                        return json.loads(raw.decode("utf-8"))
                    except ValueError as e:
                        raise UpstreamFetchError(f"Invalid JSON from {api_url}") from e
            except urllib.error.HTTPError as e:
                if e.code == 429:
                    time.sleep(min(2 * (attempt + 1), 10))
                    last_err = UpstreamRateLimited("Rate limited (429)")
                    continue
                try:
                    body = e.read().decode("utf-8", errors="ignore")
                except OSError:
                    body = ""
                raise UpstreamFetchError(f"HTTP {e.code}: {e.reason} {body[:300]}".rstrip()) from e
            except UpstreamFetchError:
                raise
            except (urllib.error.URLError, OSError) as e:
                logger.warning("SYNC: fetch attempt %d for %s failed: %s", attempt + 1, api_url, e)
                last_err = e
                time.sleep(min(1 * (attempt + 1), 5))
                continue
        raise UpstreamFetchError(f"Request to {api_url} failed after retries: {last_err}")

    def fetch(self, api_url: str, api_key: str) -> list[dict[str, Any]]:
        return unwrap_records(self.request_json(api_url, api_key))
