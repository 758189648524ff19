"""
Profile Sync module.

Pulls customer records from a remote JSON endpoint and feeds them through the
ingestion resolver as source=API. Each run is recorded in profile_sync_runs
(counts, duration, message) and in the audit trail.

Out of scope: scheduling. sync_frequency is stored on the result only; the
caller decides when to run the next sync.
"""
