#!/usr/bin/env python
"""
Profile Deduplication Script

Runs the duplicate detector for one tenant and applies or rejects candidates.

Usage:
    # Detect and list pending candidates
    python scripts/dedupe_profiles.py --tenant=acme --detect

    # List pending candidates without re-scanning
    python scripts/dedupe_profiles.py --tenant=acme --list

    # Merge one candidate
    python scripts/dedupe_profiles.py --tenant=acme --merge=12 --strategy=MERGE_BOTH

    # Reject one candidate
    python scripts/dedupe_profiles.py --tenant=acme --reject=12

Environment:
    DATABASE_URL: database connection string
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.cdp.errors import ProfileError
from app.cdp.modules.profiles.duplicates import MergeCandidate, detect_duplicates, list_candidates, reject_candidate
from app.cdp.modules.profiles.merge import MergeStrategy, merge
from scripts._db_utils import script_db_url, script_session

ACTOR = "script:dedupe_profiles"


def _print_candidates(candidates: list[MergeCandidate]) -> None:
    if not candidates:
        print("No duplicate candidates found.")
        return
    print(f"Found {len(candidates)} candidate pair(s):\n")
    for c in candidates:
        print(f"#{c.id}  profiles {c.profile_id1} <-> {c.profile_id2}  score={c.match_score}")
        for r in c.match_reasons:
            print(f"     + {r.reason} ({r.score})")
        for cf in c.conflict_fields:
            print(f"     ! {cf.name}: {cf.value1!r} vs {cf.value2!r}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Profile deduplication tool")
    parser.add_argument("--tenant", required=True, help="Tenant id")
    parser.add_argument("--detect", action="store_true", help="Scan for duplicates and persist candidates")
    parser.add_argument("--list", action="store_true", help="List pending candidates")
    parser.add_argument("--merge", type=int, metavar="CANDIDATE_ID", help="Merge a candidate")
    parser.add_argument(
        "--strategy",
        default=MergeStrategy.PROFILE1_WINS.value,
        choices=[m.value for m in MergeStrategy if m != MergeStrategy.MANUAL],
        help="Merge strategy (MANUAL needs resolutions and is not available here)",
    )
    parser.add_argument("--reject", type=int, metavar="CANDIDATE_ID", help="Reject a candidate")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    try:
        with script_session(script_db_url()) as s:
            if args.detect:
                _print_candidates(detect_duplicates(s, args.tenant, actor=ACTOR))
            elif args.list:
                _print_candidates(list_candidates(s, args.tenant))
            elif args.merge is not None:
                survivor = merge(s, args.tenant, args.merge, args.strategy, actor=ACTOR)
                print(f"Merged candidate #{args.merge}; survivor is profile {survivor.id}.")
            elif args.reject is not None:
                reject_candidate(s, args.tenant, args.reject, actor=ACTOR)
                print(f"Rejected candidate #{args.reject}.")
            else:
                parser.print_help()
                return 2
    except ProfileError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
