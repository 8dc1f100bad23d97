#!/usr/bin/env python3
"""Reconcile outstanding lesson videos; meant to run from cron every minute or so."""
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.db import get_database
from backend.logging_config import configure_logging
from backend.storage import mirror_enabled, mirror_video
from lesson_pipeline.reconciler import reconcile
from lesson_pipeline.video_provider import client_from_env


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Check render status of outstanding lesson videos.")
    scope = parser.add_mutually_exclusive_group()
    scope.add_argument("--course-id", default=None)
    scope.add_argument("--job-id", default=None)
    scope.add_argument("--lesson-id", default=None)
    parser.add_argument("--limit", type=int, default=int(os.getenv("STUDIO_REFRESH_LIMIT", "25")))
    parser.add_argument("--force", action="store_true", help="Ignore next_check_at and poll every job now.")
    return parser


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    configure_logging()

    summary = reconcile(
        get_database(),
        client_from_env(),
        course_id=args.course_id,
        job_id=args.job_id,
        lesson_id=args.lesson_id,
        limit=args.limit,
        force=args.force,
        mirror=mirror_video if mirror_enabled() else None,
    )
    print(json.dumps(summary.as_payload(), indent=2))
    return 1 if summary.errors and summary.errors == summary.checked else 0


if __name__ == "__main__":
    raise SystemExit(main())
