#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.db import get_database
from backend.logging_config import configure_logging
from lesson_pipeline.video_library import purge_videos


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Delete lesson video job rows.")
    parser.add_argument("--course-id", default=None)
    parser.add_argument("--dry-run-only", action="store_true", help="Only delete rows created by dry runs.")
    parser.add_argument("--yes", action="store_true", help="Skip the confirmation prompt.")
    return parser


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    if not args.course_id and not args.dry_run_only:
        parser.error("pass --course-id and/or --dry-run-only")
    configure_logging()

    if not args.yes:
        scope = f"course {args.course_id}" if args.course_id else "all courses"
        kind = "dry-run videos" if args.dry_run_only else "videos"
        answer = input(f"Delete {kind} for {scope}? [y/N] ").strip().lower()
        if answer not in {"y", "yes"}:
            print("Aborted.")
            return 1

    deleted = purge_videos(get_database(), course_id=args.course_id, dry_run_only=args.dry_run_only)
    print(f"Purge complete: deleted_rows={deleted}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
