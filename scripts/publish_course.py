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
from backend.storage import load_json_payload, save_manifest, storage_path_for_key
from lesson_pipeline.publisher import ManifestPublishError, publish_course


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Publish a course manifest to storage.")
    parser.add_argument("course_id")
    parser.add_argument("--verify", action="store_true", help="Read the manifest back after writing it.")
    return parser


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    configure_logging()

    try:
        result = publish_course(get_database(), save_manifest, args.course_id)
    except LookupError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    except ManifestPublishError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    print(f"Published {args.course_id}: {result.manifest_url}")
    if args.verify:
        manifest = load_json_payload(storage_path_for_key(result.key))
        lessons = sum(len(module["lessons"]) for module in manifest["modules"])
        videos = sum(len(lesson["videos"]) for module in manifest["modules"] for lesson in module["lessons"])
        print(f"Verified: modules={len(manifest['modules'])} lessons={lessons} videos={videos}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
