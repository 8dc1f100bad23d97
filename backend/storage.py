from __future__ import annotations

import json
import os
import secrets
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path, PurePosixPath
from typing import Any, BinaryIO, Dict, Iterable, Mapping, Optional, Tuple

import httpx

from backend.observability import METRICS


@dataclass(frozen=True)
class StorageConfig:
    mode: str
    local_dir: Path
    s3_bucket: Optional[str]
    s3_prefix: Optional[str]
    s3_endpoint_url: Optional[str]
    s3_region: Optional[str]
    public_base: Optional[str]


def _validate_config(config: StorageConfig) -> None:
    if config.mode not in {"local", "s3"}:
        raise RuntimeError("STORAGE_MODE must be either 'local' or 's3'.")

    if config.mode == "s3":
        if not config.s3_bucket:
            raise RuntimeError("S3_BUCKET must be set for S3 storage.")
        if not config.s3_prefix:
            raise RuntimeError("S3_PREFIX must be a non-empty path segment for S3 storage.")


def _config(env: Mapping[str, str] | None = None) -> StorageConfig:
    active_env = env or os.environ
    mode = active_env.get("STORAGE_MODE", "local")
    local_dir = Path(active_env.get("STUDIO_STORAGE_DIR", "storage")).resolve()
    public_base = (active_env.get("S3_PUBLIC_BASE") or "").rstrip("/") or None
    config = StorageConfig(
        mode=mode,
        local_dir=local_dir,
        s3_bucket=active_env.get("S3_BUCKET"),
        s3_prefix=active_env.get("S3_PREFIX", "studio").strip("/"),
        s3_endpoint_url=(active_env.get("S3_ENDPOINT_URL") or "").rstrip("/") or None,
        s3_region=active_env.get("AWS_REGION") or active_env.get("S3_REGION") or "us-east-1",
        public_base=public_base,
    )
    _validate_config(config)
    return config


def _s3_client():
    cfg = _config()
    import boto3
    from botocore.config import Config

    # Custom endpoints (Spaces, MinIO) only resolve path-style URLs.
    addressing_style = "path" if cfg.s3_endpoint_url else "virtual"
    return boto3.client(
        "s3",
        region_name=cfg.s3_region,
        endpoint_url=cfg.s3_endpoint_url,
        config=Config(signature_version="s3v4", s3={"addressing_style": addressing_style}),
    )


def _object_key(cfg: StorageConfig, *parts: str) -> str:
    segments: Iterable[str] = (cfg.s3_prefix, *parts) if cfg.mode == "s3" else parts
    return "/".join(segment.strip("/") for segment in segments if segment)


def _local_path(key: str) -> Path:
    cfg = _config()
    target = (cfg.local_dir / PurePosixPath(key)).resolve()
    if cfg.local_dir not in target.parents:
        raise ValueError(f"Storage key escapes the storage directory: {key}")
    target.parent.mkdir(parents=True, exist_ok=True)
    return target


def public_url(key: str, cfg: Optional[StorageConfig] = None) -> str:
    """Public URL for an object key: S3_PUBLIC_BASE, else the bucket URL."""
    cfg = cfg or _config()
    if cfg.public_base:
        return f"{cfg.public_base}/{key}"
    if cfg.mode == "local":
        return (cfg.local_dir / PurePosixPath(key)).as_uri()
    if cfg.s3_endpoint_url:
        return f"{cfg.s3_endpoint_url}/{cfg.s3_bucket}/{key}"
    return f"https://{cfg.s3_bucket}.s3.{cfg.s3_region}.amazonaws.com/{key}"


def _copy_with_limit(fileobj: BinaryIO, chunks: Iterable[bytes], max_bytes: Optional[int] = None) -> int:
    total = 0
    for chunk in chunks:
        if not chunk:
            continue
        total += len(chunk)
        if max_bytes is not None and total > max_bytes:
            raise ValueError(f"Video file exceeds mirror limit of {max_bytes} bytes.")
        fileobj.write(chunk)
    return total


def save_manifest(course_id: str, body: str) -> Tuple[str, str]:
    """Write a course manifest; returns ``(object key, public url)``."""
    cfg = _config()
    key = _object_key(cfg, "courses", course_id, "manifest.json")
    if cfg.mode == "s3":
        _s3_client().put_object(
            Bucket=cfg.s3_bucket,
            Key=key,
            Body=body.encode("utf-8"),
            ContentType="application/json",
        )
        return key, public_url(key, cfg)
    target = _local_path(key)
    target.write_text(body, encoding="utf-8")
    return key, public_url(key, cfg)


def storage_path_for_key(key: str) -> str:
    cfg = _config()
    if cfg.mode == "s3":
        return f"s3://{cfg.s3_bucket}/{key}"
    return str(cfg.local_dir / PurePosixPath(key))


def presign_attachment_upload(
    lesson_id: str,
    filename: str,
    mime_type: Optional[str] = None,
    public: bool = False,
    expires_in: int = 900,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    if not lesson_id or not filename:
        raise ValueError("lessonId and filename are required.")
    safe_name = PurePosixPath(filename.replace("\\", "/")).name
    if not safe_name or safe_name in {".", ".."}:
        raise ValueError("filename must name a file.")

    cfg = _config()
    current_time = now or datetime.now(timezone.utc)
    content_type = mime_type or "application/octet-stream"
    epoch_ms = int(current_time.timestamp() * 1000)
    key = _object_key(cfg, "lessons", lesson_id, f"{epoch_ms}-{secrets.token_hex(4)}-{safe_name}")

    if cfg.mode == "s3":
        params: Dict[str, Any] = {"Bucket": cfg.s3_bucket, "Key": key, "ContentType": content_type}
        if public:
            params["ACL"] = "public-read"
        upload_url = _s3_client().generate_presigned_url("put_object", Params=params, ExpiresIn=expires_in)
        bucket = cfg.s3_bucket
    else:
        upload_url = _local_path(key).as_uri()
        bucket = "local"

    return {
        "upload_url": upload_url,
        "storage_bucket": bucket,
        "storage_path": key,
        "expires_at": (current_time + timedelta(seconds=expires_in)).isoformat(),
        "mime_type": content_type,
        "public": bool(public),
    }


def mirror_video(job: Mapping[str, Any], video_url: str, max_bytes: Optional[int] = None) -> Tuple[str, str]:
    """Copy a finished render into our storage; returns ``(storage path, public url)``.

    Provider download links expire, so completed renders can be mirrored.
    """
    cfg = _config()
    key = _object_key(cfg, "videos", str(job["lesson_id"]), f"{job['id']}.mp4")
    limit = max_bytes if max_bytes is not None else int(os.getenv("STUDIO_MIRROR_MAX_BYTES", str(2 * 1024**3)))
    started = time.perf_counter()

    with httpx.stream("GET", video_url, timeout=120.0, follow_redirects=True) as response:
        response.raise_for_status()
        if cfg.mode == "s3":
            with tempfile.SpooledTemporaryFile(max_size=64 * 1024 * 1024) as buffer:
                _copy_with_limit(buffer, response.iter_bytes(), max_bytes=limit)
                buffer.seek(0)
                _s3_client().upload_fileobj(
                    buffer, cfg.s3_bucket, key, ExtraArgs={"ContentType": "video/mp4"}
                )
            storage_path = f"s3://{cfg.s3_bucket}/{key}"
        else:
            target = _local_path(key)
            with target.open("wb") as handle:
                _copy_with_limit(handle, response.iter_bytes(), max_bytes=limit)
            storage_path = str(target)

    METRICS.observe_latency("storage.mirror_video", (time.perf_counter() - started) * 1000)
    return storage_path, public_url(key, cfg)


def mirror_enabled() -> bool:
    return os.getenv("STUDIO_MIRROR_VIDEOS", "").strip().lower() in {"1", "true", "yes", "on"}


def load_json_payload(storage_path: str) -> dict:
    """Load a JSON payload from local or S3-backed storage."""
    if storage_path.startswith("s3://"):
        _, _, rest = storage_path.partition("s3://")
        bucket, _, key = rest.partition("/")
        if not bucket or not key:
            raise FileNotFoundError("Invalid S3 storage path.")
        response = _s3_client().get_object(Bucket=bucket, Key=key)
        body = response["Body"].read().decode("utf-8")
        return json.loads(body)

    path = Path(storage_path)
    if not path.exists():
        raise FileNotFoundError(f"Storage path not found: {storage_path}")
    return json.loads(path.read_text(encoding="utf-8"))
