"""Upload validation and single-file-per-entity replacement.

An entity (applicant profile) owns at most one current stored file per
purpose (resume, photo). ``replace_object`` swaps that file for a new one:

    parse old URL -> delete old object -> clear URL column
        -> upload under a fresh path -> public URL -> persist URL

Cleanup of the previous object is best effort: a URL that cannot be parsed
or a failed delete is logged and the replacement carries on. Failures of the
upload itself, or a missing public URL, abort the request.
"""
from __future__ import annotations

import asyncio
import re
import secrets
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, Optional, Sequence

import structlog
from fastapi import HTTPException, UploadFile, status
from sqlalchemy.orm import Session

from observability import metric_scope
from settings import Settings
from supabase_client import ObjectStore, SupabaseError

logger = structlog.get_logger(__name__)

CONTENT_TYPE_EXTENSIONS = {
    "application/pdf": "pdf",
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}


@dataclass(frozen=True)
class UploadPolicy:
    label: str
    allowed_types: frozenset[str]
    max_bytes: int
    allowed_extensions: frozenset[str] = frozenset()

    @property
    def max_size_label(self) -> str:
        megabytes = self.max_bytes / (1024 * 1024)
        return f"{megabytes:g}MB"


@dataclass(frozen=True)
class ValidatedUpload:
    filename: str
    content_type: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass(frozen=True)
class FilePurpose:
    """Where one kind of file lives and which column points at it."""

    name: str
    bucket: str
    prefix: str
    url_field: str
    policy: UploadPolicy


def resume_purpose(settings: Settings) -> FilePurpose:
    return FilePurpose(
        name="resume",
        bucket=settings.resume_bucket,
        prefix=settings.resume_prefix,
        url_field="resume_url",
        policy=UploadPolicy(
            label="Resume",
            allowed_types=frozenset({"application/pdf"}),
            max_bytes=settings.resume_max_bytes,
            allowed_extensions=frozenset({".pdf"}),
        ),
    )


def photo_purpose(settings: Settings) -> FilePurpose:
    return FilePurpose(
        name="photo",
        bucket=settings.photo_bucket,
        prefix=settings.photo_prefix,
        url_field="photo_url",
        policy=UploadPolicy(
            label="Photo",
            allowed_types=frozenset({"image/jpeg", "image/png", "image/webp"}),
            max_bytes=settings.photo_max_bytes,
        ),
    )


def _extension(filename: str) -> str:
    if "." not in filename:
        return ""
    return "." + filename.rsplit(".", 1)[1].lower()


def _too_large(policy: UploadPolicy) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=f"{policy.label} too large. Maximum size: {policy.max_size_label}",
    )


async def validate_upload(file: Optional[UploadFile], policy: UploadPolicy) -> ValidatedUpload:
    """Check declared type and size locally. Raises HTTPException(400)."""
    if file is None or not file.filename:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{policy.label} file is required.",
        )

    content_type = (file.content_type or "").split(";")[0].strip().lower()
    if content_type not in policy.allowed_types:
        allowed = ", ".join(sorted(policy.allowed_types))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported {policy.label.lower()} type '{content_type or 'unknown'}'. Allowed: {allowed}",
        )
    if policy.allowed_extensions and _extension(file.filename) not in policy.allowed_extensions:
        allowed = ", ".join(sorted(policy.allowed_extensions))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported {policy.label.lower()} file extension. Allowed: {allowed}",
        )

    # Declared size lets oversized uploads be refused without reading them
    if file.size is not None and file.size > policy.max_bytes:
        raise _too_large(policy)
    content = await file.read()
    if len(content) > policy.max_bytes:
        raise _too_large(policy)
    if not content:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{policy.label} file is empty.",
        )
    return ValidatedUpload(filename=file.filename, content_type=content_type, content=content)


def sanitize_path_part(value: Optional[str], fallback: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9]", "", value or "")
    return cleaned or fallback


def build_storage_path(
    purpose: FilePurpose,
    name_parts: Sequence[Optional[str]],
    entity_id: str,
    content_type: str,
    now: Optional[datetime] = None,
) -> str:
    """``<prefix>/<First>_<Last>_<id>_<timestamp>_<suffix>.<ext>``.

    The timestamp plus random suffix keeps rapid re-uploads for one entity
    on distinct paths, so no existence check is needed before writing.
    """
    fallbacks = ("user", "unknown")
    parts = [
        sanitize_path_part(part, fallbacks[i] if i < len(fallbacks) else "x")
        for i, part in enumerate(name_parts)
    ]
    parts.append(sanitize_path_part(entity_id, "noid"))
    timestamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%d%H%M%S%f")
    parts.extend([timestamp, secrets.token_hex(3)])
    extension = CONTENT_TYPE_EXTENSIONS.get(content_type, "bin")
    return f"{purpose.prefix}/{'_'.join(parts)}.{extension}"


async def remove_stored_file(store: ObjectStore, purpose: FilePurpose, url: Optional[str]) -> bool:
    """Best-effort delete of the object behind ``url``. Never raises."""
    if not url:
        return False
    try:
        path = store.path_from_public_url(purpose.bucket, url)
    except ValueError as exc:
        logger.warning("Could not derive storage path from URL; skipping delete", purpose=purpose.name, error=str(exc))
        return False
    try:
        await store.remove(purpose.bucket, [path])
    except SupabaseError as exc:
        logger.warning("Failed to delete previous object", purpose=purpose.name, path=path, error=exc.message)
        return False
    logger.info("Deleted previous object", purpose=purpose.name, path=path)
    return True


# Per-(entity, purpose) leases. Entries disappear once no request holds them.
_leases: "weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock]" = weakref.WeakValueDictionary()


@asynccontextmanager
async def entity_lease(entity_key: str, purpose: FilePurpose) -> AsyncIterator[None]:
    """Serialise replacements of the same file within this worker process."""
    key = (entity_key, purpose.name)
    lock = _leases.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _leases[key] = lock
    async with lock:
        yield


@metric_scope
async def replace_object(
    db: Session,
    store: ObjectStore,
    entity,
    purpose: FilePurpose,
    upload: ValidatedUpload,
    name_parts: Sequence[Optional[str]],
    metrics=None,
) -> str:
    """Replace the entity's current file for ``purpose`` and return the new public URL.

    ``entity`` is an already-resolved ORM row with an ``id`` and the
    ``purpose.url_field`` column.
    """
    metrics.set_namespace("RosieUploads")
    metrics.set_property("purpose", purpose.name)
    model = type(entity)
    log = logger.bind(entity_id=entity.id, purpose=purpose.name)

    existing_url = getattr(entity, purpose.url_field)
    if existing_url:
        if not await remove_stored_file(store, purpose, existing_url):
            metrics.put_metric("stale_object_cleanup_failed", 1, "Count")
        # Clients must not see a URL whose object is being replaced
        setattr(entity, purpose.url_field, None)
        db.commit()

    path = build_storage_path(purpose, name_parts, entity.id, upload.content_type)
    log.info("Uploading replacement object", path=path, size=upload.size)
    try:
        await store.upload(purpose.bucket, path, upload.content, upload.content_type, upsert=True)
    except SupabaseError as exc:
        log.error("Object upload failed", path=path, error=exc.message)
        metrics.put_metric("uploads_failed", 1, "Count")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to upload {purpose.name}: {exc.message}",
        )

    public_url = store.get_public_url(purpose.bucket, path)
    if not public_url:
        log.error("Object store returned no public URL", path=path)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to generate {purpose.name} public URL",
        )

    db.query(model).filter(model.id == entity.id).update({purpose.url_field: public_url})
    db.commit()
    db.refresh(entity)

    metrics.put_metric("uploads_completed", 1, "Count")
    metrics.put_metric("upload_bytes", upload.size, "Bytes")
    log.info("Replaced stored object", url=public_url)
    return public_url
