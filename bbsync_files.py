"""Attachment migration: Bubble CDN → local storage.

Synced rows keep Bubble's file URLs ("//s3.amazonaws.com/appforest_uf/...").
migrate_all_bubble_files walks every configured file column, downloads each
external file under {STORAGE_ROOT}/{subfolder}/ and rewrites the column to
{FILE_BASE_URL}/api/files/{subfolder}/{filename}. Array columns are rewritten
element by element; elements that fail keep their original URL so a later run
can retry them.
"""

from __future__ import annotations

import os
import posixpath
import string
import time
from collections.abc import Callable, Iterator
from datetime import datetime
from pathlib import Path
from typing import Any
from urllib.parse import quote, unquote, urlparse

import httpx
import structlog
from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from bbsync_config import ConfigModel, FileTable, load_config
from bbsync_db import get_table
from bbsync_mappings import utc_now
from bbsync_models import MigrationDetail, MigrationResult, MigrationStats
from bbsync_settings import get_settings

logger = structlog.get_logger()

SAFE_CHARS = set(string.ascii_letters + string.digits + " -._")
MAX_BASENAME = 50
DEFAULT_EXT = ".jpg"

# handler(table, field, record_id, url, subfolder, index) -> replacement url or None
UrlHandler = Callable[..., "str | None"]


def is_external_url(url: Any, file_base_url: str = "") -> bool:
    if not url or not isinstance(url, str):
        return False
    u = url.strip()
    if u.startswith(("/storage/", "/api/files/")):
        return False
    base = file_base_url.rstrip("/")
    if base and u.startswith(base + "/"):
        return False
    return u.startswith(("http://", "https://", "//"))


def normalize_url(url: str) -> str:
    url = url.strip()
    if url.startswith("//"):
        return "https:" + url
    return url


def has_non_ascii(text: str) -> bool:
    return any(ord(ch) > 127 for ch in text)


def sanitize_filename(filename: str) -> str:
    """Keep [A-Za-z0-9 ._-] and percent-encode everything else."""
    return "".join(ch if ch in SAFE_CHARS else quote(ch, safe="") for ch in filename)


def filename_from_url(url: str) -> str:
    path = urlparse(normalize_url(url)).path
    return unquote(posixpath.basename(path))


def generate_filename(record_id: str, url: str, index: int | None = None) -> str:
    """{record_id}_{basename}[_{index}]{ext}, safe for any filesystem."""
    stem, ext = os.path.splitext(filename_from_url(url))
    stem = sanitize_filename(stem[:MAX_BASENAME]) or "file"
    ext = sanitize_filename(ext.lower()) if ext else DEFAULT_EXT
    suffix = f"_{index}" if index is not None else ""
    return f"{sanitize_filename(str(record_id))}_{stem}{suffix}{ext}"


def unique_path(directory: Path, filename: str) -> Path:
    """Return directory/filename, adding _1, _2, ... if that name is taken."""
    candidate = directory / filename
    stem, ext = os.path.splitext(filename)
    n = 1
    while candidate.exists():
        candidate = directory / f"{stem}_{n}{ext}"
        n += 1
    return candidate


def local_url(file_base_url: str, relative: str) -> str:
    return f"{file_base_url.rstrip('/')}/api/files/{relative.lstrip('/')}"


def relative_path_from_url(url: str, file_base_url: str) -> str | None:
    """Storage-relative path of an already-local URL, or None if not local."""
    base = file_base_url.rstrip("/")
    rel = url[len(base) :] if base and url.startswith(base) else url
    for prefix in ("/api/files/", "/storage/"):
        if rel.startswith(prefix):
            return rel[len(prefix) :]
    return None


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential_jitter(1, 5),
    retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
    reraise=True,
)
def download_file(url: str, dest: Path, timeout: int = 120) -> int:
    """Stream url into dest and return the byte count."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp = dest.with_name(dest.name + ".part")
    size = 0
    try:
        with httpx.stream("GET", normalize_url(url), timeout=timeout, follow_redirects=True) as r:
            r.raise_for_status()
            with open(tmp, "wb") as fh:
                for chunk in r.iter_bytes():
                    fh.write(chunk)
                    size += len(chunk)
        tmp.replace(dest)
    except Exception:
        tmp.unlink(missing_ok=True)
        raise
    return size


def _iter_rows(
    engine: Engine, ft: FileTable, created_after: datetime | None
) -> Iterator[dict[str, Any]]:
    t = get_table(ft.table)
    q = select(t.c.id, t.c[ft.id_column], *[t.c[f.column] for f in ft.fields])
    if created_after is not None:
        q = q.where(t.c[ft.date_column] >= created_after)
    with engine.connect() as conn:
        rows = conn.execute(q.order_by(t.c.id)).mappings().all()
    for row in rows:
        yield dict(row)


def _process_table(
    engine: Engine,
    ft: FileTable,
    created_after: datetime | None,
    select_url: Callable[[Any], bool],
    handle: UrlHandler,
) -> None:
    t = get_table(ft.table)
    for row in _iter_rows(engine, ft, created_after):
        record_id = str(row[ft.id_column] or row["id"])
        changes: dict[str, Any] = {}
        for f in ft.fields:
            value = row[f.column]
            if f.is_array:
                urls = list(value or [])
                new_urls = list(urls)
                for i, u in enumerate(urls):
                    if not select_url(u):
                        continue
                    new = handle(ft.table, f.column, record_id, u, f.subfolder, i + 1)
                    if new:
                        new_urls[i] = new
                if new_urls != urls:
                    changes[f.column] = new_urls
            elif select_url(value):
                new = handle(ft.table, f.column, record_id, value, f.subfolder, None)
                if new:
                    changes[f.column] = new

        if changes:
            changes["updated_at"] = utc_now()
            with engine.begin() as conn:
                conn.execute(update(t).where(t.c.id == row["id"]).values(**changes))


def migrate_all_bubble_files(
    engine: Engine,
    config: ConfigModel | None = None,
    created_after: datetime | None = None,
    tables: list[str] | None = None,
    storage_root: str | Path | None = None,
    file_base_url: str | None = None,
    dry_run: bool = False,
) -> MigrationResult:
    """Download every externally hosted file and point its column at local storage."""
    s = get_settings()
    config = config or load_config()
    root = Path(storage_root or s.STORAGE_ROOT)
    base = file_base_url or s.FILE_BASE_URL
    result = MigrationResult()
    summary = result.summary
    started = time.monotonic()

    def handle(
        table: str, field: str, record_id: str, url: str, subfolder: str, index: int | None
    ) -> str | None:
        summary.total_files += 1
        filename = generate_filename(record_id, url, index)
        if dry_run:
            summary.skipped += 1
            result.details.append(
                MigrationDetail(
                    table=table,
                    field=field,
                    record_id=record_id,
                    old_url=url,
                    new_url=local_url(base, f"{subfolder}/{filename}"),
                )
            )
            return None

        try:
            dest = unique_path(root / subfolder, filename)
            size = download_file(url, dest, s.DOWNLOAD_TIMEOUT)
        except Exception as e:
            summary.failed += 1
            logger.error(
                "File download failed",
                table=table,
                field=field,
                record_id=record_id,
                url=url,
                error=str(e),
            )
            result.details.append(
                MigrationDetail(
                    table=table, field=field, record_id=record_id, old_url=url, error=str(e)
                )
            )
            return None

        new_url = local_url(base, f"{subfolder}/{dest.name}")
        summary.migrated += 1
        summary.total_size += size
        result.details.append(
            MigrationDetail(
                table=table, field=field, record_id=record_id, old_url=url, new_url=new_url
            )
        )
        logger.debug("Migrated file", table=table, field=field, record_id=record_id, size=size)
        return new_url

    logger.info(
        "Starting file migration",
        storage_root=str(root),
        created_after=created_after.isoformat() if created_after else None,
        dry_run=dry_run,
    )
    for ft in config.files.values():
        if tables and ft.table not in tables:
            continue
        try:
            _process_table(
                engine, ft, created_after, lambda u: is_external_url(u, base), handle
            )
        except Exception as e:
            logger.error("File migration failed for table", table=ft.table, error=str(e))
            result.details.append(
                MigrationDetail(table=ft.table, field="*", record_id="", old_url="", error=str(e))
            )
            summary.failed += 1

    summary.duration = round(time.monotonic() - started, 2)
    logger.info(
        "File migration finished",
        total=summary.total_files,
        migrated=summary.migrated,
        failed=summary.failed,
        bytes=summary.total_size,
        duration=summary.duration,
    )
    return result


def get_migration_stats(
    engine: Engine,
    config: ConfigModel | None = None,
    created_after: datetime | None = None,
    file_base_url: str | None = None,
) -> MigrationStats:
    """Count external files still waiting to be migrated."""
    config = config or load_config()
    base = file_base_url or get_settings().FILE_BASE_URL
    stats = MigrationStats()

    for ft in config.files.values():
        for row in _iter_rows(engine, ft, created_after):
            for f in ft.fields:
                value = row[f.column]
                urls = list(value or []) if f.is_array else [value]
                n = sum(1 for u in urls if is_external_url(u, base))
                if not n:
                    continue
                stats.total_files += n
                stats.by_table[ft.table] = stats.by_table.get(ft.table, 0) + n
                key = f"{ft.table}.{f.column}"
                stats.by_field[key] = stats.by_field.get(key, 0) + n
    return stats


def patch_non_ascii_filenames(
    engine: Engine,
    config: ConfigModel | None = None,
    storage_root: str | Path | None = None,
    file_base_url: str | None = None,
    dry_run: bool = False,
) -> MigrationResult:
    """Rename already-migrated files whose names carry non-ASCII characters."""
    s = get_settings()
    config = config or load_config()
    root = Path(storage_root or s.STORAGE_ROOT)
    base = file_base_url or s.FILE_BASE_URL
    result = MigrationResult()
    started = time.monotonic()

    def needs_patch(url: Any) -> bool:
        if not isinstance(url, str):
            return False
        rel = relative_path_from_url(url, base)
        return bool(rel) and has_non_ascii(posixpath.basename(rel))

    def handle(
        table: str, field: str, record_id: str, url: str, subfolder: str, index: int | None
    ) -> str | None:
        result.summary.total_files += 1
        rel = relative_path_from_url(url, base) or ""
        rel_dir, old_name = posixpath.split(rel)
        new_name = sanitize_filename(old_name)
        old_path = root / rel
        new_path = root / rel_dir / new_name

        if dry_run:
            result.summary.skipped += 1
            return None

        try:
            if old_path.exists():
                if new_path.exists():
                    new_path = unique_path(new_path.parent, new_name)
                old_path.rename(new_path)
            else:
                logger.warning("File missing on disk, rewriting URL only", path=str(old_path))
        except OSError as e:
            result.summary.failed += 1
            result.details.append(
                MigrationDetail(
                    table=table, field=field, record_id=record_id, old_url=url, error=str(e)
                )
            )
            return None

        new_url = local_url(base, posixpath.join(rel_dir, new_path.name))
        result.summary.migrated += 1
        result.details.append(
            MigrationDetail(
                table=table, field=field, record_id=record_id, old_url=url, new_url=new_url
            )
        )
        return new_url

    for ft in config.files.values():
        _process_table(engine, ft, None, needs_patch, handle)

    result.summary.duration = round(time.monotonic() - started, 2)
    logger.info(
        "Filename patch finished",
        total=result.summary.total_files,
        patched=result.summary.migrated,
        failed=result.summary.failed,
    )
    return result
