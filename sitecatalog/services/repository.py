from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any
from uuid import uuid4

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from sitecatalog.core.config import get_settings

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


@dataclass(slots=True)
class UrlResultRecord:
    url: str
    source: str
    title: str | None = None
    description: str | None = None
    status_code: int | None = None
    is_valid: bool | None = None
    error_message: str | None = None


JOB_STATUSES = {"pending", "analyzing", "checking", "fetching_meta", "completed", "failed"}
RESULT_SORT_COLUMNS = {"url", "status_code", "source"}

SCHEMA_SQL = """
create table if not exists jobs (
  id uuid primary key default gen_random_uuid(),
  target_url text not null,
  status text not null default 'pending'
    check (status in ('pending', 'analyzing', 'checking', 'fetching_meta', 'completed', 'failed')),
  progress integer not null default 0 check (progress between 0 and 100),
  error_message text,
  total_urls integer not null default 0,
  valid_urls integer not null default 0,
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now()
);

create table if not exists url_results (
  id uuid primary key default gen_random_uuid(),
  job_id uuid not null references jobs (id) on delete cascade,
  url text not null,
  title text,
  description text,
  status_code integer,
  is_valid boolean,
  source text not null check (source in ('gemini', 'gpt', 'sitemap', 'merged')),
  error_message text,
  created_at timestamptz not null default now(),
  unique (job_id, url)
);
"""

JOB_COLUMNS_SQL = """
  id::text as id,
  target_url,
  status,
  progress,
  error_message,
  total_urls,
  valid_urls,
  created_at,
  updated_at
"""

URL_RESULT_COLUMNS_SQL = """
  id::text as id,
  job_id::text as job_id,
  url,
  title,
  description,
  status_code,
  is_valid,
  source,
  error_message,
  created_at
"""


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def create_job(self, target_url: str) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into jobs (target_url, status, progress)
            values ($1, 'pending', 0)
            returning {JOB_COLUMNS_SQL}
            """,
            target_url,
        )
        return dict(row)

    async def get_job(self, job_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {JOB_COLUMNS_SQL} from jobs where id = $1::uuid", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if row is None:
            raise RepositoryNotFoundError("job not found")
        return dict(row)

    async def list_jobs(self, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"select {JOB_COLUMNS_SQL} from jobs order by created_at desc, id desc limit $1",
            limit,
        )
        return [dict(row) for row in rows]

    async def update_job(
        self,
        job_id: str,
        *,
        status: str,
        progress: int | None = None,
        error_message: str | None = None,
        expected_status: str | None = None,
        total_urls: int | None = None,
        valid_urls: int | None = None,
    ) -> dict[str, Any]:
        """Move a job to ``status``.

        With ``expected_status`` the write only lands while the stored status
        still matches, which makes concurrent starts of one job race-free.
        """
        _validate_status(status)
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        update jobs
                        set
                          status = $2,
                          progress = greatest(progress, coalesce($3::int, progress)),
                          error_message = coalesce($4, error_message),
                          total_urls = coalesce($5::int, total_urls),
                          valid_urls = coalesce($6::int, valid_urls),
                          updated_at = now()
                        where id = $1::uuid and ($7::text is null or status = $7)
                        returning {JOB_COLUMNS_SQL}
                        """,
                        job_id,
                        status,
                        progress,
                        error_message,
                        total_urls,
                        valid_urls,
                        expected_status,
                    )
                    if row is None:
                        exists = await conn.fetchval("select 1 from jobs where id = $1::uuid", job_id)
                        if not exists:
                            raise RepositoryNotFoundError("job not found")
                        raise RepositoryConflictError(f"job is not in status {expected_status}")
                    return dict(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc

    async def insert_url_results(self, job_id: str, results: list[UrlResultRecord]) -> int:
        if not results:
            return 0
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.executemany(
                        """
                        insert into url_results (
                          job_id,
                          url,
                          title,
                          description,
                          status_code,
                          is_valid,
                          source,
                          error_message
                        )
                        values ($1::uuid, $2, $3, $4, $5, $6, $7, $8)
                        """,
                        [
                            (
                                job_id,
                                record.url,
                                record.title,
                                record.description,
                                record.status_code,
                                record.is_valid,
                                record.source,
                                record.error_message,
                            )
                            for record in results
                        ],
                    )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("url result already stored for job") from exc
        except (pg_exc.ForeignKeyViolationError, pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        except asyncpg.PostgresError as exc:
            raise RepositoryError(str(exc)) from exc
        return len(results)

    async def list_url_results(
        self,
        job_id: str,
        *,
        is_valid: bool | None = None,
        source: str | None = None,
        sort_by: str = "url",
        sort_dir: str = "asc",
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        sort_column = sort_by if sort_by in RESULT_SORT_COLUMNS else "url"
        direction = "desc" if sort_dir == "desc" else "asc"
        nulls = " nulls last" if sort_column == "status_code" else ""
        try:
            rows = await pool.fetch(
                f"""
                select {URL_RESULT_COLUMNS_SQL}
                from url_results
                where job_id = $1::uuid
                  and ($2::boolean is null or is_valid = $2)
                  and ($3::text is null or source = $3)
                order by {sort_column} {direction}{nulls}, url asc
                """,
                job_id,
                is_valid,
                source,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        return [dict(row) for row in rows]

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("SC_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            await pool.execute(SCHEMA_SQL)
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc
        self._pool = pool
        return pool


class InMemoryRepository:
    """Process-local store used when no database is configured.

    Methods never suspend between reading and writing a job, so the
    conditional update in ``update_job`` is atomic on a single event loop.
    """

    def __init__(self) -> None:
        self.jobs: dict[str, dict[str, Any]] = {}
        self.url_results: dict[str, list[dict[str, Any]]] = {}

    async def close(self) -> None:
        return None

    async def create_job(self, target_url: str) -> dict[str, Any]:
        now = _utcnow()
        job = {
            "id": str(uuid4()),
            "target_url": target_url,
            "status": "pending",
            "progress": 0,
            "error_message": None,
            "total_urls": 0,
            "valid_urls": 0,
            "created_at": now,
            "updated_at": now,
        }
        self.jobs[job["id"]] = job
        return dict(job)

    async def get_job(self, job_id: str) -> dict[str, Any]:
        return dict(self._require_job(job_id))

    async def list_jobs(self, limit: int) -> list[dict[str, Any]]:
        ordered = sorted(self.jobs.values(), key=lambda job: job["created_at"], reverse=True)
        return [dict(job) for job in ordered[:limit]]

    async def update_job(
        self,
        job_id: str,
        *,
        status: str,
        progress: int | None = None,
        error_message: str | None = None,
        expected_status: str | None = None,
        total_urls: int | None = None,
        valid_urls: int | None = None,
    ) -> dict[str, Any]:
        _validate_status(status)
        job = self._require_job(job_id)
        if expected_status is not None and job["status"] != expected_status:
            raise RepositoryConflictError(f"job is not in status {expected_status}")

        job["status"] = status
        if progress is not None:
            job["progress"] = max(job["progress"], progress)
        if error_message is not None:
            job["error_message"] = error_message
        if total_urls is not None:
            job["total_urls"] = total_urls
        if valid_urls is not None:
            job["valid_urls"] = valid_urls
        job["updated_at"] = _utcnow()
        return dict(job)

    async def insert_url_results(self, job_id: str, results: list[UrlResultRecord]) -> int:
        self._require_job(job_id)
        stored = self.url_results.setdefault(job_id, [])
        seen = {row["url"] for row in stored}
        incoming = [record.url for record in results]
        if len(set(incoming)) != len(incoming) or seen.intersection(incoming):
            raise RepositoryConflictError("url result already stored for job")

        now = _utcnow()
        for record in results:
            stored.append({"id": str(uuid4()), "job_id": job_id, **asdict(record), "created_at": now})
        return len(results)

    async def list_url_results(
        self,
        job_id: str,
        *,
        is_valid: bool | None = None,
        source: str | None = None,
        sort_by: str = "url",
        sort_dir: str = "asc",
    ) -> list[dict[str, Any]]:
        self._require_job(job_id)
        rows = [
            dict(row)
            for row in self.url_results.get(job_id, [])
            if (is_valid is None or row["is_valid"] is is_valid) and (source is None or row["source"] == source)
        ]
        sort_column = sort_by if sort_by in RESULT_SORT_COLUMNS else "url"
        rows.sort(key=lambda row: row["url"])
        present = [row for row in rows if row[sort_column] is not None]
        missing = [row for row in rows if row[sort_column] is None]
        present.sort(key=lambda row: row[sort_column], reverse=sort_dir == "desc")
        return present + missing

    def _require_job(self, job_id: str) -> dict[str, Any]:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        return job


Repository = PostgresRepository | InMemoryRepository


def _validate_status(status: str) -> None:
    if status not in JOB_STATUSES:
        raise ValueError(f"unknown job status: {status}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@lru_cache
def get_repository() -> Repository:
    settings = get_settings()
    if not settings.database_url:
        logger.info("SC_DATABASE_URL not set; using in-memory job store")
        return InMemoryRepository()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
