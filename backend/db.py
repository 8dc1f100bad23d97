from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Sequence

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from lesson_pipeline.video_jobs import IN_FLIGHT_STATUSES, ActiveJobExistsError


_COURSE_UPDATABLE_COLUMNS = frozenset(
    {
        "title",
        "description",
        "status",
        "s3_sync_status",
        "s3_manifest_url",
        "s3_published_at",
        "s3_error_message",
    }
)

_VIDEO_JOB_UPDATABLE_COLUMNS = frozenset(
    {
        "video_status",
        "check_attempts",
        "last_checked_at",
        "next_check_at",
        "video_url",
        "video_duration_s",
        "storage_path",
        "public_url",
        "error_message",
    }
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Database:
    dsn: str

    def connect(self):
        return psycopg.connect(self.dsn, row_factory=dict_row, autocommit=True)

    def _connect_transactional(self):
        return psycopg.connect(self.dsn, row_factory=dict_row, autocommit=False)

    def healthcheck(self) -> None:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute("select 1;")
                cur.fetchone()

    def migrate(self) -> None:
        migrations_dir = Path(__file__).resolve().parent / "migrations"
        migrations = sorted(migrations_dir.glob("*.sql"))
        if not migrations:
            return
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    create table if not exists schema_migrations (
                        id text primary key,
                        applied_at timestamptz not null default now()
                    );
                    """
                )
                cur.execute("select id from schema_migrations order by id;")
                applied = {row["id"] for row in cur.fetchall()}
                for migration in migrations:
                    migration_id = migration.name
                    if migration_id in applied:
                        continue
                    sql = migration.read_text(encoding="utf-8")
                    cur.execute(sql)
                    cur.execute(
                        "insert into schema_migrations (id) values (%s);",
                        (migration_id,),
                    )

    # =========================================================================
    # Courses, modules, lessons
    # =========================================================================

    def create_course(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    insert into courses (
                        id, title, description, target_knowledge_level, length_hours,
                        created_by, status, created_at, updated_at
                    ) values (
                        %(id)s, %(title)s, %(description)s, %(target_knowledge_level)s,
                        %(length_hours)s, %(created_by)s, %(status)s, %(created_at)s, %(updated_at)s
                    )
                    returning *;
                    """,
                    payload,
                )
                return cur.fetchone()

    def fetch_course(self, course_id: str) -> Optional[Dict[str, Any]]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute("select * from courses where id = %s;", (course_id,))
                return cur.fetchone()

    def update_course(self, course_id: str, fields: Dict[str, Any]) -> None:
        unknown = set(fields) - _COURSE_UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported course fields: {', '.join(sorted(unknown))}")
        if not fields:
            return
        params: Dict[str, Any] = {**fields, "id": course_id, "updated_at": _now()}
        set_clause = ", ".join(f"{column} = %({column})s" for column in sorted(fields))
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"update courses set {set_clause}, updated_at = %(updated_at)s where id = %(id)s;",
                    params,
                )

    def insert_course_spec(self, spec_id: str, course_id: str, spec_data: Dict[str, Any]) -> None:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "insert into course_specs (id, course_id, spec_data) values (%s, %s, %s);",
                    (spec_id, course_id, Jsonb(spec_data)),
                )

    def create_module(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    insert into modules (id, course_id, title, description, position)
                    values (%(id)s, %(course_id)s, %(title)s, %(description)s, %(position)s)
                    returning *;
                    """,
                    payload,
                )
                return cur.fetchone()

    def fetch_modules(self, course_id: str) -> list[Dict[str, Any]]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "select * from modules where course_id = %s order by position asc, created_at asc;",
                    (course_id,),
                )
                return cur.fetchall()

    def create_lesson(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    insert into lessons (id, module_id, title, content, position)
                    values (%(id)s, %(module_id)s, %(title)s, %(content)s, %(position)s)
                    returning *;
                    """,
                    payload,
                )
                return cur.fetchone()

    def fetch_lesson(self, lesson_id: str) -> Optional[Dict[str, Any]]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute("select * from lessons where id = %s;", (lesson_id,))
                return cur.fetchone()

    def fetch_lessons_for_course(self, course_id: str) -> list[Dict[str, Any]]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    select l.* from lessons l
                    join modules m on m.id = l.module_id
                    where m.course_id = %s
                    order by m.position asc, l.position asc, l.created_at asc;
                    """,
                    (course_id,),
                )
                return cur.fetchall()

    def update_lesson_script(self, lesson_id: str, script: str) -> None:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "update lessons set video_script = %s, updated_at = %s where id = %s;",
                    (script, _now(), lesson_id),
                )

    # =========================================================================
    # Attachments
    # =========================================================================

    def create_attachment(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    insert into lesson_attachments (
                        id, lesson_id, filename, asset_type, storage_path,
                        public_url, mime_type, alt_text, created_at
                    ) values (
                        %(id)s, %(lesson_id)s, %(filename)s, %(asset_type)s, %(storage_path)s,
                        %(public_url)s, %(mime_type)s, %(alt_text)s, %(created_at)s
                    )
                    returning *;
                    """,
                    payload,
                )
                return cur.fetchone()

    def fetch_attachments(self, lesson_ids: Sequence[str]) -> list[Dict[str, Any]]:
        if not lesson_ids:
            return []
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "select * from lesson_attachments where lesson_id = any(%s) order by created_at asc;",
                    (list(lesson_ids),),
                )
                return cur.fetchall()

    # =========================================================================
    # Lesson video jobs
    # =========================================================================

    def fetch_video_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute("select * from lesson_videos where id = %s;", (job_id,))
                return cur.fetchone()

    def fetch_video_jobs(
        self,
        lesson_ids: Optional[Sequence[str]] = None,
        statuses: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
    ) -> list[Dict[str, Any]]:
        clauses = []
        params: Dict[str, Any] = {}
        if lesson_ids is not None:
            if not lesson_ids:
                return []
            clauses.append("lesson_id = any(%(lesson_ids)s)")
            params["lesson_ids"] = list(lesson_ids)
        if statuses is not None:
            clauses.append("video_status = any(%(statuses)s)")
            params["statuses"] = list(statuses)
        where_clause = f" where {' and '.join(clauses)}" if clauses else ""
        limit_clause = ""
        if limit is not None:
            limit_clause = " limit %(limit)s"
            params["limit"] = limit
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"select * from lesson_videos{where_clause} order by created_at desc{limit_clause};",
                    params,
                )
                return cur.fetchall()

    def fetch_outstanding_video_jobs(
        self,
        course_id: Optional[str] = None,
        lesson_id: Optional[str] = None,
        job_id: Optional[str] = None,
        limit: int = 25,
    ) -> list[Dict[str, Any]]:
        clauses = ["v.video_status = any(%(statuses)s)"]
        params: Dict[str, Any] = {"statuses": sorted(IN_FLIGHT_STATUSES), "limit": limit}
        join_clause = ""
        if course_id:
            join_clause = " join lessons l on l.id = v.lesson_id join modules m on m.id = l.module_id"
            clauses.append("m.course_id = %(course_id)s")
            params["course_id"] = course_id
        if lesson_id:
            clauses.append("v.lesson_id = %(lesson_id)s")
            params["lesson_id"] = lesson_id
        if job_id:
            clauses.append("v.id = %(job_id)s")
            params["job_id"] = job_id
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    select v.* from lesson_videos v{join_clause}
                    where {' and '.join(clauses)}
                    order by v.next_check_at asc nulls first, v.created_at asc
                    limit %(limit)s;
                    """,
                    params,
                )
                return cur.fetchall()

    def insert_video_job(
        self,
        payload: Dict[str, Any],
        start_render: Callable[[], str],
        *,
        supersede_active: bool = False,
        superseded_message: str = "Superseded by a forced regeneration.",
    ) -> tuple[Dict[str, Any], list[str]]:
        """Insert a job row and start its render in one transaction.

        The unique partial index on in-flight rows makes a concurrent insert
        for the same lesson wait for this transaction and then fail. If
        ``start_render`` raises, the transaction rolls back and no row exists.
        """
        now = _now()
        with self._connect_transactional() as conn:
            with conn.cursor() as cur:
                superseded: list[str] = []
                if supersede_active:
                    cur.execute(
                        """
                        update lesson_videos
                        set video_status = 'failed', error_message = %s,
                            next_check_at = null, updated_at = %s
                        where lesson_id = %s and video_status in ('pending', 'processing')
                        returning id;
                        """,
                        (superseded_message, now, payload["lesson_id"]),
                    )
                    superseded = [row["id"] for row in cur.fetchall()]
                try:
                    cur.execute(
                        """
                        insert into lesson_videos (
                            id, lesson_id, video_status, video_id, target_duration_s, script,
                            video_url, check_attempts, last_checked_at, next_check_at,
                            dry_run, created_at, updated_at
                        ) values (
                            %(id)s, %(lesson_id)s, %(video_status)s, null, %(target_duration_s)s,
                            %(script)s, %(video_url)s, 0, null, %(next_check_at)s,
                            %(dry_run)s, %(created_at)s, %(created_at)s
                        );
                        """,
                        payload,
                    )
                except psycopg.errors.UniqueViolation as exc:
                    conn.rollback()
                    raise ActiveJobExistsError(payload["lesson_id"]) from exc

                provider_job_id = start_render()
                cur.execute(
                    "update lesson_videos set video_id = %s where id = %s returning *;",
                    (provider_job_id, payload["id"]),
                )
                row = cur.fetchone()
            conn.commit()
        return row, superseded

    def update_video_job(
        self,
        job_id: str,
        *,
        expected_status: str,
        expected_attempts: int,
        fields: Dict[str, Any],
    ) -> bool:
        """Compare-and-swap update; returns False when another writer got there first."""
        unknown = set(fields) - _VIDEO_JOB_UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported video job fields: {', '.join(sorted(unknown))}")
        params: Dict[str, Any] = {
            **fields,
            "id": job_id,
            "expected_status": expected_status,
            "expected_attempts": expected_attempts,
            "updated_at": _now(),
        }
        set_clause = ", ".join(f"{column} = %({column})s" for column in sorted(fields))
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    update lesson_videos set {set_clause}, updated_at = %(updated_at)s
                    where id = %(id)s
                      and video_status = %(expected_status)s
                      and check_attempts = %(expected_attempts)s;
                    """,
                    params,
                )
                return cur.rowcount == 1

    def delete_video_jobs(self, course_id: Optional[str] = None, dry_run_only: bool = False) -> int:
        if not course_id and not dry_run_only:
            raise ValueError("Purging videos requires a course id or the dry-run filter.")
        clauses = []
        params: Dict[str, Any] = {}
        if course_id:
            clauses.append(
                "lesson_id in (select l.id from lessons l join modules m on m.id = l.module_id"
                " where m.course_id = %(course_id)s)"
            )
            params["course_id"] = course_id
        if dry_run_only:
            clauses.append("dry_run")
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(f"delete from lesson_videos where {' and '.join(clauses)};", params)
                return cur.rowcount

    # =========================================================================
    # Agent runs
    # =========================================================================

    def create_agent_run(self, payload: Dict[str, Any]) -> None:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    insert into agent_runs (
                        id, course_id, agent_type, status, input_data, output_data,
                        error, created_at, updated_at
                    ) values (
                        %(id)s, %(course_id)s, %(agent_type)s, %(status)s, %(input_data)s,
                        %(output_data)s, %(error)s, %(created_at)s, %(updated_at)s
                    );
                    """,
                    {
                        **payload,
                        "input_data": Jsonb(payload.get("input_data")),
                        "output_data": Jsonb(payload.get("output_data")),
                    },
                )

    def update_agent_run(
        self,
        run_id: str,
        status: Optional[str] = None,
        output_data: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        course_id: Optional[str] = None,
        updated_at: Optional[str] = None,
    ) -> None:
        updates = []
        params: Dict[str, Any] = {"id": run_id}
        if status is not None:
            updates.append("status = %(status)s")
            params["status"] = status
            if status in {"completed", "failed"}:
                updates.append("completed_at = now()")
        if output_data is not None:
            updates.append("output_data = %(output_data)s")
            params["output_data"] = Jsonb(output_data)
        if error is not None:
            updates.append("error = %(error)s")
            params["error"] = error
        if course_id is not None:
            updates.append("course_id = %(course_id)s")
            params["course_id"] = course_id
        if updated_at is not None:
            updates.append("updated_at = %(updated_at)s")
            params["updated_at"] = updated_at
        if not updates:
            return
        set_clause = ", ".join(updates)
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(f"update agent_runs set {set_clause} where id = %(id)s;", params)

    def fetch_agent_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute("select * from agent_runs where id = %s;", (run_id,))
                return cur.fetchone()

    def count_video_jobs_by_status(self) -> Dict[str, int]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute("select video_status, count(*) as total from lesson_videos group by video_status;")
                return {row["video_status"]: int(row["total"]) for row in cur.fetchall()}


def get_database() -> Database:
    dsn = os.getenv("DATABASE_URL")
    if not dsn:
        raise RuntimeError("DATABASE_URL must be set for database access.")
    db = Database(dsn=dsn)
    db.migrate()
    return db
