"""
Wiggly — Storage Collaborators
===============================
The caches and the progress reconciler never talk to a database directly;
they are handed one of the stores below.

Protocols
---------
  SessionProvider   get_session()                          → SessionUser | None
  RoleStore         fetch_user_roles(user_id, now)         → list[UserRoleDetailed]  (unexpired only)
  ProgressStore     select(user_id, lesson_ids)            → list[LessonProgress]
                    upsert(user_id, row)                   → None   (keyed on user_id, lesson_id)
  EnrollmentStore   update_progress(user_id, course_id, progress, completion_date) → None

Implementations
---------------
  In-memory  — StaticSessionProvider, InMemoryRoleStore, InMemoryProgressStore,
               InMemoryEnrollmentStore. Count calls; can be told to fail.
  SQLAlchemy — SqlRoleStore, SqlProgressStore, SqlEnrollmentStore over the
               tables defined in METADATA. Any driver error is re-raised as
               StoreError.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Optional, Protocol

from sqlalchemy import (
    Column, DateTime, Float, ForeignKey, Integer, MetaData, String, Table,
    UniqueConstraint, and_, create_engine, or_, select,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from config import DATABASE_URL, DB_ECHO
from models import SessionUser, UserRoleDetailed, LessonProgress

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """A backend read or write failed. Callers log it and keep their last good state."""


# ── Protocols ─────────────────────────────────────────────────────────────────

class SessionProvider(Protocol):
    async def get_session(self) -> Optional[SessionUser]: ...


class RoleStore(Protocol):
    async def fetch_user_roles(self, user_id: str, now: datetime) -> list[UserRoleDetailed]: ...


class ProgressStore(Protocol):
    async def select(self, user_id: str, lesson_ids: list[str]) -> list[LessonProgress]: ...
    async def upsert(self, user_id: str, row: LessonProgress) -> None: ...


class EnrollmentStore(Protocol):
    async def update_progress(self, user_id: str, course_id: str, progress: float,
                              completion_date: Optional[datetime]) -> None: ...


# ── In-memory implementations ─────────────────────────────────────────────────

class StaticSessionProvider:
    """Returns whichever user was last set. None means signed out."""

    def __init__(self, user: Optional[SessionUser] = None, delay: float = 0.0) -> None:
        self.user  = user
        self.delay = delay
        self.calls = 0
        self.fail  = False

    async def get_session(self) -> Optional[SessionUser]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise StoreError('session lookup failed')
        return self.user


class InMemoryRoleStore:
    """user_id → [(name, hierarchy_level, expires_at)]. Expiry filtered on read."""

    def __init__(self, delay: float = 0.0) -> None:
        self.assignments: dict[str, list[UserRoleDetailed]] = {}
        self.delay = delay
        self.calls = 0
        self.fail  = False

    def grant(self, user_id: str, name: str, hierarchy_level: int,
              expires_at: Optional[datetime] = None) -> None:
        self.assignments.setdefault(user_id, []).append(
            UserRoleDetailed(name, hierarchy_level, expires_at))

    async def fetch_user_roles(self, user_id: str, now: datetime) -> list[UserRoleDetailed]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise StoreError('role query failed')
        return [r for r in self.assignments.get(user_id, [])
                if r.expires_at is None or r.expires_at > now]


class InMemoryProgressStore:
    """One LessonProgress per (user_id, lesson_id) — upsert replaces in place."""

    def __init__(self) -> None:
        self.rows: dict[tuple[str, str], LessonProgress] = {}
        self.select_calls = 0
        self.upsert_calls = 0
        self.fail_select  = False
        self.fail_upsert  = False

    async def select(self, user_id: str, lesson_ids: list[str]) -> list[LessonProgress]:
        self.select_calls += 1
        if self.fail_select:
            raise StoreError('progress select failed')
        wanted = set(lesson_ids)
        return [LessonProgress(r.lesson_id, r.completion_percentage, r.watch_time, r.completed_at)
                for (uid, lid), r in self.rows.items() if uid == user_id and lid in wanted]

    async def upsert(self, user_id: str, row: LessonProgress) -> None:
        self.upsert_calls += 1
        if self.fail_upsert:
            raise StoreError('progress upsert failed')
        self.rows[(user_id, row.lesson_id)] = LessonProgress(
            row.lesson_id, row.completion_percentage, row.watch_time, row.completed_at)


class InMemoryEnrollmentStore:
    """Only existing enrollments are updated, like an UPDATE ... WHERE."""

    def __init__(self) -> None:
        self.rows: dict[tuple[str, str], dict] = {}
        self.calls = 0

    def enroll(self, user_id: str, course_id: str) -> None:
        self.rows[(user_id, course_id)] = {'progress': 0.0, 'completion_date': None}

    async def update_progress(self, user_id: str, course_id: str, progress: float,
                              completion_date: Optional[datetime]) -> None:
        self.calls += 1
        row = self.rows.get((user_id, course_id))
        if row is not None:
            row['progress']        = progress
            row['completion_date'] = completion_date


# ── SQLAlchemy schema ─────────────────────────────────────────────────────────

METADATA = MetaData()

roles_table = Table(
    'roles', METADATA,
    Column('id',              Integer, primary_key=True),
    Column('name',            String(64), nullable=False, unique=True),
    Column('hierarchy_level', Integer, nullable=False, default=0),
)

user_roles_table = Table(
    'user_roles', METADATA,
    Column('id',         Integer, primary_key=True),
    Column('user_id',    String(64), nullable=False, index=True),
    Column('role_id',    Integer, ForeignKey('roles.id'), nullable=False),
    Column('expires_at', DateTime(timezone=True), nullable=True),
)

user_progress_table = Table(
    'user_progress', METADATA,
    Column('id',                    Integer, primary_key=True),
    Column('user_id',               String(64), nullable=False),
    Column('lesson_id',             String(64), nullable=False),
    Column('completion_percentage', Float, nullable=False, default=0),
    Column('watch_time',            Float, nullable=False, default=0),
    Column('completed_at',          DateTime(timezone=True), nullable=True),
    UniqueConstraint('user_id', 'lesson_id', name='uq_user_progress_user_lesson'),
)

user_enrollments_table = Table(
    'user_enrollments', METADATA,
    Column('id',              Integer, primary_key=True),
    Column('user_id',         String(64), nullable=False),
    Column('course_id',       String(64), nullable=False),
    Column('progress',        Float, nullable=False, default=0),
    Column('completion_date', DateTime(timezone=True), nullable=True),
    UniqueConstraint('user_id', 'course_id', name='uq_user_enrollments_user_course'),
)


def create_engine_from_config(url: str = DATABASE_URL, echo: bool = DB_ECHO) -> Engine:
    """
    Engine for the configured database (WIGGLY_DATABASE_URL).

    Store calls run on worker threads, so SQLite connections must be
    shareable across threads; an in-memory database additionally keeps a
    single connection, or every thread would see its own empty database.
    """
    parsed = make_url(url)
    kwargs: dict = {'echo': echo, 'pool_pre_ping': True}
    if parsed.get_backend_name() == 'sqlite':
        kwargs['connect_args'] = {'check_same_thread': False}
        if parsed.database in (None, '', ':memory:'):
            kwargs['poolclass'] = StaticPool
    return create_engine(url, **kwargs)


def create_schema(engine: Engine) -> None:
    """Create any missing tables. Existing tables are left alone."""
    METADATA.create_all(engine)


# ── SQLAlchemy implementations ────────────────────────────────────────────────
# Each async method runs its blocking statement on a worker thread via
# asyncio.to_thread.

class SqlRoleStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def grant(self, user_id: str, name: str, hierarchy_level: int,
              expires_at: Optional[datetime] = None) -> None:
        """Assign a role, creating the role row on first use."""
        try:
            with self.engine.begin() as conn:
                role_id = conn.execute(
                    select(roles_table.c.id).where(roles_table.c.name == name)
                ).scalar()
                if role_id is None:
                    role_id = conn.execute(
                        roles_table.insert().values(name=name, hierarchy_level=hierarchy_level)
                    ).inserted_primary_key[0]
                conn.execute(user_roles_table.insert().values(
                    user_id=user_id, role_id=role_id, expires_at=expires_at))
        except SQLAlchemyError as exc:
            raise StoreError(f'could not grant role {name!r} to {user_id}: {exc}') from exc

    async def fetch_user_roles(self, user_id: str, now: datetime) -> list[UserRoleDetailed]:
        return await asyncio.to_thread(self._fetch_user_roles, user_id, now)

    def _fetch_user_roles(self, user_id: str, now: datetime) -> list[UserRoleDetailed]:
        stmt = (
            select(roles_table.c.name, roles_table.c.hierarchy_level, user_roles_table.c.expires_at)
            .select_from(user_roles_table.join(roles_table, user_roles_table.c.role_id == roles_table.c.id))
            .where(and_(
                user_roles_table.c.user_id == user_id,
                or_(user_roles_table.c.expires_at.is_(None), user_roles_table.c.expires_at > now),
            ))
        )
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(stmt).all()
        except SQLAlchemyError as exc:
            raise StoreError(f'role query failed for {user_id}: {exc}') from exc
        return [UserRoleDetailed(r.name, r.hierarchy_level, r.expires_at) for r in rows]


class SqlProgressStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    async def select(self, user_id: str, lesson_ids: list[str]) -> list[LessonProgress]:
        return await asyncio.to_thread(self._select, user_id, list(lesson_ids))

    def _select(self, user_id: str, lesson_ids: list[str]) -> list[LessonProgress]:
        t = user_progress_table
        stmt = select(t.c.lesson_id, t.c.completion_percentage, t.c.watch_time, t.c.completed_at).where(
            and_(t.c.user_id == user_id, t.c.lesson_id.in_(lesson_ids)))
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(stmt).all()
        except SQLAlchemyError as exc:
            raise StoreError(f'progress select failed for {user_id}: {exc}') from exc
        return [LessonProgress(r.lesson_id, r.completion_percentage or 0, r.watch_time or 0, r.completed_at)
                for r in rows]

    async def upsert(self, user_id: str, row: LessonProgress) -> None:
        await asyncio.to_thread(self._upsert, user_id, row)

    def _upsert(self, user_id: str, row: LessonProgress) -> None:
        """Update the (user_id, lesson_id) row, inserting it when absent, in one transaction."""
        t = user_progress_table
        values = {
            'completion_percentage': row.completion_percentage,
            'watch_time':            row.watch_time,
            'completed_at':          row.completed_at,
        }
        try:
            with self.engine.begin() as conn:
                updated = conn.execute(
                    t.update()
                    .where(and_(t.c.user_id == user_id, t.c.lesson_id == row.lesson_id))
                    .values(**values)
                ).rowcount
                if not updated:
                    conn.execute(t.insert().values(user_id=user_id, lesson_id=row.lesson_id, **values))
        except SQLAlchemyError as exc:
            raise StoreError(f'progress upsert failed for {user_id}/{row.lesson_id}: {exc}') from exc


class SqlEnrollmentStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def enroll(self, user_id: str, course_id: str) -> None:
        try:
            with self.engine.begin() as conn:
                conn.execute(user_enrollments_table.insert().values(
                    user_id=user_id, course_id=course_id, progress=0))
        except SQLAlchemyError as exc:
            raise StoreError(f'could not enroll {user_id} in {course_id}: {exc}') from exc

    def get(self, user_id: str, course_id: str) -> Optional[dict]:
        t = user_enrollments_table
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(t.c.progress, t.c.completion_date)
                    .where(and_(t.c.user_id == user_id, t.c.course_id == course_id))
                ).first()
        except SQLAlchemyError as exc:
            raise StoreError(f'enrollment lookup failed for {user_id}/{course_id}: {exc}') from exc
        return dict(row._mapping) if row is not None else None

    async def update_progress(self, user_id: str, course_id: str, progress: float,
                              completion_date: Optional[datetime]) -> None:
        await asyncio.to_thread(self._update_progress, user_id, course_id, progress, completion_date)

    def _update_progress(self, user_id: str, course_id: str, progress: float,
                         completion_date: Optional[datetime]) -> None:
        t = user_enrollments_table
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    t.update()
                    .where(and_(t.c.user_id == user_id, t.c.course_id == course_id))
                    .values(progress=progress, completion_date=completion_date)
                )
        except SQLAlchemyError as exc:
            raise StoreError(f'enrollment update failed for {user_id}/{course_id}: {exc}') from exc
