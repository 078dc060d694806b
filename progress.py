"""
Wiggly — Course Progress
=========================
Reconciles a sparse user_progress table against a course's full lesson list.

One CourseProgressTracker per (course, lesson list) being viewed. It moves
idle → loading → ready; every progress write is an upsert keyed on
(user_id, lesson_id) followed — after a short settle delay — by a full
reload, rather than patching local state optimistically.

Rules
-----
  - A lesson is completed iff completion_percentage >= LESSON_COMPLETION_THRESHOLD.
  - overall_progress = completed / total × 100 (0 when there are no lessons).
  - Each load writes overall_progress back to the enrollment, with a
    completion date iff it reached COURSE_COMPLETE_PERCENT.
  - A load requested while one is running is dropped, not queued.
  - sync() only loads when the sorted lesson-id key actually changed.
  - No signed-in user → ready with zero progress.
  - Store errors are logged; progress stays at its last good value.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from config import (
    LESSON_COMPLETION_THRESHOLD, COURSE_COMPLETE_PERCENT,
    RELOAD_SETTLE_DELAY,
)
from models import CourseProgress, LessonProgress, LoadState
from stores import ProgressStore, EnrollmentStore, StoreError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _lesson_id(lesson: Any) -> str:
    """Lessons may be plain ids, mappings with 'id', or objects with .id."""
    if isinstance(lesson, str):
        return lesson
    if isinstance(lesson, dict):
        return str(lesson['id'])
    return str(lesson.id)


def lessons_key(lessons: Iterable[Any]) -> str:
    """Stable identity for a lesson list: sorted ids joined by commas."""
    return ','.join(sorted(_lesson_id(l) for l in lessons))


def completed_at_for(percentage: float, now: datetime) -> Optional[datetime]:
    """completed_at is stamped exactly when the lesson crosses the completion threshold."""
    return now if percentage >= LESSON_COMPLETION_THRESHOLD else None


def build_course_progress(lesson_ids: list[str], rows: Iterable[LessonProgress]) -> CourseProgress:
    """Pure reconciliation of progress rows against the lesson list."""
    lesson_map: dict[str, LessonProgress] = {}
    completed = 0
    for row in rows:
        lesson_map[row.lesson_id] = LessonProgress(
            lesson_id=row.lesson_id,
            completion_percentage=row.completion_percentage or 0,
            watch_time=row.watch_time or 0,
            completed_at=row.completed_at,
        )
        if (row.completion_percentage or 0) >= LESSON_COMPLETION_THRESHOLD:
            completed += 1

    total   = len(lesson_ids)
    overall = completed / total * 100 if total > 0 else 0.0
    return CourseProgress(
        total_lessons=total,
        completed_lessons=completed,
        overall_progress=overall,
        lesson_progress=lesson_map,
    )


class CourseProgressTracker:
    """
    Per-view progress state for one course.

    `sessions` is anything with an async get_session_user() — normally the
    app-wide auth.SessionCache.
    """

    def __init__(self, course_id: str, lessons: Iterable[Any], sessions: Any,
                 progress_store: ProgressStore, enrollment_store: EnrollmentStore,
                 settle_delay: float = RELOAD_SETTLE_DELAY,
                 now: Callable[[], datetime] = utcnow) -> None:
        self.course_id        = course_id
        self.lessons          = list(lessons)
        self.sessions         = sessions
        self.progress_store   = progress_store
        self.enrollment_store = enrollment_store
        self.settle_delay     = settle_delay
        self._now             = now

        self.progress: CourseProgress = CourseProgress()
        self.state:    LoadState      = 'idle'
        self._loading  = False
        self._loaded_key = ''

    # ── lesson set ────────────────────────────────────────────────────────
    @property
    def lesson_ids(self) -> list[str]:
        return [_lesson_id(l) for l in self.lessons]

    @property
    def lessons_key(self) -> str:
        return lessons_key(self.lessons)

    async def sync(self) -> bool:
        """
        Load if the lesson set changed since the last load. Returns whether it loaded.

        The key is recorded only after a load has actually run for it, and
        lessons swapped in while that load was in flight get a load of their
        own before sync() returns.
        """
        loaded = False
        while True:
            key = self.lessons_key
            if not self.course_id or not key or key == self._loaded_key:
                return loaded
            logger.debug('Lessons changed for course %s, loading progress', self.course_id)
            if not await self.load_progress():
                return loaded
            self._loaded_key = key
            loaded = True

    async def set_lessons(self, lessons: Iterable[Any]) -> bool:
        self.lessons = list(lessons)
        return await self.sync()

    # ── loading ───────────────────────────────────────────────────────────
    async def load_progress(self) -> bool:
        """
        Fetch and reconcile. A call made while a load is running is dropped.
        Returns False when the call was dropped or had nothing to load.
        """
        if not self.course_id or not self.lessons or self._loading:
            return False

        self._loading = True
        self.state    = 'loading'
        try:
            lesson_ids = self.lesson_ids
            user = await self.sessions.get_session_user()
            if not user:
                self.progress = CourseProgress(total_lessons=len(lesson_ids))
                return True

            try:
                rows = await self.progress_store.select(user.id, lesson_ids)
            except StoreError as exc:
                logger.error('Error fetching progress for course %s: %s', self.course_id, exc)
                return True

            self.progress = build_course_progress(lesson_ids, rows)
            logger.debug('Course %s: %d/%d lessons complete (%.1f%%)', self.course_id,
                         self.progress.completed_lessons, self.progress.total_lessons,
                         self.progress.overall_progress)
            await self._update_enrollment(user.id, self.progress.overall_progress)
            return True
        finally:
            self.state    = 'ready'
            self._loading = False

    refresh_progress = load_progress

    async def _update_enrollment(self, user_id: str, overall: float) -> None:
        completion_date = self._now() if overall >= COURSE_COMPLETE_PERCENT else None
        try:
            await self.enrollment_store.update_progress(user_id, self.course_id, overall, completion_date)
        except StoreError as exc:
            logger.error('Error updating enrollment progress for course %s: %s', self.course_id, exc)

    async def _reload_after_write(self) -> None:
        if self.settle_delay:
            await asyncio.sleep(self.settle_delay)
        await self.load_progress()

    # ── mutations ─────────────────────────────────────────────────────────
    async def _write(self, user_id: str, lesson_id: str, percentage: float, watch_time: float) -> bool:
        row = LessonProgress(
            lesson_id=lesson_id,
            completion_percentage=percentage,
            watch_time=watch_time,
            completed_at=completed_at_for(percentage, self._now()),
        )
        try:
            await self.progress_store.upsert(user_id, row)
        except StoreError as exc:
            logger.error('Error updating progress for lesson %s: %s', lesson_id, exc)
            return False
        return True

    async def mark_lesson_progress(self, lesson_id: str, completion_percentage: float,
                                   watch_time: float) -> None:
        user = await self.sessions.get_session_user()
        if not user:
            return
        logger.debug('Marking lesson %s at %s%% (%ss watched)', lesson_id, completion_percentage, watch_time)
        if await self._write(user.id, lesson_id, completion_percentage, watch_time):
            await self._reload_after_write()

    async def toggle_lesson_completion(self, lesson_id: str, lesson_duration: float = 0) -> None:
        """Completed lessons go to 0 %, anything else to 100 % — decided from current state."""
        user = await self.sessions.get_session_user()
        if not user:
            return
        current    = self.get_lesson_progress(lesson_id)
        new_pct    = 0 if self.is_lesson_completed(lesson_id) else 100
        watch_time = (current.watch_time if current else 0) or lesson_duration
        logger.debug('Toggling lesson %s → %s%%', lesson_id, new_pct)
        if await self._write(user.id, lesson_id, new_pct, watch_time):
            await self._reload_after_write()

    # ── queries ───────────────────────────────────────────────────────────
    def get_lesson_progress(self, lesson_id: str) -> Optional[LessonProgress]:
        return self.progress.lesson_progress.get(lesson_id)

    def is_lesson_completed(self, lesson_id: str) -> bool:
        lp = self.get_lesson_progress(lesson_id)
        return lp is not None and lp.completion_percentage >= LESSON_COMPLETION_THRESHOLD
