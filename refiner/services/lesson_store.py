"""
Lesson Store
============
File-backed, confidence-weighted memory of (context → fix) associations.

Persistence:
    - One JSON document per project: {version, revision, lessons[], stats, last_updated}
    - Loaded wholesale, mutated in memory, rewritten wholesale on save
    - Missing or corrupt file → empty store (logged, never raised)
    - Save writes a temp file in the same directory and os.replace()s it,
      so readers never observe a half-written document

Concurrency:
    The store remembers the revision it loaded. On save, if the file on disk
    carries a newer revision (another session saved in between), the save is
    refused with LessonStoreConflictError instead of silently losing updates.
    Callers handle it by reload() + re-applying their change.

Confidence Rules:
    - add_lesson on an existing (type, pattern) merges context, replaces the
      fix, bumps last_used_at; it never duplicates
    - record_success: +0.05, capped at 0.95
    - record_failure: -0.10, floored at 0.10
    - prune_lessons: drop lessons below a floor only once they have at least
      ``min_applications`` uses; promoted lessons are never pruned

The store is an explicit handle passed to the loop and API, not a module global.
"""
import os
import json
import logging
import tempfile
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from refiner.core.config import LESSON_STORE_PATH
from refiner.core.constants import (
    LESSON_CONFIDENCE_CEILING,
    LESSON_CONFIDENCE_FLOOR,
    LESSON_FAILURE_STEP,
    LESSON_INITIAL_CONFIDENCE,
    LESSON_STORE_VERSION,
    LESSON_SUCCESS_STEP,
)
from refiner.models.lesson import (
    Lesson,
    LessonContext,
    LessonFix,
    LessonStats,
    LessonStoreDocument,
    LessonType,
)
from refiner.utils.fingerprint import short_hash

logger = logging.getLogger(__name__)


class LessonStoreConflictError(RuntimeError):
    """The file on disk was saved by someone else after we loaded it."""


def generate_lesson_id(lesson_type: LessonType, pattern: str) -> str:
    """Stable id for one (type, pattern) pair."""
    return f"{lesson_type.value}-{short_hash(pattern)}"


def compute_stats(lessons: List[Lesson]) -> LessonStats:
    """Aggregate counters for the store document."""
    by_type: Dict[str, int] = {}
    for lesson in lessons:
        by_type[lesson.type.value] = by_type.get(lesson.type.value, 0) + 1

    total_success = sum(l.success_count for l in lessons)
    total_applications = sum(l.applications for l in lessons)
    avg_confidence = sum(l.confidence for l in lessons) / len(lessons) if lessons else 0.0

    return LessonStats(
        total_lessons=len(lessons),
        lessons_by_type=by_type,
        avg_confidence=round(avg_confidence, 4),
        total_applications=total_applications,
        success_rate=round(total_success / total_applications, 4) if total_applications else 0.0,
    )


def _query_words(text: str) -> List[str]:
    return [w for w in text.lower().split() if w]


class LessonStore:
    """
    Handle to one project's lesson file.

    Parameters
    ----------
    path : str
        JSON file location (created on first save).
    clock : callable
        Returns the current UTC datetime (injectable for tests).
    autoload : bool
        Read the file immediately (default True).
    """

    def __init__(
        self,
        path: str = LESSON_STORE_PATH,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        autoload: bool = True,
    ) -> None:
        self.path = path
        self._clock = clock
        self._document = LessonStoreDocument()
        self._loaded_revision = 0
        if autoload:
            self.reload()

    # -------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------
    def _read_document(self) -> Optional[LessonStoreDocument]:
        if not os.path.exists(self.path):
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            return LessonStoreDocument.model_validate(raw)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.warning("Lesson store %s unreadable, starting empty: %s", self.path, e)
            return None

    def reload(self) -> None:
        """Discard in-memory changes and re-read the file."""
        document = self._read_document()
        if document is None:
            document = LessonStoreDocument()
        elif document.version != LESSON_STORE_VERSION:
            logger.warning(
                "Lesson store version %s != %s, loading anyway",
                document.version, LESSON_STORE_VERSION,
            )
        self._document = document
        self._loaded_revision = document.revision
        logger.debug("Loaded %d lesson(s) from %s", len(document.lessons), self.path)

    def save(self) -> None:
        """
        Write the whole document atomically.

        Raises
        ------
        LessonStoreConflictError
            The on-disk revision is newer than the one this handle loaded.
        """
        on_disk = self._read_document()
        if on_disk is not None and on_disk.revision > self._loaded_revision:
            raise LessonStoreConflictError(
                f"{self.path} is at revision {on_disk.revision}, "
                f"this handle loaded {self._loaded_revision}"
            )

        self._document.version = LESSON_STORE_VERSION
        self._document.revision = self._loaded_revision + 1
        self._document.stats = compute_stats(self._document.lessons)
        self._document.last_updated = self._clock()

        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".lessons-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._document.model_dump(mode="json"), f, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

        self._loaded_revision = self._document.revision
        logger.info("Saved %d lesson(s) to %s (rev %d)",
                    len(self._document.lessons), self.path, self._loaded_revision)

    # -------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------
    @property
    def lessons(self) -> List[Lesson]:
        return list(self._document.lessons)

    @property
    def revision(self) -> int:
        return self._loaded_revision

    def get_stats(self) -> LessonStats:
        return compute_stats(self._document.lessons)

    def get(self, lesson_id: str) -> Optional[Lesson]:
        for lesson in self._document.lessons:
            if lesson.id == lesson_id:
                return lesson
        return None

    def find_lesson(self, lesson_type: LessonType, pattern: str) -> Optional[Lesson]:
        for lesson in self._document.lessons:
            if lesson.type == lesson_type and lesson.pattern == pattern:
                return lesson
        return None

    # -------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------
    def add_lesson(
        self,
        lesson_type: LessonType,
        pattern: str,
        context: LessonContext,
        fix: LessonFix,
        initial_confidence: float = LESSON_INITIAL_CONFIDENCE,
        verified: bool = False,
    ) -> Lesson:
        """
        Insert a lesson, or update the existing one with the same (type, pattern).

        Parameters
        ----------
        lesson_type : LessonType
        pattern : str
            Identity key within the type.
        context : LessonContext
            Merged field-by-field into an existing lesson's context.
        fix : LessonFix
            Replaces an existing lesson's fix.
        initial_confidence : float
            Only used for new lessons; clamped into [0.1, 0.95].
        verified : bool
            Marks the lesson as produced by an outcome that actually passed.

        Returns
        -------
        Lesson
            The stored (live) record.
        """
        now = self._clock()
        existing = self.find_lesson(lesson_type, pattern)
        if existing is not None:
            merged = existing.context.model_dump()
            merged.update(context.model_dump(exclude_none=True))
            existing.context = LessonContext(**merged)
            existing.fix = fix
            existing.last_used_at = now
            existing.verified = existing.verified or verified
            return existing

        lesson = Lesson(
            id=generate_lesson_id(lesson_type, pattern),
            type=lesson_type,
            pattern=pattern,
            context=context,
            fix=fix,
            confidence=min(LESSON_CONFIDENCE_CEILING, max(LESSON_CONFIDENCE_FLOOR, initial_confidence)),
            created_at=now,
            last_used_at=now,
            verified=verified,
        )
        self._document.lessons.append(lesson)
        return lesson

    def record_success(self, lesson_id: str) -> Optional[Lesson]:
        lesson = self.get(lesson_id)
        if lesson is None:
            return None
        now = self._clock()
        lesson.success_count += 1
        lesson.last_success_at = now
        lesson.last_used_at = now
        lesson.confidence = min(LESSON_CONFIDENCE_CEILING, lesson.confidence + LESSON_SUCCESS_STEP)
        return lesson

    def record_failure(self, lesson_id: str) -> Optional[Lesson]:
        lesson = self.get(lesson_id)
        if lesson is None:
            return None
        lesson.failure_count += 1
        lesson.last_used_at = self._clock()
        lesson.confidence = max(LESSON_CONFIDENCE_FLOOR, lesson.confidence - LESSON_FAILURE_STEP)
        return lesson

    def promote(self, lesson_id: str) -> bool:
        lesson = self.get(lesson_id)
        if lesson is None or lesson.promoted:
            return False
        lesson.promoted = True
        return True

    def replace_lessons(self, lessons: List[Lesson]) -> None:
        """Swap the in-memory lesson list (used by decay / aggregation passes)."""
        self._document.lessons = list(lessons)

    def prune_lessons(self, min_confidence: float = 0.2, min_applications: int = 3) -> int:
        """
        Remove proven-bad lessons.

        Kept when: applications < min_applications (too young to judge),
        or confidence >= min_confidence, or promoted.

        Returns
        -------
        int
            Number of lessons removed.
        """
        before = len(self._document.lessons)
        self._document.lessons = [
            l for l in self._document.lessons
            if l.applications < min_applications or l.confidence >= min_confidence or l.promoted
        ]
        removed = before - len(self._document.lessons)
        if removed:
            logger.info("Pruned %d low-confidence lesson(s)", removed)
        return removed

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    def find_lessons_for_context(self, context: LessonContext, min_confidence: float = 0.5) -> List[Lesson]:
        """
        Lessons applicable to a failure context, best first.

        Exact match on error_type / step_type / component_type when the query
        sets them. When both sides carry an error message, at least
        min(3, half the query's words) words must be shared.
        """
        query_words = _query_words(context.error_message or "")
        matches: List[Lesson] = []

        for lesson in self._document.lessons:
            if lesson.confidence < min_confidence:
                continue
            lc = lesson.context
            if context.error_type and lc.error_type != context.error_type:
                continue
            if context.step_type and lc.step_type != context.step_type:
                continue
            if context.component_type and lc.component_type != context.component_type:
                continue
            if query_words and lc.error_message:
                lesson_words = set(_query_words(lc.error_message))
                overlap = sum(1 for w in query_words if w in lesson_words)
                if overlap < min(3, len(query_words) * 0.5):
                    continue
            matches.append(lesson)

        return sorted(matches, key=lambda l: l.confidence, reverse=True)

    def export_for_context(self, min_confidence: float = 0.5, limit: int = 100) -> List[Lesson]:
        """Highest-confidence lessons, for handing to a fix oracle as prior knowledge."""
        eligible = [l for l in self._document.lessons if l.confidence >= min_confidence]
        return sorted(eligible, key=lambda l: l.confidence, reverse=True)[:limit]
