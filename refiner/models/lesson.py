"""
Lesson Model
============
Pydantic models for the persisted lesson store (learned context → fix memory).

Fields:
    id              - "<type>-<hash(pattern)>", stable for the same type + pattern
    type            - selector / wait / flow / error-fix
    pattern         - the key the lesson was learned under
    context         - filter: error type, step type, component type, free text
    fix             - kind + pattern + replacement + explanation
    confidence      - always kept within [0.1, 0.95]
    success_count / failure_count - outcome counters (their sum = applications)
    created_at / last_used_at / last_success_at - UTC timestamps
    verified        - produced from an outcome that actually passed
    promoted        - graduated into a reusable pattern; never pruned

Store document (one JSON file per project):
    {version, revision, lessons[], stats, last_updated}
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from refiner.core.constants import LESSON_INITIAL_CONFIDENCE, LESSON_STORE_VERSION


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LessonType(str, Enum):
    SELECTOR = "selector"
    WAIT = "wait"
    FLOW = "flow"
    ERROR_FIX = "error-fix"


class FixKind(str, Enum):
    REPLACE = "replace"
    INSERT = "insert"
    WRAP = "wrap"


class LessonContext(BaseModel):
    error_type: Optional[str] = None
    step_type: Optional[str] = None
    component_type: Optional[str] = None
    error_message: Optional[str] = None
    selector: Optional[str] = None
    journey_id: Optional[str] = None


class LessonFix(BaseModel):
    kind: FixKind = FixKind.REPLACE
    pattern: str = ""
    replacement: str = ""
    explanation: str = ""
    fix_type: Optional[str] = None


class Lesson(BaseModel):
    id: str
    type: LessonType
    pattern: str
    context: LessonContext = Field(default_factory=LessonContext)
    fix: LessonFix = Field(default_factory=LessonFix)
    confidence: float = LESSON_INITIAL_CONFIDENCE
    success_count: int = 0
    failure_count: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    last_used_at: datetime = Field(default_factory=_utcnow)
    last_success_at: Optional[datetime] = None
    verified: bool = False
    promoted: bool = False

    @property
    def applications(self) -> int:
        return self.success_count + self.failure_count


class LessonStats(BaseModel):
    total_lessons: int = 0
    lessons_by_type: Dict[str, int] = Field(default_factory=dict)
    avg_confidence: float = 0.0
    total_applications: int = 0
    success_rate: float = 0.0


class LessonStoreDocument(BaseModel):
    version: str = LESSON_STORE_VERSION
    revision: int = 0
    lessons: List[Lesson] = Field(default_factory=list)
    stats: LessonStats = Field(default_factory=LessonStats)
    last_updated: datetime = Field(default_factory=_utcnow)


class LessonRecommendation(BaseModel):
    lesson: Lesson
    relevance: float
    reasons: List[str] = Field(default_factory=list)
