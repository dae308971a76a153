"""
/api/lessons
============
Inspection and maintenance of the on-disk LessonStore.

GET  /api/lessons              - lessons at or above min_confidence, best first
GET  /api/lessons/stats        - store statistics
GET  /api/lessons/promotions   - lessons ready to be promoted
POST /api/lessons/prune        - drop proven-bad lessons, then save
POST /api/lessons/decay        - apply age decay, then save

Every request opens its own store handle (fresh read), so a save that races
another writer fails with 409 instead of overwriting it.
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from refiner.core.config import LESSON_STORE_PATH
from refiner.models.lesson import Lesson, LessonStats
from refiner.services.lesson_learning import decay_store, find_promotion_candidates
from refiner.services.lesson_store import LessonStore, LessonStoreConflictError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/lessons", tags=["Lessons"])


def get_lesson_store() -> LessonStore:
    return LessonStore(LESSON_STORE_PATH)


class MaintenanceResponse(BaseModel):
    affected: int
    stats: LessonStats


def _save(store: LessonStore) -> None:
    try:
        store.save()
    except LessonStoreConflictError as e:
        logger.warning("Lesson store conflict: %s", e)
        raise HTTPException(status_code=409, detail=str(e))


@router.get("", response_model=List[Lesson])
async def list_lessons(
    min_confidence: float = Query(0.0, ge=0.0, le=1.0),
    limit: int = Query(100, ge=1, le=1000),
    store: LessonStore = Depends(get_lesson_store),
) -> List[Lesson]:
    return store.export_for_context(min_confidence=min_confidence, limit=limit)


@router.get("/stats", response_model=LessonStats)
async def lesson_stats(store: LessonStore = Depends(get_lesson_store)) -> LessonStats:
    return store.get_stats()


@router.get("/promotions", response_model=List[Lesson])
async def promotion_candidates(store: LessonStore = Depends(get_lesson_store)) -> List[Lesson]:
    return find_promotion_candidates(store.lessons)


@router.post("/prune", response_model=MaintenanceResponse)
async def prune_lessons(
    min_confidence: float = Query(0.2, ge=0.0, le=1.0),
    min_applications: int = Query(3, ge=0),
    store: LessonStore = Depends(get_lesson_store),
) -> MaintenanceResponse:
    removed = store.prune_lessons(min_confidence=min_confidence, min_applications=min_applications)
    if removed:
        _save(store)
    return MaintenanceResponse(affected=removed, stats=store.get_stats())


@router.post("/decay", response_model=MaintenanceResponse)
async def decay_lessons(store: LessonStore = Depends(get_lesson_store)) -> MaintenanceResponse:
    adjustments = decay_store(store)
    if adjustments:
        _save(store)
    return MaintenanceResponse(affected=len(adjustments), stats=store.get_stats())
