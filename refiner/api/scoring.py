"""
POST /api/score, POST /api/classify
===================================
Stateless endpoints over the confidence scorer and the error classifier.

/api/score     - {code, samples?, thresholds?} → ConfidenceResult
/api/classify  - {output | report, test_file?}  → classified ErrorInfo list
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from refiner.models.confidence import ConfidenceResult, ConfidenceThresholds, ScoringConfig
from refiner.models.error_info import ErrorInfo
from refiner.parser.error_classifier import parse_errors
from refiner.parser.report_parser import parse_playwright_report
from refiner.scoring.confidence_scorer import score

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Scoring"])


class ScoreRequest(BaseModel):
    code: str
    samples: List[str] = Field(default_factory=list)
    thresholds: Optional[ConfidenceThresholds] = None


class ClassifyRequest(BaseModel):
    output: str = ""
    report: Optional[Dict[str, Any]] = None
    test_file: Optional[str] = None


class ClassifyResponse(BaseModel):
    status: str
    errors: List[ErrorInfo]


@router.post("/score", response_model=ConfidenceResult)
async def score_code(request: ScoreRequest) -> ConfidenceResult:
    config = ScoringConfig(thresholds=request.thresholds) if request.thresholds else None
    result = score(request.code, samples=request.samples or None, config=config)
    logger.info("Scored %d chars: %.2f (%s)", len(request.code), result.overall_score, result.verdict.value)
    return result


@router.post("/classify", response_model=ClassifyResponse)
async def classify_output(request: ClassifyRequest) -> ClassifyResponse:
    if request.report is not None:
        run = parse_playwright_report(request.report, stderr=request.output)
        return ClassifyResponse(status=run.status, errors=run.errors)

    errors = parse_errors(request.output, test_file=request.test_file)
    return ClassifyResponse(status="failed" if errors else "passed", errors=errors)
