"""
Confidence Models
=================
Pydantic models for multi-dimensional confidence scoring.

Dimensions:
    syntax     - structural validity of the candidate code
    pattern    - coverage by known-good Playwright patterns
    selector   - stability of the locators used
    agreement  - structural agreement across samples (only with >= 2 samples)

ConfidenceResult is produced fresh per scoring call and frozen afterwards.
"""
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ScoreDimension(str, Enum):
    SYNTAX = "syntax"
    PATTERN = "pattern"
    SELECTOR = "selector"
    AGREEMENT = "agreement"


class Verdict(str, Enum):
    ACCEPT = "ACCEPT"
    REVIEW = "REVIEW"
    REJECT = "REJECT"


class PatternSource(str, Enum):
    BUILTIN = "builtin"
    GLOSSARY = "glossary"
    LLKB = "llkb"


class CodePattern(BaseModel):
    """A known-good code fragment recognised by the pattern dimension."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    regex: str
    category: str
    confidence: float = 0.8
    source: PatternSource = PatternSource.BUILTIN


class SubScore(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    score: float
    details: str = ""


class DimensionScore(BaseModel):
    model_config = ConfigDict(frozen=True)

    dimension: ScoreDimension
    score: float
    weight: float
    reasoning: str = ""
    sub_scores: List[SubScore] = Field(default_factory=list)


class ScoringWeights(BaseModel):
    syntax: float = 0.3
    pattern: float = 0.2
    selector: float = 0.25
    agreement: float = 0.25

    def weight_for(self, dimension: ScoreDimension) -> float:
        return getattr(self, dimension.value)


def _default_minimums() -> Dict[ScoreDimension, float]:
    return {dim: 0.4 for dim in ScoreDimension}


class ConfidenceThresholds(BaseModel):
    model_config = ConfigDict(frozen=True)

    accept: float = 0.7
    block: float = 0.3
    minimums: Dict[ScoreDimension, float] = Field(default_factory=_default_minimums)

    def minimum_for(self, dimension: ScoreDimension) -> float:
        return self.minimums.get(dimension, 0.0)


class ScoringConfig(BaseModel):
    weights: ScoringWeights = Field(default_factory=ScoringWeights)
    thresholds: ConfidenceThresholds = Field(default_factory=ConfidenceThresholds)
    custom_patterns: List[CodePattern] = Field(default_factory=list)
    learned_patterns: List[CodePattern] = Field(default_factory=list)


class ConfidenceDiagnostics(BaseModel):
    model_config = ConfigDict(frozen=True)

    lowest_dimension: Optional[ScoreDimension] = None
    highest_dimension: Optional[ScoreDimension] = None
    suggestions: List[str] = Field(default_factory=list)
    risk_areas: List[str] = Field(default_factory=list)


class ConfidenceResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    overall_score: float
    dimensions: List[DimensionScore]
    thresholds: ConfidenceThresholds
    verdict: Verdict
    blocking_dimensions: List[ScoreDimension] = Field(default_factory=list)
    diagnostics: ConfidenceDiagnostics = Field(default_factory=ConfidenceDiagnostics)

    def dimension(self, name: ScoreDimension) -> Optional[DimensionScore]:
        for dim in self.dimensions:
            if dim.dimension == name:
                return dim
        return None
