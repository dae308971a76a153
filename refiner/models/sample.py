"""
Sample Models
=============
Pydantic models for multi-sample generation and structural agreement.

Sample:
    one generated candidate with its temperature and token cost

AgreementResult:
    structural / selector / flow / assertion sub-agreement scores, a weighted
    composite, the consensus sample index, and named disagreement areas with
    per-variant vote counts
"""
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .refinement import TokenUsage


class Sample(BaseModel):
    index: int
    code: str
    temperature: float = 0.0
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class DisagreementArea(BaseModel):
    area: str
    variants: Dict[str, int] = Field(default_factory=dict)
    confidence: float = 0.0


class AgreementResult(BaseModel):
    score: float = 1.0
    structural_agreement: float = 1.0
    selector_agreement: float = 1.0
    flow_agreement: float = 1.0
    assertion_agreement: float = 1.0
    consensus_index: Optional[int] = None
    disagreements: List[DisagreementArea] = Field(default_factory=list)


class SamplerConfig(BaseModel):
    sample_count: int = 3
    temperatures: List[float] = Field(default_factory=lambda: [0.2, 0.5, 0.8])
    min_agreement_score: float = 0.7
    persist_samples: bool = True


class SampleRequest(BaseModel):
    journey_id: str
    prompt: str = ""
    sample_count: Optional[int] = None
    temperatures: Optional[List[float]] = None


class MultiSampleResult(BaseModel):
    journey_id: str
    samples: List[Sample] = Field(default_factory=list)
    agreement: AgreementResult = Field(default_factory=AgreementResult)
    best_sample: Optional[Sample] = None
    meets_threshold: bool = False
    total_token_usage: TokenUsage = Field(default_factory=TokenUsage)
