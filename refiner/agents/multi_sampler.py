"""
Multi Sampler
=============
Generates several candidates for one journey at different temperatures and
picks the structural consensus.

Flow:
    1. For each temperature, await the generator callback
       (a failing sample is logged and skipped; the run continues)
    2. Accumulate token usage across samples
    3. analyze_agreement over the sample codes (shared with the scorer)
    4. best_sample = consensus sample (first sample when none)
    5. Persist samples + agreement metadata under
       <artifacts_dir>/samples/<journey_id>-sample-<i>.ts
       <artifacts_dir>/samples/<journey_id>-agreement.json
       (journey_id sanitized for file names; a write failure is logged and
       the result is still returned)

Generator contract:
    async generator(prompt: str, temperature: float) -> (code: str, usage: TokenUsage)
"""
import os
import re
import json
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Tuple

from refiner.core.config import ARTIFACTS_DIR
from refiner.models.refinement import TokenUsage
from refiner.models.sample import (
    AgreementResult,
    MultiSampleResult,
    Sample,
    SamplerConfig,
    SampleRequest,
)
from refiner.scoring.agreement import analyze_agreement

logger = logging.getLogger(__name__)

SampleGenerator = Callable[[str, float], Awaitable[Tuple[str, TokenUsage]]]

DEFAULT_TEMPERATURE = 0.5

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def safe_journey_name(journey_id: str) -> str:
    """journey_id reduced to characters that are safe in a single file name."""
    name = _UNSAFE_NAME_CHARS.sub("_", journey_id).strip(".")
    return name or "journey"


class MultiSampler:
    """
    Parameters
    ----------
    config : SamplerConfig, optional
        Sample count, temperatures, agreement threshold, persistence flag.
    artifacts_dir : str
        Root artifacts directory; samples go to its ``samples/`` folder.
    """

    def __init__(self, config: Optional[SamplerConfig] = None, artifacts_dir: str = ARTIFACTS_DIR) -> None:
        self.config = config or SamplerConfig()
        self.samples_dir = os.path.join(artifacts_dir, "samples")

    # -------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------
    async def generate(self, request: SampleRequest, generator: SampleGenerator) -> MultiSampleResult:
        count = request.sample_count or self.config.sample_count
        temperatures = request.temperatures or self.config.temperatures

        samples: List[Sample] = []
        total = TokenUsage()
        for i in range(count):
            temperature = temperatures[i] if i < len(temperatures) else DEFAULT_TEMPERATURE
            try:
                code, usage = await generator(request.prompt, temperature)
            except Exception as e:
                logger.warning("Sample %d (t=%.1f) for %s failed: %s", i, temperature, request.journey_id, e)
                continue
            samples.append(Sample(index=i, code=code, temperature=temperature, token_usage=usage))
            total = total.add(usage)

        result = self._build_result(request.journey_id, samples, total)
        logger.info(
            "Generated %d/%d sample(s) for %s, agreement=%.2f",
            len(samples), count, request.journey_id, result.agreement.score,
        )

        if self.config.persist_samples and samples:
            try:
                self.persist(result)
            except OSError as e:
                logger.error("Could not persist samples for %s to %s: %s",
                             request.journey_id, self.samples_dir, e)
        return result

    def process_orchestrator_samples(self, journey_id: str, codes: List[str],
                                     temperatures: Optional[List[float]] = None) -> MultiSampleResult:
        """Analyse samples generated elsewhere (no generation, no persistence)."""
        temperatures = temperatures or []
        samples = [
            Sample(index=i, code=code, temperature=temperatures[i] if i < len(temperatures) else DEFAULT_TEMPERATURE)
            for i, code in enumerate(codes)
        ]
        return self._build_result(journey_id, samples, TokenUsage())

    def _build_result(self, journey_id: str, samples: List[Sample], total: TokenUsage) -> MultiSampleResult:
        agreement = analyze_agreement([s.code for s in samples])
        best = None
        if samples:
            index = agreement.consensus_index if agreement.consensus_index is not None else 0
            best = samples[index]
        return MultiSampleResult(
            journey_id=journey_id,
            samples=samples,
            agreement=agreement,
            best_sample=best,
            meets_threshold=bool(samples) and agreement.score >= self.config.min_agreement_score,
            total_token_usage=total,
        )

    # -------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------
    def _sample_path(self, journey_id: str, index: int) -> str:
        return os.path.join(self.samples_dir, f"{safe_journey_name(journey_id)}-sample-{index}.ts")

    def _agreement_path(self, journey_id: str) -> str:
        return os.path.join(self.samples_dir, f"{safe_journey_name(journey_id)}-agreement.json")

    def persist(self, result: MultiSampleResult) -> str:
        os.makedirs(self.samples_dir, exist_ok=True)
        for position, sample in enumerate(result.samples):
            with open(self._sample_path(result.journey_id, position), "w", encoding="utf-8") as f:
                f.write(sample.code)

        metadata = {
            "journey_id": result.journey_id,
            "agreement": result.agreement.model_dump(mode="json"),
            "samples": [
                {
                    "index": s.index,
                    "temperature": s.temperature,
                    "token_usage": s.token_usage.model_dump(),
                }
                for s in result.samples
            ],
            "total_token_usage": result.total_token_usage.model_dump(),
            "generated_at": datetime.now(timezone.utc).isoformat(),
        }
        with open(self._agreement_path(result.journey_id), "w", encoding="utf-8") as f:
            json.dump(metadata, f, indent=2)

        logger.debug("Persisted %d sample(s) to %s", len(result.samples), self.samples_dir)
        return self.samples_dir

    def load_samples(self, journey_id: str) -> Optional[List[Sample]]:
        """Read previously persisted samples for a journey; None when absent or unreadable."""
        path = self._agreement_path(journey_id)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                metadata = json.load(f)
            if metadata.get("journey_id") != journey_id:
                return None

            samples: List[Sample] = []
            for position, meta in enumerate(metadata.get("samples", [])):
                sample_path = self._sample_path(journey_id, position)
                if not os.path.exists(sample_path):
                    break
                with open(sample_path, "r", encoding="utf-8") as f:
                    code = f.read()
                samples.append(Sample(
                    index=meta.get("index", position),
                    code=code,
                    temperature=meta.get("temperature", DEFAULT_TEMPERATURE),
                    token_usage=TokenUsage(**meta.get("token_usage", {})),
                ))
            return samples or None
        except (OSError, json.JSONDecodeError, ValueError) as e:
            logger.warning("Could not load samples for %s: %s", journey_id, e)
            return None

    def load_agreement(self, journey_id: str) -> Optional[AgreementResult]:
        path = self._agreement_path(journey_id)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return AgreementResult.model_validate(json.load(f).get("agreement", {}))
        except (OSError, json.JSONDecodeError, ValueError) as e:
            logger.warning("Could not load agreement for %s: %s", journey_id, e)
            return None
