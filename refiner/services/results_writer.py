"""
Results Writer
==============
Serializes a finished refinement run into a session artifact JSON file.

Layout: ``<artifacts_dir>/sessions/<session_id>.json``

    {
      "session":   {id, journey_id, test_file, status, started_at, finished_at},
      "attempts":  [ {number, outcome, errors, fix, new_errors, tokens, reason} ],
      "final_results": {success, status, remaining_errors, applied_fixes,
                        lessons_learned, token_usage, diagnostics},
      "best_code": "..."
    }

Writing never raises: a failure is logged and reported as None so a broken
artifact directory cannot turn a successful refinement into an error.
"""
import json
import logging
import os
from typing import Any, Dict, Optional

from refiner.core.config import ARTIFACTS_DIR
from refiner.models.refinement import RefinementAttempt, RefinementResult

logger = logging.getLogger(__name__)


def _attempt_summary(attempt: RefinementAttempt) -> Dict[str, Any]:
    fix = attempt.applied_fix
    return {
        "number": attempt.attempt_number,
        "timestamp": attempt.timestamp.isoformat(),
        "outcome": attempt.outcome.value,
        "errors": [e.fingerprint for e in attempt.errors],
        "fix": {
            "type": fix.type.value,
            "description": fix.description,
            "confidence": fix.confidence,
        } if fix is not None else None,
        "proposed_fixes": len(attempt.proposed_fixes),
        "new_errors": [e.fingerprint for e in attempt.new_errors],
        "tokens": attempt.token_usage.total_tokens,
        "reason": attempt.failure_reason or None,
    }


class ResultsWriter:
    """
    Compiles a RefinementResult into a structured JSON artifact.
    """

    @staticmethod
    def build_payload(result: RefinementResult) -> Dict[str, Any]:
        session = result.session
        return {
            "session": {
                "id": session.session_id,
                "journey_id": session.journey_id,
                "test_file": session.test_file,
                "status": result.status.value,
                "started_at": session.started_at.isoformat(),
                "finished_at": session.finished_at.isoformat() if session.finished_at else None,
            },
            "attempts": [_attempt_summary(a) for a in session.attempts],
            "final_results": {
                "success": result.success,
                "status": result.status.value,
                "remaining_errors": [e.model_dump(mode="json") for e in result.remaining_errors],
                "applied_fixes": [f.model_dump(mode="json") for f in result.applied_fixes],
                "lessons_learned": [l.id for l in result.lessons_learned],
                "token_usage": session.total_token_usage.model_dump(),
                "diagnostics": result.diagnostics.model_dump(),
            },
            "best_code": result.best_code,
        }

    @staticmethod
    def write_results(result: RefinementResult, artifacts_dir: str = ARTIFACTS_DIR) -> Optional[str]:
        """
        Write the session artifact.

        Returns
        -------
        str or None
            Absolute path written, or None if writing failed.
        """
        try:
            sessions_dir = os.path.join(artifacts_dir, "sessions")
            os.makedirs(sessions_dir, exist_ok=True)
            output_path = os.path.abspath(
                os.path.join(sessions_dir, f"{result.session.session_id}.json")
            )
            logger.info("Writing refinement session to %s", output_path)

            with open(output_path, "w", encoding="utf-8") as f:
                json.dump(ResultsWriter.build_payload(result), f, indent=2)
            return output_path

        except Exception as e:
            logger.error("Failed to write session artifact: %s", e, exc_info=True)
            return None
