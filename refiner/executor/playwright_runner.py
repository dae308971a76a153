"""
Playwright Runner
=================
Runs one candidate Playwright test inside an ephemeral Docker container and
returns its classified failures.

BOUNDARY RULES:
    - Runner ONLY observes execution.
    - Runner NEVER edits the candidate beyond writing it to disk.
    - Runner NEVER classifies by itself; the JSON report goes through the
      report parser and ErrorClassifier.

DOCKER STRATEGY:
    - One container per test run, removed afterwards.
    - Workspace mounted at /workspace.
    - The JSON reporter writes to /workspace/<REPORT_FILE> via
      PLAYWRIGHT_JSON_OUTPUT_NAME so stdout noise cannot corrupt the report.

FAILURE MODES:
    run_in_container never raises. Infrastructure failures (image missing,
    Docker API down, timeout) come back as ExecutionResult.error.
    to_test_run_result reports them as one RUNTIME_ERROR ErrorInfo, while
    PlaywrightRunner.run_test raises RunnerInfrastructureError so a run that
    never executed the candidate cannot be judged as a verdict on it.
"""
import os
import time
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import docker
from docker.errors import APIError, DockerException, ImageNotFound
from requests.exceptions import ConnectionError as RequestsConnectionError, ReadTimeout

from refiner.core.config import PLAYWRIGHT_DOCKER_IMAGE, PLAYWRIGHT_TIMEOUT_SECONDS
from refiner.models.error_info import ErrorCategory, ErrorInfo, ErrorSeverity
from refiner.parser.report_parser import TestRunResult, parse_playwright_report
from refiner.utils.fingerprint import generate_error_fingerprint

logger = logging.getLogger(__name__)

REPORT_FILE = ".refiner-report.json"

# Docker resource limits
_MEMORY_LIMIT = "2g"
_CPU_COUNT = 2


class RunnerInfrastructureError(RuntimeError):
    """The container run failed before the candidate test could be judged."""

    def __init__(self, message: str, execution: "ExecutionResult") -> None:
        super().__init__(message)
        self.execution = execution


# ---------------------------------------------------------------------------
# Execution Result
# ---------------------------------------------------------------------------
@dataclass
class ExecutionResult:
    """
    Raw output of one container run.

    Fields
    ------
    exit_code : int
        Process exit code (-1 when the container never finished).
    stdout, stderr : str
        Decoded container output streams.
    execution_time_seconds : float
        Wall clock duration.
    environment_metadata : dict
        Image, container id, timeout applied.
    error : str | None
        Infrastructure failure message (not test failures).
    """
    exit_code: int = -1
    stdout: str = ""
    stderr: str = ""
    execution_time_seconds: float = 0.0
    environment_metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


def build_test_command(test_file: str) -> str:
    return f"npx playwright test {test_file} --reporter=json --retries=0"


# ---------------------------------------------------------------------------
# Container Execution
# ---------------------------------------------------------------------------
def run_in_container(
    workspace_path: str,
    command: str,
    timeout_seconds: int = PLAYWRIGHT_TIMEOUT_SECONDS,
    docker_image: str = PLAYWRIGHT_DOCKER_IMAGE,
) -> ExecutionResult:
    """
    Execute ``command`` in an ephemeral container with the workspace mounted.

    Returns
    -------
    ExecutionResult
        Always returned; on infrastructure failure exit_code is -1 and error is set.
    """
    result = ExecutionResult()
    start_time = time.monotonic()
    container = None

    try:
        client = docker.from_env()
        logger.info("Starting container | image=%s | timeout=%ds | cmd=%s",
                    docker_image, timeout_seconds, command)

        container = client.containers.run(
            image=docker_image,
            command=["bash", "-c", command],
            volumes={workspace_path: {"bind": "/workspace", "mode": "rw"}},
            environment={
                "CI": "true",
                "PLAYWRIGHT_JSON_OUTPUT_NAME": f"/workspace/{REPORT_FILE}",
            },
            working_dir="/workspace",
            mem_limit=_MEMORY_LIMIT,
            nano_cpus=_CPU_COUNT * 1_000_000_000,
            labels={"project": "refiner", "role": "playwright-runner"},
            detach=True,
        )

        wait_result = container.wait(timeout=timeout_seconds)
        result.exit_code = wait_result.get("StatusCode", -1)
        result.stdout = container.logs(stdout=True, stderr=False).decode("utf-8", errors="replace")
        result.stderr = container.logs(stdout=False, stderr=True).decode("utf-8", errors="replace")
        result.environment_metadata = {
            "image": docker_image,
            "container_id": container.short_id,
            "timeout_applied": timeout_seconds,
        }

    except ImageNotFound:
        result.error = f"Docker image '{docker_image}' not found"
        logger.error(result.error)

    except (ReadTimeout, RequestsConnectionError):
        result.error = f"Test run exceeded {timeout_seconds}s"
        logger.error(result.error)

    except APIError as e:
        result.error = f"Docker API error: {e}"
        logger.error(result.error)

    except DockerException as e:
        result.error = f"Docker unavailable: {e}"
        logger.error(result.error)

    finally:
        if container is not None:
            try:
                container.remove(force=True)
                logger.debug("Container %s removed", container.short_id)
            except DockerException:
                logger.warning("Failed to remove container", exc_info=True)

    result.execution_time_seconds = round(time.monotonic() - start_time, 3)
    logger.info("Execution complete | exit=%d | time=%.2fs",
                result.exit_code, result.execution_time_seconds)
    return result


# ---------------------------------------------------------------------------
# Result Conversion
# ---------------------------------------------------------------------------
def infrastructure_error(message: str, test_file: str) -> ErrorInfo:
    """A RUNTIME_ERROR standing in for a run that produced no usable report."""
    return ErrorInfo(
        category=ErrorCategory.RUNTIME_ERROR,
        severity=ErrorSeverity.CRITICAL,
        message=message[:200],
        stack_excerpt=message,
        fingerprint=generate_error_fingerprint(ErrorCategory.RUNTIME_ERROR.value, message, file=test_file),
    )


def _read_report(path: str) -> Optional[str]:
    if not os.path.exists(path):
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            return f.read()
    except OSError as e:
        logger.warning("Could not read Playwright report %s: %s", path, e)
        return None


def to_test_run_result(execution: ExecutionResult, report_text: Optional[str], test_file: str) -> TestRunResult:
    """Combine the container outcome and the JSON report into a TestRunResult."""
    if execution.error:
        return TestRunResult(
            status="error",
            errors=[infrastructure_error(execution.error, test_file)],
            raw_output=execution.stderr,
        )

    result = parse_playwright_report(report_text or execution.stdout, stderr=execution.stderr)
    if execution.exit_code != 0 and result.passed:
        message = f"Playwright exited with code {execution.exit_code} without reporting a failure"
        result.status = "error"
        result.errors = [infrastructure_error(message, test_file)]
    return result


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------
class PlaywrightRunner:
    """
    Test runner collaborator for RefinementLoop.

    Parameters
    ----------
    workspace_path : str
        Host directory holding the Playwright project (package.json, config).
    docker_image : str
        Playwright image with browsers installed.
    timeout_seconds : int
        Max seconds for one run.
    """

    def __init__(
        self,
        workspace_path: str,
        docker_image: str = PLAYWRIGHT_DOCKER_IMAGE,
        timeout_seconds: int = PLAYWRIGHT_TIMEOUT_SECONDS,
    ) -> None:
        self.workspace_path = os.path.abspath(workspace_path)
        self.docker_image = docker_image
        self.timeout_seconds = timeout_seconds

    def _resolve(self, test_file: str) -> str:
        path = os.path.abspath(os.path.join(self.workspace_path, test_file))
        if os.path.commonpath([path, self.workspace_path]) != self.workspace_path:
            raise ValueError(f"Test file {test_file} is outside the workspace")
        return path

    async def run_test(self, test_file: str, code: str) -> TestRunResult:
        """
        Write ``code`` to ``test_file`` (workspace-relative) and run it.

        Raises
        ------
        ValueError
            ``test_file`` escapes the workspace.
        OSError
            The candidate could not be written.
        RunnerInfrastructureError
            Docker could not run the test (image, daemon, timeout).
        """
        target = self._resolve(test_file)
        os.makedirs(os.path.dirname(target), exist_ok=True)
        with open(target, "w", encoding="utf-8") as f:
            f.write(code)

        report_path = os.path.join(self.workspace_path, REPORT_FILE)
        if os.path.exists(report_path):
            os.remove(report_path)

        relative = os.path.relpath(target, self.workspace_path).replace(os.sep, "/")
        execution = await asyncio.to_thread(
            run_in_container,
            self.workspace_path,
            build_test_command(relative),
            self.timeout_seconds,
            self.docker_image,
        )
        if execution.error:
            logger.error("Test %s not executed: %s", relative, execution.error)
            raise RunnerInfrastructureError(execution.error, execution)

        result = to_test_run_result(execution, _read_report(report_path), relative)
        logger.info("Test %s: %s, %d error(s)", relative, result.status, len(result.errors))
        return result
