"""
Playwright Runner Tests
=======================
Container execution with mocked Docker, report conversion, and the
write-then-run flow of PlaywrightRunner.

No real Docker daemon is required to run these tests.
"""
import asyncio
import json
import os
from unittest.mock import MagicMock, patch

import pytest
from docker.errors import APIError, DockerException, ImageNotFound
from requests.exceptions import ReadTimeout

from refiner.executor.playwright_runner import (
    REPORT_FILE,
    ExecutionResult,
    PlaywrightRunner,
    RunnerInfrastructureError,
    build_test_command,
    infrastructure_error,
    run_in_container,
    to_test_run_result,
)
from refiner.models.error_info import ErrorCategory, ErrorSeverity


PASSED_REPORT = {
    "suites": [{
        "title": "pay.spec.ts",
        "file": "tests/pay.spec.ts",
        "specs": [{"title": "pays", "tests": [{"status": "expected", "results": [{"status": "passed"}]}]}],
    }],
    "errors": [],
}

FAILED_REPORT = {
    "suites": [{
        "title": "pay.spec.ts",
        "file": "tests/pay.spec.ts",
        "specs": [{"title": "pays", "tests": [{
            "status": "unexpected",
            "results": [{
                "status": "failed",
                "error": {"message": "Error: locator.click: Timeout 30000ms exceeded"},
            }],
        }]}],
    }],
    "errors": [],
}


def _mock_docker(mock_docker, exit_code=0, logs=b"", run_error=None):
    container = MagicMock()
    container.wait.return_value = {"StatusCode": exit_code}
    container.logs.return_value = logs
    container.short_id = "abc123"

    client = MagicMock()
    if run_error is not None:
        client.containers.run.side_effect = run_error
    else:
        client.containers.run.return_value = container
    mock_docker.from_env.return_value = client
    return client, container


# ---------------------------------------------------------------------------
# 1. Container execution
# ---------------------------------------------------------------------------
class TestRunInContainer:

    @patch("refiner.executor.playwright_runner.docker")
    def test_successful_execution(self, mock_docker, tmp_path):
        client, container = _mock_docker(mock_docker, logs=b"1 passed\n")
        result = run_in_container(str(tmp_path), build_test_command("tests/pay.spec.ts"),
                                  timeout_seconds=30, docker_image="pw:latest")

        assert result.exit_code == 0
        assert result.stdout == "1 passed\n"
        assert result.error is None
        assert result.environment_metadata == {
            "image": "pw:latest", "container_id": "abc123", "timeout_applied": 30,
        }
        kwargs = client.containers.run.call_args.kwargs
        assert kwargs["command"] == ["bash", "-c", "npx playwright test tests/pay.spec.ts --reporter=json --retries=0"]
        assert kwargs["volumes"] == {str(tmp_path): {"bind": "/workspace", "mode": "rw"}}
        assert kwargs["environment"]["PLAYWRIGHT_JSON_OUTPUT_NAME"] == f"/workspace/{REPORT_FILE}"
        container.wait.assert_called_once_with(timeout=30)
        container.remove.assert_called_once_with(force=True)

    @patch("refiner.executor.playwright_runner.docker")
    def test_failed_tests_are_not_infrastructure_errors(self, mock_docker, tmp_path):
        _mock_docker(mock_docker, exit_code=1, logs=b"1 failed\n")
        result = run_in_container(str(tmp_path), "npx playwright test")
        assert result.exit_code == 1
        assert result.error is None

    @patch("refiner.executor.playwright_runner.docker")
    def test_image_not_found(self, mock_docker, tmp_path):
        _mock_docker(mock_docker, run_error=ImageNotFound("no such image"))
        result = run_in_container(str(tmp_path), "npx playwright test", docker_image="pw:missing")
        assert result.exit_code == -1
        assert result.error == "Docker image 'pw:missing' not found"

    @patch("refiner.executor.playwright_runner.docker")
    def test_timeout_still_removes_container(self, mock_docker, tmp_path):
        _, container = _mock_docker(mock_docker)
        container.wait.side_effect = ReadTimeout("read timed out")
        result = run_in_container(str(tmp_path), "npx playwright test", timeout_seconds=5)

        assert result.error == "Test run exceeded 5s"
        container.remove.assert_called_once_with(force=True)

    @patch("refiner.executor.playwright_runner.docker")
    def test_api_error(self, mock_docker, tmp_path):
        _mock_docker(mock_docker, run_error=APIError("conflict"))
        result = run_in_container(str(tmp_path), "npx playwright test")
        assert result.error.startswith("Docker API error")

    @patch("refiner.executor.playwright_runner.docker")
    def test_docker_unavailable(self, mock_docker, tmp_path):
        mock_docker.from_env.side_effect = DockerException("socket missing")
        result = run_in_container(str(tmp_path), "npx playwright test")
        assert result.error == "Docker unavailable: socket missing"


# ---------------------------------------------------------------------------
# 2. Result conversion
# ---------------------------------------------------------------------------
class TestConversion:

    def test_infrastructure_error(self):
        error = infrastructure_error("Docker unavailable", "tests/pay.spec.ts")
        assert error.category == ErrorCategory.RUNTIME_ERROR
        assert error.severity == ErrorSeverity.CRITICAL
        assert error.fingerprint
        assert error.fingerprint == infrastructure_error("Docker unavailable", "tests/pay.spec.ts").fingerprint

    def test_execution_error_becomes_runtime_error(self):
        result = to_test_run_result(ExecutionResult(error="Docker unavailable"), None, "tests/pay.spec.ts")
        assert result.status == "error"
        assert [e.category for e in result.errors] == [ErrorCategory.RUNTIME_ERROR]

    def test_report_is_parsed(self):
        result = to_test_run_result(ExecutionResult(exit_code=1), json.dumps(FAILED_REPORT), "tests/pay.spec.ts")
        assert result.status == "failed"
        assert len(result.errors) == 1

    def test_interrupted_report_keeps_an_error(self):
        report = {
            "suites": [{
                "title": "pay.spec.ts",
                "file": "tests/pay.spec.ts",
                "specs": [{"title": "pays", "tests": [{"status": "unexpected", "results": [{"status": "interrupted"}]}]}],
            }],
            "errors": [],
        }
        result = to_test_run_result(ExecutionResult(exit_code=1), json.dumps(report), "tests/pay.spec.ts")
        assert result.status == "failed"
        assert [e.message for e in result.errors] == ["Test interrupted"]

    def test_passed_report(self):
        result = to_test_run_result(ExecutionResult(exit_code=0), json.dumps(PASSED_REPORT), "tests/pay.spec.ts")
        assert result.passed

    def test_nonzero_exit_without_failure(self):
        result = to_test_run_result(ExecutionResult(exit_code=2), None, "tests/pay.spec.ts")
        assert result.status == "error"
        assert "exited with code 2" in result.errors[0].message


# ---------------------------------------------------------------------------
# 3. PlaywrightRunner
# ---------------------------------------------------------------------------
class TestPlaywrightRunner:

    def test_rejects_path_outside_workspace(self, tmp_path):
        runner = PlaywrightRunner(str(tmp_path))
        with pytest.raises(ValueError):
            asyncio.run(runner.run_test("../escape.spec.ts", "code"))

    def test_writes_candidate_and_reads_report(self, tmp_path):
        runner = PlaywrightRunner(str(tmp_path), docker_image="pw:test", timeout_seconds=10)
        stale = tmp_path / REPORT_FILE
        stale.write_text(json.dumps(PASSED_REPORT))
        calls = []

        def fake_run(workspace, command, timeout, image):
            calls.append((workspace, command, timeout, image))
            assert not os.path.exists(os.path.join(workspace, REPORT_FILE))
            with open(os.path.join(workspace, REPORT_FILE), "w") as f:
                json.dump(FAILED_REPORT, f)
            return ExecutionResult(exit_code=1)

        with patch("refiner.executor.playwright_runner.run_in_container", side_effect=fake_run):
            result = asyncio.run(runner.run_test("tests/pay.spec.ts", "test('pays', ...)"))

        assert (tmp_path / "tests" / "pay.spec.ts").read_text() == "test('pays', ...)"
        assert calls == [(str(tmp_path), build_test_command("tests/pay.spec.ts"), 10, "pw:test")]
        assert result.status == "failed"

    def test_infrastructure_failure_raises(self, tmp_path):
        runner = PlaywrightRunner(str(tmp_path))
        with patch("refiner.executor.playwright_runner.run_in_container",
                   return_value=ExecutionResult(error="Docker unavailable: down")):
            with pytest.raises(RunnerInfrastructureError) as exc:
                asyncio.run(runner.run_test("pay.spec.ts", "code"))
        assert str(exc.value) == "Docker unavailable: down"
        assert exc.value.execution.exit_code == -1

    @patch("refiner.executor.playwright_runner.docker")
    def test_docker_down_raises_through_run_test(self, mock_docker, tmp_path):
        mock_docker.from_env.side_effect = DockerException("daemon down")
        runner = PlaywrightRunner(str(tmp_path))
        with pytest.raises(RunnerInfrastructureError, match="Docker unavailable: daemon down"):
            asyncio.run(runner.run_test("pay.spec.ts", "code"))
