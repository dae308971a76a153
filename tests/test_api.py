"""
API Tests
=========
Exercises the FastAPI surface through TestClient.
The lessons routes run against a store file under tmp_path.
"""
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from main import app
from refiner.api.lessons import get_lesson_store
from refiner.models.lesson import FixKind, LessonContext, LessonFix, LessonType
from refiner.services.lesson_store import LessonStore


GOOD_CODE = """import { test, expect } from '@playwright/test';

test('user can log in', async ({ page }) => {
  await page.goto('/login');
  await page.getByTestId('email').fill('user@example.com');
  await page.getByTestId('password').fill('secret');
  await page.getByRole('button', { name: 'Sign in' }).click();
  await expect(page).toHaveURL('/dashboard');
});
"""

LONG_AGO = datetime(2025, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def lesson_client(tmp_path):
    """TestClient whose lesson routes read a seeded store file."""
    path = str(tmp_path / "lessons.json")
    seed = LessonStore(path, clock=lambda: LONG_AGO)

    strong = seed.add_lesson(
        LessonType.SELECTOR, "SELECTOR_NOT_FOUND:testid",
        LessonContext(error_type="SELECTOR_NOT_FOUND"),
        LessonFix(kind=FixKind.REPLACE, pattern="page.locator('#pay')", replacement="page.getByTestId('pay')"),
        initial_confidence=0.9,
    )
    for _ in range(5):
        seed.record_success(strong.id)

    bad = seed.add_lesson(
        LessonType.WAIT, "TIMEOUT:sleep",
        LessonContext(error_type="TIMEOUT"),
        LessonFix(kind=FixKind.INSERT, replacement="await page.waitForTimeout(5000);"),
        initial_confidence=0.3,
    )
    for _ in range(3):
        seed.record_failure(bad.id)
    seed.save()

    app.dependency_overrides[get_lesson_store] = lambda: LessonStore(path)
    yield TestClient(app), path
    app.dependency_overrides.clear()


# ===========================================================================
# Health / scoring / classification
# ===========================================================================
def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert isinstance(body["llm_providers"], list)
    assert "X-Process-Time-Ms" in response.headers


class TestScoreEndpoint:

    def test_score_good_code(self, client):
        response = client.post("/api/score", json={"code": GOOD_CODE})
        assert response.status_code == 200
        body = response.json()
        assert body["verdict"] == "ACCEPT"
        assert [d["dimension"] for d in body["dimensions"]] == ["syntax", "pattern", "selector"]

    def test_score_with_samples_and_thresholds(self, client):
        response = client.post("/api/score", json={
            "code": GOOD_CODE,
            "samples": [GOOD_CODE, GOOD_CODE],
            "thresholds": {"accept": 0.99},
        })
        body = response.json()
        assert body["verdict"] == "REVIEW"
        assert body["thresholds"]["accept"] == 0.99
        assert "agreement" in [d["dimension"] for d in body["dimensions"]]

    def test_missing_code_rejected(self, client):
        assert client.post("/api/score", json={}).status_code == 422


class TestClassifyEndpoint:

    def test_raw_output(self, client):
        response = client.post("/api/classify", json={
            "output": "Error: page.goto: net::ERR_CONNECTION_REFUSED at http://localhost:3000/",
        })
        body = response.json()
        assert body["status"] == "failed"
        assert body["errors"][0]["category"] == "NAVIGATION_ERROR"

    def test_clean_output(self, client):
        body = client.post("/api/classify", json={"output": "  3 passed (2.1s)"}).json()
        assert body == {"status": "passed", "errors": []}

    def test_report(self, client):
        report = {
            "suites": [{
                "title": "login.spec.ts",
                "file": "tests/login.spec.ts",
                "specs": [{"title": "logs in", "tests": [{
                    "status": "unexpected",
                    "results": [{"status": "failed", "error": {
                        "message": "Error: page.goto: net::ERR_CONNECTION_REFUSED at http://localhost:3000/",
                    }}],
                }]}],
            }],
            "errors": [],
        }
        body = client.post("/api/classify", json={"report": report}).json()
        assert body["status"] == "failed"
        assert len(body["errors"]) == 1


# ===========================================================================
# Lessons
# ===========================================================================
class TestLessonsEndpoints:

    def test_list_filters_by_confidence(self, lesson_client):
        client, _ = lesson_client
        lessons = client.get("/api/lessons", params={"min_confidence": 0.5}).json()
        assert [l["pattern"] for l in lessons] == ["SELECTOR_NOT_FOUND:testid"]
        assert len(client.get("/api/lessons").json()) == 2

    def test_stats(self, lesson_client):
        client, _ = lesson_client
        stats = client.get("/api/lessons/stats").json()
        assert stats["total_lessons"] == 2
        assert stats["total_applications"] == 8
        assert stats["lessons_by_type"] == {"selector": 1, "wait": 1}

    def test_promotions(self, lesson_client):
        client, _ = lesson_client
        candidates = client.get("/api/lessons/promotions").json()
        assert [c["pattern"] for c in candidates] == ["SELECTOR_NOT_FOUND:testid"]

    def test_prune_persists(self, lesson_client):
        client, path = lesson_client
        body = client.post("/api/lessons/prune").json()
        assert body["affected"] == 1
        assert body["stats"]["total_lessons"] == 1
        assert len(LessonStore(path).lessons) == 1

    def test_decay_persists(self, lesson_client):
        client, path = lesson_client
        before = {l.pattern: l.confidence for l in LessonStore(path).lessons}
        body = client.post("/api/lessons/decay").json()
        # the failing lesson already sits at the confidence floor
        assert body["affected"] == 1
        after = {l.pattern: l.confidence for l in LessonStore(path).lessons}
        assert after["SELECTOR_NOT_FOUND:testid"] < before["SELECTOR_NOT_FOUND:testid"]
        assert after["TIMEOUT:sleep"] == before["TIMEOUT:sleep"]

    def test_invalid_query(self, lesson_client):
        client, _ = lesson_client
        assert client.get("/api/lessons", params={"min_confidence": 2}).status_code == 422
