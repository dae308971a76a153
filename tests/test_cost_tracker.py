"""
Cost Tracker Tests
==================
"""
from refiner.models.refinement import TokenUsage
from refiner.services.cost_tracker import CostTracker


def _usage(tokens: int, cost: float = 0.0) -> TokenUsage:
    return TokenUsage(prompt_tokens=tokens // 2, completion_tokens=tokens - tokens // 2,
                      total_tokens=tokens, estimated_cost_usd=cost)


def test_tracks_both_scopes():
    tracker = CostTracker(session_limit=1000, total_limit=5000)
    tracker.track_usage(_usage(300, 0.001))
    tracker.track_usage(_usage(200, 0.002))
    assert tracker.usage("session").total_tokens == 500
    assert tracker.usage("total").total_tokens == 500
    assert tracker.summary()["session"] == {"tokens": 500, "limit": 1000, "cost_usd": 0.003}


def test_would_exceed_limit_is_strict():
    tracker = CostTracker(session_limit=1000)
    tracker.track_usage(_usage(600))
    assert not tracker.would_exceed_limit(400)
    assert tracker.would_exceed_limit(401)


def test_reset_session_keeps_total():
    tracker = CostTracker(session_limit=1000, total_limit=1500)
    tracker.track_usage(_usage(900))
    tracker.reset_session()
    assert tracker.is_under_budget("session")
    assert tracker.usage("total").total_tokens == 900
    assert tracker.would_exceed_limit(700, scope="total")


def test_usage_returns_copy():
    tracker = CostTracker()
    snapshot = tracker.usage()
    snapshot.total_tokens = 10**9
    assert tracker.usage().total_tokens == 0


def test_under_budget_until_limit_reached():
    tracker = CostTracker(session_limit=100)
    tracker.track_usage(_usage(99))
    assert tracker.is_under_budget()
    tracker.track_usage(_usage(1))
    assert not tracker.is_under_budget()
