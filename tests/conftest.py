"""
Shared fixtures for RelPulse tests
"""

import random
import threading

import pytest

from relpulse.exceptions import ProviderServerError
from relpulse.models import PatternSummary, RemoteResult
from relpulse.store import AnalysisStore

DAY = 24 * 60 * 60
START = 1_700_000_000.0


class FakeClock:
    """Manually advanced time source (epoch seconds)."""

    def __init__(self, start: float = START):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeRemote:
    """Stand-in remote client: fails while `failures` is positive, then succeeds."""

    def __init__(self, clock, failures: int = 0, error=None, sentiment: float = 0.5):
        self.clock = clock
        self.failures = failures
        self.error = error or ProviderServerError("Server error: 503", status_code=503)
        self.sentiment = sentiment
        self.calls = []
        self.mock_mode = True
        self._lock = threading.Lock()

    def analyze(self, text, context=None):
        context = context or {}
        with self._lock:
            self.calls.append(context.get("entry_id"))
            failing = self.failures > 0
            if failing:
                self.failures -= 1
        if failing:
            raise self.error
        return RemoteResult(
            entry_id=context.get("entry_id", ""),
            user_id=context.get("user_id", ""),
            relationship_id=context.get("relationship_id"),
            sentiment_score=self.sentiment,
            confidence_level=0.9,
            reasoning="remote",
            emotional_keywords=["happy"],
            patterns=PatternSummary(communication_style="collaborative"),
            created_at=self.clock(),
            model="test-model",
            tokens_used=200,
            cost=0.00003,
        )


def make_analysis(entry_id, sentiment=0.0, created_at=START, relationship_id="rel-1",
                  keywords=None, style="neutral", themes=None, dynamics=None, confidence=0.5,
                  user_id="user-1"):
    return RemoteResult(
        entry_id=entry_id,
        user_id=user_id,
        relationship_id=relationship_id,
        sentiment_score=sentiment,
        confidence_level=confidence,
        reasoning="test",
        emotional_keywords=list(keywords or []),
        patterns=PatternSummary(
            recurring_themes=list(themes or []),
            communication_style=style,
            relationship_dynamics=list(dynamics or []),
        ),
        created_at=created_at,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rng():
    return random.Random(42)


@pytest.fixture
def store(tmp_path):
    return AnalysisStore(tmp_path / "relpulse-test.db")


@pytest.fixture
def seeded_store(store, clock):
    """Store with one user, one friend relationship and a few entries."""
    store.add_user("user-1")
    store.add_relationship("rel-1", "user-1", "Sam", rel_type="friend")
    for i in range(5):
        store.add_entry(
            f"entry-{i}",
            "user-1",
            "We talked openly about our plans and I felt really happy and grateful",
            relationship_id="rel-1",
            created_at=clock() - (5 - i) * 60,
        )
    return store
