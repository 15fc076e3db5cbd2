"""Shared fixtures: a throwaway SQLite store, candidate builders and a scripted judge."""

from datetime import datetime, timedelta, timezone

import pytest

from src.config.settings import ResolutionConfig
from src.db.connection import create_db_engine, init_schema, make_session_factory
from src.db.models import Candidate, Resolution, ResolutionRecord
from src.db.store import ArticleStore
from src.errors import JudgeUnavailable
from src.resolution.judge import Judge

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)

FILLER_TOPICS = [
    ("Gardening almanac", "Compost heaps and tomato seedlings", "Mulch, trellis, watering cans."),
    ("Baking column", "Sourdough starters and rye loaves", "Proofing baskets, oven stones."),
    ("Sailing digest", "Regatta results from the harbour", "Spinnaker, keel, tiller, buoys."),
    ("Chess corner", "Endgame studies with rooks", "Zugzwang, stalemate, opposition."),
    ("Birdwatching notes", "Warblers return to the marshes", "Binoculars, herons, plovers."),
]


@pytest.fixture
def store(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path}/articles.db")
    factory = make_session_factory(engine)
    init_schema(factory)
    yield ArticleStore(factory)
    engine.dispose()


@pytest.fixture
def make_candidate():
    def _make(**kwargs) -> Candidate:
        kwargs.setdefault("published_at", NOW)
        return Candidate(**kwargs)

    return _make


@pytest.fixture
def seed_article(store, make_candidate):
    """Insert an article as if an earlier run had resolved it NEW."""

    def _seed(**kwargs):
        candidate = make_candidate(**kwargs)
        record = ResolutionRecord(candidate_id=candidate.id, resolution=Resolution.NEW)
        return store.create_article(candidate, record)

    return _seed


@pytest.fixture
def fillers(seed_article):
    """
    Unrelated articles in the window.

    FTS5 clamps bm25 idf to almost nothing for terms present in half the
    corpus or more, so scoring tests need some bulk that shares no words
    with the stories under test.
    """
    return [
        seed_article(
            headline=f"{headline} {i}",
            summary=summary,
            full_report=report,
            published_at=NOW - timedelta(days=i + 1),
        )
        for i, (headline, summary, report) in enumerate(FILLER_TOPICS)
    ]


@pytest.fixture
def escalate_all():
    """Any text match at all lands in the ambiguous band."""
    return ResolutionConfig(t_low=0.01, t_high=1e6)


class FakeJudge(Judge):
    """Returns scripted verdicts in order; exceptions in the script are raised."""

    def __init__(self, *script):
        self.script = list(script)
        self.calls = []

    def judge(self, candidate, entries):
        self.calls.append((candidate.id, [e.article_id for e in entries]))
        if not self.script:
            raise JudgeUnavailable("no scripted verdict left", attempts=1)
        outcome = self.script.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return outcome(candidate, entries)
        return outcome


@pytest.fixture
def fake_judge():
    return FakeJudge
