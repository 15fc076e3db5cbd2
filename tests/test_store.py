"""Tests for ArticleStore against a real SQLite database."""

from datetime import datetime, timedelta, timezone

import pytest

from src.config.settings import settings
from src.db.connection import create_db_engine, make_session_factory
from src.db.models import (
    ArticleUpdate,
    Cve,
    Entity,
    Resolution,
    ResolutionRecord,
    SeverityChange,
    Source,
)
from src.db.store import ArticleStore, slugify
from src.errors import ArticleNotFound, ConflictingMerge, StoreUnavailable

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def _skip(candidate_id, resolution, target_id):
    return ResolutionRecord(
        candidate_id=candidate_id,
        resolution=resolution,
        matched_article_id=target_id,
        similarity_score=12.5,
        skip_reasoning="same event",
    )


def test_slugify():
    assert slugify("Critical Outlook flaw (CVE-2024-21413) exploited!") == (
        "critical-outlook-flaw-cve-2024-21413-exploited"
    )
    assert len(slugify("word " * 50)) <= 80
    assert slugify("!!!") == ""


def test_create_article_writes_article_facets_and_record(store, make_candidate):
    candidate = make_candidate(
        headline="LockBit claims hospital attack",
        summary="Ransomware gang lists a hospital.",
        entities=[Entity(name="LockBit", type="threat_actor")],
        cves=[Cve(id="CVE-2024-1709")],
        sources=[Source(url="https://example.com/a", title="A", website="example.com")],
    )
    record = ResolutionRecord(candidate_id=candidate.id, resolution=Resolution.NEW, similarity_score=3.2)

    article = store.create_article(candidate, record)

    assert article.id == candidate.id
    assert article.slug == "lockbit-claims-hospital-attack"
    assert article.similarity_score == 3.2
    assert article.update_count == 0
    assert store.get_facets(article.id) == ({"LockBit"}, {"CVE-2024-1709"})
    assert [s.url for s in store.get_sources(article.id)] == ["https://example.com/a"]
    assert store.get_resolution(candidate.id) == record
    assert store.count_articles() == 1


def test_duplicate_headlines_get_distinct_slugs(seed_article):
    a = seed_article(headline="Patch Tuesday roundup")
    b = seed_article(headline="Patch Tuesday roundup")
    c = seed_article(headline="Patch Tuesday roundup")
    assert [a.slug, b.slug, c.slug] == [
        "patch-tuesday-roundup",
        "patch-tuesday-roundup-2",
        "patch-tuesday-roundup-3",
    ]


def test_create_article_rejects_skip_record(store, make_candidate):
    candidate = make_candidate(headline="x")
    with pytest.raises(ValueError):
        store.create_article(candidate, _skip(candidate.id, Resolution.SKIP_LLM, "other"))


def test_record_is_written_once(store, make_candidate):
    candidate = make_candidate(headline="Once only")
    record = ResolutionRecord(candidate_id=candidate.id, resolution=Resolution.NEW)
    store.create_article(candidate, record)

    with pytest.raises(StoreUnavailable):
        store.create_article(candidate, record)
    assert store.count_articles() == 1


def test_entity_lookup_is_case_insensitive_and_windowed(store, seed_article):
    recent = seed_article(
        headline="Exchange servers under attack",
        entities=[Entity(name="Microsoft Exchange", type="product")],
        cves=[Cve(id="CVE-2024-21410")],
        published_at=NOW - timedelta(days=3),
    )
    seed_article(
        headline="Old Exchange story",
        entities=[Entity(name="Microsoft Exchange", type="product")],
        published_at=NOW - timedelta(days=45),
    )

    matches = store.get_articles_by_entities(
        {"microsoft exchange"}, {"CVE-2024-21410"}, timedelta(days=30), now=NOW
    )

    assert list(matches) == [recent.id]
    assert matches[recent.id].matched_entities == {"microsoft exchange"}
    assert matches[recent.id].matched_cves == {"CVE-2024-21410"}


def test_entity_lookup_without_facets_is_empty(store, seed_article):
    seed_article(headline="Anything", entities=[Entity(name="Okta", type="company")])
    assert store.get_articles_by_entities(set(), set(), timedelta(days=30), now=NOW) == {}


def test_recent_articles_newest_first(store, seed_article):
    older = seed_article(headline="Older", published_at=NOW - timedelta(days=10))
    newer = seed_article(headline="Newer", published_at=NOW - timedelta(days=1))
    seed_article(headline="Ancient", published_at=NOW - timedelta(days=90))

    recent = store.get_recent_articles(timedelta(days=30), now=NOW)
    assert [a.id for a in recent] == [newer.id, older.id]


def test_get_articles_keeps_requested_order(store, seed_article):
    a = seed_article(headline="First")
    b = seed_article(headline="Second")
    assert [x.id for x in store.get_articles([b.id, "missing", a.id])] == [b.id, a.id]


def test_merge_appends_update_and_touches_article(store, seed_article, make_candidate):
    target = seed_article(
        headline="Outlook zero-day exploited",
        full_report="Attackers exploit an Outlook flaw.",
        sources=[Source(url="https://example.com/1", title="one")],
    )
    follow_up = make_candidate(headline="Microsoft patches Outlook zero-day")
    update = ArticleUpdate(
        occurred_at=NOW + timedelta(days=1),
        summary="Patch released",
        content="Microsoft shipped a fix in the March update.",
        sources=[
            Source(url="https://example.com/1", title="one"),
            Source(url="https://example.com/2", title="two"),
        ],
        severity_change=SeverityChange.DECREASED,
        cves=[Cve(id="CVE-2024-21413")],
    )

    update_id = store.merge_into_article(
        target.id, update, _skip(follow_up.id, Resolution.SKIP_UPDATE, target.id)
    )

    merged = store.get_article(target.id)
    assert update_id > 0
    assert merged.update_count == 1
    assert merged.updated_at > target.updated_at
    assert merged.created_at == target.created_at
    updates = store.get_updates(target.id)
    assert [(u["summary"], u["severity_change"]) for u in updates] == [("Patch released", "decreased")]
    assert [s.url for s in store.get_sources(target.id)] == ["https://example.com/1", "https://example.com/2"]
    assert "CVE-2024-21413" in store.get_facets(target.id)[1]
    assert store.get_resolution(follow_up.id).resolution is Resolution.SKIP_UPDATE


def test_merge_update_text_is_searchable(store, seed_article, fillers, make_candidate):
    target = seed_article(headline="Outlook zero-day exploited", full_report="Attackers exploit Outlook.")
    follow_up = make_candidate(headline="Follow-up")
    store.merge_into_article(
        target.id,
        ArticleUpdate(summary="Emergency hotfix", content="Redmond ships hotfix KB5035849"),
        _skip(follow_up.id, Resolution.SKIP_UPDATE, target.id),
    )

    hits = store.search_fulltext('"kb5035849"', [target.id], (10.0, 5.0, 1.0))
    assert [h[0] for h in hits] == [target.id]


def test_merge_into_missing_article(store, make_candidate):
    candidate = make_candidate(headline="Orphan update")
    with pytest.raises(ArticleNotFound):
        store.merge_into_article(
            "no-such-article",
            ArticleUpdate(summary="x"),
            _skip(candidate.id, Resolution.SKIP_UPDATE, "no-such-article"),
        )
    assert store.get_resolution(candidate.id) is None


def test_attach_sources_dedupes_and_leaves_updated_at(store, seed_article, make_candidate):
    target = seed_article(headline="Story", sources=[Source(url="https://a.example", title="a")])
    first = make_candidate(headline="Story again")
    second = make_candidate(headline="Story once more")

    added = store.attach_sources(
        target.id,
        [Source(url="https://a.example", title="a"), Source(url="https://b.example", title="b")],
        _skip(first.id, Resolution.SKIP_FTS5, target.id),
    )
    again = store.attach_sources(
        target.id,
        [Source(url="https://b.example", title="b")],
        _skip(second.id, Resolution.SKIP_LLM, target.id),
    )

    assert (added, again) == (1, 0)
    after = store.get_article(target.id)
    assert after.updated_at == target.updated_at
    assert after.update_count == 0
    assert store.resolution_stats() == {"NEW": 1, "SKIP-FTS5": 1, "SKIP-LLM": 1}


def test_attach_sources_to_missing_article(store, make_candidate):
    candidate = make_candidate(headline="dup")
    with pytest.raises(ArticleNotFound):
        store.attach_sources("gone", [], _skip(candidate.id, Resolution.SKIP_FTS5, "gone"))


def test_headline_weight_dominates_ranking(store, seed_article, fillers):
    in_headline = seed_article(
        headline="Volt Typhoon router botnet",
        full_report="Operators rebuilt infrastructure.",
    )
    in_report = seed_article(
        headline="Weekly threat roundup",
        full_report="Among other items, a volt typhoon router botnet resurfaced.",
    )

    hits = store.search_fulltext(
        '"volt" OR "typhoon" OR "router" OR "botnet"',
        [in_headline.id, in_report.id],
        (10.0, 5.0, 1.0),
    )

    assert [h[0] for h in hits] == [in_headline.id, in_report.id]
    assert all(score < 0 for _, score in hits)


def test_list_resolutions(store, seed_article):
    seed_article(headline="One")
    seed_article(headline="Two")
    records = store.list_resolutions()
    assert len(records) == 2
    assert {r.resolution for r in records} == {Resolution.NEW}


def test_windows_stop_at_now(store, seed_article):
    shared = [Entity(name="Volt Typhoon", type="threat_actor")]
    seed_article(headline="Tomorrow", entities=shared, published_at=NOW + timedelta(days=1))
    today = seed_article(headline="Today", entities=shared, published_at=NOW)

    assert [a.id for a in store.get_recent_articles(timedelta(days=30), now=NOW)] == [today.id]
    assert list(store.get_articles_by_entities({"Volt Typhoon"}, set(), timedelta(days=30), now=NOW)) == [today.id]


@pytest.fixture
def lock_target(seed_article):
    return seed_article(headline="Ivanti gateways breached")


@pytest.fixture
def locked_store(tmp_path, lock_target, monkeypatch):
    """A second store on the same file while another writer holds the lock."""
    url = f"sqlite:///{tmp_path}/articles.db"
    monkeypatch.setattr(settings, "db_busy_timeout_seconds", 0.2)

    holder_engine = create_db_engine(url)
    holder = holder_engine.connect()
    holder.begin()
    blocked_engine = create_db_engine(url)
    yield ArticleStore(make_session_factory(blocked_engine))

    holder.rollback()
    holder.close()
    holder_engine.dispose()
    blocked_engine.dispose()


def test_merge_under_writer_lock_is_conflict(lock_target, locked_store, make_candidate):
    candidate = make_candidate(headline="Ivanti follow-up")
    with pytest.raises(ConflictingMerge) as exc:
        locked_store.merge_into_article(
            lock_target.id,
            ArticleUpdate(summary="Patch"),
            _skip(candidate.id, Resolution.SKIP_UPDATE, lock_target.id),
        )
    assert exc.value.target_id == lock_target.id


def test_attach_under_writer_lock_is_conflict(lock_target, locked_store, make_candidate):
    candidate = make_candidate(headline="Ivanti duplicate")
    with pytest.raises(ConflictingMerge):
        locked_store.attach_sources(
            lock_target.id,
            [Source(url="https://c.example", title="c")],
            _skip(candidate.id, Resolution.SKIP_FTS5, lock_target.id),
        )


def test_create_under_writer_lock_is_store_unavailable(lock_target, locked_store, make_candidate):
    candidate = make_candidate(headline="Unrelated new story")
    with pytest.raises(StoreUnavailable):
        locked_store.create_article(
            candidate, ResolutionRecord(candidate_id=candidate.id, resolution=Resolution.NEW)
        )
