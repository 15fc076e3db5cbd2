"""Tests for candidate loading and sequential runs."""

import json

import pytest

from src.config.settings import ResolutionConfig
from src.db.models import Entity
from src.errors import JudgeUnavailable
from src.ingestion.pipeline import ResolutionPipeline, load_candidates
from src.resolution.policy import ResolutionPolicy


def test_load_candidates_wrapped_and_bare(tmp_path):
    rows = [
        {
            "id": "c-1",
            "headline": "Okta support system breached",
            "entities": [{"name": "Okta", "type": "company"}],
            "cves": [{"id": "cve-2023-5678"}],
            "published_at": "2025-03-01T10:00:00Z",
        },
        {"id": "c-2", "headline": "Bad date", "published_at": "not a date"},
    ]
    wrapped = tmp_path / "wrapped.json"
    wrapped.write_text(json.dumps({"articles": rows}))
    bare = tmp_path / "bare.json"
    bare.write_text(json.dumps(rows))

    for path in (wrapped, bare):
        batch = load_candidates(path)
        assert [c.id for c in batch.candidates] == ["c-1"]
        assert batch.candidates[0].cve_ids() == {"CVE-2023-5678"}
        assert [(r.candidate_id, r.status) for r in batch.invalid] == [("c-2", "rejected")]


def test_load_candidates_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_candidates(tmp_path / "nope.json")


def test_run_is_sequential_and_survives_bad_candidates(store, make_candidate, fake_judge):
    policy = ResolutionPolicy(store, judge=fake_judge(), config=ResolutionConfig(t_low=1, t_high=10))
    first = make_candidate(
        headline="Cisco ASA zero-day used by ArcaneDoor",
        summary="State actor backdoors Cisco ASA firewalls.",
        entities=[Entity(name="ArcaneDoor", type="campaign")],
    )
    empty = make_candidate()
    unrelated = make_candidate(headline="Unrelated story", entities=[Entity(name="Qakbot", type="malware")])

    summary = ResolutionPipeline(policy).run([first, empty, unrelated])

    assert [r.status for r in summary.results] == ["resolved", "rejected", "resolved"]
    assert summary.rejected == 1
    assert "ExtractionMissing" in summary.results[1].reason
    assert summary.counts == {"NEW": 2}
    assert summary.judge_calls == 0
    assert store.count_articles() == 2


def test_rerun_reports_already_resolved(store, make_candidate, fake_judge):
    policy = ResolutionPolicy(store, judge=fake_judge(), config=ResolutionConfig(t_low=1, t_high=10))
    candidates = [
        make_candidate(headline="Volt Typhoon hits water utility", entities=[Entity(name="Volt Typhoon", type="threat_actor")]),
        make_candidate(headline="Water utility breach follow-up", entities=[Entity(name="Volt Typhoon", type="threat_actor")]),
    ]
    pipeline = ResolutionPipeline(policy)
    first = pipeline.run(candidates)

    second = pipeline.run(candidates)

    assert second.already_resolved == 2
    assert second.counts == {}
    assert [r.record for r in second.results] == [r.record for r in first.results]
    assert store.resolution_stats() == first.counts


def test_judge_failures_are_counted(store, seed_article, fillers, make_candidate, fake_judge, escalate_all):
    shared = [Entity(name="BlackBasta", type="threat_actor")]
    seed_article(headline="BlackBasta hits healthcare provider", entities=shared)
    judge = fake_judge(JudgeUnavailable("down"))
    policy = ResolutionPolicy(store, judge=judge, config=escalate_all)

    summary = ResolutionPipeline(policy).run(
        [make_candidate(headline="BlackBasta ransom note leaked", entities=shared)]
    )

    assert summary.judge_calls == 1
    assert summary.judge_failures == 1
    assert summary.counts == {"NEW": 1}


def test_rows_rejected_on_load_reach_the_run_summary(tmp_path, store, fake_judge):
    rows = [
        {"id": "good", "headline": "Cisco patches IOS XE flaw", "published_at": "2025-03-01T10:00:00Z"},
        {"id": "padded", "headline": "Padded CVE", "cves": [{"id": " cve-2025-1234 "}]},
        {"headline": "No id", "cves": [{"id": "not-a-cve"}]},
        "not an object",
    ]
    path = tmp_path / "candidates.json"
    path.write_text(json.dumps(rows))

    batch = load_candidates(path)
    policy = ResolutionPolicy(store, judge=fake_judge(), config=ResolutionConfig(t_low=1, t_high=10))
    summary = ResolutionPipeline(policy).run(batch.candidates, invalid=batch.invalid)

    statuses = {r.candidate_id: r.status for r in summary.results}
    assert statuses == {"good": "resolved", "padded": "resolved", "row-2": "rejected", "row-3": "rejected"}
    assert summary.rejected == 2
    assert all(r.reason.startswith("ValidationError") for r in summary.results if r.status == "rejected")
    assert summary.counts == {"NEW": 2}
