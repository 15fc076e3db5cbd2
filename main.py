"""
Cybersecurity news resolution engine.

Usage:
    uv run python main.py init                                        # Create schema
    uv run python main.py resolve --input data/candidates.json        # Resolve a run
    uv run python main.py resolve --input data/candidates.json --dry-run
    uv run python main.py report                                      # Resolution breakdown
"""

import argparse
import json
import sys
from collections import Counter
from pathlib import Path

from src.config.settings import ResolutionConfig, settings
from src.logger import setup_logging, get_logger
from src.db.connection import check_connection, init_schema
from src.db.store import ArticleStore
from src.ingestion.pipeline import ResolutionPipeline, RunSummary, load_candidates
from src.resolution.judge import LLMJudge
from src.resolution.policy import ResolutionPolicy

setup_logging()
logger = get_logger("main")


def run_resolve(input_path: Path, dry_run: bool, lookback_days: int | None) -> RunSummary:
    config = ResolutionConfig.from_settings()
    if lookback_days is not None:
        config = config.model_copy(update={"lookback_days": lookback_days})

    store = ArticleStore()
    policy = ResolutionPolicy(store, judge=LLMJudge(store), config=config, dry_run=dry_run)
    batch = load_candidates(input_path)
    summary = ResolutionPipeline(policy).run(batch.candidates, invalid=batch.invalid)

    print(f"\n{'='*70}")
    print(f" Resolution run: {len(summary.results)} candidates{' (dry run)' if dry_run else ''}")
    print(f"{'='*70}\n")

    for r in summary.results:
        if r.status == "rejected":
            print(f"  [REJECTED] {r.candidate_id}: {r.reason}")
            continue
        rec = r.record
        score = f"{rec.similarity_score:.2f}" if rec.similarity_score is not None else "-"
        print(f"  [{rec.resolution.value}] {r.candidate_id} (score: {score})")
        if rec.matched_article_id:
            print(f"     Matched: {rec.matched_article_id}")
        if rec.skip_reasoning:
            print(f"     {rec.skip_reasoning}")
        if r.judge_error:
            print(f"     Judge unavailable: {r.judge_error}")

    print(f"\n  Summary: {summary.counts}, judge calls {summary.judge_calls}, "
          f"judge failures {summary.judge_failures}, rejected {summary.rejected}, "
          f"already resolved {summary.already_resolved}\n")

    output_path = Path(settings.output_dir) / "resolutions.json"
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w") as f:
        json.dump(summary.model_dump(mode="json"), f, indent=2)
    logger.info("resolutions_saved", path=str(output_path))

    return summary


def run_report():
    store = ArticleStore()
    records = store.list_resolutions()

    if not records:
        print("\n  No resolutions recorded yet. Run `resolve` first.\n")
        return []

    counts = store.resolution_stats()
    by_method = Counter(r.resolution_method for r in records)
    scored = [r.similarity_score for r in records if r.similarity_score is not None]
    matched = Counter(r.matched_article_id for r in records if r.matched_article_id)

    print(f"\n{'='*70}")
    print(f" Resolution report ({len(records)} candidates)")
    print(f"{'='*70}\n")
    for name in ("NEW", "SKIP-FTS5", "SKIP-LLM", "SKIP-UPDATE"):
        print(f"  {name:<12} {counts.get(name, 0)}")
    print(f"  Method:     {dict(by_method)}")
    if scored:
        print(f"  Similarity: avg {sum(scored) / len(scored):.2f}, "
              f"min {min(scored):.2f}, max {max(scored):.2f}")
    for article_id, n in matched.most_common(5):
        print(f"  Most matched: {article_id} ({n})")
    print()

    report = {
        "total": len(records),
        "breakdown": counts,
        "methods": dict(by_method),
        "most_matched": matched.most_common(10),
        "resolutions": [r.model_dump(mode="json") for r in records],
    }
    output_path = Path(settings.output_dir) / "resolution_report.json"
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w") as f:
        json.dump(report, f, indent=2)
    logger.info("report_saved", path=str(output_path))

    return records


# CLI
def main():
    parser = argparse.ArgumentParser(description="Cybersecurity news resolution engine")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create the database schema")

    resolve = sub.add_parser("resolve", help="Resolve extracted candidates")
    resolve.add_argument("--input", type=Path, default=Path(settings.data_dir) / "candidates.json")
    resolve.add_argument("--dry-run", action="store_true", help="Decide without writing")
    resolve.add_argument("--lookback-days", type=int, default=None)

    sub.add_parser("report", help="Summarize persisted resolutions")

    args = parser.parse_args()

    if args.command == "resolve" and args.lookback_days is not None and args.lookback_days < 1:
        parser.error("--lookback-days must be at least 1")

    init_schema()
    if not check_connection():
        logger.error("Database unavailable")
        sys.exit(1)

    if args.command == "resolve":
        run_resolve(args.input, args.dry_run, args.lookback_days)
    elif args.command == "report":
        run_report()


if __name__ == "__main__":
    main()
