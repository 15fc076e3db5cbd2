"""Resolution pipeline: extracted candidates JSON -> sequential resolution."""

import json
from collections import Counter
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from src.db.models import Candidate
from src.db.store import ArticleStore
from src.errors import ResolutionError
from src.resolution.models import ResolutionResult
from src.resolution.policy import ResolutionPolicy
from src.logger import get_logger

logger = get_logger(__name__)


class CandidateBatch(BaseModel):
    """One extraction file: valid candidates plus rows rejected on load."""

    candidates: list[Candidate] = Field(default_factory=list)
    invalid: list[ResolutionResult] = Field(default_factory=list)


def load_candidates(path: str | Path) -> CandidateBatch:
    """
    Read the extraction output: {"articles": [...]} or a bare list.

    Rows that fail validation come back as rejected results, keyed by their
    id or, without one, by their position in the file.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Candidates file not found: {path}")

    data = json.loads(path.read_text(encoding="utf-8"))
    rows = data.get("articles", []) if isinstance(data, dict) else data
    if not isinstance(rows, list):
        raise ValueError("Candidates file must hold a list or an 'articles' list")

    batch = CandidateBatch()
    for i, row in enumerate(rows):
        try:
            batch.candidates.append(Candidate.model_validate(row))
        except ValidationError as e:
            row_id = row.get("id") if isinstance(row, dict) else None
            candidate_id = row_id if isinstance(row_id, str) and row_id else f"row-{i}"
            logger.warning("candidate_invalid", index=i, candidate_id=candidate_id, error=str(e))
            batch.invalid.append(
                ResolutionResult(
                    candidate_id=candidate_id,
                    status="rejected",
                    reason=f"ValidationError: {e}",
                )
            )
    logger.info(
        "candidates_loaded",
        path=str(path),
        count=len(batch.candidates),
        invalid=len(batch.invalid),
    )
    return batch


class RunSummary(BaseModel):
    results: list[ResolutionResult] = Field(default_factory=list)
    counts: dict[str, int] = Field(default_factory=dict)
    judge_calls: int = 0
    judge_failures: int = 0
    rejected: int = 0
    already_resolved: int = 0


class ResolutionPipeline:
    """
    Resolves one run's candidates in the order given.

    Each decision can depend on articles created earlier in the same run, so
    there is no parallelism inside a run. A cancelled run is re-fed from the
    start; candidates that already have a record are reported, not redone.
    """

    def __init__(self, policy: ResolutionPolicy, store: ArticleStore | None = None):
        self.policy = policy
        self.store = store or policy.store

    def process(self, candidate: Candidate) -> ResolutionResult:
        """One candidate. Engine errors become a rejected result."""
        try:
            existing = None if self.policy.dry_run else self.store.get_resolution(candidate.id)
            if existing is not None:
                logger.info("already_resolved", candidate_id=candidate.id, resolution=existing.resolution.value)
                return ResolutionResult(
                    candidate_id=candidate.id,
                    record=existing,
                    reason="already_resolved",
                )
            return self.policy.resolve(candidate)
        except ResolutionError as e:
            logger.error(
                "candidate_rejected",
                candidate_id=candidate.id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return ResolutionResult(
                candidate_id=candidate.id,
                status="rejected",
                reason=f"{type(e).__name__}: {e}",
            )

    def run(
        self,
        candidates: list[Candidate],
        invalid: list[ResolutionResult] | None = None,
    ) -> RunSummary:
        """Resolve `candidates` in order. `invalid` are rows rejected on load."""
        summary = RunSummary(results=list(invalid or []), rejected=len(invalid or []))
        counts: Counter = Counter()

        for i, candidate in enumerate(candidates, 1):
            logger.info("candidate_start", position=i, total=len(candidates), candidate_id=candidate.id)
            result = self.process(candidate)
            summary.results.append(result)

            if result.status == "rejected":
                summary.rejected += 1
                continue
            if result.reason == "already_resolved":
                summary.already_resolved += 1
                continue
            counts[result.record.resolution.value] += 1
            summary.judge_calls += int(result.judge_called)
            summary.judge_failures += int(result.judge_error is not None)

        summary.counts = dict(counts)
        logger.info(
            "run_complete",
            processed=len(candidates),
            invalid=len(invalid or []),
            rejected=summary.rejected,
            already_resolved=summary.already_resolved,
            judge_calls=summary.judge_calls,
            judge_failures=summary.judge_failures,
            **{k.lower().replace("-", "_"): v for k, v in counts.items()},
        )
        return summary
