"""
Resolution policy. Decides NEW / SKIP-FTS5 / SKIP-LLM / SKIP-UPDATE.

Pipeline (one pass, no cycles):
    1. CandidateIndex: entity/CVE overlap shortlist
    2. SimilarityIndex over the shortlist, or over the recent-article window
       when the shortlist is empty (headline-only duplicates)
    3. decide(): score < t_low -> NEW, score >= t_high -> SKIP-FTS5,
       otherwise escalate the top-k entries
    4. Judge: distinct -> NEW, duplicate -> SKIP-LLM, update -> SKIP-UPDATE
       (Judge unavailable -> NEW, fail open)
    5. Persist through the ArticleStore. A skip whose target vanished or
       stayed locked re-runs the cascade once, then falls back to NEW.
"""

from dataclasses import dataclass
from datetime import datetime

from src.config.settings import ResolutionConfig
from src.db.models import (
    ArticleUpdate,
    Candidate,
    Resolution,
    ResolutionRecord,
    SeverityChange,
    as_utc,
)
from src.db.store import ArticleStore
from src.errors import ArticleNotFound, ConflictingMerge, ExtractionMissing, JudgeUnavailable
from src.resolution.judge import Judge, LLMJudge
from src.resolution.models import (
    Decision,
    DecisionKind,
    JudgeDecision,
    JudgeVerdict,
    ResolutionResult,
)
from src.retrieval.candidates import CandidateIndex
from src.retrieval.models import CandidateEntry
from src.retrieval.similarity import SimilarityIndex
from src.logger import get_logger

logger = get_logger(__name__)

MAX_CONFLICT_RETRIES = 1


def decide(
    entries: list[CandidateEntry], t_low: float, t_high: float, top_k: int
) -> Decision:
    """
    Threshold step on the top-scoring entry. Pure, no I/O.

    t_low is exclusive for NEW: a score equal to t_low is ambiguous.
    """
    if not entries:
        return Decision(kind=DecisionKind.NEW)

    ranked = sorted(
        entries, key=lambda e: (e.similarity_score or 0.0, e.published_at), reverse=True
    )
    top = ranked[0]
    score = top.similarity_score or 0.0

    if score < t_low:
        return Decision(kind=DecisionKind.NEW, top=top)
    if score >= t_high:
        return Decision(kind=DecisionKind.DUPLICATE, top=top)
    return Decision(kind=DecisionKind.ESCALATE, top=top, escalated=ranked[:top_k])


@dataclass
class _Outcome:
    record: ResolutionRecord
    update: ArticleUpdate | None = None
    judge_called: bool = False
    judge_error: str | None = None


class ResolutionPolicy:
    def __init__(
        self,
        store: ArticleStore,
        judge: Judge | None = None,
        config: ResolutionConfig | None = None,
        candidate_index: CandidateIndex | None = None,
        similarity_index: SimilarityIndex | None = None,
        dry_run: bool = False,
    ):
        self.store = store
        self.config = config or ResolutionConfig.from_settings()
        self.candidate_index = candidate_index or CandidateIndex(store, self.config)
        self.similarity_index = similarity_index or SimilarityIndex(store, self.config)
        self.judge = judge or LLMJudge(store)
        self.dry_run = dry_run

    def resolve(self, candidate: Candidate) -> ResolutionResult:
        """
        Full cascade for one candidate, persisted unless dry_run.

        :raises ExtractionMissing: nothing to resolve against
        :raises StoreUnavailable: the store cannot be reached
        """
        if candidate.is_empty():
            raise ExtractionMissing(candidate.id)

        conflict: Exception | None = None
        for attempt in range(MAX_CONFLICT_RETRIES + 1):
            outcome = self.evaluate(candidate)
            try:
                return self._commit(candidate, outcome, retries=attempt)
            except (ArticleNotFound, ConflictingMerge) as e:
                conflict = e
                logger.warning(
                    "resolution_conflict",
                    candidate_id=candidate.id,
                    target_id=outcome.record.matched_article_id,
                    attempt=attempt + 1,
                    error=str(e),
                )

        record = ResolutionRecord(
            candidate_id=candidate.id,
            resolution=Resolution.NEW,
            similarity_score=outcome.record.similarity_score,
            skip_reasoning=f"Fell back to NEW after conflicting writes: {conflict}",
            resolution_method=outcome.record.resolution_method,
        )
        fallback = _Outcome(
            record=record,
            judge_called=outcome.judge_called,
            judge_error=outcome.judge_error,
        )
        result = self._commit(candidate, fallback, retries=MAX_CONFLICT_RETRIES + 1)
        return result.model_copy(update={"reason": "conflicting_merge"})

    def evaluate(self, candidate: Candidate) -> _Outcome:
        """Run the cascade and build the record without writing anything."""
        shortlist = self.candidate_index.shortlist(candidate)
        pool = shortlist or self.similarity_index.fallback_entries(candidate)
        ranked = self.similarity_index.rank(candidate, pool)

        cfg = self.config
        decision = decide(ranked, cfg.t_low, cfg.t_high, cfg.top_k)
        new_score = decision.score if shortlist else None

        logger.info(
            "resolution_decision",
            candidate_id=candidate.id,
            kind=decision.kind.value,
            score=decision.score,
            shortlist=len(shortlist),
            fallback=not shortlist,
        )

        if decision.kind is DecisionKind.NEW:
            return _Outcome(record=self._new_record(candidate, new_score))

        if decision.kind is DecisionKind.DUPLICATE:
            top = decision.top
            return _Outcome(
                record=ResolutionRecord(
                    candidate_id=candidate.id,
                    resolution=Resolution.SKIP_FTS5,
                    similarity_score=top.similarity_score,
                    matched_article_id=top.article_id,
                    skip_reasoning=(
                        "text-similarity above duplicate threshold: "
                        f"score {top.similarity_score:.2f} >= {cfg.t_high:.2f} "
                        f"against article {top.article_id}"
                    ),
                )
            )

        try:
            verdict = self.judge.judge(candidate, decision.escalated)
        except JudgeUnavailable as e:
            logger.error("judge_unavailable", candidate_id=candidate.id, error=str(e))
            return _Outcome(
                record=self._new_record(candidate, new_score),
                judge_called=True,
                judge_error=str(e),
            )
        return self._apply_verdict(candidate, decision, verdict, new_score)

    def _apply_verdict(
        self,
        candidate: Candidate,
        decision: Decision,
        verdict: JudgeVerdict,
        new_score: float | None,
    ) -> _Outcome:
        if verdict.decision is JudgeDecision.DISTINCT:
            record = ResolutionRecord(
                candidate_id=candidate.id,
                resolution=Resolution.NEW,
                similarity_score=new_score,
                skip_reasoning=f"Judge (distinct): {verdict.rationale}",
                resolution_method="llm",
            )
            return _Outcome(record=record, judge_called=True)

        matched = next(
            (e for e in decision.escalated if e.article_id == verdict.matched_article_id),
            decision.top,
        )
        resolution = (
            Resolution.SKIP_UPDATE
            if verdict.decision is JudgeDecision.UPDATE
            else Resolution.SKIP_LLM
        )
        record = ResolutionRecord(
            candidate_id=candidate.id,
            resolution=resolution,
            similarity_score=matched.similarity_score,
            matched_article_id=matched.article_id,
            skip_reasoning=f"Judge ({verdict.decision.value}): {verdict.rationale}",
            resolution_method="llm",
        )
        update = self._update_payload(candidate, verdict) if resolution is Resolution.SKIP_UPDATE else None
        return _Outcome(record=record, update=update, judge_called=True)

    @staticmethod
    def _update_payload(candidate: Candidate, verdict: JudgeVerdict) -> ArticleUpdate:
        """Judge's update object, filled in from the candidate where it is silent."""
        u = verdict.update
        occurred_at = candidate.published_at
        if u is not None and u.occurred_at:
            try:
                occurred_at = as_utc(datetime.fromisoformat(u.occurred_at.replace("Z", "+00:00")))
            except ValueError:
                logger.warning("judge_update_bad_datetime", value=u.occurred_at)

        return ArticleUpdate(
            occurred_at=occurred_at,
            summary=(u.summary if u else "") or candidate.headline or "Additional details provided",
            content=(u.content if u else "") or candidate.summary or candidate.full_report,
            sources=[*(u.sources if u else []), *candidate.sources],
            severity_change=u.severity_change if u else SeverityChange.UNKNOWN,
            entities=candidate.entities,
            cves=candidate.cves,
        )

    @staticmethod
    def _new_record(candidate: Candidate, score: float | None) -> ResolutionRecord:
        return ResolutionRecord(
            candidate_id=candidate.id,
            resolution=Resolution.NEW,
            similarity_score=score,
        )

    def _commit(self, candidate: Candidate, outcome: _Outcome, retries: int) -> ResolutionResult:
        record = outcome.record
        result = ResolutionResult(
            candidate_id=candidate.id,
            record=record,
            judge_called=outcome.judge_called,
            judge_error=outcome.judge_error,
            conflict_retries=retries,
            dry_run=self.dry_run,
        )
        if self.dry_run:
            logger.info("resolution_dry_run", candidate_id=candidate.id, resolution=record.resolution.value)
            return result

        if record.resolution is Resolution.NEW:
            article = self.store.create_article(candidate, record)
            article_id = article.id
        elif record.resolution is Resolution.SKIP_UPDATE:
            self.store.merge_into_article(record.matched_article_id, outcome.update, record)
            article_id = record.matched_article_id
        else:
            self.store.attach_sources(record.matched_article_id, candidate.sources, record)
            article_id = record.matched_article_id

        logger.info(
            "resolution_persisted",
            candidate_id=candidate.id,
            resolution=record.resolution.value,
            similarity_score=record.similarity_score,
            matched_article_id=record.matched_article_id,
        )
        return result.model_copy(update={"article_id": article_id})
