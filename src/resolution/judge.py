"""
Judge: the external semantic duplicate/update call.

Only candidates in the ambiguous band reach it. Each attempt is bounded by
the LLM client's timeout; attempts are retried with exponential backoff
and, once the budget is spent, JudgeUnavailable is raised so the policy can
fail open.
"""

import abc

from tenacity import Retrying, stop_after_attempt, wait_exponential

from src.config.settings import settings
from src.db.models import ArticleRecord, Candidate
from src.db.store import ArticleStore
from src.errors import JudgeUnavailable
from src.resolution.models import JudgeDecision, JudgeResponse, JudgeVerdict
from src.resolution.prompts import EXISTING_ARTICLE_TEMPLATE, JUDGE_PROMPT, JUDGE_SYSTEM_PROMPT
from src.retrieval.models import CandidateEntry
from src.services.llm import LLMClient
from src.logger import get_logger

logger = get_logger(__name__)

REPORT_CHAR_LIMIT = 4000


class Judge(abc.ABC):
    """Interface any judge implements."""

    @abc.abstractmethod
    def judge(self, candidate: Candidate, entries: list[CandidateEntry]) -> JudgeVerdict: ...


class LLMJudge(Judge):
    def __init__(
        self,
        store: ArticleStore,
        llm_client: LLMClient | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
    ):
        self.store = store
        self.llm = llm_client or LLMClient()
        self.max_attempts = max_attempts or settings.judge_max_attempts
        self.backoff_seconds = (
            settings.judge_backoff_seconds if backoff_seconds is None else backoff_seconds
        )

    def judge(self, candidate: Candidate, entries: list[CandidateEntry]) -> JudgeVerdict:
        articles = self.store.get_articles([e.article_id for e in entries])
        if not articles:
            raise JudgeUnavailable("none of the escalated articles could be loaded")

        prompt = self._build_prompt(candidate, articles)
        allowed = [a.id for a in articles]
        verdict: JudgeVerdict | None = None

        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=self.backoff_seconds * 4),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    number = attempt.retry_state.attempt_number
                    if number > 1:
                        logger.warning("judge_retry", candidate_id=candidate.id, attempt=number)
                    response = self.llm.call_structured(
                        prompt, JudgeResponse, system=JUDGE_SYSTEM_PROMPT
                    )
                    verdict = self._to_verdict(response, allowed, number)
        except Exception as e:
            logger.error(
                "judge_failed",
                candidate_id=candidate.id,
                attempts=self.max_attempts,
                error=str(e),
            )
            raise JudgeUnavailable(
                f"Judge failed after {self.max_attempts} attempt(s): {e}",
                attempts=self.max_attempts,
            ) from e

        logger.info(
            "judge_verdict",
            candidate_id=candidate.id,
            decision=verdict.decision.value,
            matched_article_id=verdict.matched_article_id,
            attempts=verdict.attempts,
        )
        return verdict

    @staticmethod
    def _to_verdict(response: JudgeResponse, allowed: list[str], attempts: int) -> JudgeVerdict:
        """Check the matched id names one of the escalated articles."""
        matched = None
        if response.decision is not JudgeDecision.DISTINCT:
            matched = response.matched_article_id or allowed[0]
            if matched not in allowed:
                raise ValueError(f"Judge matched unknown article {matched!r}")

        return JudgeVerdict(
            decision=response.decision,
            matched_article_id=matched,
            rationale=response.reasoning.strip() or "No reasoning provided",
            update=response.update if response.decision is JudgeDecision.UPDATE else None,
            attempts=attempts,
        )

    @staticmethod
    def _build_prompt(candidate: Candidate, articles: list[ArticleRecord]) -> str:
        existing = "\n\n---\n\n".join(
            EXISTING_ARTICLE_TEMPLATE.format(
                id=a.id,
                published=a.published_at.date().isoformat(),
                headline=a.headline,
                summary=a.summary,
                full_report=a.full_report[:REPORT_CHAR_LIMIT],
            )
            for a in articles
        )
        sources = "\n".join(
            f"  {i}. {s.title}\n     {s.url}" for i, s in enumerate(candidate.sources[:5], 1)
        ) or "  None available"

        return JUDGE_PROMPT.format(
            existing_articles=existing,
            incoming_date=candidate.published_at.date().isoformat(),
            incoming_headline=candidate.headline,
            incoming_summary=candidate.summary,
            incoming_report=candidate.full_report[:REPORT_CHAR_LIMIT],
            incoming_sources=sources,
        )
