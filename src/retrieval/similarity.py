"""
Similarity index: field-weighted BM25 over the FTS5 table.

Each candidate-vs-article score is bm25() with per-column weights
(headline 10, summary 5, full report 1 by default), so a near-identical
headline outweighs diverging body text. FTS5 returns lower-is-better
negative values; scores here are their magnitude, higher = closer.

The query is an OR of every distinct word (3+ characters) of the
candidate's text, so articles sharing more terms rank higher instead of
an implicit AND requiring all of them.
"""

import re
from datetime import datetime, timedelta

from src.config.settings import ResolutionConfig
from src.db.models import Candidate
from src.db.store import ArticleStore
from src.retrieval.models import CandidateEntry
from src.logger import get_logger

logger = get_logger(__name__)

MIN_TERM_LENGTH = 3


def build_match_query(*texts: str) -> str:
    """FTS5 MATCH expression: quoted distinct terms joined with OR."""
    words = re.sub(r"[^\w\s]", " ", " ".join(texts).lower()).split()
    terms = dict.fromkeys(w for w in words if len(w) >= MIN_TERM_LENGTH)
    return " OR ".join(f'"{t}"' for t in terms)


class SimilarityIndex:
    def __init__(self, store: ArticleStore, config: ResolutionConfig | None = None):
        self.store = store
        self.config = config or ResolutionConfig.from_settings()

    def rank(self, candidate: Candidate, entries: list[CandidateEntry]) -> list[CandidateEntry]:
        """
        Score each entry against the candidate's text.

        Entries the query does not match at all score 0.0. Sorted by score,
        then most recent publish time.
        """
        if not entries:
            return []

        query = build_match_query(candidate.headline, candidate.summary, candidate.full_report)
        hits = dict(
            self.store.search_fulltext(
                query, [e.article_id for e in entries], self.config.field_weights
            )
        )

        ranked = [
            e.model_copy(update={"similarity_score": max(0.0, -hits.get(e.article_id, 0.0))})
            for e in entries
        ]
        ranked.sort(key=lambda e: (e.similarity_score, e.published_at), reverse=True)

        logger.info(
            "similarity_ranked",
            candidate_id=candidate.id,
            scored=len(ranked),
            matched=len(hits),
            top_score=round(ranked[0].similarity_score, 3),
            top_article=ranked[0].article_id,
        )
        return ranked

    def fallback_entries(
        self, candidate: Candidate, now: datetime | None = None
    ) -> list[CandidateEntry]:
        """Every article in the recent window, for candidates with no overlap shortlist."""
        window = timedelta(days=self.config.fallback_window_days)
        recent = self.store.get_recent_articles(window, now=now or candidate.published_at)
        entries = [
            CandidateEntry(
                article_id=a.id,
                published_at=a.published_at,
                headline=a.headline,
                from_fallback=True,
            )
            for a in recent
            if a.id != candidate.id
        ]
        logger.info("similarity_fallback", candidate_id=candidate.id, window_days=window.days, size=len(entries))
        return entries
