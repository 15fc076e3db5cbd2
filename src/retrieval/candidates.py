"""
Candidate index: exact entity/CVE overlap.

The cheap first filter. A CVE shared with an existing article is a much
stronger sign of "same underlying event" than a shared vendor or product
name, so overlap is a weighted count:

    overlap = cve_weight * |shared CVEs| + entity_weight * |shared entities|
"""

from datetime import datetime, timedelta

from src.config.settings import ResolutionConfig
from src.db.models import Candidate
from src.db.store import ArticleStore
from src.retrieval.models import CandidateEntry
from src.logger import get_logger

logger = get_logger(__name__)


class CandidateIndex:
    def __init__(self, store: ArticleStore, config: ResolutionConfig | None = None):
        self.store = store
        self.config = config or ResolutionConfig.from_settings()

    def shortlist(
        self, candidate: Candidate, now: datetime | None = None
    ) -> list[CandidateEntry]:
        """Articles in the lookback window sharing an entity or CVE, best first."""
        names = candidate.entity_names(self.config.excluded_entity_types)
        cves = candidate.cve_ids()
        if not names and not cves:
            logger.info("candidate_shortlist", candidate_id=candidate.id, reason="no_facets", size=0)
            return []

        matches = self.store.get_articles_by_entities(
            names,
            cves,
            timedelta(days=self.config.lookback_days),
            now=now or candidate.published_at,
        )

        entries = [
            CandidateEntry(
                article_id=m.article_id,
                published_at=m.published_at,
                overlap_score=self.overlap_score(len(m.matched_cves), len(m.matched_entities)),
                matched_entities=frozenset(m.matched_entities),
                matched_cves=frozenset(m.matched_cves),
            )
            for m in matches.values()
            if m.article_id != candidate.id
        ]
        entries.sort(key=lambda e: (e.overlap_score, e.published_at), reverse=True)
        entries = entries[: self.config.candidate_limit]

        logger.info(
            "candidate_shortlist",
            candidate_id=candidate.id,
            entities=len(names),
            cves=len(cves),
            size=len(entries),
            top_overlap=entries[0].overlap_score if entries else None,
        )
        return entries

    def overlap_score(self, cve_matches: int, entity_matches: int) -> float:
        return self.config.cve_weight * cve_matches + self.config.entity_weight * entity_matches
