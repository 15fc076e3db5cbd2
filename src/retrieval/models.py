"""Retrieval domain models."""

from datetime import datetime

from pydantic import BaseModel


class CandidateEntry(BaseModel):
    """
    One shortlist row for a single candidate.

    Created by CandidateIndex with an overlap score (or with 0.0 when it
    comes from the recent-article fallback window), then enriched by
    SimilarityIndex with the field-weighted text score.
    """

    article_id: str
    published_at: datetime
    overlap_score: float = 0.0
    matched_entities: frozenset[str] = frozenset()
    matched_cves: frozenset[str] = frozenset()
    similarity_score: float | None = None
    headline: str = ""
    from_fallback: bool = False

    model_config = {"frozen": True}
