"""
ArticleStore: the single writer of corpus state.

Every public write runs in one session, which the engine opens with
BEGIN IMMEDIATE, so an article row, its facets, its FTS5 row and the
candidate's resolution record commit together or not at all.
"""

import re
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Generator

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from src.db.connection import default_session_factory, get_session
from src.db.models import (
    ArticleRecord,
    ArticleUpdate,
    Candidate,
    EntityMatch,
    Resolution,
    ResolutionRecord,
    Source,
    as_utc,
    utcnow,
)
from src.db.repository import ArticleRepository, ResolutionRepository
from src.errors import ArticleNotFound, ConflictingMerge, ResolutionError, StoreUnavailable
from src.logger import get_logger

logger = get_logger(__name__)

SLUG_MAX_LENGTH = 80


def slugify(text: str) -> str:
    """Lowercase, hyphenated, at most SLUG_MAX_LENGTH characters."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:SLUG_MAX_LENGTH].rstrip("-")


def _is_lock_error(error: OperationalError) -> bool:
    return "locked" in str(error.orig).lower()


class ArticleStore:
    def __init__(self, session_factory: sessionmaker | None = None):
        self.session_factory = session_factory or default_session_factory()

    @contextmanager
    def _transaction(self, conflict_target: str | None = None) -> Generator[Session, None, None]:
        """
        One atomic unit of work.

        A lock timeout on a write aimed at `conflict_target` is reported as
        ConflictingMerge; any other database failure as StoreUnavailable.
        """
        try:
            with get_session(self.session_factory) as session:
                yield session
        except ResolutionError:
            raise
        except OperationalError as e:
            if conflict_target is not None and _is_lock_error(e):
                logger.warning("store_lock_timeout", target_id=conflict_target)
                raise ConflictingMerge(conflict_target, "article locked past busy timeout") from e
            logger.error("store_unavailable", error=str(e))
            raise StoreUnavailable(str(e)) from e
        except SQLAlchemyError as e:
            logger.error("store_write_refused", error=str(e))
            raise StoreUnavailable(str(e)) from e

    # Reads

    def get_recent_articles(
        self, window: timedelta, now: datetime | None = None
    ) -> list[ArticleRecord]:
        """Articles published within the trailing `window` up to `now`, newest first."""
        until = as_utc(now or utcnow())
        with self._transaction() as session:
            return ArticleRepository(session).recent(until - window, until)

    def get_articles_by_entities(
        self,
        entity_names: set[str],
        cve_ids: set[str],
        window: timedelta,
        now: datetime | None = None,
    ) -> dict[str, EntityMatch]:
        """
        Articles in the trailing window up to `now` sharing at least one entity or CVE.

        Entity names compare case-insensitively; the returned matched names
        are spelled as the caller gave them.
        """
        if not entity_names and not cve_ids:
            return {}

        until = as_utc(now or utcnow())
        since = until - window
        spelled = {n.lower(): n for n in entity_names}
        matches: dict[str, EntityMatch] = {}

        with self._transaction() as session:
            repo = ArticleRepository(session)
            entity_rows = repo.match_entities(list(entity_names), since, until) if entity_names else []
            cve_rows = repo.match_cves(list(cve_ids), since, until) if cve_ids else []

        for r in entity_rows:
            m = matches.setdefault(
                r.article_id, EntityMatch(article_id=r.article_id, published_at=r.published_at)
            )
            m.matched_entities.add(spelled.get(r.entity_name.lower(), r.entity_name))
        for r in cve_rows:
            m = matches.setdefault(
                r.article_id, EntityMatch(article_id=r.article_id, published_at=r.published_at)
            )
            m.matched_cves.add(r.cve_id)

        logger.debug(
            "entity_lookup",
            entity_hits=len(entity_rows),
            cve_hits=len(cve_rows),
            articles=len(matches),
        )
        return matches

    def search_fulltext(
        self,
        match_query: str,
        article_ids: list[str],
        weights: tuple[float, float, float],
    ) -> list[tuple[str, float]]:
        with self._transaction() as session:
            return ArticleRepository(session).search_fulltext(match_query, article_ids, weights)

    def get_article(self, article_id: str) -> ArticleRecord | None:
        with self._transaction() as session:
            return ArticleRepository(session).get(article_id)

    def get_articles(self, article_ids: list[str]) -> list[ArticleRecord]:
        """Articles in the order the ids were given; unknown ids are dropped."""
        with self._transaction() as session:
            found = {a.id: a for a in ArticleRepository(session).get_many(article_ids)}
        return [found[i] for i in article_ids if i in found]

    def get_facets(self, article_id: str) -> tuple[set[str], set[str]]:
        """(entity names, CVE ids) linked to an article."""
        with self._transaction() as session:
            repo = ArticleRepository(session)
            return repo.entity_names(article_id), repo.cve_ids(article_id)

    def get_sources(self, article_id: str) -> list[Source]:
        with self._transaction() as session:
            return ArticleRepository(session).sources(article_id)

    def get_updates(self, article_id: str) -> list[dict]:
        with self._transaction() as session:
            return ArticleRepository(session).updates(article_id)

    def count_articles(self) -> int:
        with self._transaction() as session:
            return ArticleRepository(session).count()

    def get_resolution(self, candidate_id: str) -> ResolutionRecord | None:
        with self._transaction() as session:
            return ResolutionRepository(session).get(candidate_id)

    def list_resolutions(self) -> list[ResolutionRecord]:
        with self._transaction() as session:
            return ResolutionRepository(session).fetch_all()

    def resolution_stats(self) -> dict[str, int]:
        with self._transaction() as session:
            return ResolutionRepository(session).counts()

    # Writes

    def create_article(self, candidate: Candidate, record: ResolutionRecord) -> ArticleRecord:
        """Insert a NEW candidate as an article, with facets, FTS5 row and record."""
        if record.resolution is not Resolution.NEW:
            raise ValueError(f"create_article needs a NEW record, got {record.resolution.value}")
        if record.candidate_id != candidate.id:
            raise ValueError("record does not belong to this candidate")

        now = utcnow()
        with self._transaction() as session:
            repo = ArticleRepository(session)
            slug = self._unique_slug(repo, candidate)
            repo.insert(candidate, slug, now, record.similarity_score)
            repo.insert_entities(candidate.id, candidate.entities)
            repo.insert_cves(candidate.id, candidate.cves)
            repo.insert_sources(candidate.id, candidate.sources)
            repo.index_fulltext(
                candidate.id, candidate.headline, candidate.summary, candidate.full_report
            )
            ResolutionRepository(session).save(record)
            article = repo.get(candidate.id)

        logger.info("article_created", article_id=candidate.id, slug=slug)
        return article

    def merge_into_article(
        self, target_id: str, update: ArticleUpdate, record: ResolutionRecord
    ) -> int:
        """
        Append an update event, sources and facets to `target_id`.

        :return: id of the article_updates row
        :raises ArticleNotFound: target no longer exists
        """
        if record.resolution is not Resolution.SKIP_UPDATE:
            raise ValueError(f"merge_into_article needs a SKIP-UPDATE record, got {record.resolution.value}")
        if record.matched_article_id != target_id:
            raise ValueError("record is matched to a different article")

        now = utcnow()
        with self._transaction(conflict_target=target_id) as session:
            repo = ArticleRepository(session)
            article = repo.get(target_id)
            if article is None:
                raise ArticleNotFound(target_id)

            update_id = repo.insert_update(
                target_id,
                record.candidate_id,
                update.occurred_at,
                update.summary,
                update.content,
                update.severity_change.value,
                now,
            )
            sources_added = repo.insert_sources(target_id, update.sources)
            repo.insert_entities(target_id, update.entities)
            repo.insert_cves(target_id, update.cves)
            repo.touch(target_id, now)

            update_text = "\n\n".join(
                f"{u['summary']}\n{u['content']}" for u in repo.updates(target_id)
            )
            repo.index_fulltext(
                target_id,
                article.headline,
                article.summary,
                f"{article.full_report}\n\n{update_text}",
            )
            ResolutionRepository(session).save(record)

        logger.info(
            "article_merged",
            article_id=target_id,
            update_id=update_id,
            sources_added=sources_added,
            candidate_id=record.candidate_id,
        )
        return update_id

    def attach_sources(
        self, target_id: str, sources: list[Source], record: ResolutionRecord
    ) -> int:
        """
        Link a duplicate's sources to the article it duplicates.

        The target's modification time is left alone.
        """
        if record.resolution not in (Resolution.SKIP_FTS5, Resolution.SKIP_LLM):
            raise ValueError(f"attach_sources needs a duplicate record, got {record.resolution.value}")
        if record.matched_article_id != target_id:
            raise ValueError("record is matched to a different article")

        with self._transaction(conflict_target=target_id) as session:
            repo = ArticleRepository(session)
            if not repo.exists(target_id):
                raise ArticleNotFound(target_id)
            added = repo.insert_sources(target_id, sources)
            ResolutionRepository(session).save(record)

        if added:
            logger.info("sources_attached", article_id=target_id, added=added)
        return added

    @staticmethod
    def _unique_slug(repo: ArticleRepository, candidate: Candidate) -> str:
        base = slugify(candidate.headline) or f"article-{candidate.id[:8]}"
        slug, n = base, 1
        while repo.slug_exists(slug):
            n += 1
            slug = f"{base}-{n}"
        return slug
