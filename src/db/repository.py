"""Repository layer: all SQL operations isolated here"""

from datetime import datetime

from sqlalchemy import bindparam, text
from sqlalchemy.orm import Session

from src.db.models import (
    ArticleRecord,
    Candidate,
    Cve,
    Entity,
    ResolutionRecord,
    Source,
    as_utc,
)
from src.logger import get_logger

logger = get_logger(__name__)

ARTICLE_COLUMNS = (
    "id, slug, headline, summary, full_report, published_at, created_at, "
    "updated_at, update_count, resolution, similarity_score"
)


def to_db_time(value: datetime) -> str:
    """Fixed-width UTC ISO string so that text comparison orders by time."""
    return as_utc(value).isoformat(timespec="microseconds")


class ArticleRepository:
    """
    Repository for article rows, their facets and the full-text index.
    """

    def __init__(self, session: Session):
        self.session = session

    def insert(
        self,
        candidate: Candidate,
        slug: str,
        now: datetime,
        similarity_score: float | None,
    ) -> str:
        self.session.execute(
            text(
                "INSERT INTO articles (id, slug, headline, summary, full_report, "
                "published_at, created_at, updated_at, similarity_score) "
                "VALUES (:id, :slug, :headline, :summary, :full_report, "
                ":published_at, :now, :now, :similarity_score)"
            ),
            {
                "id": candidate.id,
                "slug": slug,
                "headline": candidate.headline,
                "summary": candidate.summary,
                "full_report": candidate.full_report,
                "published_at": to_db_time(candidate.published_at),
                "now": to_db_time(now),
                "similarity_score": similarity_score,
            },
        )
        return candidate.id

    def exists(self, article_id: str) -> bool:
        row = self.session.execute(
            text("SELECT 1 FROM articles WHERE id = :id"), {"id": article_id}
        ).first()
        return row is not None

    def slug_exists(self, slug: str) -> bool:
        row = self.session.execute(
            text("SELECT 1 FROM articles WHERE slug = :slug"), {"slug": slug}
        ).first()
        return row is not None

    def count(self) -> int:
        return self.session.execute(text("SELECT COUNT(*) FROM articles")).scalar_one()

    def get(self, article_id: str) -> ArticleRecord | None:
        row = self.session.execute(
            text(f"SELECT {ARTICLE_COLUMNS} FROM articles WHERE id = :id"),
            {"id": article_id},
        ).mappings().first()
        return ArticleRecord.model_validate(dict(row)) if row else None

    def get_many(self, article_ids: list[str]) -> list[ArticleRecord]:
        if not article_ids:
            return []
        stmt = text(
            f"SELECT {ARTICLE_COLUMNS} FROM articles WHERE id IN :ids"
        ).bindparams(bindparam("ids", expanding=True))
        rows = self.session.execute(stmt, {"ids": list(article_ids)}).mappings()
        return [ArticleRecord.model_validate(dict(r)) for r in rows]

    def recent(self, since: datetime, until: datetime) -> list[ArticleRecord]:
        """Articles published in [since, until], newest first."""
        rows = self.session.execute(
            text(
                f"SELECT {ARTICLE_COLUMNS} FROM articles "
                "WHERE published_at >= :since AND published_at <= :until "
                "ORDER BY published_at DESC, id"
            ),
            {"since": to_db_time(since), "until": to_db_time(until)},
        ).mappings()
        return [ArticleRecord.model_validate(dict(r)) for r in rows]

    def insert_entities(self, article_id: str, entities: list[Entity]) -> int:
        added = 0
        for e in entities:
            result = self.session.execute(
                text(
                    "INSERT OR IGNORE INTO article_entities (article_id, entity_name, entity_type) "
                    "VALUES (:article_id, :name, :type)"
                ),
                {"article_id": article_id, "name": e.name, "type": e.type},
            )
            added += result.rowcount
        return added

    def insert_cves(self, article_id: str, cves: list[Cve]) -> int:
        added = 0
        for c in cves:
            result = self.session.execute(
                text(
                    "INSERT OR IGNORE INTO article_cves (article_id, cve_id, severity, cvss_score, kev) "
                    "VALUES (:article_id, :cve_id, :severity, :score, :kev)"
                ),
                {
                    "article_id": article_id,
                    "cve_id": c.id,
                    "severity": c.severity,
                    "score": c.score,
                    "kev": int(c.kev),
                },
            )
            added += result.rowcount
        return added

    def insert_sources(self, article_id: str, sources: list[Source]) -> int:
        """Add sources not already linked, keyed on url + website."""
        existing = {
            (r.url, r.website or "")
            for r in self.session.execute(
                text("SELECT url, website FROM article_sources WHERE article_id = :id"),
                {"id": article_id},
            )
        }
        added = 0
        for s in sources:
            key = (s.url, s.website or "")
            if key in existing:
                continue
            self.session.execute(
                text(
                    "INSERT INTO article_sources (article_id, url, title, website, date) "
                    "VALUES (:article_id, :url, :title, :website, :date)"
                ),
                {"article_id": article_id, **s.model_dump()},
            )
            existing.add(key)
            added += 1
        return added

    def entity_names(self, article_id: str) -> set[str]:
        rows = self.session.execute(
            text("SELECT entity_name FROM article_entities WHERE article_id = :id"),
            {"id": article_id},
        )
        return {r.entity_name for r in rows}

    def cve_ids(self, article_id: str) -> set[str]:
        rows = self.session.execute(
            text("SELECT cve_id FROM article_cves WHERE article_id = :id"),
            {"id": article_id},
        )
        return {r.cve_id for r in rows}

    def sources(self, article_id: str) -> list[Source]:
        rows = self.session.execute(
            text(
                "SELECT url, title, website, date FROM article_sources "
                "WHERE article_id = :id ORDER BY id"
            ),
            {"id": article_id},
        ).mappings()
        return [Source.model_validate(dict(r)) for r in rows]

    def match_entities(self, names: list[str], since: datetime, until: datetime) -> list:
        """Rows of (article_id, published_at, entity_name) sharing any name."""
        stmt = text(
            "SELECT DISTINCT e.article_id, a.published_at, e.entity_name "
            "FROM article_entities e JOIN articles a ON a.id = e.article_id "
            "WHERE e.entity_name IN :names "
            "AND a.published_at >= :since AND a.published_at <= :until"
        ).bindparams(bindparam("names", expanding=True))
        return self.session.execute(
            stmt,
            {"names": list(names), "since": to_db_time(since), "until": to_db_time(until)},
        ).fetchall()

    def match_cves(self, cve_ids: list[str], since: datetime, until: datetime) -> list:
        """Rows of (article_id, published_at, cve_id) sharing any CVE."""
        stmt = text(
            "SELECT c.article_id, a.published_at, c.cve_id "
            "FROM article_cves c JOIN articles a ON a.id = c.article_id "
            "WHERE c.cve_id IN :cve_ids "
            "AND a.published_at >= :since AND a.published_at <= :until"
        ).bindparams(bindparam("cve_ids", expanding=True))
        return self.session.execute(
            stmt,
            {"cve_ids": list(cve_ids), "since": to_db_time(since), "until": to_db_time(until)},
        ).fetchall()

    def index_fulltext(
        self, article_id: str, headline: str, summary: str, full_report: str
    ) -> None:
        """Replace the article's FTS5 row."""
        self.session.execute(
            text("DELETE FROM articles_fts WHERE article_id = :id"), {"id": article_id}
        )
        self.session.execute(
            text(
                "INSERT INTO articles_fts (article_id, headline, summary, full_report) "
                "VALUES (:id, :headline, :summary, :full_report)"
            ),
            {
                "id": article_id,
                "headline": headline,
                "summary": summary,
                "full_report": full_report,
            },
        )

    def search_fulltext(
        self,
        match_query: str,
        article_ids: list[str],
        weights: tuple[float, float, float],
    ) -> list[tuple[str, float]]:
        """BM25 via FTS5, restricted to `article_ids`. Lower bm25 = closer."""
        if not match_query or not article_ids:
            return []
        stmt = text(
            "SELECT article_id, bm25(articles_fts, 0.0, :w_headline, :w_summary, :w_report) AS bm25_score "
            "FROM articles_fts "
            "WHERE articles_fts MATCH :query AND article_id IN :ids "
            "ORDER BY bm25_score"
        ).bindparams(bindparam("ids", expanding=True))
        rows = self.session.execute(
            stmt,
            {
                "query": match_query,
                "ids": list(article_ids),
                "w_headline": weights[0],
                "w_summary": weights[1],
                "w_report": weights[2],
            },
        ).fetchall()
        return [(r.article_id, float(r.bm25_score)) for r in rows]

    def insert_update(
        self,
        article_id: str,
        candidate_id: str,
        occurred_at: datetime,
        summary: str,
        content: str,
        severity_change: str,
        now: datetime,
    ) -> int:
        result = self.session.execute(
            text(
                "INSERT INTO article_updates "
                "(article_id, candidate_id, occurred_at, summary, content, severity_change, created_at) "
                "VALUES (:article_id, :candidate_id, :occurred_at, :summary, :content, :severity_change, :now) "
                "RETURNING id"
            ),
            {
                "article_id": article_id,
                "candidate_id": candidate_id,
                "occurred_at": to_db_time(occurred_at),
                "summary": summary,
                "content": content,
                "severity_change": severity_change,
                "now": to_db_time(now),
            },
        )
        return result.scalar_one()

    def updates(self, article_id: str) -> list[dict]:
        rows = self.session.execute(
            text(
                "SELECT id, candidate_id, occurred_at, summary, content, severity_change "
                "FROM article_updates WHERE article_id = :id ORDER BY id"
            ),
            {"id": article_id},
        ).mappings()
        return [dict(r) for r in rows]

    def touch(self, article_id: str, updated_at: datetime) -> int:
        result = self.session.execute(
            text(
                "UPDATE articles SET updated_at = :updated_at, "
                "update_count = update_count + 1 WHERE id = :id"
            ),
            {"id": article_id, "updated_at": to_db_time(updated_at)},
        )
        return result.rowcount


class ResolutionRepository:
    def __init__(self, session: Session):
        self.session = session

    def save(self, record: ResolutionRecord) -> int:
        result = self.session.execute(
            text(
                "INSERT INTO resolutions "
                "(candidate_id, resolution, similarity_score, matched_article_id, "
                "skip_reasoning, resolution_method, created_at) "
                "VALUES (:candidate_id, :resolution, :similarity_score, :matched_article_id, "
                ":skip_reasoning, :resolution_method, :created_at) "
                "RETURNING id"
            ),
            {
                "candidate_id": record.candidate_id,
                "resolution": record.resolution.value,
                "similarity_score": record.similarity_score,
                "matched_article_id": record.matched_article_id,
                "skip_reasoning": record.skip_reasoning,
                "resolution_method": record.resolution_method,
                "created_at": to_db_time(record.created_at),
            },
        )
        return result.scalar_one()

    def get(self, candidate_id: str) -> ResolutionRecord | None:
        row = self.session.execute(
            text(
                "SELECT candidate_id, resolution, similarity_score, matched_article_id, "
                "skip_reasoning, resolution_method, created_at "
                "FROM resolutions WHERE candidate_id = :candidate_id"
            ),
            {"candidate_id": candidate_id},
        ).mappings().first()
        return ResolutionRecord.model_validate(dict(row)) if row else None

    def fetch_all(self) -> list[ResolutionRecord]:
        """Retrieve all recorded resolutions, most recent first."""
        rows = self.session.execute(
            text(
                "SELECT candidate_id, resolution, similarity_score, matched_article_id, "
                "skip_reasoning, resolution_method, created_at "
                "FROM resolutions ORDER BY created_at DESC, id DESC"
            )
        ).mappings()
        return [ResolutionRecord.model_validate(dict(r)) for r in rows]

    def counts(self) -> dict[str, int]:
        rows = self.session.execute(
            text("SELECT resolution, COUNT(*) AS n FROM resolutions GROUP BY resolution")
        )
        return {r.resolution: r.n for r in rows}
