"""Database engine, session management and schema initialization."""

from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session

from src.config.settings import settings
from src.logger import get_logger


logger = get_logger(__name__)

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS articles (
        id TEXT PRIMARY KEY,
        slug TEXT NOT NULL UNIQUE,
        headline TEXT NOT NULL,
        summary TEXT NOT NULL DEFAULT '',
        full_report TEXT NOT NULL DEFAULT '',
        published_at TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        update_count INTEGER NOT NULL DEFAULT 0,
        resolution TEXT NOT NULL DEFAULT 'NEW' CHECK (resolution = 'NEW'),
        similarity_score REAL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_articles_published_at ON articles(published_at)",
    """
    CREATE TABLE IF NOT EXISTS article_entities (
        article_id TEXT NOT NULL REFERENCES articles(id) ON DELETE CASCADE,
        entity_name TEXT NOT NULL COLLATE NOCASE,
        entity_type TEXT NOT NULL,
        PRIMARY KEY (article_id, entity_name, entity_type)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_article_entities_name ON article_entities(entity_name)",
    """
    CREATE TABLE IF NOT EXISTS article_cves (
        article_id TEXT NOT NULL REFERENCES articles(id) ON DELETE CASCADE,
        cve_id TEXT NOT NULL,
        severity TEXT,
        cvss_score REAL,
        kev INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (article_id, cve_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_article_cves_cve_id ON article_cves(cve_id)",
    """
    CREATE TABLE IF NOT EXISTS article_sources (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        article_id TEXT NOT NULL REFERENCES articles(id) ON DELETE CASCADE,
        url TEXT NOT NULL,
        title TEXT NOT NULL,
        website TEXT,
        date TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_article_sources_article ON article_sources(article_id)",
    """
    CREATE TABLE IF NOT EXISTS article_updates (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        article_id TEXT NOT NULL REFERENCES articles(id) ON DELETE CASCADE,
        candidate_id TEXT NOT NULL,
        occurred_at TEXT NOT NULL,
        summary TEXT NOT NULL,
        content TEXT NOT NULL,
        severity_change TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_article_updates_article ON article_updates(article_id)",
    """
    CREATE TABLE IF NOT EXISTS resolutions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        candidate_id TEXT NOT NULL UNIQUE,
        resolution TEXT NOT NULL
            CHECK (resolution IN ('NEW', 'SKIP-FTS5', 'SKIP-LLM', 'SKIP-UPDATE')),
        similarity_score REAL,
        matched_article_id TEXT REFERENCES articles(id),
        skip_reasoning TEXT,
        resolution_method TEXT NOT NULL,
        created_at TEXT NOT NULL,
        CHECK ((resolution = 'NEW') = (matched_article_id IS NULL))
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_resolutions_matched ON resolutions(matched_article_id)",
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS articles_fts USING fts5(
        article_id UNINDEXED,
        headline,
        summary,
        full_report,
        tokenize = 'porter unicode61 remove_diacritics 1'
    )
    """,
]


def create_db_engine(url: str | None = None) -> Engine:
    """
    Build a SQLite engine whose transactions all open with BEGIN IMMEDIATE.

    pysqlite's own transaction handling is switched off so the writer lock is
    taken at the start of every session, which serializes concurrent
    pipeline runs on the same database file.
    """
    url = url or settings.database_url
    db_path = url.removeprefix("sqlite:///")
    if db_path != url and db_path and db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(
        url,
        connect_args={
            "timeout": settings.db_busy_timeout_seconds,
            "check_same_thread": False,
        },
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


_default_factory: sessionmaker | None = None


def default_session_factory() -> sessionmaker:
    global _default_factory
    if _default_factory is None:
        _default_factory = make_session_factory(create_db_engine())
    return _default_factory


@contextmanager
def get_session(factory: sessionmaker | None = None) -> Generator[Session, None, None]:
    """
    Context manager for database sessions.

    :param factory: Session factory, the settings database when omitted
    :return: Database session generator
    """
    session = (factory or default_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_schema(factory: sessionmaker | None = None) -> None:
    """Create tables, indexes and the FTS5 table if they do not exist."""
    with get_session(factory) as session:
        for statement in SCHEMA_STATEMENTS:
            session.execute(text(statement))

    logger.info("schema_initialized", tables=len(SCHEMA_STATEMENTS))


def check_connection(factory: sessionmaker | None = None) -> bool:
    try:
        with get_session(factory) as session:
            session.execute(text("SELECT 1"))
            options = {
                row[0] for row in session.execute(text("PRAGMA compile_options"))
            }
        if "ENABLE_FTS5" not in options:
            logger.error("database_failed", error="SQLite build lacks FTS5")
            return False
        logger.info("database_ok")
        return True
    except SQLAlchemyError as e:
        logger.error("database_failed", error=str(e))
        return False
