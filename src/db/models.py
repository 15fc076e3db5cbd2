"""Database domain models."""

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Entity(BaseModel):
    name: str = Field(..., min_length=1)
    type: str = "other"

    model_config = {"frozen": True}

    @field_validator("name", mode="before")
    @classmethod
    def _strip(cls, v):
        return v.strip() if isinstance(v, str) else v


class Cve(BaseModel):
    id: str = Field(..., pattern=r"(?i)^CVE-\d{4}-\d{4,}$")
    severity: str | None = None
    score: float | None = Field(None, ge=0.0, le=10.0)
    kev: bool = False

    model_config = {"frozen": True}

    @field_validator("id", mode="before")
    @classmethod
    def _upper(cls, v):
        return v.strip().upper() if isinstance(v, str) else v


class Source(BaseModel):
    url: str = "unknown"
    title: str = "Source not available"
    website: str | None = None
    date: str | None = None

    model_config = {"frozen": True}


class Candidate(BaseModel):
    """A newly extracted article awaiting resolution."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    headline: str = ""
    summary: str = ""
    full_report: str = ""
    entities: list[Entity] = Field(default_factory=list)
    cves: list[Cve] = Field(default_factory=list)
    sources: list[Source] = Field(default_factory=list)
    published_at: datetime = Field(default_factory=utcnow)

    @field_validator("published_at")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return as_utc(v)

    def entity_names(self, excluded_types: frozenset[str] = frozenset()) -> set[str]:
        return {e.name for e in self.entities if e.type not in excluded_types}

    def cve_ids(self) -> set[str]:
        return {c.id for c in self.cves}

    def has_text(self) -> bool:
        return any(t.strip() for t in (self.headline, self.summary, self.full_report))

    def is_empty(self) -> bool:
        return not self.entities and not self.cves and not self.has_text()


class ArticleRecord(BaseModel):
    """An article row returned from the database."""

    id: str
    slug: str
    headline: str
    summary: str
    full_report: str
    published_at: datetime
    created_at: datetime
    updated_at: datetime
    update_count: int = 0
    resolution: str = "NEW"
    similarity_score: float | None = None

    model_config = {"frozen": True}


class EntityMatch(BaseModel):
    """Which of a candidate's entities/CVEs an existing article shares."""

    article_id: str
    published_at: datetime
    matched_entities: set[str] = Field(default_factory=set)
    matched_cves: set[str] = Field(default_factory=set)


class SeverityChange(str, Enum):
    INCREASED = "increased"
    DECREASED = "decreased"
    UNCHANGED = "unchanged"
    UNKNOWN = "unknown"


class ArticleUpdate(BaseModel):
    """Payload merged into an existing article on SKIP-UPDATE."""

    occurred_at: datetime = Field(default_factory=utcnow)
    summary: str = "Additional details provided"
    content: str = ""
    sources: list[Source] = Field(default_factory=list)
    severity_change: SeverityChange = SeverityChange.UNKNOWN
    entities: list[Entity] = Field(default_factory=list)
    cves: list[Cve] = Field(default_factory=list)

    @field_validator("occurred_at")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return as_utc(v)


class Resolution(str, Enum):
    NEW = "NEW"
    SKIP_FTS5 = "SKIP-FTS5"
    SKIP_LLM = "SKIP-LLM"
    SKIP_UPDATE = "SKIP-UPDATE"


class ResolutionRecord(BaseModel):
    """Outcome of one candidate pass. Written once, never edited."""

    candidate_id: str
    resolution: Resolution
    similarity_score: float | None = None
    matched_article_id: str | None = None
    skip_reasoning: str | None = None
    resolution_method: str = Field("automatic", pattern="^(automatic|llm)$")
    created_at: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_invariants(self) -> "ResolutionRecord":
        if self.resolution is Resolution.NEW:
            if self.matched_article_id is not None:
                raise ValueError("NEW resolution must not reference a matched article")
        else:
            if not self.matched_article_id:
                raise ValueError(f"{self.resolution.value} requires matched_article_id")
            if not (self.skip_reasoning or "").strip():
                raise ValueError(f"{self.resolution.value} requires skip_reasoning")
            if self.similarity_score is None:
                raise ValueError(f"{self.resolution.value} requires similarity_score")
        return self
