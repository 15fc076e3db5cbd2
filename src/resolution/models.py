"""Resolution domain models."""

from enum import Enum

from pydantic import BaseModel, Field

from src.db.models import ResolutionRecord, SeverityChange, Source
from src.retrieval.models import CandidateEntry


class DecisionKind(str, Enum):
    NEW = "NEW"
    DUPLICATE = "DUPLICATE"
    ESCALATE = "ESCALATE"


class Decision(BaseModel):
    """Tagged outcome of the threshold step, before any Judge call."""

    kind: DecisionKind
    top: CandidateEntry | None = None
    escalated: list[CandidateEntry] = Field(default_factory=list)

    model_config = {"frozen": True}

    @property
    def score(self) -> float | None:
        return self.top.similarity_score if self.top else None


class JudgeDecision(str, Enum):
    DISTINCT = "distinct"
    DUPLICATE = "duplicate"
    UPDATE = "update"


class JudgeUpdate(BaseModel):
    """What a follow-up article adds to the story it updates."""

    occurred_at: str | None = Field(None, alias="datetime")
    summary: str = "Additional details provided"
    content: str = ""
    sources: list[Source] = Field(default_factory=list)
    severity_change: SeverityChange = SeverityChange.UNKNOWN

    model_config = {"populate_by_name": True}


class JudgeResponse(BaseModel):
    """LLM judge output."""

    decision: JudgeDecision
    matched_article_id: str | None = None
    reasoning: str = ""
    update: JudgeUpdate | None = None


class JudgeVerdict(BaseModel):
    """Validated Judge answer handed to the policy."""

    decision: JudgeDecision
    matched_article_id: str | None = None
    rationale: str = ""
    update: JudgeUpdate | None = None
    attempts: int = 1


class ResolutionResult(BaseModel):
    """What the orchestrator gets back for one candidate."""

    candidate_id: str
    status: str = Field("resolved", pattern="^(resolved|rejected)$")
    record: ResolutionRecord | None = None
    article_id: str | None = None
    judge_called: bool = False
    judge_error: str | None = None
    conflict_retries: int = 0
    reason: str | None = None
    dry_run: bool = False
