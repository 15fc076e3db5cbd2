"""Error taxonomy for the resolution engine."""


class ResolutionError(Exception):
    """Base class for every condition the engine reports about a candidate."""


class ExtractionMissing(ResolutionError):
    """Candidate has no entities, no CVEs and no usable text."""

    def __init__(self, candidate_id: str):
        self.candidate_id = candidate_id
        super().__init__(
            f"Candidate {candidate_id} has no entities, CVEs or text to resolve against"
        )


class JudgeUnavailable(ResolutionError):
    """Judge call failed or timed out after the retry budget was spent."""

    def __init__(self, message: str, attempts: int = 0):
        self.attempts = attempts
        super().__init__(message)


class ArticleNotFound(ResolutionError):
    def __init__(self, article_id: str):
        self.article_id = article_id
        super().__init__(f"Article {article_id} does not exist")


class ConflictingMerge(ResolutionError):
    """Merge target vanished or stayed locked past the busy timeout."""

    def __init__(self, target_id: str, reason: str):
        self.target_id = target_id
        self.reason = reason
        super().__init__(f"Cannot write onto article {target_id}: {reason}")


class StoreUnavailable(ResolutionError):
    """Persistence layer cannot be reached or refused a write."""
