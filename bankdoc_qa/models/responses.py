# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming OUT of the API.
#
# DESIGN DECISION: Separate response models from pipeline dataclasses.
# AnswerResult carries internal fields (raw token counts, full chunk
# payloads); the response models control exactly what is exposed.
# =============================================================================

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Response for GET /health — confirms the API is running."""

    status: str = "ok"
    version: str
    service: str


class SourceChunk(BaseModel):
    """One numbered source cited by an answer ([🔗n] refers to `index`)."""

    index: int
    chunk_id: str
    document_name: str
    document_number: str | None = None
    chapter: str | None = None
    article: str | None = None
    section: str | None = None
    collection: str | None = None
    similarity_score: float = Field(description="Cosine similarity (0-1)")
    content: str


class TokenUsageResponse(BaseModel):
    input: int = 0
    output: int = 0
    total: int = 0


class AskResponse(BaseModel):
    """Response for POST /ask."""

    question: str
    answer: str
    sources: list[SourceChunk] = Field(default_factory=list)
    confidence: int = Field(ge=0, le=100, description="Mean retrieval similarity × 100")
    model: str
    token_usage: TokenUsageResponse
    cached: bool = False


class TopQuestion(BaseModel):
    question: str
    hits: int
    confidence: int


class CacheStatsResponse(BaseModel):
    """Response for GET /cache/stats."""

    size: int
    hit_rate: float = Field(description="Approximate hit rate in percent")
    top_questions: list[TopQuestion] = Field(default_factory=list)


class CacheClearResponse(BaseModel):
    """Response for DELETE /cache and POST /cache/invalidate."""

    removed: int
