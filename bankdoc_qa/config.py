# =============================================================================
# Application Configuration — Pydantic Settings
# =============================================================================
#
# DESIGN DECISION: Pydantic V2's `BaseSettings` for configuration.
# Values load in this priority order (highest first):
#   1. Environment variables (e.g., `LLM_PROVIDER=openai_compatible`)
#   2. Values from the .env file
#   3. Default values defined below
#
# Every tuning constant of the pipeline (score floors, per-document caps,
# cache TTL, retry budget) lives here so operators can adjust behaviour
# without a code change.
#
# USAGE:
#   from bankdoc_qa.config import settings
#   print(settings.retrieval_top_k)
# =============================================================================

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Defaults match the behaviour of the production chat service; tests
    construct components with explicit arguments instead of patching these.
    """

    # -------------------------------------------------------------------------
    # Application
    # -------------------------------------------------------------------------
    app_name: str = "Banking Regulation Q&A"
    app_version: str = "0.1.0"
    debug: bool = True

    # -------------------------------------------------------------------------
    # API Keys — External Services
    # -------------------------------------------------------------------------
    # ANTHROPIC_API_KEY: Claude (answer generation, routing, rewriting)
    # OPENAI_API_KEY: embeddings, and completions when using an
    #   OpenAI-compatible provider
    # LLM_API_KEY: shared key overriding both (e.g. one DashScope key)
    # -------------------------------------------------------------------------
    anthropic_api_key: str = ""
    openai_api_key: str = ""
    llm_api_key: str | None = None
    llm_base_url: str | None = None

    # -------------------------------------------------------------------------
    # LLM Configuration — Multi-Provider
    # -------------------------------------------------------------------------
    # llm_model: model used for answer generation when rotation is off
    # llm_cheap_model: model used for query rewriting and routing
    # llm_models: ordered rotation list (priority = position + 1). Empty
    #   list means "always use llm_model".
    # llm_model_rpm / llm_model_rpd: per-model request budgets used by the
    #   rotation to skip exhausted models.
    # -------------------------------------------------------------------------
    llm_provider: str = "anthropic"  # "anthropic" or "openai_compatible"
    llm_model: str = "claude-sonnet-4-6"
    llm_cheap_model: str = "claude-haiku-4-5"
    llm_models: list[str] = []
    llm_model_rpm: int = 60
    llm_model_rpd: int = 5000
    llm_temperature: float = 0.3
    llm_max_tokens: int = 4096

    # -------------------------------------------------------------------------
    # Embedding Configuration
    # -------------------------------------------------------------------------
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 768
    embedding_base_url: str | None = None
    embedding_batch_size: int = 100  # Texts per embeddings API call

    # -------------------------------------------------------------------------
    # Vector Store — ChromaDB
    # -------------------------------------------------------------------------
    # chroma_url set   → HTTP client (Docker deployment)
    # chroma_path set  → persistent on-disk client
    # neither          → in-process ephemeral client (tests, local dev)
    # -------------------------------------------------------------------------
    chroma_url: str | None = None
    chroma_path: str | None = None

    # Domain hints shown to the router model, one per collection.
    collection_hints: dict[str, str] = {
        "tien_gui": "Tiền gửi, gửi tiết kiệm, lãi suất tiền gửi, kỳ hạn",
        "tien_vay": "Tiền vay, vay vốn, cho vay, lãi suất vay, tín dụng",
        "chuyen_tien": "Chuyển tiền, chuyển khoản, giao dịch, thanh toán",
        "the": "Thẻ, thẻ tín dụng, thẻ ghi nợ, thẻ ATM",
    }

    # -------------------------------------------------------------------------
    # Retrieval & Reranking
    # -------------------------------------------------------------------------
    # retrieval_top_k: candidates pulled from vector search before rerank.
    # final_context_size: reranked results handed to the answer stage.
    # multi_variant_confidence_threshold: routing confidence below which
    #   every query variant is searched instead of only the original.
    # -------------------------------------------------------------------------
    retrieval_top_k: int = 30
    retrieval_min_score: float = 0.5
    final_context_size: int = 10
    rerank_keyword_weight: float = 0.1
    rerank_max_per_document: int = 5
    multi_variant_confidence_threshold: float = 0.7
    variant_cache_size: int = 100

    # -------------------------------------------------------------------------
    # Context Assembly
    # -------------------------------------------------------------------------
    context_min_score: float = 0.5
    context_max_per_document: int = 3
    context_max_chunks: int = 12
    context_similarity_threshold: float = 0.8  # Jaccard near-duplicate cut

    # -------------------------------------------------------------------------
    # Retry Policy (completion + embedding calls)
    # -------------------------------------------------------------------------
    # Delay before attempt n+1 = base × 2^(n-1): 2s, 4s with 3 attempts.
    # -------------------------------------------------------------------------
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 2.0

    # -------------------------------------------------------------------------
    # Response Cache
    # -------------------------------------------------------------------------
    # Only answers with confidence >= cache_min_confidence are stored.
    # -------------------------------------------------------------------------
    cache_ttl_hours: int = 24
    cache_max_entries: int = 1000
    cache_min_confidence: int = 70
    cache_eviction_batch: int = 100
    cache_sweep_interval_seconds: int = 3600
    cache_replay_delay_seconds: float = 0.02

    # -------------------------------------------------------------------------
    # Pydantic Settings Configuration
    # -------------------------------------------------------------------------
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """
    Create and cache a Settings instance.

    In tests, override with FastAPI's dependency_overrides or construct
    components with explicit arguments.
    """
    return Settings()


settings = Settings()
