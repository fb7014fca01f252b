# =============================================================================
# Services Package — Gateways and Infrastructure
# =============================================================================
#   - llm.py: multi-provider completion abstraction (Anthropic, OpenAI-compatible)
#   - embedder.py: OpenAI-compatible embedding gateway (batched, retried)
#   - vectorstore.py: ChromaDB search gateway
#   - errors.py / retry.py: transient vs fatal errors, exponential backoff
#   - model_rotation.py: per-model request budgets
#   - usage.py: token usage reporting
#   - cache.py: in-memory response cache
# =============================================================================
