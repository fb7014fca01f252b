# =============================================================================
# Agents Package — Query Pipeline
# =============================================================================
#   - variants.py: query rewriting into search variants
#   - router.py: collection routing (model call, keyword fallback)
#   - retriever.py: multi-variant, multi-collection vector retrieval
#   - reranker.py: keyword boost and per-document diversity cap
#   - analyst.py: context filtering, prompt assembly, answer generation
#   - orchestrator.py: LangGraph retrieval graph + QueryPipeline
# =============================================================================
