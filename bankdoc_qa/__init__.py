# =============================================================================
# Banking Regulation Q&A
# =============================================================================
# A retrieval-augmented question answering service over Vietnamese banking
# regulations (deposits, loans, transfers, cards).
#
# Package structure:
#   bankdoc_qa/
#   ├── api/          → FastAPI route handlers (ask, streaming ask, cache admin)
#   ├── agents/       → Query understanding, retrieval graph, reranking,
#   │                    answer generation
#   ├── models/       → Pydantic V2 request/response schemas
#   └── services/     → Gateways (LLM, embeddings, ChromaDB), retry,
#                        model rotation, usage reporting, response cache
# =============================================================================
