# =============================================================================
# Pipeline Dependencies — FastAPI Dependency Injection
# =============================================================================
#
# get_pipeline() builds the production QueryPipeline on first use and
# returns the same instance afterwards, so the response cache, the
# variant cache and the model rotation windows are shared by every
# request in the process.
#
# DESIGN DECISION: FastAPI dependency (not a module-level instance).
# Importing the API never touches ChromaDB or reads API keys, and tests
# swap the pipeline via app.dependency_overrides[get_pipeline].
# =============================================================================

from __future__ import annotations

import logging

from bankdoc_qa.agents.analyst import AnswerOrchestrator
from bankdoc_qa.agents.orchestrator import QueryPipeline
from bankdoc_qa.agents.retriever import MultiCollectionRetriever
from bankdoc_qa.agents.router import CollectionRouter
from bankdoc_qa.agents.variants import QueryVariantGenerator
from bankdoc_qa.services.cache import ResponseCache
from bankdoc_qa.services.embedder import EmbeddingGateway
from bankdoc_qa.services.usage import LoggingUsageReporter
from bankdoc_qa.services.vectorstore import get_vector_gateway

logger = logging.getLogger(__name__)

_pipeline: QueryPipeline | None = None


def build_pipeline() -> QueryPipeline:
    """Wire the production components from settings."""
    usage = LoggingUsageReporter()
    vector_store = get_vector_gateway()
    return QueryPipeline(
        router=CollectionRouter(usage=usage),
        variant_generator=QueryVariantGenerator(usage=usage),
        retriever=MultiCollectionRetriever(
            embedder=EmbeddingGateway(),
            vector_store=vector_store,
        ),
        orchestrator=AnswerOrchestrator(usage=usage),
        vector_store=vector_store,
        cache=ResponseCache(),
    )


def get_pipeline() -> QueryPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = build_pipeline()
        logger.info("Query pipeline initialised")
    return _pipeline
