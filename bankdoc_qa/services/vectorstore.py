# =============================================================================
# Vector Search Gateway — Pluggable Backend Protocol
# =============================================================================
#
# Provides a common interface for vector similarity search across one or
# more named collections, with a ChromaDB implementation.
#
# DESIGN DECISION: Protocol (structural typing) over ABC (nominal typing).
# Any class with the right methods can be used without inheriting from
# anything, so retriever tests pass a small in-memory fake.
#
# DESIGN DECISION: One Chroma collection per document category
# (tien_gui, tien_vay, chuyen_tien, the). The router narrows the search
# to the relevant categories; a multi-collection search merges results.
#
# DESIGN DECISION: The gateway returns RetrievedChunk, the pipeline's
# own type, so Chroma's column-oriented result format never leaks past
# this module.
#
# ARCHITECTURE:
#   VectorSearchGateway (Protocol)
#   └── ChromaSearchGateway — ChromaDB (in-process, on-disk or HTTP)
#       ├── search()              — one collection
#       ├── search_many()         — several collections, merged by score
#       ├── list_collections()    — names known to the backend
#       ├── get_document_chunks() — every chunk of named documents
#       └── add_chunks()          — seeding (dev scripts, tests)
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

import chromadb

from bankdoc_qa.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SourceLocation:
    """Structural position of a chunk inside its legal document."""

    chapter: str | None = None
    article: str | None = None
    section: str | None = None


@dataclass(frozen=True)
class RetrievedChunk:
    """
    A single passage returned by vector search.

    Frozen: once retrieval hands a chunk to the reranker its score is
    never modified. Reranking wraps chunks in RankedResult instead.
    """

    id: str
    content: str
    source_document: str
    similarity_score: float  # 0.0–1.0 (cosine similarity, higher = more relevant)
    source_location: SourceLocation = field(default_factory=SourceLocation)
    collection: str = ""
    metadata: dict = field(default_factory=dict, compare=False)

    @property
    def document_number(self) -> str | None:
        return self.metadata.get("document_number") or None


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class VectorSearchGateway(Protocol):
    """Interface the retriever and the full-document mode depend on."""

    async def search(
        self,
        query_embedding: list[float],
        collection: str,
        top_k: int = 5,
        min_score: float = 0.0,
    ) -> list[RetrievedChunk]:
        """Chunks of one collection sorted by similarity (highest first)."""
        ...

    async def search_many(
        self,
        query_embedding: list[float],
        collections: list[str],
        top_k: int = 5,
        min_score: float = 0.0,
    ) -> list[RetrievedChunk]:
        """Merged top_k over several collections, highest first."""
        ...

    async def list_collections(self) -> list[str]:
        ...

    async def get_document_chunks(
        self,
        document_names: list[str],
        collections: list[str] | None = None,
    ) -> list[RetrievedChunk]:
        """Every chunk of the named documents, in document order."""
        ...


# ---------------------------------------------------------------------------
# Implementation: ChromaDB
# ---------------------------------------------------------------------------


class ChromaSearchGateway:
    """
    ChromaDB-backed vector search.

    ChromaDB supports three client modes:
    - HTTP (CHROMA_URL set): Docker deployment
    - Persistent (CHROMA_PATH set): on-disk, single process
    - In-process (default): memory only, used by tests and local dev
    """

    def __init__(self, client: Any | None = None) -> None:
        if client is not None:
            self._client = client
        elif settings.chroma_url:
            self._client = chromadb.HttpClient(host=settings.chroma_url)
        elif settings.chroma_path:
            self._client = chromadb.PersistentClient(path=settings.chroma_path)
        else:
            self._client = chromadb.Client()

    def _collection(self, name: str) -> Any:
        # Cosine space; distance runs 0..2, similarity is clamped at 0
        return self._client.get_or_create_collection(
            name=name,
            metadata={"hnsw:space": "cosine"},
        )

    def _collection_names(self) -> list[str]:
        # Older clients return Collection objects, newer ones names.
        return [
            c if isinstance(c, str) else c.name
            for c in self._client.list_collections()
        ]

    def _existing_collection(self, name: str) -> Any | None:
        """Read-side lookup; never creates the collection."""
        if name not in self._collection_names():
            return None
        return self._client.get_collection(name=name)

    # -----------------------------------------------------------------------
    # Seeding
    # -----------------------------------------------------------------------

    def add_chunks(
        self,
        collection: str,
        ids: list[str],
        contents: list[str],
        embeddings: list[list[float]],
        metadatas: list[dict],
    ) -> int:
        """Upsert chunks into a collection. Sync; returns the count stored."""
        sanitised_metadatas = [_sanitise_chroma_metadata(m) for m in metadatas]
        self._collection(collection).upsert(
            ids=ids,
            documents=contents,
            embeddings=embeddings,
            metadatas=sanitised_metadatas,
        )
        logger.info("Stored %d chunks in collection '%s'", len(ids), collection)
        return len(ids)

    # -----------------------------------------------------------------------
    # Search
    # -----------------------------------------------------------------------

    def _query_collection(
        self,
        query_embedding: list[float],
        collection: str,
        top_k: int,
        min_score: float,
    ) -> list[RetrievedChunk]:
        chroma_collection = self._existing_collection(collection)
        if chroma_collection is None or top_k <= 0:
            return []
        count = chroma_collection.count()
        if count == 0:
            return []

        results = chroma_collection.query(
            query_embeddings=[query_embedding],
            n_results=min(top_k, count),
            include=["documents", "metadatas", "distances"],
        )

        chunks: list[RetrievedChunk] = []
        if results and results["ids"] and results["ids"][0]:
            for i, chroma_id in enumerate(results["ids"][0]):
                distance = (
                    results["distances"][0][i] if results["distances"] else 0.0
                )
                similarity = max(0.0, round(1.0 - distance, 4))
                if similarity < min_score:
                    continue
                metadata = (
                    results["metadatas"][0][i] if results["metadatas"] else {}
                ) or {}
                content = (
                    results["documents"][0][i] if results["documents"] else ""
                ) or ""
                chunks.append(
                    _chunk_from_record(
                        chroma_id, content, metadata, similarity, collection,
                    )
                )
        return chunks

    async def search(
        self,
        query_embedding: list[float],
        collection: str,
        top_k: int = 5,
        min_score: float = 0.0,
    ) -> list[RetrievedChunk]:
        """
        Similarity search in one collection.

        ChromaDB's Python client is synchronous; the query runs in a
        worker thread to keep the event loop free.
        """
        results = await asyncio.to_thread(
            self._query_collection, query_embedding, collection, top_k, min_score,
        )
        logger.debug(
            "Chroma search in '%s' returned %d chunks (top_k=%d, min_score=%.2f)",
            collection, len(results), top_k, min_score,
        )
        return results

    async def search_many(
        self,
        query_embedding: list[float],
        collections: list[str],
        top_k: int = 5,
        min_score: float = 0.0,
    ) -> list[RetrievedChunk]:
        """Search every collection and keep the global top_k by score."""

        def _sync_search_many() -> list[RetrievedChunk]:
            merged: list[RetrievedChunk] = []
            for name in collections:
                merged.extend(
                    self._query_collection(query_embedding, name, top_k, min_score)
                )
            merged.sort(key=lambda c: c.similarity_score, reverse=True)
            return merged[:top_k]

        results = await asyncio.to_thread(_sync_search_many)
        logger.debug(
            "Chroma search over %s returned %d chunks",
            collections, len(results),
        )
        return results

    async def list_collections(self) -> list[str]:
        names = await asyncio.to_thread(self._collection_names)
        return sorted(names)

    async def get_document_chunks(
        self,
        document_names: list[str],
        collections: list[str] | None = None,
    ) -> list[RetrievedChunk]:
        """
        Load every chunk whose document name matches one of `document_names`.

        Matching is case-insensitive: a requested name matches any stored
        name containing it, so "Thông tư 39" finds "Thông tư 39/2016/TT-NHNN".
        A stored name also matches when it appears as whole words inside the
        requested one. Chunks without a document name never match. Chunks
        come back grouped by document and ordered by chunk_index, with
        score 1.0.
        """
        wanted = [n.strip().lower() for n in document_names if n.strip()]
        if not wanted:
            return []

        def _matches(name: str) -> bool:
            lowered = name.strip().lower()
            if not lowered:
                return False
            inside = re.compile(rf"(?<!\w){re.escape(lowered)}(?!\w)")
            return any(w in lowered or inside.search(w) for w in wanted)

        def _sync_load() -> list[RetrievedChunk]:
            names = collections
            if names is None:
                names = self._collection_names()

            found: list[RetrievedChunk] = []
            for name in names:
                chroma_collection = self._existing_collection(name)
                if chroma_collection is None:
                    continue
                records = chroma_collection.get(
                    include=["documents", "metadatas"],
                )
                for i, chroma_id in enumerate(records["ids"]):
                    metadata = (records["metadatas"] or [{}])[i] or {}
                    if not _matches(str(metadata.get("document_name") or "")):
                        continue
                    content = (records["documents"] or [""])[i] or ""
                    found.append(
                        _chunk_from_record(chroma_id, content, metadata, 1.0, name)
                    )

            found.sort(
                key=lambda c: (
                    c.source_document,
                    int(c.metadata.get("chunk_index") or 0),
                )
            )
            return found

        chunks = await asyncio.to_thread(_sync_load)
        logger.info(
            "Loaded %d chunks for documents %s", len(chunks), document_names,
        )
        return chunks


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

_gateway: ChromaSearchGateway | None = None


def get_vector_gateway() -> ChromaSearchGateway:
    """Lazily build the process-wide Chroma gateway from settings."""
    global _gateway
    if _gateway is None:
        _gateway = ChromaSearchGateway()
        logger.info("Using ChromaDB vector search")
    return _gateway


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _optional(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _chunk_from_record(
    chunk_id: str,
    content: str,
    metadata: dict,
    score: float,
    collection: str,
) -> RetrievedChunk:
    """Map one Chroma record (payload + score) onto a RetrievedChunk."""
    return RetrievedChunk(
        id=str(chunk_id),
        content=content,
        source_document=str(metadata.get("document_name") or "Unknown"),
        similarity_score=score,
        source_location=SourceLocation(
            chapter=_optional(metadata.get("chapter_number")),
            article=_optional(metadata.get("article_number")),
            section=_optional(metadata.get("section_number")),
        ),
        collection=collection,
        metadata=dict(metadata),
    )


def _sanitise_chroma_metadata(metadata: dict) -> dict:
    """
    Sanitise metadata for ChromaDB compatibility.

    ChromaDB requires all metadata values to be str, int, float, or bool.
    We convert:
    - list → comma-separated string
    - None → empty string
    """
    sanitised = {}
    for key, value in metadata.items():
        if value is None:
            sanitised[key] = ""
        elif isinstance(value, list):
            sanitised[key] = ",".join(str(v) for v in value)
        elif isinstance(value, (str, int, float, bool)):
            sanitised[key] = value
        else:
            sanitised[key] = str(value)
    return sanitised
