"""
Hybrid retrieval store: BM25 keyword ranking fused with cosine similarity.

Documents are split into overlapping word-boundary chunks, each chunk is
embedded through the injected ``EmbeddingProvider`` and kept as a
``VectorEntry``. Queries can be answered semantically, by keyword (BM25), or
by Reciprocal Rank Fusion of both rankings.

The scoring primitives are plain module-level functions so the memory
manager can reuse them for its own relevance scoring.

Scoring notes:
- BM25 treats each chunk as a document: IDF and average length are computed
  over the whole chunk corpus, not per source document.
- RRF contributions use 1-based ranks: ``weight / (k + rank)``. A candidate
  ranked first in both lists therefore always beats one ranked first in only
  one list, which beats one ranked tenth in both.
"""

from __future__ import annotations

import hashlib
import math
import re
from collections import Counter
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, Union

from .events import EventBus
from .exceptions import EmbeddingError
from .logging_utils import log_planner, log_tool, log_warning
from .resilience import RetryHandler
from .schemas import SearchResult, VectorEntry
from .storage import KeyValueStorage

DEFAULT_CHUNK_SIZE = 500
CHUNK_OVERLAP = 0.2
DEFAULT_MAX_ENTRIES = 5000
RRF_K = 60
BM25_K1 = 1.5
BM25_B = 0.75
VECTOR_KEY_PREFIX = "vector:"

_NON_WORD = re.compile(r"[\W_]+", re.UNICODE)


class EmbeddingProvider(Protocol):
    """External collaborator turning text into a dense vector."""

    async def embed(self, text: str) -> List[float]:
        ...


# ============================================================================
# Scoring primitives
# ============================================================================


def tokenize(text: str) -> List[str]:
    """Lower-case, strip punctuation (keeping accented letters), drop 1-char tokens."""

    cleaned = _NON_WORD.sub(" ", text.lower())
    return [token for token in cleaned.split() if len(token) > 1]


def query_terms(text: str, min_length: int = 3) -> List[str]:
    """Unique tokens of at least ``min_length`` characters, in first-seen order."""

    seen: Dict[str, None] = {}
    for token in tokenize(text):
        if len(token) >= min_length:
            seen.setdefault(token, None)
    return list(seen)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between ``a`` and ``b``; 0 for zero or mismatched vectors."""

    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def bm25_score(
    query_tokens: Sequence[str],
    doc_tokens: Sequence[str],
    avg_doc_length: float,
    doc_freq: Mapping[str, int],
    corpus_size: int,
    k1: float = BM25_K1,
    b: float = BM25_B,
) -> float:
    """Okapi BM25 of one document for a tokenized query.

    IDF is approximated as ``ln(1 + (N - 1) / (1 + df))``.
    """

    if not query_tokens or not doc_tokens:
        return 0.0

    term_freq = Counter(doc_tokens)
    doc_length = len(doc_tokens)
    length_ratio = doc_length / avg_doc_length if avg_doc_length > 0 else 1.0

    score = 0.0
    for term in query_tokens:
        tf = term_freq.get(term, 0)
        if tf == 0:
            continue
        idf = math.log(1 + (corpus_size - 1) / (1 + doc_freq.get(term, 0)))
        score += idf * (tf * (k1 + 1)) / (tf + k1 * (1 - b + b * length_ratio))
    return score


def rrf_score(
    ranks: Sequence[int],
    k: int = RRF_K,
    weights: Optional[Sequence[float]] = None,
) -> float:
    """Reciprocal Rank Fusion of 1-based ``ranks``: ``sum(weight / (k + rank))``."""

    if weights is None:
        weights = [1.0] * len(ranks)
    if len(weights) != len(ranks):
        raise ValueError("ranks and weights must have the same length")
    return sum(weight / (k + rank) for rank, weight in zip(ranks, weights))


def chunk_text(
    text: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap: float = CHUNK_OVERLAP,
) -> List[str]:
    """Split ``text`` at word boundaries into chunks of at most ``chunk_size`` characters.

    Each new chunk starts with the last ``overlap`` fraction of the previous
    chunk's words. A single word longer than ``chunk_size`` becomes its own chunk.
    """

    words = text.split()
    chunks: List[str] = []
    current: List[str] = []
    current_length = 0

    for word in words:
        if current and current_length + len(word) + 1 > chunk_size:
            chunks.append(" ".join(current))
            keep = int(len(current) * overlap)
            current = current[-keep:] if keep > 0 else []
            current_length = len(" ".join(current)) + (1 if current else 0)
        current.append(word)
        current_length += len(word) + 1

    if current:
        chunks.append(" ".join(current))
    return chunks


# ============================================================================
# Embedders
# ============================================================================


class HashingEmbedder:
    """Deterministic hashed bag-of-words embedding (L2-normalised).

    Needs no model server, so it serves as the degraded fallback when the
    real embedder is unavailable and as the embedder in tests.
    """

    def __init__(self, dimensions: int = 256) -> None:
        if dimensions <= 0:
            raise ValueError("dimensions must be positive")
        self.dimensions = dimensions

    def embed_sync(self, text: str) -> List[float]:
        vector = [0.0] * self.dimensions
        for token in tokenize(text):
            digest = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16)
            sign = 1.0 if (digest >> 64) & 1 else -1.0
            vector[digest % self.dimensions] += sign
        norm = math.sqrt(sum(value * value for value in vector))
        if norm == 0:
            return vector
        return [value / norm for value in vector]

    async def embed(self, text: str) -> List[float]:
        return self.embed_sync(text)


# ============================================================================
# Store
# ============================================================================


class HybridRetrievalStore:
    """Chunk index answering semantic, keyword and fused queries.

    Args:
        embedder: Embedding collaborator
        storage: Optional key-value storage for ``save()``/``load()``
        retry: Optional retry handler wrapping every embedding call
        max_entries: Hard cap on stored chunks (oldest documents evicted first)
        chunk_size: Maximum chunk length in characters
        events: Optional event bus for status notifications
    """

    def __init__(
        self,
        embedder: EmbeddingProvider,
        *,
        storage: Optional[KeyValueStorage] = None,
        retry: Optional[RetryHandler] = None,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        events: Optional[EventBus] = None,
    ) -> None:
        self.embedder = embedder
        self.storage = storage
        self.retry = retry
        self.max_entries = max_entries
        self.chunk_size = chunk_size
        self.events = events
        self._entries: List[VectorEntry] = []

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def size(self) -> int:
        return len(self._entries)

    def entries(self) -> List[VectorEntry]:
        return list(self._entries)

    def documents(self) -> List[str]:
        """Document ids in ingestion order."""

        return list(dict.fromkeys(entry.document_id for entry in self._entries))

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def _embed(self, text: str) -> List[float]:
        async def call() -> List[float]:
            vector = await self.embedder.embed(text)
            if not vector:
                raise EmbeddingError("Embedder returned an empty vector")
            return list(vector)

        if self.retry is None:
            return await call()
        return await self.retry.retry(call, "embed")

    async def add_document(
        self,
        document_id: str,
        content: Union[str, Sequence[str]],
        *,
        page_number: int = 1,
    ) -> int:
        """Index a document, replacing any previous version with the same id.

        Args:
            document_id: Owning document identifier
            content: Raw text (chunked here) or a sequence of pre-built chunks
            page_number: Page the text came from

        Returns:
            Number of chunks indexed
        """

        chunks = chunk_text(content, self.chunk_size) if isinstance(content, str) else list(content)
        chunks = [chunk for chunk in chunks if chunk.strip()]

        log_tool(f"[Retrieval] Embedding {len(chunks)} chunks of '{document_id}'")
        new_entries = []
        for index, chunk in enumerate(chunks):
            embedding = await self._embed(chunk)
            new_entries.append(
                VectorEntry(
                    text=chunk,
                    embedding=embedding,
                    document_id=document_id,
                    page_number=page_number,
                    chunk_index=index,
                )
            )

        await self._replace_document(document_id, new_entries)
        return len(new_entries)

    async def add_pages(self, document_id: str, pages: Sequence[str]) -> int:
        """Index a multi-page document; page numbers start at 1."""

        chunks: List[VectorEntry] = []
        for page_number, page in enumerate(pages, start=1):
            for index, chunk in enumerate(chunk_text(page, self.chunk_size)):
                embedding = await self._embed(chunk)
                chunks.append(
                    VectorEntry(
                        text=chunk,
                        embedding=embedding,
                        document_id=document_id,
                        page_number=page_number,
                        chunk_index=index,
                    )
                )

        await self._replace_document(document_id, chunks)
        return len(chunks)

    async def _replace_document(self, document_id: str, new_entries: List[VectorEntry]) -> None:
        self._entries = [entry for entry in self._entries if entry.document_id != document_id]
        self._entries.extend(new_entries)
        evicted = self._prune()
        log_planner(f"[Retrieval] Indexed '{document_id}' ({len(new_entries)} chunks, {self.size} total)")
        if self.events is not None:
            self.events.status_change(
                "indexed", documentId=document_id, chunks=len(new_entries), evicted=evicted
            )

        await self._persist_document(document_id)
        for stale in evicted:
            await self._forget_document(stale)

    def _prune(self) -> List[str]:
        """Evict whole documents, oldest first, until the cap holds."""

        evicted: List[str] = []
        while len(self._entries) > self.max_entries:
            documents = self.documents()
            if len(documents) <= 1:
                # A single oversized document keeps its newest chunks
                self._entries = self._entries[-self.max_entries:]
                break
            oldest = documents[0]
            self._entries = [entry for entry in self._entries if entry.document_id != oldest]
            evicted.append(oldest)
        if evicted:
            log_warning(f"[Retrieval] Evicted {len(evicted)} documents to stay under {self.max_entries} chunks")
        return evicted

    async def remove_document(self, document_id: str) -> bool:
        before = len(self._entries)
        self._entries = [entry for entry in self._entries if entry.document_id != document_id]
        removed = len(self._entries) != before
        if removed:
            await self._forget_document(document_id)
        return removed

    async def clear(self) -> None:
        for document_id in self.documents():
            await self._forget_document(document_id)
        self._entries = []

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    def _result(entry: VectorEntry, score: float) -> SearchResult:
        return SearchResult(
            text=entry.text,
            score=score,
            document_id=entry.document_id,
            page_number=entry.page_number,
            chunk_index=entry.chunk_index,
        )

    async def search(self, query: str, top_k: int = 3) -> List[SearchResult]:
        """Pure semantic search by cosine similarity."""

        if not self._entries:
            return []
        query_embedding = await self._embed(query)
        scored = [
            (cosine_similarity(query_embedding, entry.embedding), entry)
            for entry in self._entries
        ]
        scored.sort(key=lambda item: item[0], reverse=True)
        return [self._result(entry, score) for score, entry in scored[:top_k]]

    def _bm25_scores(self, query: str) -> List[float]:
        tokens = tokenize(query)
        corpus = [tokenize(entry.text) for entry in self._entries]
        if not corpus:
            return []
        avg_length = sum(len(doc) for doc in corpus) / len(corpus)
        doc_freq: Counter = Counter()
        for doc in corpus:
            doc_freq.update(set(doc))
        return [
            bm25_score(tokens, doc, avg_length, doc_freq, len(corpus))
            for doc in corpus
        ]

    def keyword_search(self, query: str, top_k: int = 5) -> List[SearchResult]:
        """BM25 ranking; chunks without any query term are left out."""

        scores = self._bm25_scores(query)
        ranked = sorted(
            ((score, entry) for score, entry in zip(scores, self._entries) if score > 0),
            key=lambda item: item[0],
            reverse=True,
        )
        return [self._result(entry, score) for score, entry in ranked[:top_k]]

    async def hybrid_search(
        self,
        query: str,
        top_k: int = 5,
        semantic_weight: float = 0.6,
        rrf_k: int = RRF_K,
    ) -> List[SearchResult]:
        """Fuse the semantic and BM25 rankings with weighted RRF."""

        if not self._entries:
            return []

        query_embedding = await self._embed(query)
        semantic = [cosine_similarity(query_embedding, entry.embedding) for entry in self._entries]
        keyword = self._bm25_scores(query)

        indices = range(len(self._entries))
        semantic_order = sorted(indices, key=lambda i: semantic[i], reverse=True)
        keyword_order = sorted(indices, key=lambda i: keyword[i], reverse=True)
        semantic_rank = {index: rank for rank, index in enumerate(semantic_order, start=1)}
        keyword_rank = {index: rank for rank, index in enumerate(keyword_order, start=1)}

        weights = (semantic_weight, 1 - semantic_weight)
        fused = [
            (rrf_score((semantic_rank[i], keyword_rank[i]), rrf_k, weights), self._entries[i])
            for i in indices
        ]
        fused.sort(key=lambda item: item[0], reverse=True)
        return [self._result(entry, score) for score, entry in fused[:top_k]]

    async def multi_document_search(
        self,
        query: str,
        top_docs: int = 3,
        chunks_per_doc: int = 2,
    ) -> Dict[str, List[SearchResult]]:
        """Group fused results by document, best document first."""

        results = await self.hybrid_search(query, top_k=top_docs * chunks_per_doc * 2)
        groups: Dict[str, List[SearchResult]] = {}
        for result in results:
            group = groups.setdefault(result.document_id, [])
            if len(group) < chunks_per_doc:
                group.append(result)

        ordered = sorted(
            groups.items(),
            key=lambda item: max(result.score for result in item[1]),
            reverse=True,
        )
        return dict(ordered[:top_docs])

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _persist_document(self, document_id: str) -> None:
        if self.storage is None:
            return
        entries = [
            entry.model_dump(mode="json")
            for entry in self._entries
            if entry.document_id == document_id
        ]
        try:
            await self.storage.put(
                f"{VECTOR_KEY_PREFIX}{document_id}",
                {"document_id": document_id, "entries": entries},
            )
        except Exception as exc:
            log_warning(f"[Retrieval] Could not persist '{document_id}': {exc}")

    async def _forget_document(self, document_id: str) -> None:
        if self.storage is None:
            return
        try:
            await self.storage.delete(f"{VECTOR_KEY_PREFIX}{document_id}")
        except Exception as exc:
            log_warning(f"[Retrieval] Could not delete '{document_id}' from storage: {exc}")

    async def save(self) -> None:
        """Write every indexed document to storage."""

        for document_id in self.documents():
            await self._persist_document(document_id)

    async def load(self) -> int:
        """Replace the index with what storage holds; failures leave it empty."""

        self._entries = []
        if self.storage is None:
            return 0
        try:
            records = await self.storage.scan(VECTOR_KEY_PREFIX)
            for _, record in records:
                self._entries.extend(
                    VectorEntry.model_validate(entry) for entry in record.get("entries", [])
                )
        except Exception as exc:
            log_warning(f"[Retrieval] Could not load index, starting empty: {exc}")
            self._entries = []
            return 0
        self._prune()
        log_planner(f"[Retrieval] Loaded {self.size} chunks from storage")
        return self.size


__all__ = [
    "EmbeddingProvider",
    "HashingEmbedder",
    "HybridRetrievalStore",
    "tokenize",
    "query_terms",
    "cosine_similarity",
    "bm25_score",
    "rrf_score",
    "chunk_text",
]
