from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from stepflow.logging import get_logger
from stepflow.service.activity import ACTIVITY_KINDS, ActivityStore
from stepflow.service.bm25 import BM25Index, tokenize_text

logger = get_logger(__name__)

DEFAULT_OVERLAP_TOKENS = 50

TIME_RANGES: Dict[str, Optional[timedelta]] = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "all": None,
}


def _simple_tokenize(text: str) -> List[str]:
    """Split on whitespace and punctuation, keeping punctuation as tokens."""
    return re.findall(r"\b\w+\b|[^\w\s]", text)


def _detokenize(tokens: List[str]) -> str:
    if not tokens:
        return ""
    result = []
    for i, token in enumerate(tokens):
        if i > 0 and re.match(r"\w", token):
            result.append(" ")
        result.append(token)
    return "".join(result)


@dataclass
class KnowledgeChunk:
    tenant_id: str
    content: str
    source: str = "inline"
    chunk_index: int = 0
    meta: Dict[str, int] = field(default_factory=dict)


class RetrievalService:
    """Answers retrieval nodes: BM25 over tenant knowledge, keyword scans over activity."""

    def __init__(
        self,
        activity: ActivityStore,
        default_chunk_size: int = 400,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.activity = activity
        self.default_chunk_size = max(default_chunk_size, 64)
        self.clock = clock
        self._chunks: Dict[str, List[KnowledgeChunk]] = {}
        self._lock = threading.Lock()

    def retrieve(
        self,
        tenant_id: Optional[str],
        query_type: str,
        keyword: Optional[str],
        *,
        limit: int = 50,
        top_k: int = 5,
        time_range: str = "all",
    ) -> List[dict]:
        """Return hits for one retrieval node.

        Args:
            tenant_id: Tenant to search; no tenant yields no hits
            query_type: knowledge_base, logs, notifications or execution_results
            keyword: Search text (BM25 query or substring filter)
            limit: Maximum activity entries
            top_k: Maximum knowledge chunks
            time_range: One of TIME_RANGES for activity sources
        """
        if not tenant_id:
            return []
        if query_type == "knowledge_base":
            return self.search_knowledge(tenant_id, keyword or "", top_k)
        if query_type in ACTIVITY_KINDS:
            window = TIME_RANGES.get(time_range)
            since = self.clock() - window if window is not None else None
            entries = self.activity.query(
                tenant_id, query_type, keyword=keyword, since=since, limit=limit
            )
            return [entry.to_dict() for entry in entries]
        raise ValueError(f"unknown retrieval source {query_type!r}")

    def search_knowledge(self, tenant_id: str, query: str, top_k: int = 5) -> List[dict]:
        with self._lock:
            candidates = list(self._chunks.get(tenant_id, ()))
        if not candidates:
            return []
        query_tokens = tokenize_text(query)
        index = BM25Index([tokenize_text(ch.content) for ch in candidates])
        hits = []
        for position, score in index.rank(query_tokens, top_k):
            if query_tokens and score <= 0:
                continue
            chunk = candidates[position]
            hits.append(
                {
                    "content": chunk.content,
                    "source": chunk.source,
                    "chunkIndex": chunk.chunk_index,
                    "score": round(score, 6),
                }
            )
        return hits

    def ingest_text(
        self,
        tenant_id: str,
        text: str,
        chunk_size: Optional[int] = None,
        source: Optional[str] = None,
        overlap_tokens: Optional[int] = None,
    ) -> int:
        """Chunk text with a sliding token window and add it to the tenant's knowledge."""
        lines = [ln.strip() for ln in text.split("\n") if ln.strip()]
        blob = " ".join(lines)
        tokens = _simple_tokenize(blob)
        if not tokens:
            return 0

        chunk_tokens = max(chunk_size or self.default_chunk_size, 64)
        overlap = overlap_tokens if overlap_tokens is not None else DEFAULT_OVERLAP_TOKENS
        overlap = min(overlap, chunk_tokens // 2)
        step = max(1, chunk_tokens - overlap)

        chunks: List[KnowledgeChunk] = []
        for index, start in enumerate(range(0, len(tokens), step)):
            end = min(start + chunk_tokens, len(tokens))
            segment = _detokenize(tokens[start:end])
            if segment.strip():
                chunks.append(
                    KnowledgeChunk(
                        tenant_id=tenant_id,
                        content=segment,
                        source=source or "inline",
                        chunk_index=index,
                        meta={"start_token": start, "end_token": end},
                    )
                )
            if end >= len(tokens):
                break

        with self._lock:
            self._chunks.setdefault(tenant_id, []).extend(chunks)
        logger.info("knowledge_ingested", tenant_id=tenant_id, chunks=len(chunks))
        return len(chunks)
