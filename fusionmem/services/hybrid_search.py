"""
Hybrid Search Engine: owner-scoped semantic and keyword retrieval fused with
Reciprocal Rank Fusion.
"""

import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..models.core import SearchMode, SearchResponse, SearchResult, SourceType
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.config import SearchConfig, config
from ..utils.embedding_cache import QueryEmbeddingCache
from ..utils.errors import UpstreamTransientError, UpstreamUnavailableError, ValidationError, require_owner
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient, build_filter_clauses
from ..utils.text_utils import sanitize_fts_query
from ..utils.timestamp_utils import to_datetime
from ..utils.vector_index import VectorIndex

logger = get_logger(__name__)

EXCERPT_CHARS = 200
RETRIEVAL_ERRORS = (UpstreamUnavailableError, UpstreamTransientError)


def reciprocal_rank_fusion(ranked_lists: Sequence[Sequence[str]], k: int = 60) -> List[Tuple[str, float]]:
    """Fuse ranked id lists with Reciprocal Rank Fusion.

    Each list contributes ``1 / (k + rank + 1)`` for a 0-based ``rank``; an id
    present in several lists gets the sum. Ties on the fused score go to the
    id with the better individual rank, then to the earlier list, then to the
    id itself, so the output never depends on arrival order.

    Args:
        ranked_lists: Id lists, best first
        k: RRF constant

    Returns:
        (id, fused score) pairs, best first
    """
    scores: Dict[str, float] = {}
    best_rank: Dict[str, Tuple[int, int]] = {}
    for list_index, ranked in enumerate(ranked_lists):
        seen = set()
        for rank, item_id in enumerate(ranked):
            if item_id in seen:
                continue
            seen.add(item_id)
            scores[item_id] = scores.get(item_id, 0.0) + 1.0 / (k + rank + 1)
            best_rank[item_id] = min(best_rank.get(item_id, (rank, list_index)), (rank, list_index))
    return sorted(scores.items(), key=lambda item: (-item[1], best_rank[item[0]], item[0]))


def _excerpt(text: str) -> str:
    return text if len(text) <= EXCERPT_CHARS else text[:EXCERPT_CHARS - 3] + '...'


class HybridSearchEngine:
    """Parallel semantic + keyword search, scoped to one owner."""

    def __init__(self,
                 opensearch: Optional[OpenSearchClient] = None,
                 vector_index: Optional[VectorIndex] = None,
                 embed: Optional[BedrockEmbed] = None,
                 search_config: Optional[SearchConfig] = None):
        self.opensearch = opensearch or OpenSearchClient(config.opensearch)
        self.vector_index = vector_index or VectorIndex(self.opensearch, config.opensearch.dimension)
        self.embed = embed or BedrockEmbed(config.bedrock_embed, cache=QueryEmbeddingCache(config.cache.max_entries))
        self.config = search_config or config.search

        logger.info('Initialized HybridSearchEngine')

    def candidate_count(self, top_k: int) -> int:
        """Per-source candidate count in hybrid mode: a multiple of top_k, capped, never below top_k."""
        return max(top_k, min(top_k * self.config.candidate_multiplier, self.config.max_candidates))

    def search(self,
               query: str,
               owner_id: str,
               top_k: Optional[int] = None,
               mode: Any = SearchMode.HYBRID,
               filters: Optional[Dict[str, Any]] = None,
               include_deleted: bool = False) -> SearchResponse:
        """
        Search an owner's indexed chunks.

        Args:
            query: Natural language query
            owner_id: Upstream-verified owner scope
            top_k: Number of results (config default if None)
            mode: semantic, keyword or hybrid
            filters: source_type, container_tags, fragment_id, date_range
            include_deleted: Include soft-deleted fragments

        Returns:
            SearchResponse; ``degraded`` is set when hybrid fell back to one source

        Raises:
            AuthorizationError: If owner_id is missing
            ValidationError: If the query, mode, top_k or filters are invalid
            UpstreamUnavailableError: If no retrieval source could answer
        """
        started = time.monotonic()
        owner_id = require_owner(owner_id)
        if not query or not query.strip():
            raise ValidationError('Query must not be empty')
        try:
            mode = SearchMode(mode)
        except ValueError:
            raise ValidationError(f'Invalid search mode: {mode}')
        top_k = top_k if top_k is not None else self.config.top_k
        if top_k < 1:
            raise ValidationError(f'top_k must be positive, got {top_k}')
        build_filter_clauses(owner_id, filters)

        warnings: List[str] = []
        degraded = False

        if mode is SearchMode.SEMANTIC:
            results = self._semantic(query, owner_id, top_k, filters, include_deleted)
        elif mode is SearchMode.KEYWORD:
            results = self._keyword(query, owner_id, top_k, filters, include_deleted)
        else:
            results, warnings, degraded = self._hybrid(query, owner_id, top_k, filters, include_deleted)

        elapsed = time.monotonic() - started
        logger.debug(f'{mode.value} search returned {len(results)} results for owner {owner_id} in {elapsed:.3f}s')
        return SearchResponse(query=query,
                              mode=mode,
                              results=results,
                              total_results=len(results),
                              search_time=elapsed,
                              filters=dict(filters or {}),
                              warnings=warnings,
                              degraded=degraded)

    def _hybrid(self, query: str, owner_id: str, top_k: int, filters: Optional[Dict[str, Any]],
                include_deleted: bool) -> Tuple[List[SearchResult], List[str], bool]:
        candidates = self.candidate_count(top_k)
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix='hybrid-search') as pool:
            semantic_future = pool.submit(self._semantic, query, owner_id, candidates, filters, include_deleted)
            keyword_future = pool.submit(self._keyword, query, owner_id, candidates, filters, include_deleted)

        semantic, semantic_error = _outcome(semantic_future)
        keyword, keyword_error = _outcome(keyword_future)

        if semantic_error and keyword_error:
            logger.error(f'Hybrid search failed on both sources: semantic={semantic_error}, keyword={keyword_error}')
            raise UpstreamUnavailableError(f'Search unavailable: semantic: {semantic_error}; keyword: {keyword_error}')

        warnings = []
        if semantic_error:
            warnings.append(f'Semantic search unavailable, using keyword results only: {semantic_error}')
            logger.warning(f'Hybrid search degraded to keyword-only for owner {owner_id}: {semantic_error}')
            return keyword[:top_k], warnings, True
        if keyword_error:
            warnings.append(f'Keyword search unavailable, using semantic results only: {keyword_error}')
            logger.warning(f'Hybrid search degraded to semantic-only for owner {owner_id}: {keyword_error}')
            return semantic[:top_k], warnings, True

        by_id: Dict[str, SearchResult] = {}
        relevance: Dict[str, float] = {}
        for result in keyword + semantic:
            by_id[result.chunk_id] = result
            relevance[result.chunk_id] = max(relevance.get(result.chunk_id, 0.0), result.relevance)

        fused = reciprocal_rank_fusion([[r.chunk_id for r in semantic], [r.chunk_id for r in keyword]], k=self.config.rrf_k)
        results = []
        for chunk_id, score in fused[:top_k]:
            base = by_id[chunk_id]
            results.append(
                SearchResult(fragment_id=base.fragment_id,
                             chunk_id=chunk_id,
                             score=score,
                             rank_source=SearchMode.HYBRID,
                             excerpt=base.excerpt,
                             owner_id=base.owner_id,
                             relevance=relevance[chunk_id],
                             content=base.content,
                             source_type=base.source_type,
                             created_at=base.created_at,
                             metadata=base.metadata))
        return results, [], False

    def _semantic(self, query: str, owner_id: str, top_k: int, filters: Optional[Dict[str, Any]],
                  include_deleted: bool) -> List[SearchResult]:
        vector = self.embed.embed_query(query)
        matches = self.vector_index.query(vector, top_k, owner_id, filters=filters, include_deleted=include_deleted)
        # Join back to chunk metadata under the same owner scope
        chunks = self.opensearch.get_chunks([m.id for m in matches], owner_id, include_deleted=include_deleted)

        results = []
        for match in matches:
            document = chunks.get(match.id)
            if document is None or document.get('owner_id') != owner_id:
                continue
            results.append(self._to_result(match.id, document, match.score, max(0.0, match.score), SearchMode.SEMANTIC))
        return results

    def _keyword(self, query: str, owner_id: str, top_k: int, filters: Optional[Dict[str, Any]],
                 include_deleted: bool) -> List[SearchResult]:
        fts_query = sanitize_fts_query(query)
        if not fts_query:
            return []
        hits = [
            hit for hit in self.opensearch.keyword_search(fts_query, owner_id, top_k, filters, include_deleted)
            if hit['document'].get('owner_id') == owner_id
        ]
        best = max((hit['score'] for hit in hits), default=0.0)
        return [
            self._to_result(hit['id'], hit['document'], hit['score'], hit['score'] / best if best > 0 else 0.0, SearchMode.KEYWORD)
            for hit in hits
        ]

    @staticmethod
    def _to_result(chunk_id: str, document: Dict[str, Any], score: float, relevance: float, source: SearchMode) -> SearchResult:
        content = document.get('content', '')
        source_type = document.get('source_type')
        return SearchResult(fragment_id=document.get('fragment_id', ''),
                            chunk_id=chunk_id,
                            score=score,
                            rank_source=source,
                            excerpt=_excerpt(content),
                            owner_id=document.get('owner_id', ''),
                            relevance=min(1.0, relevance),
                            content=content,
                            source_type=SourceType(source_type) if source_type else None,
                            created_at=to_datetime(document.get('created_at')),
                            metadata={
                                'chunk_index': document.get('index'),
                                **(document.get('metadata') or {})
                            })


def _outcome(future) -> Tuple[List[SearchResult], Optional[Exception]]:
    try:
        return future.result(), None
    except RETRIEVAL_ERRORS as e:
        return [], e
