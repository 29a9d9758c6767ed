"""
Embedding Indexer: turns fragment chunks into stored embeddings in size- and
cost-bounded batches.
"""

import time
from typing import Dict, Iterable, List, Optional, Tuple

from ..models.core import Chunk, EmbeddingRecord, Fragment, IndexingStats, IndexingStatus
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.config import IndexingConfig, config
from ..utils.embedding_cache import QueryEmbeddingCache
from ..utils.errors import UpstreamTransientError, UpstreamUnavailableError, ValidationError, require_owner
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import CHUNK_INDEX, EMBEDDING_INDEX, OpenSearchClient, scoped_query
from ..utils.text_utils import chunk_id, chunk_text, content_hash, estimate_tokens
from ..utils.timestamp_utils import to_datetime, to_iso, utc_now
from ..utils.vector_index import VectorIndex

logger = get_logger(__name__)

# Fragment metadata copied onto chunk rows for source attribution
ATTRIBUTION_KEYS = ('page', 'url', 'timestamp')


class EmbeddingIndexer:
    """Batch indexer with content-hash dedup, cost ceiling and per-chunk failure isolation."""

    def __init__(self,
                 opensearch: Optional[OpenSearchClient] = None,
                 vector_index: Optional[VectorIndex] = None,
                 embed: Optional[BedrockEmbed] = None,
                 neptune=None,
                 indexing_config: Optional[IndexingConfig] = None):
        """
        Initialize the indexer.

        Args:
            opensearch: Chunk metadata / full-text store
            vector_index: Embedding store
            embed: Embedding provider
            neptune: Fragment store, only needed by reindex_fragments
            indexing_config: Batch and cost settings
        """
        self.opensearch = opensearch or OpenSearchClient(config.opensearch)
        self.vector_index = vector_index or VectorIndex(self.opensearch, config.opensearch.dimension)
        self.embed = embed or BedrockEmbed(config.bedrock_embed, cache=QueryEmbeddingCache(config.cache.max_entries))
        self.neptune = neptune
        self.config = indexing_config or config.indexing

        logger.info('Initialized EmbeddingIndexer')

    def prepare_chunks(self, fragment: Fragment) -> List[Chunk]:
        """Split fragment content into chunks with deterministic ids."""
        pieces = chunk_text(fragment.content, self.config.chunk_size)
        return [
            Chunk(id=chunk_id(fragment.id, i), fragment_id=fragment.id, index=i, content=piece, token_estimate=estimate_tokens(piece))
            for i, piece in enumerate(pieces)
        ]

    def _resolve_options(self, batch_size: Optional[int], cost_limit: Optional[float]) -> Tuple[int, float]:
        batch_size = batch_size if batch_size is not None else self.config.batch_size
        cost_limit = cost_limit if cost_limit is not None else self.config.cost_limit
        if batch_size < 1 or batch_size > self.config.max_batch_size:
            raise ValidationError(f'batch_size must be between 1 and {self.config.max_batch_size}, got {batch_size}')
        if cost_limit < 0:
            raise ValidationError(f'cost_limit must not be negative, got {cost_limit}')
        return batch_size, cost_limit

    def index_chunks(self,
                     fragment: Fragment,
                     chunks: List[Chunk],
                     skip_existing: bool = True,
                     batch_size: Optional[int] = None,
                     cost_limit: Optional[float] = None) -> IndexingStats:
        """
        Embed and store the chunks of one fragment.

        Args:
            fragment: Owning fragment (supplies owner, source type and container tags)
            chunks: Chunks to index
            skip_existing: Drop chunks whose normalized content hash is already indexed for this owner
            batch_size: Chunks per embedding request (at most max_batch_size)
            cost_limit: USD ceiling; no new batch starts once reached

        Returns:
            IndexingStats for the job; partial success is not an error

        Raises:
            ValidationError: If chunks is empty, an option is out of range or a chunk belongs to another fragment
        """
        started = time.monotonic()
        require_owner(fragment.owner_id)
        if not chunks:
            raise ValidationError(f'No chunks supplied for fragment {fragment.id}')
        batch_size, cost_limit = self._resolve_options(batch_size, cost_limit)
        for chunk in chunks:
            if chunk.fragment_id != fragment.id:
                raise ValidationError(f'Chunk {chunk.id} belongs to fragment {chunk.fragment_id}, not {fragment.id}')

        stats = IndexingStats(total=len(chunks))
        hashes = {chunk.id: content_hash(chunk.content) for chunk in chunks}
        pending = list(chunks)

        if skip_existing:
            existing = self.opensearch.existing_content_hashes(fragment.owner_id, hashes.values())
            pending = []
            for chunk in chunks:
                if hashes[chunk.id] in existing:
                    stats.duplicates_skipped += 1
                else:
                    existing.add(hashes[chunk.id])
                    pending.append(chunk)
            if stats.duplicates_skipped:
                logger.debug(f'Skipped {stats.duplicates_skipped} already-indexed chunks of fragment {fragment.id}')

        for start in range(0, len(pending), batch_size):
            if stats.cost >= cost_limit:
                stats.halted_by_cost_limit = True
                logger.warning(f'Cost limit ${cost_limit:.4f} reached after ${stats.cost:.4f}; '
                               f'{len(pending) - start} chunks of fragment {fragment.id} left unindexed')
                break

            batch = pending[start:start + batch_size]
            embedded = self._embed_batch(batch, stats)
            if embedded and self._persist_pair(fragment, embedded, hashes):
                stats.succeeded += len(embedded)
            else:
                stats.failed += len(embedded)
                stats.failed_chunk_ids.extend(chunk.id for chunk, _ in embedded)

        stats.elapsed = time.monotonic() - started
        logger.info(f'Indexed fragment {fragment.id}: {stats.succeeded}/{stats.total} succeeded, '
                    f'{stats.failed} failed, {stats.duplicates_skipped} skipped, cost ${stats.cost:.6f}')
        return stats

    def _embed_batch(self, batch: List[Chunk], stats: IndexingStats) -> List[Tuple[Chunk, List[float]]]:
        try:
            result = self.embed.embed_documents([chunk.content for chunk in batch])
        except UpstreamTransientError as e:
            logger.warning(f'Embedding request failed for batch of {len(batch)} chunks: {e}')
            stats.failed += len(batch)
            stats.failed_chunk_ids.extend(chunk.id for chunk in batch)
            return []

        stats.cost += result.cost
        embedded = []
        for chunk, vector in zip(batch, result.vectors):
            if vector is None:
                stats.failed += 1
                stats.failed_chunk_ids.append(chunk.id)
            else:
                embedded.append((chunk, vector))
        return embedded

    def _persist_pair(self, fragment: Fragment, embedded: List[Tuple[Chunk, List[float]]], hashes: Dict[str, str]) -> bool:
        """
        Write vectors, then chunk metadata, both keyed by chunk id.

        The pair is retried as a unit. If it still fails the vectors are
        removed so no vector is left without its metadata row.
        """
        now = utc_now()
        records = [
            EmbeddingRecord(id=chunk.id,
                            vector=vector,
                            owner_id=fragment.owner_id,
                            fragment_id=fragment.id,
                            source_type=fragment.source_type,
                            container_tags=fragment.container_tags,
                            created_at=fragment.created_at) for chunk, vector in embedded
        ]
        documents = [{
            'id': chunk.id,
            'fragment_id': fragment.id,
            'owner_id': fragment.owner_id,
            'index': chunk.index,
            'content': chunk.content,
            'content_hash': hashes[chunk.id],
            'token_estimate': chunk.token_estimate,
            'embedding_id': chunk.id,
            'source_type': fragment.source_type.value,
            'container_tags': list(fragment.container_tags),
            'created_at': to_iso(fragment.created_at),
            'indexed_at': to_iso(now),
            'deleted_at': to_iso(fragment.deleted_at),
            'metadata': {
                'title': fragment.title,
                **{key: fragment.metadata[key] for key in ATTRIBUTION_KEYS if key in fragment.metadata}
            },
        } for chunk, _ in embedded]

        for attempt in range(self.config.pair_retry_attempts):
            try:
                self.vector_index.insert(records)
                self.opensearch.index_chunks(documents)
                return True
            except ValidationError as e:
                logger.error(f'Rejected vectors for fragment {fragment.id}: {e}')
                return False
            except UpstreamUnavailableError as e:
                logger.warning(f'Vector/metadata write attempt {attempt + 1}/{self.config.pair_retry_attempts} '
                               f'failed for fragment {fragment.id}: {e}')

        ids = [record.id for record in records]
        try:
            self.vector_index.delete_by_ids(ids)
            self.opensearch.bulk_delete(CHUNK_INDEX, ids)
        except UpstreamUnavailableError as e:
            # Ids are deterministic, so re-indexing the fragment overwrites whatever survived
            logger.error(f'Compensating delete failed for {len(ids)} chunks of fragment {fragment.id}: {e}')
        return False

    def remove_fragment_from_index(self, fragment_id: str, owner_id: str) -> int:
        """
        Delete all chunk vectors and metadata rows of a fragment.

        Safe on a fragment that was never indexed.

        Returns:
            Number of chunk rows removed
        """
        owner_id = require_owner(owner_id)
        chunk_ids = [doc['id'] for doc in self.opensearch.get_chunks_for_fragment(fragment_id, owner_id)]
        fragment_query = scoped_query(owner_id, include_deleted=True, extra_filters=[{'term': {'fragment_id': fragment_id}}])
        vector_ids = set(chunk_ids) | set(self.opensearch.ids_matching(EMBEDDING_INDEX, fragment_query))

        if not vector_ids:
            logger.debug(f'Fragment {fragment_id} has no indexed chunks')
            return 0

        self.vector_index.delete_by_ids(sorted(vector_ids))
        self.opensearch.bulk_delete(CHUNK_INDEX, chunk_ids)
        logger.info(f'Removed {len(chunk_ids)} chunks of fragment {fragment_id} from the index')
        return len(chunk_ids)

    def get_indexing_status(self, fragment_id: str, owner_id: str) -> IndexingStatus:
        owner_id = require_owner(owner_id)
        documents = self.opensearch.get_chunks_for_fragment(fragment_id, owner_id)
        indexed_at = [to_datetime(doc.get('indexed_at')) for doc in documents if doc.get('indexed_at')]
        return IndexingStatus(fragment_id=fragment_id,
                              is_indexed=bool(documents),
                              chunk_count=len(documents),
                              indexed_at=max(indexed_at) if indexed_at else None)

    def index_fragment(self, fragment: Fragment, cost_limit: Optional[float] = None) -> IndexingStats:
        """Replace whatever is indexed for the fragment with freshly chunked content."""
        self.remove_fragment_from_index(fragment.id, fragment.owner_id)
        chunks = self.prepare_chunks(fragment)
        if not chunks:
            return IndexingStats()
        return self.index_chunks(fragment, chunks, skip_existing=False, cost_limit=cost_limit)

    def reindex_fragments(self, fragment_ids: Iterable[str], owner_id: str) -> Dict[str, IndexingStats]:
        """
        Re-index fragments from their stored content.

        A fragment that cannot be loaded or indexed gets a stats entry with
        ``failed=1`` instead of aborting the remaining fragments.
        """
        owner_id = require_owner(owner_id)
        if self.neptune is None:
            raise ValidationError('reindex_fragments needs a fragment store')

        fragment_ids = list(fragment_ids)
        fragments = self.neptune.get_fragments(fragment_ids, owner_id)
        results: Dict[str, IndexingStats] = {}
        for fragment_id in fragment_ids:
            fragment = fragments.get(fragment_id)
            if fragment is None:
                logger.warning(f'Fragment {fragment_id} not found for re-indexing')
                results[fragment_id] = IndexingStats(total=0, failed=1)
                continue
            try:
                results[fragment_id] = self.index_fragment(fragment)
            except (ValidationError, UpstreamUnavailableError, UpstreamTransientError) as e:
                logger.warning(f'Re-indexing fragment {fragment_id} failed: {e}')
                results[fragment_id] = IndexingStats(total=0, failed=1)
        return results
