"""
k-NN vector index over the OpenSearch embedding index.

Holds no business logic: it validates dimensions, scopes every query by
owner and translates engine scores to cosine similarity.
"""

from typing import Any, Dict, List, Optional

from ..models.core import EmbeddingRecord, VectorMatch
from .errors import DimensionMismatchError, require_owner
from .logging_config import get_logger
from .opensearch_client import EMBEDDING_INDEX, OpenSearchClient, scoped_query
from .timestamp_utils import to_iso

logger = get_logger(__name__)


def score_to_cosine(score: float) -> float:
    """OpenSearch ``cosinesimil`` scores are ``(1 + cos) / 2``; map back to cosine."""
    return max(-1.0, min(1.0, 2.0 * score - 1.0))


class VectorIndex:
    """Fixed-dimension embedding store keyed by chunk id."""

    def __init__(self, store: OpenSearchClient, dimension: int):
        self.store = store
        self.dimension = dimension

    def _validate(self, vector: List[float], vector_id: Optional[str] = None) -> None:
        if len(vector) != self.dimension:
            raise DimensionMismatchError(self.dimension, len(vector), vector_id)

    def insert(self, records: List[EmbeddingRecord]) -> int:
        """
        Upsert embedding records. Nothing is written if any vector has the wrong size.

        Raises:
            DimensionMismatchError: If any vector length differs from the index dimension
        """
        for record in records:
            self._validate(record.vector, record.id)

        documents = {
            record.id: {
                'embedding': record.vector,
                'owner_id': record.owner_id,
                'fragment_id': record.fragment_id,
                'source_type': getattr(record.source_type, 'value', record.source_type),
                'container_tags': list(record.container_tags),
                'created_at': to_iso(record.created_at),
            }
            for record in records
        }
        inserted = self.store.bulk_index(EMBEDDING_INDEX, documents)
        logger.debug(f'Inserted {inserted} vectors')
        return inserted

    def query(self,
              vector: List[float],
              top_k: int,
              owner_id: str,
              filters: Optional[Dict[str, Any]] = None,
              include_deleted: bool = False) -> List[VectorMatch]:
        """
        Nearest neighbours by cosine similarity, restricted to one owner.

        Returns:
            Matches ordered by descending similarity; ``score`` is cosine similarity
        """
        owner_id = require_owner(owner_id)
        self._validate(vector)

        body = {
            'size': top_k,
            'query': scoped_query(owner_id,
                                  must=[{
                                      'knn': {
                                          'embedding': {
                                              'vector': vector,
                                              'k': top_k
                                          }
                                      }
                                  }],
                                  filters=filters,
                                  include_deleted=include_deleted),
            '_source': {
                'excludes': ['embedding']
            }
        }
        hits = self.store.search_hits(EMBEDDING_INDEX, body)
        matches = [VectorMatch(id=hit['id'], score=score_to_cosine(hit['score']), metadata=hit['document']) for hit in hits]
        matches.sort(key=lambda m: (-m.score, m.id))
        return matches

    def delete_by_ids(self, ids: List[str]) -> int:
        return self.store.bulk_delete(EMBEDDING_INDEX, ids)

    def describe(self) -> Dict[str, Any]:
        return {'count': self.store.count(EMBEDDING_INDEX), 'dims': self.dimension, 'metric': 'cosine'}
