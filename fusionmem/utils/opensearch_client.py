"""
OpenSearch client wrapper for chunk metadata, full-text search, conversation
messages and the k-NN embedding index.
"""

import time
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import OpenSearchException
from requests_aws4auth import AWS4Auth

from ..models.core import ConversationMessage
from .config import OpenSearchConfig
from .errors import UpstreamUnavailableError, ValidationError
from .logging_config import get_logger
from .timestamp_utils import to_datetime, to_iso

logger = get_logger(__name__)

CHUNK_INDEX = 'chunk'
EMBEDDING_INDEX = 'embedding'
MESSAGE_INDEX = 'message'
INDEX_TYPES = (CHUNK_INDEX, EMBEDDING_INDEX, MESSAGE_INDEX)

FILTER_KEYS = {'source_type', 'container_tags', 'fragment_id', 'date_range'}
MAX_RESULT_WINDOW = 10000


class OpenSearchError(UpstreamUnavailableError):
    """Custom exception for OpenSearch errors."""
    pass


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple, set)):
        values = list(value)
    else:
        values = [value]
    return [getattr(v, 'value', v) for v in values]


def build_filter_clauses(owner_id: str, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    """Translate search filters into OpenSearch filter clauses.

    The owner term is always the first clause.

    Raises:
        ValidationError: If a filter key or value is malformed
    """
    clauses: List[Dict[str, Any]] = [{'term': {'owner_id': owner_id}}]
    if not filters:
        return clauses

    unknown = set(filters) - FILTER_KEYS
    if unknown:
        raise ValidationError(f'Unsupported filter keys: {sorted(unknown)}')

    for key in ('source_type', 'container_tags', 'fragment_id'):
        value = filters.get(key)
        if value:
            clauses.append({'terms': {key: _as_list(value)}})

    date_range = filters.get('date_range')
    if date_range:
        if not isinstance(date_range, dict) or not set(date_range) <= {'start', 'end'}:
            raise ValidationError('date_range must be a mapping with optional start and end')
        bounds = {}
        try:
            if date_range.get('start'):
                bounds['gte'] = to_iso(to_datetime(date_range['start']))
            if date_range.get('end'):
                bounds['lte'] = to_iso(to_datetime(date_range['end']))
        except (TypeError, ValueError) as e:
            raise ValidationError(f'Invalid date_range value: {e}')
        if bounds:
            clauses.append({'range': {'created_at': bounds}})

    return clauses


def scoped_query(owner_id: str,
                 must: Optional[List[Dict[str, Any]]] = None,
                 filters: Optional[Dict[str, Any]] = None,
                 include_deleted: bool = False,
                 extra_filters: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    """Owner-scoped bool query; soft-deleted documents are excluded unless asked for."""
    clause = {'filter': build_filter_clauses(owner_id, filters) + (extra_filters or [])}
    if must:
        clause['must'] = must
    if not include_deleted:
        clause['must_not'] = [{'exists': {'field': 'deleted_at'}}]
    return {'bool': clause}


def _to_hits(response: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [{'id': hit['_id'], 'score': hit.get('_score') or 0.0, 'document': hit.get('_source', {})} for hit in response['hits']['hits']]


class OpenSearchClient:
    """OpenSearch client with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig, client: Any = None):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
            client: Pre-built opensearchpy client (built from config if None)
        """
        self.config = config

        if client is not None:
            self.client = client
        else:
            credentials = boto3.Session().get_credentials()
            auth = AWS4Auth(region=config.region, service='aoss', refreshable_credentials=credentials)
            endpoint = config.endpoint
            if '://' in endpoint:
                endpoint = endpoint.split('://', 1)[1]

            self.client = OpenSearch(hosts=[{
                'host': endpoint,
                'port': config.port
            }],
                                     http_auth=auth,
                                     use_ssl=True,
                                     verify_certs=True,
                                     connection_class=RequestsHttpConnection)

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def index_for(self, index_type: str) -> str:
        if index_type not in INDEX_TYPES:
            raise ValueError(f'Unknown index type: {index_type}')
        return f'{self.config.index_name}_{index_type}'

    def _index_body(self, index_type: str) -> Dict[str, Any]:
        common = {
            'owner_id': {
                'type': 'keyword'
            },
            'created_at': {
                'type': 'date'
            },
        }
        if index_type == EMBEDDING_INDEX:
            return {
                'mappings': {
                    'properties': {
                        **common,
                        'fragment_id': {
                            'type': 'keyword'
                        },
                        'source_type': {
                            'type': 'keyword'
                        },
                        'container_tags': {
                            'type': 'keyword'
                        },
                        'deleted_at': {
                            'type': 'date'
                        },
                        'embedding': {
                            'type': 'knn_vector',
                            'dimension': self.config.dimension,
                            'method': {
                                'name': 'hnsw',
                                'space_type': 'cosinesimil',
                                'engine': 'nmslib'
                            }
                        },
                    }
                },
                'settings': {
                    'index': {
                        'knn': True,
                        'knn.algo_param.ef_search': 100
                    }
                }
            }
        if index_type == CHUNK_INDEX:
            return {
                'mappings': {
                    'properties': {
                        **common,
                        'fragment_id': {
                            'type': 'keyword'
                        },
                        'index': {
                            'type': 'integer'
                        },
                        'content': {
                            'type': 'text'
                        },
                        'content_hash': {
                            'type': 'keyword'
                        },
                        'token_estimate': {
                            'type': 'integer'
                        },
                        'embedding_id': {
                            'type': 'keyword'
                        },
                        'source_type': {
                            'type': 'keyword'
                        },
                        'container_tags': {
                            'type': 'keyword'
                        },
                        'indexed_at': {
                            'type': 'date'
                        },
                        'deleted_at': {
                            'type': 'date'
                        },
                        'metadata': {
                            'type': 'object',
                            'enabled': False
                        },
                    }
                }
            }
        return {
            'mappings': {
                'properties': {
                    **common,
                    'session_id': {
                        'type': 'keyword'
                    },
                    'session_title': {
                        'type': 'text'
                    },
                    'role': {
                        'type': 'keyword'
                    },
                    'content': {
                        'type': 'text'
                    },
                    'metadata': {
                        'type': 'object',
                        'enabled': False
                    },
                }
            }
        }

    def create_index_if_not_exists(self, index_type: str = CHUNK_INDEX, sync_wait: float = 15.0) -> str:
        """
        Create index if it doesn't exist.

        Args:
            index_type: One of chunk, embedding or message
            sync_wait: Seconds to wait for a new collection index to become searchable

        Returns:
            'exists', 'created' or 'failed'
        """
        index_name = self.index_for(index_type)

        try:
            if self.client.indices.exists(index=index_name):
                logger.debug(f'Index {index_name} already exists')
                return 'exists'

            response = self.client.indices.create(index=index_name, body=self._index_body(index_type))
            logger.info(f'Created index {index_name}')
            if response.get('acknowledged', False):
                if sync_wait > 0:
                    logger.info(f'Waiting {sync_wait}s for index {index_name} sync-up...')
                    time.sleep(sync_wait)
                return 'created'
            return 'failed'
        except OpenSearchException as e:
            logger.error(f'Error creating index {index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')
        except Exception as e:
            logger.error(f'Unexpected error creating index {index_name}: {e}')
            raise OpenSearchError(f'Unexpected error creating index: {e}')

    def ensure_indices(self, sync_wait: float = 15.0) -> Dict[str, str]:
        return {index_type: self.create_index_if_not_exists(index_type, sync_wait) for index_type in INDEX_TYPES}

    def search_hits(self, index_type: str, body: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Run a raw search and return ``{'id', 'score', 'document'}`` hits."""
        index_name = self.index_for(index_type)
        try:
            response = self.client.search(index=index_name, body=body)
            return _to_hits(response)
        except OpenSearchException as e:
            logger.error(f'Error searching {index_name}: {e}')
            raise OpenSearchError(f'Search on {index_name} failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error searching {index_name}: {e}')
            raise OpenSearchError(f'Unexpected error searching {index_name}: {e}')

    def bulk_index(self, index_type: str, documents: Dict[str, Dict[str, Any]]) -> int:
        """
        Upsert documents keyed by id. Re-running with the same ids overwrites.

        Raises:
            OpenSearchError: If the request fails or any item is rejected
        """
        if not documents:
            return 0
        index_name = self.index_for(index_type)
        body: List[Dict[str, Any]] = []
        for doc_id, document in documents.items():
            body.append({'index': {'_index': index_name, '_id': doc_id}})
            body.append(document)
        return self._bulk(index_name, body, 'index')

    def bulk_update(self, index_type: str, partials: Dict[str, Dict[str, Any]]) -> int:
        if not partials:
            return 0
        index_name = self.index_for(index_type)
        body: List[Dict[str, Any]] = []
        for doc_id, partial in partials.items():
            body.append({'update': {'_index': index_name, '_id': doc_id}})
            body.append({'doc': partial})
        return self._bulk(index_name, body, 'update')

    def bulk_delete(self, index_type: str, ids: Iterable[str]) -> int:
        """
        Delete documents by id. Missing ids are not an error.

        Returns:
            Number of documents actually deleted
        """
        ids = list(ids)
        if not ids:
            return 0
        index_name = self.index_for(index_type)
        body = [{'delete': {'_index': index_name, '_id': doc_id}} for doc_id in ids]
        return self._bulk(index_name, body, 'delete')

    def _bulk(self, index_name: str, body: List[Dict[str, Any]], action: str) -> int:
        try:
            response = self.client.bulk(body=body)
        except OpenSearchException as e:
            logger.error(f'Bulk {action} on {index_name} failed: {e}')
            raise OpenSearchError(f'Bulk {action} failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error in bulk {action} on {index_name}: {e}')
            raise OpenSearchError(f'Unexpected error in bulk {action}: {e}')

        applied = 0
        failed = []
        for item in response.get('items', []):
            result = item.get(action, {})
            if result.get('error'):
                failed.append(result.get('_id'))
            elif action == 'delete' and result.get('result') == 'not_found':
                continue
            else:
                applied += 1

        if failed:
            logger.error(f'Bulk {action} on {index_name} rejected {len(failed)} documents')
            raise OpenSearchError(f'Bulk {action} rejected documents: {failed[:5]}')

        logger.debug(f'Bulk {action} applied to {applied} documents in {index_name}')
        return applied

    def ids_matching(self, index_type: str, query: Dict[str, Any], limit: int = MAX_RESULT_WINDOW) -> List[str]:
        hits = self.search_hits(index_type, {'size': limit, 'query': query, '_source': False})
        return [hit['id'] for hit in hits]

    def count(self, index_type: str, owner_id: Optional[str] = None) -> int:
        index_name = self.index_for(index_type)
        body = {'query': {'term': {'owner_id': owner_id}}} if owner_id else None
        try:
            response = self.client.count(index=index_name, body=body)
            return int(response.get('count', 0))
        except OpenSearchException as e:
            logger.error(f'Error counting {index_name}: {e}')
            raise OpenSearchError(f'Count on {index_name} failed: {e}')

    # Chunk metadata and full-text search

    def index_chunks(self, chunk_documents: List[Dict[str, Any]]) -> int:
        return self.bulk_index(CHUNK_INDEX, {doc['id']: doc for doc in chunk_documents})

    def get_chunks(self, chunk_ids: List[str], owner_id: str, include_deleted: bool = False) -> Dict[str, Dict[str, Any]]:
        """Fetch chunk metadata by id, scoped to the owner."""
        if not chunk_ids:
            return {}
        body = {
            'size': len(chunk_ids),
            'query': scoped_query(owner_id, include_deleted=include_deleted, extra_filters=[{
                'ids': {
                    'values': list(chunk_ids)
                }
            }])
        }
        return {hit['id']: hit['document'] for hit in self.search_hits(CHUNK_INDEX, body)}

    def get_chunks_for_fragment(self, fragment_id: str, owner_id: str) -> List[Dict[str, Any]]:
        body = {
            'size': MAX_RESULT_WINDOW,
            'query': scoped_query(owner_id, include_deleted=True, extra_filters=[{
                'term': {
                    'fragment_id': fragment_id
                }
            }]),
            'sort': [{
                'index': {
                    'order': 'asc'
                }
            }]
        }
        documents = [hit['document'] for hit in self.search_hits(CHUNK_INDEX, body)]
        return sorted(documents, key=lambda d: d.get('index', 0))

    def existing_content_hashes(self, owner_id: str, hashes: Iterable[str]) -> Set[str]:
        """Return the subset of ``hashes`` already indexed for this owner."""
        hashes = sorted(set(hashes))
        if not hashes:
            return set()
        body = {
            'size': 0,
            'query': {
                'bool': {
                    'filter': [{
                        'term': {
                            'owner_id': owner_id
                        }
                    }, {
                        'terms': {
                            'content_hash': hashes
                        }
                    }]
                }
            },
            'aggs': {
                'hashes': {
                    'terms': {
                        'field': 'content_hash',
                        'size': len(hashes)
                    }
                }
            }
        }
        index_name = self.index_for(CHUNK_INDEX)
        try:
            response = self.client.search(index=index_name, body=body)
        except OpenSearchException as e:
            logger.error(f'Error looking up content hashes: {e}')
            raise OpenSearchError(f'Content hash lookup failed: {e}')
        buckets = response.get('aggregations', {}).get('hashes', {}).get('buckets', [])
        return {bucket['key'] for bucket in buckets}

    def delete_chunks_for_fragment(self, fragment_id: str, owner_id: str) -> List[str]:
        """
        Delete every chunk row of a fragment.

        Returns:
            Ids of the deleted chunks (empty when nothing was indexed)
        """
        query = scoped_query(owner_id, include_deleted=True, extra_filters=[{'term': {'fragment_id': fragment_id}}])
        chunk_ids = self.ids_matching(CHUNK_INDEX, query)
        self.bulk_delete(CHUNK_INDEX, chunk_ids)
        return chunk_ids

    def keyword_search(self,
                       query_text: str,
                       owner_id: str,
                       top_k: int = 20,
                       filters: Optional[Dict[str, Any]] = None,
                       include_deleted: bool = False) -> List[Dict[str, Any]]:
        """Perform full-text search over chunk content.

        Args:
            query_text: Sanitised phrase query
            owner_id: Owner scope
            top_k: Number of results to return
            filters: Optional source_type/container_tags/fragment_id/date_range filters
            include_deleted: Include soft-deleted fragments

        Returns:
            Hits ordered by text-engine rank
        """
        body = {
            'size': top_k,
            'query': scoped_query(owner_id,
                                  must=[{
                                      'simple_query_string': {
                                          'query': query_text,
                                          'fields': ['content'],
                                          'default_operator': 'and'
                                      }
                                  }],
                                  filters=filters,
                                  include_deleted=include_deleted)
        }
        results = self.search_hits(CHUNK_INDEX, body)
        logger.debug(f'Keyword search returned {len(results)} results for owner {owner_id}')
        return results

    def update_fragment_documents(self, fragment_id: str, owner_id: str, fields: Dict[str, Any]) -> int:
        """Apply ``fields`` to every chunk and embedding document of a fragment."""
        updated = 0
        for index_type in (CHUNK_INDEX, EMBEDDING_INDEX):
            query = scoped_query(owner_id, include_deleted=True, extra_filters=[{'term': {'fragment_id': fragment_id}}])
            ids = self.ids_matching(index_type, query)
            updated += self.bulk_update(index_type, {doc_id: fields for doc_id in ids})
        return updated

    def set_fragment_deleted(self, fragment_id: str, owner_id: str, deleted_at: Optional[datetime]) -> int:
        return self.update_fragment_documents(fragment_id, owner_id, {'deleted_at': to_iso(deleted_at)})

    # Conversation messages

    def index_message(self, message: ConversationMessage) -> bool:
        document = {
            'session_id': message.session_id,
            'session_title': message.session_title,
            'owner_id': message.owner_id,
            'role': message.role,
            'content': message.content,
            'created_at': to_iso(message.created_at),
            'metadata': message.metadata,
        }
        return self.bulk_index(MESSAGE_INDEX, {message.id: document}) == 1

    def search_messages(self, query_text: str, owner_id: str, since: datetime, top_k: int = 10) -> List[ConversationMessage]:
        body = {
            'size': top_k,
            'query': {
                'bool': {
                    'must': [{
                        'match': {
                            'content': query_text
                        }
                    }],
                    'filter': [{
                        'term': {
                            'owner_id': owner_id
                        }
                    }, {
                        'range': {
                            'created_at': {
                                'gt': to_iso(since)
                            }
                        }
                    }]
                }
            }
        }
        return [self._to_message(hit['id'], hit['document']) for hit in self.search_hits(MESSAGE_INDEX, body)]

    def get_thread(self, session_id: str, owner_id: str, limit: int = 1000) -> List[ConversationMessage]:
        body = {
            'size': limit,
            'query': {
                'bool': {
                    'filter': [{
                        'term': {
                            'owner_id': owner_id
                        }
                    }, {
                        'term': {
                            'session_id': session_id
                        }
                    }]
                }
            },
            'sort': [{
                'created_at': {
                    'order': 'asc'
                }
            }]
        }
        messages = [self._to_message(hit['id'], hit['document']) for hit in self.search_hits(MESSAGE_INDEX, body)]
        return sorted(messages, key=lambda m: m.created_at)

    @staticmethod
    def _to_message(doc_id: str, document: Dict[str, Any]) -> ConversationMessage:
        return ConversationMessage(id=doc_id,
                                   session_id=document.get('session_id', ''),
                                   owner_id=document.get('owner_id', ''),
                                   role=document.get('role', 'user'),
                                   content=document.get('content', ''),
                                   created_at=to_datetime(document.get('created_at')),
                                   session_title=document.get('session_title'),
                                   metadata=document.get('metadata') or {})

    def cleanup(self) -> bool:
        """
        Delete every index owned by this engine.

        Returns:
            True if cleanup was successful
        """
        try:
            for index_type in INDEX_TYPES:
                index_name = self.index_for(index_type)
                if self.client.indices.exists(index=index_name):
                    self.client.indices.delete(index=index_name)
                    logger.info(f'Deleted {index_type} index: {index_name}')
                else:
                    logger.info(f'{index_type} index {index_name} does not exist')
            return True

        except OpenSearchException as e:
            logger.error(f'Error during OpenSearch cleanup: {e}')
            raise OpenSearchError(f'Failed to cleanup OpenSearch: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.client.indices.exists(index=self.index_for(CHUNK_INDEX))
            return response in [True, False]

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
