"""
In-memory stand-ins for the OpenSearch, vector index, Bedrock and Neptune clients.

Method names and signatures mirror the real clients so services can be wired
through their constructors.
"""

import hashlib
import math
import random
import threading
from typing import Any, Dict, Iterable, List, Optional, Set

from fusionmem.models.core import Chunk, EmbeddingBatch, Fragment, RelationshipEdge, SourceType, VectorMatch
from fusionmem.utils.bedrock_llm import BedrockLLMError
from fusionmem.utils.errors import DimensionMismatchError, require_owner
from fusionmem.utils.opensearch_client import CHUNK_INDEX, EMBEDDING_INDEX, OpenSearchError
from fusionmem.utils.text_utils import chunk_id, estimate_tokens
from fusionmem.utils.timestamp_utils import to_datetime, to_iso, utc_now

DIMENSION = 8
OWNER = 'owner-1'
OTHER_OWNER = 'owner-2'


def _term_filters(query: Any) -> Dict[str, Any]:
    """Collect ``{'term': {field: value}}`` clauses anywhere in a query body."""
    terms: Dict[str, Any] = {}
    if isinstance(query, dict):
        for key, value in query.items():
            if key == 'term' and isinstance(value, dict):
                terms.update(value)
            else:
                terms.update(_term_filters(value))
    elif isinstance(query, list):
        for item in query:
            terms.update(_term_filters(item))
    return terms


def _matches_filters(document: Dict[str, Any], filters: Optional[Dict[str, Any]], include_deleted: bool) -> bool:
    if not include_deleted and document.get('deleted_at'):
        return False
    filters = filters or {}
    if 'source_type' in filters:
        allowed = filters['source_type'] if isinstance(filters['source_type'], list) else [filters['source_type']]
        if document.get('source_type') not in allowed:
            return False
    if 'container_tags' in filters and not set(filters['container_tags']) & set(document.get('container_tags') or []):
        return False
    if 'fragment_id' in filters and document.get('fragment_id') != filters['fragment_id']:
        return False
    return True


class FakeOpenSearch:
    """Chunk, embedding and message indices held in dicts."""

    def __init__(self):
        self.chunks: Dict[str, Dict[str, Any]] = {}
        self.embeddings: Dict[str, Dict[str, Any]] = {}
        self.messages: Dict[str, Dict[str, Any]] = {}
        self.fail_chunk_writes = 0
        self.fail_soft_deletes = 0
        self.soft_delete_calls = 0
        self.keyword_error: Optional[Exception] = None
        self.keyword_results: Optional[List[Dict[str, Any]]] = None
        self.message_error: Optional[Exception] = None
        self.message_gate: Optional[threading.Event] = None

    def _store(self, index_type: str) -> Dict[str, Dict[str, Any]]:
        return self.chunks if index_type == CHUNK_INDEX else self.embeddings

    def bulk_index(self, index_type: str, documents: Dict[str, Dict[str, Any]]) -> int:
        store = self._store(index_type)
        for doc_id, document in documents.items():
            store[doc_id] = dict(document)
        return len(documents)

    def bulk_update(self, index_type: str, partials: Dict[str, Dict[str, Any]]) -> int:
        store = self._store(index_type)
        for doc_id, fields in partials.items():
            store[doc_id].update(fields)
        return len(partials)

    def bulk_delete(self, index_type: str, ids: Iterable[str]) -> int:
        store = self._store(index_type)
        removed = 0
        for doc_id in ids:
            if store.pop(doc_id, None) is not None:
                removed += 1
        return removed

    def ids_matching(self, index_type: str, query: Dict[str, Any], limit: int = 10000) -> List[str]:
        terms = _term_filters(query)
        return [doc_id for doc_id, doc in self._store(index_type).items() if all(doc.get(k) == v for k, v in terms.items())][:limit]

    def count(self, index_type: str, owner_id: Optional[str] = None) -> int:
        return len([d for d in self._store(index_type).values() if owner_id is None or d.get('owner_id') == owner_id])

    def index_chunks(self, chunk_documents: List[Dict[str, Any]]) -> int:
        if self.fail_chunk_writes:
            self.fail_chunk_writes -= 1
            raise OpenSearchError('chunk index unavailable')
        for document in chunk_documents:
            doc = dict(document)
            self.chunks[doc.pop('id')] = doc
        return len(chunk_documents)

    def get_chunks(self, chunk_ids: List[str], owner_id: str, include_deleted: bool = False) -> Dict[str, Dict[str, Any]]:
        return {
            doc_id: dict(self.chunks[doc_id], id=doc_id)
            for doc_id in chunk_ids
            if doc_id in self.chunks and self.chunks[doc_id]['owner_id'] == owner_id and (include_deleted or
                                                                                        not self.chunks[doc_id].get('deleted_at'))
        }

    def get_chunks_for_fragment(self, fragment_id: str, owner_id: str) -> List[Dict[str, Any]]:
        docs = [
            dict(doc, id=doc_id) for doc_id, doc in self.chunks.items()
            if doc['fragment_id'] == fragment_id and doc['owner_id'] == owner_id
        ]
        return sorted(docs, key=lambda d: d['index'])

    def existing_content_hashes(self, owner_id: str, hashes: Iterable[str]) -> Set[str]:
        wanted = set(hashes)
        return {d['content_hash'] for d in self.chunks.values() if d['owner_id'] == owner_id and d['content_hash'] in wanted}

    def keyword_search(self,
                       query_text: str,
                       owner_id: str,
                       top_k: int = 10,
                       filters: Optional[Dict[str, Any]] = None,
                       include_deleted: bool = False) -> List[Dict[str, Any]]:
        if self.keyword_error is not None:
            raise self.keyword_error
        if self.keyword_results is not None:
            return self.keyword_results[:top_k]
        words = query_text.strip('"').lower().split()
        hits = []
        for doc_id, doc in self.chunks.items():
            if doc['owner_id'] != owner_id or not _matches_filters(doc, filters, include_deleted):
                continue
            content = doc['content'].lower()
            score = float(sum(content.count(w) for w in words))
            if words and all(w in content for w in words):
                hits.append({'id': doc_id, 'score': score, 'document': dict(doc)})
        hits.sort(key=lambda h: (-h['score'], h['id']))
        return hits[:top_k]

    def update_fragment_documents(self, fragment_id: str, owner_id: str, fields: Dict[str, Any]) -> int:
        updated = 0
        for store in (self.chunks, self.embeddings):
            for doc in store.values():
                if doc['fragment_id'] == fragment_id and doc['owner_id'] == owner_id:
                    doc.update(fields)
                    updated += 1
        return updated

    def set_fragment_deleted(self, fragment_id: str, owner_id: str, deleted_at) -> int:
        self.soft_delete_calls += 1
        if self.fail_soft_deletes:
            self.fail_soft_deletes -= 1
            raise OpenSearchError('bulk update rejected')
        return self.update_fragment_documents(fragment_id, owner_id, {'deleted_at': to_iso(deleted_at)})

    def index_message(self, message) -> bool:
        self.messages[message.id] = message
        return True

    def search_messages(self, query_text: str, owner_id: str, since, top_k: int = 10):
        if self.message_gate is not None:
            self.message_gate.wait(5)
        if self.message_error is not None:
            raise self.message_error
        words = set(query_text.lower().split())
        found = [
            m for m in self.messages.values()
            if m.owner_id == owner_id and m.created_at > since and words & set(m.content.lower().split())
        ]
        return sorted(found, key=lambda m: m.created_at, reverse=True)[:top_k]

    def get_thread(self, session_id: str, owner_id: str, limit: int = 1000):
        thread = [m for m in self.messages.values() if m.session_id == session_id and m.owner_id == owner_id]
        return sorted(thread, key=lambda m: m.created_at)[:limit]


class FakeVectorIndex:
    """Brute-force cosine search over FakeOpenSearch's embedding store."""

    def __init__(self, store: FakeOpenSearch, dimension: int = DIMENSION):
        self.store = store
        self.dimension = dimension
        self.insert_calls = 0
        self.error: Optional[Exception] = None
        self.forced_matches: Optional[List[VectorMatch]] = None

    def insert(self, records) -> int:
        for record in records:
            if len(record.vector) != self.dimension:
                raise DimensionMismatchError(self.dimension, len(record.vector), record.id)
        self.insert_calls += 1
        for record in records:
            self.store.embeddings[record.id] = {
                'embedding': list(record.vector),
                'owner_id': record.owner_id,
                'fragment_id': record.fragment_id,
                'source_type': getattr(record.source_type, 'value', record.source_type),
                'container_tags': list(record.container_tags),
                'created_at': to_iso(record.created_at),
            }
        return len(records)

    def query(self,
              vector: List[float],
              top_k: int,
              owner_id: str,
              filters: Optional[Dict[str, Any]] = None,
              include_deleted: bool = False) -> List[VectorMatch]:
        owner_id = require_owner(owner_id)
        if self.error is not None:
            raise self.error
        if len(vector) != self.dimension:
            raise DimensionMismatchError(self.dimension, len(vector))
        if self.forced_matches is not None:
            return self.forced_matches[:top_k]
        matches = []
        for doc_id, doc in list(self.store.embeddings.items()):
            if doc['owner_id'] != owner_id or not _matches_filters(doc, filters, include_deleted):
                continue
            metadata = {k: v for k, v in doc.items() if k != 'embedding'}
            matches.append(VectorMatch(id=doc_id, score=cosine(vector, doc['embedding']), metadata=metadata))
        matches.sort(key=lambda m: (-m.score, m.id))
        return matches[:top_k]

    def delete_by_ids(self, ids: List[str]) -> int:
        return self.store.bulk_delete(EMBEDDING_INDEX, ids)

    def describe(self) -> Dict[str, Any]:
        return {'count': len(self.store.embeddings), 'dims': self.dimension, 'metric': 'cosine'}


def cosine(a: List[float], b: List[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


def hashed_vector(text: str, dimension: int = DIMENSION) -> List[float]:
    seed = int(hashlib.sha256(text.encode('utf-8')).hexdigest(), 16)
    rng = random.Random(seed)
    return [rng.uniform(-1.0, 1.0) for _ in range(dimension)]


class FakeEmbed:
    """Deterministic embeddings; explicit vectors can be pinned per text."""

    def __init__(self, dimension: int = DIMENSION, cost_per_text: float = 0.001):
        self.dimension = dimension
        self.cost_per_text = cost_per_text
        self.vectors: Dict[str, List[float]] = {}
        self.fail_texts: Set[str] = set()
        self.error: Optional[Exception] = None
        self.batches: List[List[str]] = []

    def vector_for(self, text: str) -> List[float]:
        for key, vector in self.vectors.items():
            if key in text:
                return list(vector)
        return hashed_vector(text, self.dimension)

    def embed_documents(self, texts: List[str]) -> EmbeddingBatch:
        if self.error is not None:
            raise self.error
        self.batches.append(list(texts))
        vectors: List[Optional[List[float]]] = []
        errors = {}
        for i, text in enumerate(texts):
            if text in self.fail_texts:
                vectors.append(None)
                errors[i] = 'throttled'
            else:
                vectors.append(self.vector_for(text))
        return EmbeddingBatch(vectors=vectors,
                              token_count=sum(len(t) // 4 for t in texts),
                              cost=self.cost_per_text * len(texts),
                              errors=errors)

    def embed_document(self, text: str) -> List[float]:
        if self.error is not None:
            raise self.error
        return self.vector_for(text)

    def embed_query(self, text: str) -> List[float]:
        if self.error is not None:
            raise self.error
        return self.vector_for(text)


class FakeLLM:
    """Records prompts and returns a canned response, optionally failing or blocking."""

    def __init__(self, response: str = ''):
        self.response = response or ('Synthesized answer drawing on the provided sources. ' * 3).strip()
        self.prompts: List[str] = []
        self.error: Optional[Exception] = None
        self.gate: Optional[threading.Event] = None

    def complete(self, prompt: str, temperature: Optional[float] = None, max_tokens: Optional[int] = None, system_prompt: str = '') -> str:
        self.prompts.append(prompt)
        if self.gate is not None:
            self.gate.wait(5)
        if self.error is not None:
            raise self.error
        return self.response

    def generate_response(self, messages, system_prompt, max_tokens=None, temperature=None, stop_sequences=None):
        text = self.complete(messages[0]['content'][0]['text'])
        return text, None


class FakeNeptune:
    """Fragments, tags and edges in dicts, scoped by owner like the Gremlin traversals."""

    def __init__(self):
        self.fragments: Dict[str, Any] = {}
        self.tags: Dict[str, Any] = {}
        self.edges: Dict[str, RelationshipEdge] = {}
        self.lock = threading.Lock()

    def _owned(self, fragment_id: str, owner_id: str):
        fragment = self.fragments.get(fragment_id)
        return fragment if fragment is not None and fragment.owner_id == owner_id else None

    def _copy(self, fragment):
        if fragment is None:
            return None
        return type(fragment)(**{**fragment.__dict__, 'container_tags': list(fragment.container_tags),
                                 'tag_ids': list(fragment.tag_ids), 'metadata': dict(fragment.metadata)})

    def create_fragment(self, fragment) -> bool:
        with self.lock:
            self.fragments.setdefault(fragment.id, self._copy(fragment))
        return True

    def get_fragment(self, fragment_id: str, owner_id: str):
        return self._copy(self._owned(fragment_id, owner_id))

    def get_fragments(self, fragment_ids: Iterable[str], owner_id: str):
        return {fid: self._copy(self._owned(fid, owner_id)) for fid in fragment_ids if self._owned(fid, owner_id)}

    def list_fragments(self, owner_id: str):
        owned = [self._copy(f) for f in self.fragments.values() if f.owner_id == owner_id]
        return sorted(owned, key=lambda f: f.created_at, reverse=True)

    def update_fragment(self, fragment) -> bool:
        if not self._owned(fragment.id, fragment.owner_id):
            return False
        self.fragments[fragment.id] = self._copy(fragment)
        return True

    def set_fragment_deleted(self, fragment_id: str, owner_id: str, deleted_at: Optional[str]) -> bool:
        fragment = self._owned(fragment_id, owner_id)
        if fragment is None:
            return False
        fragment.deleted_at = to_datetime(deleted_at)
        return True

    def delete_fragment(self, fragment_id: str, owner_id: str) -> bool:
        if not self._owned(fragment_id, owner_id):
            return False
        del self.fragments[fragment_id]
        self.edges = {k: e for k, e in self.edges.items() if fragment_id not in (e.fragment_a_id, e.fragment_b_id)}
        return True

    def attach_tags(self, fragment_id: str, owner_id: str, tag_ids: Iterable[str]) -> List[str]:
        fragment = self._owned(fragment_id, owner_id)
        fragment.tag_ids = sorted(set(fragment.tag_ids) | set(tag_ids))
        return list(fragment.tag_ids)

    def create_tag(self, tag) -> bool:
        self.tags[tag.id] = tag
        return True

    def get_tag(self, tag_id: str, owner_id: str):
        tag = self.tags.get(tag_id)
        return tag if tag is not None and tag.owner_id == owner_id else None

    def list_tags(self, owner_id: str):
        return sorted((t for t in self.tags.values() if t.owner_id == owner_id), key=lambda t: t.path)

    def create_relation(self, edge: RelationshipEdge) -> bool:
        with self.lock:
            if edge.id in self.edges:
                return True
            if not self._owned(edge.fragment_a_id, edge.owner_id) or not self._owned(edge.fragment_b_id, edge.owner_id):
                return False
            self.edges[edge.id] = edge
        return True

    def relation_exists(self, owner_id: str, fragment_a_id: str, fragment_b_id: str) -> bool:
        pair = {fragment_a_id, fragment_b_id}
        return any(e.owner_id == owner_id and {e.fragment_a_id, e.fragment_b_id} == pair for e in list(self.edges.values()))

    def get_relations(self, fragment_id: str, owner_id: str, limit: int = 50) -> List[RelationshipEdge]:
        edges = [
            e for e in list(self.edges.values()) if e.owner_id == owner_id and fragment_id in (e.fragment_a_id, e.fragment_b_id)
        ]
        return sorted(edges, key=lambda e: (-e.strength, e.id))[:limit]

    def neighbour_ids(self, fragment_ids: Iterable[str], owner_id: str) -> Set[str]:
        ids = set(fragment_ids)
        found = set()
        for edge in list(self.edges.values()):
            if edge.owner_id != owner_id:
                continue
            if edge.fragment_a_id in ids:
                found.add(edge.fragment_b_id)
            if edge.fragment_b_id in ids:
                found.add(edge.fragment_a_id)
        return found


LLM_FAILURE = BedrockLLMError('model throttled')


def make_fragment(content='', fragment_id='frag-1', owner_id=OWNER, **kwargs):
    now = kwargs.pop('created_at', None) or utc_now()
    return Fragment(id=fragment_id,
                    owner_id=owner_id,
                    content=content,
                    source_type=kwargs.pop('source_type', SourceType.DOCUMENT),
                    created_at=now,
                    updated_at=now,
                    **kwargs)


def make_chunks(fragment, texts):
    return [
        Chunk(id=chunk_id(fragment.id, i), fragment_id=fragment.id, index=i, content=text, token_estimate=estimate_tokens(text))
        for i, text in enumerate(texts)
    ]
