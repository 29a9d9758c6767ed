"""
Memory Relationship Graph: fragment lifecycle, tagging, relationship edges,
automatic relationship inference and related-fragment traversal.
"""

import uuid
from typing import Any, Dict, Iterable, List, Optional

from ..models.core import (CreatedBy, Fragment, MemoryMatch, MemorySynthesisResult, MemorySynthesisType, RelationshipEdge,
                           RelationType, SourceType)
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import RelationConfig, config
from ..utils.errors import (NotFoundError, UpstreamTransientError, UpstreamUnavailableError, ValidationError,
                            require_owner)
from ..utils.logging_config import get_logger
from ..utils.neptune_client import NeptuneClient
from ..utils.timestamp_utils import to_iso, utc_now
from ..utils.vector_index import VectorIndex
from .embedding_indexer import EmbeddingIndexer
from .relationship_inference import (HeuristicRelationClassifier, LLMRelationClassifier, RelationClassifier,
                                     RelationshipInferenceQueue, system_edge_id)
from .tags import TagService

logger = get_logger(__name__)

MAX_EMBED_CHARS = 8000
DEFAULT_MEMORY_SIMILARITY = 0.8

MEMORY_SYNTHESIS_PROMPTS = {
    MemorySynthesisType.SUMMARY: 'Please create a comprehensive summary of the following memories:',
    MemorySynthesisType.COMPARISON:
    'Please compare and contrast the following memories, highlighting similarities and differences:',
    MemorySynthesisType.INTEGRATION: 'Please integrate the following memories into a coherent narrative or explanation:',
}


def _parse_enum(enum_cls, value, label: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f'Invalid {label}: {value}')


class MemoryGraph:
    """Owner-scoped fragment store backed by Neptune, indexed through the EmbeddingIndexer."""

    def __init__(self,
                 neptune: Optional[NeptuneClient] = None,
                 indexer: Optional[EmbeddingIndexer] = None,
                 vector_index: Optional[VectorIndex] = None,
                 embed: Optional[BedrockEmbed] = None,
                 llm: Optional[BedrockLLM] = None,
                 tags: Optional[TagService] = None,
                 classifier: Optional[RelationClassifier] = None,
                 relation_config: Optional[RelationConfig] = None,
                 inference_queue: Optional[RelationshipInferenceQueue] = None):
        """
        Initialize the memory graph.

        Args:
            neptune: Fragment, tag and edge store
            indexer: Embedding indexer (owns chunk and vector writes)
            vector_index: Vector index for similarity lookups (defaults to the indexer's)
            embed: Embedding provider (defaults to the indexer's)
            llm: LLM used by synthesize_memories and the LLM classifier
            tags: Tag service (built on the same Neptune client if None)
            classifier: Relation classifier; chosen from RELATION_CLASSIFIER if None
            relation_config: Inference threshold and candidate settings
            inference_queue: Background inference worker; one is started if None
        """
        self.relation_config = relation_config or config.relation
        self.neptune = neptune or NeptuneClient(config.neptune)
        self.indexer = indexer or EmbeddingIndexer(neptune=self.neptune)
        self.vector_index = vector_index or self.indexer.vector_index
        self.embed = embed or self.indexer.embed
        self._llm = llm
        self.tags = tags or TagService(self.neptune)
        self.classifier = classifier or self._default_classifier()
        self.inference_queue = inference_queue or RelationshipInferenceQueue(self.infer_relationships,
                                                                             max_size=self.relation_config.queue_size)

        logger.info(f'Initialized MemoryGraph with {type(self.classifier).__name__}')

    @property
    def llm(self) -> BedrockLLM:
        if self._llm is None:
            self._llm = BedrockLLM(config.bedrock_llm)
        return self._llm

    def _default_classifier(self) -> RelationClassifier:
        if self.relation_config.classifier == 'llm':
            return LLMRelationClassifier(self.llm)
        return HeuristicRelationClassifier()

    # Lifecycle

    def create(self,
               owner_id: str,
               content: str,
               source_type: Any = SourceType.MANUAL,
               title: Optional[str] = None,
               source_id: Optional[str] = None,
               container_tags: Optional[List[str]] = None,
               tag_ids: Optional[List[str]] = None,
               metadata: Optional[Dict[str, Any]] = None,
               fragment_id: Optional[str] = None) -> Fragment:
        """
        Create a fragment, index it and queue relationship inference.

        Indexing failures are logged and leave the fragment stored but
        unsearchable until re-indexed; inference never affects the result.

        Raises:
            AuthorizationError: If owner_id is missing
            ValidationError: If content is empty or source_type is unknown
            NotFoundError: If a tag id is unknown
        """
        owner_id = require_owner(owner_id)
        if not content or not content.strip():
            raise ValidationError('Fragment content must not be empty')
        source_type = _parse_enum(SourceType, source_type, 'source_type')
        tag_ids = self.tags.validate_tag_ids(owner_id, tag_ids) if tag_ids else []

        now = utc_now()
        fragment = Fragment(id=fragment_id or str(uuid.uuid4()),
                            owner_id=owner_id,
                            content=content.strip(),
                            source_type=source_type,
                            created_at=now,
                            updated_at=now,
                            title=title,
                            source_id=source_id,
                            container_tags=sorted(set(container_tags or [])),
                            tag_ids=tag_ids,
                            metadata=dict(metadata or {}))
        self.neptune.create_fragment(fragment)
        self._index(fragment)
        self.inference_queue.submit(owner_id, fragment.id)

        logger.info(f'Created {source_type.value} fragment {fragment.id} for owner {owner_id}')
        return fragment

    def _index(self, fragment: Fragment) -> None:
        try:
            stats = self.indexer.index_fragment(fragment)
            if stats.failed:
                logger.warning(f'{stats.failed} chunks of fragment {fragment.id} failed to index')
        except (UpstreamUnavailableError, UpstreamTransientError) as e:
            logger.warning(f'Indexing fragment {fragment.id} failed, re-index to make it searchable: {e}')

    def get(self, owner_id: str, fragment_id: str, include_deleted: bool = False) -> Fragment:
        """
        Raises:
            NotFoundError: If the fragment is absent, owned by someone else, or soft deleted without include_deleted
        """
        owner_id = require_owner(owner_id)
        fragment = self.neptune.get_fragment(fragment_id, owner_id)
        if fragment is None or (fragment.is_deleted and not include_deleted):
            raise NotFoundError(f'Fragment {fragment_id} not found')
        return fragment

    def list(self,
             owner_id: str,
             source_type: Any = None,
             container_tags: Optional[List[str]] = None,
             tag_ids: Optional[List[str]] = None,
             include_deleted: bool = False,
             limit: Optional[int] = None,
             offset: int = 0) -> List[Fragment]:
        """List fragments newest first. Container tags and tag ids match if any overlaps."""
        owner_id = require_owner(owner_id)
        if source_type is not None:
            source_type = _parse_enum(SourceType, source_type, 'source_type')

        fragments = []
        for fragment in self.neptune.list_fragments(owner_id):
            if fragment.is_deleted and not include_deleted:
                continue
            if source_type is not None and fragment.source_type is not source_type:
                continue
            if container_tags and not set(container_tags) & set(fragment.container_tags):
                continue
            if tag_ids and not set(tag_ids) & set(fragment.tag_ids):
                continue
            fragments.append(fragment)

        end = offset + limit if limit is not None else None
        return fragments[offset:end]

    def update(self,
               owner_id: str,
               fragment_id: str,
               content: Optional[str] = None,
               title: Optional[str] = None,
               container_tags: Optional[List[str]] = None,
               tag_ids: Optional[List[str]] = None,
               metadata: Optional[Dict[str, Any]] = None) -> Fragment:
        """
        Edit an active fragment. A content change re-chunks and re-indexes it;
        tags and metadata, when given, replace the stored values.
        """
        fragment = self.get(owner_id, fragment_id)
        content_changed = content is not None and content.strip() != fragment.content
        if content is not None and not content.strip():
            raise ValidationError('Fragment content must not be empty')

        if content_changed:
            fragment.content = content.strip()
        if title is not None:
            fragment.title = title
        tags_changed = container_tags is not None and sorted(set(container_tags)) != fragment.container_tags
        if container_tags is not None:
            fragment.container_tags = sorted(set(container_tags))
        if tag_ids is not None:
            fragment.tag_ids = self.tags.validate_tag_ids(fragment.owner_id, tag_ids)
        if metadata is not None:
            fragment.metadata = dict(metadata)
        fragment.updated_at = utc_now()

        self.neptune.update_fragment(fragment)
        if content_changed:
            self._index(fragment)
        elif tags_changed:
            self.indexer.opensearch.update_fragment_documents(fragment.id, fragment.owner_id,
                                                              {'container_tags': fragment.container_tags})

        logger.debug(f'Updated fragment {fragment.id} (content changed: {content_changed})')
        return fragment

    def soft_delete(self, owner_id: str, fragment_id: str) -> Fragment:
        """Hide a fragment from default reads and searches. Chunks and edges are kept.

        The index is marked before the graph so a failed call leaves the fragment
        active and a retry repeats both writes.
        """
        fragment = self.get(owner_id, fragment_id, include_deleted=True)
        if fragment.is_deleted:
            return fragment

        fragment.deleted_at = utc_now()
        self.indexer.opensearch.set_fragment_deleted(fragment.id, fragment.owner_id, fragment.deleted_at)
        self.neptune.set_fragment_deleted(fragment.id, fragment.owner_id, to_iso(fragment.deleted_at))
        self.inference_queue.cancel(fragment.id)
        logger.info(f'Soft deleted fragment {fragment.id}')
        return fragment

    def restore(self, owner_id: str, fragment_id: str) -> Fragment:
        """Undo a soft delete. The graph is cleared last, mirroring soft_delete."""
        fragment = self.get(owner_id, fragment_id, include_deleted=True)
        if not fragment.is_deleted:
            return fragment

        self.indexer.opensearch.set_fragment_deleted(fragment.id, fragment.owner_id, None)
        self.neptune.set_fragment_deleted(fragment.id, fragment.owner_id, None)
        fragment.deleted_at = None
        # Inference cancelled by the delete, or skipped while deleted, gets another chance
        self.inference_queue.submit(fragment.owner_id, fragment.id)
        logger.info(f'Restored fragment {fragment.id}')
        return fragment

    def hard_delete(self, owner_id: str, fragment_id: str) -> bool:
        """
        Permanently remove a fragment with its chunks, embeddings, edges and tag links.

        Raises:
            NotFoundError: If the fragment does not exist for this owner
        """
        fragment = self.get(owner_id, fragment_id, include_deleted=True)
        self.inference_queue.cancel(fragment.id)
        self.indexer.remove_fragment_from_index(fragment.id, fragment.owner_id)
        deleted = self.neptune.delete_fragment(fragment.id, fragment.owner_id)
        logger.info(f'Hard deleted fragment {fragment.id}')
        return deleted

    # Tags

    def add_tags(self, owner_id: str, fragment_id: str, tag_ids: List[str]) -> Fragment:
        fragment = self.get(owner_id, fragment_id)
        valid = self.tags.validate_tag_ids(fragment.owner_id, tag_ids)
        fragment.tag_ids = self.neptune.attach_tags(fragment.id, fragment.owner_id, valid)
        return fragment

    # Relationships

    def create_relation(self,
                        owner_id: str,
                        fragment_a_id: str,
                        fragment_b_id: str,
                        relation_type: Any,
                        strength: float = 1.0,
                        confidence: float = 1.0,
                        created_by: Any = CreatedBy.USER,
                        metadata: Optional[Dict[str, Any]] = None) -> RelationshipEdge:
        """
        Create an edge between two of the owner's fragments.

        One edge per unordered pair per creator: repeating the call returns the same edge id.

        Raises:
            ValidationError: On self-links, unknown types or out-of-range scores
            NotFoundError: If either fragment is missing
        """
        owner_id = require_owner(owner_id)
        if fragment_a_id == fragment_b_id:
            raise ValidationError('A fragment cannot be related to itself')
        relation_type = _parse_enum(RelationType, relation_type, 'relation_type')
        created_by = _parse_enum(CreatedBy, created_by, 'created_by')
        for value, label in ((strength, 'strength'), (confidence, 'confidence')):
            if not 0.0 <= value <= 1.0:
                raise ValidationError(f'{label} must be within [0, 1], got {value}')
        self.get(owner_id, fragment_a_id)
        self.get(owner_id, fragment_b_id)

        edge = RelationshipEdge(id=system_edge_id(owner_id, fragment_a_id, fragment_b_id, created_by.value),
                                owner_id=owner_id,
                                fragment_a_id=fragment_a_id,
                                fragment_b_id=fragment_b_id,
                                relation_type=relation_type,
                                strength=float(strength),
                                confidence=float(confidence),
                                created_by=created_by,
                                created_at=utc_now(),
                                metadata=dict(metadata or {}))
        self.neptune.create_relation(edge)
        return edge

    def get_relations(self, owner_id: str, fragment_id: str, limit: int = 10) -> List[RelationshipEdge]:
        owner_id = require_owner(owner_id)
        self.get(owner_id, fragment_id, include_deleted=True)
        return self.neptune.get_relations(fragment_id, owner_id, limit)

    def get_related(self, owner_id: str, fragment_ids: Iterable[str], max_depth: int = 1) -> List[Fragment]:
        """
        Breadth-first expansion over relationship edges.

        Returns:
            Active fragments reachable within max_depth hops, nearest hop first, seeds excluded
        """
        owner_id = require_owner(owner_id)
        if max_depth < 0:
            raise ValidationError(f'max_depth must not be negative, got {max_depth}')

        seeds = list(dict.fromkeys(fragment_ids))
        visited = set(seeds)
        frontier = set(seeds)
        ordered: List[str] = []
        for _ in range(max_depth):
            discovered = self.neptune.neighbour_ids(frontier, owner_id) - visited
            if not discovered:
                break
            visited |= discovered
            ordered.extend(sorted(discovered))
            frontier = discovered

        fragments = self.neptune.get_fragments(ordered, owner_id)
        return [fragments[i] for i in ordered if i in fragments and not fragments[i].is_deleted]

    def _similar(self,
                 vector: List[float],
                 owner_id: str,
                 limit: int,
                 min_similarity: float,
                 exclude: Iterable[str] = (),
                 include_deleted: bool = False) -> List[MemoryMatch]:
        excluded = set(exclude)
        # Several chunks of one fragment can match; over-fetch before collapsing to fragments
        matches = self.vector_index.query(vector, max(limit * 4, limit + 10), owner_id, include_deleted=include_deleted)

        best: Dict[str, float] = {}
        for match in matches:
            fragment_id = match.metadata.get('fragment_id')
            if not fragment_id or fragment_id in excluded or match.metadata.get('owner_id') != owner_id:
                continue
            best[fragment_id] = max(best.get(fragment_id, -1.0), match.score)

        ranked = sorted(((fid, score) for fid, score in best.items() if score >= min_similarity), key=lambda x: (-x[1], x[0]))
        fragments = self.neptune.get_fragments([fid for fid, _ in ranked], owner_id)
        results = []
        for fragment_id, score in ranked:
            fragment = fragments.get(fragment_id)
            if fragment is None or (fragment.is_deleted and not include_deleted):
                continue
            results.append(MemoryMatch(fragment=fragment, score=score))
            if len(results) >= limit:
                break
        return results

    def search_memories(self,
                        owner_id: str,
                        query: str,
                        limit: int = 10,
                        min_similarity: float = DEFAULT_MEMORY_SIMILARITY,
                        include_deleted: bool = False) -> List[MemoryMatch]:
        """Fragment-level semantic search: best chunk similarity per fragment."""
        owner_id = require_owner(owner_id)
        if not query or not query.strip():
            raise ValidationError('Query must not be empty')
        if limit < 1:
            raise ValidationError(f'limit must be positive, got {limit}')
        vector = self.embed.embed_query(query)
        return self._similar(vector, owner_id, limit, min_similarity, include_deleted=include_deleted)

    def infer_relationships(self, owner_id: str, fragment_id: str) -> List[RelationshipEdge]:
        """
        Link a fragment to its most similar fragments with system-created edges.

        Candidates need similarity at or above the configured threshold and no
        existing edge in either direction. Edge strength and confidence are the
        similarity score.
        """
        fragment = self.neptune.get_fragment(fragment_id, owner_id)
        if fragment is None or fragment.is_deleted:
            logger.debug(f'Skipping inference for missing or deleted fragment {fragment_id}')
            return []

        vector = self.embed.embed_document(fragment.content[:MAX_EMBED_CHARS])
        candidates = self._similar(vector,
                                   owner_id,
                                   self.relation_config.candidate_limit,
                                   self.relation_config.similarity_threshold,
                                   exclude=[fragment.id])

        created = []
        for candidate in candidates:
            other = candidate.fragment
            if self.neptune.relation_exists(owner_id, fragment.id, other.id):
                continue
            relation_type = self.classifier.classify(fragment.content, other.content)
            edge = RelationshipEdge(id=system_edge_id(owner_id, fragment.id, other.id),
                                    owner_id=owner_id,
                                    fragment_a_id=fragment.id,
                                    fragment_b_id=other.id,
                                    relation_type=relation_type,
                                    strength=candidate.score,
                                    confidence=candidate.score,
                                    created_by=self.classifier.created_by,
                                    created_at=utc_now(),
                                    metadata={'inferred': True})
            if self.neptune.create_relation(edge):
                created.append(edge)

        if created:
            logger.info(f'Inferred {len(created)} relationships for fragment {fragment.id}')
        return created

    # Synthesis and import

    def synthesize_memories(self,
                            owner_id: str,
                            fragment_ids: List[str],
                            synthesis_type: Any = MemorySynthesisType.SUMMARY,
                            include_related: bool = False,
                            max_related_depth: int = 1) -> MemorySynthesisResult:
        """
        Ask the LLM to summarise, compare or integrate a set of fragments.

        Raises:
            ValidationError: If none of the ids resolve to an active fragment
        """
        owner_id = require_owner(owner_id)
        synthesis_type = _parse_enum(MemorySynthesisType, synthesis_type, 'synthesis_type')

        found = self.neptune.get_fragments(fragment_ids, owner_id)
        sources = [found[i] for i in fragment_ids if i in found and not found[i].is_deleted]
        if not sources:
            raise ValidationError('No valid memories found')

        related = self.get_related(owner_id, [f.id for f in sources], max_related_depth) if include_related else []

        prompt = MEMORY_SYNTHESIS_PROMPTS[synthesis_type] + '\n\n' + '\n\n'.join(f.content for f in sources)
        if related:
            prompt += '\n\nAdditional related context:\n' + '\n\n'.join(f.content for f in related)

        synthesis = self.llm.complete(prompt, temperature=0.3)
        return MemorySynthesisResult(synthesis=synthesis,
                                     synthesis_type=synthesis_type,
                                     source_memories=sources,
                                     related_memories=related)

    def import_audio_transcription(self,
                                   owner_id: str,
                                   transcription: Dict[str, Any],
                                   topic_segments: List[Dict[str, Any]],
                                   audio_file_id: str,
                                   container_tags: Optional[List[str]] = None) -> List[Fragment]:
        """
        Store one fragment per topic segment plus one for the full transcript.

        A topic fragment holds the transcript segments that fall inside its
        time range (its summary if none do) and records start/end times.

        Args:
            transcription: ``{'text', 'segments': [{'id', 'start', 'end', 'text'}], 'language', 'duration'}``
            topic_segments: ``[{'topic', 'start_time', 'end_time', 'summary', 'key_points', 'confidence'}]``
            audio_file_id: Source audio id
            container_tags: Tags applied to every created fragment
        """
        owner_id = require_owner(owner_id)
        base_tags = list(container_tags or [])
        segments = transcription.get('segments') or []
        fragments = []

        for topic in topic_segments:
            start, end = topic['start_time'], topic['end_time']
            inside = [seg for seg in segments if seg['start'] >= start and seg['end'] <= end]
            text = ' '.join(seg['text'].strip() for seg in inside if seg.get('text')).strip() or topic.get('summary', '')
            if not text:
                logger.warning(f"Skipping empty audio topic segment '{topic.get('topic')}'")
                continue
            fragments.append(
                self.create(owner_id,
                            text,
                            source_type=SourceType.AUDIO,
                            title=topic.get('topic'),
                            source_id=audio_file_id,
                            container_tags=base_tags + [topic['topic']],
                            metadata={
                                'memory_type': 'audio_topic_segment',
                                'start_time': start,
                                'end_time': end,
                                'duration': end - start,
                                'topic': topic['topic'],
                                'summary': topic.get('summary'),
                                'key_points': topic.get('key_points', []),
                                'confidence': topic.get('confidence'),
                                'segment_count': len(inside),
                                'language': transcription.get('language'),
                            }))

        full_text = (transcription.get('text') or '').strip()
        if full_text:
            fragments.append(
                self.create(owner_id,
                            full_text,
                            source_type=SourceType.AUDIO,
                            source_id=audio_file_id,
                            container_tags=base_tags + ['full_transcription'],
                            metadata={
                                'memory_type': 'audio_full_transcription',
                                'duration': transcription.get('duration'),
                                'language': transcription.get('language'),
                                'total_segments': len(segments),
                                'topic_count': len(topic_segments),
                                'topics': [{
                                    'topic': t['topic'],
                                    'start_time': t['start_time'],
                                    'end_time': t['end_time']
                                } for t in topic_segments],
                            }))
        return fragments

    def close(self, timeout: Optional[float] = 5.0) -> None:
        self.inference_queue.stop(timeout)
