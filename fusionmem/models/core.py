"""
Core data models for the retrieval and context synthesis engine.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class SourceType(str, Enum):
    DOCUMENT = 'document'
    WEB = 'web'
    CONVERSATION = 'conversation'
    MANUAL = 'manual'
    AUDIO = 'audio'


class RelationType(str, Enum):
    SIMILAR = 'similar'
    CONTRADICTS = 'contradicts'
    BUILDS_ON = 'builds_on'
    REFERENCES = 'references'


class CreatedBy(str, Enum):
    USER = 'user'
    SYSTEM = 'system'
    LLM = 'llm'


class SearchMode(str, Enum):
    SEMANTIC = 'semantic'
    KEYWORD = 'keyword'
    HYBRID = 'hybrid'


class SynthesisType(str, Enum):
    ANSWER = 'answer'
    SUMMARY = 'summary'
    COMPARISON = 'comparison'
    EXPLANATION = 'explanation'
    ANALYSIS = 'analysis'


class ResponseStyle(str, Enum):
    ACADEMIC = 'academic'
    CONVERSATIONAL = 'conversational'
    CONCISE = 'concise'
    DETAILED = 'detailed'


class MemorySynthesisType(str, Enum):
    SUMMARY = 'summary'
    COMPARISON = 'comparison'
    INTEGRATION = 'integration'


class FragmentState(str, Enum):
    ACTIVE = 'active'
    SOFT_DELETED = 'soft_deleted'


@dataclass
class Fragment:
    """An atomic unit of stored knowledge ("memory") belonging to one owner.

    A fragment is either active or soft deleted; ``deleted_at`` carries the
    tag. Hard deletion is a separate, explicit cascading operation.
    """
    id: str
    owner_id: str
    content: str
    source_type: SourceType
    created_at: datetime
    updated_at: datetime
    title: Optional[str] = None
    source_id: Optional[str] = None
    container_tags: List[str] = field(default_factory=list)
    tag_ids: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    deleted_at: Optional[datetime] = None

    @property
    def state(self) -> FragmentState:
        return FragmentState.SOFT_DELETED if self.deleted_at is not None else FragmentState.ACTIVE

    @property
    def is_deleted(self) -> bool:
        return self.state is FragmentState.SOFT_DELETED


@dataclass
class Chunk:
    """A size-bounded sub-span of a fragment; ``index`` is contiguous and 0-based."""
    id: str
    fragment_id: str
    index: int
    content: str
    token_estimate: int
    embedding_id: Optional[str] = None


@dataclass
class EmbeddingRecord:
    """Vector stored under its chunk id."""
    id: str  # Same as the chunk id
    vector: List[float]
    owner_id: str
    fragment_id: str
    source_type: SourceType
    container_tags: List[str]
    created_at: datetime


@dataclass
class RelationshipEdge:
    """Directionless-for-lookup edge between two fragments of the same owner."""
    id: str
    owner_id: str
    fragment_a_id: str
    fragment_b_id: str
    relation_type: RelationType
    strength: float
    confidence: float
    created_by: CreatedBy
    created_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)

    def other_end(self, fragment_id: str) -> str:
        return self.fragment_b_id if self.fragment_a_id == fragment_id else self.fragment_a_id


@dataclass
class Tag:
    """Hierarchical tag; names are unique among siblings for the same owner."""
    id: str
    owner_id: str
    name: str
    path: str  # Materialised, e.g. science/physics
    parent_id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class VectorMatch:
    """Raw nearest-neighbour hit returned by the vector index."""
    id: str
    score: float
    metadata: Dict[str, Any]


@dataclass
class SearchResult:
    """One ranked chunk hit.

    ``score`` orders results within a response (RRF score in hybrid mode);
    ``relevance`` is the comparable 0..1 signal (cosine similarity, or the
    keyword score normalised against the best keyword hit).
    """
    fragment_id: str
    chunk_id: str
    score: float
    rank_source: SearchMode
    excerpt: str
    owner_id: str
    relevance: float = 0.0
    content: str = ''
    source_type: Optional[SourceType] = None
    created_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SearchResponse:
    query: str
    mode: SearchMode
    results: List[SearchResult]
    total_results: int
    search_time: float
    filters: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    degraded: bool = False


@dataclass
class MemoryMatch:
    fragment: Fragment
    score: float  # Best chunk cosine similarity


@dataclass
class MemorySynthesisResult:
    synthesis: str
    synthesis_type: MemorySynthesisType
    source_memories: List[Fragment]
    related_memories: List[Fragment] = field(default_factory=list)


@dataclass
class IndexingStats:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    duplicates_skipped: int = 0
    cost: float = 0.0
    elapsed: float = 0.0
    halted_by_cost_limit: bool = False
    failed_chunk_ids: List[str] = field(default_factory=list)


@dataclass
class IndexingStatus:
    fragment_id: str
    is_indexed: bool
    chunk_count: int
    indexed_at: Optional[datetime] = None


@dataclass
class EmbeddingBatch:
    """Embedding provider response; ``vectors[i]`` is None when text ``i`` failed."""
    vectors: List[Optional[List[float]]]
    token_count: int
    cost: float
    errors: Dict[int, str] = field(default_factory=dict)


@dataclass
class ConversationMessage:
    id: str
    session_id: str
    owner_id: str
    role: str  # user, assistant or system
    content: str
    created_at: datetime
    session_title: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProcessedQuery:
    original: str
    primary: str
    alternatives: List[str] = field(default_factory=list)
    expansions: List[str] = field(default_factory=list)


@dataclass
class Candidate:
    """A retrieval candidate competing for a place in the synthesis context."""
    source_id: str
    source_type: str  # document, memory or conversation
    content: str
    relevance: float
    created_at: Optional[datetime] = None
    title: Optional[str] = None
    page: Optional[int] = None
    timestamp: Optional[str] = None
    url: Optional[str] = None


@dataclass
class Attribution:
    source_id: str
    source_type: str
    relevance_score: float
    excerpt: str
    title: Optional[str] = None
    page: Optional[int] = None
    timestamp: Optional[str] = None
    url: Optional[str] = None


@dataclass
class SynthesisResult:
    content: str
    source_attributions: List[Attribution]
    confidence: float
    synthesis_type: SynthesisType
    processing_time: float
    metadata: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
