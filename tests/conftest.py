import pytest

from fusionmem.services.context_synthesis import ContextSynthesisOrchestrator
from fusionmem.services.embedding_indexer import EmbeddingIndexer
from fusionmem.services.hybrid_search import HybridSearchEngine
from fusionmem.services.memory_graph import MemoryGraph
from fusionmem.services.tags import TagService
from fusionmem.utils.config import IndexingConfig, RelationConfig, SearchConfig, SynthesisConfig

from .fakes import FakeEmbed, FakeLLM, FakeNeptune, FakeOpenSearch, FakeVectorIndex


@pytest.fixture
def opensearch():
    return FakeOpenSearch()


@pytest.fixture
def vector_index(opensearch):
    return FakeVectorIndex(opensearch)


@pytest.fixture
def embed():
    return FakeEmbed()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def neptune():
    return FakeNeptune()


@pytest.fixture
def indexing_config():
    return IndexingConfig(batch_size=2, max_batch_size=100, cost_limit=10.0, chunk_size=500, pair_retry_attempts=2)


@pytest.fixture
def search_config():
    return SearchConfig(top_k=10, rrf_k=60, candidate_multiplier=2, max_candidates=100)


@pytest.fixture
def relation_config():
    return RelationConfig(similarity_threshold=0.8, candidate_limit=5, classifier='heuristic', queue_size=100)


@pytest.fixture
def synthesis_config():
    return SynthesisConfig(context_window=4000,
                           max_sources=10,
                           min_confidence=0.6,
                           timeout=5.0,
                           conversation_window_days=30,
                           summarize_threshold=3000,
                           fallback_excerpt_chars=800)


@pytest.fixture
def indexer(opensearch, vector_index, embed, neptune, indexing_config):
    return EmbeddingIndexer(opensearch, vector_index, embed, neptune, indexing_config)


@pytest.fixture
def search_engine(opensearch, vector_index, embed, search_config):
    return HybridSearchEngine(opensearch, vector_index, embed, search_config)


@pytest.fixture
def tag_service(neptune):
    return TagService(neptune)


@pytest.fixture
def memory_graph(neptune, indexer, llm, tag_service, relation_config):
    graph = MemoryGraph(neptune, indexer, llm=llm, tags=tag_service, relation_config=relation_config)
    yield graph
    graph.close(timeout=1.0)


@pytest.fixture
def orchestrator(search_engine, opensearch, llm, memory_graph, synthesis_config):
    return ContextSynthesisOrchestrator(search_engine, opensearch, llm, memory_graph, synthesis_config=synthesis_config)
