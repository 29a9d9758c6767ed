"""
Configuration management for AWS services and retrieval/synthesis settings.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float
    cost_per_1k_tokens: float
    max_batch_size: int


@dataclass
class NeptuneConfig:
    """Configuration for Amazon Neptune graph database."""
    endpoint: str
    port: int
    region: str


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    index_name: str
    dimension: int


@dataclass
class IndexingConfig:
    """Configuration for embedding indexing jobs."""
    batch_size: int
    max_batch_size: int
    cost_limit: float
    chunk_size: int
    pair_retry_attempts: int


@dataclass
class SearchConfig:
    """Configuration for hybrid search."""
    top_k: int
    rrf_k: int
    candidate_multiplier: int
    max_candidates: int


@dataclass
class RelationConfig:
    """Configuration for automatic relationship inference."""
    similarity_threshold: float
    candidate_limit: int
    classifier: str
    queue_size: int


@dataclass
class SynthesisConfig:
    """Configuration for context synthesis."""
    context_window: int
    max_sources: int
    min_confidence: float
    timeout: float
    conversation_window_days: int
    summarize_threshold: int
    fallback_excerpt_chars: int


@dataclass
class CacheConfig:
    """Configuration for the query embedding cache."""
    max_entries: int


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    neptune: NeptuneConfig
    opensearch: OpenSearchConfig
    indexing: IndexingConfig
    search: SearchConfig
    relation: RelationConfig
    synthesis: SynthesisConfig
    cache: CacheConfig
    mcp: MCPConfig


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '1000')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.3')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')),
                                              cost_per_1k_tokens=float(os.getenv('BEDROCK_EMBED_COST_PER_1K_TOKENS', '0.00002')),
                                              max_batch_size=int(os.getenv('BEDROCK_EMBED_MAX_BATCH_SIZE', '100')))

    # Neptune configuration
    neptune_config = NeptuneConfig(endpoint=os.getenv('NEPTUNE_ENDPOINT', 'localhost'),
                                   port=int(os.getenv('NEPTUNE_PORT', '8182')),
                                   region=os.getenv('NEPTUNE_AWS_REGION', 'us-east-1'))

    # Vector and full-text search configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'fusionmem'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')))

    indexing_config = IndexingConfig(batch_size=int(os.getenv('INDEXING_BATCH_SIZE', '50')),
                                     max_batch_size=int(os.getenv('INDEXING_MAX_BATCH_SIZE', '100')),
                                     cost_limit=float(os.getenv('INDEXING_COST_LIMIT', '10.0')),
                                     chunk_size=int(os.getenv('INDEXING_CHUNK_SIZE', '500')),
                                     pair_retry_attempts=int(os.getenv('INDEXING_PAIR_RETRY_ATTEMPTS', '2')))

    search_config = SearchConfig(top_k=int(os.getenv('SEARCH_TOP_K', '10')),
                                 rrf_k=int(os.getenv('SEARCH_RRF_K', '60')),
                                 candidate_multiplier=int(os.getenv('SEARCH_CANDIDATE_MULTIPLIER', '2')),
                                 max_candidates=int(os.getenv('SEARCH_MAX_CANDIDATES', '100')))

    relation_config = RelationConfig(similarity_threshold=float(os.getenv('RELATION_SIMILARITY_THRESHOLD', '0.8')),
                                     candidate_limit=int(os.getenv('RELATION_CANDIDATE_LIMIT', '5')),
                                     classifier=os.getenv('RELATION_CLASSIFIER', 'heuristic'),
                                     queue_size=int(os.getenv('RELATION_QUEUE_SIZE', '1000')))

    synthesis_config = SynthesisConfig(context_window=int(os.getenv('SYNTHESIS_CONTEXT_WINDOW', '4000')),
                                       max_sources=int(os.getenv('SYNTHESIS_MAX_SOURCES', '10')),
                                       min_confidence=float(os.getenv('SYNTHESIS_MIN_CONFIDENCE', '0.6')),
                                       timeout=float(os.getenv('SYNTHESIS_TIMEOUT', '30.0')),
                                       conversation_window_days=int(os.getenv('SYNTHESIS_CONVERSATION_WINDOW_DAYS', '30')),
                                       summarize_threshold=int(os.getenv('SYNTHESIS_SUMMARIZE_THRESHOLD', '3000')),
                                       fallback_excerpt_chars=int(os.getenv('SYNTHESIS_FALLBACK_EXCERPT_CHARS', '800')))

    cache_config = CacheConfig(max_entries=int(os.getenv('QUERY_CACHE_MAX_ENTRIES', '1024')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     neptune=neptune_config,
                     opensearch=opensearch_config,
                     indexing=indexing_config,
                     search=search_config,
                     relation=relation_config,
                     synthesis=synthesis_config,
                     cache=cache_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
