"""
MCP Interface Layer using fastmcp for agent orchestration.

Every tool takes an ``owner_id`` that has already been verified upstream.
"""
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError

from .services.context_synthesis import ContextSynthesisOrchestrator
from .services.embedding_indexer import EmbeddingIndexer
from .services.hybrid_search import HybridSearchEngine
from .services.memory_graph import MemoryGraph
from .utils.bedrock_embed import BedrockEmbed
from .utils.bedrock_llm import BedrockLLM
from .utils.config import config
from .utils.embedding_cache import QueryEmbeddingCache
from .utils.errors import FusionMemError
from .utils.json_utils import to_jsonable
from .utils.logging_config import get_logger
from .utils.neptune_client import NeptuneClient
from .utils.opensearch_client import OpenSearchClient
from .utils.vector_index import VectorIndex

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('FusionMem')


class Services:
    """Shares one set of clients between the search, memory and synthesis services."""

    def __init__(self):
        opensearch = OpenSearchClient(config.opensearch)
        opensearch.ensure_indices()
        vector_index = VectorIndex(opensearch, config.opensearch.dimension)
        embed = BedrockEmbed(config.bedrock_embed, cache=QueryEmbeddingCache(config.cache.max_entries))
        neptune = NeptuneClient(config.neptune)
        llm = BedrockLLM(config.bedrock_llm)

        indexer = EmbeddingIndexer(opensearch, vector_index, embed, neptune)
        self.search = HybridSearchEngine(opensearch, vector_index, embed)
        self.memory = MemoryGraph(neptune, indexer, llm=llm)
        self.synthesis = ContextSynthesisOrchestrator(self.search, opensearch, llm, self.memory)


@lru_cache(maxsize=1)
def get_services() -> Services:
    return Services()


def _fail(action: str, error: Exception) -> ToolError:
    """Tool errors carry the error class name so callers can tell bad input from outages."""
    if isinstance(error, FusionMemError):
        logger.error(f'{type(error).__name__} in MCP {action}: {error}')
        return ToolError(f'{type(error).__name__}: {action.capitalize()} failed: {error}')
    logger.error(f'Unexpected error in MCP {action}: {error}')
    return ToolError(f'{action.capitalize()} failed: {error}')


@mcp.tool()
def search_knowledge(owner_id: str,
                     query: str,
                     top_k: int = 10,
                     mode: str = 'hybrid',
                     filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Search an owner's documents and memories.

    Args:
        owner_id: Verified owner ID
        query: Natural language query
        top_k: Maximum number of results to return (default: 10)
        mode: semantic, keyword or hybrid (default: hybrid)
        filters: Optional source_type, container_tags, fragment_id, date_range

    Returns:
        SearchResponse as a dict
    """
    try:
        response = get_services().search.search(query, owner_id, top_k=top_k, mode=mode, filters=filters)
        logger.debug(f'MCP search returned {response.total_results} results for owner {owner_id}')
        return to_jsonable(response)
    except Exception as e:
        raise _fail('search', e) from e


@mcp.tool()
def synthesize_context(owner_id: str,
                       query: str,
                       synthesis_type: str = 'answer',
                       max_sources: Optional[int] = None,
                       context_window: Optional[int] = None,
                       prioritize_recent: bool = False,
                       min_confidence: Optional[float] = None,
                       response_style: str = 'conversational',
                       timeout: Optional[float] = None) -> Dict[str, Any]:
    """Answer a query from the owner's knowledge with source attributions.

    Args:
        owner_id: Verified owner ID
        query: Natural language request
        synthesis_type: answer, summary, comparison, explanation or analysis
        max_sources: Maximum sources to use
        context_window: Token budget for retrieved context
        prioritize_recent: Favour recent sources
        min_confidence: Minimum source relevance (0-1)
        response_style: academic, conversational, concise or detailed
        timeout: Deadline in seconds

    Returns:
        SynthesisResult as a dict
    """
    try:
        result = get_services().synthesis.synthesize(query,
                                                     owner_id,
                                                     synthesis_type=synthesis_type,
                                                     max_sources=max_sources,
                                                     context_window=context_window,
                                                     prioritize_recent=prioritize_recent,
                                                     min_confidence=min_confidence,
                                                     response_style=response_style,
                                                     timeout=timeout)
        return to_jsonable(result)
    except Exception as e:
        raise _fail('synthesis', e) from e


@mcp.tool()
def create_memory(owner_id: str,
                  content: str,
                  source_type: str = 'manual',
                  title: Optional[str] = None,
                  container_tags: Optional[List[str]] = None,
                  tag_ids: Optional[List[str]] = None,
                  metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Store a memory fragment. Related memories are linked in the background."""
    try:
        fragment = get_services().memory.create(owner_id,
                                                content,
                                                source_type=source_type,
                                                title=title,
                                                container_tags=container_tags,
                                                tag_ids=tag_ids,
                                                metadata=metadata)
        return to_jsonable(fragment)
    except Exception as e:
        raise _fail('memory creation', e) from e


@mcp.tool()
def get_memory(owner_id: str, memory_id: str, include_deleted: bool = False) -> Dict[str, Any]:
    try:
        return to_jsonable(get_services().memory.get(owner_id, memory_id, include_deleted=include_deleted))
    except Exception as e:
        raise _fail('memory lookup', e) from e


@mcp.tool()
def delete_memory(owner_id: str, memory_id: str, permanent: bool = False) -> Dict[str, Any]:
    """Soft delete a memory, or remove it with its index entries and relations when permanent is set."""
    try:
        memory = get_services().memory
        if permanent:
            return {'id': memory_id, 'deleted': memory.hard_delete(owner_id, memory_id), 'permanent': True}
        fragment = memory.soft_delete(owner_id, memory_id)
        return {'id': fragment.id, 'deleted': True, 'permanent': False, 'deleted_at': to_jsonable(fragment.deleted_at)}
    except Exception as e:
        raise _fail('memory deletion', e) from e


@mcp.tool()
def restore_memory(owner_id: str, memory_id: str) -> Dict[str, Any]:
    try:
        return to_jsonable(get_services().memory.restore(owner_id, memory_id))
    except Exception as e:
        raise _fail('memory restore', e) from e


@mcp.tool()
def get_memory_relations(owner_id: str, memory_id: str, limit: int = 10, max_depth: int = 1) -> Dict[str, Any]:
    """Relations of a memory plus the memories reachable within max_depth hops."""
    try:
        memory = get_services().memory
        relations = memory.get_relations(owner_id, memory_id, limit)
        related = memory.get_related(owner_id, [memory_id], max_depth)
        return {'relations': to_jsonable(relations), 'related': to_jsonable(related)}
    except Exception as e:
        raise _fail('relation lookup', e) from e


@mcp.tool()
def promote_conversation(owner_id: str,
                         session_id: str,
                         include_system_messages: bool = False,
                         summarize_if_long: bool = True,
                         tags: Optional[List[str]] = None) -> Dict[str, Any]:
    """Save a conversation thread as a memory, summarised when long."""
    try:
        fragment = get_services().synthesis.promote_conversation(session_id,
                                                                 owner_id,
                                                                 include_system_messages=include_system_messages,
                                                                 summarize_if_long=summarize_if_long,
                                                                 tags=tags)
        return to_jsonable(fragment)
    except Exception as e:
        raise _fail('conversation promotion', e) from e


if __name__ == '__main__':
    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    mcp.run(transport=transport, host=host, port=port)
