"""
Context Synthesis Orchestrator: multi-source retrieval, ranking, budgeting and
LLM synthesis with source attribution.
"""

import time
import uuid
from concurrent.futures import ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from ..models.core import (Attribution, Candidate, ConversationMessage, Fragment, ProcessedQuery, ResponseStyle, SourceType,
                           SynthesisResult, SynthesisType)
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import SynthesisConfig, config
from ..utils.errors import FusionMemError, NotFoundError, ValidationError, require_owner
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient
from ..utils.text_utils import estimate_tokens, jaccard_similarity, truncate_to_tokens
from ..utils.timestamp_utils import age_in_days, to_iso, utc_now
from .hybrid_search import HybridSearchEngine
from .memory_graph import MemoryGraph
from .query_processor import QueryProcessor

logger = get_logger(__name__)

DUPLICATE_THRESHOLD = 0.8
RECENCY_HORIZON_DAYS = 30
RECENCY_FLOOR = 0.5
CONVERSATION_RELEVANCE = 0.7
EXCERPT_CHARS = 200
SHORT_RESPONSE_CHARS = 100
SYNTHESIS_MAX_TOKENS = 2000
SUMMARY_MAX_TOKENS = 500
DOCUMENT_SOURCE_TYPES = (SourceType.DOCUMENT, SourceType.WEB)

NO_SOURCES_MESSAGE = 'No relevant information was found for this request.'

STYLE_INSTRUCTIONS = {
    ResponseStyle.ACADEMIC: 'in a formal, academic tone with proper citations',
    ResponseStyle.CONVERSATIONAL: 'in a friendly, conversational tone',
    ResponseStyle.CONCISE: 'concisely and to the point',
    ResponseStyle.DETAILED: 'with comprehensive detail and examples',
}

TYPE_INSTRUCTIONS = {
    SynthesisType.ANSWER: 'Answer the following question',
    SynthesisType.SUMMARY: 'Provide a comprehensive summary of',
    SynthesisType.COMPARISON: 'Compare and contrast the information about',
    SynthesisType.EXPLANATION: 'Explain in detail',
    SynthesisType.ANALYSIS: 'Analyze and provide insights about',
}

SYNTHESIS_PROMPT = """{instruction} {style}: {query}

Use only the context below. Refer to sources by their [Source N] label.

<context>
{context}
</context>"""

SUMMARY_PROMPT = """Summarize the following conversation. Keep the decisions, facts and open questions; drop greetings and filler.

<conversation>
{transcript}
</conversation>"""


def recency_weight(created_at: Optional[datetime], now: Optional[datetime] = None) -> float:
    if created_at is None:
        return RECENCY_FLOOR
    return max(RECENCY_FLOOR, 1.0 - age_in_days(created_at, now) / RECENCY_HORIZON_DAYS)


def rank_candidates(candidates: List[Candidate], prioritize_recent: bool = False,
                    now: Optional[datetime] = None) -> List[Candidate]:
    """Sort by relevance, optionally time-decayed. Ties keep retrieval order."""
    if not prioritize_recent:
        return sorted(candidates, key=lambda c: -c.relevance)
    now = now or utc_now()
    return sorted(candidates, key=lambda c: -(c.relevance * recency_weight(c.created_at, now)))


def deduplicate(candidates: List[Candidate], threshold: float = DUPLICATE_THRESHOLD) -> List[Candidate]:
    """Greedy, order-preserving: drop a candidate whose word overlap with a kept one reaches ``threshold``."""
    kept: List[Candidate] = []
    for candidate in candidates:
        if all(jaccard_similarity(candidate.content, other.content) < threshold for other in kept):
            kept.append(candidate)
    return kept


def _source_label(index: int, candidate: Candidate) -> str:
    label = f'[Source {index}: {candidate.source_type}'
    if candidate.title:
        label += f' - {candidate.title}'
    return label + ']\n'


def build_context(candidates: List[Candidate], context_window: int) -> Tuple[str, List[Candidate], int]:
    """
    Pack candidates into a labelled context within a token budget.

    Labels and separators count against the budget. The first candidate that
    does not fit is truncated to the remaining budget and packing stops.

    Returns:
        (context text, candidates included, estimated tokens used)
    """
    blocks: List[str] = []
    included: List[Candidate] = []
    used = 0

    for candidate in candidates:
        header = ('\n\n' if blocks else '') + _source_label(len(included) + 1, candidate)
        block = header + candidate.content
        cost = estimate_tokens(block)
        if used + cost <= context_window:
            blocks.append(block)
            included.append(candidate)
            used += cost
            continue

        remaining = context_window - used - estimate_tokens(header)
        if remaining > 0:
            truncated = truncate_to_tokens(candidate.content, remaining).strip()
            if truncated:
                blocks.append(header + truncated)
                included.append(candidate)
                used += estimate_tokens(header + truncated)
        break

    return ''.join(blocks), included, used


def calculate_confidence(content: str, sources: List[Candidate]) -> float:
    """Heuristic confidence in [0.1, 1.0] from source count, mean relevance and response length."""
    confidence = 0.5
    if sources:
        confidence += min(0.3, len(sources) * 0.05)
        confidence += sum(s.relevance for s in sources) / len(sources) * 0.3
    if len(content) < SHORT_RESPONSE_CHARS:
        confidence -= 0.2
    return max(0.1, min(1.0, confidence))


def build_prompt(query: str, context: str, synthesis_type: SynthesisType, response_style: ResponseStyle) -> str:
    return SYNTHESIS_PROMPT.format(instruction=TYPE_INSTRUCTIONS[synthesis_type],
                                   style=STYLE_INSTRUCTIONS[response_style],
                                   query=query,
                                   context=context)


def _attribution(candidate: Candidate) -> Attribution:
    content = candidate.content
    excerpt = content if len(content) <= EXCERPT_CHARS else content[:EXCERPT_CHARS - 3] + '...'
    return Attribution(source_id=candidate.source_id,
                       source_type=candidate.source_type,
                       relevance_score=candidate.relevance,
                       excerpt=excerpt,
                       title=candidate.title,
                       page=candidate.page,
                       timestamp=candidate.timestamp,
                       url=candidate.url)


def _fragment_candidate(fragment: Fragment, relevance: float) -> Candidate:
    return Candidate(source_id=fragment.id,
                     source_type='document' if fragment.source_type in DOCUMENT_SOURCE_TYPES else 'memory',
                     content=fragment.content,
                     relevance=relevance,
                     created_at=fragment.created_at,
                     title=fragment.title,
                     page=fragment.metadata.get('page'),
                     timestamp=fragment.metadata.get('timestamp'),
                     url=fragment.metadata.get('url'))


def _no_sources_reason(candidates: List[Candidate], eligible: List[Candidate], timed_out: List[str], min_confidence: float,
                       context_window: int) -> str:
    if eligible:
        return f'Context window of {context_window} tokens cannot hold the first source'
    if candidates:
        return f'No sources met the minimum relevance of {min_confidence}'
    if timed_out:
        return f'No sources returned before the deadline (timed out: {", ".join(timed_out)})'
    return 'No sources matched the query'


def _parse_enum(enum_cls, value, label: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f'Invalid {label}: {value}')


class ContextSynthesisOrchestrator:
    """Answers a query from an owner's documents, memories and recent conversations."""

    def __init__(self,
                 search: Optional[HybridSearchEngine] = None,
                 opensearch: Optional[OpenSearchClient] = None,
                 llm: Optional[BedrockLLM] = None,
                 memory_graph: Optional[MemoryGraph] = None,
                 query_processor: Optional[QueryProcessor] = None,
                 synthesis_config: Optional[SynthesisConfig] = None):
        self.search = search or HybridSearchEngine()
        self.opensearch = opensearch or self.search.opensearch
        self.llm = llm or BedrockLLM(config.bedrock_llm)
        self._memory_graph = memory_graph
        self.query_processor = query_processor or QueryProcessor()
        self.config = synthesis_config or config.synthesis

        logger.info('Initialized ContextSynthesisOrchestrator')

    @property
    def memory_graph(self) -> MemoryGraph:
        if self._memory_graph is None:
            self._memory_graph = MemoryGraph(llm=self.llm)
        return self._memory_graph

    def synthesize(self,
                   query: str,
                   owner_id: str,
                   synthesis_type: Any = SynthesisType.ANSWER,
                   max_sources: Optional[int] = None,
                   context_window: Optional[int] = None,
                   prioritize_recent: bool = False,
                   min_confidence: Optional[float] = None,
                   response_style: Any = ResponseStyle.CONVERSATIONAL,
                   include_attribution: bool = True,
                   timeout: Optional[float] = None) -> SynthesisResult:
        """
        Retrieve, rank and budget context for a query, then synthesise a response.

        Args:
            query: Natural language request
            owner_id: Upstream-verified owner scope
            synthesis_type: answer, summary, comparison, explanation or analysis
            max_sources: Maximum sources kept after ranking
            context_window: Token budget for the assembled context
            prioritize_recent: Apply linear recency decay over 30 days
            min_confidence: Minimum candidate relevance
            response_style: academic, conversational, concise or detailed
            include_attribution: Return source attributions
            timeout: Deadline in seconds for the whole pipeline

        Returns:
            SynthesisResult; degraded steps are listed in ``warnings``

        Raises:
            AuthorizationError: If owner_id is missing
            ValidationError: If the query or an option is invalid
        """
        started = time.monotonic()
        owner_id = require_owner(owner_id)
        processed = self.query_processor.process(query)
        synthesis_type = _parse_enum(SynthesisType, synthesis_type, 'synthesis_type')
        response_style = _parse_enum(ResponseStyle, response_style, 'response_style')
        max_sources = max_sources if max_sources is not None else self.config.max_sources
        context_window = context_window if context_window is not None else self.config.context_window
        min_confidence = min_confidence if min_confidence is not None else self.config.min_confidence
        timeout = timeout if timeout is not None else self.config.timeout
        if max_sources < 1 or context_window < 1:
            raise ValidationError('max_sources and context_window must be positive')
        if not 0.0 <= min_confidence <= 1.0:
            raise ValidationError(f'min_confidence must be within [0, 1], got {min_confidence}')
        if timeout <= 0:
            raise ValidationError(f'timeout must be positive, got {timeout}')
        deadline = started + timeout

        candidates, warnings, timed_out = self._retrieve(processed, owner_id, max_sources, min_confidence, deadline)

        eligible = [c for c in candidates if c.relevance >= min_confidence]
        ranked = rank_candidates(eligible, prioritize_recent)
        selected = deduplicate(ranked)[:max_sources]
        context, included, context_tokens = build_context(selected, context_window)

        if included:
            content = self._generate(processed.primary, context, synthesis_type, response_style, deadline, warnings)
        else:
            content = NO_SOURCES_MESSAGE
            warnings.append(_no_sources_reason(candidates, eligible, timed_out, min_confidence, context_window))

        elapsed = time.monotonic() - started
        logger.info(f'Synthesized {synthesis_type.value} from {len(included)} sources for owner {owner_id} in {elapsed:.3f}s')
        return SynthesisResult(content=content,
                               source_attributions=[_attribution(c) for c in included] if include_attribution else [],
                               confidence=calculate_confidence(content, included),
                               synthesis_type=synthesis_type,
                               processing_time=elapsed,
                               metadata={
                                   'sources_used': len(included),
                                   'candidates_found': len(candidates),
                                   'context_tokens': context_tokens,
                                   'source_types': sorted({c.source_type for c in included}),
                                   'timed_out_sources': timed_out,
                                   'query_alternatives': processed.alternatives,
                                   'query_expansions': processed.expansions,
                               },
                               warnings=warnings)

    def _retrieve(self, processed: ProcessedQuery, owner_id: str, max_sources: int, min_confidence: float,
                  deadline: float) -> Tuple[List[Candidate], List[str], List[str]]:
        """Fan out to every source; keep whatever finished before the deadline."""
        candidates: List[Candidate] = []
        warnings: List[str] = []
        timed_out: List[str] = []

        pool = ThreadPoolExecutor(max_workers=3, thread_name_prefix='synthesis-retrieval')
        futures = {
            pool.submit(self._search_knowledge, processed.primary, owner_id, max_sources * 2): 'knowledge',
            pool.submit(self._search_memories, processed.primary, owner_id, max_sources, min_confidence): 'memory',
            pool.submit(self._search_conversations, processed.primary, owner_id, max_sources): 'conversation',
        }
        try:
            done, not_done = wait(futures, timeout=max(0.0, deadline - time.monotonic()))
            # Late results are never read once the deadline has passed
            for future in not_done:
                future.cancel()
                timed_out.append(futures[future])
                warnings.append(f'{futures[future].capitalize()} search timed out')
                logger.warning(f'{futures[future]} retrieval abandoned at deadline for owner {owner_id}')

            # Iterate in submission order so candidate order does not depend on completion order
            for future, name in futures.items():
                if future not in done:
                    continue
                try:
                    found, source_warnings = future.result()
                except FusionMemError as e:
                    warnings.append(f'{name.capitalize()} search failed: {e}')
                    logger.warning(f'{name} retrieval failed for owner {owner_id}: {e}')
                    continue
                candidates.extend(found)
                warnings.extend(source_warnings)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        return candidates, warnings, timed_out

    def _search_knowledge(self, query: str, owner_id: str, top_k: int) -> Tuple[List[Candidate], List[str]]:
        response = self.search.search(query, owner_id, top_k=top_k)
        candidates = []
        for result in response.results:
            candidates.append(
                Candidate(source_id=result.fragment_id,
                          source_type='document' if result.source_type in DOCUMENT_SOURCE_TYPES else 'memory',
                          content=result.content,
                          relevance=result.relevance,
                          created_at=result.created_at,
                          title=result.metadata.get('title'),
                          page=result.metadata.get('page'),
                          timestamp=result.metadata.get('timestamp'),
                          url=result.metadata.get('url')))
        return candidates, list(response.warnings)

    def _search_memories(self, query: str, owner_id: str, limit: int,
                         min_similarity: float) -> Tuple[List[Candidate], List[str]]:
        matches = self.memory_graph.search_memories(owner_id, query, limit=limit, min_similarity=min_similarity)
        return [_fragment_candidate(m.fragment, m.score) for m in matches], []

    def _search_conversations(self, query: str, owner_id: str, top_k: int) -> Tuple[List[Candidate], List[str]]:
        since = utc_now() - timedelta(days=self.config.conversation_window_days)
        messages = self.opensearch.search_messages(query, owner_id, since, top_k)
        # The message index has no comparable relevance signal; recent matches get a fixed score
        return [
            Candidate(source_id=m.id,
                      source_type='conversation',
                      content=m.content,
                      relevance=CONVERSATION_RELEVANCE,
                      created_at=m.created_at,
                      title=m.session_title,
                      timestamp=to_iso(m.created_at)) for m in messages if m.owner_id == owner_id
        ], []

    def _generate(self, query: str, context: str, synthesis_type: SynthesisType, response_style: ResponseStyle,
                  deadline: float, warnings: List[str]) -> str:
        prompt = build_prompt(query, context, synthesis_type, response_style)
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            warnings.append('Deadline reached before synthesis, returning raw context')
            return self._fallback(context)

        temperature = 0.3 if synthesis_type in (SynthesisType.ANSWER, SynthesisType.SUMMARY) else 0.5
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix='synthesis-llm')
        try:
            future = pool.submit(self.llm.complete, prompt, temperature, SYNTHESIS_MAX_TOKENS)
            content = future.result(timeout=remaining)
        except FutureTimeoutError:
            warnings.append('LLM synthesis timed out, returning raw context')
            logger.warning('LLM synthesis timed out, falling back to raw context')
            return self._fallback(context)
        except FusionMemError as e:
            warnings.append(f'LLM synthesis failed, returning raw context: {e}')
            logger.warning(f'LLM synthesis failed, falling back to raw context: {e}')
            return self._fallback(context)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        if not content:
            warnings.append('LLM returned an empty response, returning raw context')
            return self._fallback(context)
        return content

    def _fallback(self, context: str) -> str:
        return f'Based on the available information:\n\n{context[:self.config.fallback_excerpt_chars]}...'

    # Conversations

    def record_message(self,
                       owner_id: str,
                       session_id: str,
                       role: str,
                       content: str,
                       session_title: Optional[str] = None,
                       metadata: Optional[Dict[str, Any]] = None) -> ConversationMessage:
        """Store a conversation message so it is searchable and can later be promoted."""
        owner_id = require_owner(owner_id)
        if role not in ('user', 'assistant', 'system'):
            raise ValidationError(f'Invalid message role: {role}')
        if not content or not content.strip():
            raise ValidationError('Message content must not be empty')
        message = ConversationMessage(id=str(uuid.uuid4()),
                                      session_id=session_id,
                                      owner_id=owner_id,
                                      role=role,
                                      content=content,
                                      created_at=utc_now(),
                                      session_title=session_title,
                                      metadata=dict(metadata or {}))
        self.opensearch.index_message(message)
        return message

    def promote_conversation(self,
                             session_id: str,
                             owner_id: str,
                             include_system_messages: bool = False,
                             summarize_if_long: bool = True,
                             tags: Optional[List[str]] = None) -> Fragment:
        """
        Persist a conversation thread as a memory fragment.

        Threads longer than the summarize threshold are summarised by the LLM
        when ``summarize_if_long`` is set; if summarisation fails the full
        transcript is stored instead.

        Raises:
            NotFoundError: If the thread has no messages for this owner
        """
        owner_id = require_owner(owner_id)
        messages = [
            m for m in self.opensearch.get_thread(session_id, owner_id)
            if m.owner_id == owner_id and (include_system_messages or m.role != 'system')
        ]
        if not messages:
            raise NotFoundError(f'Conversation {session_id} has no messages')

        transcript = '\n\n'.join(f'{m.role.capitalize()}: {m.content}' for m in messages)
        content = transcript
        summarized = False
        if summarize_if_long and len(transcript) > self.config.summarize_threshold:
            try:
                summary = self.llm.complete(SUMMARY_PROMPT.format(transcript=transcript),
                                            temperature=0.3,
                                            max_tokens=SUMMARY_MAX_TOKENS)
                if summary:
                    content = summary
                    summarized = True
            except FusionMemError as e:
                logger.warning(f'Conversation summarization failed for session {session_id}, storing full transcript: {e}')

        session_title = next((m.session_title for m in messages if m.session_title), None)
        fragment = self.memory_graph.create(owner_id,
                                            content,
                                            source_type=SourceType.CONVERSATION,
                                            title=session_title or f'Conversation {session_id}',
                                            source_id=session_id,
                                            container_tags=tags,
                                            metadata={
                                                'session_title': session_title,
                                                'message_count': len(messages),
                                                'participants': sorted({m.role for m in messages}),
                                                'original_length': len(transcript),
                                                'was_summarized': summarized,
                                            })
        logger.info(f'Promoted conversation {session_id} to fragment {fragment.id}')
        return fragment
