import threading
import time
from datetime import timedelta

import pytest

from fusionmem.models.core import Candidate, SourceType, SynthesisType
from fusionmem.services.context_synthesis import (NO_SOURCES_MESSAGE, build_context, calculate_confidence, deduplicate,
                                                  rank_candidates, recency_weight)
from fusionmem.utils.errors import AuthorizationError, NotFoundError, ValidationError
from fusionmem.utils.opensearch_client import OpenSearchError
from fusionmem.utils.text_utils import estimate_tokens
from fusionmem.utils.timestamp_utils import utc_now

from .fakes import DIMENSION, LLM_FAILURE, OTHER_OWNER, OWNER, make_fragment

FALLBACK_PREFIX = 'Based on the available information:\n\n'


def unit(i):
    return [1.0 if j == i else 0.0 for j in range(DIMENSION)]


def candidate(source_id, relevance=0.8, content=None, days_old=0, source_type='document', title=None):
    return Candidate(source_id=source_id,
                     source_type=source_type,
                     content=content if content is not None else f'Distinct content for {source_id}.',
                     relevance=relevance,
                     created_at=utc_now() - timedelta(days=days_old),
                     title=title)


@pytest.fixture
def corpus(indexer, embed):
    # The care note sits slightly off the panel-ageing direction so hybrid order is fixed
    embed.vectors = {'clean': [0.8, 0.0, 0.6] + [0.0] * (DIMENSION - 3), 'Solar': unit(0), 'Wind': unit(1), 'Tides': unit(2)}
    fragments = [
        make_fragment('Solar panels lose about half a percent of output per year.',
                      'frag-solar',
                      title='Panel ageing',
                      metadata={'page': 12}),
        make_fragment('Solar panels work best when kept clean and cool.', 'frag-solar-care', source_type=SourceType.MANUAL),
        make_fragment('Tides are driven by the moon.', 'frag-tides'),
    ]
    for fragment in fragments:
        indexer.index_fragment(fragment)
    return fragments


# Ranking and packing


@pytest.mark.parametrize('days_old,expected', [(0, 1.0), (6, 0.8), (15, 0.5), (60, 0.5)])
def test_recency_weight_decays_linearly_to_a_floor(days_old, expected):
    now = utc_now()
    assert recency_weight(now - timedelta(days=days_old), now) == pytest.approx(expected)


def test_rank_candidates_prefers_recent_when_asked():
    old = candidate('old', relevance=0.9, days_old=20)
    new = candidate('new', relevance=0.7)

    assert [c.source_id for c in rank_candidates([old, new])] == ['old', 'new']
    assert [c.source_id for c in rank_candidates([old, new], prioritize_recent=True)] == ['new', 'old']


def test_rank_candidates_keeps_retrieval_order_on_ties():
    ranked = rank_candidates([candidate('a'), candidate('b'), candidate('c')])
    assert [c.source_id for c in ranked] == ['a', 'b', 'c']


def test_deduplicate_drops_near_identical_content():
    kept = deduplicate([
        candidate('a', content='the quick brown fox jumps over the lazy dog'),
        candidate('b', content='The quick brown fox jumps over the lazy dog!'),
        candidate('c', content='an entirely different sentence'),
    ])

    assert [c.source_id for c in kept] == ['a', 'c']


def test_build_context_respects_the_token_budget():
    candidates = [candidate(f's{i}', content='Sentence about energy storage. ' * 20, title=f'Doc {i}') for i in range(5)]

    context, included, used = build_context(candidates, context_window=250)

    assert used <= 250
    assert estimate_tokens(context) <= 250
    assert 1 <= len(included) < 5
    assert context.startswith('[Source 1: document - Doc 0]\n')


def test_build_context_counts_labels_against_the_budget():
    tiny = candidate('a', content='x' * 40)

    _, included, _ = build_context([tiny], context_window=estimate_tokens('x' * 40))

    assert included, 'content is truncated to make room for the label'
    _, included, used = build_context([tiny], context_window=2)
    assert used <= 2


def test_calculate_confidence():
    sources = [candidate('a', relevance=1.0), candidate('b', relevance=0.5)]
    long_text = 'x' * 200

    assert calculate_confidence(long_text, sources) == pytest.approx(0.5 + 0.1 + 0.75 * 0.3)
    assert calculate_confidence('short', sources) == pytest.approx(0.5 + 0.1 + 0.75 * 0.3 - 0.2)
    assert calculate_confidence(NO_SOURCES_MESSAGE, []) == pytest.approx(0.3)
    many = [candidate(str(i), relevance=1.0) for i in range(20)]
    assert calculate_confidence(long_text, many) == 1.0


# Orchestration


def test_synthesis_answers_from_ranked_sources(orchestrator, corpus, llm):
    result = orchestrator.synthesize('Solar panels', OWNER)

    assert result.content == llm.response
    assert result.synthesis_type is SynthesisType.ANSWER
    assert result.metadata['sources_used'] >= 1
    assert result.metadata['context_tokens'] <= 4000
    assert '[Source 1: document - Panel ageing]' in llm.prompts[-1]
    assert 0.1 <= result.confidence <= 1.0
    first = result.source_attributions[0]
    assert first.source_id == 'frag-solar'
    assert first.page == 12
    assert {a.source_type for a in result.source_attributions} <= {'document', 'memory'}
    assert 'frag-tides' not in {a.source_id for a in result.source_attributions}


def test_manual_fragments_are_attributed_as_memories(orchestrator, corpus):
    result = orchestrator.synthesize('Solar panels', OWNER)

    types = {a.source_id: a.source_type for a in result.source_attributions}
    assert types['frag-solar-care'] == 'memory'


def test_context_stays_within_a_small_window(orchestrator, corpus):
    result = orchestrator.synthesize('Solar panels', OWNER, context_window=20)

    assert result.metadata['context_tokens'] <= 20


def test_high_minimum_confidence_yields_no_sources(orchestrator, corpus, llm):
    result = orchestrator.synthesize('Wind power output', OWNER, min_confidence=0.9)

    assert result.source_attributions == []
    assert result.metadata['sources_used'] == 0
    assert result.content == NO_SOURCES_MESSAGE
    assert result.confidence <= 0.3
    assert llm.prompts == []
    assert result.warnings


def test_attribution_can_be_switched_off(orchestrator, corpus):
    result = orchestrator.synthesize('Solar panels', OWNER, include_attribution=False)

    assert result.source_attributions == []
    assert result.metadata['sources_used'] >= 1


def test_conversation_messages_are_candidates(orchestrator, llm):
    orchestrator.record_message(OWNER, 'session-1', 'user', 'Why do solar panels degrade?', session_title='Energy chat')
    orchestrator.record_message(OTHER_OWNER, 'session-2', 'user', 'My solar panels are private.')

    result = orchestrator.synthesize('solar panels', OWNER)

    conversations = [a for a in result.source_attributions if a.source_type == 'conversation']
    assert len(conversations) == 1
    assert conversations[0].relevance_score == pytest.approx(0.7)
    assert conversations[0].title == 'Energy chat'
    assert 'private' not in llm.prompts[-1]


def test_slow_source_is_abandoned_at_the_deadline(orchestrator, corpus, opensearch):
    opensearch.message_gate = threading.Event()
    try:
        started = time.monotonic()
        result = orchestrator.synthesize('Solar panels', OWNER, timeout=0.5)
        elapsed = time.monotonic() - started
    finally:
        opensearch.message_gate.set()

    assert elapsed < 3
    assert result.metadata['timed_out_sources'] == ['conversation']
    assert any('timed out' in w for w in result.warnings)
    assert result.metadata['sources_used'] >= 1


def test_failed_source_is_reported_and_others_are_used(orchestrator, corpus, vector_index, opensearch):
    vector_index.error = OpenSearchError('knn index down')
    opensearch.keyword_error = OpenSearchError('text index down')
    orchestrator.record_message(OWNER, 'session-1', 'assistant', 'Solar panels degrade slowly.')

    result = orchestrator.synthesize('solar panels', OWNER)

    assert any(w.startswith('Knowledge search failed') for w in result.warnings)
    assert [a.source_type for a in result.source_attributions] == ['conversation']


def test_memory_graph_is_searched_as_its_own_source(orchestrator, memory_graph, search_engine, embed, monkeypatch):
    embed.vectors = {'Geothermal': unit(3)}
    fragment = memory_graph.create(OWNER, 'Geothermal plants tap heat below the crust.', title='Heat notes')

    def knowledge_down(*args, **kwargs):
        raise OpenSearchError('text index down')

    monkeypatch.setattr(search_engine, 'search', knowledge_down)

    result = orchestrator.synthesize('Geothermal heat', OWNER)

    assert any(w.startswith('Knowledge search failed') for w in result.warnings)
    [attribution] = result.source_attributions
    assert attribution.source_id == fragment.id
    assert attribution.source_type == 'memory'
    assert attribution.title == 'Heat notes'
    assert attribution.relevance_score == pytest.approx(1.0)


def test_failed_memory_source_keeps_the_other_sources(orchestrator, corpus, memory_graph, monkeypatch):

    def memory_down(*args, **kwargs):
        raise OpenSearchError('knn index down')

    monkeypatch.setattr(memory_graph, 'search_memories', memory_down)

    result = orchestrator.synthesize('Solar panels', OWNER)

    assert any(w.startswith('Memory search failed') for w in result.warnings)
    assert result.source_attributions[0].source_id == 'frag-solar'
    assert result.metadata['timed_out_sources'] == []


def test_overlapping_memory_and_knowledge_hits_are_merged(orchestrator, memory_graph, embed):
    embed.vectors = {'Geothermal': unit(3)}
    fragment = memory_graph.create(OWNER, 'Geothermal plants tap heat below the crust.')

    result = orchestrator.synthesize('Geothermal heat', OWNER)

    assert [a.source_id for a in result.source_attributions] == [fragment.id]


def test_query_expansions_are_reported(orchestrator, corpus):
    result = orchestrator.synthesize('explain solar panels', OWNER)

    assert 'describe solar panels' in result.metadata['query_expansions']


def test_no_source_warning_names_a_too_small_window(orchestrator, corpus, llm):
    result = orchestrator.synthesize('Solar panels', OWNER, context_window=1)

    assert result.content == NO_SOURCES_MESSAGE
    assert llm.prompts == []
    assert any('Context window of 1 tokens' in w for w in result.warnings)


def test_no_source_warning_for_an_empty_corpus(orchestrator):
    result = orchestrator.synthesize('Solar panels', OWNER)

    assert result.content == NO_SOURCES_MESSAGE
    assert 'No sources matched the query' in result.warnings


def test_llm_failure_falls_back_to_raw_context(orchestrator, corpus, llm):
    llm.error = LLM_FAILURE

    result = orchestrator.synthesize('Solar panels', OWNER)

    assert result.content.startswith(FALLBACK_PREFIX)
    assert result.content.endswith('...')
    assert 'Solar panels' in result.content
    assert any('LLM synthesis failed' in w for w in result.warnings)
    assert result.source_attributions


def test_slow_llm_falls_back_at_the_deadline(orchestrator, corpus, llm):
    llm.gate = threading.Event()
    try:
        result = orchestrator.synthesize('Solar panels', OWNER, timeout=0.5)
    finally:
        llm.gate.set()

    assert result.content.startswith(FALLBACK_PREFIX)
    assert any('timed out' in w for w in result.warnings)


def test_empty_llm_response_falls_back(orchestrator, corpus, llm):
    llm.response = ''

    result = orchestrator.synthesize('Solar panels', OWNER)

    assert result.content.startswith(FALLBACK_PREFIX)


def test_fallback_excerpt_is_bounded(orchestrator, corpus, llm, synthesis_config):
    llm.error = LLM_FAILURE

    result = orchestrator.synthesize('Solar panels', OWNER)

    assert len(result.content) <= len(FALLBACK_PREFIX) + synthesis_config.fallback_excerpt_chars + 3


def test_synthesis_type_and_style_shape_the_prompt(orchestrator, corpus, llm):
    orchestrator.synthesize('Solar panels', OWNER, synthesis_type='comparison', response_style='concise')

    assert llm.prompts[-1].startswith('Compare and contrast the information about concisely and to the point: Solar panels')


@pytest.mark.parametrize('kwargs,error', [
    ({'query': 'Solar', 'owner_id': ''}, AuthorizationError),
    ({'query': ' ', 'owner_id': OWNER}, ValidationError),
    ({'query': 'Solar', 'owner_id': OWNER, 'synthesis_type': 'poem'}, ValidationError),
    ({'query': 'Solar', 'owner_id': OWNER, 'response_style': 'shouty'}, ValidationError),
    ({'query': 'Solar', 'owner_id': OWNER, 'min_confidence': 1.5}, ValidationError),
    ({'query': 'Solar', 'owner_id': OWNER, 'max_sources': 0}, ValidationError),
    ({'query': 'Solar', 'owner_id': OWNER, 'timeout': 0}, ValidationError),
])
def test_invalid_requests_are_rejected(orchestrator, kwargs, error):
    with pytest.raises(error):
        orchestrator.synthesize(**kwargs)


# Conversations


def test_record_message_validates_role_and_content(orchestrator):
    with pytest.raises(ValidationError):
        orchestrator.record_message(OWNER, 's', 'robot', 'hello')
    with pytest.raises(ValidationError):
        orchestrator.record_message(OWNER, 's', 'user', '  ')


def test_promote_conversation_stores_the_transcript(orchestrator, memory_graph):
    orchestrator.record_message(OWNER, 'session-1', 'system', 'You are helpful.')
    orchestrator.record_message(OWNER, 'session-1', 'user', 'What is RRF?', session_title='Search chat')
    orchestrator.record_message(OWNER, 'session-1', 'assistant', 'Reciprocal rank fusion.')

    fragment = orchestrator.promote_conversation('session-1', OWNER, tags=['search'])

    assert fragment.content == 'User: What is RRF?\n\nAssistant: Reciprocal rank fusion.'
    assert fragment.source_type is SourceType.CONVERSATION
    assert fragment.title == 'Search chat'
    assert fragment.container_tags == ['search']
    assert fragment.metadata['message_count'] == 2
    assert fragment.metadata['participants'] == ['assistant', 'user']
    assert not fragment.metadata['was_summarized']
    assert memory_graph.get(OWNER, fragment.id).source_id == 'session-1'


def test_promote_conversation_can_include_system_messages(orchestrator):
    orchestrator.record_message(OWNER, 'session-1', 'system', 'You are helpful.')
    orchestrator.record_message(OWNER, 'session-1', 'user', 'Hi.')

    fragment = orchestrator.promote_conversation('session-1', OWNER, include_system_messages=True)

    assert fragment.content.startswith('System: You are helpful.')


def test_promote_unknown_conversation_is_not_found(orchestrator):
    orchestrator.record_message(OTHER_OWNER, 'session-1', 'user', 'Not yours.')

    with pytest.raises(NotFoundError):
        orchestrator.promote_conversation('session-1', OWNER)


def test_long_conversations_are_summarized(orchestrator, llm):
    orchestrator.record_message(OWNER, 'session-1', 'user', 'word ' * 700)
    orchestrator.record_message(OWNER, 'session-1', 'assistant', 'Noted.')

    fragment = orchestrator.promote_conversation('session-1', OWNER)

    assert fragment.content == llm.response
    assert fragment.metadata['was_summarized']
    assert fragment.metadata['original_length'] > 3000
    assert llm.prompts[-1].startswith('Summarize the following conversation.')


def test_summary_failure_keeps_the_full_transcript(orchestrator, llm):
    orchestrator.record_message(OWNER, 'session-1', 'user', 'word ' * 700)
    llm.error = LLM_FAILURE

    fragment = orchestrator.promote_conversation('session-1', OWNER)

    assert fragment.content.startswith('User: word word')
    assert not fragment.metadata['was_summarized']


def test_summarization_can_be_disabled(orchestrator, llm):
    orchestrator.record_message(OWNER, 'session-1', 'user', 'word ' * 700)

    fragment = orchestrator.promote_conversation('session-1', OWNER, summarize_if_long=False)

    assert llm.prompts == []
    assert len(fragment.content) > 3000
