import pytest

from fusionmem.utils.embedding_cache import QueryEmbeddingCache


def test_hits_are_keyed_by_normalised_text():
    cache = QueryEmbeddingCache()
    cache.put('Solar Panels', [1.0, 2.0])

    assert cache.get('  solar panels ') == [1.0, 2.0]
    assert cache.get('wind') is None
    assert cache.stats() == {'size': 1, 'max_entries': 1024, 'hits': 1, 'misses': 1}


def test_returned_vectors_are_copies():
    cache = QueryEmbeddingCache()
    cache.put('q', [1.0])

    cache.get('q').append(2.0)

    assert cache.get('q') == [1.0]


def test_least_recently_used_entry_is_evicted_first():
    cache = QueryEmbeddingCache(max_entries=2)
    cache.put('a', [1.0])
    cache.put('b', [2.0])
    cache.get('a')
    cache.put('c', [3.0])

    assert cache.get('b') is None
    assert cache.get('a') == [1.0]
    assert len(cache) == 2


def test_get_or_compute_calls_provider_once():
    cache = QueryEmbeddingCache()
    calls = []

    def compute(text):
        calls.append(text)
        return [0.5]

    assert cache.get_or_compute('query', compute) == [0.5]
    assert cache.get_or_compute('QUERY', compute) == [0.5]
    assert calls == ['query']
    assert cache.access_count('query') == 1


def test_explicit_eviction_and_clear():
    cache = QueryEmbeddingCache()
    for text in 'abc':
        cache.put(text, [0.0])

    assert cache.evict(2) == 2
    assert cache.get('c') == [0.0]
    assert cache.evict(10) == 1
    cache.put('d', [0.0])
    cache.clear()
    assert len(cache) == 0


def test_size_must_be_positive():
    with pytest.raises(ValueError):
        QueryEmbeddingCache(max_entries=0)
