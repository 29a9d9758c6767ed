import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from fusionmem.models.core import CreatedBy, Fragment, RelationType, SourceType
from fusionmem.utils.config import NeptuneConfig
from fusionmem.utils.neptune_client import NeptuneClient, NeptuneError, _edge_to_relation, _vertex_to_fragment

CONFIG = NeptuneConfig(endpoint='graph.example.com', port=8182, region='us-east-1')


def test_vertex_value_maps_become_fragments():
    row = {
        'id': ['frag-1'],
        'owner_id': ['owner-1'],
        'content': ['Tides follow the moon.'],
        'source_type': ['web'],
        'created_at': ['2024-03-01T10:00:00+00:00'],
        'updated_at': ['2024-03-02T10:00:00+00:00'],
        'container_tags': ['["ocean"]'],
        'metadata': ['{"url": "https://example.com"}'],
        'deleted_at': ['2024-03-03T10:00:00+00:00'],
    }

    fragment = _vertex_to_fragment(row, ['t2', 't1'])

    assert fragment.source_type is SourceType.WEB
    assert fragment.container_tags == ['ocean']
    assert fragment.tag_ids == ['t1', 't2']
    assert fragment.metadata == {'url': 'https://example.com'}
    assert fragment.title is None
    assert fragment.is_deleted


def test_edge_properties_become_relations():
    props = {
        'id': 'edge-1',
        'owner_id': 'owner-1',
        'relation_type': 'builds_on',
        'strength': 0.92,
        'confidence': 0.92,
        'created_by': 'system',
        'created_at': '2024-03-01T10:00:00+00:00',
        'metadata': '{"inferred": true}',
    }

    edge = _edge_to_relation(props, 'frag-a', 'frag-b')

    assert edge.relation_type is RelationType.BUILDS_ON
    assert edge.created_by is CreatedBy.SYSTEM
    assert edge.other_end('frag-b') == 'frag-a'
    assert edge.metadata == {'inferred': True}


def test_fragment_properties_are_serialised():
    now = datetime(2024, 3, 1, tzinfo=timezone.utc)
    fragment = Fragment(id='f',
                        owner_id='o',
                        content='c',
                        source_type=SourceType.AUDIO,
                        created_at=now,
                        updated_at=now,
                        container_tags=['b', 'a', 'b'],
                        metadata={'duration': 12.0})

    props = NeptuneClient._fragment_properties(fragment)

    assert props['container_tags'] == '["a", "b"]'
    assert json.loads(props['metadata']) == {'duration': 12.0}
    assert props['source_type'] == 'audio'
    assert 'title' not in props and 'source_id' not in props


def test_closed_transport_triggers_one_reconnect():
    g = MagicMock()
    g.V.side_effect = [RuntimeError('Cannot write to closing transport'), MagicMock()]
    client = NeptuneClient(CONFIG, traversal_source=g)
    client._connect = MagicMock()

    assert client.health_check()
    client._connect.assert_called_once()


def test_other_failures_surface_as_neptune_errors():
    g = MagicMock()
    g.V.side_effect = RuntimeError('timeout')
    client = NeptuneClient(CONFIG, traversal_source=g)

    with pytest.raises(NeptuneError):
        client.get_fragment('f', 'o')


def test_missing_fragment_reads_as_none():
    g = MagicMock()
    g.V.return_value.has_label.return_value.has.return_value.has.return_value.value_map.return_value.to_list.return_value = []
    client = NeptuneClient(CONFIG, traversal_source=g)

    assert client.get_fragment('f', 'o') is None
    assert client.get_fragments([], 'o') == {}
    assert client.neighbour_ids([], 'o') == set()
