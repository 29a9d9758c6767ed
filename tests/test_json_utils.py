import json
from datetime import datetime, timezone

import pytest

from fusionmem.models.core import Attribution, SynthesisResult, SynthesisType
from fusionmem.utils.json_utils import clean_json_response, parse_json_object, to_jsonable


@pytest.mark.parametrize('raw', ['```json\n{"a": 1}\n```', '```{"a": 1}```', '  {"a": 1}  '])
def test_clean_json_response_strips_fences(raw):
    assert clean_json_response(raw) == '{"a": 1}'


def test_parse_json_object_rejects_non_objects():
    assert parse_json_object('```json {"relation_type": "similar"}```') == {'relation_type': 'similar'}
    with pytest.raises(ValueError):
        parse_json_object('[1, 2]')
    with pytest.raises(ValueError):
        parse_json_object('not json')


def test_to_jsonable_flattens_results():
    result = SynthesisResult(content='answer',
                             source_attributions=[Attribution('frag-1', 'document', 0.9, 'excerpt', page=3)],
                             confidence=0.8,
                             synthesis_type=SynthesisType.ANSWER,
                             processing_time=0.1,
                             metadata={'source_types': {'document'}, 'at': datetime(2024, 5, 1, tzinfo=timezone.utc)})

    data = to_jsonable(result)

    assert data['synthesis_type'] == 'answer'
    assert data['source_attributions'][0]['page'] == 3
    assert data['metadata'] == {'source_types': ['document'], 'at': '2024-05-01T00:00:00+00:00'}
    json.dumps(data)
