"""
Query processing: validation, normalisation, alternative phrasings and
synonym expansion ahead of retrieval.
"""

import re
from typing import Dict, List

from ..models.core import ProcessedQuery
from ..utils.errors import ValidationError
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

MIN_QUERY_LENGTH = 2
MAX_QUERY_LENGTH = 1000

SYNONYMS: Dict[str, List[str]] = {
    'learn': ['study', 'understand', 'master', 'grasp'],
    'explain': ['describe', 'clarify', 'illustrate', 'demonstrate'],
    'compare': ['contrast', 'analyze', 'evaluate', 'examine'],
    'solve': ['resolve', 'fix', 'calculate', 'determine'],
    'create': ['build', 'make', 'generate', 'construct'],
    'understand': ['comprehend', 'grasp', 'learn', 'know'],
}


class QueryProcessor:
    """Rule-based query rewriting. No provider calls."""

    def __init__(self, max_expansions: int = 10):
        self.max_expansions = max_expansions

    @staticmethod
    def validate(query: str) -> str:
        """
        Check query length and return it whitespace-normalised.

        Raises:
            ValidationError: If the query is empty, too short or too long
        """
        if not isinstance(query, str) or not query.strip():
            raise ValidationError('Query must be a non-empty string')
        normalized = re.sub(r'\s+', ' ', query).strip()
        if len(normalized) < MIN_QUERY_LENGTH:
            raise ValidationError(f'Query must be at least {MIN_QUERY_LENGTH} characters')
        if len(normalized) > MAX_QUERY_LENGTH:
            raise ValidationError(f'Query must not exceed {MAX_QUERY_LENGTH} characters')
        return normalized

    def process(self, query: str) -> ProcessedQuery:
        """
        Expand and normalise a raw query.

        Validation errors propagate; any other failure yields the raw query
        as the primary form with no alternatives.
        """
        normalized = self.validate(query)
        try:
            return ProcessedQuery(original=query,
                                  primary=normalized,
                                  alternatives=self._alternatives(normalized),
                                  expansions=self._expansions(normalized))
        except Exception as e:
            logger.warning(f'Query processing failed, using raw query: {e}')
            return ProcessedQuery(original=query, primary=normalized)

    def _alternatives(self, query: str) -> List[str]:
        lowered = query.lower()
        alternatives: List[str] = []

        if lowered.startswith('what is '):
            concept = query[8:].strip(' ?')
            alternatives += [concept, f'{concept} definition', f'{concept} meaning']

        if lowered.startswith('how to '):
            task = query[7:].strip(' ?')
            alternatives += [f'{task} process', f'{task} method', f'{task} steps']

        if lowered.startswith('how does '):
            alternatives.append(query[9:].strip(' ?').replace(' work', ' mechanism'))

        return _unique([a for a in alternatives if a and a != query])

    def _expansions(self, query: str) -> List[str]:
        expansions: List[str] = []
        for word in re.findall(r'\w+', query.lower()):
            for synonym in SYNONYMS.get(word, []):
                expanded = re.sub(rf'\b{re.escape(word)}\b', synonym, query, flags=re.IGNORECASE)
                if expanded != query:
                    expansions.append(expanded)
        return _unique(expansions)[:self.max_expansions]


def _unique(values: List[str]) -> List[str]:
    seen = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result
