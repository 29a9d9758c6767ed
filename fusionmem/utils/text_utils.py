"""
Text helpers shared by indexing, search and synthesis.
"""

import hashlib
import math
import re
import uuid
from typing import List, Set

SENTENCE_PATTERN = re.compile(r'[^.!?。！？]+(?:[.!?。！？]+|$)')
SENTENCE_END_CHARS = '.!?。！？'
WORD_PATTERN = re.compile(r'\w+', re.UNICODE)
CHUNK_NAMESPACE = uuid.UUID('6f1c2a52-7d0e-4b8e-9a43-3f7f9a0c8e11')


def content_hash(text: str) -> str:
    """Normalized content hash used for re-submission deduplication."""
    return hashlib.sha256(text.strip().lower().encode('utf-8')).hexdigest()


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def split_sentences(text: str) -> List[str]:
    """Split text into sentences, keeping their terminators."""
    return [s.strip() for s in SENTENCE_PATTERN.findall(text) if s.strip()]


def chunk_text(text: str, chunk_size: int = 500) -> List[str]:
    """Pack sentences into chunks of at most ``chunk_size`` characters.

    A single sentence longer than ``chunk_size`` is hard-split.

    Args:
        text: Content to split
        chunk_size: Maximum characters per chunk

    Returns:
        Non-empty chunk strings in document order
    """
    if chunk_size <= 0:
        raise ValueError('chunk_size must be positive')

    chunks: List[str] = []
    current = ''
    for sentence in split_sentences(text):
        while len(sentence) > chunk_size:
            if current:
                chunks.append(current)
                current = ''
            chunks.append(sentence[:chunk_size].strip())
            sentence = sentence[chunk_size:].strip()
        if not sentence:
            continue
        candidate = f'{current} {sentence}' if current else sentence
        if len(candidate) <= chunk_size:
            current = candidate
        else:
            chunks.append(current)
            current = sentence
    if current:
        chunks.append(current)
    return [c for c in chunks if c]


def chunk_id(fragment_id: str, index: int) -> str:
    """Deterministic chunk id so re-submitting a fragment overwrites, never duplicates."""
    return str(uuid.uuid5(CHUNK_NAMESPACE, f'{fragment_id}:{index}'))


def word_set(text: str) -> Set[str]:
    return set(WORD_PATTERN.findall(text.lower()))


def jaccard_similarity(text_a: str, text_b: str) -> float:
    """Jaccard similarity of the word sets of two texts."""
    words_a = word_set(text_a)
    words_b = word_set(text_b)
    union = words_a | words_b
    if not union:
        return 1.0
    return len(words_a & words_b) / len(union)


def truncate_to_tokens(text: str, max_tokens: int, boundary_ratio: float = 0.8) -> str:
    """Cut text to fit ``max_tokens``, preferring a sentence boundary.

    The sentence boundary is used only when it keeps at least
    ``boundary_ratio`` of the allowed characters.
    """
    max_chars = max(0, max_tokens) * 4
    if len(text) <= max_chars:
        return text

    truncated = text[:max_chars]
    last_end = max(truncated.rfind(ch) for ch in SENTENCE_END_CHARS)
    if last_end >= 0 and last_end + 1 >= max_chars * boundary_ratio:
        return truncated[:last_end + 1]
    return truncated


def sanitize_fts_query(query: str) -> str:
    """Turn free text into a safe phrase query for the full-text index.

    Quotes are dropped, every other non-word character becomes a space, and
    whitespace is collapsed before the result is phrase-wrapped.

    Returns:
        Phrase-wrapped query, or an empty string when nothing searchable remains
    """
    cleaned = re.sub(r'["\']', '', query)
    cleaned = re.sub(r'[^\w\s]', ' ', cleaned)
    cleaned = re.sub(r'\s+', ' ', cleaned).strip()
    if not cleaned:
        return ''
    return f'"{cleaned}"'


def contains_marker(text: str, markers) -> bool:
    """Whole-word, case-insensitive marker check."""
    words = word_set(text)
    return any(marker in words for marker in markers)
