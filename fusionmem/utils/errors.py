"""
Error taxonomy shared by the retrieval, indexing and synthesis services.

Client wrappers raise their own subclasses (``OpenSearchError``,
``NeptuneError``, ``BedrockEmbedError``, ``BedrockLLMError``) so callers can
either catch the specific client failure or the broader category.
"""

from typing import Optional


class FusionMemError(Exception):
    """Base exception for all engine errors."""
    pass


class AuthorizationError(FusionMemError):
    """Missing or invalid owner scope. Fatal, never retried."""
    pass


class ValidationError(FusionMemError):
    """Caller supplied an invalid query, option or filter."""
    pass


class DimensionMismatchError(ValidationError):
    """Vector length does not match the index dimension."""

    def __init__(self, expected: int, actual: int, vector_id: Optional[str] = None):
        self.expected = expected
        self.actual = actual
        self.vector_id = vector_id
        target = f' for {vector_id}' if vector_id else ''
        super().__init__(f'Invalid vector dimension{target}: expected {expected}, got {actual}')


class NotFoundError(FusionMemError):
    """Owner-scoped lookup found nothing."""
    pass


class UpstreamTransientError(FusionMemError):
    """Provider kept failing after bounded retries (rate limit, quota, timeout)."""
    pass


class UpstreamUnavailableError(FusionMemError):
    """Index or store is down. Must never be turned into an empty success."""
    pass


def require_owner(owner_id: Optional[str]) -> str:
    """Validate the upstream-resolved owner scope.

    Raises:
        AuthorizationError: If the owner id is missing or blank
    """
    if not owner_id or not str(owner_id).strip():
        raise AuthorizationError('Owner ID is required for this operation')
    return str(owner_id).strip()
