"""
Amazon Bedrock embedding client wrapper with retry logic and error handling.
"""

import json
import random
import time
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..models.core import EmbeddingBatch
from .config import BedrockEmbedConfig
from .embedding_cache import QueryEmbeddingCache
from .errors import UpstreamTransientError, ValidationError
from .logging_config import get_logger
from .text_utils import estimate_tokens

logger = get_logger(__name__)


class BedrockEmbedError(UpstreamTransientError):
    """Custom exception for Bedrock embedding errors."""
    pass


class BedrockEmbed:
    """Amazon Bedrock embedding client with retry logic and error handling."""

    def __init__(self, config: BedrockEmbedConfig, client: Any = None, cache: Optional[QueryEmbeddingCache] = None):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
            client: Pre-built bedrock-runtime client (built from config if None)
            cache: Query embedding cache shared across requests
        """
        self.config = config
        self.model_id = config.model_id
        self.output_embedding_length = config.dimension
        self.cache = cache

        self.bedrock = client or boto3.client(service_name='bedrock-runtime', region_name=config.region)

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')

    @property
    def is_cohere(self) -> bool:
        return 'cohere' in self.model_id.lower()

    @property
    def is_titan(self) -> bool:
        return 'titan' in self.model_id.lower()

    def _call_with_retry(self, data: dict) -> dict:
        """
        Make a Bedrock API call with retry logic.

        Args:
            data: Request data dictionary

        Returns:
            Response dictionary from Bedrock API

        Raises:
            BedrockEmbedError: If all retry attempts fail
        """
        body = json.dumps(data)

        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock Embed request attempt {attempt + 1}/{self.config.retry_attempts}')

                response = self.bedrock.invoke_model(body=body,
                                                     modelId=self.model_id,
                                                     accept='application/json',
                                                     contentType='application/json')

                return json.loads(response.get('body').read())

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock Embed attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                else:
                    raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts: {e}')

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock Embed: {e}')
                raise BedrockEmbedError(f'Unexpected Bedrock Embed error: {e}')

        raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts')

    def _check_dimension(self, vector: List[float]) -> List[float]:
        if len(vector) != self.output_embedding_length:
            raise BedrockEmbedError(f'Model returned {len(vector)} dimensions, expected {self.output_embedding_length}')
        return vector

    def _embed_single(self, text: str, input_type: str) -> Tuple[List[float], int]:
        if self.is_titan:
            response = self._call_with_retry({'inputText': text, 'dimensions': self.output_embedding_length})
            vector = response.get('embedding') or []
            tokens = response.get('inputTextTokenCount', estimate_tokens(text))
            return self._check_dimension(vector), tokens

        elif self.is_cohere:
            vectors, tokens = self._embed_cohere([text], input_type)
            return vectors[0], tokens

        raise BedrockEmbedError(f'Unsupported embedding model: {self.model_id}')

    def _embed_cohere(self, texts: List[str], input_type: str) -> Tuple[List[List[float]], int]:
        if self.output_embedding_length != 1024:
            raise BedrockEmbedError(f'Cohere models only support 1024 dimensions, got {self.output_embedding_length}')

        response = self._call_with_retry({'input_type': input_type, 'texts': texts})
        embeddings = response.get('embeddings') or []
        if len(embeddings) != len(texts):
            raise BedrockEmbedError(f'Cohere returned {len(embeddings)} embeddings for {len(texts)} texts')
        tokens = sum(estimate_tokens(t) for t in texts)
        return [self._check_dimension(v) for v in embeddings], tokens

    def _cost(self, tokens: int) -> float:
        return tokens / 1000.0 * self.config.cost_per_1k_tokens

    def embed_documents(self, texts: List[str]) -> EmbeddingBatch:
        """
        Generate embeddings for a batch of document texts.

        Titan embeds one text per call so a failure only affects that text.
        Cohere embeds the whole batch in one call.

        Args:
            texts: Texts to embed (at most max_batch_size)

        Returns:
            EmbeddingBatch with one vector slot per input text

        Raises:
            ValidationError: If the batch is larger than the provider limit
        """
        if len(texts) > self.config.max_batch_size:
            raise ValidationError(f'Batch of {len(texts)} exceeds provider limit of {self.config.max_batch_size}')

        vectors: List[Optional[List[float]]] = [None] * len(texts)
        errors: Dict[int, str] = {}
        tokens = 0

        if self.is_cohere:
            try:
                batch_vectors, tokens = self._embed_cohere(texts, 'search_document')
                vectors = list(batch_vectors)
            except BedrockEmbedError as e:
                logger.warning(f'Cohere batch embedding failed for {len(texts)} texts: {e}')
                errors = {i: str(e) for i in range(len(texts))}
        else:
            for i, text in enumerate(texts):
                if not text or not text.strip():
                    errors[i] = 'Empty text'
                    continue
                try:
                    vectors[i], used = self._embed_single(text, 'search_document')
                    tokens += used
                except BedrockEmbedError as e:
                    logger.warning(f'Embedding failed for text {i} of batch: {e}')
                    errors[i] = str(e)

        return EmbeddingBatch(vectors=vectors, token_count=tokens, cost=self._cost(tokens), errors=errors)

    def embed_document(self, text: str) -> List[float]:
        """
        Generate embeddings for document text.

        Raises:
            BedrockEmbedError: If embedding generation fails
        """
        if not text or not text.strip():
            raise ValidationError('Cannot embed empty document text')
        vector, _ = self._embed_single(text, 'search_document')
        return vector

    def embed_query(self, text: str) -> List[float]:
        """
        Generate embeddings for query text, served from the cache when possible.

        Args:
            text: Query text to embed

        Returns:
            List of embedding values

        Raises:
            ValidationError: If the query is empty
            BedrockEmbedError: If embedding generation fails
        """
        if not text or not text.strip():
            raise ValidationError('Cannot embed empty query text')

        def compute(value: str) -> List[float]:
            vector, _ = self._embed_single(value, 'search_query')
            return vector

        if self.cache is None:
            return compute(text)
        return self.cache.get_or_compute(text, compute)

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock embedding service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            test_embedding = self.embed_document('test')
            return len(test_embedding) == self.output_embedding_length

        except Exception as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
