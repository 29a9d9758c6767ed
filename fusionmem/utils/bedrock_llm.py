"""
Amazon Bedrock LLM client wrapper with retry logic and error handling.
"""

import json
import random
import time
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockLLMConfig
from .errors import UpstreamTransientError
from .logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = 'You are a precise assistant that answers strictly from the provided context.'


class BedrockLLMError(UpstreamTransientError):
    """Custom exception for Bedrock LLM errors."""
    pass


class BedrockLLM:
    """Amazon Bedrock LLM client with retry logic and error handling."""

    def __init__(self, config: BedrockLLMConfig, client: Any = None):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
            client: Pre-built bedrock-runtime client (built from config if None)
        """
        self.config = config
        self.model_id = config.model_id

        self.bedrock_runtime = client or boto3.client(
            'bedrock-runtime',
            region_name=config.region,
            config=BotoConfig(
                connect_timeout=60,
                read_timeout=120,
                retries={'max_attempts': 0}  # We handle retries manually
            ))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    def generate_response(self,
                          messages: List[Dict[str, Any]],
                          system_prompt: str,
                          max_tokens: Optional[int] = None,
                          temperature: Optional[float] = None,
                          stop_sequences: Optional[List[str]] = None) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Generate response using Bedrock LLM with retry logic.

        Args:
            messages: List of message dictionaries in Bedrock format
            system_prompt: System prompt for the conversation
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Temperature for generation (uses config default if None)
            stop_sequences: Stop sequences for generation

        Returns:
            Tuple of (response_text, invoke_metrics)

        Raises:
            BedrockLLMError: If all retry attempts fail
        """
        max_tokens = max_tokens if max_tokens is not None else self.config.max_tokens
        temperature = temperature if temperature is not None else self.config.temperature
        stop_sequences = stop_sequences or []

        system = [{'text': system_prompt}]
        inf_params = {
            'maxTokens': max_tokens,
            'temperature': temperature,
            'stopSequences': stop_sequences,
        }

        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock LLM request attempt {attempt + 1}/{self.config.retry_attempts}')

                stream = self.bedrock_runtime.converse_stream(modelId=self.model_id,
                                                              messages=messages,
                                                              system=system,
                                                              inferenceConfig=inf_params).get('stream')

                msg = ''
                invoke_metrics = None

                if stream:
                    for event in stream:
                        if 'contentBlockDelta' in event:
                            msg += event['contentBlockDelta']['delta'].get('text', '')
                        if 'metadata' in event:
                            invoke_metrics = {**event['metadata'].get('usage', {}), **event['metadata'].get('metrics', {})}

                logger.debug(f'Bedrock LLM response generated successfully (length: {len(msg)})')
                return msg, invoke_metrics

            except (ClientError, BotoCoreError, json.JSONDecodeError) as e:
                logger.warning(f'Bedrock LLM attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                else:
                    raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts: {e}')

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock LLM: {e}')
                raise BedrockLLMError(f'Unexpected Bedrock LLM error: {e}')

        raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts')

    def complete(self,
                 prompt: str,
                 temperature: Optional[float] = None,
                 max_tokens: Optional[int] = None,
                 system_prompt: str = DEFAULT_SYSTEM_PROMPT) -> str:
        """Single-turn completion: one user prompt in, response text out."""
        messages = [{'role': 'user', 'content': [{'text': prompt}]}]
        text, _ = self.generate_response(messages=messages,
                                         system_prompt=system_prompt,
                                         max_tokens=max_tokens,
                                         temperature=temperature)
        return text.strip()

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock LLM service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.complete("Respond with just 'OK'.", temperature=0.0, max_tokens=10)
            return len(response) > 0

        except Exception as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
