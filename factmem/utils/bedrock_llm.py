"""
Amazon Bedrock LLM client used for fact compression.
"""

import random
import time
from typing import Any, Dict, Iterable, List, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockLLMConfig
from .logging_config import get_logger

logger = get_logger(__name__)

# Error codes that fail the same way on every attempt
NON_RETRYABLE_CODES = frozenset({'ValidationException', 'AccessDeniedException', 'ResourceNotFoundException'})

JSON_FENCE_OPEN = '```json'
JSON_FENCE_CLOSE = '```'


class BedrockLLMError(Exception):
    """Custom exception for Bedrock LLM errors."""
    pass


def _error_code(error: Exception) -> Optional[str]:
    if isinstance(error, ClientError):
        return error.response.get('Error', {}).get('Code')
    return None


class BedrockLLM:
    """Bedrock Converse client with backoff retries for throttling and transport errors."""

    def __init__(self, config: BedrockLLMConfig):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
        """
        self.config = config
        self.model_id = config.model_id

        # Retries are handled in converse() so that throttling backs off with jitter
        self.bedrock_runtime = boto3.client('bedrock-runtime',
                                            region_name=config.region,
                                            config=BotoConfig(connect_timeout=10, read_timeout=60, retries={'max_attempts': 0}))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    @staticmethod
    def _read_stream(stream: Optional[Iterable[Dict[str, Any]]]) -> Tuple[str, Dict[str, Any]]:
        text = []
        usage: Dict[str, Any] = {}
        for event in stream or []:
            if 'contentBlockDelta' in event:
                text.append(event['contentBlockDelta']['delta'].get('text', ''))
            elif 'metadata' in event:
                usage = {**event['metadata'].get('usage', {}), **event['metadata'].get('metrics', {})}
        return ''.join(text), usage

    def converse(self,
                 messages: List[Dict[str, Any]],
                 system_prompt: str,
                 max_tokens: Optional[int] = None,
                 temperature: Optional[float] = None,
                 stop_sequences: Optional[List[str]] = None) -> Tuple[str, Dict[str, Any]]:
        """
        Run one Converse request and collect the streamed text.

        Args:
            messages: Messages in Bedrock Converse format
            system_prompt: System prompt
            max_tokens: Maximum tokens to generate (config default if None)
            temperature: Sampling temperature (config default if None)
            stop_sequences: Stop sequences

        Returns:
            Tuple of (response_text, usage and latency metrics)

        Raises:
            BedrockLLMError: If the request fails permanently or all retries fail
        """
        inference_config = {
            'maxTokens': max_tokens or self.config.max_tokens,
            'temperature': self.config.temperature if temperature is None else temperature,
            'stopSequences': stop_sequences or [],
        }

        attempts = self.config.retry_attempts
        for attempt in range(attempts):
            try:
                response = self.bedrock_runtime.converse_stream(modelId=self.model_id,
                                                                messages=messages,
                                                                system=[{'text': system_prompt}],
                                                                inferenceConfig=inference_config)
                text, usage = self._read_stream(response.get('stream'))
                logger.debug(f'Bedrock LLM returned {len(text)} characters, usage: {usage}')
                return text, usage

            except (ClientError, BotoCoreError) as e:
                code = _error_code(e)
                if code in NON_RETRYABLE_CODES:
                    logger.error(f'Bedrock LLM request rejected ({code}): {e}')
                    raise BedrockLLMError(f'Bedrock LLM request rejected: {e}')

                logger.warning(f'Bedrock LLM attempt {attempt + 1}/{attempts} failed: {e}')
                if attempt < attempts - 1:
                    # Exponential backoff with jitter
                    time.sleep(self.config.retry_delay * (2**attempt) + random.uniform(0, 1))

        raise BedrockLLMError(f'Bedrock LLM failed after {attempts} attempts')

    def generate_json(self, user_text: str, system_prompt: str, max_tokens: Optional[int] = None) -> str:
        """Ask for a JSON answer by prefilling the assistant turn with an open code fence.

        Returns:
            Raw JSON text, without the fence

        Raises:
            BedrockLLMError: If the request fails
        """
        messages = [
            {'role': 'user', 'content': [{'text': user_text}]},
            {'role': 'assistant', 'content': [{'text': JSON_FENCE_OPEN}]},
        ]
        text, _ = self.converse(messages, system_prompt, max_tokens=max_tokens, temperature=0.0, stop_sequences=[JSON_FENCE_CLOSE])
        return text

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock LLM service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            text = self.generate_json('Return an empty JSON array.', 'Respond with valid JSON only.', max_tokens=10)
            return bool(text.strip())

        except BedrockLLMError as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
