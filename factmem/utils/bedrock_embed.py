"""
Amazon Bedrock embedding client wrapper with retry logic and error handling.
"""

import json
import random
import time
from typing import Any, Dict, List

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockEmbedConfig
from .logging_config import get_logger

logger = get_logger(__name__)

# Titan v2 accepts roughly 8k tokens; facts and queries are far shorter
MAX_EMBED_CHARS = 20000


class BedrockEmbedError(Exception):
    """Custom exception for Bedrock embedding errors."""
    pass


class BedrockEmbed:
    """Amazon Bedrock embedding client with retry logic and error handling."""

    def __init__(self, config: BedrockEmbedConfig):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
        """
        self.config = config
        self.model_id = config.model_id
        self.output_embedding_length = config.dimension

        # Socket timeouts stay close to the caller-side timeout so that
        # abandoned calls release their worker thread quickly
        self.bedrock = boto3.client(service_name='bedrock-runtime',
                                    region_name=config.region,
                                    config=BotoConfig(connect_timeout=config.explicit_timeout_seconds,
                                                      read_timeout=config.explicit_timeout_seconds,
                                                      retries={'max_attempts': 0}))

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')

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

    def _build_request(self, text: str, input_type: str) -> Dict[str, Any]:
        model = self.model_id.lower()
        if 'titan' in model:
            return {'inputText': text, 'dimensions': self.output_embedding_length, 'normalize': True}
        if 'cohere' in model:
            if self.output_embedding_length != 1024:
                raise BedrockEmbedError(f'Cohere models only support 1024 dimensions, got {self.output_embedding_length}')
            return {'input_type': input_type, 'texts': [text]}
        raise BedrockEmbedError(f'Unsupported embedding model: {self.model_id}')

    def _parse_response(self, response: Dict[str, Any]) -> List[float]:
        if 'embedding' in response:
            embedding = response['embedding']
        else:
            embeddings = response.get('embeddings') or []
            embedding = embeddings[0] if embeddings else []
        if len(embedding) != self.output_embedding_length:
            raise BedrockEmbedError(f'Expected {self.output_embedding_length} dimensions, got {len(embedding)}')
        return embedding

    def _embed(self, text: str, input_type: str) -> List[float]:
        if not text or not text.strip():
            raise BedrockEmbedError('Cannot embed empty text')

        try:
            request = self._build_request(text[:MAX_EMBED_CHARS], input_type)
            return self._parse_response(self._call_with_retry(request))
        except BedrockEmbedError:
            raise
        except Exception as e:
            logger.error(f'Error generating {input_type} embedding: {e}')
            raise BedrockEmbedError(f'Embedding failed: {e}')

    def embed_document(self, text: str) -> List[float]:
        """
        Generate embeddings for fact content.

        Args:
            text: Text to embed

        Returns:
            List of embedding values

        Raises:
            BedrockEmbedError: If embedding generation fails or the text is empty
        """
        return self._embed(text, 'search_document')

    def embed_query(self, text: str) -> List[float]:
        """
        Generate embeddings for query text.

        Args:
            text: Query text to embed

        Returns:
            List of embedding values

        Raises:
            BedrockEmbedError: If embedding generation fails or the text is empty
        """
        return self._embed(text, 'search_query')

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock embedding service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            test_embedding = self.embed_document('health check')
            return len(test_embedding) == self.output_embedding_length

        except Exception as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
