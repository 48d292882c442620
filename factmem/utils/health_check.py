"""
Health check utilities for the application.
"""

from typing import Any, Callable, Dict, Optional

from .bedrock_embed import BedrockEmbed
from .bedrock_llm import BedrockLLM
from .config import config
from .logging_config import get_logger
from .opensearch_client import OpenSearchClient

logger = get_logger(__name__)


def _component_status(name: str, service: str, check: Callable[[], bool], **details: Any) -> Dict[str, Any]:
    try:
        return {'healthy': bool(check()), 'service': service, **details}
    except Exception as e:
        logger.error(f'{name} health check raised: {e}')
        return {'healthy': False, 'service': service, 'error': str(e)}


def get_health_status(store=None, embedder=None, llm=None) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Clients that are passed in are checked as they are; missing ones are
    built from the global config.

    Returns:
        Dictionary with health status of each component
    """
    return {
        'bedrock_llm': _component_status('bedrock_llm',
                                         'Amazon Bedrock LLM',
                                         lambda: (llm or BedrockLLM(config.bedrock_llm)).health_check(),
                                         model=config.bedrock_llm.model_id),
        'bedrock_embed': _component_status('bedrock_embed',
                                           'Amazon Bedrock Embed',
                                           lambda: (embedder or BedrockEmbed(config.bedrock_embed)).health_check(),
                                           model=config.bedrock_embed.model_id),
        'opensearch': _component_status('opensearch',
                                        'Amazon OpenSearch',
                                        lambda: (store or OpenSearchClient(config.opensearch)).health_check(),
                                        endpoint=config.opensearch.endpoint),
    }


def check_health(store=None, embedder=None, llm=None) -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    health_status = get_health_status(store, embedder, llm)
    all_healthy = all(status.get('healthy', False) for status in health_status.values())

    if all_healthy:
        logger.info('All system components are healthy')
    else:
        unhealthy = [name for name, status in health_status.items() if not status.get('healthy')]
        logger.warning(f'Unhealthy system components: {unhealthy}')

    return all_healthy


def get_system_info(health_status: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    return {
        'service_name': 'FactMem',
        'version': '1.0.0',
        'configuration': {
            'bedrock_llm_model': config.bedrock_llm.model_id,
            'bedrock_embed_model': config.bedrock_embed.model_id,
            'aws_region': config.bedrock_llm.region,
            'dedup_distance_threshold': config.memory.dedup_distance_threshold,
            'supersession_similarity_threshold': config.memory.supersession_similarity_threshold,
            'router_confidence_threshold': config.router.confidence_threshold,
            'context_budgets': {
                'memory': config.context.memory_tokens,
                'documents': config.context.document_tokens,
                'vault': config.context.vault_tokens,
                'total': config.context.total_tokens,
            },
        },
        'health_status': health_status if health_status is not None else get_health_status()
    }
