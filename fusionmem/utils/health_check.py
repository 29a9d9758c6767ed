"""
Health check utilities for the retrieval engine's collaborators.
"""

from typing import Any, Callable, Dict, Optional

from .bedrock_embed import BedrockEmbed
from .bedrock_llm import BedrockLLM
from .config import AppConfig, config
from .logging_config import get_logger
from .neptune_client import NeptuneClient
from .opensearch_client import OpenSearchClient

logger = get_logger(__name__)

SERVICE_NAME = 'FusionMem'
SERVICE_VERSION = '0.1.0'


def check_health(app_config: Optional[AppConfig] = None) -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    try:
        health_status = get_health_status(app_config)
        all_healthy = all(status.get('healthy', False) for status in health_status.values())

        if all_healthy:
            logger.info('All system components are healthy')
        else:
            unhealthy = [name for name, status in health_status.items() if not status.get('healthy', False)]
            logger.warning(f'Unhealthy components: {unhealthy}')

        return all_healthy

    except Exception as e:
        logger.error(f'Health check failed: {e}')
        return False


def _probe(service: str, detail: Dict[str, Any], factory: Callable[[], Any]) -> Dict[str, Any]:
    try:
        healthy = factory().health_check()
        return {'healthy': healthy, 'service': service, **detail}
    except Exception as e:
        return {'healthy': False, 'service': service, 'error': str(e)}


def get_health_status(app_config: Optional[AppConfig] = None) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Returns:
        Dictionary with health status of each component
    """
    cfg = app_config or config
    return {
        'bedrock_llm':
        _probe('Amazon Bedrock LLM', {'model': cfg.bedrock_llm.model_id}, lambda: BedrockLLM(cfg.bedrock_llm)),
        'bedrock_embed':
        _probe('Amazon Bedrock Embed', {'model': cfg.bedrock_embed.model_id}, lambda: BedrockEmbed(cfg.bedrock_embed)),
        'neptune':
        _probe('Amazon Neptune', {'endpoint': cfg.neptune.endpoint}, lambda: NeptuneClient(cfg.neptune)),
        'opensearch':
        _probe('Amazon OpenSearch', {'endpoint': cfg.opensearch.endpoint}, lambda: OpenSearchClient(cfg.opensearch)),
    }


def get_system_info(app_config: Optional[AppConfig] = None) -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    cfg = app_config or config
    return {
        'service_name': SERVICE_NAME,
        'version': SERVICE_VERSION,
        'configuration': {
            'bedrock_llm_model': cfg.bedrock_llm.model_id,
            'bedrock_embed_model': cfg.bedrock_embed.model_id,
            'embedding_dimension': cfg.opensearch.dimension,
            'rrf_k': cfg.search.rrf_k,
            'context_window': cfg.synthesis.context_window,
            'aws_region': cfg.bedrock_llm.region
        },
        'health_status': get_health_status(cfg)
    }
