"""
Health check utilities for the extractor backend and the external project system.
"""

from typing import Any, Dict, Optional

from .bedrock_llm import BedrockLLM
from .config import AppConfig, config
from .logging_config import get_logger
from .project_system_client import ProjectSystemClient

logger = get_logger(__name__)


def check_health(app_config: Optional[AppConfig] = None) -> bool:
    """Check the health of all configured components.

    Returns:
        True if all components are healthy, False otherwise
    """
    health_status = get_health_status(app_config)
    all_healthy = all(status.get('healthy', False) for status in health_status.values())

    if all_healthy:
        logger.info('All system components are healthy')
    else:
        unhealthy = [name for name, status in health_status.items() if not status.get('healthy', False)]
        logger.warning(f'Unhealthy components: {", ".join(unhealthy)}')

    return all_healthy


def get_health_status(app_config: Optional[AppConfig] = None,
                      llm: Optional[BedrockLLM] = None,
                      project_system: Optional[ProjectSystemClient] = None) -> Dict[str, Any]:
    """Get detailed health status of each component.

    The project system is only reported when a base URL is configured; without one the router
    runs in local-only mode and there is nothing to check.

    Args:
        app_config: Application config (optional, global config if None)
        llm: Bedrock client to probe (optional, built from config if None)
        project_system: Project system client to probe (optional, built from config if None)

    Returns:
        Component name -> {'healthy': bool, 'service': str, ...}
    """
    app_config = app_config if app_config is not None else config
    health_status = {}

    try:
        if llm is None:
            llm = BedrockLLM(app_config.bedrock_llm)
        health_status['bedrock_llm'] = {
            'healthy': llm.health_check(),
            'service': 'Amazon Bedrock LLM',
            'model': app_config.bedrock_llm.model_id
        }
    except Exception as e:
        health_status['bedrock_llm'] = {'healthy': False, 'service': 'Amazon Bedrock LLM', 'error': str(e)}

    if project_system is not None or app_config.project_system.enabled:
        try:
            if project_system is None:
                project_system = ProjectSystemClient(app_config.project_system)
            health_status['project_system'] = {
                'healthy': project_system.health_check(),
                'service': 'External project system',
                'endpoint': app_config.project_system.base_url
            }
        except Exception as e:
            health_status['project_system'] = {'healthy': False, 'service': 'External project system', 'error': str(e)}

    return health_status


def get_system_info(app_config: Optional[AppConfig] = None) -> Dict[str, Any]:
    """Summarize the running configuration without probing any service."""
    app_config = app_config if app_config is not None else config
    return {
        'service_name': 'context-router',
        'version': '1.0.0',
        'environment': app_config.environment,
        'configuration': {
            'bedrock_llm_model': app_config.bedrock_llm.model_id,
            'aws_region': app_config.bedrock_llm.region,
            'domain': app_config.graph.domain,
            'storage_backend': app_config.storage.backend,
            'external_system': app_config.project_system.base_url or 'local-only',
            'session_timeout_minutes': app_config.conversation.session_timeout_minutes,
        },
    }
