"""
Configuration management for the Bedrock extractor, the external project system and local state.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float
    connect_timeout: int
    read_timeout: int


@dataclass
class ProjectSystemConfig:
    """Configuration for the authoritative external project system."""
    base_url: str  # Empty string disables the external system (local-only mode)
    api_key: str
    timeout: float
    retry_attempts: int

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)


@dataclass
class StorageConfig:
    """Configuration for persisted conversation, pending request and cache state."""
    backend: str  # memory | file
    data_path: str


@dataclass
class GraphConfig:
    """Configuration for the relationship graph."""
    domain: str
    cache_ttl_seconds: int


@dataclass
class ConversationConfig:
    """Configuration for conversation sessions and pending requests."""
    session_timeout_minutes: int
    memory_cap: int
    history_cap: int
    pending_max_age_days: int


@dataclass
class RouterConfig:
    """Configuration for the smart source router."""
    similarity_threshold: float
    learning_threshold: float
    routing_timeout_seconds: float
    query_cache_ttl_seconds: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    project_system: ProjectSystemConfig
    storage: StorageConfig
    graph: GraphConfig
    conversation: ConversationConfig
    router: RouterConfig


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '1000')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.1')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')),
                                          connect_timeout=int(os.getenv('BEDROCK_LLM_CONNECT_TIMEOUT', '10')),
                                          read_timeout=int(os.getenv('BEDROCK_LLM_READ_TIMEOUT', '60')))

    # External project system configuration
    project_system_config = ProjectSystemConfig(base_url=os.getenv('PROJECT_SYSTEM_URL', ''),
                                                api_key=os.getenv('PROJECT_SYSTEM_API_KEY', ''),
                                                timeout=float(os.getenv('PROJECT_SYSTEM_TIMEOUT', '10.0')),
                                                retry_attempts=int(os.getenv('PROJECT_SYSTEM_RETRY_ATTEMPTS', '2')))

    # Storage configuration
    storage_config = StorageConfig(backend=os.getenv('STORAGE_BACKEND', 'file'),
                                   data_path=os.path.expanduser(os.getenv('DATA_PATH', './data')))

    # Relationship graph configuration
    graph_config = GraphConfig(domain=os.getenv('DOMAIN', 'construction'),
                               cache_ttl_seconds=int(os.getenv('GRAPH_CACHE_TTL_SECONDS', '300')))

    # Conversation configuration
    conversation_config = ConversationConfig(session_timeout_minutes=int(os.getenv('SESSION_TIMEOUT_MINUTES', '30')),
                                             memory_cap=int(os.getenv('CONVERSATION_MEMORY_CAP', '10')),
                                             history_cap=int(os.getenv('CONVERSATION_HISTORY_CAP', '50')),
                                             pending_max_age_days=int(os.getenv('PENDING_MAX_AGE_DAYS', '30')))

    # Router configuration
    router_config = RouterConfig(similarity_threshold=float(os.getenv('ROUTER_SIMILARITY_THRESHOLD', '0.6')),
                                 learning_threshold=float(os.getenv('ROUTER_LEARNING_THRESHOLD', '0.7')),
                                 routing_timeout_seconds=float(os.getenv('ROUTER_TIMEOUT_SECONDS', '30.0')),
                                 query_cache_ttl_seconds=int(os.getenv('ROUTER_QUERY_CACHE_TTL_SECONDS', '600')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     project_system=project_system_config,
                     storage=storage_config,
                     graph=graph_config,
                     conversation=conversation_config,
                     router=router_config)


# Global configuration instance
config = load_config()
