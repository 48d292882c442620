"""
Configuration management for AWS services and memory engine settings.
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


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float
    timeout_seconds: float  # Soft timeout for non-critical embedding paths
    explicit_timeout_seconds: float  # Hard cap for explicit-storage embedding
    max_workers: int


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    service: str  # 'aoss' for serverless collections, 'es' for managed domains
    index_name: str
    dimension: int
    health_check_interval_seconds: float


@dataclass
class MemoryConfig:
    """Configuration for fact storage, deduplication and supersession."""
    dedup_distance_threshold: float
    supersession_similarity_threshold: float
    supersession_window: int
    fingerprint_confidence_threshold: float
    category_token_ceiling: int
    max_dynamic_categories: int
    min_content_chars: int
    max_fact_tokens: int
    supersede_retry_attempts: int
    backfill_queue_size: int
    backfill_batch_size: int
    backfill_max_attempts: int
    backfill_retry_delay: float


@dataclass
class RouterConfig:
    """Configuration for category routing."""
    confidence_threshold: float
    default_category: str
    keyword_hit_weight: float
    semantic_weight: float
    saturation: float
    max_secondary: int


@dataclass
class RetrievalConfig:
    """Configuration for semantic retrieval and ranking."""
    max_results: int
    candidate_pool_size: int
    min_primary_results: int
    fallback_limit: int
    min_similarity: float
    explicit_floor: float
    explicit_boost: float
    entity_floor: float
    ordinal_match_boost: float
    ordinal_mismatch_penalty: float
    top_fraction: float
    recent_fraction: float
    recent_days: int
    deadline_seconds: float


@dataclass
class ContextBudgetConfig:
    """Token budgets for context assembly."""
    memory_tokens: int
    document_tokens: int
    vault_tokens: int
    total_tokens: int
    min_section_score: int
    partial_section_min_tokens: int
    partial_section_min_score: int


@dataclass
class ValidatorConfig:
    """Toggles for the answer correctness validators."""
    ordinal_enabled: bool
    temporal_enabled: bool
    character_enabled: bool
    numeric_enabled: bool
    max_numeric_injections: int


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    opensearch: OpenSearchConfig
    memory: MemoryConfig
    router: RouterConfig
    retrieval: RetrievalConfig
    context: ContextBudgetConfig
    validator: ValidatorConfig
    mcp: MCPConfig


def _env_flag(name: str, default: str = 'true') -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '1024')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.0')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '2')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '0.5')),
                                              timeout_seconds=float(os.getenv('BEDROCK_EMBED_TIMEOUT_SECONDS', '3.0')),
                                              explicit_timeout_seconds=float(os.getenv('BEDROCK_EMBED_EXPLICIT_TIMEOUT_SECONDS', '5.0')),
                                              max_workers=int(os.getenv('BEDROCK_EMBED_MAX_WORKERS', '4')))

    # Vector store configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         service=os.getenv('OPENSEARCH_AWS_SERVICE', 'es'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'factmem'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')),
                                         health_check_interval_seconds=float(os.getenv('OPENSEARCH_HEALTH_CHECK_INTERVAL', '30')))

    # Memory configuration
    memory_config = MemoryConfig(dedup_distance_threshold=float(os.getenv('MEMORY_DEDUP_DISTANCE', '0.15')),
                                 supersession_similarity_threshold=float(os.getenv('MEMORY_SUPERSESSION_SIMILARITY', '0.75')),
                                 supersession_window=int(os.getenv('MEMORY_SUPERSESSION_WINDOW', '10')),
                                 fingerprint_confidence_threshold=float(os.getenv('MEMORY_FINGERPRINT_CONFIDENCE', '0.7')),
                                 category_token_ceiling=int(os.getenv('MEMORY_CATEGORY_TOKEN_CEILING', '50000')),
                                 max_dynamic_categories=int(os.getenv('MEMORY_MAX_DYNAMIC_CATEGORIES', '5')),
                                 min_content_chars=int(os.getenv('MEMORY_MIN_CONTENT_CHARS', '10')),
                                 max_fact_tokens=int(os.getenv('MEMORY_MAX_FACT_TOKENS', '50')),
                                 supersede_retry_attempts=int(os.getenv('MEMORY_SUPERSEDE_RETRY_ATTEMPTS', '3')),
                                 backfill_queue_size=int(os.getenv('MEMORY_BACKFILL_QUEUE_SIZE', '100')),
                                 backfill_batch_size=int(os.getenv('MEMORY_BACKFILL_BATCH_SIZE', '20')),
                                 backfill_max_attempts=int(os.getenv('MEMORY_BACKFILL_MAX_ATTEMPTS', '3')),
                                 backfill_retry_delay=float(os.getenv('MEMORY_BACKFILL_RETRY_DELAY', '1.0')))

    # Router configuration
    router_config = RouterConfig(confidence_threshold=float(os.getenv('ROUTER_CONFIDENCE_THRESHOLD', '0.80')),
                                 default_category=os.getenv('ROUTER_DEFAULT_CATEGORY', 'personal_life_interests'),
                                 keyword_hit_weight=float(os.getenv('ROUTER_KEYWORD_HIT_WEIGHT', '0.5')),
                                 semantic_weight=float(os.getenv('ROUTER_SEMANTIC_WEIGHT', '1.0')),
                                 saturation=float(os.getenv('ROUTER_SATURATION', '2.0')),
                                 max_secondary=int(os.getenv('ROUTER_MAX_SECONDARY', '2')))

    # Retrieval configuration
    retrieval_config = RetrievalConfig(max_results=int(os.getenv('RETRIEVAL_MAX_RESULTS', '15')),
                                       candidate_pool_size=int(os.getenv('RETRIEVAL_CANDIDATE_POOL', '100')),
                                       min_primary_results=int(os.getenv('RETRIEVAL_MIN_PRIMARY_RESULTS', '3')),
                                       fallback_limit=int(os.getenv('RETRIEVAL_FALLBACK_LIMIT', '50')),
                                       min_similarity=float(os.getenv('RETRIEVAL_MIN_SIMILARITY', '0.25')),
                                       explicit_floor=float(os.getenv('RETRIEVAL_EXPLICIT_FLOOR', '0.99')),
                                       explicit_boost=float(os.getenv('RETRIEVAL_EXPLICIT_BOOST', '0.70')),
                                       entity_floor=float(os.getenv('RETRIEVAL_ENTITY_FLOOR', '0.85')),
                                       ordinal_match_boost=float(os.getenv('RETRIEVAL_ORDINAL_MATCH_BOOST', '0.40')),
                                       ordinal_mismatch_penalty=float(os.getenv('RETRIEVAL_ORDINAL_MISMATCH_PENALTY', '0.20')),
                                       top_fraction=float(os.getenv('RETRIEVAL_TOP_FRACTION', '0.5')),
                                       recent_fraction=float(os.getenv('RETRIEVAL_RECENT_FRACTION', '0.7')),
                                       recent_days=int(os.getenv('RETRIEVAL_RECENT_DAYS', '30')),
                                       deadline_seconds=float(os.getenv('RETRIEVAL_DEADLINE_SECONDS', '8.0')))

    # Context budget configuration
    context_config = ContextBudgetConfig(memory_tokens=int(os.getenv('CONTEXT_MEMORY_TOKENS', '2500')),
                                         document_tokens=int(os.getenv('CONTEXT_DOCUMENT_TOKENS', '3000')),
                                         vault_tokens=int(os.getenv('CONTEXT_VAULT_TOKENS', '9000')),
                                         total_tokens=int(os.getenv('CONTEXT_TOTAL_TOKENS', '15000')),
                                         min_section_score=int(os.getenv('CONTEXT_MIN_SECTION_SCORE', '10')),
                                         partial_section_min_tokens=int(os.getenv('CONTEXT_PARTIAL_SECTION_MIN_TOKENS', '500')),
                                         partial_section_min_score=int(os.getenv('CONTEXT_PARTIAL_SECTION_MIN_SCORE', '50')))

    # Validator configuration
    validator_config = ValidatorConfig(ordinal_enabled=_env_flag('VALIDATOR_ORDINAL_ENABLED'),
                                       temporal_enabled=_env_flag('VALIDATOR_TEMPORAL_ENABLED'),
                                       character_enabled=_env_flag('VALIDATOR_CHARACTER_ENABLED'),
                                       numeric_enabled=_env_flag('VALIDATOR_NUMERIC_ENABLED'),
                                       max_numeric_injections=int(os.getenv('VALIDATOR_MAX_NUMERIC_INJECTIONS', '3')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     opensearch=opensearch_config,
                     memory=memory_config,
                     router=router_config,
                     retrieval=retrieval_config,
                     context=context_config,
                     validator=validator_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
