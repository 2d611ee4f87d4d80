"""Centralized configuration using Pydantic BaseSettings"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """Application configuration with environment variable support"""

    # Database
    db_path: str = Field(default="./data/knowledge.db", description="SQLite database file path")

    # Embedding (Local model using fastembed)
    embedding_model: str = Field(
        default="BAAI/bge-small-en-v1.5", description="Local embedding model name (fastembed)"
    )
    fastembed_cache_dir: str = Field(
        default="./data/models", description="Directory to cache embedding model"
    )
    embedding_batch_size: int = Field(
        default=32, ge=1, le=256, description="Batch size for embedding generation"
    )
    embedding_dimension: int = Field(
        default=384, description="Embedding vector dimension (384 for bge-small-en-v1.5)"
    )
    embedding_max_retries: int = Field(
        default=3, ge=1, le=10, description="Attempts per embedding batch before giving up"
    )
    embedding_retry_base_delay: float = Field(
        default=1.0, ge=0.0, le=30.0, description="Base delay in seconds for batch retry backoff"
    )

    # Chunking
    # Changing these invalidates stored chunk sets; resync every source with force=True.
    chunk_size_chars: int = Field(
        default=1200, ge=200, le=8000, description="Target chunk size in characters"
    )
    chunk_overlap_chars: int = Field(
        default=150, ge=0, le=1000, description="Character overlap carried into the next chunk"
    )

    # Sync
    sync_timeout_seconds: float = Field(
        default=300.0, gt=0, description="Overall timeout for extract + chunk + embed"
    )
    max_sources_per_agent: int = Field(
        default=100, ge=1, description="Maximum number of knowledge sources per agent"
    )

    # Content extraction
    upload_dir: str = Field(
        default="./data/uploads", description="Directory that holds uploaded knowledge files"
    )
    page_provider_api_url: str = Field(
        default="https://api.notion.com/v1", description="Base URL of the page provider API"
    )
    page_provider_api_version: str = Field(
        default="2022-06-28", description="API version header sent to the page provider"
    )
    page_provider_token: str | None = Field(
        default=None, description="Fallback bearer token for the page provider"
    )
    page_provider_timeout: int = Field(
        default=30, ge=5, le=300, description="HTTP timeout in seconds"
    )
    page_provider_max_retries: int = Field(
        default=3, ge=1, le=10, description="Max retry attempts"
    )

    # Retrieval
    retrieval_default_limit: int = Field(
        default=5, ge=1, le=50, description="Default number of chunks returned per query"
    )
    retrieval_min_score: float = Field(
        default=0.5, ge=-1.0, le=1.0, description="Minimum cosine similarity for a result"
    )

    # MCP Server
    mcp_port: int = Field(default=8080, description="MCP server port")

    # OpenTelemetry
    otel_logging_enabled: bool = Field(
        default=False, description="Enable OpenTelemetry logging of knowledge operations"
    )
    otel_tracing_enabled: bool = Field(
        default=False, description="Enable OpenTelemetry tracing for HTTP requests"
    )
    otel_endpoint: str = Field(
        default="http://localhost:4318",
        description="OpenTelemetry collector endpoint (HTTP/protobuf)",
    )
    otel_service_name: str = Field(
        default="knowledge-pipeline", description="Service name for OpenTelemetry"
    )
    otel_service_version: str = Field(
        default="1.0.0", description="Service version for OpenTelemetry"
    )
    otel_log_full_results: bool = Field(
        default=False,
        description="Include query text and full results in telemetry logs",
    )

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )


# Global config instance
config = AppConfig()
