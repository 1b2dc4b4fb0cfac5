"""Centralized configuration using Pydantic BaseSettings"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """Application configuration with environment variable support"""

    # Remote embedding model (TEI-compatible /embed endpoint)
    embedding_endpoint_url: str = Field(
        default="http://localhost:8081/embed",
        description="URL of the remote embedding model endpoint",
    )
    embedding_api_key: str | None = Field(
        default=None, description="Bearer credential for the remote embedding endpoint"
    )
    embedding_model: str = Field(
        default="ds1-serverless-1762961395",
        description="Model version tag stored with every cached embedding",
    )
    embedding_dimension: int = Field(
        default=512, ge=1, le=65535, description="Embedding vector dimension (D)"
    )
    embedding_timeout_seconds: float = Field(
        default=30.0, gt=0, le=300, description="Per-call timeout for the remote model"
    )
    embedding_max_batch_size: int = Field(
        default=32, ge=1, le=256, description="Maximum texts per remote embedding call"
    )
    embedding_max_concurrency: int = Field(
        default=15, ge=1, le=128, description="Maximum in-flight remote embedding calls"
    )

    # Vector store
    db_path: str = Field(default="./data/embeddings.db", description="SQLite database file path")
    vector_db_enabled: bool = Field(
        default=True, description="Enable the embedding cache (disabled = compute only)"
    )
    schema_wait_seconds: float = Field(
        default=2.0,
        ge=0,
        le=60,
        description="How long a request waits for schema provisioning before degrading",
    )
    schema_warmup_enabled: bool = Field(
        default=True, description="Provision the schema in the background at startup"
    )

    # Reranking
    rerank_max_candidates: int = Field(
        default=1000, ge=1, le=10000, description="Maximum candidates accepted per rerank"
    )
    nearest_neighbors_default_k: int = Field(
        default=100, ge=1, le=200, description="Default k for nearest-neighbour search"
    )

    # Server
    server_host: str = Field(default="0.0.0.0", description="Server bind address")
    server_port: int = Field(default=8080, ge=1024, le=65535, description="Server port")

    # OpenTelemetry
    otel_logging_enabled: bool = Field(default=True, description="Enable OpenTelemetry logging")
    otel_tracing_enabled: bool = Field(
        default=True, description="Enable OpenTelemetry tracing for HTTP requests"
    )
    otel_endpoint: str = Field(
        default="http://otel-collector.otel.svc.cluster.local:4318",
        description="OpenTelemetry collector endpoint (HTTP/protobuf)",
    )
    otel_service_name: str = Field(
        default="paper-rerank", description="Service name for OpenTelemetry"
    )
    otel_service_version: str = Field(
        default="1.0.0", description="Service version for OpenTelemetry"
    )
    otel_log_full_results: bool = Field(
        default=False,
        description="Include full rerank results in telemetry logs (needed for analytics)",
    )

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )


# Global config instance
config = AppConfig()
