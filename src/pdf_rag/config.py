"""Shared configuration loaded from environment / .env file."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application-wide settings, populated from env vars or .env file."""

    # LLM
    openai_api_key: str = Field(default="", description="OpenAI API key (or dummy value for a local endpoint)")
    llm_base_url: str = Field(
        default="",
        description=(
            "Base URL for an OpenAI-compatible chat API. Leave empty to use "
            "OpenAI cloud."
        ),
    )
    llm_model_names: list[str] = Field(
        default=["gpt-4o-mini", "gpt-4o", "gpt-4.1-mini"],
        description="Generation models, most preferred first.",
    )
    llm_temperature: float = 0.0
    llm_max_attempts: int = Field(default=3, ge=1, description="Attempts per model before falling back")
    llm_retry_base_delay: float = Field(default=1.0, ge=0.0, description="Seconds before the first retry")
    llm_retry_multiplier: float = Field(default=2.0, ge=1.0)
    llm_timeout_seconds: float | None = Field(default=60.0, description="Per-attempt timeout; None disables it")

    # Embedding
    embedding_model: str = "sentence-transformers/all-mpnet-base-v2"
    embedding_dimension: int = 768
    embedding_max_concurrency: int | None = Field(
        default=None,
        description="Cap on in-flight embedding calls; None fans out without limit.",
    )

    # Vector store
    chroma_host: str = "localhost"
    chroma_port: int = 8000
    chroma_collection: str = "pdf_rag"
    upsert_batch_size: int = 100
    list_files_top_k: int = 10000

    # Upload
    max_file_size_bytes: int = 10 * 1024 * 1024
    allowed_content_types: list[str] = ["application/pdf"]

    # PDF processing
    default_chunk_size: int = 1000
    default_chunk_overlap: int = 200
    avg_chars_per_page: int = 2500
    max_chunks_per_file: int = 500

    # Query
    default_top_k: int = 5
    source_preview_length: int = 200

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


# Process-wide defaults; services receive their collaborators explicitly.
settings = Settings()
