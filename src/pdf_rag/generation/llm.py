"""Chat-model construction, the single place to swap providers.

Supports two modes:

1. **OpenAI cloud** (default): set ``OPENAI_API_KEY``.
2. **OpenAI-compatible endpoint**: set ``LLM_BASE_URL`` (vLLM, Ollama,
   a gateway, ...).  ``ChatOpenAI`` works unchanged against it.
"""

from __future__ import annotations

import logging

from langchain_openai import ChatOpenAI

from pdf_rag.config import Settings, settings

logger = logging.getLogger(__name__)


def get_chat_model(model_name: str, config: Settings | None = None) -> ChatOpenAI:
    """Return a chat model for *model_name*.

    Retries are disabled on the client itself; the generator owns the
    retry/fallback policy.
    """
    config = config or settings
    kwargs: dict = {
        "model": model_name,
        "temperature": config.llm_temperature,
        "max_retries": 0,
    }
    if config.llm_timeout_seconds is not None:
        kwargs["timeout"] = config.llm_timeout_seconds

    if config.llm_base_url:
        logger.info("Using OpenAI-compatible endpoint %s for %s", config.llm_base_url, model_name)
        kwargs["base_url"] = config.llm_base_url
        # Local endpoints don't need a real key; LangChain requires a non-empty value.
        kwargs["api_key"] = config.openai_api_key or "EMPTY"
    else:
        kwargs["api_key"] = config.openai_api_key

    return ChatOpenAI(**kwargs)
