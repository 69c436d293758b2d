"""
Generation: prompt construction and multi-model answer synthesis.

Public API
----------
- :class:`Generator`: answers with retry and model fallback, blocking or streamed.
- :class:`GenerationResult`: answer text plus the model that produced it.
- :func:`get_chat_model`: default chat-model factory.
"""

from pdf_rag.generation.generator import GenerationResult, Generator, is_retryable
from pdf_rag.generation.llm import get_chat_model

__all__ = [
    "GenerationResult",
    "Generator",
    "get_chat_model",
    "is_retryable",
]
