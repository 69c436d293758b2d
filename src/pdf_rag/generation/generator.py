"""Answer generation with model fallback and bounded retry.

Policy
------
* Models are tried in order, most preferred first.
* Each model gets up to ``max_attempts`` attempts.  Only *retryable*
  failures (rate limiting / overload) are retried, with exponential
  backoff of ``base_delay * backoff_multiplier ** (attempt - 1)`` seconds.
* A non-retryable failure, or exhausting a model's attempts, moves on to
  the next model.
* When every model is exhausted :class:`GenerationUnavailableError` is
  raised carrying the last underlying cause.

Streaming uses the same policy to obtain the first fragment.  Once a
fragment has been produced the model is committed; a later failure is
raised on the iterator as :class:`GenerationError`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Sequence, TypeVar

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage
from pydantic import BaseModel
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from pdf_rag.errors import (
    GenerationError,
    GenerationUnavailableError,
    ValidationError,
    categorize_exception,
    status_code_of,
)
from pdf_rag.generation.prompts import build_answer_prompt

logger = logging.getLogger(__name__)

T = TypeVar("T")

ModelFactory = Callable[[str], BaseChatModel]

RETRYABLE_STATUS_CODES = frozenset({429, 503})
RETRYABLE_MARKERS = ("overloaded", "rate limit", "resource exhausted", "too many requests")


def is_retryable(exc: BaseException) -> bool:
    """Return ``True`` for rate-limit / overload signals."""
    if status_code_of(exc) in RETRYABLE_STATUS_CODES:
        return True
    if type(exc).__name__ == "RateLimitError":
        return True
    text = str(exc).lower()
    return any(marker in text for marker in RETRYABLE_MARKERS)


def _content_text(content: Any) -> str:
    """Flatten a message ``content`` (str or list of parts) to text."""
    if isinstance(content, str):
        return content
    parts: list[str] = []
    for part in content or []:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)


class GenerationResult(BaseModel):
    """A generated answer and the model that produced it."""

    text: str
    model: str
    attempts: int = 1


class Generator:
    """Synthesise answers from a question and retrieved context.

    Parameters
    ----------
    model_names:
        Candidate models, most preferred first.
    model_factory:
        Builds a chat model for a name, e.g.
        :func:`pdf_rag.generation.llm.get_chat_model`.
    max_attempts:
        Attempts per model (first call included).
    base_delay:
        Seconds to wait before the first retry.
    backoff_multiplier:
        Growth factor of the wait between retries.
    timeout:
        Optional per-attempt timeout in seconds.
    """

    def __init__(
        self,
        model_names: Sequence[str],
        model_factory: ModelFactory,
        *,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        backoff_multiplier: float = 2.0,
        timeout: float | None = None,
    ) -> None:
        if not model_names:
            raise ValidationError("At least one generation model is required")
        if max_attempts < 1:
            raise ValidationError("max_attempts must be >= 1", details={"max_attempts": max_attempts})
        self.model_names = list(model_names)
        self._model_factory = model_factory
        self._models: dict[str, BaseChatModel] = {}
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.backoff_multiplier = backoff_multiplier
        self.timeout = timeout

    # -- public API -----------------------------------------------------------

    async def generate(self, question: str, context_chunks: Sequence[str]) -> GenerationResult:
        """Return a complete answer for *question* grounded in *context_chunks*."""
        messages = self._build_messages(question, context_chunks)

        async def invoke(model: BaseChatModel) -> str:
            message = await self._with_timeout(model.ainvoke(messages))
            return _content_text(message.content)

        text, model_name, attempts = await self._run_with_fallback(invoke)
        logger.info("Generated %d chars with %s (attempts=%d)", len(text), model_name, attempts)
        return GenerationResult(text=text, model=model_name, attempts=attempts)

    async def generate_stream(self, question: str, context_chunks: Sequence[str]) -> AsyncIterator[str]:
        """Yield answer fragments as the model produces them.

        The iterator is finite and single-use.  A failure after the first
        fragment ends it with :class:`GenerationError`.
        """
        messages = self._build_messages(question, context_chunks)

        async def open_stream(model: BaseChatModel) -> tuple[AsyncIterator[Any], str | None]:
            iterator = model.astream(messages).__aiter__()
            try:
                first = await self._with_timeout(iterator.__anext__())
            except StopAsyncIteration:
                return iterator, None
            except BaseException:
                await _aclose(iterator)
                raise
            return iterator, _content_text(first.content)

        (iterator, first), model_name, _ = await self._run_with_fallback(open_stream)
        if first is None:
            return

        try:
            if first:
                yield first
            async for chunk in iterator:
                text = _content_text(chunk.content)
                if text:
                    yield text
        except GenerationError:
            raise
        except Exception as exc:
            logger.error("Stream from %s failed mid-response: %s", model_name, exc)
            raise GenerationError(
                f"Streaming response from {model_name} failed: {exc}",
                category=categorize_exception(exc),
                details={"model": model_name},
            ) from exc
        finally:
            await _aclose(iterator)

    # -- internals ------------------------------------------------------------

    def _build_messages(self, question: str, context_chunks: Sequence[str]) -> list[BaseMessage]:
        if not question or not question.strip():
            raise ValidationError("Question cannot be empty")
        return build_answer_prompt(question.strip(), context_chunks)

    async def _with_timeout(self, awaitable: Awaitable[T]) -> T:
        if self.timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=self.timeout)

    def _retrying(self, model_name: str) -> AsyncRetrying:
        def log_retry(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            wait = state.next_action.sleep if state.next_action else 0.0
            logger.warning(
                "Model %s attempt %d/%d failed (%s); retrying in %.1fs",
                model_name,
                state.attempt_number,
                self.max_attempts,
                exc,
                wait,
            )

        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, exp_base=self.backoff_multiplier),
            retry=retry_if_exception(is_retryable),
            before_sleep=log_retry,
            reraise=True,
        )

    def _model(self, model_name: str) -> BaseChatModel:
        model = self._models.get(model_name)
        if model is None:
            model = self._models[model_name] = self._model_factory(model_name)
        return model

    async def _run_with_fallback(self, operation: Callable[[BaseChatModel], Awaitable[T]]) -> tuple[T, str, int]:
        last_error: BaseException | None = None
        for model_name in self.model_names:
            retrying = self._retrying(model_name)
            logger.info("Trying model: %s", model_name)
            try:
                model = self._model(model_name)
                result = await retrying(operation, model)
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "Model %s failed after %d attempt(s): %s",
                    model_name,
                    retrying.statistics.get("attempt_number", 1),
                    exc,
                )
                continue
            return result, model_name, retrying.statistics.get("attempt_number", 1)

        category = categorize_exception(last_error) if last_error else None
        raise GenerationUnavailableError(
            _unavailable_message(last_error),
            category=category,
            details={"models": self.model_names, "cause": str(last_error)},
        ) from last_error


def _unavailable_message(cause: BaseException | None) -> str:
    if cause is not None and is_retryable(cause):
        if status_code_of(cause) == 429 or "rate" in str(cause).lower():
            return "Rate limit exceeded. Please wait a moment before trying again."
        return "The AI service is currently overloaded. Please try again in a few moments."
    return "Failed to generate response: all models exhausted"


async def _aclose(iterator: Any) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is not None:
        await aclose()
