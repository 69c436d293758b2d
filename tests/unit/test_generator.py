"""Unit tests for the Generator: retry, fallback, and streaming."""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from langchain_core.messages import AIMessage, AIMessageChunk, HumanMessage, SystemMessage

from pdf_rag.errors import ErrorCategory, GenerationError, GenerationUnavailableError, ValidationError
from pdf_rag.generation.generator import Generator, is_retryable
from pdf_rag.generation.prompts import build_answer_prompt

CONTEXT = ["Revenue was 12 million in 2023.", "Costs were 9 million."]


class ApiError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _model(*outcomes: Any) -> MagicMock:
    """Chat model whose ``ainvoke`` returns/raises *outcomes* in turn."""
    model = MagicMock()
    model.ainvoke = AsyncMock(
        side_effect=[o if isinstance(o, Exception) else AIMessage(content=o) for o in outcomes]
    )
    return model


def _generator(models: dict[str, MagicMock], **kwargs: Any) -> Generator:
    kwargs.setdefault("base_delay", 0)
    return Generator(list(models), lambda name: models[name], **kwargs)


class FakeStream:
    """Async iterator over message chunks; raises when it meets an exception."""

    def __init__(self, items: list[Any]) -> None:
        self._items = list(items)
        self.closed = False

    def __aiter__(self) -> FakeStream:
        return self

    async def __anext__(self) -> AIMessageChunk:
        if not self._items:
            raise StopAsyncIteration
        item = self._items.pop(0)
        if isinstance(item, Exception):
            raise item
        return AIMessageChunk(content=item)

    async def aclose(self) -> None:
        self.closed = True


def _streaming_model(*streams: list[Any]) -> tuple[MagicMock, list[FakeStream]]:
    created = [FakeStream(items) for items in streams]
    model = MagicMock()
    model.astream = MagicMock(side_effect=created)
    return model, created


async def _collect(iterator) -> list[str]:
    return [fragment async for fragment in iterator]


# ── retry policy ───────────────────────────────────────────────────────


class TestRetryable:
    @pytest.mark.parametrize(
        "exc",
        [
            ApiError("slow down", status_code=429),
            ApiError("unavailable", status_code=503),
            RuntimeError("The model is overloaded. Please try again later."),
        ],
    )
    def test_retryable(self, exc: Exception) -> None:
        assert is_retryable(exc)

    @pytest.mark.parametrize(
        "exc",
        [ApiError("bad request", status_code=400), ApiError("forbidden", status_code=403), ValueError("nope")],
    )
    def test_not_retryable(self, exc: Exception) -> None:
        assert not is_retryable(exc)

    def test_backoff_doubles_from_base_delay(self) -> None:
        gen = Generator(["m"], MagicMock(), base_delay=1.0, backoff_multiplier=2.0)
        wait = gen._retrying("m").wait
        assert wait(MagicMock(attempt_number=1)) == pytest.approx(1.0)
        assert wait(MagicMock(attempt_number=2)) == pytest.approx(2.0)


# ── generate ───────────────────────────────────────────────────────────


class TestGenerate:
    def test_first_model_succeeds(self) -> None:
        m1 = _model("The revenue was 12 million.")
        result = asyncio.run(_generator({"m1": m1}).generate("What was revenue?", CONTEXT))
        assert result.text == "The revenue was 12 million."
        assert result.model == "m1"
        assert result.attempts == 1

    def test_prompt_carries_context_and_question(self) -> None:
        m1 = _model("ok")
        asyncio.run(_generator({"m1": m1}).generate("  What was revenue?  ", CONTEXT))
        messages = m1.ainvoke.await_args.args[0]
        assert isinstance(messages[0], SystemMessage)
        assert isinstance(messages[1], HumanMessage)
        assert "Revenue was 12 million in 2023.\n\nCosts were 9 million." in messages[1].content
        assert "Question: What was revenue?\n\nAnswer:" in messages[1].content

    def test_retries_same_model_on_transient_errors(self) -> None:
        m1 = _model(ApiError("rate", 429), ApiError("busy", 503), "answer")
        m2 = _model("unused")
        result = asyncio.run(_generator({"m1": m1, "m2": m2}).generate("q?", CONTEXT))
        assert (result.model, result.attempts, result.text) == ("m1", 3, "answer")
        assert m1.ainvoke.await_count == 3
        assert m2.ainvoke.await_count == 0

    def test_falls_back_after_exhausting_attempts(self) -> None:
        m1 = _model(*(ApiError("busy", 503) for _ in range(3)))
        m2 = _model("from m2")
        result = asyncio.run(_generator({"m1": m1, "m2": m2}).generate("q?", CONTEXT))
        assert result.model == "m2"
        assert result.text == "from m2"
        assert m1.ainvoke.await_count == 3

    def test_non_retryable_error_skips_to_next_model(self) -> None:
        m1 = _model(ApiError("model not found", 404))
        m2 = _model("from m2")
        result = asyncio.run(_generator({"m1": m1, "m2": m2}).generate("q?", CONTEXT))
        assert result.model == "m2"
        assert m1.ainvoke.await_count == 1

    def test_factory_failure_skips_to_next_model(self) -> None:
        m2 = _model("from m2")

        def factory(name: str) -> MagicMock:
            if name == "m1":
                raise ValueError("unknown model")
            return m2

        result = asyncio.run(Generator(["m1", "m2"], factory, base_delay=0).generate("q?", CONTEXT))
        assert result.model == "m2"

    def test_all_models_exhausted(self) -> None:
        m1 = _model(*(ApiError("busy", 503) for _ in range(3)))
        m2 = _model(*(ApiError("slow down", 429) for _ in range(3)))
        with pytest.raises(GenerationUnavailableError) as excinfo:
            asyncio.run(_generator({"m1": m1, "m2": m2}).generate("q?", CONTEXT))
        err = excinfo.value
        assert isinstance(err.__cause__, ApiError)
        assert err.__cause__.status_code == 429
        assert err.category == ErrorCategory.QUOTA
        assert err.details["models"] == ["m1", "m2"]
        assert "Rate limit" in err.message

    def test_timeout_moves_to_next_model(self) -> None:
        async def hang(messages: Any) -> AIMessage:
            await asyncio.sleep(10)
            return AIMessage(content="too late")

        m1 = MagicMock()
        m1.ainvoke = AsyncMock(side_effect=hang)
        m2 = _model("in time")
        result = asyncio.run(_generator({"m1": m1, "m2": m2}, timeout=0.05).generate("q?", CONTEXT))
        assert result.model == "m2"
        assert m1.ainvoke.await_count == 1

    def test_empty_question_never_calls_model(self) -> None:
        m1 = _model("unused")
        with pytest.raises(ValidationError):
            asyncio.run(_generator({"m1": m1}).generate("   ", CONTEXT))
        assert m1.ainvoke.await_count == 0

    def test_list_content_is_flattened(self) -> None:
        m1 = MagicMock()
        m1.ainvoke = AsyncMock(return_value=AIMessage(content=[{"type": "text", "text": "a"}, "b"]))
        result = asyncio.run(_generator({"m1": m1}).generate("q?", CONTEXT))
        assert result.text == "ab"

    def test_requires_models(self) -> None:
        with pytest.raises(ValidationError):
            Generator([], MagicMock())

    def test_requires_positive_attempts(self) -> None:
        with pytest.raises(ValidationError):
            Generator(["m1"], MagicMock(), max_attempts=0)

    def test_models_are_built_once(self) -> None:
        m1 = _model(ApiError("busy", 503), "first", "second")
        factory = MagicMock(return_value=m1)
        generator = Generator(["m1"], factory, base_delay=0)
        asyncio.run(generator.generate("q?", CONTEXT))
        asyncio.run(generator.generate("again?", CONTEXT))
        factory.assert_called_once_with("m1")
        assert m1.ainvoke.await_count == 3

    def test_failed_factory_is_retried_on_next_request(self) -> None:
        m1 = _model("ok")
        factory = MagicMock(side_effect=[RuntimeError("endpoint down"), m1])
        generator = Generator(["m1"], factory, base_delay=0)
        with pytest.raises(GenerationUnavailableError):
            asyncio.run(generator.generate("q?", CONTEXT))
        assert asyncio.run(generator.generate("q?", CONTEXT)).text == "ok"
        assert factory.call_count == 2


# ── streaming ──────────────────────────────────────────────────────────


class TestGenerateStream:
    def test_streams_fragments_in_order(self) -> None:
        model, streams = _streaming_model(["The ", "answer", " is 12."])
        gen = _generator({"m1": model})
        fragments = asyncio.run(_collect(gen.generate_stream("q?", CONTEXT)))
        assert fragments == ["The ", "answer", " is 12."]
        assert streams[0].closed

    def test_first_fragment_is_retried(self) -> None:
        model, _ = _streaming_model([ApiError("busy", 503)], ["ok"])
        fragments = asyncio.run(_collect(_generator({"m1": model}).generate_stream("q?", CONTEXT)))
        assert fragments == ["ok"]
        assert model.astream.call_count == 2

    def test_falls_back_before_first_fragment(self) -> None:
        m1, _ = _streaming_model([ApiError("bad request", 400)])
        m2, _ = _streaming_model(["from m2"])
        fragments = asyncio.run(_collect(_generator({"m1": m1, "m2": m2}).generate_stream("q?", CONTEXT)))
        assert fragments == ["from m2"]

    def test_mid_stream_failure_raises_after_partial_output(self) -> None:
        m1, streams = _streaming_model(["partial ", "answer", ApiError("busy", 503)])
        m2, _ = _streaming_model(["never"])
        received: list[str] = []

        async def consume() -> None:
            async for fragment in _generator({"m1": m1, "m2": m2}).generate_stream("q?", CONTEXT):
                received.append(fragment)

        with pytest.raises(GenerationError) as excinfo:
            asyncio.run(consume())
        assert received == ["partial ", "answer"]
        assert excinfo.value.details == {"model": "m1"}
        assert m2.astream.call_count == 0
        assert streams[0].closed

    def test_empty_stream_yields_nothing(self) -> None:
        model, _ = _streaming_model([])
        assert asyncio.run(_collect(_generator({"m1": model}).generate_stream("q?", CONTEXT))) == []

    def test_empty_question(self) -> None:
        model, _ = _streaming_model(["unused"])
        with pytest.raises(ValidationError):
            asyncio.run(_collect(_generator({"m1": model}).generate_stream("", CONTEXT)))
        assert model.astream.call_count == 0


class TestPrompt:
    def test_build_answer_prompt(self) -> None:
        system, human = build_answer_prompt("Why?", ["one", "two"])
        assert isinstance(system, SystemMessage)
        assert human.content.startswith("Based on the following context")
        assert "Context:\none\n\ntwo" in human.content
