"""Prompt templates for answer generation.

Keeping prompts in one place makes them easy to audit and version.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

from langchain_core.messages import HumanMessage, SystemMessage

if TYPE_CHECKING:
    from langchain_core.messages import BaseMessage

CONTEXT_SEPARATOR = "\n\n"

ANSWER_SYSTEM = """\
You answer questions about the user's uploaded PDF documents.

Use **only** the context excerpts supplied with the question.
If the answer cannot be found in the context, say so clearly instead of
guessing. Do NOT fabricate information.
"""


def format_context(context_chunks: Sequence[str]) -> str:
    """Join retrieved chunk texts with the context separator."""
    return CONTEXT_SEPARATOR.join(chunk.strip() for chunk in context_chunks if chunk.strip())


def build_answer_prompt(question: str, context_chunks: Sequence[str]) -> list[BaseMessage]:
    """Assemble the messages for one generation call.

    Parameters
    ----------
    question:
        The user question.
    context_chunks:
        Retrieved chunk texts, most relevant first.

    Returns
    -------
    list[BaseMessage]
        Messages ready for ``ainvoke`` / ``astream``.
    """
    user_msg = (
        "Based on the following context from PDF documents, answer the user's question.\n"
        "If the answer cannot be found in the context, say so clearly.\n\n"
        f"Context:\n{format_context(context_chunks)}\n\n"
        f"Question: {question}\n\n"
        "Answer:"
    )
    return [
        SystemMessage(content=ANSWER_SYSTEM),
        HumanMessage(content=user_msg),
    ]
