"""Answer synthesis: prompt policy, token streaming and conversation persistence.

Wire contract of a streamed answer::

    <answer tokens ...><SOURCES_DELIMITER><JSON array of sources>

The token phase is exhausted first; the trailer is written once afterwards.
If the caller disconnects during the token phase the model stream is closed
and the text produced so far is still stored as the assistant message.
"""

from __future__ import annotations

import asyncio
import json
import time
from contextlib import aclosing
from typing import Any, AsyncIterator, Sequence

from hybridrag.conversation import MessageStore
from hybridrag.metrics.observability import PipelineMetrics, get_logger
from hybridrag.models import Message, RetrievalResult, Source
from hybridrag.services.generation import ChatMessage, GenerationBackend
from hybridrag.services.prompts import SOURCES_DELIMITER, build_system_prompt

GENERATION_FAILED_TEXT = "I could not generate an answer right now. Please try again in a moment."


def serialize_sources(sources: Sequence[Source]) -> str:
    return json.dumps([source.to_dict() for source in sources], ensure_ascii=False)


def split_stream(payload: str) -> tuple[str, list[dict[str, Any]]]:
    """Separate the display text from the trailing source list."""

    answer, delimiter, trailer = payload.rpartition(SOURCES_DELIMITER)
    if not delimiter:
        return payload, []
    return answer, json.loads(trailer)


class AnswerSynthesizer:
    """Streams a grounded answer and records both sides of the turn."""

    def __init__(
        self,
        generator: GenerationBackend,
        messages: MessageStore,
        *,
        history_limit: int = 10,
    ) -> None:
        self._generator = generator
        self._messages = messages
        self._history_limit = history_limit
        self._pending: set[asyncio.Task[Any]] = set()
        self._logger = get_logger("answer")

    async def load_history(self, *, user_id: str, workspace_id: str | None) -> list[Message]:
        return list(
            await asyncio.to_thread(
                self._messages.list_messages,
                user_id=user_id,
                workspace_id=workspace_id,
                limit=self._history_limit,
            )
        )

    async def record_question(self, question: str, *, user_id: str, workspace_id: str | None) -> Message:
        return await asyncio.to_thread(
            self._messages.create_message, "user", question, user_id=user_id, workspace_id=workspace_id
        )

    def build_messages(
        self,
        question: str,
        retrieval: RetrievalResult,
        history: Sequence[Message] = (),
    ) -> list[ChatMessage]:
        system = build_system_prompt(
            retrieval.context,
            has_doc_context=retrieval.has_doc_context,
            has_web_context=retrieval.has_web_context,
        )
        messages: list[ChatMessage] = [{"role": "system", "content": system}]
        messages.extend({"role": m.role, "content": m.content} for m in history)
        messages.append({"role": "user", "content": question})
        return messages

    async def stream_answer(
        self,
        question: str,
        retrieval: RetrievalResult,
        *,
        user_id: str,
        workspace_id: str | None,
        history: Sequence[Message] = (),
    ) -> AsyncIterator[str]:
        messages = self.build_messages(question, retrieval, history)
        parts: list[str] = []
        completed = False
        start = time.perf_counter()
        try:
            try:
                async with aclosing(self._generator.stream(messages)) as tokens:
                    async for token in tokens:
                        parts.append(token)
                        yield token
            except Exception as exc:
                self._logger.error("generation.failed", error=str(exc), tokens=len(parts))
                if not parts:
                    parts.append(GENERATION_FAILED_TEXT)
                    yield GENERATION_FAILED_TEXT
            completed = True
        finally:
            duration = time.perf_counter() - start
            PipelineMetrics.observe_generation(duration)
            self._persist_answer("".join(parts), user_id=user_id, workspace_id=workspace_id, partial=not completed)
            self._logger.info(
                "generation.complete",
                partial=not completed,
                token_count=len(parts),
                source_count=len(retrieval.sources),
                used_web=retrieval.used_web,
                duration_seconds=duration,
            )
        yield SOURCES_DELIMITER + serialize_sources(retrieval.sources)

    async def drain(self) -> None:
        """Wait for outstanding assistant-message writes."""

        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _persist_answer(self, text: str, *, user_id: str, workspace_id: str | None, partial: bool) -> None:
        if not text.strip():
            return
        task = asyncio.get_running_loop().create_task(
            self._write_answer(text, user_id=user_id, workspace_id=workspace_id, partial=partial)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write_answer(self, text: str, *, user_id: str, workspace_id: str | None, partial: bool) -> None:
        try:
            await asyncio.to_thread(
                self._messages.create_message, "assistant", text, user_id=user_id, workspace_id=workspace_id
            )
        except Exception as exc:
            self._logger.error("conversation.persist_failed", error=str(exc), partial=partial)
            return
        self._logger.info("conversation.persisted", partial=partial, chars=len(text))
