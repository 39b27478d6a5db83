"""Tests for answer streaming and conversation persistence."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from hybridrag.conversation import InMemoryMessageStore, daily_activity
from hybridrag.models import Message, RetrievalResult, Source
from hybridrag.services.answer import GENERATION_FAILED_TEXT, AnswerSynthesizer, split_stream
from hybridrag.services.generation import GenerationConfig, OpenAICompatibleGenerator, TemplateGenerator
from hybridrag.services.prompts import FOLLOW_UP_DELIMITER, NO_CONTEXT_INSTRUCTION, SOURCES_DELIMITER

SOURCES = [
    Source(id=1, type="document", title="handbook.pdf", content="Leave is 25 days."),
    Source(id=2, type="web", title="Gov site", url="https://gov.example.com", content="Statutory minimum."),
]
CONTEXT = (
    "WORKSPACE DOCUMENTS:\n\n[1] Source: handbook.pdf (relevance 0.82)\nLeave is 25 days.\n\n"
    "LIVE WEB KNOWLEDGE:\n\n[2] Source: Gov site (https://gov.example.com)\nStatutory minimum."
)
RETRIEVAL = RetrievalResult(context=CONTEXT, sources=SOURCES, used_web=True, top_score=0.82)
EMPTY = RetrievalResult(context="", sources=[], used_web=False)


class ScriptedGenerator:
    def __init__(self, tokens, error: Exception | None = None) -> None:
        self.tokens = list(tokens)
        self.error = error
        self.closed = False
        self.seen: list = []

    async def stream(self, messages):
        self.seen = list(messages)
        try:
            for token in self.tokens:
                yield token
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


async def _collect(stream) -> str:
    return "".join([token async for token in stream])


@pytest.mark.asyncio
async def test_stream_yields_tokens_then_sources_trailer():
    store = InMemoryMessageStore()
    synthesizer = AnswerSynthesizer(ScriptedGenerator(["Leave ", "is ", "25 days [1]."]), store)

    payload = await _collect(synthesizer.stream_answer("How much leave?", RETRIEVAL, user_id="u1", workspace_id="ws1"))
    await synthesizer.drain()
    answer, sources = split_stream(payload)

    assert answer == "Leave is 25 days [1]."
    assert [s["id"] for s in sources] == [1, 2]
    assert sources[1]["url"] == "https://gov.example.com"
    assert payload.count(SOURCES_DELIMITER) == 1


@pytest.mark.asyncio
async def test_assistant_message_is_persisted_without_trailer():
    store = InMemoryMessageStore()
    synthesizer = AnswerSynthesizer(ScriptedGenerator(["Answer ", "text"]), store)

    history = await synthesizer.load_history(user_id="u1", workspace_id="ws1")
    await synthesizer.record_question("Question?", user_id="u1", workspace_id="ws1")
    stream = synthesizer.stream_answer("Question?", RETRIEVAL, user_id="u1", workspace_id="ws1", history=history)
    # question is stored before any token is produced
    assert [m.role for m in store.list_messages(user_id="u1", workspace_id="ws1")] == ["user"]

    await _collect(stream)
    await synthesizer.drain()

    messages = store.list_messages(user_id="u1", workspace_id="ws1")
    assert [(m.role, m.content) for m in messages] == [("user", "Question?"), ("assistant", "Answer text")]


@pytest.mark.asyncio
async def test_cancelled_stream_persists_partial_answer():
    store = InMemoryMessageStore()
    generator = ScriptedGenerator(["one ", "two ", "three ", "four "])
    synthesizer = AnswerSynthesizer(generator, store)

    stream = synthesizer.stream_answer("q", RETRIEVAL, user_id="u1", workspace_id="ws1")
    received = [await stream.__anext__(), await stream.__anext__()]
    await stream.aclose()
    await synthesizer.drain()

    assert received == ["one ", "two "]
    assert generator.closed
    messages = store.list_messages(user_id="u1", workspace_id="ws1")
    assert [(m.role, m.content) for m in messages] == [("assistant", "one two ")]


@pytest.mark.asyncio
async def test_generator_failure_before_tokens_yields_fallback():
    store = InMemoryMessageStore()
    synthesizer = AnswerSynthesizer(ScriptedGenerator([], error=httpx.ConnectError("down")), store)

    answer, sources = split_stream(
        await _collect(synthesizer.stream_answer("q", RETRIEVAL, user_id="u1", workspace_id=None))
    )
    await synthesizer.drain()

    assert answer == GENERATION_FAILED_TEXT
    assert len(sources) == 2
    assert store.list_messages(user_id="u1")[0].content == GENERATION_FAILED_TEXT


@pytest.mark.asyncio
async def test_generator_failure_mid_stream_keeps_partial_text():
    generator = ScriptedGenerator(["partial ", "answer"], error=RuntimeError("reset"))
    synthesizer = AnswerSynthesizer(generator, InMemoryMessageStore())
    answer, _ = split_stream(await _collect(synthesizer.stream_answer("q", EMPTY, user_id="u1", workspace_id=None)))
    await synthesizer.drain()
    assert answer == "partial answer"


def test_build_messages_includes_history_and_policy():
    synthesizer = AnswerSynthesizer(TemplateGenerator(), InMemoryMessageStore())
    history = [
        Message(role="user", content="earlier question", user_id="u1"),
        Message(role="assistant", content="earlier answer", user_id="u1"),
    ]

    messages = synthesizer.build_messages("new question", EMPTY, history)

    assert messages[0]["role"] == "system"
    assert NO_CONTEXT_INSTRUCTION in messages[0]["content"]
    assert [m["content"] for m in messages[1:]] == ["earlier question", "earlier answer", "new question"]


@pytest.mark.asyncio
async def test_history_is_limited_to_recent_turns():
    store = InMemoryMessageStore()
    for index in range(6):
        store.create_message("user", f"q{index}", user_id="u1", workspace_id="ws1")
    synthesizer = AnswerSynthesizer(TemplateGenerator(), store, history_limit=4)

    history = await synthesizer.load_history(user_id="u1", workspace_id="ws1")

    assert [m.content for m in history] == ["q2", "q3", "q4", "q5"]


@pytest.mark.asyncio
async def test_template_generator_cites_context_and_suggests_follow_ups():
    synthesizer = AnswerSynthesizer(TemplateGenerator(), InMemoryMessageStore())
    answer, _ = split_stream(
        await _collect(synthesizer.stream_answer("How much leave?", RETRIEVAL, user_id="u1", workspace_id=None))
    )
    await synthesizer.drain()
    body, _, follow_ups = answer.partition(FOLLOW_UP_DELIMITER)
    assert "[1][2]" in body
    assert "handbook.pdf" in body
    assert len(follow_ups.strip().splitlines()) == 3


@pytest.mark.asyncio
async def test_openai_compatible_generator_parses_server_sent_events():
    seen: dict = {}
    events = [
        {"choices": [{"delta": {"role": "assistant"}}]},
        {"choices": [{"delta": {"content": "Hello"}}]},
        {"choices": [{"delta": {"content": " world"}}]},
    ]
    body = "".join(f"data: {json.dumps(event)}\n\n" for event in events) + ": keep-alive\n\ndata: [DONE]\n\n"

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["payload"] = json.loads(request.content)
        return httpx.Response(200, text=body, headers={"Content-Type": "text/event-stream"})

    generator = OpenAICompatibleGenerator(
        "gsk-test",
        GenerationConfig(model="llama-3.1-8b-instant"),
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    tokens = [token async for token in generator.stream([{"role": "user", "content": "hi"}])]

    assert tokens == ["Hello", " world"]
    assert seen["url"] == "https://api.groq.com/openai/v1/chat/completions"
    assert seen["payload"]["stream"] is True


@pytest.mark.asyncio
async def test_openai_compatible_generator_raises_on_http_error():
    generator = OpenAICompatibleGenerator(
        "gsk-test",
        client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(429, text="slow down"))),
    )
    with pytest.raises(httpx.HTTPStatusError):
        _ = [token async for token in generator.stream([{"role": "user", "content": "hi"}])]


def test_daily_activity_counts_last_seven_days():
    now = datetime(2026, 3, 10, 12, tzinfo=timezone.utc)
    messages = [
        Message(role="user", content="a", user_id="u1", created_at=now),
        Message(role="assistant", content="b", user_id="u1", created_at=now - timedelta(hours=1)),
        Message(role="user", content="c", user_id="u1", created_at=now - timedelta(days=3)),
        Message(role="user", content="old", user_id="u1", created_at=now - timedelta(days=30)),
    ]

    activity = daily_activity(messages, now=now)

    assert len(activity) == 7
    assert activity[0]["date"] == "2026-03-04"
    assert activity[-1] == {"date": "2026-03-10", "count": 2}
    assert sum(point["count"] for point in activity) == 3
