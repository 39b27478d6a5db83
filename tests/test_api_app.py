"""Tests for the FastAPI application helpers."""

from __future__ import annotations

from uuid import uuid4

import chromadb
from fastapi.testclient import TestClient

from hybridrag.api.app import AppDependencies, create_app
from hybridrag.config import Settings
from hybridrag.conversation import InMemoryMessageStore
from hybridrag.embeddings import ChromaPassageStore, EmbeddingChain, HashEmbeddingBackend
from hybridrag.ingestion import PassageIngestor
from hybridrag.models import WebResult
from hybridrag.retrieval import RetrievalOrchestrator
from hybridrag.services import AnswerSynthesizer, TemplateGenerator, split_stream

USER = {"X-User-ID": "user-1"}


class StubWeb:
    def __init__(self) -> None:
        self.queries: list[str] = []

    async def search(self, query: str, limit: int = 3):
        self.queries.append(query)
        return [WebResult(title="Example", url="https://example.com/page", content="From the web.")]


class DeadBackend:
    name = "dead"

    async def embed(self, text: str):
        raise RuntimeError("provider down")


def make_dependencies(embedder: EmbeddingChain | None = None, web: StubWeb | None = None) -> AppDependencies:
    embedder = embedder or EmbeddingChain([HashEmbeddingBackend()])
    store = ChromaPassageStore(collection_name=f"api-{uuid4().hex[:8]}", client=chromadb.EphemeralClient())
    messages = InMemoryMessageStore()
    return AppDependencies(
        embedder=embedder,
        store=store,
        messages=messages,
        ingestor=PassageIngestor(embedder, store),
        retriever=RetrievalOrchestrator(embedder, store, web),
        synthesizer=AnswerSynthesizer(TemplateGenerator(), messages),
    )


def make_client(deps: AppDependencies, **overrides) -> TestClient:
    settings = Settings(environment="test", **overrides)
    return TestClient(create_app(settings=settings, dependencies=deps))


def test_requests_without_user_are_rejected():
    client = make_client(make_dependencies())
    r = client.post("/chat", json={"question": "hi", "workspace_id": "ws1"})
    assert r.status_code == 401


def test_chat_requires_exactly_one_scope():
    client = make_client(make_dependencies())
    r = client.post("/chat", json={"question": "hi"}, headers=USER)
    assert r.status_code == 422
    r = client.post("/chat", json={"question": "hi", "workspace_id": "a", "document_id": "b"}, headers=USER)
    assert r.status_code == 422


def test_ingest_then_chat_streams_answer_with_sources():
    deps = make_dependencies(web=StubWeb())
    with make_client(deps) as client:
        r = client.post(
            "/documents/text",
            json={"title": "policy.txt", "text": "Employees receive 25 days of annual leave.", "workspace_id": "ws1"},
            headers=USER,
        )
        assert r.status_code == 201, r.text
        assert r.json()["embedded"] == 1

        r = client.post("/chat", json={"question": "How much leave?", "workspace_id": "ws1"}, headers=USER)
        assert r.status_code == 200, r.text
        assert r.headers["content-type"].startswith("text/plain")
        assert r.headers["X-Used-Web-Search"] == "false"

        answer, sources = split_stream(r.text)
        assert "[1]" in answer
        assert sources[0]["title"] == "policy.txt"
        assert sources[0]["type"] == "document"

    messages = deps.messages.list_messages(user_id="user-1", workspace_id="ws1")
    assert [m.role for m in messages] == ["user", "assistant"]
    assert messages[1].content == answer


def test_include_web_search_adds_web_sources():
    web = StubWeb()
    deps = make_dependencies(web=web)
    with make_client(deps) as client:
        r = client.post(
            "/chat",
            json={"question": "Latest news?", "workspace_id": "ws-empty", "include_web_search": True},
            headers=USER,
        )
    assert r.status_code == 200
    assert r.headers["X-Used-Web-Search"] == "true"
    _, sources = split_stream(r.text)
    assert sources == [
        {"id": 1, "type": "web", "title": "Example", "url": "https://example.com/page", "content": "From the web."}
    ]
    assert web.queries == ["Latest news?"]


def test_embedding_outage_returns_503():
    deps = make_dependencies(embedder=EmbeddingChain([DeadBackend()]))
    client = make_client(deps)
    r = client.post("/chat", json={"question": "hi", "workspace_id": "ws1"}, headers=USER)
    assert r.status_code == 503
    assert r.json()["detail"] == "Embedding service unavailable"
    assert "correlation_id" in r.json()


def test_empty_document_returns_400_and_oversized_413():
    client = make_client(make_dependencies(), max_document_chars=10)
    r = client.post("/documents/text", json={"title": "big", "text": "x" * 11}, headers=USER)
    assert r.status_code == 413
    r = client.post("/documents/text", json={"title": "blank", "text": "   "}, headers=USER)
    assert r.status_code == 400


def test_messages_analytics_and_delete():
    deps = make_dependencies()
    with make_client(deps) as client:
        r = client.post(
            "/documents/text",
            json={"title": "notes.txt", "text": "alpha beta gamma delta", "workspace_id": "ws1", "document_id": "doc-9"},
            headers=USER,
        )
        assert r.status_code == 201
        client.post("/chat", json={"question": "What is alpha?", "workspace_id": "ws1"}, headers=USER)

    with make_client(deps) as client:
        r = client.get("/workspaces/ws1/messages", headers=USER)
        assert r.status_code == 200
        assert [m["role"] for m in r.json()] == ["user", "assistant"]

        r = client.get("/workspaces/ws1/analytics", headers=USER)
        analytics = r.json()
        assert analytics["document_count"] == 1
        assert analytics["total_chunks"] == 1
        assert analytics["total_words"] == 4
        assert len(analytics["activity"]) == 7
        assert analytics["activity"][-1]["count"] == 2

        r = client.delete("/documents/doc-9", headers=USER)
        assert r.status_code == 204
        assert client.get("/workspaces/ws1/analytics", headers=USER).json()["document_count"] == 0

        # other users see nothing
        assert client.get("/workspaces/ws1/messages", headers={"X-User-ID": "user-2"}).json() == []


def test_api_key_is_enforced_when_configured():
    client = make_client(make_dependencies(), api_key="secret")
    r = client.get("/workspaces/ws1/messages", headers=USER)
    assert r.status_code == 401
    r = client.get("/workspaces/ws1/messages", headers={**USER, "X-API-Key": "secret"})
    assert r.status_code == 200


def test_delete_by_another_user_is_not_found():
    deps = make_dependencies()
    with make_client(deps) as client:
        client.post(
            "/documents/text",
            json={"title": "notes.txt", "text": "alpha beta gamma", "workspace_id": "ws1", "document_id": "doc-7"},
            headers=USER,
        )

        r = client.delete("/documents/doc-7", headers={"X-User-ID": "intruder"})
        assert r.status_code == 404
        assert deps.store.count(user_id="user-1") == 1

        assert client.delete("/documents/doc-7", headers=USER).status_code == 204
        assert client.delete("/documents/doc-7", headers=USER).status_code == 404


def test_reusing_another_users_document_id_conflicts():
    deps = make_dependencies()
    with make_client(deps) as client:
        body = {"title": "notes.txt", "text": "alpha beta gamma", "workspace_id": "ws1", "document_id": "doc-8"}
        assert client.post("/documents/text", json=body, headers=USER).status_code == 201

        r = client.post("/documents/text", json={**body, "text": "hijacked"}, headers={"X-User-ID": "user-2"})
        assert r.status_code == 409
        assert deps.store.count(user_id="user-1") == 1
        assert deps.store.count(user_id="user-2") == 0


class RecoveringBackend:
    name = "recovering"

    def __init__(self) -> None:
        self.healthy = False
        self._hash = HashEmbeddingBackend()

    async def embed(self, text: str):
        if not self.healthy:
            raise RuntimeError("provider outage")
        return await self._hash.embed(text)


def test_reembed_route_indexes_pending_passages():
    backend = RecoveringBackend()
    deps = make_dependencies(EmbeddingChain([backend]))
    with make_client(deps) as client:
        r = client.post("/documents/text", json={"title": "notes.txt", "text": "alpha beta", "workspace_id": "ws1"}, headers=USER)
        assert r.status_code == 201
        assert r.json()["failed"] == 1

        backend.healthy = True
        r = client.post("/passages/reembed", headers=USER)
        assert r.status_code == 200
        assert r.json() == {"retried": 1, "embedded": 1, "failed": 0}
        assert deps.store.count(user_id="user-1", workspace_id="ws1") == 1
        assert deps.store.pending_count() == 0
