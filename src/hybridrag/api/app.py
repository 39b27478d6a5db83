"""FastAPI application exposing HybridRAG services."""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from uuid import uuid4

import chromadb
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from hybridrag.api.schemas import (
    ActivityPoint,
    ChatRequest,
    IngestionResponse,
    MessageModel,
    ReembedResponse,
    TextIngestionRequest,
    WorkspaceAnalytics,
)
from hybridrag.config import Settings, get_settings
from hybridrag.conversation import InMemoryMessageStore, MessageStore, daily_activity
from hybridrag.embeddings import ChromaPassageStore, EmbeddingChain, build_embedding_chain, get_runtime
from hybridrag.errors import EmbeddingUnavailable
from hybridrag.ingestion import DocumentConflict, IngestionConfig, IngestionError, PassageIngestor
from hybridrag.metrics.observability import bind_correlation_id, clear_correlation_id, configure_logging, get_logger
from hybridrag.models import Document, Scope
from hybridrag.retrieval import RetrievalConfig, RetrievalOrchestrator
from hybridrag.services import AnswerSynthesizer, GenerationConfig, OpenAICompatibleGenerator, TemplateGenerator
from hybridrag.services.generation import GenerationBackend
from hybridrag.websearch import build_web_search_client


@dataclass(frozen=True)
class AppDependencies:
    embedder: EmbeddingChain
    store: ChromaPassageStore
    messages: MessageStore
    ingestor: PassageIngestor
    retriever: RetrievalOrchestrator
    synthesizer: AnswerSynthesizer


def _build_generator(settings: Settings) -> GenerationBackend:
    if settings.use_model_generator and settings.generator_api_key:
        return OpenAICompatibleGenerator(
            settings.generator_api_key,
            GenerationConfig(
                model=settings.generator_model,
                base_url=settings.generator_base_url,
                max_new_tokens=settings.generator_max_new_tokens,
                temperature=settings.generator_temperature,
                timeout_seconds=settings.generator_timeout_seconds,
            ),
        )
    return TemplateGenerator()


def _build_dependencies(settings: Settings) -> AppDependencies:
    embedder = build_embedding_chain(settings)
    chroma_client = None
    if settings.chroma_host:
        chroma_client = chromadb.HttpClient(
            host=settings.chroma_host,
            port=settings.chroma_port or 8000,
            ssl=settings.chroma_ssl,
        )
    store = ChromaPassageStore(
        collection_name=settings.chroma_collection,
        dim=settings.embedding_dim,
        client=chroma_client,
        persist_directory=None if chroma_client else settings.chroma_persist_dir,
    )
    messages = InMemoryMessageStore()
    ingestor = PassageIngestor(
        embedder,
        store,
        IngestionConfig(chunk_size=settings.chunk_size, chunk_overlap=settings.chunk_overlap),
    )
    retriever = RetrievalOrchestrator(
        embedder,
        store,
        build_web_search_client(settings) if settings.web_search_enabled else None,
        RetrievalConfig(
            top_k=settings.max_chunks,
            noise_floor=settings.noise_floor,
            widen_threshold=settings.widen_threshold,
            web_threshold=settings.web_threshold,
            web_results=settings.web_search_results,
        ),
    )
    synthesizer = AnswerSynthesizer(_build_generator(settings), messages, history_limit=settings.history_limit)
    return AppDependencies(
        embedder=embedder,
        store=store,
        messages=messages,
        ingestor=ingestor,
        retriever=retriever,
        synthesizer=synthesizer,
    )


def create_app(*, settings: Settings | None = None, dependencies: AppDependencies | None = None) -> FastAPI:
    settings = settings or get_settings()
    deps = dependencies or _build_dependencies(settings)

    configure_logging()
    logger = get_logger("api")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await deps.synthesizer.drain()
        get_runtime().close()

    app = FastAPI(title="HybridRAG API", version="0.1.0", lifespan=lifespan)
    app.state.dependencies = deps

    # Optional CORS
    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_allow_origins),
            allow_credentials=settings.cors_allow_credentials,
            allow_methods=list(settings.cors_allow_methods),
            allow_headers=list(settings.cors_allow_headers),
        )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Request-ID", uuid4().hex)
        request.state.correlation_id = correlation_id
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    # Security dependencies
    def require_api_key(request: Request) -> None:
        expected = settings.api_key
        if not expected:
            return
        provided = request.headers.get("X-API-Key")
        if provided != expected:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")

    def require_user(request: Request) -> str:
        # Session handling lives in front of this service; it forwards the user id.
        user_id = (request.headers.get("X-User-ID") or "").strip()
        if not user_id:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-ID header")
        return user_id

    class RateLimiter:
        def __init__(self, requests: int, window_seconds: int) -> None:
            self.requests = requests
            self.window = window_seconds
            self._buckets: dict[str, list[float]] = {}

        def __call__(self, request: Request) -> None:
            client_ip = request.headers.get("x-forwarded-for") or (request.client.host if request.client else "-")
            key = f"{client_ip}:{request.url.path}"
            now = time.time()
            bucket = self._buckets.setdefault(key, [])
            # Drop old entries
            cutoff = now - self.window
            while bucket and bucket[0] < cutoff:
                bucket.pop(0)
            if len(bucket) >= self.requests:
                raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Rate limit exceeded")
            bucket.append(now)

    rate_limiter = RateLimiter(settings.rate_limit_requests, settings.rate_limit_window_seconds)

    @app.exception_handler(EmbeddingUnavailable)
    async def handle_embedding_unavailable(request: Request, exc: EmbeddingUnavailable) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        logger.error("embedding.unavailable", correlation_id=correlation_id, detail=str(exc))
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Embedding service unavailable", "correlation_id": correlation_id},
        )

    @app.exception_handler(DocumentConflict)
    async def handle_document_conflict(request: Request, exc: DocumentConflict) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        logger.warning("ingestion.conflict", correlation_id=correlation_id, detail=str(exc))
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": str(exc), "correlation_id": correlation_id},
        )

    @app.exception_handler(IngestionError)
    async def handle_ingestion_error(request: Request, exc: IngestionError) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        logger.error("ingestion.error", correlation_id=correlation_id, detail=str(exc))
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": str(exc), "correlation_id": correlation_id},
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        logger.error("unhandled.error", correlation_id=correlation_id, detail=str(exc))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal Server Error", "correlation_id": correlation_id},
        )

    def get_dependencies(request: Request) -> AppDependencies:
        return request.app.state.dependencies

    @app.post("/documents/text", response_model=IngestionResponse, status_code=status.HTTP_201_CREATED)
    async def ingest_text(
        payload: TextIngestionRequest,
        user_id: str = Depends(require_user),
        dep: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
        _rl: None = Depends(rate_limiter),
    ) -> IngestionResponse:
        if len(payload.text) > settings.max_document_chars:
            raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Document too large")
        document = Document(
            id=payload.document_id or uuid4().hex,
            title=payload.title,
            content=payload.text,
            user_id=user_id,
            workspace_id=payload.workspace_id,
        )
        report = await dep.ingestor.ingest(document)
        return IngestionResponse(
            document_id=report.document_id,
            chunks=report.chunks,
            embedded=report.embedded,
            failed=report.failed,
        )

    @app.delete("/documents/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_document(
        document_id: str,
        user_id: str = Depends(require_user),
        dep: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
    ) -> Response:
        removed = await asyncio.to_thread(dep.store.delete_document, document_id, user_id=user_id)
        if not removed:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
        logger.info("document.deleted", document_id=document_id, passages=removed)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/passages/reembed", response_model=ReembedResponse)
    async def reembed_pending(
        user_id: str = Depends(require_user),
        dep: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
        _rl: None = Depends(rate_limiter),
    ) -> ReembedResponse:
        report = await dep.ingestor.reembed_pending(user_id=user_id)
        return ReembedResponse(retried=report.retried, embedded=report.embedded, failed=report.failed)

    @app.post("/chat")
    async def chat(
        payload: ChatRequest,
        user_id: str = Depends(require_user),
        dep: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
        _rl: None = Depends(rate_limiter),
    ) -> Response:
        scope = Scope(workspace_id=payload.workspace_id, document_id=payload.document_id)
        synthesizer = dep.synthesizer
        history = await synthesizer.load_history(user_id=user_id, workspace_id=payload.workspace_id)
        await synthesizer.record_question(payload.question, user_id=user_id, workspace_id=payload.workspace_id)
        retrieval = await dep.retriever.retrieve(
            payload.question,
            scope,
            user_id,
            force_web=payload.include_web_search,
        )
        stream = synthesizer.stream_answer(
            payload.question,
            retrieval,
            user_id=user_id,
            workspace_id=payload.workspace_id,
            history=history,
        )
        return StreamingResponse(
            stream,
            media_type="text/plain; charset=utf-8",
            headers={
                "X-Used-Web-Search": "true" if retrieval.used_web else "false",
                "X-Source-Count": str(len(retrieval.sources)),
            },
        )

    @app.get("/workspaces/{workspace_id}/messages", response_model=list[MessageModel])
    async def list_messages(
        workspace_id: str,
        user_id: str = Depends(require_user),
        dep: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
    ) -> list[MessageModel]:
        messages = await asyncio.to_thread(dep.messages.list_messages, user_id=user_id, workspace_id=workspace_id)
        return [
            MessageModel(
                id=m.id,
                role=m.role,
                content=m.content,
                workspace_id=m.workspace_id,
                created_at=m.created_at,
            )
            for m in messages
        ]

    @app.get("/workspaces/{workspace_id}/analytics", response_model=WorkspaceAnalytics)
    async def workspace_analytics(
        workspace_id: str,
        user_id: str = Depends(require_user),
        dep: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
    ) -> WorkspaceAnalytics:
        stats = await asyncio.to_thread(dep.store.document_stats, user_id=user_id, workspace_id=workspace_id)
        messages = await asyncio.to_thread(dep.messages.list_messages, user_id=user_id, workspace_id=workspace_id)
        return WorkspaceAnalytics(
            workspace_id=workspace_id,
            document_count=len(stats),
            total_chunks=sum(entry["passages"] for entry in stats.values()),
            total_words=sum(entry["words"] for entry in stats.values()),
            activity=[ActivityPoint(**point) for point in daily_activity(messages)],
        )

    @app.get("/metrics")
    async def metrics() -> Response:
        payload = generate_latest()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    @app.get("/healthz")
    async def healthcheck() -> dict[str, object]:
        from hybridrag import __version__

        return {
            "status": "ok",
            "version": __version__,
            "environment": settings.environment,
            "embedding_backends": deps.embedder.backend_names,
        }

    @app.head("/healthz")
    async def healthcheck_head() -> Response:
        return Response(status_code=status.HTTP_200_OK)

    @app.get("/livez")
    async def liveness() -> dict[str, str]:
        return {"status": "alive"}

    @app.get("/healthz/ready")
    async def readiness(dep: AppDependencies = Depends(get_dependencies)) -> dict[str, str]:
        try:
            _ = dep.store.count()
            return {"status": "ready"}
        except Exception as exc:  # pragma: no cover
            return {"status": "error", "detail": str(exc)}

    return app


def app_factory() -> FastAPI:
    """Entry point for ``uvicorn --factory hybridrag.api.app:app_factory``."""

    return create_app()
