"""HTTP surface for lodestone (FastAPI).

Routes:
    POST /v1/query                 public retrieval, API key + rate limit
    GET|POST /v1/sources           list / create sources, API key
    GET|DELETE|POST /v1/sources/{id}
                                   read / delete / process now, API key
    POST /sources/{id}/process     schedule a pending source (202)
    POST /sources/{id}/retrain     synchronous retrain
    POST /sources/{id}/links/{link_id}/recrawl
                                   re-fetch one sitemap link (202)
    POST /process, GET /process    pending sweep / queue counts (cron secret)
    GET|POST /cron/auto-retrain    auto-retrain scheduler (cron secret)
    GET /health

Handlers open one SQLite connection per request. Blocking work runs in the
threadpool FastAPI provides for sync handlers and ``run_in_threadpool``.
"""

from __future__ import annotations

import json
import logging
import os
import secrets
import urllib.parse
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from lodestone import __version__
from lodestone.auth.api_keys import ApiKeyAuthenticator, AuthenticatedProject
from lodestone.auth.rate_limit import RateLimiter
from lodestone.config import CRON_SECRET_ENV, LodestoneConfig, load_config
from lodestone.db.connection import Database
from lodestone.db.models import Source, SourceStatus, SourceType
from lodestone.db.repository import Repository
from lodestone.db.schema import initialize
from lodestone.errors import (
    AuthenticationError,
    EmbeddingError,
    RateLimitExceeded,
    ValidationError,
)
from lodestone.ingest.embeddings import EmbeddingGenerator
from lodestone.processing.processor import SourceProcessor
from lodestone.processing.runner import BackgroundRunner
from lodestone.processing.scheduler import RetrainScheduler, sweep_pending
from lodestone.rag.retriever import QueryOutcome, Retriever
from lodestone.rag.vector_index import VectorIndex

logger = logging.getLogger(__name__)

INVALID_API_KEY = "Invalid or missing API key"
_MAX_PAGE_SIZE = 100


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class QueryResult(BaseModel):
    id: str
    content: str
    metadata: dict[str, Any]
    similarity: float
    source_id: str


class QueryResponse(BaseModel):
    results: list[QueryResult]
    query: str
    project_id: str


class ProcessOptions(BaseModel):
    max_depth: Optional[int] = None
    max_pages: Optional[int] = None

    def overrides(self) -> dict[str, object]:
        return {k: v for k, v in self.model_dump().items() if v is not None}


class ProcessingResponse(BaseModel):
    success: bool
    chunks_created: int = 0
    total_tokens: int = 0
    error: Optional[str] = None
    skipped: bool = False


class ScheduledResponse(BaseModel):
    status: str
    source_id: str


class QueueCounts(BaseModel):
    pending: int
    processing: int


class SourceSummary(BaseModel):
    id: str
    name: str
    type: str
    status: str
    chunks_count: int
    tokens_count: int
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def of(cls, source: Source) -> "SourceSummary":
        return cls(
            id=source.id,
            name=source.name,
            type=source.type.value,
            status=source.status.value,
            chunks_count=source.chunks_count,
            tokens_count=source.tokens_count,
            created_at=source.created_at,
            updated_at=source.updated_at,
        )


class SourceDetail(SourceSummary):
    error_message: Optional[str] = None

    @classmethod
    def of(cls, source: Source) -> "SourceDetail":
        return cls(**SourceSummary.of(source).model_dump(), error_message=source.error_message)


class SourceList(BaseModel):
    sources: list[SourceSummary]


def _error(status_code: int, message: str, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code, headers=headers)


async def _json_body(request: Request) -> dict[str, Any]:
    """Return the JSON object body, or ``{}`` when it is missing or malformed."""
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _new_source_fields(body: dict[str, Any]) -> tuple[SourceType, str, dict[str, Any]]:
    """Validate a create-source body into ``(type, name, config)``.

    Raises:
        ValidationError: With the message returned to the client.
    """
    kind = body.get("type")
    if kind == SourceType.TEXT.value:
        name, content = body.get("name"), body.get("content")
        if not _filled(name) or not _filled(content):
            raise ValidationError("Name and content required for text source")
        return SourceType.TEXT, name, {"content": content}
    if kind == SourceType.QA.value:
        question, answer = body.get("question"), body.get("answer")
        if not _filled(question) or not _filled(answer):
            raise ValidationError("Question and answer required for Q&A source")
        name = body.get("name") if _filled(body.get("name")) else question[:50]
        return SourceType.QA, name, {"question": question, "answer": answer}
    if kind == SourceType.WEBSITE.value:
        url = body.get("url")
        if not _filled(url):
            raise ValidationError("URL required for website source")
        parsed = urllib.parse.urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise ValidationError("Invalid URL")
        name = body.get("name") if _filled(body.get("name")) else parsed.hostname
        return SourceType.WEBSITE, name, {"url": url, "crawl_type": "single"}
    raise ValidationError("Invalid source type")


def _filled(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _cron_authorized(request: Request) -> bool:
    secret = os.environ.get(CRON_SECRET_ENV)
    if not secret:
        return True
    header = request.headers.get("authorization", "")
    return secrets.compare_digest(header, f"Bearer {secret}")


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(
    config: LodestoneConfig | None = None,
    *,
    db: Database | None = None,
    embedder: EmbeddingGenerator | None = None,
    rate_limiter: RateLimiter | None = None,
    runner: BackgroundRunner | None = None,
    processor: SourceProcessor | None = None,
) -> FastAPI:
    """Build the application; collaborators default to ones built from *config*."""
    cfg = config or load_config()
    # An empty RateLimiter is falsy (it defines __len__).
    if db is None:
        db = Database(cfg.database.path, busy_timeout=cfg.database.busy_timeout)
    if embedder is None:
        embedder = EmbeddingGenerator(cfg.embedding)
    limiter = rate_limiter
    if limiter is None:
        limiter = RateLimiter(cfg.rate_limit.max_requests, cfg.rate_limit.window_seconds)
    if runner is None:
        runner = BackgroundRunner(cfg.processing.max_workers)
    if processor is None:
        processor = SourceProcessor(db, embedder, cfg)
    scheduler = RetrainScheduler(processor, cfg.retrain)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        with db.session() as conn:
            initialize(conn)
        recovered = processor.recover_stalled()
        if recovered:
            logger.warning("Recovered stalled sources on startup", extra={"count": len(recovered)})
        limiter.start_cleanup(cfg.rate_limit.cleanup_interval)
        try:
            yield
        finally:
            limiter.stop_cleanup()
            runner.shutdown(wait=True, cancel_pending=True)

    app = FastAPI(
        title="Lodestone",
        description="Knowledge base ingestion and retrieval service",
        version=__version__,
        lifespan=lifespan,
    )

    # -----------------------------------------------------------------
    # Retrieval
    # -----------------------------------------------------------------

    def _run_query(authorization: str | None, body: dict[str, Any]) -> QueryOutcome:
        with db.session() as conn:
            repo = Repository(conn)
            retriever = Retriever(
                VectorIndex(conn, embedder.dimensions, embedder.model),
                embedder,
                cfg.retrieval,
                authenticator=ApiKeyAuthenticator(repo, db=db, runner=runner),
                rate_limiter=limiter,
            )
            return retriever.query_with_api_key(
                authorization, body.get("query"), body.get("top_k"), body.get("threshold")
            )

    @app.post("/v1/query", response_model=QueryResponse)
    async def v1_query(request: Request):
        body = await _json_body(request)
        try:
            outcome = await run_in_threadpool(
                _run_query, request.headers.get("authorization"), body
            )
        except AuthenticationError as exc:
            return _error(401, str(exc))
        except RateLimitExceeded as exc:
            return _error(429, str(exc), exc.result.headers())
        except ValidationError as exc:
            return _error(400, str(exc))
        except EmbeddingError as exc:
            logger.warning("Query embedding failed", extra={"error": str(exc)})
            return _error(502, "Embedding provider unavailable")

        payload = QueryResponse(
            results=[
                QueryResult(
                    id=r.chunk_id,
                    content=r.content,
                    metadata=r.metadata,
                    similarity=r.similarity,
                    source_id=r.source_id,
                )
                for r in outcome.results
            ],
            query=body["query"],
            project_id=outcome.project.project_id,
        )
        return JSONResponse(payload.model_dump(), headers=outcome.rate_limit.headers())

    # -----------------------------------------------------------------
    # Sources by API key
    # -----------------------------------------------------------------

    def _authenticate(authorization: str | None) -> AuthenticatedProject | None:
        with db.session() as conn:
            authenticator = ApiKeyAuthenticator(Repository(conn), db=db, runner=runner)
            return authenticator.authenticate(authorization)

    def _owned_source(project: AuthenticatedProject, source_id: str) -> Source | None:
        with db.session() as conn:
            source = Repository(conn).get_source(source_id)
        if source is None or source.project_id != project.project_id:
            return None
        return source

    @app.get("/v1/sources", response_model=SourceList)
    def v1_list_sources(
        request: Request,
        status: Optional[str] = None,
        source_type: Optional[str] = Query(None, alias="type"),
        limit: int = 50,
        offset: int = 0,
    ):
        project = _authenticate(request.headers.get("authorization"))
        if project is None:
            return _error(401, INVALID_API_KEY)
        try:
            status_filter = SourceStatus(status) if status else None
            type_filter = SourceType(source_type) if source_type else None
        except ValueError:
            return _error(400, "Invalid status or type filter")
        with db.session() as conn:
            sources = Repository(conn).list_sources(
                project.project_id,
                status_filter,
                min(max(limit, 1), _MAX_PAGE_SIZE),
                source_type=type_filter,
                offset=max(offset, 0),
                newest_first=True,
            )
        return SourceList(sources=[SourceSummary.of(s) for s in sources])

    @app.post("/v1/sources", status_code=201)
    async def v1_create_source(request: Request):
        project = await run_in_threadpool(_authenticate, request.headers.get("authorization"))
        if project is None:
            return _error(401, INVALID_API_KEY)
        try:
            body = await request.json()
        except ValueError:
            return _error(400, "Invalid request body")
        if not isinstance(body, dict):
            return _error(400, "Invalid request body")
        try:
            kind, name, source_config = _new_source_fields(body)
        except ValidationError as exc:
            return _error(400, str(exc))

        source = Source(
            id=str(uuid.uuid4()),
            project_id=project.project_id,
            type=kind,
            name=name,
            config=json.dumps(source_config),
        )

        def _insert() -> None:
            with db.session() as conn:
                Repository(conn).add_source(source)

        await run_in_threadpool(_insert)
        logger.info(
            "Source created",
            extra={"source_id": source.id, "project_id": project.project_id, "type": kind.value},
        )
        return JSONResponse(
            {
                "source": {
                    "id": source.id,
                    "name": source.name,
                    "type": kind.value,
                    "status": source.status.value,
                },
                "message": f"Source created. Use POST /v1/sources/{source.id} to process it.",
            },
            status_code=201,
        )

    @app.get("/v1/sources/{source_id}", response_model=SourceDetail)
    def v1_get_source(source_id: str, request: Request):
        project = _authenticate(request.headers.get("authorization"))
        if project is None:
            return _error(401, INVALID_API_KEY)
        source = _owned_source(project, source_id)
        if source is None:
            return _error(404, "Source not found")
        return SourceDetail.of(source)

    @app.delete("/v1/sources/{source_id}")
    def v1_delete_source(source_id: str, request: Request):
        project = _authenticate(request.headers.get("authorization"))
        if project is None:
            return _error(401, INVALID_API_KEY)
        source = _owned_source(project, source_id)
        if source is None:
            return _error(404, "Source not found")
        if source.status == SourceStatus.PROCESSING:
            return _error(409, "Source is being processed; delete it once the run finishes")
        with db.session() as conn:
            Repository(conn).delete_source(source_id)
        logger.info("Source deleted", extra={"source_id": source_id})
        return {"success": True, "message": "Source deleted"}

    @app.post("/v1/sources/{source_id}", response_model=ProcessingResponse)
    def v1_process_source(source_id: str, request: Request):
        project = _authenticate(request.headers.get("authorization"))
        if project is None:
            return _error(401, INVALID_API_KEY)
        if _owned_source(project, source_id) is None:
            return _error(404, "Source not found")
        result = processor.process_source(source_id)
        if result.conflict:
            return _error(409, result.error or "Source is already being processed")
        if result.skipped:
            return _error(409, result.error or "Source cannot be processed")
        if not result.success:
            return JSONResponse(result.to_dict(), status_code=500)
        return ProcessingResponse(**result.to_dict())

    # -----------------------------------------------------------------
    # Source processing
    # -----------------------------------------------------------------

    @app.post("/sources/{source_id}/process", status_code=202, response_model=ScheduledResponse)
    def schedule_source(source_id: str, options: Optional[ProcessOptions] = None):
        with db.session() as conn:
            source = Repository(conn).get_source(source_id)
        if source is None:
            return _error(404, "Source not found")
        if source.status == SourceStatus.PROCESSING:
            return _error(409, "Source is already being processed")
        if source.status != SourceStatus.PENDING:
            return _error(409, f"Source is {source.status.value}; retrain it to process again")

        overrides = options.overrides() if options else None
        future = runner.submit(processor.process_source, source_id, overrides, key=source_id)
        if future is None:
            return _error(409, "Source is already scheduled")
        logger.info("Source scheduled", extra={"source_id": source_id})
        return ScheduledResponse(status="scheduled", source_id=source_id)

    @app.post("/sources/{source_id}/retrain", response_model=ProcessingResponse)
    def retrain_source(source_id: str, options: Optional[ProcessOptions] = None):
        result = processor.retrain_source(source_id, options.overrides() if options else None)
        if not result.success and result.error == "Source not found":
            return _error(404, result.error)
        if result.conflict:
            return _error(409, result.error or "Source is already being processed")
        if not result.success:
            return JSONResponse(result.to_dict(), status_code=500)
        return ProcessingResponse(**result.to_dict())

    @app.post("/sources/{source_id}/links/{link_id}/recrawl", status_code=202)
    def recrawl_link(source_id: str, link_id: str):
        with db.session() as conn:
            repo = Repository(conn)
            source = repo.get_source(source_id)
            link = repo.get_item(link_id)
        if source is None:
            return _error(404, "Source not found")
        if link is None or link.source_id != source_id:
            return _error(404, "Link not found")
        if source.type != SourceType.WEBSITE:
            return _error(400, "Only website sitemap links can be recrawled")
        if source.status == SourceStatus.PROCESSING:
            return _error(409, "Source is already being processed")
        if link.status == "processing":
            return _error(409, "Link is already being recrawled")

        future = runner.submit(processor.recrawl_link, source_id, link_id, key=f"link:{link_id}")
        if future is None:
            return _error(409, "Link is already being recrawled")
        logger.info("Link recrawl scheduled", extra={"source_id": source_id, "link_id": link_id})
        return {"success": True, "message": "Recrawl started"}

    @app.post("/process")
    async def process_pending(request: Request):
        if not _cron_authorized(request):
            return _error(401, "Unauthorized")
        body = await _json_body(request)
        source_id = body.get("source_id")
        if source_id:
            result = await run_in_threadpool(processor.process_source, str(source_id))
            return result.to_dict()
        report = await run_in_threadpool(sweep_pending, processor)
        return {"processed": report.total, "results": report.to_dict()}

    @app.get("/process", response_model=QueueCounts)
    def queue_counts(request: Request):
        if not _cron_authorized(request):
            return _error(401, "Unauthorized")
        with db.session() as conn:
            counts = Repository(conn).count_sources_by_status()
        return QueueCounts(
            pending=counts[SourceStatus.PENDING.value],
            processing=counts[SourceStatus.PROCESSING.value],
        )

    @app.api_route("/cron/auto-retrain", methods=["GET", "POST"])
    def auto_retrain(request: Request):
        if not _cron_authorized(request):
            return _error(401, "Unauthorized")
        report = scheduler.run()
        return {
            "message": "Auto-retrain completed",
            "results": report.to_dict(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/health")
    def health():
        return {"status": "ok", "version": __version__}

    app.state.db = db
    app.state.processor = processor
    app.state.rate_limiter = limiter
    app.state.runner = runner
    return app
