import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import FastAPI, Response, Request, Depends, File, Form, Header, HTTPException, Query, UploadFile, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from chat_import.config import settings
from chat_import.embeddings import EmbeddingService, create_embedding_service
from chat_import.errors import ChatImportError
from chat_import.logging_utils import setup_logging, RequestLoggingMiddleware, log_request_data
from chat_import.metrics import (
    get_metrics,
    get_metrics_content_type,
    record_import_outcome,
    record_ingest_outcome,
)
from chat_import.parser import make_group_id
from chat_import.pipeline import import_chat_export
from chat_import.schemas import (
    LIVE_SOURCE,
    ErrorResponse,
    HealthResponse,
    ImportStats,
    IngestRequest,
    IngestResponse,
    MessageResponse,
    MessagesListResponse,
    StatsResponse,
)
from chat_import.storage import init_db, check_db_health, get_db, create_message, get_messages, get_stats, message_exists
from chat_import.uploads import ObjectStore, create_object_store
from chat_import.utils import verify_hmac_signature


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, build the storage and embedding collaborators
    - Shutdown: close the embedding HTTP client
    """
    init_db()
    app.state.object_store = create_object_store()
    app.state.embedding_service = create_embedding_service()
    yield
    close = getattr(app.state.embedding_service, "aclose", None)
    if close is not None:
        await close()


app = FastAPI(
    title="Chat Import API",
    description="Imports exported chat archives into a searchable message store",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


def get_object_store(request: Request) -> Optional[ObjectStore]:
    return getattr(request.app.state, "object_store", None)


def get_embedding_service(request: Request) -> Optional[EmbeddingService]:
    return getattr(request.app.state, "embedding_service", None)


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the
    schema is applied, otherwise 503.
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Import Route
# =============================================================================

@app.post(
    "/imports",
    response_model=ImportStats,
    responses={
        400: {"model": ErrorResponse, "description": "Missing input or empty transcript"},
        422: {"model": ErrorResponse, "description": "Unreadable archive or no parseable messages"},
        504: {"model": ErrorResponse, "description": "Import timed out"},
    }
)
async def import_archive(
    request: Request,
    file: Annotated[Optional[UploadFile], File(description="Chat export (.txt or .zip)")] = None,
    group_name: Annotated[str, Form(description="Group/chat name")] = "",
    limit: Annotated[Optional[int], Form(ge=1, description="Import only the most recent N messages")] = None,
    db: Session = Depends(get_db),
    object_store: Optional[ObjectStore] = Depends(get_object_store),
    embedding_service: Optional[EmbeddingService] = Depends(get_embedding_service),
) -> ImportStats:
    """
    Import an exported chat archive.

    Form fields:
        - file: plain-text transcript or zip bundle with media
        - group_name: required group/chat name
        - limit: optional, keep only the most recent N messages

    Re-importing the same archive is safe: already-stored messages are
    reported as skipped_duplicates and nothing is written twice.
    """
    data = await file.read() if file is not None else None
    filename = file.filename if file is not None else None
    logger.info(f"Import request received: file={filename}, group={group_name!r}, limit={limit}")
    if group_name.strip():
        log_request_data(request, group_id=make_group_id(group_name.strip()))

    try:
        stats = await asyncio.wait_for(
            import_chat_export(
                db=db,
                data=data,
                filename=filename,
                group_name=group_name,
                limit=limit,
                object_store=object_store,
                embedding_service=embedding_service,
            ),
            timeout=settings.IMPORT_TIMEOUT_SECONDS,
        )
    except ChatImportError as e:
        logger.error(f"Import rejected: {e.detail}")
        record_import_outcome("rejected")
        log_request_data(request, result="rejected")
        raise HTTPException(status_code=e.status_code, detail=e.detail)
    except asyncio.TimeoutError:
        logger.error(f"Import timed out after {settings.IMPORT_TIMEOUT_SECONDS}s")
        record_import_outcome("timeout")
        log_request_data(request, result="timeout")
        raise HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail="Import timed out; already written batches are kept and a re-run resumes safely",
        )

    log_request_data(
        request,
        result="imported",
        parsed=stats.parsed,
        inserted=stats.inserted,
        skipped_duplicates=stats.skipped_duplicates,
        errors=stats.errors,
    )
    return stats


# =============================================================================
# Single-Message Ingest Route
# =============================================================================

@app.post(
    "/ingest",
    response_model=IngestResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        409: {"model": IngestResponse, "description": "Duplicate message"},
        422: {"description": "Validation error"},
    }
)
async def ingest(
    request: Request,
    response: Response,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
    db: Session = Depends(get_db),
    embedding_service: Optional[EmbeddingService] = Depends(get_embedding_service),
) -> IngestResponse:
    """
    Store one live message pushed by a chat scraper.

    - When INGEST_SECRET is set, X-Signature must be the hex HMAC-SHA256
      of the raw body
    - Duplicate message_id returns 409 without writing
    - Embedding failures store the message without a vector
    """
    raw_body = await request.body()

    if settings.INGEST_SECRET:
        if not x_signature or not verify_hmac_signature(raw_body, x_signature, settings.INGEST_SECRET):
            logger.error("Missing or invalid X-Signature header")
            record_ingest_outcome("invalid_signature")
            log_request_data(request, result="invalid_signature", dup=False)
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="invalid signature"
            )

    try:
        payload = IngestRequest.model_validate(json.loads(raw_body))
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON: {e}")
        record_ingest_outcome("validation_error")
        log_request_data(request, result="validation_error", dup=False)
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid JSON: {str(e)}"
        )
    except ValidationError as e:
        logger.error(f"Validation error: {e}")
        record_ingest_outcome("validation_error")
        log_request_data(request, result="validation_error", dup=False)
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e)
        )

    if message_exists(db, payload.message_id):
        record_ingest_outcome("duplicate")
        log_request_data(request, message_id=payload.message_id, result="duplicate", dup=True)
        response.status_code = status.HTTP_409_CONFLICT
        return IngestResponse(status="duplicate")

    embedding = None
    if embedding_service is not None:
        try:
            embedding = (await embedding_service.embed_batch([payload.body]))[0]
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Embedding error, storing without embedding: {e}")

    success, is_duplicate = create_message(db, {
        **payload.model_dump(),
        "has_media": False,
        "source": LIVE_SOURCE,
        "embedding": embedding,
    })

    if not success:
        record_ingest_outcome("error")
        log_request_data(request, message_id=payload.message_id, result="error", dup=False)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to store message"
        )

    result = "duplicate" if is_duplicate else "created"
    record_ingest_outcome(result)
    log_request_data(request, message_id=payload.message_id, result=result, dup=is_duplicate)
    if is_duplicate:
        response.status_code = status.HTTP_409_CONFLICT
        return IngestResponse(status="duplicate")
    return IngestResponse(status="ok")


# =============================================================================
# Messages Route
# =============================================================================

@app.get("/messages", response_model=MessagesListResponse)
async def list_messages(
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of messages to return")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of messages to skip")] = 0,
    group_id: Annotated[str | None, Query(description="Filter by group id (exact match)")] = None,
    sender: Annotated[str | None, Query(description="Filter by sender name (exact match)")] = None,
    since: Annotated[str | None, Query(description="Filter messages with timestamp >= since (ISO-8601 UTC)")] = None,
    q: Annotated[str | None, Query(description="Free-text search in message body (case-insensitive)")] = None,
    db: Session = Depends(get_db)
) -> MessagesListResponse:
    """
    List stored messages with pagination and filtering, ordered by
    timestamp then message_id.
    """
    messages, total = get_messages(
        db=db,
        limit=limit,
        offset=offset,
        group_id=group_id,
        sender=sender,
        since=since,
        q=q
    )

    data = [
        MessageResponse(
            message_id=msg.message_id,
            group_id=msg.group_id,
            group_name=msg.group_name,
            sender_jid=msg.sender_jid,
            sender_name=msg.sender_name,
            body=msg.body,
            timestamp=msg.timestamp,
            has_media=msg.has_media,
            media_type=msg.media_type,
            media_url=msg.media_url,
            source=msg.source,
            has_embedding=msg.embedding is not None,
        )
        for msg in messages
    ]

    logger.info(f"GET /messages: returned {len(data)} of {total} messages (limit={limit}, offset={offset})")

    return MessagesListResponse(data=data, total=total, limit=limit, offset=offset)


# =============================================================================
# Stats Route
# =============================================================================

@app.get("/stats", response_model=StatsResponse)
async def get_statistics(
    group_id: Annotated[str | None, Query(description="Scope statistics to one group")] = None,
    db: Session = Depends(get_db)
) -> StatsResponse:
    """Message-level analytics, optionally for one group."""
    return StatsResponse(**get_stats(db, group_id=group_id))


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics in text exposition format."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
