# omintel/main.py
import logging
from typing import Optional

from fastapi import Depends, FastAPI, File, Header, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException

from prometheus_client import generate_latest, CONTENT_TYPE_LATEST, Counter

from omintel.config import settings
from omintel.documents import load_owned_document
from omintel.errors import AuthError, ExtractionError, OMIntelError, QuotaError, UpstreamError
from omintel.identity import Identity, bearer_token
from omintel.jobs import process_pending_jobs
from omintel.models import STATUS_ERROR, STATUS_READY
from omintel.services import Services, build_services
from omintel.sse import END_EVENT_FRAME, SSE_HEADERS, format_event

logger = logging.getLogger("uvicorn.error")

app = FastAPI(title="OM Intel Chat", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Prometheus counters
uploads_total = Counter("omintel_uploads_total", "Total accepted uploads")
extractions_total = Counter("omintel_extractions_total", "Extractions started over HTTP")
extraction_failures_total = Counter("omintel_extraction_failures_total", "Extraction failures over HTTP")
chat_turns_total = Counter("omintel_chat_turns_total", "Chat turns started")
upstream_errors_total = Counter("omintel_upstream_errors_total", "Upstream (LLM / parser) errors")


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: Optional[str] = None
    thread_id: Optional[str] = Field(None, alias="threadId")
    document_id: Optional[str] = Field(None, alias="documentId")


class DocumentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    document_id: Optional[str] = Field(None, alias="documentId")


@app.on_event("startup")
async def startup():
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(settings)
        await app.state.services.db.init_models()
    logger.info("OM Intel Chat started (storage=%s, dispatch=%s)",
                settings.storage_backend, settings.extraction_dispatch)


@app.on_event("shutdown")
async def shutdown():
    services = getattr(app.state, "services", None)
    if services is not None:
        await services.close()
        app.state.services = None


# ---------- dependencies ----------

def get_services(request: Request) -> Services:
    return request.app.state.services


async def optional_identity(request: Request, services: Services = Depends(get_services)) -> Optional[Identity]:
    # EventSource cannot send headers, so ?token= is accepted as well
    token = bearer_token(request.headers.get("authorization")) or request.query_params.get("token")
    return await services.identity.get_user(token)


async def require_identity(identity: Optional[Identity] = Depends(optional_identity)) -> Identity:
    if identity is None:
        raise AuthError("Unauthorized")
    return identity


# ---------- error rendering ----------

@app.exception_handler(OMIntelError)
def omintel_exception_handler(request: Request, exc: OMIntelError):
    if isinstance(exc, UpstreamError):
        upstream_errors_total.inc()
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


@app.exception_handler(HTTPException)
def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
def validation_exception_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    return JSONResponse({"error": first.get("msg", "Invalid request")}, status_code=400)


# ---------- routes ----------

@app.get("/healthz")
async def healthz(services: Services = Depends(get_services)):
    ok = {"database": False, "redis": False}
    try:
        ok["database"] = await services.db.ping()
    except Exception:
        logger.exception("Database health check failed")
    try:
        await services.notifier.redis.ping()
        ok["redis"] = True
    except Exception:
        logger.exception("Redis ping failed")
    status = 200 if all(ok.values()) else 503
    return JSONResponse(ok, status_code=status)


@app.get("/metrics")
def metrics():
    if not settings.prometheus_enabled:
        raise HTTPException(status_code=404, detail="Not Found")
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.post("/chat-stream")
async def chat_stream(body: ChatRequest, request: Request,
                      identity: Optional[Identity] = Depends(optional_identity),
                      services: Services = Depends(get_services)):
    limiter_key = identity.id if identity else (request.client.host if request.client else "unknown")
    config = services.settings
    if not await services.rate_limiter.allow_request(
        f"chat:{limiter_key}", limit=config.chat_rate_limit, period=config.chat_rate_period
    ):
        raise QuotaError("Too many requests")

    turn = await services.relay.start_turn(identity, body.message, body.thread_id, body.document_id)
    chat_turns_total.inc()
    return StreamingResponse(services.relay.stream(turn), media_type="text/event-stream", headers=SSE_HEADERS)


@app.post("/extract-pdf-text")
async def extract_pdf_text(body: DocumentRequest, identity: Identity = Depends(require_identity),
                           services: Services = Depends(get_services)):
    extractions_total.inc()
    try:
        return await services.extraction.run(body.document_id, identity)
    except ExtractionError:
        extraction_failures_total.inc()
        raise


@app.post("/extract-pdf-stream")
async def extract_pdf_stream(body: DocumentRequest, identity: Identity = Depends(require_identity),
                             services: Services = Depends(get_services)):
    doc = await load_owned_document(services.store, body.document_id, identity)
    extractions_total.inc()
    return StreamingResponse(services.extraction.stream(doc), media_type="text/event-stream", headers=SSE_HEADERS)


@app.post("/generate-snapshot")
async def generate_snapshot(body: DocumentRequest, identity: Identity = Depends(require_identity),
                            services: Services = Depends(get_services)):
    return await services.snapshots.generate(identity, body.document_id)


@app.post("/upload-pdf")
async def upload_pdf(file: Optional[UploadFile] = File(None), identity: Identity = Depends(require_identity),
                     services: Services = Depends(get_services)):
    data = None
    if file is not None:
        # one byte past the cap is enough to reject oversize files
        data = await file.read(services.settings.max_upload_size + 1)
    result = await services.uploads.upload(
        identity,
        file.filename if file is not None else None,
        file.content_type if file is not None else None,
        data,
    )
    uploads_total.inc()
    return {"success": True, "document": result.document.to_dict(), "message": result.message}


@app.delete("/documents/{document_id}")
async def delete_document(document_id: str, identity: Identity = Depends(require_identity),
                          services: Services = Depends(get_services)):
    await services.uploads.delete(identity, document_id)
    return {"success": True}


@app.get("/documents/{document_id}/events")
async def document_events(document_id: str, identity: Identity = Depends(require_identity),
                          services: Services = Depends(get_services)):
    await load_owned_document(services.store, document_id, identity)

    async def event_generator():
        subscription = await services.notifier.subscribe(identity.id)
        async with subscription:
            # read after subscribing so no transition falls between the two
            doc = await services.store.get_document(document_id)
            if doc is None:
                yield format_event({"type": "deleted", "documentId": document_id})
                return
            yield format_event({"type": "status", "document": doc.to_dict()})
            if doc.status in (STATUS_READY, STATUS_ERROR):
                yield END_EVENT_FRAME
                return
            async for change in subscription:
                record = change.get("record") or {}
                if record.get("id") != document_id:
                    continue
                if change.get("type") == "DELETE":
                    yield format_event({"type": "deleted", "documentId": document_id})
                    return
                yield format_event({"type": "status", "document": record})
                if record.get("status") in (STATUS_READY, STATUS_ERROR):
                    yield END_EVENT_FRAME
                    return

    return StreamingResponse(event_generator(), media_type="text/event-stream", headers=SSE_HEADERS)


@app.post("/process-extraction-jobs")
async def process_extraction_jobs(x_cron_secret: Optional[str] = Header(None),
                                  services: Services = Depends(get_services)):
    config = services.settings
    if config.cron_secret and x_cron_secret != config.cron_secret:
        raise AuthError("Unauthorized")
    return await process_pending_jobs(
        services.store,
        services.extraction,
        batch_size=config.job_batch_size,
        concurrency=config.job_concurrency,
    )
