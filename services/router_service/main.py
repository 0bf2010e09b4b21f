"""
Router Service -- HTTP facade over the InferenceRouter.

Endpoints:
  POST /v1/completions         completion (JSON) or Server-Sent Events when stream=true
  POST /v1/embeddings          index-aligned embeddings
  GET  /v1/providers/health    health snapshot per provider
  GET  /health, GET /metrics

Errors leave the service as InferenceError.to_public() bodies; provider
ids, candidate order and credentials never appear in a response. A client
that disconnects mid-stream cancels the in-flight provider call.
"""

from __future__ import annotations

import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Body, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from inference_router.audit.sink import AuditSink
from inference_router.audit.storage import (
    AuditStorage,
    InMemoryAuditStorage,
    RedisStreamAuditStorage,
    SqlAuditStorage,
)
from inference_router.config import RouterConfig
from inference_router.contracts.models import CompletionChunk
from inference_router.credentials import EnvSecretProvider
from inference_router.errors import ErrorKind, InferenceError
from inference_router.logging.logger import setup_logging
from inference_router.observability.metrics import metrics_response
from inference_router.router import InferenceRouter
from services.router_service.config import RouterServiceConfig

SERVICE_NAME = "router_service"
router: InferenceRouter | None = None
cfg: RouterServiceConfig | None = None

_STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.SECURITY: 403,
    ErrorKind.NO_PROVIDER: 503,
    ErrorKind.PROVIDER: 502,
    ErrorKind.EXHAUSTED: 502,
    ErrorKind.CANCELLED: 499,
    ErrorKind.AUDIT: 500,
}


async def _build_storage(config: RouterServiceConfig) -> AuditStorage:
    if config.audit_backend == "sql":
        storage = SqlAuditStorage(config.database_url)
        await storage.initialize()
        return storage
    if config.audit_backend == "redis":
        return RedisStreamAuditStorage(config.redis_url, stream=config.audit_stream)
    return InMemoryAuditStorage()


@asynccontextmanager
async def lifespan(application: FastAPI):
    global router, cfg
    cfg = RouterServiceConfig.from_env()
    logger = setup_logging(SERVICE_NAME, cfg.log_level)

    router_config = RouterConfig.from_env()
    storage = await _build_storage(cfg)
    router = InferenceRouter.from_config(
        router_config,
        EnvSecretProvider(cfg.secrets_prefix),
        audit_sink=AuditSink(storage),
    )
    await router.start()
    logger.info(
        "Router Service ready (policy=%s, audit=%s)",
        router_config.policy.kind,
        cfg.audit_backend,
    )
    yield

    logger.info("Shutting down")
    if router:
        await router.shutdown()


app = FastAPI(
    title="Inference Router",
    version="0.1.0",
    description="Routes inference requests across cloud and local providers",
    lifespan=lifespan,
)
logger = logging.getLogger(SERVICE_NAME)


def _get_router() -> InferenceRouter:
    if router is None:
        raise HTTPException(status_code=503, detail="Router not initialized")
    return router


@app.exception_handler(InferenceError)
async def inference_error_handler(request: Request, exc: InferenceError):
    return JSONResponse(
        status_code=_STATUS_BY_KIND.get(exc.kind, 500),
        content=exc.to_public(),
    )


# ---------------------------------------------------------------------------
# Health & metrics
# ---------------------------------------------------------------------------

@app.get("/health")
async def health():
    return {"status": "ok", "service": SERVICE_NAME}


@app.get("/metrics")
async def metrics():
    return metrics_response()


@app.get("/v1/providers/health")
async def providers_health():
    r = _get_router()
    return {
        pid: status.model_dump(mode="json")
        for pid, status in r.get_health().items()
    }


# ---------------------------------------------------------------------------
# Inference
# ---------------------------------------------------------------------------

def _sse(event: str | None, data: Any) -> str:
    prefix = f"event: {event}\n" if event else ""
    return f"{prefix}data: {json.dumps(data)}\n\n"


def _chunk_payload(chunk: CompletionChunk, correlation_id: str) -> dict[str, Any]:
    payload = chunk.model_dump(mode="json", exclude={"provider_id"})
    payload["correlation_id"] = correlation_id
    return payload


@app.post("/v1/completions")
async def completions(
    payload: dict[str, Any] = Body(...),
    x_correlation_id: str | None = Header(default=None),
):
    r = _get_router()
    correlation_id = payload.get("correlation_id") or x_correlation_id or str(uuid.uuid4())
    payload = {**payload, "correlation_id": correlation_id}

    if not payload.get("stream"):
        response = await r.route(payload)
        return response.model_dump(mode="json", exclude={"provider_id"})

    chunks = r.route_streaming(payload)
    # Pull the first chunk eagerly so routing errors become proper HTTP statuses.
    try:
        first = await chunks.__anext__()
    except StopAsyncIteration:
        first = None

    async def events():
        try:
            if first is not None:
                yield _sse(None, _chunk_payload(first, correlation_id))
            async for chunk in chunks:
                yield _sse(None, _chunk_payload(chunk, correlation_id))
            yield "data: [DONE]\n\n"
        except InferenceError as exc:
            logger.warning(
                "Stream aborted: %s",
                exc.kind.value,
                extra={"_extra": {"correlation_id": exc.correlation_id}},
            )
            yield _sse("error", exc.to_public())
        finally:
            await chunks.aclose()

    return StreamingResponse(events(), media_type="text/event-stream")


class EmbeddingsRequest(BaseModel):
    input: list[str]
    correlation_id: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


@app.post("/v1/embeddings")
async def embeddings(req: EmbeddingsRequest, x_correlation_id: str | None = Header(default=None)):
    r = _get_router()
    correlation_id = req.correlation_id or x_correlation_id or str(uuid.uuid4())
    vectors = await r.embed(req.input, correlation_id=correlation_id, metadata=req.metadata)
    return {
        "data": [{"index": e.index, "embedding": list(e.vector)} for e in vectors],
        "correlation_id": correlation_id,
    }
