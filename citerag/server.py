from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional
from uuid import uuid4

import httpx
from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from loguru import logger

from citerag.config import Settings
from citerag.logging_config import setup_logging
from citerag.metrics import get_content_type, get_metrics
from citerag.pipeline import AnswerPipeline

ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Build the API around one Settings instance and one pipeline."""
    settings = settings or Settings.from_env()
    pipeline = AnswerPipeline(settings, transport=transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Configure logging and report configuration problems once at startup."""
        setup_logging(settings)
        missing = settings.missing_required()
        if missing:
            logger.error(f"Missing required configuration: {missing}; /api/chat will answer 500 until set")
        else:
            logger.info(
                f"citerag ready: model={settings.generation_model}, "
                f"retrieval hosts={settings.retrieval_base_urls()}"
            )
        yield

    app = FastAPI(default_response_class=ORJSONResponse, lifespan=lifespan)
    app.state.settings = settings
    app.state.pipeline = pipeline

    if settings.cors_allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_allowed_origins),
            allow_methods=["POST", "OPTIONS"],
            allow_headers=["Content-Type"],
        )
        logger.info(f"CORS origins: {list(settings.cors_allowed_origins)}")

    # Request logging middleware for observability
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all HTTP requests with timing and status information."""
        request_id = request.headers.get("x-request-id") or str(uuid4())
        request.state.request_id = request_id
        start_time = time.time()

        response = await call_next(request)

        latency_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} ({latency_ms}ms)"
        )
        response.headers["X-Request-ID"] = request_id
        return response

    @app.api_route("/api/chat", methods=ALL_METHODS)
    async def chat(request: Request) -> Response:
        """Query in, cited answer out."""
        raw_body = await request.body() if request.method == "POST" else b""
        result = await pipeline.handle(
            request.method,
            raw_body,
            request_id=getattr(request.state, "request_id", None),
        )
        if result.payload is None:
            return Response(status_code=result.status, headers=result.headers)
        return ORJSONResponse(result.payload, status_code=result.status, headers=result.headers)

    @app.get("/api/debug")
    def debug() -> Dict[str, Any]:
        """Masked configuration snapshot (disabled unless DEBUG_ENDPOINT_ENABLED=true)."""
        if not settings.debug_endpoint_enabled:
            raise HTTPException(status_code=404, detail="Not Found")
        return settings.masked_summary()

    @app.get("/healthz")
    def healthz() -> Dict[str, Any]:
        missing = settings.missing_required()
        return {"ok": True, "configured": not missing, "missing": missing}

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(content=get_metrics(), media_type=get_content_type())

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=app.state.settings.api_host, port=app.state.settings.api_port)
