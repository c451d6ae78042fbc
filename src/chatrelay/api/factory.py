"""FastAPI application factory with role-based route mounting."""

import os
from contextlib import asynccontextmanager
from typing import Literal

from fastapi import FastAPI, Request, Response

from chatrelay.domain.pipeline import MessagePipeline
from chatrelay.infra.settings import PipelineSettings
from chatrelay.observability.correlation import (
    CORRELATION_ID_HEADER,
    generate_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)
from chatrelay.observability.logging import get_logger
from chatrelay.observability.redaction import safe_log_context
from chatrelay.whatsapp.meta_sender import MetaSender

from .routers import public
from .routes import automation, chats, realtime, send, webhooks_whatsapp_meta

AppRole = Literal["public", "ingest"]

logger = get_logger(__name__)


def create_app(
    pipeline: MessagePipeline | None = None,
    role: AppRole | None = None,
    sender: MetaSender | None = None,
) -> FastAPI:
    """Create FastAPI app with routes based on APP_ROLE.

    Args:
        pipeline: Pre-built pipeline (tests). If None, one is wired from
                  environment settings.
        role: Explicit role override. If None, reads from APP_ROLE env var.
              "public" (default) mounts ingestion plus dashboard routes;
              "ingest" mounts only health and ingestion routes.
        sender: Graph API sender for /api/send. If None, one is built from
                META_PHONE_NUMBER_ID and META_ACCESS_TOKEN when both are set.

    Returns:
        Configured FastAPI application.
    """
    if role is None:
        role = os.environ.get("APP_ROLE", "public")  # type: ignore[assignment]
    if pipeline is None:
        pipeline = MessagePipeline.from_settings(PipelineSettings.from_env())
    if sender is None:
        sender = MetaSender.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        pipeline.start()
        logger.info(
            "pipeline started",
            extra={"extra_fields": safe_log_context(store=pipeline.store_kind, role=role)},
        )
        try:
            yield
        finally:
            pipeline.close()

    app = FastAPI(
        title="chatrelay",
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline
    app.state.sender = sender

    # Correlation ID middleware
    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next) -> Response:
        cid = request.headers.get(CORRELATION_ID_HEADER) or generate_correlation_id()
        token = set_correlation_id(cid)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = cid
            return response
        finally:
            reset_correlation_id(token)

    app.include_router(public.router)
    app.include_router(webhooks_whatsapp_meta.router)
    app.include_router(automation.router)

    # Dashboard surface only for the public role
    if role == "public":
        app.include_router(chats.router)
        app.include_router(send.router)
        app.include_router(realtime.router)

    return app
