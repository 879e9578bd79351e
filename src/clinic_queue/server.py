from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST

from clinic_queue import __version__
from clinic_queue.api.routes_queue import router as queue_router
from clinic_queue.ops.metrics import render_latest
from clinic_queue.queue.errors import QueueUnavailableError, UnsupportedOperationError
from clinic_queue.queue.manager import QueueManager, build_queue_manager
from clinic_queue.utils.log import logger


def create_app(manager: QueueManager | None = None) -> FastAPI:
    """
    HTTP surface of the queue. The QueueManager lives in `app.state.queue_manager`;
    startup fails when no queue backend is reachable.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        qm = manager or build_queue_manager()
        await qm.initialize()
        app.state.queue_manager = qm
        logger.info("server_started", queue_type=qm.queue_type)
        try:
            yield
        finally:
            app.state.queue_manager = None
            await qm.close()
            logger.info("server_stopped")

    app = FastAPI(title="clinic-queue", version=__version__, lifespan=lifespan)
    app.include_router(queue_router)

    @app.exception_handler(QueueUnavailableError)
    async def _queue_unavailable(_request: Request, ex: QueueUnavailableError):
        return JSONResponse(status_code=503, content={"detail": str(ex)})

    @app.exception_handler(UnsupportedOperationError)
    async def _unsupported(_request: Request, ex: UnsupportedOperationError):
        return JSONResponse(status_code=409, content={"detail": str(ex)})

    @app.get("/healthz")
    async def healthz():
        # Liveness: process is up.
        return {"ok": True}

    @app.get("/readyz")
    async def readyz(request: Request):
        # Readiness: a queue backend is selected and answers a round-trip.
        qm = getattr(request.app.state, "queue_manager", None)
        if qm is None or qm.queue_type is None:
            raise HTTPException(status_code=503, detail="not ready: queue manager not initialized")
        if not await qm.is_available():
            raise HTTPException(status_code=503, detail=f"not ready: {qm.queue_type} queue unavailable")
        return {"ok": True, "queue_type": qm.queue_type}

    @app.get("/metrics")
    async def metrics():
        return Response(content=render_latest(), media_type=CONTENT_TYPE_LATEST)

    return app
