from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from .routes_accounts import router as accounts_router
from .routes_nodes import router as nodes_router
from .routes_ops import router as ops_router
from .routes_scheduler import router as scheduler_router
from .routes_tasks import router as tasks_router
from .services.errors import (
    ClaimConflict,
    InvalidLineage,
    InvalidTransition,
    NodeInUse,
    NodeNotEligible,
    NotFound,
    OrchestratorError,
    TaskNotEditable,
)
from .settings import get_settings

logger = logging.getLogger("app")

app = FastAPI(title="video-matrix")
settings = get_settings()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_STATUS: dict[type[OrchestratorError], int] = {
    NotFound: 404,
    InvalidTransition: 409,
    ClaimConflict: 409,
    NodeInUse: 409,
    TaskNotEditable: 409,
    InvalidLineage: 409,
    NodeNotEligible: 403,
}


@app.exception_handler(OrchestratorError)
async def orchestrator_error_handler(request: Request, exc: OrchestratorError):
    status_code = ERROR_STATUS.get(type(exc), 400)
    logger.info("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    return JSONResponse({"detail": str(exc), "error": type(exc).__name__}, status_code=status_code)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url)
    return PlainTextResponse("Internal Server Error", status_code=500)


@app.get("/ping")
async def ping():
    return {"status": "ok"}


app.include_router(accounts_router)
app.include_router(nodes_router)
app.include_router(tasks_router)
app.include_router(scheduler_router)
app.include_router(ops_router)


@app.on_event("startup")
async def startup_event():
    """Start scheduler on app startup."""
    from app.services.scheduler import scheduler_service
    scheduler_service.configure(settings.async_database_url)
    scheduler_service.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Stop scheduler on app shutdown."""
    from app.services.scheduler import scheduler_service
    scheduler_service.stop()
