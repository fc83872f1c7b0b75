"""
CeloCred — Contribution Scoring & On-Chain Execution
GitHub activity in, verifiable on-chain reputation out.

Start with:
    uvicorn celocred.main:app --host 0.0.0.0 --port 8000
"""
import logging
import time
import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from celocred import __version__
from celocred.api.contributions import contributions_router, reputation_router
from celocred.chain.ledger import get_ledger_gateway
from celocred.config import settings

structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        getattr(logging, settings.LOG_LEVEL, logging.INFO)
    ),
)
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("celocred_starting",
        version=__version__,
        environment=settings.ENVIRONMENT,
        ledger_backend=settings.LEDGER_BACKEND,
        oracle_enabled=settings.oracle_enabled,
    )

    gateway = get_ledger_gateway()
    if await gateway.verify_setup():
        logger.info("ledger_reachable", backend=gateway.backend.name)
    else:
        logger.warning("ledger_unreachable", backend=gateway.backend.name)

    yield

    logger.info("celocred_stopped")


app = FastAPI(
    title="CeloCred — Contribution Reputation",
    description="Scores GitHub ecosystem contributions and records them on Celo.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-Id", "Retry-After"],
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = str(uuid.uuid4())[:8]
    start = time.time()
    request.state.request_id = request_id
    response = await call_next(request)
    duration_ms = round((time.time() - start) * 1000, 2)
    response.headers["X-Request-Id"] = request_id
    response.headers["X-Response-Time"] = f"{duration_ms}ms"
    if request.url.path != "/v1/contributions/health":
        logger.info("request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=duration_ms,
            request_id=request_id,
        )
    return response


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled_exception",
        path=request.url.path,
        error=str(exc),
        type=type(exc).__name__,
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "Failed to process request.",
            "request_id": getattr(request.state, "request_id", "unknown"),
        },
    )


app.include_router(contributions_router)
app.include_router(reputation_router)
