from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from dotenv import load_dotenv
import logging
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from .routers.curricula import router as curricula_router
from .routers.conversations import router as conversations_router
from .routers.realtime import router as realtime_router
from ..domain.errors import TutorError
from ..observability.metrics import metrics_middleware_factory
from ..services.conversation import get_orchestrator

load_dotenv()  # OPENAI_API_KEY, TUTOR_MODEL_PROVIDER, etc. from .env if present


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    # Let detached follow-up synthesis finish before the loop closes.
    await get_orchestrator().drain_follow_ups()


app = FastAPI(title="Tutoring Core API", version="0.1.0", lifespan=lifespan)

logging.basicConfig(level=logging.INFO)

STATUS_BY_CODE = {
    "validation_error": 422,
    "quota_exceeded": 429,
    "generation_failure": 502,
    "not_found": 404,
}

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

# Routers
app.include_router(curricula_router)
app.include_router(conversations_router)
app.include_router(realtime_router)

# Same routers under /api
app.include_router(curricula_router, prefix="/api")
app.include_router(conversations_router, prefix="/api")
app.include_router(realtime_router, prefix="/api")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TutorError)
async def tutor_error_handler(_request: Request, exc: TutorError) -> JSONResponse:
    return JSONResponse(
        status_code=STATUS_BY_CODE.get(exc.code, 400),
        content={"detail": exc.message, "code": exc.code},
    )


def _health() -> dict:
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
            "store": "in-memory",
        },
    }


@app.get("/")
def root():
    return {"name": "Tutoring Core API", "version": "0.1.0"}


@app.get("/health")
def health():
    return _health()


@app.get("/metrics")
def metrics() -> Response:
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


@app.get("/api")
def api_root():
    return root()


@app.get("/api/health")
def api_health():
    return _health()


@app.get("/api/metrics")
def api_metrics() -> Response:
    return metrics()
