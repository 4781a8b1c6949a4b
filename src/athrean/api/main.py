from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import UTC, datetime

from dotenv import load_dotenv
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from ..observability.metrics import metrics_middleware_factory
from .routers.generate import router as generate_router
from .routers.sessions import router as sessions_router
from .state import build_app_state

load_dotenv()  # Load environment variables from .env if present (OPENROUTER_API_KEY, etc.)

API_NAME = "Athrean Generation API"
API_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    state = build_app_state()
    app.state.athrean = state
    try:
        yield
    finally:
        state.close()


app = FastAPI(title=API_NAME, version=API_VERSION, lifespan=lifespan)

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

app.include_router(generate_router)
app.include_router(sessions_router)

# Also expose the same routers under /api, which is where browser clients call them
app.include_router(generate_router, prefix="/api")
app.include_router(sessions_router, prefix="/api")

# CORS (for the Next.js dev server on localhost:3000)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Model", "X-Model-Free", "Retry-After"],
)


def _health(request: Request) -> dict:
    state = getattr(request.app.state, "athrean", None)
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
            "llm": "configured" if state is not None and state.client.configured else "unconfigured",
            "sessions": state.sessions.count() if state is not None else 0,
        },
    }


@app.get("/")
def root():
    return {"name": API_NAME, "version": API_VERSION}


@app.get("/health")
def health(request: Request):
    return _health(request)


@app.get("/metrics")
def metrics() -> Response:
    # Expose Prometheus metrics
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


@app.get("/api/health")
def api_health(request: Request):
    return _health(request)


@app.get("/api/metrics")
def api_metrics() -> Response:
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
