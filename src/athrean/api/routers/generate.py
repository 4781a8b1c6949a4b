from __future__ import annotations

import logging
from typing import Iterator, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from ...domain.generation_models import GenerateRequest, ModelOption
from ...security.rate_limit import RateLimitExceeded, limit_generation, request_identifier
from ...services.model_registry import (
    DEFAULT_BACKEND_MODEL,
    DEFAULT_FREE_MODEL,
    MODEL_REGISTRY,
    ModelConfig,
    ModelTier,
    get_model,
    is_model_free,
)
from ...services.openrouter import BackendNotConfiguredError, build_messages
from ...services.streaming import TransportError, encode_record
from ..errors import ErrorCode, error_response, stream_error_line
from ..state import AppState, get_state

LOG = logging.getLogger("athrean.llm")

router = APIRouter(tags=["generate"])

_STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "X-Accel-Buffering": "no",
}


def _to_option(model: ModelConfig) -> ModelOption:
    return ModelOption(
        id=model.id,
        name=model.name,
        provider=model.provider,
        tier=model.tier.value,
        context_window=model.context_window,
        input_price=model.input_price,
        output_price=model.output_price,
        supports_reasoning=model.supports_reasoning,
        description=model.description,
    )


def _check_rate_limit(request: Request):
    client_host = request.client.host if request.client else None
    identifier = request_identifier(request.headers, client_host)
    try:
        limit_generation(identifier)
    except RateLimitExceeded as exc:
        LOG.info("generate_rate_limited", extra={"identifier": identifier, "retry_after_s": exc.retry_after_seconds})
        return error_response(
            ErrorCode.RATE_LIMITED,
            str(exc),
            details={"retryAfter": exc.retry_after_seconds},
            headers={"Retry-After": str(exc.retry_after_seconds)},
        )
    return None


@router.get("/models", response_model=List[ModelOption])
def list_models(
    tier: Optional[ModelTier] = Query(None, description="Only models in this tier"),
    reasoning: Optional[bool] = Query(None, description="Only models that do (or do not) support reasoning"),
) -> List[ModelOption]:
    models = [m for m in MODEL_REGISTRY if tier is None or m.tier is tier]
    if reasoning is not None:
        models = [m for m in models if m.supports_reasoning is reasoning]
    return [_to_option(m) for m in models]


@router.post("/generate-with-reasoning", response_class=StreamingResponse)
def generate_with_reasoning(
    body: GenerateRequest,
    request: Request,
    state: AppState = Depends(get_state),
):
    limited = _check_rate_limit(request)
    if limited is not None:
        return limited

    model = body.model or DEFAULT_FREE_MODEL
    if get_model(model) is None:
        return error_response(ErrorCode.MODEL_NOT_FOUND, f"Model '{model}' not found.")
    if not state.client.configured:
        return error_response(ErrorCode.SERVICE_UNAVAILABLE, "Generation backend is not configured")

    messages = build_messages(body)
    client = state.client

    def record_stream() -> Iterator[bytes]:
        try:
            for record in client.stream_completion_with_reasoning(messages, model):
                yield encode_record(record)
        except (TransportError, BackendNotConfiguredError) as exc:
            LOG.warning("generate_stream_failed", extra={"route": "generate-with-reasoning", "model": model, "err": str(exc)})
            yield stream_error_line(ErrorCode.STREAM_ERROR, "Failed to generate")

    headers = dict(_STREAM_HEADERS)
    headers["X-Model"] = model
    headers["X-Model-Free"] = "true" if is_model_free(model) else "false"
    return StreamingResponse(record_stream(), media_type="text/plain; charset=utf-8", headers=headers)


@router.post("/generate", response_class=StreamingResponse)
def generate(
    body: GenerateRequest,
    request: Request,
    state: AppState = Depends(get_state),
):
    limited = _check_rate_limit(request)
    if limited is not None:
        return limited
    if not state.client.configured:
        return error_response(ErrorCode.SERVICE_UNAVAILABLE, "Generation backend is not configured")

    model = body.model or DEFAULT_BACKEND_MODEL
    messages = build_messages(body)
    client = state.client

    def token_stream() -> Iterator[bytes]:
        try:
            for token in client.stream_completion(messages, model):
                yield token.encode("utf-8")
        except (TransportError, BackendNotConfiguredError) as exc:
            # Plain-text streams have no error framing; abort the body so clients see a broken stream.
            LOG.warning("generate_stream_failed", extra={"route": "generate", "model": model, "err": str(exc)})
            raise

    return StreamingResponse(token_stream(), media_type="text/plain; charset=utf-8", headers=dict(_STREAM_HEADERS))
