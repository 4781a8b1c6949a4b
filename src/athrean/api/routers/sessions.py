from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Response, status

from ...domain.generation_models import (
    BaseComponentUpdate,
    Checkpoint,
    CheckpointCreate,
    GenerationOutcome,
    PreviewState,
    SessionCreate,
    SessionGenerate,
    SessionSnapshot,
)
from ...infrastructure.session_store import (
    CheckpointError,
    GenerationInProgressError,
    GenerationSession,
    SessionStateError,
)
from ...services.generation import GenerationOrchestrator
from ...services.model_registry import get_model
from ..state import AppState, get_state

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])


def _get_session(state: AppState, session_id: str) -> GenerationSession:
    session = state.sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@router.post("", response_model=SessionSnapshot, status_code=status.HTTP_201_CREATED)
def create_session(req: SessionCreate, state: AppState = Depends(get_state)) -> SessionSnapshot:
    if req.model and get_model(req.model) is None:
        raise HTTPException(status_code=404, detail=f"Model '{req.model}' not found")
    session = state.sessions.create(project_name=req.project_name, base_code=req.base_code, model=req.model)
    if req.base_code:
        state.preview_for(session.session_id).publish(req.base_code)
    return session.snapshot()


@router.get("/{session_id}", response_model=SessionSnapshot)
def get_session(session_id: str, state: AppState = Depends(get_state)) -> SessionSnapshot:
    return _get_session(state, session_id).snapshot()


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_session(session_id: str, state: AppState = Depends(get_state)) -> Response:
    if not state.drop_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{session_id}/generate", response_model=GenerationOutcome)
def generate_in_session(
    session_id: str,
    req: SessionGenerate,
    state: AppState = Depends(get_state),
) -> GenerationOutcome:
    session = _get_session(state, session_id)
    if session.is_generating:
        raise HTTPException(status_code=409, detail="Generation already in progress")

    orchestrator = GenerationOrchestrator(
        session,
        state.source,
        projects=state.projects,
        preview=state.preview_for(session_id),
        executor=state.executor,
        runs=state.sessions,
    )
    result = orchestrator.generate(req.prompt, use_reasoning=req.use_reasoning)

    if result.status == "rejected":
        raise HTTPException(status_code=409, detail="Generation already in progress")
    return GenerationOutcome(
        status=result.status,
        generated_code=result.generated_code,
        message=result.message,
        usage=result.usage,
        error=result.error,
        session=session.snapshot(),
    )


@router.post("/{session_id}/stop")
def stop_generation(session_id: str, state: AppState = Depends(get_state)) -> dict:
    _get_session(state, session_id)
    return {"stopped": state.sessions.stop(session_id)}


@router.post("/{session_id}/checkpoints", response_model=Checkpoint, status_code=status.HTTP_201_CREATED)
def create_checkpoint(session_id: str, req: CheckpointCreate, state: AppState = Depends(get_state)) -> Checkpoint:
    session = _get_session(state, session_id)
    try:
        return session.add_checkpoint(req.label)
    except SessionStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@router.post("/{session_id}/checkpoints/{checkpoint_id}/restore", response_model=SessionSnapshot)
def restore_checkpoint(session_id: str, checkpoint_id: str, state: AppState = Depends(get_state)) -> SessionSnapshot:
    session = _get_session(state, session_id)
    if session.find_checkpoint(checkpoint_id) is None:
        raise HTTPException(status_code=404, detail="Checkpoint not found")
    try:
        checkpoint = session.restore_checkpoint(checkpoint_id)
    except (GenerationInProgressError, CheckpointError) as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if checkpoint.generated_code:
        state.preview_for(session_id).publish(checkpoint.generated_code)
    return session.snapshot()


@router.delete("/{session_id}/checkpoints", status_code=status.HTTP_204_NO_CONTENT)
def clear_checkpoints(session_id: str, state: AppState = Depends(get_state)) -> Response:
    _get_session(state, session_id).clear_checkpoints()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{session_id}/preview", response_model=PreviewState)
def get_preview(session_id: str, state: AppState = Depends(get_state)) -> PreviewState:
    _get_session(state, session_id)
    return state.preview_for(session_id).state()


@router.put("/{session_id}/base-component", response_model=SessionSnapshot)
def set_base_component(session_id: str, req: BaseComponentUpdate, state: AppState = Depends(get_state)) -> SessionSnapshot:
    session = _get_session(state, session_id)
    session.set_base_component(req.code, req.name)
    if req.code and not session.generated_code:
        state.preview_for(session_id).publish(req.code)
    return session.snapshot()
