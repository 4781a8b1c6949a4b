from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from threading import Lock
from typing import Mapping, Optional

from fastapi import Request

from ..infrastructure.project_repository import ProjectRepository, build_project_repository
from ..infrastructure.session_store import SessionRegistry
from ..infrastructure.ttl_cache import TTLCache
from ..services.generation import HttpStreamSource, StreamSource
from ..services.openrouter import InProcessStreamSource, OpenRouterClient
from ..services.preview import InMemoryPreview

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL_SECONDS = 1800
DEFAULT_SESSION_MAX_ENTRIES = 5000


def _env_number(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("invalid_env_value name=%s value=%s", name, raw)
        return default
    return value if value > 0 else default


@dataclass
class AppState:
    """Process-wide collaborators created on startup and released on shutdown."""

    session_cache: TTLCache
    preview_cache: TTLCache
    sessions: SessionRegistry
    projects: ProjectRepository
    client: OpenRouterClient
    source: StreamSource
    executor: ThreadPoolExecutor
    _preview_lock: Lock = field(default_factory=Lock)

    def preview_for(self, session_id: str) -> InMemoryPreview:
        with self._preview_lock:
            preview = self.preview_cache.get(session_id)
            if preview is None:
                preview = InMemoryPreview()
                self.preview_cache.set(session_id, preview)
            return preview

    def drop_session(self, session_id: str) -> bool:
        self.preview_cache.delete(session_id)
        return self.sessions.delete(session_id)

    def close(self) -> None:
        self.executor.shutdown(wait=False)
        self.session_cache.dispose()
        self.preview_cache.dispose()


def build_app_state(env: Optional[Mapping[str, str]] = None) -> AppState:
    env = env if env is not None else os.environ
    ttl = _env_number(env, "ATHREAN_SESSION_TTL_SECONDS", DEFAULT_SESSION_TTL_SECONDS)
    max_entries = _env_number(env, "ATHREAN_SESSION_MAX_ENTRIES", DEFAULT_SESSION_MAX_ENTRIES)
    session_cache: TTLCache = TTLCache(ttl_seconds=ttl, max_entries=max_entries)
    preview_cache: TTLCache = TTLCache(ttl_seconds=ttl, max_entries=max_entries)
    session_cache.start()
    preview_cache.start()

    client = OpenRouterClient()
    backend_url = env.get("ATHREAN_GENERATION_BACKEND_URL")
    source: StreamSource = HttpStreamSource(backend_url) if backend_url else InProcessStreamSource(client)
    logger.info(
        "app_state_ready",
        extra={"session_ttl_s": ttl, "backend": backend_url or "in-process", "llm_configured": client.configured},
    )
    return AppState(
        session_cache=session_cache,
        preview_cache=preview_cache,
        sessions=SessionRegistry(session_cache),
        projects=build_project_repository(env),
        client=client,
        source=source,
        executor=ThreadPoolExecutor(max_workers=4, thread_name_prefix="athrean-persist"),
    )


def get_state(request: Request) -> AppState:
    return request.app.state.athrean
