from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from pathlib import Path
from threading import RLock
from typing import Dict, List, Mapping, Optional, Protocol

from ..domain.project_models import SavedProject, SaveGenerationRequest
from ..services.preview import build_preview_files

logger = logging.getLogger(__name__)

PROJECT_MARKER = "__athrean_project"


def encode_project_code(code: str) -> str:
    """Store generated code as the preview file map, tagged as an Athrean project."""

    return json.dumps({PROJECT_MARKER: True, "files": build_preview_files(code)})


def decode_project_files(stored: str) -> Dict[str, str]:
    try:
        payload = json.loads(stored)
    except (TypeError, json.JSONDecodeError):
        return build_preview_files(stored or "")
    if isinstance(payload, dict) and payload.get(PROJECT_MARKER) and isinstance(payload.get("files"), dict):
        return {str(k): str(v) for k, v in payload["files"].items()}
    return build_preview_files(stored)


class ProjectRepository(Protocol):
    def save_generation(self, payload: SaveGenerationRequest) -> SavedProject: ...
    def get(self, project_id: str) -> Optional[SavedProject]: ...
    def list(self) -> List[SavedProject]: ...
    def delete(self, project_id: str) -> bool: ...


class InMemoryProjectRepository:
    """Keeps saved generations for the lifetime of the process."""

    def __init__(self) -> None:
        self._projects: Dict[str, SavedProject] = {}
        self._counter: int = 0
        self._lock = RLock()

    def _generate_project_id(self) -> str:
        self._counter += 1
        year = datetime.now(UTC).year
        return f"GEN-{year}-{self._counter:04d}"

    def _build(self, pid: str, payload: SaveGenerationRequest) -> SavedProject:
        return SavedProject(
            id=pid,
            name=payload.name,
            code=encode_project_code(payload.code),
            prompt=payload.prompt,
            source=payload.source,
            is_public=payload.is_public,
            model=payload.model,
            duration_ms=payload.duration_ms,
            created_at=datetime.now(UTC),
        )

    def save_generation(self, payload: SaveGenerationRequest) -> SavedProject:
        with self._lock:
            project = self._build(self._generate_project_id(), payload)
            self._projects[project.id] = project
            return project

    def get(self, project_id: str) -> Optional[SavedProject]:
        with self._lock:
            return self._projects.get(project_id)

    def list(self) -> List[SavedProject]:
        with self._lock:
            return list(self._projects.values())

    def delete(self, project_id: str) -> bool:
        with self._lock:
            return self._projects.pop(project_id, None) is not None


class FileProjectRepository(InMemoryProjectRepository):
    """JSON file-backed repository for development persistence.

    Structure: a single JSON object mapping project id -> project dict. Unreadable
    entries are skipped on load; write failures propagate to the caller.
    """

    def __init__(self, file_path: Optional[str] = None) -> None:
        super().__init__()
        default_path = Path.cwd() / "run" / "projects.json"
        self._path = Path(file_path or os.getenv("ATHREAN_PROJECTS_FILE", str(default_path)))
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8")) or {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("projects_file_unreadable path=%s err=%s", self._path, exc)
            return
        max_seq = 0
        for pid, raw in data.items():
            try:
                self._projects[pid] = SavedProject.model_validate(raw)
            except ValueError:
                logger.warning("projects_file_entry_skipped id=%s", pid)
                continue
            # track numeric suffix for counter continuity: GEN-YYYY-####
            parts = str(pid).split("-")
            if len(parts) == 3 and parts[2].isdigit():
                max_seq = max(max_seq, int(parts[2]))
        self._counter = max_seq

    def _save(self) -> None:
        obj = {pid: proj.model_dump(mode="json") for pid, proj in self._projects.items()}
        self._path.write_text(json.dumps(obj, indent=2), encoding="utf-8")

    def save_generation(self, payload: SaveGenerationRequest) -> SavedProject:
        with self._lock:
            project = super().save_generation(payload)
            self._save()
            return project

    def delete(self, project_id: str) -> bool:
        with self._lock:
            ok = super().delete(project_id)
            if ok:
                self._save()
            return ok


def build_project_repository(env: Optional[Mapping[str, str]] = None) -> ProjectRepository:
    env = env if env is not None else os.environ
    impl = (env.get("ATHREAN_PROJECT_STORE_IMPL") or "memory").lower()
    if impl == "file":
        return FileProjectRepository(env.get("ATHREAN_PROJECTS_FILE"))
    return InMemoryProjectRepository()
