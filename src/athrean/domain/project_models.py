from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import Field

from .generation_models import WireModel


class SaveGenerationRequest(WireModel):
    name: str = Field(min_length=1)
    code: str
    prompt: str
    source: Literal["generated"] = "generated"
    is_public: bool = False
    model: Optional[str] = None
    duration_ms: Optional[int] = None


class SavedProject(WireModel):
    id: str
    name: str
    code: str
    prompt: str
    source: str
    is_public: bool = False
    model: Optional[str] = None
    duration_ms: Optional[int] = None
    created_at: datetime
