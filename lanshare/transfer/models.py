"""Pydantic models for file transfer."""

import time
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from lanshare.discovery.models import RegisterDto, WireModel


class SessionState(str, Enum):
    CREATED = "created"
    CANCELLED = "cancelled"


class FileState(str, Enum):
    PENDING = "pending"
    RECEIVING = "receiving"
    COMPLETED = "completed"


# --- Wire protocol messages ---

class FileDto(WireModel):
    """One offered file. `id` is unique within its session only."""
    id: str
    file_name: str
    size: int = Field(ge=0)
    file_type: str
    hash: str | None = None
    preview: str | None = None
    metadata: Any | None = None
    legacy: bool | None = None


class PrepareUploadRequest(WireModel):
    info: RegisterDto
    files: dict[str, FileDto]


class PrepareUploadResponse(WireModel):
    session_id: str
    files: dict[str, str]  # fileId -> token


# --- Receiver-side state ---

class TransferSession(BaseModel):
    """An accepted prepare-upload. `files` and `tokens` always share keys."""
    session_id: str
    sender: RegisterDto
    files: dict[str, FileDto]
    tokens: dict[str, str]
    file_states: dict[str, FileState]
    state: SessionState = SessionState.CREATED
    created_at: float = Field(default_factory=time.time)

    def has_upload_in_flight(self) -> bool:
        return any(s == FileState.RECEIVING for s in self.file_states.values())


class UploadResult(BaseModel):
    session_id: str
    file_id: str
    path: Path
    bytes_written: int
    declared_size: int


class SendResult(BaseModel):
    session_id: str
    file_id: str
    file_name: str
    bytes_sent: int
