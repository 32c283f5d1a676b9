"""Data models for the relay, the backend protocol and the record store."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


class ChatRequest(BaseModel):
    model: str
    messages: list[ChatMessage]
    stream: bool = False
    options: dict[str, Any] = {}


class OllamaModel(BaseModel):
    name: str
    size: int = 0
    digest: str = ""
    modified_at: str | None = None


class PullProgress(BaseModel):
    status: str = ""
    total: int | None = None
    completed: int | None = None
    digest: str | None = None

    def percent(self) -> float | None:
        """Completion percentage, or None when the frame carries no progress."""
        if not self.total or self.completed is None:
            return None
        return self.completed / self.total * 100


class SSEEvent(BaseModel):
    type: Literal["event", "reconnect-interval"] = "event"
    event: str | None = None
    data: str | None = None
    id: str | None = None
    retry_ms: int | None = None


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    files: list[str] = []


class Project(ProjectCreate):
    id: str
    created_at: datetime
    updated_at: datetime


class FileContent(BaseModel):
    name: str = Field(min_length=1)
    content: str = ""
    type: str = "text/plain"
    size: int = 0


class FileCreate(FileContent):
    project_id: str


class FileRecord(FileCreate):
    id: str
    created_at: datetime
    updated_at: datetime


class MessageCreate(BaseModel):
    content: str
    role: Literal["user", "assistant", "system"]
    timestamp: datetime | None = None
    project_id: str | None = None


class MessageRecord(MessageCreate):
    id: str
    timestamp: datetime


class StoreStats(BaseModel):
    total_projects: int = 0
    total_files: int = 0
    total_messages: int = 0
