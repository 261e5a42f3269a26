from datetime import datetime
from typing import Optional

from pydantic import AliasChoices, BaseModel, Field


class AttachmentMeta(BaseModel):
    filename: Optional[str] = Field(default=None, max_length=255, validation_alias=AliasChoices("filename", "name"))
    type: str = Field(default="unknown", max_length=128, validation_alias=AliasChoices("type", "mime_type", "mimeType"))
    size_bytes: Optional[int] = Field(default=None, ge=0, validation_alias=AliasChoices("size_bytes", "size"))
    url: Optional[str] = Field(default=None, max_length=4096)


class TurnRecord(BaseModel):
    conversation_id: Optional[str] = None
    user_external_id: Optional[str] = None


class ReplyRecord(BaseModel):
    cleaned_text: str
    conversation_id: Optional[str] = None
    progress_event_id: Optional[int] = None


class WeeklySummary(BaseModel):
    meals_count: int = 0
    body_scans_count: int = 0
    workouts_count: int = 0
    avg_calories_per_day: float = 0.0
    calories_by_day: dict[str, float] = Field(default_factory=dict)
    source: str = "none"

    @classmethod
    def empty(cls) -> "WeeklySummary":
        return cls()


class MessageItem(BaseModel):
    id: int
    conversation_id: str
    role: str
    content: str
    created_at: datetime
    pinned: bool = False


class UploadPreviewItem(BaseModel):
    id: int
    type: str
    url: str
    filename: Optional[str] = None
    workflow: Optional[str] = None
    conversation_id: Optional[str] = None
    created_at: datetime
    linked_message_id: Optional[int] = None
    linked_message_excerpt: Optional[str] = None


class AccountSummary(BaseModel):
    has_data: bool
    reason: Optional[str] = None
    total_messages: int = 0
    last_message_at: Optional[datetime] = None
    recent_messages: list[MessageItem] = Field(default_factory=list)
    weekly_summary: WeeklySummary = Field(default_factory=WeeklySummary)
    uploads_preview: list[UploadPreviewItem] = Field(default_factory=list)


class ConversationItem(BaseModel):
    id: str
    title: str
    started_at: datetime
    last_message_at: Optional[datetime] = None
    coaching_mode: Optional[str] = None
    workflow: Optional[str] = None


class MessageActionResult(BaseModel):
    ok: bool
    action: Optional[str] = None
    outcome: Optional[str] = None
    reason: Optional[str] = None


class ConversationEndResult(BaseModel):
    ok: bool
    conversation_id: str
    ended_at: Optional[datetime] = None
    reason: Optional[str] = None


class ProgressInstructions(BaseModel):
    workflow: Optional[str] = None
    progress_type: Optional[str] = None
    instructions: str = ""
