"""
Pydantic schemas for chat data and the HTTP API.

This module contains:
- The Message model decoded from backend records
- Identity and draft models consumed by the engines
- Request/response models for the HTTP API
"""

from typing import Optional

from pydantic import BaseModel, Field, model_validator


# =============================================================================
# Chat Models
# =============================================================================

class Message(BaseModel):
    """
    One chat message as stored in the realtime backend.

    Field aliases follow the backend record shape (camelCase). A message is
    either live (no deletion fields) or soft-deleted with both deletedAt and
    deletedBy set; anything else is a malformed record.
    """
    id: str = Field(..., min_length=1, description="Push key assigned by the backend")
    author_id: str = Field(..., alias="authorId", min_length=1, description="Sender user id")
    display_name: str = Field(..., alias="displayName", description="Sender display name at send time")
    avatar_url: Optional[str] = Field(None, alias="avatarUrl", description="Sender avatar at send time")
    body: str = Field(..., min_length=1, description="Trimmed message text")
    sent_at: int = Field(..., alias="sentAt", ge=0, description="Server creation time (epoch ms)")
    deleted: bool = Field(default=False, description="Soft-delete flag")
    deleted_at: Optional[int] = Field(None, alias="deletedAt", description="Moderation time (epoch ms)")
    deleted_by: Optional[str] = Field(None, alias="deletedBy", description="Moderator who deleted the message")

    @model_validator(mode="after")
    def check_deletion_fields(self) -> "Message":
        """deletedAt/deletedBy must be present exactly when deleted is true."""
        if self.deleted:
            if self.deleted_at is None or not self.deleted_by:
                raise ValueError("deleted messages require deletedAt and deletedBy")
        elif self.deleted_at is not None or self.deleted_by is not None:
            raise ValueError("deletedAt/deletedBy are only allowed on deleted messages")
        return self

    model_config = {
        "populate_by_name": True,
        "frozen": True,
    }


class Identity(BaseModel):
    """Read-only identity snapshot supplied by the identity provider."""
    id: str = Field(default="", description="Identity-provider user id")
    display_name: str = Field(default="", alias="displayName")
    avatar_url: Optional[str] = Field(None, alias="avatarUrl")
    is_moderator: bool = Field(default=False, alias="isModerator")

    model_config = {
        "populate_by_name": True,
        "frozen": True,
    }


class MessageDraft(BaseModel):
    """A validated message that has not been written yet (no id, no sentAt)."""
    author_id: str = Field(..., alias="authorId")
    display_name: str = Field(..., alias="displayName")
    avatar_url: Optional[str] = Field(None, alias="avatarUrl")
    body: str

    model_config = {"populate_by_name": True}


# =============================================================================
# HTTP Request/Response Models
# =============================================================================

class SendMessageRequest(BaseModel):
    """Body of POST /chat/messages."""
    body: str = Field(..., description="Message text; surrounding whitespace is trimmed")


class SendMessageResponse(BaseModel):
    """Response model for a stored message."""
    status: str = Field(default="ok", description="Operation status")
    id: str = Field(..., description="Key of the new message")


class SoftDeleteResponse(BaseModel):
    status: str = Field(..., description="deleted or already_deleted")
    id: str


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class ChatFeedResponse(BaseModel):
    """
    Response model for GET /chat/messages.

    Contains:
    - data: visible messages ordered by sentAt, id
    - total: number of visible messages
    - connected: whether the feed has a live subscription
    """
    data: list[Message] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    connected: bool


class ModerationStats(BaseModel):
    """
    Window-limited counts for the moderation panel.
    Display only: they cover the subscribed window, not the whole stream.
    """
    total_messages: int = Field(..., ge=0)
    deleted_messages: int = Field(..., ge=0)
    visible_messages: int = Field(..., ge=0)
    connected: bool


class ModerationFeedResponse(BaseModel):
    """Response model for GET /admin/chat/messages."""
    data: list[Message] = Field(default_factory=list)
    total: int = Field(..., ge=0, description="Messages matching the view filters")
    stats: ModerationStats


class ReconnectResponse(BaseModel):
    viewer: str = Field(..., description="Viewer engine state")
    moderation: str = Field(..., description="Moderation engine state")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
