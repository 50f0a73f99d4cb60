"""
Pydantic models for API request validation.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from gateway.api.exceptions import ValidationError
from gateway.models.llm.llm_models import ChatMessage

if TYPE_CHECKING:
    from gateway.config import RequestLimitsConfig


class ChatMessageIn(BaseModel):
    """One message of the conversation history."""

    role: Literal["user", "assistant", "system"]
    content: str = Field(min_length=1)

    def to_domain(self) -> ChatMessage:
        return ChatMessage(role=self.role, content=self.content)


class ChatRequest(BaseModel):
    """Request body for ``POST /v1/chat``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    messages: list[ChatMessageIn] = Field(min_length=1)
    conversation_id: uuid.UUID | None = Field(default=None, alias="conversationId")
    image_ids: list[uuid.UUID] = Field(default_factory=list, alias="imageIds")
    mode: Literal["chat", "search_assist"] = "chat"
    preferred_provider: Literal["anthropic", "openai", "gemini", "auto"] | None = Field(
        default=None, alias="preferredProvider"
    )
    idempotency_key: str | None = Field(default=None, alias="idempotencyKey", max_length=255)

    @field_validator("messages")
    @classmethod
    def validate_last_message(cls, v: list[ChatMessageIn]) -> list[ChatMessageIn]:
        """The conversation must end with a user turn."""
        if v and v[-1].role != "user":
            raise ValueError("The last message must have role 'user'")
        return v

    @field_validator("idempotency_key", mode="before")
    @classmethod
    def strip_idempotency_key(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    def enforce_limits(self, limits: RequestLimitsConfig) -> None:
        """Apply the deployment's size limits.

        Raises:
            ValidationError: If any configured limit is exceeded.
        """
        if len(self.messages) > limits.max_messages_count:
            raise ValidationError(
                f"Too many messages: {len(self.messages)} (max {limits.max_messages_count})",
                details={"field": "messages", "max": limits.max_messages_count},
            )
        for index, message in enumerate(self.messages):
            if len(message.content) > limits.max_message_length:
                raise ValidationError(
                    f"Message {index} exceeds {limits.max_message_length} characters",
                    details={
                        "field": f"messages.{index}.content",
                        "max": limits.max_message_length,
                    },
                )
        if len(self.image_ids) > limits.max_image_count:
            raise ValidationError(
                f"Too many images: {len(self.image_ids)} (max {limits.max_image_count})",
                details={"field": "imageIds", "max": limits.max_image_count},
            )
