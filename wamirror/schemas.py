"""
Pydantic schemas for the HTTP API.

This module contains:
- Enums shared by the ORM model, the normalizer and the API
- Request models for local sends and uploaded batches
- Response models for messages, conversations, webhook and batch results

Field names are exposed in camelCase (externalId, conversationId, ...);
they are the contract for any client replaying archived payloads.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class DeliveryState(str, Enum):
    """Lifecycle stage of a message as reported by the delivery network."""
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendMessageRequest(CamelModel):
    """
    Body of POST /api/messages.

    Validates:
    - conversationId: non-empty
    - body: non-blank
    - displayName: optional
    """
    conversation_id: str = Field(..., min_length=1, description="Counterpart phone number id")
    body: str = Field(..., min_length=1, max_length=4096, description="Message text")
    display_name: Optional[str] = Field(None, description="Counterpart display name")

    @field_validator("conversation_id", "body")
    @classmethod
    def reject_blank(cls, v: str, info) -> str:
        if not v.strip():
            raise ValueError(f"{info.field_name} must not be blank")
        return v

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {"conversationId": "919937320320", "body": "Hello", "displayName": "Ravi Kumar"}
            ]
        },
    )


class UploadedSamplesRequest(BaseModel):
    """Body of POST /api/process-uploaded-samples; payloads stay raw, the normalizer decodes them."""
    payloads: list[Any] = Field(..., description="Raw webhook payloads, processed in order")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class MessageResponse(CamelModel):
    """A canonical message record as stored and broadcast."""
    id: int
    external_id: str
    meta_msg_id: str
    conversation_id: str
    sender_id: str
    sent_at_unix: int
    kind: str
    body: str
    delivery_state: DeliveryState
    direction: Direction
    display_name: Optional[str] = None
    created_at: str
    updated_at: str


class ConversationSummary(CamelModel):
    """One row of GET /api/contacts: the latest message of a conversation."""
    conversation_id: str
    display_name: Optional[str] = None
    last_message: str
    last_message_at_unix: int


class StatusUpdateData(CamelModel):
    external_id: str
    delivery_state: DeliveryState


class WebhookResponse(BaseModel):
    """Webhook answer; success is reported even when nothing was stored."""
    success: bool = True
    result: Optional[MessageResponse] = None


class BatchItemResponse(BaseModel):
    source: str = Field(..., description="File name or list index of the payload")
    result: MessageResponse


class BatchResponse(BaseModel):
    success: bool = True
    processed: int = Field(..., ge=0)
    results: list[BatchItemResponse] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
