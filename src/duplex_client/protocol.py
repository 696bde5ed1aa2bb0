"""Chat data-channel protocol definitions.

Defines Pydantic models for the JSON messages exchanged over the data
channel. User chat messages carry no ``kind`` field; control messages are
tagged with ``kind``. Inbound payloads are decoded exactly once, here, into
the :data:`WireMessage` tagged union.
"""

import uuid
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    field_validator,
)
from pydantic import ValidationError as PydanticValidationError

from duplex_client.errors import ValidationError

CHAT_KIND = "chat"
DELIVERY_RECEIPT_KIND = "delivery_receipt"
TYPING_INDICATOR_KIND = "typing_indicator"


class MessageStatus(str, Enum):
    """Outbound message delivery status."""

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


class MessagePriority(str, Enum):
    """Caller-supplied priority, carried for consumers. Ordering stays FIFO."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class _WireModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    def to_bytes(self) -> bytes:
        """Encode as UTF-8 JSON using wire (camelCase) names."""
        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")


class ChatMessage(_WireModel):
    """User chat message. Identity is ``id``."""

    id: str = Field(..., min_length=1)
    sender_id: str = Field(..., min_length=1, alias="senderId")
    sender_name: str | None = Field(default=None, alias="senderName")
    text: str = Field(..., min_length=1)
    ts: int = Field(..., gt=0, description="Epoch milliseconds")

    @field_validator("text")
    @classmethod
    def validate_text(cls, v: str) -> str:
        """Reject whitespace-only text."""
        if not v.strip():
            raise ValueError("text must not be blank")
        return v


class DeliveryReceipt(_WireModel):
    """Control: acknowledges receipt of one chat message."""

    kind: Literal["delivery_receipt"] = DELIVERY_RECEIPT_KIND
    message_id: str = Field(..., min_length=1, alias="messageId")
    ts: int = Field(..., gt=0)


class TypingSignal(_WireModel):
    """Control: the sender started or stopped typing."""

    kind: Literal["typing_indicator"] = TYPING_INDICATOR_KIND
    sender_id: str = Field(..., min_length=1, alias="senderId")
    is_typing: bool = Field(..., alias="isTyping")
    ts: int = Field(..., gt=0)


def _wire_kind(value: Any) -> str:
    if isinstance(value, dict):
        return str(value.get("kind", CHAT_KIND))
    return str(getattr(value, "kind", CHAT_KIND))


WireMessage = Annotated[
    Union[
        Annotated[ChatMessage, Tag(CHAT_KIND)],
        Annotated[DeliveryReceipt, Tag(DELIVERY_RECEIPT_KIND)],
        Annotated[TypingSignal, Tag(TYPING_INDICATOR_KIND)],
    ],
    Discriminator(_wire_kind),
]

_wire_adapter: TypeAdapter[ChatMessage | DeliveryReceipt | TypingSignal] = TypeAdapter(
    WireMessage
)


def decode_payload(payload: bytes | str) -> ChatMessage | DeliveryReceipt | TypingSignal:
    """Decode one data-channel payload.

    Args:
        payload: Raw UTF-8 JSON bytes (or already-decoded text)

    Returns:
        The decoded chat or control message

    Raises:
        ValidationError: If the payload is not UTF-8 JSON, has an unknown
            ``kind`` or misses required fields
    """
    try:
        text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
    except UnicodeDecodeError as e:
        raise ValidationError(f"Payload is not valid UTF-8: {e}") from e

    try:
        return _wire_adapter.validate_json(text)
    except PydanticValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise ValidationError(
            f"Malformed payload ({e.error_count()} errors: {', '.join(fields)})"
        ) from e


def new_message_id() -> str:
    """Fresh unique chat message id."""
    return str(uuid.uuid4())


def new_user_id() -> str:
    """Generate a local participant identity."""
    return f"user_{uuid.uuid4().hex[:12]}"
