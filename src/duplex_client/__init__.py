"""Reliable session and chat-delivery client for realtime duplex voice chat."""

from duplex_client.config import ClientConfig
from duplex_client.connection import ConnectionState
from duplex_client.delivery import ChatState, SendOptions
from duplex_client.errors import (
    AuthError,
    ChannelUnavailableError,
    DeliveryExhaustedError,
    NetworkError,
    SessionError,
    ValidationError,
)
from duplex_client.protocol import ChatMessage, MessagePriority, MessageStatus
from duplex_client.session import SessionCoordinator, SessionOptions, SessionSnapshot

__version__ = "0.1.0"

__all__ = [
    "AuthError",
    "ChannelUnavailableError",
    "ChatMessage",
    "ChatState",
    "ClientConfig",
    "ConnectionState",
    "DeliveryExhaustedError",
    "MessagePriority",
    "MessageStatus",
    "NetworkError",
    "SendOptions",
    "SessionCoordinator",
    "SessionError",
    "SessionOptions",
    "SessionSnapshot",
    "ValidationError",
]
