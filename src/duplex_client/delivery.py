"""Reliable chat delivery over the room data channel.

The data channel can be absent, can close at any time and never confirms
delivery. This engine turns it into an at-least-once, deduplicated,
status-tracked chat transport:

- Outbound messages sit in a queue until sent, retried with exponential
  backoff, and either promoted to delivered (receipt or confirmation window)
  or terminally failed after ``max_attempts``.
- Inbound payloads are decoded once, control traffic is consumed here, and
  chat messages are deduplicated by id before being surfaced.
- Typing state is signalled edge-triggered with an inactivity reset.

Events (emitted synchronously):
- ``message_received(message)``
- ``message_sent(message)``
- ``message_delivered(message_id, confirmed)``
- ``message_failed(message_id, error)``
- ``message_status(message_id, status)``
- ``typing(sender_id, is_typing)``
"""

import asyncio
import itertools
import logging
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal

from livekit import rtc

from duplex_client.config import ChatConfig
from duplex_client.connection import ConnectionManager, ConnectionState
from duplex_client.errors import (
    ChannelUnavailableError,
    DeliveryExhaustedError,
    NetworkError,
    SessionError,
    ValidationError,
    categorize,
)
from duplex_client.protocol import (
    ChatMessage,
    DeliveryReceipt,
    MessagePriority,
    MessageStatus,
    TypingSignal,
    decode_payload,
    new_message_id,
)
from duplex_client.scheduler import (
    AsyncioScheduler,
    BackgroundTasks,
    Cancellable,
    Scheduler,
    TimerSet,
)

logger = logging.getLogger(__name__)

DeliveryEvent = Literal[
    "message_received",
    "message_sent",
    "message_delivered",
    "message_failed",
    "message_status",
    "typing",
]


@dataclass(frozen=True)
class SendOptions:
    """Per-message send options."""

    timeout_s: float | None = None
    priority: MessagePriority = MessagePriority.NORMAL


@dataclass
class QueuedMessage:
    """Outbound message and its delivery bookkeeping. Mutated in place."""

    message: ChatMessage
    status: MessageStatus
    enqueued_at: float
    sequence: int
    options: SendOptions = field(default_factory=SendOptions)
    attempts: int = 0
    terminal: bool = False
    next_attempt_at: float = 0.0
    last_error: str | None = None

    @property
    def order_key(self) -> tuple[float, int]:
        """FIFO by enqueue time, ties broken by enqueue sequence."""
        return (self.enqueued_at, self.sequence)

    def is_due(self, now: float) -> bool:
        if self.status is MessageStatus.PENDING:
            return True
        return (
            self.status is MessageStatus.FAILED
            and not self.terminal
            and self.next_attempt_at <= now
        )


@dataclass(frozen=True)
class ChatState:
    """Point-in-time view of the chat for presentation."""

    messages: tuple[ChatMessage, ...]
    is_connected: bool
    is_typing: bool
    last_message_id: str | None
    pending_message_count: int
    typing_users: frozenset[str]


class MessageDeliveryEngine(rtc.EventEmitter[DeliveryEvent]):
    """At-least-once chat delivery on top of a :class:`ConnectionManager`.

    Holds a reference to the session's single channel, never a second one.
    Only one queue pass runs at a time; kicks during a pass are coalesced
    into one follow-up pass.
    """

    def __init__(
        self,
        config: ChatConfig,
        local_identity: str,
        local_name: str | None = None,
        scheduler: Scheduler | None = None,
    ) -> None:
        """Initialize message delivery engine.

        Args:
            config: Chat delivery configuration
            local_identity: Sender id stamped on outbound messages
            local_name: Optional display name stamped on outbound messages
            scheduler: Clock and timer source (asyncio-backed by default)
        """
        super().__init__()
        self.config = config
        self.local_identity = local_identity
        self.local_name = local_name
        self._scheduler = scheduler or AsyncioScheduler()

        self._channel: ConnectionManager | None = None
        self._unsubscribers: list[Callable[[], None]] = []

        self._queue: dict[str, QueuedMessage] = {}
        self._history: OrderedDict[str, ChatMessage] = OrderedDict()
        self._sequence = itertools.count()

        self._timers = TimerSet(self._scheduler)
        self._confirmations: dict[str, Cancellable] = {}
        self._background = BackgroundTasks()
        self._process_task: asyncio.Task[None] | None = None
        self._rerun_requested = False

        self._is_typing = False
        self._signalled_typing = False
        self._typing_handle: Cancellable | None = None
        self._typing_users: set[str] = set()

        self._alive = True

    # ------------------------------------------------------------------
    # Channel wiring
    # ------------------------------------------------------------------

    @property
    def is_attached(self) -> bool:
        return self._channel is not None

    @property
    def is_connected(self) -> bool:
        return self._channel is not None and self._channel.is_connected

    def attach(self, channel: ConnectionManager) -> None:
        """Start using ``channel`` for outbound and inbound traffic.

        Messages queued before attaching are flushed once the channel is
        connected.
        """
        if not self._alive:
            raise ChannelUnavailableError("Message engine is closed")
        if self._channel is not None:
            raise RuntimeError("Message engine is already attached to a channel")

        self._channel = channel
        self._unsubscribers = [
            channel.on_state_changed(self._on_channel_state_changed),
            channel.on_raw_received(self._on_raw_received),
        ]
        logger.info(
            "Message engine attached",
            extra={"state": channel.state.value, "queued": len(self._queue)},
        )
        self._kick()

    def _on_channel_state_changed(
        self, new_state: ConnectionState, old_state: ConnectionState
    ) -> None:
        if new_state is ConnectionState.CONNECTED:
            logger.info(
                "Channel connected, processing queued messages",
                extra={"pending": self.pending_message_count},
            )
            self._kick()
            self._sync_typing()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def send(self, text: str, options: SendOptions | None = None) -> str:
        """Queue a chat message and return its id without waiting for delivery.

        Must be called from within the running event loop.

        Args:
            text: Message text (surrounding whitespace is stripped)
            options: Optional per-message timeout and priority

        Returns:
            The new message id

        Raises:
            ValidationError: Text is empty or too long
            ChannelUnavailableError: The engine has been closed
        """
        if not self._alive:
            raise ChannelUnavailableError("Message engine is closed")

        cleaned = text.strip() if isinstance(text, str) else ""
        if not cleaned:
            raise ValidationError("Message text is empty", user_message="Message cannot be empty.")
        if len(cleaned) > self.config.max_message_length:
            raise ValidationError(
                f"Message text exceeds {self.config.max_message_length} characters",
                user_message="Message is too long.",
            )

        message = ChatMessage(
            id=new_message_id(),
            sender_id=self.local_identity,
            sender_name=self.local_name,
            text=cleaned,
            ts=self._scheduler.time_ms(),
        )
        entry = QueuedMessage(
            message=message,
            status=MessageStatus.PENDING,
            enqueued_at=self._scheduler.now(),
            sequence=next(self._sequence),
            options=options or SendOptions(),
        )
        self._queue[message.id] = entry

        logger.debug(
            "Queued message",
            extra={
                "message_id": message.id,
                "text_length": len(cleaned),
                "priority": entry.options.priority.value,
            },
        )
        self.emit("message_status", message.id, MessageStatus.PENDING)
        self._kick()
        return message.id

    def _kick(self) -> None:
        """Request a queue pass, coalescing with one already running."""
        if not self._alive or not self.is_connected:
            return
        if self._process_task is not None and not self._process_task.done():
            self._rerun_requested = True
            return
        self._process_task = asyncio.get_running_loop().create_task(
            self._process_queue(), name="chat-queue"
        )

    async def _process_queue(self) -> None:
        while self._alive:
            self._rerun_requested = False
            await self._run_pass()
            if not self._rerun_requested:
                break

    async def _run_pass(self) -> None:
        channel = self._channel
        if channel is None or not channel.is_connected:
            logger.debug("Skipping queue pass, channel not connected")
            return

        now = self._scheduler.now()
        due = sorted(
            (entry for entry in self._queue.values() if entry.is_due(now)),
            key=lambda entry: entry.order_key,
        )

        for entry in due:
            if not self._alive or not channel.is_connected:
                return
            if self._queue.get(entry.message.id) is not entry:
                continue
            if not entry.is_due(self._scheduler.now()):
                continue
            if await self._attempt_delivery(channel, entry):
                return

    async def _attempt_delivery(self, channel: ConnectionManager, entry: QueuedMessage) -> bool:
        """Try one send. Returns True when the pass should stop."""
        message_id = entry.message.id
        timeout = entry.options.timeout_s or self.config.message_timeout_s
        entry.attempts += 1

        logger.debug(
            "Attempting to send message",
            extra={
                "message_id": message_id,
                "attempt": entry.attempts,
                "max_attempts": self.config.max_attempts,
            },
        )

        error: SessionError | None = None
        try:
            await asyncio.wait_for(channel.send_raw(entry.message.to_bytes()), timeout=timeout)
        except ChannelUnavailableError:
            # Channel went away mid-pass; wait for the next CONNECTED
            entry.attempts -= 1
            logger.debug("Channel unavailable, message stays queued", extra={"message_id": message_id})
            return True
        except asyncio.TimeoutError:
            error = NetworkError(f"Send timed out after {timeout}s")
        except Exception as e:
            error = categorize(e, "send")

        if not self._alive or self._queue.get(message_id) is not entry:
            return not self._alive

        if error is None:
            self._mark_sent(entry)
        else:
            self._handle_failure(entry, error)
        return False

    def _mark_sent(self, entry: QueuedMessage) -> None:
        message = entry.message
        entry.status = MessageStatus.SENT
        entry.last_error = None
        self._add_to_history(message)

        logger.debug("Message sent", extra={"message_id": message.id, "attempts": entry.attempts})
        self.emit("message_sent", message)
        self.emit("message_status", message.id, MessageStatus.SENT)

        handle = self._timers.schedule(
            self.config.delivery_confirmation_timeout_s, self._on_confirmation_window, message.id
        )
        if handle is not None:
            self._confirmations[message.id] = handle

    def _on_confirmation_window(self, message_id: str) -> None:
        self._confirmations.pop(message_id, None)
        entry = self._queue.get(message_id)
        if self._alive and entry is not None and entry.status is MessageStatus.SENT:
            # No receipt; the channel gives no guarantee, so assume delivered
            self._mark_delivered(entry, confirmed=False)

    def _mark_delivered(self, entry: QueuedMessage, confirmed: bool) -> None:
        message_id = entry.message.id
        entry.status = MessageStatus.DELIVERED

        handle = self._confirmations.pop(message_id, None)
        if handle is not None:
            handle.cancel()

        logger.debug(
            "Message delivered", extra={"message_id": message_id, "confirmed": confirmed}
        )
        self.emit("message_delivered", message_id, confirmed)
        self.emit("message_status", message_id, MessageStatus.DELIVERED)

        self._timers.schedule(
            self.config.delivered_cleanup_delay_s,
            self._purge,
            message_id,
            MessageStatus.DELIVERED,
        )

    def _handle_failure(self, entry: QueuedMessage, error: SessionError) -> None:
        message_id = entry.message.id
        entry.status = MessageStatus.FAILED
        entry.last_error = str(error)

        if entry.attempts >= self.config.max_attempts:
            entry.terminal = True
            exhausted = DeliveryExhaustedError(message_id, entry.attempts, str(error))
            exhausted.__cause__ = error
            logger.error(
                "Message delivery exhausted",
                extra={"message_id": message_id, "attempts": entry.attempts, "error": str(error)},
            )
            self.emit("message_status", message_id, MessageStatus.FAILED)
            self.emit("message_failed", message_id, exhausted)
            self._timers.schedule(
                self.config.failed_cleanup_delay_s, self._purge, message_id, MessageStatus.FAILED
            )
            return

        delay = min(
            self.config.retry_base_delay_s * 2 ** (entry.attempts - 1),
            self.config.retry_max_delay_s,
        )
        entry.next_attempt_at = self._scheduler.now() + delay
        logger.warning(
            "Message send failed, scheduling retry",
            extra={
                "message_id": message_id,
                "attempt": entry.attempts,
                "retry_in_s": delay,
                "error": str(error),
            },
        )
        self.emit("message_status", message_id, MessageStatus.FAILED)
        self._timers.schedule(delay, self._on_retry_due, message_id)

    def _on_retry_due(self, message_id: str) -> None:
        entry = self._queue.get(message_id)
        if not self._alive or entry is None or entry.terminal:
            return
        # Loop timers may fire marginally before the monotonic deadline
        entry.next_attempt_at = min(entry.next_attempt_at, self._scheduler.now())
        self._kick()

    def _purge(self, message_id: str, expected: MessageStatus) -> None:
        entry = self._queue.get(message_id)
        if entry is not None and entry.status is expected:
            del self._queue[message_id]
            logger.debug("Purged queue entry", extra={"message_id": message_id})

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def _on_raw_received(self, payload: bytes, sender_identity: str | None = None) -> None:
        if not self._alive:
            return

        try:
            decoded = decode_payload(payload)
        except ValidationError as e:
            logger.warning(
                "Dropping malformed payload",
                extra={"size": len(payload), "sender": sender_identity, "error": str(e)},
            )
            return

        if isinstance(decoded, DeliveryReceipt):
            self._handle_receipt(decoded)
        elif isinstance(decoded, TypingSignal):
            self._handle_typing_signal(decoded)
        else:
            self._handle_chat_message(decoded)

    def _handle_chat_message(self, message: ChatMessage) -> None:
        if message.sender_id != self.local_identity:
            # Duplicates are acknowledged too; the sender may still be retrying
            self._send_control(
                DeliveryReceipt(message_id=message.id, ts=self._scheduler.time_ms())
            )

        if not self._add_to_history(message):
            logger.debug("Ignoring duplicate message", extra={"message_id": message.id})
            return

        if message.sender_id in self._typing_users:
            self._typing_users.discard(message.sender_id)
            self.emit("typing", message.sender_id, False)

        logger.debug(
            "Received chat message",
            extra={"message_id": message.id, "sender": message.sender_id},
        )
        self.emit("message_received", message)

    def _handle_receipt(self, receipt: DeliveryReceipt) -> None:
        entry = self._queue.get(receipt.message_id)
        if entry is None or entry.status is not MessageStatus.SENT:
            logger.debug("Ignoring receipt", extra={"message_id": receipt.message_id})
            return
        self._mark_delivered(entry, confirmed=True)

    def _handle_typing_signal(self, signal: TypingSignal) -> None:
        if signal.sender_id == self.local_identity:
            return

        if signal.is_typing:
            self._typing_users.add(signal.sender_id)
        else:
            self._typing_users.discard(signal.sender_id)

        logger.debug(
            "Typing indicator received",
            extra={"sender": signal.sender_id, "is_typing": signal.is_typing},
        )
        self.emit("typing", signal.sender_id, signal.is_typing)

    def _send_control(self, control: DeliveryReceipt | TypingSignal) -> None:
        """Best-effort, unqueued send of a control message."""
        channel = self._channel
        if channel is None or not channel.is_connected:
            logger.debug("Dropping control message, channel not connected", extra={"kind": control.kind})
            return
        self._background.spawn(self._publish_control(channel, control), name=f"chat-{control.kind}")

    async def _publish_control(
        self, channel: ConnectionManager, control: DeliveryReceipt | TypingSignal
    ) -> None:
        try:
            await asyncio.wait_for(
                channel.send_raw(control.to_bytes()), timeout=self.config.message_timeout_s
            )
        except (SessionError, asyncio.TimeoutError) as e:
            logger.warning("Failed to send control message", extra={"kind": control.kind, "error": str(e)})

    # ------------------------------------------------------------------
    # Typing
    # ------------------------------------------------------------------

    @property
    def is_typing(self) -> bool:
        return self._is_typing

    def set_typing(self, is_typing: bool) -> None:
        """Signal local typing state. Edge-triggered.

        Repeating the last signalled value sends nothing. ``True`` (re)arms an
        inactivity timer that resets the state to ``False``. A change made
        while the channel is down is sent once it connects again.
        """
        if not self._alive:
            return

        if self._typing_handle is not None:
            self._typing_handle.cancel()
            self._typing_handle = None
        if is_typing:
            self._typing_handle = self._timers.schedule(
                self.config.typing_timeout_s, self._on_typing_timeout
            )

        self._is_typing = is_typing
        self._sync_typing()

    def _sync_typing(self) -> None:
        # Only mark a state as signalled once it can actually be sent
        if self._is_typing == self._signalled_typing or not self.is_connected:
            return

        self._signalled_typing = self._is_typing
        self._send_control(
            TypingSignal(
                sender_id=self.local_identity,
                is_typing=self._is_typing,
                ts=self._scheduler.time_ms(),
            )
        )

    def _on_typing_timeout(self) -> None:
        self._typing_handle = None
        self.set_typing(False)

    # ------------------------------------------------------------------
    # History and queries
    # ------------------------------------------------------------------

    def _add_to_history(self, message: ChatMessage) -> bool:
        """Append unless already present. Returns False for duplicates."""
        if message.id in self._history:
            return False

        self._history[message.id] = message
        removed = 0
        while len(self._history) > self.config.max_history_size:
            self._history.popitem(last=False)
            removed += 1
        if removed:
            logger.debug(
                "Trimmed message history",
                extra={"removed": removed, "size": len(self._history)},
            )
        return True

    @property
    def history(self) -> list[ChatMessage]:
        """Messages oldest first."""
        return list(self._history.values())

    def get_message(self, message_id: str) -> ChatMessage | None:
        return self._history.get(message_id)

    def get_messages_by_sender(self, sender_id: str) -> list[ChatMessage]:
        return [m for m in self._history.values() if m.sender_id == sender_id]

    def get_message_status(self, message_id: str) -> MessageStatus | None:
        entry = self._queue.get(message_id)
        return entry.status if entry is not None else None

    def get_queued(self, message_id: str) -> QueuedMessage | None:
        return self._queue.get(message_id)

    @property
    def pending_message_count(self) -> int:
        return sum(
            1
            for entry in self._queue.values()
            if entry.status is MessageStatus.PENDING
            or (entry.status is MessageStatus.FAILED and not entry.terminal)
        )

    @property
    def typing_users(self) -> frozenset[str]:
        return frozenset(self._typing_users)

    def chat_state(self) -> ChatState:
        last = next(reversed(self._history)) if self._history else None
        return ChatState(
            messages=tuple(self._history.values()),
            is_connected=self.is_connected,
            is_typing=self._is_typing,
            last_message_id=last,
            pending_message_count=self.pending_message_count,
            typing_users=self.typing_users,
        )

    def clear_history(self) -> None:
        logger.info("Clearing chat history", extra={"message_count": len(self._history)})
        self._history.clear()

    def clear_queue(self) -> None:
        logger.info("Clearing message queue", extra={"queue_size": len(self._queue)})
        for handle in self._confirmations.values():
            handle.cancel()
        self._confirmations.clear()
        self._queue.clear()

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Detach from the channel and stop all timers. Idempotent.

        Messages that were still waiting are marked failed so that every
        send ends in an observable status.
        """
        if not self._alive:
            return

        logger.info(
            "Closing message engine",
            extra={"queued": len(self._queue), "history": len(self._history)},
        )

        for entry in self._queue.values():
            if entry.is_due(float("inf")):
                entry.status = MessageStatus.FAILED
                entry.terminal = True
                entry.last_error = "session ended"
                self.emit("message_status", entry.message.id, MessageStatus.FAILED)

        self._alive = False
        self._timers.cancel_all()
        self._confirmations.clear()
        self._typing_handle = None

        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

        task = self._process_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._process_task = None

        await self._background.cancel_all()
        self._queue.clear()
        self._typing_users.clear()
        self._is_typing = False
        self._signalled_typing = False
        self._channel = None
