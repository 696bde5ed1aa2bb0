"""Session coordination.

Composes the credential provider, connection manager and message delivery
engine into one session object. The presentation layer talks to this module
only: it starts and ends sessions, sends chat and typing updates, and
subscribes to the session's event streams (state, messages, delivery
status, typing, errors and remote media).
"""

import asyncio
import dataclasses
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

import aiohttp
from livekit import rtc

from duplex_client.config import ClientConfig
from duplex_client.connection import ConnectionManager, ConnectionState
from duplex_client.credentials import CredentialProvider, CredentialRequestOptions
from duplex_client.delivery import ChatState, MessageDeliveryEngine, SendOptions
from duplex_client.errors import (
    ChannelUnavailableError,
    DeliveryExhaustedError,
    NetworkError,
    SessionError,
    categorize,
)
from duplex_client.lifecycle import LifecycleRegistry
from duplex_client.protocol import ChatMessage, MessageStatus, new_user_id
from duplex_client.scheduler import AsyncioScheduler, Scheduler
from duplex_client.utils.logging import mask_identifier

logger = logging.getLogger(__name__)

SessionEvent = Literal[
    "state",
    "message",
    "message_status",
    "typing",
    "error",
    "track_subscribed",
    "track_unsubscribed",
    "active_speakers",
    "connection_quality",
]

# Cleanup order on session end
CONNECTION_CLEANUP_PRIORITY = 10
CREDENTIAL_CLEANUP_PRIORITY = 20
ENGINE_CLEANUP_PRIORITY = 30
SUBSCRIPTION_CLEANUP_PRIORITY = 90


@dataclass(frozen=True)
class SessionOptions:
    """Options for :meth:`SessionCoordinator.start_session`."""

    user_id: str | None = None
    user_name: str | None = None
    room_name: str | None = None
    provider: str | None = None
    voice_id: str | None = None


@dataclass(frozen=True)
class SessionSnapshot:
    """Immutable merged view of the current session."""

    session_id: str | None = None
    user_id: str | None = None
    user_name: str | None = None
    room_name: str | None = None
    connection_state: ConnectionState = ConnectionState.DISCONNECTED
    joined_at: float | None = None
    updated_at: float | None = None
    pending_message_count: int = 0
    typing_users: frozenset[str] = frozenset()
    last_message_id: str | None = None
    last_error: SessionError | None = None

    @property
    def is_connected(self) -> bool:
        return self.connection_state is ConnectionState.CONNECTED

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": mask_identifier(self.user_id),
            "user_name": self.user_name,
            "room_name": self.room_name,
            "connection_state": self.connection_state.value,
            "joined_at": self.joined_at,
            "updated_at": self.updated_at,
            "pending_message_count": self.pending_message_count,
            "typing_users": sorted(self.typing_users),
            "last_message_id": self.last_message_id,
            "last_error": self.last_error.to_dict() if self.last_error else None,
        }


@dataclass
class _ActiveSession:
    session_id: str
    registry: LifecycleRegistry
    credentials: CredentialProvider
    connection: ConnectionManager
    engine: MessageDeliveryEngine


class SessionCoordinator(rtc.EventEmitter[SessionEvent]):
    """Single entry point for the presentation layer.

    Every :meth:`start_session` builds fresh component instances; nothing is
    shared between sessions. Listeners registered through the ``on_*``
    methods survive across sessions.

    Events (emitted synchronously):
    - ``state(snapshot)``
    - ``message(message)``: inbound chat messages
    - ``message_status(message_id, status)``
    - ``typing(sender_id, is_typing)``
    - ``error(error)``: fatal and terminal errors, once per operation
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        scheduler: Scheduler | None = None,
        http_session: aiohttp.ClientSession | None = None,
        room_factory: Callable[[], rtc.Room] = rtc.Room,
    ) -> None:
        """Initialize session coordinator.

        Args:
            config: Client configuration (defaults when omitted)
            scheduler: Clock and timer source shared by all components
            http_session: Optional shared aiohttp session for token requests
            room_factory: Creates LiveKit rooms for the connection manager
        """
        super().__init__()
        self.config = config or ClientConfig()
        self._scheduler = scheduler or AsyncioScheduler()
        self._http_session = http_session
        self._room_factory = room_factory

        self._active: _ActiveSession | None = None
        self._snapshot = SessionSnapshot()
        self._start_task: asyncio.Task[SessionSnapshot] | None = None
        self._end_task: asyncio.Task[None] | None = None
        self._ending = False

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._snapshot

    @property
    def has_active_session(self) -> bool:
        return self._active is not None and not self._ending

    @property
    def lifecycle(self) -> LifecycleRegistry | None:
        """Cleanup registry of the active session, if any."""
        return self._active.registry if self._active else None

    @property
    def room(self) -> rtc.Room | None:
        """Underlying room of the active session, if any."""
        return self._active.connection.room if self._active else None

    def chat_state(self) -> ChatState:
        if self._active is not None:
            return self._active.engine.chat_state()
        return ChatState(
            messages=(),
            is_connected=False,
            is_typing=False,
            last_message_id=None,
            pending_message_count=0,
            typing_users=frozenset(),
        )

    def history(self) -> list[ChatMessage]:
        return self._active.engine.history if self._active else []

    def get_message_status(self, message_id: str) -> MessageStatus | None:
        return self._active.engine.get_message_status(message_id) if self._active else None

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def _subscribe(self, event: SessionEvent, callback: Callable[..., None]) -> Callable[[], None]:
        self.on(event, callback)
        return lambda: self.off(event, callback)

    def on_state(self, callback: Callable[[SessionSnapshot], None]) -> Callable[[], None]:
        return self._subscribe("state", callback)

    def on_message(self, callback: Callable[[ChatMessage], None]) -> Callable[[], None]:
        return self._subscribe("message", callback)

    def on_message_status(
        self, callback: Callable[[str, MessageStatus], None]
    ) -> Callable[[], None]:
        return self._subscribe("message_status", callback)

    def on_typing(self, callback: Callable[[str, bool], None]) -> Callable[[], None]:
        return self._subscribe("typing", callback)

    def on_error(self, callback: Callable[[SessionError], None]) -> Callable[[], None]:
        return self._subscribe("error", callback)

    def on_track_subscribed(
        self, callback: Callable[[Any, Any, str], None]
    ) -> Callable[[], None]:
        """Remote media became available: ``callback(track, publication, identity)``."""
        return self._subscribe("track_subscribed", callback)

    def on_track_unsubscribed(
        self, callback: Callable[[Any, Any, str], None]
    ) -> Callable[[], None]:
        return self._subscribe("track_unsubscribed", callback)

    def on_active_speakers(self, callback: Callable[[list[str]], None]) -> Callable[[], None]:
        return self._subscribe("active_speakers", callback)

    def on_connection_quality(self, callback: Callable[[str, Any], None]) -> Callable[[], None]:
        return self._subscribe("connection_quality", callback)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def start_session(self, options: SessionOptions | None = None) -> SessionSnapshot:
        """Authenticate, connect and attach the chat engine.

        Args:
            options: Identity, room and voice options

        Returns:
            Snapshot of the connected session

        Raises:
            AuthError: Credential rejected
            NetworkError: Token endpoint or room unreachable
            SessionError: A session is already active, or another failure
        """
        if self._active is not None:
            raise SessionError(
                "A session is already active",
                user_message="Already connected. Leave the room first.",
            )

        options = options or SessionOptions()
        self._ending = False
        task = asyncio.get_running_loop().create_task(self._start(options), name="session-start")
        self._start_task = task
        try:
            return await task
        except asyncio.CancelledError:
            if task.cancelled() and self._ending:
                raise ChannelUnavailableError(
                    "Session start aborted by end_session",
                    user_message="Connection cancelled.",
                ) from None
            raise
        finally:
            if self._start_task is task:
                self._start_task = None

    async def _start(self, options: SessionOptions) -> SessionSnapshot:
        user_id = options.user_id or new_user_id()
        user_name = options.user_name or f"User {user_id[:6]}"
        room_name = options.room_name or self.config.default_room
        request_options = CredentialRequestOptions(
            provider=options.provider, voice_id=options.voice_id
        )

        active = self._build_session(user_id, user_name, request_options)
        self._active = active
        self._set_snapshot(
            SessionSnapshot(
                session_id=active.session_id,
                user_id=user_id,
                user_name=user_name,
                room_name=room_name,
                connection_state=active.connection.state,
            )
        )
        logger.info(
            "Starting session",
            extra={
                "session_id": active.session_id,
                "user_id": mask_identifier(user_id),
                "room": room_name,
            },
        )

        try:
            credential = await active.credentials.get_valid_credential(user_id, request_options)
            self._update(room_name=credential.room_name)
            await active.connection.connect(credential.token, credential.server_url)
            active.engine.attach(active.connection)
        except asyncio.CancelledError:
            logger.info("Session start cancelled", extra={"session_id": active.session_id})
            await self._abort(active)
            raise
        except Exception as e:
            error = categorize(e, "start_session")
            logger.error(
                "Session start failed",
                extra={
                    "session_id": active.session_id,
                    "category": error.category,
                    "error": str(error),
                },
            )
            await self._abort(active)
            if not self._ending:
                self._publish_error(error)
            if error is e:
                raise
            raise error from e

        self._update(joined_at=self._scheduler.time())
        logger.info(
            "Session started",
            extra={"session_id": active.session_id, "room": self._snapshot.room_name},
        )
        return self._snapshot

    async def _abort(self, active: _ActiveSession) -> None:
        """Tear down a partially started session."""
        await active.registry.run_all()
        if self._active is active:
            self._active = None

    def _build_session(
        self, user_id: str, user_name: str, request_options: CredentialRequestOptions
    ) -> _ActiveSession:
        registry = LifecycleRegistry()
        credentials = CredentialProvider(
            self.config.credentials, scheduler=self._scheduler, http_session=self._http_session
        )
        connection = ConnectionManager(
            self.config.connection, scheduler=self._scheduler, room_factory=self._room_factory
        )
        engine = MessageDeliveryEngine(
            self.config.chat, user_id, user_name, scheduler=self._scheduler
        )

        async def supply_token() -> str:
            credential = await credentials.get_valid_credential(user_id, request_options)
            return credential.token

        connection.set_token_supplier(supply_token)

        subscriptions = [
            connection.on_state_changed(self._on_connection_state),
            self._listen(engine, "message_received", self._on_message_received),
            self._listen(engine, "message_sent", self._on_message_sent),
            self._listen(engine, "message_status", self._on_message_status),
            self._listen(engine, "message_failed", self._on_message_failed),
            self._listen(engine, "typing", self._on_typing),
            self._listen(connection, "track_subscribed", self._on_track_subscribed),
            self._listen(connection, "track_unsubscribed", self._on_track_unsubscribed),
            self._listen(connection, "active_speakers_changed", self._on_active_speakers),
            self._listen(connection, "connection_quality_changed", self._on_connection_quality),
        ]

        def unsubscribe_all() -> None:
            for unsubscribe in subscriptions:
                unsubscribe()
            subscriptions.clear()

        registry.register("connection", connection.disconnect, CONNECTION_CLEANUP_PRIORITY)
        registry.register("credentials", credentials.close, CREDENTIAL_CLEANUP_PRIORITY)
        registry.register("chat-engine", engine.close, ENGINE_CLEANUP_PRIORITY)
        registry.register("subscriptions", unsubscribe_all, SUBSCRIPTION_CLEANUP_PRIORITY)

        return _ActiveSession(
            session_id=str(uuid.uuid4()),
            registry=registry,
            credentials=credentials,
            connection=connection,
            engine=engine,
        )

    @staticmethod
    def _listen(
        emitter: rtc.EventEmitter[Any], event: str, callback: Callable[..., None]
    ) -> Callable[[], None]:
        emitter.on(event, callback)
        return lambda: emitter.off(event, callback)

    async def end_session(self) -> None:
        """Disconnect, clear the credential and drain the chat engine.

        Idempotent; concurrent calls share the in-flight teardown.
        """
        task = self._end_task
        if task is None or task.done():
            if self._active is None:
                logger.debug("No active session to end")
                return
            task = asyncio.get_running_loop().create_task(self._teardown(), name="session-end")
            self._end_task = task
        await asyncio.shield(task)

    async def _teardown(self) -> None:
        active = self._active
        if active is None:
            return

        self._ending = True
        logger.info("Ending session", extra={"session_id": active.session_id})
        try:
            start_task = self._start_task
            if start_task is not None and not start_task.done():
                # The start unwinds its partial state before finishing
                start_task.cancel()
                await asyncio.gather(start_task, return_exceptions=True)
            await active.registry.run_all()
        finally:
            if self._active is active:
                self._active = None
            self._update(
                connection_state=ConnectionState.DISCONNECTED,
                pending_message_count=0,
                typing_users=frozenset(),
            )
            logger.info("Session ended", extra={"session_id": active.session_id})

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    def send_message(self, text: str, options: SendOptions | None = None) -> str:
        """Queue a chat message and return its id.

        Raises:
            ValidationError: Empty or oversized text
            ChannelUnavailableError: No active session
        """
        if self._active is None or self._ending:
            raise ChannelUnavailableError(
                "No active session", user_message="Join a room before sending messages."
            )
        return self._active.engine.send(text, options)

    def set_typing(self, is_typing: bool) -> None:
        if self._active is not None and not self._ending:
            self._active.engine.set_typing(is_typing)

    # ------------------------------------------------------------------
    # Component events
    # ------------------------------------------------------------------

    def _on_connection_state(self, new_state: ConnectionState, old_state: ConnectionState) -> None:
        self._update(connection_state=new_state)

        if (
            new_state is ConnectionState.DISCONNECTED
            and old_state is ConnectionState.RECONNECTING
            and not self._ending
        ):
            self._publish_error(
                NetworkError(
                    "Connection lost and could not be re-established",
                    user_message="Connection lost. Please rejoin the room.",
                )
            )

    def _on_message_received(self, message: ChatMessage) -> None:
        self._update(last_message_id=message.id)
        self.emit("message", message)

    def _on_message_sent(self, message: ChatMessage) -> None:
        self._update(last_message_id=message.id)

    def _on_message_status(self, message_id: str, status: MessageStatus) -> None:
        if self._active is not None:
            self._update(pending_message_count=self._active.engine.pending_message_count)
        self.emit("message_status", message_id, status)

    def _on_message_failed(self, message_id: str, error: DeliveryExhaustedError) -> None:
        self._publish_error(error)

    def _on_typing(self, sender_id: str, is_typing: bool) -> None:
        if self._active is not None:
            self._update(typing_users=self._active.engine.typing_users)
        self.emit("typing", sender_id, is_typing)

    def _on_track_subscribed(self, track: Any, publication: Any, identity: str) -> None:
        self.emit("track_subscribed", track, publication, identity)

    def _on_track_unsubscribed(self, track: Any, publication: Any, identity: str) -> None:
        self.emit("track_unsubscribed", track, publication, identity)

    def _on_active_speakers(self, identities: list[str]) -> None:
        self.emit("active_speakers", identities)

    def _on_connection_quality(self, identity: str, quality: Any) -> None:
        self.emit("connection_quality", identity, quality)

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def _set_snapshot(self, snapshot: SessionSnapshot) -> None:
        self._snapshot = dataclasses.replace(snapshot, updated_at=self._scheduler.time())
        self.emit("state", self._snapshot)

    def _update(self, **changes: Any) -> None:
        self._set_snapshot(dataclasses.replace(self._snapshot, **changes))

    def _publish_error(self, error: SessionError) -> None:
        logger.warning(
            "Session error",
            extra={"category": error.category, "error": str(error)},
        )
        self._update(last_error=error)
        self.emit("error", error)
