"""LiveKit connection lifecycle for a single client session.

Owns the ``rtc.Room`` for the session's lifetime and drives it through an
explicit state machine with bounded reconnection. The data channel is
exposed as a raw byte send/receive primitive; everything above it (framing,
retries, acknowledgments) lives in :mod:`duplex_client.delivery`.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, Literal

from livekit import rtc

from duplex_client.config import ConnectionConfig
from duplex_client.errors import (
    AuthError,
    ChannelUnavailableError,
    NetworkError,
    SessionError,
    categorize,
)
from duplex_client.scheduler import (
    AsyncioScheduler,
    BackgroundTasks,
    BackoffPolicy,
    Cancellable,
    Scheduler,
)

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """Connection state machine states.

    State Transitions:
    - DISCONNECTED → CONNECTING (on connect)
    - CONNECTING → CONNECTED (transport connected)
    - CONNECTING → FAILED (transport refused, not retried here)
    - CONNECTED → RECONNECTING (transport reported network loss)
    - RECONNECTING → CONNECTED (transport resumed or re-dial succeeded)
    - RECONNECTING → DISCONNECTED (reconnection budget exhausted)
    - FAILED → CONNECTING (new connect)
    - * → DISCONNECTED (explicit disconnect)
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


VALID_TRANSITIONS: dict[ConnectionState, set[ConnectionState]] = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING: {
        ConnectionState.CONNECTED,
        ConnectionState.FAILED,
        ConnectionState.DISCONNECTED,
    },
    ConnectionState.CONNECTED: {ConnectionState.RECONNECTING, ConnectionState.DISCONNECTED},
    ConnectionState.RECONNECTING: {ConnectionState.CONNECTED, ConnectionState.DISCONNECTED},
    ConnectionState.FAILED: {ConnectionState.CONNECTING, ConnectionState.DISCONNECTED},
}

ConnectionEvent = Literal[
    "state_changed",
    "raw_received",
    "participant_connected",
    "participant_disconnected",
    "track_subscribed",
    "track_unsubscribed",
    "active_speakers_changed",
    "connection_quality_changed",
]

TokenSupplier = Callable[[], Awaitable[str]]

_AUTH_FAILURE_MARKERS = ("401", "403", "unauthorized", "forbidden", "invalid token", "expired")


def _classify_connect_error(error: Exception) -> SessionError:
    """Bad tokens are fatal; anything else the transport raises is transient."""
    message = str(error)
    lowered = message.lower()
    if any(marker in lowered for marker in _AUTH_FAILURE_MARKERS):
        return AuthError(f"Room rejected credential: {message}")
    return NetworkError(f"Room connection failed: {message}")


class ConnectionManager(rtc.EventEmitter[ConnectionEvent]):
    """Transport session owner with an explicit reconnect state machine.

    Events (emitted synchronously):
    - ``state_changed(new_state, old_state)``
    - ``raw_received(payload: bytes, sender_identity: str | None)``
    - ``participant_connected(identity)`` / ``participant_disconnected(identity)``
    - ``track_subscribed(track, publication, identity)`` /
      ``track_unsubscribed(track, publication, identity)``
    - ``active_speakers_changed(identities)``
    - ``connection_quality_changed(identity, quality)``
    """

    def __init__(
        self,
        config: ConnectionConfig,
        scheduler: Scheduler | None = None,
        room_factory: Callable[[], rtc.Room] = rtc.Room,
        token_supplier: TokenSupplier | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize connection manager.

        Args:
            config: Connection configuration
            scheduler: Clock and timer source (asyncio-backed by default)
            room_factory: Creates a fresh room per dial attempt
            token_supplier: Returns a current token for re-dials; the token
                passed to :meth:`connect` is reused when omitted
            rng: Random source for backoff jitter
        """
        super().__init__()
        self.config = config
        self._scheduler = scheduler or AsyncioScheduler()
        self._room_factory = room_factory
        self._token_supplier = token_supplier
        self._rng = rng or random.Random()
        self._policy = BackoffPolicy.from_config(config.reconnect)

        self._state = ConnectionState.DISCONNECTED
        self._room: rtc.Room | None = None
        self._room_handlers: dict[str, Callable[..., None]] = {}
        self._token: str | None = None
        self._server_url: str | None = None

        self._connect_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._budget_handle: Cancellable | None = None
        self._reconnect_deadline: float | None = None
        self._background = BackgroundTasks()

    @property
    def state(self) -> ConnectionState:
        """Current authoritative connection state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def room(self) -> rtc.Room | None:
        """Underlying room, for track publishing by the presentation layer."""
        return self._room

    def set_token_supplier(self, supplier: TokenSupplier | None) -> None:
        self._token_supplier = supplier

    def room_info(self) -> dict[str, Any] | None:
        """Room name and remote participant identities, if connected."""
        if self._room is None:
            return None
        return {
            "name": self._room.name,
            "participants": sorted(self._room.remote_participants.keys()),
        }

    def on_state_changed(
        self, callback: Callable[[ConnectionState, ConnectionState], None]
    ) -> Callable[[], None]:
        """Subscribe to state changes; returns an unsubscribe callable."""
        self.on("state_changed", callback)
        return lambda: self.off("state_changed", callback)

    def on_raw_received(
        self, callback: Callable[[bytes, str | None], None]
    ) -> Callable[[], None]:
        """Subscribe to inbound data-channel payloads; returns an unsubscribe callable."""
        self.on("raw_received", callback)
        return lambda: self.off("raw_received", callback)

    def _transition(self, new_state: ConnectionState) -> None:
        """Move to ``new_state`` and notify subscribers.

        Raises:
            ValueError: If the transition is not a defined edge
        """
        old_state = self._state
        if new_state is old_state:
            return
        if new_state not in VALID_TRANSITIONS[old_state]:
            raise ValueError(
                f"Invalid connection transition: {old_state.value} → {new_state.value}"
            )

        self._state = new_state
        logger.info(
            "Connection state transition",
            extra={"from_state": old_state.value, "to_state": new_state.value},
        )
        self.emit("state_changed", new_state, old_state)

    async def connect(self, token: str, server_url: str | None = None) -> None:
        """Connect to the room.

        Idempotent: returns immediately when connected or reconnecting (the
        reconnect machinery owns the room then) and joins the in-flight
        attempt when connecting.

        Args:
            token: Room access token
            server_url: LiveKit URL; falls back to the configured one

        Raises:
            AuthError: Room rejected the token
            NetworkError: Transport could not connect
            ChannelUnavailableError: The attempt was aborted by disconnect()
            ValueError: No server URL available
        """
        if self._state in (ConnectionState.CONNECTED, ConnectionState.RECONNECTING):
            return

        task = self._connect_task
        if task is None or task.done():
            url = server_url or self.config.server_url
            if not url:
                raise ValueError("No LiveKit server URL configured or supplied")

            self._token = token
            self._server_url = url
            self._transition(ConnectionState.CONNECTING)
            task = asyncio.create_task(self._connect_initial(token, url), name="room-connect")
            self._connect_task = task

        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                raise ChannelUnavailableError("Connect aborted by disconnect") from None
            raise

    async def _connect_initial(self, token: str, url: str) -> None:
        try:
            await self._dial(token, url)
        except SessionError:
            if self._state is ConnectionState.CONNECTING:
                self._transition(ConnectionState.FAILED)
            raise

        if self._state is ConnectionState.CONNECTING:
            self._transition(ConnectionState.CONNECTED)

    async def _dial(self, token: str, url: str) -> None:
        """Create a room, wire its events and connect it."""
        room = self._room_factory()
        self._attach_room(room)

        logger.info("Connecting to room", extra={"url": url})
        try:
            await room.connect(url, token, rtc.RoomOptions(auto_subscribe=True))
        except asyncio.CancelledError:
            self._detach_room(room)
            self._background.spawn(self._release_room(room), name="room-release")
            raise
        except Exception as e:
            self._detach_room(room)
            categorized = (
                _classify_connect_error(e)
                if isinstance(e, rtc.ConnectError)
                else categorize(e, "room connect")
            )
            logger.error(
                "Room connection failed",
                extra={"category": categorized.category, "error": str(e)},
            )
            raise categorized from e

        logger.info(
            "Connected to room",
            extra={"room": room.name, "participants": len(room.remote_participants)},
        )

    def _attach_room(self, room: rtc.Room) -> None:
        self._detach_room(self._room)
        self._room = room

        def on_data_received(packet: Any) -> None:
            if room is self._room:
                self._on_data_received(packet)

        def on_reconnecting(*_args: Any) -> None:
            if room is self._room:
                self._on_transport_reconnecting()

        def on_reconnected(*_args: Any) -> None:
            if room is self._room:
                self._on_transport_reconnected()

        def on_disconnected(*args: Any) -> None:
            if room is self._room:
                self._on_transport_disconnected(args[0] if args else None)

        def on_participant_connected(participant: Any) -> None:
            if room is self._room:
                logger.info("Participant joined", extra={"participant": participant.identity})
                self.emit("participant_connected", participant.identity)

        def on_participant_disconnected(participant: Any) -> None:
            if room is self._room:
                logger.info("Participant left", extra={"participant": participant.identity})
                self.emit("participant_disconnected", participant.identity)

        def on_track_subscribed(track: Any, publication: Any, participant: Any) -> None:
            if room is self._room:
                logger.debug(
                    "Track subscribed",
                    extra={
                        "track_sid": track.sid,
                        "kind": str(track.kind),
                        "participant": participant.identity,
                    },
                )
                self.emit("track_subscribed", track, publication, participant.identity)

        def on_track_unsubscribed(track: Any, publication: Any, participant: Any) -> None:
            if room is self._room:
                logger.debug(
                    "Track unsubscribed",
                    extra={"track_sid": track.sid, "participant": participant.identity},
                )
                self.emit("track_unsubscribed", track, publication, participant.identity)

        def on_active_speakers_changed(speakers: list[Any]) -> None:
            if room is self._room:
                identities = [speaker.identity for speaker in speakers]
                logger.debug("Active speakers changed", extra={"speakers": identities})
                self.emit("active_speakers_changed", identities)

        def on_connection_quality_changed(participant: Any, quality: Any) -> None:
            if room is self._room:
                logger.debug(
                    "Connection quality changed",
                    extra={"participant": participant.identity, "quality": str(quality)},
                )
                self.emit("connection_quality_changed", participant.identity, quality)

        def on_track_muted(participant: Any, publication: Any) -> None:
            if room is self._room:
                logger.debug(
                    "Track muted",
                    extra={"track_sid": publication.sid, "participant": participant.identity},
                )

        def on_track_unmuted(participant: Any, publication: Any) -> None:
            if room is self._room:
                logger.debug(
                    "Track unmuted",
                    extra={"track_sid": publication.sid, "participant": participant.identity},
                )

        self._room_handlers = {
            "data_received": on_data_received,
            "reconnecting": on_reconnecting,
            "reconnected": on_reconnected,
            "disconnected": on_disconnected,
            "participant_connected": on_participant_connected,
            "participant_disconnected": on_participant_disconnected,
            "track_subscribed": on_track_subscribed,
            "track_unsubscribed": on_track_unsubscribed,
            "active_speakers_changed": on_active_speakers_changed,
            "connection_quality_changed": on_connection_quality_changed,
            "track_muted": on_track_muted,
            "track_unmuted": on_track_unmuted,
        }
        for event, handler in self._room_handlers.items():
            room.on(event, handler)

    def _detach_room(self, room: rtc.Room | None) -> None:
        if room is None or room is not self._room:
            return
        for event, handler in self._room_handlers.items():
            room.off(event, handler)
        self._room_handlers = {}
        self._room = None

    async def _release_room(self, room: rtc.Room) -> None:
        try:
            await room.disconnect()
        except Exception as e:
            logger.warning("Error releasing room", extra={"error": str(e)})

    def _on_data_received(self, packet: Any) -> None:
        payload = getattr(packet, "data", packet)
        participant = getattr(packet, "participant", None)
        sender = participant.identity if participant is not None else None

        topic = getattr(packet, "topic", None)
        if topic and topic != self.config.data_topic:
            logger.debug("Ignoring data on other topic", extra={"topic": topic, "participant": sender})
            return

        logger.debug("Data received", extra={"size": len(payload), "participant": sender})
        self.emit("raw_received", bytes(payload), sender)

    def _on_transport_reconnecting(self) -> None:
        if self._state is not ConnectionState.CONNECTED:
            return
        logger.warning("Transport reported network loss, waiting for resume")
        self._begin_reconnect_window()
        self._transition(ConnectionState.RECONNECTING)

    def _on_transport_reconnected(self) -> None:
        if self._state is not ConnectionState.RECONNECTING:
            return
        logger.info("Transport resumed")
        self._end_reconnect_window()
        self._transition(ConnectionState.CONNECTED)

    def _on_transport_disconnected(self, reason: Any) -> None:
        if self._state not in (ConnectionState.CONNECTED, ConnectionState.RECONNECTING):
            return

        logger.warning("Transport dropped the session", extra={"reason": str(reason)})
        room = self._room
        self._detach_room(room)

        if self._state is ConnectionState.CONNECTED:
            self._begin_reconnect_window()
            self._transition(ConnectionState.RECONNECTING)

        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.get_running_loop().create_task(
                self._reconnect_loop(), name="room-reconnect"
            )

    def _begin_reconnect_window(self) -> None:
        if self._reconnect_deadline is not None:
            return
        budget = self.config.reconnect_budget_s
        self._reconnect_deadline = self._scheduler.now() + budget
        self._budget_handle = self._scheduler.call_later(budget, self._on_budget_exhausted)

    def _end_reconnect_window(self) -> None:
        if self._budget_handle is not None:
            self._budget_handle.cancel()
            self._budget_handle = None
        self._reconnect_deadline = None

    def _on_budget_exhausted(self) -> None:
        self._budget_handle = None
        if self._state is ConnectionState.RECONNECTING:
            logger.warning(
                "Reconnection budget exhausted",
                extra={"budget_s": self.config.reconnect_budget_s},
            )
            self._give_up()

    async def _reconnect_loop(self) -> None:
        """Re-dial with backoff until connected or the budget runs out."""
        attempt = 0
        while self._state is ConnectionState.RECONNECTING and attempt < self._policy.max_attempts:
            deadline = self._reconnect_deadline
            if deadline is None or self._scheduler.now() >= deadline:
                break

            attempt += 1
            try:
                token = await self._token_supplier() if self._token_supplier else self._token
                if token is None or self._server_url is None:
                    logger.error("No credential available for reconnection")
                    break
                await self._dial(token, self._server_url)
            except AuthError as e:
                logger.error("Reconnection rejected, giving up", extra={"error": str(e)})
                break
            except SessionError as e:
                logger.warning(
                    "Reconnection attempt failed",
                    extra={"attempt": attempt, "error": str(e)},
                )
            else:
                if self._state is ConnectionState.RECONNECTING:
                    logger.info("Reconnected", extra={"attempt": attempt})
                    self._end_reconnect_window()
                    self._transition(ConnectionState.CONNECTED)
                return

            if self._state is not ConnectionState.RECONNECTING:
                return

            delay = self._policy.delay(attempt, self._rng)
            remaining = (self._reconnect_deadline or 0.0) - self._scheduler.now()
            if delay >= remaining:
                break
            await self._scheduler.sleep(delay)

        if self._state is ConnectionState.RECONNECTING:
            self._give_up()

    def _give_up(self) -> None:
        """Abandon reconnection: release the transport and go to DISCONNECTED."""
        self._end_reconnect_window()

        task = self._reconnect_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        self._reconnect_task = None

        room = self._room
        if room is not None:
            self._detach_room(room)
            self._background.spawn(self._release_room(room), name="room-release")

        self._transition(ConnectionState.DISCONNECTED)

    async def send_raw(self, payload: bytes) -> None:
        """Publish one payload on the data channel. No retry.

        Raises:
            ChannelUnavailableError: Not connected
            NetworkError: The transport rejected the publish
        """
        room = self._room
        if self._state is not ConnectionState.CONNECTED or room is None:
            raise ChannelUnavailableError(f"Cannot send while {self._state.value}")

        try:
            await room.local_participant.publish_data(
                payload, reliable=True, topic=self.config.data_topic
            )
        except Exception as e:
            raise categorize(e, "publish_data") from e

    async def disconnect(self) -> None:
        """Release the transport and end in DISCONNECTED. Never raises."""
        logger.info("Disconnecting from room", extra={"state": self._state.value})

        self._end_reconnect_window()

        current = asyncio.current_task()
        pending = [
            t
            for t in (self._connect_task, self._reconnect_task)
            if t is not None and t is not current and not t.done()
        ]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._connect_task = None
        self._reconnect_task = None

        room = self._room
        if room is not None:
            self._detach_room(room)
            await self._release_room(room)

        # Rooms handed off by an aborted dial or a give-up are still releasing
        await self._background.drain()

        if self._state is not ConnectionState.DISCONNECTED:
            self._transition(ConnectionState.DISCONNECTED)
