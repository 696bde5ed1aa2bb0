"""Unit tests for ConnectionManager.

Rooms are FakeRoom instances (SDK EventEmitter plus AsyncMock connect,
disconnect and publish_data) so room events can be emitted directly.
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest
from livekit import rtc

from duplex_client.config import BackoffConfig, ConnectionConfig
from duplex_client.connection import VALID_TRANSITIONS, ConnectionManager, ConnectionState
from duplex_client.errors import AuthError, ChannelUnavailableError, NetworkError, SessionError
from tests.helpers.fake_room import RoomFactory
from tests.helpers.fake_scheduler import FakeScheduler, settle

URL = "wss://lk.example.com"


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def rooms() -> RoomFactory:
    return RoomFactory()


@pytest.fixture
def config() -> ConnectionConfig:
    return ConnectionConfig(reconnect=BackoffConfig(jitter_s=0.0))


@pytest.fixture
def manager(
    config: ConnectionConfig, scheduler: FakeScheduler, rooms: RoomFactory
) -> ConnectionManager:
    return ConnectionManager(config, scheduler=scheduler, room_factory=rooms)


@pytest.fixture
def transitions(manager: ConnectionManager) -> list[tuple[str, str]]:
    """Record (old, new) state pairs."""
    recorded: list[tuple[str, str]] = []
    manager.on_state_changed(lambda new, old: recorded.append((old.value, new.value)))
    return recorded


async def connected(manager: ConnectionManager) -> ConnectionManager:
    await manager.connect("token-1", URL)
    assert manager.state is ConnectionState.CONNECTED
    return manager


def test_valid_transitions_cover_all_states() -> None:
    """Test every state has an outgoing edge and explicit disconnect is allowed."""
    assert set(VALID_TRANSITIONS) == set(ConnectionState)
    for state in ConnectionState:
        if state is not ConnectionState.DISCONNECTED:
            assert ConnectionState.DISCONNECTED in VALID_TRANSITIONS[state]
    assert ConnectionState.FAILED not in VALID_TRANSITIONS[ConnectionState.CONNECTED]


async def test_connect_success(
    manager: ConnectionManager, rooms: RoomFactory, transitions: list[tuple[str, str]]
) -> None:
    """Test connect moves disconnected → connecting → connected."""
    await manager.connect("token-1", URL)

    assert manager.state is ConnectionState.CONNECTED
    assert manager.is_connected
    assert transitions == [("disconnected", "connecting"), ("connecting", "connected")]

    room = rooms.latest
    room.connect.assert_awaited_once()
    url, token, options = room.connect.call_args.args
    assert (url, token) == (URL, "token-1")
    assert isinstance(options, rtc.RoomOptions)
    assert manager.room is room


async def test_connect_uses_configured_url(
    scheduler: FakeScheduler, rooms: RoomFactory
) -> None:
    """Test the configured server URL is used when none is passed."""
    manager = ConnectionManager(
        ConnectionConfig(server_url="ws://localhost:7880"), scheduler=scheduler, room_factory=rooms
    )
    await manager.connect("token-1")
    assert rooms.latest.connect.call_args.args[0] == "ws://localhost:7880"


async def test_connect_without_url_raises(manager: ConnectionManager) -> None:
    """Test a missing server URL is rejected before any transition."""
    with pytest.raises(ValueError, match="No LiveKit server URL"):
        await manager.connect("token-1")
    assert manager.state is ConnectionState.DISCONNECTED


async def test_concurrent_connect_shares_attempt(
    manager: ConnectionManager, rooms: RoomFactory
) -> None:
    """Test connect while connecting joins the in-flight attempt."""
    release = asyncio.Event()

    async def slow_connect(*_args: object) -> None:
        await release.wait()

    rooms.connect_side_effects.append(slow_connect)

    first = asyncio.create_task(manager.connect("token-1", URL))
    await settle()
    second = asyncio.create_task(manager.connect("token-1", URL))
    await settle()

    assert manager.state is ConnectionState.CONNECTING
    release.set()
    await asyncio.gather(first, second)

    assert len(rooms.rooms) == 1
    assert manager.state is ConnectionState.CONNECTED


async def test_connect_when_connected_is_noop(
    manager: ConnectionManager, rooms: RoomFactory
) -> None:
    """Test connect while connected does nothing."""
    await connected(manager)
    await manager.connect("token-2", URL)
    assert len(rooms.rooms) == 1


async def test_bad_token_fails_with_auth_error(
    manager: ConnectionManager, rooms: RoomFactory, transitions: list[tuple[str, str]]
) -> None:
    """Test a rejected token surfaces as AuthError and ends in failed."""
    rooms.connect_side_effects.append(rtc.ConnectError("401 Unauthorized: invalid token"))

    with pytest.raises(AuthError):
        await manager.connect("bad-token", URL)

    assert manager.state is ConnectionState.FAILED
    assert transitions[-1] == ("connecting", "failed")
    assert manager.room is None


async def test_transport_failure_is_network_error_and_recoverable(
    manager: ConnectionManager, rooms: RoomFactory
) -> None:
    """Test other failures are NetworkError and a new connect leaves failed."""
    rooms.connect_side_effects.append(rtc.ConnectError("connection refused"))

    with pytest.raises(NetworkError):
        await manager.connect("token-1", URL)
    assert manager.state is ConnectionState.FAILED

    await manager.connect("token-1", URL)
    assert manager.state is ConnectionState.CONNECTED


async def test_send_raw_requires_connection(manager: ConnectionManager) -> None:
    """Test send_raw fails fast when not connected."""
    with pytest.raises(ChannelUnavailableError):
        await manager.send_raw(b"{}")


async def test_send_raw_publishes_reliably(
    manager: ConnectionManager, rooms: RoomFactory
) -> None:
    """Test payloads go out reliable on the chat topic."""
    await connected(manager)

    await manager.send_raw(b'{"id": "m1"}')

    rooms.latest.local_participant.publish_data.assert_awaited_once_with(
        b'{"id": "m1"}', reliable=True, topic="chat"
    )


async def test_send_raw_categorizes_publish_errors(
    manager: ConnectionManager, rooms: RoomFactory
) -> None:
    """Test publish failures are categorized."""
    await connected(manager)
    publish = rooms.latest.local_participant.publish_data

    publish.side_effect = ConnectionResetError("reset")
    with pytest.raises(NetworkError):
        await manager.send_raw(b"{}")

    publish.side_effect = RuntimeError("engine closed")
    with pytest.raises(SessionError):
        await manager.send_raw(b"{}")


async def test_data_received_is_forwarded(manager: ConnectionManager, rooms: RoomFactory) -> None:
    """Test inbound packets are re-emitted as raw bytes with the sender."""
    await connected(manager)
    received: list[tuple[bytes, str | None]] = []
    unsubscribe = manager.on_raw_received(lambda data, sender: received.append((data, sender)))

    rooms.latest.receive({"id": "m1"}, identity="agent")
    unsubscribe()
    rooms.latest.receive({"id": "m2"}, identity="agent")

    assert received == [(b'{"id": "m1"}', "agent")]


async def test_participant_events_are_reemitted(
    manager: ConnectionManager, rooms: RoomFactory
) -> None:
    """Test remote participant join/leave are re-emitted by identity."""
    await connected(manager)
    joined: list[str] = []
    left: list[str] = []
    manager.on("participant_connected", joined.append)
    manager.on("participant_disconnected", left.append)

    participant = Mock(identity="agent")
    rooms.latest.emit("participant_connected", participant)
    rooms.latest.emit("participant_disconnected", participant)

    assert joined == ["agent"]
    assert left == ["agent"]


async def test_data_on_other_topic_is_ignored(
    manager: ConnectionManager, rooms: RoomFactory
) -> None:
    """Test only packets on the chat topic (or untagged ones) are forwarded."""
    await connected(manager)
    received: list[bytes] = []
    manager.on_raw_received(lambda data, sender: received.append(data))

    rooms.latest.receive({"id": "m1"}, topic="lk.agent.events")
    rooms.latest.receive({"id": "m2"}, topic="chat")
    rooms.latest.receive({"id": "m3"}, topic=None)

    assert received == [b'{"id": "m2"}', b'{"id": "m3"}']


async def test_media_events_are_reemitted(manager: ConnectionManager, rooms: RoomFactory) -> None:
    """Test track, speaker and quality events are re-emitted by identity."""
    await connected(manager)
    events: list[tuple] = []
    for name in (
        "track_subscribed",
        "track_unsubscribed",
        "active_speakers_changed",
        "connection_quality_changed",
    ):
        manager.on(name, lambda *args, name=name: events.append((name, *args)))

    track = Mock(sid="TR_1")
    publication = Mock(sid="TR_1")
    agent = Mock(identity="agent")
    room = rooms.latest
    room.emit("track_subscribed", track, publication, agent)
    room.emit("active_speakers_changed", [agent, Mock(identity="user")])
    room.emit("connection_quality_changed", agent, rtc.ConnectionQuality.QUALITY_POOR)
    room.emit("track_muted", agent, publication)
    room.emit("track_unmuted", agent, publication)
    room.emit("track_unsubscribed", track, publication, agent)

    assert events == [
        ("track_subscribed", track, publication, "agent"),
        ("active_speakers_changed", ["agent", "user"]),
        ("connection_quality_changed", "agent", rtc.ConnectionQuality.QUALITY_POOR),
        ("track_unsubscribed", track, publication, "agent"),
    ]


async def test_media_events_stop_after_disconnect(
    manager: ConnectionManager, rooms: RoomFactory
) -> None:
    """Test a released room no longer forwards media events."""
    await connected(manager)
    room = rooms.latest
    speakers: list[list[str]] = []
    manager.on("active_speakers_changed", speakers.append)

    await manager.disconnect()
    room.emit("active_speakers_changed", [Mock(identity="agent")])

    assert speakers == []


async def test_transport_resume_returns_to_connected(
    manager: ConnectionManager, rooms: RoomFactory, transitions: list[tuple[str, str]]
) -> None:
    """Test reconnecting → connected when the transport resumes."""
    await connected(manager)

    rooms.latest.emit("reconnecting")
    assert manager.state is ConnectionState.RECONNECTING

    rooms.latest.emit("reconnected")
    assert manager.state is ConnectionState.CONNECTED
    assert transitions[-2:] == [("connected", "reconnecting"), ("reconnecting", "connected")]


async def test_reconnect_budget_exhaustion_disconnects(
    manager: ConnectionManager, rooms: RoomFactory, scheduler: FakeScheduler
) -> None:
    """Test no resume within 30s releases the room and ends disconnected."""
    await connected(manager)
    room = rooms.latest

    room.emit("reconnecting")
    await scheduler.advance(29)
    assert manager.state is ConnectionState.RECONNECTING

    await scheduler.advance(1)
    assert manager.state is ConnectionState.DISCONNECTED
    assert manager.room is None
    room.disconnect.assert_awaited_once()


async def test_resume_cancels_budget_timer(
    manager: ConnectionManager, rooms: RoomFactory, scheduler: FakeScheduler
) -> None:
    """Test the budget timer no longer fires after a resume."""
    await connected(manager)
    rooms.latest.emit("reconnecting")
    rooms.latest.emit("reconnected")

    await scheduler.advance(60)
    assert manager.state is ConnectionState.CONNECTED


async def test_dropped_session_is_redialed_with_fresh_token(
    manager: ConnectionManager, rooms: RoomFactory
) -> None:
    """Test an unexpected disconnect re-dials using the token supplier."""
    supplier = AsyncMock(return_value="token-fresh")
    manager.set_token_supplier(supplier)
    await connected(manager)

    rooms.latest.emit("disconnected", "network")
    await settle()

    assert manager.state is ConnectionState.CONNECTED
    assert len(rooms.rooms) == 2
    assert rooms.latest.connect.call_args.args[1] == "token-fresh"
    supplier.assert_awaited_once()


async def test_redial_reuses_token_without_supplier(
    manager: ConnectionManager, rooms: RoomFactory
) -> None:
    """Test the original token is reused when no supplier is set."""
    await connected(manager)

    rooms.latest.emit("disconnected", "network")
    await settle()

    assert manager.state is ConnectionState.CONNECTED
    assert rooms.latest.connect.call_args.args[1] == "token-1"


async def test_redial_backs_off_then_gives_up(
    manager: ConnectionManager, rooms: RoomFactory, scheduler: FakeScheduler
) -> None:
    """Test failing re-dials back off and end disconnected."""
    await connected(manager)
    rooms.connect_side_effects.extend(rtc.ConnectError("connection refused") for _ in range(5))

    rooms.latest.emit("disconnected", "network")
    await settle()
    assert len(rooms.rooms) == 2

    await scheduler.advance(0.5)
    assert len(rooms.rooms) == 3

    await scheduler.advance(30)
    assert manager.state is ConnectionState.DISCONNECTED
    assert len(rooms.rooms) == 6


async def test_redial_succeeds_after_failures(
    manager: ConnectionManager, rooms: RoomFactory, scheduler: FakeScheduler
) -> None:
    """Test recovery within the budget returns to connected."""
    await connected(manager)
    rooms.connect_side_effects.extend(
        [rtc.ConnectError("connection refused"), rtc.ConnectError("connection refused")]
    )

    rooms.latest.emit("disconnected", "network")
    await scheduler.advance(1.5)

    assert manager.state is ConnectionState.CONNECTED
    assert len(rooms.rooms) == 4


async def test_redial_auth_failure_gives_up(
    manager: ConnectionManager, rooms: RoomFactory
) -> None:
    """Test a rejected token during re-dial ends disconnected immediately."""
    await connected(manager)
    rooms.connect_side_effects.append(rtc.ConnectError("token expired"))

    rooms.latest.emit("disconnected", "network")
    await settle()

    assert manager.state is ConnectionState.DISCONNECTED
    assert len(rooms.rooms) == 2


async def test_disconnect_releases_room(
    manager: ConnectionManager, rooms: RoomFactory, transitions: list[tuple[str, str]]
) -> None:
    """Test disconnect releases the room and ends disconnected."""
    await connected(manager)
    room = rooms.latest

    await manager.disconnect()

    assert manager.state is ConnectionState.DISCONNECTED
    assert manager.room is None
    room.disconnect.assert_awaited_once()
    assert transitions[-1] == ("connected", "disconnected")


async def test_disconnect_never_raises(manager: ConnectionManager, rooms: RoomFactory) -> None:
    """Test disconnect swallows transport release errors."""
    await connected(manager)
    rooms.latest.disconnect.side_effect = RuntimeError("already closed")

    await manager.disconnect()
    await manager.disconnect()

    assert manager.state is ConnectionState.DISCONNECTED


async def test_disconnect_aborts_pending_connect(
    manager: ConnectionManager, rooms: RoomFactory
) -> None:
    """Test disconnect while connecting aborts the attempt."""
    never = asyncio.Event()

    async def hang(*_args: object) -> None:
        await never.wait()

    rooms.connect_side_effects.append(hang)
    task = asyncio.create_task(manager.connect("token-1", URL))
    await settle()

    await manager.disconnect()

    with pytest.raises(ChannelUnavailableError):
        await task
    assert manager.state is ConnectionState.DISCONNECTED


async def test_disconnect_during_connect_waits_for_room_release(
    manager: ConnectionManager, rooms: RoomFactory
) -> None:
    """Test an aborted dial's room is fully released before disconnect returns."""
    never = asyncio.Event()
    released: list[bool] = []

    async def hang(*_args: object) -> None:
        await never.wait()

    async def slow_release() -> None:
        await asyncio.sleep(0.01)
        released.append(True)

    rooms.connect_side_effects.append(hang)
    task = asyncio.create_task(manager.connect("token-1", URL))
    await settle()
    rooms.latest.disconnect.side_effect = slow_release

    await manager.disconnect()

    assert released == [True]
    assert manager.state is ConnectionState.DISCONNECTED
    with pytest.raises(ChannelUnavailableError):
        await task


async def test_disconnect_cancels_reconnection(
    manager: ConnectionManager, rooms: RoomFactory, scheduler: FakeScheduler
) -> None:
    """Test disconnect during re-dial backoff stops further attempts."""
    await connected(manager)
    rooms.connect_side_effects.append(rtc.ConnectError("connection refused"))

    rooms.latest.emit("disconnected", "network")
    await settle()
    await manager.disconnect()
    await scheduler.advance(30)

    assert manager.state is ConnectionState.DISCONNECTED
    assert len(rooms.rooms) == 2


async def test_room_info(manager: ConnectionManager, rooms: RoomFactory) -> None:
    """Test room_info reports name and remote identities."""
    assert manager.room_info() is None
    await connected(manager)
    rooms.latest.remote_participants = {"agent": object(), "bob": object()}

    assert manager.room_info() == {"name": "test-room", "participants": ["agent", "bob"]}
