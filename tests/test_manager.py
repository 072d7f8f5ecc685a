from __future__ import annotations

import asyncio

import pytest

from ami.client import AsteriskManager
from ami.connection import ConnectionState, ManagerConnection
from ami.event_list import EventListResponse
from config.settings import ManagerConfig
from conftest import FakeWriter, make_reader, make_tokens
from telephony.errors import AuthenticationError, TransportError
from telephony.framing import BlockFramer

BANNER = "Asterisk Call Manager/5.0.1\r\n"
LOGIN_OK = "Response: Success\r\nActionID: login\r\nMessage: Authentication accepted\r\n\r\n"
CONFIG = ManagerConfig(host="pbx.example", port=5038, username="admin", secret="s3cret", connect_timeout=1.0)


class FakeOpener:
    def __init__(self, reader: asyncio.StreamReader | None = None, error: Exception | None = None) -> None:
        self.reader = reader
        self.error = error
        self.writer = FakeWriter()
        self.calls: list[tuple[str, int]] = []

    async def __call__(self, host: str, port: int):
        self.calls.append((host, port))
        if self.error is not None:
            raise self.error
        return self.reader, self.writer

    def actions(self) -> list[dict[str, str]]:
        return [message.fields for message in BlockFramer().feed(bytes(self.writer.buffer))]


def _manager(opener: FakeOpener, *tokens: str, cls=ManagerConnection, config: ManagerConfig = CONFIG):
    return cls(config, opener=opener, token_factory=make_tokens("login", *tokens))


@pytest.mark.asyncio
async def test_connect_reads_banner_and_logs_in() -> None:
    opener = FakeOpener(make_reader(BANNER + LOGIN_OK, eof=False))
    manager = _manager(opener)

    assert await manager.connect() is True

    assert manager.state is ConnectionState.AUTHENTICATED
    assert manager.authenticated
    assert manager.banner == "Asterisk Call Manager/5.0.1"
    assert opener.calls == [("pbx.example", 5038)]
    assert opener.actions() == [{"Action": "Login", "Username": "admin", "Secret": "s3cret", "ActionID": "login"}]


@pytest.mark.asyncio
async def test_connect_accepts_host_port_override() -> None:
    opener = FakeOpener(make_reader(BANNER + LOGIN_OK, eof=False))
    manager = _manager(opener)

    assert await manager.connect("10.0.0.9:5039", username="ops", secret="pw")

    assert opener.calls == [("10.0.0.9", 5039)]
    assert opener.actions()[0]["Username"] == "ops"
    assert (manager.server, manager.port) == ("10.0.0.9", 5039)


@pytest.mark.asyncio
async def test_rejected_login_closes_connection() -> None:
    reply = "Response: Error\r\nActionID: login\r\nMessage: Authentication failed\r\n\r\n"
    opener = FakeOpener(make_reader(BANNER + reply, eof=False))
    manager = _manager(opener)

    assert await manager.connect() is False

    assert manager.state is ConnectionState.CLOSED
    assert opener.writer.closed


@pytest.mark.asyncio
async def test_missing_banner_fails_connect() -> None:
    opener = FakeOpener(make_reader(""))
    manager = _manager(opener)

    assert await manager.connect() is False
    assert manager.state is ConnectionState.CLOSED


@pytest.mark.asyncio
async def test_unreachable_server_fails_connect() -> None:
    manager = _manager(FakeOpener(error=ConnectionRefusedError("refused")))

    assert await manager.connect() is False
    assert manager.state is ConnectionState.CLOSED


@pytest.mark.asyncio
async def test_connect_twice_is_a_usage_error() -> None:
    manager = _manager(FakeOpener(make_reader(BANNER + LOGIN_OK, eof=False)))
    await manager.connect()

    with pytest.raises(RuntimeError):
        await manager.connect()


@pytest.mark.asyncio
async def test_request_dispatches_events_and_returns_response() -> None:
    reader = make_reader(BANNER + LOGIN_OK, eof=False)
    manager = _manager(FakeOpener(reader), "ping")
    seen: list[str] = []
    manager.register_event_handler("PeerStatus", lambda name, message: seen.append(message["Peer"]))
    await manager.connect()

    reader.feed_data(
        b"Event: PeerStatus\r\nPeer: SIP/100\r\n\r\n"
        b"Response: Success\r\nActionID: ping\r\nPing: Pong\r\n\r\n"
    )
    response = await manager.request("Ping")

    assert response["Ping"] == "Pong"
    assert seen == ["SIP/100"]
    assert manager.correlator.pending_tokens == []


@pytest.mark.asyncio
async def test_request_aggregates_event_lists() -> None:
    reader = make_reader(BANNER + LOGIN_OK, eof=False)
    manager = _manager(FakeOpener(reader), "st")
    await manager.connect()

    reader.feed_data(
        b"Response: Success\r\nActionID: st\r\nEventList: start\r\nMessage: Channel status will follow\r\n\r\n"
        b"Event: Status\r\nActionID: st\r\nChannel: SIP/100-1\r\n\r\n"
        b"Event: StatusComplete\r\nActionID: st\r\nEventList: Complete\r\nItems: 1\r\n\r\n"
    )
    response = await manager.request("Status")

    assert isinstance(response, EventListResponse)
    assert [event["Channel"] for event in response.events] == ["SIP/100-1"]


@pytest.mark.asyncio
async def test_peer_close_raises_transport_error() -> None:
    reader = make_reader(BANNER + LOGIN_OK, eof=False)
    manager = _manager(FakeOpener(reader), "ping")
    await manager.connect()

    reader.feed_eof()
    with pytest.raises(TransportError):
        await manager.request("Ping")
    assert manager.state is ConnectionState.CLOSED


@pytest.mark.asyncio
async def test_disconnect_sends_logoff() -> None:
    reader = make_reader(BANNER + LOGIN_OK, eof=False)
    opener = FakeOpener(reader)
    manager = _manager(opener, "bye")
    await manager.connect()

    reader.feed_data(b"Response: Goodbye\r\nActionID: bye\r\nMessage: Thanks for all the fish.\r\n\r\n")
    await manager.disconnect()

    assert opener.actions()[-1] == {"Action": "Logoff", "ActionID": "bye"}
    assert manager.state is ConnectionState.CLOSED
    assert opener.writer.closed


@pytest.mark.asyncio
async def test_poll_times_out_quietly() -> None:
    manager = _manager(FakeOpener(make_reader(BANNER + LOGIN_OK, eof=False)))
    await manager.connect()

    message = await manager.poll(timeout=0.01)

    assert message.fields == {}


@pytest.mark.asyncio
async def test_client_context_manager_and_command_output() -> None:
    reader = make_reader(BANNER + LOGIN_OK, eof=False)
    opener = FakeOpener(reader)
    reader.feed_data(
        b"Response: Follows\r\nPrivilege: Command\r\nActionID: cmd\r\n"
        b"Asterisk 20.5.0 built by root\n--END COMMAND--\r\n\r\n"
        b"Response: Goodbye\r\nActionID: bye\r\n\r\n"
    )

    async with _manager(opener, "cmd", "bye", cls=AsteriskManager) as manager:
        response = await manager.command("core show version")

    assert response.payload == "Asterisk 20.5.0 built by root"
    assert opener.actions()[1] == {"Action": "Command", "Command": "core show version", "ActionID": "cmd"}
    assert manager.state is ConnectionState.CLOSED


@pytest.mark.asyncio
async def test_client_context_manager_raises_on_failed_login() -> None:
    opener = FakeOpener(make_reader(BANNER + "Response: Error\r\nActionID: login\r\n\r\n", eof=False))

    with pytest.raises(AuthenticationError):
        async with _manager(opener, cls=AsteriskManager):
            pass


@pytest.mark.asyncio
async def test_originate_sends_repeated_variables() -> None:
    reader = make_reader(BANNER + LOGIN_OK, eof=False)
    opener = FakeOpener(reader)
    manager = _manager(opener, "orig", cls=AsteriskManager)
    await manager.connect()

    reader.feed_data(b"Response: Success\r\nActionID: orig\r\nMessage: Originate successfully queued\r\n\r\n")
    await manager.originate("SIP/100", exten="200", context="default", priority=1, variables=["A=1", "B=2"], run_async=True)

    raw = bytes(opener.writer.buffer).decode()
    assert "Variable: A=1\r\nVariable: B=2\r\n" in raw
    assert "Async: true\r\n" in raw
    assert "Application" not in raw


@pytest.mark.asyncio
async def test_db_get_returns_value_from_follow_up_event() -> None:
    reader = make_reader(BANNER + LOGIN_OK, eof=False)
    manager = _manager(FakeOpener(reader), "db", cls=AsteriskManager)
    await manager.connect()

    reader.feed_data(
        b"Response: Success\r\nActionID: db\r\nEventList: start\r\nMessage: Result will follow\r\n\r\n"
        b"Event: DBGetResponse\r\nActionID: db\r\nFamily: cidname\r\nKey: 100\r\nVal: Alice\r\n\r\n"
    )

    assert await manager.db_get("cidname", "100") == "Alice"
    assert manager.correlator.pending_tokens == []


@pytest.mark.asyncio
async def test_db_get_missing_key_is_empty() -> None:
    reader = make_reader(BANNER + LOGIN_OK, eof=False)
    manager = _manager(FakeOpener(reader), "db", cls=AsteriskManager)
    await manager.connect()

    reader.feed_data(b"Response: Error\r\nActionID: db\r\nMessage: Database entry not found\r\n\r\n")

    assert await manager.db_get("cidname", "999") == ""


@pytest.mark.asyncio
async def test_poll_deadline_holds_while_bytes_trickle_in() -> None:
    reader = make_reader(BANNER + LOGIN_OK, eof=False)
    manager = _manager(FakeOpener(reader))
    await manager.connect()

    async def trickle() -> None:
        for _ in range(20):
            reader.feed_data(b"X-Padding: 1\r\n")
            await asyncio.sleep(0.03)

    feeder = asyncio.create_task(trickle())
    loop = asyncio.get_running_loop()
    started = loop.time()
    try:
        message = await manager.poll(timeout=0.1)
    finally:
        feeder.cancel()
    elapsed = loop.time() - started

    assert message.fields == {}
    assert elapsed < 0.3
