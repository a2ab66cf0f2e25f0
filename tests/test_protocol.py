"""Tests for ClientSession: handshake, correlation, timeouts, reconnect."""

from __future__ import annotations

import asyncio
import json

import pytest

from toolbridge.catalog import ToolCatalog
from toolbridge.errors import (
    ConnectionFailed,
    HandlerError,
    HandshakeTimeout,
    ProtocolError,
    RequestInterrupted,
    RequestTimeout,
    SchemaValidationError,
    SessionClosed,
    ToolNotFound,
    TransportExhausted,
)
from toolbridge.protocol import ClientSession, SessionState
from toolbridge.server import ToolServer
from toolbridge.servers.datetime_utils import CurrentUtcTimeTool
from toolbridge.servers.weather import GetWeatherTool
from toolbridge.transport import transport_for

from conftest import ScriptedTransport, fast_policy, sent_requests, wait_until


def tcp_session(endpoint: str, **policy) -> ClientSession:
    return ClientSession(
        transport_for(endpoint),
        client_name="MCPClient",
        client_version="1.0.0",
        policy=fast_policy(**policy),
    )


async def scripted_session(**policy) -> tuple[ClientSession, ScriptedTransport]:
    transport = ScriptedTransport()
    session = ClientSession(transport, policy=fast_policy(**policy))
    await session.connect()
    return session, transport


# ============================================================
# END TO END OVER TCP
# ============================================================


@pytest.mark.asyncio
async def test_handshake_reaches_ready_once(running_server) -> None:
    session = tcp_session(running_server.endpoint)
    assert session.state is SessionState.DISCONNECTED

    await session.connect()
    await session.connect()

    assert session.state is SessionState.READY
    assert session.handshake_count == 1
    assert session.server_info == {"name": "test-server", "version": "9.9.9"}
    assert "tools" in session.capabilities
    assert session.last_activity is not None
    await session.close()


@pytest.mark.asyncio
async def test_list_tools_in_registration_order(running_server) -> None:
    async with tcp_session(running_server.endpoint) as session:
        tools = await session.list_tools()

    assert [t.name for t in tools] == ["get_weather", "count", "explode", "sleep"]
    weather = tools[0]
    assert weather.required == ["city"]
    assert weather.properties["city"]["type"] == "string"


@pytest.mark.asyncio
async def test_get_weather_for_boston(running_server) -> None:
    async with tcp_session(running_server.endpoint) as session:
        result = await session.call_tool("get_weather", {"city": "Boston"})

    assert result.success is True
    assert result.payload == {"condition": "rainy"}
    assert result.error is None


@pytest.mark.asyncio
async def test_unknown_tool_never_invokes_handler(running_server) -> None:
    async with tcp_session(running_server.endpoint) as session:
        with pytest.raises(ToolNotFound):
            await session.call_tool("get_forecast", {"city": "Boston"})
        with pytest.raises(SchemaValidationError):
            await session.call_tool("count", {"label": 3})

    assert running_server.counter.calls == []


@pytest.mark.asyncio
async def test_handler_failure_surfaces_as_handler_error(running_server) -> None:
    async with tcp_session(running_server.endpoint) as session:
        with pytest.raises(HandlerError) as exc_info:
            await session.call_tool("explode", {})
        # Session is unaffected
        assert (await session.call_tool("count", {"label": "after"})).payload == {"count": 1}

    assert exc_info.value.detail == "boom"


@pytest.mark.asyncio
async def test_responses_matched_out_of_order(running_server) -> None:
    async with tcp_session(running_server.endpoint) as session:
        slow_request = session.new_call("sleep", {"seconds": 0.5, "tag": "slow"})
        fast_request = session.new_call("sleep", {"seconds": 0.01, "tag": "fast"})
        slow = asyncio.create_task(session.invoke(slow_request))
        fast = asyncio.create_task(session.invoke(fast_request))

        done, _ = await asyncio.wait({slow, fast}, return_when=asyncio.FIRST_COMPLETED)
        assert done == {fast}
        assert fast.result().payload == {"tag": "fast"}
        assert fast.result().correlation_id == fast_request.correlation_id
        assert (await slow).payload == {"tag": "slow"}
        assert (await slow).correlation_id == slow_request.correlation_id


@pytest.mark.asyncio
async def test_request_times_out_without_response(running_server) -> None:
    async with tcp_session(running_server.endpoint, connection_timeout=0.3) as session:
        with pytest.raises(RequestTimeout):
            await session.call_tool("sleep", {"seconds": 3, "tag": "late"})
        assert session.pending_count == 0
        assert session.state is SessionState.READY
        assert (await session.call_tool("count", {"label": "x"})).success


@pytest.mark.asyncio
async def test_close_interrupts_pending_requests(running_server) -> None:
    session = tcp_session(running_server.endpoint)
    await session.connect()
    call = asyncio.create_task(session.call_tool("sleep", {"seconds": 5, "tag": "never"}))
    await wait_until(lambda: session.pending_count == 1)

    await session.close()
    await session.close()

    with pytest.raises(RequestInterrupted):
        await call
    with pytest.raises(SessionClosed):
        await session.list_tools()
    with pytest.raises(SessionClosed):
        await session.connect()
    assert session.state is SessionState.CLOSED


@pytest.mark.asyncio
async def test_reconnect_fetches_fresh_catalog(running_server) -> None:
    port = running_server.server.port
    session = tcp_session(running_server.endpoint, max_reconnect_attempts=40)
    await session.connect()
    before = await session.list_tools()

    # The server restarts with a different catalog on the same port
    await running_server.server.shutdown()
    restarted = ToolServer(ToolCatalog(), name="restarted")
    restarted.register(CurrentUtcTimeTool())
    restarted.register(GetWeatherTool())
    await restarted.serve_tcp("127.0.0.1", port)
    try:
        await wait_until(lambda: session.handshake_count == 2)
        after = await session.list_tools()
    finally:
        await session.close()
        await restarted.shutdown()

    assert [t.name for t in before] == ["get_weather", "count", "explode", "sleep"]
    assert [t.name for t in after] == ["get_current_utc_time", "get_weather"]
    assert session.server_info["name"] == "restarted"


@pytest.mark.asyncio
async def test_unreachable_server_mid_call_exhausts(running_server) -> None:
    session = tcp_session(running_server.endpoint, max_reconnect_attempts=2)
    await session.connect()
    call = asyncio.create_task(session.call_tool("sleep", {"seconds": 5, "tag": "lost"}))
    await wait_until(lambda: session.pending_count == 1)

    await running_server.server.shutdown()

    with pytest.raises(TransportExhausted) as exc_info:
        await call
    assert exc_info.value.attempts == 2
    assert session.state is SessionState.CLOSED
    with pytest.raises(SessionClosed) as closed_info:
        await session.call_tool("get_weather", {"city": "Boston"})
    assert isinstance(closed_info.value.__cause__, TransportExhausted)


# ============================================================
# SCRIPTED TRANSPORT
# ============================================================


@pytest.mark.asyncio
async def test_handshake_timeout_returns_to_disconnected() -> None:
    transport = ScriptedTransport(respond_to_handshake=False)
    session = ClientSession(transport, policy=fast_policy(connection_timeout=0.2))

    with pytest.raises(HandshakeTimeout):
        await session.connect()
    assert session.state is SessionState.DISCONNECTED
    assert not transport.is_alive()

    transport.respond_to_handshake = True
    await session.connect()
    assert session.state is SessionState.READY
    await session.close()


@pytest.mark.asyncio
async def test_handshake_carries_identity_without_id() -> None:
    session, transport = await scripted_session()
    handshake = sent_requests(transport, "initialize")

    assert len(handshake) == 1
    assert "id" not in handshake[0]
    assert handshake[0]["params"]["clientInfo"] == {"name": "MCPClient", "version": "1.0.0"}
    await session.close()


@pytest.mark.asyncio
async def test_request_before_connect_rejected() -> None:
    session = ClientSession(ScriptedTransport(), policy=fast_policy())
    with pytest.raises(ProtocolError):
        await session.list_tools()


@pytest.mark.asyncio
async def test_routing_by_id_skips_noise() -> None:
    session, transport = await scripted_session()
    first = asyncio.create_task(session.call_tool("a", {}))
    second = asyncio.create_task(session.call_tool("b", {}))
    await wait_until(lambda: len(sent_requests(transport, "tools/call")) == 2)
    ids = {r["params"]["name"]: r["id"] for r in sent_requests(transport, "tools/call")}

    transport.feed("not json at all")
    transport.feed(json.dumps({"jsonrpc": "2.0", "id": 999, "result": {}}))
    transport.feed(json.dumps({"jsonrpc": "2.0", "id": ids["b"], "result": {"success": True, "payload": "B"}}))
    transport.feed(json.dumps({"jsonrpc": "2.0", "id": ids["a"], "result": {"success": True, "payload": "A"}}))

    assert (await second).payload == "B"
    assert (await first).payload == "A"
    assert session.state is SessionState.READY
    await session.close()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "code, expected",
    [(-32001, ToolNotFound), (-32602, SchemaValidationError), (-32601, ProtocolError)],
)
async def test_remote_error_codes_mapped(code, expected) -> None:
    session, transport = await scripted_session()
    call = asyncio.create_task(session.call_tool("x", {}))
    await wait_until(lambda: len(sent_requests(transport, "tools/call")) == 1)
    request_id = sent_requests(transport, "tools/call")[0]["id"]

    transport.feed(json.dumps({"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": "nope"}}))

    with pytest.raises(expected):
        await call
    await session.close()


@pytest.mark.asyncio
async def test_correlation_ids_unique_and_never_reused() -> None:
    session, transport = await scripted_session()
    requests = [session.new_call("t", {}) for _ in range(50)]
    assert len({r.correlation_id for r in requests}) == 50

    in_flight = asyncio.create_task(session.invoke(requests[0]))
    await wait_until(lambda: session.pending_count == 1)
    with pytest.raises(ProtocolError):
        await session.invoke(requests[0])

    await session.close()
    with pytest.raises(RequestInterrupted):
        await in_flight


@pytest.mark.asyncio
async def test_in_flight_request_interrupted_by_reconnect_not_resent() -> None:
    session, transport = await scripted_session()
    call = asyncio.create_task(session.call_tool("slow", {}))
    await wait_until(lambda: session.pending_count == 1)

    transport.drop()

    with pytest.raises(RequestInterrupted):
        await call
    assert session.state is SessionState.READY
    assert session.handshake_count == 2
    assert len(sent_requests(transport, "tools/call")) == 1

    # Ids keep increasing across the reconnect
    later = session.new_call("t", {})
    assert later.correlation_id > sent_requests(transport, "tools/call")[0]["id"]
    await session.close()


@pytest.mark.asyncio
async def test_exhaustion_after_exact_attempts_closes_session() -> None:
    session, transport = await scripted_session(max_reconnect_attempts=3)
    transport.refuse_connects = True

    transport.drop()
    await wait_until(lambda: session.state is SessionState.CLOSED)

    # One initial connect plus exactly three reconnect attempts
    assert transport.open_attempts == 1 + 3
    with pytest.raises(SessionClosed):
        await session.list_tools()


@pytest.mark.asyncio
async def test_requests_during_reconnect_wait_for_ready() -> None:
    session, transport = await scripted_session(reconnect_delay=0.2)
    transport.drop()
    await wait_until(lambda: session.state is SessionState.RECONNECTING)

    call = asyncio.create_task(session.ping())
    await wait_until(lambda: len(sent_requests(transport, "ping")) == 1)
    assert session.state is SessionState.READY

    request_id = sent_requests(transport, "ping")[0]["id"]
    transport.feed(json.dumps({"jsonrpc": "2.0", "id": request_id, "result": {"status": "ok"}}))
    assert await call == {"status": "ok"}
    await session.close()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "ack",
    [
        {"jsonrpc": "2.0", "id": None, "result": "ok"},
        {"jsonrpc": "2.0", "id": None, "error": "nope"},
    ],
)
async def test_malformed_handshake_ack_fails_connect(ack) -> None:
    transport = ScriptedTransport()
    transport.handshake_ack = ack
    session = ClientSession(transport, policy=fast_policy())

    with pytest.raises(ConnectionFailed):
        await session.connect()
    assert session.state is SessionState.DISCONNECTED
    assert not transport.is_alive()


@pytest.mark.asyncio
async def test_malformed_ack_on_reconnect_counts_as_failed_attempt() -> None:
    session, transport = await scripted_session(max_reconnect_attempts=2)
    call = asyncio.create_task(session.call_tool("slow", {}))
    await wait_until(lambda: session.pending_count == 1)

    transport.handshake_ack = {"jsonrpc": "2.0", "id": None, "result": "ok"}
    transport.drop()

    with pytest.raises(TransportExhausted):
        await call
    assert session.state is SessionState.CLOSED
    assert transport.open_attempts == 1 + 2
    with pytest.raises(SessionClosed):
        await session.list_tools()


@pytest.mark.asyncio
async def test_unexpected_recovery_failure_closes_session() -> None:
    session, transport = await scripted_session()
    call = asyncio.create_task(session.call_tool("slow", {}))
    await wait_until(lambda: session.pending_count == 1)

    async def broken_reconnect(policy, on_connected=None):
        raise RuntimeError("reconnect bug")

    transport.reconnect = broken_reconnect
    transport.drop()

    with pytest.raises(RuntimeError):
        await call
    assert session.state is SessionState.CLOSED
    with pytest.raises(SessionClosed) as exc_info:
        await session.list_tools()
    assert isinstance(exc_info.value.__cause__, RuntimeError)


@pytest.mark.asyncio
async def test_invalid_response_ids_are_discarded() -> None:
    session, transport = await scripted_session()
    ping = asyncio.create_task(session.ping())
    await wait_until(lambda: len(sent_requests(transport, "ping")) == 1)
    request_id = sent_requests(transport, "ping")[0]["id"]

    transport.feed(json.dumps({"jsonrpc": "2.0", "id": [request_id], "result": {}}))
    transport.feed(json.dumps({"jsonrpc": "2.0", "id": {"n": request_id}, "result": {}}))
    # true == 1 in Python; it must not match request 1
    transport.feed(json.dumps({"jsonrpc": "2.0", "id": True, "result": {"status": "wrong"}}))
    transport.feed(json.dumps({"jsonrpc": "2.0", "id": request_id, "result": {"status": "ok"}}))

    assert await ping == {"status": "ok"}
    assert session.state is SessionState.READY
    await session.close()
