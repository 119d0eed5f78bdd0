"""Tests for the dispatcher's request validation pipeline."""

from __future__ import annotations

import asyncio
import logging

import pytest

from hostcall.config import DispatcherConfig, HostcallConfig
from hostcall.dispatcher import broadcast
from tests.helpers.wait import settle, wait_until


async def _add(args):
    return args["a"] + args["b"]


async def _explode(args):
    raise RuntimeError("boom")


def _explode_sync(args):
    raise ValueError("sync boom")


def _not_async(args):
    return 42


@pytest.fixture
async def running(make_dispatcher):
    dispatcher, servers = make_dispatcher(
        {
            "add": _add,
            "explode": _explode,
            "explode_sync": _explode_sync,
            "not_async": _not_async,
        }
    )
    await dispatcher.start("app1")
    yield dispatcher, servers[0]
    await dispatcher.stop()


async def _request(server, envelope, *, count: int = 1):
    connection = server.attach()
    server.deliver(connection, envelope)
    await wait_until(lambda: len(connection.received) >= count, description="reply")
    return connection.replies()


# ---------------------------------------------------------------------------
# Success and failure outcomes
# ---------------------------------------------------------------------------


async def test_handler_result_becomes_reply(running) -> None:
    _dispatcher, server = running

    replies = await _request(server, {"id": "r1", "name": "add", "args": {"a": 1, "b": 2}})

    assert replies == [{"type": "reply", "id": "r1", "result": 3}]


async def test_unknown_method_replies_with_null_result(running, caplog) -> None:
    _dispatcher, server = running

    with caplog.at_level(logging.WARNING, logger="hostcall.dispatcher"):
        replies = await _request(server, {"id": "r2", "name": "nope", "args": {}})

    assert replies == [{"type": "reply", "id": "r2", "result": None}]
    assert "Unknown method: nope" in caplog.text


@pytest.mark.parametrize(
    ("method", "message"),
    [("explode", "boom"), ("explode_sync", "sync boom")],
)
async def test_sync_and_async_failures_become_error_replies(running, method, message) -> None:
    _dispatcher, server = running

    replies = await _request(server, {"id": "r3", "name": method, "args": {}})

    assert replies == [{"type": "error", "id": "r3", "result": message}]


async def test_non_awaitable_handler_result_is_an_error(running) -> None:
    _dispatcher, server = running

    replies = await _request(server, {"id": "r4", "name": "not_async", "args": {}})

    assert replies[0]["type"] == "error"
    assert "did not return an awaitable" in replies[0]["result"]


async def test_unserializable_result_is_an_error(make_dispatcher) -> None:
    async def opaque(args):
        return object()

    dispatcher, servers = make_dispatcher({"opaque": opaque})
    await dispatcher.start("app1")
    try:
        replies = await _request(servers[0], {"id": "r5", "name": "opaque"})
    finally:
        await dispatcher.stop()

    assert replies == [
        {"type": "error", "id": "r5", "result": "Result of 'opaque' is not JSON serializable"}
    ]


async def test_missing_args_default_to_empty_object(make_dispatcher) -> None:
    seen: list[object] = []

    async def record(args):
        seen.append(args)
        return None

    dispatcher, servers = make_dispatcher({"record": record})
    await dispatcher.start("app1")
    try:
        await _request(servers[0], {"id": "r6", "name": "record"})
    finally:
        await dispatcher.stop()

    assert seen == [{}]


async def test_failure_log_names_method_and_arguments(running, caplog) -> None:
    _dispatcher, server = running

    with caplog.at_level(logging.WARNING, logger="hostcall.dispatcher"):
        await _request(server, {"id": "r7", "name": "explode", "args": {"secret": 1}})

    assert "Error in explode args={'secret': 1}: boom" in caplog.text


async def test_failure_log_can_omit_arguments(make_dispatcher, caplog) -> None:
    config = HostcallConfig(dispatcher=DispatcherConfig(log_arguments=False))
    dispatcher, servers = make_dispatcher({"explode": _explode}, config)
    await dispatcher.start("app1")
    try:
        with caplog.at_level(logging.WARNING, logger="hostcall.dispatcher"):
            await _request(servers[0], {"id": "r8", "name": "explode", "args": {"secret": 1}})
    finally:
        await dispatcher.stop()

    assert "secret" not in caplog.text
    assert "Error in explode: boom" in caplog.text


# ---------------------------------------------------------------------------
# Malformed requests
# ---------------------------------------------------------------------------


async def test_missing_name_is_an_error_reply(running) -> None:
    _dispatcher, server = running

    replies = await _request(server, {"id": "r9", "args": {}})

    assert replies == [{"type": "error", "id": "r9", "result": "Request is missing a method name"}]


@pytest.mark.parametrize(
    "payload",
    [
        '{"name": "add", "args": {"a": 1, "b": 2}}',
        '{"id": 7, "name": "add", "args": {"a": 1, "b": 2}}',
        "not json at all",
        '"a string"',
    ],
)
async def test_requests_without_usable_id_are_dropped(running, payload) -> None:
    _dispatcher, server = running
    connection = server.attach()

    server.deliver(connection, payload)
    await settle()

    assert connection.received == []


async def test_reply_goes_only_to_the_requesting_connection(running) -> None:
    _dispatcher, server = running
    a = server.attach("a")
    b = server.attach("b")

    server.deliver(a, {"id": "from-a", "name": "add", "args": {"a": 2, "b": 2}})
    await wait_until(lambda: a.received, description="reply to a")

    assert a.replies() == [{"type": "reply", "id": "from-a", "result": 4}]
    assert b.received == []


async def test_reply_to_closed_connection_is_dropped(make_dispatcher) -> None:
    gate = asyncio.Event()

    async def slow(args):
        await gate.wait()
        return "late"

    dispatcher, servers = make_dispatcher({"slow": slow})
    await dispatcher.start("app1")
    server = servers[0]
    connection = server.attach()
    try:
        server.deliver(connection, {"id": "r10", "name": "slow"})
        await settle()
        connection.closed = True
        gate.set()
        await settle()
    finally:
        await dispatcher.stop()

    assert connection.received == []


# ---------------------------------------------------------------------------
# Concurrency and lifecycle
# ---------------------------------------------------------------------------


async def test_concurrent_handlers_complete_out_of_order(make_dispatcher) -> None:
    release_first = asyncio.Event()

    async def first(args):
        await release_first.wait()
        return "first"

    async def second(args):
        return "second"

    dispatcher, servers = make_dispatcher({"first": first, "second": second})
    await dispatcher.start("app1")
    server = servers[0]
    connection = server.attach()
    try:
        server.deliver(connection, {"id": "1", "name": "first"})
        server.deliver(connection, {"id": "2", "name": "second"})
        await wait_until(lambda: len(connection.received) == 1, description="second reply")
        release_first.set()
        await wait_until(lambda: len(connection.received) == 2, description="first reply")
    finally:
        await dispatcher.stop()

    assert [r["id"] for r in connection.replies()] == ["2", "1"]


async def test_handler_table_is_read_only(make_dispatcher) -> None:
    handlers = {"add": _add}
    dispatcher, _servers = make_dispatcher(handlers)

    handlers["late"] = _add

    assert "late" not in dispatcher.handlers
    with pytest.raises(TypeError):
        dispatcher.handlers["x"] = _add  # type: ignore[index]


async def test_start_twice_is_rejected(running) -> None:
    dispatcher, _server = running

    with pytest.raises(RuntimeError, match="already bound"):
        await dispatcher.start("app2")


async def test_stop_cancels_in_flight_handlers(make_dispatcher) -> None:
    cancelled = asyncio.Event()

    async def forever(args):
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            cancelled.set()
            raise

    dispatcher, servers = make_dispatcher({"forever": forever})
    await dispatcher.start("app1")
    connection = servers[0].attach()
    servers[0].deliver(connection, {"id": "r11", "name": "forever"})
    await settle()

    await dispatcher.stop()

    assert cancelled.is_set()
    assert not dispatcher.is_running
    assert connection.received == []


# ---------------------------------------------------------------------------
# Broadcast
# ---------------------------------------------------------------------------


async def test_broadcast_reaches_every_connection(running) -> None:
    dispatcher, server = running
    a = server.attach("a")
    b = server.attach("b")

    reached = dispatcher.broadcast("tick", {"t": 1})

    assert reached == 2
    expected = [{"type": "push", "name": "tick", "args": {"t": 1}}]
    assert a.replies() == expected
    assert b.replies() == expected


async def test_module_broadcast_uses_running_dispatchers(make_dispatcher) -> None:
    one, one_servers = make_dispatcher({})
    two, two_servers = make_dispatcher({})
    await one.start("chan-one")
    await two.start("chan-two")
    conn_one = one_servers[0].attach()
    conn_two = two_servers[0].attach()
    try:
        assert broadcast("all", 1) == 2
        assert broadcast("only-two", 2, channel="chan-two") == 1
    finally:
        await one.stop()
        await two.stop()

    assert [r["name"] for r in conn_one.replies()] == ["all"]
    assert [r["name"] for r in conn_two.replies()] == ["all", "only-two"]
    assert broadcast("after-stop") == 0


async def test_broadcast_when_stopped_is_a_no_op(make_dispatcher) -> None:
    dispatcher, _servers = make_dispatcher({})

    assert dispatcher.broadcast("tick") == 0
