"""请求代理测试：会话单例、请求路由、会话丢失"""

import asyncio

import pytest

from browser_core import SessionUnavailableError
from web_model_service import BrokerSettings, WebModelService

from fakes import FakeSessionHost, settle


def make_service(host=None, **overrides):
    host = host or FakeSessionHost()
    settings = BrokerSettings(target_url="https://chat.example.com/", ready_timeout=1.0, **overrides)
    return WebModelService(host, settings), host


async def next_event(endpoint, timeout=1.0):
    message = await asyncio.wait_for(endpoint.events.receive(), timeout)
    assert message.kind == "stream"
    return message.payload


@pytest.mark.asyncio
async def test_concurrent_initialize_creates_one_session():
    service, host = make_service(FakeSessionHost(create_delay=0.05))
    try:
        results = await asyncio.gather(*[service.initialize() for _ in range(10)])

        assert results == [True] * 10
        assert host.create_calls == 1
        assert host.load_calls == 1
        assert host.handle.url == "https://chat.example.com/"
        assert service.status()["ready"] is True
    finally:
        await service.dispose()


@pytest.mark.asyncio
async def test_send_message_reuses_live_session():
    service, host = make_service()
    try:
        endpoint = service.connect("caller-a")
        await service.initialize()

        first = await endpoint.send_message("one")
        second = await endpoint.send_message("two", provider="gpt")

        assert first != second
        assert host.create_calls == 1
        commands = [(m.kind, m.payload) for m in host.downstream.drain()]
        assert commands == [
            ("submit", {"request_id": first, "prompt": "one", "provider": None}),
            ("submit", {"request_id": second, "prompt": "two", "provider": "gpt"}),
        ]
        assert sorted(service.pending_requests) == sorted([first, second])
    finally:
        await service.dispose()


@pytest.mark.asyncio
async def test_events_are_routed_only_to_originating_caller():
    service, host = make_service()
    try:
        alice = service.connect("alice")
        bob = service.connect("bob")

        alice_request = await alice.send_message("from alice")
        bob_request = await bob.send_message("from bob")

        host.upstream.send("chunk", {"request_id": bob_request, "content": "B", "done": False})
        host.upstream.send("chunk", {"request_id": alice_request, "content": "A", "done": True})

        assert await next_event(alice) == {"request_id": alice_request, "content": "A", "done": True}
        assert await next_event(bob) == {"request_id": bob_request, "content": "B", "done": False}

        await settle()
        assert alice.events.receive_nowait() is None
        assert bob.events.receive_nowait() is None
        assert service.pending_requests == [bob_request]
    finally:
        await service.dispose()


@pytest.mark.asyncio
async def test_events_for_unknown_requests_are_dropped():
    service, host = make_service()
    try:
        caller = service.connect("caller")
        await service.initialize()

        host.upstream.send("chunk", {"request_id": "nobody", "content": "x", "done": False})
        host.upstream.send("error", {"request_id": "nobody", "error": "boom"})
        await settle()

        assert caller.events.receive_nowait() is None
    finally:
        await service.dispose()


@pytest.mark.asyncio
async def test_error_event_retires_request_with_defaults():
    service, host = make_service()
    try:
        caller = service.connect("caller")
        request_id = await caller.send_message("hello")

        host.upstream.send("error", {"request_id": request_id})

        assert await next_event(caller) == {
            "request_id": request_id, "done": True, "error": "Unknown error"
        }
        assert service.pending_requests == []

        host.upstream.send("chunk", {"request_id": request_id, "content": "late", "done": True})
        await settle()
        assert caller.events.receive_nowait() is None
    finally:
        await service.dispose()


@pytest.mark.asyncio
async def test_malformed_upstream_event_is_ignored():
    service, host = make_service()
    try:
        caller = service.connect("caller")
        request_id = await caller.send_message("hello")

        host.upstream.send("chunk", {"content": "no id"})
        host.upstream.send("chunk", {"request_id": request_id, "content": "ok", "done": False})

        assert (await next_event(caller))["content"] == "ok"
    finally:
        await service.dispose()


@pytest.mark.asyncio
async def test_cancel_sends_command_and_retires_request():
    service, host = make_service()
    try:
        caller = service.connect("caller")
        request_id = await caller.send_message("hello")
        host.downstream.drain()

        caller.cancel(request_id)

        assert [(m.kind, m.payload) for m in host.downstream.drain()] == [
            ("cancel", {"request_id": request_id}),
        ]
        assert service.pending_requests == []

        host.upstream.send("chunk", {"request_id": request_id, "content": "late", "done": False})
        await settle()
        assert caller.events.receive_nowait() is None
    finally:
        await service.dispose()


@pytest.mark.asyncio
async def test_departed_caller_events_are_discarded():
    service, host = make_service()
    try:
        caller = service.connect("caller")
        request_id = await caller.send_message("hello")

        caller.close()
        host.upstream.send("chunk", {"request_id": request_id, "content": "x", "done": False})
        await settle()

        assert service.pending_requests == []
        assert service.status()["callers"] == 0
    finally:
        await service.dispose()


@pytest.mark.asyncio
async def test_creation_failure_raises_and_next_call_retries():
    host = FakeSessionHost(fail_create=True)
    service, _ = make_service(host)
    try:
        with pytest.raises(SessionUnavailableError):
            await service.initialize()

        host.fail_create = False
        assert await service.initialize() is True
        assert host.create_calls == 2
    finally:
        await service.dispose()


@pytest.mark.asyncio
async def test_send_message_fails_when_session_cannot_be_created():
    service, _ = make_service(FakeSessionHost(fail_create=True))
    try:
        caller = service.connect("caller")
        with pytest.raises(SessionUnavailableError):
            await caller.send_message("hello")
        assert service.pending_requests == []
    finally:
        await service.dispose()


@pytest.mark.asyncio
async def test_load_failure_closes_session():
    host = FakeSessionHost(fail_load=True)
    service, _ = make_service(host)
    try:
        with pytest.raises(SessionUnavailableError):
            await service.initialize()

        assert host.closed == [host.handle]
        assert service.session is None
        assert service.is_ready is False
    finally:
        await service.dispose()


@pytest.mark.asyncio
async def test_initialize_reports_not_ready_when_page_stays_silent():
    service, host = make_service(FakeSessionHost(auto_ready=False))
    service.settings.ready_timeout = 0.05
    try:
        assert await service.initialize() is False

        host.upstream.send("ready", {"session_id": "some-old-session"})
        await settle()
        assert service.is_ready is False

        host.upstream.send("ready", {"session_id": host.handle.session_id})
        await settle()
        assert service.is_ready is True
    finally:
        await service.dispose()


@pytest.mark.asyncio
async def test_session_loss_triggers_recreation_on_next_use():
    service, host = make_service()
    try:
        await service.initialize()
        first = host.handle

        host.close_session(first)
        await settle()

        assert service.session is None
        assert service.is_ready is False

        assert await service.initialize() is True
        assert host.create_calls == 2
        assert host.handle is not first
    finally:
        await service.dispose()


@pytest.mark.asyncio
async def test_pending_requests_kept_on_session_loss_by_default():
    service, host = make_service()
    try:
        caller = service.connect("caller")
        request_id = await caller.send_message("hello")

        host.close_session(host.handle)
        await settle()

        assert service.pending_requests == [request_id]
        assert caller.events.receive_nowait() is None
    finally:
        await service.dispose()


@pytest.mark.asyncio
async def test_pending_requests_failed_on_session_loss_when_enabled():
    service, host = make_service(fail_pending_on_session_loss=True)
    try:
        caller = service.connect("caller")
        request_id = await caller.send_message("hello")

        host.close_session(host.handle)

        assert await next_event(caller) == {
            "request_id": request_id, "done": True, "error": "Web model session closed"
        }
        assert service.pending_requests == []
    finally:
        await service.dispose()


@pytest.mark.asyncio
async def test_liveness_probe_detects_dead_session():
    host = FakeSessionHost()
    service, _ = make_service(host, health_check_interval=0.02)
    try:
        await service.initialize()
        first = host.handle
        host.is_alive = lambda handle: False

        await settle(0.1)

        assert first.closed is True
        assert service.session is None
    finally:
        await service.dispose()


@pytest.mark.asyncio
async def test_dispose_closes_session_and_callers():
    service, host = make_service()
    caller = service.connect("caller")
    await service.initialize()
    handle = host.handle

    await service.dispose()

    assert host.closed == [handle]
    assert caller.events.closed is True
    assert service.status()["session_id"] is None


@pytest.mark.asyncio
async def test_dispose_during_creation_closes_the_new_session():
    service, host = make_service(FakeSessionHost(create_delay=0.2))
    initializing = asyncio.create_task(service.initialize())
    await settle()
    assert host.create_calls == 1

    await service.dispose()

    assert len(host.sessions) == 1
    assert host.closed == [host.handle]
    assert host.load_calls == 0
    assert service.session is None
    with pytest.raises(asyncio.CancelledError):
        await initializing
