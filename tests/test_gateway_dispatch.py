from __future__ import annotations

import asyncio

import pytest

from propchat.realtime.gateway import GatewayConfig, RealtimeGateway, run_periodic
from propchat.realtime.hub import ConnectionState, RealtimeConnection
from tests.fakes import FakeTransport, InMemoryStore, ManualClock, StaticVerifier, World

AGENT_TOKEN = "agent-token"


def _gateway(
    store: InMemoryStore,
    *,
    clock: ManualClock | None = None,
    verifier: StaticVerifier | None = None,
    ready_delay_ms: int = 0,
) -> RealtimeGateway:
    return RealtimeGateway(
        store=store,
        verifier=verifier or StaticVerifier({AGENT_TOKEN: "agent-1"}),
        config=GatewayConfig(ready_delay_ms=ready_delay_ms, ping_ttl_s=300),
        clock=clock or ManualClock(),
    )


async def _connect(
    gateway: RealtimeGateway,
    *,
    user_type: str | None,
    token: str | None = None,
    timeline_id: str | None = None,
) -> tuple[RealtimeConnection, FakeTransport]:
    transport = FakeTransport()
    connection = gateway.open(transport, timeline_id=timeline_id)
    assert await gateway.authenticate(connection, user_type=user_type, token=token)
    return connection, transport


def test_handshake_sends_connected_then_marks_ready(store: InMemoryStore, world: World) -> None:
    gateway = _gateway(store)

    async def _run() -> tuple[RealtimeConnection, FakeTransport]:
        return await _connect(gateway, user_type="AGENT", token=AGENT_TOKEN)

    connection, transport = asyncio.run(_run())

    assert connection.state == ConnectionState.READY
    [connected] = transport.events("connected")
    assert connected["userId"] == world.agent.id
    assert connected["userType"] == "AGENT"
    assert connected["socketId"] == connection.connection_id
    assert connected["message"] == "Successfully connected"
    assert "agent:agent-1" in connection.groups


def test_verifier_outage_refuses_connection(store: InMemoryStore) -> None:
    gateway = _gateway(store, verifier=StaticVerifier(broken=True))
    transport = FakeTransport()

    async def _run() -> bool:
        connection = gateway.open(transport)
        return await gateway.authenticate(connection, user_type="AGENT", token="anything")

    assert asyncio.run(_run()) is False
    assert transport.events("error") == [{"message": "Authentication failed"}]
    assert transport.close_code == 4401
    assert gateway.stats()["connections"] == 0


def test_events_before_connected_are_rejected(store: InMemoryStore, world: World) -> None:
    gateway = _gateway(store)
    transport = FakeTransport()

    async def _run() -> None:
        connection = gateway.open(transport)
        await gateway.dispatch(connection, "join-property-conversation", {"propertyId": "property-1"})
        await gateway.dispatch(connection, "ping", {})

    asyncio.run(_run())

    assert transport.frames[0]["type"] == "error"
    assert transport.frames[0]["payload"] == {
        "message": "Connection not ready",
        "event": "join-property-conversation",
    }
    assert transport.frames[1]["type"] == "pong"
    assert store.calls["find_conversation_by_property"] == 0


def test_events_during_ready_delay_wait_for_ready(store: InMemoryStore, world: World) -> None:
    gateway = _gateway(store, ready_delay_ms=30)
    transport = FakeTransport()

    async def _run() -> None:
        connection = gateway.open(transport, timeline_id=world.timeline.id)
        handshake = asyncio.create_task(
            gateway.authenticate(connection, user_type="CLIENT", token=None)
        )
        while not connection.confirmed:
            await asyncio.sleep(0)
        await gateway.dispatch(
            connection, "join-property-conversation", {"propertyId": world.property.id}
        )
        assert await handshake

    asyncio.run(_run())

    assert transport.names() == ["connected", "property-conversation-joined"]
    [joined] = transport.events("property-conversation-joined")
    assert joined["status"] == "success"


def test_unknown_event_gets_error(store: InMemoryStore, world: World) -> None:
    gateway = _gateway(store)

    async def _run() -> FakeTransport:
        connection, transport = await _connect(gateway, user_type="AGENT", token=AGENT_TOKEN)
        transport.clear()
        await gateway.dispatch(connection, "teleport", {})
        return transport

    transport = asyncio.run(_run())

    assert transport.events("error") == [{"message": "Unknown event: teleport"}]


def test_join_replies_with_history_and_joins_groups(store: InMemoryStore, world: World) -> None:
    gateway = _gateway(store)

    async def _run() -> tuple[RealtimeConnection, FakeTransport]:
        connection, transport = await _connect(gateway, user_type="AGENT", token=AGENT_TOKEN)
        await gateway.dispatch(connection, "join-property-conversation", {"propertyId": world.property.id})
        await gateway.dispatch(
            connection,
            "send-property-message",
            {"propertyId": world.property.id, "content": "Welcome"},
        )
        transport.clear()
        await gateway.dispatch(connection, "leave-property-conversation", {"propertyId": world.property.id})
        await gateway.dispatch(connection, "join-property-conversation", {"propertyId": world.property.id})
        await gateway.dispatch(connection, "join-property-conversation", {"propertyId": world.property.id})
        return connection, transport

    connection, transport = asyncio.run(_run())

    first, second = transport.events("property-conversation-joined")
    assert first["status"] == "success"
    assert [m["content"] for m in first["messages"]] == ["Welcome"]
    assert second["status"] == "already_joined"
    assert second["messages"] == []
    conversation_id = first["conversationId"]
    assert second["conversationId"] == conversation_id
    assert f"conversation:{conversation_id}" in connection.groups
    assert f"property:{world.property.id}" in connection.groups


def test_access_denied_join_is_reported_as_error(store: InMemoryStore, world: World) -> None:
    gateway = _gateway(
        store, verifier=StaticVerifier({AGENT_TOKEN: "agent-1", "other-token": "agent-2"})
    )

    async def _run() -> tuple[FakeTransport, RealtimeConnection]:
        owner, _ = await _connect(gateway, user_type="AGENT", token=AGENT_TOKEN)
        await gateway.dispatch(owner, "join-property-conversation", {"propertyId": world.property.id})
        intruder, transport = await _connect(gateway, user_type="AGENT", token="other-token")
        transport.clear()
        await gateway.dispatch(intruder, "join-property-conversation", {"propertyId": world.property.id})
        return transport, intruder

    transport, intruder = asyncio.run(_run())

    assert transport.frames[0]["type"] == "error"
    assert transport.frames[0]["payload"] == {
        "message": "Access denied to conversation",
        "propertyId": world.property.id,
    }
    assert not gateway.memberships.contains(world.property.id, intruder.identity.user_key)  # type: ignore[union-attr]


def test_handler_exception_yields_single_terminal_reply(store: InMemoryStore, world: World) -> None:
    gateway = _gateway(store)

    async def _run() -> FakeTransport:
        connection, transport = await _connect(gateway, user_type="AGENT", token=AGENT_TOKEN)
        transport.clear()
        store.failing.add("find_conversation_by_property")
        await gateway.dispatch(connection, "join-property-conversation", {"propertyId": world.property.id})
        await gateway.dispatch(
            connection,
            "send-property-message",
            {"propertyId": world.property.id, "content": "hi"},
        )
        return transport

    transport = asyncio.run(_run())

    assert transport.names() == ["property-conversation-joined", "message-error"]
    joined = transport.frames[0]["payload"]
    assert joined["status"] == "error"
    assert joined["conversationId"] is None
    failure = transport.frames[1]["payload"]
    assert failure == {"propertyId": world.property.id, "error": "Failed to send message"}


def test_invalid_payload_reports_validation_failure(store: InMemoryStore, world: World) -> None:
    gateway = _gateway(store)

    async def _run() -> FakeTransport:
        connection, transport = await _connect(gateway, user_type="AGENT", token=AGENT_TOKEN)
        transport.clear()
        await gateway.dispatch(connection, "send-message", {"content": "no target"})
        await gateway.dispatch(
            connection,
            "send-property-message",
            {"propertyId": world.property.id, "content": "   "},
        )
        return transport

    transport = asyncio.run(_run())

    first, second = transport.events("message-error")
    assert first == {"conversationId": None, "error": "Invalid payload"}
    assert second == {
        "propertyId": world.property.id,
        "error": "Message content must not be empty",
    }
    assert store.messages == []


def test_message_sent_ack_and_broadcast(store: InMemoryStore, world: World) -> None:
    gateway = _gateway(store)

    async def _run() -> tuple[FakeTransport, FakeTransport]:
        agent, agent_transport = await _connect(gateway, user_type="AGENT", token=AGENT_TOKEN)
        client, client_transport = await _connect(
            gateway, user_type="CLIENT", timeline_id=world.timeline.id
        )
        await gateway.dispatch(agent, "join-property-conversation", {"propertyId": world.property.id})
        await gateway.dispatch(client, "join-property-conversation", {"propertyId": world.property.id})
        agent_transport.clear()
        client_transport.clear()
        await gateway.dispatch(
            client,
            "send-property-message",
            {"propertyId": world.property.id, "content": "Is it available?", "type": "text"},
        )
        return agent_transport, client_transport

    agent_transport, client_transport = asyncio.run(_run())

    [ack] = client_transport.events("message-sent")
    assert ack["success"] is True
    assert ack["propertyId"] == world.property.id
    [incoming] = agent_transport.events("new-message")
    assert incoming["id"] == ack["messageId"]
    assert incoming["senderId"] == world.client.id
    assert incoming["type"] == "TEXT"
    assert len(client_transport.events("new-message")) == 1
    [hierarchy] = agent_transport.events("hierarchicalUnreadCountsUpdated")
    assert hierarchy["totalUnread"] == 1


def test_mark_read_acks_and_notifies_counterpart(store: InMemoryStore, world: World) -> None:
    gateway = _gateway(store)

    async def _run() -> tuple[FakeTransport, FakeTransport, str]:
        agent, agent_transport = await _connect(gateway, user_type="AGENT", token=AGENT_TOKEN)
        client, client_transport = await _connect(
            gateway, user_type="CLIENT", timeline_id=world.timeline.id
        )
        await gateway.dispatch(client, "join-property-conversation", {"propertyId": world.property.id})
        await gateway.dispatch(agent, "join-property-conversation", {"propertyId": world.property.id})
        [joined] = agent_transport.events("property-conversation-joined")
        await gateway.dispatch(
            client,
            "send-property-message",
            {"propertyId": world.property.id, "content": "ping me"},
        )
        agent_transport.clear()
        client_transport.clear()
        await gateway.dispatch(
            agent, "mark-messages-read", {"conversationId": joined["conversationId"]}
        )
        return agent_transport, client_transport, joined["conversationId"]

    agent_transport, client_transport, conversation_id = asyncio.run(_run())

    assert agent_transport.events("messages-marked-read") == [
        {"conversationId": conversation_id, "success": True}
    ]
    assert agent_transport.events("message-read") == []
    [read] = client_transport.events("message-read")
    assert read["count"] == 1
    assert read["userType"] == "AGENT"


def test_mark_read_confirms_message_and_property_targets(
    store: InMemoryStore, world: World
) -> None:
    gateway = _gateway(store)

    async def _run() -> tuple[FakeTransport, FakeTransport, str, list[str]]:
        agent, agent_transport = await _connect(gateway, user_type="AGENT", token=AGENT_TOKEN)
        client, client_transport = await _connect(
            gateway, user_type="CLIENT", timeline_id=world.timeline.id
        )
        await gateway.dispatch(agent, "join-property-conversation", {"propertyId": world.property.id})
        await gateway.dispatch(client, "join-property-conversation", {"propertyId": world.property.id})
        [joined] = agent_transport.events("property-conversation-joined")
        for text in ("first", "second"):
            await gateway.dispatch(
                client, "send-property-message", {"propertyId": world.property.id, "content": text}
            )
        message_ids = [ack["messageId"] for ack in client_transport.events("message-sent")]
        agent_transport.clear()
        client_transport.clear()
        await gateway.dispatch(
            agent,
            "mark-read",
            {"conversationId": joined["conversationId"], "messageId": message_ids[0]},
        )
        await gateway.dispatch(agent, "mark-read", {"propertyId": world.property.id})
        return agent_transport, client_transport, joined["conversationId"], message_ids

    agent_transport, client_transport, conversation_id, message_ids = asyncio.run(_run())

    assert agent_transport.events("read-confirmed") == [
        {"success": True, "conversationId": conversation_id, "messageId": message_ids[0]},
        {"success": True, "propertyId": world.property.id},
    ]
    single, remaining = client_transport.events("message-read")
    assert single["messageId"] == message_ids[0]
    assert single["count"] == 1
    assert remaining["count"] == 1
    assert all(message.is_read for message in store.messages)
    assert agent_transport.events("unreadCountsUpdated")[-1]["agentUnreadCount"] == 0


@pytest.mark.parametrize(
    "payload",
    [{}, {"messageId": "m-1"}, {"propertyId": "property-1", "messageId": "m-1"}],
)
def test_mark_read_without_usable_target_is_invalid(
    store: InMemoryStore, world: World, payload: dict[str, str]
) -> None:
    gateway = _gateway(store)

    async def _run() -> FakeTransport:
        connection, transport = await _connect(gateway, user_type="AGENT", token=AGENT_TOKEN)
        transport.clear()
        await gateway.dispatch(connection, "mark-read", payload)
        return transport

    transport = asyncio.run(_run())

    assert transport.names() == ["error"]
    assert transport.events("error") == [{"message": "Invalid payload"}]
    assert store.calls["mark_all_read"] == 0


def test_mark_read_reports_missing_message_and_conversation(
    store: InMemoryStore, world: World
) -> None:
    gateway = _gateway(store)

    async def _run() -> FakeTransport:
        connection, transport = await _connect(gateway, user_type="AGENT", token=AGENT_TOKEN)
        await gateway.dispatch(
            connection, "join-property-conversation", {"propertyId": world.property.id}
        )
        [joined] = transport.events("property-conversation-joined")
        transport.clear()
        await gateway.dispatch(
            connection,
            "mark-read",
            {"conversationId": joined["conversationId"], "messageId": "missing"},
        )
        await gateway.dispatch(connection, "mark-read", {"propertyId": world.second_property.id})
        return transport

    transport = asyncio.run(_run())

    assert transport.events("error") == [
        {"message": "Message not found"},
        {"message": "Conversation not found"},
    ]
    assert len(store.conversations) == 1


def test_join_and_leave_conversation_room(store: InMemoryStore, world: World) -> None:
    gateway = _gateway(store)

    async def _run() -> tuple[RealtimeConnection, FakeTransport, str]:
        agent, _ = await _connect(gateway, user_type="AGENT", token=AGENT_TOKEN)
        await gateway.dispatch(agent, "join-property-conversation", {"propertyId": world.property.id})
        conversation_id = next(iter(store.conversations))
        client, client_transport = await _connect(
            gateway, user_type="CLIENT", timeline_id=world.timeline.id
        )
        await gateway.dispatch(client, "join-conversation", {"conversationId": conversation_id})
        assert f"conversation:{conversation_id}" in client.groups
        await gateway.dispatch(client, "leave-conversation", {"conversationId": conversation_id})
        return client, client_transport, conversation_id

    client, client_transport, conversation_id = asyncio.run(_run())

    assert client_transport.events("joined-conversation") == [{"conversationId": conversation_id}]
    assert f"conversation:{conversation_id}" not in client.groups
    assert client_transport.events("error") == []


def test_join_conversation_denies_foreign_agent(store: InMemoryStore, world: World) -> None:
    gateway = _gateway(store, verifier=StaticVerifier({AGENT_TOKEN: "agent-1", "other": "agent-2"}))

    async def _run() -> tuple[RealtimeConnection, FakeTransport]:
        owner, _ = await _connect(gateway, user_type="AGENT", token=AGENT_TOKEN)
        await gateway.dispatch(owner, "join-property-conversation", {"propertyId": world.property.id})
        intruder, transport = await _connect(gateway, user_type="AGENT", token="other")
        transport.clear()
        await gateway.dispatch(
            intruder, "join-conversation", {"conversationId": next(iter(store.conversations))}
        )
        return intruder, transport

    intruder, transport = asyncio.run(_run())

    assert transport.names() == ["error"]
    assert transport.events("error") == [{"message": "Access denied to conversation"}]
    assert not any(group.startswith("conversation:") for group in intruder.groups)


def test_send_message_notifies_recipient_channel(store: InMemoryStore, world: World) -> None:
    gateway = _gateway(store)

    async def _run() -> tuple[FakeTransport, FakeTransport, str]:
        agent, agent_transport = await _connect(gateway, user_type="AGENT", token=AGENT_TOKEN)
        client, client_transport = await _connect(
            gateway, user_type="CLIENT", timeline_id=world.timeline.id
        )
        await gateway.dispatch(agent, "join-property-conversation", {"propertyId": world.property.id})
        conversation_id = next(iter(store.conversations))
        agent_transport.clear()
        client_transport.clear()
        await gateway.dispatch(
            agent, "send-message", {"conversationId": conversation_id, "content": "Viewing at 5?"}
        )
        return agent_transport, client_transport, conversation_id

    agent_transport, client_transport, conversation_id = asyncio.run(_run())

    assert client_transport.events("message-notification") == [
        {
            "conversationId": conversation_id,
            "propertyId": world.property.id,
            "propertyAddress": world.property.address,
            "senderType": "AGENT",
            "preview": "Viewing at 5?",
        }
    ]
    assert agent_transport.events("message-notification") == []
    assert len(agent_transport.events("message-sent")) == 1


def test_typing_is_relayed_to_property_room_only(store: InMemoryStore, world: World) -> None:
    gateway = _gateway(store)

    async def _run() -> tuple[FakeTransport, FakeTransport]:
        agent, agent_transport = await _connect(gateway, user_type="AGENT", token=AGENT_TOKEN)
        client, client_transport = await _connect(
            gateway, user_type="CLIENT", timeline_id=world.timeline.id
        )
        await gateway.dispatch(agent, "join-property-conversation", {"propertyId": world.property.id})
        await gateway.dispatch(client, "join-property-conversation", {"propertyId": world.property.id})
        agent_transport.clear()
        client_transport.clear()
        await gateway.dispatch(client, "typing-start", {"propertyId": world.property.id})
        await gateway.dispatch(client, "typing-stop", {"propertyId": world.property.id})
        return agent_transport, client_transport

    agent_transport, client_transport = asyncio.run(_run())

    assert agent_transport.events("user-typing") == [
        {"propertyId": world.property.id, "userId": world.client.id, "isTyping": True},
        {"propertyId": world.property.id, "userId": world.client.id, "isTyping": False},
    ]
    assert client_transport.frames == []


def test_presence_follows_agent_and_timeline_groups(store: InMemoryStore, world: World) -> None:
    gateway = _gateway(store)

    async def _run() -> FakeTransport:
        _, watcher_transport = await _connect(
            gateway, user_type="AGENT", token=AGENT_TOKEN, timeline_id=world.timeline.id
        )
        client, _ = await _connect(gateway, user_type="CLIENT", timeline_id=world.timeline.id)
        await gateway.handle_disconnect(client)
        return watcher_transport

    watcher_transport = asyncio.run(_run())

    assert watcher_transport.events("user_online") == [
        {"userId": world.client.id, "userType": "CLIENT"}
    ]
    assert watcher_transport.events("user_offline") == [
        {"userId": world.client.id, "userType": "CLIENT"}
    ]


def test_second_tab_shares_presence_and_rooms(store: InMemoryStore, world: World) -> None:
    gateway = _gateway(store)

    async def _run() -> tuple[FakeTransport, RealtimeConnection]:
        _, watcher_transport = await _connect(
            gateway, user_type="AGENT", token=AGENT_TOKEN, timeline_id=world.timeline.id
        )
        first_tab, _ = await _connect(gateway, user_type="CLIENT", timeline_id=world.timeline.id)
        second_tab, _ = await _connect(gateway, user_type="CLIENT", timeline_id=world.timeline.id)
        await gateway.dispatch(
            first_tab, "join-property-conversation", {"propertyId": world.property.id}
        )
        await gateway.dispatch(
            second_tab, "join-property-conversation", {"propertyId": world.property.id}
        )
        await gateway.handle_disconnect(first_tab)
        return watcher_transport, second_tab

    watcher_transport, second_tab = asyncio.run(_run())

    assert len(watcher_transport.events("user_online")) == 1
    assert watcher_transport.events("user_offline") == []
    user_key = second_tab.identity.user_key  # type: ignore[union-attr]
    assert gateway.memberships.contains(world.property.id, user_key)
    assert f"property:{world.property.id}" in second_tab.groups


def test_second_tab_join_receives_room_broadcasts(store: InMemoryStore, world: World) -> None:
    gateway = _gateway(store)

    async def _run() -> tuple[FakeTransport, FakeTransport, dict, dict]:
        tab1, tab1_transport = await _connect(gateway, user_type="AGENT", token=AGENT_TOKEN)
        tab2, tab2_transport = await _connect(gateway, user_type="AGENT", token=AGENT_TOKEN)
        client, _ = await _connect(gateway, user_type="CLIENT", timeline_id=world.timeline.id)
        await gateway.dispatch(tab1, "join-property-conversation", {"propertyId": world.property.id})
        await gateway.dispatch(tab2, "join-property-conversation", {"propertyId": world.property.id})
        [first] = tab1_transport.events("property-conversation-joined")
        [second] = tab2_transport.events("property-conversation-joined")
        await gateway.dispatch(client, "join-property-conversation", {"propertyId": world.property.id})
        tab1_transport.clear()
        tab2_transport.clear()
        await gateway.dispatch(
            client, "send-property-message", {"propertyId": world.property.id, "content": "hi"}
        )
        return tab1_transport, tab2_transport, first, second

    tab1_transport, tab2_transport, first, second = asyncio.run(_run())

    assert second["status"] == "already_joined"
    assert second["conversationId"] == first["conversationId"]
    assert len(tab1_transport.events("new-message")) == 1
    assert len(tab2_transport.events("new-message")) == 1
    assert len(tab2_transport.events("unreadCountsUpdated")) == 1


def test_repeat_join_makes_no_store_call(store: InMemoryStore, world: World) -> None:
    gateway = _gateway(store)

    async def _run() -> int:
        tab1, _ = await _connect(gateway, user_type="AGENT", token=AGENT_TOKEN)
        tab2, _ = await _connect(gateway, user_type="AGENT", token=AGENT_TOKEN)
        await gateway.dispatch(tab1, "join-property-conversation", {"propertyId": world.property.id})
        before = sum(store.calls.values())
        await gateway.dispatch(tab2, "join-property-conversation", {"propertyId": world.property.id})
        return sum(store.calls.values()) - before

    assert asyncio.run(_run()) == 0


def test_leaving_one_tab_keeps_membership_for_the_other(
    store: InMemoryStore, world: World
) -> None:
    gateway = _gateway(store)

    async def _run() -> tuple[RealtimeConnection, RealtimeConnection]:
        tab1, _ = await _connect(gateway, user_type="AGENT", token=AGENT_TOKEN)
        tab2, _ = await _connect(gateway, user_type="AGENT", token=AGENT_TOKEN)
        for tab in (tab1, tab2):
            await gateway.dispatch(
                tab, "join-property-conversation", {"propertyId": world.property.id}
            )
        await gateway.dispatch(tab1, "leave-property-conversation", {"propertyId": world.property.id})
        return tab1, tab2

    tab1, tab2 = asyncio.run(_run())

    assert f"property:{world.property.id}" not in tab1.groups
    assert f"property:{world.property.id}" in tab2.groups
    assert gateway.memberships.contains(world.property.id, "agent-1-AGENT")


def test_closing_one_tab_releases_rooms_only_it_held(store: InMemoryStore, world: World) -> None:
    gateway = _gateway(store)

    async def _run() -> None:
        tab1, _ = await _connect(gateway, user_type="AGENT", token=AGENT_TOKEN)
        tab2, _ = await _connect(gateway, user_type="AGENT", token=AGENT_TOKEN)
        await gateway.dispatch(tab1, "join-property-conversation", {"propertyId": world.property.id})
        await gateway.dispatch(
            tab1, "join-property-conversation", {"propertyId": world.second_property.id}
        )
        await gateway.dispatch(tab2, "join-property-conversation", {"propertyId": world.property.id})
        await gateway.handle_disconnect(tab1)

    asyncio.run(_run())

    assert gateway.memberships.rooms_for("agent-1-AGENT") == [world.property.id]


def test_disconnect_releases_rooms_and_is_idempotent(store: InMemoryStore, world: World) -> None:
    clock = ManualClock()
    gateway = _gateway(store, clock=clock)

    async def _run() -> RealtimeConnection:
        connection, _ = await _connect(gateway, user_type="AGENT", token=AGENT_TOKEN)
        await gateway.dispatch(connection, "join-property-conversation", {"propertyId": world.property.id})
        await gateway.dispatch(connection, "ping", {})
        await gateway.handle_disconnect(connection)
        await gateway.handle_disconnect(connection)
        return connection

    connection = asyncio.run(_run())

    assert connection.state == ConnectionState.CLOSED
    assert len(gateway.memberships) == 0
    assert gateway.last_ping(connection.connection_id) is None
    assert gateway.stats() == {
        "connections": 0,
        "ready_connections": 0,
        "groups": 0,
        "memberships": 0,
        "tracked_pings": 0,
    }


def test_ping_sweep_forgets_records_without_closing(store: InMemoryStore, world: World) -> None:
    clock = ManualClock()
    gateway = _gateway(store, clock=clock)

    async def _run() -> tuple[RealtimeConnection, FakeTransport]:
        connection, transport = await _connect(gateway, user_type="AGENT", token=AGENT_TOKEN)
        await gateway.dispatch(connection, "ping", {})
        return connection, transport

    connection, transport = asyncio.run(_run())
    assert transport.events("pong") == [{}]
    assert gateway.last_ping(connection.connection_id) == clock.now

    clock.advance(301)

    assert gateway.sweep_pings() == 1
    assert gateway.last_ping(connection.connection_id) is None
    assert connection.state == ConnectionState.READY
    assert not transport.closed


def test_membership_sweep_uses_gateway_clock(store: InMemoryStore, world: World) -> None:
    clock = ManualClock()
    gateway = _gateway(store, clock=clock)

    async def _run() -> None:
        connection, _ = await _connect(gateway, user_type="AGENT", token=AGENT_TOKEN)
        await gateway.dispatch(connection, "join-property-conversation", {"propertyId": world.property.id})

    asyncio.run(_run())
    clock.advance(301)

    assert gateway.sweep_memberships() == 1
    assert len(gateway.memberships) == 0


def test_run_periodic_rejects_non_positive_interval() -> None:
    with pytest.raises(ValueError):
        asyncio.run(run_periodic("noop", lambda: 0, interval_seconds=0))


def test_run_periodic_survives_failing_pass() -> None:
    calls: list[int] = []

    def _task() -> int:
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("boom")
        return 0

    async def _run() -> None:
        loop_task = asyncio.create_task(run_periodic("flaky", _task, interval_seconds=0.01))
        while len(calls) < 3:
            await asyncio.sleep(0.01)
        loop_task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await loop_task

    asyncio.run(_run())
    assert len(calls) >= 3
