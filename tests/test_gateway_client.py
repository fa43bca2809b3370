"""Tests for the operator gateway client against an in-memory socket."""

import asyncio

import pytest

from rxclaw.categorizer import NotificationRule
from rxclaw.gateway import GatewayClient
from rxclaw.gateway.models import ActivityKind, GatewayUsageInfo
from rxclaw.mechanism import NotConnectedError, RequestFailed, TransportError, UnsupportedMethod
from rxclaw.transport import BackoffPolicy, ConnectionState

from conftest import FAST_BACKOFF, FakeConnector, wait_until

S = ConnectionState


def make_client(connector, logger_provider, **kwargs):
    return GatewayClient(
        "http://gateway.test:18789",
        "secret-token",
        connector=connector,
        backoff=BackoffPolicy(schedule=FAST_BACKOFF),
        poll_interval=60.0,
        initial_delay=0.0,
        logger_provider=logger_provider,
        **kwargs,
    )


def collect(observable):
    values = []
    observable.subscribe(values.append)
    return values


async def handshake(client, connector):
    await client.connect()
    await wait_until(lambda: client.connection.is_open)
    socket = connector.socket
    socket.event("connect.challenge", {"nonce": "n-1", "ts": 1717200000000})
    await wait_until(lambda: socket.requests("connect"))
    socket.reply(socket.last_request("connect"), {"type": "hello-ok", "protocol": 3})
    await wait_until(lambda: client.state is S.CONNECTED)
    return socket


class TestHandshake:
    """Challenge, registration, hello-ok."""

    def test_registers_as_operator_and_polls(self, logger_provider):
        async def scenario():
            connector = FakeConnector()
            client = make_client(connector, logger_provider)
            states = collect(client.status)
            socket = await handshake(client, connector)
            await wait_until(lambda: socket.requests("node.list"))
            await client.disconnect()
            return connector, socket, states

        connector, socket, states = asyncio.run(scenario())

        assert connector.urls == ["ws://gateway.test:18789"]
        params = socket.last_request("connect")["params"]
        assert params["role"] == "operator"
        assert params["auth"] == {"token": "secret-token"}
        assert params["minProtocol"] == params["maxProtocol"] == 3
        assert "operator.admin" in params["scopes"]
        assert "device" not in params
        methods = [frame["method"] for frame in socket.requests()]
        assert methods[1:] == ["health", "sessions.list", "usage.status", "usage.cost", "node.list"]
        assert socket.last_request("health")["params"] == {"deep": True}
        assert socket.last_request("usage.cost")["params"] == {"days": 30}
        assert states == [S.DISCONNECTED, S.CONNECTING, S.CONNECTED, S.DISCONNECTED]

    def test_rejected_registration_retries(self, logger_provider, log_exporter):
        async def scenario():
            connector = FakeConnector()
            client = make_client(connector, logger_provider)
            states = collect(client.status)
            await client.connect()
            await wait_until(lambda: client.connection.is_open)
            socket = connector.socket
            socket.event("connect.challenge", {"nonce": "n-1"})
            await wait_until(lambda: socket.requests("connect"))
            socket.reply(
                socket.last_request("connect"),
                ok=False,
                error={"message": "bad token", "code": "AUTH_FAILED"},
            )
            await wait_until(lambda: len(connector.sockets) == 2)
            await client.disconnect()
            return socket, states

        first, states = asyncio.run(scenario())

        assert first.closed
        assert states[:4] == [S.DISCONNECTED, S.CONNECTING, S.ERROR, S.CONNECTING]
        assert S.CONNECTED not in states
        assert any("bad token" in m for m in log_exporter.messages())


class TestResponses:
    def test_usage_status_falls_back_to_legacy_usage(self, logger_provider):
        async def scenario():
            connector = FakeConnector()
            client = make_client(connector, logger_provider)
            usage = collect(client.usage)
            socket = await handshake(client, connector)
            await wait_until(lambda: socket.requests("usage.status"))

            socket.reply(
                socket.last_request("usage.status"),
                ok=False,
                error={"message": "unknown method: usage.status"},
            )
            await wait_until(lambda: socket.requests("usage"))
            socket.reply(socket.last_request("usage"), {"totalTokens": 1500, "cost": 0.5})
            await wait_until(lambda: usage)

            supported = client.correlator.is_supported("usage.status")
            await client.request_usage()
            await client.disconnect()
            return socket, usage, supported

        socket, usage, supported = asyncio.run(scenario())

        assert not supported
        assert usage[-1] == GatewayUsageInfo(total_tokens=1500, cost_usd=0.5)
        assert len(socket.requests("usage")) == 2
        assert len(socket.requests("usage.status")) == 1

    def test_usage_status_sets_provider_summary(self, logger_provider):
        async def scenario():
            connector = FakeConnector()
            client = make_client(connector, logger_provider)
            usage = collect(client.usage)
            socket = await handshake(client, connector)
            await wait_until(lambda: socket.requests("usage.cost"))
            socket.reply(
                socket.last_request("usage.status"),
                {"providers": [{"provider": "openai", "displayName": "OpenAI", "windows": [{"usedPercent": 25}]}]},
            )
            socket.reply(
                socket.last_request("usage.cost"),
                {"days": 30, "totals": {"totalTokens": 2000, "totalCost": 1.25}},
            )
            await wait_until(lambda: len(usage) == 2)
            await client.disconnect()
            return client, usage

        client, usage = asyncio.run(scenario())

        assert usage[-1].provider_summary == "OpenAI: 75% left"
        assert usage[-1].total_tokens == 2000
        assert usage[-1].cost_usd == 1.25
        assert client.snapshots.usage_cost.days == 30

    def test_sessions_and_nodes_are_published(self, logger_provider):
        async def scenario():
            connector = FakeConnector()
            client = make_client(connector, logger_provider)
            sessions = collect(client.sessions)
            nodes = collect(client.nodes)
            channels = collect(client.channel_health)
            socket = await handshake(client, connector)
            await wait_until(lambda: socket.requests("node.list"))
            socket.reply(
                socket.last_request("sessions.list"),
                {"sessions": [{"key": "agent:main:sub:1"}, {"key": "agent:main:main"}]},
            )
            socket.reply(socket.last_request("node.list"), {"nodes": [{"nodeId": "n1", "online": True}]})
            socket.reply(socket.last_request("health"), {"channels": {"telegram": {"status": "ok"}}})
            await wait_until(lambda: sessions and nodes and channels)
            await client.disconnect()
            return client, sessions, nodes, channels

        client, sessions, nodes, channels = asyncio.run(scenario())

        assert [s.key for s in sessions[-1]] == ["agent:main:main", "agent:main:sub:1"]
        assert client.snapshots.sessions == sessions[-1]
        assert nodes[-1][0].node_id == "n1"
        assert channels[-1][0].display_text == "[ON] Telegram: ok"

    def test_session_command_results(self, logger_provider):
        async def scenario():
            connector = FakeConnector()
            client = make_client(connector, logger_provider)
            results = collect(client.session_commands)
            socket = await handshake(client, connector)

            assert await client.reset_session("agent:main:main")
            assert await client.compact_session("agent:main:main", max_lines=0)
            assert not await client.delete_session("  ")
            socket.reply(socket.last_request("sessions.reset"), ok=False, error="no such session")
            socket.reply(socket.last_request("sessions.compact"), {"key": "agent:main:main", "compacted": True})
            await wait_until(lambda: len(results) == 2)
            await client.disconnect()
            return socket, results

        socket, results = asyncio.run(scenario())

        assert socket.last_request("sessions.compact")["params"] == {"key": "agent:main:main", "maxLines": 400}
        failed, compacted = results
        assert not failed.ok and failed.error == "no such session"
        assert compacted.ok and compacted.compacted is True

    def test_untracked_response_is_dropped(self, logger_provider, log_exporter):
        async def scenario():
            connector = FakeConnector()
            client = make_client(connector, logger_provider)
            socket = await handshake(client, connector)
            socket.reply({"id": "never-sent"}, {"x": 1})
            socket.reply({"id": "never-sent-either"}, {"y": 2})
            await wait_until(
                lambda: sum("untracked" in m for m in log_exporter.messages()) == 2
            )
            state = client.state
            await client.disconnect()
            return state

        assert asyncio.run(scenario()) is S.CONNECTED


class TestCall:
    def test_call_resolves_payload(self, logger_provider):
        async def scenario():
            connector = FakeConnector()
            client = make_client(connector, logger_provider)
            socket = await handshake(client, connector)
            task = asyncio.create_task(client.call("sessions.preview", {"keys": ["main"]}))
            await wait_until(lambda: socket.requests("sessions.preview"))
            socket.reply(socket.last_request("sessions.preview"), {"previews": []})
            payload = await task
            await client.disconnect()
            return payload

        assert asyncio.run(scenario()) == {"previews": []}

    def test_call_failures(self, logger_provider):
        async def scenario():
            connector = FakeConnector()
            client = make_client(connector, logger_provider)
            socket = await handshake(client, connector)

            failed = asyncio.create_task(client.call("chat.history"))
            unknown = asyncio.create_task(client.call("tools.list"))
            dropped = asyncio.create_task(client.call("agent.wait"))
            await wait_until(lambda: socket.requests("agent.wait"))
            socket.reply(socket.last_request("chat.history"), ok=False, error={"message": "denied"})
            socket.reply(socket.last_request("tools.list"), ok=False, error={"message": "Unknown method"})
            await asyncio.wait([failed, unknown])
            await client.disconnect()
            await asyncio.wait([dropped])
            return failed.exception(), unknown.exception(), dropped.exception()

        failed, unknown, dropped = asyncio.run(scenario())

        assert isinstance(failed, RequestFailed) and failed.message == "denied"
        assert isinstance(unknown, UnsupportedMethod) and unknown.method == "tools.list"
        assert isinstance(dropped, TransportError)

    def test_call_requires_connection(self, logger_provider):
        client = make_client(FakeConnector(), logger_provider)

        with pytest.raises(NotConnectedError):
            asyncio.run(client.call("health"))
        with pytest.raises(NotConnectedError):
            asyncio.run(client.send_chat_message("hi"))


class TestEvents:
    """Agent and chat events become activity and notifications."""

    def test_agent_activity_updates_sessions(self, logger_provider):
        async def scenario():
            connector = FakeConnector()
            client = make_client(connector, logger_provider)
            activity = collect(client.activity)
            sessions = collect(client.sessions)
            socket = await handshake(client, connector)

            socket.event(
                "agent",
                {"stream": "tool", "data": {"phase": "start", "name": "exec", "args": {"command": "make test"}}},
                sessionKey="agent:main:main",
            )
            await wait_until(lambda: len(sessions) == 1)
            socket.event("agent", {"stream": "job", "data": {"state": "done"}}, sessionKey="agent:main:main")
            await wait_until(lambda: len(sessions) == 2)
            await client.disconnect()
            return activity, sessions

        activity, sessions = asyncio.run(scenario())

        assert [a.kind for a in activity] == [ActivityKind.EXEC, ActivityKind.IDLE]
        assert sessions[0][0].current_activity == "💻 make test"
        assert sessions[1][0].current_activity is None

    def test_agent_content_is_categorized(self, logger_provider):
        async def scenario():
            connector = FakeConnector()
            client = make_client(
                connector, logger_provider, rules=[NotificationRule(pattern="deploy", category="reminder")]
            )
            notifications = collect(client.notifications)
            socket = await handshake(client, connector)
            socket.event("agent", {"content": "Server down", "intent": "alert"}, sessionKey="agent:main:main")
            socket.event("agent", {"content": "deploy at 5pm"}, sessionKey="agent:main:main")
            socket.event(
                "chat",
                {"state": "final", "message": {"role": "assistant", "content": [{"type": "text", "text": "Your glucose is 180"}]}},
            )
            await wait_until(lambda: len(notifications) == 3)
            await client.disconnect()
            return notifications

        urgent, reminder, chat = asyncio.run(scenario())

        assert (urgent.type, urgent.title) == ("urgent", "🚨 Urgent Alert")
        assert urgent.intent == "alert"
        assert reminder.type == "reminder"
        assert chat.is_chat and chat.type == "health"

    def test_session_event_requests_session_list(self, logger_provider):
        async def scenario():
            connector = FakeConnector()
            client = make_client(connector, logger_provider)
            socket = await handshake(client, connector)
            await wait_until(lambda: socket.requests("node.list"))
            socket.event("session", {}, sessionKey="agent:main:main")
            await wait_until(lambda: len(socket.requests("sessions.list")) == 2)
            await client.disconnect()

        asyncio.run(scenario())

    def test_close_completes_observables(self, logger_provider):
        async def scenario():
            connector = FakeConnector()
            client = make_client(connector, logger_provider)
            completed = []
            client.notifications.subscribe(on_completed=lambda: completed.append("notifications"))
            client.status.subscribe(on_completed=lambda: completed.append("status"))
            await handshake(client, connector)
            await client.close()
            return completed

        assert sorted(asyncio.run(scenario())) == ["notifications", "status"]
