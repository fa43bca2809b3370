"""Tests for node registration, pairing and invoke handling."""

import asyncio
import json
import sys

import pytest

from rxclaw.gateway.models import PairingStatus
from rxclaw.node import Capability, DeviceIdentity, NodeClient
from rxclaw.node.capabilities import SystemCapability
from rxclaw.node.identity import IDENTITY_FILE
from rxclaw.transport import BackoffPolicy, ConnectionState

from conftest import FAST_BACKOFF, FakeConnector, wait_until

S = ConnectionState


def make_node(connector, identity, logger_provider, **kwargs):
    kwargs.setdefault("capabilities", [SystemCapability()])
    return NodeClient(
        "ws://gateway.test:18789",
        "operator-token",
        identity,
        connector=connector,
        backoff=BackoffPolicy(schedule=FAST_BACKOFF),
        display_name="test node",
        logger_provider=logger_provider,
        **kwargs,
    )


class GatedCapability(Capability):
    """``lab.slow`` waits for the test to open the gate; ``lab.fast`` answers at once."""

    category = "lab"
    commands = ("lab.slow", "lab.fast")

    def __init__(self):
        self.gate = asyncio.Event()

    async def execute(self, request):
        if request.command == "lab.slow":
            await self.gate.wait()
        return {"command": request.command}


def collect(observable):
    values = []
    observable.subscribe(values.append)
    return values


async def register(node, connector, hello=None, nonce="n-42"):
    await node.connect()
    await wait_until(lambda: node.connection.is_open)
    socket = connector.socket
    socket.event("connect.challenge", {"nonce": nonce} if nonce else {})
    await wait_until(lambda: socket.requests("connect"))
    socket.reply(socket.last_request("connect"), hello or {"type": "hello-ok", "nodeId": "node-1"})
    await wait_until(lambda: node.state is S.CONNECTED)
    return socket


@pytest.fixture
def identity(tmp_path):
    return DeviceIdentity.load_or_create(tmp_path)


class TestRegistration:
    """Signed registration and pairing lifecycle."""

    def test_connect_params_are_signed(self, identity, logger_provider):
        async def scenario():
            connector = FakeConnector()
            node = make_node(connector, identity, logger_provider, permissions={"screen": False})
            socket = await register(node, connector)
            await node.disconnect()
            return node, socket.last_request("connect")["params"]

        node, params = asyncio.run(scenario())

        assert params["role"] == "node"
        assert params["client"]["id"] == "node-host"
        assert params["client"]["mode"] == "node"
        assert params["client"]["displayName"] == "test node"
        assert params["caps"] == ["system"]
        assert params["commands"] == ["system.notify", "system.which"]
        assert params["permissions"] == {"screen": False}
        assert params["scopes"] == []
        assert params["auth"] == {"token": "operator-token"}

        device = params["device"]
        assert device["id"] == identity.device_id
        assert device["publicKey"] == identity.public_key
        assert device["nonce"] == "n-42"
        assert identity.verify(
            device["signature"], "n-42", device["signedAt"], "node-host", "node", "node", (), "operator-token"
        )
        assert node.node_id == "node-1"

    def test_connect_without_nonce_is_unsigned(self, identity, logger_provider):
        async def scenario():
            connector = FakeConnector()
            node = make_node(connector, identity, logger_provider)
            socket = await register(node, connector, nonce=None)
            await node.disconnect()
            return socket.last_request("connect")["params"]["device"]

        device = asyncio.run(scenario())

        assert "signature" not in device
        assert "nonce" not in device

    def test_pending_then_paired(self, identity, logger_provider, tmp_path):
        async def scenario():
            connector = FakeConnector()
            node = make_node(connector, identity, logger_provider)
            pairing = collect(node.pairing)

            await register(node, connector)
            pending = node.is_pending_approval

            # gateway drops the socket after approval; the next hello carries the token
            await connector.socket.close()
            await wait_until(lambda: len(connector.sockets) == 2 and node.connection.is_open)
            socket = connector.socket
            socket.event("connect.challenge", {"nonce": "n-43"})
            await wait_until(lambda: socket.requests("connect"))
            socket.reply(
                socket.last_request("connect"),
                {"type": "hello-ok", "nodeId": "node-1", "auth": {"deviceToken": "device-token-1"}},
            )
            await wait_until(lambda: node.is_paired and node.state is S.CONNECTED)
            await node.disconnect()
            return node, pairing, pending

        node, pairing, pending = asyncio.run(scenario())

        assert pending
        assert [e.status for e in pairing] == [PairingStatus.PENDING, PairingStatus.PAIRED]
        assert pairing[0].message == f"Run: openclaw devices approve {identity.short_device_id}..."
        assert pairing[1].device_id == identity.device_id
        assert node.pairing_status is PairingStatus.PAIRED
        stored = json.loads((tmp_path / IDENTITY_FILE).read_text(encoding="utf-8"))
        assert stored["deviceToken"] == "device-token-1"

    def test_paired_device_uses_device_token(self, identity, logger_provider):
        identity.store_device_token("device-token-1")

        async def scenario():
            connector = FakeConnector()
            node = make_node(connector, identity, logger_provider)
            pairing = collect(node.pairing)
            socket = await register(node, connector)
            await node.disconnect()
            return socket.last_request("connect")["params"], pairing

        params, pairing = asyncio.run(scenario())

        assert params["auth"] == {"token": "device-token-1"}
        assert identity.verify(
            params["device"]["signature"],
            "n-42",
            params["device"]["signedAt"],
            "node-host",
            "node",
            "node",
            (),
            "device-token-1",
        )
        assert [e.status for e in pairing] == [PairingStatus.PAIRED]

    def test_rejected_registration(self, identity, logger_provider, log_exporter):
        async def scenario():
            connector = FakeConnector()
            node = make_node(connector, identity, logger_provider)
            pairing = collect(node.pairing)
            states = collect(node.status)
            await node.connect()
            await wait_until(lambda: node.connection.is_open)
            socket = connector.socket
            socket.event("connect.challenge", {"nonce": "n-1"})
            await wait_until(lambda: socket.requests("connect"))
            socket.reply(socket.last_request("connect"), ok=False, error={"message": "device revoked"})
            await wait_until(lambda: len(connector.sockets) == 2)
            await node.disconnect()
            return pairing, states

        pairing, states = asyncio.run(scenario())

        assert [e.status for e in pairing] == [PairingStatus.REJECTED]
        assert pairing[0].message == "device revoked"
        assert states[:4] == [S.DISCONNECTED, S.CONNECTING, S.ERROR, S.CONNECTING]
        assert "Node registration failed: device revoked (code: none)" in log_exporter.messages()


class TestInvoke:
    """Invoke events and direct requests are answered exactly once."""

    def test_invoke_event_is_answered_with_result_request(self, identity, logger_provider):
        async def scenario():
            connector = FakeConnector()
            node = make_node(connector, identity, logger_provider)
            invocations = collect(node.invocations)
            results = collect(node.results)
            socket = await register(node, connector)

            socket.event(
                "node.invoke.request",
                {"requestId": "inv-1", "command": "system.which", "paramsJSON": json.dumps({"bin": "sh"})},
            )
            await wait_until(lambda: socket.requests("node.invoke.result"))
            await node.disconnect()
            return socket.last_request("node.invoke.result")["params"], invocations, results

        params, invocations, results = asyncio.run(scenario())

        assert params["id"] == "inv-1"
        assert params["nodeId"] == identity.device_id
        assert params["ok"] is True
        assert params["payload"]["bin"] == "sh"
        assert "error" not in params
        assert [r.command for r in invocations] == ["system.which"]
        assert results[0].id == "inv-1"

    def test_failed_invoke_reports_error(self, identity, logger_provider):
        async def scenario():
            connector = FakeConnector()
            node = make_node(connector, identity, logger_provider)
            socket = await register(node, connector)
            socket.event("node.invoke.request", {"id": "inv-2", "command": "system.run", "args": {"command": "ls"}})
            await wait_until(lambda: socket.requests("node.invoke.result"))
            await node.disconnect()
            return socket.last_request("node.invoke.result")["params"]

        params = asyncio.run(scenario())

        assert params == {
            "id": "inv-2",
            "nodeId": identity.device_id,
            "ok": False,
            "error": {"message": "Command not supported: system.run"},
        }

    def test_invoke_event_without_id_is_dropped(self, identity, logger_provider, log_exporter):
        async def scenario():
            connector = FakeConnector()
            node = make_node(connector, identity, logger_provider)
            socket = await register(node, connector)
            socket.event("node.invoke.request", {"command": "system.which"})
            await wait_until(lambda: "Invoke request without id" in log_exporter.messages())
            await node.disconnect()
            return socket

        socket = asyncio.run(scenario())

        assert socket.requests("node.invoke.result") == []

    def test_direct_requests(self, identity, logger_provider):
        async def scenario():
            connector = FakeConnector()
            node = make_node(connector, identity, logger_provider)
            socket = await register(node, connector)
            socket.feed({"type": "req", "id": "p1", "method": "ping"})
            socket.feed({"type": "req", "id": "i1", "method": "node.invoke"})
            socket.feed(
                {
                    "type": "req",
                    "id": "i2",
                    "method": "node.invoke",
                    "params": {"command": "system.notify", "args": {"message": "hello"}},
                }
            )
            socket.feed({"type": "req", "id": "x1", "method": "camera.snap"})
            await wait_until(lambda: len(socket.responses()) == 4)
            await node.disconnect()
            return {frame["id"]: frame for frame in socket.responses()}

        responses = asyncio.run(scenario())

        assert responses["p1"] == {"type": "res", "id": "p1", "ok": True, "payload": {"pong": True}}
        assert responses["i1"]["error"] == {"message": "Missing params"}
        assert responses["i2"]["ok"] is True
        assert responses["i2"]["payload"] == {"shown": True}
        assert responses["x1"]["ok"] is False
        assert responses["x1"]["error"] == {"message": "Unknown method: camera.snap"}

    @pytest.mark.skipif(sys.platform.startswith("win"), reason="uses a POSIX shell")
    def test_system_run_when_allowed(self, identity, logger_provider):
        async def scenario():
            connector = FakeConnector()
            node = make_node(
                connector, identity, logger_provider, capabilities=[SystemCapability(allow_run=True)]
            )
            socket = await register(node, connector)
            socket.event(
                "node.invoke.request",
                {"id": "run-1", "command": "system.run", "args": {"command": ["sh", "-c", "echo hi"]}},
            )
            await wait_until(lambda: socket.requests("node.invoke.result"), timeout=10.0)
            await node.disconnect()
            return socket.last_request("connect")["params"], socket.last_request("node.invoke.result")["params"]

        connect, result = asyncio.run(scenario())

        assert "system.run" in connect["commands"]
        assert result["ok"] is True
        assert result["payload"]["exitCode"] == 0
        assert result["payload"]["stdout"] == "hi\n"

    def test_results_follow_completion_not_arrival(self, identity, logger_provider):
        async def scenario():
            connector = FakeConnector()
            lab = GatedCapability()
            node = make_node(connector, identity, logger_provider, capabilities=[lab])
            socket = await register(node, connector)

            socket.event("node.invoke.request", {"id": "slow-1", "command": "lab.slow"})
            socket.event("node.invoke.request", {"id": "fast-1", "command": "lab.fast"})
            await wait_until(lambda: socket.requests("node.invoke.result"))
            first_batch = [r["params"]["id"] for r in socket.requests("node.invoke.result")]

            lab.gate.set()
            await wait_until(lambda: len(socket.requests("node.invoke.result")) == 2)
            await node.disconnect()
            return first_batch, [r["params"] for r in socket.requests("node.invoke.result")]

        first_batch, results = asyncio.run(scenario())

        assert first_batch == ["fast-1"]
        assert [r["id"] for r in results] == ["fast-1", "slow-1"]
        assert results[0]["payload"] == {"command": "lab.fast"}
        assert results[1]["payload"] == {"command": "lab.slow"}
