"""Tests for the ACP client.

Tests cover:
- Handshake and session creation against a scripted agent process
- Turn text accumulation and notification forwarding
- Permission, file system and terminal callbacks
- Unknown capability calls, agent crashes and malformed output
- Cancellation and idempotent shutdown
"""

import asyncio
import json
import sys
from pathlib import Path

import pytest

from task_agent.acp import (
    AcpClient, AcpError, ProtocolError, SessionNotification, ToolCall,
    TransportClosedError, TransportError, TurnState, reject_all,
)
from task_agent.acp.permissions import PermissionDecision, PermissionRequest, auto_approve


FAKE_AGENT = Path(__file__).parent / "fake_agent.py"


def make_client(tmp_path, scenario="echo", **kwargs) -> AcpClient:
    env = {
        "FAKE_AGENT_SCENARIO": scenario,
        "FAKE_AGENT_LOG": str(tmp_path / "agent.log"),
    }
    return AcpClient(cwd=tmp_path, command=[sys.executable, str(FAKE_AGENT)], env=env, **kwargs)


def received_messages(tmp_path) -> list[dict]:
    log = tmp_path / "agent.log"
    if not log.exists():
        return []
    return [json.loads(line) for line in log.read_text().splitlines() if line.strip()]


# =============================================================================
# Handshake and sessions
# =============================================================================

class TestHandshake:
    """Tests for start() and create_session()."""

    @pytest.mark.asyncio
    async def test_start_negotiates_capabilities(self, tmp_path):
        client = make_client(tmp_path)
        try:
            await client.start()
            assert client.is_connected
            assert client.agent_capabilities == {"loadSession": False}
        finally:
            await client.stop()

        initialize = received_messages(tmp_path)[0]
        assert initialize["method"] == "initialize"
        assert initialize["params"]["protocolVersion"] == 1
        assert initialize["params"]["clientCapabilities"]["terminal"] is True

    @pytest.mark.asyncio
    async def test_malformed_handshake_raises_protocol_error(self, tmp_path):
        client = make_client(tmp_path, "bad_init")
        try:
            with pytest.raises(ProtocolError):
                await client.start()
        finally:
            await client.stop()

    @pytest.mark.asyncio
    async def test_non_json_lines_are_skipped(self, tmp_path):
        client = make_client(tmp_path, "garbage")
        async with client:
            assert client.agent_capabilities == {"loadSession": False}

    @pytest.mark.asyncio
    async def test_start_twice_raises(self, tmp_path):
        async with make_client(tmp_path) as client:
            with pytest.raises(AcpError):
                await client.start()

    @pytest.mark.asyncio
    async def test_missing_executable_raises_transport_error(self, tmp_path):
        client = AcpClient(cwd=tmp_path, command=[str(tmp_path / "no-such-agent")])
        try:
            with pytest.raises(TransportError):
                await client.start()
        finally:
            await client.stop()

    @pytest.mark.asyncio
    async def test_create_session_defaults_to_bypass_permissions(self, tmp_path):
        async with make_client(tmp_path) as client:
            session_id = await client.create_session()

        assert session_id == "sess-1"
        new = [m for m in received_messages(tmp_path) if m.get("method") == "session/new"][0]
        assert new["params"]["cwd"] == str(tmp_path)
        assert new["params"]["mcpServers"] == []
        assert new["params"]["_meta"] == {"permissionMode": "bypassPermissions"}

    @pytest.mark.asyncio
    async def test_create_session_passes_meta_and_tool_providers(self, tmp_path):
        async with make_client(tmp_path) as client:
            await client.create_session(
                mcp_servers={"docs": {"command": "docs-server", "args": []}},
                system_prompt="Be brief",
                permission_mode="plan",
                model="some-model",
            )

        new = [m for m in received_messages(tmp_path) if m.get("method") == "session/new"][0]
        assert new["params"]["mcpServers"] == [{"command": "docs-server", "args": [], "name": "docs"}]
        assert new["params"]["_meta"] == {
            "permissionMode": "plan",
            "model": "some-model",
            "systemPrompt": "Be brief",
        }


# =============================================================================
# Prompt turns
# =============================================================================

class TestPrompt:
    """Tests for prompt() and the turn state machine."""

    @pytest.mark.asyncio
    async def test_prompt_collects_message_text(self, tmp_path):
        notifications = []
        client = make_client(tmp_path, on_notification=notifications.append)
        async with client:
            await client.create_session()
            assert client.state == TurnState.IDLE
            result = await client.prompt("Do the thing")

            assert result.stop_reason == "end_turn"
            assert result.text == "Hello world"
            assert not result.cancelled
            assert client.state == TurnState.COMPLETED

        assert all(isinstance(n, SessionNotification) for n in notifications)
        assert any(isinstance(n.update, ToolCall) and n.update.title == "Read file" for n in notifications)

        prompt = [m for m in received_messages(tmp_path) if m.get("method") == "session/prompt"][0]
        assert prompt["params"]["prompt"] == [{"type": "text", "text": "Do the thing"}]

    @pytest.mark.asyncio
    async def test_prompt_without_session_raises(self, tmp_path):
        async with make_client(tmp_path) as client:
            with pytest.raises(AcpError):
                await client.prompt("hello")

    @pytest.mark.asyncio
    async def test_failing_notification_sink_does_not_break_turn(self, tmp_path):
        def sink(notification):
            raise RuntimeError("sink is broken")

        async with make_client(tmp_path, on_notification=sink) as client:
            await client.create_session()
            result = await client.prompt("go")
        assert result.text == "Hello world"

    @pytest.mark.asyncio
    async def test_agent_exit_mid_turn_raises_transport_closed(self, tmp_path):
        async with make_client(tmp_path, "exit") as client:
            await client.create_session()
            with pytest.raises(TransportClosedError) as exc_info:
                await client.prompt("go")
            assert exc_info.value.returncode == 3
            assert client.state == TurnState.IDLE

    @pytest.mark.asyncio
    async def test_unknown_capability_fails_turn(self, tmp_path):
        async with make_client(tmp_path, "unknown") as client:
            await client.create_session()
            with pytest.raises(ProtocolError):
                await client.prompt("go")

            # Wait for the agent to log the error before shutting it down
            loop = asyncio.get_running_loop()
            deadline = loop.time() + 10
            responses = []
            while not responses and loop.time() < deadline:
                await asyncio.sleep(0.02)
                responses = [m for m in received_messages(tmp_path) if "error" in m]

        assert responses[0]["error"]["code"] == -32601


# =============================================================================
# Agent callbacks
# =============================================================================

class TestCallbacks:
    """Tests for the requests the agent sends to the client."""

    @pytest.mark.asyncio
    async def test_permission_auto_approve_picks_allow_option(self, tmp_path):
        async with make_client(tmp_path, "permission") as client:
            await client.create_session()
            result = await client.prompt("go")
        assert result.text == "allow"

    @pytest.mark.asyncio
    async def test_permission_reject_all(self, tmp_path):
        async with make_client(tmp_path, "permission", permission_strategy=reject_all) as client:
            await client.create_session()
            result = await client.prompt("go")
        assert result.text == "reject"

    @pytest.mark.asyncio
    async def test_permission_async_strategy_can_cancel(self, tmp_path):
        async def strategy(request: PermissionRequest) -> PermissionDecision:
            assert request.tool_call_id == "call-1"
            return PermissionDecision()

        async with make_client(tmp_path, "permission", permission_strategy=strategy) as client:
            await client.create_session()
            result = await client.prompt("go")
        assert result.text == "cancelled"

    @pytest.mark.asyncio
    async def test_failing_permission_strategy_answers_internal_error(self, tmp_path):
        def strategy(request: PermissionRequest) -> PermissionDecision:
            raise RuntimeError("approval backend down")

        async with make_client(tmp_path, "permission", permission_strategy=strategy) as client:
            await client.create_session()
            first = await client.prompt("go")
            # The read loop survives, so a second turn still works
            second = await client.prompt("again")

        assert first.text == "error:-32603"
        assert second.text == "error:-32603"
        errors = [m for m in received_messages(tmp_path) if "error" in m]
        assert "approval backend down" in errors[0]["error"]["message"]

    @pytest.mark.asyncio
    async def test_strategy_returning_none_answers_internal_error(self, tmp_path):
        async with make_client(tmp_path, "permission", permission_strategy=lambda request: None) as client:
            await client.create_session()
            result = await client.prompt("go")
        assert result.text == "error:-32603"

    @pytest.mark.asyncio
    async def test_file_system_access(self, tmp_path):
        (tmp_path / "input.txt").write_text("one\ntwo\nthree\n")

        async with make_client(tmp_path, "fs") as client:
            await client.create_session()
            result = await client.prompt("go")

        assert (tmp_path / "notes" / "out.txt").read_text() == "written"
        assert result.text == "two\nerror:-32002"

    @pytest.mark.asyncio
    async def test_terminal_lifecycle(self, tmp_path):
        async with make_client(tmp_path, "terminal") as client:
            await client.create_session()
            result = await client.prompt("go")
            assert len(client.terminals) == 0

        report = json.loads(result.text)
        assert report["exit"] == {"exitCode": 0, "signal": None}
        assert report["output"] == "from terminal\n"
        assert report["missing"] == -32002


class TestPermissionStrategies:
    """Tests for the bundled approval strategies."""

    def _request(self, *kinds):
        return PermissionRequest.model_validate({
            "sessionId": "s",
            "toolCall": {"toolCallId": "t"},
            "options": [{"optionId": f"opt-{i}", "kind": kind} for i, kind in enumerate(kinds)],
        })

    def test_auto_approve_prefers_allow(self):
        decision = auto_approve(self._request("reject_once", "allow_always"))
        assert decision.option_id == "opt-1"

    def test_auto_approve_falls_back_to_first_option(self):
        decision = auto_approve(self._request("reject_once"))
        assert decision.option_id == "opt-0"

    def test_auto_approve_without_options_cancels(self):
        decision = auto_approve(self._request())
        assert decision.cancelled
        assert decision.to_wire() == {"outcome": {"outcome": "cancelled"}}

    def test_reject_all_without_reject_option_cancels(self):
        assert reject_all(self._request("allow_once")).cancelled


# =============================================================================
# Cancellation and shutdown
# =============================================================================

class TestCancelAndStop:
    """Tests for cancel() and stop()."""

    @pytest.mark.asyncio
    async def test_cancel_without_session_is_noop(self, tmp_path):
        client = make_client(tmp_path)
        await client.cancel()

        async with client:
            await client.cancel()
        assert not any(m.get("method") == "session/cancel" for m in received_messages(tmp_path))

    @pytest.mark.asyncio
    async def test_cancel_mid_turn(self, tmp_path):
        started = asyncio.Event()
        client = make_client(tmp_path, "cancel", on_notification=lambda n: started.set())

        async with client:
            await client.create_session()
            turn = asyncio.create_task(client.prompt("go"))
            await asyncio.wait_for(started.wait(), timeout=10)

            await client.cancel()
            result = await asyncio.wait_for(turn, timeout=10)

            assert result.cancelled
            assert result.text == "working"
            assert client.state == TurnState.CANCELLED

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, tmp_path):
        client = make_client(tmp_path)
        await client.stop()

        await client.start()
        await client.create_session()
        await client.stop()
        await client.stop()

        assert not client.is_connected
        assert client.session_id is None
        assert client.state == TurnState.IDLE
