from __future__ import annotations

import asyncio
import errno
import json
import pty
from typing import Optional

import anyio
import pytest

from sandterm.core.gateway import ChannelClosed, SessionGateway
from sandterm.types import SessionState


pytestmark = [pytest.mark.anyio, pytest.mark.timeout(60)]

READY_FRAME = json.dumps({"type": "ready"}, separators=(",", ":"))


class FakeChannel:
    def __init__(self):
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.sent: list[str] = []
        self.gone = False

    async def receive(self) -> Optional[str | bytes]:
        return await self.inbound.get()

    async def send_text(self, text: str) -> None:
        if self.gone:
            raise ChannelClosed("peer went away")
        self.sent.append(text)

    def put(self, unit) -> None:
        self.inbound.put_nowait(unit)

    def send_json(self, data: dict) -> None:
        self.put(json.dumps(data))

    @property
    def events(self) -> list[dict]:
        out = []
        for text in self.sent:
            try:
                data = json.loads(text)
            except ValueError:
                continue
            if isinstance(data, dict) and "type" in data:
                out.append(data)
        return out

    @property
    def output(self) -> str:
        return "".join(t for t in self.sent if not _is_event(t))

    def of_type(self, kind: str) -> list[dict]:
        return [e for e in self.events if e["type"] == kind]

    async def wait_for(self, kind: str, count: int = 1) -> dict:
        with anyio.fail_after(15):
            while len(self.of_type(kind)) < count:
                await anyio.sleep(0.01)
        return self.of_type(kind)[count - 1]

    async def wait_for_output(self, needle: str) -> None:
        with anyio.fail_after(15):
            while needle not in self.output:
                await anyio.sleep(0.01)


def _is_event(text: str) -> bool:
    try:
        data = json.loads(text)
    except ValueError:
        return False
    return isinstance(data, dict) and "type" in data


async def settle() -> None:
    # Let queued units be dispatched
    for _ in range(20):
        await anyio.sleep(0.01)


@pytest.fixture()
async def running(cfg):
    channel = FakeChannel()
    gateway = SessionGateway(channel, cfg)
    task = asyncio.ensure_future(gateway.run())
    await channel.wait_for("connected")
    try:
        yield channel, gateway
    finally:
        channel.put(None)
        with anyio.fail_after(15):
            await task


async def test_connected_is_sent_first(running):
    channel, _ = running
    assert json.loads(channel.sent[0]) == {"type": "connected", "message": "WebSocket connected"}


async def test_create_emits_logs_then_created(running):
    channel, gateway = running
    channel.send_json({"type": "create", "image": "alpine:latest"})
    created = await channel.wait_for("created")

    assert len(created["sandboxId"]) == 12
    assert created["sandboxName"].startswith("svelte-terminal-")
    kinds = [e["type"] for e in channel.events]
    assert kinds.index("log") < kinds.index("created")
    assert gateway.session.state is SessionState.PROVISIONED
    assert gateway.session.sandbox_id == created["sandboxId"]


async def test_pull_warning_precedes_created(running, monkeypatch):
    channel, _ = running
    monkeypatch.setenv("FAKE_PULL", "fail")
    channel.send_json({"type": "create"})
    await channel.wait_for("created")

    logs = "".join(e["data"] for e in channel.of_type("log"))
    assert "Image pull completed with warnings" in logs
    assert not channel.of_type("error")


async def test_failed_create_can_be_retried(running, monkeypatch):
    channel, gateway = running
    monkeypatch.setenv("FAKE_RUN", "fail")
    channel.send_json({"type": "create"})
    error = await channel.wait_for("error")
    assert "Exit code: 125" in error["message"]
    assert gateway.session.state is SessionState.IDLE
    assert gateway.session.sandbox_id is None

    monkeypatch.setenv("FAKE_RUN", "ok")
    channel.send_json({"type": "create"})
    await channel.wait_for("created")
    assert gateway.session.state is SessionState.PROVISIONED


async def test_second_create_is_rejected(running, monkeypatch):
    channel, gateway = running
    monkeypatch.setenv("FAKE_RUN", "hang")
    channel.send_json({"type": "create"})
    channel.send_json({"type": "create"})
    error = await channel.wait_for("error")
    assert "still provisioning" in error["message"]
    assert gateway.session.state is SessionState.PROVISIONING

    channel.send_json({"type": "attach", "sandboxId": "0123456789ab"})
    await channel.wait_for("error", count=2)
    assert gateway.session.bridge is None


async def test_create_after_success_is_rejected(running):
    channel, _ = running
    channel.send_json({"type": "create"})
    await channel.wait_for("created")
    channel.send_json({"type": "create"})
    error = await channel.wait_for("error")
    assert "already created" in error["message"]
    assert len(channel.of_type("created")) == 1


async def test_resize_before_attach_is_a_noop(running):
    channel, gateway = running
    channel.send_json({"type": "resize", "cols": 120, "rows": 40})
    await settle()
    assert gateway.session.dimensions.cols == 80
    assert gateway.session.dimensions.rows == 24
    assert [e["type"] for e in channel.events] == ["connected"]


async def test_raw_input_without_attach_is_dropped(running):
    channel, gateway = running
    channel.put("ls\n")
    channel.put(b"\x03")
    channel.send_json({"type": "something-new"})
    await settle()
    assert len(channel.sent) == 1
    assert gateway.session.state is SessionState.IDLE


async def test_attach_needs_a_target(running):
    channel, gateway = running
    channel.send_json({"type": "attach", "cols": 100, "rows": 30})
    error = await channel.wait_for("error")
    assert "no sandboxId" in error["message"]
    assert gateway.session.state is SessionState.IDLE


async def test_attach_spawn_failure_is_reported(missing_runtime_cfg):
    channel = FakeChannel()
    gateway = SessionGateway(channel, missing_runtime_cfg)
    task = asyncio.ensure_future(gateway.run())
    channel.send_json({"type": "attach", "sandboxId": "0123456789ab"})
    error = await channel.wait_for("error")
    assert "Failed to attach" in error["message"]
    assert not channel.of_type("ready")
    assert gateway.session.state is SessionState.IDLE
    channel.put(None)
    await task


async def test_full_terminal_session(running):
    channel, gateway = running
    channel.send_json({"type": "create", "image": "alpine:latest"})
    created = await channel.wait_for("created")

    channel.send_json({"type": "attach", "sandboxId": created["sandboxId"], "cols": 100, "rows": 30})
    await channel.wait_for("ready")
    session = gateway.session
    assert session.state is SessionState.ATTACHED
    # ready goes out before any terminal output
    ready_at = channel.sent.index(READY_FRAME)
    assert all(_is_event(t) for t in channel.sent[:ready_at])

    channel.put("stty size\n")
    await channel.wait_for_output("30 100")

    channel.send_json({"type": "resize", "cols": 120, "rows": 40})
    channel.put("stty size\n")
    await channel.wait_for_output("40 120")
    assert (session.dimensions.cols, session.dimensions.rows) == (120, 40)

    # A lone digit is a keystroke, not a control message
    channel.put("echo $((4")
    channel.put("1")
    channel.put("+1))x\n")
    await channel.wait_for_output("42x")

    channel.put("exit 3\n")
    exit_event = await channel.wait_for("exit")
    assert exit_event["code"] == 3
    assert session.state is SessionState.PROVISIONED
    assert session.bridge is None

    # The same session can attach again, defaulting to its own container
    channel.send_json({"type": "attach"})
    await channel.wait_for("ready", count=2)
    assert session.state is SessionState.ATTACHED


async def test_second_attach_is_rejected(running):
    channel, gateway = running
    channel.send_json({"type": "attach", "sandboxId": "0123456789ab"})
    await channel.wait_for("ready")
    bridge = gateway.session.bridge
    channel.send_json({"type": "attach", "sandboxId": "0123456789ab"})
    error = await channel.wait_for("error")
    assert "already attached" in error["message"]
    assert gateway.session.bridge is bridge


async def test_disconnect_kills_attached_process(cfg, monkeypatch):
    channel = FakeChannel()
    gateway = SessionGateway(channel, cfg)
    task = asyncio.ensure_future(gateway.run())
    channel.send_json({"type": "attach", "sandboxId": "0123456789ab"})
    await channel.wait_for("ready")
    bridge = gateway.session.bridge
    proc = bridge.process

    kills = []
    original_kill = type(bridge).kill

    def counting_kill(self):
        kills.append(self.process.returncode)
        original_kill(self)

    monkeypatch.setattr(type(bridge), "kill", counting_kill)

    sent_before = len(channel.sent)
    channel.put(None)
    with anyio.fail_after(15):
        await task

    assert gateway.session.state is SessionState.CLOSED
    assert proc.returncode == -9
    # Only the first call found the process alive
    assert kills[0] is None
    assert all(code is not None for code in kills[1:])
    bridge.kill()
    # Nothing is written once the channel is gone
    assert len(channel.sent) == sent_before
    assert not channel.of_type("exit")


async def test_disconnect_kills_provisioning(cfg, monkeypatch):
    monkeypatch.setenv("FAKE_RUN", "hang")
    channel = FakeChannel()
    gateway = SessionGateway(channel, cfg)
    task = asyncio.ensure_future(gateway.run())
    channel.send_json({"type": "create"})

    def creating() -> bool:
        logs = "".join(e["data"] for e in channel.of_type("log"))
        p = gateway.session.provisioner
        return p is not None and p.process is not None and "Creating container" in logs

    with anyio.fail_after(15):
        while not creating():
            await anyio.sleep(0.01)
    provisioner = gateway.session.provisioner
    proc = provisioner.process

    channel.put(None)
    with anyio.fail_after(15):
        await task

    assert proc.returncode is not None
    assert provisioner.killed
    assert gateway.session.provisioner is None
    assert not channel.of_type("created")
    assert not channel.of_type("error")
    provisioner.kill()


async def test_dead_channel_stops_outbound_traffic(running):
    channel, _ = running
    channel.send_json({"type": "attach", "sandboxId": "0123456789ab"})
    await channel.wait_for("ready")
    channel.gone = True
    sent = len(channel.sent)
    channel.put("echo still-here\n")
    await settle()
    assert len(channel.sent) == sent


async def test_pty_allocation_failure_keeps_session_usable(running, monkeypatch):
    channel, gateway = running

    def out_of_ptys():
        raise OSError(errno.EMFILE, "Too many open files")

    monkeypatch.setattr(pty, "openpty", out_of_ptys)
    channel.send_json({"type": "attach", "sandboxId": "0123456789ab"})
    error = await channel.wait_for("error")
    assert "cannot allocate a PTY" in error["message"]
    assert gateway.session.state is SessionState.IDLE
    assert gateway.session.bridge is None

    monkeypatch.undo()
    channel.send_json({"type": "attach", "sandboxId": "0123456789ab"})
    await channel.wait_for("ready")
    assert gateway.session.state is SessionState.ATTACHED


async def test_split_character_at_exit_stays_with_its_attach(running):
    channel, _ = running
    channel.send_json({"type": "attach", "sandboxId": "0123456789ab"})
    await channel.wait_for("ready")
    # Two bytes of a three-byte character, then the process is gone
    channel.put("printf 'END\\342\\202'; exit 0\n")
    await channel.wait_for("exit")
    assert "END\ufffd" in channel.output

    channel.send_json({"type": "attach", "sandboxId": "0123456789ab"})
    await channel.wait_for("ready", count=2)
    ready_at = [i for i, t in enumerate(channel.sent) if t == READY_FRAME][1]
    channel.put("echo again-$((1+1))\n")
    await channel.wait_for_output("again-2")
    later = "".join(t for t in channel.sent[ready_at:] if not _is_event(t))
    assert "\ufffd" not in later
