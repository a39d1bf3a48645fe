"""Per-session state machine.

	IDLE --create--> PROVISIONING --ok--> PROVISIONED --attach--> ATTACHING --ready--> ATTACHED
	PROVISIONING --failure--> IDLE
	IDLE --attach--> ATTACHING
	ATTACHED --exit--> PROVISIONED | IDLE
	any --close--> CLOSED

A session owns at most one provisioning chain and one attached process.
``close()`` is the only cleanup path and kills both.
"""

from __future__ import annotations

import asyncio
import codecs
import uuid
from typing import Awaitable, Optional, Protocol

from sandterm.config import Config
from sandterm.core.provisioner import Provisioner
from sandterm.core.pty_bridge import PtyBridge
from sandterm.errors import STAttachError, STProvisionCancelled, STProvisionError, STSessionBusy
from sandterm.logger import get_logger
from sandterm.protocol import (
	AttachMessage,
	CreatedEvent,
	CreateMessage,
	ErrorEvent,
	Event,
	ExitEvent,
	LogEvent,
	ReadyEvent,
	ResizeMessage,
)
from sandterm.types import Dimensions, SessionState


logger = get_logger(__name__)

# How long close() waits for background tasks after killing their processes
CLOSE_GRACE_SECONDS = 5.0

_BUSY_STATES = (SessionState.PROVISIONING, SessionState.ATTACHING)


class EventSink(Protocol):
	async def send_event(self, event: Event) -> None: ...

	async def send_output(self, text: str) -> None: ...


class TerminalSession:
	def __init__(self, sink: EventSink, cfg: Optional[Config] = None, session_id: Optional[str] = None):
		self.cfg = cfg or Config()
		self.session_id = session_id or uuid.uuid4().hex[:8]
		self.state = SessionState.IDLE
		self.sandbox_id: Optional[str] = None
		self.sandbox_name: Optional[str] = None
		self.dimensions = Dimensions(cols=self.cfg.cols, rows=self.cfg.rows)
		self.bridge: Optional[PtyBridge] = None
		self.provisioner: Optional[Provisioner] = None
		self._sink = sink
		self._tasks: set[asyncio.Task] = set()

	@property
	def closed(self) -> bool:
		return self.state is SessionState.CLOSED

	async def create(self, msg: CreateMessage) -> None:
		if self.closed:
			return
		try:
			self._check_allowed("create", (SessionState.IDLE,))
		except STSessionBusy as e:
			await self._emit(ErrorEvent(message=str(e)))
			return
		self.state = SessionState.PROVISIONING
		self.provisioner = Provisioner(self.cfg, on_log=self._emit_log)
		self._spawn(self._provision(self.provisioner, msg.image))

	async def attach(self, msg: AttachMessage) -> None:
		if self.closed:
			return
		target = msg.sandbox_id or self.sandbox_id
		if not target:
			await self._emit(ErrorEvent(message="Cannot attach: no sandboxId given and no container was created in this session"))
			return
		try:
			self._check_allowed("attach", (SessionState.IDLE, SessionState.PROVISIONED))
		except STSessionBusy as e:
			await self._emit(ErrorEvent(message=str(e)))
			return

		self.dimensions = Dimensions(
			cols=msg.cols or self.dimensions.cols,
			rows=msg.rows or self.dimensions.rows,
		)
		self.state = SessionState.ATTACHING
		bridge = PtyBridge(self.cfg)
		self.bridge = bridge
		try:
			await bridge.start(target, self.dimensions)
		except STAttachError as e:
			bridge.close()
			if self.bridge is bridge:
				self.bridge = None
			if self.closed:
				return
			logger.warning("Session %s: %s", self.session_id, e)
			self.state = self._resting_state()
			await self._emit(ErrorEvent(message=str(e)))
			return

		self.state = SessionState.ATTACHED
		await self._emit(ReadyEvent())
		self._spawn(self._pump(bridge))

	def resize(self, msg: ResizeMessage) -> None:
		if self.state is not SessionState.ATTACHED or self.bridge is None:
			logger.debug("Session %s: ignoring resize while %s", self.session_id, self.state.value)
			return
		self.dimensions = Dimensions(cols=msg.cols or 80, rows=msg.rows or 24)
		self.bridge.resize(self.dimensions.cols, self.dimensions.rows)

	def write(self, data: bytes) -> None:
		# Input with nowhere to go is dropped
		if self.state is SessionState.ATTACHED and self.bridge is not None:
			self.bridge.write(data)

	async def close(self) -> None:
		if self.closed:
			return
		previous = self.state
		self.state = SessionState.CLOSED
		if self.provisioner is not None:
			self.provisioner.kill()
		if self.bridge is not None:
			self.bridge.close()
		tasks = list(self._tasks)
		if tasks:
			_, pending = await asyncio.wait(tasks, timeout=CLOSE_GRACE_SECONDS)
			for task in pending:
				task.cancel()
		logger.info("Session %s closed (was %s)", self.session_id, previous.value)

	async def _provision(self, provisioner: Provisioner, image: Optional[str]) -> None:
		try:
			result = await provisioner.provision(image)
		except STProvisionCancelled:
			return
		except STProvisionError as e:
			await self._provision_failed(str(e))
			return
		except Exception as e:
			logger.exception("Session %s: provisioning crashed", self.session_id)
			await self._provision_failed(f"Failed to create container: {e}")
			return
		finally:
			if self.provisioner is provisioner:
				self.provisioner = None

		if self.closed:
			return
		self.sandbox_id = result.sandbox_id
		self.sandbox_name = result.sandbox_name
		self.state = SessionState.PROVISIONED
		await self._emit(CreatedEvent(sandbox_id=result.sandbox_id, sandbox_name=result.sandbox_name))

	async def _provision_failed(self, message: str) -> None:
		if self.closed:
			return
		self.state = SessionState.IDLE
		await self._emit(ErrorEvent(message=message))

	async def _pump(self, bridge: PtyBridge) -> None:
		# Fresh decoder per attach, flushed before the exit event.
		# Invalid UTF-8 reaches the client as U+FFFD, not byte-for-byte.
		decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
		try:
			async for chunk in bridge.stream():
				if self.closed:
					break
				await self._emit_output(decoder.decode(chunk))
			await self._emit_output(decoder.decode(b"", final=True))
			code = await bridge.wait()
		finally:
			bridge.close()
			if self.bridge is bridge:
				self.bridge = None
		logger.info("Session %s: %s exited with %s", self.session_id, bridge.target, code)
		if self.closed:
			return
		self.state = self._resting_state()
		await self._emit(ExitEvent(code=code))

	def _check_allowed(self, request: str, allowed: tuple) -> None:
		if self.state in allowed:
			return
		if self.state in _BUSY_STATES:
			raise STSessionBusy(f"Cannot {request}: a previous request is still {self.state.value}")
		if self.state is SessionState.ATTACHED:
			raise STSessionBusy(f"Cannot {request}: a terminal is already attached")
		raise STSessionBusy(f"Cannot {request}: container {self.sandbox_id} was already created in this session")

	def _resting_state(self) -> SessionState:
		return SessionState.PROVISIONED if self.sandbox_id else SessionState.IDLE

	def _spawn(self, coro: Awaitable[None]) -> None:
		task = asyncio.ensure_future(coro)
		self._tasks.add(task)
		task.add_done_callback(self._task_done)

	def _task_done(self, task: asyncio.Task) -> None:
		self._tasks.discard(task)
		if not task.cancelled() and task.exception() is not None:
			logger.error("Session %s: background task failed", self.session_id, exc_info=task.exception())

	async def _emit_output(self, text: str) -> None:
		if text and not self.closed:
			await self._sink.send_output(text)

	async def _emit_log(self, text: str) -> None:
		await self._emit(LogEvent(data=text))

	async def _emit(self, event: Event) -> None:
		if self.closed:
			return
		await self._sink.send_event(event)
