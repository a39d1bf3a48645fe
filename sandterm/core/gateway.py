"""One channel, one session.

The gateway sends ``connected``, then classifies every inbound unit and
routes it: control messages to the session, raw input to the attached
process. It is also the session's event sink, so decoded PTY output goes
straight back out on the channel as text frames.
"""

from __future__ import annotations

from typing import Optional, Protocol

from sandterm.config import Config
from sandterm.core.lifecycle import TerminalSession
from sandterm.logger import get_logger
from sandterm.protocol import (
	AttachMessage,
	ConnectedEvent,
	CreateMessage,
	Event,
	RawInput,
	ResizeMessage,
	classify,
	encode_event,
)


logger = get_logger(__name__)


class ChannelClosed(Exception):
	pass


class Channel(Protocol):
	async def receive(self) -> Optional[str | bytes]:
		"""Next inbound unit, or None once the peer has gone."""
		...

	async def send_text(self, text: str) -> None:
		"""Raises ChannelClosed if the peer has gone."""
		...


class SessionGateway:
	def __init__(self, channel: Channel, cfg: Optional[Config] = None):
		self._channel = channel
		self._open = True
		self.session = TerminalSession(self, cfg)

	@property
	def session_id(self) -> str:
		return self.session.session_id

	async def run(self) -> None:
		logger.info("Terminal session %s connected", self.session_id)
		try:
			await self.send_event(ConnectedEvent())
			while self._open:
				unit = await self._channel.receive()
				if unit is None:
					break
				await self.dispatch(unit)
		finally:
			await self.close()
			logger.info("Terminal session %s disconnected", self.session_id)

	async def dispatch(self, unit: str | bytes) -> None:
		message = classify(unit)
		if isinstance(message, RawInput):
			self.session.write(message.data)
			return
		logger.debug("Session %s received %s message", self.session_id, message.type)
		if isinstance(message, CreateMessage):
			await self.session.create(message)
		elif isinstance(message, AttachMessage):
			await self.session.attach(message)
		elif isinstance(message, ResizeMessage):
			self.session.resize(message)
		else:
			logger.debug("Session %s ignoring %s message: %s", self.session_id, message.type, message.reason)

	async def close(self) -> None:
		self._open = False
		await self.session.close()

	async def send_event(self, event: Event) -> None:
		await self._send(encode_event(event))

	async def send_output(self, text: str) -> None:
		# Terminal output is already decoded per attach; it goes out as a text frame
		await self._send(text)

	async def _send(self, text: str) -> None:
		if not self._open:
			return
		try:
			await self._channel.send_text(text)
		except ChannelClosed as e:
			logger.debug("Session %s: channel closed while sending: %s", self.session_id, e)
			self._open = False
