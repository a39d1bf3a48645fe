"""WebSocket endpoint: one SessionGateway per connection."""

from __future__ import annotations

from typing import Optional

from starlette.websockets import WebSocket, WebSocketDisconnect

from sandterm.core.gateway import ChannelClosed, SessionGateway
from sandterm.logger import get_logger


logger = get_logger(__name__)


class WebSocketChannel:
	def __init__(self, websocket: WebSocket):
		self._ws = websocket

	async def receive(self) -> Optional[str | bytes]:
		try:
			message = await self._ws.receive()
		except (WebSocketDisconnect, RuntimeError):
			return None
		if message["type"] == "websocket.disconnect":
			return None
		if message.get("text") is not None:
			return message["text"]
		return message.get("bytes") or b""

	async def send_text(self, text: str) -> None:
		try:
			await self._ws.send_text(text)
		except (WebSocketDisconnect, RuntimeError, OSError) as e:
			raise ChannelClosed(str(e)) from e


async def terminal_websocket_endpoint(websocket: WebSocket):
	await websocket.accept()
	state = websocket.app.state
	gateway = SessionGateway(WebSocketChannel(websocket), state.config)
	state.gateways.add(gateway)
	try:
		await gateway.run()
	finally:
		state.gateways.discard(gateway)
