from __future__ import annotations

import contextlib
from typing import Optional

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.routing import Route, WebSocketRoute

from sandterm.config import Config
from sandterm.container import ContainerRuntime
from sandterm.logger import get_logger
from sandterm.server.routes import (
	create_container,
	delete_container,
	exec_command,
	get_container,
	list_containers,
)
from sandterm.server.terminal import terminal_websocket_endpoint


logger = get_logger(__name__)


@contextlib.asynccontextmanager
async def _lifespan(app: Starlette):
	logger.info("Terminal server ready (runtime: %s)", app.state.config.runtime)
	yield
	# Kill whatever live sessions still own
	for gateway in list(app.state.gateways):
		await gateway.close()


def create_app(cfg: Optional[Config] = None, runtime: Optional[ContainerRuntime] = None) -> Starlette:
	"""Build the application. ``runtime`` is created lazily when not given."""
	cfg = cfg or Config()
	routes = [
		Route("/api/create-container", create_container, methods=["POST"]),
		Route("/api/containers", list_containers, methods=["GET"]),
		Route("/api/container/{identifier}", get_container, methods=["GET"]),
		Route("/api/container/{identifier}", delete_container, methods=["DELETE"]),
		Route("/api/exec", exec_command, methods=["POST"]),
		WebSocketRoute("/", terminal_websocket_endpoint),
		WebSocketRoute("/ws", terminal_websocket_endpoint),
	]
	middleware = [
		Middleware(
			CORSMiddleware,
			allow_origins=cfg.cors_origins,
			allow_methods=["*"],
			allow_headers=["*"],
		),
	]
	app = Starlette(routes=routes, middleware=middleware, lifespan=_lifespan)
	app.state.config = cfg
	app.state.runtime = runtime
	app.state.gateways = set()
	return app
