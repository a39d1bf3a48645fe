"""One-shot container endpoints.

Each handler wraps a single runtime call and keeps no session state:
	POST   /api/create-container   {"image": "..."}
	GET    /api/containers
	GET    /api/container/{identifier}
	DELETE /api/container/{identifier}
	POST   /api/exec               {"containerId": "...", "command": "..."}
"""

from __future__ import annotations

import json

import anyio
from starlette.requests import Request
from starlette.responses import JSONResponse

from sandterm.container import ContainerRuntime, DockerRuntime
from sandterm.core.provisioner import Provisioner
from sandterm.errors import STError, STSandboxNotFound
from sandterm.logger import get_logger
from sandterm.types import SandboxInfo


logger = get_logger(__name__)


async def _get_runtime(request: Request) -> ContainerRuntime:
	state = request.app.state
	if state.runtime is None:
		# DockerRuntime pings the daemon on construction
		state.runtime = await anyio.to_thread.run_sync(DockerRuntime, state.config.docker_host)
	return state.runtime


async def _read_body(request: Request) -> dict:
	try:
		body = await request.json()
	except (json.JSONDecodeError, UnicodeDecodeError):
		return {}
	return body if isinstance(body, dict) else {}


def _error_response(e: STError) -> JSONResponse:
	status = 404 if isinstance(e, STSandboxNotFound) else 500
	return JSONResponse({"error": str(e)}, status_code=status)


def _info_dict(info: SandboxInfo) -> dict:
	return {"id": info.id, "image": info.image, "status": info.status, "names": info.name}


async def create_container(request: Request) -> JSONResponse:
	cfg = request.app.state.config
	body = await _read_body(request)
	try:
		result = await Provisioner(cfg).provision(body.get("image"))
	except STError as e:
		logger.warning("Create request failed: %s", e)
		return _error_response(e)
	return JSONResponse({
		"containerId": result.sandbox_id,
		"containerName": result.sandbox_name,
		"message": "Container created successfully",
	})


async def list_containers(request: Request) -> JSONResponse:
	prefix = request.app.state.config.name_prefix
	try:
		runtime = await _get_runtime(request)
		infos = await anyio.to_thread.run_sync(runtime.list_containers, prefix)
	except STError as e:
		return _error_response(e)
	return JSONResponse({"containers": [_info_dict(i) for i in infos]})


async def get_container(request: Request) -> JSONResponse:
	identifier = request.path_params["identifier"]
	try:
		runtime = await _get_runtime(request)
		info = await anyio.to_thread.run_sync(runtime.get_container, identifier)
	except STError as e:
		return _error_response(e)
	return JSONResponse({"container": _info_dict(info)})


async def delete_container(request: Request) -> JSONResponse:
	identifier = request.path_params["identifier"]
	logger.info("Delete request for container: %s", identifier)
	try:
		runtime = await _get_runtime(request)
		await anyio.to_thread.run_sync(runtime.remove_container, identifier)
	except STError as e:
		logger.warning("Delete of %s failed: %s", identifier, e)
		return _error_response(e)
	return JSONResponse({"message": "Container deleted successfully", "containerId": identifier})


async def exec_command(request: Request) -> JSONResponse:
	body = await _read_body(request)
	container_id = body.get("containerId")
	command = body.get("command")
	if not container_id or not isinstance(command, str):
		return JSONResponse({"error": "containerId and command are required"}, status_code=400)
	try:
		runtime = await _get_runtime(request)
		result = await anyio.to_thread.run_sync(runtime.exec_in_container, container_id, command)
	except STError as e:
		return _error_response(e)
	return JSONResponse({"output": result.output, "exitCode": result.exit_code})
