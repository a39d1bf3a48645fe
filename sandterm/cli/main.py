from __future__ import annotations

from typing import Optional

import anyio
import typer
from rich import print

from sandterm.config import Config
from sandterm.container import DockerRuntime
from sandterm.core.provisioner import Provisioner
from sandterm.errors import STError
from sandterm.logger import setup_logging


app = typer.Typer(name="sandterm", help="Interactive terminals in throwaway containers")


def _runtime(cfg: Config) -> DockerRuntime:
	try:
		return DockerRuntime(cfg.docker_host)
	except STError as e:
		print({"error": str(e)})
		raise typer.Exit(1)


@app.command("serve")
def serve(host: Optional[str] = typer.Option(None), port: Optional[int] = typer.Option(None), log_level: Optional[str] = typer.Option(None)):
	import uvicorn

	from sandterm.server import create_app

	updates = {k: v for k, v in {"host": host, "port": port, "log_level": log_level}.items() if v is not None}
	cfg = Config().model_copy(update=updates)
	setup_logging(cfg.log_level)
	uvicorn.run(create_app(cfg), host=cfg.host, port=cfg.port, log_level=cfg.log_level.lower())


@app.command("create")
def create(image: Optional[str] = typer.Option(None)):
	cfg = Config()

	async def _echo(text: str) -> None:
		typer.echo(text, nl=False)

	try:
		result = anyio.run(Provisioner(cfg, on_log=_echo).provision, image)
	except STError as e:
		print({"error": str(e)})
		raise typer.Exit(1)
	print({"sandboxId": result.sandbox_id, "sandboxName": result.sandbox_name})


@app.command("get")
def get(id: str):
	runtime = _runtime(Config())
	try:
		info = runtime.get_container(id)
	except STError as e:
		print({"error": str(e)})
		raise typer.Exit(1)
	print(info.__dict__)


@app.command("ls")
def ls(all: bool = typer.Option(False, help="Include containers not created by sandterm")):
	cfg = Config()
	runtime = _runtime(cfg)
	print([i.__dict__ for i in runtime.list_containers(None if all else cfg.name_prefix)])


@app.command("rm")
def rm(id: str):
	runtime = _runtime(Config())
	try:
		runtime.remove_container(id)
	except STError as e:
		print({"error": str(e)})
		raise typer.Exit(1)
	print({"ok": True, "containerId": id})


@app.command("exec")
def exec_(id: str, cmd: str):
	runtime = _runtime(Config())
	try:
		res = runtime.exec_in_container(id, cmd)
	except STError as e:
		print({"error": str(e)})
		raise typer.Exit(1)
	print({"exit_code": res.exit_code, "output": res.output})


if __name__ == "__main__":
	app()
