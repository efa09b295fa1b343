"""
genqueue server process.

Two FastAPI apps share one scheduler:

- transport app: ``/ws`` (calls + broadcasts) and ``/health``
- file app: ``/output/<job name>/<NNNNN>.png`` static artifacts and ``/health``

``main()`` serves both with uvicorn in a single event loop.
"""

from __future__ import annotations

import argparse
import asyncio
from contextlib import asynccontextmanager
from typing import List, Optional, Sequence

import uvicorn
from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from backends.auto1111 import Auto1111Backend
from server.access_log import AccessLogMiddleware
from server.config_store import ConfigStore
from server.handlers import register_handlers
from server.logging_utils import get_logger, init_logging
from server.scheduler import JobScheduler
from server.settings import ServerConfig, load_config
from server.storage import ImageStore
from server.transport import ChannelHub


class GenQueueServer:
    """Wires the stores, backend, scheduler and hub together."""

    def __init__(self, config: ServerConfig, backend: Optional[Auto1111Backend] = None):
        self.config = config
        self.slog = get_logger()
        self.hub = ChannelHub()
        self.images = ImageStore(config.output_dir)
        self.config_store = ConfigStore(config.data_dir)
        self.backend = backend or Auto1111Backend.from_url(config.backend_url, timeout_s=config.backend_timeout_s)
        self.scheduler = JobScheduler(
            self.backend,
            self.images,
            publish=self.hub.broadcast,
            tick_interval_s=config.tick_interval_s,
            eviction_delay_s=config.eviction_delay_s,
        )
        register_handlers(self.hub, self.scheduler, self.backend, self.config_store, self.images)

    async def startup(self) -> None:
        self.images.initialize()
        self.config_store.initialize()
        self.scheduler.start()
        self.slog.info(
            "server_started",
            backend_url=self.config.backend_url,
            ws_port=self.config.ws_port,
            files_port=self.config.files_port,
            data_dir=str(self.config.data_dir),
        )

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        await self.backend.aclose()
        self.slog.info("server_stopped")


def create_transport_app(server: GenQueueServer) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await server.startup()
        try:
            yield
        finally:
            await server.shutdown()

    app = FastAPI(title="genqueue", lifespan=lifespan)
    app.state.server = server

    @app.websocket("/ws")
    async def ws_endpoint(websocket: WebSocket):
        await server.hub.serve(websocket)

    @app.get("/health")
    async def health():
        status = server.scheduler.status()
        return {
            "ok": True,
            "serverId": server.config.server_id,
            "schedulerRunning": server.scheduler.running,
            "connections": server.hub.channel_count,
            "queueDepth": status.queue_depth,
            "processing": status.processing,
        }

    return app


def create_files_app(server: GenQueueServer) -> FastAPI:
    server.images.initialize()
    app = FastAPI(title="genqueue files")
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["GET"], allow_headers=["*"])
    app.add_middleware(AccessLogMiddleware)

    @app.get("/health")
    async def health():
        return {"ok": True, "serverId": server.config.server_id, "outputDir": str(server.images.output_dir)}

    app.mount("/output", StaticFiles(directory=str(server.images.output_dir)), name="output")
    return app


async def _serve_all(servers: List[uvicorn.Server]) -> None:
    tasks = [asyncio.create_task(s.serve()) for s in servers]
    done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    # one server stopping (signal or bind failure) stops the rest
    for s in servers:
        s.should_exit = True
    if pending:
        await asyncio.gather(*pending)
    for task in done:
        task.result()


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="genqueue-server", description="Image generation job queue server")
    parser.add_argument("--config", help="Path to server.yaml (default: server/config/server.yaml or $GENQUEUE_CONFIG)")
    parser.add_argument("--host", help="Bind address for both servers")
    parser.add_argument("--port", type=int, help="Websocket server port")
    parser.add_argument("--files-port", type=int, help="Static file server port")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ServerConfig:
    config = load_config(args.config)
    overrides = {
        "host": args.host,
        "ws_port": args.port,
        "files_port": args.files_port,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if overrides:
        config = ServerConfig.model_validate({**config.model_dump(), **overrides})
    return config


def main(argv: Optional[Sequence[str]] = None) -> None:
    config = build_config(parse_args(argv))
    init_logging(server_id=config.server_id)

    server = GenQueueServer(config)
    servers = [
        uvicorn.Server(uvicorn.Config(create_transport_app(server), host=config.host, port=config.ws_port)),
        uvicorn.Server(uvicorn.Config(create_files_app(server), host=config.host, port=config.files_port)),
    ]
    asyncio.run(_serve_all(servers))


if __name__ == "__main__":
    main()
