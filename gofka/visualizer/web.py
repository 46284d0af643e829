"""Web front of the visualizer: static page, client websockets and the node update endpoint."""

from __future__ import annotations

import argparse
import asyncio
import base64
import contextlib
import json
import logging
import os
import time
from pathlib import Path

from aiohttp import WSMsgType, web

from gofka.config import ConfigError
from gofka.visualizer.config import Settings, load_config
from gofka.visualizer.hub import ClientSession, Message, VisualizerHub

logger = logging.getLogger(__name__)

WS_HEARTBEAT = 54.0


async def _write_pump(ws: web.WebSocketResponse, client: ClientSession) -> None:
    try:
        while True:
            batch = await client.queue.get()
            if batch is None:
                return
            await ws.send_json([message.to_dict() for message in batch])
    except (ConnectionResetError, RuntimeError) as exc:
        logger.info("write error for client %s: %s", client.id, exc)
    finally:
        if not ws.closed:
            await ws.close()


def create_app(hub: VisualizerHub, static_dir: str | os.PathLike = "static") -> web.Application:
    """Application serving the page, its static files and the client websocket."""
    static = Path(static_dir)
    app = web.Application()

    async def websocket(request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=WS_HEARTBEAT)
        await ws.prepare(request)
        client = ClientSession()
        hub.register(client)
        writer = asyncio.get_running_loop().create_task(_write_pump(ws, client))
        try:
            async for raw in ws:
                if raw.type not in (WSMsgType.TEXT, WSMsgType.BINARY):
                    break
                try:
                    message = Message.from_dict(json.loads(raw.data))
                except ValueError as exc:
                    logger.info("error reading from client %s: %s", client.id, exc)
                    break
                message.timestamp = int(time.time())
                client.handle_message(message)
        finally:
            hub.unregister(client)
            writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await writer
        return ws

    async def index(request: web.Request) -> web.FileResponse:
        page = static / "index.html"
        if not page.is_file():
            raise web.HTTPNotFound()
        return web.FileResponse(page)

    if static.is_dir():
        app.router.add_static("/static/", static)
    app.router.add_get("/ws", websocket)
    app.router.add_get("/{tail:.*}", index)
    return app


def _create_update_app(hub: VisualizerHub) -> web.Application:
    """Application through which cluster nodes report events and fetch commands."""

    async def update(request: web.Request) -> web.Response:
        try:
            body = await request.json()
            if not isinstance(body, dict):
                raise ValueError("body must be a JSON object")
            data = body.get("data") or ""
            if not isinstance(data, str):
                raise ValueError("data must be base64 text")
            payload = base64.b64decode(data, validate=True)
            node_type = str(body.get("node_type", ""))
            action = str(body.get("action", ""))
            target = str(body.get("target", ""))
        except ValueError as exc:
            return web.json_response({"success": False, "error": str(exc)}, status=400)
        commands = hub.update(node_type, action, target, payload)
        return web.json_response(
            {"success": True, "commands": [command.to_dict() for command in commands]}
        )

    app = web.Application()
    app.router.add_post("/update", update)
    return app


async def run(settings: Settings, static_dir: str | os.PathLike = "static") -> None:
    """Serve node updates and the web page until cancelled."""
    hub = VisualizerHub()
    update_runner = web.AppRunner(_create_update_app(hub))
    web_runner = web.AppRunner(create_app(hub, static_dir))
    await update_runner.setup()
    await web_runner.setup()
    try:
        await web.TCPSite(update_runner, port=settings.server.grpc_port).start()
        await web.TCPSite(web_runner, port=settings.server.web_port).start()
        logger.info(
            "update server at :%d and webpage at :%d",
            settings.server.grpc_port,
            settings.server.web_port,
        )
        await asyncio.Event().wait()
    finally:
        await web_runner.cleanup()
        await update_runner.cleanup()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="gofka-visualizer")
    parser.add_argument(
        "--config", default=os.environ.get("GOFKA_CONFIG_PATH") or "gofka.yaml"
    )
    parser.add_argument("--static-dir", default="static")
    args = parser.parse_args(argv)
    try:
        settings = load_config(args.config)
    except ConfigError as exc:
        logger.error("error loading config: %s", exc)
        return 1
    try:
        asyncio.run(run(settings, args.static_dir))
    except KeyboardInterrupt:
        return 0
    except OSError as exc:
        logger.error("application failed: %s", exc)
        return 1
    return 0