"""
Relay daemon - FastAPI server between issuers and the executor.

  GET  /sse        event stream to the executor (connected / heartbeat / command)
  POST /command    issuer call; blocks until the executor's Result arrives
  POST /result     executor posts a completed Result (submit-by-id)
  GET  /status     relay status
  GET  /api/health liveness
  POST /shutdown   stop the daemon
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from . import __version__
from .config import RelayConfig
from .errors import Timeout, Unavailable, ValidationError
from .protocol import Command, RelayStatus, Result, generate_id
from .relay import CommandRelay
from .sse import encode_event

logger = logging.getLogger(__name__)


def create_app(config: Optional[RelayConfig] = None, relay: Optional[CommandRelay] = None) -> FastAPI:
    config = config or RelayConfig()
    relay = relay or CommandRelay(timeout=config.command_timeout)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup/shutdown events"""
        logger.info(f"Relay listening on {config.host}:{config.port} "
                    f"(timeout {config.command_timeout:g}s, heartbeat {config.heartbeat_interval:g}s)")
        yield
        relay.close()

    app = FastAPI(title="tabrelay", version=__version__, lifespan=lifespan)
    app.state.relay = relay
    app.state.config = config
    app.state.server = None  # uvicorn.Server, set by the CLI

    # The executor runs inside the browser host and may not share our origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # === Routes ===

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "timestamp": int(time.time())}

    @app.get("/status")
    async def status():
        return RelayStatus(
            running=True,
            extension_connected=relay.hub.connected,
            pending_requests=relay.pending_count,
            uptime=relay.uptime,
        ).to_wire()

    @app.get("/sse")
    async def sse(request: Request):
        async def stream():
            queue = relay.hub.subscribe()
            try:
                yield encode_event("connected", {"time": int(time.time())})
                while True:
                    try:
                        command = await asyncio.wait_for(queue.get(), timeout=config.heartbeat_interval)
                    except asyncio.TimeoutError:
                        if await request.is_disconnected():
                            break
                        yield encode_event("heartbeat", {"time": int(time.time())})
                        continue
                    if command is None:
                        break
                    yield encode_event("command", command.to_wire())
            finally:
                relay.hub.unsubscribe(queue)

        return StreamingResponse(
            stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.post("/command")
    async def command(command: Command):
        # Assigned here so error bodies carry the id too
        if not command.id:
            command = command.with_id(generate_id())
        try:
            result = await relay.submit(command)
        except ValidationError as e:
            return JSONResponse(status_code=400, content=Result.fail(command.id, str(e)).to_wire())
        except Timeout as e:
            return JSONResponse(status_code=504, content=Result.fail(command.id, str(e)).to_wire())
        except Unavailable as e:
            return JSONResponse(status_code=503, content=Result.fail(command.id, str(e)).to_wire())
        return result.to_wire()

    @app.post("/result")
    async def result(result: Result):
        return {"accepted": relay.resolve(result)}

    @app.post("/shutdown")
    async def shutdown():
        logger.info("Shutdown requested")
        relay.close()
        if app.state.server is not None:
            app.state.server.should_exit = True
        return {"status": "stopping"}

    return app
