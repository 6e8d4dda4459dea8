"""
Executor agent - the long-running process next to the browser.

Wires the pieces together:

    relay --SSE--> PushTransportClient --> CommandExecutor --> CDPSurface
    relay <--POST /result-- ResultSender <--------'

Runs until SIGINT/SIGTERM.
"""

import asyncio
import logging
import signal
from typing import Optional

from .cdp import CDPSurface
from .config import AgentConfig
from .executor import CommandExecutor
from .protocol import Command
from .snapshot import RefStore
from .surface import AutomationSurface
from .transport import PushTransportClient, ResultSender

logger = logging.getLogger(__name__)


class ExecutorAgent:
    def __init__(self, config: Optional[AgentConfig] = None,
                 surface: Optional[AutomationSurface] = None,
                 transport: Optional[PushTransportClient] = None,
                 sender: Optional[ResultSender] = None):
        self.config = config or AgentConfig()
        if surface is None:
            surface = CDPSurface(self.config.cdp_host, self.config.cdp_port,
                                 load_timeout=self.config.tab_load_timeout)
        self.surface = surface

        self.ref_store = RefStore(self.config.redis_url, self.config.ref_key) if self.config.redis_url else None
        self.executor = CommandExecutor(surface, self.config, ref_store=self.ref_store)
        self.transport = transport or PushTransportClient(
            self.handle_command,
            base_url=self.config.relay_url,
            reconnect_delay=self.config.reconnect_delay,
            max_reconnect_attempts=self.config.max_reconnect_attempts,
            keepalive_interval=self.config.keepalive_interval,
        )
        self.sender = sender or ResultSender(self.config.relay_url)
        self._stopped = asyncio.Event()

    async def handle_command(self, command: Command):
        result = await self.executor.dispatch(command)
        await self.sender.send(result)

    async def start(self):
        logger.info("Starting executor agent")
        logger.info(f"  Relay: {self.config.relay_url}")
        logger.info(f"  Chrome: {self.config.cdp_host}:{self.config.cdp_port}")
        if self.ref_store:
            logger.info(f"  Ref store: {self.config.redis_url} ({self.config.ref_key})")
            await self.executor.restore_refs()

        await self.transport.connect()
        self.transport.start_keepalive()

    async def run(self):
        await self.start()
        await self._stopped.wait()
        await self.close()

    def stop(self):
        logger.info("Stopping executor agent")
        self._stopped.set()

    async def close(self):
        await self.transport.close()
        await self.sender.close()
        await self.surface.close()
        if self.ref_store:
            await self.ref_store.close()
        logger.info("Executor agent stopped")


async def run_agent(config: Optional[AgentConfig] = None):
    agent = ExecutorAgent(config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, agent.stop)

    await agent.run()
