"""
Element resolver - turns a ref id into a live element.

Nothing is cached between calls: every operation re-runs the xpath against
the current document, so a ref keeps working across re-renders as long as
the structure it points at is still there.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from .config import WAIT_ELEMENT_INTERVAL, WAIT_ELEMENT_TIMEOUT
from .errors import HandlerError, RefNotFound, Timeout
from .page_scripts import ELEMENT_SCRIPT
from .protocol import RefInfo
from .snapshot import RefTable
from .surface import AutomationSurface

logger = logging.getLogger(__name__)


@dataclass
class ElementHandle:
    ref: str
    info: RefInfo
    tab_id: Any
    frame_id: Any = None

    @property
    def xpath(self) -> str:
        return self.info.xpath

    @property
    def role(self) -> str:
        return self.info.role

    @property
    def name(self) -> Optional[str]:
        return self.info.name


class ElementResolver:
    def __init__(self, surface: AutomationSurface, refs: RefTable,
                 wait_timeout: float = WAIT_ELEMENT_TIMEOUT,
                 wait_interval: float = WAIT_ELEMENT_INTERVAL):
        self.surface = surface
        self.refs = refs
        self.wait_timeout = wait_timeout
        self.wait_interval = wait_interval

    def handle(self, tab_id, ref, frame_id=None) -> ElementHandle:
        """Table lookup only. Raises RefNotFound for unknown ids."""
        return ElementHandle(RefTable.normalize(ref), self.refs.lookup(ref), tab_id, frame_id)

    async def resolve(self, tab_id, ref, frame_id=None) -> ElementHandle:
        handle = self.handle(tab_id, ref, frame_id)
        await self.call(handle, "exists")
        return handle

    async def call(self, handle: ElementHandle, op: str, *args) -> Any:
        response = await self._run(handle, op, list(args))
        if not response or not response.get("found"):
            raise RefNotFound(handle.ref, f"Element not found by xpath: {handle.xpath}")
        if response.get("error"):
            raise HandlerError(response["error"])
        return response.get("value")

    async def wait_for(self, tab_id, ref, frame_id=None, timeout: Optional[float] = None,
                       interval: Optional[float] = None) -> ElementHandle:
        """Poll until the ref's locator matches. Independent of the relay deadline."""
        timeout = self.wait_timeout if timeout is None else timeout
        interval = self.wait_interval if interval is None else interval
        handle = self.handle(tab_id, ref, frame_id)

        loop = asyncio.get_running_loop()
        started = loop.time()
        while True:
            response = await self._run(handle, "exists", [])
            if response and response.get("found"):
                logger.info(f"Element found: @{handle.ref} after {loop.time() - started:.2f}s")
                return handle
            if loop.time() - started >= timeout:
                raise Timeout(f"Timeout waiting for element @{handle.ref} after {int(timeout * 1000)}ms")
            await asyncio.sleep(interval)

    async def _run(self, handle: ElementHandle, op: str, args: list):
        return await self.surface.run_script(
            handle.tab_id, handle.frame_id, ELEMENT_SCRIPT, [handle.xpath, op, args]
        )
