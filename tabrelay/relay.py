"""
Command Relay - issuer side of the push channel.

submit() looks synchronous to the caller: it registers a waiter keyed by
the command id, pushes the command to the executor's event stream and
waits until the matching Result is posted back (resolve()), the deadline
passes (Timeout) or the relay shuts down (Unavailable).

Results are matched purely by id; they arrive in completion order.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .config import COMMAND_TIMEOUT
from .errors import Timeout, Unavailable, ValidationError
from .protocol import Command, Result, generate_id

logger = logging.getLogger(__name__)


@dataclass
class PendingWaiter:
    id: str
    action: str
    created_at: float
    deadline: float
    future: asyncio.Future


class PushHub:
    """
    Executor subscriptions plus a backlog of commands pushed while no
    executor was listening. The newest subscription receives commands;
    older ones only keep getting heartbeats until they close.
    """

    def __init__(self, is_live: Callable[[str], bool]):
        self._is_live = is_live
        self._subscribers: List[asyncio.Queue] = []
        self._backlog = deque()

    @property
    def connected(self) -> bool:
        return bool(self._subscribers)

    @property
    def backlog_size(self) -> int:
        return len(self._backlog)

    def subscribe(self) -> asyncio.Queue:
        queue = asyncio.Queue()
        self._subscribers.append(queue)
        flushed = 0
        while self._backlog:
            command = self._backlog.popleft()
            # Waiter already timed out: nobody wants this result any more
            if not self._is_live(command.id):
                continue
            queue.put_nowait(command)
            flushed += 1
        logger.info(f"Executor subscribed ({len(self._subscribers)} active, {flushed} queued commands flushed)")
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        if queue in self._subscribers:
            self._subscribers.remove(queue)
            logger.info(f"Executor unsubscribed ({len(self._subscribers)} active)")

    def push(self, command: Command) -> bool:
        """Deliver to the newest subscriber. Returns False if backlogged."""
        if not self._subscribers:
            self._backlog = deque(c for c in self._backlog if self._is_live(c.id))
            self._backlog.append(command)
            logger.warning(f"No executor connected, queued {command.action} [{command.id[:8]}]")
            return False
        self._subscribers[-1].put_nowait(command)
        return True

    def close(self):
        """Ends every open stream (None is the end-of-stream marker)."""
        for queue in self._subscribers:
            queue.put_nowait(None)
        self._backlog.clear()


class CommandRelay:
    def __init__(self, timeout: float = COMMAND_TIMEOUT):
        self.timeout = timeout
        self.started_at = time.time()
        self.hub = PushHub(is_live=lambda command_id: command_id in self._pending)
        self._pending: Dict[str, PendingWaiter] = {}
        self._closed = False

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def uptime(self) -> float:
        return time.time() - self.started_at

    async def submit(self, command: Command, timeout: Optional[float] = None) -> Result:
        if self._closed:
            raise Unavailable("Relay is shutting down")
        if not command.id:
            command = command.with_id(generate_id())
        if command.id in self._pending:
            raise ValidationError(f"Duplicate command id: {command.id}")

        timeout = timeout or self.timeout
        now = time.time()
        waiter = PendingWaiter(
            id=command.id,
            action=command.action,
            created_at=now,
            deadline=now + timeout,
            future=asyncio.get_running_loop().create_future(),
        )
        self._pending[command.id] = waiter
        logger.info(f"-> {command.action} [{command.id[:8]}]")

        try:
            self.hub.push(command)
            result = await asyncio.wait_for(waiter.future, timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Timeout: {command.action} [{command.id[:8]}] after {timeout:g}s")
            raise Timeout(f"Command {command.action} timed out after {timeout:g}s")
        finally:
            self._pending.pop(command.id, None)

        logger.info(f"<- {command.action} [{command.id[:8]}] success={result.success} "
                    f"({time.time() - waiter.created_at:.2f}s)")
        return result

    def resolve(self, result: Result) -> bool:
        """Hand a posted Result to its waiter. Unknown or repeated ids are dropped."""
        waiter = self._pending.get(result.id)
        if waiter is None or waiter.future.done():
            logger.warning(f"Dropping orphaned result [{result.id}]")
            return False
        waiter.future.set_result(result)
        return True

    def close(self):
        """Fail every pending waiter with Unavailable and refuse new commands."""
        self._closed = True
        for waiter in list(self._pending.values()):
            if not waiter.future.done():
                waiter.future.set_exception(Unavailable("Relay shut down before a result arrived"))
        self.hub.close()
        logger.info(f"Relay closed ({len(self._pending)} pending failed)")
