"""
Tests for the command relay and its push hub
"""
import asyncio

import pytest

from tabrelay.errors import Timeout, Unavailable, ValidationError
from tabrelay.protocol import Command, Result
from tabrelay.relay import CommandRelay


class TestSubmit:
    """Issuer-side request/response correlation"""

    def test_result_resolves_waiter(self):
        async def scenario():
            relay = CommandRelay(timeout=1)
            queue = relay.hub.subscribe()
            task = asyncio.create_task(relay.submit(Command(id="c1", action="tab_list")))
            command = await queue.get()
            assert command.id == "c1"
            assert relay.pending_count == 1
            assert relay.resolve(Result.ok("c1", tabs=[]))
            return await task, relay

        result, relay = asyncio.run(scenario())
        assert result.success
        assert result.data == {"tabs": []}
        assert relay.pending_count == 0

    def test_id_assigned_when_missing(self):
        async def scenario():
            relay = CommandRelay(timeout=1)
            queue = relay.hub.subscribe()
            task = asyncio.create_task(relay.submit(Command(action="snapshot")))
            command = await queue.get()
            relay.resolve(Result.ok(command.id))
            await task
            return command

        assert len(asyncio.run(scenario()).id) == 36

    def test_results_matched_by_id_out_of_order(self):
        async def scenario():
            relay = CommandRelay(timeout=1)
            relay.hub.subscribe()
            first = asyncio.create_task(relay.submit(Command(id="a", action="get", attribute="url")))
            second = asyncio.create_task(relay.submit(Command(id="b", action="get", attribute="title")))
            await asyncio.sleep(0)
            relay.resolve(Result.ok("b", value="Title"))
            relay.resolve(Result.ok("a", value="https://x"))
            return await first, await second

        first, second = asyncio.run(scenario())
        assert first.data["value"] == "https://x"
        assert second.data["value"] == "Title"

    def test_timeout(self):
        async def scenario():
            relay = CommandRelay(timeout=0.05)
            relay.hub.subscribe()
            with pytest.raises(Timeout, match="Command click timed out after 0.05s"):
                await relay.submit(Command(id="slow", action="click", ref="1"))
            # Late result is dropped
            return relay.resolve(Result.ok("slow")), relay.pending_count

        accepted, pending = asyncio.run(scenario())
        assert accepted is False
        assert pending == 0

    def test_duplicate_id_rejected(self):
        async def scenario():
            relay = CommandRelay(timeout=1)
            relay.hub.subscribe()
            task = asyncio.create_task(relay.submit(Command(id="dup", action="back")))
            await asyncio.sleep(0)
            with pytest.raises(ValidationError, match="Duplicate command id"):
                await relay.submit(Command(id="dup", action="forward"))
            relay.resolve(Result.ok("dup"))
            await task

        asyncio.run(scenario())

    def test_second_result_for_same_id_dropped(self):
        async def scenario():
            relay = CommandRelay(timeout=1)
            relay.hub.subscribe()
            task = asyncio.create_task(relay.submit(Command(id="x", action="refresh")))
            await asyncio.sleep(0)
            assert relay.resolve(Result.ok("x", url="first"))
            assert not relay.resolve(Result.ok("x", url="second"))
            return await task

        assert asyncio.run(scenario()).data["url"] == "first"

    def test_unknown_result_dropped(self):
        assert CommandRelay().resolve(Result.ok("nobody")) is False


class TestShutdown:
    """Relay close()"""

    def test_pending_waiters_fail_unavailable(self):
        async def scenario():
            relay = CommandRelay(timeout=5)
            queue = relay.hub.subscribe()
            task = asyncio.create_task(relay.submit(Command(id="p", action="snapshot")))
            await asyncio.sleep(0)
            relay.close()
            with pytest.raises(Unavailable):
                await task
            # Stream end marker for the executor
            await queue.get()
            return await queue.get()

        assert asyncio.run(scenario()) is None

    def test_submit_after_close(self):
        async def scenario():
            relay = CommandRelay()
            relay.close()
            with pytest.raises(Unavailable, match="shutting down"):
                await relay.submit(Command(action="tab_list"))

        asyncio.run(scenario())


class TestPushHub:
    """Backlog and subscriber selection"""

    def test_backlog_flushed_on_subscribe(self):
        async def scenario():
            relay = CommandRelay(timeout=1)
            task = asyncio.create_task(relay.submit(Command(id="q", action="tab_list")))
            await asyncio.sleep(0)
            assert not relay.hub.connected
            assert relay.hub.backlog_size == 1
            queue = relay.hub.subscribe()
            command = queue.get_nowait()
            relay.resolve(Result.ok(command.id))
            await task
            return relay.hub.backlog_size

        assert asyncio.run(scenario()) == 0

    def test_expired_backlog_skipped(self):
        async def scenario():
            relay = CommandRelay(timeout=0.01)
            with pytest.raises(Timeout):
                await relay.submit(Command(id="old", action="tab_list"))
            queue = relay.hub.subscribe()
            return queue.qsize()

        assert asyncio.run(scenario()) == 0

    def test_backlog_does_not_grow_with_expired_commands(self):
        async def scenario():
            relay = CommandRelay(timeout=0.01)
            for n in range(5):
                with pytest.raises(Timeout):
                    await relay.submit(Command(id=f"t{n}", action="tab_list"))
            return relay.hub.backlog_size

        # Only the latest timed-out command is left until the next push or subscribe
        assert asyncio.run(scenario()) == 1

    def test_newest_subscriber_receives(self):
        async def scenario():
            relay = CommandRelay(timeout=1)
            old = relay.hub.subscribe()
            new = relay.hub.subscribe()
            task = asyncio.create_task(relay.submit(Command(id="n", action="tab_list")))
            await asyncio.sleep(0)
            sizes = old.qsize(), new.qsize()
            relay.resolve(Result.ok("n"))
            await task
            relay.hub.unsubscribe(new)
            return sizes, relay.hub.connected

        sizes, connected = asyncio.run(scenario())
        assert sizes == (0, 1)
        assert connected
