"""
CDPSurface - AutomationSurface over the Chrome DevTools Protocol.

Chrome must be started with --remote-debugging-port (default 9222). Tabs are
managed through the /json HTTP endpoints; everything else goes over one
websocket per tab:

    {"id": N, "method": "Domain.method", "params": {...}}   -> request
    {"id": N, "result": {...}} / {"id": N, "error": {...}}   -> response
    {"method": "Domain.event", "params": {...}}             -> event

Sub-frames are scripted in an isolated world created per frame, so page
scripts cannot see or clobber our helpers.
"""

import asyncio
import base64
import inspect
import json
import logging
import urllib.parse
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from .config import CDP_HOST, CDP_PORT, TAB_LOAD_TIMEOUT
from .errors import HandlerError, Timeout, Unavailable
from .page_scripts import CAPTURE_SCRIPT, SIGNAL_BINDING
from .surface import AutomationSurface, DebugLog, Frame, RawSignal, SignalCallback, Tab

logger = logging.getLogger(__name__)

CDP_TIMEOUT = 30          # seconds per protocol call
ISOLATED_WORLD = "tabrelay"

# Friendly key name -> (key, code, windowsVirtualKeyCode)
KEY_MAP = {
    "enter": ("Enter", "Enter", 13),
    "tab": ("Tab", "Tab", 9),
    "escape": ("Escape", "Escape", 27),
    "backspace": ("Backspace", "Backspace", 8),
    "delete": ("Delete", "Delete", 46),
    "arrowup": ("ArrowUp", "ArrowUp", 38),
    "arrowdown": ("ArrowDown", "ArrowDown", 40),
    "arrowleft": ("ArrowLeft", "ArrowLeft", 37),
    "arrowright": ("ArrowRight", "ArrowRight", 39),
    "home": ("Home", "Home", 36),
    "end": ("End", "End", 35),
    "pageup": ("PageUp", "PageUp", 33),
    "pagedown": ("PageDown", "PageDown", 34),
    "space": (" ", "Space", 32),
}

# Modifier bits that turn a character key into a shortcut (no text insertion)
SHORTCUT_MODIFIERS = 1 | 2 | 4


def key_params(key: str):
    if key.lower() in KEY_MAP:
        return KEY_MAP[key.lower()]
    if len(key) == 1:
        code = f"Key{key.upper()}" if key.isalpha() else (f"Digit{key}" if key.isdigit() else "")
        return key, code, ord(key.upper())
    return key, key, 0


# =============================================================================
# CDP session (one websocket per tab)
# =============================================================================

class CDPSession:
    def __init__(self, ws_url: str):
        self.ws_url = ws_url
        self.ws = None
        self.msg_id = 0
        self.closed = False
        self._pending: Dict[int, asyncio.Future] = {}
        self._listeners: Dict[str, List[Callable]] = {}
        self._close_callbacks: List[Callable] = []
        self._reader: Optional[asyncio.Task] = None
        self._tasks = set()

    async def connect(self) -> "CDPSession":
        try:
            self.ws = await ws_connect(self.ws_url, max_size=None)
        except (OSError, WebSocketException) as e:
            raise Unavailable(f"Cannot connect to {self.ws_url}: {e}") from e
        self._reader = asyncio.create_task(self._read_loop())
        return self

    async def close(self):
        self.closed = True
        if self._reader:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        if self.ws:
            await self.ws.close()
        self._fail_pending("CDP session closed")

    async def send(self, method: str, params: Optional[dict] = None, timeout: float = CDP_TIMEOUT) -> dict:
        if self.closed:
            raise Unavailable(f"CDP session closed ({method})")
        self.msg_id += 1
        msg_id = self.msg_id
        cmd = {"id": msg_id, "method": method}
        if params:
            cmd["params"] = params

        future = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = future
        try:
            await self.ws.send(json.dumps(cmd))
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise Timeout(f"CDP {method} timed out after {timeout}s")
        finally:
            self._pending.pop(msg_id, None)

    def on(self, event: str, callback: Callable):
        self._listeners.setdefault(event, []).append(callback)

    def off(self, event: str, callback: Callable):
        listeners = self._listeners.get(event, [])
        if callback in listeners:
            listeners.remove(callback)

    def on_close(self, callback: Callable):
        self._close_callbacks.append(callback)

    def off_close(self, callback: Callable):
        if callback in self._close_callbacks:
            self._close_callbacks.remove(callback)

    async def wait_event(self, event: str, timeout: float) -> dict:
        future = asyncio.get_running_loop().create_future()

        def _once(params):
            if not future.done():
                future.set_result(params)

        self.on(event, _once)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            self.off(event, _once)

    async def _read_loop(self):
        try:
            async for raw in self.ws:
                message = json.loads(raw)
                if "id" in message:
                    self._resolve(message)
                elif "method" in message:
                    self._emit(message["method"], message.get("params", {}))
        except ConnectionClosed as e:
            logger.warning(f"CDP connection lost: {e}")
        finally:
            if not self.closed:
                self.closed = True
                self._fail_pending("CDP connection lost")
                for callback in self._close_callbacks:
                    self._call(callback)

    def _resolve(self, message: dict):
        future = self._pending.get(message["id"])
        if future is None or future.done():
            return
        if "error" in message:
            future.set_exception(HandlerError(message["error"].get("message", "CDP error")))
        else:
            future.set_result(message.get("result", {}))

    def _emit(self, method: str, params: dict):
        for callback in list(self._listeners.get(method, [])):
            self._call(callback, params)

    def _call(self, callback: Callable, *args):
        try:
            outcome = callback(*args)
        except Exception as e:
            logger.error(f"CDP listener failed: {e}")
            return
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def _fail_pending(self, reason: str):
        for future in self._pending.values():
            if not future.done():
                future.set_exception(Unavailable(reason))
        self._pending.clear()


# =============================================================================
# Surface
# =============================================================================

class CDPSurface(AutomationSurface):
    def __init__(self, host: str = CDP_HOST, port: int = CDP_PORT,
                 client: Optional[httpx.AsyncClient] = None,
                 load_timeout: float = TAB_LOAD_TIMEOUT):
        self.host = host
        self.port = port
        self.load_timeout = load_timeout
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=f"http://{host}:{port}", timeout=10.0)
        self._sessions: Dict[str, CDPSession] = {}
        self._active_id: Optional[str] = None
        self._worlds: Dict[tuple, int] = {}
        self._dialogs: Dict[str, dict] = {}
        self._debug_logs: Dict[str, DebugLog] = {}
        self._watches: Dict[str, dict] = {}

    # === /json endpoints ===

    async def _json(self, path: str, method: str = "GET"):
        try:
            response = await self.client.request(method, path)
        except httpx.TransportError as e:
            raise Unavailable(f"Chrome not reachable on {self.host}:{self.port} ({e})") from e
        if response.status_code == 404:
            raise HandlerError(response.text.strip() or f"{path} not found")
        response.raise_for_status()
        return response.json() if response.headers.get("content-type", "").startswith("application/json") \
            else response.text

    async def _targets(self) -> List[dict]:
        return [t for t in await self._json("/json") if t.get("type") == "page"]

    async def list_tabs(self) -> List[Tab]:
        targets = await self._targets()
        ids = [t["id"] for t in targets]
        if self._active_id not in ids:
            # Chrome lists the most recently focused page first
            self._active_id = ids[0] if ids else None
        return [Tab(id=t["id"], url=t.get("url", ""), title=t.get("title", ""),
                    active=t["id"] == self._active_id) for t in targets]

    async def _tab(self, tab_id) -> Tab:
        session = await self._session(tab_id)
        info = await self._evaluate(session, "({url: location.href, title: document.title})")
        return Tab(id=tab_id, url=info["url"], title=info["title"], active=tab_id == self._active_id)

    async def create_tab(self, url: Optional[str] = None, timeout: Optional[float] = None) -> Tab:
        target = await self._json(f"/json/new?{urllib.parse.quote(url or 'about:blank', safe='')}", "PUT")
        tab_id = target["id"]
        self._active_id = tab_id
        logger.info(f"Created tab {tab_id}: {url or 'about:blank'}")
        session = await self._session(tab_id)
        await self._wait_ready(session, timeout)
        return await self._tab(tab_id)

    async def update_tab(self, tab_id, url: str, timeout: Optional[float] = None) -> Tab:
        session = await self._session(tab_id)
        loaded = asyncio.ensure_future(session.wait_event("Page.loadEventFired", timeout or self.load_timeout))
        result = await session.send("Page.navigate", {"url": url})
        if result.get("errorText"):
            loaded.cancel()
            raise HandlerError(f"Navigation to {url} failed: {result['errorText']}")
        await self._await_load(loaded, timeout)
        return await self._tab(tab_id)

    async def activate_tab(self, tab_id) -> Tab:
        await self._json(f"/json/activate/{tab_id}")
        self._active_id = tab_id
        return await self._tab(tab_id)

    async def close_tab(self, tab_id):
        await self._json(f"/json/close/{tab_id}")
        session = self._sessions.pop(tab_id, None)
        if session:
            await session.close()
        self._forget(tab_id)
        if self._active_id == tab_id:
            self._active_id = None
        logger.info(f"Closed tab {tab_id}")

    async def navigate_history(self, tab_id, delta: int, timeout: Optional[float] = None) -> Tab:
        session = await self._session(tab_id)
        history = await session.send("Page.getNavigationHistory")
        index = history["currentIndex"] + delta
        if not 0 <= index < len(history["entries"]):
            raise HandlerError(f"No history entry to go {'back' if delta < 0 else 'forward'} to")
        loaded = asyncio.ensure_future(session.wait_event("Page.loadEventFired", timeout or self.load_timeout))
        await session.send("Page.navigateToHistoryEntry", {"entryId": history["entries"][index]["id"]})
        await self._await_load(loaded, timeout)
        return await self._tab(tab_id)

    async def reload_tab(self, tab_id, timeout: Optional[float] = None) -> Tab:
        session = await self._session(tab_id)
        loaded = asyncio.ensure_future(session.wait_event("Page.loadEventFired", timeout or self.load_timeout))
        await session.send("Page.reload")
        await self._await_load(loaded, timeout)
        return await self._tab(tab_id)

    async def capture_visible_tab(self, tab_id) -> bytes:
        session = await self._session(tab_id)
        result = await session.send("Page.captureScreenshot", {"format": "png"})
        return base64.b64decode(result["data"])

    # === Scripts ===

    async def run_script(self, tab_id, frame_id, fn: str, args: Optional[list] = None) -> Any:
        session = await self._session(tab_id)
        expression = f"({fn})(...{json.dumps(args or [])})"
        context_id = await self._world(tab_id, session, frame_id) if frame_id is not None else None
        return await self._evaluate(session, expression, context_id)

    async def inject_script(self, tab_id, frame_id, path: str):
        source = Path(path).read_text(encoding="utf-8")
        session = await self._session(tab_id)
        context_id = await self._world(tab_id, session, frame_id) if frame_id is not None else None
        await self._evaluate(session, source, context_id)
        logger.info(f"Injected {Path(path).name} into tab {tab_id}")

    async def enumerate_frames(self, tab_id) -> List[Frame]:
        session = await self._session(tab_id)
        tree = (await session.send("Page.getFrameTree"))["frameTree"]
        frames = []

        def walk(node):
            frame = node["frame"]
            frames.append(Frame(frame_id=frame["id"], url=frame.get("url", ""),
                                name=frame.get("name", ""), parent_id=frame.get("parentId")))
            for child in node.get("childFrames", []):
                walk(child)

        walk(tree)
        return frames

    # === Input ===

    async def dispatch_input_event(self, tab_id, kind: str, payload: dict):
        session = await self._session(tab_id)
        if kind == "click":
            for event_type in ("mousePressed", "mouseReleased"):
                await session.send("Input.dispatchMouseEvent", {
                    "type": event_type, "x": payload["x"], "y": payload["y"],
                    "button": "left", "clickCount": payload.get("clickCount", 1),
                })
        elif kind == "move":
            await session.send("Input.dispatchMouseEvent", {
                "type": "mouseMoved", "x": payload["x"], "y": payload["y"],
            })
        elif kind == "insert_text":
            await session.send("Input.insertText", {"text": payload["text"]})
        elif kind == "key":
            await self._press_key(session, payload["key"], payload.get("modifiers", 0))
        elif kind == "wheel":
            await session.send("Input.dispatchMouseEvent", {
                "type": "mouseWheel", "x": payload["x"], "y": payload["y"],
                "deltaX": payload.get("deltaX", 0), "deltaY": payload.get("deltaY", 0),
            })
        else:
            raise HandlerError(f"Unknown input event: {kind}")

    async def _press_key(self, session: CDPSession, key: str, modifiers: int):
        key_name, code, keycode = key_params(key)
        down = {
            "type": "keyDown", "key": key_name, "code": code, "modifiers": modifiers,
            "windowsVirtualKeyCode": keycode, "nativeVirtualKeyCode": keycode,
        }
        if len(key_name) == 1 and not modifiers & SHORTCUT_MODIFIERS:
            down["text"] = key_name
        elif key_name == "Enter" and not modifiers & SHORTCUT_MODIFIERS:
            down["text"] = "\r"
        await session.send("Input.dispatchKeyEvent", down)
        await session.send("Input.dispatchKeyEvent", {
            "type": "keyUp", "key": key_name, "code": code, "modifiers": modifiers,
            "windowsVirtualKeyCode": keycode, "nativeVirtualKeyCode": keycode,
        })

    async def handle_dialog(self, tab_id, accept: bool, prompt_text: Optional[str] = None) -> dict:
        await self._session(tab_id)
        dialog = self._dialogs.pop(tab_id, None)
        if dialog is None:
            raise HandlerError("No dialog is currently open")
        params = {"accept": accept}
        if prompt_text is not None:
            params["promptText"] = prompt_text
        await self._sessions[tab_id].send("Page.handleJavaScriptDialog", params)
        return {"type": dialog.get("type", ""), "message": dialog.get("message", "")}

    # === Observation ===

    async def attach_debug_protocol(self, tab_id) -> DebugLog:
        if tab_id in self._debug_logs:
            return self._debug_logs[tab_id]
        session = await self._session(tab_id)
        log = DebugLog(tab_id)

        def on_request(params):
            request = params["request"]
            log.request_started(params["requestId"], request["url"], request["method"],
                                params.get("type", ""))

        def on_response(params):
            response = params["response"]
            log.request_finished(params["requestId"], response.get("status"), response.get("mimeType", ""))

        def on_failed(params):
            log.request_finished(params["requestId"], failed=params.get("errorText") or "failed")

        def on_console(params):
            text = " ".join(str(arg.get("value", arg.get("description", ""))) for arg in params.get("args", []))
            frames = (params.get("stackTrace") or {}).get("callFrames") or [{}]
            log.add_console(params.get("type", "log"), text, frames[0].get("url", ""))

        def on_exception(params):
            details = params["exceptionDetails"]
            exception = details.get("exception") or {}
            frames = (details.get("stackTrace") or {}).get("callFrames", [])
            stack = "\n".join(f"at {f.get('functionName') or '<anonymous>'} ({f.get('url')}:{f.get('lineNumber')})"
                              for f in frames)
            log.add_error(exception.get("description") or details.get("text", ""),
                          details.get("url", ""), details.get("lineNumber"), details.get("columnNumber"), stack)

        session.on("Network.requestWillBeSent", on_request)
        session.on("Network.responseReceived", on_response)
        session.on("Network.loadingFailed", on_failed)
        session.on("Runtime.consoleAPICalled", on_console)
        session.on("Runtime.exceptionThrown", on_exception)
        await session.send("Network.enable")
        await session.send("Runtime.enable")
        self._debug_logs[tab_id] = log
        logger.info(f"Debug protocol attached to tab {tab_id}")
        return log

    async def watch_interactions(self, tab_id, callback: SignalCallback):
        await self.unwatch_interactions(tab_id)
        session = await self._session(tab_id)

        async def on_binding(params):
            if params.get("name") != SIGNAL_BINDING:
                return
            try:
                payload = json.loads(params["payload"])
                signal = RawSignal.from_payload(payload)
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Bad interaction payload: {e}")
                return
            await callback(signal)

        main_frame = (await session.send("Page.getFrameTree"))["frameTree"]["frame"]["id"]

        async def on_navigated(params):
            frame = params["frame"]
            if frame.get("parentId"):
                return
            await callback(RawSignal(kind="navigation", url=frame.get("url", "")))

        # pushState / replaceState / hash changes
        async def on_same_document(params):
            if params.get("frameId") != main_frame:
                return
            await callback(RawSignal(kind="navigation", url=params.get("url", "")))

        async def on_closed():
            await callback(RawSignal(kind="closed"))

        await session.send("Runtime.addBinding", {"name": SIGNAL_BINDING})
        script = await session.send("Page.addScriptToEvaluateOnNewDocument", {"source": CAPTURE_SCRIPT})
        await self._evaluate(session, CAPTURE_SCRIPT)

        session.on("Runtime.bindingCalled", on_binding)
        session.on("Page.frameNavigated", on_navigated)
        session.on("Page.navigatedWithinDocument", on_same_document)
        session.on_close(on_closed)
        self._watches[tab_id] = {
            "script": script.get("identifier"),
            "on_close": on_closed,
            "listeners": [("Runtime.bindingCalled", on_binding), ("Page.frameNavigated", on_navigated),
                          ("Page.navigatedWithinDocument", on_same_document)],
        }
        logger.info(f"Watching interactions on tab {tab_id}")

    async def unwatch_interactions(self, tab_id):
        watch = self._watches.pop(tab_id, None)
        session = self._sessions.get(tab_id)
        if watch is None or session is None or session.closed:
            return
        for event, listener in watch["listeners"]:
            session.off(event, listener)
        session.off_close(watch["on_close"])
        if watch["script"]:
            await session.send("Page.removeScriptToEvaluateOnNewDocument", {"identifier": watch["script"]})
        await session.send("Runtime.removeBinding", {"name": SIGNAL_BINDING})

    async def close(self):
        for session in list(self._sessions.values()):
            await session.close()
        self._sessions.clear()
        if self._owns_client:
            await self.client.aclose()

    # === Internals ===

    async def _session(self, tab_id) -> CDPSession:
        session = self._sessions.get(tab_id)
        if session and not session.closed:
            return session

        self._forget(tab_id)
        session = await CDPSession(f"ws://{self.host}:{self.port}/devtools/page/{tab_id}").connect()
        self._sessions[tab_id] = session

        def on_dialog(params):
            self._dialogs[tab_id] = params
            logger.info(f"Dialog opened on tab {tab_id}: {params.get('type')} {params.get('message', '')[:80]}")

        def on_frame_navigated(params):
            frame_id = params["frame"]["id"]
            self._worlds.pop((tab_id, frame_id), None)

        session.on("Page.javascriptDialogOpening", on_dialog)
        session.on("Page.javascriptDialogClosed", lambda params: self._dialogs.pop(tab_id, None))
        session.on("Page.frameNavigated", on_frame_navigated)
        await session.send("Page.enable")
        return session

    def _forget(self, tab_id):
        self._dialogs.pop(tab_id, None)
        self._debug_logs.pop(tab_id, None)
        self._watches.pop(tab_id, None)
        for key in [k for k in self._worlds if k[0] == tab_id]:
            del self._worlds[key]

    async def _world(self, tab_id, session: CDPSession, frame_id) -> int:
        key = (tab_id, frame_id)
        if key not in self._worlds:
            result = await session.send("Page.createIsolatedWorld", {
                "frameId": frame_id, "worldName": ISOLATED_WORLD, "grantUniveralAccess": True,
            })
            self._worlds[key] = result["executionContextId"]
        return self._worlds[key]

    @staticmethod
    async def _evaluate(session: CDPSession, expression: str, context_id: Optional[int] = None) -> Any:
        params = {"expression": expression, "returnByValue": True, "awaitPromise": True}
        if context_id is not None:
            params["contextId"] = context_id
        result = await session.send("Runtime.evaluate", params)
        if "exceptionDetails" in result:
            details = result["exceptionDetails"]
            message = (details.get("exception") or {}).get("description") or details.get("text", "Script error")
            raise HandlerError(message.splitlines()[0])
        return result.get("result", {}).get("value")

    async def _wait_ready(self, session: CDPSession, timeout: Optional[float]):
        timeout = timeout or self.load_timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while await self._evaluate(session, "document.readyState") != "complete":
            if loop.time() >= deadline:
                raise Timeout(f"Tab load timed out after {timeout:g}s")
            await asyncio.sleep(0.2)

    async def _await_load(self, loaded: asyncio.Future, timeout: Optional[float]):
        try:
            await loaded
        except asyncio.TimeoutError:
            raise Timeout(f"Tab load timed out after {timeout or self.load_timeout:g}s")
