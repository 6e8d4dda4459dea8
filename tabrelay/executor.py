"""
Command Executor - runs one Command against the automation surface.

dispatch() never raises: every outcome becomes a Result. Handlers validate
their own fields and raise from the error taxonomy; anything else is
reported as "<Action> failed: <message>".

State held here:
  - the RefTable from the last snapshot (shared with the resolver)
  - the active frame pointer (None = top document)
  - one DebugLog per tab once network/console/errors was asked for
  - the TraceRecorder
"""

import asyncio
import base64
import io
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from PIL import Image
from redis.exceptions import RedisError

from .config import AgentConfig
from .errors import (HandlerError, RefNotFound, RestrictedPage, TabRelayError,
                     Timeout, Unavailable, ValidationError)
from .page_scripts import (DOM_TREE_ARGS, DOM_TREE_READY_SCRIPT, DOM_TREE_SCRIPT, EVAL_SCRIPT,
                           FRAME_ELEMENT_SCRIPT, SCROLL_SCRIPT, VIEWPORT_SCRIPT)
from .protocol import ACTIONS, Command, Result, SnapshotData
from .resolver import ElementHandle, ElementResolver
from .snapshot import RefStore, RefTable, build_snapshot
from .surface import AutomationSurface, DebugLog, RawSignal, Tab
from .trace import TraceRecorder

logger = logging.getLogger(__name__)

RESTRICTED_PREFIXES = (
    "chrome://", "chrome-extension://", "about:", "edge://", "devtools://", "view-source:",
)

# CDP Input.dispatchKeyEvent modifier bitmask
MODIFIER_BITS = {"Alt": 1, "Control": 2, "Meta": 4, "Shift": 8}

SCROLL_DIRECTIONS = ("up", "down", "left", "right")
DEFAULT_SCROLL_PIXELS = 300

# Reported to the issuer as-is; everything else gets the "<Action> failed:" prefix
PLAIN_ERRORS = (ValidationError, RefNotFound, RestrictedPage, Timeout, Unavailable)


def is_restricted(url: str) -> bool:
    return (url or "").startswith(RESTRICTED_PREFIXES)


def modifier_mask(modifiers) -> int:
    mask = 0
    for modifier in modifiers or []:
        if modifier not in MODIFIER_BITS:
            raise ValidationError(f"Unknown modifier: {modifier} (expected one of {', '.join(MODIFIER_BITS)})")
        mask |= MODIFIER_BITS[modifier]
    return mask


def fit_image(png: bytes, max_dim: int) -> bytes:
    """Downscale so the longest side is at most max_dim (aspect ratio kept)."""
    img = Image.open(io.BytesIO(png))
    w, h = img.size
    if w <= max_dim and h <= max_dim:
        return png
    if w > h:
        new_w, new_h = max_dim, int(h * max_dim / w)
    else:
        new_w, new_h = int(w * max_dim / h), max_dim
    img = img.resize((new_w, new_h), Image.Resampling.LANCZOS)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def _failure_label(action: str) -> str:
    return action.replace("_", " ").capitalize()


class CommandExecutor:
    def __init__(self, surface: AutomationSurface, config: Optional[AgentConfig] = None,
                 refs: Optional[RefTable] = None, recorder: Optional[TraceRecorder] = None,
                 ref_store: Optional[RefStore] = None):
        self.surface = surface
        self.config = config or AgentConfig()
        self.refs = refs if refs is not None else RefTable()
        self.resolver = ElementResolver(surface, self.refs,
                                        wait_timeout=self.config.wait_element_timeout,
                                        wait_interval=self.config.wait_element_interval)
        self.recorder = recorder or TraceRecorder()
        self.ref_store = ref_store
        self.active_frame: Optional[Dict[str, Any]] = None
        self._debug_logs: Dict[Any, DebugLog] = {}
        self._handlers = {action: getattr(self, f"_handle_{action}") for action in ACTIONS}

    async def restore_refs(self):
        """Reload the last ref table from the store (executor restart)."""
        if not self.ref_store:
            return
        try:
            refs = await self.ref_store.load()
        except RedisError as e:
            logger.warning(f"Could not restore refs: {e}")
            return
        self.refs.replace(refs)
        logger.info(f"Restored {len(refs)} refs")

    # === Dispatch ===

    async def dispatch(self, command: Command) -> Result:
        handler = self._handlers.get(command.action)
        if handler is None:
            logger.warning(f"Unknown action: {command.action}")
            return Result.fail(command.id, f"Unknown action: {command.action}")

        logger.info(f"Processing {command.action} [{command.id[:8]}]")
        try:
            data = await handler(command)
        except PLAIN_ERRORS as e:
            logger.warning(f"{command.action} rejected: {e}")
            return Result.fail(command.id, str(e))
        except Exception as e:
            logger.error(f"{command.action} failed: {e}", exc_info=not isinstance(e, TabRelayError))
            return Result.fail(command.id, f"{_failure_label(command.action)} failed: {e}")
        return Result(id=command.id, success=True, data=data or {})

    # === Shared helpers ===

    @staticmethod
    def _require(command: Command, field: str, label: Optional[str] = None):
        value = getattr(command, field, None)
        if value is None or value == "":
            raise ValidationError(f"Missing {label or field} parameter")
        return value

    async def _active_tab(self) -> Tab:
        tab = await self.surface.active_tab()
        if tab is None:
            raise HandlerError("No active tab found")
        return tab

    async def _page_tab(self, what: str = "operate on") -> Tab:
        """Active tab, refusing browser-internal pages."""
        tab = await self._active_tab()
        if is_restricted(tab.url):
            raise RestrictedPage(tab.url, what)
        return tab

    def _frame_id(self, tab: Tab):
        if self.active_frame is None:
            return None
        if self.active_frame["tabId"] != tab.id:
            # Frame belonged to another tab
            self._reset_frame()
            return None
        return self.active_frame["frameId"]

    def _reset_frame(self):
        if self.active_frame is not None:
            logger.info("Active frame reset to main")
        self.active_frame = None

    async def _element(self, command: Command, what: str = "operate on"):
        ref = self._require(command, "ref")
        tab = await self._page_tab(what)
        frame_id = self._frame_id(tab)
        handle = await self.resolver.resolve(tab.id, ref, frame_id)
        return tab, handle

    @staticmethod
    def _element_info(handle: ElementHandle, **extra) -> Dict[str, Any]:
        data = {"role": handle.role, "name": handle.name}
        data.update(extra)
        return data

    async def _find_tab(self, command: Command, required: bool = True) -> Optional[Tab]:
        tabs = await self.surface.list_tabs()
        if command.tab_id is not None:
            for tab in tabs:
                if str(tab.id) == str(command.tab_id):
                    return tab
            raise ValidationError(f"Tab {command.tab_id} not found")
        if command.index is not None:
            if not 0 <= command.index < len(tabs):
                raise ValidationError(f"Tab index {command.index} out of range (0-{len(tabs) - 1})")
            return tabs[command.index]
        if required:
            raise ValidationError("Missing tabId or index parameter")
        return None

    # === Navigation ===

    async def _handle_open(self, command: Command):
        url = self._require(command, "url")
        timeout = self.config.tab_load_timeout
        if command.tab_id is None:
            tab = await self.surface.create_tab(url, timeout=timeout)
        else:
            target = await self._active_tab() if command.tab_id == "current" else await self._find_tab(command)
            tab = await self.surface.update_tab(target.id, url, timeout=timeout)
        self._reset_frame()
        logger.info(f"Opened {url} in tab {tab.id}")
        return {"tabId": tab.id, "title": tab.title, "url": tab.url or url}

    async def _handle_back(self, command: Command):
        return await self._history(-1)

    async def _handle_forward(self, command: Command):
        return await self._history(1)

    async def _history(self, delta: int):
        tab = await self._active_tab()
        tab = await self.surface.navigate_history(tab.id, delta, timeout=self.config.tab_load_timeout)
        self._reset_frame()
        return {"url": tab.url, "title": tab.title}

    async def _handle_refresh(self, command: Command):
        tab = await self._active_tab()
        tab = await self.surface.reload_tab(tab.id, timeout=self.config.tab_load_timeout)
        self._reset_frame()
        return {"url": tab.url, "title": tab.title}

    async def _handle_close(self, command: Command):
        tab = await self._active_tab()
        await self.surface.close_tab(tab.id)
        self._tab_gone(tab.id)
        return {"tabId": tab.id, "title": tab.title, "url": tab.url}

    def _tab_gone(self, tab_id):
        if self.active_frame and self.active_frame["tabId"] == tab_id:
            self._reset_frame()
        self._debug_logs.pop(tab_id, None)
        self.recorder.tab_closed(tab_id)

    # === Snapshot ===

    async def _handle_snapshot(self, command: Command):
        tab = await self._page_tab("take snapshot of")
        frame_id = self._frame_id(tab)

        if not await self.surface.run_script(tab.id, frame_id, DOM_TREE_READY_SCRIPT):
            await self.surface.inject_script(tab.id, frame_id, self.config.dom_tree_script)
        raw = await self.surface.run_script(tab.id, frame_id, DOM_TREE_SCRIPT, [DOM_TREE_ARGS])

        result = build_snapshot(raw, interactive=bool(command.interactive))
        self.refs.replace(result.refs)
        if self.ref_store:
            try:
                await self.ref_store.save(result.refs)
            except RedisError as e:
                logger.warning(f"Could not persist refs: {e}")

        return {
            "title": tab.title,
            "url": tab.url,
            "snapshotData": SnapshotData(snapshot=result.text, refs=result.refs).to_wire(),
        }

    # === Element interaction ===

    async def _handle_click(self, command: Command):
        tab, handle = await self._element(command)
        if handle.frame_id is None:
            point = await self.resolver.call(handle, "center")
            await self.surface.dispatch_input_event(tab.id, "click", {**point, "clickCount": 1})
        else:
            await self.resolver.call(handle, "click")
        logger.info(f"Clicked @{handle.ref} ({handle.role})")
        return self._element_info(handle)

    async def _handle_hover(self, command: Command):
        tab, handle = await self._element(command)
        if handle.frame_id is None:
            point = await self.resolver.call(handle, "center")
            await self.surface.dispatch_input_event(tab.id, "move", point)
        else:
            await self.resolver.call(handle, "hover")
        return self._element_info(handle)

    async def _handle_fill(self, command: Command):
        if command.text is None:
            self._require(command, "ref")
            raise ValidationError("Missing text parameter")
        tab, handle = await self._element(command)
        await self.resolver.call(handle, "focus_clear")
        await self.surface.dispatch_input_event(tab.id, "insert_text", {"text": command.text})
        return self._element_info(handle, filledText=command.text)

    async def _handle_type(self, command: Command):
        if command.text is None:
            self._require(command, "ref")
            raise ValidationError("Missing text parameter")
        tab, handle = await self._element(command)
        await self.resolver.call(handle, "focus")
        for char in command.text:
            await self.surface.dispatch_input_event(tab.id, "key", {"key": char, "modifiers": 0})
        return self._element_info(handle, typedText=command.text)

    async def _handle_check(self, command: Command):
        tab, handle = await self._element(command)
        state = await self.resolver.call(handle, "set_checked", True)
        return self._element_info(handle, wasAlreadyChecked=bool(state["wasChecked"]))

    async def _handle_uncheck(self, command: Command):
        tab, handle = await self._element(command)
        state = await self.resolver.call(handle, "set_checked", False)
        return self._element_info(handle, wasAlreadyUnchecked=not state["wasChecked"])

    async def _handle_select(self, command: Command):
        self._require(command, "ref")
        value = self._require(command, "value")
        tab, handle = await self._element(command)
        selected = await self.resolver.call(handle, "select", value)
        return self._element_info(handle, selectedValue=selected["selectedValue"],
                                  selectedLabel=selected["selectedLabel"])

    async def _handle_get(self, command: Command):
        attribute = self._require(command, "attribute")
        if attribute in ("url", "title"):
            tab = await self._active_tab()
            return {"value": tab.url if attribute == "url" else tab.title}
        if attribute in ("text", "value"):
            if not command.ref:
                raise ValidationError(f"Missing ref parameter for get {attribute}")
            tab, handle = await self._element(command)
            return {"value": await self.resolver.call(handle, attribute)}
        raise ValidationError(f"Unknown attribute: {attribute}")

    async def _handle_wait(self, command: Command):
        if command.wait_type == "time":
            if not command.ms or command.ms < 0:
                raise ValidationError("Invalid ms parameter")
            await asyncio.sleep(command.ms / 1000)
            return {"waited": command.ms}
        if command.wait_type == "element":
            ref = self._require(command, "ref")
            tab = await self._page_tab()
            await self.resolver.wait_for(tab.id, ref, self._frame_id(tab))
            return {"ref": ref}
        raise ValidationError(f"Unknown wait type: {command.wait_type}")

    # === Keyboard / scrolling / scripts ===

    async def _handle_press(self, command: Command):
        key = self._require(command, "key")
        mask = modifier_mask(command.modifiers)
        tab = await self._page_tab("send keys to")
        await self.surface.dispatch_input_event(tab.id, "key", {"key": key, "modifiers": mask})
        display = "+".join([*(command.modifiers or []), key])
        logger.info(f"Pressed {display}")
        return {"key": display}

    async def _handle_scroll(self, command: Command):
        direction = self._require(command, "direction")
        if direction not in SCROLL_DIRECTIONS:
            raise ValidationError(f"Invalid direction: {direction}")
        pixels = command.pixels or DEFAULT_SCROLL_PIXELS
        dx, dy = {
            "up": (0, -pixels), "down": (0, pixels),
            "left": (-pixels, 0), "right": (pixels, 0),
        }[direction]

        tab = await self._page_tab()
        frame_id = self._frame_id(tab)
        if frame_id is None:
            viewport = await self.surface.run_script(tab.id, None, VIEWPORT_SCRIPT)
            await self.surface.dispatch_input_event(tab.id, "wheel", {
                "x": viewport["width"] / 2, "y": viewport["height"] / 2,
                "deltaX": dx, "deltaY": dy,
            })
        else:
            await self.surface.run_script(tab.id, frame_id, SCROLL_SCRIPT, [dx, dy])
        return {"direction": direction, "pixels": pixels}

    async def _handle_eval(self, command: Command):
        script = self._require(command, "script")
        tab = await self._page_tab("execute script on")
        logger.info(f"Evaluating: {script[:100]}")
        result = await self.surface.run_script(tab.id, self._frame_id(tab), EVAL_SCRIPT, [script])
        return {"result": result}

    async def _handle_screenshot(self, command: Command):
        tab = await self._active_tab()
        png = await self.surface.capture_visible_tab(tab.id)
        data = {"title": tab.title, "url": tab.url}
        if command.path:
            path = Path(command.path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(fit_image(png, self.config.max_image_dim))
            logger.info(f"Screenshot saved: {path}")
            data["screenshotPath"] = str(path)
        else:
            data["dataUrl"] = "data:image/png;base64," + base64.b64encode(png).decode()
        return data

    # === Tabs ===

    async def _handle_tab_list(self, command: Command):
        tabs = await self.surface.list_tabs()
        active_index = next((i for i, tab in enumerate(tabs) if tab.active), -1)
        return {
            "tabs": [{**tab.to_dict(), "index": i} for i, tab in enumerate(tabs)],
            "activeIndex": active_index,
        }

    async def _handle_tab_new(self, command: Command):
        tab = await self.surface.create_tab(command.url or None, timeout=self.config.tab_load_timeout)
        self._reset_frame()
        return {"tabId": tab.id, "title": tab.title, "url": tab.url}

    async def _handle_tab_select(self, command: Command):
        target = await self._find_tab(command)
        tab = await self.surface.activate_tab(target.id)
        self._reset_frame()
        return {"tabId": tab.id, "title": tab.title, "url": tab.url}

    async def _handle_tab_close(self, command: Command):
        tab = await self._find_tab(command, required=False) or await self._active_tab()
        await self.surface.close_tab(tab.id)
        self._tab_gone(tab.id)
        return {"tabId": tab.id, "title": tab.title, "url": tab.url}

    # === Frames ===

    async def _handle_frame(self, command: Command):
        selector = self._require(command, "selector")
        tab = await self._page_tab()
        parent_id = self._frame_id(tab)

        element = await self.surface.run_script(tab.id, parent_id, FRAME_ELEMENT_SCRIPT, [selector])
        if not element or not element.get("found"):
            raise HandlerError(f"iframe not found: {selector}")
        if element.get("error"):
            raise HandlerError(element["error"])

        name, url = element.get("name") or "", element.get("url") or ""
        candidates = [f for f in await self.surface.enumerate_frames(tab.id) if f.parent_id is not None]
        if parent_id is not None:
            candidates = [f for f in candidates if f.parent_id == parent_id] or candidates
        frame = next((f for f in candidates if name and f.name == name), None) \
            or next((f for f in candidates if url and f.url == url), None)
        if frame is None:
            raise HandlerError(f"Could not locate frame for {selector} (url: {url or 'n/a'})")

        self.active_frame = {"tabId": tab.id, "frameId": frame.frame_id, "selector": selector}
        logger.info(f"Active frame: {selector} -> {frame.frame_id}")
        return {"frameInfo": {"selector": selector, "name": frame.name or name,
                              "url": frame.url or url, "frameId": frame.frame_id}}

    async def _handle_frame_main(self, command: Command):
        self._reset_frame()
        return {"frameInfo": {"frameId": 0}}

    # === Dialogs ===

    async def _handle_dialog(self, command: Command):
        response = self._require(command, "dialog_response", "dialogResponse")
        if response not in ("accept", "dismiss"):
            raise ValidationError(f"Invalid dialogResponse: {response} (expected accept or dismiss)")
        tab = await self._active_tab()
        prompt_text = command.prompt_text if response == "accept" else None
        info = await self.surface.handle_dialog(tab.id, response == "accept", prompt_text)
        return {"dialogInfo": info}

    # === Debug log ===

    async def _debug_log(self) -> DebugLog:
        tab = await self._active_tab()
        log = self._debug_logs.get(tab.id)
        if log is None:
            log = await self.surface.attach_debug_protocol(tab.id)
            self._debug_logs[tab.id] = log
        return log

    async def _handle_network(self, command: Command):
        sub = self._require(command, "network_command", "networkCommand")
        log = await self._debug_log()
        if sub == "requests":
            return {"networkRequests": log.get_requests(command.filter)}
        if sub == "clear":
            log.clear_requests()
            return {"cleared": True}
        raise ValidationError(f"Unknown networkCommand: {sub}")

    async def _handle_console(self, command: Command):
        sub = self._require(command, "console_command", "consoleCommand")
        log = await self._debug_log()
        if sub == "get":
            return {"consoleMessages": list(log.console)}
        if sub == "clear":
            log.clear_console()
            return {"cleared": True}
        raise ValidationError(f"Unknown consoleCommand: {sub}")

    async def _handle_errors(self, command: Command):
        sub = self._require(command, "errors_command", "errorsCommand")
        log = await self._debug_log()
        if sub == "get":
            return {"jsErrors": list(log.errors)}
        if sub == "clear":
            log.clear_errors()
            return {"cleared": True}
        raise ValidationError(f"Unknown errorsCommand: {sub}")

    # === Trace ===

    async def _handle_trace(self, command: Command):
        sub = self._require(command, "trace_command", "traceCommand")
        if sub == "start":
            tab = await self._page_tab("trace")
            if self.recorder.recording and self.recorder.tab_id != tab.id:
                await self.surface.unwatch_interactions(self.recorder.tab_id)
            self.recorder.start(tab.id, tab.url, tab.title)
            await self.surface.watch_interactions(tab.id, self._on_signal)
            return {"traceStatus": self.recorder.status().to_wire()}
        if sub == "stop":
            tab_id = self.recorder.tab_id
            events = self.recorder.stop()
            if tab_id is not None:
                await self.surface.unwatch_interactions(tab_id)
            return {"traceEvents": [e.to_wire() for e in events],
                    "traceStatus": self.recorder.status().to_wire()}
        if sub == "status":
            return {"traceStatus": self.recorder.status().to_wire()}
        raise ValidationError(f"Unknown traceCommand: {sub}")

    async def _on_signal(self, signal: RawSignal):
        if signal.kind == "navigation":
            self._reset_frame()
        self.recorder.ingest(signal)
