"""
Automation surface - the browser capability set the executor drives.

The executor never talks to a browser directly; it calls these methods.
CDPSurface (cdp.py) implements them over the DevTools protocol, the test
suite implements them in memory.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional


@dataclass
class Tab:
    id: Any
    url: str = ""
    title: str = ""
    active: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"tabId": self.id, "url": self.url, "title": self.title, "active": self.active}


@dataclass
class Frame:
    frame_id: Any
    url: str = ""
    name: str = ""
    parent_id: Any = None


@dataclass
class ElementDescriptor:
    """What the page capture script reports about the element a signal came from."""
    tag: str = ""
    role: str = ""
    name: str = ""
    xpath: Optional[str] = None
    css_selector: Optional[str] = None
    ref: Optional[int] = None
    input_type: Optional[str] = None
    checked: Optional[bool] = None

    @classmethod
    def from_payload(cls, payload: Optional[dict]) -> "ElementDescriptor":
        payload = payload or {}
        ref = payload.get("ref")
        return cls(
            tag=(payload.get("tag") or "").lower(),
            role=payload.get("role") or "",
            name=payload.get("name") or "",
            xpath=payload.get("xpath"),
            css_selector=payload.get("cssSelector"),
            ref=int(ref) if ref is not None else None,
            input_type=(payload.get("inputType") or "").lower() or None,
            checked=payload.get("checked"),
        )


@dataclass
class RawSignal:
    """
    One raw interaction from the page, before the trace recorder turns it
    into a TraceEvent.

    kind: click | input | change | keydown | scroll | navigation | closed
    """
    kind: str
    url: str = ""
    element: ElementDescriptor = field(default_factory=ElementDescriptor)
    value: Optional[str] = None          # input value / selected option label
    key: Optional[str] = None
    ctrl_key: bool = False
    meta_key: bool = False
    delta_y: float = 0                   # scroll: signed vertical movement
    title: str = ""
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    @classmethod
    def from_payload(cls, payload: dict) -> "RawSignal":
        return cls(
            kind=payload["kind"],
            url=payload.get("url") or "",
            element=ElementDescriptor.from_payload(payload.get("element")),
            value=payload.get("value"),
            key=payload.get("key"),
            ctrl_key=bool(payload.get("ctrlKey")),
            meta_key=bool(payload.get("metaKey")),
            delta_y=payload.get("deltaY") or 0,
            title=payload.get("title") or "",
            timestamp=int(payload.get("timestamp") or time.time() * 1000),
        )


SignalCallback = Callable[[RawSignal], Awaitable[None]]


class DebugLog:
    """Network requests, console messages and page errors collected for one tab."""

    def __init__(self, tab_id=None):
        self.tab_id = tab_id
        self.requests: List[dict] = []
        self.console: List[dict] = []
        self.errors: List[dict] = []
        self._requests_by_id: Dict[str, dict] = {}

    # === Feed (called by the surface) ===

    def request_started(self, request_id: str, url: str, method: str, resource_type: str = ""):
        entry = {
            "requestId": request_id,
            "url": url,
            "method": method,
            "type": resource_type,
            "timestamp": int(time.time() * 1000),
        }
        self._requests_by_id[request_id] = entry
        self.requests.append(entry)

    def request_finished(self, request_id: str, status: Optional[int] = None,
                         mime_type: str = "", failed: Optional[str] = None):
        entry = self._requests_by_id.get(request_id)
        if entry is None:
            return
        if status is not None:
            entry["status"] = status
        if mime_type:
            entry["mimeType"] = mime_type
        if failed:
            entry["failed"] = True
            entry["errorText"] = failed

    def add_console(self, level: str, text: str, url: str = ""):
        self.console.append({"type": level, "text": text, "url": url,
                             "timestamp": int(time.time() * 1000)})

    def add_error(self, message: str, url: str = "", line: Optional[int] = None,
                  column: Optional[int] = None, stack: str = ""):
        self.errors.append({"message": message, "url": url, "lineNumber": line,
                            "columnNumber": column, "stackTrace": stack,
                            "timestamp": int(time.time() * 1000)})

    # === Queries (called by the executor) ===

    def get_requests(self, filter_text: Optional[str] = None) -> List[dict]:
        if not filter_text:
            return list(self.requests)
        return [r for r in self.requests if filter_text in r["url"]]

    def clear_requests(self):
        self.requests.clear()
        self._requests_by_id.clear()

    def clear_console(self):
        self.console.clear()

    def clear_errors(self):
        self.errors.clear()


class AutomationSurface(ABC):
    """Capability interface over one browser."""

    # === Tabs ===

    @abstractmethod
    async def list_tabs(self) -> List[Tab]:
        ...

    async def get_tab(self, tab_id) -> Optional[Tab]:
        for tab in await self.list_tabs():
            if tab.id == tab_id:
                return tab
        return None

    async def active_tab(self) -> Optional[Tab]:
        tabs = await self.list_tabs()
        for tab in tabs:
            if tab.active:
                return tab
        return tabs[0] if tabs else None

    @abstractmethod
    async def create_tab(self, url: Optional[str] = None, timeout: Optional[float] = None) -> Tab:
        """Open and activate a tab, returning once it has loaded."""

    @abstractmethod
    async def update_tab(self, tab_id, url: str, timeout: Optional[float] = None) -> Tab:
        """Navigate an existing tab."""

    @abstractmethod
    async def activate_tab(self, tab_id) -> Tab:
        ...

    @abstractmethod
    async def close_tab(self, tab_id):
        ...

    @abstractmethod
    async def navigate_history(self, tab_id, delta: int, timeout: Optional[float] = None) -> Tab:
        ...

    @abstractmethod
    async def reload_tab(self, tab_id, timeout: Optional[float] = None) -> Tab:
        ...

    @abstractmethod
    async def capture_visible_tab(self, tab_id) -> bytes:
        """PNG bytes of the visible viewport."""

    # === Scripts ===

    @abstractmethod
    async def run_script(self, tab_id, frame_id, fn: str, args: Optional[list] = None) -> Any:
        """
        Call the JS function source `fn` with JSON-serializable `args` in the
        given frame (None = top document) and return its JSON result.
        """

    @abstractmethod
    async def inject_script(self, tab_id, frame_id, path: str):
        ...

    @abstractmethod
    async def enumerate_frames(self, tab_id) -> List[Frame]:
        ...

    # === Input ===

    @abstractmethod
    async def dispatch_input_event(self, tab_id, kind: str, payload: dict):
        """
        kind: click {x, y, clickCount} | move {x, y} | insert_text {text}
              | key {key, modifiers} | wheel {x, y, deltaX, deltaY}
        """

    @abstractmethod
    async def handle_dialog(self, tab_id, accept: bool, prompt_text: Optional[str] = None) -> dict:
        """Answer the open JS dialog; returns {type, message}."""

    # === Observation ===

    @abstractmethod
    async def attach_debug_protocol(self, tab_id) -> DebugLog:
        """Start collecting network/console/errors. Idempotent per tab."""

    @abstractmethod
    async def watch_interactions(self, tab_id, callback: SignalCallback):
        ...

    @abstractmethod
    async def unwatch_interactions(self, tab_id):
        ...

    async def close(self):
        pass
