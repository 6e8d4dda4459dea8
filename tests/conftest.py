"""
Pytest fixtures for tabrelay tests
"""
import io

import pytest
from PIL import Image

from tabrelay.config import AgentConfig
from tabrelay.errors import HandlerError
from tabrelay.page_scripts import (DOM_TREE_READY_SCRIPT, DOM_TREE_SCRIPT, ELEMENT_SCRIPT, EVAL_SCRIPT,
                                   FRAME_ELEMENT_SCRIPT, SCROLL_SCRIPT, VIEWPORT_SCRIPT)
from tabrelay.surface import AutomationSurface, DebugLog, Frame, Tab


def make_png(width, height):
    buf = io.BytesIO()
    Image.new("RGB", (width, height), "white").save(buf, format="PNG")
    return buf.getvalue()


class FakeSurface(AutomationSurface):
    """
    In-memory browser. Elements live in `elements[frame_id][xpath]` as dicts:
    {"tag", "type", "checked", "text", "value", "options", "center"}.
    """

    def __init__(self):
        self.tabs = [Tab(id="tab1", url="https://example.com/", title="Example", active=True)]
        self.elements = {None: {}}
        self.frames = [Frame(frame_id="main", url="https://example.com/")]
        self.frame_elements = {}
        self.dom_tree = None
        self.dom_tree_ready = False
        self.injected = []
        self.eval_result = None
        self.png = make_png(100, 50)
        self.dialog = None
        self.debug_log = None
        self.attach_count = 0
        self.watching = {}

        self.script_calls = []
        self.input_events = []
        self.history_calls = []
        self.dialog_calls = []
        self._next_tab = 2

    # === Helpers ===

    def add_element(self, xpath, frame_id=None, **element):
        element.setdefault("tag", "button")
        element.setdefault("center", {"x": 10, "y": 20})
        self.elements.setdefault(frame_id, {})[xpath] = element
        return element

    def element_ops(self, op):
        return [c for c in self.script_calls if c[2] is ELEMENT_SCRIPT and c[3][1] == op]

    # === Tabs ===

    async def list_tabs(self):
        return list(self.tabs)

    def _activate(self, tab):
        for other in self.tabs:
            other.active = other is tab

    async def create_tab(self, url=None, timeout=None):
        tab = Tab(id=f"tab{self._next_tab}", url=url or "about:blank", title=f"Page {self._next_tab}")
        self._next_tab += 1
        self.tabs.append(tab)
        self._activate(tab)
        return tab

    async def update_tab(self, tab_id, url, timeout=None):
        tab = await self.get_tab(tab_id)
        tab.url = url
        return tab

    async def activate_tab(self, tab_id):
        tab = await self.get_tab(tab_id)
        self._activate(tab)
        return tab

    async def close_tab(self, tab_id):
        tab = await self.get_tab(tab_id)
        self.tabs.remove(tab)
        if tab.active and self.tabs:
            self._activate(self.tabs[0])

    async def navigate_history(self, tab_id, delta, timeout=None):
        self.history_calls.append((tab_id, delta))
        return await self.get_tab(tab_id)

    async def reload_tab(self, tab_id, timeout=None):
        self.history_calls.append((tab_id, 0))
        return await self.get_tab(tab_id)

    async def capture_visible_tab(self, tab_id):
        return self.png

    # === Scripts ===

    async def run_script(self, tab_id, frame_id, fn, args=None):
        args = args or []
        self.script_calls.append((tab_id, frame_id, fn, args))
        if fn is ELEMENT_SCRIPT:
            return self._element_op(frame_id, *args)
        if fn is DOM_TREE_READY_SCRIPT:
            return self.dom_tree_ready
        if fn is DOM_TREE_SCRIPT:
            return self.dom_tree
        if fn is VIEWPORT_SCRIPT:
            return {"width": 1200, "height": 800}
        if fn is SCROLL_SCRIPT:
            return {"scrollX": args[0], "scrollY": args[1]}
        if fn is EVAL_SCRIPT:
            return self.eval_result
        if fn is FRAME_ELEMENT_SCRIPT:
            return self.frame_elements.get(args[0], {"found": False})
        raise AssertionError(f"unexpected script: {fn[:40]}")

    def _element_op(self, frame_id, xpath, op, op_args):
        el = self.elements.get(frame_id, {}).get(xpath)
        if el is None:
            return {"found": False}

        def ok(value=True):
            return {"found": True, "value": value}

        def fail(error):
            return {"found": True, "error": error}

        if op in ("exists", "click", "hover", "focus"):
            return ok()
        if op == "center":
            return ok(el["center"])
        if op == "focus_clear":
            if el["tag"] not in ("input", "textarea"):
                return fail("Element is not fillable")
            el["value"] = ""
            return ok()
        if op == "text":
            return ok(el.get("text", ""))
        if op == "value":
            return ok(el.get("value", ""))
        if op == "set_checked":
            if el["tag"] != "input":
                return fail("Element is not an input element")
            if el.get("type") not in ("checkbox", "radio"):
                return fail(f"Element is not a checkbox or radio (type: {el.get('type')})")
            before = bool(el.get("checked"))
            el["checked"] = bool(op_args[0])
            return ok({"wasChecked": before})
        if op == "select":
            wanted = str(op_args[0])
            options = el.get("options", [])
            match = next((o for o in options if o["value"] == wanted), None) \
                or next((o for o in options if o["label"] == wanted), None) \
                or next((o for o in options if wanted.lower() in (o["value"].lower(), o["label"].lower())), None)
            if match is None:
                return fail(f'Option "{wanted}" not found. Available options: {options}')
            el["value"] = match["value"]
            return ok({"selectedValue": match["value"], "selectedLabel": match["label"]})
        return fail(f"Unknown element operation: {op}")

    async def inject_script(self, tab_id, frame_id, path):
        self.injected.append((tab_id, frame_id, path))
        self.dom_tree_ready = True

    async def enumerate_frames(self, tab_id):
        return list(self.frames)

    # === Input ===

    async def dispatch_input_event(self, tab_id, kind, payload):
        self.input_events.append((tab_id, kind, payload))

    async def handle_dialog(self, tab_id, accept, prompt_text=None):
        if self.dialog is None:
            raise HandlerError("No dialog is currently open")
        self.dialog_calls.append((tab_id, accept, prompt_text))
        dialog, self.dialog = self.dialog, None
        return dialog

    # === Observation ===

    async def attach_debug_protocol(self, tab_id):
        self.attach_count += 1
        if self.debug_log is None:
            self.debug_log = DebugLog(tab_id)
        return self.debug_log

    async def watch_interactions(self, tab_id, callback):
        self.watching[tab_id] = callback

    async def unwatch_interactions(self, tab_id):
        self.watching.pop(tab_id, None)


@pytest.fixture
def surface():
    return FakeSurface()


@pytest.fixture
def agent_config():
    """Short element waits so timeout paths stay fast"""
    return AgentConfig(wait_element_timeout=0.05, wait_element_interval=0.01, max_image_dim=1800)


@pytest.fixture
def dom_tree():
    """
    Node map as returned by build_dom_tree.js for:

        <body>
          <h1>Welcome</h1>
          <a href="/login"><span>Sign in</span></a>       (ref 0, span ref 1)
          <input type="email" placeholder="Email">        (ref 2)
          <label>Remember</label>                          (ref 3)
          <div style="display:none">Hidden</div>
          <button aria-label="Go">Go</button>              (ref 4)
          <div></div>                                      (ref 5, no name)
        </body>
    """
    return {
        "rootId": "0",
        "map": {
            "0": {"tagName": "body", "xpath": "/html/body", "attributes": {},
                  "children": ["1", "3", "6", "7", "9", "11", "13"], "isVisible": True},
            "1": {"tagName": "h1", "xpath": "/html/body/h1", "attributes": {},
                  "children": ["2"], "isVisible": True},
            "2": {"type": "TEXT_NODE", "text": "Welcome", "isVisible": True},
            "3": {"tagName": "a", "xpath": "/html/body/a", "attributes": {"href": "/login"},
                  "children": ["4"], "isVisible": True, "highlightIndex": 0},
            "4": {"tagName": "span", "xpath": "/html/body/a/span", "attributes": {},
                  "children": ["5"], "isVisible": True, "highlightIndex": 1},
            "5": {"type": "TEXT_NODE", "text": "Sign in", "isVisible": True},
            "6": {"tagName": "input", "xpath": "/html/body/input",
                  "attributes": {"type": "email", "placeholder": "Email"},
                  "children": [], "isVisible": True, "highlightIndex": 2},
            "7": {"tagName": "label", "xpath": "/html/body/label", "attributes": {},
                  "children": ["8"], "isVisible": True, "highlightIndex": 3},
            "8": {"type": "TEXT_NODE", "text": "Remember", "isVisible": True},
            "9": {"tagName": "div", "xpath": "/html/body/div[1]", "attributes": {"style": "display:none"},
                  "children": ["10"], "isVisible": False},
            "10": {"type": "TEXT_NODE", "text": "Hidden", "isVisible": False},
            "11": {"tagName": "button", "xpath": "/html/body/button", "attributes": {"aria-label": "Go"},
                   "children": ["12"], "isVisible": True, "highlightIndex": 4},
            "12": {"type": "TEXT_NODE", "text": "Go", "isVisible": True},
            "13": {"tagName": "div", "xpath": "/html/body/div[2]", "attributes": {},
                   "children": [], "isVisible": True, "highlightIndex": 5},
        },
    }


@pytest.fixture
def redis_url():
    """Redis URL for store tests; skipped when no local Redis"""
    url = "redis://localhost:6379/15"
    try:
        import redis
        client = redis.Redis.from_url(url)
        client.ping()
        client.close()
    except Exception as e:
        pytest.skip(f"Redis not available: {e}")
    return url
