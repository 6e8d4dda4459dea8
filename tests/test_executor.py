"""
Tests for the command executor, driven against the in-memory surface
"""
import asyncio
import base64
import io

import pytest
from PIL import Image

from conftest import make_png
from tabrelay.executor import CommandExecutor, fit_image, is_restricted, modifier_mask
from tabrelay.errors import ValidationError
from tabrelay.page_scripts import SCROLL_SCRIPT
from tabrelay.protocol import ACTIONS, Command, RefInfo
from tabrelay.snapshot import RefTable
from tabrelay.surface import ElementDescriptor, Frame, RawSignal


@pytest.fixture
def executor(surface, agent_config):
    refs = RefTable({
        "1": RefInfo(xpath="/html/body/button", role="button", name="Save", tag_name="button"),
        "2": RefInfo(xpath="/html/body/input[1]", role="textbox", name="Email", tag_name="input"),
        "3": RefInfo(xpath="/html/body/input[2]", role="checkbox", name="Agree", tag_name="input"),
        "4": RefInfo(xpath="/html/body/select", role="combobox", name="Country", tag_name="select"),
    })
    surface.add_element("/html/body/button", text="Save", center={"x": 50, "y": 60})
    surface.add_element("/html/body/input[1]", tag="input", type="email", value="old@x")
    surface.add_element("/html/body/input[2]", tag="input", type="checkbox", checked=False)
    surface.add_element("/html/body/select", tag="select", options=[
        {"value": "fr", "label": "France"}, {"value": "de", "label": "Germany"},
    ])
    return CommandExecutor(surface, agent_config, refs=refs)


def run(executor, action, **fields):
    return asyncio.run(executor.dispatch(Command(id="cmd-1", action=action, **fields)))


class TestDispatch:
    """Routing and the error boundary"""

    def test_every_action_has_a_handler(self, executor):
        assert set(executor._handlers) == set(ACTIONS)

    def test_unknown_action(self, executor):
        result = run(executor, "teleport")
        assert not result.success
        assert result.error == "Unknown action: teleport"
        assert result.id == "cmd-1"

    def test_missing_field(self, executor):
        assert run(executor, "click").error == "Missing ref parameter"
        assert run(executor, "open").error == "Missing url parameter"
        assert run(executor, "eval").error == "Missing script parameter"

    def test_unexpected_exception_wrapped(self, executor, surface):
        async def broken(*args, **kwargs):
            raise RuntimeError("socket closed")

        surface.dispatch_input_event = broken
        result = run(executor, "click", ref="1")
        assert result.error == "Click failed: socket closed"

    def test_no_active_tab(self, executor, surface):
        surface.tabs.clear()
        assert run(executor, "snapshot").error == "Snapshot failed: No active tab found"

    def test_restricted_pages(self, executor, surface):
        surface.tabs[0].url = "chrome://settings"
        assert run(executor, "snapshot").error == "Cannot take snapshot of restricted page: chrome://settings"
        assert run(executor, "click", ref="1").error == "Cannot operate on restricted page: chrome://settings"
        assert run(executor, "press", key="Enter").error == "Cannot send keys to restricted page: chrome://settings"
        assert run(executor, "eval", script="1").error == "Cannot execute script on restricted page: chrome://settings"
        # Tab-level operations still work
        assert run(executor, "get", attribute="url").data == {"value": "chrome://settings"}

    def test_is_restricted(self):
        assert is_restricted("about:blank")
        assert is_restricted("view-source:https://x")
        assert not is_restricted("https://chrome.google.com")
        assert not is_restricted("")


class TestNavigation:
    """open / back / forward / refresh / close"""

    def test_open_new_tab(self, executor, surface):
        result = run(executor, "open", url="https://example.org/")
        assert result.data == {"tabId": "tab2", "title": "Page 2", "url": "https://example.org/"}
        assert surface.tabs[-1].active

    def test_open_in_current_tab(self, executor, surface):
        result = run(executor, "open", url="https://example.org/", tab_id="current")
        assert result.data["tabId"] == "tab1"
        assert len(surface.tabs) == 1
        assert surface.tabs[0].url == "https://example.org/"

    def test_history(self, executor, surface):
        assert run(executor, "back").data == {"url": "https://example.com/", "title": "Example"}
        run(executor, "forward")
        run(executor, "refresh")
        assert surface.history_calls == [("tab1", -1), ("tab1", 1), ("tab1", 0)]

    def test_close(self, executor, surface):
        run(executor, "tab_new", url="https://second/")
        result = run(executor, "close")
        assert result.data["tabId"] == "tab2"
        assert [t.id for t in surface.tabs] == ["tab1"]


class TestSnapshot:
    """snapshot handler"""

    def test_injects_and_replaces_refs(self, executor, surface, dom_tree):
        surface.dom_tree = dom_tree
        result = run(executor, "snapshot", interactive=True)
        assert result.success
        assert surface.injected == [("tab1", None, executor.config.dom_tree_script)]
        data = result.data
        assert data["title"] == "Example"
        assert data["snapshotData"]["snapshot"].startswith('- link "Sign in" [ref=0]')
        assert data["snapshotData"]["refs"]["2"] == {
            "xpath": "/html/body/input", "role": "textbox", "name": "Email", "tagName": "input",
        }
        assert sorted(executor.refs.as_dict()) == ["0", "2", "4"]

    def test_no_reinjection(self, executor, surface, dom_tree):
        surface.dom_tree = dom_tree
        surface.dom_tree_ready = True
        run(executor, "snapshot")
        assert surface.injected == []

    def test_invalid_tree(self, executor, surface):
        surface.dom_tree_ready = True
        surface.dom_tree = {"unexpected": True}
        assert run(executor, "snapshot").error == "Failed to build DOM tree: invalid result structure"
        # Previous refs survive a failed snapshot
        assert "1" in executor.refs


class TestElements:
    """Element interaction handlers"""

    def test_click_dispatches_mouse_at_center(self, executor, surface):
        result = run(executor, "click", ref="@1")
        assert result.data == {"role": "button", "name": "Save"}
        assert surface.input_events == [("tab1", "click", {"x": 50, "y": 60, "clickCount": 1})]

    def test_hover(self, executor, surface):
        run(executor, "hover", ref="1")
        assert surface.input_events == [("tab1", "move", {"x": 50, "y": 60})]

    def test_unknown_ref(self, executor):
        assert run(executor, "click", ref="99").error == \
            'Ref "99" not found. Run snapshot first to get available refs.'

    def test_stale_ref(self, executor, surface):
        del surface.elements[None]["/html/body/button"]
        assert run(executor, "click", ref="1").error == "Element not found by xpath: /html/body/button"

    def test_fill(self, executor, surface):
        result = run(executor, "fill", ref="2", text="me@example.com")
        assert result.data == {"role": "textbox", "name": "Email", "filledText": "me@example.com"}
        assert surface.elements[None]["/html/body/input[1]"]["value"] == ""
        assert surface.input_events == [("tab1", "insert_text", {"text": "me@example.com"})]

    def test_fill_requires_text(self, executor):
        assert run(executor, "fill", ref="2").error == "Missing text parameter"

    def test_fill_non_fillable(self, executor):
        assert run(executor, "fill", ref="1", text="x").error == "Fill failed: Element is not fillable"

    def test_type_sends_key_per_character(self, executor, surface):
        result = run(executor, "type", ref="2", text="ab")
        assert result.data["typedText"] == "ab"
        assert [e[2]["key"] for e in surface.input_events] == ["a", "b"]

    def test_check_and_uncheck(self, executor, surface):
        assert run(executor, "check", ref="3").data["wasAlreadyChecked"] is False
        assert run(executor, "check", ref="3").data["wasAlreadyChecked"] is True
        assert run(executor, "uncheck", ref="3").data["wasAlreadyUnchecked"] is False
        assert run(executor, "uncheck", ref="3").data["wasAlreadyUnchecked"] is True

    def test_check_wrong_type(self, executor):
        assert run(executor, "check", ref="2").error == \
            "Check failed: Element is not a checkbox or radio (type: email)"

    def test_select_by_label(self, executor):
        result = run(executor, "select", ref="4", value="germany")
        assert result.data == {"role": "combobox", "name": "Country",
                               "selectedValue": "de", "selectedLabel": "Germany"}

    def test_select_missing_option(self, executor):
        error = run(executor, "select", ref="4", value="Spain").error
        assert error.startswith('Select failed: Option "Spain" not found. Available options:')

    def test_get(self, executor):
        assert run(executor, "get", attribute="title").data == {"value": "Example"}
        assert run(executor, "get", attribute="text", ref="1").data == {"value": "Save"}
        assert run(executor, "get", attribute="value", ref="2").data == {"value": "old@x"}
        assert run(executor, "get", attribute="text").error == "Missing ref parameter for get text"
        assert run(executor, "get", attribute="color").error == "Unknown attribute: color"


class TestWait:
    """wait handler"""

    def test_time(self, executor):
        assert run(executor, "wait", wait_type="time", ms=10).data == {"waited": 10}
        assert run(executor, "wait", wait_type="time", ms=0).error == "Invalid ms parameter"

    def test_element_present(self, executor):
        assert run(executor, "wait", wait_type="element", ref="1").data == {"ref": "1"}

    def test_element_timeout(self, executor, surface):
        del surface.elements[None]["/html/body/button"]
        assert run(executor, "wait", wait_type="element", ref="1").error == \
            "Timeout waiting for element @1 after 50ms"

    def test_unknown_type(self, executor):
        assert run(executor, "wait", wait_type="network").error == "Unknown wait type: network"


class TestKeyboardAndScroll:
    """press / scroll / eval / screenshot"""

    def test_press_with_modifiers(self, executor, surface):
        result = run(executor, "press", key="a", modifiers=["Control", "Shift"])
        assert result.data == {"key": "Control+Shift+a"}
        assert surface.input_events == [("tab1", "key", {"key": "a", "modifiers": 10})]

    def test_modifier_mask(self):
        assert modifier_mask(["Alt", "Meta"]) == 5
        assert modifier_mask(None) == 0
        with pytest.raises(ValidationError, match="Unknown modifier: Hyper"):
            modifier_mask(["Hyper"])

    def test_scroll_default_pixels(self, executor, surface):
        assert run(executor, "scroll", direction="down").data == {"direction": "down", "pixels": 300}
        assert surface.input_events == [
            ("tab1", "wheel", {"x": 600, "y": 400, "deltaX": 0, "deltaY": 300}),
        ]

    def test_scroll_left(self, executor, surface):
        run(executor, "scroll", direction="left", pixels=120)
        assert surface.input_events[-1][2]["deltaX"] == -120

    def test_scroll_invalid_direction(self, executor):
        assert run(executor, "scroll", direction="sideways").error == "Invalid direction: sideways"

    def test_eval(self, executor, surface):
        surface.eval_result = {"answer": 42}
        assert run(executor, "eval", script="({answer: 42})").data == {"result": {"answer": 42}}

    def test_screenshot_data_url(self, executor, surface):
        data = run(executor, "screenshot").data
        assert data["dataUrl"] == "data:image/png;base64," + base64.b64encode(surface.png).decode()
        assert data["url"] == "https://example.com/"

    def test_screenshot_to_path_resized(self, executor, surface, tmp_path):
        surface.png = make_png(3600, 1200)
        target = tmp_path / "shots" / "page.png"
        data = run(executor, "screenshot", path=str(target)).data
        assert data["screenshotPath"] == str(target)
        assert Image.open(target).size == (1800, 600)

    def test_fit_image_leaves_small_images(self):
        png = make_png(800, 600)
        assert fit_image(png, 1800) is png
        assert Image.open(io.BytesIO(fit_image(make_png(1000, 4000), 1800))).size == (450, 1800)


class TestTabs:
    """tab_* handlers"""

    def test_tab_list(self, executor, surface):
        run(executor, "tab_new", url="https://second/")
        data = run(executor, "tab_list").data
        assert data["activeIndex"] == 1
        assert [(t["index"], t["tabId"]) for t in data["tabs"]] == [(0, "tab1"), (1, "tab2")]

    def test_tab_select(self, executor, surface):
        run(executor, "tab_new")
        assert run(executor, "tab_select", index=0).data["tabId"] == "tab1"
        assert surface.tabs[0].active
        assert run(executor, "tab_select", tab_id="tab2").data["tabId"] == "tab2"

    def test_tab_select_errors(self, executor):
        assert run(executor, "tab_select").error == "Missing tabId or index parameter"
        assert run(executor, "tab_select", index=5).error == "Tab index 5 out of range (0-0)"
        assert run(executor, "tab_select", tab_id="nope").error == "Tab nope not found"

    def test_tab_close_by_index(self, executor, surface):
        run(executor, "tab_new")
        assert run(executor, "tab_close", index=0).data["tabId"] == "tab1"
        assert [t.id for t in surface.tabs] == ["tab2"]


class TestFrames:
    """frame / frame_main"""

    @pytest.fixture
    def framed(self, executor, surface):
        surface.frames.append(Frame(frame_id="F1", url="https://widgets/", name="pay", parent_id="main"))
        surface.frame_elements["#pay"] = {"found": True, "name": "pay", "url": "https://widgets/"}
        surface.add_element("/html/body/button", frame_id="F1")
        return executor

    def test_enter_frame(self, framed):
        result = run(framed, "frame", selector="#pay")
        assert result.data == {"frameInfo": {"selector": "#pay", "name": "pay",
                                             "url": "https://widgets/", "frameId": "F1"}}
        assert framed.active_frame["frameId"] == "F1"

    def test_element_ops_scoped_to_frame(self, framed, surface):
        run(framed, "frame", selector="#pay")
        run(framed, "click", ref="1")
        # Inside a frame the click is a DOM click, not a mouse event
        assert surface.input_events == []
        assert surface.element_ops("click")[-1][1] == "F1"

    def test_scroll_in_frame_uses_script(self, framed, surface):
        run(framed, "frame", selector="#pay")
        run(framed, "scroll", direction="up", pixels=50)
        calls = [c for c in surface.script_calls if c[2] is SCROLL_SCRIPT]
        assert calls == [("tab1", "F1", SCROLL_SCRIPT, [0, -50])]

    def test_frame_main_and_navigation_reset(self, framed):
        run(framed, "frame", selector="#pay")
        assert run(framed, "frame_main").data == {"frameInfo": {"frameId": 0}}
        assert framed.active_frame is None
        run(framed, "frame", selector="#pay")
        run(framed, "back")
        assert framed.active_frame is None

    def test_frame_errors(self, framed, surface):
        assert run(framed, "frame", selector="#missing").error == "Frame failed: iframe not found: #missing"
        surface.frame_elements["#div"] = {"found": True, "error": "Element is not an iframe (tag: div)"}
        assert run(framed, "frame", selector="#div").error == "Frame failed: Element is not an iframe (tag: div)"


class TestDialogAndDebug:
    """dialog / network / console / errors"""

    def test_dialog(self, executor, surface):
        assert run(executor, "dialog", dialog_response="accept").error == \
            "Dialog failed: No dialog is currently open"
        surface.dialog = {"type": "prompt", "message": "Name?"}
        result = run(executor, "dialog", dialog_response="accept", prompt_text="Ada")
        assert result.data == {"dialogInfo": {"type": "prompt", "message": "Name?"}}
        assert surface.dialog_calls == [("tab1", True, "Ada")]

    def test_dialog_invalid_response(self, executor):
        assert run(executor, "dialog", dialog_response="maybe").error.startswith("Invalid dialogResponse")

    def test_network(self, executor, surface):
        run(executor, "network", network_command="clear")
        log = surface.debug_log
        log.request_started("r1", "https://api/x", "GET", "XHR")
        log.request_finished("r1", 200, "application/json")
        log.request_started("r2", "https://cdn/y.png", "GET", "Image")
        result = run(executor, "network", network_command="requests", filter="api")
        assert [(r["url"], r["status"]) for r in result.data["networkRequests"]] == [("https://api/x", 200)]
        assert surface.attach_count == 1
        assert run(executor, "network", network_command="clear").data == {"cleared": True}
        assert log.requests == []

    def test_console_and_errors(self, executor, surface):
        run(executor, "console", console_command="get")
        surface.debug_log.add_console("warn", "careful")
        surface.debug_log.add_error("ReferenceError: x is not defined", "https://x/app.js", 3, 7)
        messages = run(executor, "console", console_command="get").data["consoleMessages"]
        assert [(m["type"], m["text"]) for m in messages] == [("warn", "careful")]
        errors = run(executor, "errors", errors_command="get").data["jsErrors"]
        assert errors[0]["lineNumber"] == 3
        run(executor, "errors", errors_command="clear")
        assert surface.debug_log.errors == []

    def test_unknown_subcommand(self, executor):
        assert run(executor, "console", console_command="tail").error == "Unknown consoleCommand: tail"
        assert run(executor, "network").error == "Missing networkCommand parameter"


class TestTrace:
    """trace handler"""

    def test_start_signal_stop(self, executor, surface):
        async def scenario():
            start = await executor.dispatch(Command(id="t", action="trace", trace_command="start"))
            callback = surface.watching["tab1"]
            await callback(RawSignal(kind="click", url="https://example.com/",
                                     element=ElementDescriptor(tag="button", name="Save", xpath="/html/body/button")))
            status = await executor.dispatch(Command(id="s", action="trace", trace_command="status"))
            stop = await executor.dispatch(Command(id="p", action="trace", trace_command="stop"))
            return start, status, stop

        start, status, stop = asyncio.run(scenario())
        assert start.data["traceStatus"] == {"recording": True, "eventCount": 1, "tabId": "tab1"}
        assert status.data["traceStatus"]["eventCount"] == 2
        assert [e["type"] for e in stop.data["traceEvents"]] == ["navigation", "click"]
        assert stop.data["traceStatus"] == {"recording": False, "eventCount": 0}
        assert surface.watching == {}

    def test_closing_traced_tab_stops_recording(self, executor, surface):
        run(executor, "trace", trace_command="start")
        run(executor, "tab_new")
        run(executor, "tab_close", tab_id="tab1")
        assert not executor.recorder.recording
        assert len(executor.recorder.events) == 1

    def test_trace_restricted(self, executor, surface):
        surface.tabs[0].url = "about:blank"
        assert run(executor, "trace", trace_command="start").error == \
            "Cannot trace restricted page: about:blank"
