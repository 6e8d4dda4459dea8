"""
Trace Recorder - turns raw page interactions into a replayable event list.

State machine: idle -> recording (start) -> idle (stop, or the traced tab
closes). Typing and scrolling are debounced so a burst of keystrokes
becomes one `fill` and a fling becomes one `scroll`. stop() flushes
anything still waiting on a debounce timer before returning the events.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .protocol import TraceEvent, TraceStatus
from .snapshot import get_role
from .surface import ElementDescriptor, RawSignal

logger = logging.getLogger(__name__)

FILL_DEBOUNCE = 0.5       # seconds
SCROLL_DEBOUNCE = 0.3
SCROLL_THRESHOLD = 50     # pixels
PASSWORD_MASK = "********"

CAPTURED_KEYS = {
    "Enter", "Tab", "Escape",
    "ArrowUp", "ArrowDown", "ArrowLeft", "ArrowRight",
    "Home", "End", "PageUp", "PageDown",
    "Backspace", "Delete",
}
SHORTCUT_KEY = re.compile(r"^[a-zA-Z0-9]$")


def shortcut_label(signal: RawSignal) -> Optional[str]:
    """Key string worth recording for a keydown, or None."""
    key = signal.key or ""
    if key in CAPTURED_KEYS:
        return key
    if (signal.ctrl_key or signal.meta_key) and SHORTCUT_KEY.match(key):
        modifier = "Meta" if signal.meta_key else "Control"
        return f"{modifier}+{key.lower()}"
    return None


@dataclass
class _PendingFill:
    signal: RawSignal
    timer: asyncio.TimerHandle


@dataclass
class _PendingScroll:
    signal: RawSignal
    delta: float
    timer: asyncio.TimerHandle


class TraceRecorder:
    def __init__(self, fill_debounce: float = FILL_DEBOUNCE,
                 scroll_debounce: float = SCROLL_DEBOUNCE,
                 clock: Optional[Callable[[], int]] = None):
        self.fill_debounce = fill_debounce
        self.scroll_debounce = scroll_debounce
        self._clock = clock or (lambda: int(time.time() * 1000))

        self.recording = False
        self.tab_id: Any = None
        self.events: List[TraceEvent] = []
        self._fills: Dict[str, _PendingFill] = {}
        self._scroll: Optional[_PendingScroll] = None
        self._last_timestamp = 0

    # === Lifecycle ===

    def start(self, tab_id, url: str, title: str = ""):
        self._cancel_pending()
        self.recording = True
        self.tab_id = tab_id
        self.events = []
        self._last_timestamp = 0
        self._append(self._navigation(url, title))
        logger.info(f"Recording started on tab {tab_id}: {url}")

    def stop(self) -> List[TraceEvent]:
        self._flush_pending()
        events = self.events
        logger.info(f"Recording stopped, {len(events)} events")
        self.recording = False
        self.tab_id = None
        self.events = []
        return events

    def status(self) -> TraceStatus:
        return TraceStatus(recording=self.recording, event_count=len(self.events), tab_id=self.tab_id)

    def tab_closed(self, tab_id=None):
        """Traced tab went away: back to idle, events kept for a later stop()."""
        if tab_id is not None and tab_id != self.tab_id:
            return
        self._flush_pending()
        if self.recording:
            logger.info(f"Recording tab {self.tab_id} closed, recording halted")
        self.recording = False
        self.tab_id = None

    # === Signals ===

    def ingest(self, signal: RawSignal):
        if signal.kind == "closed":
            self.tab_closed()
            return
        if not self.recording:
            return

        handler = getattr(self, f"_on_{signal.kind}", None)
        if handler is None:
            logger.debug(f"Ignoring {signal.kind} signal")
            return
        handler(signal)

    def _on_click(self, signal: RawSignal):
        element = signal.element
        if element.tag == "input" and element.input_type in ("checkbox", "radio"):
            self._append(self._element_event("check", signal, checked=bool(element.checked)))
        else:
            self._append(self._element_event("click", signal))

    def _on_input(self, signal: RawSignal):
        key = signal.element.xpath or signal.element.css_selector or ""
        pending = self._fills.pop(key, None)
        if pending:
            pending.timer.cancel()
        timer = asyncio.get_running_loop().call_later(self.fill_debounce, self._flush_fill, key)
        self._fills[key] = _PendingFill(signal, timer)

    def _on_change(self, signal: RawSignal):
        if signal.element.tag != "select":
            return
        self._append(self._element_event("select", signal, value=signal.value or ""))

    def _on_keydown(self, signal: RawSignal):
        label = shortcut_label(signal)
        if label:
            self._append(self._element_event("press", signal, key=label))

    def _on_scroll(self, signal: RawSignal):
        loop = asyncio.get_running_loop()
        if self._scroll:
            self._scroll.timer.cancel()
            self._scroll.delta += signal.delta_y
            self._scroll.signal = signal
            self._scroll.timer = loop.call_later(self.scroll_debounce, self._flush_scroll)
        else:
            self._scroll = _PendingScroll(signal, signal.delta_y,
                                          loop.call_later(self.scroll_debounce, self._flush_scroll))

    def _on_navigation(self, signal: RawSignal):
        self._append(self._navigation(signal.url, signal.title))

    # === Debounce flushes ===

    def _flush_fill(self, key: str):
        pending = self._fills.pop(key, None)
        if pending is None:
            return
        pending.timer.cancel()
        signal = pending.signal
        value = signal.value or ""
        if signal.element.input_type == "password":
            value = PASSWORD_MASK
        self._append(self._element_event("fill", signal, value=value))

    def _flush_scroll(self):
        pending, self._scroll = self._scroll, None
        if pending is None:
            return
        pending.timer.cancel()
        if abs(pending.delta) < SCROLL_THRESHOLD:
            return
        self._append(TraceEvent(
            type="scroll",
            timestamp=self._clock(),
            url=pending.signal.url,
            direction="down" if pending.delta > 0 else "up",
            pixels=int(abs(pending.delta)),
        ))

    def _flush_pending(self):
        for key in list(self._fills):
            self._flush_fill(key)
        self._flush_scroll()

    def _cancel_pending(self):
        for pending in self._fills.values():
            pending.timer.cancel()
        self._fills.clear()
        if self._scroll:
            self._scroll.timer.cancel()
            self._scroll = None

    # === Event construction ===

    def _append(self, event: TraceEvent):
        # Timestamps never go backwards within a session
        event.timestamp = max(event.timestamp, self._last_timestamp)
        self._last_timestamp = event.timestamp
        self.events.append(event)
        logger.debug(f"Trace event: {event.type} ({len(self.events)} total)")

    def _navigation(self, url: str, title: str) -> TraceEvent:
        return TraceEvent(
            type="navigation",
            timestamp=self._clock(),
            url=url,
            element_role="document",
            element_name=title or "",
            element_tag="document",
        )

    def _element_event(self, event_type: str, signal: RawSignal, **extra) -> TraceEvent:
        element: ElementDescriptor = signal.element
        return TraceEvent(
            type=event_type,
            timestamp=self._clock(),
            url=signal.url,
            ref=element.ref,
            xpath=element.xpath,
            css_selector=element.css_selector,
            element_role=element.role or get_role({"tagName": element.tag,
                                                   "attributes": {"type": element.input_type}}) or None,
            element_name=element.name,
            element_tag=element.tag or "document",
            **extra,
        )
