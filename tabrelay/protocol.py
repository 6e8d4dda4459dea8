"""
Wire models shared by the relay, the executor and the issuer client.

JSON on the wire is camelCase (waitType, tabId, ...); Python code uses the
snake_case attribute names.
"""

import uuid
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

ACTIONS = (
    "open", "snapshot", "click", "hover", "fill", "type", "check", "uncheck",
    "select", "get", "screenshot", "close", "wait", "press", "scroll",
    "back", "forward", "refresh", "eval",
    "tab_list", "tab_new", "tab_select", "tab_close",
    "frame", "frame_main", "dialog", "network", "console", "errors", "trace",
)

TraceEventType = Literal["click", "fill", "select", "check", "press", "scroll", "navigation"]


def generate_id() -> str:
    """Fresh correlation id (uuid4)."""
    return str(uuid.uuid4())


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Command(WireModel):
    """One request for the executor. Immutable once issued."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True,
                              frozen=True, extra="allow")

    id: str = ""
    action: str

    url: Optional[str] = None
    ref: Optional[str] = None
    text: Optional[str] = None
    attribute: Optional[str] = None
    path: Optional[str] = None
    interactive: Optional[bool] = None
    script: Optional[str] = None
    value: Optional[str] = None
    selector: Optional[str] = None
    wait_type: Optional[str] = None
    ms: Optional[float] = None
    key: Optional[str] = None
    modifiers: Optional[List[str]] = None
    direction: Optional[str] = None
    pixels: Optional[int] = None
    tab_id: Optional[Any] = None
    index: Optional[int] = None
    dialog_response: Optional[str] = None
    prompt_text: Optional[str] = None
    network_command: Optional[str] = None
    console_command: Optional[str] = None
    errors_command: Optional[str] = None
    trace_command: Optional[str] = None
    filter: Optional[str] = None

    def with_id(self, command_id: str) -> "Command":
        return self.model_copy(update={"id": command_id})


class Result(WireModel):
    id: str
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, command_id: str, **data) -> "Result":
        return cls(id=command_id, success=True, data=data)

    @classmethod
    def fail(cls, command_id: str, error: str) -> "Result":
        return cls(id=command_id, success=False, error=error)


class RefInfo(WireModel):
    xpath: str
    role: str
    name: Optional[str] = None
    tag_name: str = ""


class SnapshotData(WireModel):
    snapshot: str
    refs: Dict[str, RefInfo]


class TraceEvent(WireModel):
    type: TraceEventType
    timestamp: int
    url: str
    ref: Optional[int] = None
    xpath: Optional[str] = None
    css_selector: Optional[str] = None
    value: Optional[str] = None
    key: Optional[str] = None
    direction: Optional[Literal["up", "down"]] = None
    pixels: Optional[int] = None
    checked: Optional[bool] = None
    element_role: Optional[str] = None
    element_name: Optional[str] = None
    element_tag: Optional[str] = None


class TraceStatus(WireModel):
    recording: bool
    event_count: int
    tab_id: Optional[Any] = None


class RelayStatus(WireModel):
    running: bool
    extension_connected: bool
    pending_requests: int
    uptime: float
