"""
Snapshot reducer and ref table.

The page-side extraction script (assets/build_dom_tree.js) returns a flat
node map:

    {"rootId": "0", "map": {"0": {"tagName": "body", "xpath": "/html/body",
                                  "attributes": {...}, "children": ["1", ...],
                                  "isVisible": true, "highlightIndex": 3},
                            "1": {"type": "TEXT_NODE", "text": "Hi", "isVisible": true}}}

build_snapshot() reduces it to the compact text handed to the controller,
one line per element:

    - button "Sign in" [ref=3]

and the RefTable that maps each ref id back to a locator (xpath).
"""

import json
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import redis.asyncio as aioredis

from .errors import RefNotFound, ValidationError
from .protocol import RefInfo

logger = logging.getLogger(__name__)

NAME_DISPLAY_LIMIT = 50
NAME_STORED_LIMIT = 100
TEXT_DISPLAY_LIMIT = 100
NAME_TEXT_DEPTH = 5

ROLE_BY_TAG = {
    "a": "link",
    "button": "button",
    "select": "combobox",
    "textarea": "textbox",
    "img": "image",
    "nav": "navigation",
    "main": "main",
    "header": "banner",
    "footer": "contentinfo",
    "aside": "complementary",
    "form": "form",
    "table": "table",
    "ul": "list",
    "ol": "list",
    "li": "listitem",
    "h1": "heading",
    "h2": "heading",
    "h3": "heading",
    "h4": "heading",
    "h5": "heading",
    "h6": "heading",
    "dialog": "dialog",
    "article": "article",
    "section": "region",
    "label": "label",
    "details": "group",
    "summary": "button",
}

ROLE_BY_INPUT_TYPE = {
    "text": "textbox",
    "password": "textbox",
    "email": "textbox",
    "url": "textbox",
    "tel": "textbox",
    "search": "searchbox",
    "number": "spinbutton",
    "range": "slider",
    "checkbox": "checkbox",
    "radio": "radio",
    "button": "button",
    "submit": "button",
    "reset": "button",
    "file": "button",
}

# Wrappers that only matter when they carry their own name
NON_SEMANTIC_TAGS = {"span", "div", "i", "b", "em", "strong", "small", "svg", "path", "g"}
# Clicking a label is the same as clicking its control
REDUNDANT_TAGS = {"label"}
CONTAINER_TAGS = {"a", "button"}

SKIP_TAGS = {
    "script", "style", "noscript", "svg", "path", "g", "defs", "clippath",
    "lineargradient", "stop", "symbol", "use", "meta", "link", "head",
}


@dataclass
class SnapshotResult:
    text: str
    refs: Dict[str, RefInfo]


# === Node helpers ===

def is_text_node(node: dict) -> bool:
    return node.get("type") == "TEXT_NODE"


def get_role(node: dict) -> str:
    attrs = node.get("attributes") or {}
    if attrs.get("role"):
        return attrs["role"]
    tag = node.get("tagName", "").lower()
    if tag == "input":
        input_type = (attrs.get("type") or "text").lower()
        return ROLE_BY_INPUT_TYPE.get(input_type, "textbox")
    return ROLE_BY_TAG.get(tag, tag)


def collect_text(node: dict, node_map: Dict[str, dict], max_depth: int = NAME_TEXT_DEPTH) -> str:
    """Visible-or-not descendant text, depth-limited, joined with spaces."""
    texts = []

    def collect(node_id, depth):
        if depth > max_depth:
            return
        current = node_map.get(node_id)
        if not current:
            return
        if is_text_node(current):
            text = (current.get("text") or "").strip()
            if text:
                texts.append(text)
            return
        for child_id in current.get("children") or []:
            collect(child_id, depth + 1)

    for child_id in node.get("children") or []:
        collect(child_id, 0)
    return " ".join(texts).strip()


def accessible_name(node: dict, node_map: Dict[str, dict]) -> Optional[str]:
    attrs = node.get("attributes") or {}
    for key in ("aria-label", "title", "placeholder", "alt", "value"):
        if attrs.get(key):
            return attrs[key]
    text = collect_text(node, node_map)
    if text:
        return text
    return attrs.get("name") or None


def truncate(text: str, limit: int = NAME_DISPLAY_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[:limit - 3] + "..."


def is_ancestor(ancestor: dict, descendant: dict) -> bool:
    """Ancestry by locator prefix: /html/body/div is above /html/body/div/a."""
    a, d = ancestor.get("xpath"), descendant.get("xpath")
    if not a or not d:
        return False
    return d.startswith(a + "/")


def _ref_info(node: dict, role: str, name: Optional[str]) -> RefInfo:
    return RefInfo(
        xpath=node.get("xpath") or "",
        role=role,
        name=truncate(name, NAME_STORED_LIMIT) if name else None,
        tag_name=node.get("tagName", ""),
    )


def _format_line(role: str, name: Optional[str], ref_id: Optional[str], indent: str = "") -> str:
    line = f"{indent}- {role}"
    if name:
        line += f' "{truncate(name)}"'
    if ref_id is not None:
        line += f" [ref={ref_id}]"
    return line


# === Reducers ===

def build_interactive(node_map: Dict[str, dict]) -> SnapshotResult:
    candidates = [
        (node_id, node) for node_id, node in node_map.items()
        if node and not is_text_node(node) and node.get("highlightIndex") is not None
    ]
    candidates.sort(key=lambda item: item[1]["highlightIndex"])

    info = {node_id: (get_role(node), accessible_name(node, node_map)) for node_id, node in candidates}

    kept = []
    for node_id, node in candidates:
        tag = node.get("tagName", "").lower()
        name = info[node_id][1]

        if (tag in NON_SEMANTIC_TAGS or tag == "a") and not name:
            continue
        if tag in REDUNDANT_TAGS:
            continue
        if tag in NON_SEMANTIC_TAGS and any(
            other_id != node_id
            and other.get("tagName", "").lower() in CONTAINER_TAGS
            and is_ancestor(other, node)
            for other_id, other in candidates
        ):
            continue
        if name and any(
            other_id != node_id
            and is_ancestor(other, node)
            and info[other_id][1] == name
            for other_id, other in candidates
        ):
            continue
        kept.append((node_id, node))

    lines = []
    refs = {}
    for node_id, node in kept:
        ref_id = str(node["highlightIndex"])
        role, name = info[node_id]
        lines.append(_format_line(role, name, ref_id))
        refs[ref_id] = _ref_info(node, role, name)
    return SnapshotResult("\n".join(lines), refs)


def build_full(root_id: str, node_map: Dict[str, dict]) -> SnapshotResult:
    lines: List[str] = []
    refs: Dict[str, RefInfo] = {}

    def traverse(node_id, depth):
        node = node_map.get(node_id)
        if not node:
            return
        indent = "  " * depth

        if is_text_node(node):
            if not node.get("isVisible"):
                return
            text = (node.get("text") or "").strip()
            if text:
                lines.append(f"{indent}- text: {truncate(text, TEXT_DISPLAY_LIMIT)}")
            return

        if node.get("isVisible") is False:
            return
        if node.get("tagName", "").lower() in SKIP_TAGS:
            return

        role = get_role(node)
        name = accessible_name(node, node_map)
        ref_id = None
        if node.get("highlightIndex") is not None:
            ref_id = str(node["highlightIndex"])
            refs[ref_id] = _ref_info(node, role, name)
        lines.append(_format_line(role, name, ref_id, indent))

        for child_id in node.get("children") or []:
            traverse(child_id, depth + 1)

    root = node_map.get(root_id)
    if root and not is_text_node(root):
        for child_id in root.get("children") or []:
            traverse(child_id, 0)
    return SnapshotResult("\n".join(lines), refs)


def build_snapshot(raw: dict, interactive: bool = False) -> SnapshotResult:
    """Reduce the extraction script's output. Raises ValidationError on a malformed tree."""
    if not raw or not raw.get("map") or raw.get("rootId") is None:
        raise ValidationError("Failed to build DOM tree: invalid result structure")
    node_map = raw["map"]
    if interactive:
        result = build_interactive(node_map)
    else:
        result = build_full(str(raw["rootId"]), node_map)
    logger.info(f"Snapshot complete: mode={'interactive' if interactive else 'full'} "
                f"lines={len(result.text.splitlines())} refs={len(result.refs)}")
    return result


# === Ref table ===

class RefTable:
    """Ref id -> RefInfo from the most recent snapshot. Replaced wholesale."""

    def __init__(self, refs: Optional[Dict[str, RefInfo]] = None):
        self._refs: Dict[str, RefInfo] = dict(refs or {})

    @staticmethod
    def normalize(ref) -> str:
        ref = str(ref).strip()
        return ref[1:] if ref.startswith("@") else ref

    def replace(self, refs: Dict[str, RefInfo]):
        self._refs = dict(refs)

    def get(self, ref) -> Optional[RefInfo]:
        return self._refs.get(self.normalize(ref))

    def lookup(self, ref) -> RefInfo:
        info = self.get(ref)
        if info is None:
            raise RefNotFound(ref)
        return info

    def as_dict(self) -> Dict[str, RefInfo]:
        return dict(self._refs)

    def __len__(self):
        return len(self._refs)

    def __contains__(self, ref):
        return self.get(ref) is not None


class RefStore:
    """
    Keeps the last ref table in Redis so a restarted executor can still
    act on refs from a snapshot taken before the restart.
    """

    def __init__(self, redis_url: str, key: str):
        self.key = key
        self.redis = aioredis.from_url(redis_url, decode_responses=True)

    async def save(self, refs: Dict[str, RefInfo]):
        payload = json.dumps({ref_id: info.to_wire() for ref_id, info in refs.items()})
        await self.redis.set(self.key, payload)

    async def load(self) -> Dict[str, RefInfo]:
        payload = await self.redis.get(self.key)
        if not payload:
            return {}
        return {ref_id: RefInfo.model_validate(data) for ref_id, data in json.loads(payload).items()}

    async def close(self):
        await self.redis.close()
