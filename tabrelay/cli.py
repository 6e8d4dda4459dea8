"""
tabrelay - drive a Chrome tab from the shell through the relay daemon.

Processes:
    tabrelay daemon                 start the relay (HTTP, port 19824)
    tabrelay agent                  start the executor next to Chrome (CDP, port 9222)
    tabrelay status | stop          relay status / shutdown

Commands (sent through the relay):
    tabrelay open <url> [--tab ID|current]
    tabrelay snapshot [-i]
    tabrelay click|hover|check|uncheck <ref>
    tabrelay fill|type <ref> <text>
    tabrelay select <ref> <value>
    tabrelay get url|title | get text|value <ref>
    tabrelay screenshot [path]
    tabrelay wait <ms> | wait @<ref>
    tabrelay press [Modifier+...]<key>
    tabrelay scroll up|down|left|right [pixels]
    tabrelay back | forward | refresh | close
    tabrelay eval <script>
    tabrelay tab list | tab new [url] | tab select <index>|--id ID | tab close [<index>|--id ID]
    tabrelay frame <selector> | frame-main
    tabrelay dialog accept|dismiss [prompt text]
    tabrelay network requests|clear [--filter TEXT]
    tabrelay console get|clear | errors get|clear
    tabrelay trace start|stop|status

Add --json to print the raw Result.
"""

import argparse
import asyncio
import json
import logging
import sys

import uvicorn

from .agent import run_agent
from .client import RelayClient
from .config import (LOG_FORMAT, LOG_LEVEL, AgentConfig, RelayConfig, relay_base_url,
                     RELAY_HOST, RELAY_PORT, COMMAND_TIMEOUT)
from .errors import TabRelayError, Unavailable
from .protocol import Command, Result
from .server import create_app

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1                # command failed
EXIT_RELAY_DOWN = 100         # relay daemon not reachable


# =============================================================================
# Argument parsing
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tabrelay", description="Browser command relay")
    parser.add_argument("--host", default=RELAY_HOST, help="Relay host")
    parser.add_argument("--port", type=int, default=RELAY_PORT, help="Relay port")
    parser.add_argument("--timeout", type=float, default=COMMAND_TIMEOUT, help="Command timeout (seconds)")
    parser.add_argument("--json", action="store_true", help="Print the raw Result as JSON")
    sub = parser.add_subparsers(dest="cmd", required=True)

    # --- processes ---
    sub.add_parser("daemon", help="Run the relay daemon")
    agent = sub.add_parser("agent", help="Run the executor agent")
    agent.add_argument("--cdp-host", default=None)
    agent.add_argument("--cdp-port", type=int, default=None)
    sub.add_parser("status", help="Relay status")
    sub.add_parser("stop", help="Stop the relay daemon")

    # --- page ---
    p = sub.add_parser("open", help="Open a URL")
    p.add_argument("url")
    p.add_argument("--tab", dest="tab_id", default=None, help="Navigate this tab (or 'current') instead")
    p = sub.add_parser("snapshot", help="Accessibility snapshot")
    p.add_argument("-i", "--interactive", action="store_true")
    for name in ("click", "hover", "check", "uncheck"):
        sub.add_parser(name).add_argument("ref")
    for name in ("fill", "type"):
        p = sub.add_parser(name)
        p.add_argument("ref")
        p.add_argument("text")
    p = sub.add_parser("select")
    p.add_argument("ref")
    p.add_argument("value")
    p = sub.add_parser("get")
    p.add_argument("attribute", choices=["url", "title", "text", "value"])
    p.add_argument("ref", nargs="?")
    p = sub.add_parser("screenshot")
    p.add_argument("path", nargs="?")
    p = sub.add_parser("wait", help="wait <ms> or wait @<ref>")
    p.add_argument("target")
    p = sub.add_parser("press", help="e.g. Enter, Control+a")
    p.add_argument("key")
    p = sub.add_parser("scroll")
    p.add_argument("direction", choices=["up", "down", "left", "right"])
    p.add_argument("pixels", type=int, nargs="?")
    for name in ("back", "forward", "refresh", "close", "frame-main"):
        sub.add_parser(name)
    p = sub.add_parser("eval")
    p.add_argument("script")

    # --- tabs / frames / dialogs ---
    p = sub.add_parser("tab")
    p.add_argument("tab_cmd", choices=["list", "new", "select", "close"])
    p.add_argument("arg", nargs="?", help="URL for new, index for select/close")
    p.add_argument("--id", dest="tab_id", default=None)
    p = sub.add_parser("frame")
    p.add_argument("selector")
    p = sub.add_parser("dialog")
    p.add_argument("response", choices=["accept", "dismiss"])
    p.add_argument("prompt_text", nargs="?")

    # --- debug / trace ---
    p = sub.add_parser("network")
    p.add_argument("sub", choices=["requests", "clear"])
    p.add_argument("--filter", default=None)
    for name in ("console", "errors"):
        sub.add_parser(name).add_argument("sub", choices=["get", "clear"])
    p = sub.add_parser("trace")
    p.add_argument("sub", choices=["start", "stop", "status"])

    return parser


def parse_key(combo: str):
    """'Control+Shift+a' -> ('a', ['Control', 'Shift'])"""
    if combo == "+":
        return combo, []
    if combo.endswith("++"):
        return "+", [p for p in combo[:-2].split("+") if p]
    *modifiers, key = combo.split("+")
    return key, modifiers


def build_command(args) -> Command:
    """Translate parsed CLI arguments into a relay Command."""
    cmd = args.cmd
    if cmd == "open":
        return Command(action="open", url=args.url, tab_id=args.tab_id)
    if cmd == "snapshot":
        return Command(action="snapshot", interactive=args.interactive)
    if cmd in ("click", "hover", "check", "uncheck"):
        return Command(action=cmd, ref=args.ref)
    if cmd in ("fill", "type"):
        return Command(action=cmd, ref=args.ref, text=args.text)
    if cmd == "select":
        return Command(action="select", ref=args.ref, value=args.value)
    if cmd == "get":
        return Command(action="get", attribute=args.attribute, ref=args.ref)
    if cmd == "screenshot":
        return Command(action="screenshot", path=args.path)
    if cmd == "wait":
        if args.target.startswith("@"):
            return Command(action="wait", wait_type="element", ref=args.target)
        try:
            return Command(action="wait", wait_type="time", ms=int(args.target))
        except ValueError:
            raise SystemExit(f"wait: expected milliseconds or @ref, got {args.target!r}")
    if cmd == "press":
        key, modifiers = parse_key(args.key)
        return Command(action="press", key=key, modifiers=modifiers or None)
    if cmd == "scroll":
        return Command(action="scroll", direction=args.direction, pixels=args.pixels)
    if cmd in ("back", "forward", "refresh", "close", "eval"):
        return Command(action=cmd, script=getattr(args, "script", None))
    if cmd == "frame-main":
        return Command(action="frame_main")
    if cmd == "tab":
        action = f"tab_{args.tab_cmd}"
        if args.tab_cmd == "new":
            return Command(action=action, url=args.arg)
        if args.tab_cmd in ("select", "close"):
            index = int(args.arg) if args.arg is not None else None
            return Command(action=action, index=index, tab_id=args.tab_id)
        return Command(action=action)
    if cmd == "frame":
        return Command(action="frame", selector=args.selector)
    if cmd == "dialog":
        return Command(action="dialog", dialog_response=args.response, prompt_text=args.prompt_text)
    if cmd == "network":
        return Command(action="network", network_command=args.sub, filter=args.filter)
    if cmd == "console":
        return Command(action="console", console_command=args.sub)
    if cmd == "errors":
        return Command(action="errors", errors_command=args.sub)
    if cmd == "trace":
        return Command(action="trace", trace_command=args.sub)
    raise SystemExit(f"Unknown command: {cmd}")


# =============================================================================
# Output
# =============================================================================

def format_result(action: str, result: Result) -> str:
    if not result.success:
        return f"✗ {result.error}"
    data = result.data or {}

    if action == "snapshot":
        return data["snapshotData"]["snapshot"]
    if action == "screenshot":
        if "screenshotPath" in data:
            return f"✓ Screenshot saved: {data['screenshotPath']}"
        return data["dataUrl"]
    if action == "get":
        return str(data.get("value", ""))
    if action == "eval":
        return json.dumps(data.get("result"), ensure_ascii=False)
    if action == "tab_list":
        lines = []
        for tab in data["tabs"]:
            marker = "*" if tab["index"] == data["activeIndex"] else " "
            lines.append(f"{marker} [{tab['index']}] {tab['title'] or '(untitled)'}  {tab['url']}")
        return "\n".join(lines) or "No tabs"
    if action in ("open", "back", "forward", "refresh", "tab_new", "tab_select", "tab_close", "close"):
        return f"✓ {data.get('title') or '(untitled)'}  {data.get('url', '')}"
    if action in ("click", "hover", "fill", "type", "check", "uncheck", "select"):
        name = f' "{data["name"]}"' if data.get("name") else ""
        return f"✓ {action} {data.get('role', '')}{name}"
    return json.dumps(data, indent=2, ensure_ascii=False)


# =============================================================================
# Entry points
# =============================================================================

def run_daemon(config: RelayConfig):
    app = create_app(config)
    server = uvicorn.Server(uvicorn.Config(app, host=config.host, port=config.port,
                                           log_level=LOG_LEVEL.lower()))
    app.state.server = server
    server.run()


def main(argv=None) -> int:
    logging.basicConfig(level=getattr(logging, LOG_LEVEL.upper(), logging.INFO), format=LOG_FORMAT)
    args = build_parser().parse_args(argv)
    base_url = relay_base_url(args.host, args.port)

    if args.cmd == "daemon":
        run_daemon(RelayConfig(host=args.host, port=args.port, command_timeout=args.timeout))
        return EXIT_OK

    if args.cmd == "agent":
        config = AgentConfig(relay_url=base_url)
        if args.cdp_host:
            config.cdp_host = args.cdp_host
        if args.cdp_port:
            config.cdp_port = args.cdp_port
        asyncio.run(run_agent(config))
        return EXIT_OK

    with RelayClient(base_url, timeout=args.timeout) as client:
        try:
            if args.cmd == "status":
                status = client.status()
                print(json.dumps(status.to_wire(), indent=2) if args.json else
                      f"✓ Relay running on {base_url}\n"
                      f"  Executor: {'connected' if status.extension_connected else 'not connected'}\n"
                      f"  Pending: {status.pending_requests}\n"
                      f"  Uptime: {status.uptime:.0f}s")
                return EXIT_OK
            if args.cmd == "stop":
                client.shutdown()
                print("✓ Relay stopping")
                return EXIT_OK

            command = build_command(args)
            result = client.send(command)
        except Unavailable as e:
            print(f"✗ {e}", file=sys.stderr)
            return EXIT_RELAY_DOWN
        except TabRelayError as e:
            print(f"✗ {e}", file=sys.stderr)
            return EXIT_ERROR

    print(json.dumps(result.to_wire(), indent=2, ensure_ascii=False) if args.json
          else format_result(command.action, result))
    return EXIT_OK if result.success else EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
