"""
Configuration for the relay daemon and the executor agent.

Everything comes from environment variables so the daemon, the agent and
the CLI can be pointed at each other without a config file.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

# === Relay ===
RELAY_HOST = os.environ.get("TABRELAY_HOST", "localhost")
RELAY_PORT = int(os.environ.get("TABRELAY_PORT", 19824))
RELAY_PREFIX = os.environ.get("TABRELAY_PREFIX", "tabrelay")

COMMAND_TIMEOUT = float(os.environ.get("TABRELAY_COMMAND_TIMEOUT", 30))    # seconds
HEARTBEAT_INTERVAL = float(os.environ.get("TABRELAY_HEARTBEAT_INTERVAL", 15))

# === Push transport ===
RECONNECT_DELAY = float(os.environ.get("TABRELAY_RECONNECT_DELAY", 3))     # doubled per attempt
MAX_RECONNECT_ATTEMPTS = int(os.environ.get("TABRELAY_MAX_RECONNECT_ATTEMPTS", 5))
KEEPALIVE_INTERVAL = float(os.environ.get("TABRELAY_KEEPALIVE_INTERVAL", 24))

# === Browser ===
CDP_HOST = os.environ.get("CDP_HOST", "127.0.0.1")
CDP_PORT = int(os.environ.get("CDP_PORT", 9222))
MAX_IMAGE_DIM = int(os.environ.get("MAX_IMAGE_DIM", 1800))
TAB_LOAD_TIMEOUT = float(os.environ.get("TABRELAY_TAB_LOAD_TIMEOUT", 30))
WAIT_ELEMENT_TIMEOUT = float(os.environ.get("TABRELAY_WAIT_ELEMENT_TIMEOUT", 10))
WAIT_ELEMENT_INTERVAL = float(os.environ.get("TABRELAY_WAIT_ELEMENT_INTERVAL", 0.2))

# Empty = ref persistence disabled
REDIS_URL = os.environ.get("REDIS_URL", "")

LOG_LEVEL = os.environ.get("TABRELAY_LOG_LEVEL", "INFO")
LOG_FORMAT = '%(asctime)s [RELAY] %(levelname)s: %(message)s'

DOM_TREE_SCRIPT = str(Path(__file__).parent / "assets" / "build_dom_tree.js")


def relay_base_url(host=None, port=None):
    return f"http://{host or RELAY_HOST}:{port or RELAY_PORT}"


@dataclass
class RelayConfig:
    host: str = RELAY_HOST
    port: int = RELAY_PORT
    command_timeout: float = COMMAND_TIMEOUT
    heartbeat_interval: float = HEARTBEAT_INTERVAL


@dataclass
class AgentConfig:
    relay_url: str = field(default_factory=relay_base_url)
    reconnect_delay: float = RECONNECT_DELAY
    max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS
    keepalive_interval: float = KEEPALIVE_INTERVAL
    cdp_host: str = CDP_HOST
    cdp_port: int = CDP_PORT
    redis_url: str = REDIS_URL
    ref_key: str = f"{RELAY_PREFIX}:refs"
    max_image_dim: int = MAX_IMAGE_DIM
    tab_load_timeout: float = TAB_LOAD_TIMEOUT
    wait_element_timeout: float = WAIT_ELEMENT_TIMEOUT
    wait_element_interval: float = WAIT_ELEMENT_INTERVAL
    dom_tree_script: str = DOM_TREE_SCRIPT
