from __future__ import annotations

import tempfile
from dataclasses import dataclass
from pathlib import Path

DEFAULT_MODE = "socks5"
DEFAULT_NAME_PREFIX = ""
DEFAULT_ROOT = Path(tempfile.gettempdir()) / "clash-load-balance-launcher"
DEFAULT_CLASH_BIN = "clash"
DEFAULT_HAPROXY_BIN = "haproxy"
DEFAULT_LB_HOST = "0.0.0.0"
DEFAULT_LB_PORT = 1080
DEFAULT_BALANCE = "first"
DEFAULT_LOG_LEVEL = "INFO"

# Policy constants for the per-instance fallback group.
GROUP_NAME = "defaults"
HEALTH_CHECK_URL = "http://www.gstatic.com/generate_204"
HEALTH_CHECK_INTERVAL = 300

LISTEN_MODES = ("socks5", "http")

INSTANCE_DIR_PREFIX = "clash_"
INSTANCE_CONFIG_NAME = "config.yml"
INSTANCE_LOG_NAME = "output.log"
HAPROXY_CONFIG_NAME = "haproxy.cfg"
HAPROXY_LOG_NAME = "haproxy.log"
LAUNCH_SCRIPT_NAME = "launch.sh"
PID_FILE_NAME = "pids.txt"


@dataclass(frozen=True)
class FleetCLIArgs:
    """Typed representation of CLI arguments used to build and launch a fleet."""

    conf: Path
    base_port: int
    name_prefix: str = DEFAULT_NAME_PREFIX
    mode: str = DEFAULT_MODE
    dry_run: bool = False
    root: Path = DEFAULT_ROOT
    clash_bin: str = DEFAULT_CLASH_BIN
    haproxy_bin: str = DEFAULT_HAPROXY_BIN
    lb_host: str = DEFAULT_LB_HOST
    lb_port: int = DEFAULT_LB_PORT
    balance: str = DEFAULT_BALANCE
    log_level: str = DEFAULT_LOG_LEVEL
