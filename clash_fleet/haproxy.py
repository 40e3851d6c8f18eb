from __future__ import annotations

import logging
from dataclasses import asdict
from pathlib import Path
from typing import Sequence

from .config import (
    DEFAULT_BALANCE,
    DEFAULT_LB_HOST,
    DEFAULT_LB_PORT,
    HAPROXY_CONFIG_NAME,
)
from .errors import MaterializationError
from .rendering import render_template
from .types import LoadBalancerConfig

LOGGER = logging.getLogger("ClashFleet.HAProxy")

TRANSPORT_MODES = {"socks5": "tcp", "http": "http"}
TEMPLATE_NAME = "haproxy.cfg.j2"


def build_load_balancer_config(
    mode: str,
    ports: Sequence[int],
    *,
    bind_host: str = DEFAULT_LB_HOST,
    bind_port: int = DEFAULT_LB_PORT,
    balance: str = DEFAULT_BALANCE,
) -> LoadBalancerConfig:
    """One backend per instance port, in instance order."""

    try:
        transport = TRANSPORT_MODES[mode]
    except KeyError:
        raise ValueError(f"Unsupported listen mode '{mode}'.") from None
    if not ports:
        raise ValueError("Refusing to build a load balancer with no backends.")
    if bind_port in ports:
        raise ValueError(
            f"Load balancer port {bind_port} collides with an instance port."
        )
    return LoadBalancerConfig(
        mode=transport,
        backends=tuple(ports),
        bind_host=bind_host,
        bind_port=bind_port,
        balance=balance,
    )


def render_haproxy_config(config: LoadBalancerConfig) -> str:
    return render_template(TEMPLATE_NAME, **asdict(config))


def write_haproxy_config(config: LoadBalancerConfig, root: Path) -> Path:
    path = root / HAPROXY_CONFIG_NAME
    try:
        root.mkdir(parents=True, exist_ok=True)
        path.write_text(render_haproxy_config(config), encoding="utf-8")
    except OSError as exc:
        raise MaterializationError(root, str(exc)) from exc
    LOGGER.info(
        "Wrote HAProxy config (%s mode, %s backend(s), bind %s:%s) to %s",
        config.mode,
        len(config.backends),
        config.bind_host,
        config.bind_port,
        path,
    )
    return path
