from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Sequence

from .config import (
    DEFAULT_BALANCE,
    DEFAULT_CLASH_BIN,
    DEFAULT_HAPROXY_BIN,
    DEFAULT_LB_HOST,
    DEFAULT_LB_PORT,
    DEFAULT_LOG_LEVEL,
    DEFAULT_MODE,
    DEFAULT_NAME_PREFIX,
    DEFAULT_ROOT,
    GROUP_NAME,
    LISTEN_MODES,
    FleetCLIArgs,
)
from .errors import FleetError
from .haproxy import build_load_balancer_config, write_haproxy_config
from .lifecycle import ProcessLifecycleManager
from .materializer import assign_ports, materialize_instances
from .partition import derive_groups, rewrite_rules, select_proxies
from .schema import load_base_config
from .types import FleetLaunchResult, FleetPlan

LOGGER = logging.getLogger("ClashFleet")


def parse_args(argv: Sequence[str] | None = None) -> FleetCLIArgs:
    parser = argparse.ArgumentParser(
        description=(
            "Split a Clash config into one single-proxy Clash instance per proxy "
            "and put HAProxy in front of them."
        )
    )
    parser.add_argument(
        "-c",
        "--conf",
        type=Path,
        required=True,
        help="Base Clash config file.",
    )
    parser.add_argument(
        "-p",
        "--port",
        type=int,
        required=True,
        help="Listen port of the first Clash instance; later instances count up from it.",
    )
    parser.add_argument(
        "-n",
        "--name",
        default=DEFAULT_NAME_PREFIX,
        help="Only launch proxies whose name starts with this prefix.",
    )
    parser.add_argument(
        "-m",
        "--mode",
        choices=LISTEN_MODES,
        default=DEFAULT_MODE,
        help="Listen mode of the instances and the load balancer.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Generate every file but do not start any process.",
    )
    parser.add_argument(
        "--root",
        type=Path,
        default=Path(os.environ.get("CLASH_FLEET_ROOT", DEFAULT_ROOT)),
        help=(
            "Directory for generated configs, logs and the pid file. "
            "Defaults to CLASH_FLEET_ROOT or a folder in the system temp dir."
        ),
    )
    parser.add_argument(
        "--clash-bin",
        default=os.environ.get("CLASH_BIN", DEFAULT_CLASH_BIN),
        help="Clash executable. Defaults to CLASH_BIN or 'clash'.",
    )
    parser.add_argument(
        "--haproxy-bin",
        default=os.environ.get("HAPROXY_BIN", DEFAULT_HAPROXY_BIN),
        help="HAProxy executable. Defaults to HAPROXY_BIN or 'haproxy'.",
    )
    parser.add_argument(
        "--lb-host",
        default=DEFAULT_LB_HOST,
        help="Address HAProxy binds to.",
    )
    parser.add_argument(
        "--lb-port",
        type=int,
        default=DEFAULT_LB_PORT,
        help="Port HAProxy listens on.",
    )
    parser.add_argument(
        "--balance",
        default=DEFAULT_BALANCE,
        help="HAProxy balance algorithm ('first' fails over in instance order).",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("CLASH_FLEET_LOG_LEVEL", DEFAULT_LOG_LEVEL),
        help="Logging level. Defaults to CLASH_FLEET_LOG_LEVEL or INFO.",
    )

    args = parser.parse_args(argv)
    return FleetCLIArgs(
        conf=args.conf.expanduser().resolve(),
        base_port=args.port,
        name_prefix=args.name,
        mode=args.mode,
        dry_run=args.dry_run,
        root=args.root.expanduser().resolve(),
        clash_bin=args.clash_bin,
        haproxy_bin=args.haproxy_bin,
        lb_host=args.lb_host,
        lb_port=args.lb_port,
        balance=args.balance,
        log_level=args.log_level.upper(),
    )


def generate_fleet(args: FleetCLIArgs) -> FleetPlan:
    """Write every instance config and the HAProxy config under `args.root`."""

    base = load_base_config(args.conf)
    selected = select_proxies(base.proxies, args.name_prefix)
    groups = derive_groups(selected, GROUP_NAME)
    rules = rewrite_rules(base.rules, GROUP_NAME)

    # Validate ports and the front end before anything touches the disk.
    ports = assign_ports(len(groups), args.base_port)
    lb_config = build_load_balancer_config(
        args.mode,
        ports,
        bind_host=args.lb_host,
        bind_port=args.lb_port,
        balance=args.balance,
    )
    instances = materialize_instances(
        base,
        rules,
        groups,
        ports=ports,
        mode=args.mode,
        root=args.root,
    )
    write_haproxy_config(lb_config, args.root)

    return FleetPlan(
        root=args.root,
        instances=instances,
        clash_bin=args.clash_bin,
        haproxy_bin=args.haproxy_bin,
    )


def run(
    args: FleetCLIArgs, manager: ProcessLifecycleManager | None = None
) -> FleetLaunchResult | None:
    """Generate the fleet and launch it unless this is a dry run."""

    plan = generate_fleet(args)
    manager = manager or ProcessLifecycleManager(args.root)
    manager.prepare(plan)
    if args.dry_run:
        manager.finish_dry_run()
        return None
    return manager.launch()


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level, logging.INFO),
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )
    LOGGER.info("Clash config: %s", args.conf)
    LOGGER.info("Working directory: %s", args.root)
    LOGGER.info(
        "Starting port %s, name prefix %r, mode %s, dry run %s",
        args.base_port,
        args.name_prefix,
        args.mode,
        args.dry_run,
    )

    try:
        result = run(args)
    except (FleetError, ValueError) as exc:
        LOGGER.error("%s", exc)
        return 1

    if result is None:
        LOGGER.info("Done.")
    else:
        # Launch failures are reported, not turned into an exit status.
        LOGGER.info("Launch finished with status '%s'.", result.status.value)
    return 0


if __name__ == "__main__":
    sys.exit(main())
