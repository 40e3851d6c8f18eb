from __future__ import annotations

import copy
import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import List, Sequence

import yaml

from .config import INSTANCE_DIR_PREFIX
from .errors import MaterializationError
from .schema import ClashConfig, dump_document
from .types import InstanceConfig, ProxyGroup

LOGGER = logging.getLogger("ClashFleet.Materializer")

MODE_PORT_KEYS = {"socks5": "socks-port", "http": "port"}
MAX_PORT = 65535

# Shared listeners and the controller would collide between instances.
_NEUTRALIZED_FIELDS = {
    "external-controller": "",
    "redir-port": 0,
    "tproxy-port": 0,
    "mixed-port": 0,
    "socks-port": 0,
    "port": 0,
    "allow-lan": False,
}


def assign_ports(count: int, base_port: int) -> list[int]:
    if count < 0:
        raise ValueError("Instance count must be non-negative.")
    if base_port <= 0:
        raise ValueError("Base port must be a positive integer.")
    if base_port + count - 1 > MAX_PORT:
        raise ValueError(
            f"Cannot assign {count} port(s) starting at {base_port}; "
            f"the range would exceed {MAX_PORT}."
        )
    return [base_port + index for index in range(count)]


def instance_directory(root: Path, index: int) -> Path:
    return root / f"{INSTANCE_DIR_PREFIX}{index}"


def derive_instance(
    base: ClashConfig,
    rules: Sequence[str],
    group: ProxyGroup,
    *,
    index: int,
    port: int,
    mode: str,
    root: Path,
) -> InstanceConfig:
    """Clone `base` into the config for a single instance. Inputs are not modified."""

    try:
        port_key = MODE_PORT_KEYS[mode]
    except KeyError:
        raise ValueError(f"Unsupported listen mode '{mode}'.") from None

    document = copy.deepcopy(base.to_document())
    document.update(_NEUTRALIZED_FIELDS)
    document[port_key] = port

    proxies_key = base.collection_key("proxies")
    document[proxies_key] = [
        proxy for proxy in document[proxies_key] if proxy["name"] in group.proxies
    ]
    document[base.collection_key("proxy_groups")] = [group.to_document()]
    document[base.collection_key("rules")] = list(rules)

    return InstanceConfig(
        index=index,
        port=port,
        directory=instance_directory(root, index),
        group=group,
        document=document,
    )


def write_instance(instance: InstanceConfig) -> Path:
    try:
        instance.directory.mkdir(parents=True, exist_ok=True)
        instance.config_path.write_text(
            dump_document(instance.document), encoding="utf-8"
        )
    except (OSError, yaml.YAMLError) as exc:
        raise MaterializationError(instance.directory, str(exc)) from exc
    LOGGER.debug(
        "Wrote instance %s (port %s, proxy %s) to %s",
        instance.index,
        instance.port,
        ", ".join(instance.group.proxies),
        instance.config_path,
    )
    return instance.config_path


def materialize_instances(
    base: ClashConfig,
    rules: Sequence[str],
    groups: Sequence[ProxyGroup],
    *,
    ports: Sequence[int],
    mode: str,
    root: Path,
    max_workers: int | None = None,
) -> List[InstanceConfig]:
    """Derive one config per group and write each into its own directory.

    `ports` comes from `assign_ports` and pairs with `groups` by position.

    Any write failure aborts the whole batch with `MaterializationError`; a
    partially written fleet must never be launched.
    """

    if not groups:
        raise ValueError("No proxy groups to materialize.")
    if len(ports) != len(groups):
        raise ValueError(
            f"Got {len(ports)} port(s) for {len(groups)} proxy group(s)."
        )
    instances = [
        derive_instance(
            base, rules, group, index=index, port=port, mode=mode, root=root
        )
        for index, (group, port) in enumerate(zip(groups, ports))
    ]

    try:
        root.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise MaterializationError(root, str(exc)) from exc

    with ThreadPoolExecutor(
        max_workers=max_workers, thread_name_prefix="materialize"
    ) as pool:
        futures = [pool.submit(write_instance, instance) for instance in instances]
        for future in futures:
            future.result()

    LOGGER.info(
        "Materialized %s instance config(s) under %s on ports %s-%s",
        len(instances),
        root,
        ports[0],
        ports[-1],
    )
    return instances
