from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .config import (
    HAPROXY_CONFIG_NAME,
    INSTANCE_CONFIG_NAME,
    INSTANCE_LOG_NAME,
)


@dataclass(frozen=True)
class ProxyGroup:
    """Single-member fallback group handed to one Clash instance."""

    name: str
    url: str
    interval: int
    proxies: Tuple[str, ...]
    type: str = "fallback"

    def to_document(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "url": self.url,
            "interval": self.interval,
            "proxies": list(self.proxies),
        }


@dataclass(frozen=True)
class InstanceConfig:
    """Derived Clash configuration for one instance and where it lives on disk."""

    index: int
    port: int
    directory: Path
    group: ProxyGroup
    document: Dict[str, Any]

    @property
    def config_path(self) -> Path:
        return self.directory / INSTANCE_CONFIG_NAME

    @property
    def log_path(self) -> Path:
        return self.directory / INSTANCE_LOG_NAME


@dataclass(frozen=True)
class LoadBalancerConfig:
    """Template inputs for the HAProxy front end."""

    mode: str
    backends: Tuple[int, ...]
    bind_host: str
    bind_port: int
    balance: str


@dataclass(frozen=True)
class FleetPlan:
    """Everything the lifecycle manager needs to start a fleet."""

    root: Path
    instances: Sequence[InstanceConfig]
    clash_bin: str
    haproxy_bin: str

    @property
    def haproxy_config_path(self) -> Path:
        return self.root / HAPROXY_CONFIG_NAME


@dataclass(frozen=True)
class SpawnResult:
    """Outcome of starting one process."""

    name: str
    argv: Tuple[str, ...]
    pid: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.pid is not None


@dataclass(frozen=True)
class TerminateResult:
    """Outcome of signalling one previously tracked process."""

    pid: int
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class LaunchStatus(str, Enum):
    LAUNCHED = "launched"
    PARTIAL = "partial"
    ABORTED = "aborted"


class LifecycleState(str, Enum):
    IDLE = "idle"
    GENERATED = "generated"
    DRY_RUN_DONE = "dry_run_done"
    LAUNCHING = "launching"
    LAUNCHED = "launched"
    LAUNCH_FAILED = "launch_failed"


@dataclass(frozen=True)
class FleetLaunchResult:
    """Aggregated outcome of one launch procedure."""

    status: LaunchStatus
    terminated: List[TerminateResult] = field(default_factory=list)
    spawned: List[SpawnResult] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def pids(self) -> List[int]:
        return [result.pid for result in self.spawned if result.pid is not None]

    @property
    def failures(self) -> List[SpawnResult]:
        return [result for result in self.spawned if not result.ok]
