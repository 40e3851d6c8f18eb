from __future__ import annotations

import logging
import os
import signal
import subprocess
from pathlib import Path
from typing import Callable, List, Sequence

from .config import (
    HAPROXY_LOG_NAME,
    INSTANCE_DIR_PREFIX,
    LAUNCH_SCRIPT_NAME,
    PID_FILE_NAME,
)
from .errors import LifecycleError, MaterializationError
from .rendering import render_template
from .types import (
    FleetLaunchResult,
    FleetPlan,
    LaunchStatus,
    LifecycleState,
    SpawnResult,
    TerminateResult,
)

LOGGER = logging.getLogger("ClashFleet.Lifecycle")

SpawnFunc = Callable[[str, Sequence[str], Path, Path], int]
TerminateFunc = Callable[[int], None]


def spawn_process(binary: str, args: Sequence[str], cwd: Path, stdout_path: Path) -> int:
    """Start `binary` detached from this process, output going to `stdout_path`."""

    with stdout_path.open("wb") as sink:
        process = subprocess.Popen(
            [binary, *args],
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            stdout=sink,
            stderr=subprocess.STDOUT,
            env=os.environ.copy(),
            start_new_session=True,
        )
    # The child is detached and never waited on; mark the handle as settled.
    process.returncode = 0
    return process.pid


def terminate_process(pid: int) -> None:
    os.kill(pid, signal.SIGTERM)


class PidFile:
    """Newline-delimited pids of the most recently launched fleet."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def read(self) -> List[int]:
        if not self.path.exists():
            return []
        pids: List[int] = []
        text = self.path.read_text(encoding="utf-8", errors="replace")
        for line in text.splitlines():
            entry = line.strip()
            if not entry:
                continue
            try:
                pid = int(entry)
            except ValueError:
                LOGGER.warning("Ignoring malformed pid entry %r in %s", entry, self.path)
                continue
            # 0 and negative values address process groups, not a process.
            if pid <= 0:
                LOGGER.warning("Ignoring non-positive pid entry %r in %s", entry, self.path)
                continue
            pids.append(pid)
        return pids

    def append(self, pid: int) -> None:
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(f"{pid}\n")

    def remove(self) -> None:
        self.path.unlink(missing_ok=True)


class ProcessLifecycleManager:
    """Replace the previously launched fleet with the one described by a plan.

    Lifecycle: IDLE -> GENERATED -> DRY_RUN_DONE, or
    IDLE -> GENERATED -> LAUNCHING -> LAUNCHED | LAUNCH_FAILED.
    Spawned processes are not supervised once started.
    """

    def __init__(
        self,
        root: Path,
        *,
        spawn_fn: SpawnFunc = spawn_process,
        terminate_fn: TerminateFunc = terminate_process,
    ) -> None:
        self._root = root
        self._pid_file = PidFile(root / PID_FILE_NAME)
        self._spawn = spawn_fn
        self._terminate = terminate_fn
        self._state = LifecycleState.IDLE
        self._plan: FleetPlan | None = None

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def pid_file(self) -> PidFile:
        return self._pid_file

    @property
    def launch_script_path(self) -> Path:
        return self._root / LAUNCH_SCRIPT_NAME

    def prepare(self, plan: FleetPlan) -> Path:
        """Check the generated files and write the equivalent launch script."""

        self._require(LifecycleState.IDLE)
        missing = [
            str(path)
            for path in (
                *(instance.config_path for instance in plan.instances),
                plan.haproxy_config_path,
            )
            if not path.is_file()
        ]
        if missing:
            raise LifecycleError(f"Generated files are missing: {', '.join(missing)}")

        script = render_template(
            "launch.sh.j2",
            pid_file=self._pid_file.path,
            instances=plan.instances,
            clash_bin=plan.clash_bin,
            haproxy_bin=plan.haproxy_bin,
            haproxy_config=plan.haproxy_config_path,
            haproxy_log=self._root / HAPROXY_LOG_NAME,
        )
        path = self.launch_script_path
        try:
            path.write_text(script, encoding="utf-8")
            path.chmod(0o755)
        except OSError as exc:
            raise MaterializationError(self._root, str(exc)) from exc

        self._plan = plan
        self._state = LifecycleState.GENERATED
        LOGGER.info("Fleet of %s instance(s) generated under %s", len(plan.instances), self._root)
        return path

    def finish_dry_run(self) -> None:
        self._require(LifecycleState.GENERATED)
        self._state = LifecycleState.DRY_RUN_DONE
        LOGGER.info("Dry run: no process started. Launch script at %s", self.launch_script_path)

    def launch(self) -> FleetLaunchResult:
        """Terminate the tracked fleet, then start every instance and HAProxy."""

        self._require(LifecycleState.GENERATED)
        plan = self._plan
        if plan is None:
            raise LifecycleError("No fleet plan has been prepared.")
        self._state = LifecycleState.LAUNCHING

        try:
            terminated = self._terminate_previous()
        except OSError as exc:
            LOGGER.error("Could not clear the previous fleet via %s: %s", self._pid_file.path, exc)
            self._state = LifecycleState.LAUNCH_FAILED
            return FleetLaunchResult(status=LaunchStatus.ABORTED, error=str(exc))

        spawned: List[SpawnResult] = []
        for instance in plan.instances:
            spawned.append(
                self._spawn_tracked(
                    f"{INSTANCE_DIR_PREFIX}{instance.index}",
                    plan.clash_bin,
                    ["-d", str(instance.directory)],
                    instance.directory,
                    instance.log_path,
                )
            )
        spawned.append(
            self._spawn_tracked(
                "haproxy",
                plan.haproxy_bin,
                ["-f", str(plan.haproxy_config_path)],
                self._root,
                self._root / HAPROXY_LOG_NAME,
            )
        )

        started = sum(1 for result in spawned if result.ok)
        if started == len(spawned):
            status = LaunchStatus.LAUNCHED
        elif started:
            status = LaunchStatus.PARTIAL
        else:
            status = LaunchStatus.ABORTED

        self._state = (
            LifecycleState.LAUNCH_FAILED
            if status is LaunchStatus.ABORTED
            else LifecycleState.LAUNCHED
        )
        result = FleetLaunchResult(status=status, terminated=terminated, spawned=spawned)
        if status is LaunchStatus.LAUNCHED:
            LOGGER.info("Launched %s process(es): pids %s", started, result.pids)
        else:
            LOGGER.error(
                "Launch %s: %s of %s process(es) started; failed: %s",
                status.value,
                started,
                len(spawned),
                [failure.name for failure in result.failures],
            )
        return result

    def _terminate_previous(self) -> List[TerminateResult]:
        results: List[TerminateResult] = []
        for pid in self._pid_file.read():
            try:
                self._terminate(pid)
            except ProcessLookupError:
                LOGGER.debug("Tracked pid %s is no longer running.", pid)
                results.append(TerminateResult(pid=pid, error="no such process"))
            except OSError as exc:
                LOGGER.warning("Failed to terminate tracked pid %s: %s", pid, exc)
                results.append(TerminateResult(pid=pid, error=str(exc)))
            else:
                LOGGER.info("Sent SIGTERM to previously launched pid %s.", pid)
                results.append(TerminateResult(pid=pid))
        self._pid_file.remove()
        return results

    def _spawn_tracked(
        self,
        name: str,
        binary: str,
        args: Sequence[str],
        cwd: Path,
        log_path: Path,
    ) -> SpawnResult:
        argv = (binary, *args)
        try:
            pid = self._spawn(binary, args, cwd, log_path)
        except (OSError, subprocess.SubprocessError) as exc:
            LOGGER.error("Failed to start %s (%s): %s", name, " ".join(argv), exc)
            return SpawnResult(name=name, argv=argv, error=str(exc))

        try:
            self._pid_file.append(pid)
        except OSError as exc:
            LOGGER.error("Started %s (pid=%s) but could not record it: %s", name, pid, exc)
        else:
            LOGGER.info("Started %s (pid=%s); output in %s", name, pid, log_path)
        return SpawnResult(name=name, argv=argv, pid=pid)

    def _require(self, expected: LifecycleState) -> None:
        if self._state is not expected:
            raise LifecycleError(
                f"Expected lifecycle state '{expected.value}', found '{self._state.value}'."
            )
