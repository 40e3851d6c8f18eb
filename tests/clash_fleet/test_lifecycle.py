from __future__ import annotations

import os
from pathlib import Path
from typing import List, Sequence, Tuple

import pytest

from clash_fleet import lifecycle
from clash_fleet.errors import LifecycleError
from clash_fleet.haproxy import build_load_balancer_config, write_haproxy_config
from clash_fleet.lifecycle import PidFile, ProcessLifecycleManager
from clash_fleet.materializer import materialize_instances
from clash_fleet.partition import derive_groups, rewrite_rules
from clash_fleet.schema import parse_config
from clash_fleet.types import FleetPlan, LaunchStatus, LifecycleState


class FakeSpawner:
    def __init__(self, failing: Sequence[str] = (), first_pid: int = 5000) -> None:
        self.failing = set(failing)
        self.calls: List[Tuple[str, Tuple[str, ...], Path, Path]] = []
        self._next_pid = first_pid

    def __call__(self, binary: str, args: Sequence[str], cwd: Path, stdout_path: Path) -> int:
        self.calls.append((binary, tuple(args), cwd, stdout_path))
        if binary in self.failing:
            raise FileNotFoundError(f"No such file or directory: '{binary}'")
        pid = self._next_pid
        self._next_pid += 1
        return pid


class FakeTerminator:
    def __init__(self, gone: Sequence[int] = ()) -> None:
        self.gone = set(gone)
        self.signalled: List[int] = []

    def __call__(self, pid: int) -> None:
        self.signalled.append(pid)
        if pid in self.gone:
            raise ProcessLookupError(f"No such process: {pid}")


def make_plan(root: Path) -> FleetPlan:
    base = parse_config(
        {
            "proxies": [{"name": "US-1"}, {"name": "US-2"}],
            "rules": ["MATCH,Proxy"],
        }
    )
    instances = materialize_instances(
        base,
        rewrite_rules(base.rules),
        derive_groups(base.proxies),
        ports=[7000, 7001],
        mode="socks5",
        root=root,
    )
    write_haproxy_config(build_load_balancer_config("socks5", [7000, 7001]), root)
    return FleetPlan(root=root, instances=instances, clash_bin="clash", haproxy_bin="haproxy")


def make_manager(
    root: Path, spawner: FakeSpawner, terminator: FakeTerminator | None = None
) -> ProcessLifecycleManager:
    return ProcessLifecycleManager(
        root, spawn_fn=spawner, terminate_fn=terminator or FakeTerminator()
    )


def test_prepare_writes_launch_script(tmp_path: Path) -> None:
    plan = make_plan(tmp_path)
    manager = make_manager(tmp_path, FakeSpawner())

    path = manager.prepare(plan)

    assert manager.state is LifecycleState.GENERATED
    assert path == tmp_path / "launch.sh"
    assert os.access(path, os.X_OK)
    script = path.read_text(encoding="utf-8")
    assert script.startswith("#!/usr/bin/env bash\n")
    assert script.count("clash -d ") == 2
    assert f"haproxy -f {tmp_path / 'haproxy.cfg'}" in script
    assert script.count(f"echo $! >> {tmp_path / 'pids.txt'}") == 3


def test_prepare_requires_generated_files(tmp_path: Path) -> None:
    plan = make_plan(tmp_path)
    (tmp_path / "haproxy.cfg").unlink()
    manager = make_manager(tmp_path, FakeSpawner())

    with pytest.raises(LifecycleError):
        manager.prepare(plan)
    assert manager.state is LifecycleState.IDLE


def test_dry_run_spawns_nothing_and_keeps_pid_file(tmp_path: Path) -> None:
    plan = make_plan(tmp_path)
    pid_file = tmp_path / "pids.txt"
    pid_file.write_text("123\n456\n", encoding="utf-8")
    spawner = FakeSpawner()
    terminator = FakeTerminator()
    manager = make_manager(tmp_path, spawner, terminator)

    manager.prepare(plan)
    manager.finish_dry_run()

    assert manager.state is LifecycleState.DRY_RUN_DONE
    assert spawner.calls == []
    assert terminator.signalled == []
    assert pid_file.read_text(encoding="utf-8") == "123\n456\n"


def test_launch_replaces_previous_fleet(tmp_path: Path) -> None:
    plan = make_plan(tmp_path)
    (tmp_path / "pids.txt").write_text("111\n222\n", encoding="utf-8")
    spawner = FakeSpawner(first_pid=5000)
    terminator = FakeTerminator()
    manager = make_manager(tmp_path, spawner, terminator)
    manager.prepare(plan)

    result = manager.launch()

    assert terminator.signalled == [111, 222]
    assert [r.pid for r in result.terminated] == [111, 222]
    assert result.status is LaunchStatus.LAUNCHED
    assert manager.state is LifecycleState.LAUNCHED
    assert result.pids == [5000, 5001, 5002]
    assert [r.name for r in result.spawned] == ["clash_0", "clash_1", "haproxy"]
    assert spawner.calls == [
        ("clash", ("-d", str(tmp_path / "clash_0")), tmp_path / "clash_0", tmp_path / "clash_0" / "output.log"),
        ("clash", ("-d", str(tmp_path / "clash_1")), tmp_path / "clash_1", tmp_path / "clash_1" / "output.log"),
        ("haproxy", ("-f", str(tmp_path / "haproxy.cfg")), tmp_path, tmp_path / "haproxy.log"),
    ]
    assert PidFile(tmp_path / "pids.txt").read() == [5000, 5001, 5002]


def test_launch_without_previous_pid_file(tmp_path: Path) -> None:
    plan = make_plan(tmp_path)
    terminator = FakeTerminator()
    manager = make_manager(tmp_path, FakeSpawner(), terminator)
    manager.prepare(plan)

    result = manager.launch()

    assert result.terminated == []
    assert terminator.signalled == []
    assert result.status is LaunchStatus.LAUNCHED


def test_launch_records_vanished_processes(tmp_path: Path) -> None:
    plan = make_plan(tmp_path)
    (tmp_path / "pids.txt").write_text("111\n222\n", encoding="utf-8")
    manager = make_manager(tmp_path, FakeSpawner(), FakeTerminator(gone=[111]))
    manager.prepare(plan)

    result = manager.launch()

    assert [(r.pid, r.ok) for r in result.terminated] == [(111, False), (222, True)]
    assert result.status is LaunchStatus.LAUNCHED


def test_partial_launch_when_load_balancer_fails(tmp_path: Path) -> None:
    plan = make_plan(tmp_path)
    manager = make_manager(tmp_path, FakeSpawner(failing=["haproxy"]))
    manager.prepare(plan)

    result = manager.launch()

    assert result.status is LaunchStatus.PARTIAL
    assert manager.state is LifecycleState.LAUNCHED
    assert [failure.name for failure in result.failures] == ["haproxy"]
    assert "haproxy" in (result.failures[0].error or "")
    assert PidFile(tmp_path / "pids.txt").read() == result.pids


def test_aborted_launch_when_nothing_starts(tmp_path: Path) -> None:
    plan = make_plan(tmp_path)
    (tmp_path / "pids.txt").write_text("111\n", encoding="utf-8")
    manager = make_manager(tmp_path, FakeSpawner(failing=["clash", "haproxy"]))
    manager.prepare(plan)

    result = manager.launch()

    assert result.status is LaunchStatus.ABORTED
    assert manager.state is LifecycleState.LAUNCH_FAILED
    assert result.pids == []
    assert not (tmp_path / "pids.txt").exists()


def test_launch_before_prepare_is_rejected(tmp_path: Path) -> None:
    manager = make_manager(tmp_path, FakeSpawner())

    with pytest.raises(LifecycleError):
        manager.launch()


def test_launch_twice_is_rejected(tmp_path: Path) -> None:
    manager = make_manager(tmp_path, FakeSpawner())
    manager.prepare(make_plan(tmp_path))
    manager.launch()

    with pytest.raises(LifecycleError):
        manager.launch()


def test_pid_file_skips_malformed_entries(tmp_path: Path) -> None:
    path = tmp_path / "pids.txt"
    path.write_text("12\n\nnot-a-pid\n  34  \n", encoding="utf-8")

    assert PidFile(path).read() == [12, 34]


def test_pid_file_skips_non_positive_entries(tmp_path: Path) -> None:
    path = tmp_path / "pids.txt"
    path.write_text("0\n-1\n42\n-7\n", encoding="utf-8")

    assert PidFile(path).read() == [42]


def test_launch_never_signals_process_groups(tmp_path: Path) -> None:
    plan = make_plan(tmp_path)
    (tmp_path / "pids.txt").write_text("0\n-1\n", encoding="utf-8")
    terminator = FakeTerminator()
    manager = make_manager(tmp_path, FakeSpawner(), terminator)
    manager.prepare(plan)

    result = manager.launch()

    assert terminator.signalled == []
    assert result.terminated == []
    assert result.status is LaunchStatus.LAUNCHED


def test_pid_file_tolerates_undecodable_bytes(tmp_path: Path) -> None:
    path = tmp_path / "pids.txt"
    path.write_bytes(b"\xff\xfe\n77\n")

    assert PidFile(path).read() == [77]


def test_launch_with_undecodable_pid_file(tmp_path: Path) -> None:
    plan = make_plan(tmp_path)
    (tmp_path / "pids.txt").write_bytes(b"\xff\xfe\n")
    terminator = FakeTerminator()
    manager = make_manager(tmp_path, FakeSpawner(first_pid=6000), terminator)
    manager.prepare(plan)

    result = manager.launch()

    assert terminator.signalled == []
    assert result.status is LaunchStatus.LAUNCHED
    assert manager.state is LifecycleState.LAUNCHED
    assert PidFile(tmp_path / "pids.txt").read() == [6000, 6001, 6002]


def test_pid_file_append_and_remove(tmp_path: Path) -> None:
    pid_file = PidFile(tmp_path / "pids.txt")

    pid_file.append(1)
    pid_file.append(2)
    assert pid_file.read() == [1, 2]

    pid_file.remove()
    pid_file.remove()
    assert pid_file.read() == []


class RecordingPopen:
    instances: List["RecordingPopen"] = []

    def __init__(self, argv: Sequence[str], **kwargs: object) -> None:
        self.argv = list(argv)
        self.kwargs = kwargs
        self.pid = 4242
        self.returncode: int | None = None
        RecordingPopen.instances.append(self)


def test_spawn_process_detaches_and_settles_handle(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    RecordingPopen.instances = []
    monkeypatch.setattr(lifecycle.subprocess, "Popen", RecordingPopen)
    log_path = tmp_path / "output.log"

    pid = lifecycle.spawn_process("clash", ["-d", str(tmp_path)], tmp_path, log_path)

    (process,) = RecordingPopen.instances
    assert pid == 4242
    assert process.argv == ["clash", "-d", str(tmp_path)]
    assert process.kwargs["cwd"] == tmp_path
    assert process.kwargs["start_new_session"] is True
    assert process.returncode == 0
    assert log_path.exists()
