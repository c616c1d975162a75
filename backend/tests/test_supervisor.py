"""Unit tests for ProcessSupervisor with process creation and signals mocked."""
from __future__ import annotations

import os
import signal
import socket
import subprocess
import sys
import time
from unittest.mock import MagicMock, call, patch

import pytest

from core.errors import DisplayNotReady, ExternalToolFailure
from core.supervisor import ProcessHandle, ProcessSupervisor


@pytest.fixture
def supervisor(cfg):
    cfg.display_poll_interval = 0.01
    cfg.stop_grace_period = 0.05
    return ProcessSupervisor(cfg)


def _fake_process(pid=4242, running=True):
    process = MagicMock()
    process.pid = pid
    process.poll.return_value = None if running else 0
    return process


def test_launch_starts_detached_qemu_and_writes_pid(supervisor, cfg):
    with patch("core.supervisor.subprocess.Popen", return_value=_fake_process()) as popen:
        handle = supervisor.launch("n1", "/o/n1.qcow2", 3, 256)

    assert handle == ProcessHandle(node_id="n1", pid=4242, overlay_path="/o/n1.qcow2")
    cmd = popen.call_args.args[0]
    assert cmd == ["qemu-system-x86_64", "-hda", "/o/n1.qcow2", "-m", "256",
                   "-vnc", "0.0.0.0:3", "-nographic"]
    assert popen.call_args.kwargs["start_new_session"] is True
    with open(os.path.join(cfg.run_dir, "n1.pid")) as f:
        assert f.read() == "4242\n/o/n1.qcow2\n"


def test_launch_appends_extra_args(supervisor, cfg):
    cfg.qemu_extra_args = ["-enable-kvm"]
    assert supervisor.build_command("/o/n1.qcow2", 0, 512)[-1] == "-enable-kvm"


def test_launch_failure(supervisor, cfg):
    with patch("core.supervisor.subprocess.Popen", side_effect=FileNotFoundError("qemu-system-x86_64")):
        with pytest.raises(ExternalToolFailure) as exc:
            supervisor.launch("n1", "/o/n1.qcow2", 0, 256)
    assert exc.value.reason == "launch_failed"
    assert not os.path.exists(os.path.join(cfg.run_dir, "n1.pid"))


def test_is_alive_uses_child_status(supervisor):
    process = _fake_process()
    with patch("core.supervisor.subprocess.Popen", return_value=process):
        handle = supervisor.launch("n1", "/o/n1.qcow2", 0, 256)

    assert supervisor.is_alive(handle)
    process.poll.return_value = 0
    assert not supervisor.is_alive(handle)
    assert not supervisor.is_alive(None)


def test_handle_for_reads_pid_file(supervisor, cfg):
    os.makedirs(cfg.run_dir)
    with open(supervisor.pid_file("n1"), "w") as f:
        f.write("777\n")
    assert supervisor.handle_for("n1") == ProcessHandle("n1", 777)
    assert supervisor.handle_for("n2") is None


def test_handle_for_ignores_garbage(supervisor, cfg):
    os.makedirs(cfg.run_dir)
    with open(supervisor.pid_file("n1"), "w") as f:
        f.write("not a pid")
    assert supervisor.handle_for("n1") is None


def test_pid_alive_for_vanished_process(supervisor):
    with patch("core.supervisor.os.kill", side_effect=ProcessLookupError):
        assert not supervisor._pid_alive(ProcessHandle("n1", 999999))


def test_terminate_without_pid_file(supervisor):
    assert supervisor.terminate("n1") is False


def test_terminate_own_child(supervisor, cfg):
    process = _fake_process()
    with patch("core.supervisor.subprocess.Popen", return_value=process):
        supervisor.launch("n1", "/o/n1.qcow2", 0, 256)

    with patch("core.supervisor.os.kill") as kill:
        assert supervisor.terminate("n1") is True

    kill.assert_called_once_with(4242, signal.SIGTERM)
    process.wait.assert_called_once()
    assert not os.path.exists(supervisor.pid_file("n1"))


def test_terminate_escalates_to_sigkill(supervisor):
    process = _fake_process()
    process.wait.side_effect = [subprocess.TimeoutExpired("qemu", 0.05), 0]
    with patch("core.supervisor.subprocess.Popen", return_value=process):
        supervisor.launch("n1", "/o/n1.qcow2", 0, 256)

    with patch("core.supervisor.os.kill") as kill:
        supervisor.terminate("n1")

    assert kill.call_args_list == [call(4242, signal.SIGTERM), call(4242, signal.SIGKILL)]


def test_terminate_process_from_previous_run(supervisor, cfg):
    os.makedirs(cfg.run_dir)
    with open(supervisor.pid_file("n1"), "w") as f:
        f.write("5555")

    alive = iter([True, False])
    with patch.object(supervisor, "_pid_alive", side_effect=lambda handle: next(alive, False)), \
            patch("core.supervisor.os.kill") as kill:
        assert supervisor.terminate("n1") is True

    kill.assert_called_once_with(5555, signal.SIGTERM)
    assert not os.path.exists(supervisor.pid_file("n1"))


def test_terminate_tolerates_dead_process(supervisor, cfg):
    os.makedirs(cfg.run_dir)
    with open(supervisor.pid_file("n1"), "w") as f:
        f.write("5555")

    with patch.object(supervisor, "_pid_alive", return_value=False):
        assert supervisor.terminate("n1") is False
    assert not os.path.exists(supervisor.pid_file("n1"))


def test_wait_for_display_connectable(supervisor, cfg):
    listener = socket.socket()
    listener.bind(("127.0.0.1", 0))
    listener.listen(1)
    port = listener.getsockname()[1]
    try:
        with patch.object(supervisor, "is_alive", return_value=True):
            supervisor.wait_for_display(ProcessHandle("n1", 1), port, timeout=2)
    finally:
        listener.close()


def test_wait_for_display_times_out(supervisor):
    with patch.object(supervisor, "is_alive", return_value=True), \
            patch("core.supervisor.socket.create_connection", side_effect=ConnectionRefusedError):
        with pytest.raises(DisplayNotReady) as exc:
            supervisor.wait_for_display(ProcessHandle("n1", 1), 5900, timeout=0.05)
    assert exc.value.reason == "display_not_ready"


def test_wait_for_display_process_died(supervisor):
    with patch.object(supervisor, "is_alive", return_value=False):
        with pytest.raises(ExternalToolFailure) as exc:
            supervisor.wait_for_display(ProcessHandle("n1", 1), 5900, timeout=1)
    assert exc.value.reason == "process_exited"


def test_orphans(supervisor, cfg):
    assert supervisor.orphans([]) == []
    os.makedirs(cfg.run_dir)
    for node_id in ("a", "b"):
        with open(supervisor.pid_file(node_id), "w") as f:
            f.write("1")
    assert supervisor.orphans(["a"]) == ["b"]


def test_handle_for_reads_overlay_path(supervisor, cfg):
    os.makedirs(cfg.run_dir)
    with open(supervisor.pid_file("n1"), "w") as f:
        f.write("777\n/o/n1.qcow2\n")
    assert supervisor.handle_for("n1") == ProcessHandle("n1", 777, "/o/n1.qcow2")


@pytest.fixture
def vm_of_node_b(cfg, tmp_path):
    """A real process whose command line looks like node B's VM."""
    cfg.qemu_binary = sys.executable
    overlay = str(tmp_path / "nodeB.qcow2")
    process = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)", "-hda", overlay])
    deadline = time.monotonic() + 5
    while time.monotonic() < deadline:
        with open(f"/proc/{process.pid}/cmdline", "rb") as f:
            if overlay.encode() in f.read():
                break
        time.sleep(0.01)
    yield process, overlay
    process.kill()
    process.wait()


@pytest.mark.skipif(not os.path.exists("/proc/self/cmdline"), reason="needs /proc")
def test_reused_pid_of_other_vm_is_not_alive(supervisor, cfg, tmp_path, vm_of_node_b):
    process, overlay_b = vm_of_node_b
    os.makedirs(cfg.run_dir)
    with open(supervisor.pid_file("nodeA"), "w") as f:
        f.write(f"{process.pid}\n{tmp_path / 'nodeA.qcow2'}\n")
    with open(supervisor.pid_file("nodeB"), "w") as f:
        f.write(f"{process.pid}\n{overlay_b}\n")

    assert supervisor.is_node_alive("nodeB")
    assert not supervisor.is_node_alive("nodeA")

    assert supervisor.terminate("nodeA") is False
    assert process.poll() is None
    assert not os.path.exists(supervisor.pid_file("nodeA"))


@pytest.mark.skipif(not os.path.exists("/proc/self/cmdline"), reason="needs /proc")
def test_reused_pid_of_unrelated_program_is_not_alive(supervisor, cfg):
    process = subprocess.Popen(["sleep", "60"])
    try:
        assert not supervisor._pid_alive(ProcessHandle("n1", process.pid, "/o/n1.qcow2"))
    finally:
        process.kill()
        process.wait()
