# backend/core/supervisor.py
import logging
import os
import signal
import socket
import subprocess
import threading
import time
from dataclasses import dataclass

from .config import Settings, settings as default_settings
from .errors import DisplayNotReady, ExternalToolFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessHandle:
    """Token for a VM process started for a node."""

    node_id: str
    pid: int
    overlay_path: str = ""


class ProcessSupervisor:
    """Starts and stops detached QEMU processes, one per node.

    The pid of every VM, followed by its overlay path, is written to
    ``<run_dir>/<node_id>.pid`` right after spawning, so a restarted manager
    can still find and stop it.
    """

    def __init__(self, cfg: Settings | None = None):
        self.cfg = cfg or default_settings
        self._children: dict[str, subprocess.Popen] = {}
        self._lock = threading.Lock()

    def pid_file(self, node_id: str) -> str:
        return os.path.join(self.cfg.run_dir, f"{node_id}.pid")

    def build_command(self, overlay_path: str, slot: int, memory_mb: int) -> list[str]:
        return [
            self.cfg.qemu_binary,
            "-hda", overlay_path,
            "-m", str(memory_mb),
            "-vnc", f"0.0.0.0:{slot}",
            "-nographic",
            *self.cfg.qemu_extra_args,
        ]

    def launch(self, node_id: str, overlay_path: str, slot: int, memory_mb: int) -> ProcessHandle:
        cmd = self.build_command(overlay_path, slot, memory_mb)
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            logger.error("Failed to start QEMU for %s: %s", node_id, e)
            raise ExternalToolFailure(f"Failed to start QEMU process: {e}", reason="launch_failed")

        handle = ProcessHandle(node_id=node_id, pid=process.pid, overlay_path=overlay_path)
        with self._lock:
            self._children[node_id] = process
        try:
            os.makedirs(self.cfg.run_dir, exist_ok=True)
            with open(self.pid_file(node_id), "w") as f:
                f.write(f"{process.pid}\n{overlay_path}\n")
        except OSError as e:
            logger.error("Could not persist pid %d for %s: %s", process.pid, node_id, e)
            self._signal(handle, signal.SIGKILL)
            self.forget(node_id)
            raise ExternalToolFailure(f"Could not write pid file: {e}", reason="launch_failed")

        logger.info("Started VM for %s (pid %d, display :%d)", node_id, process.pid, slot)
        return handle

    def handle_for(self, node_id: str) -> ProcessHandle | None:
        """Rebuild the handle of a node from its pid file."""
        try:
            with open(self.pid_file(node_id)) as f:
                lines = f.read().splitlines()
            overlay_path = lines[1].strip() if len(lines) > 1 else ""
            return ProcessHandle(node_id=node_id, pid=int(lines[0].strip()), overlay_path=overlay_path)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning("Unreadable pid file for %s: %s", node_id, e)
            return None

    def is_alive(self, handle: ProcessHandle | None) -> bool:
        if handle is None:
            return False
        with self._lock:
            child = self._children.get(handle.node_id)
        if child is not None and child.pid == handle.pid:
            return child.poll() is None
        return self._pid_alive(handle)

    def is_node_alive(self, node_id: str) -> bool:
        return self.is_alive(self.handle_for(node_id))

    def _pid_alive(self, handle: ProcessHandle) -> bool:
        try:
            os.kill(handle.pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            pass
        # The pid may have been reused, possibly by another node's VM.
        cmdline_path = f"/proc/{handle.pid}/cmdline"
        if not os.path.exists(cmdline_path):
            return True
        try:
            with open(cmdline_path, "rb") as f:
                argv = [arg.decode(errors="replace") for arg in f.read().split(b"\0") if arg]
        except OSError:
            return True
        if not argv or os.path.basename(argv[0]) != os.path.basename(self.cfg.qemu_binary):
            return False
        marker = handle.overlay_path or handle.node_id
        return any(marker in arg for arg in argv[1:])

    def wait_for_display(self, handle: ProcessHandle, port: int, timeout: float | None = None) -> None:
        """Poll until the VM's VNC port accepts connections."""
        timeout = self.cfg.display_ready_timeout if timeout is None else timeout
        interval = self.cfg.display_poll_interval
        deadline = time.monotonic() + timeout
        while True:
            if not self.is_alive(handle):
                raise ExternalToolFailure(
                    f"QEMU process {handle.pid} exited during startup", reason="process_exited")
            try:
                with socket.create_connection((self.cfg.vnc_host, port), timeout=interval):
                    return
            except OSError:
                pass
            if time.monotonic() >= deadline:
                raise DisplayNotReady(f"VNC port {port} not reachable after {timeout}s")
            time.sleep(interval)

    def terminate(self, node_id: str) -> bool:
        """Stop a node's VM. Returns False if nothing was running."""
        handle = self.handle_for(node_id)
        if handle is None or not self.is_alive(handle):
            self.forget(node_id)
            return False

        self._signal(handle, signal.SIGTERM)
        with self._lock:
            child = self._children.get(node_id)
        if child is not None and child.pid == handle.pid:
            try:
                child.wait(timeout=self.cfg.stop_grace_period)
            except subprocess.TimeoutExpired:
                self._signal(handle, signal.SIGKILL)
                try:
                    child.wait(timeout=self.cfg.stop_grace_period)
                except subprocess.TimeoutExpired:
                    logger.warning("pid %d (%s) survived SIGKILL", handle.pid, node_id)
        else:
            deadline = time.monotonic() + self.cfg.stop_grace_period
            while self._pid_alive(handle) and time.monotonic() < deadline:
                time.sleep(0.1)
            if self._pid_alive(handle):
                self._signal(handle, signal.SIGKILL)

        self.forget(node_id)
        logger.info("Stopped VM for %s (pid %d)", node_id, handle.pid)
        return True

    def _signal(self, handle: ProcessHandle, sig: int) -> None:
        try:
            os.kill(handle.pid, sig)
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.warning("Could not signal pid %d (%s): %s", handle.pid, handle.node_id, e)

    def forget(self, node_id: str) -> None:
        """Drop the pid record of a node."""
        with self._lock:
            self._children.pop(node_id, None)
        try:
            os.remove(self.pid_file(node_id))
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove pid file for %s: %s", node_id, e)

    def orphans(self, known_ids) -> list[str]:
        """Node ids that have a pid file but no registry entry."""
        if not os.path.isdir(self.cfg.run_dir):
            return []
        known = set(known_ids)
        return [
            name[:-len(".pid")]
            for name in sorted(os.listdir(self.cfg.run_dir))
            if name.endswith(".pid") and name[:-len(".pid")] not in known
        ]
