"""Shared pytest fixtures: a lab wired to fake qemu, fake VMs and a fake Guacamole."""
from __future__ import annotations

import itertools
import json
import subprocess

import pytest
from fastapi.testclient import TestClient

from core.allocator import DisplayAllocator
from core.config import Settings
from core.errors import ExternalToolFailure
from core.events import EventBus
from core.guacamole_client import DirectoryRegistrar
from core.image_store import ImageStore
from core.orchestrator import LabOrchestrator
from core.state_manager import NodeRegistry
from core.supervisor import ProcessHandle


class FakeImageStore(ImageStore):
    """Real ImageStore logic with qemu-img replaced by file writes."""

    def __init__(self, cfg):
        super().__init__(cfg)
        self.commands: list[list[str]] = []
        self.base_format = "qcow2"
        self.fail_create = False

    def _run(self, cmd, reason):
        self.commands.append(cmd)
        if cmd[1] == "info":
            return subprocess.CompletedProcess(cmd, 0, stdout=json.dumps({"format": self.base_format}), stderr="")
        if self.fail_create:
            raise ExternalToolFailure("qemu-img: disk full", reason=reason)
        base = cmd[cmd.index("-b") + 1]
        with open(cmd[-1], "w") as f:
            f.write(f"qcow2 overlay of {base}\n")
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")


class FakeSupervisor:
    """Stands in for ProcessSupervisor; VMs are entries in ``alive``."""

    def __init__(self):
        self.alive: dict[str, int] = {}
        self.launched: list[tuple[str, str, int, int]] = []
        self.terminated: list[str] = []
        self.forgotten: list[str] = []
        self.fail_launch = False
        self.display_error: Exception | None = None
        self._pids = itertools.count(4000)

    def launch(self, node_id, overlay_path, slot, memory_mb):
        if self.fail_launch:
            raise ExternalToolFailure("Failed to start QEMU process", reason="launch_failed")
        pid = next(self._pids)
        self.alive[node_id] = pid
        self.launched.append((node_id, overlay_path, slot, memory_mb))
        return ProcessHandle(node_id=node_id, pid=pid)

    def wait_for_display(self, handle, port, timeout=None):
        if self.display_error is not None:
            raise self.display_error

    def handle_for(self, node_id):
        pid = self.alive.get(node_id)
        return ProcessHandle(node_id, pid) if pid else None

    def is_node_alive(self, node_id):
        return node_id in self.alive

    def terminate(self, node_id):
        self.terminated.append(node_id)
        return self.alive.pop(node_id, None) is not None

    def forget(self, node_id):
        self.forgotten.append(node_id)
        self.alive.pop(node_id, None)

    def orphans(self, known_ids):
        return [node_id for node_id in self.alive if node_id not in set(known_ids)]


class FakeRegistrar(DirectoryRegistrar):
    """In-memory Guacamole directory."""

    def __init__(self, cfg):
        super().__init__(cfg)
        self.connections: dict[str, tuple[str, int]] = {}
        self.fail = False
        self._ids = itertools.count(1)

    def register(self, name, vnc_port):
        if self.fail:
            return None
        conn_id = str(next(self._ids))
        self.connections[name] = (conn_id, vnc_port)
        return conn_id

    def unregister(self, name):
        self.connections.pop(name, None)


@pytest.fixture
def cfg(tmp_path):
    images = tmp_path / "images"
    images.mkdir()
    (images / "base.qcow2").write_text("pc base")
    (images / "router.qcow2").write_text("router base")
    return Settings(
        image_dir=str(images),
        overlay_dir=str(tmp_path / "overlays"),
        run_dir=str(tmp_path / "overlays" / "run"),
        state_file=str(tmp_path / "overlays" / "lab_state.json"),
        guac_backend="none",
        guac_public_url="http://localhost:8080/guacamole",
        display_pool_size=100,
        file_lock_retry_delay=0,
    )


@pytest.fixture
def image_store(cfg):
    return FakeImageStore(cfg)


@pytest.fixture
def supervisor():
    return FakeSupervisor()


@pytest.fixture
def registrar(cfg):
    return FakeRegistrar(cfg)


@pytest.fixture
def registry(cfg):
    return NodeRegistry(cfg.state_file)


@pytest.fixture
def orchestrator(cfg, registry, image_store, supervisor, registrar):
    bus = EventBus()
    registrar.subscribe(bus)
    return LabOrchestrator(
        registry=registry,
        image_store=image_store,
        allocator=DisplayAllocator(cfg.vnc_base_port, cfg.display_pool_size),
        supervisor=supervisor,
        bus=bus,
        cfg=cfg,
    )


@pytest.fixture
def client(cfg, orchestrator):
    from main import create_app

    app = create_app(cfg, orchestrator)
    with TestClient(app) as test_client:
        yield test_client
