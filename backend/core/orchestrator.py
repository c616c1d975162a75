# backend/core/orchestrator.py
import logging
import os
import threading
import uuid

from .allocator import DisplayAllocator
from .config import DeviceType, Settings, device_catalog, settings as default_settings
from .errors import ExternalToolFailure, InvalidTransition, NodeNotFound, ValidationError
from .events import DirectoryLink, EventBus, NodeDeleted, NodeStarted, NodeStopped
from .image_store import ImageStore
from .models import Node
from .state_manager import NodeRegistry
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


class LabOrchestrator:
    """Drives node lifecycle transitions: create, run, stop, wipe, delete.

    All mutating operations on one node run under that node's lock;
    operations on different nodes proceed in parallel. Registry records
    change only after the steps of an operation have succeeded.
    """

    def __init__(
        self,
        registry: NodeRegistry,
        image_store: ImageStore,
        allocator: DisplayAllocator,
        supervisor: ProcessSupervisor,
        bus: EventBus | None = None,
        cfg: Settings | None = None,
    ):
        self.cfg = cfg or default_settings
        self.registry = registry
        self.image_store = image_store
        self.allocator = allocator
        self.supervisor = supervisor
        self.bus = bus or EventBus()
        self.devices = device_catalog(self.cfg)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._create_lock = threading.Lock()

    # --- locking ---

    def _get_lock(self, node_id: str) -> threading.Lock:
        with self._locks_guard:
            if node_id not in self._locks:
                self._locks[node_id] = threading.Lock()
            return self._locks[node_id]

    def _require(self, node_id: str) -> Node:
        node = self.registry.get(node_id)
        if node is None:
            raise NodeNotFound(node_id)
        return node

    def _device(self, device_type: str) -> DeviceType:
        device = self.devices.get(device_type)
        if device is None:
            raise ValidationError(
                f"Unknown device type {device_type!r}; expected one of {sorted(self.devices)}",
                reason="invalid_device_type",
            )
        return device

    def _running_slots(self) -> list[int]:
        return [n.display_slot for n in self.registry.list()
                if n.is_running and n.display_slot is not None]

    def _halt(self, node: Node) -> None:
        """Kill the VM, free its display and drop its directory entry."""
        if not self.supervisor.terminate(node.id):
            logger.info("No live VM for %s, nothing to kill", node.id)
        self.allocator.release(node.id)
        self.bus.publish(NodeStopped(node_id=node.id, name=node.name))

    # --- queries ---

    def list_nodes(self) -> list[Node]:
        return [self._reconcile(node) for node in self.registry.list()]

    def get_node(self, node_id: str) -> Node:
        return self._reconcile(self._require(node_id))

    def _reconcile(self, node: Node) -> Node:
        """Mark a running node stopped if its VM is gone."""
        if not node.is_running or self.supervisor.is_node_alive(node.id):
            return node
        lock = self._get_lock(node.id)
        if not lock.acquire(blocking=False):
            # An operation on this node is in flight; it owns the record.
            return node
        try:
            current = self.registry.get(node.id)
            if current is None or not current.is_running or self.supervisor.is_node_alive(node.id):
                return current or node
            logger.warning("VM for %s (%s) died; marking stopped", current.name, current.id)
            self._halt(current)
            return self.registry.upsert(current.as_stopped())
        finally:
            lock.release()

    # --- operations ---

    def create(self, device_type: str, name: str | None = None) -> Node:
        """Create a stopped node; a missing or taken name falls back to <type>-<n>."""
        device = self._device(device_type)
        node_id = str(uuid.uuid4())
        overlay_path = os.path.join(self.cfg.overlay_dir, f"{node_id}.qcow2")

        self.image_store.create_overlay(device.base_image, overlay_path)

        with self._create_lock:
            node = Node(
                id=node_id,
                name=self.registry.claim_name(device.name, name),
                device_type=device.name,
                overlay_path=overlay_path,
                interfaces=list(device.interfaces),
            )
            self.registry.upsert(node)
        logger.info("Created %s node %s (%s)", device.name, node.name, node.id)
        return node

    def run(self, node_id: str) -> Node:
        with self._get_lock(node_id):
            node = self._require(node_id)
            if node.is_running:
                raise InvalidTransition(f"Node {node.name} is already running", reason="already_running")
            device = self._device(node.device_type)

            if not self.image_store.overlay_exists(node.overlay_path):
                logger.warning("Overlay for %s missing, recreating", node.name)
                self.image_store.create_overlay(device.base_image, node.overlay_path)

            slot = self.allocator.allocate(node.id, self._running_slots())
            vnc_port = self.allocator.port_for(slot)
            try:
                handle = self.supervisor.launch(node.id, node.overlay_path, slot, device.memory_mb)
                try:
                    self.supervisor.wait_for_display(handle, vnc_port)
                except Exception:
                    self.supervisor.terminate(node.id)
                    raise
            except Exception:
                self.allocator.release(node.id)
                raise

            links = self.bus.publish(NodeStarted(node_id=node.id, name=node.name, vnc_port=vnc_port))
            url = next((link.url for link in links if isinstance(link, DirectoryLink)), None)
            if url is None:
                logger.warning("%s is running without a Guacamole link", node.name)

            node = self.registry.upsert(node.as_running(slot, vnc_port, url))
            logger.info("Node %s running on VNC port %d", node.name, vnc_port)
            return node

    def stop(self, node_id: str) -> Node:
        with self._get_lock(node_id):
            node = self._require(node_id)
            if not node.is_running:
                raise InvalidTransition(f"Node {node.name} is not running", reason="not_running")
            self._halt(node)
            node = self.registry.upsert(node.as_stopped())
            logger.info("Node %s stopped", node.name)
            return node

    def wipe(self, node_id: str) -> Node:
        with self._get_lock(node_id):
            node = self._require(node_id)
            device = self._device(node.device_type)
            # Nothing is stopped or deleted unless the overlay can be rebuilt.
            base_format = self.image_store.check_base_image(device.base_image,
                                                            missing_error=ExternalToolFailure)
            if node.is_running or self.supervisor.is_node_alive(node.id):
                self._halt(node)
                node = self.registry.upsert(node.as_stopped())

            self.image_store.wipe_overlay(node.overlay_path, device.base_image, base_format=base_format)
            logger.info("Node %s wiped", node.name)
            return node

    def delete(self, node_id: str) -> Node:
        with self._get_lock(node_id):
            node = self._require(node_id)
            if node.is_running or self.supervisor.is_node_alive(node.id):
                self._halt(node)

            try:
                self.image_store.delete_overlay(node.overlay_path)
            except ExternalToolFailure as e:
                logger.warning("Failed to delete overlay for %s: %s", node.name, e)

            self.supervisor.forget(node.id)
            self.registry.remove(node.id)
            self.bus.publish(NodeDeleted(node_id=node.id, name=node.name))
            logger.info("Node %s deleted", node.name)

        with self._locks_guard:
            self._locks.pop(node_id, None)
        return node

    # --- startup ---

    def recover(self) -> None:
        """Reload the snapshot and reconcile it with the VMs still alive."""
        self.registry.load()
        for node in self.registry.list():
            alive = self.supervisor.is_node_alive(node.id)
            if node.is_running and alive and node.display_slot is not None:
                self.allocator.adopt(node.id, node.display_slot)
                logger.info("Recovered running node %s on VNC port %s", node.name, node.vnc_port)
            elif node.is_running:
                logger.warning("Node %s was running but its VM is gone", node.name)
                self._halt(node)
                self.registry.upsert(node.as_stopped())
            elif alive:
                logger.warning("Stopped node %s still has a VM, terminating it", node.name)
                self.supervisor.terminate(node.id)
            else:
                self.supervisor.forget(node.id)

        known = [n.id for n in self.registry.list()]
        for orphan_id in self.supervisor.orphans(known):
            logger.warning("Terminating VM of unknown node %s", orphan_id)
            self.supervisor.terminate(orphan_id)
        self.registry.save()

    def shutdown(self) -> None:
        """Persist state. VMs are left running for the next start to adopt."""
        self.registry.save()

    def health(self) -> dict:
        nodes = self.registry.list()
        return {
            "status": "ok",
            "nodes": len(nodes),
            "running": sum(1 for n in nodes if n.is_running),
        }
