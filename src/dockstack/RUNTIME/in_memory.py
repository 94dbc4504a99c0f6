# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
A runtime that keeps containers, networks and volumes in memory.

Every call is recorded, and failures can be injected per operation and target,
which makes it suitable for dry runs and for exercising the engine without a
container platform.
"""
import itertools
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Set, Tuple

from ..MODELS.errors import RuntimeOperationError
from .base import ContainerRuntime, ContainerSpec, ContainerStatus, ResourceInfo


@dataclass
class FakeContainer:
    """A container tracked by the in-memory runtime."""

    id: str
    spec: ContainerSpec
    state: str = "created"
    exit_code: Optional[int] = None
    health: Optional[str] = None


@dataclass
class RecordedCall:
    operation: str
    target: str
    timestamp: float = field(default_factory=time.monotonic)


class InMemoryRuntime(ContainerRuntime):
    """
    In-memory implementation of the runtime collaborator.
    """

    def __init__(self, local_images: Optional[Set[str]] = None, operation_delay: float = 0.0):
        """
        :param local_images: Images that count as already present.
        :param operation_delay: Seconds every container operation sleeps, to widen concurrency windows.
        """
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.containers: Dict[str, FakeContainer] = {}
        self.networks: Dict[str, ResourceInfo] = {}
        self.volumes: Dict[str, ResourceInfo] = {}
        self.images: Set[str] = set(local_images or ())
        self.calls: List[RecordedCall] = []
        self.logs: Dict[str, List[bytes]] = {}
        self.operation_delay = operation_delay
        self._failures: Dict[Tuple[str, str], Exception] = {}
        self._crash_on_start: Dict[str, int] = {}
        self._hang_on_stop: Set[str] = set()
        self._health_on_start: Dict[str, str] = {}

    # Failure injection

    def inject_failure(self, operation: str, target: str, error: Optional[Exception] = None):
        """
        Makes `operation` fail for `target` (a container, network, volume or image name).
        """
        self._failures[(operation, target)] = error or RuntimeOperationError(f"{operation} failed for {target}")

    def crash_on_start(self, container_name: str, exit_code: int = 1):
        """The container exits immediately after it is started."""
        self._crash_on_start[container_name] = exit_code

    def hang_on_stop(self, container_name: str):
        """The container ignores termination and has to be killed."""
        self._hang_on_stop.add(container_name)

    def set_health_on_start(self, container_name: str, health: str):
        """Health status a container reports once started (default: healthy if it has a check)."""
        self._health_on_start[container_name] = health

    def clear_failures(self):
        """Drops all injected faults."""
        self._failures.clear()
        self._crash_on_start.clear()
        self._hang_on_stop.clear()
        self._health_on_start.clear()

    # Introspection helpers

    def operations(self, operation: Optional[str] = None) -> List[Tuple[str, str]]:
        with self._lock:
            return [(c.operation, c.target) for c in self.calls if operation is None or c.operation == operation]

    def container_by_name(self, name: str) -> Optional[FakeContainer]:
        with self._lock:
            for container in self.containers.values():
                if container.spec.name == name:
                    return container
        return None

    def _record(self, operation: str, target: str):
        with self._lock:
            self.calls.append(RecordedCall(operation, target))
            failure = self._failures.get((operation, target))
        if self.operation_delay:
            time.sleep(self.operation_delay)
        if failure is not None:
            raise failure

    def _container(self, container_id: str) -> FakeContainer:
        try:
            return self.containers[container_id]
        except KeyError:
            raise RuntimeOperationError(f"no such container: {container_id}") from None

    # ContainerRuntime

    def create_container(self, spec: ContainerSpec) -> str:
        self._record("create_container", spec.name)
        with self._lock:
            if any(c.spec.name == spec.name for c in self.containers.values()):
                raise RuntimeOperationError(f"container name {spec.name} is already in use")
            if spec.image not in self.images:
                raise RuntimeOperationError(f"image not found: {spec.image}")
            for mount in spec.mounts:
                if not mount.bind and mount.source not in self.volumes:
                    raise RuntimeOperationError(f"volume not found: {mount.source}")
            for attachment in spec.networks:
                if attachment.network not in self.networks:
                    raise RuntimeOperationError(f"network not found: {attachment.network}")
            for port in spec.ports:
                if port.host_port is not None and self._port_in_use(port.host_port, port.protocol):
                    raise RuntimeOperationError(f"port {port.host_port}/{port.protocol} is already allocated")
            container_id = f"c{next(self._ids):012d}"
            self.containers[container_id] = FakeContainer(id=container_id, spec=spec)
        return container_id

    def _port_in_use(self, host_port: int, protocol: str) -> bool:
        return any(
            p.host_port == host_port and p.protocol == protocol
            for c in self.containers.values() if c.state == "running"
            for p in c.spec.ports
        )

    def start(self, container_id: str) -> None:
        container = self._container(container_id)
        self._record("start", container.spec.name)
        with self._lock:
            name = container.spec.name
            if name in self._crash_on_start:
                container.state = "exited"
                container.exit_code = self._crash_on_start[name]
                return
            for port in container.spec.ports:
                if port.host_port is not None and self._port_in_use(port.host_port, port.protocol):
                    raise RuntimeOperationError(f"port {port.host_port}/{port.protocol} is already allocated")
            container.state = "running"
            container.exit_code = None
            if container.spec.healthcheck:
                container.health = self._health_on_start.get(name, "healthy")

    def stop(self, container_id: str, grace_seconds: float) -> bool:
        container = self._container(container_id)
        self._record("stop", container.spec.name)
        with self._lock:
            graceful = container.spec.name not in self._hang_on_stop
            if container.state == "running":
                container.state = "exited"
                container.exit_code = 0 if graceful else 137
            return graceful

    def kill(self, container_id: str) -> None:
        container = self._container(container_id)
        self._record("kill", container.spec.name)
        with self._lock:
            container.state = "exited"
            container.exit_code = 137

    def remove(self, container_id: str) -> None:
        container = self._container(container_id)
        self._record("remove", container.spec.name)
        with self._lock:
            if container.state == "running":
                raise RuntimeOperationError(f"container {container.spec.name} is running")
            del self.containers[container_id]

    def inspect(self, container_id: str) -> ContainerStatus:
        container = self._container(container_id)
        with self._lock:
            return ContainerStatus(state=container.state, exit_code=container.exit_code, health=container.health)

    def find_container(self, name: str) -> Optional[str]:
        container = self.container_by_name(name)
        return container.id if container else None

    def create_network(self, name: str, driver: str, labels: Dict[str, str]) -> str:
        self._record("create_network", name)
        with self._lock:
            if name in self.networks:
                raise RuntimeOperationError(f"network with name {name} already exists")
            info = ResourceInfo(id=f"n-{name}", name=name, driver=driver, labels=dict(labels))
            self.networks[name] = info
        return info.id

    def find_network(self, name: str) -> Optional[ResourceInfo]:
        with self._lock:
            return self.networks.get(name)

    def remove_network(self, name: str) -> None:
        self._record("remove_network", name)
        with self._lock:
            if name not in self.networks:
                raise RuntimeOperationError(f"network {name} not found")
            in_use = [c.spec.name for c in self.containers.values()
                      if any(a.network == name for a in c.spec.networks)]
            if in_use:
                raise RuntimeOperationError(f"network {name} has active endpoints: {', '.join(in_use)}")
            del self.networks[name]

    def create_volume(self, name: str, driver: str, labels: Dict[str, str]) -> str:
        self._record("create_volume", name)
        with self._lock:
            if name not in self.volumes:
                self.volumes[name] = ResourceInfo(id=name, name=name, driver=driver, labels=dict(labels))
            return self.volumes[name].id

    def find_volume(self, name: str) -> Optional[ResourceInfo]:
        with self._lock:
            return self.volumes.get(name)

    def remove_volume(self, name: str) -> None:
        self._record("remove_volume", name)
        with self._lock:
            if name not in self.volumes:
                raise RuntimeOperationError(f"volume {name} not found")
            in_use = [c.spec.name for c in self.containers.values()
                      if any(m.source == name and not m.bind for m in c.spec.mounts)]
            if in_use:
                raise RuntimeOperationError(f"volume {name} is in use by {', '.join(in_use)}")
            del self.volumes[name]

    def image_exists(self, reference: str) -> bool:
        with self._lock:
            return reference in self.images

    def pull_image(self, reference: str) -> None:
        self._record("pull_image", reference)
        with self._lock:
            self.images.add(reference)

    def build_image(self, context: str, tag: str, dockerfile: Optional[str] = None,
                    args: Optional[Dict[str, str]] = None) -> None:
        self._record("build_image", tag)
        with self._lock:
            self.images.add(tag)

    def stream_logs(self, container_id: str, follow: bool = True) -> Iterator[bytes]:
        container = self._container(container_id)
        for chunk in list(self.logs.get(container.spec.name, [])):
            yield chunk
