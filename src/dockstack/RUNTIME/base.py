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
The capability set dockstack needs from a container platform.

The engine only issues high-level intents through this interface; creating
namespaces, pulling layers and mounting filesystems is the runtime's job.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

from ..MODELS.service_definition import HealthCheck, PortMapping

LABEL_PROJECT = "dockstack.project"
LABEL_SERVICE = "dockstack.service"
LABEL_ANONYMOUS = "dockstack.anonymous"


@dataclass(frozen=True)
class MountSpec:
    """A resolved mount: runtime volume name or host path, and container path."""

    source: str
    target: str
    read_only: bool = False
    bind: bool = False


@dataclass(frozen=True)
class NetworkAttachment:
    """A network to join and the DNS aliases to register on it."""

    network: str
    aliases: List[str] = field(default_factory=list)


@dataclass
class ContainerSpec:
    """Everything the runtime needs to materialize one container."""

    name: str
    image: str
    command: List[str] = field(default_factory=list)
    entrypoint: List[str] = field(default_factory=list)
    environment: Dict[str, str] = field(default_factory=dict)
    mounts: List[MountSpec] = field(default_factory=list)
    networks: List[NetworkAttachment] = field(default_factory=list)
    ports: List[PortMapping] = field(default_factory=list)
    working_dir: Optional[str] = None
    tty: bool = False
    stdin_open: bool = False
    labels: Dict[str, str] = field(default_factory=dict)
    healthcheck: Optional[HealthCheck] = None


@dataclass(frozen=True)
class ContainerStatus:
    """
    Container state as reported by the runtime.

    state is one of created, running, paused, restarting, exited, dead.
    health is None when the container defines no health check.
    """

    state: str
    exit_code: Optional[int] = None
    health: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.state == "running"

    @property
    def has_exited(self) -> bool:
        return self.state in ("exited", "dead")


@dataclass(frozen=True)
class ResourceInfo:
    """An existing network or volume as the runtime sees it."""

    id: str
    name: str
    driver: str
    labels: Dict[str, str] = field(default_factory=dict)


class ContainerRuntime(ABC):
    """
    Abstract runtime collaborator. Implementations raise
    RuntimeOperationError when the platform rejects an operation.
    """

    @abstractmethod
    def create_container(self, spec: ContainerSpec) -> str:
        """Creates (but does not start) a container; returns its id."""

    @abstractmethod
    def start(self, container_id: str) -> None:
        """Launches the container's process."""

    @abstractmethod
    def stop(self, container_id: str, grace_seconds: float) -> bool:
        """
        Sends termination, waits up to grace_seconds, then force-kills.

        :return: True if the container exited within the grace period.
        """

    @abstractmethod
    def kill(self, container_id: str) -> None:
        """Force-kills the container immediately."""

    @abstractmethod
    def remove(self, container_id: str) -> None:
        """Removes a stopped container."""

    @abstractmethod
    def inspect(self, container_id: str) -> ContainerStatus:
        """Returns the current state of a container."""

    @abstractmethod
    def find_container(self, name: str) -> Optional[str]:
        """Looks up a container id by name."""

    @abstractmethod
    def create_network(self, name: str, driver: str, labels: Dict[str, str]) -> str:
        """Creates a network; returns its id."""

    @abstractmethod
    def find_network(self, name: str) -> Optional[ResourceInfo]:
        """Looks up a network by name."""

    @abstractmethod
    def remove_network(self, name: str) -> None:
        """Removes a network."""

    @abstractmethod
    def create_volume(self, name: str, driver: str, labels: Dict[str, str]) -> str:
        """Creates a volume; returns its id."""

    @abstractmethod
    def find_volume(self, name: str) -> Optional[ResourceInfo]:
        """Looks up a volume by name."""

    @abstractmethod
    def remove_volume(self, name: str) -> None:
        """Removes a volume."""

    @abstractmethod
    def image_exists(self, reference: str) -> bool:
        """True if the image is available locally."""

    @abstractmethod
    def pull_image(self, reference: str) -> None:
        """Fetches an image from its registry."""

    @abstractmethod
    def build_image(self, context: str, tag: str, dockerfile: Optional[str] = None,
                    args: Optional[Dict[str, str]] = None) -> None:
        """Builds an image from a context directory and tags it."""

    @abstractmethod
    def stream_logs(self, container_id: str, follow: bool = True) -> Iterator[bytes]:
        """Yields the container's output as it is produced."""
