"""
Models for defining services: image or build source, ports, mounts, environment,
network membership and dependency edges.
"""
from typing import List, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum


class MountKind(str, Enum):
    """
    How a volume binding is backed.
    """
    NAMED = "named"
    BIND = "bind"
    ANONYMOUS = "anonymous"


class DependencyCondition(str, Enum):
    """
    What a dependent waits for before it may start.
    """
    SERVICE_STARTED = "service_started"
    SERVICE_HEALTHY = "service_healthy"


class BuildSpec(BaseModel):
    """
    Build context for a service whose image is produced locally.
    """
    model_config = ConfigDict(frozen=True)

    context: str
    dockerfile: Optional[str] = None
    args: Dict[str, str] = {}


class PortMapping(BaseModel):
    """
    A published port. host_port of None lets the runtime pick one.
    """
    model_config = ConfigDict(frozen=True)

    container_port: int
    host_port: Optional[int] = None
    host_ip: Optional[str] = None
    protocol: str = "tcp"


class VolumeMount(BaseModel):
    """
    Defines a mapping between a volume source and a path inside the container.
    Anonymous mounts have no source.
    """
    model_config = ConfigDict(frozen=True)

    kind: MountKind
    target: str
    source: Optional[str] = None
    read_only: bool = False

    @property
    def mode(self) -> str:
        return "ro" if self.read_only else "rw"


class Dependency(BaseModel):
    """
    A single depends_on edge.
    """
    model_config = ConfigDict(frozen=True)

    service: str
    condition: DependencyCondition = DependencyCondition.SERVICE_STARTED


class HealthCheck(BaseModel):
    """
    Defines a command the runtime runs to check the health of a service.
    """
    model_config = ConfigDict(frozen=True)

    test: List[str]
    interval: float = 30.0
    timeout: float = 30.0
    retries: int = 3
    start_period: float = 0.0


class ServiceDefinition(BaseModel):
    """
    The full definition of a single service, translated from the manifest.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    image: Optional[str] = None
    build: Optional[BuildSpec] = None

    # Execution
    command: List[str] = []
    entrypoint: List[str] = []
    working_dir: Optional[str] = None
    stdin_open: bool = False
    tty: bool = False
    container_name: Optional[str] = None

    # Environment
    environment: Dict[str, str] = {}
    env_files: List[str] = []

    # Networking
    ports: List[PortMapping] = []
    networks: List[str] = []

    # Storage
    volumes: List[VolumeMount] = []

    # Lifecycle
    depends_on: List[Dependency] = []
    healthcheck: Optional[HealthCheck] = None
    stop_grace_period: Optional[float] = None

    # Metadata
    labels: Dict[str, str] = Field(default_factory=dict)

    @property
    def dependency_names(self) -> List[str]:
        """Names of the services this one depends on, in declaration order."""
        return [dep.service for dep in self.depends_on]

    def requires_healthy(self, dependency: str) -> bool:
        """True when this service waits for `dependency` to report healthy."""
        return any(
            dep.service == dependency and dep.condition == DependencyCondition.SERVICE_HEALTHY
            for dep in self.depends_on
        )
