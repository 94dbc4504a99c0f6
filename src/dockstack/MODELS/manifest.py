"""
Models for a complete application manifest: services plus shared networks and volumes.
"""
import re
from typing import Dict, List
from pydantic import BaseModel, ConfigDict
from .service_definition import ServiceDefinition

DEFAULT_NETWORK = "default"


class NetworkDefinition(BaseModel):
    """
    A private network shared by its member services.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    driver: str = "bridge"
    external: bool = False
    labels: Dict[str, str] = {}


class VolumeDefinition(BaseModel):
    """
    A named, runtime-managed persistent volume.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    driver: str = "local"
    external: bool = False
    labels: Dict[str, str] = {}


class ResourceHandle(BaseModel):
    """
    A network or volume that exists in the runtime, resolved from its manifest name.
    """
    model_config = ConfigDict(frozen=True)

    kind: str
    name: str
    runtime_name: str
    id: str
    external: bool = False


class Manifest(BaseModel):
    """
    Complete configuration for a multi-service stack, equivalent to a parsed
    compose file. Service order is declaration order.
    """
    model_config = ConfigDict(frozen=True)

    project_name: str
    services: Dict[str, ServiceDefinition]
    networks: Dict[str, NetworkDefinition] = {}
    volumes: Dict[str, VolumeDefinition] = {}
    base_dir: str = "."

    @property
    def service_names(self) -> List[str]:
        return list(self.services.keys())

    def container_name(self, service: str) -> str:
        """
        Deterministic container name for a service, so a later invocation can find it.
        """
        declared = self.services[service].container_name
        if declared:
            return declared
        return f"{self.project_name}_{service}_1"

    def image_for(self, service: str) -> str:
        """
        The single image tag a service runs. Built services without an explicit
        image are tagged <project>-<service>.
        """
        svc = self.services[service]
        if svc.image:
            return svc.image
        return f"{self.project_name}-{service}".lower()

    def networks_for(self, service: str) -> List[str]:
        """
        Networks a service joins; services that name none join the default network.
        """
        svc = self.services[service]
        if svc.networks:
            return list(svc.networks)
        if DEFAULT_NETWORK in self.networks:
            return [DEFAULT_NETWORK]
        return []


def normalize_project_name(raw: str) -> str:
    """
    Lower-cases a directory or user supplied name and strips characters the
    runtime does not accept in resource names.
    """
    name = re.sub(r"[^a-z0-9_-]", "", raw.lower())
    return name or "default"
