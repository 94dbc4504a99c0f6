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
Provisioning of the shared resources a stack needs before any service starts.

Provisioning is not rolled back on failure: every step is idempotent, so the
operator fixes the cause and runs `up` again.
"""
import threading
from typing import Dict, List, Union

import structlog

from ..MODELS.errors import ProvisioningError, RuntimeOperationError
from ..MODELS.manifest import Manifest, NetworkDefinition, ResourceHandle, VolumeDefinition
from ..RUNTIME.base import ContainerRuntime
from .network_manager import NetworkManager
from .volume_manager import VolumeManager

logger = structlog.get_logger()


class ResourceProvisioner:
    """
    Ensures a manifest's networks and named volumes exist.
    """
    def __init__(self, runtime: ContainerRuntime, project_name: str):
        self.runtime = runtime
        self.networks = NetworkManager(runtime, project_name)
        self.volumes = VolumeManager(runtime, project_name)
        self._barrier = threading.Lock()

    def ensure(self, resource: Union[NetworkDefinition, VolumeDefinition]) -> ResourceHandle:
        """
        Idempotently ensures a single network or named volume.

        :param resource: A declared network or volume.
        :return: The runtime handle; the same handle on every call.
        :raises ProvisioningError: If the resource cannot be ensured.
        """
        if isinstance(resource, NetworkDefinition):
            return self.networks.ensure(resource)
        if isinstance(resource, VolumeDefinition):
            return self.volumes.ensure(resource)
        raise TypeError(f"cannot provision {type(resource).__name__}")

    def provision(self, manifest: Manifest) -> Dict[str, ResourceHandle]:
        """
        Ensures every declared network, then every declared named volume.
        Runs once under a lock, before any service-level concurrency begins.

        :param manifest: The loaded manifest.
        :return: Handles keyed by "network:<name>" / "volume:<name>".
        :raises ProvisioningError: On the first resource that cannot be ensured.
            Resources already ensured are left in place.
        """
        handles: Dict[str, ResourceHandle] = {}
        with self._barrier:
            for name, network in manifest.networks.items():
                handles[f"network:{name}"] = self.ensure(network)
            for name, volume in manifest.volumes.items():
                handles[f"volume:{name}"] = self.ensure(volume)
        logger.info(
            "resources_provisioned",
            networks=len(manifest.networks),
            volumes=len(manifest.volumes),
        )
        return handles

    def release_networks(self, manifest: Manifest) -> List[ProvisioningError]:
        """
        Removes every project network. Failures are collected, not raised,
        so one stuck network does not hide the others.
        """
        errors: List[ProvisioningError] = []
        for network in manifest.networks.values():
            try:
                self.networks.remove(network)
            except RuntimeOperationError as e:
                logger.error("network_remove_failed", network=network.name, error=str(e))
                errors.append(ProvisioningError(f"network {self.networks.runtime_name(network)}", str(e)))
        return errors

    def release_volumes(self, manifest: Manifest) -> List[ProvisioningError]:
        """
        Removes every named project volume and the data in it.
        """
        errors: List[ProvisioningError] = []
        for volume in manifest.volumes.values():
            try:
                self.volumes.remove(volume)
            except RuntimeOperationError as e:
                logger.error("volume_remove_failed", volume=volume.name, error=str(e))
                errors.append(ProvisioningError(f"volume {self.volumes.runtime_name(volume)}", str(e)))
        return errors
