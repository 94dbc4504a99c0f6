"""
Network management: creating, finding and removing a project's private networks.
"""
import threading
from typing import Dict

import structlog

from ..MODELS.errors import ProvisioningError, RuntimeOperationError
from ..MODELS.manifest import NetworkDefinition, ResourceHandle
from ..RUNTIME.base import LABEL_PROJECT, ContainerRuntime

logger = structlog.get_logger()


class NetworkManager:
    """
    Ensures networks exist in the runtime and hands out handles for them.
    """
    def __init__(self, runtime: ContainerRuntime, project_name: str):
        """
        Initializes the network manager.

        :param runtime: The runtime collaborator.
        :param project_name: Prefix for the runtime names of non-external networks.
        """
        self.runtime = runtime
        self.project_name = project_name
        self.handles: Dict[str, ResourceHandle] = {}
        self._lock = threading.Lock()

    def runtime_name(self, network: NetworkDefinition) -> str:
        if network.external:
            return network.name
        return f"{self.project_name}_{network.name}"

    def ensure(self, network: NetworkDefinition) -> ResourceHandle:
        """
        Returns a handle for the network, creating it if needed. Calling it again
        for the same network returns the same handle without touching the runtime.

        :param network: The declared network.
        :return: Handle for the runtime network.
        :raises ProvisioningError: If the network cannot be created or an
            incompatible network with the same name exists.
        """
        name = self.runtime_name(network)
        with self._lock:
            if name in self.handles:
                return self.handles[name]
            try:
                existing = self.runtime.find_network(name)
                if existing is not None:
                    if not network.external and existing.driver and existing.driver != network.driver:
                        raise ProvisioningError(
                            f"network {name}",
                            f"exists with driver {existing.driver}, manifest wants {network.driver}",
                        )
                    network_id = existing.id
                    logger.debug("network_exists", network=name)
                elif network.external:
                    raise ProvisioningError(f"network {name}", "declared external but does not exist")
                else:
                    labels = dict(network.labels)
                    labels[LABEL_PROJECT] = self.project_name
                    network_id = self.runtime.create_network(name, network.driver, labels)
                    logger.info("network_created", network=name, driver=network.driver)
            except RuntimeOperationError as e:
                raise ProvisioningError(f"network {name}", str(e)) from e

            handle = ResourceHandle(kind="network", name=network.name, runtime_name=name,
                                    id=network_id, external=network.external)
            self.handles[name] = handle
            return handle

    def remove(self, network: NetworkDefinition) -> bool:
        """
        Removes a project network. External networks are never removed.

        :return: True if a network was removed.
        :raises RuntimeOperationError: If the runtime refuses the removal.
        """
        if network.external:
            return False
        name = self.runtime_name(network)
        with self._lock:
            self.handles.pop(name, None)
            if self.runtime.find_network(name) is None:
                return False
            self.runtime.remove_network(name)
        logger.info("network_removed", network=name)
        return True
