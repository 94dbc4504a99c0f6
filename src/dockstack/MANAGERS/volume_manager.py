"""
Volume management: named volumes shared across containers, per-container
anonymous volumes, and host directories for bind mounts.
"""
import hashlib
import os
import threading
from typing import Dict

import structlog

from ..MODELS.errors import ProvisioningError, RuntimeOperationError
from ..MODELS.manifest import ResourceHandle, VolumeDefinition
from ..RUNTIME.base import LABEL_ANONYMOUS, LABEL_PROJECT, ContainerRuntime

logger = structlog.get_logger()


class VolumeManager:
    """
    Manages runtime volumes for one project.
    """
    def __init__(self, runtime: ContainerRuntime, project_name: str):
        """
        Initializes the volume manager.

        :param runtime: The runtime collaborator.
        :param project_name: Prefix for the runtime names of non-external volumes.
        """
        self.runtime = runtime
        self.project_name = project_name
        self.handles: Dict[str, ResourceHandle] = {}
        self._lock = threading.Lock()

    def runtime_name(self, volume: VolumeDefinition) -> str:
        if volume.external:
            return volume.name
        return f"{self.project_name}_{volume.name}"

    def ensure(self, volume: VolumeDefinition) -> ResourceHandle:
        """
        Returns a handle for a named volume, creating it if needed. Idempotent.

        :param volume: The declared volume.
        :return: Handle for the runtime volume.
        :raises ProvisioningError: If the volume cannot be created or clashes with an existing one.
        """
        name = self.runtime_name(volume)
        with self._lock:
            if name in self.handles:
                return self.handles[name]
            try:
                existing = self.runtime.find_volume(name)
                if existing is not None:
                    if not volume.external and existing.driver and existing.driver != volume.driver:
                        raise ProvisioningError(
                            f"volume {name}",
                            f"exists with driver {existing.driver}, manifest wants {volume.driver}",
                        )
                    volume_id = existing.id
                    logger.debug("volume_exists", volume=name)
                elif volume.external:
                    raise ProvisioningError(f"volume {name}", "declared external but does not exist")
                else:
                    labels = dict(volume.labels)
                    labels[LABEL_PROJECT] = self.project_name
                    volume_id = self.runtime.create_volume(name, volume.driver, labels)
                    logger.info("volume_created", volume=name, driver=volume.driver)
            except RuntimeOperationError as e:
                raise ProvisioningError(f"volume {name}", str(e)) from e

            handle = ResourceHandle(kind="volume", name=volume.name, runtime_name=name,
                                    id=volume_id, external=volume.external)
            self.handles[name] = handle
            return handle

    def remove(self, volume: VolumeDefinition) -> bool:
        """
        Removes a named volume and its data. External volumes are never removed.

        :return: True if a volume was removed.
        :raises RuntimeOperationError: If the runtime refuses the removal.
        """
        if volume.external:
            return False
        name = self.runtime_name(volume)
        with self._lock:
            self.handles.pop(name, None)
            if self.runtime.find_volume(name) is None:
                return False
            self.runtime.remove_volume(name)
        logger.info("volume_removed", volume=name)
        return True

    @staticmethod
    def anonymous_volume_name(container_name: str, target: str) -> str:
        """
        Deterministic name for the anonymous volume backing `target` in a container,
        so a later invocation can reclaim it.
        """
        digest = hashlib.sha1(target.encode("utf-8")).hexdigest()[:12]
        return f"{container_name}_anon_{digest}"

    def create_anonymous(self, container_name: str, target: str) -> str:
        """
        Creates (or reuses) the anonymous volume owned by a container.

        :return: The runtime volume name.
        """
        name = self.anonymous_volume_name(container_name, target)
        if self.runtime.find_volume(name) is None:
            labels = {LABEL_PROJECT: self.project_name, LABEL_ANONYMOUS: container_name}
            self.runtime.create_volume(name, "local", labels)
            logger.debug("anonymous_volume_created", volume=name, container=container_name, target=target)
        return name

    def remove_anonymous(self, name: str) -> bool:
        if self.runtime.find_volume(name) is None:
            return False
        self.runtime.remove_volume(name)
        logger.debug("anonymous_volume_removed", volume=name)
        return True

    def prepare_bind_source(self, source: str) -> str:
        """
        Creates a missing bind-mount source directory on the host.

        :param source: Absolute host path.
        :return: The same path.
        """
        if not os.path.exists(source):
            os.makedirs(source, exist_ok=True)
            logger.info("bind_source_created", path=source)
        return source
