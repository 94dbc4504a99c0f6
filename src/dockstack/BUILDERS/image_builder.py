"""
Builders that turn a service's image reference or build context into a local image.
"""
import os
import threading
from typing import Dict

import structlog

from ..MODELS.errors import CreationError, RuntimeOperationError
from ..MODELS.manifest import Manifest
from ..MODELS.run_state import ServiceState
from ..RUNTIME.base import ContainerRuntime

logger = structlog.get_logger()


class ImageBuilder:
    """
    First phase of bringing a service up: make sure exactly one image tag is
    available locally, either by building the service's context or by pulling.
    Image building itself is delegated to the runtime.
    """
    def __init__(self, runtime: ContainerRuntime):
        """
        Initializes the ImageBuilder.

        :param runtime: The runtime collaborator that builds and pulls.
        """
        self.runtime = runtime
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()
        self._resolved: Dict[str, str] = {}

    def _lock_for(self, tag: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(tag, threading.Lock())

    def resolve(self, manifest: Manifest, service: str, build: bool = False) -> str:
        """
        Resolves the image a service runs.

        A service with a build context is built when `build` is set or when its
        tag is not present locally. Otherwise a missing image is pulled.

        :param manifest: The loaded manifest.
        :param service: Service name.
        :param build: Force a build for services with a build context.
        :return: The image tag to create the container from.
        :raises CreationError: If the build or pull fails.
        """
        svc = manifest.services[service]
        tag = manifest.image_for(service)

        with self._lock_for(tag):
            # Another service sharing the tag already resolved it in this run.
            if tag in self._resolved:
                return tag
            try:
                if svc.build is not None:
                    if build or not self.runtime.image_exists(tag):
                        self._build(service, tag, svc.build.context, svc.build.dockerfile, svc.build.args)
                elif not self.runtime.image_exists(tag):
                    logger.info("image_pull", service=service, image=tag)
                    self.runtime.pull_image(tag)
            except RuntimeOperationError as e:
                raise CreationError(service, ServiceState.PENDING.value, f"image {tag}: {e}") from e
            self._resolved[tag] = service
        return tag

    def _build(self, service: str, tag: str, context: str, dockerfile, args):
        if not os.path.isdir(context):
            raise CreationError(service, ServiceState.PENDING.value, f"build context {context} does not exist")
        logger.info("image_build", service=service, image=tag, context=context)
        self.runtime.build_image(context, tag, dockerfile=dockerfile, args=dict(args))
