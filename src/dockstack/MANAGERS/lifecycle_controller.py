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
Lifecycle management for individual service containers.

Each operation runs under the service's RunState lock, moves the service
through the state machine, and translates manifest data into runtime calls.
"""
from typing import List, Optional

import structlog
from tenacity import Retrying, retry_if_result, stop_after_delay, wait_fixed

from ..MODELS.engine_settings import EngineSettings
from ..MODELS.errors import ContainerRuntimeError, CreationError, RuntimeOperationError, StopTimeout
from ..MODELS.manifest import Manifest
from ..MODELS.run_state import ACTIVE_STATES, RunState, ServiceRecord, ServiceState
from ..MODELS.service_definition import MountKind
from ..RUNTIME.base import (
    LABEL_PROJECT,
    LABEL_SERVICE,
    ContainerRuntime,
    ContainerSpec,
    ContainerStatus,
    MountSpec,
    NetworkAttachment,
)
from .environment_manager import EnvironmentManager
from .resource_provisioner import ResourceProvisioner

logger = structlog.get_logger()


def _last_result(retry_state):
    return retry_state.outcome.result()


class LifecycleController:
    """
    Drives services through create, start, readiness, stop and removal.
    """
    def __init__(self,
                 manifest: Manifest,
                 runtime: ContainerRuntime,
                 run_state: RunState,
                 provisioner: ResourceProvisioner,
                 settings: Optional[EngineSettings] = None):
        """
        Initializes the controller.

        :param manifest: The loaded manifest.
        :param runtime: The runtime collaborator.
        :param run_state: State table for this invocation.
        :param provisioner: Source of runtime names for networks and volumes.
        :param settings: Timeouts; defaults apply when omitted.
        """
        self.manifest = manifest
        self.runtime = runtime
        self.run_state = run_state
        self.provisioner = provisioner
        self.settings = settings or EngineSettings()
        self.env_manager = EnvironmentManager(manifest.base_dir)

    def container_spec(self, name: str, image: str, anonymous_volumes: List[str]) -> ContainerSpec:
        """
        Translates a service definition into the runtime's container intent.

        :param name: Service name.
        :param image: Resolved image tag.
        :param anonymous_volumes: Runtime names of the service's anonymous volumes,
            one per anonymous mount, in mount order.
        :return: The container spec.
        :raises FileNotFoundError: If an env file is missing.
        """
        svc = self.manifest.services[name]
        environment = self.env_manager.get_merged_environment(svc.environment, svc.env_files)

        mounts: List[MountSpec] = []
        anonymous = iter(anonymous_volumes)
        for mount in svc.volumes:
            if mount.kind == MountKind.NAMED:
                source = self.provisioner.volumes.runtime_name(self.manifest.volumes[mount.source])
                mounts.append(MountSpec(source=source, target=mount.target, read_only=mount.read_only))
            elif mount.kind == MountKind.BIND:
                source = self.provisioner.volumes.prepare_bind_source(mount.source)
                mounts.append(MountSpec(source=source, target=mount.target, read_only=mount.read_only, bind=True))
            else:
                mounts.append(MountSpec(source=next(anonymous), target=mount.target, read_only=mount.read_only))

        networks = [
            NetworkAttachment(
                network=self.provisioner.networks.runtime_name(self.manifest.networks[network]),
                aliases=[name],
            )
            for network in self.manifest.networks_for(name)
        ]

        labels = dict(svc.labels)
        labels[LABEL_PROJECT] = self.manifest.project_name
        labels[LABEL_SERVICE] = name

        return ContainerSpec(
            name=self.manifest.container_name(name),
            image=image,
            command=list(svc.command),
            entrypoint=list(svc.entrypoint),
            environment=environment,
            mounts=mounts,
            networks=networks,
            ports=list(svc.ports),
            working_dir=svc.working_dir,
            tty=svc.tty,
            stdin_open=svc.stdin_open,
            labels=labels,
            healthcheck=svc.healthcheck,
        )

    def _anonymous_volume_names(self, name: str) -> List[str]:
        container_name = self.manifest.container_name(name)
        return [
            self.provisioner.volumes.anonymous_volume_name(container_name, mount.target)
            for mount in self.manifest.services[name].volumes
            if mount.kind == MountKind.ANONYMOUS
        ]

    def create(self, name: str, image: str) -> str:
        """
        pending -> created. Provisions the service's anonymous volumes and asks the
        runtime to materialize the container. Not retried on failure.

        :param name: Service name.
        :param image: Resolved image tag.
        :return: Container id.
        :raises CreationError: If the runtime cannot create the container.
        """
        with self.run_state.exclusive(name) as record:
            if record.container_id and record.state != ServiceState.REMOVED:
                return record.container_id

            failed_in = record.state.value
            container_name = self.manifest.container_name(name)
            created_volumes: List[str] = []
            try:
                for mount in self.manifest.services[name].volumes:
                    if mount.kind == MountKind.ANONYMOUS:
                        created_volumes.append(self.provisioner.volumes.create_anonymous(container_name, mount.target))
                spec = self.container_spec(name, image, created_volumes)
                container_id = self.runtime.create_container(spec)
            except (RuntimeOperationError, OSError, UnicodeDecodeError) as e:
                self._reclaim_volumes(name, created_volumes)
                if isinstance(e, FileNotFoundError):
                    reason = f"env file not found: {e}"
                elif isinstance(e, UnicodeDecodeError):
                    reason = f"env file is not valid UTF-8: {e}"
                else:
                    reason = str(e)
                self.run_state.transition(name, ServiceState.FAILED, error=reason)
                logger.error("service_create_failed", service=name, error=reason)
                raise CreationError(name, failed_in, reason) from e

            record.container_id = container_id
            record.anonymous_volumes = created_volumes
            self.run_state.transition(name, ServiceState.CREATED)
            logger.info("service_created", service=name, container=container_name, image=image)
            return container_id

    def start(self, name: str) -> ContainerStatus:
        """
        created -> starting -> running. Waits for the runtime to report the
        container running.

        :raises ContainerRuntimeError: If the container fails to start or exits.
        """
        with self.run_state.exclusive(name) as record:
            if record.state in (ServiceState.RUNNING, ServiceState.HEALTHY):
                return self.runtime.inspect(record.container_id)

            self.run_state.transition(name, ServiceState.STARTING)
            try:
                self.runtime.start(record.container_id)
                status = self._wait_for_running(record.container_id)
            except RuntimeOperationError as e:
                self._fail(name, "starting", str(e))

            if not status.is_running:
                if status.has_exited:
                    reason = f"exited with code {status.exit_code}"
                else:
                    reason = f"still {status.state} after {self.settings.start_timeout}s"
                self._fail(name, "starting", reason)

            self.run_state.transition(name, ServiceState.RUNNING)
            logger.info("service_running", service=name)
            return status

    def _wait_for_running(self, container_id: str) -> ContainerStatus:
        retrying = Retrying(
            retry=retry_if_result(lambda status: status.state in ("created", "restarting")),
            stop=stop_after_delay(self.settings.start_timeout),
            wait=wait_fixed(self.settings.poll_interval),
            retry_error_callback=_last_result,
        )
        return retrying(self.runtime.inspect, container_id)

    def wait_healthy(self, name: str) -> ContainerStatus:
        """
        running -> healthy. Used when a dependent waits on `service_healthy`.
        A container without a health check counts as healthy once running.

        :raises ContainerRuntimeError: If the service reports unhealthy, exits or times out.
        """
        with self.run_state.exclusive(name) as record:
            if record.state == ServiceState.HEALTHY:
                return self.runtime.inspect(record.container_id)
            if record.state != ServiceState.RUNNING:
                raise ContainerRuntimeError(name, record.state.value, "not running, cannot become healthy")

            retrying = Retrying(
                retry=retry_if_result(lambda status: status.is_running and status.health == "starting"),
                stop=stop_after_delay(self.settings.health_timeout),
                wait=wait_fixed(self.settings.poll_interval),
                retry_error_callback=_last_result,
            )
            try:
                status = retrying(self.runtime.inspect, record.container_id)
            except RuntimeOperationError as e:
                self._fail(name, "running", str(e))

            if status.is_running and status.health is None:
                logger.warning("no_healthcheck", service=name, detail="treating running as healthy")
            elif not status.is_running:
                self._fail(name, "running", f"exited with code {status.exit_code} before becoming healthy")
            elif status.health != "healthy":
                self._fail(name, "running", f"health check reports {status.health}")

            self.run_state.transition(name, ServiceState.HEALTHY)
            logger.info("service_healthy", service=name)
            return status

    def _fail(self, name: str, state: str, reason: str):
        self.run_state.transition(name, ServiceState.FAILED, error=reason)
        logger.error("service_failed", service=name, state=state, error=reason)
        raise ContainerRuntimeError(name, state, reason)

    def refresh(self, name: str) -> ServiceState:
        """
        Re-reads the container's state; a running service whose container has
        exited moves to failed.
        """
        with self.run_state.exclusive(name) as record:
            if record.state in ACTIVE_STATES and record.container_id:
                status = self.runtime.inspect(record.container_id)
                if status.has_exited and record.state != ServiceState.STARTING:
                    self.run_state.transition(name, ServiceState.FAILED,
                                              error=f"exited with code {status.exit_code}")
            return record.state

    def stop(self, name: str) -> Optional[StopTimeout]:
        """
        running -> stopping -> stopped, without removal. Exceeding the grace
        period escalates to a kill; that outcome is returned, not raised.

        :return: A StopTimeout describing the degraded stop, or None.
        :raises ContainerRuntimeError: If the runtime refuses to stop the container.
        """
        with self.run_state.exclusive(name) as record:
            if not record.container_id or record.state in (
                ServiceState.PENDING, ServiceState.STOPPED, ServiceState.REMOVED
            ):
                return None

            was_active = record.state in ACTIVE_STATES
            if record.state == ServiceState.FAILED:
                # An unhealthy container is failed but may still be executing.
                was_active = self.runtime.inspect(record.container_id).is_running
            self.run_state.transition(name, ServiceState.STOPPING)
            if not was_active:
                self.run_state.transition(name, ServiceState.STOPPED)
                return None

            svc = self.manifest.services[name]
            grace = svc.stop_grace_period if svc.stop_grace_period is not None else self.settings.grace_period
            timeout: Optional[StopTimeout] = None
            try:
                graceful = self.runtime.stop(record.container_id, grace)
                if not graceful:
                    self.runtime.kill(record.container_id)
                    timeout = StopTimeout(name, "stopping", f"did not exit within {grace}s, killed")
                    record.degraded = True
                    logger.warning("stop_grace_exceeded", service=name, grace_period=grace)
            except RuntimeOperationError as e:
                self._fail(name, "stopping", str(e))

            self.run_state.transition(name, ServiceState.STOPPED)
            logger.info("service_stopped", service=name)
            return timeout

    def remove(self, name: str) -> bool:
        """
        Removes the container (stopping it first if needed) and reclaims its
        anonymous volumes. Named volumes and bind sources are untouched.

        :return: True if a container was removed.
        :raises ContainerRuntimeError: If the container or its anonymous volumes cannot be removed.
        """
        with self.run_state.exclusive(name) as record:
            if not record.container_id:
                return False
            if record.state in ACTIVE_STATES:
                self.stop(name)

            try:
                self.runtime.remove(record.container_id)
            except RuntimeOperationError as e:
                logger.error("service_remove_failed", service=name, error=str(e))
                raise ContainerRuntimeError(name, record.state.value, str(e)) from e

            volumes = list(record.anonymous_volumes)
            record.container_id = None
            record.anonymous_volumes = []
            self.run_state.transition(name, ServiceState.REMOVED)
            logger.info("service_removed", service=name)

            leftovers = self._reclaim_volumes(name, volumes)
            if leftovers:
                raise ContainerRuntimeError(name, ServiceState.REMOVED.value,
                                            f"could not remove anonymous volumes: {', '.join(leftovers)}")
            return True

    def _reclaim_volumes(self, name: str, volumes: List[str]) -> List[str]:
        leftovers = []
        for volume in volumes:
            try:
                self.provisioner.volumes.remove_anonymous(volume)
            except RuntimeOperationError as e:
                logger.error("anonymous_volume_remove_failed", service=name, volume=volume, error=str(e))
                leftovers.append(volume)
        return leftovers

    def adopt(self, name: str) -> Optional[ServiceRecord]:
        """
        Picks up a container left by an earlier invocation, found by its
        deterministic name, so it can be started, stopped or removed.

        :return: The updated record, or None if no such container exists.
        """
        with self.run_state.exclusive(name) as record:
            if record.container_id:
                return record
            container_id = self.runtime.find_container(self.manifest.container_name(name))
            if container_id is None:
                return None
            status = self.runtime.inspect(container_id)
            if status.is_running:
                state = ServiceState.RUNNING
            elif status.state == "created":
                state = ServiceState.CREATED
            else:
                state = ServiceState.STOPPED
            self.run_state.adopt(name, state, container_id)
            record.anonymous_volumes = self._anonymous_volume_names(name)
            logger.debug("service_adopted", service=name, state=state.value)
            return record
