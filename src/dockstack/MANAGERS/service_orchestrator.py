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
Orchestration of a whole stack: up, stop and down, level by level.
"""
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Optional

from ..BUILDERS.image_builder import ImageBuilder
from ..MODELS.engine_settings import EngineSettings
from ..MODELS.errors import (
    ContainerRuntimeError,
    CreationError,
    DockstackError,
    OperationCancelled,
    PartialFailure,
    ProvisioningError,
    ServiceError,
    StopTimeout,
)
from ..MODELS.manifest import Manifest
from ..MODELS.run_state import RunState, ServiceState
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..RUNTIME.base import ContainerRuntime
from ..UTILS.logging_setup import bind_context
from .lifecycle_controller import LifecycleController
from .log_aggregator import LogAggregator
from .resource_provisioner import ResourceProvisioner


class ServiceOrchestrator:
    """
    Orchestrates multiple services based on their dependencies.

    Services inside a level run concurrently on a bounded worker pool; the
    next level starts only after every service of the current one is running
    (or healthy, when a dependent asks for it).
    """
    def __init__(self,
                 manifest: Manifest,
                 runtime: ContainerRuntime,
                 settings: Optional[EngineSettings] = None):
        """
        Initializes the orchestrator.

        :param manifest: The loaded manifest.
        :param runtime: The runtime collaborator.
        :param settings: Engine timeouts and worker limits.
        """
        self.manifest = manifest
        self.runtime = runtime
        self.settings = settings or EngineSettings()
        self.resolver = DependencyResolver()
        self.run_state = RunState(manifest.service_names)
        self.provisioner = ResourceProvisioner(runtime, manifest.project_name)
        self.controller = LifecycleController(manifest, runtime, self.run_state, self.provisioner, self.settings)
        self.image_builder = ImageBuilder(runtime)
        self.last_startup_order: List[List[str]] = []
        self._images: Dict[str, str] = {}
        self.degraded: List[StopTimeout] = []
        self._cancel = threading.Event()
        self.log = bind_context(project=manifest.project_name)

    @property
    def levels(self) -> List[List[str]]:
        return self.resolver.order(self.manifest)

    def cancel(self):
        """
        Asks a running `up` to stop after the in-flight operations of the current level.
        """
        self._cancel.set()

    def up(self,
           detached: bool = True,
           build: bool = False,
           log_sink: Optional[Callable[[str], None]] = None) -> Dict[str, ServiceState]:
        """
        Provisions shared resources, then brings services up level by level.

        :param detached: Return once services are up instead of following output.
        :param build: Rebuild services that have a build context.
        :param log_sink: Receives output lines when attached.
        :return: The state of every service.
        :raises CycleDetected: Before any side effect, if no ordering exists.
        :raises ProvisioningError: If a network or volume cannot be ensured.
        :raises PartialFailure: If some services failed; later levels are not started.
        :raises OperationCancelled: If `cancel()` was called or the operator interrupted.
        """
        levels = self.levels
        self._cancel.clear()
        self.log.info("up", levels=levels, build=build)

        self._resolve_images(build)
        self.provisioner.provision(self.manifest)

        started: List[List[str]] = []
        failures: List[ServiceError] = []
        try:
            for index, level in enumerate(levels):
                if self._cancel.is_set():
                    break
                succeeded, level_failures = self._run_level(level, lambda name: self._bring_up(name, build))
                if succeeded:
                    started.append(succeeded)
                if level_failures:
                    failures.extend(level_failures)
                    skipped = [name for later in levels[index + 1:] for name in later]
                    self.last_startup_order = started
                    blocked = {dependent
                               for failure in level_failures
                               for dependent in self.resolver.dependents(self.manifest, failure.service)}
                    self.log.error("up_aborted",
                                   failed=self.run_state.in_states(ServiceState.FAILED),
                                   blocked=[name for name in skipped if name in blocked],
                                   skipped=skipped)
                    raise PartialFailure(failures, skipped=skipped)
        except KeyboardInterrupt:
            self._cancel.set()

        if self._cancel.is_set():
            self.log.warning("up_cancelled", tearing_down=DependencyResolver.flatten(started))
            self._teardown(started)
            raise OperationCancelled("up was interrupted; services started by this run were removed")

        self.last_startup_order = started
        self.log.info("up_complete", services=DependencyResolver.flatten(started))

        if not detached and started:
            self.attach(started[-1][-1], log_sink)
        return self.run_state.snapshot()

    def _resolve_images(self, build: bool):
        """
        Builds, then pulls, the image of every service before any container exists.

        :raises PartialFailure: If an image cannot be resolved; nothing is created.
        """
        names = self.manifest.service_names
        builds = [name for name in names if self.manifest.services[name].build is not None]
        pulls = [name for name in names if name not in builds]

        self._images = {}
        failures: List[ServiceError] = []
        for name in builds + pulls:
            try:
                self._images[name] = self.image_builder.resolve(self.manifest, name, build=build)
            except CreationError as e:
                if self.run_state.record(name).container_id is None:
                    self.run_state.transition(name, ServiceState.FAILED, error=e.reason)
                failures.append(e)

        if failures:
            failed = {f.service for f in failures}
            skipped = [name for name in names if name not in failed]
            self.log.error("image_resolution_failed", failed=sorted(failed))
            raise PartialFailure(failures, skipped=skipped)

    def _bring_up(self, name: str, build: bool) -> bool:
        """
        Create (unless a container is adopted), start and, if a dependent needs it, health.

        :return: False if the service was skipped because of cancellation.
        """
        if self._cancel.is_set():
            return False
        svc = self.manifest.services[name]
        record = self.controller.adopt(name)
        if record is not None and build and svc.build is not None:
            # Rebuilt image: the old container must go.
            self.controller.remove(name)
            record = None
        if record is None or record.container_id is None:
            self.controller.create(name, self._images[name])
        if self._cancel.is_set():
            return True
        self.controller.start(name)
        if any(other.requires_healthy(name) for other in self.manifest.services.values()):
            self.controller.wait_healthy(name)
        return True

    def _run_level(self, level: List[str], operation: Callable[[str], object]):
        """
        Runs `operation` for every service in a level on the worker pool and waits
        for all of them, bounded by the level timeout.

        :return: (services whose operation succeeded, per-service errors)
        """
        succeeded: List[str] = []
        failures: List[ServiceError] = []
        if not level:
            return succeeded, failures

        pool = ThreadPoolExecutor(max_workers=min(self.settings.max_workers, len(level)),
                                  thread_name_prefix="dockstack")
        futures: Dict[Future, str] = {pool.submit(operation, name): name for name in level}
        try:
            done, not_done = wait(futures, timeout=self.settings.level_timeout)
        except KeyboardInterrupt:
            self._cancel.set()
            done, not_done = wait(futures, timeout=self.settings.level_timeout)
        pool.shutdown(wait=not not_done, cancel_futures=True)
        if not_done:
            # These workers keep running; their final state may still change.
            in_flight = {futures[future] for future in not_done}
            self.log.warning("level_timed_out",
                             timeout=self.settings.level_timeout,
                             in_flight=[name for name in level if name in in_flight])

        unexpected: Optional[BaseException] = None
        for future in futures:
            name = futures[future]
            if future in not_done:
                state = self.run_state.state(name).value
                failures.append(ContainerRuntimeError(
                    name, state, f"no result after {self.settings.level_timeout}s"))
                continue
            error = future.exception()
            if error is None:
                if future.result() is not False:
                    succeeded.append(name)
            elif isinstance(error, ServiceError):
                failures.append(error)
            elif isinstance(error, DockstackError):
                failures.append(ContainerRuntimeError(name, self.run_state.state(name).value, str(error)))
            elif unexpected is None:
                unexpected = error

        if unexpected is not None:
            raise unexpected
        return [name for name in level if name in succeeded], failures

    def attach(self, name: str, log_sink: Optional[Callable[[str], None]] = None) -> int:
        """
        Follows a service's output until the stream ends or the run is cancelled.
        """
        record = self.run_state.record(name)
        if not record.container_id:
            return 0
        aggregator = LogAggregator(self.runtime, sink=log_sink or print)
        self.log.info("attached", service=name)
        return aggregator.follow({name: record.container_id}, stop_event=self._cancel)

    def _teardown_levels(self) -> List[List[str]]:
        # Full levels, not only last_startup_order: a service that failed to
        # start may still own a container.
        return self.resolver.teardown_order(self.levels)

    def _adopt_all(self):
        for name in self.manifest.service_names:
            self.controller.adopt(name)

    def _teardown(self, started: List[List[str]]):
        for level in self.resolver.teardown_order(started):
            self._run_level(level, self.controller.remove)

    def stop(self) -> List[StopTimeout]:
        """
        Stops every service without removing it, dependents first. Networks and
        volumes are untouched.

        :return: Services whose grace period ran out and had to be killed.
        :raises PartialFailure: If some services could not be stopped.
        """
        self._adopt_all()
        order = self._teardown_levels()
        self.log.info("stop", order=order)

        failures: List[ServiceError] = []
        self.degraded = []
        for level in order:
            results: Dict[str, Optional[StopTimeout]] = {}

            def stop_one(name: str):
                results[name] = self.controller.stop(name)

            _, level_failures = self._run_level(level, stop_one)
            failures.extend(level_failures)
            self.degraded.extend(timeout for timeout in results.values() if timeout is not None)

        if failures:
            raise PartialFailure(failures)
        return self.degraded

    def down(self, remove_volumes: bool = False) -> Dict[str, ServiceState]:
        """
        Stops and removes every service, then removes the project's networks and,
        when asked, its named volumes. Anonymous volumes always go with their container.

        :param remove_volumes: Also delete named volumes and their data.
        :return: The final state of every service.
        :raises PartialFailure: If some services could not be stopped or removed.
        :raises ProvisioningError: If a network or volume could not be removed.
        """
        order = self._teardown_levels()
        failures: List[ServiceError] = []
        try:
            self.stop()
        except PartialFailure as e:
            failures.extend(e.failures)

        for level in order:
            _, level_failures = self._run_level(level, self.controller.remove)
            failures.extend(level_failures)

        resource_errors = self.provisioner.release_networks(self.manifest)
        if remove_volumes:
            resource_errors += self.provisioner.release_volumes(self.manifest)

        self.last_startup_order = []
        self.log.info("down_complete", remove_volumes=remove_volumes)

        if failures:
            raise PartialFailure(failures)
        if resource_errors:
            raise ProvisioningError(
                ", ".join(error.resource for error in resource_errors),
                "; ".join(error.reason for error in resource_errors),
            )
        return self.run_state.snapshot()

    def ps(self) -> Dict[str, str]:
        """
        Returns the status of all services.

        :return: Service names and their states.
        """
        self._adopt_all()
        for name in self.manifest.service_names:
            self.controller.refresh(name)
        return {name: state.value for name, state in self.run_state.snapshot().items()}
