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
Per-invocation table of service lifecycle states.

Nothing here is persisted; a new process starts with every service pending and
learns about existing containers only by asking the runtime.
"""
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Set

from .errors import IllegalTransition


class ServiceState(str, Enum):
    """Lifecycle state of one service instance."""

    PENDING = "pending"
    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    HEALTHY = "healthy"
    FAILED = "failed"
    STOPPING = "stopping"
    STOPPED = "stopped"
    REMOVED = "removed"


_TRANSITIONS: Dict[ServiceState, Set[ServiceState]] = {
    ServiceState.PENDING: {ServiceState.CREATED, ServiceState.FAILED},
    ServiceState.CREATED: {ServiceState.STARTING, ServiceState.STOPPING, ServiceState.REMOVED, ServiceState.FAILED},
    ServiceState.STARTING: {ServiceState.RUNNING, ServiceState.FAILED},
    ServiceState.RUNNING: {ServiceState.HEALTHY, ServiceState.FAILED, ServiceState.STOPPING},
    ServiceState.HEALTHY: {ServiceState.FAILED, ServiceState.STOPPING},
    ServiceState.FAILED: {
        ServiceState.FAILED,
        ServiceState.CREATED,
        ServiceState.STARTING,
        ServiceState.STOPPING,
        ServiceState.REMOVED,
    },
    ServiceState.STOPPING: {ServiceState.STOPPED, ServiceState.FAILED},
    ServiceState.STOPPED: {ServiceState.STARTING, ServiceState.STOPPING, ServiceState.REMOVED},
    ServiceState.REMOVED: {ServiceState.CREATED, ServiceState.FAILED},
}

# States in which a container exists and is (or may be) executing.
ACTIVE_STATES = frozenset({ServiceState.STARTING, ServiceState.RUNNING, ServiceState.HEALTHY})


def can_transition(current: ServiceState, target: ServiceState) -> bool:
    return target in _TRANSITIONS[current]


@dataclass
class ServiceRecord:
    """Live bookkeeping for a single service."""

    name: str
    state: ServiceState = ServiceState.PENDING
    container_id: Optional[str] = None
    anonymous_volumes: List[str] = field(default_factory=list)
    error: Optional[str] = None
    degraded: bool = False
    history: List[ServiceState] = field(default_factory=list)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)


class RunState:
    """
    Tracks the state of every service for the current invocation.

    Only the lifecycle controller mutates records, and only while holding the
    record's lock via `exclusive()`.
    """

    def __init__(self, service_names: List[str]):
        self._records: Dict[str, ServiceRecord] = {
            name: ServiceRecord(name=name, history=[ServiceState.PENDING]) for name in service_names
        }

    def __contains__(self, name: str) -> bool:
        return name in self._records

    def record(self, name: str) -> ServiceRecord:
        return self._records[name]

    def state(self, name: str) -> ServiceState:
        return self._records[name].state

    @contextmanager
    def exclusive(self, name: str) -> Iterator[ServiceRecord]:
        """
        Holds the per-service lock for the duration of a lifecycle operation.
        """
        record = self._records[name]
        with record.lock:
            yield record

    def transition(self, name: str, target: ServiceState, error: Optional[str] = None) -> ServiceRecord:
        """
        Moves a service to `target`.

        :raises IllegalTransition: If the state machine does not allow the move.
        """
        record = self._records[name]
        with record.lock:
            if not can_transition(record.state, target):
                raise IllegalTransition(name, record.state.value, target.value)
            record.state = target
            record.history.append(target)
            if target == ServiceState.FAILED:
                record.error = error
            elif error is None and target in (ServiceState.CREATED, ServiceState.STARTING):
                record.error = None
            return record

    def adopt(self, name: str, target: ServiceState, container_id: str) -> ServiceRecord:
        """
        Records a container that already existed before this invocation.
        """
        record = self._records[name]
        with record.lock:
            record.container_id = container_id
            if record.state != target:
                record.state = target
                record.history.append(target)
            return record

    def snapshot(self) -> Dict[str, ServiceState]:
        """Current state of every service, in declaration order."""
        return {name: record.state for name, record in self._records.items()}

    def in_states(self, *states: ServiceState) -> List[str]:
        return [name for name, record in self._records.items() if record.state in states]
