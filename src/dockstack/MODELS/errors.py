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
Exception hierarchy for manifest loading, provisioning and service lifecycle.

Structural errors (ParseError, CycleDetected) are raised before anything is
sent to the runtime. Per-service errors carry the service name and the
lifecycle state the service was in when it failed.
"""
from enum import Enum
from typing import List, Optional, Sequence


class DockstackError(Exception):
    """Base class for every error raised by dockstack."""


class ParseErrorKind(str, Enum):
    """
    Categories of manifest problems.
    """
    UNDECLARED_DEPENDENCY = "UndeclaredDependency"
    UNDECLARED_VOLUME = "UndeclaredVolume"
    UNDECLARED_NETWORK = "UndeclaredNetwork"
    CYCLIC_DEPENDENCY = "CyclicDependency"
    DUPLICATE_SERVICE_NAME = "DuplicateServiceName"
    MISSING_IMAGE = "MissingImage"
    INVALID_BIND_SOURCE = "InvalidBindSource"
    INVALID_IMAGE_REFERENCE = "InvalidImageReference"
    INVALID_SYNTAX = "InvalidSyntax"


class ParseError(DockstackError):
    """
    The manifest is malformed or internally inconsistent.

    :param kind: What is wrong.
    :param name: The offending service, volume or network name.
    :param detail: Optional extra context.
    """
    def __init__(self, kind: ParseErrorKind, name: str, detail: Optional[str] = None):
        self.kind = kind
        self.name = name
        self.detail = detail
        message = f"{kind.value}: {name}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class CycleDetected(ParseError):
    """
    The depends_on graph contains a cycle; no valid startup order exists.
    """
    def __init__(self, participants: Sequence[str]):
        self.participants: List[str] = list(participants)
        super().__init__(
            ParseErrorKind.CYCLIC_DEPENDENCY,
            ", ".join(self.participants),
            "dependency cycle",
        )


class ProvisioningError(DockstackError):
    """
    A network or named volume could not be ensured. Safe to retry.
    """
    def __init__(self, resource: str, reason: str):
        self.resource = resource
        self.reason = reason
        super().__init__(f"failed to provision {resource}: {reason}")


class RuntimeOperationError(DockstackError):
    """
    Raised by runtime adapters when the container platform rejects a call.
    """


class IllegalTransition(DockstackError):
    """A lifecycle transition that the state machine does not allow."""
    def __init__(self, service: str, current: str, target: str):
        self.service = service
        self.current = current
        self.target = target
        super().__init__(f"service {service}: cannot move from {current} to {target}")


class ServiceError(DockstackError):
    """
    A failure tied to one service and the lifecycle state it happened in.
    """
    def __init__(self, service: str, state: str, reason: str):
        self.service = service
        self.state = state
        self.reason = reason
        super().__init__(f"service {service} failed while {state}: {reason}")


class CreationError(ServiceError):
    """The runtime could not materialize the container (image, mount, port...)."""


class ContainerRuntimeError(ServiceError):
    """The container crashed, exited non-zero or never became ready."""


class StopTimeout(ServiceError):
    """The grace period elapsed before the container exited; it was killed."""


class OperationCancelled(DockstackError):
    """An operator interrupt stopped `up`; services it had started were torn down."""


class PartialFailure(DockstackError):
    """
    Aggregate report for a level in which one or more services failed.

    :param failures: Every per-service error collected for the level.
    :param skipped: Services that were never attempted because of the failures.
    """
    def __init__(self, failures: Sequence[ServiceError], skipped: Sequence[str] = ()):
        self.failures = list(failures)
        self.skipped = list(skipped)
        lines = [f"{len(self.failures)} service(s) failed:"]
        for failure in self.failures:
            lines.append(f"  - {failure.service} [{failure.state}]: {failure.reason}")
        if self.skipped:
            lines.append(f"  not started: {', '.join(self.skipped)}")
        super().__init__("\n".join(lines))

    @property
    def services(self) -> List[str]:
        """Names of the failed services, in report order."""
        return [failure.service for failure in self.failures]
