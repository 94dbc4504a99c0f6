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
Runtime adapter that drives the `docker` command line client.
"""
import json
import shlex
import subprocess
from typing import Dict, Iterator, List, Optional

import structlog

from ..MODELS.errors import RuntimeOperationError
from .base import ContainerRuntime, ContainerSpec, ContainerStatus, ResourceInfo

logger = structlog.get_logger()

# Exit code docker reports for a container terminated by SIGKILL.
_SIGKILL_EXIT = 137


class DockerCliRuntime(ContainerRuntime):
    """
    Issues runtime intents as `docker` subcommands.
    """
    def __init__(self, binary: str = "docker", timeout: float = 120.0, build_timeout: float = 3600.0):
        """
        :param binary: Name or path of the docker client.
        :param timeout: Seconds to wait for ordinary commands.
        :param build_timeout: Seconds to wait for image pulls and builds.
        """
        self.binary = binary
        self.timeout = timeout
        self.build_timeout = build_timeout

    def _run(self, args: List[str], timeout: Optional[float] = None, check: bool = True) -> subprocess.CompletedProcess:
        command = [self.binary] + args
        logger.debug("docker_command", command=shlex.join(command))
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=timeout or self.timeout,
                # Avoid shell=True for security reasons (CWE-78)
                shell=False,
            )
        except FileNotFoundError as e:
            raise RuntimeOperationError(f"docker client not found: {self.binary}") from e
        except subprocess.TimeoutExpired as e:
            raise RuntimeOperationError(f"'{' '.join(args[:2])}' timed out after {e.timeout}s") from e
        if check and result.returncode != 0:
            message = (result.stderr or result.stdout).strip() or f"exit code {result.returncode}"
            raise RuntimeOperationError(f"docker {args[0]} failed: {message}")
        return result

    def create_container(self, spec: ContainerSpec) -> str:
        args = ["create", "--name", spec.name]
        for key, value in spec.labels.items():
            args += ["--label", f"{key}={value}"]
        for key, value in spec.environment.items():
            args += ["--env", f"{key}={value}"]
        for mount in spec.mounts:
            volume = f"{mount.source}:{mount.target}"
            if mount.read_only:
                volume += ":ro"
            args += ["--volume", volume]
        for port in spec.ports:
            published = f"{port.host_port}:" if port.host_port is not None else ""
            if port.host_ip:
                published = f"{port.host_ip}:{published or ':'}"
            args += ["--publish", f"{published}{port.container_port}/{port.protocol}"]
        if spec.networks:
            first = spec.networks[0]
            args += ["--network", first.network]
            for alias in first.aliases:
                args += ["--network-alias", alias]
        if spec.working_dir:
            args += ["--workdir", spec.working_dir]
        if spec.tty:
            args.append("--tty")
        if spec.stdin_open:
            args.append("--interactive")
        if spec.healthcheck:
            args += self._healthcheck_args(spec)

        command = list(spec.command)
        if spec.entrypoint:
            args += ["--entrypoint", spec.entrypoint[0]]
            command = list(spec.entrypoint[1:]) + command
        args.append(spec.image)
        args += command

        container_id = self._run(args).stdout.strip()

        try:
            for attachment in spec.networks[1:]:
                connect = ["network", "connect"]
                for alias in attachment.aliases:
                    connect += ["--alias", alias]
                self._run(connect + [attachment.network, container_id])
        except RuntimeOperationError:
            # A half-wired container would be adopted by name on the next run.
            self._run(["rm", "--force", container_id], check=False)
            logger.warning("container_discarded", container=spec.name, reason="network connect failed")
            raise
        return container_id

    @staticmethod
    def _healthcheck_args(spec: ContainerSpec) -> List[str]:
        hc = spec.healthcheck
        test = list(hc.test)
        if test[0] == "CMD-SHELL":
            cmd = " ".join(test[1:])
        elif test[0] == "CMD":
            cmd = shlex.join(test[1:])
        elif test[0] == "NONE":
            return ["--no-healthcheck"]
        else:
            cmd = shlex.join(test)
        return [
            "--health-cmd", cmd,
            "--health-interval", f"{hc.interval}s",
            "--health-timeout", f"{hc.timeout}s",
            "--health-retries", str(hc.retries),
            "--health-start-period", f"{hc.start_period}s",
        ]

    def start(self, container_id: str) -> None:
        self._run(["start", container_id])

    def stop(self, container_id: str, grace_seconds: float) -> bool:
        grace = max(0, int(round(grace_seconds)))
        self._run(["stop", "--time", str(grace), container_id], timeout=self.timeout + grace)
        status = self.inspect(container_id)
        return status.exit_code != _SIGKILL_EXIT

    def kill(self, container_id: str) -> None:
        result = self._run(["kill", container_id], check=False)
        if result.returncode != 0 and "is not running" not in result.stderr:
            raise RuntimeOperationError(f"docker kill failed: {result.stderr.strip()}")

    def remove(self, container_id: str) -> None:
        self._run(["rm", "--force", container_id])

    def inspect(self, container_id: str) -> ContainerStatus:
        raw = self._run(["inspect", "--format", "{{json .State}}", container_id]).stdout
        try:
            state = json.loads(raw)
        except json.JSONDecodeError as e:
            raise RuntimeOperationError(f"unreadable state for {container_id}: {raw!r}") from e
        health = (state.get("Health") or {}).get("Status")
        return ContainerStatus(
            state=(state.get("Status") or "unknown").lower(),
            exit_code=state.get("ExitCode"),
            health=health,
        )

    def find_container(self, name: str) -> Optional[str]:
        result = self._run(
            ["ps", "--all", "--quiet", "--no-trunc", "--filter", f"name=^/?{name}$"],
        )
        ids = result.stdout.split()
        return ids[0] if ids else None

    def create_network(self, name: str, driver: str, labels: Dict[str, str]) -> str:
        args = ["network", "create", "--driver", driver]
        for key, value in labels.items():
            args += ["--label", f"{key}={value}"]
        return self._run(args + [name]).stdout.strip()

    def find_network(self, name: str) -> Optional[ResourceInfo]:
        return self._find_resource("network", name)

    def remove_network(self, name: str) -> None:
        self._run(["network", "rm", name])

    def create_volume(self, name: str, driver: str, labels: Dict[str, str]) -> str:
        args = ["volume", "create", "--driver", driver]
        for key, value in labels.items():
            args += ["--label", f"{key}={value}"]
        return self._run(args + [name]).stdout.strip()

    def find_volume(self, name: str) -> Optional[ResourceInfo]:
        return self._find_resource("volume", name)

    def remove_volume(self, name: str) -> None:
        self._run(["volume", "rm", name])

    def _find_resource(self, kind: str, name: str) -> Optional[ResourceInfo]:
        result = self._run([kind, "inspect", name], check=False)
        if result.returncode != 0:
            return None
        try:
            data = json.loads(result.stdout)[0]
        except (json.JSONDecodeError, IndexError) as e:
            raise RuntimeOperationError(f"unreadable {kind} inspect output for {name}") from e
        return ResourceInfo(
            id=data.get("Id") or data.get("Name") or name,
            name=data.get("Name") or name,
            driver=data.get("Driver") or "",
            labels=data.get("Labels") or {},
        )

    def image_exists(self, reference: str) -> bool:
        return self._run(["image", "inspect", reference], check=False).returncode == 0

    def pull_image(self, reference: str) -> None:
        self._run(["pull", reference], timeout=self.build_timeout)

    def build_image(self, context: str, tag: str, dockerfile: Optional[str] = None,
                    args: Optional[Dict[str, str]] = None) -> None:
        command = ["build", "--tag", tag]
        if dockerfile:
            command += ["--file", dockerfile]
        for key, value in (args or {}).items():
            command += ["--build-arg", f"{key}={value}"]
        self._run(command + [context], timeout=self.build_timeout)

    def stream_logs(self, container_id: str, follow: bool = True) -> Iterator[bytes]:
        command = [self.binary, "logs"]
        if follow:
            command.append("--follow")
        command.append(container_id)
        process = subprocess.Popen(command, stdout=subprocess.PIPE, stderr=subprocess.STDOUT)
        try:
            for line in iter(process.stdout.readline, b""):
                yield line
        finally:
            if process.poll() is None:
                process.terminate()
                process.wait(timeout=5)
            process.stdout.close()
