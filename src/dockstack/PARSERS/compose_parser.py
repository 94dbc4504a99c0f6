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
Parsers for compose-style YAML manifests.
"""
import os
import re
import shlex
from collections.abc import Hashable
from typing import Dict, Any, List, Optional, Tuple

import structlog
import yaml
from dotenv import dotenv_values

from ..MODELS.errors import ParseError, ParseErrorKind
from ..MODELS.manifest import (
    DEFAULT_NETWORK,
    Manifest,
    NetworkDefinition,
    VolumeDefinition,
    normalize_project_name,
)
from ..MODELS.service_definition import (
    BuildSpec,
    Dependency,
    DependencyCondition,
    HealthCheck,
    MountKind,
    PortMapping,
    ServiceDefinition,
    VolumeMount,
)
from ..REGISTRY.image_reference import ImageReference
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..UTILS.string_interpolation import EnvironmentInterpolator, InterpolationError, merged_context

logger = structlog.get_logger()

_DURATION = re.compile(r"(\d+(?:\.\d+)?)(us|ms|s|m|h)")
_DURATION_UNITS = {"us": 1e-6, "ms": 1e-3, "s": 1.0, "m": 60.0, "h": 3600.0}


class _DuplicateKey(Exception):
    def __init__(self, key: Any, line: int):
        self.key = key
        self.line = line


class _UniqueKeyLoader(yaml.SafeLoader):
    """
    SafeLoader that rejects mappings with repeated keys instead of keeping the last one.
    """
    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            # Merge keys (<<) legitimately repeat and override keys.
            if key_node.tag == 'tag:yaml.org,2002:merge':
                continue
            key = self.construct_object(key_node, deep=deep)
            if not isinstance(key, Hashable):
                continue
            if key in seen:
                raise _DuplicateKey(key, key_node.start_mark.line + 1)
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def parse_duration(value: Any) -> float:
    """
    Converts compose durations ("10s", "1m30s", "500ms") or plain numbers to seconds.

    :raises ValueError: If the value is not a duration.
    """
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = str(value).strip()
    if not text:
        raise ValueError("empty duration")
    matches = list(_DURATION.finditer(text))
    if not matches or "".join(m.group(0) for m in matches) != text:
        raise ValueError(f"invalid duration {value!r}")
    return sum(float(m.group(1)) * _DURATION_UNITS[m.group(2)] for m in matches)


class ComposeParser:
    """
    Parser for compose manifests. Produces an immutable, validated Manifest.
    """
    def __init__(self, context: Optional[Dict[str, str]] = None, project_name: Optional[str] = None):
        """
        Initializes the parser with an optional environment context for interpolation.

        :param context: Variables for interpolation. Defaults to os.environ.
        :param project_name: Overrides the project name derived from the manifest or directory.
        """
        self.context = context
        self.project_name = project_name
        self.resolver = DependencyResolver()

    def parse(self, compose_path: str) -> Manifest:
        """
        Parses a compose file from a path. Relative paths inside the file resolve
        against the file's directory, and a `.env` file there feeds interpolation.

        :param compose_path: Path to the compose file.
        :return: Parsed manifest.
        """
        if not os.path.isfile(compose_path):
            raise ParseError(ParseErrorKind.INVALID_SYNTAX, compose_path, "file not found")
        with open(compose_path, 'r', encoding='utf-8') as f:
            content = f.read()
        return self.parse_from_string(content, base_dir=os.path.dirname(os.path.abspath(compose_path)))

    def parse_from_string(self, content: str, base_dir: str = ".") -> Manifest:
        """
        Parses a compose document from a string.

        :param content: YAML content of the compose file.
        :param base_dir: Directory that relative paths resolve against.
        :return: Parsed manifest.
        """
        try:
            data = self._load_yaml(content)
        except _DuplicateKey as e:
            raise ParseError(ParseErrorKind.INVALID_SYNTAX, str(e.key), f"duplicate key on line {e.line}")
        except (yaml.YAMLError, ValueError) as e:
            # Scalars such as out-of-range timestamps fail with a plain ValueError.
            raise ParseError(ParseErrorKind.INVALID_SYNTAX, "<document>", str(e))

        return self.load(data, base_dir=base_dir)

    def _load_yaml(self, content: str) -> Any:
        loader = _UniqueKeyLoader(content)
        try:
            root = loader.get_single_node()
            if root is None:
                return {}
            self._check_duplicate_services(root)
            return loader.construct_document(root)
        finally:
            loader.dispose()

    def load(self, definition: Any, base_dir: str = ".") -> Manifest:
        """
        Validates an already-decoded definition and builds the Manifest.
        Has no side effects.

        :param definition: The decoded document (a mapping).
        :param base_dir: Directory that relative paths resolve against.
        :return: Parsed manifest.
        :raises ParseError: If the definition is malformed or inconsistent.
        """
        if definition is None:
            definition = {}
        if not isinstance(definition, dict):
            raise ParseError(ParseErrorKind.INVALID_SYNTAX, "<document>", "top level must be a mapping")

        base_dir = os.path.abspath(base_dir)
        context = self._interpolation_context(base_dir)
        try:
            data = EnvironmentInterpolator.interpolate_tree(definition, context)
        except InterpolationError as e:
            raise ParseError(ParseErrorKind.INVALID_SYNTAX, e.variable, e.message or "required variable is not set")

        try:
            manifest = self._build_manifest(data, base_dir, context)
        except (TypeError, ValueError, AttributeError) as e:
            # A value of the wrong shape somewhere below a section; pydantic errors are ValueErrors.
            detail = str(e).splitlines()[0] if str(e) else type(e).__name__
            raise ParseError(ParseErrorKind.INVALID_SYNTAX, "<document>", detail)
        self._validate(manifest)
        logger.debug("manifest_loaded", project=manifest.project_name, services=manifest.service_names)
        return manifest

    def _build_manifest(self, data: Dict[str, Any], base_dir: str, context: Dict[str, str]) -> Manifest:
        raw_services = data.get('services') or {}
        if not isinstance(raw_services, dict):
            raise ParseError(ParseErrorKind.INVALID_SYNTAX, "services", "must be a mapping")

        networks = self._parse_networks(data.get('networks'))
        volumes = self._parse_volumes(data.get('volumes'))

        services: Dict[str, ServiceDefinition] = {}
        for name, spec in raw_services.items():
            name = str(name)
            services[name] = self._parse_service(name, spec, base_dir, context)

        if any(not svc.networks for svc in services.values()) and DEFAULT_NETWORK not in networks:
            networks[DEFAULT_NETWORK] = NetworkDefinition(name=DEFAULT_NETWORK)

        return Manifest(
            project_name=self._project_name(data, base_dir, context),
            services=services,
            networks=networks,
            volumes=volumes,
            base_dir=base_dir,
        )

    def _interpolation_context(self, base_dir: str) -> Dict[str, str]:
        if self.context is not None:
            return dict(self.context)
        dotenv_path = os.path.join(base_dir, ".env")
        file_values = dotenv_values(dotenv_path) if os.path.isfile(dotenv_path) else {}
        return merged_context(file_values, dict(os.environ))

    def _project_name(self, data: Dict[str, Any], base_dir: str, context: Dict[str, str]) -> str:
        raw = (
            self.project_name
            or data.get('name')
            or context.get('DOCKSTACK_PROJECT_NAME')
            or os.path.basename(base_dir)
        )
        return normalize_project_name(str(raw))

    def _check_duplicate_services(self, root: yaml.Node):
        """
        Looks for repeated keys directly under `services` before construction,
        so they are reported as duplicate services rather than plain syntax errors.
        """
        if not isinstance(root, yaml.MappingNode):
            return
        for key_node, value_node in root.value:
            if key_node.value != 'services' or not isinstance(value_node, yaml.MappingNode):
                continue
            seen = set()
            for service_key, _ in value_node.value:
                if not isinstance(service_key, yaml.ScalarNode):
                    continue
                if service_key.value in seen:
                    raise ParseError(ParseErrorKind.DUPLICATE_SERVICE_NAME, service_key.value)
                seen.add(service_key.value)

    def _parse_networks(self, raw: Any) -> Dict[str, NetworkDefinition]:
        networks: Dict[str, NetworkDefinition] = {}
        for name, spec in self._named_entries(raw, "networks").items():
            spec = spec or {}
            networks[name] = NetworkDefinition(
                name=name,
                driver=spec.get('driver') or "bridge",
                external=bool(spec.get('external', False)),
                labels=self._to_map(spec.get('labels'), f"networks.{name}.labels"),
            )
        return networks

    def _parse_volumes(self, raw: Any) -> Dict[str, VolumeDefinition]:
        volumes: Dict[str, VolumeDefinition] = {}
        for name, spec in self._named_entries(raw, "volumes").items():
            spec = spec or {}
            volumes[name] = VolumeDefinition(
                name=name,
                driver=spec.get('driver') or "local",
                external=bool(spec.get('external', False)),
                labels=self._to_map(spec.get('labels'), f"volumes.{name}.labels"),
            )
        return volumes

    def _named_entries(self, raw: Any, section: str) -> Dict[str, Dict[str, Any]]:
        if raw is None:
            return {}
        if not isinstance(raw, dict):
            raise ParseError(ParseErrorKind.INVALID_SYNTAX, section, "must be a mapping")
        entries = {}
        for name, spec in raw.items():
            if spec is not None and not isinstance(spec, dict):
                raise ParseError(ParseErrorKind.INVALID_SYNTAX, f"{section}.{name}", "must be a mapping")
            entries[str(name)] = spec
        return entries

    def _parse_service(self, name: str, spec: Any, base_dir: str, context: Dict[str, str]) -> ServiceDefinition:
        """
        Parses a single service definition from a compose file.

        :param name: The name of the service.
        :param spec: The service specification dictionary.
        :param base_dir: Directory that relative paths resolve against.
        :param context: Interpolation context, used for bare environment entries.
        :return: A ServiceDefinition instance.
        """
        if spec is None:
            spec = {}
        if not isinstance(spec, dict):
            raise ParseError(ParseErrorKind.INVALID_SYNTAX, name, "service definition must be a mapping")

        image = spec.get('image')
        build = self._parse_build(name, spec.get('build'), base_dir)
        if not image and build is None:
            raise ParseError(ParseErrorKind.MISSING_IMAGE, name, "service needs 'image' or 'build'")
        if image is not None:
            image = str(image)
            if not ImageReference.is_valid(image):
                raise ParseError(ParseErrorKind.INVALID_IMAGE_REFERENCE, name, image)

        grace = spec.get('stop_grace_period')
        try:
            stop_grace_period = parse_duration(grace) if grace is not None else None
        except ValueError as e:
            raise ParseError(ParseErrorKind.INVALID_SYNTAX, name, f"stop_grace_period: {e}")

        return ServiceDefinition(
            name=name,
            image=image,
            build=build,
            command=self._to_command(spec.get('command')),
            entrypoint=self._to_command(spec.get('entrypoint')),
            working_dir=spec.get('working_dir'),
            stdin_open=bool(spec.get('stdin_open', False)),
            tty=bool(spec.get('tty', False)),
            container_name=spec.get('container_name'),
            environment=self._parse_environment(name, spec.get('environment'), context),
            env_files=self._parse_env_files(name, spec.get('env_file'), base_dir),
            ports=self._parse_ports(name, spec.get('ports')),
            networks=self._parse_service_networks(name, spec.get('networks')),
            volumes=self._parse_mounts(name, spec.get('volumes'), base_dir),
            depends_on=self._parse_depends_on(name, spec.get('depends_on')),
            healthcheck=self._parse_healthcheck(name, spec.get('healthcheck')),
            stop_grace_period=stop_grace_period,
            labels=self._to_map(spec.get('labels'), f"{name}.labels"),
        )

    def _parse_build(self, name: str, raw: Any, base_dir: str) -> Optional[BuildSpec]:
        if raw is None:
            return None
        if isinstance(raw, str):
            return BuildSpec(context=self._host_path(raw, base_dir))
        if isinstance(raw, dict):
            context = self._host_path(raw.get('context') or ".", base_dir)
            dockerfile = raw.get('dockerfile')
            # The docker client resolves --file against its working directory, not the context.
            return BuildSpec(
                context=context,
                dockerfile=self._host_path(str(dockerfile), context) if dockerfile else None,
                args=self._to_map(raw.get('args'), f"{name}.build.args"),
            )
        raise ParseError(ParseErrorKind.INVALID_SYNTAX, name, "build must be a path or a mapping")

    def _parse_environment(self, name: str, raw: Any, context: Dict[str, str]) -> Dict[str, str]:
        environment: Dict[str, str] = {}
        if raw is None:
            return environment
        if isinstance(raw, list):
            for entry in raw:
                entry = str(entry)
                if '=' in entry:
                    key, value = entry.split('=', 1)
                    environment[key] = value
                elif entry in context:
                    # A bare name passes the value through from the caller's environment.
                    environment[entry] = context[entry]
        elif isinstance(raw, dict):
            for key, value in raw.items():
                if value is None:
                    if key in context:
                        environment[str(key)] = context[key]
                    continue
                environment[str(key)] = self._scalar(value)
        else:
            raise ParseError(ParseErrorKind.INVALID_SYNTAX, name, "environment must be a list or mapping")
        return environment

    def _parse_env_files(self, name: str, raw: Any, base_dir: str) -> List[str]:
        paths: List[str] = []
        entries = raw if isinstance(raw, list) else ([] if raw is None else [raw])
        for entry in entries:
            required = True
            if isinstance(entry, dict):
                required = bool(entry.get('required', True))
                entry = entry.get('path')
            if not entry:
                raise ParseError(ParseErrorKind.INVALID_SYNTAX, name, "env_file entry without a path")
            path = self._host_path(str(entry), base_dir)
            if not required and not os.path.isfile(path):
                continue
            paths.append(path)
        return paths

    def _parse_ports(self, name: str, raw: Any) -> List[PortMapping]:
        ports: List[PortMapping] = []
        for entry in raw or []:
            try:
                if isinstance(entry, dict):
                    published = entry.get('published')
                    ports.append(PortMapping(
                        container_port=int(entry['target']),
                        host_port=int(published) if published not in (None, "") else None,
                        host_ip=entry.get('host_ip'),
                        protocol=entry.get('protocol') or "tcp",
                    ))
                else:
                    ports.extend(self._parse_port_string(str(entry)))
            except (KeyError, ValueError) as e:
                raise ParseError(ParseErrorKind.INVALID_SYNTAX, name, f"invalid port {entry!r}: {e}")
        return ports

    def _parse_port_string(self, text: str) -> List[PortMapping]:
        protocol = "tcp"
        if '/' in text:
            text, protocol = text.rsplit('/', 1)
        host_ip = None
        host_part = None
        parts = text.rsplit(':', 2)
        if len(parts) == 3:
            host_ip, host_part, container_part = parts
        elif len(parts) == 2:
            host_part, container_part = parts
        else:
            container_part = parts[0]

        container_ports = self._port_range(container_part)
        host_ports: List[Optional[int]] = [None] * len(container_ports)
        if host_part:
            host_ports = list(self._port_range(host_part))
            if len(host_ports) != len(container_ports):
                raise ValueError("host and container port ranges differ in length")

        return [
            PortMapping(container_port=c, host_port=h, host_ip=host_ip or None, protocol=protocol)
            for h, c in zip(host_ports, container_ports)
        ]

    @staticmethod
    def _port_range(text: str) -> List[int]:
        if '-' in text:
            start, end = (int(p) for p in text.split('-', 1))
            if end < start:
                raise ValueError(f"invalid range {text}")
            return list(range(start, end + 1))
        return [int(text)]

    def _parse_service_networks(self, name: str, raw: Any) -> List[str]:
        if raw is None:
            return []
        if isinstance(raw, dict):
            return [str(key) for key in raw.keys()]
        if isinstance(raw, list):
            return [str(entry) for entry in raw]
        raise ParseError(ParseErrorKind.INVALID_SYNTAX, name, "networks must be a list or mapping")

    def _parse_mounts(self, name: str, raw: Any, base_dir: str) -> List[VolumeMount]:
        mounts: List[VolumeMount] = []
        for entry in raw or []:
            if isinstance(entry, str):
                mounts.append(self._parse_mount_string(name, entry, base_dir))
            elif isinstance(entry, dict):
                mounts.append(self._parse_mount_mapping(name, entry, base_dir))
            else:
                raise ParseError(ParseErrorKind.INVALID_SYNTAX, name, f"invalid volume {entry!r}")
        return mounts

    def _parse_mount_string(self, name: str, entry: str, base_dir: str) -> VolumeMount:
        parts = entry.split(':')
        if len(parts) == 1:
            return VolumeMount(kind=MountKind.ANONYMOUS, target=parts[0])
        if len(parts) > 3:
            raise ParseError(ParseErrorKind.INVALID_SYNTAX, name, f"invalid volume {entry!r}")
        source, target = parts[0], parts[1]
        read_only = len(parts) == 3 and 'ro' in parts[2].split(',')
        kind, source = self._classify_source(source, base_dir)
        return VolumeMount(kind=kind, source=source, target=target, read_only=read_only)

    def _parse_mount_mapping(self, name: str, entry: Dict[str, Any], base_dir: str) -> VolumeMount:
        target = entry.get('target')
        if not target:
            raise ParseError(ParseErrorKind.INVALID_SYNTAX, name, "volume mapping without target")
        mount_type = entry.get('type', 'volume')
        source = entry.get('source')
        read_only = bool(entry.get('read_only', False))
        if mount_type == 'bind':
            if not source:
                raise ParseError(ParseErrorKind.INVALID_BIND_SOURCE, name, "bind mount without source")
            return VolumeMount(kind=MountKind.BIND, source=self._host_path(source, base_dir),
                               target=target, read_only=read_only)
        if mount_type == 'volume':
            if not source:
                return VolumeMount(kind=MountKind.ANONYMOUS, target=target, read_only=read_only)
            return VolumeMount(kind=MountKind.NAMED, source=source, target=target, read_only=read_only)
        raise ParseError(ParseErrorKind.INVALID_SYNTAX, name, f"unsupported volume type {mount_type!r}")

    def _classify_source(self, source: str, base_dir: str) -> Tuple[MountKind, str]:
        """
        Host paths (absolute, ./relative or ~) are binds; anything else names a volume.
        """
        if source.startswith(('/', '.', '~')):
            return MountKind.BIND, self._host_path(source, base_dir)
        return MountKind.NAMED, source

    def _parse_depends_on(self, name: str, raw: Any) -> List[Dependency]:
        if raw is None:
            return []
        if isinstance(raw, list):
            return [Dependency(service=str(dep)) for dep in raw]
        if isinstance(raw, dict):
            deps = []
            for dep, options in raw.items():
                condition = (options or {}).get('condition', DependencyCondition.SERVICE_STARTED.value)
                try:
                    deps.append(Dependency(service=str(dep), condition=DependencyCondition(condition)))
                except ValueError:
                    raise ParseError(ParseErrorKind.INVALID_SYNTAX, name,
                                     f"unsupported depends_on condition {condition!r}")
            return deps
        raise ParseError(ParseErrorKind.INVALID_SYNTAX, name, "depends_on must be a list or mapping")

    def _parse_healthcheck(self, name: str, raw: Any) -> Optional[HealthCheck]:
        if not raw:
            return None
        if not isinstance(raw, dict):
            raise ParseError(ParseErrorKind.INVALID_SYNTAX, name, "healthcheck must be a mapping")
        if raw.get('disable'):
            return None
        test = raw.get('test')
        if isinstance(test, str):
            test = ["CMD-SHELL", test]
        if not test:
            raise ParseError(ParseErrorKind.INVALID_SYNTAX, name, "healthcheck without test")
        try:
            values = {
                key: parse_duration(raw[key])
                for key in ('interval', 'timeout', 'start_period')
                if raw.get(key) is not None
            }
        except ValueError as e:
            raise ParseError(ParseErrorKind.INVALID_SYNTAX, name, f"healthcheck: {e}")
        if raw.get('retries') is not None:
            values['retries'] = int(raw['retries'])
        return HealthCheck(test=[str(t) for t in test], **values)

    def _validate(self, manifest: Manifest):
        """
        Cross-reference checks: dependencies, volumes, networks, bind sources, cycles.
        """
        for name, svc in manifest.services.items():
            for dep in svc.dependency_names:
                if dep not in manifest.services:
                    raise ParseError(ParseErrorKind.UNDECLARED_DEPENDENCY, dep, f"required by {name}")
            for network in svc.networks:
                if network not in manifest.networks:
                    raise ParseError(ParseErrorKind.UNDECLARED_NETWORK, network, f"used by {name}")
            for mount in svc.volumes:
                if mount.kind == MountKind.NAMED and mount.source not in manifest.volumes:
                    raise ParseError(ParseErrorKind.UNDECLARED_VOLUME, mount.source, f"used by {name}")
                if mount.kind == MountKind.BIND and not self._is_creatable(mount.source):
                    raise ParseError(ParseErrorKind.INVALID_BIND_SOURCE, mount.source, f"used by {name}")

        # Raises CycleDetected, itself a ParseError.
        self.resolver.order(manifest)

    @staticmethod
    def _is_creatable(path: str) -> bool:
        """
        A bind source is usable if it exists or its nearest existing ancestor is a writable directory.
        """
        if os.path.exists(path):
            return True
        parent = os.path.dirname(path)
        while parent and not os.path.exists(parent):
            next_parent = os.path.dirname(parent)
            if next_parent == parent:
                break
            parent = next_parent
        return os.path.isdir(parent) and os.access(parent, os.W_OK)

    @staticmethod
    def _host_path(path: str, base_dir: str) -> str:
        return os.path.normpath(os.path.join(base_dir, os.path.expanduser(path)))

    def _to_map(self, raw: Any, where: str) -> Dict[str, str]:
        if raw is None:
            return {}
        if isinstance(raw, dict):
            return {str(k): self._scalar(v) for k, v in raw.items() if v is not None}
        if isinstance(raw, list):
            result = {}
            for entry in raw:
                key, _, value = str(entry).partition('=')
                result[key] = value
            return result
        raise ParseError(ParseErrorKind.INVALID_SYNTAX, where, "must be a list or mapping")

    @staticmethod
    def _scalar(value: Any) -> str:
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    def _to_command(self, val: Any) -> List[str]:
        """
        Helper to turn a command given as a string or a list into argv form.

        :param val: The value to convert.
        :return: A list of strings.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return shlex.split(val)
        return [str(v) for v in val]
