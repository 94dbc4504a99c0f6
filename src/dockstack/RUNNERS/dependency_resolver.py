"""
Dependency resolution for services to determine startup and shutdown order.
"""
from typing import List, Dict, Set
from ..MODELS.manifest import Manifest
from ..MODELS.errors import CycleDetected, ParseError, ParseErrorKind


class DependencyResolver:
    """
    Groups services into levels: every service in a level depends only on
    services in earlier levels, so a level can be started concurrently.
    """
    def order(self, manifest: Manifest) -> List[List[str]]:
        """
        Determines the startup levels using Kahn-style topological layering.
        Within a level, services keep their declaration order.

        :param manifest: The loaded manifest.
        :return: Levels of service names, first level first.
        :raises ParseError: If a dependency names an undeclared service.
        :raises CycleDetected: If the dependency graph contains a cycle.
        """
        names = manifest.service_names
        dependencies: Dict[str, Set[str]] = {}
        for name in names:
            deps = set(manifest.services[name].dependency_names)
            for dep in deps:
                if dep not in manifest.services:
                    raise ParseError(ParseErrorKind.UNDECLARED_DEPENDENCY, dep, f"required by {name}")
            dependencies[name] = deps

        dependents: Dict[str, List[str]] = {name: [] for name in names}
        for name in names:
            for dep in dependencies[name]:
                dependents[dep].append(name)

        in_degree = {name: len(dependencies[name]) for name in names}
        levels: List[List[str]] = []
        current = [name for name in names if in_degree[name] == 0]

        while current:
            levels.append(current)
            ready: Set[str] = set()
            for name in current:
                for dependent in dependents[name]:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        ready.add(dependent)
            current = [name for name in names if name in ready]

        placed = sum(len(level) for level in levels)
        if placed < len(names):
            leftover = {name for name in names if in_degree[name] > 0}
            raise CycleDetected(sorted(self._cycle_members(leftover, dependencies)))

        return levels

    def _cycle_members(self, leftover: Set[str], dependencies: Dict[str, Set[str]]) -> Set[str]:
        """
        Strips services that merely sit downstream of a cycle, leaving the
        services that take part in one.
        """
        members = set(leftover)
        changed = True
        while changed:
            changed = False
            for name in list(members):
                needed_by_member = any(name in dependencies[other] for other in members)
                if not needed_by_member:
                    members.discard(name)
                    changed = True
        return members

    @staticmethod
    def flatten(levels: List[List[str]]) -> List[str]:
        return [name for level in levels for name in level]

    @staticmethod
    def teardown_order(levels: List[List[str]]) -> List[List[str]]:
        """
        Levels for shutdown: the reverse of startup, so dependents stop before
        the services they depend on.
        """
        return [list(level) for level in reversed(levels)]

    def dependents(self, manifest: Manifest, name: str) -> List[str]:
        """
        Every service that directly or transitively depends on `name`,
        in declaration order.
        """
        found: Set[str] = set()
        frontier = [name]
        while frontier:
            current = frontier.pop()
            for other, svc in manifest.services.items():
                if current in svc.dependency_names and other not in found:
                    found.add(other)
                    frontier.append(other)
        return [svc for svc in manifest.service_names if svc in found]
