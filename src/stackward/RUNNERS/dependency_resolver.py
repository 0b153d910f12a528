"""
Dependency resolution for services to determine startup order and failure subtrees.
"""
from typing import Dict, List, Mapping, Optional, Sequence, Set

from ..errors import DependencyCycle


class DependencyResolver:
    """
    Resolves the startup order of services based on their dependencies.

    :param dependencies: Service name to the names it depends on, in declaration order.
    """

    def __init__(self, dependencies: Mapping[str, Sequence[str]]):
        self.declared = list(dependencies)
        self.dependencies: Dict[str, List[str]] = {
            name: [dep for dep in deps if dep in dependencies]
            for name, deps in dependencies.items()
        }

    def find_cycle(self) -> Optional[List[str]]:
        """
        Depth-first search for a dependency loop.

        :return: The cycle as a path that starts and ends on the same service, or None.
        """
        visited: Set[str] = set()
        path: List[str] = []
        on_path: Set[str] = set()

        def visit(name: str) -> Optional[List[str]]:
            if name in on_path:
                return path[path.index(name):] + [name]
            if name in visited:
                return None
            on_path.add(name)
            path.append(name)
            for dep in self.dependencies[name]:
                cycle = visit(dep)
                if cycle:
                    return cycle
            path.pop()
            on_path.remove(name)
            visited.add(name)
            return None

        for name in self.declared:
            cycle = visit(name)
            if cycle:
                return cycle
        return None

    def depths(self) -> Dict[str, int]:
        """
        Dependency depth of each service: 0 without dependencies, else one more than its deepest dependency.

        :raises DependencyCycle: If no topological order exists.
        """
        cycle = self.find_cycle()
        if cycle:
            raise DependencyCycle(cycle)

        depth: Dict[str, int] = {}

        def measure(name: str) -> int:
            if name not in depth:
                deps = self.dependencies[name]
                depth[name] = 1 + max(measure(d) for d in deps) if deps else 0
            return depth[name]

        for name in self.declared:
            measure(name)
        return depth

    def resolve_order(self) -> List[str]:
        """
        Topological order of the services. Services at the same depth keep declaration order.

        :raises DependencyCycle: If a circular dependency is detected.
        """
        depth = self.depths()
        position = {name: i for i, name in enumerate(self.declared)}
        return sorted(self.declared, key=lambda name: (depth[name], position[name]))

    def ancestors(self, name: str) -> Set[str]:
        """All services ``name`` transitively depends on."""
        seen: Set[str] = set()
        stack = list(self.dependencies.get(name, []))
        while stack:
            dep = stack.pop()
            if dep not in seen:
                seen.add(dep)
                stack.extend(self.dependencies.get(dep, []))
        return seen

    def dependents(self, name: str) -> Set[str]:
        """The dependency subtree of ``name``: every service that transitively depends on it."""
        return {other for other in self.declared if name in self.ancestors(other)}
