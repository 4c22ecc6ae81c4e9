"""
Dependency graph for the steps of one pipeline.
"""

from typing import Dict, FrozenSet, Iterable, List, Sequence, Tuple

from controller.src.models.step import StepConfig

class GraphError(Exception):
    """Raised when a pipeline's step graph is invalid."""
    pass

class DuplicateStepName(GraphError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Duplicate step name '{name}'")

class UnknownDependency(GraphError):
    def __init__(self, step: str, dependency: str):
        self.step = step
        self.dependency = dependency
        super().__init__(f"Step '{step}' depends on unknown step '{dependency}'")

class CycleDetected(GraphError):
    def __init__(self, cycle: Sequence[str]):
        self.cycle = tuple(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")

_UNVISITED, _IN_PROGRESS, _DONE = 0, 1, 2

class StepGraph:
    """Immutable adjacency structure keyed by step name."""

    __slots__ = ("_steps", "_order", "_parents", "_children", "_ancestors")

    def __init__(self, steps: Dict[str, StepConfig], parents: Dict[str, Tuple[str, ...]]):
        self._steps = dict(steps)
        self._order = {name: i for i, name in enumerate(self._steps)}
        self._parents = dict(parents)
        children: Dict[str, List[str]] = {name: [] for name in self._steps}
        for name, deps in self._parents.items():
            for dep in deps:
                children[dep].append(name)
        self._children = {name: tuple(kids) for name, kids in children.items()}
        self._ancestors: Dict[str, FrozenSet[str]] = {}
        for name in self.topological_order():
            collected = set(self._parents[name])
            for dep in self._parents[name]:
                collected |= self._ancestors[dep]
            self._ancestors[name] = frozenset(collected)

    @property
    def steps(self) -> Dict[str, StepConfig]:
        """Steps in declaration order."""
        return dict(self._steps)

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(self._steps)

    def __len__(self) -> int:
        return len(self._steps)

    def __contains__(self, name: object) -> bool:
        return name in self._steps

    def step(self, name: str) -> StepConfig:
        return self._steps[name]

    def predecessors(self, name: str) -> Tuple[str, ...]:
        return self._parents[name]

    def successors(self, name: str) -> Tuple[str, ...]:
        return self._children[name]

    def ancestors(self, name: str) -> FrozenSet[str]:
        return self._ancestors[name]

    def roots(self) -> Tuple[str, ...]:
        return tuple(name for name in self._steps if not self._parents[name])

    def topological_order(self) -> Tuple[str, ...]:
        """Kahn's algorithm, ties broken by declaration order."""
        indegree = {name: len(deps) for name, deps in self._parents.items()}
        ready = [name for name in self._steps if indegree[name] == 0]
        order: List[str] = []
        while ready:
            ready.sort(key=self._order.__getitem__)
            name = ready.pop(0)
            order.append(name)
            for child in self._children[name]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    ready.append(child)
        return tuple(order)

def build_graph(steps: Iterable[StepConfig]) -> StepGraph:
    """
    Build and validate the dependency graph of a pipeline.
    Raises DuplicateStepName, UnknownDependency or CycleDetected.
    """
    by_name: Dict[str, StepConfig] = {}
    for step in steps:
        if step.name in by_name:
            raise DuplicateStepName(step.name)
        by_name[step.name] = step

    parents: Dict[str, Tuple[str, ...]] = {}
    for name, step in by_name.items():
        for dep in step.depends_on:
            if dep not in by_name:
                raise UnknownDependency(name, dep)
        # Repeated entries in depends_on collapse to one edge
        parents[name] = tuple(dict.fromkeys(step.depends_on))

    cycle = _find_cycle(by_name, parents)
    if cycle:
        raise CycleDetected(cycle)

    return StepGraph(by_name, parents)

def _find_cycle(
    steps: Dict[str, StepConfig],
    parents: Dict[str, Tuple[str, ...]],
) -> List[str]:
    """Three-color DFS along depends_on edges. Returns a closed cycle path or []."""
    color = {name: _UNVISITED for name in steps}
    path: List[str] = []

    def visit(name: str) -> List[str]:
        color[name] = _IN_PROGRESS
        path.append(name)
        for dep in parents[name]:
            if color[dep] == _IN_PROGRESS:
                # Back edge: the cycle runs from dep down to name and back
                cycle = path[path.index(dep):] + [dep]
                return list(reversed(cycle))
            if color[dep] == _UNVISITED:
                found = visit(dep)
                if found:
                    return found
        path.pop()
        color[name] = _DONE
        return []

    for name in steps:
        if color[name] == _UNVISITED:
            found = visit(name)
            if found:
                return found
    return []
