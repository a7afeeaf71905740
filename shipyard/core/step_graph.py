"""Step prerequisite DAG.

Validates that the configured steps form a DAG whose prerequisites all
refer to configured steps, and yields the execution order.
"""

from __future__ import annotations

from collections import deque

from shipyard.core.errors import ConfigError
from shipyard.models.config import KNOWN_STEPS, StepDefinition


class CyclicDependencyError(ConfigError):
    """Raised when the step graph contains a cycle."""


def pipeline_step_graph(step_definitions: list[StepDefinition]) -> StepGraph:
    """Build the graph for a pipeline and require the fixed step order.

    Build, Publish, Render and Rollout each consume the previous step's
    output, so any other execution order is a ``ConfigError``.
    """
    graph = StepGraph(step_definitions)
    if graph.step_ids != list(KNOWN_STEPS):
        raise ConfigError(
            f"Steps must run in the order {list(KNOWN_STEPS)}; configured order is "
            f"{graph.step_ids}"
        )
    return graph


class StepGraph:
    """Directed acyclic graph of step prerequisites.

    Built from ``StepDefinition.prerequisites`` when the orchestrator is
    constructed.
    """

    def __init__(self, step_definitions: list[StepDefinition]) -> None:
        self._steps: dict[str, StepDefinition] = {
            sd.step_id: sd for sd in step_definitions
        }
        self._prerequisites: dict[str, list[str]] = {
            sd.step_id: list(sd.prerequisites) for sd in step_definitions
        }
        self._dependents: dict[str, list[str]] = {
            sd.step_id: [] for sd in step_definitions
        }
        for sd in step_definitions:
            for prereq in sd.prerequisites:
                if prereq not in self._dependents:
                    raise ConfigError(
                        f"Step {sd.step_id!r} depends on unknown step {prereq!r}"
                    )
                self._dependents[prereq].append(sd.step_id)

        self._order = self._topological_order()

    def _topological_order(self) -> list[str]:
        """Kahn's algorithm, ties broken by ordinal."""
        in_degree = {sid: len(prereqs) for sid, prereqs in self._prerequisites.items()}
        queue = deque(
            sorted(
                (sid for sid, deg in in_degree.items() if deg == 0),
                key=lambda s: self._steps[s].ordinal,
            )
        )
        result: list[str] = []
        while queue:
            node = queue.popleft()
            result.append(node)
            for dep in sorted(
                self._dependents.get(node, []),
                key=lambda s: self._steps[s].ordinal,
            ):
                in_degree[dep] -= 1
                if in_degree[dep] == 0:
                    queue.append(dep)

        if len(result) != len(self._steps):
            raise CyclicDependencyError(
                f"Step graph has a cycle. "
                f"Ordered {len(result)}/{len(self._steps)} steps."
            )
        return result

    @property
    def step_ids(self) -> list[str]:
        """All step_ids in execution order."""
        return list(self._order)

    def get_prerequisites(self, step_id: str) -> list[str]:
        return list(self._prerequisites.get(step_id, []))

    def get_dependents(self, step_id: str) -> list[str]:
        """Return all transitive dependents of a step (BFS)."""
        result = []
        queue = deque(self._dependents.get(step_id, []))
        visited: set[str] = set()
        while queue:
            node = queue.popleft()
            if node in visited:
                continue
            visited.add(node)
            result.append(node)
            queue.extend(self._dependents.get(node, []))
        return result

    def get_step_definition(self, step_id: str) -> StepDefinition:
        return self._steps[step_id]
