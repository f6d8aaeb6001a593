"""
Dependency resolution for a convergence pass.

Each task names its dependencies from the full task set; the resolver turns
those answers into a directed graph and a deterministic execution order.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Set

import networkx as nx

from .errors import ConfigurationError, DependencyCycleError
from .tasks.base import Task, TaskSet

logger = logging.getLogger(__name__)


@dataclass
class ExecutionPlan:
    """
    Ordered tasks for one pass.

    Attributes:
        tasks: The task set the plan was built from
        order: Task keys, dependencies before dependents, ties broken by key
        dependencies: Task key -> keys of the tasks it depends on
    """

    tasks: TaskSet
    order: List[str] = field(default_factory=list)
    dependencies: Dict[str, Set[str]] = field(default_factory=dict)

    def dependents_of(self, key: str) -> List[str]:
        """Keys of the tasks that directly depend on key, in plan order."""
        return [other for other in self.order if key in self.dependencies[other]]


class DependencyResolver:
    """Builds the dependency graph of a task set and orders it."""

    def build_graph(self, tasks: TaskSet) -> nx.DiGraph:
        """
        Build a graph with an edge from every dependency to its dependent.

        Raises:
            ConfigurationError: If a task names a dependency outside the set
        """
        graph = nx.DiGraph()
        graph.add_nodes_from(tasks.keys())

        for key, task in tasks.items():
            for dependency in task.get_dependencies(tasks):
                if not isinstance(dependency, Task) or tasks.get(dependency.key) is not dependency:
                    raise ConfigurationError(
                        f"Task {key!r} depends on {dependency!s}, which is not part of the task set"
                    )
                graph.add_edge(dependency.key, key)

        logger.debug(f"Dependency graph: {graph.number_of_nodes()} tasks, {graph.number_of_edges()} edges")
        return graph

    def find_cycles(self, graph: nx.DiGraph) -> List[List[str]]:
        """Every group of tasks that depend on each other, sorted by key."""
        cycles = [
            sorted(component)
            for component in nx.strongly_connected_components(graph)
            if len(component) > 1
        ]
        cycles.extend([node] for node in nx.nodes_with_selfloops(graph))
        return sorted(cycles)

    def resolve(self, tasks: TaskSet) -> ExecutionPlan:
        """
        Resolve the execution order of a task set.

        Args:
            tasks: All tasks of the pass

        Returns:
            ExecutionPlan with a stable topological order

        Raises:
            DependencyCycleError: If any tasks depend on each other cyclically
            ConfigurationError: If a dependency is not part of the set
        """
        graph = self.build_graph(tasks)

        cycles = self.find_cycles(graph)
        if cycles:
            error = DependencyCycleError(cycles)
            logger.error(str(error))
            raise error

        order = list(nx.lexicographical_topological_sort(graph))
        dependencies = {key: set(graph.predecessors(key)) for key in order}

        logger.debug(f"Resolved execution order: {order}")
        return ExecutionPlan(tasks=tasks, order=order, dependencies=dependencies)
