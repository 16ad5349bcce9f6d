"""Module dependency ordering and cycle breaking.

This module compiles the static module graph into an execution plan:
1. Dependency edges from input bindings and attachment targets
2. Producer/attachment splitting for modules that attach metadata back
   onto one of their own consumers
3. Topological sorting for execution order
4. Cycle detection for anything the split cannot resolve

EXAMPLE:
The telemetry module produces the connection string the web app needs at
creation time, but also attaches diagnostic settings onto the web app.
Deployed whole, telemetry and app-service would wait on each other. The
compiler splits telemetry into ``telemetry-core`` (connection string, no
dependency on the web app) and ``diagnostics`` (depends on telemetry-core
and app-service), which runs last.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from .models import InfrastructureSpec, ModuleSpec, parse_binding

logger = logging.getLogger(__name__)

CORE_SUFFIX = "-core"


class ModulePhase(str, Enum):
    """How a node relates to the module it was compiled from."""

    WHOLE = "whole"  # Deployed as declared
    PRODUCER = "producer"  # Split: outputs only, no dependency on consumers
    ATTACHMENT = "attachment"  # Split: attaches metadata onto consumers


class DependencyError(Exception):
    """Raised when the module graph cannot be compiled."""

    pass


class CyclicDependencyError(DependencyError):
    """Raised when a dependency cycle is detected."""

    pass


@dataclass(frozen=True)
class ModuleNode:
    """A compiled, immutable node of the execution plan."""

    name: str
    template: str
    declared_outputs: frozenset[str] = frozenset()
    depends_on: frozenset[str] = frozenset()
    # (template parameter, binding) pairs, bindings already rewired to split names
    inputs: tuple[tuple[str, str], ...] = ()
    exports: tuple[tuple[str, str], ...] = ()
    condition: str | None = None
    phase: ModulePhase = ModulePhase.WHOLE
    source_module: str | None = None


@dataclass(frozen=True)
class ExecutionPlan:
    """Topologically sorted modules ready to be rendered into one deployment."""

    nodes: tuple[ModuleNode, ...]
    # Original module name -> (producer node, attachment node)
    splits: dict[str, tuple[str, str]] = field(default_factory=dict)

    @property
    def order(self) -> list[str]:
        return [node.name for node in self.nodes]

    def get(self, name: str) -> ModuleNode:
        for node in self.nodes:
            if node.name == name:
                return node
        raise KeyError(name)

    def position(self, name: str) -> int:
        return self.order.index(name)


@dataclass
class DependencyGraph:
    """Directed graph of compiled module nodes."""

    nodes: dict[str, ModuleNode] = field(default_factory=dict)

    def add_node(self, node: ModuleNode) -> None:
        """Add a node to the graph.

        Raises:
            DependencyError: If a node with the same name already exists.
        """
        if node.name in self.nodes:
            raise DependencyError(f"Duplicate module node '{node.name}'")
        self.nodes[node.name] = node

    def validate(self) -> None:
        """Validate that every dependency exists and the graph is acyclic.

        Raises:
            DependencyError: If a dependency refers to an unknown node.
            CyclicDependencyError: If a cycle is detected.
        """
        for node in self.nodes.values():
            unknown = sorted(node.depends_on - self.nodes.keys())
            if unknown:
                raise DependencyError(f"Module '{node.name}' depends on unknown modules: {unknown}")

        self.topological_sort()

    def topological_sort(self) -> list[str]:
        """Return node names in dependency order (dependencies first).

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        # Build adjacency list (reversed - edges point to dependents)
        dependents: dict[str, list[str]] = {name: [] for name in self.nodes}
        in_degree: dict[str, int] = {name: 0 for name in self.nodes}

        for node in self.nodes.values():
            for dep in node.depends_on:
                if dep in dependents:
                    dependents[dep].append(node.name)
                    in_degree[node.name] += 1

        # Kahn's algorithm
        result: list[str] = []
        queue = [name for name, degree in in_degree.items() if degree == 0]

        while queue:
            # Sort for deterministic ordering among nodes with same in_degree
            queue.sort()
            current = queue.pop(0)
            result.append(current)

            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(result) != len(self.nodes):
            cycle_nodes = sorted(name for name, degree in in_degree.items() if degree > 0)
            raise CyclicDependencyError(
                f"Circular dependency detected involving: {cycle_nodes}"
            )

        return result


def _binding_sources(bindings: list[str]) -> set[str]:
    sources = set()
    for binding in bindings:
        source, _ = parse_binding(binding)
        if source is not None:
            sources.add(source)
    return sources


def _consumes(spec: InfrastructureSpec, consumer: str, producer: str) -> bool:
    """Check whether ``consumer`` reads ``producer``'s outputs, directly or transitively."""
    seen: set[str] = set()
    stack = [consumer]
    while stack:
        current = stack.pop()
        if current in seen:
            continue
        seen.add(current)
        sources = _binding_sources(list(spec.get_module(current).inputs.values()))
        if producer in sources:
            return True
        stack.extend(sources)
    return False


def _rewire(binding: str, renamed: dict[str, str]) -> str:
    source, output = parse_binding(binding)
    if source is None or source not in renamed:
        return binding
    return f"{renamed[source]}.{output}"


def _modules_to_split(spec: InfrastructureSpec) -> dict[str, list[str]]:
    """Find modules that attach onto one of their own consumers.

    Raises:
        CyclicDependencyError: If such a module declares no attachment phase.
    """
    to_split: dict[str, list[str]] = {}
    for module in spec.modules:
        cyclic_targets = [t for t in module.attaches_to if _consumes(spec, t, module.name)]
        if not cyclic_targets:
            continue
        if module.attachment is None:
            raise CyclicDependencyError(
                f"Module '{module.name}' attaches onto {cyclic_targets}, which consume its "
                "outputs, and declares no attachment phase to split into"
            )
        to_split[module.name] = cyclic_targets
    return to_split


def _whole_node(module: ModuleSpec, renamed: dict[str, str]) -> ModuleNode:
    inputs = tuple((p, _rewire(b, renamed)) for p, b in module.inputs.items())
    return ModuleNode(
        name=module.name,
        template=module.template,
        declared_outputs=frozenset(module.outputs),
        depends_on=frozenset(_binding_sources([b for _, b in inputs]) | set(module.attaches_to)),
        inputs=inputs,
        exports=tuple(module.exports.items()),
        condition=module.condition,
    )


def _split_nodes(module: ModuleSpec, renamed: dict[str, str]) -> tuple[ModuleNode, ModuleNode]:
    # SAFETY: _modules_to_split only selects modules that declare an attachment
    assert module.attachment is not None

    core_name = renamed[module.name]
    core_inputs = tuple((p, _rewire(b, renamed)) for p, b in module.inputs.items())
    producer = ModuleNode(
        name=core_name,
        template=module.template,
        declared_outputs=frozenset(module.outputs),
        depends_on=frozenset(_binding_sources([b for _, b in core_inputs])),
        inputs=core_inputs,
        exports=tuple(module.exports.items()),
        condition=module.condition,
        phase=ModulePhase.PRODUCER,
        source_module=module.name,
    )

    attach_inputs = tuple((p, _rewire(b, renamed)) for p, b in module.attachment.inputs.items())
    attachment = ModuleNode(
        name=module.attachment.name,
        template=module.attachment.template,
        depends_on=frozenset(
            _binding_sources([b for _, b in attach_inputs])
            | {renamed.get(t, t) for t in module.attaches_to}
            | {core_name}
        ),
        inputs=attach_inputs,
        condition=module.condition,
        phase=ModulePhase.ATTACHMENT,
        source_module=module.name,
    )
    return producer, attachment


def compile_plan(spec: InfrastructureSpec) -> ExecutionPlan:
    """Compile the static module graph into a topologically sorted plan.

    Raises:
        CyclicDependencyError: If a cycle remains after splitting.
        DependencyError: If the graph is otherwise invalid.
    """
    to_split = _modules_to_split(spec)
    renamed = {name: f"{name}{CORE_SUFFIX}" for name in to_split}

    graph = DependencyGraph()
    splits: dict[str, tuple[str, str]] = {}

    for module in spec.modules:
        if module.name in to_split:
            producer, attachment = _split_nodes(module, renamed)
            graph.add_node(producer)
            graph.add_node(attachment)
            splits[module.name] = (producer.name, attachment.name)
            logger.info(
                "Split module into producer and attachment phases",
                extra={
                    "module": module.name,
                    "producer": producer.name,
                    "attachment": attachment.name,
                    "attaches_to": to_split[module.name],
                },
            )
        else:
            graph.add_node(_whole_node(module, renamed))

    graph.validate()
    order = graph.topological_sort()

    logger.info("Compiled execution plan", extra={"order": order})
    return ExecutionPlan(nodes=tuple(graph.nodes[name] for name in order), splits=splits)
