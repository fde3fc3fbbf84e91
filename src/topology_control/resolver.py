"""Service binding resolution.

Every workload gets a stable address ``<name>.<namespace>:<first port>``.
Workloads that refer to another one through a ``ServiceRef`` get that address
substituted into their environment. Resolution walks workloads in dependency
order, dependencies first, with ties broken by name so the output (and every
diff computed from it) is reproducible.
"""
import heapq
from collections import defaultdict
from typing import Hashable, Iterable, Mapping, TypeVar

from .errors import CyclicDependency, InvalidPort, UnresolvedDependency
from .models import ServiceRef, WorkloadDescriptor, WorkloadSpec

K = TypeVar("K", bound=Hashable)


def group_by_namespace(descriptors: Iterable[WorkloadDescriptor]) -> dict[str, list[WorkloadDescriptor]]:
    groups: dict[str, list[WorkloadDescriptor]] = defaultdict(list)
    for d in descriptors:
        groups[d.namespace].append(d)
    return {ns: groups[ns] for ns in sorted(groups)}


def cycle_members(graph: Mapping[K, Iterable[K]]) -> list[K]:
    """Nodes that can reach themselves through the graph, sorted."""
    members = []
    for start in graph:
        stack = list(graph[start])
        seen: set = set()
        while stack:
            node = stack.pop()
            if node == start:
                members.append(start)
                break
            if node in seen or node not in graph:
                continue
            seen.add(node)
            stack.extend(graph[node])
    return sorted(members)


def topological_order(graph: Mapping[K, Iterable[K]], strict: bool = True) -> list[K]:
    """Order nodes so that every node comes after the nodes it points to.

    Edges to nodes outside the graph are ignored. Among nodes that are ready at
    the same time the smallest one goes first. With ``strict`` a cycle raises
    CyclicDependency; otherwise the nodes left on cycles are appended sorted.
    """
    deps = {node: {d for d in graph[node] if d in graph} for node in graph}
    dependents: dict = defaultdict(list)
    for node, node_deps in deps.items():
        for d in node_deps:
            dependents[d].append(node)

    remaining = {node: len(node_deps) for node, node_deps in deps.items()}
    ready = [node for node, count in remaining.items() if count == 0]
    heapq.heapify(ready)

    order = []
    while ready:
        node = heapq.heappop(ready)
        order.append(node)
        for dependent in dependents[node]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(ready, dependent)

    if len(order) < len(deps):
        placed = set(order)
        stuck = sorted(node for node in deps if node not in placed)
        if strict:
            raise CyclicDependency([f"dependency cycle through {_label(n)}" for n in cycle_members(deps) or stuck])
        order.extend(stuck)
    return order


def _label(node) -> str:
    if isinstance(node, tuple):
        return "/".join(node)
    return str(node)


def _single_namespace(descriptors: list[WorkloadDescriptor]) -> str | None:
    namespaces = {d.namespace for d in descriptors}
    if len(namespaces) > 1:
        raise ValueError(f"Bindings resolve within one namespace, got {sorted(namespaces)}")
    return next(iter(namespaces), None)


def dependency_graph(descriptors: Iterable[WorkloadDescriptor]) -> dict[str, tuple[str, ...]]:
    return {d.name: d.dependencies for d in descriptors}


def dependency_order(descriptors: Iterable[WorkloadDescriptor]) -> list[WorkloadDescriptor]:
    descriptors = list(descriptors)
    _single_namespace(descriptors)
    by_name = {d.name: d for d in descriptors}
    return [by_name[name] for name in topological_order(dependency_graph(descriptors))]


def binding_address(descriptor: WorkloadDescriptor) -> str:
    if not descriptor.ports:
        raise InvalidPort([f"{descriptor.namespace}/{descriptor.name} declares no ports"])
    return f"{descriptor.host}:{descriptor.ports[0].container_port}"


def resolve(descriptors: Iterable[WorkloadDescriptor]) -> dict[str, str]:
    """Map each workload name to its binding address, in dependency order."""
    return {d.name: binding_address(d) for d in dependency_order(descriptors)}


def render_env(descriptor: WorkloadDescriptor, addresses: Mapping[str, str]) -> dict[str, str]:
    env = {}
    for key, binding in descriptor.env.items():
        if isinstance(binding, ServiceRef):
            if binding.workload not in addresses:
                raise UnresolvedDependency([f"{descriptor.host}: {key} refers to unknown workload {binding.workload!r}"])
            address = addresses[binding.workload]
            host, _, port = address.rpartition(":")
            env[key] = (
                binding.template.replace("{address}", address).replace("{host}", host).replace("{port}", port)
            )
        else:
            env[key] = binding.value
    return env


def render(descriptors: Iterable[WorkloadDescriptor]) -> list[WorkloadSpec]:
    """Resolve bindings and return one WorkloadSpec per descriptor, dependencies first."""
    ordered = dependency_order(descriptors)
    addresses = {d.name: binding_address(d) for d in ordered}
    return [
        WorkloadSpec(
            name=d.name,
            namespace=d.namespace,
            image=d.image,
            replicas=d.replicas,
            ports=list(d.ports),
            env=render_env(d, addresses),
            address=addresses[d.name],
            depends_on=list(d.dependencies),
        )
        for d in ordered
    ]
