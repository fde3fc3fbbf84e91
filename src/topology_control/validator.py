from collections import Counter
from typing import Iterable

from .errors import CyclicDependency, DuplicateName, InvalidPort, UnresolvedDependency
from .models import ServiceRef, WorkloadDescriptor
from .resolver import cycle_members

PROTOCOLS = {"TCP", "UDP"}


def validate(descriptors: Iterable[WorkloadDescriptor]) -> None:
    """Check cross-descriptor invariants before anything is applied.

    Checks run in a fixed order and stop at the first class that fails, but
    every offending descriptor of that class is reported. Pure: the input is
    never modified and nothing outside it is consulted.
    """
    descriptors = list(descriptors)
    _check_unique_names(descriptors)
    _check_references(descriptors)
    _check_acyclic(descriptors)
    _check_ports(descriptors)


def _check_unique_names(descriptors: list[WorkloadDescriptor]) -> None:
    counts = Counter(d.key for d in descriptors)
    issues = [f"{ns}/{name} is declared {n} times" for (ns, name), n in sorted(counts.items()) if n > 1]
    if issues:
        raise DuplicateName(issues)


def _check_references(descriptors: list[WorkloadDescriptor]) -> None:
    known = {d.key for d in descriptors}
    issues = []
    for d in descriptors:
        for key, binding in sorted(d.env.items()):
            if isinstance(binding, ServiceRef) and (d.namespace, binding.workload) not in known:
                issues.append(f"{d.namespace}/{d.name}: {key} refers to unknown workload {binding.workload!r}")
    if issues:
        raise UnresolvedDependency(issues)


def _check_acyclic(descriptors: list[WorkloadDescriptor]) -> None:
    graph = {d.key: [(d.namespace, dep) for dep in d.dependencies] for d in descriptors}
    issues = [f"{ns}/{name} depends on itself through its bindings" for ns, name in cycle_members(graph)]
    if issues:
        raise CyclicDependency(issues)


def _check_ports(descriptors: list[WorkloadDescriptor]) -> None:
    issues = []
    for d in descriptors:
        target = f"{d.namespace}/{d.name}"
        if not d.ports:
            issues.append(f"{target} declares no ports")
        seen = set()
        for port in d.ports:
            if not 1 <= port.container_port <= 65535:
                issues.append(f"{target}: port {port.container_port} is outside 1-65535")
            if port.protocol not in PROTOCOLS:
                issues.append(f"{target}: protocol {port.protocol!r} is not one of TCP, UDP")
            if (port.container_port, port.protocol) in seen:
                issues.append(f"{target}: port {port} is declared twice")
            seen.add((port.container_port, port.protocol))
    if issues:
        raise InvalidPort(issues)
