from typing import Iterable

from .models import DIFF_FIELDS, ObservedState, ObservedWorkload, Operation, OperationKind, WorkloadDescriptor, WorkloadSpec
from .resolver import group_by_namespace, render, topological_order


def calculate_deviation(desired: WorkloadSpec, actual: ObservedWorkload | None) -> tuple[str, ...]:
    """Names of the fields where the observed workload differs from the rendered spec."""
    if actual is None:
        return DIFF_FIELDS

    changed = []
    if actual.image != desired.image:
        changed.append("image")
    if actual.replicas != desired.replicas:
        changed.append("replicas")
    if list(actual.ports) != list(desired.ports):
        changed.append("ports")
    if actual.env != desired.env:
        changed.append("env")
    return tuple(changed)


def is_converged(desired: WorkloadSpec, actual: ObservedWorkload | None) -> bool:
    return actual is not None and not calculate_deviation(desired, actual) and actual.ready_replicas >= desired.replicas


def reconcile(desired: Iterable[WorkloadDescriptor], observed: ObservedState) -> list[Operation]:
    """Compute the operations that move `observed` to `desired`.

    Creates and updates come first, dependencies before dependents. Deletes
    follow, dependents before the workloads they used. The descriptors are
    expected to have passed validate().
    """
    groups = group_by_namespace(desired)
    namespaces = sorted(set(groups) | {w.namespace for w in observed.workloads})

    operations: list[Operation] = []
    for namespace in namespaces:
        operations.extend(_reconcile_namespace(namespace, groups.get(namespace, []), observed))
    return operations


def _reconcile_namespace(namespace: str, desired: list[WorkloadDescriptor], observed: ObservedState) -> list[Operation]:
    operations = []
    specs = render(desired)

    for spec in specs:
        actual = observed.get(namespace, spec.name)
        if actual is None:
            operations.append(
                Operation(kind=OperationKind.CREATE, namespace=namespace, name=spec.name, changed_fields=DIFF_FIELDS, spec=spec)
            )
            continue

        changed = calculate_deviation(spec, actual)
        if changed:
            operations.append(
                Operation(kind=OperationKind.UPDATE, namespace=namespace, name=spec.name, changed_fields=changed, spec=spec)
            )

    wanted = {spec.name for spec in specs}
    stale = {w.name: w.depends_on for w in observed.in_namespace(namespace) if w.name not in wanted}
    for name in reversed(topological_order(stale, strict=False)):
        operations.append(Operation(kind=OperationKind.DELETE, namespace=namespace, name=name))

    return operations
