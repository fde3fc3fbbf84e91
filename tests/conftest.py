import time

import pytest

from topology_control.driver import ReconciliationDriver, ReconciliationPolicy
from topology_control.errors import NamespaceNotEmpty, PlatformUnavailable
from topology_control.models import (
    ObservedState,
    ObservedWorkload,
    Operation,
    OperationKind,
    WorkloadDescriptor,
    WorkloadSpec,
)


class FakePlatform:
    """In-memory platform: applied specs become observed workloads immediately."""

    def __init__(self, healthy: bool = True):
        self.healthy = healthy
        self.namespaces: set[str] = set()
        self.workloads: dict[tuple[str, str], ObservedWorkload] = {}
        self.calls: list[tuple] = []
        # (namespace, name) -> exceptions raised by successive mutating calls
        self.failures: dict[tuple[str, str], list[Exception]] = {}
        # (namespace, name) -> seconds a mutating call blocks
        self.delays: dict[tuple[str, str], float] = {}
        self.unavailable_namespaces: set[str] = set()

    def ensure_namespace(self, namespace):
        self.calls.append(("ensure_namespace", namespace))
        if namespace in self.unavailable_namespaces:
            raise PlatformUnavailable(f"namespace {namespace} unreachable")
        self.namespaces.add(namespace)

    def delete_namespace(self, namespace, cascade=False):
        self.calls.append(("delete_namespace", namespace, cascade))
        keys = [k for k in self.workloads if k[0] == namespace]
        if keys and not cascade:
            raise NamespaceNotEmpty(f"{namespace} is not empty")
        for key in keys:
            del self.workloads[key]
        self.namespaces.discard(namespace)

    def observe(self, namespace):
        if namespace in self.unavailable_namespaces:
            raise PlatformUnavailable(f"namespace {namespace} unreachable")
        return ObservedState(workloads=[w for k, w in sorted(self.workloads.items()) if k[0] == namespace])

    def create_workload(self, spec):
        self._mutate(("create", spec.namespace, spec.name), spec.key)
        self.workloads[spec.key] = self._observed(spec)

    def update_workload(self, spec, changed_fields):
        self._mutate(("update", spec.namespace, spec.name, tuple(changed_fields)), spec.key)
        self.workloads[spec.key] = self._observed(spec)

    def delete_workload(self, namespace, name):
        self._mutate(("delete", namespace, name), (namespace, name))
        self.workloads.pop((namespace, name), None)

    def apply(self, op: Operation):
        if op.kind is OperationKind.CREATE:
            self.create_workload(op.spec)
        elif op.kind is OperationKind.UPDATE:
            self.update_workload(op.spec, op.changed_fields)
        else:
            self.delete_workload(op.namespace, op.name)

    def set_ready(self, namespace, name, ready):
        self.workloads[(namespace, name)] = self.workloads[(namespace, name)].model_copy(update={"ready_replicas": ready})

    def _mutate(self, call, key):
        self.calls.append(call)
        if key in self.delays:
            time.sleep(self.delays[key])
        pending = self.failures.get(key)
        if pending:
            raise pending.pop(0)

    def _observed(self, spec: WorkloadSpec) -> ObservedWorkload:
        return ObservedWorkload(
            name=spec.name,
            namespace=spec.namespace,
            image=spec.image,
            replicas=spec.replicas,
            ready_replicas=spec.replicas if self.healthy else 0,
            ports=spec.ports,
            env=spec.env,
            depends_on=spec.depends_on,
        )


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def workload():
    """Factory for descriptors: workload("api", 8080, env={"DB": {"ref": "db"}})."""

    def make(name, *ports, namespace="ns", image=None, replicas=1, env=None):
        return WorkloadDescriptor(
            name=name,
            namespace=namespace,
            image=image or f"registry.example.com/{name}:1.0",
            replicas=replicas,
            ports=list(ports),
            env=env or {},
        )

    return make


@pytest.fixture
def three_tier(workload):
    return [
        workload("web", 80, env={"API_URL": {"ref": "api"}}),
        workload("api", 8080, env={"DB_URL": {"ref": "db"}, "LOG_LEVEL": "info"}),
        workload("db", 27017),
    ]


@pytest.fixture
def policy():
    return ReconciliationPolicy(
        retry_budget=2,
        apply_retries=3,
        backoff_base_s=0.5,
        backoff_max_s=4.0,
        apply_timeout_s=5.0,
        max_parallel_namespaces=2,
    )


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def driver(platform, policy, sleeps):
    return ReconciliationDriver(platform, policy, sleep=sleeps.append)
