import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Iterable, TypeVar

from rich.console import Console

from .errors import ApplyTimeout, PlatformUnavailable, ReconciliationError
from .models import ObservedWorkload, Operation, OperationKind, WorkloadDescriptor, WorkloadSpec, WorkloadState
from .platform import Platform
from .reconciler import is_converged, reconcile
from .resolver import group_by_namespace, render
from .settings import AppSettings, get_settings
from .validator import validate

console = Console()

T = TypeVar("T")
Key = tuple[str, str]


@dataclass(frozen=True)
class ReconciliationPolicy:
    retry_budget: int = 3
    apply_retries: int = 3
    backoff_base_s: float = 0.5
    backoff_max_s: float = 8.0
    apply_timeout_s: float = 60.0
    max_parallel_namespaces: int = 4

    @classmethod
    def from_settings(cls, settings: AppSettings | None = None) -> "ReconciliationPolicy":
        settings = settings or get_settings()
        return cls(
            retry_budget=settings.RETRY_BUDGET,
            apply_retries=max(1, settings.APPLY_RETRIES),
            backoff_base_s=settings.BACKOFF_BASE,
            backoff_max_s=settings.BACKOFF_MAX,
            apply_timeout_s=settings.APPLY_TIMEOUT,
            max_parallel_namespaces=max(1, settings.MAX_PARALLEL_NAMESPACES),
        )


@dataclass
class WorkloadRecord:
    state: WorkloadState = WorkloadState.ABSENT
    unready_passes: int = 0
    last_error: str | None = None


@dataclass
class OperationOutcome:
    operation: Operation
    ok: bool
    error: str | None = None


@dataclass
class PassReport:
    """Everything one pass did, including partial failures."""

    outcomes: list[OperationOutcome] = field(default_factory=list)
    statuses: dict[Key, WorkloadState] = field(default_factory=dict)
    errors: dict[Key, str] = field(default_factory=dict)
    namespace_errors: dict[str, str] = field(default_factory=dict)

    @property
    def operations(self) -> list[Operation]:
        return [o.operation for o in self.outcomes]

    @property
    def degraded(self) -> list[Key]:
        return sorted(k for k, s in self.statuses.items() if s is WorkloadState.DEGRADED)

    @property
    def ok(self) -> bool:
        return not self.degraded and not self.namespace_errors and all(o.ok for o in self.outcomes)

    def merge(self, other: "PassReport") -> None:
        self.outcomes.extend(other.outcomes)
        self.statuses.update(other.statuses)
        self.errors.update(other.errors)
        self.namespace_errors.update(other.namespace_errors)


class ReconciliationDriver:
    """Applies reconcile() output to a platform and tracks per-workload state across passes."""

    def __init__(
        self,
        platform: Platform,
        policy: ReconciliationPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.platform = platform
        self.policy = policy or ReconciliationPolicy.from_settings()
        self._sleep = sleep
        self._lock = Lock()
        self._records: dict[Key, WorkloadRecord] = {}

    def status(self, namespace: str, name: str) -> WorkloadState:
        with self._lock:
            record = self._records.get((namespace, name))
            return record.state if record else WorkloadState.ABSENT

    def plan(self, descriptors: Iterable[WorkloadDescriptor], namespaces: Iterable[str] = ()) -> list[Operation]:
        """Validate and diff against the platform without changing anything."""
        descriptors = list(descriptors)
        validate(descriptors)
        operations = []
        for namespace, group in _declared_groups(descriptors, namespaces).items():
            observed = self._call(lambda: self.platform.observe(namespace), f"observe {namespace}")
            operations.extend(reconcile(group, observed))
        return operations

    def run_pass(self, descriptors: Iterable[WorkloadDescriptor], namespaces: Iterable[str] = ()) -> PassReport:
        """One reconciliation pass: validate, then per namespace observe, diff and apply.

        `namespaces` names namespaces that are managed even when no descriptor
        is left in them; their remaining workloads get deleted. A
        ValidationError propagates before the platform is called. Namespaces
        are independent and run concurrently; a failure inside one namespace or
        one workload ends up in the report instead of aborting the pass.
        """
        descriptors = list(descriptors)
        validate(descriptors)

        report = PassReport()
        groups = _declared_groups(descriptors, namespaces)
        if not groups:
            return report

        workers = min(self.policy.max_parallel_namespaces, len(groups))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="reconcile") as pool:
            futures = [pool.submit(self._reconcile_namespace, ns, group) for ns, group in groups.items()]
            for future in as_completed(futures):
                report.merge(future.result())
        return report

    def delete_namespace(self, namespace: str, cascade: bool = False) -> None:
        self._call(lambda: self.platform.delete_namespace(namespace, cascade=cascade), f"delete namespace {namespace}")
        with self._lock:
            for key in [k for k in self._records if k[0] == namespace]:
                del self._records[key]

    def _reconcile_namespace(self, namespace: str, descriptors: list[WorkloadDescriptor]) -> PassReport:
        report = PassReport()
        try:
            self._call(lambda: self.platform.ensure_namespace(namespace), f"ensure namespace {namespace}")
            observed = self._call(lambda: self.platform.observe(namespace), f"observe {namespace}")
        except ReconciliationError as e:
            console.print(f"[bold red]❌ Namespace {namespace} unavailable:[/bold red] {e}")
            report.namespace_errors[namespace] = str(e)
            for d in descriptors:
                report.statuses[d.key] = self.status(*d.key)
                report.errors[d.key] = str(e)
            return report

        operations = reconcile(descriptors, observed)
        for op in operations:
            console.print(f"[blue]⚙️  {op.describe()}[/blue]")
            outcome = self._apply(op)
            report.outcomes.append(outcome)
            self._record_outcome(outcome)
            if not outcome.ok:
                console.print(f"[bold red]❌ {op.namespace}/{op.name}:[/bold red] {outcome.error}")
                report.errors[op.key] = outcome.error

        touched = {op.key for op in operations}
        for spec in render(descriptors):
            if spec.key not in touched:
                self._record_observation(spec, observed.get(namespace, spec.name))

        with self._lock:
            for op in operations:
                if op.kind is OperationKind.DELETE:
                    record = self._records.get(op.key)
                    report.statuses[op.key] = record.state if record else WorkloadState.ABSENT
            for d in descriptors:
                record = self._records.get(d.key, WorkloadRecord())
                report.statuses[d.key] = record.state
                if record.state is WorkloadState.DEGRADED and record.last_error:
                    report.errors.setdefault(d.key, record.last_error)
        return report

    def _apply(self, op: Operation) -> OperationOutcome:
        try:
            self._call(lambda: self._dispatch(op), op.describe())
        except ReconciliationError as e:
            return OperationOutcome(operation=op, ok=False, error=str(e))
        return OperationOutcome(operation=op, ok=True)

    def _dispatch(self, op: Operation) -> None:
        if op.kind is OperationKind.CREATE:
            self.platform.create_workload(op.spec)
        elif op.kind is OperationKind.UPDATE:
            self.platform.update_workload(op.spec, op.changed_fields)
        else:
            self.platform.delete_workload(op.namespace, op.name)

    def _call(self, fn: Callable[[], T], description: str) -> T:
        """Run `fn` under the apply deadline, retrying PlatformUnavailable with exponential backoff."""
        delay = self.policy.backoff_base_s
        for attempt in range(1, self.policy.apply_retries + 1):
            try:
                return self._with_deadline(fn, description)
            except PlatformUnavailable as e:
                if attempt == self.policy.apply_retries:
                    raise
                console.print(
                    f"   [dim red]{description}: {e} (retry {attempt}/{self.policy.apply_retries - 1} "
                    f"in {delay:.1f}s)[/dim red]"
                )
                self._sleep(delay)
                delay = min(delay * 2, self.policy.backoff_max_s)
        raise AssertionError("unreachable")

    def _with_deadline(self, fn: Callable[[], T], description: str) -> T:
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="apply")
        future = pool.submit(fn)
        try:
            return future.result(timeout=self.policy.apply_timeout_s)
        except FutureTimeout as e:
            raise ApplyTimeout(f"{description}: no result within {self.policy.apply_timeout_s:g}s") from e
        finally:
            # The timed-out call keeps running in the background; the next pass observes its effect.
            pool.shutdown(wait=False)

    def _record_outcome(self, outcome: OperationOutcome) -> None:
        op = outcome.operation
        with self._lock:
            if outcome.ok and op.kind is OperationKind.DELETE:
                self._records.pop(op.key, None)
                return

            record = self._records.setdefault(op.key, WorkloadRecord())
            if not outcome.ok:
                record.state = WorkloadState.DEGRADED
                record.last_error = outcome.error
                return

            record.unready_passes = 0
            record.last_error = None
            record.state = WorkloadState.PENDING if op.kind is OperationKind.CREATE else WorkloadState.APPLYING

    def _record_observation(self, spec: WorkloadSpec, actual: ObservedWorkload | None) -> None:
        with self._lock:
            record = self._records.setdefault(spec.key, WorkloadRecord())
            if is_converged(spec, actual):
                if record.state is not WorkloadState.CONVERGED:
                    console.print(f"[bold green]✅ {spec.namespace}/{spec.name} converged[/bold green]")
                record.state = WorkloadState.CONVERGED
                record.unready_passes = 0
                record.last_error = None
                return

            record.unready_passes += 1
            ready = actual.ready_replicas if actual else 0
            if record.unready_passes > self.policy.retry_budget:
                if record.state is not WorkloadState.DEGRADED:
                    console.print(
                        f"[bold orange1]⚠️  {spec.namespace}/{spec.name} degraded: "
                        f"{ready}/{spec.replicas} ready[/bold orange1]"
                    )
                record.state = WorkloadState.DEGRADED
                record.last_error = f"{ready}/{spec.replicas} replicas ready after {record.unready_passes} passes"
            elif record.state in (WorkloadState.ABSENT, WorkloadState.CONVERGED):
                record.state = WorkloadState.APPLYING


def _declared_groups(
    descriptors: list[WorkloadDescriptor], namespaces: Iterable[str]
) -> dict[str, list[WorkloadDescriptor]]:
    groups = group_by_namespace(descriptors)
    for namespace in namespaces:
        groups.setdefault(namespace, [])
    return dict(sorted(groups.items()))
